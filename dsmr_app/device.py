"""
The DSMR device: the supervisory state machine around one serial port.

The device starts in INITIALIZING where the serial port is opened. It waits in
STARTING until valid P1 telegrams are received and then enters ONLINE. While
STARTING it switches the port speed when nothing is understood. Communication
problems or a silent line bring the device OFFLINE, from where it recovers by
initializing again. SHUTDOWN releases the OS resources; CONFIGURATION_PROBLEM
waits for a new configuration.

All mutations of the device status happen under one re-entrant lock, shared
with the port session. Per-state actions and the hand-off of records to the
meters run on a small worker pool, outside the port signal that caused them.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable

from dsmr_app.config import DeviceConfiguration
from dsmr_app.cosem import CosemObject
from dsmr_app.meter import Meter, MeterDescriptor, MeterDispatcher
from dsmr_app.models import HIGH_SPEED, DeviceEvent, DeviceState, PortEvent, PortSettings, TelegramState
from dsmr_app.telegram import P1Telegram, P1TelegramParser
from dsmr_app.transport import PortSession, SerialPortSession
from dsmr_app.watchdog import WatchdogService

logger = logging.getLogger(__name__)

DEVICE_WORKERS = 2

_PORT_EVENTS: dict[PortEvent, DeviceEvent | None] = {
    PortEvent.CLOSED: DeviceEvent.INITIALIZE,
    PortEvent.OPENED: DeviceEvent.INITIALIZE_OK,
    PortEvent.READ_OK: None,
    PortEvent.READ_ERROR: DeviceEvent.READ_ERROR,
    PortEvent.LINE_BROKEN: DeviceEvent.READ_ERROR,
    PortEvent.CONFIGURATION_ERROR: DeviceEvent.CONFIGURATION_ERROR,
    PortEvent.DONT_EXISTS: DeviceEvent.CONFIGURATION_ERROR,
    PortEvent.IN_USE: DeviceEvent.ERROR,
    PortEvent.NOT_COMPATIBLE: DeviceEvent.ERROR,
    PortEvent.WRONG_BAUDRATE: DeviceEvent.SWITCH_BAUDRATE,
    PortEvent.ERROR: DeviceEvent.ERROR,
}


def transition(state: DeviceState, event: DeviceEvent) -> DeviceState:
    """The state the device enters when ``event`` happens in ``state``."""
    if state.is_terminal:
        return state
    if event is DeviceEvent.INITIALIZE:
        return DeviceState.INITIALIZING
    if event is DeviceEvent.INITIALIZE_OK:
        return DeviceState.STARTING if state is DeviceState.INITIALIZING else state
    if event is DeviceEvent.TELEGRAM_RECEIVED:
        return DeviceState.ONLINE if state in (DeviceState.OFFLINE, DeviceState.STARTING) else state
    if event in (DeviceEvent.READ_ERROR, DeviceEvent.SWITCH_BAUDRATE):
        if state is DeviceState.ONLINE:
            # Not expected once valid telegrams were received
            return DeviceState.OFFLINE
        if state is DeviceState.STARTING:
            return DeviceState.SWITCH_PORT_SPEED
        return state
    if event is DeviceEvent.ERROR:
        return DeviceState.OFFLINE
    if event is DeviceEvent.CONFIGURATION_ERROR:
        return DeviceState.CONFIGURATION_PROBLEM
    if event is DeviceEvent.SHUTDOWN:
        return DeviceState.SHUTDOWN
    raise ValueError(f"Unknown device event {event!r}")


class DeviceStateListener(ABC):
    @abstractmethod
    def state_updated(self, old_state: DeviceState, new_state: DeviceState, details: str) -> None:
        """Called for every handled event, also when the state did not change."""
        raise NotImplementedError

    @abstractmethod
    def state_changed(self, old_state: DeviceState, new_state: DeviceState, details: str) -> None:
        raise NotImplementedError


@dataclass
class DeviceStatus:
    state: DeviceState = DeviceState.SHUTDOWN
    state_entered_at: float = 0.0
    last_telegram_at: float = 0.0
    pending_records: list[CosemObject] = field(default_factory=list)


def _default_executor() -> Executor:
    return ThreadPoolExecutor(max_workers=DEVICE_WORKERS, thread_name_prefix="dsmr-device")


class DSMRDevice:
    def __init__(
        self,
        configuration: DeviceConfiguration,
        state_listener: DeviceStateListener | None = None,
        on_meter_discovered: Callable[[MeterDescriptor], bool] | None = None,
        watchdog: WatchdogService | None = None,
        executor_factory: Callable[[], Executor] = _default_executor,
        session_factory: Callable[..., PortSession] = SerialPortSession,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._configuration = configuration
        self._state_listener = state_listener
        self._dispatcher = MeterDispatcher(on_meter_discovered)
        self._watchdog = watchdog or WatchdogService(configuration.watchdog_interval)
        self._executor_factory = executor_factory
        self._session_factory = session_factory
        self._clock = clock

        self._lock = threading.RLock()
        self._status = DeviceStatus()
        self._executor: Executor | None = None
        self._session: PortSession | None = None
        self._port_settings = self._initial_port_settings()

    @property
    def configuration(self) -> DeviceConfiguration:
        return self._configuration

    @property
    def state(self) -> DeviceState:
        with self._lock:
            return self._status.state

    @property
    def port_settings(self) -> PortSettings | None:
        with self._lock:
            if self._session is not None:
                return self._session.port_settings
            return self._port_settings

    @property
    def meters(self) -> list[Meter]:
        return self._dispatcher.meters

    def start_device(self) -> None:
        """Start (or restart) the device, also out of SHUTDOWN and CONFIGURATION_PROBLEM."""
        with self._lock:
            if self._executor is None:
                self._executor = self._executor_factory()
            logger.debug("Starting device and entering INITIALIZING state")
            self._handle_device_event(DeviceEvent.INITIALIZE, restart=True)
        self._watchdog.start(self.alive)

    def stop_device(self) -> None:
        self._watchdog.stop()
        self._handle_device_event(DeviceEvent.SHUTDOWN)

    def reconfigure(self, configuration: DeviceConfiguration) -> None:
        """Replace the configuration and drop the current port session.

        A running device reinitializes with the new configuration once the
        port reports it closed; a stopped device on the next ``start_device``.
        """
        with self._lock:
            self._configuration = configuration
            self._port_settings = self._initial_port_settings()
            session, self._session = self._session, None
            if session is not None and session.is_open:
                session.close()

    def add_meter(self, meter: Meter) -> None:
        self._dispatcher.add_meter(meter)

    def remove_meter(self, meter: Meter) -> None:
        self._dispatcher.remove_meter(meter)

    def alive(self) -> None:
        """Watchdog callback, evaluates the current state."""
        logger.debug("Alive")
        self._submit(self._handle_device_state)

    def handle_port_event(self, port_event: PortEvent) -> None:
        logger.debug("Handle port event %s", port_event.name)
        device_event = _PORT_EVENTS[port_event]
        if device_event is not None:
            self._handle_device_event(device_event, port_event.value)

    def telegram_received(self, telegram: P1Telegram) -> None:
        records = telegram.records
        logger.debug("Received %d records, telegram state: %s", len(records), telegram.state.name)

        with self._lock:
            self._status.last_telegram_at = self._clock()

            if telegram.state is TelegramState.OK:
                if records:
                    self._status.pending_records.extend(records)
                else:
                    logger.info("Parsing was successful, however there were no records")
                self._handle_device_event(DeviceEvent.TELEGRAM_RECEIVED, telegram.state.value)
            elif self._configuration.lenient_mode:
                if records:
                    logger.debug("Still handling records in lenient mode")
                    self._status.pending_records.extend(records)
                    self._handle_device_event(DeviceEvent.TELEGRAM_RECEIVED, telegram.state.value)
                else:
                    logger.warning("Did not receive anything at all in lenient mode")
                    self._handle_device_event(DeviceEvent.ERROR, telegram.state.value)
            else:
                logger.warning("Dropping %d records due to incorrect parsing", len(records))
                self._handle_device_event(DeviceEvent.ERROR, telegram.state.value)

    def _handle_device_event(self, event: DeviceEvent, details: str | None = None, restart: bool = False) -> None:
        details = details or event.value
        with self._lock:
            current_state = self._status.state
            logger.debug("Handle device event %s in state %s", event.name, current_state.name)

            if restart:
                new_state = DeviceState.INITIALIZING
            else:
                new_state = transition(current_state, event)

            if new_state is not current_state:
                self._status.state = new_state
                self._status.state_entered_at = self._clock()
            elif current_state.is_terminal:
                logger.debug("Setting state is not allowed while in %s", current_state.name)
            else:
                logger.debug("Ignoring event %s in state %s", event.name, current_state.name)

            if new_state is not current_state or not new_state.is_terminal:
                self._submit(self._handle_device_state)

            if self._state_listener is None:
                logger.error("No device state listener available, state changes are not reported")
                return
            self._state_listener.state_updated(current_state, new_state, details)
            if new_state is not current_state:
                self._state_listener.state_changed(current_state, new_state, details)

    def _handle_device_state(self) -> None:
        with self._lock:
            status = self._status
            now = self._clock()
            logger.debug("Current device state %s", status.state.name)

            if status.state is DeviceState.INITIALIZING:
                self._initialize_session()
            elif status.state is DeviceState.STARTING:
                if now - status.state_entered_at > self._configuration.auto_detect_timeout:
                    self._handle_device_event(DeviceEvent.SWITCH_BAUDRATE)
            elif status.state is DeviceState.ONLINE:
                if status.pending_records:
                    records = list(status.pending_records)
                    status.pending_records.clear()
                    self._submit(lambda: self._send_records(records))
                elif now - status.last_telegram_at > self._configuration.recovery_timeout:
                    logger.info(
                        "No telegrams received for at least %s seconds, reinitialize device",
                        self._configuration.recovery_timeout,
                    )
                    self._handle_device_event(DeviceEvent.ERROR, "No telegrams received for too long")
                else:
                    logger.debug("No records to handle")
            elif status.state is DeviceState.OFFLINE:
                if now - status.state_entered_at > self._configuration.recovery_timeout:
                    logger.info(
                        "In offline mode for at least %s seconds, reinitialize device",
                        self._configuration.recovery_timeout,
                    )
                    self._handle_device_event(DeviceEvent.INITIALIZE, "In offline mode for too long, recovering")
            elif status.state is DeviceState.SWITCH_PORT_SPEED:
                self._switch_port_speed()
            elif status.state is DeviceState.SHUTDOWN:
                self._release_resources()
            elif status.state is DeviceState.CONFIGURATION_PROBLEM:
                # Waits for a new configuration and an external restart
                pass

            if status.pending_records:
                logger.debug(
                    "Dropping %d records due to state %s", len(status.pending_records), status.state.name
                )
                status.pending_records.clear()

    def _initialize_session(self) -> None:
        previous = self._session
        if previous is not None:
            self._port_settings = previous.port_settings
            self._session = None
            if previous.is_open:
                previous.close()

        # Parser and port are lenient; the configured mode only decides about telegrams
        parser = P1TelegramParser(self.telegram_received, lenient_mode=True)
        self._session = self._session_factory(
            port_name=self._configuration.port,
            parser=parser,
            on_port_event=self.handle_port_event,
            settings=self._port_settings,
            fixed_settings=self._configuration.fixed_port_settings,
            lenient_mode=True,
            lock=self._lock,
        )
        self._session.open()

    def _switch_port_speed(self) -> None:
        session = self._session
        if session is None:
            self._handle_device_event(DeviceEvent.INITIALIZE)
            return
        # Switch first, the initialize triggered by closing must use the new settings
        session.switch_port_speed()
        self._port_settings = session.port_settings
        session.close()

    def _release_resources(self) -> None:
        executor, self._executor = self._executor, None
        session, self._session = self._session, None
        if session is not None:
            self._port_settings = session.port_settings
            session.close()
        if executor is not None:
            executor.shutdown(wait=False)

    def _send_records(self, records: list[CosemObject]) -> None:
        logger.debug("Processing %d records", len(records))
        try:
            self._dispatcher.dispatch(records)
        except Exception:  # pragma: no cover - meter callbacks are external code
            logger.exception("Failed to process records")

    def _submit(self, task: Callable[[], None]) -> None:
        executor = self._executor
        if executor is None:
            logger.debug("Device is not started, not running %s", getattr(task, "__name__", task))
            return
        try:
            executor.submit(task)
        except RuntimeError:
            logger.debug("Worker pool is shut down, dropping task")

    def _initial_port_settings(self) -> PortSettings | None:
        if self._configuration.port_settings:
            # None when unparseable, the port reports a configuration error
            return self._configuration.fixed_port_settings
        return HIGH_SPEED
