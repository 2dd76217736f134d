from __future__ import annotations

import errno
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Final

import serial
from serial.tools import list_ports

from dsmr_app.models import HIGH_SPEED, LOW_SPEED, PortEvent, PortSettings
from dsmr_app.telegram import P1TelegramParser

logger = logging.getLogger(__name__)

READ_BUFFER_SIZE = 1024
READER_POLL_INTERVAL = 0.05

_NOT_FOUND_ERRNOS = {errno.ENOENT, errno.ENODEV, errno.ENXIO}
_IN_USE_ERRNOS = {errno.EBUSY, errno.EACCES, errno.EAGAIN, errno.EWOULDBLOCK}


class SerialSignal(str, Enum):
    DATA_AVAILABLE = "data_available"
    BREAK_INTERRUPT = "break_interrupt"
    FRAMING_ERROR = "framing_error"
    OVERRUN_ERROR = "overrun_error"
    PARITY_ERROR = "parity_error"


class PortSession(ABC):
    @abstractmethod
    def open(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def close(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def switch_port_speed(self) -> None:
        raise NotImplementedError

    @property
    @abstractmethod
    def port_settings(self) -> PortSettings | None:
        raise NotImplementedError

    @property
    @abstractmethod
    def is_open(self) -> bool:
        raise NotImplementedError


@dataclass
class _PortStatus:
    is_open: bool = False
    break_interrupt: bool = False
    overrun_error: bool = False
    framing_error: bool = False
    parity_error: bool = False

    def clear_errors(self) -> None:
        self.break_interrupt = False
        self.overrun_error = False
        self.framing_error = False
        self.parity_error = False


class _PortReader(threading.Thread):
    """Raises a data available signal whenever the driver has bytes buffered."""

    def __init__(self, session: SerialPortSession, connection: serial.SerialBase, poll_interval: float):
        super().__init__(name=f"dsmr-reader-{connection.port}", daemon=True)
        self._session = session
        self._connection = connection
        self._poll_interval = poll_interval
        self._stop_event = threading.Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:
        while not self._stop_event.is_set():
            try:
                available = self._connection.in_waiting > 0
            except (serial.SerialException, OSError):
                # The read classifies the failure
                available = True
            if available:
                self._session.serial_event(SerialSignal.DATA_AVAILABLE)
            else:
                self._stop_event.wait(self._poll_interval)


class SerialPortSession(PortSession):
    """Serial port of a DSMR meter.

    The session claims OS resources on ``open`` and releases them on ``close``.
    Every outcome is reported to ``on_port_event``; no exception escapes to the
    caller, so the owner can restore the connection by reopening.

    ``lock`` is the exclusive section the session shares with its owner; port
    events are reported while it is held.

    The reader thread only raises DATA_AVAILABLE. pyserial does not report
    break, framing, overrun or parity conditions, so those signals reach the
    session only through ``serial_event`` calls from a platform backend.
    """

    def __init__(
        self,
        port_name: str,
        parser: P1TelegramParser,
        on_port_event: Callable[[PortEvent], None],
        settings: PortSettings | None = HIGH_SPEED,
        fixed_settings: PortSettings | None = None,
        lenient_mode: bool = False,
        lock: threading.RLock | None = None,
        poll_interval: float = READER_POLL_INTERVAL,
    ):
        self._port_name: Final[str] = port_name
        self._parser = parser
        self._on_port_event = on_port_event
        self._settings = settings
        self._fixed_settings = fixed_settings
        self._lenient_mode = lenient_mode
        self._lock = lock if lock is not None else threading.RLock()
        self._poll_interval = poll_interval
        self._status = _PortStatus()
        self._connection: serial.SerialBase | None = None
        self._reader: _PortReader | None = None

    @staticmethod
    def list_serial_ports() -> list[str]:
        return [port.device for port in list_ports.comports()]

    @property
    def port_name(self) -> str:
        return self._port_name

    @property
    def port_settings(self) -> PortSettings | None:
        return self._settings

    @property
    def is_open(self) -> bool:
        return self._status.is_open

    def open(self) -> None:
        with self._lock:
            if self._status.is_open:
                logger.debug("Serial port %s is already open, keep current port instance", self._port_name)
                self._notify(PortEvent.OPENED)
                return

            settings = self._settings
            if settings is None:
                logger.error("Invalid port parameters for %s, not opening port", self._port_name)
                self._notify(PortEvent.CONFIGURATION_ERROR)
                return

            logger.debug("Opening port %s with %s", self._port_name, settings)
            try:
                connection = serial.serial_for_url(self._port_name, do_not_open=True)
            except (serial.SerialException, ValueError) as exc:
                logger.error("Port %s does not exist: %s", self._port_name, exc)
                self._notify(PortEvent.DONT_EXISTS)
                return

            try:
                connection.baudrate = settings.baudrate
                connection.bytesize = settings.bytesize
                connection.parity = settings.parity
                connection.stopbits = settings.stopbits
                connection.timeout = 0
                connection.exclusive = True
                connection.open()
            except ValueError as exc:
                logger.error("Port %s does not support port settings %s: %s", self._port_name, settings, exc)
                self._notify(PortEvent.NOT_COMPATIBLE)
                return
            except (serial.SerialException, OSError) as exc:
                event = _classify_open_error(exc)
                logger.error("Failed to open port %s (%s): %s", self._port_name, event.value, exc)
                self._notify(event)
                return

            try:
                if settings == LOW_SPEED:
                    # DSMR 2.x/3.x meters need these control lines
                    connection.dtr = False
                    connection.rts = True
            except (serial.SerialException, OSError, ValueError) as exc:
                logger.error("Failed to prepare port %s, closing port: %s", self._port_name, exc)
                connection.close()
                self._notify(PortEvent.ERROR)
                return

            logger.info("Serial port %s opened with %s", self._port_name, settings)
            self._connection = connection
            self._status = _PortStatus(is_open=True)
            self._reader = _PortReader(self, connection, self._poll_interval)

            # The listener learns about the open port before any data is read
            self._notify(PortEvent.OPENED)
            self._reader.start()

    def close(self) -> None:
        with self._lock:
            logger.info("Closing serial port %s", self._port_name)
            if self._reader is not None:
                self._reader.stop()
                self._reader = None
            if self._connection is not None:
                try:
                    self._connection.close()
                except (serial.SerialException, OSError) as exc:
                    logger.debug("Failed to close port %s: %s", self._port_name, exc)
            self._connection = None
            self._status.is_open = False

            self._notify(PortEvent.CLOSED)

    def switch_port_speed(self) -> None:
        """Select the settings used by the next ``open``."""
        with self._lock:
            if self._fixed_settings is None:
                self._settings = LOW_SPEED if self._settings == HIGH_SPEED else HIGH_SPEED
                logger.debug("Switched port settings to %s", self._settings)
            else:
                self._settings = self._fixed_settings
                logger.info("Fixed port settings configured (autodetect disabled): %s", self._settings)

    def serial_event(self, signal: SerialSignal, active: bool = True) -> None:
        """Handle a line signal from the driver."""
        with self._lock:
            if signal is SerialSignal.DATA_AVAILABLE:
                if not active:
                    return
                self._status.clear_errors()
                event = self.read()
                logger.debug("Port event after read: %s", event.name)
                if event is not PortEvent.CLOSED:
                    self._notify(event)
            elif signal is SerialSignal.BREAK_INTERRUPT:
                if not active:
                    self._status.break_interrupt = False
                    logger.debug("Break interrupt is recovered")
                elif not self._status.break_interrupt:
                    logger.info("Serial communication on %s is broken", self._port_name)
                    self._status.break_interrupt = True
                    self._notify(PortEvent.LINE_BROKEN)
            elif signal is SerialSignal.FRAMING_ERROR:
                self._line_error("framing_error", active, "frame error", counterpart="parity_error")
            elif signal is SerialSignal.PARITY_ERROR:
                self._line_error("parity_error", active, "parity error", counterpart="framing_error")
            elif signal is SerialSignal.OVERRUN_ERROR:
                self._line_error("overrun_error", active, "overrun error")

    def read(self) -> PortEvent:
        """Drain the bytes the driver has buffered into the parser without blocking."""
        with self._lock:
            connection = self._connection
            if not self._status.is_open or connection is None:
                logger.debug("Serial port %s is not open, no values will be read", self._port_name)
                return PortEvent.CLOSED

            try:
                available = connection.in_waiting
                while available > 0:
                    data = connection.read(min(available, READ_BUFFER_SIZE))
                    if not data:
                        logger.debug("Expected %d bytes to read, but no bytes were read", available)
                        break
                    self._parser.parse_data(data)
                    available = connection.in_waiting
                return PortEvent.READ_OK
            except (serial.SerialException, OSError) as exc:
                if not self._status.is_open:
                    logger.info("Read aborted: serial port %s is closed", self._port_name)
                    return PortEvent.CLOSED
                logger.warning("Serial port %s is not available anymore, closing port", self._port_name)
                logger.debug("Caused by: %s", exc)
                self.close()
                return PortEvent.READ_ERROR

    def _line_error(self, flag: str, active: bool, description: str, counterpart: str | None = None) -> None:
        if not active:
            setattr(self._status, flag, False)
            logger.debug("%s is recovered", description.capitalize())
            return
        if getattr(self._status, flag):
            # Already notified
            return
        setattr(self._status, flag, True)

        if counterpart is not None and getattr(self._status, counterpart):
            logger.debug("Experienced both parity and frame error caused possibly by a wrong baudrate")
            self._parser.abort_telegram()
            self._notify(PortEvent.WRONG_BAUDRATE)
        elif self._lenient_mode:
            logger.debug("Experienced %s", description)
        else:
            logger.warning("Experienced %s", description)
            self._parser.abort_telegram()
            self._notify(PortEvent.READ_ERROR)

    def _notify(self, event: PortEvent) -> None:
        self._on_port_event(event)


def _classify_open_error(exc: OSError) -> PortEvent:
    if exc.errno in _NOT_FOUND_ERRNOS:
        return PortEvent.DONT_EXISTS
    if exc.errno in _IN_USE_ERRNOS:
        return PortEvent.IN_USE
    # Windows reports the cause only in the message
    message = str(exc)
    if "FileNotFoundError" in message:
        return PortEvent.DONT_EXISTS
    if "PermissionError" in message or "Access is denied" in message:
        return PortEvent.IN_USE
    return PortEvent.ERROR
