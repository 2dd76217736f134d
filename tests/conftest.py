from __future__ import annotations

from collections import deque
from concurrent.futures import Executor, Future

import pytest

from dsmr_app.config import DeviceConfiguration
from dsmr_app.device import DeviceStateListener, DSMRDevice
from dsmr_app.models import HIGH_SPEED, LOW_SPEED, PortEvent
from dsmr_app.telegram import crc16
from dsmr_app.transport import PortSession

HEADER = "/ISk5\\2MT382-1000"

DSMR5_LINES = [
    "1-3:0.2.8(50)",
    "0-0:1.0.0(101209113020W)",
    "0-0:96.1.1(4B384547303034303436333935353037)",
    "1-0:1.8.1(123456.789*kWh)",
    "1-0:1.8.2(123456.789*kWh)",
    "1-0:2.8.1(123456.789*kWh)",
    "1-0:2.8.2(123456.789*kWh)",
    "0-0:96.14.0(0002)",
    "1-0:1.7.0(01.193*kW)",
    "1-0:2.7.0(00.000*kW)",
    "0-0:96.7.21(00004)",
    "0-0:96.7.9(00002)",
    "1-0:99.97.0(2)(0-0:96.7.19)(101208152415W)(0000000240*s)(101208151004W)(0000000301*s)",
    "1-0:32.32.0(00002)",
    "1-0:32.7.0(220.1*V)",
    "1-0:31.7.0(001*A)",
    "1-0:21.7.0(01.111*kW)",
    "0-0:96.13.0(303132333435363738)",
    "0-1:24.1.0(003)",
    "0-1:96.1.0(3232323241424344313233343536373839)",
    "0-1:24.2.1(101209112500W)(12785.123*m3)",
]

DSMR3_TELEGRAM = (
    "/KMP5 ZABF001587315111\r\n"
    "\r\n"
    "0-0:96.1.1(205C4D246333034353537383234323121)\r\n"
    "1-0:1.8.1(00185.000*kWh)\r\n"
    "0-0:17.0.0(999*A)\r\n"
    "0-1:24.1.0(3)\r\n"
    "0-1:96.1.0(3238313031353431303034303232323131)\r\n"
    "0-1:24.3.0(121030140000)(00)(60)(1)(0-1:24.2.1)(m3)\r\n"
    "(00890.473)\r\n"
    "!\r\n"
).encode("ascii")


def build_telegram(lines: list[str] = DSMR5_LINES, header: str = HEADER, checksum: str | None = None) -> bytes:
    body = header + "\r\n\r\n" + "".join(f"{line}\r\n" for line in lines) + "!"
    if checksum is None:
        checksum = f"{crc16(body.encode('ascii')):04X}"
    return f"{body}{checksum}\r\n".encode("ascii")


def tampered_checksum(telegram: bytes) -> bytes:
    body, _, checksum = telegram.rpartition(b"!")
    wrong = int(checksum.strip(), 16) ^ 0x0001
    return body + b"!" + f"{wrong:04X}\r\n".encode("ascii")


class ManualExecutor(Executor):
    """Runs submitted tasks only when the test asks for it."""

    def __init__(self):
        self.tasks: deque = deque()
        self.is_shut_down = False

    def submit(self, fn, /, *args, **kwargs):
        if self.is_shut_down:
            raise RuntimeError("cannot schedule new futures after shutdown")
        future: Future = Future()
        self.tasks.append((future, fn, args, kwargs))
        return future

    def run_next(self) -> None:
        future, fn, args, kwargs = self.tasks.popleft()
        future.set_result(fn(*args, **kwargs))

    def run_all(self, limit: int = 100) -> None:
        for _ in range(limit):
            if not self.tasks:
                return
            self.run_next()
        raise AssertionError("tasks keep scheduling new tasks")

    def shutdown(self, wait=True, *, cancel_futures=False):
        self.is_shut_down = True


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeWatchdog:
    def __init__(self):
        self.callback = None
        self.starts = 0
        self.stops = 0

    def start(self, callback) -> None:
        self.callback = callback
        self.starts += 1

    def stop(self) -> None:
        self.callback = None
        self.stops += 1


class FakeSession(PortSession):
    def __init__(self, port_name, parser, on_port_event, settings=HIGH_SPEED, fixed_settings=None,
                 lenient_mode=False, lock=None, open_event=PortEvent.OPENED):
        self.port_name = port_name
        self.parser = parser
        self.on_port_event = on_port_event
        self.settings = settings
        self.fixed_settings = fixed_settings
        self.lenient_mode = lenient_mode
        self.lock = lock
        self.open_event = open_event
        self.open_calls = 0
        self.close_calls = 0
        self._is_open = False

    @property
    def port_settings(self):
        return self.settings

    @property
    def is_open(self) -> bool:
        return self._is_open

    def open(self) -> None:
        self.open_calls += 1
        if self.settings is None:
            self.on_port_event(PortEvent.CONFIGURATION_ERROR)
            return
        self._is_open = self.open_event is PortEvent.OPENED
        self.on_port_event(self.open_event)

    def close(self) -> None:
        self.close_calls += 1
        self._is_open = False
        self.on_port_event(PortEvent.CLOSED)

    def switch_port_speed(self) -> None:
        if self.fixed_settings is None:
            self.settings = LOW_SPEED if self.settings == HIGH_SPEED else HIGH_SPEED
        else:
            self.settings = self.fixed_settings

    def feed(self, data: bytes) -> None:
        self.parser.parse_data(data)


class SessionFactory:
    def __init__(self, open_event: PortEvent = PortEvent.OPENED):
        self.open_event = open_event
        self.sessions: list[FakeSession] = []

    def __call__(self, **kwargs) -> FakeSession:
        session = FakeSession(open_event=self.open_event, **kwargs)
        self.sessions.append(session)
        return session

    @property
    def current(self) -> FakeSession:
        return self.sessions[-1]


class RecordingStateListener(DeviceStateListener):
    def __init__(self):
        self.updates: list[tuple] = []
        self.changes: list[tuple] = []

    def state_updated(self, old_state, new_state, details) -> None:
        self.updates.append((old_state, new_state, details))

    def state_changed(self, old_state, new_state, details) -> None:
        self.changes.append((old_state, new_state, details))


class DeviceHarness:
    def __init__(self, configuration: DeviceConfiguration, open_event: PortEvent, on_meter_discovered=None):
        self.executor = ManualExecutor()
        self.clock = FakeClock()
        self.watchdog = FakeWatchdog()
        self.listener = RecordingStateListener()
        self.sessions = SessionFactory(open_event)
        self.discovered: list = []
        self.device = DSMRDevice(
            configuration,
            state_listener=self.listener,
            on_meter_discovered=on_meter_discovered or self._discovered,
            watchdog=self.watchdog,
            executor_factory=lambda: self.executor,
            session_factory=self.sessions,
            clock=self.clock,
        )

    def _discovered(self, descriptor) -> bool:
        self.discovered.append(descriptor)
        return False

    def start(self):
        self.device.start_device()
        self.executor.run_all()
        return self

    def receive(self, telegram: bytes) -> None:
        self.sessions.current.feed(telegram)
        self.executor.run_all()


@pytest.fixture
def make_harness():
    def factory(open_event: PortEvent = PortEvent.OPENED, on_meter_discovered=None, **config) -> DeviceHarness:
        config.setdefault("port", "/dev/ttyUSB0")
        return DeviceHarness(DeviceConfiguration(**config), open_event, on_meter_discovered)

    return factory
