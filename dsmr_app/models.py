from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

# Timeout for detecting the correct serial port settings (seconds)
SERIAL_PORT_AUTO_DETECT_TIMEOUT = 30.0
# Timeout for recovery from offline mode (seconds)
RECOVERY_TIMEOUT = 30.0
# Interval of the device watchdog (seconds)
WATCHDOG_INTERVAL = 10.0

_PORT_SETTINGS_PATTERN = re.compile(r"^(\d+)\s*([5-8])([NEOMS])(1|1\.5|2)$")


@dataclass(frozen=True)
class PortSettings:
    baudrate: int
    bytesize: int = 8
    parity: str = "N"
    stopbits: float = 1

    @classmethod
    def from_string(cls, value: str | None) -> PortSettings | None:
        """Parse settings like ``115200 8N1``; returns None when unparseable."""
        if not value:
            return None
        match = _PORT_SETTINGS_PATTERN.match(value.strip().upper())
        if match is None:
            return None
        baudrate, bytesize, parity, stopbits = match.groups()
        return cls(
            baudrate=int(baudrate),
            bytesize=int(bytesize),
            parity=parity,
            stopbits=float(stopbits) if stopbits == "1.5" else int(stopbits),
        )

    def __str__(self) -> str:
        return f"{self.baudrate} {self.bytesize}{self.parity}{self.stopbits:g}"


# DSMR V4 and up
HIGH_SPEED = PortSettings(baudrate=115200, bytesize=8, parity="N", stopbits=1)
# DSMR V2.x and V3
LOW_SPEED = PortSettings(baudrate=9600, bytesize=7, parity="E", stopbits=1)


class DeviceState(str, Enum):
    INITIALIZING = "initializing"
    STARTING = "starting"
    SWITCH_PORT_SPEED = "switch_port_speed"
    ONLINE = "online"
    OFFLINE = "offline"
    SHUTDOWN = "shutdown"
    CONFIGURATION_PROBLEM = "configuration_problem"

    @property
    def is_terminal(self) -> bool:
        return self in (DeviceState.SHUTDOWN, DeviceState.CONFIGURATION_PROBLEM)


class PortEvent(str, Enum):
    CLOSED = "Serial port closed"
    OPENED = "Serial port opened"
    READ_OK = "Read ok"
    READ_ERROR = "Read error"
    LINE_BROKEN = "Serial line is broken (cable problem?)"
    CONFIGURATION_ERROR = "Configuration error"
    DONT_EXISTS = "Serial port does not exist"
    IN_USE = "Serial port is already in use"
    NOT_COMPATIBLE = "Serial port is not compatible"
    WRONG_BAUDRATE = "Wrong baudrate"
    ERROR = "General error"


class DeviceEvent(str, Enum):
    INITIALIZE = "Initializing DSMR device"
    INITIALIZE_OK = "Initialize DSMR device successful"
    SWITCH_BAUDRATE = "DSMR port switch baudrate"
    TELEGRAM_RECEIVED = "DSMR device received P1 telegram successful"
    CONFIGURATION_ERROR = "DSMR device has a configuration error"
    ERROR = "DSMR device experienced a general error"
    READ_ERROR = "DSMR port read error"
    SHUTDOWN = "DSMR device shutdown"


class TelegramState(str, Enum):
    OK = "P1 telegram received OK"
    INVALID = "P1 telegram checksum failed"
    INCOMPLETE = "P1 telegram has an incomplete checksum"
