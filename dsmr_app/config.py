"""
Device configuration.

A configuration can be built directly, or loaded from a JSON file such as::

    {
        "port": "/dev/ttyUSB0",
        "port_settings": "115200 8N1",
        "lenient_mode": false
    }

``port_settings`` is optional; without it the line speed is auto detected.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, fields
from pathlib import Path

from dsmr_app.models import (
    RECOVERY_TIMEOUT,
    SERIAL_PORT_AUTO_DETECT_TIMEOUT,
    WATCHDOG_INTERVAL,
    PortSettings,
)

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration is missing, invalid, or malformed."""


@dataclass(frozen=True)
class DeviceConfiguration:
    port: str
    port_settings: str | None = None
    lenient_mode: bool = False
    auto_detect_timeout: float = SERIAL_PORT_AUTO_DETECT_TIMEOUT
    recovery_timeout: float = RECOVERY_TIMEOUT
    watchdog_interval: float = WATCHDOG_INTERVAL

    @property
    def fixed_port_settings(self) -> PortSettings | None:
        return PortSettings.from_string(self.port_settings)

    @property
    def has_valid_port_settings(self) -> bool:
        return not self.port_settings or self.fixed_port_settings is not None


def load_configuration(path: str | Path, **overrides: object) -> DeviceConfiguration:
    """Load a DeviceConfiguration from a JSON file.

    Keyword arguments that are not None override the file values.

    :raises ConfigError: if the file is missing or invalid
    """
    path = Path(path)
    logger.info("Loading configuration file: %s", path)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigError(f"Configuration file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid JSON format in {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError(f"Configuration in {path} must be a JSON object")
    raw.update({key: value for key, value in overrides.items() if value is not None})
    return build_configuration(raw)


def build_configuration(raw: dict) -> DeviceConfiguration:
    known = {item.name for item in fields(DeviceConfiguration)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")

    port = raw.get("port")
    if not isinstance(port, str) or not port.strip():
        raise ConfigError("Serial port name is not set")

    for key in ("auto_detect_timeout", "recovery_timeout", "watchdog_interval"):
        value = raw.get(key)
        if value is not None and (isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0):
            raise ConfigError(f"'{key}' must be a positive number")

    configuration = DeviceConfiguration(**raw)
    if not configuration.has_valid_port_settings:
        # Reported by the device as a configuration problem
        logger.warning("Invalid port settings %r", configuration.port_settings)
    return configuration
