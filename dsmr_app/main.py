from __future__ import annotations

import argparse
import logging
import sys
import threading

from dsmr_app.config import ConfigError, DeviceConfiguration, build_configuration, load_configuration
from dsmr_app.device import DeviceStateListener, DSMRDevice
from dsmr_app.logging_util import configure_logging
from dsmr_app.meter import Meter, MeterDescriptor, MeterReading
from dsmr_app.models import DeviceState
from dsmr_app.transport import SerialPortSession

logger = logging.getLogger("dsmr_app")


class LoggingStateListener(DeviceStateListener):
    def state_updated(self, old_state: DeviceState, new_state: DeviceState, details: str) -> None:
        logger.debug("Device state %s (%s)", new_state.name, details)

    def state_changed(self, old_state: DeviceState, new_state: DeviceState, details: str) -> None:
        logger.info("Device state changed from %s to %s: %s", old_state.name, new_state.name, details)


class MeterRegistry:
    """Accepts every detected meter and logs its readings."""

    def __init__(self):
        self._meters: list[Meter] = []
        self.device: DSMRDevice | None = None

    def meter_discovered(self, descriptor: MeterDescriptor) -> bool:
        if self.device is None:
            return False
        logger.info("New meter %s (%s) %s", descriptor, descriptor.kind.value, descriptor.identifier)
        meter = Meter(descriptor, self._log_reading)
        # The device only keeps a weak reference
        self._meters.append(meter)
        self.device.add_meter(meter)
        return True

    @staticmethod
    def _log_reading(reading: MeterReading) -> None:
        value = reading.value
        unit = reading.record.values[-1].unit if reading.record.values else ""
        logger.info("%s %s: %s %s", reading.descriptor, reading.record.type.value, value, unit)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Read P1 telegrams from a DSMR smart meter")
    parser.add_argument("--port", help="serial port name or pyserial URL, e.g. /dev/ttyUSB0")
    parser.add_argument("--port-settings", help="fixed port settings, e.g. '115200 8N1' (disables auto detect)")
    parser.add_argument("--lenient", action="store_true", default=None, help="accept partially valid telegrams")
    parser.add_argument("--config", help="JSON configuration file")
    parser.add_argument("--log-file", help="also log to this rotating file")
    parser.add_argument("--verbose", "-v", action="store_true", help="debug logging")
    parser.add_argument("--list-ports", action="store_true", help="list serial ports and exit")
    return parser.parse_args(argv)


def _configuration(args: argparse.Namespace) -> DeviceConfiguration:
    overrides = {"port": args.port, "port_settings": args.port_settings, "lenient_mode": args.lenient}
    if args.config:
        return load_configuration(args.config, **overrides)
    return build_configuration({key: value for key, value in overrides.items() if value is not None})


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.INFO, args.log_file)

    if args.list_ports:
        for port in SerialPortSession.list_serial_ports():
            print(port)
        return 0

    try:
        configuration = _configuration(args)
    except ConfigError as exc:
        logger.error("%s", exc)
        return 2

    registry = MeterRegistry()
    device = DSMRDevice(configuration, LoggingStateListener(), registry.meter_discovered)
    registry.device = device

    stopped = threading.Event()
    device.start_device()
    try:
        stopped.wait()
    except KeyboardInterrupt:
        logger.info("Stopping")
    finally:
        device.stop_device()
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
