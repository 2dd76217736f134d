import json

import pytest

from dsmr_app.config import ConfigError, DeviceConfiguration, build_configuration, load_configuration
from dsmr_app.models import HIGH_SPEED, LOW_SPEED, RECOVERY_TIMEOUT, PortSettings


def write_config(tmp_path, data):
    path = tmp_path / "dsmr.json"
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


def test_load_configuration(tmp_path):
    path = write_config(tmp_path, {"port": "/dev/ttyUSB0", "port_settings": "9600 7E1", "lenient_mode": True})

    configuration = load_configuration(path)

    assert configuration.port == "/dev/ttyUSB0"
    assert configuration.fixed_port_settings == LOW_SPEED
    assert configuration.lenient_mode
    assert configuration.recovery_timeout == RECOVERY_TIMEOUT


def test_overrides_replace_file_values(tmp_path):
    path = write_config(tmp_path, {"port": "/dev/ttyUSB0"})

    configuration = load_configuration(path, port="/dev/ttyAMA0", port_settings=None)

    assert configuration.port == "/dev/ttyAMA0"
    assert configuration.port_settings is None


def test_missing_file(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        load_configuration(tmp_path / "missing.json")


def test_invalid_json(tmp_path):
    path = tmp_path / "dsmr.json"
    path.write_text("{port:", encoding="utf-8")

    with pytest.raises(ConfigError, match="Invalid JSON"):
        load_configuration(path)


def test_configuration_must_be_an_object(tmp_path):
    with pytest.raises(ConfigError, match="JSON object"):
        load_configuration(write_config(tmp_path, ["/dev/ttyUSB0"]))


@pytest.mark.parametrize("raw", [{}, {"port": ""}, {"port": "   "}, {"port": 3}])
def test_port_is_required(raw):
    with pytest.raises(ConfigError, match="port"):
        build_configuration(raw)


def test_unknown_keys_are_rejected():
    with pytest.raises(ConfigError, match="baud"):
        build_configuration({"port": "/dev/ttyUSB0", "baud": 9600})


@pytest.mark.parametrize("value", [0, -1, "10", True])
def test_timeouts_must_be_positive_numbers(value):
    with pytest.raises(ConfigError, match="recovery_timeout"):
        build_configuration({"port": "/dev/ttyUSB0", "recovery_timeout": value})


def test_invalid_port_settings_are_reported_by_the_device():
    configuration = build_configuration({"port": "/dev/ttyUSB0", "port_settings": "fast"})

    assert not configuration.has_valid_port_settings
    assert configuration.fixed_port_settings is None


def test_without_port_settings_the_speed_is_detected():
    configuration = DeviceConfiguration(port="/dev/ttyUSB0")

    assert configuration.has_valid_port_settings
    assert configuration.fixed_port_settings is None


@pytest.mark.parametrize(
    "text, settings",
    [
        ("115200 8N1", HIGH_SPEED),
        ("9600 7E1", LOW_SPEED),
        ("9600 7e1", LOW_SPEED),
        ("  19200 8O2 ", PortSettings(baudrate=19200, bytesize=8, parity="O", stopbits=2)),
        ("4800 5N1.5", PortSettings(baudrate=4800, bytesize=5, parity="N", stopbits=1.5)),
    ],
)
def test_port_settings_from_string(text, settings):
    assert PortSettings.from_string(text) == settings


@pytest.mark.parametrize("text", [None, "", "fast", "115200", "115200 9N1", "115200 8X1", "8N1"])
def test_unparseable_port_settings(text):
    assert PortSettings.from_string(text) is None


def test_port_settings_text():
    assert str(HIGH_SPEED) == "115200 8N1"
    assert str(LOW_SPEED) == "9600 7E1"
