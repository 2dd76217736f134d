from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

OBIS_PATTERN = re.compile(r"^(\d+)-(\d+):(\d+\.\d+\.\d+)$")
_LINE_PATTERN = re.compile(r"^(\d+-\d+:\d+\.\d+\.\d+)(.*)$")
_FIELD_PATTERN = re.compile(r"\(([^()]*)\)")
_TIMESTAMP_PATTERN = re.compile(r"^(\d{12})([SW]?)$")


class CosemParseError(ValueError):
    """Raised when a known record carries an unexpected value list."""


class CosemValueKind(str, Enum):
    STRING = "string"
    INTEGER = "integer"
    FLOAT = "float"
    TIMESTAMP = "timestamp"
    OBIS = "obis"
    HEX_TEXT = "hex_text"


@dataclass(frozen=True)
class ValueSpec:
    kind: CosemValueKind
    units: tuple[str, ...] = ()


@dataclass(frozen=True)
class CosemValue:
    kind: CosemValueKind
    value: object
    unit: str = ""


class CosemObjectType(str, Enum):
    P1_VERSION_OUTPUT = "p1_version_output"
    P1_TIMESTAMP = "p1_timestamp"
    P1_TEXT_CODE = "p1_text_code"
    P1_TEXT_STRING = "p1_text_string"
    EMETER_EQUIPMENT_IDENTIFIER = "emeter_equipment_identifier"
    EMETER_DELIVERY_TARIFF1 = "emeter_delivery_tariff1"
    EMETER_DELIVERY_TARIFF2 = "emeter_delivery_tariff2"
    EMETER_PRODUCTION_TARIFF1 = "emeter_production_tariff1"
    EMETER_PRODUCTION_TARIFF2 = "emeter_production_tariff2"
    EMETER_TARIFF_INDICATOR = "emeter_tariff_indicator"
    EMETER_ACTUAL_DELIVERY = "emeter_actual_delivery"
    EMETER_ACTUAL_PRODUCTION = "emeter_actual_production"
    EMETER_ACTUAL_THRESHOLD = "emeter_actual_threshold"
    EMETER_SWITCH_POSITION = "emeter_switch_position"
    EMETER_POWER_FAILURES = "emeter_power_failures"
    EMETER_LONG_POWER_FAILURES = "emeter_long_power_failures"
    EMETER_POWER_FAILURE_LOG = "emeter_power_failure_log"
    EMETER_VOLTAGE_SAGS_L1 = "emeter_voltage_sags_l1"
    EMETER_VOLTAGE_SAGS_L2 = "emeter_voltage_sags_l2"
    EMETER_VOLTAGE_SAGS_L3 = "emeter_voltage_sags_l3"
    EMETER_VOLTAGE_SWELLS_L1 = "emeter_voltage_swells_l1"
    EMETER_VOLTAGE_SWELLS_L2 = "emeter_voltage_swells_l2"
    EMETER_VOLTAGE_SWELLS_L3 = "emeter_voltage_swells_l3"
    EMETER_INSTANT_VOLTAGE_L1 = "emeter_instant_voltage_l1"
    EMETER_INSTANT_VOLTAGE_L2 = "emeter_instant_voltage_l2"
    EMETER_INSTANT_VOLTAGE_L3 = "emeter_instant_voltage_l3"
    EMETER_INSTANT_CURRENT_L1 = "emeter_instant_current_l1"
    EMETER_INSTANT_CURRENT_L2 = "emeter_instant_current_l2"
    EMETER_INSTANT_CURRENT_L3 = "emeter_instant_current_l3"
    EMETER_INSTANT_POWER_DELIVERY_L1 = "emeter_instant_power_delivery_l1"
    EMETER_INSTANT_POWER_DELIVERY_L2 = "emeter_instant_power_delivery_l2"
    EMETER_INSTANT_POWER_DELIVERY_L3 = "emeter_instant_power_delivery_l3"
    EMETER_INSTANT_POWER_PRODUCTION_L1 = "emeter_instant_power_production_l1"
    EMETER_INSTANT_POWER_PRODUCTION_L2 = "emeter_instant_power_production_l2"
    EMETER_INSTANT_POWER_PRODUCTION_L3 = "emeter_instant_power_production_l3"
    MBUS_DEVICE_TYPE = "mbus_device_type"
    MBUS_EQUIPMENT_IDENTIFIER = "mbus_equipment_identifier"
    MBUS_DELIVERY = "mbus_delivery"
    MBUS_VALVE_POSITION = "mbus_valve_position"
    GMETER_VALUE_V3 = "gmeter_value_v3"


@dataclass(frozen=True)
class CosemObjectSpec:
    object_type: CosemObjectType
    obis: str
    values: tuple[ValueSpec, ...]
    # Value specs repeated for every entry of a buffer (e.g. the power failure log)
    repeated: tuple[ValueSpec, ...] = ()

    @property
    def is_mbus(self) -> bool:
        return "-n:" in self.obis


@dataclass(frozen=True)
class CosemObject:
    type: CosemObjectType
    obis: str
    channel: int | None
    values: tuple[CosemValue, ...]

    @property
    def value(self) -> object:
        return self.values[0].value if self.values else None


_STRING = ValueSpec(CosemValueKind.STRING)
_INTEGER = ValueSpec(CosemValueKind.INTEGER)
_TIMESTAMP = ValueSpec(CosemValueKind.TIMESTAMP)
_OBIS = ValueSpec(CosemValueKind.OBIS)
_HEX_TEXT = ValueSpec(CosemValueKind.HEX_TEXT)
_KWH = ValueSpec(CosemValueKind.FLOAT, ("kWh",))
_KW = ValueSpec(CosemValueKind.FLOAT, ("kW",))
_VOLT = ValueSpec(CosemValueKind.FLOAT, ("V",))
_AMPERE = ValueSpec(CosemValueKind.FLOAT, ("A",))
_SECONDS = ValueSpec(CosemValueKind.INTEGER, ("s",))
_MBUS_VOLUME = ValueSpec(CosemValueKind.FLOAT, ("m3", "GJ", "kWh"))


def _spec(object_type: CosemObjectType, obis: str, *values: ValueSpec, repeated=()) -> CosemObjectSpec:
    return CosemObjectSpec(object_type=object_type, obis=obis, values=values, repeated=tuple(repeated))


_T = CosemObjectType

COSEM_OBJECT_SPECS: dict[CosemObjectType, CosemObjectSpec] = {
    spec.object_type: spec
    for spec in (
        _spec(_T.P1_VERSION_OUTPUT, "1-3:0.2.8", _STRING),
        _spec(_T.P1_TIMESTAMP, "0-0:1.0.0", _TIMESTAMP),
        _spec(_T.P1_TEXT_CODE, "0-0:96.13.1", _HEX_TEXT),
        _spec(_T.P1_TEXT_STRING, "0-0:96.13.0", _HEX_TEXT),
        _spec(_T.EMETER_EQUIPMENT_IDENTIFIER, "0-0:96.1.1", _STRING),
        _spec(_T.EMETER_DELIVERY_TARIFF1, "1-0:1.8.1", _KWH),
        _spec(_T.EMETER_DELIVERY_TARIFF2, "1-0:1.8.2", _KWH),
        _spec(_T.EMETER_PRODUCTION_TARIFF1, "1-0:2.8.1", _KWH),
        _spec(_T.EMETER_PRODUCTION_TARIFF2, "1-0:2.8.2", _KWH),
        _spec(_T.EMETER_TARIFF_INDICATOR, "0-0:96.14.0", _STRING),
        _spec(_T.EMETER_ACTUAL_DELIVERY, "1-0:1.7.0", _KW),
        _spec(_T.EMETER_ACTUAL_PRODUCTION, "1-0:2.7.0", _KW),
        # DSMR 2.x/3.x report the threshold in A, later versions in kW
        _spec(_T.EMETER_ACTUAL_THRESHOLD, "0-0:17.0.0", ValueSpec(CosemValueKind.FLOAT, ("kW", "A"))),
        _spec(_T.EMETER_SWITCH_POSITION, "0-0:96.3.10", _INTEGER),
        _spec(_T.EMETER_POWER_FAILURES, "0-0:96.7.21", _INTEGER),
        _spec(_T.EMETER_LONG_POWER_FAILURES, "0-0:96.7.9", _INTEGER),
        _spec(_T.EMETER_POWER_FAILURE_LOG, "1-0:99.97.0", _INTEGER, _OBIS, repeated=(_TIMESTAMP, _SECONDS)),
        _spec(_T.EMETER_VOLTAGE_SAGS_L1, "1-0:32.32.0", _INTEGER),
        _spec(_T.EMETER_VOLTAGE_SAGS_L2, "1-0:52.32.0", _INTEGER),
        _spec(_T.EMETER_VOLTAGE_SAGS_L3, "1-0:72.32.0", _INTEGER),
        _spec(_T.EMETER_VOLTAGE_SWELLS_L1, "1-0:32.36.0", _INTEGER),
        _spec(_T.EMETER_VOLTAGE_SWELLS_L2, "1-0:52.36.0", _INTEGER),
        _spec(_T.EMETER_VOLTAGE_SWELLS_L3, "1-0:72.36.0", _INTEGER),
        _spec(_T.EMETER_INSTANT_VOLTAGE_L1, "1-0:32.7.0", _VOLT),
        _spec(_T.EMETER_INSTANT_VOLTAGE_L2, "1-0:52.7.0", _VOLT),
        _spec(_T.EMETER_INSTANT_VOLTAGE_L3, "1-0:72.7.0", _VOLT),
        _spec(_T.EMETER_INSTANT_CURRENT_L1, "1-0:31.7.0", _AMPERE),
        _spec(_T.EMETER_INSTANT_CURRENT_L2, "1-0:51.7.0", _AMPERE),
        _spec(_T.EMETER_INSTANT_CURRENT_L3, "1-0:71.7.0", _AMPERE),
        _spec(_T.EMETER_INSTANT_POWER_DELIVERY_L1, "1-0:21.7.0", _KW),
        _spec(_T.EMETER_INSTANT_POWER_DELIVERY_L2, "1-0:41.7.0", _KW),
        _spec(_T.EMETER_INSTANT_POWER_DELIVERY_L3, "1-0:61.7.0", _KW),
        _spec(_T.EMETER_INSTANT_POWER_PRODUCTION_L1, "1-0:22.7.0", _KW),
        _spec(_T.EMETER_INSTANT_POWER_PRODUCTION_L2, "1-0:42.7.0", _KW),
        _spec(_T.EMETER_INSTANT_POWER_PRODUCTION_L3, "1-0:62.7.0", _KW),
        _spec(_T.MBUS_DEVICE_TYPE, "0-n:24.1.0", _INTEGER),
        _spec(_T.MBUS_EQUIPMENT_IDENTIFIER, "0-n:96.1.0", _STRING),
        _spec(_T.MBUS_DELIVERY, "0-n:24.2.1", _TIMESTAMP, _MBUS_VOLUME),
        _spec(_T.MBUS_VALVE_POSITION, "0-n:24.4.0", _INTEGER),
        # DSMR 3: (timestamp)(status)(period)(scale)(obis)(unit)(value)
        _spec(
            _T.GMETER_VALUE_V3,
            "0-n:24.3.0",
            _TIMESTAMP,
            _STRING,
            _INTEGER,
            _INTEGER,
            _OBIS,
            _STRING,
            ValueSpec(CosemValueKind.FLOAT),
        ),
    )
}

_SPECS_BY_OBIS: dict[str, CosemObjectSpec] = {spec.obis: spec for spec in COSEM_OBJECT_SPECS.values()}


def find_spec(obis: str) -> tuple[CosemObjectSpec, int | None] | None:
    """Look up the catalogue entry for an identifier, returning it with the M-Bus channel."""
    spec = _SPECS_BY_OBIS.get(obis)
    if spec is not None:
        return spec, None
    match = OBIS_PATTERN.match(obis)
    if match is None:
        return None
    medium, channel, code = match.groups()
    spec = _SPECS_BY_OBIS.get(f"{medium}-n:{code}")
    if spec is None:
        return None
    return spec, int(channel)


def parse_cosem_object(line: str) -> CosemObject | None:
    """Decode one telegram data line.

    Returns None for identifiers that are not in the catalogue and raises
    CosemParseError when a known identifier has an unexpected value list.
    """
    match = _LINE_PATTERN.match(line.strip())
    if match is None:
        return None
    obis, rest = match.groups()
    found = find_spec(obis)
    if found is None:
        return None
    spec, channel = found

    fields = _FIELD_PATTERN.findall(rest)
    if "".join(f"({field})" for field in fields) != rest:
        raise CosemParseError(f"Malformed value list for {obis}: {rest!r}")

    value_specs = _expected_value_specs(spec, fields)
    if len(value_specs) != len(fields):
        raise CosemParseError(f"{obis} expects {len(value_specs)} values, got {len(fields)}")

    values = tuple(parse_value(value_spec, field) for value_spec, field in zip(value_specs, fields))
    return CosemObject(type=spec.object_type, obis=obis, channel=channel, values=values)


def _expected_value_specs(spec: CosemObjectSpec, fields: list[str]) -> tuple[ValueSpec, ...]:
    if not spec.repeated:
        return spec.values
    if not fields:
        raise CosemParseError(f"{spec.obis} has no buffer length")
    try:
        entries = int(fields[0])
    except ValueError as exc:
        raise CosemParseError(f"{spec.obis} has an invalid buffer length {fields[0]!r}") from exc
    return spec.values + spec.repeated * entries


def parse_value(spec: ValueSpec, field: str) -> CosemValue:
    text, _, unit = field.partition("*")
    text = text.strip()
    unit = unit.strip()
    if unit and spec.units and unit.lower() not in (u.lower() for u in spec.units):
        raise CosemParseError(f"Unexpected unit {unit!r}, expected one of {spec.units}")

    try:
        if spec.kind is CosemValueKind.INTEGER:
            value: object = int(text)
        elif spec.kind is CosemValueKind.FLOAT:
            value = float(text)
        elif spec.kind is CosemValueKind.TIMESTAMP:
            value = _parse_timestamp(text)
        elif spec.kind is CosemValueKind.OBIS:
            if OBIS_PATTERN.match(text) is None:
                raise CosemParseError(f"Invalid OBIS reference {text!r}")
            value = text
        elif spec.kind is CosemValueKind.HEX_TEXT:
            value = _decode_hex_text(text)
        else:
            value = field
    except ValueError as exc:
        if isinstance(exc, CosemParseError):
            raise
        raise CosemParseError(f"Invalid {spec.kind.value} value {field!r}") from exc
    return CosemValue(kind=spec.kind, value=value, unit=unit)


def _parse_timestamp(text: str) -> datetime:
    match = _TIMESTAMP_PATTERN.match(text)
    if match is None:
        raise CosemParseError(f"Invalid timestamp {text!r}")
    return datetime.strptime(match.group(1), "%y%m%d%H%M%S")


def _decode_hex_text(text: str) -> str:
    try:
        return bytes.fromhex(text).decode("ascii", errors="replace")
    except ValueError:
        # Some meters send the message as plain text
        return text
