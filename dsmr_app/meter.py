from __future__ import annotations

import logging
import weakref
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable

from dsmr_app.cosem import COSEM_OBJECT_SPECS, CosemObject, CosemObjectType

logger = logging.getLogger(__name__)


class MeterKind(str, Enum):
    DEVICE = "P1 device"
    ELECTRICITY = "Main electricity meter"
    SLAVE_ELECTRICITY = "Slave electricity meter"
    GAS = "Gas meter"
    WATER = "Water meter"
    HEAT = "Heat meter"
    COOLING = "Cooling meter"
    GENERIC = "Generic M-Bus meter"

    @property
    def is_mbus(self) -> bool:
        return self not in (MeterKind.DEVICE, MeterKind.ELECTRICITY)


# M-Bus device types (EN 13757-3)
MBUS_DEVICE_TYPES: dict[int, MeterKind] = {
    2: MeterKind.SLAVE_ELECTRICITY,
    3: MeterKind.GAS,
    4: MeterKind.HEAT,
    6: MeterKind.WATER,
    7: MeterKind.WATER,
    10: MeterKind.COOLING,
    11: MeterKind.COOLING,
    12: MeterKind.HEAT,
}

_T = CosemObjectType

_DEVICE_RECORDS = frozenset(
    {_T.P1_VERSION_OUTPUT, _T.P1_TIMESTAMP, _T.P1_TEXT_CODE, _T.P1_TEXT_STRING}
)

_IDENTIFIER_RECORDS = frozenset({_T.EMETER_EQUIPMENT_IDENTIFIER, _T.MBUS_EQUIPMENT_IDENTIFIER})


def record_kind(record: CosemObject) -> MeterKind | None:
    """Kind of meter a record belongs to, None for M-Bus records (typed per channel)."""
    if COSEM_OBJECT_SPECS[record.type].is_mbus:
        return None
    if record.type in _DEVICE_RECORDS:
        return MeterKind.DEVICE
    return MeterKind.ELECTRICITY


def _value_at(index: int) -> Callable[[CosemObject], object]:
    def extract(record: CosemObject) -> object:
        return record.values[index].value if len(record.values) > index else None

    return extract


def _last_power_failure(record: CosemObject) -> object:
    # Only the most recent entry: (end of failure, duration in seconds)
    if len(record.values) < 4:
        return None
    return record.values[-2].value, record.values[-1].value


_VALUE_EXTRACTORS: dict[CosemObjectType, Callable[[CosemObject], object]] = {
    _T.EMETER_POWER_FAILURE_LOG: _last_power_failure,
    _T.MBUS_DELIVERY: _value_at(1),
    _T.GMETER_VALUE_V3: _value_at(6),
}


def primary_value(record: CosemObject) -> object:
    """The value a meter reports for a record."""
    return _VALUE_EXTRACTORS.get(record.type, _value_at(0))(record)


@dataclass(frozen=True)
class MeterDescriptor:
    kind: MeterKind
    channel: int | None = None
    identifier: str = field(default="", compare=False)

    def __str__(self) -> str:
        channel = "default" if self.channel is None else self.channel
        return f"{self.kind.name.lower()}:{channel}"


@dataclass(frozen=True)
class MeterReading:
    descriptor: MeterDescriptor
    record: CosemObject
    value: object


class Meter:
    """A logical meter on the P1 line, claiming the records that belong to it."""

    def __init__(self, descriptor: MeterDescriptor, on_reading: Callable[[MeterReading], None]):
        self._descriptor = descriptor
        self._on_reading = on_reading

    @property
    def descriptor(self) -> MeterDescriptor:
        return self._descriptor

    def claims(self, record: CosemObject) -> bool:
        if self._descriptor.kind.is_mbus:
            return record.channel is not None and record.channel == self._descriptor.channel
        return record_kind(record) is self._descriptor.kind

    def handle_records(self, records: Iterable[CosemObject]) -> list[CosemObject]:
        claimed = [record for record in records if self.claims(record)]
        for record in claimed:
            self._on_reading(MeterReading(self._descriptor, record, primary_value(record)))
        return claimed

    def __repr__(self) -> str:
        return f"Meter({self._descriptor})"


class MeterDetector:
    """Infers meter descriptors from records no registered meter claimed."""

    def detect_meters(self, records: Iterable[CosemObject]) -> list[MeterDescriptor]:
        detected: dict[MeterDescriptor, MeterDescriptor] = {}
        channels: dict[int, list[CosemObject]] = {}

        for record in records:
            kind = record_kind(record)
            if kind is None:
                channels.setdefault(record.channel, []).append(record)
            else:
                descriptor = MeterDescriptor(kind, None, _identifier([record]))
                if descriptor not in detected or descriptor.identifier:
                    detected[descriptor] = descriptor

        for channel, channel_records in sorted(channels.items()):
            descriptor = MeterDescriptor(_mbus_kind(channel_records), channel, _identifier(channel_records))
            detected[descriptor] = descriptor

        return list(detected.values())


def _mbus_kind(records: list[CosemObject]) -> MeterKind:
    for record in records:
        if record.type is _T.MBUS_DEVICE_TYPE:
            return MBUS_DEVICE_TYPES.get(record.value, MeterKind.GENERIC)
    if any(record.type is _T.GMETER_VALUE_V3 for record in records):
        return MeterKind.GAS
    return MeterKind.GENERIC


def _identifier(records: list[CosemObject]) -> str:
    for record in records:
        if record.type in _IDENTIFIER_RECORDS:
            return str(record.value)
    return ""


class MeterDispatcher:
    """Offers record batches to the registered meters and reports unclaimed meters.

    Meters are held by weak reference; their owner keeps them alive.
    """

    def __init__(
        self,
        on_meter_discovered: Callable[[MeterDescriptor], bool] | None = None,
        detector: MeterDetector | None = None,
    ):
        self._on_meter_discovered = on_meter_discovered
        self._detector = detector or MeterDetector()
        self._meters: list[weakref.ref[Meter]] = []
        self._accepted: set[MeterDescriptor] = set()

    @property
    def meters(self) -> list[Meter]:
        return [meter for meter in (ref() for ref in self._meters) if meter is not None]

    def add_meter(self, meter: Meter) -> None:
        if meter in self.meters:
            return
        logger.debug("Add meter %s to set of supported meters", meter)
        descriptor = meter.descriptor
        self._meters.append(weakref.ref(meter, lambda ref: self._meter_collected(ref, descriptor)))

    def remove_meter(self, meter: Meter) -> None:
        self._meters = [ref for ref in self._meters if ref() is not None and ref() is not meter]
        self._accepted.discard(meter.descriptor)

    def _meter_collected(self, ref: weakref.ref[Meter], descriptor: MeterDescriptor) -> None:
        logger.debug("Meter %s was released, it can be discovered again", descriptor)
        self._meters = [item for item in self._meters if item is not ref]
        if all(meter.descriptor != descriptor for meter in self.meters):
            self._accepted.discard(descriptor)

    def dispatch(self, records: Iterable[CosemObject]) -> list[MeterDescriptor]:
        """Hand records to the meters, returns the descriptors of newly detected meters."""
        remaining = list(records)
        for meter in self.meters:
            if not remaining:
                break
            claimed = meter.handle_records(remaining)
            logger.debug("Meter %s processed %d records", meter, len(claimed))
            if claimed:
                claimed_ids = {id(record) for record in claimed}
                remaining = [record for record in remaining if id(record) not in claimed_ids]

        if not remaining:
            return []

        logger.info("There are %d unhandled records, start autodetecting meters", len(remaining))
        detected = [
            descriptor
            for descriptor in self._detector.detect_meters(remaining)
            if descriptor not in self._accepted
        ]
        logger.info("Detected the following new meters: %s", ", ".join(map(str, detected)) or "none")

        if self._on_meter_discovered is None:
            logger.warning("There is no listener for new meters")
            return detected
        for descriptor in detected:
            if self._on_meter_discovered(descriptor):
                self._accepted.add(descriptor)
            else:
                logger.info("Discovery rejected meter %s", descriptor)
        return detected
