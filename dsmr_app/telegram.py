from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from dsmr_app.cosem import CosemObject, CosemParseError, parse_cosem_object
from dsmr_app.models import TelegramState

logger = logging.getLogger(__name__)

START_MARKER = ord("/")
END_MARKER = ord("!")
LINE_FEED = ord("\n")
CARRIAGE_RETURN = ord("\r")

# Lines longer than this are considered line noise
MAX_LINE_LENGTH = 4096

_CHECKSUM_PATTERN = re.compile(r"^[0-9A-Fa-f]{4}$")
_RECORD_START_PATTERN = re.compile(r"^\d+-\d+:\d+\.\d+\.\d+")


def crc16(data: bytes, crc: int = 0) -> int:
    """CRC-16/ARC as used by DSMR 4 and up, can be updated incrementally."""
    for byte in data:
        crc ^= byte
        for _ in range(8):
            crc = (crc >> 1) ^ 0xA001 if crc & 1 else crc >> 1
    return crc


@dataclass(frozen=True)
class P1Telegram:
    header: str
    records: tuple[CosemObject, ...]
    state: TelegramState


class _ParserState(Enum):
    WAIT_FOR_START = "wait_for_start"
    HEADER = "header"
    DATA = "data"
    CHECKSUM = "checksum"


@dataclass
class _TelegramBuffer:
    header: str = ""
    records: list[CosemObject] = field(default_factory=list)
    crc: int = 0
    line: bytearray = field(default_factory=bytearray)
    pending_line: str = ""


class P1TelegramParser:
    """Rebuilds P1 telegrams from a byte stream delivered in arbitrary chunks.

    Completed telegrams are handed to ``on_telegram`` from within the
    ``parse_data`` call that completed them.
    """

    def __init__(self, on_telegram: Callable[[P1Telegram], None], lenient_mode: bool = False):
        self._on_telegram = on_telegram
        self._lenient_mode = lenient_mode
        self._state = _ParserState.WAIT_FOR_START
        self._buffer = _TelegramBuffer()

    @property
    def lenient_mode(self) -> bool:
        return self._lenient_mode

    def parse_data(self, data: bytes) -> None:
        for byte in data:
            self._parse_byte(byte)

    def abort_telegram(self) -> None:
        if self._state is not _ParserState.WAIT_FOR_START:
            logger.debug("Aborting telegram with %d records", len(self._buffer.records))
        self.reset()

    def reset(self) -> None:
        self._state = _ParserState.WAIT_FOR_START
        self._buffer = _TelegramBuffer()

    def _parse_byte(self, byte: int) -> None:
        if byte == START_MARKER:
            if self._state is not _ParserState.WAIT_FOR_START:
                logger.debug("Start of new telegram, discarding %d uncommitted records", len(self._buffer.records))
            self._buffer = _TelegramBuffer(crc=crc16(bytes((byte,))))
            self._buffer.line.append(byte)
            self._state = _ParserState.HEADER
            return

        if self._state is _ParserState.WAIT_FOR_START:
            return

        buffer = self._buffer
        if self._state is _ParserState.CHECKSUM:
            if byte == LINE_FEED:
                self._finish_telegram(buffer.line.decode("ascii", errors="replace").strip())
            elif len(buffer.line) < MAX_LINE_LENGTH:
                buffer.line.append(byte)
            else:
                self._discard("checksum line too long")
            return

        buffer.crc = crc16(bytes((byte,)), buffer.crc)

        if self._state is _ParserState.DATA and byte == END_MARKER and not buffer.line:
            if not self._flush_pending_line():
                return
            self._state = _ParserState.CHECKSUM
            return

        if byte == LINE_FEED:
            line = buffer.line.decode("ascii", errors="replace").strip()
            buffer.line.clear()
            if self._state is _ParserState.HEADER:
                buffer.header = line.lstrip("/")
                self._state = _ParserState.DATA
            else:
                self._handle_line(line)
        elif byte != CARRIAGE_RETURN:
            if len(buffer.line) >= MAX_LINE_LENGTH:
                self._discard("line too long")
                return
            buffer.line.append(byte)

    def _handle_line(self, line: str) -> None:
        if not line:
            return
        buffer = self._buffer
        if buffer.pending_line and self._continues_record(line):
            buffer.pending_line += line
            return
        if self._flush_pending_line():
            buffer.pending_line = line

    def _continues_record(self, line: str) -> bool:
        # A line starting with an identifier always starts a new record
        if _RECORD_START_PATTERN.match(line):
            return False
        pending = self._buffer.pending_line
        return line.startswith("(") or pending.count("(") > pending.count(")")

    def _flush_pending_line(self) -> bool:
        """Decode the pending line, returns False if the telegram was discarded."""
        buffer = self._buffer
        line, buffer.pending_line = buffer.pending_line, ""
        if not line:
            return True
        try:
            record = parse_cosem_object(line)
        except CosemParseError as exc:
            if self._lenient_mode:
                logger.debug("Skipping malformed record %r: %s", line, exc)
                return True
            logger.warning("Discarding telegram, malformed record %r: %s", line, exc)
            self.reset()
            return False

        if record is None:
            logger.debug("Ignoring unknown line %r", line)
        else:
            buffer.records.append(record)
        return True

    def _finish_telegram(self, checksum: str) -> None:
        buffer = self._buffer
        if not checksum:
            # DSMR 2.x and 3.x telegrams have no checksum
            state = TelegramState.OK
        elif _CHECKSUM_PATTERN.match(checksum):
            state = TelegramState.OK if int(checksum, 16) == buffer.crc else TelegramState.INVALID
        else:
            state = TelegramState.INCOMPLETE

        if state is TelegramState.OK or self._lenient_mode:
            records = tuple(buffer.records)
        else:
            records = ()
        if state is not TelegramState.OK:
            logger.debug(
                "Telegram %s (checksum %r, calculated %04X), emitting %d records",
                state.name,
                checksum,
                buffer.crc,
                len(records),
            )

        self.reset()
        self._on_telegram(P1Telegram(header=buffer.header, records=records, state=state))

    def _discard(self, reason: str) -> None:
        logger.debug("Discarding telegram: %s", reason)
        self.reset()
