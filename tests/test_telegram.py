from datetime import datetime

import pytest

from conftest import DSMR3_TELEGRAM, DSMR5_LINES, build_telegram, tampered_checksum
from dsmr_app.cosem import CosemObjectType
from dsmr_app.models import TelegramState
from dsmr_app.telegram import P1TelegramParser, crc16


@pytest.fixture
def received():
    return []


@pytest.fixture
def parser(received):
    return P1TelegramParser(received.append)


@pytest.fixture
def lenient_parser(received):
    return P1TelegramParser(received.append, lenient_mode=True)


def test_crc16_check_value():
    assert crc16(b"123456789") == 0xBB3D


def test_crc16_is_incremental():
    assert crc16(b"56789", crc16(b"1234")) == crc16(b"123456789")


def test_valid_telegram(parser, received):
    parser.parse_data(build_telegram())

    assert len(received) == 1
    telegram = received[0]
    assert telegram.state is TelegramState.OK
    assert telegram.header == "ISk5\\2MT382-1000"
    assert len(telegram.records) == len(DSMR5_LINES)
    assert telegram.records[0].type is CosemObjectType.P1_VERSION_OUTPUT
    assert telegram.records[1].value == datetime(2010, 12, 9, 11, 30, 20)
    assert telegram.records[-1].type is CosemObjectType.MBUS_DELIVERY
    assert telegram.records[-1].channel == 1


def test_fragmentation_does_not_change_the_result(received):
    telegram = build_telegram()

    P1TelegramParser(received.append).parse_data(telegram)
    byte_parser = P1TelegramParser(received.append)
    for index in range(len(telegram)):
        byte_parser.parse_data(telegram[index:index + 1])
    chunk_parser = P1TelegramParser(received.append)
    for index in range(0, len(telegram), 7):
        chunk_parser.parse_data(telegram[index:index + 7])

    assert len(received) == 3
    assert received[0] == received[1] == received[2]


def test_noise_before_start_marker_is_ignored(parser, received):
    parser.parse_data(b"\x00\xff garbage)(1-0:1.8.1(1.0*kWh)\r\n!1234\r\n" + build_telegram())

    assert len(received) == 1
    assert received[0].state is TelegramState.OK


def test_two_telegrams_in_one_chunk(parser, received):
    parser.parse_data(build_telegram() + build_telegram())

    assert [telegram.state for telegram in received] == [TelegramState.OK, TelegramState.OK]


def test_tampered_checksum_emits_no_records(parser, received):
    parser.parse_data(tampered_checksum(build_telegram()))

    assert len(received) == 1
    assert received[0].state is TelegramState.INVALID
    assert received[0].records == ()


def test_tampered_checksum_in_lenient_mode_emits_decoded_records(lenient_parser, received):
    parser_output = []
    P1TelegramParser(parser_output.append).parse_data(build_telegram())

    lenient_parser.parse_data(tampered_checksum(build_telegram()))

    assert received[0].state is TelegramState.INVALID
    assert received[0].records == parser_output[0].records


def test_tampered_payload_fails_checksum(parser, received):
    telegram = build_telegram().replace(b"01.193*kW", b"01.194*kW")

    parser.parse_data(telegram)

    assert received[0].state is TelegramState.INVALID


def test_unknown_lines_are_ignored(received):
    lines = list(DSMR5_LINES)
    lines.insert(3, "0-0:96.99.99(SOMETHING NEW)")
    lines.insert(8, "1-0:99.1.0(1)(2)")

    P1TelegramParser(received.append).parse_data(build_telegram())
    P1TelegramParser(received.append).parse_data(build_telegram(lines))

    assert received[1].state is TelegramState.OK
    assert received[1].records == received[0].records


def test_malformed_record_discards_telegram(parser, received):
    lines = list(DSMR5_LINES)
    lines[3] = "1-0:1.8.1(12x.789*kWh)"

    parser.parse_data(build_telegram(lines))

    assert received == []
    parser.parse_data(build_telegram())
    assert len(received) == 1


def test_malformed_record_is_skipped_in_lenient_mode(lenient_parser, received):
    lines = list(DSMR5_LINES)
    lines[3] = "1-0:1.8.1(123.789*m3)"

    lenient_parser.parse_data(build_telegram(lines))

    assert received[0].state is TelegramState.OK
    assert len(received[0].records) == len(DSMR5_LINES) - 1
    assert CosemObjectType.EMETER_DELIVERY_TARIFF1 not in {record.type for record in received[0].records}


def test_abort_telegram_discards_in_flight_telegram(parser, received):
    telegram = build_telegram()
    half = len(telegram) // 2

    parser.parse_data(telegram[:half])
    parser.abort_telegram()
    parser.parse_data(telegram[half:])

    assert received == []


def test_new_start_marker_discards_previous_accumulation(parser, received):
    telegram = build_telegram()

    parser.parse_data(telegram[: len(telegram) // 2])
    parser.parse_data(telegram)

    assert len(received) == 1
    assert received[0].state is TelegramState.OK


def test_telegram_without_checksum(parser, received):
    parser.parse_data(DSMR3_TELEGRAM)

    assert len(received) == 1
    telegram = received[0]
    assert telegram.state is TelegramState.OK
    gas = telegram.records[-1]
    assert gas.type is CosemObjectType.GMETER_VALUE_V3
    assert gas.channel == 1
    assert gas.values[6].value == pytest.approx(890.473)


def test_malformed_checksum_is_incomplete(parser, received):
    parser.parse_data(build_telegram(checksum="XY"))

    assert received[0].state is TelegramState.INCOMPLETE
    assert received[0].records == ()


def test_wrapped_text_message_is_joined(parser, received):
    lines = list(DSMR5_LINES)
    lines[17] = "0-0:96.13.0(3031323334\r\n3536373839)"

    parser.parse_data(build_telegram(lines))

    text = next(record for record in received[0].records if record.type is CosemObjectType.P1_TEXT_STRING)
    assert text.value == "0123456789"


def test_unbalanced_unknown_line_does_not_swallow_records(received):
    lines = list(DSMR5_LINES)
    lines.insert(3, "0-0:96.99.9(abc")

    P1TelegramParser(received.append).parse_data(build_telegram())
    P1TelegramParser(received.append).parse_data(build_telegram(lines))

    assert received[1].state is TelegramState.OK
    assert received[1].records == received[0].records
