"""Tests for the Modbus RTU frame codec."""

import pytest

from common.exceptions import (
    CrcMismatch,
    FrameIncomplete,
    FrameTooShort,
    UnexpectedFunction,
    UnexpectedSlave,
)
from services.acquisition.frame_codec import (
    build_exception_response,
    build_read_request,
    build_read_response,
    crc16,
    format_frame,
    parse_read_request,
    parse_read_response,
    register_span,
)


class TestCrc16:
    """Known CRC16/MODBUS vectors."""

    @pytest.mark.parametrize(
        "body,expected_tail",
        [
            (bytes([0x01, 0x03, 0x00, 0x00, 0x00, 0x01]), bytes([0x84, 0x0A])),
            (bytes([0x01, 0x03, 0x00, 0x00, 0x00, 0x0A]), bytes([0xC5, 0xCD])),
            (bytes([0x11, 0x03, 0x00, 0x6B, 0x00, 0x03]), bytes([0x76, 0x87])),
        ],
    )
    def test_request_vectors(self, body: bytes, expected_tail: bytes) -> None:
        crc = crc16(body)
        assert bytes([crc & 0xFF, crc >> 8]) == expected_tail

    def test_check_string(self) -> None:
        assert crc16(b"123456789") == 0x4B37

    def test_empty_input_is_initial_value(self) -> None:
        assert crc16(b"") == 0xFFFF

    def test_deterministic(self) -> None:
        data = bytes(range(40))
        assert crc16(data) == crc16(data)


class TestBuildReadRequest:
    def test_layout(self) -> None:
        frame = build_read_request(1, 100, 4)
        assert len(frame) == 8
        assert list(frame[:6]) == [1, 3, 0, 100, 0, 4]
        crc = crc16(frame[:6])
        assert frame[6] == crc & 0xFF
        assert frame[7] == crc >> 8

    def test_known_frame(self) -> None:
        assert build_read_request(1, 0, 1) == bytes.fromhex("010300000001840A")

    def test_big_endian_address(self) -> None:
        frame = build_read_request(17, 0x006B, 3)
        assert frame == bytes.fromhex("1103006B00037687")

    @pytest.mark.parametrize(
        "slave,start,quantity",
        [
            (248, 0, 1),
            (-1, 0, 1),
            (1, -1, 1),
            (1, 0x10000, 1),
            (1, 0, 0),
            (1, 0, 126),
            (1, 65500, 40),
        ],
    )
    def test_rejects_out_of_range(self, slave: int, start: int, quantity: int) -> None:
        with pytest.raises(ValueError):
            build_read_request(slave, start, quantity)

    def test_accepts_range_ending_at_last_address(self) -> None:
        frame = build_read_request(1, 65535, 1)
        assert frame[2:4] == b"\xff\xff"


class TestRegisterSpan:
    def test_contiguous(self) -> None:
        assert register_span([10, 11, 12]) == (10, 3)

    def test_sparse_covers_gap(self) -> None:
        assert register_span([5, 0]) == (0, 6)

    def test_single(self) -> None:
        assert register_span([42]) == (42, 1)

    def test_empty_rejected(self) -> None:
        with pytest.raises(ValueError):
            register_span([])


class TestParseReadResponse:
    def test_decodes_values(self) -> None:
        frame = build_read_response(1, [250, 65436, 0])
        assert parse_read_response(frame, expected_slave=1) == [250, 65436, 0]

    def test_handwritten_frame(self) -> None:
        body = bytes([0x01, 0x03, 0x04, 0x00, 0xFA, 0x01, 0x00])
        crc = crc16(body)
        frame = body + bytes([crc & 0xFF, crc >> 8])
        assert parse_read_response(frame, 1) == [250, 256]

    def test_inverse_of_encoding_at_max_quantity(self) -> None:
        values = [(i * 521) & 0xFFFF for i in range(125)]
        assert parse_read_response(build_read_response(7, values), 7) == values

    def test_too_short(self) -> None:
        with pytest.raises(FrameTooShort) as exc:
            parse_read_response(b"\x01\x03\x02", 1)
        assert exc.value.length == 3

    def test_wrong_slave(self) -> None:
        frame = build_read_response(2, [1])
        with pytest.raises(UnexpectedSlave) as exc:
            parse_read_response(frame, 1)
        assert exc.value.expected == 1
        assert exc.value.actual == 2

    def test_wrong_function(self) -> None:
        frame = build_read_response(1, [1], function_code=0x04)
        with pytest.raises(UnexpectedFunction) as exc:
            parse_read_response(frame, 1)
        assert exc.value.actual == 0x04
        assert exc.value.exception_code is None

    def test_exception_reply_carries_code(self) -> None:
        frame = build_exception_response(1, 0x03, 0x02)
        assert len(frame) == 5
        with pytest.raises(UnexpectedFunction) as exc:
            parse_read_response(frame, 1)
        assert exc.value.actual == 0x83
        assert exc.value.exception_code == 0x02

    def test_incomplete(self) -> None:
        frame = build_read_response(1, [1, 2, 3])
        with pytest.raises(FrameIncomplete) as exc:
            parse_read_response(frame[:-3], 1)
        assert exc.value.required == 3 + 6 + 2

    def test_crc_mismatch(self) -> None:
        frame = bytearray(build_read_response(1, [1, 2]))
        frame[-1] ^= 0xFF
        with pytest.raises(CrcMismatch):
            parse_read_response(bytes(frame), 1)

    def test_crc_check_can_be_disabled(self) -> None:
        frame = bytearray(build_read_response(1, [300]))
        frame[-2] ^= 0xFF
        assert parse_read_response(bytes(frame), 1, verify_crc=False) == [300]

    def test_slave_checked_before_length(self) -> None:
        # Wrong slave and truncated: the slave check comes first
        frame = build_read_response(9, [1, 2, 3])[:6]
        with pytest.raises(UnexpectedSlave):
            parse_read_response(frame, 1)

    def test_trailing_bytes_ignored(self) -> None:
        frame = build_read_response(1, [5]) + b"\x00\x00"
        assert parse_read_response(frame, 1) == [5]


class TestSlaveSide:
    def test_parse_request(self) -> None:
        request = parse_read_request(build_read_request(3, 40, 12))
        assert request.slave_id == 3
        assert request.function_code == 0x03
        assert request.start_address == 40
        assert request.quantity == 12

    def test_parse_request_rejects_bad_crc(self) -> None:
        frame = bytearray(build_read_request(1, 0, 1))
        frame[6] ^= 0x01
        with pytest.raises(CrcMismatch):
            parse_read_request(bytes(frame))

    def test_parse_request_rejects_short(self) -> None:
        with pytest.raises(FrameTooShort):
            parse_read_request(b"\x01\x03\x00")

    def test_response_masks_values(self) -> None:
        frame = build_read_response(1, [-100])
        assert parse_read_response(frame, 1) == [65436]

    def test_response_rejects_too_many_values(self) -> None:
        with pytest.raises(ValueError):
            build_read_response(1, [0] * 126)

    def test_format_frame(self) -> None:
        assert format_frame(bytes.fromhex("010300000001840A")) == "01 03 00 00 00 01 84 0A"
