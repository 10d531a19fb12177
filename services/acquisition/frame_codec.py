"""
Modbus RTU Frame Codec

Builds and parses read-holding-registers (function 0x03) frames.

Request:   slave | fc | startHi | startLo | qtyHi | qtyLo | crcLo | crcHi
Response:  slave | fc | byteCount | value x (byteCount/2) | crcLo | crcHi

Addresses, quantities and register values are big-endian; the CRC is
appended low byte first.
"""

import struct
from dataclasses import dataclass
from typing import Iterable, Sequence

from common.exceptions import (
    CrcMismatch,
    FrameIncomplete,
    FrameTooShort,
    UnexpectedFunction,
    UnexpectedSlave,
)

READ_HOLDING_REGISTERS = 0x03
EXCEPTION_FLAG = 0x80

MAX_SLAVE_ID = 247
MAX_QUANTITY = 125
MIN_RESPONSE_LENGTH = 5
REQUEST_LENGTH = 8

_CRC_INITIAL = 0xFFFF
_CRC_POLY = 0xA001


def _build_crc_table() -> tuple[int, ...]:
    table = []
    for byte in range(256):
        crc = byte
        for _ in range(8):
            if crc & 0x0001:
                crc = (crc >> 1) ^ _CRC_POLY
            else:
                crc >>= 1
        table.append(crc)
    return tuple(table)


_CRC_TABLE = _build_crc_table()


def crc16(data: bytes) -> int:
    """
    CRC16/MODBUS of a byte sequence (reflected, poly 0xA001, init 0xFFFF).

    Examples:
        crc16(b"123456789") -> 0x4B37
        crc16(bytes([0x01, 0x03, 0x00, 0x00, 0x00, 0x01])) -> 0x0A84
    """
    crc = _CRC_INITIAL
    for byte in data:
        crc = (crc >> 8) ^ _CRC_TABLE[(crc ^ byte) & 0xFF]
    return crc


def _append_crc(body: bytes) -> bytes:
    return body + struct.pack("<H", crc16(body))


@dataclass(frozen=True)
class ReadRequest:
    """A decoded FC03 request (slave side)"""
    slave_id: int
    function_code: int
    start_address: int
    quantity: int


def build_read_request(
    slave_id: int,
    start_address: int,
    quantity: int,
    function_code: int = READ_HOLDING_REGISTERS,
) -> bytes:
    """
    Build an 8-byte read request.

    Args:
        slave_id: Modbus slave (0-247)
        start_address: First register (0-65535)
        quantity: Number of registers (1-125)
        function_code: Function code, 0x03 by default

    Returns:
        Request frame including CRC

    Raises:
        ValueError: Any argument outside its range
    """
    if not 0 <= slave_id <= MAX_SLAVE_ID:
        raise ValueError(f"slave_id must be 0-{MAX_SLAVE_ID}, got {slave_id}")
    if not 0 <= start_address <= 0xFFFF:
        raise ValueError(f"start_address must be 0-65535, got {start_address}")
    if not 1 <= quantity <= MAX_QUANTITY:
        raise ValueError(f"quantity must be 1-{MAX_QUANTITY}, got {quantity}")
    if start_address + quantity > 0x10000:
        raise ValueError(
            f"register range {start_address}+{quantity} runs past address 65535"
        )
    if not 0 <= function_code <= 0xFF:
        raise ValueError(f"function_code must fit in one byte, got {function_code}")

    body = struct.pack(">BBHH", slave_id, function_code, start_address, quantity)
    return _append_crc(body)


def register_span(addresses: Iterable[int]) -> tuple[int, int]:
    """
    Smallest contiguous (start, quantity) covering every address.

    A sparse set such as [0, 5] is read as one request of 6 registers.
    """
    addresses = list(addresses)
    if not addresses:
        raise ValueError("at least one register address is required")
    start = min(addresses)
    return start, max(addresses) - start + 1


def parse_read_response(
    frame: bytes,
    expected_slave: int,
    expected_function: int = READ_HOLDING_REGISTERS,
    verify_crc: bool = True,
) -> list[int]:
    """
    Decode a read response into its register values.

    Checks run in a fixed order: length, slave, function, byte count, CRC.

    Args:
        frame: Raw response bytes
        expected_slave: Slave id the request was addressed to
        expected_function: Function code the request used
        verify_crc: Reject frames whose trailing CRC does not match

    Returns:
        Register values in order

    Raises:
        FrameTooShort, UnexpectedSlave, UnexpectedFunction,
        FrameIncomplete, CrcMismatch
    """
    frame = bytes(frame)
    if len(frame) < MIN_RESPONSE_LENGTH:
        raise FrameTooShort(len(frame), frame)

    slave, function_code, byte_count = frame[0], frame[1], frame[2]

    if slave != expected_slave:
        raise UnexpectedSlave(expected_slave, slave, frame)

    if function_code != expected_function:
        exception_code = None
        if function_code == expected_function | EXCEPTION_FLAG:
            exception_code = frame[2]
        raise UnexpectedFunction(expected_function, function_code, exception_code, frame)

    required = 3 + byte_count + 2
    if len(frame) < required:
        raise FrameIncomplete(required, len(frame), frame)

    if verify_crc:
        computed = crc16(frame[: 3 + byte_count])
        (received,) = struct.unpack_from("<H", frame, 3 + byte_count)
        if computed != received:
            raise CrcMismatch(computed, received, frame)

    count = byte_count // 2
    return list(struct.unpack_from(f">{count}H", frame, 3))


def build_read_response(
    slave_id: int,
    values: Sequence[int],
    function_code: int = READ_HOLDING_REGISTERS,
) -> bytes:
    """Build a read response carrying `values` (slave side)."""
    if len(values) > MAX_QUANTITY:
        raise ValueError(f"at most {MAX_QUANTITY} registers per response, got {len(values)}")
    body = struct.pack(
        f">BBB{len(values)}H",
        slave_id,
        function_code,
        len(values) * 2,
        *(v & 0xFFFF for v in values),
    )
    return _append_crc(body)


def build_exception_response(slave_id: int, function_code: int, exception_code: int) -> bytes:
    """Build a Modbus exception reply (function | 0x80)."""
    body = struct.pack(">BBB", slave_id, function_code | EXCEPTION_FLAG, exception_code)
    return _append_crc(body)


def parse_read_request(frame: bytes) -> ReadRequest:
    """
    Decode an 8-byte read request (slave side).

    Raises:
        FrameTooShort: Fewer than 8 bytes
        CrcMismatch: Trailing CRC does not match
    """
    frame = bytes(frame)
    if len(frame) < REQUEST_LENGTH:
        raise FrameTooShort(len(frame), frame)

    computed = crc16(frame[:6])
    (received,) = struct.unpack_from("<H", frame, 6)
    if computed != received:
        raise CrcMismatch(computed, received, frame)

    slave_id, function_code, start_address, quantity = struct.unpack_from(">BBHH", frame)
    return ReadRequest(
        slave_id=slave_id,
        function_code=function_code,
        start_address=start_address,
        quantity=quantity,
    )


def format_frame(frame: bytes) -> str:
    """Hex dump for logs, e.g. '01 03 00 00 00 01 84 0A'"""
    return " ".join(f"{b:02X}" for b in frame)
