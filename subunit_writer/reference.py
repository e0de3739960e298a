"""
Subunit v2 Packet Codec

This module provides the encoding logic for Subunit v2 status packets, plus a
matching decoder used by conformance tests and interoperability checks.

Packet layout:
    SIGNATURE(1) | FLAGS(2) | LENGTH(1-4) | TIMESTAMP? | TEST_ID? | CRC32(4)

Every variable-length number in a packet (the length field, the test id
length and the timestamp nanoseconds) goes through encode_varint/decode_varint.
"""

from __future__ import annotations

import struct
import zlib
from concurrent.futures import Executor
from dataclasses import dataclass
from datetime import datetime, timezone
from types import MappingProxyType

# =============================================================================
# Protocol Constants
# =============================================================================

SIGNATURE = 0xB3
VERSION = 0x2

# Flag bits, first flags byte
FLAG_TEST_ID_PRESENT = 0x08
FLAG_TIMESTAMP_PRESENT = 0x02

# Status code, second flags byte
STATUS_MASK = 0x07

# Sizes
SIGNATURE_SIZE = 1
FLAGS_SIZE = 2
CRC_SIZE = 4
SECONDS_SIZE = 4
MIN_PACKET_SIZE = SIGNATURE_SIZE + FLAGS_SIZE + 1 + CRC_SIZE

# Variable-length integer bounds (2 size bits + payload bits)
VARINT_MAX_1 = 0x3F  # 6 bits
VARINT_MAX_2 = 0x3FFF  # 14 bits
VARINT_MAX_3 = 0x3FFFFF  # 22 bits
VARINT_MAX_4 = 0x3FFFFFFF  # 30 bits

# Largest packet whose length fits a 3-byte varint
MAX_PACKET_SIZE = VARINT_MAX_3

NANOS_PER_SECOND = 1_000_000_000
MAX_SECONDS = 0xFFFFFFFF

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

STATUS_UNDEFINED = 0x0

STATUS_CODES = MappingProxyType(
    {
        "exists": 0x1,
        "inprogress": 0x2,
        "success": 0x3,
        "uxsuccess": 0x4,
        "skip": 0x5,
        "fail": 0x6,
        "xfail": 0x7,
    }
)


# =============================================================================
# Errors
# =============================================================================


class SubunitError(Exception):
    """Base class for packet encoding and decoding errors."""


class IntegerTooLarge(SubunitError, ValueError):
    """A number does not fit the 30 payload bits of a varint."""


class PacketTooLarge(SubunitError, ValueError):
    """The packet length does not fit a 3-byte length field."""


class TimestampOutOfRange(SubunitError, ValueError):
    """The instant cannot be written as unsigned 32-bit epoch seconds."""


class MalformedPacket(SubunitError, ValueError):
    """A byte sequence is not a valid packet."""


class ShortWrite(SubunitError, OSError):
    """The sink accepted fewer bytes than the packet holds."""


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class Event:
    """A single test status event.

    An empty test_id and a None timestamp mean the field is absent from the
    packet. The timestamp is either a datetime (naive values are UTC) or an
    integer count of nanoseconds since the Unix epoch.
    """

    test_id: str = ""
    status: str = ""
    timestamp: datetime | int | None = None


@dataclass(frozen=True)
class ParsedPacket:
    """Decoded packet fields."""

    version: int
    flags: int
    status: int
    length: int
    timestamp: tuple[int, int] | None  # (seconds, nanoseconds)
    test_id: str | None
    crc32: int


# =============================================================================
# Variable-Length Integers
# =============================================================================


def encode_varint(num: int) -> bytes:
    """Encode a non-negative integer in 1-4 bytes.

    The two most significant bits of the first byte give the size:
    00 = 1 byte, 01 = 2 bytes, 10 = 3 bytes, 11 = 4 bytes.

    Args:
        num: Value to encode (0 to 2**30 - 1)

    Returns:
        Encoded bytes, big-endian

    Raises:
        IntegerTooLarge: If num needs more than 30 bits
        ValueError: If num is negative
    """
    if num < 0:
        raise ValueError(f"Cannot encode negative value: {num}")
    if num <= VARINT_MAX_1:
        return struct.pack(">B", num)
    if num <= VARINT_MAX_2:
        return struct.pack(">H", num | 0x4000)
    if num <= VARINT_MAX_3:
        # High 6 bits with size 10, then the low 16 bits.
        return struct.pack(">BH", (num >> 16) | 0x80, num & 0xFFFF)
    if num <= VARINT_MAX_4:
        return struct.pack(">I", num | 0xC0000000)
    raise IntegerTooLarge(f"Number is too big: {num}")


def decode_varint(data: bytes, offset: int = 0) -> tuple[int, int]:
    """Decode a variable-length integer.

    Args:
        data: Buffer containing the varint
        offset: Starting offset in buffer

    Returns:
        Tuple of (value, bytes consumed)

    Raises:
        ValueError: If the varint is truncated
    """
    if offset >= len(data):
        raise ValueError(f"Varint truncated: no data at offset {offset}")

    first = data[offset]
    size = (first >> 6) + 1
    if len(data) - offset < size:
        raise ValueError(f"Varint truncated: have {len(data) - offset}, need {size}")

    value = first & 0x3F
    for byte in data[offset + 1 : offset + size]:
        value = (value << 8) | byte
    return value, size


# =============================================================================
# Field Encoders
# =============================================================================


def status_code(name: str) -> int:
    """Map a status name to its 3-bit code. Unknown names map to 0."""
    return STATUS_CODES.get(name, STATUS_UNDEFINED)


def encode_flags(event: Event) -> bytes:
    """Encode the 2-byte flags field.

    Layout:
    - Byte 0: version (bits 4-7), test id present (bit 3), timestamp present (bit 1)
    - Byte 1: status code (bits 0-2)
    """
    first = VERSION << 4
    if event.test_id:
        first |= FLAG_TEST_ID_PRESENT
    if event.timestamp is not None:
        first |= FLAG_TIMESTAMP_PRESENT
    return struct.pack(">BB", first, status_code(event.status))


def split_timestamp(timestamp: datetime | int) -> tuple[int, int]:
    """Split an instant into (seconds, nanoseconds) since the Unix epoch.

    Raises:
        TimestampOutOfRange: If the seconds do not fit an unsigned 32-bit integer
    """
    if isinstance(timestamp, datetime):
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        delta = timestamp - EPOCH
        seconds = delta.days * 86400 + delta.seconds
        nanos = delta.microseconds * 1000
    else:
        seconds, nanos = divmod(timestamp, NANOS_PER_SECOND)

    if not 0 <= seconds <= MAX_SECONDS:
        raise TimestampOutOfRange(f"Timestamp out of range: {seconds} seconds since epoch")
    return seconds, nanos


def encode_timestamp(event: Event) -> bytes:
    """Encode the timestamp field: BE32 seconds + varint nanoseconds.

    Returns empty bytes when the event has no timestamp.
    """
    if event.timestamp is None:
        return b""
    seconds, nanos = split_timestamp(event.timestamp)
    return struct.pack(">I", seconds) + encode_varint(nanos)


def encode_test_id(event: Event) -> bytes:
    """Encode the test id field: varint byte length + UTF-8 bytes.

    Returns empty bytes when the event has no test id.
    """
    if not event.test_id:
        return b""
    raw = event.test_id.encode("utf-8")
    return encode_varint(len(raw)) + raw


def packet_length(base_len: int) -> int:
    """Compute the total packet length.

    Args:
        base_len: Size of signature, flags, timestamp and test id

    Returns:
        base_len plus the CRC and the length field's own size

    Raises:
        PacketTooLarge: If the total does not fit a 3-byte length field
    """
    length = base_len + CRC_SIZE
    if length <= VARINT_MAX_1 - 1:
        return length + 1
    if length <= VARINT_MAX_2 - 2:
        return length + 2
    if length <= VARINT_MAX_3 - 3:
        return length + 3
    raise PacketTooLarge(f"Packet too large: {length} bytes")


def crc32_be(data: bytes) -> bytes:
    """IEEE CRC-32 of data, as 4 big-endian bytes."""
    return struct.pack(">I", zlib.crc32(data))


# =============================================================================
# Packet Encoding/Decoding
# =============================================================================


def encode_packet(event: Event, *, executor: Executor | None = None) -> bytes:
    """Encode one event as a complete packet.

    Args:
        event: Event to encode
        executor: Optional executor; when given, flags, timestamp and test id
            are encoded as separate tasks

    Returns:
        Packet bytes, signature through CRC32

    Raises:
        IntegerTooLarge: If the test id is longer than a varint can describe
        PacketTooLarge: If the packet does not fit a 3-byte length field
        TimestampOutOfRange: If the timestamp cannot be encoded
    """
    encoders = (encode_flags, encode_timestamp, encode_test_id)
    if executor is None:
        flags, timestamp, test_id = (encode(event) for encode in encoders)
    else:
        futures = [executor.submit(encode, event) for encode in encoders]
        flags, timestamp, test_id = (future.result() for future in futures)

    length = packet_length(SIGNATURE_SIZE + len(flags) + len(timestamp) + len(test_id))

    packet = bytearray([SIGNATURE])
    packet += flags
    packet += encode_varint(length)
    packet += timestamp
    packet += test_id
    packet += crc32_be(packet)
    return bytes(packet)


def _read_varint(body: bytes, offset: int, field: str) -> tuple[int, int]:
    try:
        return decode_varint(body, offset)
    except ValueError as exc:
        raise MalformedPacket(f"{field} truncated") from exc


def parse_packet(data: bytes) -> ParsedPacket:
    """Parse and validate a complete packet.

    Args:
        data: Exactly one packet

    Returns:
        Parsed packet fields

    Raises:
        MalformedPacket: If the signature, version, length, CRC or any field
            is invalid
    """
    data = bytes(data)
    if len(data) < MIN_PACKET_SIZE:
        raise MalformedPacket(f"Packet too short: {len(data)} < {MIN_PACKET_SIZE}")
    if data[0] != SIGNATURE:
        raise MalformedPacket(f"Bad signature: 0x{data[0]:02x}")

    flags = struct.unpack_from(">H", data, SIGNATURE_SIZE)[0]
    version = data[1] >> 4
    if version != VERSION:
        raise MalformedPacket(f"Unsupported version: {version}")

    offset = SIGNATURE_SIZE + FLAGS_SIZE
    length, consumed = _read_varint(data, offset, "Length")
    if length != len(data):
        raise MalformedPacket(f"Length mismatch: declared {length}, got {len(data)}")
    offset += consumed

    body_end = len(data) - CRC_SIZE
    body = data[:body_end]
    expected_crc = struct.unpack_from(">I", data, body_end)[0]
    actual_crc = zlib.crc32(body)
    if expected_crc != actual_crc:
        raise MalformedPacket(
            f"CRC mismatch: expected 0x{expected_crc:08x}, computed 0x{actual_crc:08x}"
        )

    timestamp = None
    if data[1] & FLAG_TIMESTAMP_PRESENT:
        if body_end - offset < SECONDS_SIZE:
            raise MalformedPacket("Timestamp truncated")
        seconds = struct.unpack_from(">I", body, offset)[0]
        offset += SECONDS_SIZE
        nanos, consumed = _read_varint(body, offset, "Timestamp")
        offset += consumed
        if nanos >= NANOS_PER_SECOND:
            raise MalformedPacket(f"Nanoseconds out of range: {nanos}")
        timestamp = (seconds, nanos)

    test_id = None
    if data[1] & FLAG_TEST_ID_PRESENT:
        id_len, consumed = _read_varint(body, offset, "Test id length")
        offset += consumed
        if body_end - offset < id_len:
            raise MalformedPacket(f"Test id truncated: have {body_end - offset}, need {id_len}")
        try:
            test_id = body[offset : offset + id_len].decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedPacket("Test id is not valid UTF-8") from exc
        offset += id_len

    if offset != body_end:
        raise MalformedPacket(f"Unexpected trailing bytes: {body_end - offset}")

    return ParsedPacket(
        version=version,
        flags=flags,
        status=data[2] & STATUS_MASK,
        length=length,
        timestamp=timestamp,
        test_id=test_id,
        crc32=expected_crc,
    )


# =============================================================================
# SubunitCodec Class (Main Interface)
# =============================================================================


class SubunitCodec:
    """Packet codec facade.

    Groups the module-level encoders and decoders behind one object so tests
    and callers can share a single codec instance.
    """

    SIGNATURE = SIGNATURE
    VERSION = VERSION
    FLAG_TEST_ID_PRESENT = FLAG_TEST_ID_PRESENT
    FLAG_TIMESTAMP_PRESENT = FLAG_TIMESTAMP_PRESENT
    STATUS_MASK = STATUS_MASK
    STATUS_CODES = STATUS_CODES
    MIN_PACKET_SIZE = MIN_PACKET_SIZE
    MAX_PACKET_SIZE = MAX_PACKET_SIZE

    # Varint methods
    @staticmethod
    def encode_varint(num: int) -> bytes:
        """Encode a variable-length integer."""
        return encode_varint(num)

    @staticmethod
    def decode_varint(data: bytes, offset: int = 0) -> tuple[int, int]:
        """Decode a variable-length integer."""
        return decode_varint(data, offset)

    # Field methods
    @staticmethod
    def status_code(name: str) -> int:
        """Look up a status code."""
        return status_code(name)

    @staticmethod
    def encode_flags(event: Event) -> bytes:
        """Encode the flags field."""
        return encode_flags(event)

    @staticmethod
    def encode_timestamp(event: Event) -> bytes:
        """Encode the timestamp field."""
        return encode_timestamp(event)

    @staticmethod
    def encode_test_id(event: Event) -> bytes:
        """Encode the test id field."""
        return encode_test_id(event)

    # Packet methods
    @staticmethod
    def encode_packet(event: Event, *, executor: Executor | None = None) -> bytes:
        """Encode a complete packet."""
        return encode_packet(event, executor=executor)

    @staticmethod
    def parse_packet(data: bytes) -> ParsedPacket:
        """Parse a complete packet."""
        return parse_packet(data)
