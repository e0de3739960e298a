"""Subunit v2 status packet writer."""

from subunit_writer.log_config import configure_logging
from subunit_writer.reference import (
    STATUS_CODES,
    Event,
    IntegerTooLarge,
    MalformedPacket,
    PacketTooLarge,
    ParsedPacket,
    ShortWrite,
    SubunitCodec,
    SubunitError,
    TimestampOutOfRange,
    decode_varint,
    encode_packet,
    encode_varint,
    parse_packet,
)
from subunit_writer.stream import Sink, StreamResultToBytes, encode_status

__all__ = [
    "STATUS_CODES",
    "Event",
    "IntegerTooLarge",
    "MalformedPacket",
    "PacketTooLarge",
    "ParsedPacket",
    "ShortWrite",
    "Sink",
    "StreamResultToBytes",
    "SubunitCodec",
    "SubunitError",
    "TimestampOutOfRange",
    "configure_logging",
    "decode_varint",
    "encode_packet",
    "encode_status",
    "encode_varint",
    "parse_packet",
]
