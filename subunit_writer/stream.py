"""
Subunit v2 stream writer.

Encodes status events and writes each finished packet to an output sink in a
single write call. Nothing reaches the sink unless the whole packet encoded.
"""

from __future__ import annotations

from concurrent.futures import Executor
from typing import Protocol

import structlog

from subunit_writer.reference import Event, ShortWrite, SubunitError, encode_packet

log = structlog.get_logger()


class Sink(Protocol):
    """Anything that accepts a contiguous byte sequence."""

    def write(self, data: bytes, /) -> int | None: ...


class StreamResultToBytes:
    """Converts status events to packets on an output sink.

    The writer keeps no per-event state. Callers sharing one sink between
    threads must serialize calls themselves.
    """

    def __init__(self, output: Sink, *, executor: Executor | None = None) -> None:
        self.output = output
        self.executor = executor
        self.packets_written = 0

    def status(self, event: Event) -> int:
        """Encode an event and write it to the output.

        Args:
            event: Status event to record

        Returns:
            Number of bytes written

        Raises:
            SubunitError: If the event cannot be encoded (nothing is written)
            ShortWrite: If the sink accepted only part of the packet
            Exception: Any error raised by the sink, unchanged
        """
        try:
            packet = encode_packet(event, executor=self.executor)
        except SubunitError as exc:
            log.error("packet_encode_failed", status=event.status, error=str(exc))
            raise

        try:
            written = self.output.write(packet)
        except Exception as exc:
            log.error("sink_write_failed", size=len(packet), error=str(exc))
            raise

        if written is not None and written < len(packet):
            log.error("sink_short_write", size=len(packet), written=written)
            raise ShortWrite(f"Short write: {written} of {len(packet)} bytes")

        self.packets_written += 1
        log.debug("packet_written", size=len(packet), status=event.status or "undefined")
        return len(packet)


def encode_status(event: Event, sink: Sink, *, executor: Executor | None = None) -> int:
    """Encode one status event and write the packet to sink.

    Returns:
        Number of bytes written
    """
    return StreamResultToBytes(sink, executor=executor).status(event)
