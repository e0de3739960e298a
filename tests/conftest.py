"""
Pytest configuration and fixtures for the Subunit v2 packet writer tests.

This module provides:
- Test vector fixtures loaded from tests/vectors/
- A shared codec instance
- In-memory sinks for stream writer tests
- A parsing helper that walks a packet field by field

Set SUBUNIT_LOG_LEVEL=debug to see per-packet log lines.
"""

from __future__ import annotations

import io
import json
import os
from collections.abc import Iterator
from pathlib import Path

import pytest

from subunit_writer import SubunitCodec, configure_logging
from subunit_writer.reference import decode_varint

VECTORS_DIR = Path(__file__).parent / "vectors"

# Configure structlog for tests
LOG_LEVEL = os.environ.get("SUBUNIT_LOG_LEVEL", "warning")
configure_logging(LOG_LEVEL)


class PacketReader:
    """Sequential reader over raw packet bytes."""

    def __init__(self, data: bytes) -> None:
        self.data = data
        self.offset = 0

    def next(self, n: int) -> bytes:
        chunk = self.data[self.offset : self.offset + n]
        self.offset += n
        return chunk

    def read_number(self) -> int:
        value, consumed = decode_varint(self.data, self.offset)
        self.offset += consumed
        return value

    def remaining(self) -> int:
        return len(self.data) - self.offset


# =============================================================================
# Session-scoped fixtures (shared across all tests)
# =============================================================================


@pytest.fixture(scope="session")
def packet_vectors() -> dict:
    """Load packet test vectors."""
    with open(VECTORS_DIR / "packet_vectors.json", encoding="utf-8") as f:
        return json.load(f)


@pytest.fixture(scope="session")
def codec() -> SubunitCodec:
    """Shared codec instance."""
    return SubunitCodec()


# =============================================================================
# Function-scoped fixtures (fresh for each test)
# =============================================================================


@pytest.fixture
def sink() -> io.BytesIO:
    """Empty in-memory byte sink."""
    return io.BytesIO()


@pytest.fixture
def reader():
    """Factory building a PacketReader over packet bytes."""
    return PacketReader


@pytest.fixture
def debug_logging() -> Iterator[None]:
    """Enable debug-level logging for one test."""
    configure_logging("debug")
    yield
    configure_logging(LOG_LEVEL)


# =============================================================================
# Pytest hooks and configuration
# =============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )


def pytest_report_header(config):
    """Add information to the pytest header."""
    return [
        "Subunit v2 Packet Writer Test Suite",
        f"  Vectors dir: {VECTORS_DIR}",
        f"  Log level: {LOG_LEVEL}",
    ]
