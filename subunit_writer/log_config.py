"""structlog setup shared by the test suite and the vector generator."""

from __future__ import annotations

import logging
import os

import structlog


def configure_logging(level: str | None = None) -> None:
    """Configure structlog console output.

    Args:
        level: Level name (debug, info, warning, error). Defaults to the
            SUBUNIT_LOG_LEVEL environment variable, then "info".
    """
    name = (level or os.environ.get("SUBUNIT_LOG_LEVEL", "info")).upper()
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, name, logging.INFO)
        ),
    )
