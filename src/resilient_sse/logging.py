"""Logging configuration for resilient-sse.

Library modules log structured events through structlog. This module wires
those events into the ``resilient_sse`` stdlib logger so an embedding
application controls level, format and destination in one place.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from resilient_sse.config import Settings


# Package logger
logger = logging.getLogger("resilient_sse")


def setup_logging(
    settings: Settings | None = None,
    *,
    log_level: str | None = None,
    log_format: str | None = None,
    log_file: Path | None = None,
) -> logging.Logger:
    """Set up logging for resilient-sse.

    Args:
        settings: Optional Settings instance. If not provided,
            uses get_settings().
        log_level: Override log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_format: Override log format string.
        log_file: Optional path to log file for file logging.

    Returns:
        The configured package logger.

    Example:
        >>> from resilient_sse.logging import setup_logging
        >>> logger = setup_logging(log_level="DEBUG")
        >>> logger.info("Client starting")
    """
    if settings is None:
        from resilient_sse.config import get_settings

        settings = get_settings()

    effective_level = log_level or settings.log_level
    effective_format = log_format or settings.log_format
    numeric_level = getattr(logging, effective_level.upper(), logging.INFO)

    logger.setLevel(numeric_level)

    # Remove existing handlers to avoid duplicates
    logger.handlers.clear()

    formatter = logging.Formatter(effective_format)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file is not None:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.propagate = False

    # Route structlog events through the stdlib handlers configured above
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.KeyValueRenderer(key_order=["event"]),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )

    return logger


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger for a specific module.

    Args:
        name: The name of the module or component.

    Returns:
        A structlog logger bound under the package namespace.

    Example:
        >>> from resilient_sse.logging import get_logger
        >>> log = get_logger("client")
        >>> log.debug("stream_opened", url="http://localhost/stream")
    """
    if name.startswith("resilient_sse.") or name == "resilient_sse":
        return structlog.get_logger(name)
    return structlog.get_logger(f"resilient_sse.{name}")


__all__ = [
    "get_logger",
    "logger",
    "setup_logging",
]
