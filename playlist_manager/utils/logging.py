"""Structured Logging Configuration.

This module configures structlog to emit one JSON object per event for
production log aggregation, and hands out loggers bound to a module name.

Configuration:
- JSON output format (for production log aggregation)
- Context binding support (user ids, action ids, idempotency keys, etc.)
- Log levels: DEBUG, INFO, WARNING, ERROR, CRITICAL (LOG_LEVEL env var)
"""

import logging
import sys
from typing import Any

import structlog

from playlist_manager.config import get_log_level

_configured = False


def configure_logging(level: str | None = None) -> None:
    """Configure structlog and the stdlib root logger once per process.

    Args:
        level: Log level name. Defaults to LOG_LEVEL from the environment.
    """
    global _configured
    if _configured:
        return

    level_name = level or get_log_level()
    numeric_level = getattr(logging, level_name, logging.INFO)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _configured = True


def get_logger(name: str, **initial_context: Any) -> Any:
    """Get a structured logger instance for the given module.

    Args:
        name: Module name (typically __name__)
        **initial_context: Key/value pairs bound to every event

    Returns:
        structlog BoundLogger
    """
    return structlog.get_logger(name, **initial_context)
