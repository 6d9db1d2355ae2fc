"""Structured logging configuration with structlog.

Usage:
    from aumai_keyexport.observability import configure_logging

    configure_logging(environment="production")   # JSON lines
    configure_logging(environment="development")  # console output

    log = structlog.get_logger()
    log.info("export_built", key_count=12)
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Any

import structlog
from structlog.typing import Processor

LOG_LEVEL_ENV = "LOG_LEVEL"
DEFAULT_LOG_LEVEL = "WARNING"


def _resolve_level(level: str | None) -> int:
    level_name = (level or os.getenv(LOG_LEVEL_ENV, DEFAULT_LOG_LEVEL)).upper()
    return getattr(logging, level_name, logging.WARNING)


def _stderr_logger(*args: Any) -> structlog.PrintLogger:
    # sys.stderr is looked up per logger so redirected streams are honoured.
    return structlog.PrintLogger(sys.stderr)


def configure_logging(
    environment: str = "development", level: str | None = None
) -> None:
    """Configure structlog processors and output for the process.

    Args:
        environment: ``"production"`` renders JSON, anything else renders
            human-readable console lines.
        level: Log level name.  Falls back to ``$LOG_LEVEL``, then WARNING.
    """
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if environment == "production":
        final_processor: Processor = structlog.processors.JSONRenderer()
    else:
        final_processor = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=shared_processors + [final_processor],
        wrapper_class=structlog.make_filtering_bound_logger(_resolve_level(level)),
        context_class=dict,
        logger_factory=_stderr_logger,
        cache_logger_on_first_use=False,
    )


__all__ = ["configure_logging"]
