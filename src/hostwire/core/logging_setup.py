"""Structured logging setup.

Library modules only call ``structlog.get_logger()``; applications call
``configure_logging()`` once at startup to choose rendering and level.

Usage:
    from hostwire.core.config import get_settings
    from hostwire.core.logging_setup import configure_logging

    configure_logging(get_settings().logging)
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

import structlog

from hostwire.core.config import LoggingConfig


def configure_logging(config: Optional[LoggingConfig] = None) -> None:
    """Configure structlog processors, renderer and level filter.

    Args:
        config: Logging section of the settings. Defaults to LoggingConfig().
    """
    config = config or LoggingConfig()
    level = logging.getLevelName(config.level)

    if config.format == "console":
        renderer: structlog.types.Processor = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    stream = sys.stderr if config.output == "stderr" else sys.stdout

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=False,
    )
