"""
Structured logging setup (structlog).

Usage:
    from docflow.core.logging import get_logger, setup_logging

    setup_logging("DEBUG")          # call once at startup
    logger = get_logger(__name__)
    logger.info("Step completed", step_id="extract", duration_ms=412)
"""

from __future__ import annotations

import logging
import sys

import structlog

from docflow.core.config import Settings, settings


def use_json_logs(config: Settings = settings) -> bool:
    """JSON lines when asked for explicitly, and always in production."""
    return config.LOG_JSON or config.APP_ENV == "production"


def setup_logging(level: str | None = None, json_logs: bool | None = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        level: Log level name ("DEBUG", "INFO", ...). Defaults to LOG_LEVEL.
        json_logs: Render JSON lines instead of the console format.
            Defaults to use_json_logs().
    """
    level = level or settings.LOG_LEVEL
    if json_logs is None:
        json_logs = use_json_logs()
    log_level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
        force=True,
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger named after the calling module."""
    return structlog.get_logger(name)
