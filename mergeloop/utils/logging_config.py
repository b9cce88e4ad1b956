"""
Logging configuration using structlog for structured logging.

This module provides centralized logging setup for the daemon. Every module
obtains its logger with ``structlog.get_logger(__name__)`` and emits
snake_case event names with keyword context; session-scoped context is bound
through ``structlog.contextvars`` while a session advances.
"""

import logging
from typing import Any

import structlog


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structured logging.

    Sets up structlog with a pipeline of processors that include timestamps,
    log levels, stack traces, and any context bound via contextvars.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Render JSON lines (daemon mode). When False, use the
            human-friendly console renderer (interactive commands).
    """
    renderer: Any = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(log_level.upper())),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None, **context: Any) -> Any:
    """Get a logger instance, optionally pre-bound with context.

    Args:
        name: Optional logger name (typically __name__ from calling module)
        **context: Key/value pairs bound to every event from this logger

    Returns:
        A structlog logger instance

    Example:
        >>> log = get_logger(__name__, daemon="main")
        >>> log.info("tick_started", active_sessions=3)
    """
    logger = structlog.get_logger(name)
    if context:
        return logger.bind(**context)
    return logger
