"""Structured logging configuration for AgentCluster.

structlog handles every log emission; the stdlib root logger only provides
the output handler (stderr or a size-rotated file). Each record carries
the log level, logger name, an ISO timestamp, any context bound through
``structlog.contextvars`` and the current correlation id.

Example usage:
    >>> from agentcluster.config import LoggingConfig
    >>> from agentcluster.logging import bind_session_context, get_logger, setup_logging
    >>>
    >>> setup_logging(LoggingConfig(level="DEBUG", format="console"))
    >>> bind_session_context(run_id="run-1", task_id="build")
    >>> get_logger(__name__).info("session_spawned", pid=4242)
"""

from __future__ import annotations

import contextvars
import logging
import logging.handlers
import sys
from typing import Any

import structlog

from agentcluster.config import LoggingConfig

# Libraries that log every statement or request at DEBUG/INFO
QUIET_LOGGERS = ("aiosqlite", "sqlalchemy.engine", "uvicorn.access", "httpx")

_correlation_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "agentcluster_correlation_id", default=None
)


def add_correlation_id(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """structlog processor adding ``correlation_id`` when one is set."""
    value = _correlation_id_var.get()
    if value is not None:
        event_dict.setdefault("correlation_id", value)
    return event_dict


def set_correlation_id(correlation_id: str | None) -> None:
    """Set correlation ID for the current context (None clears it)."""
    _correlation_id_var.set(correlation_id)


def get_correlation_id() -> str | None:
    return _correlation_id_var.get()


def bind_session_context(run_id: str, task_id: str) -> None:
    """Bind run and task identifiers to all subsequent logs in this context.

    Each asyncio task copies the context at creation, so binding inside a
    session's supervisor task does not leak into sibling sessions.

    Args:
        run_id: Run identifier to bind
        task_id: Task identifier to bind
    """
    structlog.contextvars.bind_contextvars(run_id=run_id, task_id=task_id)


def _build_handler(config: LoggingConfig) -> logging.Handler:
    if config.file is None:
        # stderr keeps stdout free for CLI output and attached terminals
        return logging.StreamHandler(sys.stderr)
    config.file.parent.mkdir(parents=True, exist_ok=True)
    return logging.handlers.RotatingFileHandler(
        filename=config.file,
        maxBytes=config.rotation_size_mb * 1024 * 1024,
        backupCount=config.retention_count,
        encoding="utf-8",
    )


def _build_processors(config: LoggingConfig) -> list[Any]:
    renderer: Any = (
        structlog.processors.JSONRenderer()
        if config.format == "json"
        else structlog.dev.ConsoleRenderer(colors=config.file is None and sys.stderr.isatty())
    )
    return [
        structlog.contextvars.merge_contextvars,
        add_correlation_id,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        renderer,
    ]


def setup_logging(config: LoggingConfig) -> None:
    """Configure structlog and the stdlib root handler.

    Replaces any handler installed by an earlier call, so the CLI can
    reconfigure after ``--verbose`` without duplicating output.

    Args:
        config: Logging section of AgentClusterConfig
    """
    level = logging.getLevelName(config.level)

    handler = _build_handler(config)
    handler.setLevel(level)
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=_build_processors(config),
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Args:
        name: Logger name, usually the calling module's ``__name__``

    Returns:
        structlog BoundLogger; configuration is applied on first use
    """
    return structlog.get_logger(name)
