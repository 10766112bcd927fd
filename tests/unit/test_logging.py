"""Unit tests for logging configuration."""

from __future__ import annotations

import json
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any

import pytest
import structlog

from agentcluster.config import LoggingConfig
from agentcluster.logging import (
    add_correlation_id,
    bind_session_context,
    get_correlation_id,
    get_logger,
    set_correlation_id,
    setup_logging,
)


@pytest.fixture(autouse=True)
def reset_logging() -> None:
    """Reset logging configuration before each test."""
    logging.getLogger().handlers.clear()
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()
    set_correlation_id(None)


def _read_json_lines(path: Path) -> list[dict[str, Any]]:
    for handler in logging.getLogger().handlers:
        handler.flush()
    return [json.loads(line) for line in path.read_text().splitlines() if line.strip()]


def test_stream_handler_writes_to_stderr() -> None:
    setup_logging(LoggingConfig(level="INFO", format="console"))
    handlers = logging.getLogger().handlers
    assert len(handlers) == 1
    assert isinstance(handlers[0], logging.StreamHandler)
    assert handlers[0].stream is sys.stderr


def test_file_handler_rotates(tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "agentcluster.log"
    setup_logging(
        LoggingConfig(file=log_file, format="json", rotation_size_mb=5, retention_count=3)
    )
    handler = logging.getLogger().handlers[0]
    assert isinstance(handler, logging.handlers.RotatingFileHandler)
    assert handler.maxBytes == 5 * 1024 * 1024
    assert handler.backupCount == 3
    assert log_file.parent.is_dir()


def test_json_records_carry_context(tmp_path: Path) -> None:
    log_file = tmp_path / "agentcluster.log"
    setup_logging(LoggingConfig(level="INFO", format="json", file=log_file))

    bind_session_context(run_id="run-1", task_id="build")
    set_correlation_id("corr-42")
    get_logger("agentcluster.test").info("session_spawned", pid=4242)

    records = _read_json_lines(log_file)
    assert len(records) == 1
    record = records[0]
    assert record["event"] == "session_spawned"
    assert record["pid"] == 4242
    assert record["run_id"] == "run-1"
    assert record["task_id"] == "build"
    assert record["correlation_id"] == "corr-42"
    assert record["level"] == "info"
    assert "timestamp" in record


def test_level_filters_debug(tmp_path: Path) -> None:
    log_file = tmp_path / "agentcluster.log"
    setup_logging(LoggingConfig(level="WARNING", format="json", file=log_file))
    log = get_logger("agentcluster.test")
    log.info("not_written")
    log.warning("written")
    assert [r["event"] for r in _read_json_lines(log_file)] == ["written"]


def test_correlation_id_processor() -> None:
    assert add_correlation_id(None, "info", {"event": "x"}) == {"event": "x"}
    set_correlation_id("abc")
    assert get_correlation_id() == "abc"
    assert add_correlation_id(None, "info", {"event": "x"})["correlation_id"] == "abc"
    set_correlation_id(None)
    assert get_correlation_id() is None


def test_chatty_libraries_quietened() -> None:
    setup_logging(LoggingConfig(level="DEBUG", format="console"))
    assert logging.getLogger("aiosqlite").level == logging.WARNING
    assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
    assert logging.getLogger().level == logging.DEBUG
