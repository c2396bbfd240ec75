"""Unit tests for logging configuration."""

from __future__ import annotations

import json
import logging
import logging.handlers
from io import StringIO
from pathlib import Path
from typing import Any

import pytest
import structlog

from storyloom.config import LoggingConfig
from storyloom.logging import (
    add_correlation_id,
    bind_story_context,
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


@pytest.fixture
def capture_stream() -> StringIO:
    """Create a StringIO stream for capturing log output."""
    return StringIO()


def _lines(stream: StringIO) -> list[dict[str, Any]]:
    return [json.loads(line) for line in stream.getvalue().splitlines() if line.strip()]


def test_json_output_format(capture_stream: StringIO) -> None:
    """JSON format produces one JSON object per event."""
    setup_logging(LoggingConfig(level="INFO", format="json"), stream=capture_stream)

    get_logger("test.module").info("story_blocked", path="src/app.py", attempt=2)

    (entry,) = _lines(capture_stream)
    assert entry["event"] == "story_blocked"
    assert entry["path"] == "src/app.py"
    assert entry["attempt"] == 2
    assert entry["level"] == "info"
    assert entry["logger"] == "test.module"
    assert "timestamp" in entry


def test_console_output_format(capture_stream: StringIO) -> None:
    """Console format is human-readable, not JSON."""
    setup_logging(LoggingConfig(level="DEBUG", format="console"), stream=capture_stream)

    get_logger("test.module").debug("admission_pass", burst_mode=True)

    output = capture_stream.getvalue()
    assert "admission_pass" in output
    assert "burst_mode" in output
    with pytest.raises(json.JSONDecodeError):
        json.loads(output.strip())


def test_log_level_filtering(capture_stream: StringIO) -> None:
    """Events below the configured level are dropped."""
    setup_logging(LoggingConfig(level="WARNING", format="json"), stream=capture_stream)
    logger = get_logger("test.module")

    logger.info("quiet")
    logger.warning("loud")

    assert [e["event"] for e in _lines(capture_stream)] == ["loud"]


def test_correlation_id_binding(capture_stream: StringIO) -> None:
    """The correlation id appears while set and disappears when cleared."""
    setup_logging(LoggingConfig(level="INFO", format="json"), stream=capture_stream)
    logger = get_logger("test.module")

    set_correlation_id("corr-12345")
    assert get_correlation_id() == "corr-12345"
    logger.info("with_id")

    set_correlation_id(None)
    logger.info("without_id")

    first, second = _lines(capture_stream)
    assert first["correlation_id"] == "corr-12345"
    assert "correlation_id" not in second


def test_correlation_id_processor() -> None:
    """The processor only adds the key when an id is set."""
    assert "correlation_id" not in add_correlation_id(None, "", {"event": "x"})

    set_correlation_id("abc")
    assert add_correlation_id(None, "", {"event": "x"})["correlation_id"] == "abc"


def test_story_context_binding(capture_stream: StringIO) -> None:
    """Story and worker context is attached to later events."""
    setup_logging(LoggingConfig(level="INFO", format="json"), stream=capture_stream)

    bind_story_context(short_id="SL-14", worker="lead-engineer")
    get_logger("test.module").info("heartbeat_recorded")

    (entry,) = _lines(capture_stream)
    assert entry["short_id"] == "SL-14"
    assert entry["worker"] == "lead-engineer"


def test_file_handler_rotation_settings(tmp_path: Path) -> None:
    """A configured file gets a size-rotated handler."""
    log_file = tmp_path / "logs" / "storyloom.log"

    setup_logging(
        LoggingConfig(file=log_file, rotation_size_mb=2, retention_count=4, format="json")
    )
    get_logger("test.module").info("written")

    (handler,) = logging.getLogger().handlers
    assert isinstance(handler, logging.handlers.RotatingFileHandler)
    assert handler.maxBytes == 2 * 1024 * 1024
    assert handler.backupCount == 4
    handler.flush()
    assert "written" in log_file.read_text()
    handler.close()


def test_sqlalchemy_logger_quieted() -> None:
    """SQLAlchemy engine logging stays at WARNING even at DEBUG."""
    setup_logging(LoggingConfig(level="DEBUG"), stream=StringIO())

    assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
