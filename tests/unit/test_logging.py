"""Unit tests for logging configuration."""

from __future__ import annotations

import asyncio
import json
import logging
import logging.handlers
from io import StringIO
from pathlib import Path
from typing import Any

import pytest
import structlog

from rollwright.config import LoggingConfig
from rollwright.logging import (
    add_correlation_id,
    bind_run_context,
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
    return StringIO()


@pytest.fixture
def json_config() -> LoggingConfig:
    return LoggingConfig(level="INFO", format="json", file=None)


def _capture(config: LoggingConfig, stream: StringIO) -> None:
    setup_logging(config)
    logging.getLogger().handlers[0].stream = stream


def _entries(stream: StringIO) -> list[dict[str, Any]]:
    return [json.loads(line) for line in stream.getvalue().splitlines() if line.strip()]


def test_json_output_format(json_config: LoggingConfig, capture_stream: StringIO) -> None:
    """Test that JSON format produces valid JSON output."""
    _capture(json_config, capture_stream)

    get_logger("rollwright.test").info("push_succeeded", tag="amd64-def456", attempt=2)

    entry = _entries(capture_stream)[0]
    assert entry["event"] == "push_succeeded"
    assert entry["tag"] == "amd64-def456"
    assert entry["attempt"] == 2
    assert entry["level"] == "info"
    assert entry["logger"] == "rollwright.test"
    assert "timestamp" in entry


def test_console_output_format(capture_stream: StringIO) -> None:
    """Test that console format produces human-readable output."""
    _capture(LoggingConfig(level="DEBUG", format="console"), capture_stream)

    get_logger("rollwright.test").debug("rollout_observed", state="progressing")

    output = capture_stream.getvalue()
    assert "rollout_observed" in output
    assert "progressing" in output
    with pytest.raises(json.JSONDecodeError):
        json.loads(output.strip())


def test_log_level_filtering(json_config: LoggingConfig, capture_stream: StringIO) -> None:
    """Test that DEBUG is filtered at INFO level."""
    _capture(json_config, capture_stream)
    logger = get_logger("rollwright.test")

    logger.debug("debug_message")
    assert capture_stream.getvalue() == ""

    logger.warning("warning_message")
    assert "warning_message" in capture_stream.getvalue()


def test_correlation_id_binding(json_config: LoggingConfig, capture_stream: StringIO) -> None:
    """Test that the correlation ID is added while set."""
    _capture(json_config, capture_stream)
    logger = get_logger("rollwright.test")

    set_correlation_id("corr-12345")
    assert get_correlation_id() == "corr-12345"
    logger.info("with_correlation")

    set_correlation_id(None)
    logger.info("without_correlation")

    first, second = _entries(capture_stream)
    assert first["correlation_id"] == "corr-12345"
    assert "correlation_id" not in second


def test_correlation_id_processor() -> None:
    event_dict: dict[str, Any] = {"event": "test"}

    assert "correlation_id" not in add_correlation_id(None, "", event_dict.copy())

    set_correlation_id("test-id")
    assert add_correlation_id(None, "", event_dict.copy())["correlation_id"] == "test-id"
    set_correlation_id(None)


def test_run_context_binding(json_config: LoggingConfig, capture_stream: StringIO) -> None:
    """Test that run context is bound inside the block and restored after."""
    _capture(json_config, capture_stream)
    logger = get_logger("rollwright.test")

    with bind_run_context("run-1", "svc-a", "staging"):
        logger.info("outer")
        with bind_run_context("run-2", "svc-a", "staging"):
            logger.info("nested")
        logger.info("outer_again")
    logger.info("unbound")

    outer, nested, outer_again, unbound = _entries(capture_stream)
    assert outer["run_id"] == "run-1"
    assert outer["service"] == "svc-a"
    assert outer["environment"] == "staging"
    assert nested["run_id"] == "run-2"
    assert outer_again["run_id"] == "run-1"
    assert "run_id" not in unbound


@pytest.mark.asyncio
async def test_concurrent_runs_keep_separate_context(
    json_config: LoggingConfig, capture_stream: StringIO
) -> None:
    """Test that concurrent tasks do not see each other's bindings."""
    _capture(json_config, capture_stream)
    logger = get_logger("rollwright.test")

    async def run(run_id: str, service: str) -> None:
        with bind_run_context(run_id, service, "staging"):
            await asyncio.sleep(0)
            logger.info("step_started", marker=service)

    await asyncio.gather(run("run-a", "svc-a"), run("run-b", "svc-b"))

    by_marker = {e["marker"]: e["run_id"] for e in _entries(capture_stream)}
    assert by_marker == {"svc-a": "run-a", "svc-b": "run-b"}


def test_file_rotation_handler_configuration(tmp_path: Path) -> None:
    """Test that the rotating file handler is configured from LoggingConfig."""
    log_file = tmp_path / "logs" / "rollwright.log"
    setup_logging(
        LoggingConfig(
            level="INFO", format="json", file=log_file, rotation_size_mb=10, retention_count=3
        )
    )

    handler = logging.getLogger().handlers[0]
    assert isinstance(handler, logging.handlers.RotatingFileHandler)
    assert handler.maxBytes == 10 * 1024 * 1024
    assert handler.backupCount == 3

    get_logger("rollwright.test").info("file_write", data="test")
    handler.flush()

    entry = json.loads(log_file.read_text().strip())
    assert entry["event"] == "file_write"


def test_exception_formatting(json_config: LoggingConfig, capture_stream: StringIO) -> None:
    """Test that exceptions are rendered into the entry."""
    _capture(json_config, capture_stream)

    try:
        raise RuntimeError("registry exploded")
    except RuntimeError:
        get_logger("rollwright.test").exception("push_failed")

    entry = _entries(capture_stream)[0]
    assert entry["level"] == "error"
    assert "RuntimeError: registry exploded" in entry["exception"]
