"""Structured logging configuration for Rollwright.

This module configures structlog with support for:
- JSON and console output formats
- File rotation based on size
- Correlation IDs shared by every run of one CLI invocation
- Run context binding (run id, service, environment)

Example usage:
    >>> from rollwright.config import LoggingConfig
    >>> from rollwright.logging import setup_logging, get_logger, bind_run_context
    >>>
    >>> setup_logging(LoggingConfig(level="INFO", format="json"))
    >>> logger = get_logger(__name__)
    >>> with bind_run_context(run_id="a1b2c3", service="svc-a", environment="staging"):
    ...     logger.info("run_started", pipeline="deploy")
"""

from __future__ import annotations

import contextvars
import logging
import logging.handlers
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog

from rollwright.config import LoggingConfig

_correlation_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "correlation_id", default=None
)


def add_correlation_id(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Processor stamping the invocation's correlation id onto each event."""
    correlation_id = _correlation_id.get()
    if correlation_id is not None:
        event_dict["correlation_id"] = correlation_id
    return event_dict


def set_correlation_id(correlation_id: str | None) -> None:
    """Set correlation ID for current context."""
    _correlation_id.set(correlation_id)


def get_correlation_id() -> str | None:
    """Get current correlation ID from context."""
    return _correlation_id.get()


@contextmanager
def bind_run_context(run_id: str, service: str, environment: str) -> Iterator[None]:
    """Bind run identity to every log emitted inside the block.

    Previous bindings are restored on exit, so a nested rollback run does
    not leave its id on the parent's logs. Concurrent runs execute in their
    own tasks and keep separate bindings.

    Args:
        run_id: Pipeline run identifier
        service: Service being released
        environment: Target environment
    """
    with structlog.contextvars.bound_contextvars(
        run_id=run_id, service=service, environment=environment
    ):
        yield


# Transport libraries that log every request at INFO or DEBUG
NOISY_LOGGERS = ("urllib3", "docker", "git", "httpx", "httpcore")


def _make_handler(config: LoggingConfig) -> logging.Handler:
    if config.file is None:
        # stderr keeps stdout free for rendered CLI results
        return logging.StreamHandler(sys.stderr)

    config.file.parent.mkdir(parents=True, exist_ok=True)
    return logging.handlers.RotatingFileHandler(
        filename=config.file,
        maxBytes=config.rotation_size_mb * 1024 * 1024,
        backupCount=config.retention_count,
        encoding="utf-8",
    )


def setup_logging(config: LoggingConfig) -> None:
    """Route structlog through one stdlib handler on the root logger.

    Args:
        config: Logging configuration from RollwrightConfig
    """
    level = logging.getLevelNamesMapping()[config.level]

    handler = _make_handler(config)
    handler.setLevel(level)
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    # Library chatter only surfaces when debugging
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    renderer: Any = (
        structlog.processors.JSONRenderer()
        if config.format == "json"
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.contextvars.merge_contextvars,
            add_correlation_id,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger named after the calling module."""
    return structlog.get_logger(name)
