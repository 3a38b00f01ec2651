"""Structlog-based logging for kinsync.

Library code logs through structlog with event-style names; never print().
"""
from __future__ import annotations

import logging
from typing import Literal

import structlog

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def configure_logging(level: LogLevel = "INFO", *, json: bool = True) -> None:
    logging.basicConfig(format="%(message)s", level=getattr(logging, level))
    renderer = structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level)),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = "kinsync"):
    return structlog.get_logger(name)


def bind_operation(operation_id: str, kind: str) -> None:
    """Attach the active operation to every log line emitted from this task."""
    structlog.contextvars.bind_contextvars(operation_id=operation_id, operation_kind=kind)


def clear_operation() -> None:
    structlog.contextvars.unbind_contextvars("operation_id", "operation_kind")


configure_logging()
