"""Structured logging setup for taskfuture processes.

JSON output is meant for workers and the sweep running under a supervisor;
the console renderer is for local runs. Task-scoped context (task id and
name) is bound per thread through ``task_log_context`` so every entry a
worker emits while running a task can be correlated with its record.
"""

from __future__ import annotations

import logging
import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Final

import structlog
from structlog.types import EventDict, Processor

if TYPE_CHECKING:
    from taskfuture.config.settings import Settings

APP_NAME: Final[str] = "taskfuture"

# Client libraries log every reconnect at INFO
QUIET_LOGGERS: Final[tuple[str, ...]] = ("redis", "psycopg2", "alembic")


def add_runtime_context(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Tag every entry with the application and the emitting thread.

    Work delivered in-process runs on ``taskfuture-<id>`` threads, so the
    thread name separates concurrent tasks in console output.
    """
    event_dict["app"] = APP_NAME
    event_dict.setdefault("thread", threading.current_thread().name)
    return event_dict


def build_processors(*, json_logs: bool) -> list[Processor]:
    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        add_runtime_context,
    ]

    if json_logs:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    return processors


def setup_logging(settings: Settings, *, json_logs: bool = False) -> None:
    """Configure structlog on top of the standard library logger.

    Args:
        settings: Resolved settings; ``log_level`` picks the threshold
        json_logs: Emit JSON lines instead of colored console output
    """
    numeric_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=numeric_level,
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=build_processors(json_logs=json_logs),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.info("task_submitted", task_id="0b6f...")
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]


@contextmanager
def task_log_context(task_id: str, task_name: str) -> Iterator[None]:
    """Attach ``task_id`` and ``task_name`` to entries logged in this block.

    Example:
        >>> with task_log_context("0b6f...", "ping"):
        ...     logger.info("task_started")  # Includes task_id and task_name
    """
    with structlog.contextvars.bound_contextvars(task_id=task_id, task_name=task_name):
        yield


__all__ = [
    "APP_NAME",
    "add_runtime_context",
    "build_processors",
    "get_logger",
    "setup_logging",
    "task_log_context",
]
