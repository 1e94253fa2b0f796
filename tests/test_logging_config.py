"""Tests for structured logging configuration."""

from __future__ import annotations

import logging
from collections.abc import Generator

import pytest
import structlog

from taskfuture.config.logging_config import (
    APP_NAME,
    add_runtime_context,
    build_processors,
    setup_logging,
    task_log_context,
)
from taskfuture.config.settings import Settings


@pytest.fixture(autouse=True)
def _restore_structlog() -> Generator[None, None, None]:
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


def test_task_log_context_binds_and_restores() -> None:
    structlog.contextvars.bind_contextvars(request="outer")

    with task_log_context("task-1", "ping"):
        bound = structlog.contextvars.get_contextvars()
        assert bound["task_id"] == "task-1"
        assert bound["task_name"] == "ping"

    assert structlog.contextvars.get_contextvars() == {"request": "outer"}


def test_task_log_context_unbinds_when_block_raises() -> None:
    with pytest.raises(RuntimeError), task_log_context("task-1", "ping"):
        raise RuntimeError("handler blew up")

    assert "task_id" not in structlog.contextvars.get_contextvars()


def test_runtime_context_tags_app_and_thread() -> None:
    event = add_runtime_context(logging.getLogger("test"), "info", {"event": "x"})

    assert event["app"] == APP_NAME
    assert event["thread"] == "MainThread"


def test_json_processors_render_last() -> None:
    processors = build_processors(json_logs=True)

    assert isinstance(processors[-1], structlog.processors.JSONRenderer)
    assert add_runtime_context in processors


def test_setup_logging_quiets_client_libraries(settings: Settings) -> None:
    setup_logging(settings.model_copy(update={"log_level": "DEBUG"}), json_logs=True)

    assert logging.getLogger("redis").level == logging.WARNING
    assert logging.getLogger("psycopg2").level == logging.WARNING
