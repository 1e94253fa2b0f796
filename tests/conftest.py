"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from collections.abc import Callable, Generator
from datetime import timedelta
from pathlib import Path
from typing import Any

import pytest

from taskfuture.adapters.redis_task_store import RedisTaskStore
from taskfuture.adapters.sqlite_task_store import SQLiteTaskStore
from taskfuture.config.settings import Settings
from taskfuture.domain.messages import WorkDescriptor
from taskfuture.ports.task_store import TaskStorePort
from tests.fakes import FakeRedis

STORE_BACKENDS = ("sqlite", "redis")


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings pointing the SQLite backend at a throwaway database."""

    return Settings().model_copy(
        update={"store_backend": "sqlite", "db_path": str(tmp_path / "tasks.db")}
    )


@pytest.fixture
def sqlite_store(tmp_path: Path) -> SQLiteTaskStore:
    return SQLiteTaskStore(str(tmp_path / "tasks.db"))


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def redis_store(fake_redis: FakeRedis) -> Generator[RedisTaskStore, None, None]:
    store = RedisTaskStore(
        fake_redis,
        key_prefix="test",
        retention=timedelta(hours=1),
        lock_timeout_seconds=5,
        lock_wait_seconds=5,
    )
    try:
        yield store
    finally:
        store.close()


@pytest.fixture(params=STORE_BACKENDS)
def store(request: pytest.FixtureRequest) -> TaskStorePort:
    """Every store backend exercised by the shared contract tests."""

    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture
def work() -> WorkDescriptor:
    return WorkDescriptor(name="ping", params={"value": 1})


@pytest.fixture
def handlers() -> dict[str, Callable[[dict[str, Any]], Any]]:
    def _ping(params: dict[str, Any]) -> dict[str, Any]:
        return {"pong": params.get("value")}

    def _explode(params: dict[str, Any]) -> Any:
        raise ValueError(params.get("reason", "boom"))

    return {"ping": _ping, "explode": _explode}
