"""Client-side handle for a submitted task."""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any, Final, Protocol

from pydantic import BaseModel, ConfigDict, Field, model_validator

from taskfuture.config.logging_config import get_logger
from taskfuture.domain.exceptions import (
    ConcurrentModificationError,
    TaskCancelledError,
    TaskNotReadyError,
    WaitCancelledError,
    WaitTimeoutError,
)
from taskfuture.domain.task_record import ErrorRecord, TaskRecord, TaskStatus
from taskfuture.ports.task_store import TaskStorePort
from taskfuture.services.error_codec import ErrorCodec
from taskfuture.services.result_codec import ResultCodec

logger = get_logger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS: Final[float] = 0.1
DEFAULT_MAX_POLL_INTERVAL_SECONDS: Final[float] = 0.5
DEFAULT_BACKOFF_MULTIPLIER: Final[float] = 1.5


class WaitSignal(Protocol):
    """Caller-owned cancellation signal, e.g. ``threading.Event``."""

    def is_set(self) -> bool: ...

    def wait(self, timeout: float) -> bool: ...


class PollingPolicy(BaseModel):
    """Capped exponential backoff between polls.

    ``max_interval_seconds`` is the worst-case delay between a task reaching a
    terminal state and a waiting ``get`` noticing it.
    """

    model_config = ConfigDict(frozen=True)

    interval_seconds: float = Field(default=DEFAULT_POLL_INTERVAL_SECONDS, gt=0)
    max_interval_seconds: float = Field(default=DEFAULT_MAX_POLL_INTERVAL_SECONDS, gt=0)
    backoff_multiplier: float = Field(default=DEFAULT_BACKOFF_MULTIPLIER, ge=1.0)

    @model_validator(mode="after")
    def _check_ceiling(self) -> PollingPolicy:
        if self.max_interval_seconds < self.interval_seconds:
            msg = "max_interval_seconds must be >= interval_seconds"
            raise ValueError(msg)
        return self

    def next_interval(self, current: float) -> float:
        return min(current * self.backoff_multiplier, self.max_interval_seconds)


class TaskFuture:
    """Handle bound to one task id.

    Holds nothing but the id; every query reads the store. The optional
    snapshot memo (``snapshot_ttl_seconds``) only serves the status-query
    family to rate-limit callers that spin on ``is_done()``.
    """

    def __init__(
        self,
        task_id: str,
        store: TaskStorePort,
        *,
        error_codec: ErrorCodec | None = None,
        result_codec: ResultCodec | None = None,
        polling: PollingPolicy | None = None,
        snapshot_ttl_seconds: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if snapshot_ttl_seconds < 0:
            raise ValueError("snapshot_ttl_seconds must not be negative")
        self._task_id = task_id
        self._store = store
        self._error_codec = error_codec or ErrorCodec()
        self._result_codec = result_codec or ResultCodec()
        self._polling = polling or PollingPolicy()
        self._snapshot_ttl_seconds = snapshot_ttl_seconds
        self._clock = clock
        self._sleep = sleep
        self._snapshot: TaskRecord | None = None
        self._snapshot_at = 0.0

    def __repr__(self) -> str:
        return f"TaskFuture(task_id={self._task_id!r})"

    @property
    def task_id(self) -> str:
        return self._task_id

    def status(self) -> TaskStatus:
        return self._query_snapshot().status

    def is_done(self) -> bool:
        return self.status().is_terminal

    def is_success(self) -> bool:
        return self.status() is TaskStatus.COMPLETED

    def is_failed(self) -> bool:
        return self.status() is TaskStatus.FAILED

    def is_cancelled(self) -> bool:
        return self.status() is TaskStatus.CANCELLED

    def get_nowait(self) -> Any:
        """Resolve the outcome from a single read without waiting.

        Raises:
            TaskNotReadyError: If the task is pending or running.
            TaskCancelledError: If the task was cancelled.
            Exception: The decoded task failure when the task failed.
        """

        return self._resolve(self._load())

    def get(
        self, timeout: float | None = None, *, cancel_event: WaitSignal | None = None
    ) -> Any:
        """Wait for the task to finish and return its result.

        Args:
            timeout: Seconds to wait; ``None`` waits until the task finishes
                or ``cancel_event`` is set.
            cancel_event: Caller's own cancellation signal. Setting it aborts
                the wait only; the task keeps running.

        Raises:
            WaitTimeoutError: Deadline passed with the task still unfinished.
            WaitCancelledError: ``cancel_event`` was set during the wait.
            StorageUnavailableError: The store failed while polling.
            TaskCancelledError: The task was cancelled.
            Exception: The decoded task failure when the task failed.
        """

        if timeout is not None and timeout < 0:
            raise ValueError("timeout must not be negative")

        deadline = None if timeout is None else self._clock() + timeout
        interval = self._polling.interval_seconds
        polls = 0
        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise WaitCancelledError(self._task_id)

            record = self._load()
            polls += 1
            if record.is_terminal:
                logger.debug(
                    "task_wait_finished",
                    task_id=self._task_id,
                    status=record.status.value,
                    polls=polls,
                )
                return self._resolve(record)

            pause = interval
            if deadline is not None:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    logger.info(
                        "task_wait_timed_out",
                        task_id=self._task_id,
                        timeout=timeout,
                        polls=polls,
                    )
                    raise WaitTimeoutError(self._task_id, timeout or 0.0)
                pause = min(pause, remaining)

            if cancel_event is not None:
                if cancel_event.wait(pause):
                    raise WaitCancelledError(self._task_id)
            else:
                self._sleep(pause)
            interval = self._polling.next_interval(interval)

    def cancel(self) -> bool:
        """Cancel the task if it has not been claimed by a worker yet.

        Returns ``False`` when the task is no longer pending or a concurrent
        writer got there first; call ``status()`` to find out which.
        """

        record = self._load()
        if record.status is not TaskStatus.PENDING:
            return False
        try:
            self._store.transition(
                self._task_id,
                expected_version=record.version,
                new_status=TaskStatus.CANCELLED,
            )
        except ConcurrentModificationError:
            logger.info("task_cancel_lost_race", task_id=self._task_id)
            return False

        logger.info("task_cancelled", task_id=self._task_id)
        return True

    def get_exception(self) -> ErrorRecord | None:
        """Return the failure record if the task failed, else ``None``."""

        record = self._load()
        if record.status is TaskStatus.FAILED:
            return record.error
        return None

    def _load(self) -> TaskRecord:
        record = self._store.load(self._task_id)
        self._snapshot = record
        self._snapshot_at = self._clock()
        return record

    def _query_snapshot(self) -> TaskRecord:
        if (
            self._snapshot is not None
            and self._snapshot_ttl_seconds > 0
            and self._clock() - self._snapshot_at < self._snapshot_ttl_seconds
        ):
            return self._snapshot
        return self._load()

    def _resolve(self, record: TaskRecord) -> Any:
        if record.status is TaskStatus.COMPLETED and record.result is not None:
            return self._result_codec.decode(record.result)
        if record.status is TaskStatus.FAILED and record.error is not None:
            raise self._error_codec.decode(record.error)
        if record.status is TaskStatus.CANCELLED:
            raise TaskCancelledError(self._task_id)
        raise TaskNotReadyError(self._task_id, record.status.value)


__all__ = ["PollingPolicy", "TaskFuture", "WaitSignal"]
