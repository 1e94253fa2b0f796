"""Worker-side execution adapter driving a task through its lifecycle."""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from typing import Any, Final

from taskfuture.config.logging_config import get_logger, task_log_context
from taskfuture.domain.exceptions import (
    ConcurrentModificationError,
    InvalidTransitionError,
    TaskExecutionError,
    TaskNotFoundError,
)
from taskfuture.domain.messages import WorkDescriptor
from taskfuture.domain.task_record import TaskStatus
from taskfuture.ports.task_store import TaskStorePort
from taskfuture.services.error_codec import ErrorCodec
from taskfuture.services.result_codec import ResultCodec

logger = get_logger(__name__)

TaskHandler = Callable[[dict[str, Any]], Any]

UNKNOWN_TASK_KIND: Final[str] = "UnknownTask"
UNKNOWN_TASK_CODE: Final[int] = 404

_RECORD_MOVED_ON: Final = (
    ConcurrentModificationError,
    InvalidTransitionError,
    TaskNotFoundError,
)


class TaskExecutor:
    """Claim, run and finish tasks delivered by the dispatch transport.

    A lost optimistic-concurrency race at any step ends the attempt: the
    stored record is authoritative and has already moved on.
    """

    def __init__(
        self,
        *,
        store: TaskStorePort,
        handlers: Mapping[str, TaskHandler],
        error_codec: ErrorCodec | None = None,
        result_codec: ResultCodec | None = None,
    ) -> None:
        if not handlers:
            raise ValueError("handlers must not be empty")
        self._store = store
        self._handlers = dict(handlers)
        self._error_codec = error_codec or ErrorCodec()
        self._result_codec = result_codec or ResultCodec()

    def handle(self, task_id: str, work: WorkDescriptor) -> TaskStatus | None:
        """Execute ``work`` for ``task_id``.

        Returns:
            The terminal status written, or ``None`` if the attempt stopped
            because another writer changed the record first.
        """

        with task_log_context(task_id, work.name):
            return self._handle(task_id, work)

    def _handle(self, task_id: str, work: WorkDescriptor) -> TaskStatus | None:
        try:
            record = self._store.load(task_id)
            running_version = self._store.transition(
                task_id,
                expected_version=record.version,
                new_status=TaskStatus.RUNNING,
            )
        except _RECORD_MOVED_ON as exc:
            logger.warning("task_claim_rejected", reason=str(exc))
            return None

        logger.info("task_started")
        start_time = time.perf_counter()
        try:
            value = self._run(work)
            encoded = self._result_codec.encode(value)
        except Exception as exc:  # noqa: BLE001
            duration = time.perf_counter() - start_time
            logger.exception("task_failed", duration_seconds=duration)
            return self._finish(
                task_id,
                running_version,
                TaskStatus.FAILED,
                error=self._error_codec.encode(exc),
            )

        duration = time.perf_counter() - start_time
        logger.info("task_completed", duration_seconds=duration)
        return self._finish(
            task_id, running_version, TaskStatus.COMPLETED, result=encoded
        )

    def _run(self, work: WorkDescriptor) -> Any:
        handler = self._handlers.get(work.name)
        if handler is None:
            raise TaskExecutionError(
                f"No handler registered for task {work.name!r}",
                kind=UNKNOWN_TASK_KIND,
                code=UNKNOWN_TASK_CODE,
            )
        return handler(dict(work.params))

    def _finish(
        self,
        task_id: str,
        version: int,
        status: TaskStatus,
        **outcome: Any,
    ) -> TaskStatus | None:
        try:
            self._store.transition(
                task_id, expected_version=version, new_status=status, **outcome
            )
        except _RECORD_MOVED_ON:
            logger.error("task_outcome_rejected", status=status.value, exc_info=True)
            return None
        return status


__all__ = ["TaskExecutor", "TaskHandler"]
