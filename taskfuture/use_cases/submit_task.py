"""Use case: submit work for out-of-band execution."""

from __future__ import annotations

import time
from collections.abc import Callable
from uuid import uuid4

from taskfuture.config.logging_config import get_logger
from taskfuture.domain.exceptions import (
    DispatchError,
    StorageUnavailableError,
    TaskFutureError,
)
from taskfuture.domain.messages import AsyncMessage
from taskfuture.domain.task_record import TaskStatus
from taskfuture.ports.dispatcher import DispatcherPort
from taskfuture.ports.task_store import TaskStorePort
from taskfuture.services.error_codec import ErrorCodec
from taskfuture.services.result_codec import ResultCodec, encode_message
from taskfuture.services.task_future import PollingPolicy, TaskFuture

logger = get_logger(__name__)


def new_task_id() -> str:
    return str(uuid4())


class TaskSubmissionService:
    """Create the task record, dispatch the work, hand back a future.

    The record is always created before dispatch so a future never points at
    an untracked task.
    """

    def __init__(
        self,
        *,
        store: TaskStorePort,
        dispatcher: DispatcherPort,
        error_codec: ErrorCodec | None = None,
        result_codec: ResultCodec | None = None,
        polling: PollingPolicy | None = None,
        latency_budget_seconds: float = 0.05,
        id_factory: Callable[[], str] = new_task_id,
    ) -> None:
        if latency_budget_seconds <= 0:
            raise ValueError("latency_budget_seconds must be positive")
        self._store = store
        self._dispatcher = dispatcher
        self._error_codec = error_codec or ErrorCodec()
        self._result_codec = result_codec or ResultCodec()
        self._polling = polling or PollingPolicy()
        self._latency_budget_seconds = latency_budget_seconds
        self._id_factory = id_factory

    def submit(self, work: AsyncMessage) -> TaskFuture:
        """Submit ``work`` and return a future bound to its new task id.

        Raises:
            StorageUnavailableError: The record could not be created; nothing
                was dispatched.
            DispatchError: The dispatch collaborator rejected the work; the
                record was rolled to cancelled (or left pending if
                the rollback failed too).
        """

        started = time.perf_counter()
        task_id = self._id_factory()
        payload = encode_message(work)

        try:
            self._store.create(task_id, payload)
        except StorageUnavailableError:
            logger.error("task_create_failed", task_id=task_id, exc_info=True)
            raise

        try:
            self._dispatcher.dispatch(task_id, work)
        except Exception as exc:  # noqa: BLE001
            logger.exception("task_dispatch_failed", task_id=task_id)
            self._rollback(task_id)
            raise DispatchError(task_id, str(exc)) from exc

        elapsed = time.perf_counter() - started
        if elapsed > self._latency_budget_seconds:
            logger.warning(
                "task_submission_slow",
                task_id=task_id,
                elapsed_ms=round(elapsed * 1000, 2),
                budget_ms=round(self._latency_budget_seconds * 1000, 2),
            )
        logger.info("task_submitted", task_id=task_id, work_type=type(work).__name__)

        return self.future(task_id)

    def future(self, task_id: str) -> TaskFuture:
        """Bind a future to an existing task id, e.g. one received from a client."""

        return TaskFuture(
            task_id,
            self._store,
            error_codec=self._error_codec,
            result_codec=self._result_codec,
            polling=self._polling,
        )

    def _rollback(self, task_id: str) -> None:
        try:
            record = self._store.load(task_id)
            if record.status is not TaskStatus.PENDING:
                logger.warning(
                    "task_dispatch_rollback_skipped",
                    task_id=task_id,
                    status=record.status.value,
                )
                return
            self._store.transition(
                task_id,
                expected_version=record.version,
                new_status=TaskStatus.CANCELLED,
            )
        except TaskFutureError:
            # The record stays pending; no worker was handed the work.
            logger.error(
                "task_dispatch_rollback_failed", task_id=task_id, exc_info=True
            )
            return
        logger.warning("task_dispatch_rolled_back", task_id=task_id)


__all__ = ["TaskSubmissionService", "new_task_id"]
