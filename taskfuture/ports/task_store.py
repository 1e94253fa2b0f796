"""Port definition for task record storage backends."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, runtime_checkable

from taskfuture.domain.task_record import ErrorRecord, TaskRecord, TaskStatus


@runtime_checkable
class TaskStorePort(Protocol):
    """Abstract interface implemented by task store adapters.

    Adapters never retry internally; backend failures surface as
    ``StorageUnavailableError``.
    """

    def create(self, task_id: str, payload: bytes | None) -> None:
        """Insert a new pending record with ``version=0``.

        Raises:
            TaskAlreadyExistsError: If ``task_id`` is already stored.
        """

    def load(self, task_id: str) -> TaskRecord:
        """Return a fresh snapshot of the record.

        Raises:
            TaskNotFoundError: If the record does not exist.
        """

    def transition(
        self,
        task_id: str,
        *,
        expected_version: int,
        new_status: TaskStatus,
        result: bytes | None = None,
        error: ErrorRecord | None = None,
    ) -> int:
        """Apply a state-machine edge guarded by ``expected_version``.

        Returns:
            The record's new version.

        Raises:
            InvalidTransitionError: If the edge is illegal.
            ConcurrentModificationError: If ``expected_version`` is stale.
            TaskNotFoundError: If the record does not exist.
        """

    def delete(self, task_id: str) -> None:
        """Remove the record; no error if it is already gone."""

    def delete_expired(self, older_than: datetime) -> int:
        """Delete terminal records completed before ``older_than``.

        Returns:
            Number of records removed by this call.
        """


__all__ = ["TaskStorePort"]
