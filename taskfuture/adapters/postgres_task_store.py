"""PostgreSQL implementation of the task store port."""

from __future__ import annotations

from collections.abc import Callable
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Any, Final

from psycopg2 import Error as PsycopgError
from psycopg2 import IntegrityError as PsycopgIntegrityError
from psycopg2.extras import Json, RealDictCursor

from taskfuture.config.logging_config import get_logger
from taskfuture.domain.exceptions import (
    ConcurrentModificationError,
    StorageUnavailableError,
    TaskAlreadyExistsError,
    TaskNotFoundError,
)
from taskfuture.domain.task_record import (
    TERMINAL_STATUSES,
    ErrorRecord,
    TaskRecord,
    TaskStatus,
    ensure_utc,
    validate_transition,
)

logger = get_logger(__name__)

DEFAULT_SWEEP_BATCH_SIZE: Final[int] = 1000
DEFAULT_SWEEP_MAX_PASSES: Final[int] = 100

_TERMINAL_VALUES: Final[list[str]] = sorted(status.value for status in TERMINAL_STATUSES)


class PostgresTaskStore:
    """Task store backed by the ``task_records`` table."""

    def __init__(
        self,
        connection_provider: Callable[[], AbstractContextManager[Any]],
        *,
        sweep_batch_size: int = DEFAULT_SWEEP_BATCH_SIZE,
        sweep_max_passes: int = DEFAULT_SWEEP_MAX_PASSES,
        on_close: Callable[[], None] | None = None,
    ) -> None:
        if sweep_batch_size <= 0:
            raise ValueError("sweep_batch_size must be positive")
        if sweep_max_passes <= 0:
            raise ValueError("sweep_max_passes must be positive")
        self._connection_provider = connection_provider
        self._sweep_batch_size = sweep_batch_size
        self._sweep_max_passes = sweep_max_passes
        self._on_close = on_close

    def close(self) -> None:
        """Release the underlying connection pool, if this store owns one."""
        if self._on_close is not None:
            self._on_close()

    def create(self, task_id: str, payload: bytes | None) -> None:
        record = TaskRecord.new(task_id, payload)
        try:
            with self._connection_provider() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        INSERT INTO task_records (
                            task_id,
                            status,
                            payload,
                            submitted_at,
                            version
                        ) VALUES (%s, %s, %s, %s, 0)
                        ON CONFLICT (task_id) DO NOTHING
                        RETURNING task_id
                        """,
                        (
                            record.task_id,
                            record.status.value,
                            record.payload,
                            record.submitted_at,
                        ),
                    )
                    row = cur.fetchone()
                    if row is None:
                        conn.rollback()
                        raise TaskAlreadyExistsError(task_id)
                    conn.commit()
        except PsycopgIntegrityError as exc:
            raise TaskAlreadyExistsError(task_id) from exc
        except PsycopgError as exc:
            raise StorageUnavailableError(f"Failed to create task: {exc}") from exc

        logger.debug("task_record_created", task_id=task_id)

    def load(self, task_id: str) -> TaskRecord:
        try:
            with self._connection_provider() as conn:
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    cur.execute(
                        "SELECT * FROM task_records WHERE task_id = %s",
                        (task_id,),
                    )
                    row = cur.fetchone()
                    conn.commit()
        except PsycopgError as exc:
            raise StorageUnavailableError(f"Failed to load task: {exc}") from exc

        if row is None:
            raise TaskNotFoundError(task_id)
        return _row_to_record(dict(row))

    def transition(
        self,
        task_id: str,
        *,
        expected_version: int,
        new_status: TaskStatus,
        result: bytes | None = None,
        error: ErrorRecord | None = None,
    ) -> int:
        validate_transition(None, new_status)

        current = self.load(task_id)
        if current.version != expected_version:
            raise ConcurrentModificationError(task_id, expected_version)

        updated = current.advance(new_status, result=result, error=error)

        try:
            with self._connection_provider() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        UPDATE task_records
                        SET status = %s,
                            result = %s,
                            error = %s,
                            started_at = %s,
                            completed_at = %s,
                            version = version + 1
                        WHERE task_id = %s
                          AND version = %s
                        RETURNING version
                        """,
                        (
                            updated.status.value,
                            updated.result,
                            _error_to_json(updated.error),
                            updated.started_at,
                            updated.completed_at,
                            task_id,
                            expected_version,
                        ),
                    )
                    row = cur.fetchone()
                    if row is None:
                        conn.rollback()
                        raise ConcurrentModificationError(task_id, expected_version)
                    conn.commit()
        except PsycopgError as exc:
            raise StorageUnavailableError(f"Failed to update task: {exc}") from exc

        new_version = int(row[0])
        logger.debug(
            "task_record_transitioned",
            task_id=task_id,
            status=updated.status.value,
            version=new_version,
        )
        return new_version

    def delete(self, task_id: str) -> None:
        try:
            with self._connection_provider() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        "DELETE FROM task_records WHERE task_id = %s", (task_id,)
                    )
                    conn.commit()
        except PsycopgError as exc:
            raise StorageUnavailableError(f"Failed to delete task: {exc}") from exc

    def delete_expired(self, older_than: datetime) -> int:
        cutoff = ensure_utc(older_than)
        total = 0
        passes = 0
        try:
            with self._connection_provider() as conn:
                while passes < self._sweep_max_passes:
                    passes += 1
                    with conn.cursor() as cur:
                        # SKIP LOCKED keeps each batch from waiting on rows
                        # another sweep is already deleting.
                        cur.execute(
                            """
                            WITH expired AS (
                                SELECT task_id
                                FROM task_records
                                WHERE status = ANY(%s)
                                  AND completed_at < %s
                                ORDER BY completed_at ASC
                                LIMIT %s
                                FOR UPDATE SKIP LOCKED
                            )
                            DELETE FROM task_records AS t
                            USING expired
                            WHERE t.task_id = expired.task_id
                            """,
                            (_TERMINAL_VALUES, cutoff, self._sweep_batch_size),
                        )
                        deleted = max(cur.rowcount, 0)
                    conn.commit()
                    total += deleted
                    if deleted < self._sweep_batch_size:
                        break
                else:
                    logger.warning(
                        "sweep_pass_budget_exhausted",
                        passes=passes,
                        deleted=total,
                        batch_size=self._sweep_batch_size,
                    )
        except PsycopgError as exc:
            raise StorageUnavailableError(
                f"Failed to delete expired tasks: {exc}"
            ) from exc

        logger.info("expired_task_records_deleted", deleted=total, passes=passes)
        return total


def _row_to_record(row: dict[str, Any]) -> TaskRecord:
    error = row.get("error")
    return TaskRecord(
        task_id=str(row["task_id"]),
        status=TaskStatus(row["status"]),
        payload=_optional_bytes(row.get("payload")),
        result=_optional_bytes(row.get("result")),
        error=ErrorRecord.model_validate(error) if error is not None else None,
        submitted_at=row["submitted_at"],
        started_at=row.get("started_at"),
        completed_at=row.get("completed_at"),
        version=int(row["version"]),
    )


def _optional_bytes(value: bytes | memoryview | None) -> bytes | None:
    if value is None:
        return None
    return bytes(value)


def _error_to_json(error: ErrorRecord | None) -> Json | None:
    if error is None:
        return None
    return Json(error.model_dump(mode="json"))


__all__ = ["PostgresTaskStore"]
