"""SQLite implementation of the task store port.

Relational backend for single-host deployments and tests. Concurrency control
is the conditional ``UPDATE ... WHERE task_id = ? AND version = ?`` checked by
affected-row count; SQLite serializes writers on the database file.
"""

import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Final

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

TASK_TABLE: Final[str] = "task_records"
DEFAULT_BUSY_TIMEOUT_SECONDS: Final[float] = 30.0
DEFAULT_SWEEP_BATCH_SIZE: Final[int] = 1000
DEFAULT_SWEEP_MAX_PASSES: Final[int] = 100

_TERMINAL_VALUES: Final[tuple[str, ...]] = tuple(
    sorted(status.value for status in TERMINAL_STATUSES)
)


class SQLiteTaskStore:
    """SQLite-backed task store."""

    def __init__(
        self,
        db_path: str,
        *,
        sweep_batch_size: int = DEFAULT_SWEEP_BATCH_SIZE,
        sweep_max_passes: int = DEFAULT_SWEEP_MAX_PASSES,
        busy_timeout_seconds: float = DEFAULT_BUSY_TIMEOUT_SECONDS,
    ) -> None:
        """Initialize store and ensure schema.

        Args:
            db_path: Path to SQLite database file
            sweep_batch_size: Rows deleted per sweep pass
            sweep_max_passes: Pass budget for one ``delete_expired`` call
            busy_timeout_seconds: How long a connection waits on a locked file
        """
        if sweep_batch_size <= 0:
            raise ValueError("sweep_batch_size must be positive")
        if sweep_max_passes <= 0:
            raise ValueError("sweep_max_passes must be positive")

        self.db_path = db_path
        self._sweep_batch_size = sweep_batch_size
        self._sweep_max_passes = sweep_max_passes
        self._busy_timeout_seconds = busy_timeout_seconds

        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._create_schema()

    def _get_connection(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(self.db_path, timeout=self._busy_timeout_seconds)
        except sqlite3.Error as exc:
            raise StorageUnavailableError(f"Failed to open SQLite database: {exc}") from exc
        conn.row_factory = sqlite3.Row
        return conn

    def _create_schema(self) -> None:
        """Create the task table and its indexes if missing."""
        logger.info("sqlite_schema_creation_started", db_path=str(self.db_path))
        conn = self._get_connection()
        try:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {TASK_TABLE} (
                    task_id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    payload BLOB,
                    result BLOB,
                    error TEXT,
                    submitted_at TEXT NOT NULL,
                    started_at TEXT,
                    completed_at TEXT,
                    version INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            conn.execute(
                f"CREATE INDEX IF NOT EXISTS {TASK_TABLE}_status_idx "
                f"ON {TASK_TABLE} (status)"
            )
            conn.execute(
                f"CREATE INDEX IF NOT EXISTS {TASK_TABLE}_completed_at_idx "
                f"ON {TASK_TABLE} (completed_at)"
            )
            conn.commit()
        except sqlite3.Error as exc:
            raise StorageUnavailableError(f"Failed to create schema: {exc}") from exc
        finally:
            conn.close()

    def create(self, task_id: str, payload: bytes | None) -> None:
        record = TaskRecord.new(task_id, payload)
        conn = self._get_connection()
        try:
            conn.execute(
                f"""
                INSERT INTO {TASK_TABLE} (
                    task_id, status, payload, result, error,
                    submitted_at, started_at, completed_at, version
                ) VALUES (?, ?, ?, NULL, NULL, ?, NULL, NULL, 0)
                """,
                (
                    record.task_id,
                    record.status.value,
                    record.payload,
                    _to_text(record.submitted_at),
                ),
            )
            conn.commit()
        except sqlite3.IntegrityError as exc:
            raise TaskAlreadyExistsError(task_id) from exc
        except sqlite3.Error as exc:
            raise StorageUnavailableError(f"Failed to create task: {exc}") from exc
        finally:
            conn.close()

        logger.debug("task_record_created", task_id=task_id)

    def load(self, task_id: str) -> TaskRecord:
        conn = self._get_connection()
        try:
            row = conn.execute(
                f"SELECT * FROM {TASK_TABLE} WHERE task_id = ?", (task_id,)
            ).fetchone()
        except sqlite3.Error as exc:
            raise StorageUnavailableError(f"Failed to load task: {exc}") from exc
        finally:
            conn.close()

        if row is None:
            raise TaskNotFoundError(task_id)
        return self._row_to_record(row)

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

        conn = self._get_connection()
        try:
            cursor = conn.execute(
                f"""
                UPDATE {TASK_TABLE}
                SET status = ?,
                    result = ?,
                    error = ?,
                    started_at = ?,
                    completed_at = ?,
                    version = ?
                WHERE task_id = ? AND version = ?
                """,
                (
                    updated.status.value,
                    updated.result,
                    _error_to_text(updated.error),
                    _to_optional_text(updated.started_at),
                    _to_optional_text(updated.completed_at),
                    updated.version,
                    task_id,
                    expected_version,
                ),
            )
            if cursor.rowcount == 0:
                conn.rollback()
                raise ConcurrentModificationError(task_id, expected_version)
            conn.commit()
        except sqlite3.Error as exc:
            raise StorageUnavailableError(f"Failed to update task: {exc}") from exc
        finally:
            conn.close()

        logger.debug(
            "task_record_transitioned",
            task_id=task_id,
            status=updated.status.value,
            version=updated.version,
        )
        return updated.version

    def delete(self, task_id: str) -> None:
        conn = self._get_connection()
        try:
            conn.execute(f"DELETE FROM {TASK_TABLE} WHERE task_id = ?", (task_id,))
            conn.commit()
        except sqlite3.Error as exc:
            raise StorageUnavailableError(f"Failed to delete task: {exc}") from exc
        finally:
            conn.close()

    def delete_expired(self, older_than: datetime) -> int:
        cutoff = _to_text(older_than)
        placeholders = ", ".join("?" for _ in _TERMINAL_VALUES)
        total = 0
        passes = 0

        conn = self._get_connection()
        try:
            while passes < self._sweep_max_passes:
                passes += 1
                cursor = conn.execute(
                    f"""
                    DELETE FROM {TASK_TABLE}
                    WHERE task_id IN (
                        SELECT task_id FROM {TASK_TABLE}
                        WHERE status IN ({placeholders})
                          AND completed_at IS NOT NULL
                          AND completed_at < ?
                        ORDER BY completed_at
                        LIMIT ?
                    )
                    """,
                    (*_TERMINAL_VALUES, cutoff, self._sweep_batch_size),
                )
                conn.commit()
                deleted = max(cursor.rowcount, 0)
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
        except sqlite3.Error as exc:
            raise StorageUnavailableError(f"Failed to delete expired tasks: {exc}") from exc
        finally:
            conn.close()

        logger.info("expired_task_records_deleted", deleted=total, passes=passes)
        return total

    def _row_to_record(self, row: sqlite3.Row) -> TaskRecord:
        return TaskRecord(
            task_id=row["task_id"],
            status=TaskStatus(row["status"]),
            payload=_optional_bytes(row["payload"]),
            result=_optional_bytes(row["result"]),
            error=_error_from_text(row["error"]),
            submitted_at=datetime.fromisoformat(row["submitted_at"]),
            started_at=_from_optional_text(row["started_at"]),
            completed_at=_from_optional_text(row["completed_at"]),
            version=int(row["version"]),
        )


def _to_text(value: datetime) -> str:
    # Fixed-width ISO strings in UTC compare correctly as text.
    return ensure_utc(value).isoformat(timespec="microseconds")


def _to_optional_text(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _to_text(value)


def _from_optional_text(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _optional_bytes(value: bytes | memoryview | None) -> bytes | None:
    if value is None:
        return None
    return bytes(value)


def _error_to_text(error: ErrorRecord | None) -> str | None:
    if error is None:
        return None
    return error.model_dump_json()


def _error_from_text(value: str | None) -> ErrorRecord | None:
    if value is None:
        return None
    return ErrorRecord.model_validate_json(value)


__all__ = ["SQLiteTaskStore"]
