"""Redis implementation of the task store port.

Key-value layout: one record fans out into per-field keys
``{prefix}:{task_id}:{field}``. Every mutation rewrites all present fields
with ``EX = retention`` so a record's keys expire together. Terminal records
are indexed in the sorted set ``{prefix}:completed`` scored by
``completed_at`` for the sweep's range scan.

``transition`` serialises writers with a short-lived advisory lock
(``{prefix}:{task_id}:lock``, redis-py ``Lock``) whose own expiry bounds how
long a crashed holder can block the record. The write itself is a
``WATCH``/``MULTI`` transaction on the version key, so a holder that outlived
its lock, or a record deleted underneath it, loses instead of overwriting.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Final

from redis import Redis
from redis.exceptions import LockError, LockNotOwnedError, RedisError, WatchError

from taskfuture.config.logging_config import get_logger
from taskfuture.domain.exceptions import (
    ConcurrentModificationError,
    StorageUnavailableError,
    TaskAlreadyExistsError,
    TaskNotFoundError,
)
from taskfuture.domain.task_record import (
    ErrorRecord,
    TaskRecord,
    TaskStatus,
    ensure_utc,
    validate_transition,
)

logger = get_logger(__name__)

RECORD_FIELDS: Final[tuple[str, ...]] = (
    "status",
    "payload",
    "result",
    "error",
    "submitted_at",
    "started_at",
    "completed_at",
    "version",
)
DEFAULT_KEY_PREFIX: Final[str] = "taskfuture"
DEFAULT_RETENTION: Final[timedelta] = timedelta(hours=24)
DEFAULT_LOCK_TIMEOUT_SECONDS: Final[float] = 5.0
DEFAULT_LOCK_WAIT_SECONDS: Final[float] = 2.0
DEFAULT_SWEEP_BATCH_SIZE: Final[int] = 1000
DEFAULT_SWEEP_MAX_PASSES: Final[int] = 100


class RedisTaskStore:
    """Task store keeping each record as a group of expiring Redis keys.

    The client must be created with ``decode_responses=False``; payloads and
    results are raw bytes.
    """

    def __init__(
        self,
        client: Redis,
        *,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        retention: timedelta = DEFAULT_RETENTION,
        lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
        lock_wait_seconds: float = DEFAULT_LOCK_WAIT_SECONDS,
        sweep_batch_size: int = DEFAULT_SWEEP_BATCH_SIZE,
        sweep_max_passes: int = DEFAULT_SWEEP_MAX_PASSES,
    ) -> None:
        if retention <= timedelta(0):
            raise ValueError("retention must be positive")
        if sweep_batch_size <= 0:
            raise ValueError("sweep_batch_size must be positive")
        if sweep_max_passes <= 0:
            raise ValueError("sweep_max_passes must be positive")

        self._client = client
        self._prefix = key_prefix.rstrip(":")
        self._ttl_seconds = max(1, int(retention.total_seconds()))
        self._lock_timeout_seconds = lock_timeout_seconds
        self._lock_wait_seconds = lock_wait_seconds
        self._sweep_batch_size = sweep_batch_size
        self._sweep_max_passes = sweep_max_passes

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> RedisTaskStore:
        return cls(Redis.from_url(url, decode_responses=False), **kwargs)

    def close(self) -> None:
        self._client.close()

    def _key(self, task_id: str, field: str) -> str:
        return f"{self._prefix}:{task_id}:{field}"

    def _field_keys(self, task_id: str) -> list[str]:
        return [self._key(task_id, field) for field in RECORD_FIELDS]

    @property
    def _completed_index(self) -> str:
        return f"{self._prefix}:completed"

    def create(self, task_id: str, payload: bytes | None) -> None:
        record = TaskRecord.new(task_id, payload)
        with _storage_errors("create task"):
            # The version key doubles as the existence claim.
            claimed = self._client.set(
                self._key(task_id, "version"), 0, nx=True, ex=self._ttl_seconds
            )
            if not claimed:
                raise TaskAlreadyExistsError(task_id)
            self._write(record, previous=None)

        logger.debug("task_record_created", task_id=task_id)

    def load(self, task_id: str) -> TaskRecord:
        with _storage_errors("load task"):
            return self._read(self._client, task_id)

    def _read(self, client: Any, task_id: str) -> TaskRecord:
        values = client.mget(self._field_keys(task_id))
        fields = dict(zip(RECORD_FIELDS, values, strict=True))
        if fields["status"] is None or fields["version"] is None:
            raise TaskNotFoundError(task_id)
        return _fields_to_record(task_id, fields)

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

        with (
            self._record_lock(task_id, expected_version),
            _storage_errors("update task"),
            self._client.pipeline(transaction=True) as pipe,
        ):
            try:
                # Commands run immediately until multi(); execute() fails if
                # the version key changed after this point.
                pipe.watch(self._key(task_id, "version"))
                current = self._read(pipe, task_id)
                if current.version != expected_version:
                    raise ConcurrentModificationError(task_id, expected_version)

                updated = current.advance(new_status, result=result, error=error)
                pipe.multi()
                self._queue_write(pipe, updated, previous=current)
                pipe.execute()
            except WatchError as exc:
                logger.warning(
                    "task_record_changed_during_write",
                    task_id=task_id,
                    expected_version=expected_version,
                )
                raise ConcurrentModificationError(task_id, expected_version) from exc

        logger.debug(
            "task_record_transitioned",
            task_id=task_id,
            status=updated.status.value,
            version=updated.version,
        )
        return updated.version

    def delete(self, task_id: str) -> None:
        with _storage_errors("delete task"):
            pipe = self._client.pipeline(transaction=True)
            pipe.delete(*self._field_keys(task_id))
            pipe.zrem(self._completed_index, task_id)
            pipe.execute()

    def delete_expired(self, older_than: datetime) -> int:
        cutoff = ensure_utc(older_than).timestamp()
        total = 0
        passes = 0
        with _storage_errors("delete expired tasks"):
            while passes < self._sweep_max_passes:
                passes += 1
                members = self._client.zrangebyscore(
                    self._completed_index,
                    "-inf",
                    f"({cutoff}",
                    start=0,
                    num=self._sweep_batch_size,
                )
                if not members:
                    break

                task_ids = [_text(member) for member in members]
                pipe = self._client.pipeline(transaction=True)
                for task_id in task_ids:
                    pipe.delete(*self._field_keys(task_id))
                pipe.zrem(self._completed_index, *task_ids)
                outcome = pipe.execute()

                # Keys may already have expired on their own; only count
                # records this pass actually removed.
                total += sum(1 for removed in outcome[:-1] if removed)
                if len(members) < self._sweep_batch_size:
                    break
            else:
                logger.warning(
                    "sweep_pass_budget_exhausted",
                    passes=passes,
                    deleted=total,
                    batch_size=self._sweep_batch_size,
                )

        logger.info("expired_task_records_deleted", deleted=total, passes=passes)
        return total

    @contextmanager
    def _record_lock(self, task_id: str, expected_version: int) -> Iterator[None]:
        lock = self._client.lock(
            self._key(task_id, "lock"),
            timeout=self._lock_timeout_seconds,
            blocking_timeout=self._lock_wait_seconds,
        )
        with _storage_errors("acquire task lock"):
            acquired = lock.acquire()
        if not acquired:
            logger.warning("task_lock_contended", task_id=task_id)
            raise ConcurrentModificationError(task_id, expected_version)
        try:
            yield
        finally:
            try:
                lock.release()
            except LockNotOwnedError:
                logger.warning("task_lock_expired_before_release", task_id=task_id)
            except (LockError, RedisError):
                logger.warning("task_lock_release_failed", task_id=task_id, exc_info=True)

    def _write(self, record: TaskRecord, *, previous: TaskRecord | None) -> None:
        pipe = self._client.pipeline(transaction=True)
        self._queue_write(pipe, record, previous=previous)
        pipe.execute()

    def _queue_write(
        self, pipe: Any, record: TaskRecord, *, previous: TaskRecord | None
    ) -> None:
        values: dict[str, bytes | str | int | None] = {
            "status": record.status.value,
            "payload": record.payload,
            "result": record.result,
            "error": record.error.model_dump_json() if record.error else None,
            "submitted_at": record.submitted_at.isoformat(),
            "started_at": record.started_at.isoformat() if record.started_at else None,
            "completed_at": (
                record.completed_at.isoformat() if record.completed_at else None
            ),
            "version": record.version,
        }

        for field, value in values.items():
            key = self._key(record.task_id, field)
            if value is None:
                if previous is not None:
                    pipe.delete(key)
                continue
            pipe.set(key, value, ex=self._ttl_seconds)
        if record.is_terminal and record.completed_at is not None:
            pipe.zadd(
                self._completed_index,
                {record.task_id: record.completed_at.timestamp()},
            )


@contextmanager
def _storage_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except RedisError as exc:
        raise StorageUnavailableError(f"Failed to {operation}: {exc}") from exc


def _text(value: bytes | str) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value


def _optional_text(value: bytes | str | None) -> str | None:
    if value is None:
        return None
    return _text(value)


def _optional_datetime(value: bytes | str | None) -> datetime | None:
    text = _optional_text(value)
    if text is None:
        return None
    return datetime.fromisoformat(text)


def _fields_to_record(task_id: str, fields: dict[str, Any]) -> TaskRecord:
    error_text = _optional_text(fields["error"])
    return TaskRecord(
        task_id=task_id,
        status=TaskStatus(_text(fields["status"])),
        payload=fields["payload"],
        result=fields["result"],
        error=ErrorRecord.model_validate_json(error_text) if error_text else None,
        submitted_at=datetime.fromisoformat(_text(fields["submitted_at"])),
        started_at=_optional_datetime(fields["started_at"]),
        completed_at=_optional_datetime(fields["completed_at"]),
        version=int(_text(fields["version"])),
    )


__all__ = ["RECORD_FIELDS", "RedisTaskStore"]
