"""Domain models and the state machine for task records."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Final

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from taskfuture.domain.exceptions import InvalidTransitionError


class TaskStatus(StrEnum):
    """Lifecycle states of a submitted task."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: Final[frozenset[TaskStatus]] = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
)

ALLOWED_TRANSITIONS: Final[dict[TaskStatus, frozenset[TaskStatus]]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING, TaskStatus.CANCELLED}),
    TaskStatus.RUNNING: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}

# Statuses that some edge leads into; anything else is never a valid target.
REACHABLE_STATUSES: Final[frozenset[TaskStatus]] = frozenset(
    target for targets in ALLOWED_TRANSITIONS.values() for target in targets
)


class ErrorRecord(BaseModel):
    """Backend-neutral description of a task failure."""

    model_config = ConfigDict(frozen=True)

    kind: str
    message: str
    code: int = 0
    trace: str = ""
    cause: ErrorRecord | None = None

    @field_validator("kind")
    @classmethod
    def _validate_kind(cls, value: str) -> str:
        if not value.strip():
            msg = "kind must not be empty"
            raise ValueError(msg)
        return value


class TaskRecord(BaseModel):
    """Persisted task representation."""

    model_config = ConfigDict(frozen=True)

    task_id: str
    status: TaskStatus
    payload: bytes | None = None
    result: bytes | None = None
    error: ErrorRecord | None = None
    submitted_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    version: int = Field(default=0, ge=0)

    @field_validator("submitted_at", "started_at", "completed_at")
    @classmethod
    def _ensure_timezone(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        return ensure_utc(value)

    @model_validator(mode="after")
    def _check_invariants(self) -> TaskRecord:
        if self.status is TaskStatus.COMPLETED:
            if self.result is None or self.error is not None:
                msg = "completed task requires a result and no error"
                raise ValueError(msg)
        elif self.status is TaskStatus.FAILED:
            if self.error is None or self.result is not None:
                msg = "failed task requires an error and no result"
                raise ValueError(msg)
        elif self.result is not None or self.error is not None:
            msg = f"{self.status.value} task must not carry a result or error"
            raise ValueError(msg)

        if self.status.is_terminal != (self.completed_at is not None):
            msg = "completed_at must be set exactly when the task is terminal"
            raise ValueError(msg)

        ran = self.status in {
            TaskStatus.RUNNING,
            TaskStatus.COMPLETED,
            TaskStatus.FAILED,
        }
        if ran != (self.started_at is not None):
            msg = "started_at must be set exactly when the task has run"
            raise ValueError(msg)

        previous = self.submitted_at
        for stamp in (self.started_at, self.completed_at):
            if stamp is None:
                continue
            if stamp < previous:
                msg = "task timestamps must be non-decreasing"
                raise ValueError(msg)
            previous = stamp
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @classmethod
    def new(
        cls, task_id: str, payload: bytes | None, *, now: datetime | None = None
    ) -> TaskRecord:
        """Build the initial pending record for a freshly submitted task."""

        return cls(
            task_id=task_id,
            status=TaskStatus.PENDING,
            payload=payload,
            submitted_at=now or utcnow(),
            version=0,
        )

    def advance(
        self,
        new_status: TaskStatus,
        *,
        result: bytes | None = None,
        error: ErrorRecord | None = None,
        now: datetime | None = None,
    ) -> TaskRecord:
        """Return the successor record for ``new_status``.

        Validates the edge and the result/error pairing, stamps
        ``started_at``/``completed_at`` and bumps ``version``. Timestamps are
        clamped so they never run backwards even if the clock does.
        """

        validate_transition(self.status, new_status)
        _validate_outcome(self.status, new_status, result=result, error=error)

        stamp = ensure_utc(now or utcnow())
        floor = self.started_at or self.submitted_at
        if stamp < floor:
            stamp = floor

        update: dict[str, object] = {
            "status": new_status,
            "result": result,
            "error": error,
            "version": self.version + 1,
        }
        if new_status is TaskStatus.RUNNING:
            update["started_at"] = stamp
        if new_status.is_terminal:
            update["completed_at"] = stamp

        return type(self).model_validate(self.model_dump() | update)


def validate_transition(current: TaskStatus | None, new_status: TaskStatus) -> None:
    """Raise ``InvalidTransitionError`` unless ``current -> new_status`` is an edge.

    With ``current=None`` only the static check runs: the target must be
    reachable from some state.
    """

    if new_status not in REACHABLE_STATUSES:
        raise InvalidTransitionError(
            current.value if current else None,
            new_status.value,
            "no transition leads into this status",
        )
    if current is None:
        return
    if new_status not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(current.value, new_status.value)


def _validate_outcome(
    current: TaskStatus,
    new_status: TaskStatus,
    *,
    result: bytes | None,
    error: ErrorRecord | None,
) -> None:
    if new_status is TaskStatus.COMPLETED:
        if result is None or error is not None:
            raise InvalidTransitionError(
                current.value, new_status.value, "completion requires a result only"
            )
    elif new_status is TaskStatus.FAILED:
        if error is None or result is not None:
            raise InvalidTransitionError(
                current.value, new_status.value, "failure requires an error only"
            )
    elif result is not None or error is not None:
        raise InvalidTransitionError(
            current.value, new_status.value, "result and error must be empty"
        )


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


__all__ = [
    "ALLOWED_TRANSITIONS",
    "REACHABLE_STATUSES",
    "TERMINAL_STATUSES",
    "ErrorRecord",
    "TaskRecord",
    "TaskStatus",
    "ensure_utc",
    "utcnow",
    "validate_transition",
]
