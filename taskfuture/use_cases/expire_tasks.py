"""Use case: remove terminal task records past their retention window."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Final

from pydantic import BaseModel, ConfigDict

from taskfuture.config.logging_config import get_logger
from taskfuture.domain.task_record import ensure_utc, utcnow
from taskfuture.ports.task_store import TaskStorePort

logger = get_logger(__name__)

DEFAULT_RETENTION: Final[timedelta] = timedelta(hours=24)


class SweepResult(BaseModel):
    """Outcome of one sweep invocation."""

    model_config = ConfigDict(frozen=True)

    cutoff: datetime
    deleted: int


class ExpirationSweep:
    """Stateless, idempotent deletion of expired terminal records.

    Safe to run repeatedly and concurrently with itself and with normal
    traffic; non-terminal records are never touched.
    """

    def __init__(
        self,
        store: TaskStorePort,
        *,
        retention: timedelta = DEFAULT_RETENTION,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if retention <= timedelta(0):
            raise ValueError("retention must be positive")
        self._store = store
        self._retention = retention
        self._clock = clock

    def cutoff(self) -> datetime:
        return ensure_utc(self._clock()) - self._retention

    def run(self, cutoff: datetime | None = None) -> SweepResult:
        """Delete terminal records completed before ``cutoff``.

        Args:
            cutoff: Explicit cutoff; defaults to ``now - retention``.

        Raises:
            StorageUnavailableError: The store failed; nothing is retried.
        """

        effective = ensure_utc(cutoff) if cutoff is not None else self.cutoff()
        logger.info("expiration_sweep_started", cutoff=effective.isoformat())
        deleted = self._store.delete_expired(effective)
        logger.info(
            "expiration_sweep_finished", cutoff=effective.isoformat(), deleted=deleted
        )
        return SweepResult(cutoff=effective, deleted=deleted)


__all__ = ["ExpirationSweep", "SweepResult"]
