"""Port definition for handing work to an execution transport."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from taskfuture.domain.messages import AsyncMessage


@runtime_checkable
class DispatcherPort(Protocol):
    """Interface for delivering work to a worker process."""

    def dispatch(self, task_id: str, work: AsyncMessage) -> None:
        """Enqueue ``work`` for execution under ``task_id``.

        A worker is expected to eventually call the execution adapter with the
        same pair. Implementations raise on enqueue failure and must not block
        on execution.
        """


__all__ = ["DispatcherPort"]
