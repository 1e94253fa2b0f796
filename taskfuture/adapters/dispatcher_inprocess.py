"""In-process dispatcher for development and testing."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Final

from taskfuture.config.logging_config import get_logger
from taskfuture.domain.messages import AsyncMessage, WorkDescriptor
from taskfuture.domain.task_record import TaskStatus
from taskfuture.ports.dispatcher import DispatcherPort

logger = get_logger(__name__)

WorkCallback = Callable[[str, WorkDescriptor], TaskStatus | None]

DEFAULT_MAX_WORKERS: Final[int] = 4


class InProcessDispatcher(DispatcherPort):
    """Deliver work to a callback on worker threads.

    Stands in for a message broker: ``dispatch`` returns immediately and the
    callback (normally ``TaskExecutor.handle``) runs on a daemon thread.
    At most ``max_workers`` callbacks run at once; the rest wait.
    """

    def __init__(
        self, callback: WorkCallback, *, max_workers: int = DEFAULT_MAX_WORKERS
    ) -> None:
        if max_workers <= 0:
            raise ValueError("max_workers must be positive")
        self._callback = callback
        self._slots = threading.BoundedSemaphore(max_workers)
        self._threads: set[threading.Thread] = set()
        self._lock = threading.RLock()

    def dispatch(self, task_id: str, work: AsyncMessage) -> None:
        if not isinstance(work, WorkDescriptor):
            raise TypeError(
                "InProcessDispatcher only delivers WorkDescriptor, "
                f"got {type(work).__name__}"
            )

        thread = threading.Thread(
            target=self._deliver,
            args=(task_id, work),
            name=f"taskfuture-{task_id[:8]}",
            daemon=True,
        )
        with self._lock:
            self._threads.add(thread)
        thread.start()
        logger.debug("task_dispatched_inprocess", task_id=task_id, task_name=work.name)

    def join(self, timeout: float | None = None) -> bool:
        """Wait for in-flight deliveries; returns ``False`` on timeout."""

        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                pending = list(self._threads)
            if not pending:
                return True
            for thread in pending:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                thread.join(remaining)

    def _deliver(self, task_id: str, work: WorkDescriptor) -> None:
        try:
            with self._slots:
                self._callback(task_id, work)
        except Exception:  # noqa: BLE001
            logger.exception("task_delivery_failed", task_id=task_id)
        finally:
            with self._lock:
                self._threads.discard(threading.current_thread())


__all__ = ["InProcessDispatcher", "WorkCallback"]
