"""Custom exception hierarchy for taskfuture.

Following error taxonomy: retryable, non-retryable, wait-infrastructure,
task-outcome.
"""


class TaskFutureError(Exception):
    """Base exception for all application errors."""

    pass


class RetryableError(TaskFutureError):
    """Errors the caller may retry after reloading state."""

    pass


class NonRetryableError(TaskFutureError):
    """Errors that indicate a protocol or programming mistake."""

    pass


class StorageUnavailableError(RetryableError):
    """Task store backend is unreachable or failed the operation."""

    pass


class ConcurrentModificationError(RetryableError):
    """Optimistic concurrency check rejected a stale writer."""

    def __init__(self, task_id: str, expected_version: int) -> None:
        """Initialize with the task and the version the caller expected."""
        self.task_id = task_id
        self.expected_version = expected_version
        super().__init__(
            f"Task {task_id} was modified concurrently "
            f"(expected version {expected_version})"
        )


class TaskNotFoundError(NonRetryableError):
    """Task id is unknown or its record has expired."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")


class TaskAlreadyExistsError(NonRetryableError):
    """A record with the same task id already exists."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task already exists: {task_id}")


class InvalidTransitionError(NonRetryableError):
    """Requested status change is not an edge of the task state machine."""

    def __init__(self, current: str | None, requested: str, reason: str = "") -> None:
        self.current = current
        self.requested = requested
        message = f"Invalid task transition {current} -> {requested}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class DispatchError(NonRetryableError):
    """Work could not be handed to the dispatch collaborator."""

    def __init__(self, task_id: str, message: str) -> None:
        self.task_id = task_id
        super().__init__(f"Dispatch failed for task {task_id}: {message}")


class WaitError(TaskFutureError):
    """The caller's wait failed; says nothing about the task outcome."""

    pass


class WaitTimeoutError(WaitError):
    """Waiting for a task exceeded the caller's deadline.

    Not a builtin ``TimeoutError``; a task that failed with ``TimeoutError``
    decodes to that builtin instead.
    """

    def __init__(self, task_id: str, timeout: float) -> None:
        self.task_id = task_id
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout}s waiting for task {task_id}")


class WaitCancelledError(WaitError):
    """The caller's cancellation signal interrupted the wait."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Wait for task {task_id} was cancelled by the caller")


class TaskNotReadyError(TaskFutureError):
    """Non-blocking read on a task that has not reached a terminal state."""

    def __init__(self, task_id: str, status: str) -> None:
        self.task_id = task_id
        self.status = status
        super().__init__(f"Task {task_id} is not ready (status: {status})")


class TaskCancelledError(TaskFutureError):
    """The task was cancelled before it ran."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task {task_id} was cancelled")


class TaskExecutionError(TaskFutureError):
    """Failure raised by task handlers with an explicit kind and code."""

    def __init__(self, message: str, *, kind: str = "TaskExecutionError", code: int = 0):
        self.kind = kind
        self.code = code
        super().__init__(message)


class RemoteTaskError(TaskExecutionError):
    """Decoded task failure whose kind has no registered decoder."""

    pass
