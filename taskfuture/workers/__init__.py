"""Worker package exports."""

from taskfuture.workers.executor import TaskExecutor, TaskHandler

__all__ = ["TaskExecutor", "TaskHandler"]
