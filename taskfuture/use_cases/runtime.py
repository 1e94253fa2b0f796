"""Wiring of stores, codecs and services from resolved settings."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from taskfuture.adapters.dispatcher_inprocess import InProcessDispatcher
from taskfuture.adapters.store_factory import create_task_store
from taskfuture.config.logging_config import get_logger
from taskfuture.config.settings import Settings
from taskfuture.ports.dispatcher import DispatcherPort
from taskfuture.ports.task_store import TaskStorePort
from taskfuture.services.error_codec import ErrorCodec
from taskfuture.services.result_codec import ResultCodec
from taskfuture.services.task_future import PollingPolicy
from taskfuture.use_cases.expire_tasks import ExpirationSweep
from taskfuture.use_cases.submit_task import TaskSubmissionService
from taskfuture.workers.executor import TaskExecutor, TaskHandler

logger = get_logger(__name__)


@dataclass(frozen=True)
class TaskRuntime:
    """Everything a process needs to submit, execute and expire tasks."""

    store: TaskStorePort
    error_codec: ErrorCodec
    result_codec: ResultCodec
    submission: TaskSubmissionService
    sweep: ExpirationSweep

    def executor(self, handlers: Mapping[str, TaskHandler]) -> TaskExecutor:
        return TaskExecutor(
            store=self.store,
            handlers=handlers,
            error_codec=self.error_codec,
            result_codec=self.result_codec,
        )

    def close(self) -> None:
        close = getattr(self.store, "close", None)
        if callable(close):
            close()


def polling_policy_from_settings(settings: Settings) -> PollingPolicy:
    return PollingPolicy(
        interval_seconds=settings.poll_interval_seconds,
        max_interval_seconds=settings.poll_max_interval_seconds,
        backoff_multiplier=settings.poll_backoff_multiplier,
    )


def error_codec_from_settings(settings: Settings) -> ErrorCodec:
    return ErrorCodec(
        trace_max_chars=settings.error_trace_max_chars,
        cause_max_depth=settings.error_cause_max_depth,
    )


def build_runtime(
    settings: Settings,
    dispatcher: DispatcherPort,
    *,
    store: TaskStorePort | None = None,
    error_codec: ErrorCodec | None = None,
) -> TaskRuntime:
    """Assemble the runtime for ``settings``.

    Args:
        settings: Settings resolved once at process start
        dispatcher: Transport that delivers work to workers
        store: Pre-built store; created from ``settings`` when omitted
        error_codec: Codec with extra registered decoders, if any
    """
    task_store = store if store is not None else create_task_store(settings)
    codec = error_codec or error_codec_from_settings(settings)
    result_codec = ResultCodec()

    submission = TaskSubmissionService(
        store=task_store,
        dispatcher=dispatcher,
        error_codec=codec,
        result_codec=result_codec,
        polling=polling_policy_from_settings(settings),
        latency_budget_seconds=settings.submission_latency_budget_ms / 1000,
    )
    sweep = ExpirationSweep(task_store, retention=settings.retention)

    logger.info(
        "task_runtime_built",
        store_backend=settings.store_backend,
        retention_hours=settings.retention_hours,
    )
    return TaskRuntime(
        store=task_store,
        error_codec=codec,
        result_codec=result_codec,
        submission=submission,
        sweep=sweep,
    )


def build_inprocess_runtime(
    settings: Settings,
    handlers: Mapping[str, TaskHandler],
    *,
    store: TaskStorePort | None = None,
    max_workers: int = 4,
) -> tuple[TaskRuntime, InProcessDispatcher]:
    """Runtime whose work runs on local threads instead of a broker."""

    task_store = store if store is not None else create_task_store(settings)
    codec = error_codec_from_settings(settings)
    executor = TaskExecutor(
        store=task_store,
        handlers=handlers,
        error_codec=codec,
        result_codec=ResultCodec(),
    )
    dispatcher = InProcessDispatcher(executor.handle, max_workers=max_workers)
    runtime = build_runtime(settings, dispatcher, store=task_store, error_codec=codec)
    return runtime, dispatcher


__all__ = [
    "TaskRuntime",
    "build_inprocess_runtime",
    "build_runtime",
    "error_codec_from_settings",
    "polling_policy_from_settings",
]
