"""Tests for the client-side task future."""

from __future__ import annotations

import threading

import pytest
from pytest_mock import MockerFixture

from taskfuture.adapters.sqlite_task_store import SQLiteTaskStore
from taskfuture.domain.exceptions import (
    ConcurrentModificationError,
    RemoteTaskError,
    StorageUnavailableError,
    TaskCancelledError,
    TaskNotFoundError,
    TaskNotReadyError,
    WaitCancelledError,
    WaitError,
    WaitTimeoutError,
)
from taskfuture.domain.task_record import ErrorRecord, TaskStatus
from taskfuture.ports.task_store import TaskStorePort
from taskfuture.services.error_codec import ErrorCodec
from taskfuture.services.result_codec import ResultCodec
from taskfuture.services.task_future import PollingPolicy, TaskFuture


class FakeClock:
    """Monotonic clock advanced only by the fake ``sleep``."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def _future(store: SQLiteTaskStore, clock: FakeClock, **kwargs: object) -> TaskFuture:
    return TaskFuture(
        "task-1",
        store,
        clock=clock,
        sleep=clock.sleep,
        **kwargs,  # type: ignore[arg-type]
    )


def _complete(store: SQLiteTaskStore, value: bytes) -> None:
    store.transition("task-1", expected_version=0, new_status=TaskStatus.RUNNING)
    store.transition(
        "task-1", expected_version=1, new_status=TaskStatus.COMPLETED, result=value
    )


def _fail(store: SQLiteTaskStore, error: ErrorRecord) -> None:
    store.transition("task-1", expected_version=0, new_status=TaskStatus.RUNNING)
    store.transition(
        "task-1", expected_version=1, new_status=TaskStatus.FAILED, error=error
    )


def test_status_family_tracks_lifecycle(
    sqlite_store: SQLiteTaskStore, clock: FakeClock
) -> None:
    sqlite_store.create("task-1", None)
    future = _future(sqlite_store, clock)

    assert future.status() is TaskStatus.PENDING
    assert not future.is_done()

    _complete(sqlite_store, b'{"pong":1}')

    assert future.status() is TaskStatus.COMPLETED
    assert future.is_done()
    assert future.is_success()
    assert not future.is_failed()
    assert not future.is_cancelled()


def test_get_nowait_before_completion_raises_not_ready(
    sqlite_store: SQLiteTaskStore, clock: FakeClock
) -> None:
    sqlite_store.create("task-1", None)

    with pytest.raises(TaskNotReadyError) as exc_info:
        _future(sqlite_store, clock).get_nowait()

    assert exc_info.value.status == "pending"


def test_get_returns_decoded_result(
    sqlite_store: SQLiteTaskStore, clock: FakeClock
) -> None:
    sqlite_store.create("task-1", None)
    _complete(sqlite_store, b'{"pong":1}')

    future = _future(sqlite_store, clock)

    assert future.get(timeout=1) == {"pong": 1}
    assert future.get_nowait() == {"pong": 1}
    assert clock.sleeps == []


def test_get_raises_decoded_failure(
    sqlite_store: SQLiteTaskStore, clock: FakeClock
) -> None:
    sqlite_store.create("task-1", None)
    _fail(sqlite_store, ErrorRecord(kind="ValueError", message="bad input"))
    future = _future(sqlite_store, clock)

    with pytest.raises(ValueError, match="bad input"):
        future.get(timeout=1)

    assert future.is_failed()
    error = future.get_exception()
    assert error is not None
    assert error.kind == "ValueError"


def test_unknown_error_kind_surfaces_as_remote_error(
    sqlite_store: SQLiteTaskStore, clock: FakeClock
) -> None:
    sqlite_store.create("task-1", None)
    _fail(sqlite_store, ErrorRecord(kind="billing.Declined", message="card", code=402))

    with pytest.raises(RemoteTaskError) as exc_info:
        _future(sqlite_store, clock).get_nowait()

    assert exc_info.value.kind == "billing.Declined"
    assert exc_info.value.code == 402


def test_get_exception_is_none_unless_failed(
    sqlite_store: SQLiteTaskStore, clock: FakeClock
) -> None:
    sqlite_store.create("task-1", None)

    assert _future(sqlite_store, clock).get_exception() is None


def test_get_times_out_within_bound(
    sqlite_store: SQLiteTaskStore, clock: FakeClock
) -> None:
    sqlite_store.create("task-1", None)
    policy = PollingPolicy(
        interval_seconds=0.1, max_interval_seconds=0.5, backoff_multiplier=2.0
    )

    with pytest.raises(WaitTimeoutError) as exc_info:
        _future(sqlite_store, clock, polling=policy).get(timeout=1.0)

    assert exc_info.value.timeout == 1.0
    assert isinstance(exc_info.value, WaitError)
    assert not isinstance(exc_info.value, TimeoutError)
    assert clock.now == pytest.approx(1.0)
    assert max(clock.sleeps) <= 0.5
    assert clock.sleeps[:3] == pytest.approx([0.1, 0.2, 0.4])


def test_zero_timeout_polls_once(
    sqlite_store: SQLiteTaskStore, clock: FakeClock
) -> None:
    sqlite_store.create("task-1", None)

    with pytest.raises(WaitTimeoutError):
        _future(sqlite_store, clock).get(timeout=0)

    assert clock.sleeps == []


def test_negative_timeout_is_rejected(
    sqlite_store: SQLiteTaskStore, clock: FakeClock
) -> None:
    with pytest.raises(ValueError):
        _future(sqlite_store, clock).get(timeout=-1)


def test_get_notices_completion_between_polls(
    sqlite_store: SQLiteTaskStore, clock: FakeClock
) -> None:
    sqlite_store.create("task-1", None)
    calls = {"n": 0}

    def _sleep(seconds: float) -> None:
        clock.sleep(seconds)
        calls["n"] += 1
        if calls["n"] == 2:
            _complete(sqlite_store, b'"done"')

    future = TaskFuture("task-1", sqlite_store, clock=clock, sleep=_sleep)

    assert future.get(timeout=10) == "done"
    assert calls["n"] == 2


def test_cancel_event_set_before_wait_aborts_immediately(
    sqlite_store: SQLiteTaskStore, clock: FakeClock
) -> None:
    sqlite_store.create("task-1", None)
    event = threading.Event()
    event.set()

    with pytest.raises(WaitCancelledError):
        _future(sqlite_store, clock).get(cancel_event=event)

    assert sqlite_store.load("task-1").status is TaskStatus.PENDING


def test_cancel_event_interrupts_wait_without_cancelling_task(
    sqlite_store: SQLiteTaskStore,
) -> None:
    sqlite_store.create("task-1", None)
    event = threading.Event()
    timer = threading.Timer(0.05, event.set)
    timer.start()
    try:
        with pytest.raises(WaitCancelledError):
            TaskFuture("task-1", sqlite_store).get(timeout=5, cancel_event=event)
    finally:
        timer.cancel()

    assert sqlite_store.load("task-1").status is TaskStatus.PENDING


def test_cancel_pending_task(sqlite_store: SQLiteTaskStore, clock: FakeClock) -> None:
    sqlite_store.create("task-1", None)
    future = _future(sqlite_store, clock)

    assert future.cancel() is True
    assert future.is_cancelled()
    with pytest.raises(TaskCancelledError):
        future.get(timeout=1)


def test_cancel_running_task_is_refused(
    sqlite_store: SQLiteTaskStore, clock: FakeClock
) -> None:
    sqlite_store.create("task-1", None)
    sqlite_store.transition("task-1", expected_version=0, new_status=TaskStatus.RUNNING)

    assert _future(sqlite_store, clock).cancel() is False
    assert sqlite_store.load("task-1").status is TaskStatus.RUNNING


def test_cancel_lost_race_returns_false(
    sqlite_store: SQLiteTaskStore, clock: FakeClock, mocker: MockerFixture
) -> None:
    sqlite_store.create("task-1", None)
    mocker.patch.object(
        sqlite_store,
        "transition",
        side_effect=ConcurrentModificationError("task-1", 0),
    )

    assert _future(sqlite_store, clock).cancel() is False


def test_concurrent_cancels_have_exactly_one_winner(
    store: TaskStorePort, mocker: MockerFixture
) -> None:
    store.create("task-1", None)
    both_loaded = threading.Barrier(2)
    original_transition = store.transition

    def _transition_together(*args: object, **kwargs: object) -> int:
        # Both futures have read version 0 before either writes.
        both_loaded.wait(5)
        return original_transition(*args, **kwargs)  # type: ignore[arg-type]

    mocker.patch.object(store, "transition", side_effect=_transition_together)
    outcomes: list[bool] = []
    outcomes_lock = threading.Lock()

    def _cancel() -> None:
        cancelled = TaskFuture("task-1", store).cancel()
        with outcomes_lock:
            outcomes.append(cancelled)

    threads = [threading.Thread(target=_cancel) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(10)

    assert sorted(outcomes) == [False, True]
    record = store.load("task-1")
    assert record.status is TaskStatus.CANCELLED
    assert record.version == 1


def test_cancel_after_completion_is_refused(
    sqlite_store: SQLiteTaskStore, clock: FakeClock
) -> None:
    sqlite_store.create("task-1", None)
    _complete(sqlite_store, b"1")

    assert _future(sqlite_store, clock).cancel() is False


def test_unknown_task_raises_not_found(
    sqlite_store: SQLiteTaskStore, clock: FakeClock
) -> None:
    with pytest.raises(TaskNotFoundError):
        _future(sqlite_store, clock).status()


def test_storage_failure_while_waiting_propagates(
    sqlite_store: SQLiteTaskStore, clock: FakeClock, mocker: MockerFixture
) -> None:
    mocker.patch.object(
        sqlite_store, "load", side_effect=StorageUnavailableError("down")
    )

    with pytest.raises(StorageUnavailableError):
        _future(sqlite_store, clock).get(timeout=1)


def test_snapshot_memo_rate_limits_status_queries(
    sqlite_store: SQLiteTaskStore, clock: FakeClock, mocker: MockerFixture
) -> None:
    sqlite_store.create("task-1", None)
    load = mocker.spy(sqlite_store, "load")
    future = _future(sqlite_store, clock, snapshot_ttl_seconds=1.0)

    future.status()
    future.is_done()
    future.is_success()
    assert load.call_count == 1

    clock.now += 1.5
    future.status()
    assert load.call_count == 2


def test_memo_never_serves_result_reads(
    sqlite_store: SQLiteTaskStore, clock: FakeClock
) -> None:
    sqlite_store.create("task-1", None)
    future = _future(sqlite_store, clock, snapshot_ttl_seconds=60.0)
    assert future.status() is TaskStatus.PENDING

    _complete(sqlite_store, b"7")

    assert future.get_nowait() == 7


def test_custom_codecs_are_used(
    sqlite_store: SQLiteTaskStore, clock: FakeClock, mocker: MockerFixture
) -> None:
    sqlite_store.create("task-1", None)
    _complete(sqlite_store, b"[1,2]")
    result_codec = ResultCodec()
    decode = mocker.spy(result_codec, "decode")

    future = _future(
        sqlite_store, clock, result_codec=result_codec, error_codec=ErrorCodec()
    )

    assert future.get_nowait() == [1, 2]
    decode.assert_called_once_with(b"[1,2]")


def test_polling_policy_caps_interval() -> None:
    policy = PollingPolicy(
        interval_seconds=0.1, max_interval_seconds=0.3, backoff_multiplier=2.0
    )

    assert policy.next_interval(0.1) == pytest.approx(0.2)
    assert policy.next_interval(0.2) == pytest.approx(0.3)


def test_polling_policy_rejects_ceiling_below_interval() -> None:
    with pytest.raises(ValueError):
        PollingPolicy(interval_seconds=1.0, max_interval_seconds=0.5)
