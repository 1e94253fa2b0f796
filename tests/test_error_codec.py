"""Tests for exception encoding and the closed decoder registry."""

from __future__ import annotations

import pytest

from taskfuture.domain.exceptions import RemoteTaskError, TaskExecutionError
from taskfuture.domain.task_record import ErrorRecord
from taskfuture.services.error_codec import DEFAULT_DECODERS, ErrorCodec


class QuotaExceeded(Exception):
    def __init__(self, message: str, code: int = 0) -> None:
        super().__init__(message)
        self.code = code


def _raise_and_capture(exc: BaseException) -> BaseException:
    try:
        raise exc
    except BaseException as caught:  # noqa: BLE001
        return caught


def test_encode_captures_kind_message_and_trace() -> None:
    codec = ErrorCodec()
    exc = _raise_and_capture(ValueError("bad input"))

    record = codec.encode(exc)

    assert record.kind == "ValueError"
    assert record.message == "bad input"
    assert record.code == 0
    assert "ValueError: bad input" in record.trace
    assert record.cause is None


def test_encode_uses_raw_key_error_argument() -> None:
    record = ErrorCodec().encode(KeyError("missing"))

    assert record.message == "missing"


def test_encode_reads_code_attribute() -> None:
    record = ErrorCodec().encode(QuotaExceeded("slow down", code=429))

    assert record.kind == "QuotaExceeded"
    assert record.code == 429


def test_encode_ignores_non_integer_code() -> None:
    exc = RuntimeError("x")
    exc.code = "E42"  # type: ignore[attr-defined]

    assert ErrorCodec().encode(exc).code == 0


def test_task_execution_error_kind_overrides_type_name() -> None:
    record = ErrorCodec().encode(
        TaskExecutionError("no handler", kind="UnknownTask", code=404)
    )

    assert record.kind == "UnknownTask"
    assert record.code == 404


def test_encode_preserves_cause_chain() -> None:
    try:
        try:
            raise KeyError("inner")
        except KeyError as inner:
            raise RuntimeError("outer") from inner
    except RuntimeError as outer:
        record = ErrorCodec().encode(outer)

    assert record.kind == "RuntimeError"
    assert record.cause is not None
    assert record.cause.kind == "KeyError"
    assert record.cause.message == "inner"


def test_encode_follows_implicit_context() -> None:
    try:
        try:
            raise ValueError("first")
        except ValueError:
            raise TypeError("second")  # noqa: B904
    except TypeError as exc:
        record = ErrorCodec().encode(exc)

    assert record.cause is not None
    assert record.cause.kind == "ValueError"


def test_cause_depth_is_limited() -> None:
    exc: BaseException = ValueError("level-0")
    for level in range(1, 6):
        outer = ValueError(f"level-{level}")
        outer.__cause__ = exc
        exc = outer

    record = ErrorCodec(cause_max_depth=2).encode(exc)

    depth = 0
    node: ErrorRecord | None = record
    while node is not None and node.cause is not None:
        depth += 1
        node = node.cause
    assert depth == 2


def test_cyclic_causes_do_not_recurse_forever() -> None:
    first = ValueError("a")
    second = ValueError("b")
    first.__cause__ = second
    second.__cause__ = first

    record = ErrorCodec().encode(first)

    assert record.cause is not None
    assert record.cause.cause is None


def test_trace_is_truncated() -> None:
    exc = _raise_and_capture(ValueError("x" * 500))

    record = ErrorCodec(trace_max_chars=100).encode(exc)

    assert len(record.trace) <= 100
    assert record.trace.endswith("[truncated]")


def test_decode_registered_kind_rebuilds_builtin() -> None:
    codec = ErrorCodec()
    record = ErrorRecord(kind="ValueError", message="bad input")

    exc = codec.decode(record)

    assert type(exc) is ValueError
    assert str(exc) == "bad input"
    assert exc.error_record == record  # type: ignore[attr-defined]


def test_decode_unknown_kind_falls_back_to_remote_error() -> None:
    record = ErrorRecord(kind="os.system", message="nope", code=3)

    exc = ErrorCodec().decode(record)

    assert isinstance(exc, RemoteTaskError)
    assert exc.kind == "os.system"
    assert exc.code == 3
    assert str(exc) == "nope"


def test_decode_restores_cause_chain() -> None:
    record = ErrorRecord(
        kind="RuntimeError",
        message="outer",
        cause=ErrorRecord(kind="KeyError", message="inner"),
    )

    exc = ErrorCodec().decode(record)

    assert isinstance(exc, RuntimeError)
    assert isinstance(exc.__cause__, KeyError)


def test_registered_decoder_is_used() -> None:
    codec = ErrorCodec()
    codec.register(
        "QuotaExceeded", lambda record: QuotaExceeded(record.message, record.code)
    )

    exc = codec.decode(ErrorRecord(kind="QuotaExceeded", message="slow", code=429))

    assert isinstance(exc, QuotaExceeded)
    assert exc.code == 429
    assert "QuotaExceeded" in codec.registered_kinds()


def test_failing_decoder_falls_back_to_remote_error() -> None:
    def _broken(record: ErrorRecord) -> BaseException:
        raise RuntimeError("decoder bug")

    codec = ErrorCodec({"ValueError": _broken})

    exc = codec.decode(ErrorRecord(kind="ValueError", message="x"))

    assert isinstance(exc, RemoteTaskError)


def test_reencoding_decoded_error_returns_stored_record() -> None:
    codec = ErrorCodec()
    record = ErrorRecord(kind="Custom", message="m", code=9, trace="remote trace")

    assert codec.encode(codec.decode(record)) == record


def test_register_rejects_blank_kind() -> None:
    with pytest.raises(ValueError):
        ErrorCodec().register(" ", lambda record: ValueError(record.message))


def test_default_decoders_cover_common_builtins() -> None:
    assert {"ValueError", "TypeError", "KeyError", "RuntimeError"} <= set(
        DEFAULT_DECODERS
    )
