"""Conversion between raised exceptions and stored ``ErrorRecord`` values.

Decoding never resolves a type from the stored ``kind`` string. Only kinds
registered in the codec's decoder table are rebuilt as their own exception
type; everything else becomes a ``RemoteTaskError`` carrying the record.
"""

from __future__ import annotations

import traceback
from collections.abc import Callable, Mapping
from typing import Final

from taskfuture.config.logging_config import get_logger
from taskfuture.domain.exceptions import (
    RemoteTaskError,
    TaskExecutionError,
)
from taskfuture.domain.task_record import ErrorRecord

logger = get_logger(__name__)

ErrorDecoder = Callable[[ErrorRecord], BaseException]

DEFAULT_TRACE_MAX_CHARS: Final[int] = 8000
DEFAULT_CAUSE_MAX_DEPTH: Final[int] = 8
_TRUNCATION_MARKER: Final[str] = "\n... [truncated]"


def _builtin(factory: Callable[[str], BaseException]) -> ErrorDecoder:
    def _decode(record: ErrorRecord) -> BaseException:
        return factory(record.message)

    return _decode


def _decode_task_execution_error(record: ErrorRecord) -> BaseException:
    return TaskExecutionError(record.message, kind=record.kind, code=record.code)


DEFAULT_DECODERS: Final[Mapping[str, ErrorDecoder]] = {
    "ValueError": _builtin(ValueError),
    "TypeError": _builtin(TypeError),
    "KeyError": _builtin(KeyError),
    "LookupError": _builtin(LookupError),
    "RuntimeError": _builtin(RuntimeError),
    "TimeoutError": _builtin(TimeoutError),
    "ConnectionError": _builtin(ConnectionError),
    "PermissionError": _builtin(PermissionError),
    "NotImplementedError": _builtin(NotImplementedError),
    "ZeroDivisionError": _builtin(ZeroDivisionError),
    "TaskExecutionError": _decode_task_execution_error,
}


class ErrorCodec:
    """Encode exceptions to ``ErrorRecord`` and decode them back."""

    def __init__(
        self,
        decoders: Mapping[str, ErrorDecoder] | None = None,
        *,
        trace_max_chars: int = DEFAULT_TRACE_MAX_CHARS,
        cause_max_depth: int = DEFAULT_CAUSE_MAX_DEPTH,
    ) -> None:
        if trace_max_chars <= 0:
            raise ValueError("trace_max_chars must be positive")
        if cause_max_depth < 0:
            raise ValueError("cause_max_depth must not be negative")
        self._decoders: dict[str, ErrorDecoder] = dict(DEFAULT_DECODERS)
        if decoders:
            self._decoders.update(decoders)
        self._trace_max_chars = trace_max_chars
        self._cause_max_depth = cause_max_depth

    def register(self, kind: str, decoder: ErrorDecoder) -> None:
        """Register the constructor used for records tagged ``kind``."""

        if not kind.strip():
            raise ValueError("kind must not be empty")
        self._decoders[kind] = decoder

    def registered_kinds(self) -> frozenset[str]:
        return frozenset(self._decoders)

    def encode(self, exc: BaseException) -> ErrorRecord:
        """Build the storable record for ``exc`` including its cause chain."""

        return self._encode(exc, depth=0, seen=set())

    def decode(self, record: ErrorRecord) -> BaseException:
        """Rebuild an exception from ``record``.

        The returned exception carries the record as ``error_record`` and its
        decoded cause as ``__cause__``.
        """

        decoder = self._decoders.get(record.kind)
        exc: BaseException | None = None
        if decoder is not None:
            try:
                exc = decoder(record)
            except Exception:  # noqa: BLE001
                logger.warning(
                    "error_decoder_failed", kind=record.kind, exc_info=True
                )
        if exc is None:
            exc = RemoteTaskError(record.message, kind=record.kind, code=record.code)

        exc.error_record = record  # type: ignore[attr-defined]
        if record.cause is not None:
            exc.__cause__ = self.decode(record.cause)
        return exc

    def _encode(
        self, exc: BaseException, *, depth: int, seen: set[int]
    ) -> ErrorRecord:
        existing = getattr(exc, "error_record", None)
        if isinstance(existing, ErrorRecord):
            return existing

        seen.add(id(exc))
        cause: ErrorRecord | None = None
        linked = exc.__cause__
        if linked is None and not exc.__suppress_context__:
            linked = exc.__context__
        if (
            linked is not None
            and id(linked) not in seen
            and depth < self._cause_max_depth
        ):
            cause = self._encode(linked, depth=depth + 1, seen=seen)

        return ErrorRecord(
            kind=_kind_of(exc),
            message=_message_of(exc),
            code=_code_of(exc),
            trace=self._trace_of(exc),
            cause=cause,
        )

    def _trace_of(self, exc: BaseException) -> str:
        trace = "".join(
            traceback.format_exception(type(exc), exc, exc.__traceback__, chain=False)
        )
        if len(trace) > self._trace_max_chars:
            keep = self._trace_max_chars - len(_TRUNCATION_MARKER)
            trace = trace[: max(keep, 0)] + _TRUNCATION_MARKER
        return trace


def _kind_of(exc: BaseException) -> str:
    kind = getattr(exc, "kind", None)
    if isinstance(kind, str) and kind.strip():
        return kind
    return type(exc).__name__


def _message_of(exc: BaseException) -> str:
    # KeyError("x") renders as "'x'"; use the argument itself when there is one.
    if len(exc.args) == 1:
        return str(exc.args[0])
    return str(exc)


def _code_of(exc: BaseException) -> int:
    code = getattr(exc, "code", None)
    if isinstance(code, int) and not isinstance(code, bool):
        return code
    return 0


__all__ = ["DEFAULT_DECODERS", "ErrorCodec", "ErrorDecoder"]
