"""Serialization of task results and work descriptors."""

from __future__ import annotations

from typing import Any, TypeVar

import orjson
from pydantic import ValidationError

from taskfuture.domain.messages import AsyncMessage

MessageT = TypeVar("MessageT", bound=AsyncMessage)


class ResultEncodingError(TypeError):
    """Value cannot be represented in the stored result format."""


class ResultCodec:
    """JSON codec for result values (via orjson)."""

    def encode(self, value: Any) -> bytes:
        try:
            return orjson.dumps(value, option=orjson.OPT_NON_STR_KEYS)
        except (orjson.JSONEncodeError, TypeError) as exc:
            raise ResultEncodingError(
                f"Result of type {type(value).__name__} is not JSON serializable"
            ) from exc

    def decode(self, data: bytes) -> Any:
        return orjson.loads(data)


def encode_message(message: AsyncMessage) -> bytes:
    """Serialize a work message into the opaque payload column."""

    return message.model_dump_json().encode("utf-8")


def decode_message(data: bytes, message_type: type[MessageT]) -> MessageT:
    """Rebuild a work message from its stored payload.

    Raises:
        ValueError: If the payload does not match ``message_type``.
    """

    try:
        return message_type.model_validate_json(data)
    except ValidationError as exc:
        raise ValueError(
            f"Payload is not a valid {message_type.__name__}: {exc}"
        ) from exc


__all__ = ["ResultCodec", "ResultEncodingError", "decode_message", "encode_message"]
