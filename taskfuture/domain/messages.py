"""Messages that can be handed to the dispatch collaborator."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class AsyncMessage(BaseModel):
    """Marker base for messages delivered for out-of-band execution.

    Carries no behaviour of its own; subclasses define the fields a worker
    needs. Anything dispatched must serialize to JSON.
    """

    model_config = ConfigDict(frozen=True)


class WorkDescriptor(AsyncMessage):
    """Named unit of work with JSON-serializable parameters."""

    name: str
    params: dict[str, Any] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            msg = "name must not be empty"
            raise ValueError(msg)
        return value


__all__ = ["AsyncMessage", "WorkDescriptor"]
