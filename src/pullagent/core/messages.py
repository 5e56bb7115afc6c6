"""Wire messages exchanged between the orchestrator and agents.

This module provides:
- UploadCommand: initiator -> agent instruction to upload one file
- CompleteEvent, FailedEvent: agent -> initiator outcome reports
- parse_command, parse_event: decoding from raw JSON text or dicts
- encode_message: JSON encoding with camelCase field names

Messages are frozen once constructed. Unknown fields are ignored on
decode; anything extra a command needs travels in its meta.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    """Get the current time as an aware UTC datetime."""
    return datetime.now(UTC)


class WireMessage(BaseModel):
    """Base class for all wire messages."""

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class UploadCommand(WireMessage):
    """Instruction for an agent to upload its file to a write credential."""

    kind: Literal["upload"] = "upload"
    transfer_id: str
    object_key: str
    write_credential: str
    credential_expiry: datetime
    meta: dict[str, Any] | None = None


class CompleteEvent(WireMessage):
    """Agent report: upload finished, with what was sent."""

    kind: Literal["complete"] = "complete"
    transfer_id: str
    object_key: str
    size: int = Field(ge=0)
    digest: str
    timestamp: datetime = Field(default_factory=utcnow)


class FailedEvent(WireMessage):
    """Agent report: upload did not happen or did not finish."""

    kind: Literal["failed"] = "failed"
    transfer_id: str
    object_key: str
    reason: str
    timestamp: datetime = Field(default_factory=utcnow)


Event = Annotated[CompleteEvent | FailedEvent, Field(discriminator="kind")]

_event_adapter: TypeAdapter[CompleteEvent | FailedEvent] = TypeAdapter(Event)


def parse_command(data: str | bytes | dict[str, Any]) -> UploadCommand:
    """Decode an upload command.

    Raises:
        pydantic.ValidationError: If the payload is not a valid command.
    """
    if isinstance(data, dict):
        return UploadCommand.model_validate(data)
    return UploadCommand.model_validate_json(data)


def parse_event(data: str | bytes | dict[str, Any]) -> CompleteEvent | FailedEvent:
    """Decode a complete or failed event.

    Raises:
        pydantic.ValidationError: If the payload is not a valid event.
    """
    if isinstance(data, dict):
        return _event_adapter.validate_python(data)
    return _event_adapter.validate_json(data)


def encode_message(message: WireMessage) -> str:
    """Encode a message as JSON text with camelCase field names."""
    return message.model_dump_json(by_alias=True, exclude_none=True)
