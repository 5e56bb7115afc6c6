"""Pydantic schemas for API request/response models."""

from __future__ import annotations

from pydantic import BaseModel, Field

from pullagent.server.gateway import Credential
from pullagent.server.store import TransferRecord

# === Transfer schemas ===


class TransferCreateRequest(BaseModel):
    """Request body for triggering a transfer."""

    display_name: str | None = Field(default=None, max_length=255)
    requested_by: str | None = Field(default=None, max_length=255)
    reason: str | None = Field(default=None, max_length=1024)


class TransferResponse(BaseModel):
    """Transfer record in responses. Never includes the write credential."""

    id: str
    agent_id: str
    object_key: str
    display_name: str
    status: str
    size: int | None
    digest: str | None
    credential_expiry: str
    failure_category: str | None
    failure_reason: str | None
    created_at: str
    updated_at: str


class ArtifactResponse(BaseModel):
    """Download URL for a verified transfer."""

    transfer_id: str
    url: str
    expires_at: str
    expires_in: int


class AgentsResponse(BaseModel):
    """Agents currently connected to the hub."""

    agents: list[str]


# === Health schema ===


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    timestamp: str


# === Converters ===


def transfer_to_response(record: TransferRecord) -> TransferResponse:
    """Convert TransferRecord to response model."""
    return TransferResponse(**record.to_dict())


def credential_to_artifact(transfer_id: str, credential: Credential, ttl_seconds: int) -> ArtifactResponse:
    """Convert a read credential to response model."""
    return ArtifactResponse(
        transfer_id=transfer_id,
        url=credential.url,
        expires_at=credential.expires_at.isoformat(),
        expires_in=ttl_seconds,
    )
