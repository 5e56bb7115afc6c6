"""HTTP client for the PullAgent server API.

This module provides:
- InitiatorClient: HTTP client used by the CLI to trigger transfers and
  fetch their status and artifacts
- RemoteTransfer / RemoteArtifact: parsed response models
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class APIError(Exception):
    """Base exception for API errors."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(APIError):
    """Authentication failed."""


class NotFoundError(APIError):
    """Resource not found."""


@dataclass
class RemoteTransfer:
    """Transfer record from server."""

    id: str
    agent_id: str
    object_key: str
    display_name: str
    status: str
    size: int | None
    digest: str | None
    credential_expiry: datetime
    failure_category: str | None
    failure_reason: str | None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RemoteTransfer:
        """Create from API response dictionary."""
        return cls(
            id=data["id"],
            agent_id=data["agent_id"],
            object_key=data["object_key"],
            display_name=data["display_name"],
            status=data["status"],
            size=data.get("size"),
            digest=data.get("digest"),
            credential_expiry=datetime.fromisoformat(data["credential_expiry"]),
            failure_category=data.get("failure_category"),
            failure_reason=data.get("failure_reason"),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )


@dataclass
class RemoteArtifact:
    """Download URL for a verified transfer."""

    transfer_id: str
    url: str
    expires_at: datetime
    expires_in: int

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RemoteArtifact:
        """Create from API response dictionary."""
        return cls(
            transfer_id=data["transfer_id"],
            url=data["url"],
            expires_at=datetime.fromisoformat(data["expires_at"]),
            expires_in=data["expires_in"],
        )


class InitiatorClient:
    """HTTP client for the PullAgent server API."""

    def __init__(
        self,
        server_url: str,
        api_key: str | None = None,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            server_url: Base URL of the server.
            api_key: Bearer API key, if the server requires one.
            timeout: Request timeout in seconds.
            transport: Custom httpx transport (used in tests).
        """
        self._server_url = server_url.rstrip("/")
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = httpx.Client(
            base_url=self._server_url,
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> InitiatorClient:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    @staticmethod
    def _detail(response: httpx.Response, default: str) -> str:
        try:
            detail = response.json().get("detail", default)
        except ValueError:
            return default
        return detail if isinstance(detail, str) else str(detail)

    def _handle_response(self, response: httpx.Response) -> httpx.Response:
        """Handle API response and raise appropriate exceptions."""
        if response.status_code == 401:
            raise AuthenticationError("Invalid or missing API key", 401)
        if response.status_code == 404:
            raise NotFoundError(self._detail(response, "Resource not found"), 404)
        if response.status_code >= 400:
            raise APIError(self._detail(response, "Unknown error"), response.status_code)
        return response

    # === Health check ===

    def health_check(self) -> bool:
        """Check if the server is healthy."""
        try:
            response = self._client.get("/health")
            return response.status_code == 200
        except httpx.RequestError:
            return False

    # === Agents ===

    def list_agents(self) -> list[str]:
        """List agents currently connected to the server."""
        response = self._handle_response(self._client.get("/api/agents"))
        agents: list[str] = response.json()["agents"]
        return agents

    # === Transfers ===

    def trigger(
        self,
        agent_id: str,
        display_name: str | None = None,
        requested_by: str | None = None,
        reason: str | None = None,
    ) -> RemoteTransfer:
        """Ask an agent to upload its file.

        Returns:
            The new transfer, in pending state.

        Raises:
            APIError: If the server rejects the request or cannot reach the agent.
        """
        body = {
            key: value
            for key, value in (
                ("display_name", display_name),
                ("requested_by", requested_by),
                ("reason", reason),
            )
            if value is not None
        }
        response = self._handle_response(
            self._client.post(f"/api/agents/{agent_id}/transfers", json=body)
        )
        return RemoteTransfer.from_dict(response.json())

    def get_transfer(self, transfer_id: str) -> RemoteTransfer:
        """Get a transfer by id.

        Raises:
            NotFoundError: If the transfer does not exist.
        """
        response = self._handle_response(self._client.get(f"/api/transfers/{transfer_id}"))
        return RemoteTransfer.from_dict(response.json())

    def get_artifact(self, transfer_id: str) -> RemoteArtifact:
        """Get a fresh download URL for a verified transfer.

        Raises:
            NotFoundError: If the transfer does not exist or is not verified.
        """
        response = self._handle_response(
            self._client.get(f"/api/transfers/{transfer_id}/artifact")
        )
        return RemoteArtifact.from_dict(response.json())

    def list_transfers(self, agent_id: str) -> list[RemoteTransfer]:
        """List an agent's transfers, newest first."""
        response = self._handle_response(self._client.get(f"/api/agents/{agent_id}/transfers"))
        return [RemoteTransfer.from_dict(t) for t in response.json()]

    def list_stale(self, older_than_seconds: int = 900) -> list[RemoteTransfer]:
        """List transfers still pending after older_than_seconds."""
        response = self._handle_response(
            self._client.get(
                "/api/transfers/stale",
                params={"older_than_seconds": older_than_seconds},
            )
        )
        return [RemoteTransfer.from_dict(t) for t in response.json()]
