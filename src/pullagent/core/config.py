"""Shared configuration classes for pullagent.

This module defines configuration classes used by the orchestrator
(server side) and the agent.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

DEFAULT_WRITE_CREDENTIAL_TTL = 900  # seconds
DEFAULT_READ_CREDENTIAL_TTL = 3600  # seconds


@dataclass
class OrchestratorConfig:
    """Configuration for the Orchestrator.

    Attributes:
        write_credential_ttl: Lifetime of the upload URL handed to agents, in seconds.
        read_credential_ttl: Lifetime of artifact download URLs, in seconds.
    """

    write_credential_ttl: int = DEFAULT_WRITE_CREDENTIAL_TTL
    read_credential_ttl: int = DEFAULT_READ_CREDENTIAL_TTL

    def __post_init__(self) -> None:
        """Validate TTLs."""
        if self.write_credential_ttl <= 0:
            raise ValueError("write_credential_ttl must be positive")
        if self.read_credential_ttl <= 0:
            raise ValueError("read_credential_ttl must be positive")


@dataclass
class AgentConfig:
    """Configuration for an agent process.

    Attributes:
        server_url: Base URL of the server (e.g., "https://pull.example.com").
        agent_id: Identifier the agent subscribes to commands with.
        token: Shared agent token presented on the WebSocket handshake.
        source_path: File uploaded when a command arrives.
        timeout: Request/connection timeout in seconds.
        verify_ssl: Whether to verify SSL certificates (default True).
        max_attempts: Upload attempts per command before reporting failure.
        base_delay: Backoff before the second attempt, in seconds.
        max_concurrent: Maximum uploads sending data at once.
    """

    server_url: str
    agent_id: str
    token: str
    source_path: Path
    timeout: float = 30.0
    verify_ssl: bool = True
    max_attempts: int = 5
    base_delay: float = 1.0
    max_concurrent: int = 4

    def __post_init__(self) -> None:
        """Normalize server URL and source path."""
        self.server_url = self.server_url.rstrip("/")
        self.source_path = Path(self.source_path)

    @property
    def ws_url(self) -> str:
        """Get WebSocket URL for the command channel.

        Returns:
            WebSocket URL with the agent id in path.
        """
        url = self.server_url
        if url.startswith("https://"):
            url = "wss://" + url[8:]
        elif url.startswith("http://"):
            url = "ws://" + url[7:]
        return f"{url}/ws/agent/{self.agent_id}"

    @property
    def is_secure(self) -> bool:
        """Check if using HTTPS/WSS."""
        return self.server_url.startswith("https://")
