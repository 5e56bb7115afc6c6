"""Pytest fixtures for integration tests.

This module provides fixtures for end-to-end testing with a real server
(SQLite store, local filesystem objects) and real agents dialing in over
WebSocket.
"""

from __future__ import annotations

import socket
import threading
import time
from collections.abc import Callable, Generator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest
import uvicorn
from httpx import Client

from pullagent.agent.connection import AgentConnection
from pullagent.agent.runner import TransferRunner
from pullagent.client.api import InitiatorClient
from pullagent.core.config import AgentConfig
from pullagent.server.app import create_app
from pullagent.server.gateway import LocalFSGateway
from pullagent.server.hub import AgentHub
from pullagent.server.store import SqlTransferStore

AGENT_TOKEN = "integration-agent-token"
API_KEY = "integration-api-key"


def wait_until(predicate: Callable[[], bool], timeout: float = 10.0, interval: float = 0.05) -> bool:
    """Poll predicate until it returns True or the timeout elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def find_free_port(host: str = "127.0.0.1") -> int:
    """Reserve a free TCP port number."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        port: int = s.getsockname()[1]
        return port


@dataclass
class PullTestServer:
    """Container for test server resources."""

    store: SqlTransferStore
    gateway: LocalFSGateway
    hub: AgentHub
    url: str


@dataclass
class PullTestAgent:
    """Container for an agent process simulated in-thread."""

    config: AgentConfig
    connection: AgentConnection
    runner: TransferRunner

    def stop(self) -> None:
        """Disconnect and wait for running transfers."""
        self.connection.stop()
        self.runner.close()


class UvicornTestServer:
    """Uvicorn server running in a background thread for testing."""

    def __init__(self, app: Any, host: str = "127.0.0.1", port: int | None = None) -> None:
        self.app = app
        self.host = host
        self.port = port or find_free_port(host)
        self.server: uvicorn.Server | None = None
        self.thread: threading.Thread | None = None

    def start(self) -> int:
        """Start the server and return the port."""
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="warning",
        )
        self.server = uvicorn.Server(config)

        self.thread = threading.Thread(target=self.server.run, daemon=True)
        self.thread.start()

        # Wait for server to be ready
        self._wait_for_ready()

        return self.port

    def _wait_for_ready(self, timeout: float = 5.0) -> None:
        """Wait for the server to be ready to accept connections."""
        start = time.time()
        while time.time() - start < timeout:
            try:
                with Client() as client:
                    response = client.get(f"http://{self.host}:{self.port}/health")
                    if response.status_code == 200:
                        return
            except Exception:
                pass
            time.sleep(0.1)
        raise RuntimeError("Server failed to start in time")

    def stop(self) -> None:
        """Stop the server and wait for its shutdown hooks."""
        if self.server:
            self.server.should_exit = True
        if self.thread:
            self.thread.join(timeout=10.0)


@pytest.fixture
def pull_server(tmp_path: Path) -> Generator[PullTestServer, None, None]:
    """Create and start a server with a SQLite store and local object storage."""
    port = find_free_port()
    url = f"http://127.0.0.1:{port}"

    store = SqlTransferStore(tmp_path / "server" / "pullagent.db")
    gateway = LocalFSGateway(tmp_path / "server" / "objects", url, secret="integration-secret")
    hub = AgentHub(agent_token=AGENT_TOKEN)
    app = create_app(store, gateway, hub=hub, api_key=API_KEY)

    server = UvicornTestServer(app, port=port)
    server.start()

    yield PullTestServer(store=store, gateway=gateway, hub=hub, url=url)

    server.stop()


@pytest.fixture
def initiator(pull_server: PullTestServer) -> Generator[InitiatorClient, None, None]:
    """Create an initiator client authenticated with the API key."""
    with InitiatorClient(pull_server.url, api_key=API_KEY, timeout=10.0) as client:
        yield client


@pytest.fixture
def agent_factory(
    tmp_path: Path,
    pull_server: PullTestServer,
) -> Generator[Callable[..., PullTestAgent], None, None]:
    """Factory fixture to start agents serving a file."""
    agents: list[PullTestAgent] = []

    def _create_agent(
        agent_id: str,
        content: bytes | None = b"",
        token: str = AGENT_TOKEN,
        wait_connected: bool = True,
    ) -> PullTestAgent:
        source = tmp_path / "agents" / agent_id / "export.bin"
        source.parent.mkdir(parents=True, exist_ok=True)
        if content is not None:
            source.write_bytes(content)

        config = AgentConfig(
            server_url=pull_server.url,
            agent_id=agent_id,
            token=token,
            source_path=source,
            timeout=5.0,
            max_attempts=3,
        )
        connection = AgentConnection(config, reconnect_delay=0.2)
        runner = TransferRunner(
            connection,
            source,
            max_attempts=config.max_attempts,
            sleep=lambda _: None,
        )
        runner.start(agent_id)
        connection.start()

        agent = PullTestAgent(config=config, connection=connection, runner=runner)
        agents.append(agent)

        if wait_connected:
            assert wait_until(lambda: agent_id in pull_server.hub.connected_agents())
        return agent

    yield _create_agent

    for agent in agents:
        agent.stop()
