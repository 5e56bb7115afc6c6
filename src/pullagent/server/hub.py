"""WebSocket hub connecting agents to the orchestrator.

This module provides:
- AgentHub: server side of the command channel over WebSocket
- The /ws/agent/{agent_id} endpoint agents dial into

Architecture:
    Orchestrator ──send()──► AgentHub ──ws──► Agent (behind NAT, dials out)
    Orchestrator ◄─events── AgentHub ◄──ws── Agent

Agents open the connection, so they need no inbound connectivity. The
orchestrator runs in worker threads; send() hands the write over to the
event loop the hub was bound to at startup.
"""

from __future__ import annotations

import asyncio
import contextlib
import hmac
import logging
import threading
from typing import TYPE_CHECKING

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from starlette.websockets import WebSocketState

from pullagent.core.channel import ChannelError, CommandChannel, EventHandler, Subscription
from pullagent.core.messages import CompleteEvent, FailedEvent, encode_message, parse_event
from pullagent.core.sanitize import is_valid_agent_id

if TYPE_CHECKING:
    from pullagent.core.messages import UploadCommand

logger = logging.getLogger(__name__)

# Close codes sent to agents that fail the handshake
CLOSE_INVALID_TOKEN = 4001
CLOSE_INVALID_AGENT_ID = 4003


class AgentHub(CommandChannel):
    """Registry of connected agents and fan-out point for their events.

    Several connections may share an agent id; a command is written to all
    of them, like a pub/sub topic.
    """

    def __init__(self, agent_token: str | None = None, send_timeout: float = 10.0) -> None:
        """Initialize the hub.

        Args:
            agent_token: Token agents must present as a bearer token. None
                accepts every agent.
            send_timeout: Seconds send() waits for the event loop to write.
        """
        self._agent_token = agent_token
        self._send_timeout = send_timeout
        self._connections: dict[str, set[WebSocket]] = {}
        self._event_subs: list[Subscription[CompleteEvent | FailedEvent]] = []
        self._subs_lock = threading.Lock()
        self._lock = asyncio.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Set the event loop that owns the WebSocket connections."""
        self._loop = loop

    def check_token(self, authorization: str | None) -> bool:
        """Validate an Authorization header value against the agent token."""
        if self._agent_token is None:
            return True
        if not authorization or not authorization.startswith("Bearer "):
            return False
        return hmac.compare_digest(authorization[7:], self._agent_token)

    def connected_agents(self) -> list[str]:
        """List ids of agents with at least one open connection."""
        return sorted(agent_id for agent_id, conns in list(self._connections.items()) if conns)

    # === Connections ===

    async def connect_agent(self, websocket: WebSocket, agent_id: str) -> None:
        """Accept and register an agent connection."""
        await websocket.accept()
        async with self._lock:
            self._connections.setdefault(agent_id, set()).add(websocket)
        logger.info("Agent connected: %s", agent_id)

    async def disconnect_agent(self, websocket: WebSocket, agent_id: str) -> None:
        """Forget an agent connection."""
        async with self._lock:
            conns = self._connections.get(agent_id)
            if conns is not None:
                conns.discard(websocket)
                if not conns:
                    del self._connections[agent_id]
        logger.info("Agent disconnected: %s", agent_id)

    # === Commands ===

    async def send_async(self, agent_id: str, command: UploadCommand) -> None:
        """Write a command to every connection of an agent.

        Raises:
            ChannelError: If the agent has no open connection or every write failed.
        """
        message = encode_message(command)

        async with self._lock:
            conns = list(self._connections.get(agent_id, ()))
            if not conns:
                raise ChannelError(f"Agent not connected: {agent_id}")

            delivered = 0
            for ws in conns:
                try:
                    if ws.client_state == WebSocketState.CONNECTED:
                        await ws.send_text(message)
                        delivered += 1
                except Exception as e:
                    logger.warning("Dropping connection of agent %s: %s", agent_id, e)
                    self._connections[agent_id].discard(ws)

            if not self._connections.get(agent_id):
                self._connections.pop(agent_id, None)

        if delivered == 0:
            raise ChannelError(f"Could not deliver command to agent {agent_id}")
        logger.debug("Sent command %s to agent %s", command.transfer_id, agent_id)

    def send(self, agent_id: str, command: UploadCommand) -> None:
        """Send a command from a worker thread.

        Raises:
            ChannelError: If the hub is not running, the agent is offline or
                the write failed or timed out.
        """
        loop = self._loop
        if loop is None or loop.is_closed():
            raise ChannelError("Agent hub is not running")

        with contextlib.suppress(RuntimeError):
            if asyncio.get_running_loop() is loop:
                raise ChannelError("send() called from the event loop, use send_async()")

        future = asyncio.run_coroutine_threadsafe(self.send_async(agent_id, command), loop)
        try:
            future.result(timeout=self._send_timeout)
        except TimeoutError as e:
            future.cancel()
            raise ChannelError(f"Timed out sending command to agent {agent_id}") from e

    # === Events ===

    def subscribe_events(self, handler: EventHandler) -> Subscription[CompleteEvent | FailedEvent]:
        """Register a handler for events from all agents."""
        sub: Subscription[CompleteEvent | FailedEvent] = Subscription(
            handler, name="agent-events", on_cancel=self._forget_event_sub
        )
        with self._subs_lock:
            self._event_subs.append(sub)
        return sub

    def _forget_event_sub(self, sub: Subscription[CompleteEvent | FailedEvent]) -> None:
        with self._subs_lock:
            if sub in self._event_subs:
                self._event_subs.remove(sub)

    def handle_agent_message(self, agent_id: str, message: str) -> None:
        """Decode an event sent by an agent and hand it to subscribers.

        Expected message formats:
            {"kind": "complete", "transferId": "...", "objectKey": "...",
             "size": 123, "digest": "...", "timestamp": "..."}
            {"kind": "failed", "transferId": "...", "objectKey": "...",
             "reason": "...", "timestamp": "..."}
        """
        try:
            event = parse_event(message)
        except ValidationError as e:
            logger.warning("Invalid message from agent %s: %s", agent_id, e.errors()[:1])
            return

        with self._subs_lock:
            subs = list(self._event_subs)

        if not subs:
            logger.warning("No event subscriber, dropping %s event for %s", event.kind, event.transfer_id)
            return

        for sub in subs:
            sub.deliver(event)
        logger.debug("Received %s event for %s from agent %s", event.kind, event.transfer_id, agent_id)


# WebSocket router
router = APIRouter(tags=["websocket"])


@router.websocket("/ws/agent/{agent_id}")
async def websocket_agent(websocket: WebSocket, agent_id: str) -> None:
    """WebSocket endpoint for agents.

    Agents connect with a bearer token in the Authorization header, then
    receive upload commands and send back complete/failed events.

    Args:
        websocket: The WebSocket connection.
        agent_id: Identifier the agent receives commands for.
    """
    hub: AgentHub = websocket.app.state.hub

    if not hub.check_token(websocket.headers.get("authorization")):
        await websocket.close(code=CLOSE_INVALID_TOKEN, reason="Invalid token")
        return

    if not is_valid_agent_id(agent_id):
        await websocket.close(code=CLOSE_INVALID_AGENT_ID, reason="Invalid agent id")
        return

    await hub.connect_agent(websocket, agent_id)

    try:
        while True:
            message = await websocket.receive_text()
            hub.handle_agent_message(agent_id, message)
    except WebSocketDisconnect:
        await hub.disconnect_agent(websocket, agent_id)
    except Exception as e:
        logger.exception("Error in agent WebSocket: %s", e)
        await hub.disconnect_agent(websocket, agent_id)
