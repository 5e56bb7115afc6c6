"""Agent end of the command channel over WebSocket.

This module provides:
- AgentConnection: WebSocket client that dials the server, hands upload
  commands to subscribers and sends events back

Architecture:
    Server ─command─► AgentConnection ─► Subscription ─► TransferRunner
    Server ◄─event─── AgentConnection ◄── broadcast_event ◄──┘

The agent opens the connection, so it works from behind NAT. The socket
lives on an event loop in a background thread; on disconnect it reconnects
after a delay until stopped.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import ssl
import threading
from typing import TYPE_CHECKING

import websockets
from pydantic import ValidationError
from websockets.exceptions import WebSocketException

from pullagent.core.channel import AgentChannel, ChannelError, CommandHandler, Subscription
from pullagent.core.messages import encode_message, parse_command

if TYPE_CHECKING:
    from websockets.asyncio.client import ClientConnection

    from pullagent.core.config import AgentConfig
    from pullagent.core.messages import CompleteEvent, FailedEvent, UploadCommand

logger = logging.getLogger(__name__)


class AgentConnection(AgentChannel):
    """WebSocket connection from an agent to the server.

    Usage:
        connection = AgentConnection(agent_config)
        runner = TransferRunner(connection, agent_config.source_path)
        runner.start(agent_config.agent_id)
        connection.start()

        # Commands are delivered to the runner as they arrive
        # ...

        connection.stop()
        runner.close()
    """

    def __init__(
        self,
        config: AgentConfig,
        reconnect_delay: float = 5.0,
        send_timeout: float = 10.0,
    ) -> None:
        """Initialize the connection.

        Args:
            config: Agent configuration with server URL, agent id and token.
            reconnect_delay: Delay between reconnection attempts.
            send_timeout: Seconds broadcast_event waits for the write.
        """
        self._config = config
        self._reconnect_delay = reconnect_delay
        self._send_timeout = send_timeout

        # Connection state
        self._ws: ClientConnection | None = None
        self._connected = False
        self._should_run = False

        # Thread and loop
        self._thread: threading.Thread | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stop_event: asyncio.Event | None = None  # For interruptible sleep

        self._subs: list[Subscription[UploadCommand]] = []
        self._subs_lock = threading.Lock()

    @property
    def connected(self) -> bool:
        """Check if currently connected."""
        return self._connected

    @property
    def ws_url(self) -> str:
        """Get the WebSocket URL."""
        return self._config.ws_url

    # === AgentChannel ===

    def subscribe(self, agent_id: str, handler: CommandHandler) -> Subscription[UploadCommand]:
        """Register a handler for commands sent to this agent.

        Raises:
            ChannelError: If agent_id is not the id this connection dials in as.
        """
        if agent_id != self._config.agent_id:
            raise ChannelError(
                f"Connection is for agent {self._config.agent_id}, cannot subscribe as {agent_id}"
            )
        sub: Subscription[UploadCommand] = Subscription(
            handler, name=f"commands-{agent_id}", on_cancel=self._forget_sub
        )
        with self._subs_lock:
            self._subs.append(sub)
        return sub

    def _forget_sub(self, sub: Subscription[UploadCommand]) -> None:
        with self._subs_lock:
            if sub in self._subs:
                self._subs.remove(sub)

    def broadcast_event(self, event: CompleteEvent | FailedEvent) -> None:
        """Send an event to the server.

        Raises:
            ChannelError: If not connected or the write fails.
        """
        loop = self._loop
        if loop is None or not self._connected:
            raise ChannelError("Not connected to server")

        future = asyncio.run_coroutine_threadsafe(self._send(encode_message(event)), loop)
        try:
            future.result(timeout=self._send_timeout)
        except TimeoutError as e:
            future.cancel()
            raise ChannelError("Timed out sending event") from e
        except (WebSocketException, OSError) as e:
            raise ChannelError(f"Could not send event: {e}") from e

    async def _send(self, message: str) -> None:
        if self._ws is None:
            raise ChannelError("Not connected to server")
        await self._ws.send(message)

    # === Lifecycle ===

    def start(self) -> None:
        """Start the connection in a background thread."""
        if self._thread and self._thread.is_alive():
            logger.warning("AgentConnection already running")
            return

        self._should_run = True
        self._thread = threading.Thread(
            target=self._run_loop,
            name="AgentConnection",
            daemon=True,
        )
        self._thread.start()
        logger.info("AgentConnection started")

    def stop(self) -> None:
        """Stop the connection."""
        self._should_run = False

        # Signal stop event to interrupt any sleeps
        if self._loop and self._stop_event:
            asyncio.run_coroutine_threadsafe(self._signal_stop(), self._loop)

        # Close WebSocket connection
        if self._loop and self._ws:
            with contextlib.suppress(TimeoutError):
                asyncio.run_coroutine_threadsafe(
                    self._close_connection(), self._loop
                ).result(timeout=2.0)

        if self._thread:
            self._thread.join(timeout=5.0)
            self._thread = None

        logger.info("AgentConnection stopped")

    async def _signal_stop(self) -> None:
        """Signal the stop event to interrupt sleeps."""
        if self._stop_event:
            self._stop_event.set()

    def _run_loop(self) -> None:
        """Run the async event loop in a thread."""
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        self._stop_event = asyncio.Event()

        try:
            self._loop.run_until_complete(self._connection_loop())
        finally:
            self._loop.close()
            self._loop = None
            self._stop_event = None

    async def _connection_loop(self) -> None:
        """Main connection loop with automatic reconnection."""
        was_connected = False

        while self._should_run:
            try:
                await self._connect()
                if was_connected:
                    logger.info("Reconnected to %s", self.ws_url)
                was_connected = True
                await self._listen_for_messages()

            except WebSocketException as e:
                if was_connected:
                    logger.warning("AgentConnection disconnected: %s", e)
                logger.debug("WebSocket error: %s", e)
            except OSError as e:
                if was_connected:
                    logger.warning("AgentConnection connection lost")
                logger.debug("Connection error: %s", e)
            except Exception as e:
                logger.warning("AgentConnection error: %s", e)
                logger.debug("Full traceback:", exc_info=True)

            self._connected = False
            self._ws = None

            if not self._should_run:
                break

            logger.info("AgentConnection reconnecting in %.0fs...", self._reconnect_delay)
            # Interruptible sleep: wakes on stop signal
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),  # type: ignore[union-attr]
                    timeout=self._reconnect_delay,
                )
                break
            except TimeoutError:
                pass

    async def _connect(self) -> None:
        """Establish WebSocket connection."""
        ssl_context: ssl.SSLContext | None = None
        if self.ws_url.startswith("wss://"):
            ssl_context = ssl.create_default_context()
            if not self._config.verify_ssl:
                ssl_context.check_hostname = False
                ssl_context.verify_mode = ssl.CERT_NONE

        self._ws = await websockets.connect(
            self.ws_url,
            additional_headers={"Authorization": f"Bearer {self._config.token}"},
            ssl=ssl_context,
            open_timeout=self._config.timeout,
            close_timeout=5,
        )
        self._connected = True
        logger.info("AgentConnection connected as %s", self._config.agent_id)

    async def _listen_for_messages(self) -> None:
        """Listen for incoming messages from server."""
        while self._should_run and self._ws:
            try:
                message = await asyncio.wait_for(
                    self._ws.recv(),
                    timeout=30.0,  # Check should_run periodically
                )
            except TimeoutError:
                continue
            except websockets.ConnectionClosed:
                logger.info("Connection closed by server")
                break
            self.handle_message(message)

    def handle_message(self, message: str | bytes) -> None:
        """Decode a command sent by the server and hand it to subscribers.

        Expected message format:
            {"kind": "upload", "transferId": "...", "objectKey": "...",
             "writeCredential": "https://...", "credentialExpiry": "...",
             "meta": {...}}
        """
        try:
            command = parse_command(message)
        except ValidationError as e:
            logger.warning("Invalid command received: %s", e.errors()[:1])
            return

        with self._subs_lock:
            subs = list(self._subs)
        if not subs:
            logger.warning("No command subscriber, dropping command %s", command.transfer_id)
            return

        logger.info("Received upload command for transfer %s", command.transfer_id)
        for sub in subs:
            sub.deliver(command)

    async def _close_connection(self) -> None:
        """Close the WebSocket connection."""
        if self._ws:
            with contextlib.suppress(WebSocketException):
                await self._ws.close()
            self._ws = None
        self._connected = False
