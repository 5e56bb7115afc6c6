"""Agent side of a transfer: react to upload commands.

This module provides:
- InFlightSet: ids of transfers this agent is currently working on
- TransferRunner: validates a command, uploads the file with retries and
  reports the outcome as a complete or failed event

Architecture:
    AgentChannel ──command──► TransferRunner.submit ──► one thread per transfer
                                                          │
                    StreamingUploader.upload (retried) ◄──┘
                    (active uploads bounded by max_workers)
                                                          │
    AgentChannel ◄──complete/failed event─────────────────┘
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator
from concurrent.futures import Future
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from pullagent.agent.retry import retry_with_backoff
from pullagent.agent.uploader import StreamingUploader, UploadError, UploadResult
from pullagent.core.channel import AgentChannel, ChannelError, Subscription
from pullagent.core.messages import CompleteEvent, FailedEvent, UploadCommand

logger = logging.getLogger(__name__)

REASON_CREDENTIAL_EXPIRED = "credential expired"


class InFlightSet:
    """Thread-safe set of transfer ids being processed."""

    def __init__(self) -> None:
        self._ids: set[str] = set()
        self._lock = threading.Lock()

    def __contains__(self, transfer_id: object) -> bool:
        with self._lock:
            return transfer_id in self._ids

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)

    def add(self, transfer_id: str) -> bool:
        """Hold a transfer id.

        Returns:
            True if the id was free and is now held, False if it is held already.
        """
        with self._lock:
            if transfer_id in self._ids:
                return False
            self._ids.add(transfer_id)
            return True

    def discard(self, transfer_id: str) -> None:
        """Release a held transfer id."""
        with self._lock:
            self._ids.discard(transfer_id)

    @contextmanager
    def claim(self, transfer_id: str) -> Iterator[bool]:
        """Claim a transfer id for the duration of the block.

        Yields:
            True if the id was free and is now held, False if another
            thread holds it. A held id is released on exit.
        """
        claimed = self.add(transfer_id)
        try:
            yield claimed
        finally:
            if claimed:
                self.discard(transfer_id)


class TransferRunner:
    """Executes upload commands for one agent.

    Each accepted command runs on its own thread, so a transfer waiting out
    a retry delay never holds up another. Only the uploads themselves are
    limited to max_workers at a time.

    Usage:
        runner = TransferRunner(channel, Path("/data/report.pdf"))
        runner.start("agent-1")  # subscribe to commands

        # Each command runs on its own thread
        # ...

        runner.close()
    """

    def __init__(
        self,
        channel: AgentChannel,
        source_path: Path | str,
        uploader: StreamingUploader | None = None,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] | None = None,
        max_workers: int = 4,
    ) -> None:
        """Initialize the runner.

        Args:
            channel: Channel commands arrive on and events are sent to.
            source_path: File uploaded when a command does not name another.
            uploader: Uploader (default: StreamingUploader with its own client).
            max_attempts: Upload attempts before reporting failure.
            base_delay: Delay before the second attempt; doubles each retry.
            sleep: Sleep function used between attempts.
            clock: Returns the current UTC time.
            max_workers: Maximum uploads sending data at once.
        """
        self._channel = channel
        self._source_path = Path(source_path)
        self._owns_uploader = uploader is None
        self._uploader = uploader or StreamingUploader()
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(UTC))
        self._in_flight = InFlightSet()
        self._upload_slots = threading.BoundedSemaphore(max_workers)
        self._threads: set[threading.Thread] = set()
        self._threads_lock = threading.Lock()
        self._subscription: Subscription[UploadCommand] | None = None

    @property
    def in_flight(self) -> InFlightSet:
        """Get the set of transfers being processed."""
        return self._in_flight

    # === Lifecycle ===

    def start(self, agent_id: str) -> Subscription[UploadCommand]:
        """Subscribe to commands addressed to agent_id."""
        self._subscription = self._channel.subscribe(agent_id, self._dispatch)
        logger.info("Listening for commands as agent %s (source: %s)", agent_id, self._source_path)
        return self._subscription

    def stop(self) -> None:
        """Stop accepting commands. Running transfers carry on."""
        if self._subscription:
            self._subscription.cancel()
            self._subscription = None

    def close(self, wait: bool = True, timeout: float | None = None) -> None:
        """Stop accepting commands and wait for running transfers.

        Args:
            wait: Join transfer threads before returning. With wait=False
                running transfers are abandoned and the uploader stays open
                under them.
            timeout: Per-thread join timeout.
        """
        self.stop()
        if not wait:
            return
        with self._threads_lock:
            threads = list(self._threads)
        for thread in threads:
            thread.join(timeout)
        if self._owns_uploader:
            self._uploader.close()

    def _dispatch(self, command: UploadCommand) -> None:
        self.submit(command)

    def submit(self, command: UploadCommand) -> Future[None]:
        """Accept a command and run it on a new thread.

        The transfer id is held from this call until the transfer thread
        finishes, so a redelivered command is dropped here even if the
        first one has not started uploading yet.

        Returns:
            A future resolved when the transfer ends. Already resolved for
            a discarded command.
        """
        future: Future[None] = Future()
        if not self._accept(command):
            future.set_result(None)
            return future

        thread = threading.Thread(
            target=self._run,
            args=(command, future),
            name=f"transfer-{command.transfer_id}",
            daemon=True,
        )
        with self._threads_lock:
            self._threads.add(thread)
        thread.start()
        return future

    def _run(self, command: UploadCommand, future: Future[None]) -> None:
        try:
            if not future.set_running_or_notify_cancel():
                logger.info("Transfer %s cancelled before it started", command.transfer_id)
                return
            self._process(command, self._source_path)
        except Exception as e:
            logger.exception("Unexpected error processing transfer %s", command.transfer_id)
            future.set_exception(e)
        else:
            future.set_result(None)
        finally:
            self._in_flight.discard(command.transfer_id)
            with self._threads_lock:
                self._threads.discard(threading.current_thread())

    # === Command handling ===

    def _accept(self, command: UploadCommand) -> bool:
        """Check a command's fields and claim its transfer id."""
        transfer_id = command.transfer_id
        if not transfer_id or not command.object_key or not command.write_credential:
            logger.error("Discarding command with missing fields (transfer %r)", transfer_id)
            return False
        if not self._in_flight.add(transfer_id):
            logger.warning("Transfer %s already in flight, ignoring duplicate command", transfer_id)
            return False
        return True

    def on_command(self, command: UploadCommand, source_path: Path | None = None) -> None:
        """Process one upload command to completion on the calling thread.

        Every outcome is either a log line (discarded command) or an event
        on the channel.

        Args:
            command: The upload command.
            source_path: File to upload instead of the runner's default.
        """
        if not self._accept(command):
            return
        try:
            self._process(command, source_path or self._source_path)
        finally:
            self._in_flight.discard(command.transfer_id)

    def _process(self, command: UploadCommand, path: Path) -> None:
        transfer_id = command.transfer_id
        expiry = command.credential_expiry
        if expiry.tzinfo is None:
            expiry = expiry.replace(tzinfo=UTC)
        if expiry <= self._clock():
            logger.error("Write credential for %s expired at %s", transfer_id, expiry.isoformat())
            self._publish(
                FailedEvent(
                    transfer_id=transfer_id,
                    object_key=command.object_key,
                    reason=REASON_CREDENTIAL_EXPIRED,
                )
            )
            return

        logger.info("Starting upload of %s for transfer %s", path, transfer_id)
        try:
            result = self._upload(command, path)
        except UploadError as e:
            logger.error("Upload failed for %s: %s", transfer_id, e)
            reason = f"upload failed after {self._max_attempts} attempts: {e}"
            self._publish(FailedEvent(transfer_id=transfer_id, object_key=command.object_key, reason=reason))
            return

        logger.info(
            "Upload successful for %s (%d bytes, sha256 %s)",
            transfer_id,
            result.size,
            result.digest,
        )
        self._publish(
            CompleteEvent(
                transfer_id=transfer_id,
                object_key=command.object_key,
                size=result.size,
                digest=result.digest,
            )
        )

    def _upload(self, command: UploadCommand, path: Path) -> UploadResult:
        def attempt() -> UploadResult:
            # Only the upload holds a slot; retry delays run outside it.
            with self._upload_slots:
                return self._uploader.upload(command.write_credential, path)

        return retry_with_backoff(
            attempt,
            max_attempts=self._max_attempts,
            initial_backoff=self._base_delay,
            retryable_exceptions=(UploadError,),
            sleep=self._sleep,
            label=f"transfer {command.transfer_id}",
        )

    def _publish(self, event: CompleteEvent | FailedEvent) -> None:
        """Send an event, logging instead of raising on channel errors."""
        try:
            self._channel.broadcast_event(event)
        except ChannelError as e:
            logger.error("Could not publish %s event for %s: %s", event.kind, event.transfer_id, e)
