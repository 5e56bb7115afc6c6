"""Initiator side of the download orchestration protocol.

This module provides:
- Orchestrator: creates transfers, dispatches upload commands, consumes
  agent events, verifies uploads and hands out artifact URLs
- Exceptions for the failures that prevent a transfer from being created

Architecture:
    trigger() ──► gateway (PUT URL) ──► store (pending) ──► channel ──► agent
                                                                        │
    store (verified/failed) ◄── gateway (stat) ◄── on_event() ◄─────────┘

Everything that goes wrong after a record exists is recorded on the
record (status failed + category + reason). Only trigger() raises.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from pullagent.core.config import OrchestratorConfig
from pullagent.core.messages import CompleteEvent, FailedEvent, UploadCommand
from pullagent.core.sanitize import build_object_key, is_valid_agent_id, sanitize_filename
from pullagent.core.types import FailureCategory, TransferStatus
from pullagent.server.store import InvalidTransitionError, TransferRecord

if TYPE_CHECKING:
    from pullagent.core.channel import CommandChannel, Subscription
    from pullagent.server.gateway import Credential, ObjectStoreGateway
    from pullagent.server.store import TransferStore

logger = logging.getLogger(__name__)

REASON_OBJECT_MISSING = "object missing after upload"
REASON_METADATA_UNAVAILABLE = "metadata unavailable"
REASON_VERIFICATION_ERROR = "verification error"


class OrchestrationError(Exception):
    """Base exception for failures that prevent creating a transfer."""


class InvalidRequestError(OrchestrationError):
    """Raised when trigger arguments are rejected before any side effect."""


class CredentialIssueError(OrchestrationError):
    """Raised when the object store could not issue a write credential."""


class RecordPersistenceError(OrchestrationError):
    """Raised when the transfer record could not be saved."""


class CommandDispatchError(OrchestrationError):
    """Raised when the upload command could not be sent.

    The record exists and stays pending; transfer_id identifies it.
    """

    def __init__(self, message: str, transfer_id: str) -> None:
        super().__init__(message)
        self.transfer_id = transfer_id


class _KeyedLocks:
    """Per-key mutual exclusion, dropping locks nobody holds."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, tuple[threading.Lock, int]] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock, users = self._locks.get(key, (threading.Lock(), 0))
            self._locks[key] = (lock, users + 1)
        try:
            with lock:
                yield
        finally:
            with self._guard:
                lock, users = self._locks[key]
                if users <= 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, users - 1)


class Orchestrator:
    """Drives transfers from trigger to a verified or failed record.

    Usage:
        orchestrator = Orchestrator(store, gateway, channel)
        orchestrator.start()  # subscribe to agent events

        record = orchestrator.trigger("agent-1", "report.pdf")
        ...
        orchestrator.get_status(record.id)
        orchestrator.get_artifact_url(record.id)

        orchestrator.stop()
    """

    def __init__(
        self,
        store: TransferStore,
        gateway: ObjectStoreGateway,
        channel: CommandChannel,
        config: OrchestratorConfig | None = None,
        id_factory: Callable[[], str] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            store: Transfer record store.
            gateway: Object store gateway for credentials and verification.
            channel: Channel used to reach agents and receive their events.
            config: TTL configuration.
            id_factory: Generates transfer ids (default: UUID4).
            clock: Returns the current UTC time.
        """
        self._store = store
        self._gateway = gateway
        self._channel = channel
        self._config = config or OrchestratorConfig()
        self._id_factory = id_factory or (lambda: str(uuid.uuid4()))
        self._clock = clock or (lambda: datetime.now(UTC))
        self._locks = _KeyedLocks()
        self._subscription: Subscription[CompleteEvent | FailedEvent] | None = None

    @property
    def config(self) -> OrchestratorConfig:
        """Get the orchestrator configuration."""
        return self._config

    # === Lifecycle ===

    def start(self) -> None:
        """Subscribe to agent events."""
        if self._subscription and self._subscription.active:
            logger.warning("Orchestrator already subscribed to events")
            return
        self._subscription = self._channel.subscribe_events(self.on_event)
        logger.info("Orchestrator subscribed to agent events")

    def stop(self) -> None:
        """Cancel the event subscription."""
        if self._subscription:
            self._subscription.cancel()
            self._subscription = None
            logger.info("Orchestrator unsubscribed from agent events")

    # === Trigger ===

    def trigger(
        self,
        agent_id: str,
        display_name: str | None = None,
        request_meta: dict[str, Any] | None = None,
    ) -> TransferRecord:
        """Start pulling a file from an agent.

        Args:
            agent_id: Agent to pull from.
            display_name: Original file name, used in the object key and as
                download name.
            request_meta: Opaque metadata forwarded to the agent.

        Returns:
            The pending transfer record.

        Raises:
            InvalidRequestError: If agent_id is malformed.
            CredentialIssueError: If no write credential could be issued.
            RecordPersistenceError: If the record could not be saved.
            CommandDispatchError: If the command could not be sent (the
                record stays pending).
        """
        if not is_valid_agent_id(agent_id):
            raise InvalidRequestError(f"Invalid agent id: {agent_id!r}")

        transfer_id = self._id_factory()
        sanitized = sanitize_filename(display_name)
        object_key = build_object_key(agent_id, transfer_id, display_name)
        ttl = self._config.write_credential_ttl

        try:
            credential = self._gateway.issue_write_credential(object_key, ttl)
        except Exception as e:
            logger.error("Cannot issue write credential for %s: %s", object_key, e)
            raise CredentialIssueError(f"Cannot issue write credential: {e}") from e

        now = self._clock()
        record = TransferRecord(
            id=transfer_id,
            agent_id=agent_id,
            object_key=object_key,
            display_name=display_name or sanitized,
            status=TransferStatus.PENDING,
            credential_expiry=credential.expires_at,
            created_at=now,
            updated_at=now,
            request_meta=request_meta,
        )

        try:
            self._store.create(record)
        except Exception as e:
            logger.error("Cannot persist transfer %s: %s", transfer_id, e)
            raise RecordPersistenceError(f"Cannot persist transfer: {e}") from e

        command = UploadCommand(
            transfer_id=transfer_id,
            object_key=object_key,
            write_credential=credential.url,
            credential_expiry=credential.expires_at,
            meta=request_meta,
        )

        try:
            self._channel.send(agent_id, command)
        except Exception as e:
            logger.error(
                "Transfer %s left pending: command to agent %s not sent: %s",
                transfer_id, agent_id, e,
            )
            raise CommandDispatchError(
                f"Cannot send command to agent {agent_id}: {e}", transfer_id
            ) from e

        logger.info(
            "Triggered transfer %s from agent %s (object_key=%s)",
            transfer_id, agent_id, object_key,
        )
        return record

    # === Events ===

    def on_event(self, event: CompleteEvent | FailedEvent) -> None:
        """Apply an agent event to its transfer record.

        Safe under redelivery: events for unknown or finished transfers are
        discarded. Never raises.
        """
        try:
            with self._locks.hold(event.transfer_id):
                self._apply_event(event)
        except Exception:
            logger.exception("Unexpected error handling %s event for %s", event.kind, event.transfer_id)

    def _apply_event(self, event: CompleteEvent | FailedEvent) -> None:
        record = self._store.get(event.transfer_id)
        if record is None:
            logger.warning("Discarding %s event for unknown transfer %s", event.kind, event.transfer_id)
            return

        if event.object_key != record.object_key:
            logger.warning(
                "Discarding %s event for %s: object key %s does not match %s",
                event.kind, record.id, event.object_key, record.object_key,
            )
            return

        if record.is_terminal:
            logger.info(
                "Discarding %s event for %s: already %s",
                event.kind, record.id, record.status.value,
            )
            return

        if isinstance(event, FailedEvent):
            logger.error("Agent reported failure for %s: %s", record.id, event.reason)
            self._transition(
                record.id,
                TransferStatus.FAILED,
                failure_category=FailureCategory.TRANSFER_FAILED,
                failure_reason=event.reason,
            )
            return

        if record.status == TransferStatus.PENDING:
            updated = self._transition(
                record.id,
                TransferStatus.UPLOADED,
                size=event.size,
                digest=event.digest,
            )
            if updated is None:
                return
            record = updated
            logger.info("Upload complete for %s (size=%d, digest=%s)", record.id, event.size, event.digest)
        else:
            logger.info("Re-running verification for %s (already uploaded)", record.id)

        self._verify(record)

    def _verify(self, record: TransferRecord) -> None:
        """Reconcile the reported upload with the object store."""
        try:
            category, reason = self._check_object(record)
        except Exception:
            logger.exception("Verification error for %s", record.id)
            category, reason = FailureCategory.VERIFICATION_ERROR, REASON_VERIFICATION_ERROR

        if category is None:
            try:
                verified = self._transition(record.id, TransferStatus.VERIFIED)
            except Exception:
                logger.exception("Could not mark %s verified", record.id)
                category, reason = FailureCategory.VERIFICATION_ERROR, REASON_VERIFICATION_ERROR
            else:
                if verified is not None:
                    logger.info("Transfer verified: %s", record.id)
                return

        logger.error("Verification failed for %s: %s", record.id, reason)
        try:
            self._transition(
                record.id,
                TransferStatus.FAILED,
                failure_category=category,
                failure_reason=reason,
            )
        except Exception:
            logger.exception("Could not mark %s failed, record left uploaded", record.id)

    def _check_object(self, record: TransferRecord) -> tuple[FailureCategory | None, str | None]:
        if not self._gateway.exists(record.object_key):
            return FailureCategory.OBJECT_MISSING, REASON_OBJECT_MISSING

        metadata = self._gateway.stat_metadata(record.object_key)
        if metadata is None:
            return FailureCategory.METADATA_UNAVAILABLE, REASON_METADATA_UNAVAILABLE

        if metadata.size != record.size:
            return (
                FailureCategory.SIZE_MISMATCH,
                f"size mismatch: expected {record.size} bytes, store has {metadata.size} bytes",
            )

        return None, None

    def _transition(
        self,
        transfer_id: str,
        status: TransferStatus,
        **fields: Any,
    ) -> TransferRecord | None:
        """Apply a transition; a lost race is logged and returns None."""
        try:
            return self._store.update(transfer_id, status, **fields)
        except InvalidTransitionError as e:
            logger.warning("Skipping transition: %s", e)
            return None

    # === Queries ===

    def get_status(self, transfer_id: str) -> TransferRecord | None:
        """Get a transfer record. Records never carry the write credential."""
        return self._store.get(transfer_id)

    def get_artifact_url(self, transfer_id: str) -> Credential | None:
        """Mint a download URL for a verified transfer.

        Returns:
            A fresh read credential, or None if the transfer is unknown or
            not verified.

        Raises:
            GatewayError: If the object store cannot issue the credential.
        """
        record = self._store.get(transfer_id)
        if record is None or record.status != TransferStatus.VERIFIED:
            return None

        return self._gateway.issue_read_credential(
            record.object_key,
            self._config.read_credential_ttl,
            disposition_name=record.display_name,
        )

    def list_transfers(self, agent_id: str) -> list[TransferRecord]:
        """List an agent's transfers, newest first."""
        return self._store.list_by_agent(agent_id)

    def list_stale_pending(self, older_than: timedelta) -> list[TransferRecord]:
        """List pending transfers created more than older_than ago.

        These are transfers whose command was lost, whose agent is offline
        or whose agent never reported back.
        """
        cutoff = self._clock() - older_than
        return self._store.list_by_status(TransferStatus.PENDING, created_before=cutoff)
