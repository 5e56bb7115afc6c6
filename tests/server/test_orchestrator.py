"""Tests for the Orchestrator."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from itertools import count
from typing import Any
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from pullagent.core.channel import InMemoryChannel
from pullagent.core.config import OrchestratorConfig
from pullagent.core.messages import CompleteEvent, FailedEvent, UploadCommand
from pullagent.core.types import FailureCategory, TransferStatus
from pullagent.server.gateway import Credential, GatewayError, ObjectMetadata, ObjectStoreGateway
from pullagent.server.orchestrator import (
    REASON_METADATA_UNAVAILABLE,
    REASON_OBJECT_MISSING,
    REASON_VERIFICATION_ERROR,
    CommandDispatchError,
    CredentialIssueError,
    InvalidRequestError,
    Orchestrator,
    RecordPersistenceError,
)
from pullagent.server.store import InMemoryTransferStore, TransferRecord, TransferStore

HUNDRED_MIB = 104_857_600
DIGEST = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


class FakeGateway(ObjectStoreGateway):
    """Object store double keeping object sizes in a dict."""

    def __init__(self) -> None:
        self.objects: dict[str, int] = {}
        self.fail_issue = False
        self.fail_stat = False
        self.hide_metadata = False
        self.read_requests: list[tuple[str, int, str | None]] = []

    @property
    def location(self) -> str:
        return "fake"

    def issue_write_credential(self, object_key: str, ttl_seconds: int) -> Credential:
        if self.fail_issue:
            raise GatewayError("store down")
        return Credential(
            url=f"https://store.test/{object_key}?op=put",
            method="PUT",
            expires_at=datetime.now(UTC) + timedelta(seconds=ttl_seconds),
        )

    def issue_read_credential(
        self,
        object_key: str,
        ttl_seconds: int,
        disposition_name: str | None = None,
    ) -> Credential:
        self.read_requests.append((object_key, ttl_seconds, disposition_name))
        return Credential(
            url=f"https://store.test/{object_key}?op=get&n={len(self.read_requests)}",
            method="GET",
            expires_at=datetime.now(UTC) + timedelta(seconds=ttl_seconds),
        )

    def exists(self, object_key: str) -> bool:
        if self.fail_stat:
            raise GatewayError("stat failed")
        return object_key in self.objects

    def stat_metadata(self, object_key: str) -> ObjectMetadata | None:
        if self.hide_metadata or object_key not in self.objects:
            return None
        return ObjectMetadata(size=self.objects[object_key])


class FlakyStore(InMemoryTransferStore):
    """In-memory store whose writes to some statuses hit a database error."""

    def __init__(self, fail_on: set[TransferStatus]) -> None:
        super().__init__()
        self.fail_on = fail_on

    def update(self, transfer_id: str, status: TransferStatus, **fields: Any) -> TransferRecord:
        if status in self.fail_on:
            raise OperationalError("UPDATE transfers", {}, Exception("database is locked"))
        return super().update(transfer_id, status, **fields)


class FakeClock:
    """Settable clock."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def store() -> InMemoryTransferStore:
    """Create an in-memory store."""
    return InMemoryTransferStore()


@pytest.fixture
def gateway() -> FakeGateway:
    """Create a fake object store."""
    return FakeGateway()


@pytest.fixture
def channel() -> InMemoryChannel:
    """Create an in-memory channel."""
    return InMemoryChannel()


@pytest.fixture
def commands(channel: InMemoryChannel) -> list[UploadCommand]:
    """Subscribe agent-1 and collect the commands it receives."""
    received: list[UploadCommand] = []
    channel.subscribe("agent-1", received.append)
    return received


@pytest.fixture
def orchestrator(
    store: InMemoryTransferStore,
    gateway: FakeGateway,
    channel: InMemoryChannel,
) -> Orchestrator:
    """Create an orchestrator with sequential transfer ids."""
    ids = count(1)
    return Orchestrator(store, gateway, channel, id_factory=lambda: f"t-{next(ids)}")


def complete_for(record_id: str, object_key: str, size: int, digest: str = DIGEST) -> CompleteEvent:
    return CompleteEvent(transfer_id=record_id, object_key=object_key, size=size, digest=digest)


class TestTrigger:
    """Tests for Orchestrator.trigger."""

    def test_creates_pending_record_and_sends_command(
        self,
        orchestrator: Orchestrator,
        store: InMemoryTransferStore,
        channel: InMemoryChannel,
        commands: list[UploadCommand],
    ) -> None:
        """Should persist a pending record and send a matching command."""
        record = orchestrator.trigger("agent-1", "Q3 Report.pdf", {"requested_by": "ops"})

        assert record.status == TransferStatus.PENDING
        assert record.object_key == "agent-1/t-1-q3_report.pdf"
        assert record.display_name == "Q3 Report.pdf"
        assert store.get("t-1") == record

        assert channel.wait_idle()
        assert len(commands) == 1
        command = commands[0]
        assert command.transfer_id == "t-1"
        assert command.object_key == record.object_key
        assert command.write_credential == f"https://store.test/{record.object_key}?op=put"
        assert command.credential_expiry == record.credential_expiry
        assert command.meta == {"requested_by": "ops"}

    def test_credential_lifetime_from_config(
        self,
        store: InMemoryTransferStore,
        gateway: FakeGateway,
        channel: InMemoryChannel,
        commands: list[UploadCommand],
    ) -> None:
        """Should issue the write credential with the configured TTL."""
        orchestrator = Orchestrator(
            store, gateway, channel, config=OrchestratorConfig(write_credential_ttl=60)
        )
        before = datetime.now(UTC)
        record = orchestrator.trigger("agent-1", "a.txt")
        assert before + timedelta(seconds=59) < record.credential_expiry
        assert record.credential_expiry <= datetime.now(UTC) + timedelta(seconds=60)

    def test_missing_display_name(
        self,
        orchestrator: Orchestrator,
        commands: list[UploadCommand],
    ) -> None:
        """Should fall back to the generic name."""
        record = orchestrator.trigger("agent-1")
        assert record.object_key == "agent-1/t-1-file"
        assert record.display_name == "file"

    def test_each_trigger_gets_a_new_id(
        self,
        orchestrator: Orchestrator,
        commands: list[UploadCommand],
    ) -> None:
        """Should create distinct records for repeated triggers."""
        first = orchestrator.trigger("agent-1", "a.txt")
        second = orchestrator.trigger("agent-1", "a.txt")
        assert first.id != second.id
        assert first.object_key != second.object_key

    @pytest.mark.parametrize("agent_id", ["", "agent 1", "../etc", "a/b"])
    def test_invalid_agent_id(
        self,
        orchestrator: Orchestrator,
        store: InMemoryTransferStore,
        agent_id: str,
    ) -> None:
        """Should reject malformed agent ids before doing anything."""
        with pytest.raises(InvalidRequestError):
            orchestrator.trigger(agent_id, "a.txt")
        assert store.list_by_agent(agent_id) == []

    def test_credential_failure(
        self,
        orchestrator: Orchestrator,
        store: InMemoryTransferStore,
        gateway: FakeGateway,
        commands: list[UploadCommand],
    ) -> None:
        """Should raise and create no record when no credential can be issued."""
        gateway.fail_issue = True
        with pytest.raises(CredentialIssueError):
            orchestrator.trigger("agent-1", "a.txt")
        assert store.get("t-1") is None
        assert commands == []

    def test_persistence_failure(
        self,
        gateway: FakeGateway,
        channel: InMemoryChannel,
        commands: list[UploadCommand],
    ) -> None:
        """Should raise and send nothing when the record cannot be saved."""
        broken_store = MagicMock(spec=TransferStore)
        broken_store.create.side_effect = OSError("disk full")
        orchestrator = Orchestrator(broken_store, gateway, channel)

        with pytest.raises(RecordPersistenceError):
            orchestrator.trigger("agent-1", "a.txt")
        assert channel.wait_idle()
        assert commands == []

    def test_dispatch_failure_leaves_record_pending(
        self,
        orchestrator: Orchestrator,
        store: InMemoryTransferStore,
    ) -> None:
        """Should raise with the transfer id and keep the record pending."""
        with pytest.raises(CommandDispatchError) as exc_info:
            orchestrator.trigger("offline-agent", "a.txt")

        assert exc_info.value.transfer_id == "t-1"
        record = store.get("t-1")
        assert record is not None
        assert record.status == TransferStatus.PENDING


class TestOnEvent:
    """Tests for event handling and verification."""

    @pytest.fixture
    def record_id(self, orchestrator: Orchestrator, commands: list[UploadCommand]) -> str:
        """Trigger a transfer and return its id."""
        return orchestrator.trigger("agent-1", "big.bin").id

    def _key(self, store: InMemoryTransferStore, record_id: str) -> str:
        record = store.get(record_id)
        assert record is not None
        return record.object_key

    def test_complete_with_matching_size_verifies(
        self,
        orchestrator: Orchestrator,
        store: InMemoryTransferStore,
        gateway: FakeGateway,
        record_id: str,
    ) -> None:
        """A 100 MiB upload stored at 100 MiB should end verified."""
        key = self._key(store, record_id)
        gateway.objects[key] = HUNDRED_MIB

        orchestrator.on_event(complete_for(record_id, key, HUNDRED_MIB))

        record = store.get(record_id)
        assert record is not None
        assert record.status == TransferStatus.VERIFIED
        assert record.size == HUNDRED_MIB
        assert record.digest == DIGEST
        assert record.failure_category is None

    def test_size_off_by_one_fails(
        self,
        orchestrator: Orchestrator,
        store: InMemoryTransferStore,
        gateway: FakeGateway,
        record_id: str,
    ) -> None:
        """A stored object one byte short should fail with size_mismatch."""
        key = self._key(store, record_id)
        gateway.objects[key] = HUNDRED_MIB - 1

        orchestrator.on_event(complete_for(record_id, key, HUNDRED_MIB))

        record = store.get(record_id)
        assert record is not None
        assert record.status == TransferStatus.FAILED
        assert record.failure_category == FailureCategory.SIZE_MISMATCH
        assert str(HUNDRED_MIB) in (record.failure_reason or "")
        assert str(HUNDRED_MIB - 1) in (record.failure_reason or "")
        assert record.size == HUNDRED_MIB

    def test_object_missing(
        self,
        orchestrator: Orchestrator,
        store: InMemoryTransferStore,
        record_id: str,
    ) -> None:
        """Should fail when the object is not in the store."""
        key = self._key(store, record_id)
        orchestrator.on_event(complete_for(record_id, key, 10))

        record = store.get(record_id)
        assert record is not None
        assert record.status == TransferStatus.FAILED
        assert record.failure_category == FailureCategory.OBJECT_MISSING
        assert record.failure_reason == REASON_OBJECT_MISSING

    def test_metadata_unavailable(
        self,
        orchestrator: Orchestrator,
        store: InMemoryTransferStore,
        gateway: FakeGateway,
        record_id: str,
    ) -> None:
        """Should fail when the object exists but has no metadata."""
        key = self._key(store, record_id)
        gateway.objects[key] = 10
        gateway.hide_metadata = True

        orchestrator.on_event(complete_for(record_id, key, 10))

        record = store.get(record_id)
        assert record is not None
        assert record.failure_category == FailureCategory.METADATA_UNAVAILABLE
        assert record.failure_reason == REASON_METADATA_UNAVAILABLE

    def test_store_error_during_verification(
        self,
        orchestrator: Orchestrator,
        store: InMemoryTransferStore,
        gateway: FakeGateway,
        record_id: str,
    ) -> None:
        """Should fail with a generic reason when the store cannot be checked."""
        key = self._key(store, record_id)
        gateway.fail_stat = True

        orchestrator.on_event(complete_for(record_id, key, 10))

        record = store.get(record_id)
        assert record is not None
        assert record.status == TransferStatus.FAILED
        assert record.failure_category == FailureCategory.VERIFICATION_ERROR
        assert record.failure_reason == REASON_VERIFICATION_ERROR

    def test_database_error_marking_verified(
        self,
        gateway: FakeGateway,
        channel: InMemoryChannel,
        commands: list[UploadCommand],
    ) -> None:
        """A database error on the verified write should fail the transfer."""
        store = FlakyStore(fail_on={TransferStatus.VERIFIED})
        orchestrator = Orchestrator(store, gateway, channel, id_factory=lambda: "t-1")
        record = orchestrator.trigger("agent-1", "big.bin")
        gateway.objects[record.object_key] = 10

        orchestrator.on_event(complete_for(record.id, record.object_key, 10))

        stored = store.get(record.id)
        assert stored is not None
        assert stored.status == TransferStatus.FAILED
        assert stored.failure_category == FailureCategory.VERIFICATION_ERROR
        assert stored.failure_reason == REASON_VERIFICATION_ERROR

    def test_database_down_leaves_record_uploaded(
        self,
        gateway: FakeGateway,
        channel: InMemoryChannel,
        commands: list[UploadCommand],
    ) -> None:
        """Should log, not raise, when neither outcome can be written."""
        store = FlakyStore(fail_on={TransferStatus.VERIFIED, TransferStatus.FAILED})
        orchestrator = Orchestrator(store, gateway, channel, id_factory=lambda: "t-1")
        record = orchestrator.trigger("agent-1", "big.bin")
        gateway.objects[record.object_key] = 10

        orchestrator.on_event(complete_for(record.id, record.object_key, 10))

        stored = store.get(record.id)
        assert stored is not None
        assert stored.status == TransferStatus.UPLOADED

    def test_failed_event(
        self,
        orchestrator: Orchestrator,
        store: InMemoryTransferStore,
        record_id: str,
    ) -> None:
        """Should record the agent's reason."""
        key = self._key(store, record_id)
        orchestrator.on_event(
            FailedEvent(transfer_id=record_id, object_key=key, reason="credential expired")
        )

        record = store.get(record_id)
        assert record is not None
        assert record.status == TransferStatus.FAILED
        assert record.failure_category == FailureCategory.TRANSFER_FAILED
        assert record.failure_reason == "credential expired"
        assert record.size is None

    def test_duplicate_complete_is_idempotent(
        self,
        orchestrator: Orchestrator,
        store: InMemoryTransferStore,
        gateway: FakeGateway,
        record_id: str,
    ) -> None:
        """Applying the same event twice should equal applying it once."""
        key = self._key(store, record_id)
        gateway.objects[key] = 10
        event = complete_for(record_id, key, 10)

        orchestrator.on_event(event)
        after_first = store.get(record_id)
        orchestrator.on_event(event)

        assert store.get(record_id) == after_first

    def test_late_failure_after_verification_ignored(
        self,
        orchestrator: Orchestrator,
        store: InMemoryTransferStore,
        gateway: FakeGateway,
        record_id: str,
    ) -> None:
        """Should not move a verified record."""
        key = self._key(store, record_id)
        gateway.objects[key] = 10
        orchestrator.on_event(complete_for(record_id, key, 10))

        orchestrator.on_event(FailedEvent(transfer_id=record_id, object_key=key, reason="late"))

        record = store.get(record_id)
        assert record is not None
        assert record.status == TransferStatus.VERIFIED

    def test_complete_after_failure_ignored(
        self,
        orchestrator: Orchestrator,
        store: InMemoryTransferStore,
        gateway: FakeGateway,
        record_id: str,
    ) -> None:
        """Should not revive a failed record."""
        key = self._key(store, record_id)
        orchestrator.on_event(FailedEvent(transfer_id=record_id, object_key=key, reason="x"))
        gateway.objects[key] = 10
        orchestrator.on_event(complete_for(record_id, key, 10))

        record = store.get(record_id)
        assert record is not None
        assert record.status == TransferStatus.FAILED
        assert record.failure_reason == "x"

    def test_unknown_transfer_ignored(self, orchestrator: Orchestrator, store: InMemoryTransferStore) -> None:
        """Should discard events for transfers it never created."""
        orchestrator.on_event(complete_for("nope", "agent-1/nope-file", 1))
        assert store.get("nope") is None

    def test_object_key_mismatch_ignored(
        self,
        orchestrator: Orchestrator,
        store: InMemoryTransferStore,
        gateway: FakeGateway,
        record_id: str,
    ) -> None:
        """Should discard an event naming a different object."""
        gateway.objects["agent-1/other"] = 10
        orchestrator.on_event(complete_for(record_id, "agent-1/other", 10))

        record = store.get(record_id)
        assert record is not None
        assert record.status == TransferStatus.PENDING

    def test_complete_on_uploaded_record_reverifies(
        self,
        orchestrator: Orchestrator,
        store: InMemoryTransferStore,
        gateway: FakeGateway,
        record_id: str,
    ) -> None:
        """A redelivered complete should finish a record stuck in uploaded."""
        key = self._key(store, record_id)
        store.update(record_id, TransferStatus.UPLOADED, size=10, digest=DIGEST)
        gateway.objects[key] = 10

        orchestrator.on_event(complete_for(record_id, key, 10))

        record = store.get(record_id)
        assert record is not None
        assert record.status == TransferStatus.VERIFIED

    def test_events_through_channel(
        self,
        orchestrator: Orchestrator,
        store: InMemoryTransferStore,
        gateway: FakeGateway,
        channel: InMemoryChannel,
        record_id: str,
    ) -> None:
        """Should apply events broadcast on the channel once started."""
        key = self._key(store, record_id)
        gateway.objects[key] = 10
        orchestrator.start()
        try:
            channel.broadcast_event(complete_for(record_id, key, 10))
            assert channel.wait_idle()
        finally:
            orchestrator.stop()

        record = store.get(record_id)
        assert record is not None
        assert record.status == TransferStatus.VERIFIED


class TestQueries:
    """Tests for status, artifact and listing queries."""

    @pytest.fixture
    def verified_id(
        self,
        orchestrator: Orchestrator,
        store: InMemoryTransferStore,
        gateway: FakeGateway,
        commands: list[UploadCommand],
    ) -> str:
        """Create a verified transfer."""
        record = orchestrator.trigger("agent-1", "Report Final.pdf")
        gateway.objects[record.object_key] = 5
        orchestrator.on_event(complete_for(record.id, record.object_key, 5))
        return record.id

    def test_artifact_unavailable_before_verification(
        self,
        orchestrator: Orchestrator,
        commands: list[UploadCommand],
    ) -> None:
        """Should return None for a pending transfer."""
        record = orchestrator.trigger("agent-1", "a.txt")
        assert orchestrator.get_artifact_url(record.id) is None

    def test_artifact_unknown_transfer(self, orchestrator: Orchestrator) -> None:
        """Should return None for an unknown id."""
        assert orchestrator.get_artifact_url("missing") is None

    def test_artifact_for_verified_transfer(
        self,
        orchestrator: Orchestrator,
        gateway: FakeGateway,
        verified_id: str,
    ) -> None:
        """Should mint a read credential named after the display name."""
        credential = orchestrator.get_artifact_url(verified_id)
        assert credential is not None
        assert credential.method == "GET"
        key, ttl, disposition = gateway.read_requests[-1]
        assert key == f"agent-1/{verified_id}-report_final.pdf"
        assert ttl == 3600
        assert disposition == "Report Final.pdf"

    def test_artifact_is_fresh_each_call(self, orchestrator: Orchestrator, verified_id: str) -> None:
        """Should issue a new credential on every call."""
        first = orchestrator.get_artifact_url(verified_id)
        second = orchestrator.get_artifact_url(verified_id)
        assert first is not None and second is not None
        assert first.url != second.url

    def test_get_status(self, orchestrator: Orchestrator, verified_id: str) -> None:
        """Should return the record or None."""
        record = orchestrator.get_status(verified_id)
        assert record is not None
        assert record.status == TransferStatus.VERIFIED
        assert orchestrator.get_status("missing") is None

    def test_list_transfers_newest_first(
        self,
        store: InMemoryTransferStore,
        gateway: FakeGateway,
        channel: InMemoryChannel,
        commands: list[UploadCommand],
    ) -> None:
        """Should list an agent's transfers newest first."""
        clock = FakeClock(datetime(2030, 1, 1, tzinfo=UTC))
        orchestrator = Orchestrator(store, gateway, channel, clock=clock)
        first = orchestrator.trigger("agent-1", "a")
        clock.now += timedelta(minutes=1)
        second = orchestrator.trigger("agent-1", "b")

        assert [r.id for r in orchestrator.list_transfers("agent-1")] == [second.id, first.id]
        assert orchestrator.list_transfers("agent-2") == []

    def test_list_stale_pending(
        self,
        store: InMemoryTransferStore,
        gateway: FakeGateway,
        channel: InMemoryChannel,
        commands: list[UploadCommand],
    ) -> None:
        """Should only list pending transfers older than the threshold."""
        clock = FakeClock(datetime(2030, 1, 1, tzinfo=UTC))
        orchestrator = Orchestrator(store, gateway, channel, clock=clock)
        old = orchestrator.trigger("agent-1", "old")
        done = orchestrator.trigger("agent-1", "done")
        orchestrator.on_event(FailedEvent(transfer_id=done.id, object_key=done.object_key, reason="x"))
        clock.now += timedelta(minutes=30)
        orchestrator.trigger("agent-1", "fresh")

        stale = orchestrator.list_stale_pending(timedelta(minutes=15))
        assert [r.id for r in stale] == [old.id]
