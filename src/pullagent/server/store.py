"""Transfer record storage.

This module provides:
- TransferRecord: orchestration state of one transfer
- TransferStore: abstract create/get/update-by-key interface
- InMemoryTransferStore for tests and single-process deployments
- SqlTransferStore backed by SQLAlchemy (SQLite with WAL)

Updates are status transitions checked against the state machine in
pullagent.core.types. Both backends apply them as compare-and-set, so two
writers racing on the same record cannot both win.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy import create_engine, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pullagent.core.types import FailureCategory, TransferStatus, can_transition
from pullagent.server.models import Base, Transfer

if TYPE_CHECKING:
    from sqlalchemy import Engine


class StoreError(Exception):
    """Base exception for transfer store errors."""


class DuplicateTransferError(StoreError):
    """Raised when creating a record whose id already exists."""


class TransferNotFoundError(StoreError):
    """Raised when updating a record that does not exist."""


class InvalidTransitionError(StoreError):
    """Raised when a status transition is not allowed from the current state."""

    def __init__(self, transfer_id: str, current: TransferStatus, target: TransferStatus) -> None:
        super().__init__(
            f"Transfer {transfer_id}: cannot move from {current.value} to {target.value}"
        )
        self.transfer_id = transfer_id
        self.current = current
        self.target = target


# Fields a transition may set, keyed by target status
TRANSITION_FIELDS: dict[TransferStatus, frozenset[str]] = {
    TransferStatus.UPLOADED: frozenset({"size", "digest"}),
    TransferStatus.VERIFIED: frozenset(),
    TransferStatus.FAILED: frozenset({"failure_category", "failure_reason"}),
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


@dataclass
class TransferRecord:
    """Orchestration state of one transfer.

    Attributes:
        id: Unique transfer id, generated at trigger time.
        agent_id: Agent the file is pulled from.
        object_key: Storage key, fixed at creation.
        display_name: Name used for content-disposition on download.
        status: Current lifecycle status.
        credential_expiry: When the write credential stops working.
        created_at: Creation time (UTC).
        updated_at: Time of the last transition (UTC).
        size: Bytes reported by the agent (set on upload).
        digest: SHA-256 hex digest reported by the agent (set on upload).
        failure_category: Why the transfer failed (set on failure).
        failure_reason: Human-readable failure detail (set on failure).
        request_meta: Opaque caller metadata forwarded to the agent.
    """

    id: str
    agent_id: str
    object_key: str
    display_name: str
    status: TransferStatus
    credential_expiry: datetime
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    size: int | None = None
    digest: str | None = None
    failure_category: FailureCategory | None = None
    failure_reason: str | None = None
    request_meta: dict[str, Any] | None = None

    @property
    def is_terminal(self) -> bool:
        """Check if the record reached verified or failed."""
        return self.status.is_terminal

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "object_key": self.object_key,
            "display_name": self.display_name,
            "status": self.status.value,
            "size": self.size,
            "digest": self.digest,
            "credential_expiry": self.credential_expiry.isoformat(),
            "failure_category": self.failure_category.value if self.failure_category else None,
            "failure_reason": self.failure_reason,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


def _check_fields(target: TransferStatus, fields: dict[str, Any]) -> None:
    allowed = TRANSITION_FIELDS.get(target)
    if allowed is None:
        raise ValueError(f"Cannot transition into {target.value}")
    unexpected = set(fields) - allowed
    if unexpected:
        raise ValueError(
            f"Fields {sorted(unexpected)} cannot be set on transition to {target.value}"
        )


class TransferStore(ABC):
    """Abstract keyed store of transfer records."""

    @property
    @abstractmethod
    def location(self) -> str:
        """Return a human-readable description of where records are kept."""

    @abstractmethod
    def create(self, record: TransferRecord) -> None:
        """Persist a new record.

        Raises:
            DuplicateTransferError: If a record with the same id exists.
        """

    @abstractmethod
    def get(self, transfer_id: str) -> TransferRecord | None:
        """Get a record by id, or None if unknown."""

    @abstractmethod
    def update(self, transfer_id: str, status: TransferStatus, **fields: Any) -> TransferRecord:
        """Apply a status transition and set the fields that go with it.

        Args:
            transfer_id: Record to update.
            status: Target status.
            **fields: size/digest for uploaded, failure_category/failure_reason
                for failed.

        Returns:
            The updated record.

        Raises:
            TransferNotFoundError: If the record does not exist.
            InvalidTransitionError: If the transition is not allowed, including
                when another writer changed the status first.
            ValueError: If a field does not belong to the target status.
        """

    @abstractmethod
    def list_by_agent(self, agent_id: str) -> list[TransferRecord]:
        """List an agent's records, newest first."""

    @abstractmethod
    def list_by_status(
        self,
        status: TransferStatus,
        created_before: datetime | None = None,
    ) -> list[TransferRecord]:
        """List records in a status, oldest first.

        Args:
            status: Status to filter on.
            created_before: Only include records created before this instant.
        """

    def close(self) -> None:
        """Release backend resources."""


class InMemoryTransferStore(TransferStore):
    """Dictionary-backed store. Records are copied in and out."""

    def __init__(self) -> None:
        """Initialize an empty store."""
        self._records: dict[str, TransferRecord] = {}
        self._lock = threading.Lock()

    @property
    def location(self) -> str:
        """Return the store description."""
        return "In-memory"

    def create(self, record: TransferRecord) -> None:
        """Persist a new record."""
        with self._lock:
            if record.id in self._records:
                raise DuplicateTransferError(f"Transfer already exists: {record.id}")
            self._records[record.id] = replace(record)

    def get(self, transfer_id: str) -> TransferRecord | None:
        """Get a copy of a record."""
        with self._lock:
            record = self._records.get(transfer_id)
            return replace(record) if record else None

    def update(self, transfer_id: str, status: TransferStatus, **fields: Any) -> TransferRecord:
        """Apply a status transition."""
        _check_fields(status, fields)
        with self._lock:
            record = self._records.get(transfer_id)
            if record is None:
                raise TransferNotFoundError(f"Transfer not found: {transfer_id}")
            if not can_transition(record.status, status):
                raise InvalidTransitionError(transfer_id, record.status, status)

            updated = replace(
                record,
                status=status,
                updated_at=max(_utcnow(), record.updated_at),
                **fields,
            )
            self._records[transfer_id] = updated
            return replace(updated)

    def list_by_agent(self, agent_id: str) -> list[TransferRecord]:
        """List an agent's records, newest first."""
        with self._lock:
            records = [replace(r) for r in self._records.values() if r.agent_id == agent_id]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    def list_by_status(
        self,
        status: TransferStatus,
        created_before: datetime | None = None,
    ) -> list[TransferRecord]:
        """List records in a status, oldest first."""
        with self._lock:
            records = [
                replace(r)
                for r in self._records.values()
                if r.status == status and (created_before is None or r.created_at < created_before)
            ]
        return sorted(records, key=lambda r: r.created_at)


class SqlTransferStore(TransferStore):
    """SQLAlchemy store using SQLite with WAL mode.

    Transitions are a conditional UPDATE on (id, current status), so
    several server instances can share the same database file.
    """

    def __init__(self, db_path: Path) -> None:
        """Initialize the database.

        Args:
            db_path: Path to the SQLite database file.
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        # check_same_thread=False: the orchestrator is called from worker threads
        self._engine: Engine = create_engine(
            f"sqlite:///{self._db_path}",
            connect_args={"check_same_thread": False},
            echo=False,
        )

        with self._engine.connect() as conn:
            conn.exec_driver_sql("PRAGMA journal_mode=WAL")

        Base.metadata.create_all(self._engine)

    @property
    def location(self) -> str:
        """Return the database path."""
        return f"SQLite: {self._db_path}"

    def close(self) -> None:
        """Close the database connection."""
        self._engine.dispose()

    def _session(self) -> Session:
        """Create a new database session."""
        return Session(self._engine)

    @staticmethod
    def _to_record(row: Transfer) -> TransferRecord:
        return TransferRecord(
            id=row.id,
            agent_id=row.agent_id,
            object_key=row.object_key,
            display_name=row.display_name,
            status=TransferStatus(row.status),
            credential_expiry=_as_utc(row.credential_expiry),
            created_at=_as_utc(row.created_at),
            updated_at=_as_utc(row.updated_at),
            size=row.size,
            digest=row.digest,
            failure_category=(
                FailureCategory(row.failure_category) if row.failure_category else None
            ),
            failure_reason=row.failure_reason,
            request_meta=row.request_meta,
        )

    def create(self, record: TransferRecord) -> None:
        """Persist a new record."""
        with self._session() as session:
            session.add(
                Transfer(
                    id=record.id,
                    agent_id=record.agent_id,
                    object_key=record.object_key,
                    display_name=record.display_name,
                    status=record.status.value,
                    size=record.size,
                    digest=record.digest,
                    credential_expiry=record.credential_expiry,
                    failure_category=(
                        record.failure_category.value if record.failure_category else None
                    ),
                    failure_reason=record.failure_reason,
                    request_meta=record.request_meta,
                    created_at=record.created_at,
                    updated_at=record.updated_at,
                )
            )
            try:
                session.commit()
            except IntegrityError as e:
                raise DuplicateTransferError(f"Transfer already exists: {record.id}") from e

    def get(self, transfer_id: str) -> TransferRecord | None:
        """Get a record by id."""
        with self._session() as session:
            row = session.get(Transfer, transfer_id)
            return self._to_record(row) if row else None

    def update(self, transfer_id: str, status: TransferStatus, **fields: Any) -> TransferRecord:
        """Apply a status transition as a compare-and-set on the current status."""
        _check_fields(status, fields)
        values = {
            key: (value.value if isinstance(value, FailureCategory) else value)
            for key, value in fields.items()
        }

        with self._session() as session:
            row = session.get(Transfer, transfer_id)
            if row is None:
                raise TransferNotFoundError(f"Transfer not found: {transfer_id}")
            current = TransferStatus(row.status)
            if not can_transition(current, status):
                raise InvalidTransitionError(transfer_id, current, status)

            stmt = (
                update(Transfer)
                .where(Transfer.id == transfer_id, Transfer.status == current.value)
                .values(
                    status=status.value,
                    updated_at=max(_utcnow(), _as_utc(row.updated_at)),
                    **values,
                )
            )
            result = session.execute(stmt)
            if result.rowcount != 1:
                # Another writer moved the record between our read and write
                session.rollback()
                latest = session.get(Transfer, transfer_id, populate_existing=True)
                latest_status = TransferStatus(latest.status) if latest else current
                raise InvalidTransitionError(transfer_id, latest_status, status)
            session.commit()

            session.expire_all()
            updated = session.get(Transfer, transfer_id)
            assert updated is not None
            return self._to_record(updated)

    def list_by_agent(self, agent_id: str) -> list[TransferRecord]:
        """List an agent's records, newest first."""
        with self._session() as session:
            stmt = (
                select(Transfer)
                .where(Transfer.agent_id == agent_id)
                .order_by(Transfer.created_at.desc())
            )
            return [self._to_record(row) for row in session.execute(stmt).scalars()]

    def list_by_status(
        self,
        status: TransferStatus,
        created_before: datetime | None = None,
    ) -> list[TransferRecord]:
        """List records in a status, oldest first."""
        with self._session() as session:
            stmt = select(Transfer).where(Transfer.status == status.value)
            if created_before is not None:
                stmt = stmt.where(Transfer.created_at < created_before)
            stmt = stmt.order_by(Transfer.created_at)
            return [self._to_record(row) for row in session.execute(stmt).scalars()]


def create_store(db_path: str | Path | None) -> TransferStore:
    """Factory function to create a store from configuration.

    Args:
        db_path: SQLite file path, or None / ":memory:" for the in-memory store.

    Returns:
        Configured TransferStore instance.
    """
    if db_path is None or str(db_path) == ":memory:":
        return InMemoryTransferStore()
    return SqlTransferStore(Path(db_path))
