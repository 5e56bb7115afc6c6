"""Shared types for pullagent.

This module defines enums used by both the orchestrator and the agent.
"""

from __future__ import annotations

from enum import Enum


class TransferStatus(str, Enum):
    """Lifecycle status of a transfer record.

    pending -> uploaded -> verified, with failed reachable from every
    non-terminal state. verified and failed are terminal.
    """

    PENDING = "pending"
    UPLOADED = "uploaded"
    VERIFIED = "verified"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Check if no further transition is possible."""
        return self in (TransferStatus.VERIFIED, TransferStatus.FAILED)


# Allowed transitions, keyed by current status
ALLOWED_TRANSITIONS: dict[TransferStatus, frozenset[TransferStatus]] = {
    TransferStatus.PENDING: frozenset({TransferStatus.UPLOADED, TransferStatus.FAILED}),
    TransferStatus.UPLOADED: frozenset({TransferStatus.VERIFIED, TransferStatus.FAILED}),
    TransferStatus.VERIFIED: frozenset(),
    TransferStatus.FAILED: frozenset(),
}


def can_transition(current: TransferStatus, target: TransferStatus) -> bool:
    """Check whether a status transition is allowed."""
    return target in ALLOWED_TRANSITIONS[current]


class FailureCategory(str, Enum):
    """Why a transfer ended in the failed state.

    Callers branch on the category; the record's failure_reason carries
    the human-readable detail.
    """

    TRANSFER_FAILED = "transfer_failed"
    OBJECT_MISSING = "object_missing"
    METADATA_UNAVAILABLE = "metadata_unavailable"
    SIZE_MISMATCH = "size_mismatch"
    VERIFICATION_ERROR = "verification_error"
