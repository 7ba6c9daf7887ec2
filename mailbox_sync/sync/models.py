"""
Data model for the mailbox mirror.

Provides the account, message and change representations shared by the
provider adapter, the mirror store and the reconciliation components.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

# Label whose presence marks a message as unread
UNREAD_LABEL = "UNREAD"


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class ChangeKind(str, Enum):
    """Kinds of change recorded in a provider history log."""

    ADDED = "added"
    DELETED = "deleted"
    LABEL_ADDED = "label_added"
    LABEL_REMOVED = "label_removed"


class ReconcileStatus(str, Enum):
    """Outcome of an attempt to run a reconciliation pass."""

    RECONCILED = "reconciled"
    BUSY = "busy"


class PushOutcome(str, Enum):
    """Outcome of handling a push notification."""

    APPLIED = "applied"
    DEFERRED = "deferred"
    IGNORED = "ignored"


@dataclass
class Account:
    """
    A linked mailbox.

    Attributes:
        account_id: Local account identifier
        provider: Provider name (e.g., 'gmail')
        credential_ref: Reference used to load the account's stored token
        email: Mailbox address, informational only
        cursor: Last applied history cursor, None until the first sync
        last_reconciled_at: When the last reconciliation pass finished
    """

    account_id: str
    provider: str
    credential_ref: str
    email: Optional[str] = None
    cursor: Optional[str] = None
    last_reconciled_at: Optional[datetime] = None


@dataclass
class Message:
    """Mirrored metadata for one remote message."""

    message_id: str
    thread_id: Optional[str] = None
    is_read: bool = True
    label_ids: list[str] = field(default_factory=list)
    internal_date: Optional[int] = None  # provider timestamp, epoch millis

    @classmethod
    def from_label_ids(
        cls,
        message_id: str,
        label_ids: list[str] | None,
        thread_id: str | None = None,
        internal_date: int | None = None,
    ) -> Message:
        """Build a message, deriving the read flag from its labels."""
        labels = list(label_ids or [])
        return cls(
            message_id=message_id,
            thread_id=thread_id,
            is_read=UNREAD_LABEL not in labels,
            label_ids=labels,
            internal_date=internal_date,
        )

    def to_fields(self) -> dict[str, Any]:
        """Column values for a mirror upsert."""
        return {
            "thread_id": self.thread_id,
            "is_read": self.is_read,
            "label_ids": list(self.label_ids),
            "internal_date": self.internal_date,
        }


@dataclass
class Change:
    """
    A single change from a history record.

    For ADDED changes, ``message`` carries the metadata to upsert. For label
    changes, ``label_ids`` lists the labels added or removed.
    """

    kind: ChangeKind
    message_id: str
    label_ids: list[str] = field(default_factory=list)
    message: Optional[Message] = None


@dataclass
class HistoryRecord:
    """A cursor position and the changes recorded at it."""

    cursor: str
    changes: list[Change] = field(default_factory=list)


@dataclass
class HistoryPage:
    """One page of a provider history listing."""

    records: list[HistoryRecord] = field(default_factory=list)
    next_page_token: Optional[str] = None
    next_cursor: Optional[str] = None


@dataclass(frozen=True)
class IdempotencyKey:
    """Identity of a change application; presence means already applied."""

    account_id: str
    cursor: str
    message_id: str
    kind: ChangeKind


@dataclass
class Counts:
    """Unread and total message counts for an account."""

    account_id: str
    unread: int
    total: int
    computed_at: datetime = field(default_factory=utcnow)

    def same_values(self, other: Counts | None) -> bool:
        """True if ``other`` has the same unread and total values."""
        if other is None:
            return False
        return self.unread == other.unread and self.total == other.total


@dataclass
class BroadcastEvent:
    """A change notification for live subscribers. Never persisted."""

    account_id: str
    kind: str
    payload: dict[str, Any]
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class ReconcileResult:
    """Result of a reconciliation pass for one account."""

    account_id: str
    status: ReconcileStatus = ReconcileStatus.RECONCILED
    applied: int = 0
    resynced: bool = False
    cursor: Optional[str] = None
    counts: Optional[Counts] = None
    counts_changed: bool = False
    broadcast: bool = False

    @property
    def is_busy(self) -> bool:
        """True if the pass did not run because one was already running."""
        return self.status == ReconcileStatus.BUSY

    @classmethod
    def busy(cls, account_id: str) -> ReconcileResult:
        """Result for an account whose lock is already held."""
        return cls(account_id=account_id, status=ReconcileStatus.BUSY)
