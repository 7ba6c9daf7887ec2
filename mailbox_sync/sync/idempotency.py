"""
Idempotency guard for remote change application.

The push path and the poll path may both see the same history record. Each
change is keyed on (account, cursor, message, kind) and the key is recorded
with an atomic insert-if-absent, in the same transaction as the mirror
mutation, so a replayed change has no further effect.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta

from mailbox_sync.storage.db import MirrorDatabase
from mailbox_sync.sync.models import ChangeKind, IdempotencyKey, utcnow

logger = logging.getLogger(__name__)

# Keys older than this are safe to prune; must exceed the push channel's
# maximum redelivery window.
DEFAULT_RETENTION = timedelta(days=7)


@dataclass
class GuardResult:
    """Result of recording an idempotency key."""

    already_applied: bool


class IdempotencyGuard:
    """
    Deduplicates change application against the mirror store.

    Usage:
        guard = IdempotencyGuard(db)

        applied = guard.apply_once(key, lambda conn: db.delete_message(
            key.account_id, "gmail", key.message_id, conn=conn))
    """

    def __init__(self, store: MirrorDatabase, retention: timedelta = DEFAULT_RETENTION):
        self.store = store
        self.retention = retention

    def record_if_absent(
        self,
        account_id: str,
        cursor: str,
        message_id: str,
        kind: ChangeKind,
    ) -> GuardResult:
        """Record a key; report whether it had already been recorded."""
        key = IdempotencyKey(account_id, cursor, message_id, kind)
        inserted = self.store.record_if_absent(key)
        return GuardResult(already_applied=not inserted)

    def apply_once(
        self,
        key: IdempotencyKey,
        mutation: Callable[[sqlite3.Connection], None],
    ) -> bool:
        """
        Run ``mutation`` only if ``key`` has not been recorded.

        The key insert and the mutation share one transaction: if the
        mutation fails, the key is rolled back and the change will be
        applied again on replay.

        Returns:
            True if the mutation ran, False if the key was already recorded
        """
        with self.store.connection() as conn:
            if not self.store.record_if_absent(key, conn=conn):
                logger.debug(
                    f"Skipping duplicate {key.kind.value} for message "
                    f"{key.message_id} at cursor {key.cursor}"
                )
                return False
            mutation(conn)
            return True

    def prune(self, retention: timedelta | None = None) -> int:
        """
        Delete keys older than the retention window.

        Cursors only move forward past pruned ranges, so pruned keys are never
        consulted again.

        Returns:
            Number of keys deleted
        """
        cutoff = utcnow() - (retention or self.retention)
        deleted = self.store.prune_idempotency_keys(cutoff)
        if deleted:
            logger.info(f"Pruned {deleted} idempotency keys older than {cutoff}")
        return deleted
