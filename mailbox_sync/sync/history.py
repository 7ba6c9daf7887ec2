"""
History delta processing.

Fetches the provider's history log page by page from a start cursor and
applies each change to the mirror exactly once through the idempotency
guard. Mutations are idempotent upserts, so the result does not depend on
the order of changes within a record.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Optional

from mailbox_sync.api.provider import MailProvider
from mailbox_sync.storage.db import MirrorDatabase
from mailbox_sync.sync.idempotency import IdempotencyGuard
from mailbox_sync.sync.models import (
    UNREAD_LABEL,
    Account,
    Change,
    ChangeKind,
    HistoryPage,
    IdempotencyKey,
)

logger = logging.getLogger(__name__)


class HistoryDeltaProcessor:
    """
    Applies provider history deltas to the mirror.

    Usage:
        processor = HistoryDeltaProcessor(provider, db, guard)

        try:
            applied = processor.process_delta(account, account.cursor, current)
        except HistoryExpiredError:
            ...  # fall back to a full resync
    """

    def __init__(
        self,
        provider: MailProvider,
        store: MirrorDatabase,
        guard: IdempotencyGuard,
    ):
        self.provider = provider
        self.store = store
        self.guard = guard

    def process_delta(self, account: Account, from_cursor: str, to_cursor: str) -> int:
        """
        Apply all changes recorded after ``from_cursor``.

        Pages are applied in the order the provider returns them. The caller
        advances the account cursor to ``to_cursor`` once this returns.

        Args:
            account: Account being synchronized
            from_cursor: Last applied cursor
            to_cursor: Provider's current cursor, used for logging only;
                cursors are opaque and never compared arithmetically

        Returns:
            Number of changes newly applied (duplicates are not counted)

        Raises:
            HistoryExpiredError: If the provider no longer recognizes
                ``from_cursor``; nothing from the failing page is applied
        """
        logger.debug(
            f"Processing history delta for account {account.account_id}: "
            f"{from_cursor} -> {to_cursor}"
        )

        applied = 0
        page_token: Optional[str] = None
        pages = 0

        while True:
            page = self.fetch_page(account, from_cursor, page_token)
            applied += self.apply_page(account, page)
            pages += 1

            page_token = page.next_page_token
            if not page_token:
                break

        logger.info(
            f"Applied {applied} changes from {pages} history page(s) "
            f"for account {account.account_id}"
        )
        return applied

    def fetch_page(
        self,
        account: Account,
        from_cursor: str,
        page_token: Optional[str] = None,
    ) -> HistoryPage:
        """Fetch one page of history from the provider."""
        return self.provider.list_history(account, from_cursor, page_token)

    def apply_page(self, account: Account, page: HistoryPage) -> int:
        """
        Apply every change in a fetched page.

        Returns:
            Number of changes newly applied
        """
        applied = 0
        for record in page.records:
            for change in record.changes:
                key = IdempotencyKey(
                    account_id=account.account_id,
                    cursor=record.cursor,
                    message_id=change.message_id,
                    kind=change.kind,
                )
                if self.guard.apply_once(
                    key,
                    lambda conn, c=change: self._apply_change(account, c, conn),
                ):
                    applied += 1
        return applied

    def _apply_change(
        self, account: Account, change: Change, conn: sqlite3.Connection
    ) -> None:
        """Apply one change to the mirror inside the guard's transaction."""
        if change.kind == ChangeKind.ADDED:
            if change.message is None:
                logger.warning(
                    f"Added change for message {change.message_id} carries no "
                    "metadata, skipping"
                )
                return
            self.store.upsert_message(
                account.account_id,
                account.provider,
                change.message_id,
                change.message.to_fields(),
                conn=conn,
            )

        elif change.kind == ChangeKind.DELETED:
            self.store.delete_message(
                account.account_id, account.provider, change.message_id, conn=conn
            )

        else:
            self._apply_label_change(account, change, conn)

    def _apply_label_change(
        self, account: Account, change: Change, conn: sqlite3.Connection
    ) -> None:
        """Add or remove labels on a mirrored message and recompute read state."""
        message = self.store.get_message(
            account.account_id, account.provider, change.message_id, conn=conn
        )
        if message is None:
            # Not mirrored (outside the resync window or not yet added)
            logger.debug(
                f"Label change for unmirrored message {change.message_id}, no effect"
            )
            return

        labels = list(message.label_ids)
        if change.kind == ChangeKind.LABEL_ADDED:
            labels.extend(label for label in change.label_ids if label not in labels)
        else:
            labels = [label for label in labels if label not in change.label_ids]

        self.store.upsert_message(
            account.account_id,
            account.provider,
            change.message_id,
            {"label_ids": labels, "is_read": UNREAD_LABEL not in labels},
            conn=conn,
        )
