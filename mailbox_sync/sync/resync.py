"""
Full-resync fallback.

When the provider no longer holds history for an account's cursor, the
mirror is rebuilt from a bounded listing of recent messages and the
provider's current cursor becomes the new baseline.
"""

from __future__ import annotations

import logging

from mailbox_sync.api.provider import MailProvider
from mailbox_sync.storage.db import MirrorDatabase
from mailbox_sync.sync.models import Account

logger = logging.getLogger(__name__)

# Default number of recent messages listed during a full resync
DEFAULT_MESSAGE_CAP = 1000


class FullResync:
    """
    Rebuilds recent mirror state from the provider.

    Rows outside the listed window are never deleted: deletions only happen
    through explicit deleted changes, so a bounded listing cannot cause a
    false deletion.
    """

    def __init__(
        self,
        provider: MailProvider,
        store: MirrorDatabase,
        message_cap: int = DEFAULT_MESSAGE_CAP,
    ):
        self.provider = provider
        self.store = store
        self.message_cap = message_cap

    def full_resync(self, account: Account) -> str:
        """
        Upsert the most recent messages and return the new baseline cursor.

        The cursor is read before listing so that changes made during the
        listing are replayed by the next delta. The caller persists the
        returned cursor; on any provider or authorization error nothing is
        returned and the stored cursor is left untouched.

        Returns:
            The provider's cursor at the start of the resync
        """
        logger.info(f"Performing full resync for account {account.account_id}")

        new_cursor = self.provider.get_profile(account)
        messages = self.provider.list_recent_messages(account, self.message_cap)

        with self.store.connection() as conn:
            for message in messages:
                self.store.upsert_message(
                    account.account_id,
                    account.provider,
                    message.message_id,
                    message.to_fields(),
                    conn=conn,
                )

        logger.info(
            f"Full resync completed for account {account.account_id}: "
            f"{len(messages)} messages, cursor {new_cursor}"
        )
        return new_cursor
