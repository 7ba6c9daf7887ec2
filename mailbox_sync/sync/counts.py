"""
Count reconciliation.

Merges the provider's fast counts with counts aggregated from the mirror.
The mirror can lag behind remote additions it has not processed yet, while
the provider's fast count is itself eventually consistent and may
undercount; the per-field maximum avoids transient undercount flicker and
the two sources converge once both have seen the same events.

Known skew: a mirror row deleted remotely but not yet reconciled keeps the
maximum too high until the deletion is applied.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from mailbox_sync.api.provider import MailProvider
from mailbox_sync.storage.db import MirrorDatabase
from mailbox_sync.sync.models import Account, Counts, utcnow

logger = logging.getLogger(__name__)


@dataclass
class CountsResult:
    """Reconciled counts and whether they differ from the cached value."""

    counts: Counts
    changed: bool


def merge_counts(
    account_id: str,
    remote: tuple[int, int],
    mirror: Optional[Counts],
) -> Counts:
    """
    Take the per-field maximum of remote and mirror counts.

    Unread is clamped to total if transient skew pushes it above.
    """
    remote_unread, remote_total = remote
    unread = remote_unread
    total = remote_total
    if mirror is not None:
        unread = max(unread, mirror.unread)
        total = max(total, mirror.total)

    if unread > total:
        logger.warning(
            f"Clamping unread count for account {account_id}: "
            f"unread {unread} > total {total}"
        )
        unread = total

    return Counts(account_id=account_id, unread=unread, total=total, computed_at=utcnow())


class CountReconciler:
    """
    Computes authoritative unread/total counts for an account.

    Usage:
        reconciler = CountReconciler(provider, db, count_label="INBOX")
        result = reconciler.reconcile_counts(account)
        if result.changed:
            broadcaster.publish(...)
    """

    def __init__(
        self,
        provider: MailProvider,
        store: MirrorDatabase,
        count_label: Optional[str] = None,
    ):
        """
        Args:
            provider: Source of the remote fast counts
            store: Mirror store holding messages and the counts cache
            count_label: Restrict the mirror aggregate to messages with this
                label, matching the scope of the provider's fast counts
        """
        self.provider = provider
        self.store = store
        self.count_label = count_label

    def reconcile_counts(self, account: Account) -> CountsResult:
        """Merge remote and mirror counts, cache them and report a change."""
        remote = self.provider.get_fast_counts(account)
        mirror = self.store.get_aggregate_counts(account.account_id, self.count_label)

        counts = merge_counts(account.account_id, remote, mirror)

        previous = self.store.get_cached_counts(account.account_id)
        changed = not counts.same_values(previous)
        self.store.set_cached_counts(counts)

        mirror_text = f"{mirror.unread}/{mirror.total}" if mirror else "none"
        logger.debug(
            f"Counts for account {account.account_id}: "
            f"remote {remote[0]}/{remote[1]}, mirror {mirror_text}, "
            f"final {counts.unread}/{counts.total}"
        )
        return CountsResult(counts=counts, changed=changed)
