"""
Reconciliation engine for the mailbox mirror.

Runs one reconciliation pass per account: incremental history delta (or a
full resync when history is unavailable), cursor advance, count
reconciliation and change broadcast. Passes for the same account are
mutually exclusive; passes for different accounts may run concurrently.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Any, Optional, Protocol

if TYPE_CHECKING:
    from mailbox_sync.config import ReconcilerConfig

from mailbox_sync.api.provider import (
    AuthExpiredError,
    HistoryExpiredError,
    MailProvider,
    TransientProviderError,
)
from mailbox_sync.storage.db import MirrorDatabase, PersistentStoreError
from mailbox_sync.sync.broadcast import COUNT_UPDATED, MAILBOX_CHANGED, Broadcaster
from mailbox_sync.sync.counts import CountReconciler
from mailbox_sync.sync.history import HistoryDeltaProcessor
from mailbox_sync.sync.models import (
    Account,
    PushOutcome,
    ReconcileResult,
    utcnow,
)
from mailbox_sync.sync.resync import FullResync

logger = logging.getLogger(__name__)


class ReconcileError(Exception):
    """Base exception for administrative reconciliation failures."""

    pass


class ReconcilerDisabledError(ReconcileError):
    """Raised when reconciliation is disabled by configuration."""

    pass


class AccountNotFoundError(ReconcileError):
    """Raised when the requested account is not registered."""

    pass


class AccountBusyError(ReconcileError):
    """Raised when the account already has a pass running."""

    pass


class AuthCollaborator(Protocol):
    """Receives accounts whose credentials need refreshing or re-linking."""

    def report_auth_expired(self, account: Account) -> None: ...


class ReconciliationEngine:
    """
    Reconciles one account at a time against its provider.

    Usage:
        engine = ReconciliationEngine(
            provider=provider,
            store=db,
            delta_processor=HistoryDeltaProcessor(provider, db, guard),
            resync=FullResync(provider, db),
            count_reconciler=CountReconciler(provider, db),
            broadcaster=broadcaster,
            config=config,
        )

        result = engine.try_reconcile("7")
        if result.is_busy:
            ...
    """

    def __init__(
        self,
        provider: MailProvider,
        store: MirrorDatabase,
        delta_processor: HistoryDeltaProcessor,
        resync: FullResync,
        count_reconciler: CountReconciler,
        broadcaster: Broadcaster,
        config: ReconcilerConfig,
        auth: Optional[AuthCollaborator] = None,
    ):
        self.provider = provider
        self.store = store
        self.delta_processor = delta_processor
        self.resync = resync
        self.count_reconciler = count_reconciler
        self.broadcaster = broadcaster
        self.config = config
        self.auth = auth

        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # =========================================================================
    # Per-account locking
    # =========================================================================

    def _lock_for(self, account_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[account_id] = lock
            return lock

    def is_running(self, account_id: str) -> bool:
        """Check whether a pass currently holds the account's lock."""
        return self._lock_for(str(account_id)).locked()

    def running_accounts(self) -> list[str]:
        """Ids of accounts with a pass in progress."""
        with self._locks_guard:
            return sorted(aid for aid, lock in self._locks.items() if lock.locked())

    # =========================================================================
    # Entry points
    # =========================================================================

    def try_reconcile(self, account_id: str) -> ReconcileResult:
        """
        Run a pass for one account unless one is already running.

        Returns immediately with a busy result on contention; never waits or
        queues.

        Raises:
            AccountNotFoundError: If the account is not registered
            AuthExpiredError, TransientProviderError, ProviderError,
            PersistentStoreError: From the pass itself
        """
        account_id = str(account_id)
        lock = self._lock_for(account_id)
        if not lock.acquire(blocking=False):
            logger.info(f"Account {account_id} already has a pass running")
            return ReconcileResult.busy(account_id)

        try:
            account = self.store.get_account(account_id)
            if account is None:
                raise AccountNotFoundError(f"No account registered with id {account_id}")
            return self._reconcile_locked(account)
        finally:
            lock.release()

    def reconcile_account_by_id(self, account_id: str) -> ReconcileResult:
        """
        Administrative trigger for a single account.

        Raises:
            ReconcilerDisabledError: If reconciliation is disabled
            AccountNotFoundError: If the account is not registered
            AccountBusyError: If a pass is already running for the account
            AuthExpiredError, TransientProviderError, ProviderError,
            PersistentStoreError: From the pass itself
        """
        if not self.config.enabled:
            raise ReconcilerDisabledError("Reconciliation is disabled by configuration")

        result = self.try_reconcile(account_id)
        if result.is_busy:
            raise AccountBusyError(f"Account {account_id} already has a pass running")
        return result

    # =========================================================================
    # Reconciliation pass
    # =========================================================================

    def _reconcile_locked(self, account: Account) -> ReconcileResult:
        """Run a full pass; the caller holds the account lock."""
        logger.info(f"Reconciling account {account.account_id}")
        result = ReconcileResult(account_id=account.account_id, cursor=account.cursor)

        try:
            current_cursor = self.provider.get_profile(account)

            if account.cursor is None:
                logger.info(
                    f"Account {account.account_id} has no cursor, "
                    "bootstrapping with a full resync"
                )
                result.cursor = self.resync.full_resync(account)
                result.resynced = True
            elif account.cursor != current_cursor:
                try:
                    result.applied = self.delta_processor.process_delta(
                        account, account.cursor, current_cursor
                    )
                    result.cursor = current_cursor
                except HistoryExpiredError:
                    logger.info(
                        f"History expired for account {account.account_id}, "
                        "performing full resync"
                    )
                    result.cursor = self.resync.full_resync(account)
                    result.resynced = True

            if result.cursor is not None and result.cursor != account.cursor:
                self.store.update_cursor(account.account_id, result.cursor)
                account.cursor = result.cursor

            self._reconcile_counts_and_broadcast(account, result, source="reconcile")

        except AuthExpiredError:
            logger.warning(
                f"Credentials expired for account {account.account_id}, skipping"
            )
            if self.auth is not None:
                self.auth.report_auth_expired(account)
            # Keep an unauthorized account from starving the batch queue
            try:
                self.store.mark_reconciled(account.account_id)
            except PersistentStoreError as store_error:
                logger.error(
                    f"Failed to mark account {account.account_id} reconciled "
                    f"after credential expiry: {store_error}"
                )
            raise

        self.store.mark_reconciled(account.account_id)
        logger.info(
            f"Reconciled account {account.account_id}: applied {result.applied}, "
            f"resynced {result.resynced}, cursor {result.cursor}"
        )
        return result

    def _reconcile_counts_and_broadcast(
        self, account: Account, result: ReconcileResult, source: str
    ) -> None:
        """
        Recompute counts and publish at most one event for the pass.

        A counts change publishes count_updated; otherwise any applied change
        or resync publishes mailbox_changed.
        """
        try:
            counts_result = self.count_reconciler.reconcile_counts(account)
        except TransientProviderError as e:
            logger.error(f"Failed to update counts for account {account.account_id}: {e}")
            counts_result = None

        if counts_result is not None:
            result.counts = counts_result.counts
            result.counts_changed = counts_result.changed

        payload: dict[str, Any] = {
            "applied": result.applied,
            "resynced": result.resynced,
            "cursor": result.cursor,
            "source": source,
            "timestamp": utcnow().isoformat(),
        }

        if result.counts_changed and result.counts is not None:
            payload["unread"] = result.counts.unread
            payload["total"] = result.counts.total
            self.broadcaster.publish(account.account_id, COUNT_UPDATED, payload)
            result.broadcast = True
        elif result.applied or result.resynced:
            self.broadcaster.publish(account.account_id, MAILBOX_CHANGED, payload)
            result.broadcast = True

    # =========================================================================
    # Push path
    # =========================================================================

    def handle_push_notification(
        self, account_id: str, cursor: Optional[str] = None
    ) -> PushOutcome:
        """
        Apply a push notification with a quick single-page delta.

        Waits at most ``push_lock_timeout_ms`` for the account lock. Whenever
        the quick path cannot finish the delta (contention, no baseline
        cursor, expired history, more than one page, provider failure) the
        account is marked stale for the next scheduled pass instead.

        Args:
            account_id: Account named by the notification
            cursor: Cursor carried by the notification, if any

        Returns:
            APPLIED, DEFERRED, or IGNORED for notifications already covered
            by the stored cursor

        Raises:
            AccountNotFoundError: If the account is not registered
        """
        account_id = str(account_id)
        lock = self._lock_for(account_id)
        if not lock.acquire(timeout=self.config.push_lock_timeout_ms / 1000):
            logger.info(f"Account {account_id} busy, deferring push to scheduled pass")
            self.store.mark_stale(account_id)
            return PushOutcome.DEFERRED

        try:
            account = self.store.get_account(account_id)
            if account is None:
                raise AccountNotFoundError(f"No account registered with id {account_id}")

            if account.cursor is None:
                self.store.mark_stale(account_id)
                return PushOutcome.DEFERRED
            if cursor is not None and str(cursor) == account.cursor:
                return PushOutcome.IGNORED

            try:
                page = self.delta_processor.fetch_page(account, account.cursor)
            except (HistoryExpiredError, TransientProviderError) as e:
                logger.info(f"Deferring push for account {account_id}: {e}")
                self.store.mark_stale(account_id)
                return PushOutcome.DEFERRED
            except AuthExpiredError:
                if self.auth is not None:
                    self.auth.report_auth_expired(account)
                raise

            result = ReconcileResult(account_id=account_id, cursor=account.cursor)
            result.applied = self.delta_processor.apply_page(account, page)

            if page.next_page_token:
                # Remaining pages belong to a full pass; keep the cursor
                self.store.mark_stale(account_id)
                outcome = PushOutcome.DEFERRED
            else:
                if page.next_cursor and page.next_cursor != account.cursor:
                    self.store.update_cursor(account_id, page.next_cursor)
                    account.cursor = page.next_cursor
                    result.cursor = page.next_cursor
                outcome = PushOutcome.APPLIED

            self._reconcile_counts_and_broadcast(account, result, source="push")
            return outcome
        finally:
            lock.release()
