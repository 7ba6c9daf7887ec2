"""
Service lifecycle for the mailbox reconciler.

MailboxSyncService wires configuration, store, credentials, provider,
idempotency guard, processors, broadcaster, engine and scheduler into one
explicitly constructed object. Hosts create it at startup, call start(), and
stop() at teardown (or use it as a context manager).
"""

from __future__ import annotations

import logging
from datetime import timedelta
from pathlib import Path
from typing import Any, Optional

from mailbox_sync.api.gmail_api import GmailAPI
from mailbox_sync.api.provider import MailProvider
from mailbox_sync.auth.google_auth import GoogleAuth
from mailbox_sync.config import ReconcilerConfig, load_config
from mailbox_sync.daemon.scheduler import BatchSummary, ReconciliationScheduler
from mailbox_sync.storage.db import MirrorDatabase
from mailbox_sync.sync.broadcast import Broadcaster, LoggingBroadcaster
from mailbox_sync.sync.counts import CountReconciler
from mailbox_sync.sync.engine import AuthCollaborator, ReconciliationEngine
from mailbox_sync.sync.history import HistoryDeltaProcessor
from mailbox_sync.sync.idempotency import IdempotencyGuard
from mailbox_sync.sync.models import PushOutcome, ReconcileResult
from mailbox_sync.sync.resync import FullResync
from mailbox_sync.utils import resolve_config_dir

logger = logging.getLogger(__name__)


class MailboxSyncService:
    """
    Process-wide reconciler service.

    Every collaborator can be injected; missing ones are built from the
    configuration (Gmail provider, SQLite mirror under the config directory,
    token-file credentials, log-only broadcaster).

    Usage:
        with MailboxSyncService.from_config_dir() as service:
            result = service.trigger_one("7")
            outcome = service.handle_push_notification("7", cursor="130")
    """

    def __init__(
        self,
        config: Optional[ReconcilerConfig] = None,
        config_dir: Path | str | None = None,
        store: Optional[MirrorDatabase] = None,
        provider: Optional[MailProvider] = None,
        auth: Optional[AuthCollaborator] = None,
        broadcaster: Optional[Broadcaster] = None,
    ):
        self.config_dir = resolve_config_dir(config_dir)
        self.config = config or ReconcilerConfig()

        self.store = store or MirrorDatabase(
            self.config.resolve_db_path(self.config_dir),
            timeout=self.config.operation_timeout,
        )
        self.store.initialize()

        google_auth: Optional[GoogleAuth] = None
        if auth is None or provider is None:
            google_auth = GoogleAuth(self.config_dir)
        self.auth = auth if auth is not None else google_auth
        self.provider = provider or GmailAPI(
            google_auth,  # type: ignore[arg-type]
            count_label=self.config.count_label,
            timeout=self.config.operation_timeout,
        )
        self.broadcaster = broadcaster or LoggingBroadcaster()

        self.guard = IdempotencyGuard(
            self.store,
            retention=timedelta(milliseconds=self.config.idempotency_retention_ms),
        )
        self.engine = ReconciliationEngine(
            provider=self.provider,
            store=self.store,
            delta_processor=HistoryDeltaProcessor(self.provider, self.store, self.guard),
            resync=FullResync(
                self.provider, self.store, message_cap=self.config.resync_message_cap
            ),
            count_reconciler=CountReconciler(
                self.provider, self.store, count_label=self.config.count_label
            ),
            broadcaster=self.broadcaster,
            config=self.config,
            auth=self.auth,
        )
        self.scheduler = ReconciliationScheduler(
            self.engine, self.store, self.config, guard=self.guard
        )

    @classmethod
    def from_config_dir(
        cls, config_dir: Path | str | None = None, **kwargs: Any
    ) -> MailboxSyncService:
        """
        Build a service from ``config.yaml`` in the configuration directory.

        Raises:
            ConfigError: If the configuration file is invalid
        """
        resolved = resolve_config_dir(config_dir)
        return cls(config=load_config(resolved), config_dir=resolved, **kwargs)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self, interval_ms: Optional[int] = None) -> None:
        """Start periodic reconciliation."""
        self.scheduler.start(interval_ms)

    def stop(self, wait: bool = True) -> None:
        """Stop ticking and release the store; in-flight passes finish first."""
        self.scheduler.stop(wait=wait)
        self.close()

    def close(self) -> None:
        """Release the store without touching the scheduler."""
        self.store.close()

    def __enter__(self) -> MailboxSyncService:
        self.start()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.stop()

    # =========================================================================
    # Operational surface
    # =========================================================================

    def trigger_one(self, account_id: str) -> ReconcileResult:
        """Reconcile one account now, or report busy immediately."""
        return self.scheduler.trigger_one(account_id)

    def run_batch(self) -> Optional[BatchSummary]:
        """Run one periodic batch synchronously."""
        return self.scheduler.run_batch()

    def reconcile_account_by_id(self, account_id: str) -> ReconcileResult:
        """Administrative single-account reconciliation."""
        return self.engine.reconcile_account_by_id(account_id)

    def handle_push_notification(
        self, account_id: str, cursor: Optional[str] = None
    ) -> PushOutcome:
        """Entry point for provider push notifications."""
        return self.engine.handle_push_notification(account_id, cursor)

    def get_status(self) -> dict[str, Any]:
        """Scheduler status plus accounts with a pass in progress."""
        status = self.scheduler.get_status()
        status["active_accounts"] = self.engine.running_accounts()
        return status
