"""
Reconciliation scheduler and daemon runner.

Provides:
- ReconciliationScheduler: periodic batches over stale accounts, with
  overlapping ticks skipped rather than queued
- DaemonRunner: foreground host loop with signal handling and PID file
  management for the CLI
"""

from __future__ import annotations

import logging
import os
import signal
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from mailbox_sync.config import ReconcilerConfig

from mailbox_sync.api.provider import AuthExpiredError
from mailbox_sync.storage.db import MirrorDatabase, PersistentStoreError
from mailbox_sync.sync.engine import ReconciliationEngine
from mailbox_sync.sync.idempotency import IdempotencyGuard
from mailbox_sync.sync.models import ReconcileResult, utcnow

logger = logging.getLogger(__name__)


class DaemonError(Exception):
    """Base exception for daemon-related errors."""

    pass


class PIDFileError(DaemonError):
    """Raised when PID file operations fail."""

    pass


class DaemonAlreadyRunningError(DaemonError):
    """Raised when attempting to start a daemon that is already running."""

    pass


@dataclass
class BatchSummary:
    """Outcome of one periodic batch."""

    selected: int = 0
    succeeded: int = 0
    failed: int = 0
    busy: int = 0
    auth_expired: int = 0
    pruned_keys: int = 0
    duration: float = 0.0
    errors: list[str] = field(default_factory=list)


@dataclass
class SchedulerStats:
    """
    Cumulative scheduler statistics.

    Tracks ticks, skipped ticks and batch outcomes since the scheduler was
    created.
    """

    started_at: Optional[datetime] = None
    tick_count: int = 0
    skipped_ticks: int = 0
    batch_count: int = 0
    accounts_succeeded: int = 0
    accounts_failed: int = 0
    last_batch_at: Optional[datetime] = None
    last_summary: Optional[BatchSummary] = None


class ReconciliationScheduler:
    """
    Runs periodic reconciliation batches over stale accounts.

    Each tick dispatches a batch on its own thread. A tick that fires while
    the previous batch is still running is skipped. Accounts within a batch
    run concurrently on a bounded worker pool; one account's failure never
    aborts the batch.

    Usage:
        scheduler = ReconciliationScheduler(engine, db, config)
        scheduler.start()
        ...
        scheduler.stop()
    """

    def __init__(
        self,
        engine: ReconciliationEngine,
        store: MirrorDatabase,
        config: ReconcilerConfig,
        guard: Optional[IdempotencyGuard] = None,
    ):
        self.engine = engine
        self.store = store
        self.config = config
        self.guard = guard or IdempotencyGuard(
            store, retention=timedelta(milliseconds=config.idempotency_retention_ms)
        )
        self.stats = SchedulerStats()

        self._interval_ms = config.interval_ms
        self._batch_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._ticker: Optional[threading.Thread] = None
        self._batch_threads: list[threading.Thread] = []

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self, interval_ms: Optional[int] = None) -> None:
        """
        Begin ticking.

        Does nothing if reconciliation is disabled or the scheduler is
        already ticking.

        Args:
            interval_ms: Override the configured tick interval
        """
        if not self.config.enabled:
            logger.info("Reconciliation disabled, scheduler not started")
            return

        with self._state_lock:
            if self._ticker is not None and self._ticker.is_alive():
                logger.warning("Scheduler already started")
                return

            if interval_ms is not None:
                if interval_ms <= 0:
                    raise ValueError(f"interval_ms must be positive, got {interval_ms}")
                self._interval_ms = interval_ms

            self._stop_event.clear()
            self.stats.started_at = datetime.now()
            self._ticker = threading.Thread(
                target=self._tick_loop, name="reconcile-ticker", daemon=True
            )
            self._ticker.start()

        logger.info(f"Reconciliation scheduler started (interval: {self._interval_ms}ms)")

    def stop(self, wait: bool = False, timeout: Optional[float] = None) -> None:
        """
        Halt future ticks.

        In-flight batches are never aborted; pass ``wait=True`` to block
        until they finish.
        """
        self._stop_event.set()
        with self._state_lock:
            ticker = self._ticker
            self._ticker = None
            batch_threads = list(self._batch_threads)

        if ticker is not None and ticker is not threading.current_thread():
            ticker.join(timeout)
        if wait:
            for thread in batch_threads:
                thread.join(timeout)

        logger.info("Reconciliation scheduler stopped")

    @property
    def is_ticking(self) -> bool:
        """Check if the ticker is active."""
        ticker = self._ticker
        return ticker is not None and ticker.is_alive() and not self._stop_event.is_set()

    @property
    def is_batch_running(self) -> bool:
        """Check if a periodic batch is in progress."""
        return self._batch_lock.locked()

    def get_status(self) -> dict[str, Any]:
        """Status snapshot for the host."""
        return {
            "enabled": self.config.enabled,
            "running": self.is_batch_running,
            "interval_ms": self._interval_ms,
            "ticking": self.is_ticking,
        }

    # =========================================================================
    # Ticking
    # =========================================================================

    def _tick_loop(self) -> None:
        if self.config.run_immediately:
            self._dispatch_tick()
        while not self._stop_event.wait(self._interval_ms / 1000):
            self._dispatch_tick()

    def _dispatch_tick(self) -> None:
        """Run a batch on its own thread so the ticker keeps its cadence."""
        self.stats.tick_count += 1
        thread = threading.Thread(
            target=self.run_batch,
            name=f"reconcile-batch-{self.stats.tick_count}",
            daemon=True,
        )
        with self._state_lock:
            self._batch_threads = [t for t in self._batch_threads if t.is_alive()]
            self._batch_threads.append(thread)
        thread.start()

    # =========================================================================
    # Batches
    # =========================================================================

    def run_batch(self) -> Optional[BatchSummary]:
        """
        Reconcile up to ``batch_size`` stale accounts.

        Returns:
            The batch summary, or None if another batch was already running
            (the tick is skipped, not queued)
        """
        if not self._batch_lock.acquire(blocking=False):
            self.stats.skipped_ticks += 1
            logger.info("Previous reconciliation batch still running, skipping tick")
            return None

        try:
            return self._run_batch_locked()
        finally:
            self._batch_lock.release()

    def _run_batch_locked(self) -> BatchSummary:
        start = time.monotonic()
        summary = BatchSummary()

        stale_before = utcnow() - timedelta(milliseconds=self.config.stale_threshold_ms)
        try:
            accounts = self.store.list_stale_accounts(stale_before, self.config.batch_size)
        except PersistentStoreError as e:
            logger.error(f"Failed to select accounts for reconciliation: {e}")
            summary.errors.append(str(e))
            summary.duration = time.monotonic() - start
            self._record_batch(summary)
            return summary

        summary.selected = len(accounts)
        if accounts:
            logger.info(f"Reconciling {len(accounts)} stale accounts")
            workers = min(self.config.max_workers, len(accounts))
            with ThreadPoolExecutor(
                max_workers=workers, thread_name_prefix="reconcile"
            ) as executor:
                futures = {
                    executor.submit(self.engine.try_reconcile, account.account_id): account
                    for account in accounts
                }
                for future in as_completed(futures):
                    account = futures[future]
                    self._tally(summary, account.account_id, future)
        else:
            logger.debug("No stale accounts to reconcile")

        try:
            summary.pruned_keys = self.guard.prune()
        except PersistentStoreError as e:
            logger.error(f"Failed to prune idempotency keys: {e}")

        summary.duration = time.monotonic() - start
        self._record_batch(summary)
        logger.info(
            f"Reconciliation batch finished in {summary.duration:.2f}s: "
            f"{summary.succeeded} succeeded, {summary.failed} failed, "
            f"{summary.busy} busy, {summary.auth_expired} need reauthorization"
        )
        return summary

    @staticmethod
    def _tally(summary: BatchSummary, account_id: str, future: Any) -> None:
        try:
            result: ReconcileResult = future.result()
        except AuthExpiredError as e:
            summary.auth_expired += 1
            logger.warning(f"Account {account_id} needs reauthorization: {e}")
            return
        except Exception as e:
            summary.failed += 1
            summary.errors.append(f"{account_id}: {e}")
            logger.error(f"Reconciliation failed for account {account_id}: {e}")
            return

        if result.is_busy:
            summary.busy += 1
        else:
            summary.succeeded += 1

    def _record_batch(self, summary: BatchSummary) -> None:
        self.stats.batch_count += 1
        self.stats.accounts_succeeded += summary.succeeded
        self.stats.accounts_failed += summary.failed
        self.stats.last_batch_at = datetime.now()
        self.stats.last_summary = summary

    # =========================================================================
    # Single account
    # =========================================================================

    def trigger_one(self, account_id: str) -> ReconcileResult:
        """
        Reconcile one account now.

        Returns a busy result immediately if the account already has a pass
        running. Errors from the pass propagate to the caller.
        """
        return self.engine.try_reconcile(account_id)


class PIDFileManager:
    """
    Manages PID file for daemon process.

    Provides methods to create, read, and remove PID files for
    daemon process management and duplicate prevention.
    """

    def __init__(self, pid_file: Path):
        self.pid_file = pid_file

    def create(self) -> None:
        """
        Create the PID file with the current process ID.

        Raises:
            PIDFileError: If the PID file cannot be created.
            DaemonAlreadyRunningError: If a daemon is already running.
        """
        existing_pid = self.read()
        if existing_pid is not None:
            if self.is_process_running(existing_pid):
                raise DaemonAlreadyRunningError(
                    f"Daemon already running with PID {existing_pid}"
                )
            logger.warning(f"Removing stale PID file (process {existing_pid} not running)")
            self.remove()

        try:
            self.pid_file.parent.mkdir(parents=True, exist_ok=True)
            pid = os.getpid()
            self.pid_file.write_text(str(pid))
            logger.debug(f"Created PID file: {self.pid_file} (PID: {pid})")
        except OSError as e:
            raise PIDFileError(f"Failed to create PID file {self.pid_file}: {e}") from e

    def read(self) -> int | None:
        """
        Read the PID from the PID file.

        Returns:
            The PID stored in the file, or None if the file doesn't exist.

        Raises:
            PIDFileError: If the PID file exists but cannot be read or parsed.
        """
        if not self.pid_file.exists():
            return None

        content = ""
        try:
            content = self.pid_file.read_text().strip()
            return int(content)
        except ValueError as e:
            raise PIDFileError(f"Invalid PID in file {self.pid_file}: {content}") from e
        except OSError as e:
            raise PIDFileError(f"Failed to read PID file {self.pid_file}: {e}") from e

    def remove(self) -> None:
        """Remove the PID file if it exists."""
        if not self.pid_file.exists():
            return

        try:
            self.pid_file.unlink()
            logger.debug(f"Removed PID file: {self.pid_file}")
        except OSError as e:
            raise PIDFileError(f"Failed to remove PID file {self.pid_file}: {e}") from e

    @staticmethod
    def is_process_running(pid: int) -> bool:
        """Check if a process with the given PID is running."""
        try:
            # Signal 0 only checks existence
            os.kill(pid, 0)
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            return True

    def running_pid(self) -> int | None:
        """PID of a live daemon, or None."""
        pid = self.read()
        if pid is not None and self.is_process_running(pid):
            return pid
        return None


class DaemonRunner:
    """
    Foreground host loop for the scheduler.

    Creates the PID file, installs SIGTERM/SIGINT handlers, starts the
    scheduler and blocks until a shutdown signal or ``stop()``. In-flight
    batches are allowed to finish before the PID file is removed.

    Usage:
        runner = DaemonRunner(scheduler, config_dir / "daemon.pid")
        runner.run()  # blocks
    """

    def __init__(self, scheduler: ReconciliationScheduler, pid_file: Path):
        self.scheduler = scheduler
        self._pid_manager = PIDFileManager(pid_file)
        self._shutdown = threading.Event()
        self._original_handlers: dict[int, Any] = {}

    @property
    def pid_file(self) -> Path:
        return self._pid_manager.pid_file

    def _setup_signal_handlers(self) -> None:
        for signum in (signal.SIGTERM, signal.SIGINT):
            self._original_handlers[signum] = signal.signal(signum, self._signal_handler)
        logger.debug("Signal handlers installed for SIGTERM and SIGINT")

    def _restore_signal_handlers(self) -> None:
        for signum, handler in self._original_handlers.items():
            signal.signal(signum, handler)
        self._original_handlers.clear()

    def _signal_handler(self, signum: int, frame: object) -> None:
        signal_name = signal.Signals(signum).name
        logger.info(f"Received {signal_name}, initiating graceful shutdown...")
        self._shutdown.set()

    def run(self, interval_ms: Optional[int] = None) -> None:
        """
        Run until shutdown is requested.

        Raises:
            DaemonAlreadyRunningError: If another daemon owns the PID file
            PIDFileError: If the PID file cannot be written
        """
        self._pid_manager.create()
        logger.info(f"Daemon started (PID: {os.getpid()}, PID file: {self.pid_file})")

        self._shutdown.clear()
        self._setup_signal_handlers()
        try:
            self.scheduler.start(interval_ms)
            while not self._shutdown.wait(1.0):
                pass
        finally:
            self.scheduler.stop(wait=True)
            self._restore_signal_handlers()
            self._pid_manager.remove()
            logger.info("Daemon stopped")

    def stop(self) -> None:
        """Request shutdown from another thread."""
        self._shutdown.set()

    @staticmethod
    def stop_running_daemon(pid_file: Path) -> bool:
        """
        Send SIGTERM to the daemon owning ``pid_file``.

        Returns:
            True if the signal was sent, False if no daemon is running
        """
        pid = PIDFileManager(pid_file).running_pid()
        if pid is None:
            logger.info("No running daemon found")
            return False

        try:
            os.kill(pid, signal.SIGTERM)
            logger.info(f"Sent SIGTERM to daemon (PID: {pid})")
            return True
        except ProcessLookupError:
            logger.warning(f"Daemon process {pid} not found")
            return False
