"""
Command-line interface for mailbox_sync.

Operator commands for registering accounts, triggering reconciliation,
feeding push notifications and running the periodic scheduler.

Usage:
    # Show help
    mailbox-sync --help

    # Register an account whose token is stored in tokens/work.json
    mailbox-sync add-account 7 --credential-ref work --email me@example.com

    # Reconcile one account, or one batch of stale accounts
    mailbox-sync reconcile 7
    mailbox-sync reconcile

    # Run the scheduler in the foreground
    mailbox-sync daemon start
"""

import sys
from datetime import timedelta
from pathlib import Path
from typing import Optional

import click

from mailbox_sync import __version__
from mailbox_sync.api.provider import (
    AuthExpiredError,
    ProviderError,
    TransientProviderError,
)
from mailbox_sync.auth.google_auth import GoogleAuth
from mailbox_sync.config import ConfigError, ReconcilerConfig, load_config
from mailbox_sync.daemon import (
    DaemonAlreadyRunningError,
    DaemonError,
    DaemonRunner,
    PIDFileManager,
    parse_interval,
)
from mailbox_sync.service import MailboxSyncService
from mailbox_sync.storage.db import MirrorDatabase, PersistentStoreError
from mailbox_sync.sync.engine import (
    AccountBusyError,
    AccountNotFoundError,
    ReconcilerDisabledError,
)
from mailbox_sync.sync.models import ReconcileResult
from mailbox_sync.utils import ConfigLayout, resolve_config_dir
from mailbox_sync.utils.logging import cleanup_old_logs, get_logger, setup_logging

# Exit codes; click reserves 2 for usage errors
EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CONFIG_ERROR = 3
EXIT_NOT_FOUND = 4
EXIT_BUSY = 5
EXIT_AUTH_EXPIRED = 6
EXIT_TRANSIENT = 7
EXIT_STORE_ERROR = 8
EXIT_DISABLED = 9
EXIT_DAEMON_RUNNING = 10

# Log files kept when a log directory is configured
LOG_RETENTION_COUNT = 10


def get_pid_file(config_dir: Path) -> Path:
    """PID file used by the daemon commands."""
    return ConfigLayout(config_dir).pid_file


def fail(message: str, code: int) -> None:
    """Print an error and exit with ``code``."""
    click.echo(click.style(f"Error: {message}", fg="red"), err=True)
    sys.exit(code)


def build_service(ctx: click.Context) -> MailboxSyncService:
    """Create the reconciler service from the CLI context."""
    return MailboxSyncService(config=ctx.obj["config"], config_dir=ctx.obj["config_dir"])


def format_result(result: ReconcileResult) -> str:
    """One-line summary of a reconciliation pass."""
    parts = [
        f"applied {result.applied}",
        f"cursor {result.cursor or '-'}",
    ]
    if result.resynced:
        parts.append("full resync")
    if result.counts is not None:
        parts.append(f"unread {result.counts.unread}/{result.counts.total}")
    return ", ".join(parts)


@click.group()
@click.version_option(version=__version__, prog_name="mailbox-sync")
@click.option(
    "--verbose", "-v", is_flag=True, help="Enable verbose output with detailed logging."
)
@click.option(
    "--config-dir",
    "-c",
    type=click.Path(exists=False, file_okay=False, dir_okay=True),
    envvar="MAILBOX_SYNC_CONFIG_DIR",
    help="Configuration directory path (default: ~/.mailbox-sync).",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config_dir: Optional[str]) -> None:
    """
    Mailbox mirror reconciliation.

    Keeps a local mirror of Gmail message metadata and unread counts
    consistent with the provider.
    """
    ctx.ensure_object(dict)

    resolved_config_dir = resolve_config_dir(config_dir)
    ctx.obj["config_dir"] = resolved_config_dir
    ctx.obj["verbose"] = verbose

    try:
        config = load_config(resolved_config_dir)
    except ConfigError as e:
        setup_logging(verbose=verbose, enable_file_logging=False)
        fail(f"Configuration error: {e}", EXIT_CONFIG_ERROR)
        return

    ctx.obj["config"] = config

    log_dir = Path(config.log_dir).expanduser() if config.log_dir else None
    setup_logging(verbose=verbose, log_dir=log_dir)
    if log_dir is not None:
        cleanup_old_logs(log_dir, keep_count=LOG_RETENTION_COUNT)


# =============================================================================
# Status Commands
# =============================================================================


@cli.command("status")
@click.pass_context
def status_command(ctx: click.Context) -> None:
    """
    Show configuration, accounts and daemon state.

    Example:

        mailbox-sync status
    """
    logger = get_logger(__name__)
    config_dir: Path = ctx.obj["config_dir"]
    config: ReconcilerConfig = ctx.obj["config"]

    click.echo("=== Mailbox Sync Status ===\n")
    click.echo(f"Configuration directory: {config_dir}")
    enabled_text = (
        click.style("Enabled", fg="green")
        if config.enabled
        else click.style("Disabled", fg="yellow")
    )
    click.echo(f"Reconciliation: {enabled_text}")
    click.echo(f"Interval: {config.interval_ms}ms, batch size: {config.batch_size}")

    db_path = config.resolve_db_path(config_dir)
    click.echo(f"Mirror database: {db_path}")

    try:
        if db_path != ":memory:" and not Path(db_path).exists():
            click.echo("Mirror database: Not initialized (no accounts registered)")
        else:
            db = MirrorDatabase(db_path)
            db.initialize()
            accounts = db.list_accounts()
            click.echo(f"Accounts: {len(accounts)}")
            never = sum(1 for a in accounts if a.last_reconciled_at is None)
            if never:
                click.echo(f"Awaiting reconciliation: {never}")
            click.echo(f"Idempotency keys: {db.get_idempotency_key_count()}")
    except PersistentStoreError as e:
        logger.error(f"Error reading mirror database: {e}")
        fail(str(e), EXIT_STORE_ERROR)

    pending = GoogleAuth(config_dir).pending_reauth()
    if pending:
        click.echo(
            click.style(
                f"\nReauthorization required for: {', '.join(sorted(pending))}",
                fg="yellow",
            )
        )

    pid = PIDFileManager(get_pid_file(config_dir)).running_pid()
    if pid is not None:
        click.echo(f"\nDaemon: {click.style('Running', fg='green')} (PID: {pid})")
    else:
        click.echo(f"\nDaemon: {click.style('Stopped', fg='yellow')}")


@cli.command("accounts")
@click.pass_context
def accounts_command(ctx: click.Context) -> None:
    """
    List registered accounts with cursors and cached counts.

    Example:

        mailbox-sync accounts
    """
    service = build_service(ctx)
    try:
        accounts = service.store.list_accounts()
        if not accounts:
            click.echo("No accounts registered.")
            click.echo("Run 'mailbox-sync add-account' to register one.")
            return

        for account in accounts:
            label = account.email or account.credential_ref
            counts = service.store.get_cached_counts(account.account_id)
            counts_text = f"{counts.unread}/{counts.total}" if counts else "-"
            last = (
                account.last_reconciled_at.isoformat(timespec="seconds")
                if account.last_reconciled_at
                else "Never"
            )
            click.echo(
                f"{account.account_id} ({label}): cursor {account.cursor or '-'}, "
                f"unread {counts_text}, last reconciled {last}"
            )
    except PersistentStoreError as e:
        fail(str(e), EXIT_STORE_ERROR)
    finally:
        service.close()


@cli.command("add-account")
@click.argument("account_id")
@click.option(
    "--credential-ref",
    "-r",
    required=True,
    help="Token file name under <config-dir>/tokens (without .json).",
)
@click.option("--email", "-e", default=None, help="Mailbox address, for display.")
@click.option(
    "--provider",
    "-p",
    type=click.Choice(["gmail"], case_sensitive=False),
    default="gmail",
    show_default=True,
    help="Mail provider.",
)
@click.pass_context
def add_account_command(
    ctx: click.Context,
    account_id: str,
    credential_ref: str,
    email: Optional[str],
    provider: str,
) -> None:
    """
    Register a linked account.

    The account is reconciled by the next batch, starting with a full
    resync.

    Example:

        mailbox-sync add-account 7 --credential-ref work --email me@example.com
    """
    service = build_service(ctx)
    try:
        account = service.store.add_account(
            account_id, provider.lower(), credential_ref, email=email
        )
        GoogleAuth(ctx.obj["config_dir"]).clear_reauth(account.account_id)
        click.echo(click.style(f"Registered account {account.account_id}", fg="green"))
    except PersistentStoreError as e:
        fail(str(e), EXIT_STORE_ERROR)
    finally:
        service.close()


# =============================================================================
# Reconciliation Commands
# =============================================================================


@cli.command("reconcile")
@click.argument("account_id", required=False)
@click.pass_context
def reconcile_command(ctx: click.Context, account_id: Optional[str]) -> None:
    """
    Reconcile one account, or one batch of stale accounts.

    Exit codes distinguish the failure kinds: 4 unknown account, 5 busy,
    6 reauthorization required, 7 transient provider failure, 8 store
    failure, 9 reconciliation disabled.

    Examples:

        mailbox-sync reconcile 7
        mailbox-sync reconcile
    """
    logger = get_logger(__name__)
    service = build_service(ctx)

    try:
        if account_id is None:
            if not service.config.enabled:
                fail("Reconciliation is disabled by configuration", EXIT_DISABLED)
            summary = service.run_batch()
            if summary is None:
                fail("Another batch is already running", EXIT_BUSY)
                return
            click.echo(
                f"Batch: {summary.succeeded} succeeded, {summary.failed} failed, "
                f"{summary.busy} busy, {summary.auth_expired} need reauthorization "
                f"({summary.duration:.2f}s)"
            )
            if summary.failed:
                sys.exit(EXIT_ERROR)
            return

        result = service.reconcile_account_by_id(account_id)
        click.echo(click.style(f"Reconciled {account_id}: ", fg="green") + format_result(result))

    except ReconcilerDisabledError as e:
        fail(str(e), EXIT_DISABLED)
    except AccountNotFoundError as e:
        fail(str(e), EXIT_NOT_FOUND)
    except AccountBusyError as e:
        fail(str(e), EXIT_BUSY)
    except AuthExpiredError as e:
        fail(f"Reauthorization required: {e}", EXIT_AUTH_EXPIRED)
    except TransientProviderError as e:
        fail(f"Provider temporarily unavailable: {e}", EXIT_TRANSIENT)
    except PersistentStoreError as e:
        logger.error(f"Mirror store failure: {e}")
        fail(str(e), EXIT_STORE_ERROR)
    except ProviderError as e:
        fail(f"Provider error: {e}", EXIT_ERROR)
    finally:
        service.close()


@cli.command("notify")
@click.argument("account_id")
@click.option(
    "--cursor", default=None, help="History cursor carried by the push notification."
)
@click.pass_context
def notify_command(ctx: click.Context, account_id: str, cursor: Optional[str]) -> None:
    """
    Apply a push notification for an account.

    Entry point for webhook hosts. The quick path applies a single history
    page; anything larger is deferred to the next scheduled pass.

    Example:

        mailbox-sync notify 7 --cursor 130
    """
    service = build_service(ctx)
    try:
        outcome = service.handle_push_notification(account_id, cursor)
        click.echo(f"Notification for {account_id}: {outcome.value}")
    except AccountNotFoundError as e:
        fail(str(e), EXIT_NOT_FOUND)
    except AuthExpiredError as e:
        fail(f"Reauthorization required: {e}", EXIT_AUTH_EXPIRED)
    except TransientProviderError as e:
        fail(f"Provider temporarily unavailable: {e}", EXIT_TRANSIENT)
    except PersistentStoreError as e:
        fail(str(e), EXIT_STORE_ERROR)
    except ProviderError as e:
        fail(f"Provider error: {e}", EXIT_ERROR)
    finally:
        service.close()


@cli.command("prune")
@click.option(
    "--older-than",
    default=None,
    help="Retention window (e.g., '12h', '7d'). Defaults to the configured value.",
)
@click.pass_context
def prune_command(ctx: click.Context, older_than: Optional[str]) -> None:
    """
    Delete idempotency keys older than the retention window.

    Example:

        mailbox-sync prune --older-than 7d
    """
    retention = None
    if older_than is not None:
        try:
            retention = timedelta(milliseconds=parse_interval(older_than))
        except ValueError as e:
            fail(str(e), EXIT_ERROR)

    service = build_service(ctx)
    try:
        deleted = service.guard.prune(retention)
        click.echo(f"Pruned {deleted} idempotency keys")
    except PersistentStoreError as e:
        fail(str(e), EXIT_STORE_ERROR)
    finally:
        service.close()


# =============================================================================
# Daemon Commands
# =============================================================================


@cli.group("daemon")
@click.pass_context
def daemon_group(ctx: click.Context) -> None:
    """
    Run and manage the periodic reconciliation scheduler.

    Examples:

        mailbox-sync daemon start --interval 5m
        mailbox-sync daemon status
        mailbox-sync daemon stop
    """
    pass


@daemon_group.command("start")
@click.option(
    "--interval",
    "-i",
    default=None,
    help="Tick interval (e.g., '30s', '5m', '1h'). Defaults to the config value.",
)
@click.option(
    "--run-immediately/--no-run-immediately",
    default=None,
    help="Run a batch as soon as the scheduler starts.",
)
@click.pass_context
def daemon_start_command(
    ctx: click.Context, interval: Optional[str], run_immediately: Optional[bool]
) -> None:
    """
    Run the scheduler in the foreground until SIGTERM or Ctrl+C.

    In-flight passes finish before the daemon exits.
    """
    logger = get_logger(__name__)
    config_dir: Path = ctx.obj["config_dir"]
    config: ReconcilerConfig = ctx.obj["config"]

    if not config.enabled:
        fail("Reconciliation is disabled by configuration", EXIT_DISABLED)

    interval_ms = None
    if interval is not None:
        try:
            interval_ms = parse_interval(interval)
        except ValueError as e:
            fail(str(e), EXIT_ERROR)
    if run_immediately is not None:
        config.run_immediately = run_immediately

    service = build_service(ctx)
    runner = DaemonRunner(service.scheduler, get_pid_file(config_dir))

    click.echo(
        f"Starting scheduler with {interval_ms or config.interval_ms}ms interval "
        "(Ctrl+C to stop)"
    )
    try:
        runner.run(interval_ms)
        click.echo(click.style("\nDaemon stopped gracefully.", fg="green"))
    except DaemonAlreadyRunningError as e:
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        click.echo("Use 'mailbox-sync daemon stop' to stop the running daemon.")
        sys.exit(EXIT_DAEMON_RUNNING)
    except DaemonError as e:
        logger.error(f"Daemon error: {e}")
        fail(f"Daemon error: {e}", EXIT_ERROR)
    finally:
        service.close()


@daemon_group.command("stop")
@click.pass_context
def daemon_stop_command(ctx: click.Context) -> None:
    """Send SIGTERM to the running daemon."""
    pid_file = get_pid_file(ctx.obj["config_dir"])

    pid = PIDFileManager(pid_file).running_pid()
    if pid is None:
        click.echo("No daemon is currently running.")
        return

    click.echo(f"Stopping daemon (PID: {pid})...")
    if DaemonRunner.stop_running_daemon(pid_file):
        click.echo(click.style("Stop signal sent successfully.", fg="green"))
        click.echo("The daemon will exit once in-flight passes finish.")
    else:
        fail("Failed to send stop signal to daemon.", EXIT_ERROR)


@daemon_group.command("status")
@click.pass_context
def daemon_status_command(ctx: click.Context) -> None:
    """Show whether the daemon is running."""
    pid_file = get_pid_file(ctx.obj["config_dir"])
    manager = PIDFileManager(pid_file)

    try:
        pid = manager.running_pid()
        recorded = manager.read()
    except DaemonError as e:
        fail(str(e), EXIT_ERROR)
        return

    if pid is not None:
        click.echo(f"Status: {click.style('Running', fg='green')}")
        click.echo(f"Process ID: {pid}")
    elif recorded is not None:
        click.echo(f"Status: {click.style('Stopped', fg='yellow')}")
        click.echo(f"Stale PID file exists (PID: {recorded})")
    else:
        click.echo(f"Status: {click.style('Stopped', fg='yellow')}")

    if ctx.obj.get("verbose"):
        click.echo(f"PID file: {pid_file}")
