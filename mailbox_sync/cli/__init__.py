"""CLI package for mailbox_sync."""

from mailbox_sync.cli.main import (
    EXIT_AUTH_EXPIRED,
    EXIT_BUSY,
    EXIT_CONFIG_ERROR,
    EXIT_DAEMON_RUNNING,
    EXIT_DISABLED,
    EXIT_ERROR,
    EXIT_NOT_FOUND,
    EXIT_OK,
    EXIT_STORE_ERROR,
    EXIT_TRANSIENT,
    cli,
)

__all__ = [
    "cli",
    "EXIT_OK",
    "EXIT_ERROR",
    "EXIT_CONFIG_ERROR",
    "EXIT_NOT_FOUND",
    "EXIT_BUSY",
    "EXIT_AUTH_EXPIRED",
    "EXIT_TRANSIENT",
    "EXIT_STORE_ERROR",
    "EXIT_DISABLED",
    "EXIT_DAEMON_RUNNING",
]
