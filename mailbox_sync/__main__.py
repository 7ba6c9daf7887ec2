"""
Entry point for running mailbox_sync as a module.

Usage:
    python -m mailbox_sync --help
    python -m mailbox_sync status
    python -m mailbox_sync reconcile 7
"""

from mailbox_sync.cli import cli

if __name__ == "__main__":
    cli()
