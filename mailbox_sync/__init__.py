"""
mailbox_sync - Mailbox mirror synchronization and reconciliation engine.

Keeps a local mirror of a remote mailbox's message metadata consistent with
the provider using incremental history deltas, idempotent change application,
full-resync fallback and count reconciliation.
"""

__version__ = "0.1.0"
