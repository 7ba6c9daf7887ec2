"""
mailbox_sync.storage - Mirror persistence

SQLite store for accounts, mirrored messages, idempotency keys and counts.
"""

from mailbox_sync.storage.db import MirrorDatabase, PersistentStoreError

__all__ = ["MirrorDatabase", "PersistentStoreError"]
