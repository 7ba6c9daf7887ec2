"""
SQLite database module for the mailbox mirror.

Provides persistent storage for linked accounts and their cursors, mirrored
message metadata, idempotency keys and the last published counts.
"""

import json
import sqlite3
import threading
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Optional

from mailbox_sync.sync.models import Account, Counts, IdempotencyKey, Message, utcnow

# SQL Schema for the mirror
SCHEMA = """
CREATE TABLE IF NOT EXISTS accounts (
    account_id TEXT PRIMARY KEY,
    provider TEXT NOT NULL,
    credential_ref TEXT NOT NULL,
    email TEXT,
    cursor TEXT,
    last_reconciled_at TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_accounts_reconciled ON accounts(last_reconciled_at);

CREATE TABLE IF NOT EXISTS messages (
    account_id TEXT NOT NULL,
    provider TEXT NOT NULL,
    message_id TEXT NOT NULL,
    thread_id TEXT,
    is_read BOOLEAN NOT NULL DEFAULT 1,
    label_ids TEXT NOT NULL DEFAULT '[]',
    internal_date INTEGER,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (account_id, provider, message_id)
);

CREATE TABLE IF NOT EXISTS idempotency_keys (
    account_id TEXT NOT NULL,
    cursor TEXT NOT NULL,
    message_id TEXT NOT NULL,
    change_kind TEXT NOT NULL,
    recorded_at TEXT NOT NULL,
    PRIMARY KEY (account_id, cursor, message_id, change_kind)
);

CREATE INDEX IF NOT EXISTS idx_idempotency_recorded ON idempotency_keys(recorded_at);

CREATE TABLE IF NOT EXISTS mailbox_counts (
    account_id TEXT PRIMARY KEY,
    unread INTEGER NOT NULL,
    total INTEGER NOT NULL,
    computed_at TEXT NOT NULL
);
"""

# Columns accepted by upsert_message
MESSAGE_FIELDS = ("thread_id", "is_read", "label_ids", "internal_date")

# Default lock wait for file databases, in seconds
DEFAULT_TIMEOUT = 30.0


class PersistentStoreError(Exception):
    """Raised when a mirror store operation fails."""

    pass


def _to_text(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat(timespec="microseconds") if value is not None else None


def _from_text(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class MirrorDatabase:
    """
    SQLite database manager for the mailbox mirror.

    Provides methods for:
    - Managing linked accounts, cursors and reconciliation timestamps
    - Upserting and deleting mirrored messages
    - Atomic insert-if-absent of idempotency keys
    - Aggregating and caching unread/total counts

    Mutating methods accept an optional open connection so that several
    operations can share one transaction.

    Usage:
        db = MirrorDatabase('/path/to/mirror.db')
        db.initialize()

        # Or use in-memory for testing:
        db = MirrorDatabase(':memory:')
        db.initialize()
    """

    def __init__(self, db_path: str, timeout: float = DEFAULT_TIMEOUT):
        """
        Initialize the database manager.

        Args:
            db_path: Path to SQLite database file, or ':memory:' for in-memory database
            timeout: Seconds to wait for a locked database before failing
        """
        self.db_path = db_path
        self.timeout = timeout
        self._shared_connection: Optional[sqlite3.Connection] = None
        self._shared_lock = threading.RLock()

    @property
    def _is_shared(self) -> bool:
        return self.db_path == ":memory:"

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get a database connection.

        For in-memory databases, returns a shared connection to ensure
        schema persists across operations. For file databases, creates
        a new connection each time.
        """
        if self._is_shared:
            if self._shared_connection is None:
                self._shared_connection = sqlite3.connect(
                    ":memory:", check_same_thread=False
                )
                self._shared_connection.row_factory = sqlite3.Row
            return self._shared_connection

        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for a transactional database connection.

        Commits on success and rolls back on any exception. SQLite errors are
        re-raised as PersistentStoreError.

        Usage:
            with db.connection() as conn:
                db.upsert_message(..., conn=conn)
                db.record_if_absent(key, conn=conn)
        """
        if self._is_shared:
            self._shared_lock.acquire()
        try:
            conn = self._get_connection()
        except sqlite3.Error as e:
            if self._is_shared:
                self._shared_lock.release()
            raise PersistentStoreError(f"Failed to open {self.db_path}: {e}") from e

        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistentStoreError(f"Mirror store operation failed: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            if self._is_shared:
                self._shared_lock.release()
            else:
                conn.close()

    @contextmanager
    def _use(
        self, conn: Optional[sqlite3.Connection]
    ) -> Generator[sqlite3.Connection, None, None]:
        """Reuse a caller's connection or open a new transaction."""
        if conn is not None:
            yield conn
        else:
            with self.connection() as new_conn:
                yield new_conn

    def initialize(self) -> None:
        """Create the mirror tables if they don't exist."""
        with self.connection() as conn:
            conn.executescript(SCHEMA)

    def close(self) -> None:
        """Close the shared in-memory connection, if any."""
        with self._shared_lock:
            if self._shared_connection is not None:
                self._shared_connection.close()
                self._shared_connection = None

    # =========================================================================
    # Account Operations
    # =========================================================================

    @staticmethod
    def _row_to_account(row: sqlite3.Row) -> Account:
        return Account(
            account_id=row["account_id"],
            provider=row["provider"],
            credential_ref=row["credential_ref"],
            email=row["email"],
            cursor=row["cursor"],
            last_reconciled_at=_from_text(row["last_reconciled_at"]),
        )

    def add_account(
        self,
        account_id: str,
        provider: str,
        credential_ref: str,
        email: Optional[str] = None,
    ) -> Account:
        """
        Register a linked account, or update its provider details.

        The cursor and reconciliation timestamp of an existing account are
        kept.
        """
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO accounts (account_id, provider, credential_ref, email, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(account_id) DO UPDATE SET
                    provider = excluded.provider,
                    credential_ref = excluded.credential_ref,
                    email = excluded.email
                """,
                (account_id, provider, credential_ref, email, _to_text(utcnow())),
            )
        account = self.get_account(account_id)
        if account is None:
            raise PersistentStoreError(f"Account {account_id} missing after insert")
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        """Get an account by id, or None if not registered."""
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM accounts WHERE account_id = ?", (account_id,)
            ).fetchone()
            return self._row_to_account(row) if row else None

    def list_accounts(self) -> list[Account]:
        """Get all registered accounts ordered by id."""
        with self.connection() as conn:
            rows = conn.execute("SELECT * FROM accounts ORDER BY account_id").fetchall()
            return [self._row_to_account(row) for row in rows]

    def list_stale_accounts(self, stale_before: datetime, limit: int) -> list[Account]:
        """
        Get accounts last reconciled before ``stale_before``.

        Never-reconciled accounts come first, then oldest-first.

        Args:
            stale_before: Accounts reconciled at or after this time are skipped
            limit: Maximum number of accounts to return
        """
        with self.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM accounts
                WHERE last_reconciled_at IS NULL OR last_reconciled_at < ?
                ORDER BY last_reconciled_at IS NOT NULL, last_reconciled_at, account_id
                LIMIT ?
                """,
                (_to_text(stale_before), limit),
            ).fetchall()
            return [self._row_to_account(row) for row in rows]

    def update_cursor(
        self,
        account_id: str,
        cursor: str,
        conn: Optional[sqlite3.Connection] = None,
    ) -> None:
        """Store the account's last applied history cursor."""
        with self._use(conn) as c:
            c.execute(
                "UPDATE accounts SET cursor = ? WHERE account_id = ?",
                (cursor, account_id),
            )

    def mark_reconciled(
        self, account_id: str, reconciled_at: Optional[datetime] = None
    ) -> None:
        """Record when the account's last pass finished (defaults to now)."""
        when = reconciled_at or utcnow()
        with self.connection() as conn:
            conn.execute(
                "UPDATE accounts SET last_reconciled_at = ? WHERE account_id = ?",
                (_to_text(when), account_id),
            )

    def mark_stale(self, account_id: str) -> None:
        """Clear the reconciliation timestamp so the next batch picks the account."""
        with self.connection() as conn:
            conn.execute(
                "UPDATE accounts SET last_reconciled_at = NULL WHERE account_id = ?",
                (account_id,),
            )

    # =========================================================================
    # Message Operations
    # =========================================================================

    def get_message(
        self,
        account_id: str,
        provider: str,
        message_id: str,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[Message]:
        """Get a mirrored message, or None if not present."""
        with self._use(conn) as c:
            row = c.execute(
                """
                SELECT message_id, thread_id, is_read, label_ids, internal_date
                FROM messages
                WHERE account_id = ? AND provider = ? AND message_id = ?
                """,
                (account_id, provider, message_id),
            ).fetchone()
            if row is None:
                return None
            return Message(
                message_id=row["message_id"],
                thread_id=row["thread_id"],
                is_read=bool(row["is_read"]),
                label_ids=json.loads(row["label_ids"]),
                internal_date=row["internal_date"],
            )

    def upsert_message(
        self,
        account_id: str,
        provider: str,
        message_id: str,
        fields: dict[str, Any],
        conn: Optional[sqlite3.Connection] = None,
    ) -> None:
        """
        Insert a message or update the given fields of an existing one.

        Args:
            account_id: Owning account
            provider: Provider name
            message_id: Provider message id
            fields: Subset of thread_id, is_read, label_ids, internal_date

        Raises:
            ValueError: If ``fields`` contains an unknown column
        """
        unknown = set(fields) - set(MESSAGE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown message fields: {', '.join(sorted(unknown))}")

        values = dict(fields)
        if "label_ids" in values:
            values["label_ids"] = json.dumps(list(values["label_ids"]))
        if "is_read" in values:
            values["is_read"] = bool(values["is_read"])
        values["updated_at"] = _to_text(utcnow())

        columns = list(values)
        insert_sql = (
            f"INSERT INTO messages (account_id, provider, message_id, "  # nosec B608
            f"{', '.join(columns)}) "
            f"VALUES (?, ?, ?, {', '.join('?' for _ in columns)}) "
            "ON CONFLICT(account_id, provider, message_id) DO UPDATE SET "
            + ", ".join(f"{col} = excluded.{col}" for col in columns)
        )
        params = [account_id, provider, message_id, *values.values()]

        with self._use(conn) as c:
            c.execute(insert_sql, params)

    def delete_message(
        self,
        account_id: str,
        provider: str,
        message_id: str,
        conn: Optional[sqlite3.Connection] = None,
    ) -> bool:
        """
        Delete a mirrored message.

        Returns:
            True if a row was deleted, False if not present
        """
        with self._use(conn) as c:
            cursor = c.execute(
                """
                DELETE FROM messages
                WHERE account_id = ? AND provider = ? AND message_id = ?
                """,
                (account_id, provider, message_id),
            )
            return cursor.rowcount > 0

    def get_message_count(self, account_id: str) -> int:
        """Get the number of mirrored messages for an account."""
        with self.connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM messages WHERE account_id = ?", (account_id,)
            ).fetchone()
            result: int = row[0]
            return result

    def get_aggregate_counts(
        self, account_id: str, label_id: Optional[str] = None
    ) -> Optional[Counts]:
        """
        Count unread and total mirrored messages for an account.

        Args:
            account_id: Account to aggregate
            label_id: If given, only messages carrying this label are counted

        Returns:
            Counts, or None if the account has no mirrored messages at all
        """
        with self.connection() as conn:
            if label_id is None:
                row = conn.execute(
                    """
                    SELECT
                        COUNT(*) AS total,
                        COALESCE(SUM(CASE WHEN is_read THEN 0 ELSE 1 END), 0) AS unread
                    FROM messages
                    WHERE account_id = ?
                    """,
                    (account_id,),
                ).fetchone()
            else:
                row = conn.execute(
                    """
                    SELECT
                        COUNT(*) AS total,
                        COALESCE(SUM(CASE WHEN is_read THEN 0 ELSE 1 END), 0) AS unread
                    FROM messages
                    WHERE account_id = ? AND instr(label_ids, ?) > 0
                    """,
                    (account_id, json.dumps(label_id)),
                ).fetchone()

            if row["total"] == 0:
                has_rows = conn.execute(
                    "SELECT 1 FROM messages WHERE account_id = ? LIMIT 1",
                    (account_id,),
                ).fetchone()
                if has_rows is None:
                    return None

            return Counts(
                account_id=account_id, unread=row["unread"], total=row["total"]
            )

    # =========================================================================
    # Idempotency Key Operations
    # =========================================================================

    def record_if_absent(
        self,
        key: IdempotencyKey,
        conn: Optional[sqlite3.Connection] = None,
    ) -> bool:
        """
        Atomically record an idempotency key unless already present.

        Returns:
            True if the key was inserted, False if it already existed
        """
        with self._use(conn) as c:
            cursor = c.execute(
                """
                INSERT OR IGNORE INTO idempotency_keys (
                    account_id, cursor, message_id, change_kind, recorded_at
                ) VALUES (?, ?, ?, ?, ?)
                """,
                (
                    key.account_id,
                    key.cursor,
                    key.message_id,
                    key.kind.value,
                    _to_text(utcnow()),
                ),
            )
            return cursor.rowcount == 1

    def prune_idempotency_keys(self, older_than: datetime) -> int:
        """
        Delete idempotency keys recorded before ``older_than``.

        Returns:
            Number of keys deleted
        """
        with self.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM idempotency_keys WHERE recorded_at < ?",
                (_to_text(older_than),),
            )
            return cursor.rowcount

    def get_idempotency_key_count(self) -> int:
        """Get the number of stored idempotency keys."""
        with self.connection() as conn:
            result: int = conn.execute(
                "SELECT COUNT(*) FROM idempotency_keys"
            ).fetchone()[0]
            return result

    # =========================================================================
    # Counts Cache Operations
    # =========================================================================

    def get_cached_counts(self, account_id: str) -> Optional[Counts]:
        """Get the last stored counts for an account."""
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM mailbox_counts WHERE account_id = ?", (account_id,)
            ).fetchone()
            if row is None:
                return None
            return Counts(
                account_id=account_id,
                unread=row["unread"],
                total=row["total"],
                computed_at=_from_text(row["computed_at"]) or utcnow(),
            )

    def set_cached_counts(self, counts: Counts) -> None:
        """Store the latest counts for an account."""
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO mailbox_counts (account_id, unread, total, computed_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(account_id) DO UPDATE SET
                    unread = excluded.unread,
                    total = excluded.total,
                    computed_at = excluded.computed_at
                """,
                (
                    counts.account_id,
                    counts.unread,
                    counts.total,
                    _to_text(counts.computed_at),
                ),
            )

    # =========================================================================
    # Utility Operations
    # =========================================================================

    def vacuum(self) -> None:
        """Vacuum the database to reclaim space after pruning."""
        with self.connection() as conn:
            conn.execute("VACUUM")
