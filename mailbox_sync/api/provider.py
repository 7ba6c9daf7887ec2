"""
Provider adapter capability and error taxonomy.

Every remote mail service is supported by an adapter implementing
MailProvider. The reconciliation components depend only on this interface.
"""

from __future__ import annotations

from typing import Optional, Protocol

from mailbox_sync.sync.models import Account, HistoryPage, Message


class ProviderError(Exception):
    """Base exception for provider adapter failures."""

    pass


class TransientProviderError(ProviderError):
    """Raised for network failures, timeouts and server errors."""

    pass


class AuthExpiredError(ProviderError):
    """Raised when the account's credentials are missing or no longer valid."""

    pass


class HistoryExpiredError(ProviderError):
    """Raised when the provider no longer recognizes a start cursor."""

    pass


class MailProvider(Protocol):
    """Operations the reconciliation engine needs from a mail provider."""

    def get_profile(self, account: Account) -> str:
        """Return the provider's current history cursor for the account."""
        ...

    def list_history(
        self,
        account: Account,
        from_cursor: str,
        page_token: Optional[str] = None,
    ) -> HistoryPage:
        """
        Return one page of history records after ``from_cursor``.

        Raises:
            HistoryExpiredError: If ``from_cursor`` is unknown or expired
        """
        ...

    def list_recent_messages(self, account: Account, max_results: int) -> list[Message]:
        """Return up to ``max_results`` of the most recent messages."""
        ...

    def get_fast_counts(self, account: Account) -> tuple[int, int]:
        """Return the provider's (unread, total) counts."""
        ...


__all__ = [
    "MailProvider",
    "ProviderError",
    "TransientProviderError",
    "AuthExpiredError",
    "HistoryExpiredError",
]
