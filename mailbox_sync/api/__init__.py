"""
mailbox_sync.api - Provider adapters

Contains the provider capability interface and the Gmail adapter.
"""

from mailbox_sync.api.provider import (
    AuthExpiredError,
    HistoryExpiredError,
    MailProvider,
    ProviderError,
    TransientProviderError,
)

__all__ = [
    "MailProvider",
    "ProviderError",
    "TransientProviderError",
    "AuthExpiredError",
    "HistoryExpiredError",
]
