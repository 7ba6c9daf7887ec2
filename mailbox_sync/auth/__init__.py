"""
mailbox_sync.auth - Credential management module

Loads and refreshes stored OAuth2 tokens for linked accounts.
"""

from mailbox_sync.auth.google_auth import SCOPES, GoogleAuth

__all__ = ["GoogleAuth", "SCOPES"]
