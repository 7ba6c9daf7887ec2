"""
Credential management for linked Gmail accounts.

Provides:
- Loading stored OAuth2 tokens per account
- Automatic token refresh
- Tracking of accounts whose credentials need re-linking

Obtaining tokens in the first place (the consent flow) is left to the host
application; it stores the authorized-user JSON at
``<config_dir>/tokens/<credential_ref>.json``.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

from mailbox_sync.api.provider import AuthExpiredError, TransientProviderError
from mailbox_sync.sync.models import Account, utcnow
from mailbox_sync.utils import ConfigLayout

# OAuth2 scopes required to read mailbox history and label counts
SCOPES = ["https://www.googleapis.com/auth/gmail.readonly"]

logger = logging.getLogger(__name__)


class GoogleAuth:
    """
    Credential source and refresh collaborator for the reconciler.

    Attributes:
        config_dir: Directory holding tokens and the re-link registry
        tokens_dir: Directory of per-account token files

    Usage:
        auth = GoogleAuth()

        creds = auth.get_credentials(account)   # may raise AuthExpiredError
        auth.report_auth_expired(account)        # after a 401 from the API
        auth.pending_reauth()                    # accounts waiting on re-link
    """

    def __init__(self, config_dir: Path | str | None = None):
        layout = ConfigLayout.resolve(config_dir)
        self.config_dir = layout.root
        self.tokens_dir = layout.tokens_dir
        self.reauth_path = layout.reauth_file
        self._lock = threading.Lock()

    def _get_token_path(self, credential_ref: str) -> Path:
        """
        Token file path for a credential reference.

        Raises:
            ValueError: If the reference would escape the tokens directory
        """
        if not credential_ref or "/" in credential_ref or "\\" in credential_ref:
            raise ValueError(f"Invalid credential reference '{credential_ref}'")
        if credential_ref.startswith("."):
            raise ValueError(f"Invalid credential reference '{credential_ref}'")
        return self.tokens_dir / f"{credential_ref}.json"

    def _load_credentials(self, credential_ref: str) -> Credentials | None:
        token_path = self._get_token_path(credential_ref)
        if not token_path.exists():
            logger.debug(f"No token file found for {credential_ref}")
            return None

        try:
            creds: Credentials = Credentials.from_authorized_user_file(
                str(token_path), SCOPES
            )
            return creds
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning(f"Invalid token file for {credential_ref}: {e}")
            return None

    def _save_credentials(self, credential_ref: str, creds: Credentials) -> None:
        token_path = self._get_token_path(credential_ref)
        self.tokens_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        token_path.write_text(creds.to_json())
        token_path.chmod(0o600)
        logger.debug(f"Saved refreshed credentials for {credential_ref}")

    def get_credentials(self, account: Account) -> Credentials:
        """
        Get valid credentials for an account, refreshing if expired.

        Raises:
            AuthExpiredError: If no token is stored or it cannot be refreshed
            TransientProviderError: If the token endpoint is unreachable
        """
        creds = self._load_credentials(account.credential_ref)
        if creds is None:
            raise AuthExpiredError(
                f"No stored credentials for account {account.account_id}"
            )

        if creds.valid:
            return creds

        if not creds.refresh_token:
            raise AuthExpiredError(
                f"Credentials for account {account.account_id} expired "
                "and cannot be refreshed"
            )

        try:
            creds.refresh(Request())
        except RefreshError as e:
            raise AuthExpiredError(
                f"Token refresh failed for account {account.account_id}: {e}"
            ) from e
        except TransportError as e:
            raise TransientProviderError(
                f"Token endpoint unreachable for account {account.account_id}: {e}"
            ) from e

        self._save_credentials(account.credential_ref, creds)
        logger.debug(f"Refreshed credentials for account {account.account_id}")
        return creds

    def is_authenticated(self, account: Account) -> bool:
        """Check whether usable credentials exist without raising."""
        try:
            self.get_credentials(account)
        except (AuthExpiredError, TransientProviderError):
            return False
        return True

    # =========================================================================
    # Re-link registry
    # =========================================================================

    def _read_registry(self) -> dict[str, Any]:
        if not self.reauth_path.exists():
            return {}
        try:
            data = json.loads(self.reauth_path.read_text())
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Ignoring unreadable {self.reauth_path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _write_registry(self, data: dict[str, Any]) -> None:
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.reauth_path.write_text(json.dumps(data, indent=2, sort_keys=True))

    def report_auth_expired(self, account: Account) -> None:
        """Record that an account needs its credentials re-linked."""
        logger.warning(
            f"Account {account.account_id} ({account.email or account.credential_ref}) "
            "needs reauthorization"
        )
        with self._lock:
            registry = self._read_registry()
            registry[account.account_id] = {
                "credential_ref": account.credential_ref,
                "email": account.email,
                "reported_at": utcnow().isoformat(),
            }
            self._write_registry(registry)

    def pending_reauth(self) -> dict[str, Any]:
        """Accounts waiting on re-link, keyed by account id."""
        with self._lock:
            return self._read_registry()

    def clear_reauth(self, account_id: str) -> bool:
        """
        Remove an account from the re-link registry.

        Returns:
            True if the account was registered, False otherwise
        """
        with self._lock:
            registry = self._read_registry()
            if account_id not in registry:
                return False
            del registry[account_id]
            self._write_registry(registry)
            return True
