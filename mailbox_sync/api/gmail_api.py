"""
Gmail API adapter for mailbox reconciliation.

Implements the MailProvider interface on top of the Gmail v1 REST API:
- Current history cursor from the mailbox profile
- Paginated history listing with expiry detection
- Bounded recent-message listing for full resync
- Fast unread/total counts from label statistics
- Exponential backoff retry for rate limits only
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Any, Optional, Protocol

import google_auth_httplib2
import httplib2
from google.auth.exceptions import RefreshError, TransportError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from mailbox_sync.api.provider import (
    AuthExpiredError,
    HistoryExpiredError,
    ProviderError,
    TransientProviderError,
)
from mailbox_sync.sync.models import (
    Account,
    Change,
    ChangeKind,
    HistoryPage,
    HistoryRecord,
    Message,
)

# History record types requested from users.history.list
HISTORY_TYPES = ["messageAdded", "messageDeleted", "labelAdded", "labelRemoved"]

# Maximum history records per page
DEFAULT_PAGE_SIZE = 100

# API maximum for users.messages.list maxResults
MAX_LIST_PAGE_SIZE = 500

# Label used for fast counts and recent listings
DEFAULT_COUNT_LABEL = "INBOX"

# Retry configuration defaults (rate limits only)
DEFAULT_MAX_RETRIES = 3
DEFAULT_INITIAL_RETRY_DELAY = 1.0  # seconds
DEFAULT_MAX_RETRY_DELAY = 30.0  # seconds

# Per-request socket timeout
DEFAULT_TIMEOUT = 30.0  # seconds

# 403 reasons that mean "slow down" rather than "not allowed"
RATE_LIMIT_REASONS = ("rateLimitExceeded", "userRateLimitExceeded")

logger = logging.getLogger(__name__)


class CredentialSource(Protocol):
    """Supplies valid credentials for an account."""

    def get_credentials(self, account: Account) -> Credentials: ...


def _is_rate_limited(error: HttpError) -> bool:
    """Check whether an HttpError is a rate limit rather than a hard failure."""
    status = error.resp.status
    if status == 429:
        return True
    if status == 403:
        content = error.content or b""
        if isinstance(content, bytes):
            content = content.decode("utf-8", errors="replace")
        return any(reason in content for reason in RATE_LIMIT_REASONS)
    return False


class GmailAPI:
    """
    Gmail provider adapter.

    One API service is built per account and cached. Every HTTP request is
    bounded by ``timeout`` seconds.

    Usage:
        api = GmailAPI(auth)

        cursor = api.get_profile(account)
        page = api.list_history(account, account.cursor)
        unread, total = api.get_fast_counts(account)
    """

    def __init__(
        self,
        credentials: CredentialSource,
        page_size: int = DEFAULT_PAGE_SIZE,
        count_label: str = DEFAULT_COUNT_LABEL,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        initial_retry_delay: float = DEFAULT_INITIAL_RETRY_DELAY,
        max_retry_delay: float = DEFAULT_MAX_RETRY_DELAY,
    ):
        """
        Initialize the Gmail adapter.

        Args:
            credentials: Source of per-account OAuth2 credentials
            page_size: History records per page (default 100)
            count_label: Label used for counts and recent listings
            timeout: Socket timeout in seconds for each request
            max_retries: Attempts for rate-limited calls (default 3)
            initial_retry_delay: Initial backoff delay in seconds (default 1.0)
            max_retry_delay: Maximum backoff delay in seconds (default 30.0)
        """
        self.credentials = credentials
        self.page_size = min(page_size, MAX_LIST_PAGE_SIZE)
        self.count_label = count_label
        self.timeout = timeout
        self.max_retries = max_retries
        self.initial_retry_delay = initial_retry_delay
        self.max_retry_delay = max_retry_delay
        self._services: dict[str, Any] = {}
        self._services_lock = threading.Lock()

    def service(self, account: Account) -> Any:
        """
        Get or create the Gmail API service for an account.

        Raises:
            AuthExpiredError: If the account has no usable credentials
            ProviderError: If the service cannot be created
        """
        with self._services_lock:
            service = self._services.get(account.account_id)
            if service is not None:
                return service

            creds = self.credentials.get_credentials(account)
            try:
                http = google_auth_httplib2.AuthorizedHttp(
                    creds, http=httplib2.Http(timeout=self.timeout)
                )
                service = build("gmail", "v1", http=http, cache_discovery=False)
            except Exception as e:
                logger.error(f"Failed to create Gmail service: {e}")
                raise ProviderError(f"Failed to create Gmail service: {e}") from e

            self._services[account.account_id] = service
            logger.debug(f"Created Gmail service for account {account.account_id}")
            return service

    def forget(self, account: Account) -> None:
        """Drop the cached service so the next call reloads credentials."""
        with self._services_lock:
            self._services.pop(account.account_id, None)

    def _execute(
        self,
        account: Account,
        operation: Callable[[Any], Any],
        operation_name: str,
    ) -> Any:
        """
        Execute a request, retrying rate limits with exponential backoff.

        Server errors and network failures are not retried here; they are
        reported as TransientProviderError and retried on the next pass.

        Raises:
            AuthExpiredError: On 401, forbidden access or failed token refresh
            TransientProviderError: On 5xx, timeouts or network errors
            ProviderError: For other API errors (the HttpError is chained)
        """
        delay = self.initial_retry_delay

        for attempt in range(self.max_retries):
            try:
                return operation(self.service(account))

            except HttpError as e:
                status = e.resp.status

                if _is_rate_limited(e):
                    if attempt < self.max_retries - 1:
                        logger.warning(
                            f"{operation_name} rate limited, retrying in "
                            f"{delay:.1f}s (attempt {attempt + 1}/{self.max_retries})"
                        )
                        time.sleep(delay)
                        delay = min(delay * 2, self.max_retry_delay)
                        continue
                    raise TransientProviderError(
                        f"Rate limit exceeded for {operation_name} "
                        f"after {self.max_retries} attempts"
                    ) from e

                if status in (401, 403):
                    self.forget(account)
                    raise AuthExpiredError(
                        f"{operation_name} not authorized ({status})"
                    ) from e

                if status >= 500:
                    raise TransientProviderError(
                        f"{operation_name} server error ({status})"
                    ) from e

                raise ProviderError(f"{operation_name} failed: {e}") from e

            except RefreshError as e:
                self.forget(account)
                raise AuthExpiredError(
                    f"{operation_name} token refresh failed: {e}"
                ) from e

            except (TransportError, httplib2.HttpLib2Error, OSError) as e:
                # TimeoutError and socket errors are OSError subclasses
                raise TransientProviderError(
                    f"{operation_name} network failure: {e}"
                ) from e

        raise TransientProviderError(f"{operation_name} failed after all retries")

    def get_profile(self, account: Account) -> str:
        """Return the mailbox's current history id."""

        def execute_get(service: Any) -> Any:
            return service.users().getProfile(userId="me").execute()

        response = self._execute(account, execute_get, "get_profile")
        history_id = response.get("historyId")
        if history_id is None:
            raise ProviderError("get_profile returned no historyId")
        return str(history_id)

    def list_history(
        self,
        account: Account,
        from_cursor: str,
        page_token: Optional[str] = None,
    ) -> HistoryPage:
        """
        List one page of history records after ``from_cursor``.

        Raises:
            HistoryExpiredError: If Gmail reports the start history id as
                unknown (404)
        """
        params: dict[str, Any] = {
            "userId": "me",
            "startHistoryId": from_cursor,
            "historyTypes": HISTORY_TYPES,
            "maxResults": self.page_size,
        }
        if page_token:
            params["pageToken"] = page_token

        def execute_list(service: Any, p: dict[str, Any] = params) -> Any:
            return service.users().history().list(**p).execute()

        try:
            response = self._execute(account, execute_list, "list_history")
        except ProviderError as e:
            cause = e.__cause__
            if isinstance(cause, HttpError) and cause.resp.status == 404:
                logger.warning(
                    f"History id {from_cursor} expired for account "
                    f"{account.account_id}"
                )
                raise HistoryExpiredError(
                    f"History id {from_cursor} is no longer available"
                ) from cause
            raise

        records = [
            self._parse_history_record(record)
            for record in response.get("history", [])
        ]
        next_cursor = response.get("historyId")

        return HistoryPage(
            records=records,
            next_page_token=response.get("nextPageToken"),
            next_cursor=str(next_cursor) if next_cursor is not None else None,
        )

    @staticmethod
    def _parse_message(data: dict[str, Any]) -> Message:
        """Convert a minimal Gmail message resource into a Message."""
        internal_date = data.get("internalDate")
        return Message.from_label_ids(
            message_id=data["id"],
            label_ids=data.get("labelIds"),
            thread_id=data.get("threadId"),
            internal_date=int(internal_date) if internal_date else None,
        )

    def _parse_history_record(self, record: dict[str, Any]) -> HistoryRecord:
        """Flatten a Gmail history record into ordered changes."""
        changes: list[Change] = []

        for item in record.get("messagesAdded", []):
            message = item.get("message") or {}
            if message.get("id"):
                changes.append(
                    Change(
                        kind=ChangeKind.ADDED,
                        message_id=message["id"],
                        label_ids=list(message.get("labelIds", [])),
                        message=self._parse_message(message),
                    )
                )

        for item in record.get("messagesDeleted", []):
            message = item.get("message") or {}
            if message.get("id"):
                changes.append(
                    Change(kind=ChangeKind.DELETED, message_id=message["id"])
                )

        for key, kind in (
            ("labelsAdded", ChangeKind.LABEL_ADDED),
            ("labelsRemoved", ChangeKind.LABEL_REMOVED),
        ):
            for item in record.get(key, []):
                message = item.get("message") or {}
                if message.get("id"):
                    changes.append(
                        Change(
                            kind=kind,
                            message_id=message["id"],
                            label_ids=list(item.get("labelIds", [])),
                        )
                    )

        return HistoryRecord(cursor=str(record["id"]), changes=changes)

    def list_recent_messages(self, account: Account, max_results: int) -> list[Message]:
        """
        List up to ``max_results`` of the most recent messages in the
        count label, with labels and read state.
        """
        message_ids: list[str] = []
        page_token: str | None = None

        while len(message_ids) < max_results:
            params: dict[str, Any] = {
                "userId": "me",
                "labelIds": [self.count_label],
                "maxResults": min(MAX_LIST_PAGE_SIZE, max_results - len(message_ids)),
            }
            if page_token:
                params["pageToken"] = page_token

            def execute_list(service: Any, p: dict[str, Any] = params) -> Any:
                return service.users().messages().list(**p).execute()

            response = self._execute(account, execute_list, "list_messages")
            message_ids.extend(m["id"] for m in response.get("messages", []))

            page_token = response.get("nextPageToken")
            if not page_token:
                break

        messages: list[Message] = []
        for message_id in message_ids[:max_results]:

            def execute_get(service: Any, mid: str = message_id) -> Any:
                return (
                    service.users()
                    .messages()
                    .get(userId="me", id=mid, format="minimal")
                    .execute()
                )

            try:
                data = self._execute(account, execute_get, f"get_message({message_id})")
            except ProviderError as e:
                cause = e.__cause__
                if isinstance(cause, HttpError) and cause.resp.status == 404:
                    logger.debug(f"Message {message_id} vanished during listing")
                    continue
                raise
            messages.append(self._parse_message(data))

        logger.info(
            f"Listed {len(messages)} recent messages for account {account.account_id}"
        )
        return messages

    def get_fast_counts(self, account: Account) -> tuple[int, int]:
        """Return (unread, total) from the count label's statistics."""

        def execute_get(service: Any) -> Any:
            return service.users().labels().get(userId="me", id=self.count_label).execute()

        response = self._execute(account, execute_get, "get_label_counts")
        return (
            int(response.get("messagesUnread", 0)),
            int(response.get("messagesTotal", 0)),
        )
