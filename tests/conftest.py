"""
Shared fixtures: an in-memory mirror, a scriptable provider and engine wiring.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Optional
from unittest.mock import MagicMock

import pytest

from mailbox_sync.api.provider import HistoryExpiredError
from mailbox_sync.config import ReconcilerConfig
from mailbox_sync.storage.db import MirrorDatabase
from mailbox_sync.sync.counts import CountReconciler
from mailbox_sync.sync.engine import ReconciliationEngine
from mailbox_sync.sync.history import HistoryDeltaProcessor
from mailbox_sync.sync.idempotency import IdempotencyGuard
from mailbox_sync.sync.models import (
    Account,
    Change,
    ChangeKind,
    HistoryPage,
    HistoryRecord,
    Message,
)
from mailbox_sync.sync.resync import FullResync


class FakeProvider:
    """
    In-memory MailProvider.

    History is served as a list of pages; page N carries next_page_token
    "N+1" until the last page. Errors can be injected per method.
    """

    def __init__(self, cursor: str = "100"):
        self.cursor = cursor
        self.pages: list[HistoryPage] = []
        self.recent: list[Message] = []
        self.counts: tuple[int, int] = (0, 0)
        self.expired_cursors: set[str] = set()
        self.errors: dict[str, Exception] = {}
        self.on_get_profile: Optional[Callable[[], None]] = None
        self.calls: list[str] = []

    def _check(self, name: str) -> None:
        self.calls.append(name)
        error = self.errors.get(name)
        if error is not None:
            raise error

    def set_history(self, *pages: list[HistoryRecord]) -> None:
        """Serve the given record lists as consecutive pages."""
        self.pages = []
        for index, records in enumerate(pages):
            last = index == len(pages) - 1
            self.pages.append(
                HistoryPage(
                    records=list(records),
                    next_page_token=None if last else str(index + 1),
                    next_cursor=self.cursor if last else None,
                )
            )

    def get_profile(self, account: Account) -> str:
        self._check("get_profile")
        if self.on_get_profile is not None:
            self.on_get_profile()
        return self.cursor

    def list_history(
        self, account: Account, from_cursor: str, page_token: Optional[str] = None
    ) -> HistoryPage:
        self._check("list_history")
        if from_cursor in self.expired_cursors:
            raise HistoryExpiredError(f"History id {from_cursor} is no longer available")
        if not self.pages:
            return HistoryPage(next_cursor=self.cursor)
        return self.pages[int(page_token) if page_token else 0]

    def list_recent_messages(self, account: Account, max_results: int) -> list[Message]:
        self._check("list_recent_messages")
        return self.recent[:max_results]

    def get_fast_counts(self, account: Account) -> tuple[int, int]:
        self._check("get_fast_counts")
        return self.counts


def added(message_id: str, *labels: str) -> Change:
    """An added change carrying metadata."""
    return Change(
        kind=ChangeKind.ADDED,
        message_id=message_id,
        label_ids=list(labels),
        message=Message.from_label_ids(message_id, list(labels), thread_id=f"t-{message_id}"),
    )


def label_removed(message_id: str, *labels: str) -> Change:
    return Change(kind=ChangeKind.LABEL_REMOVED, message_id=message_id, label_ids=list(labels))


def label_added(message_id: str, *labels: str) -> Change:
    return Change(kind=ChangeKind.LABEL_ADDED, message_id=message_id, label_ids=list(labels))


def deleted(message_id: str) -> Change:
    return Change(kind=ChangeKind.DELETED, message_id=message_id)


@pytest.fixture
def db():
    """Initialized in-memory mirror database."""
    database = MirrorDatabase(":memory:")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def config():
    return ReconcilerConfig(count_label="INBOX", push_lock_timeout_ms=50)


@pytest.fixture
def account(db):
    """Account 7 with cursor 100."""
    db.add_account("7", "gmail", "work", email="me@example.com")
    db.update_cursor("7", "100")
    result = db.get_account("7")
    assert result is not None
    return result


@pytest.fixture
def guard(db):
    return IdempotencyGuard(db)


@pytest.fixture
def broadcaster():
    return MagicMock()


@pytest.fixture
def auth():
    return MagicMock()


@pytest.fixture
def engine(provider, db, guard, broadcaster, auth, config):
    return ReconciliationEngine(
        provider=provider,
        store=db,
        delta_processor=HistoryDeltaProcessor(provider, db, guard),
        resync=FullResync(provider, db, message_cap=config.resync_message_cap),
        count_reconciler=CountReconciler(provider, db, count_label=config.count_label),
        broadcaster=broadcaster,
        config=config,
        auth=auth,
    )


@pytest.fixture(autouse=True)
def reset_package_logger():
    """Undo setup_logging() so caplog sees records in every test."""
    yield
    logger = logging.getLogger("mailbox_sync")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)
    logger.propagate = True
