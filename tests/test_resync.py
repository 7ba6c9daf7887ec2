"""
Tests for the full-resync fallback.
"""

import pytest

from mailbox_sync.api.provider import AuthExpiredError
from mailbox_sync.sync.models import Message
from mailbox_sync.sync.resync import FullResync


@pytest.fixture
def resync(provider, db):
    return FullResync(provider, db, message_cap=3)


class TestFullResync:
    def test_returns_provider_cursor(self, resync, provider, account):
        provider.cursor = "500"

        assert resync.full_resync(account) == "500"

    def test_upserts_recent_messages(self, resync, provider, db, account):
        provider.recent = [
            Message.from_label_ids("m1", ["INBOX", "UNREAD"]),
            Message.from_label_ids("m2", ["INBOX"]),
        ]

        resync.full_resync(account)

        assert db.get_message("7", "gmail", "m1").is_read is False
        assert db.get_message("7", "gmail", "m2").is_read is True

    def test_respects_message_cap(self, resync, provider, db, account):
        provider.recent = [Message.from_label_ids(f"m{i}", ["INBOX"]) for i in range(10)]

        resync.full_resync(account)

        assert db.get_message_count("7") == 3

    def test_never_deletes_rows_outside_listing(self, resync, provider, db, account):
        db.upsert_message("7", "gmail", "old", {"is_read": True, "label_ids": ["INBOX"]})
        provider.recent = [Message.from_label_ids("m1", ["INBOX"])]

        resync.full_resync(account)

        assert db.get_message("7", "gmail", "old") is not None
        assert db.get_message_count("7") == 2

    def test_cursor_read_before_listing(self, resync, provider, account):
        resync.full_resync(account)

        assert provider.calls[:2] == ["get_profile", "list_recent_messages"]

    def test_provider_error_leaves_store_untouched(self, resync, provider, db, account):
        provider.recent = [Message.from_label_ids("m1", ["INBOX"])]
        provider.errors["list_recent_messages"] = AuthExpiredError("401")

        with pytest.raises(AuthExpiredError):
            resync.full_resync(account)

        assert db.get_message_count("7") == 0
        assert db.get_account("7").cursor == "100"
