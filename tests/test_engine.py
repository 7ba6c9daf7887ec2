"""
Tests for the reconciliation engine.

Covers the pass (delta, resync fallback, counts, broadcast), error
handling, per-account mutual exclusion and the push path.
"""

import threading
from unittest.mock import MagicMock, patch

import pytest
from conftest import added, label_removed

from mailbox_sync.api.provider import AuthExpiredError, TransientProviderError
from mailbox_sync.storage.db import PersistentStoreError
from mailbox_sync.sync.broadcast import COUNT_UPDATED, MAILBOX_CHANGED
from mailbox_sync.sync.engine import (
    AccountBusyError,
    AccountNotFoundError,
    ReconcilerDisabledError,
)
from mailbox_sync.sync.models import HistoryRecord, Message, PushOutcome


def seed_unread(db, *message_ids):
    for message_id in message_ids:
        db.upsert_message(
            "7", "gmail", message_id, {"is_read": False, "label_ids": ["INBOX", "UNREAD"]}
        )


def scenario_delta(provider):
    """Cursor 100 -> 130 with three additions and two messages marked read."""
    provider.cursor = "130"
    provider.set_history(
        [
            HistoryRecord(
                "110",
                [
                    added("m3", "INBOX", "UNREAD"),
                    added("m4", "INBOX", "UNREAD"),
                    added("m5", "INBOX"),
                ],
            ),
            HistoryRecord(
                "120", [label_removed("m1", "UNREAD"), label_removed("m2", "UNREAD")]
            ),
        ]
    )


class TestReconcilePass:
    def test_delta_applied_cursor_advanced_and_counts_broadcast(
        self, engine, provider, db, broadcaster, account
    ):
        seed_unread(db, "m1", "m2")
        scenario_delta(provider)
        provider.counts = (2, 5)

        result = engine.try_reconcile("7")

        assert result.applied == 5
        assert result.cursor == "130"
        assert db.get_account("7").cursor == "130"
        assert db.get_message_count("7") == 5
        assert db.get_message("7", "gmail", "m1").is_read is True
        assert db.get_message("7", "gmail", "m2").is_read is True
        assert (result.counts.unread, result.counts.total) == (2, 5)

        broadcaster.publish.assert_called_once()
        account_id, kind, payload = broadcaster.publish.call_args[0]
        assert account_id == "7"
        assert kind == COUNT_UPDATED
        assert payload["unread"] == 2
        assert payload["total"] == 5

    def test_replayed_delta_is_absorbed(self, engine, provider, db, broadcaster, account):
        seed_unread(db, "m1", "m2")
        scenario_delta(provider)
        provider.counts = (2, 5)
        engine.try_reconcile("7")

        # Webhook replay overlapping the poll: same delta from the old cursor
        db.update_cursor("7", "100")
        result = engine.try_reconcile("7")

        assert result.applied == 0
        assert db.get_message_count("7") == 5
        assert broadcaster.publish.call_count == 1

    def test_expired_history_falls_back_to_full_resync(
        self, engine, provider, db, broadcaster, account
    ):
        db.upsert_message("7", "gmail", "ancient", {"is_read": True, "label_ids": ["INBOX"]})
        provider.cursor = "900"
        provider.expired_cursors.add("100")
        provider.recent = [
            Message.from_label_ids("r1", ["INBOX", "UNREAD"]),
            Message.from_label_ids("r2", ["INBOX"]),
        ]

        result = engine.try_reconcile("7")

        assert result.resynced is True
        assert result.cursor == "900"
        assert db.get_account("7").cursor == "900"
        assert db.get_message("7", "gmail", "ancient") is not None
        assert db.get_message("7", "gmail", "r1").is_read is False
        assert broadcaster.publish.called

    def test_missing_cursor_bootstraps_with_full_resync(self, engine, provider, db):
        db.add_account("8", "gmail", "home")
        provider.cursor = "42"
        provider.recent = [Message.from_label_ids("r1", ["INBOX"])]

        result = engine.try_reconcile("8")

        assert result.resynced is True
        assert db.get_account("8").cursor == "42"
        assert "list_history" not in provider.calls

    def test_unchanged_cursor_skips_history(self, engine, provider, db, broadcaster, account):
        provider.cursor = "100"
        provider.counts = (0, 0)
        engine.try_reconcile("7")
        broadcaster.reset_mock()

        result = engine.try_reconcile("7")

        assert result.applied == 0
        assert "list_history" not in provider.calls
        broadcaster.publish.assert_not_called()

    def test_changes_without_count_change_broadcast_mailbox_changed(
        self, engine, provider, db, broadcaster, account
    ):
        provider.counts = (0, 10)
        engine.try_reconcile("7")
        broadcaster.reset_mock()

        provider.cursor = "110"
        provider.set_history([HistoryRecord("110", [added("s1", "SENT")])])
        engine.try_reconcile("7")

        broadcaster.publish.assert_called_once()
        assert broadcaster.publish.call_args[0][1] == MAILBOX_CHANGED

    def test_cursor_moves_forward_across_passes(self, engine, provider, db, account):
        seen = []
        for cursor in ("130", "150", "151"):
            provider.cursor = cursor
            provider.set_history([])
            engine.try_reconcile("7")
            seen.append(db.get_account("7").cursor)

        assert seen == ["130", "150", "151"]

    def test_marks_account_reconciled(self, engine, db, account):
        engine.try_reconcile("7")

        assert db.get_account("7").last_reconciled_at is not None

    def test_unknown_account(self, engine):
        with pytest.raises(AccountNotFoundError):
            engine.try_reconcile("missing")


class TestErrorHandling:
    def test_auth_expired_is_reported_and_reraised(self, engine, provider, db, auth, account):
        provider.errors["get_profile"] = AuthExpiredError("401")

        with pytest.raises(AuthExpiredError):
            engine.try_reconcile("7")

        auth.report_auth_expired.assert_called_once()
        assert auth.report_auth_expired.call_args[0][0].account_id == "7"
        # Marked reconciled so it does not starve the batch
        assert db.get_account("7").last_reconciled_at is not None
        assert db.get_account("7").cursor == "100"

    def test_store_failure_does_not_mask_auth_expired(
        self, engine, provider, db, auth, account, caplog
    ):
        provider.errors["get_profile"] = AuthExpiredError("401")

        with patch.object(
            db, "mark_reconciled", side_effect=PersistentStoreError("database is locked")
        ):
            with pytest.raises(AuthExpiredError):
                engine.try_reconcile("7")

        auth.report_auth_expired.assert_called_once()
        assert "database is locked" in caplog.text

    def test_transient_error_leaves_account_stale(self, engine, provider, db, account):
        provider.cursor = "130"
        provider.errors["list_history"] = TransientProviderError("503")

        with pytest.raises(TransientProviderError):
            engine.try_reconcile("7")

        stored = db.get_account("7")
        assert stored.cursor == "100"
        assert stored.last_reconciled_at is None
        assert not engine.is_running("7")

    def test_store_error_leaves_cursor_unadvanced(self, engine, provider, db, account):
        provider.cursor = "130"
        engine.delta_processor = MagicMock()
        engine.delta_processor.process_delta.side_effect = PersistentStoreError("locked")

        with pytest.raises(PersistentStoreError):
            engine.try_reconcile("7")

        assert db.get_account("7").cursor == "100"

    def test_transient_count_failure_keeps_pass(self, engine, provider, db, account):
        provider.cursor = "130"
        provider.errors["get_fast_counts"] = TransientProviderError("timeout")

        result = engine.try_reconcile("7")

        assert result.counts is None
        assert db.get_account("7").cursor == "130"


class TestMutualExclusion:
    def test_concurrent_trigger_returns_busy(self, engine, provider, db, account):
        entered = threading.Event()
        release = threading.Event()

        def block():
            entered.set()
            release.wait(5)

        provider.on_get_profile = block
        results = []
        worker = threading.Thread(target=lambda: results.append(engine.try_reconcile("7")))
        worker.start()
        assert entered.wait(5)

        second = engine.try_reconcile("7")
        assert engine.is_running("7")
        assert engine.running_accounts() == ["7"]

        release.set()
        worker.join(5)

        assert second.is_busy
        assert len(results) == 1
        assert not results[0].is_busy
        assert not engine.is_running("7")

    def test_different_accounts_do_not_contend(self, engine, provider, db, account):
        db.add_account("8", "gmail", "home")
        entered = threading.Event()
        release = threading.Event()

        def block():
            if threading.current_thread().name == "blocker":
                entered.set()
                release.wait(5)

        provider.on_get_profile = block
        worker = threading.Thread(target=engine.try_reconcile, args=("7",), name="blocker")
        worker.start()
        assert entered.wait(5)

        result = engine.try_reconcile("8")

        release.set()
        worker.join(5)
        assert not result.is_busy


class TestAdministrativeTrigger:
    def test_disabled(self, engine, config, account):
        config.enabled = False

        with pytest.raises(ReconcilerDisabledError):
            engine.reconcile_account_by_id("7")

    def test_busy(self, engine, account):
        lock = engine._lock_for("7")
        lock.acquire()
        try:
            with pytest.raises(AccountBusyError):
                engine.reconcile_account_by_id("7")
        finally:
            lock.release()

    def test_not_found(self, engine):
        with pytest.raises(AccountNotFoundError):
            engine.reconcile_account_by_id("missing")

    def test_success(self, engine, provider, account):
        provider.cursor = "130"

        result = engine.reconcile_account_by_id("7")

        assert result.cursor == "130"


class TestPushNotification:
    def test_single_page_is_applied(self, engine, provider, db, broadcaster, account):
        provider.cursor = "110"
        provider.counts = (1, 1)
        provider.set_history([HistoryRecord("110", [added("m1", "INBOX", "UNREAD")])])

        outcome = engine.handle_push_notification("7", cursor="110")

        assert outcome == PushOutcome.APPLIED
        assert db.get_account("7").cursor == "110"
        assert db.get_message("7", "gmail", "m1") is not None
        broadcaster.publish.assert_called_once()

    def test_same_cursor_is_ignored(self, engine, provider, broadcaster, account):
        outcome = engine.handle_push_notification("7", cursor="100")

        assert outcome == PushOutcome.IGNORED
        assert "list_history" not in provider.calls
        broadcaster.publish.assert_not_called()

    def test_multi_page_delta_is_deferred(self, engine, provider, db, account):
        db.mark_reconciled("7")
        provider.cursor = "130"
        provider.set_history(
            [HistoryRecord("110", [added("m1", "INBOX")])],
            [HistoryRecord("120", [added("m2", "INBOX")])],
        )

        outcome = engine.handle_push_notification("7", cursor="130")

        assert outcome == PushOutcome.DEFERRED
        stored = db.get_account("7")
        assert stored.cursor == "100"
        assert stored.last_reconciled_at is None
        # The first page is applied; the scheduled pass replays it harmlessly
        assert db.get_message("7", "gmail", "m1") is not None

    def test_contention_defers(self, engine, db, account):
        db.mark_reconciled("7")
        lock = engine._lock_for("7")
        lock.acquire()
        try:
            outcome = engine.handle_push_notification("7", cursor="130")
        finally:
            lock.release()

        assert outcome == PushOutcome.DEFERRED
        assert db.get_account("7").last_reconciled_at is None

    def test_expired_history_defers(self, engine, provider, db, account):
        provider.expired_cursors.add("100")

        outcome = engine.handle_push_notification("7", cursor="130")

        assert outcome == PushOutcome.DEFERRED
        assert "list_recent_messages" not in provider.calls

    def test_account_without_cursor_defers(self, engine, db):
        db.add_account("8", "gmail", "home")

        assert engine.handle_push_notification("8") == PushOutcome.DEFERRED

    def test_unknown_account(self, engine):
        with pytest.raises(AccountNotFoundError):
            engine.handle_push_notification("missing")

    def test_auth_expired_is_reported(self, engine, provider, auth, account):
        provider.errors["list_history"] = AuthExpiredError("401")

        with pytest.raises(AuthExpiredError):
            engine.handle_push_notification("7", cursor="130")

        auth.report_auth_expired.assert_called_once()
