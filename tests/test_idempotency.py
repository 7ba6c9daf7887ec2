"""
Tests for the idempotency guard.
"""

import threading
import time
from datetime import timedelta

import pytest

from mailbox_sync.storage.db import MirrorDatabase, PersistentStoreError
from mailbox_sync.sync.idempotency import IdempotencyGuard
from mailbox_sync.sync.models import ChangeKind, IdempotencyKey


class TestRecordIfAbsent:
    def test_first_record_is_not_applied(self, guard):
        result = guard.record_if_absent("7", "110", "m1", ChangeKind.ADDED)
        assert result.already_applied is False

    def test_second_record_is_already_applied(self, guard):
        guard.record_if_absent("7", "110", "m1", ChangeKind.ADDED)
        result = guard.record_if_absent("7", "110", "m1", ChangeKind.ADDED)
        assert result.already_applied is True


class TestApplyOnce:
    def test_mutation_runs_once(self, guard, db):
        key = IdempotencyKey("7", "110", "m1", ChangeKind.ADDED)
        calls = []

        def mutation(conn):
            calls.append(conn)
            db.upsert_message("7", "gmail", "m1", {"is_read": False}, conn=conn)

        assert guard.apply_once(key, mutation) is True
        assert guard.apply_once(key, mutation) is False
        assert len(calls) == 1
        assert db.get_message_count("7") == 1

    def test_failed_mutation_rolls_back_key(self, guard, db):
        key = IdempotencyKey("7", "110", "m1", ChangeKind.ADDED)

        def failing(conn):
            raise PersistentStoreError("disk full")

        with pytest.raises(PersistentStoreError):
            guard.apply_once(key, failing)

        assert db.get_idempotency_key_count() == 0
        assert guard.apply_once(key, lambda conn: None) is True

    def test_concurrent_apply_on_file_database_runs_once(self, tmp_path):
        db = MirrorDatabase(str(tmp_path / "mirror.db"), timeout=5.0)
        db.initialize()
        guard = IdempotencyGuard(db)
        key = IdempotencyKey("7", "110", "m1", ChangeKind.ADDED)
        barrier = threading.Barrier(2)
        calls = []
        results = []

        def mutation(conn):
            calls.append(threading.current_thread().name)
            # Hold the write transaction open while the other thread inserts
            time.sleep(0.1)

        def worker():
            barrier.wait()
            results.append(guard.apply_once(key, mutation))

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert len(calls) == 1
        assert sorted(results) == [False, True]
        assert db.get_idempotency_key_count() == 1
        db.close()


class TestPrune:
    def test_prune_keeps_recent_keys(self, guard, db):
        guard.record_if_absent("7", "110", "m1", ChangeKind.ADDED)

        assert guard.prune() == 0
        assert db.get_idempotency_key_count() == 1

    def test_prune_with_negative_window_removes_all(self, db):
        guard = IdempotencyGuard(db, retention=timedelta(days=7))
        guard.record_if_absent("7", "110", "m1", ChangeKind.ADDED)
        guard.record_if_absent("7", "120", "m2", ChangeKind.DELETED)

        assert guard.prune(timedelta(seconds=-1)) == 2
