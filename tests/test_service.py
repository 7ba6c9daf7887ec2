"""
Tests for the service lifecycle wiring.
"""

from unittest.mock import MagicMock

from mailbox_sync.api.gmail_api import GmailAPI
from mailbox_sync.auth import GoogleAuth
from mailbox_sync.config import ReconcilerConfig
from mailbox_sync.service import MailboxSyncService
from mailbox_sync.sync.models import PushOutcome


def make_service(tmp_path, provider, **overrides):
    config = ReconcilerConfig(db_path=":memory:", **overrides)
    return MailboxSyncService(
        config=config, config_dir=tmp_path, provider=provider, auth=MagicMock()
    )


class TestWiring:
    def test_defaults_build_gmail_stack(self, tmp_path):
        service = MailboxSyncService(config_dir=tmp_path)
        try:
            assert isinstance(service.provider, GmailAPI)
            assert isinstance(service.auth, GoogleAuth)
            assert service.provider.credentials is service.auth
            assert service.store.db_path == str(tmp_path.resolve() / "mirror.db")
        finally:
            service.close()

    def test_remote_and_mirror_counts_share_label(self, tmp_path):
        config = ReconcilerConfig(db_path=":memory:", count_label="IMPORTANT")
        service = MailboxSyncService(config=config, config_dir=tmp_path)
        try:
            assert service.provider.count_label == "IMPORTANT"
            assert service.engine.count_reconciler.count_label == "IMPORTANT"
        finally:
            service.close()

    def test_from_config_dir_reads_yaml(self, tmp_path, provider):
        (tmp_path / "config.yaml").write_text("db_path: ':memory:'\nbatch_size: 3\n")

        service = MailboxSyncService.from_config_dir(tmp_path, provider=provider)
        try:
            assert service.config.batch_size == 3
            assert service.scheduler.config is service.config
        finally:
            service.close()


class TestOperations:
    def test_trigger_and_push(self, tmp_path, provider):
        service = make_service(tmp_path, provider)
        service.store.add_account("7", "gmail", "work")

        result = service.trigger_one("7")
        outcome = service.handle_push_notification("7", cursor=result.cursor)

        assert result.resynced is True
        assert outcome == PushOutcome.IGNORED
        service.close()

    def test_status_includes_active_accounts(self, tmp_path, provider):
        service = make_service(tmp_path, provider)

        status = service.get_status()

        assert status["active_accounts"] == []
        assert status["running"] is False
        assert status["ticking"] is False
        service.close()

    def test_context_manager_starts_and_stops(self, tmp_path, provider):
        with make_service(tmp_path, provider, interval_ms=3_600_000) as service:
            assert service.get_status()["ticking"] is True

        assert service.get_status()["ticking"] is False
