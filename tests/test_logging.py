"""
Tests for the logging configuration module.

Tests environment-driven levels, handler setup and log file housekeeping.
"""

import logging
import os
import time
from pathlib import Path
from unittest.mock import patch

from mailbox_sync.utils.logging import (
    CONSOLE_FORMAT,
    LOG_FILE_PREFIX,
    VERBOSE_FORMAT,
    ColoredFormatter,
    cleanup_old_logs,
    daily_log_file,
    get_log_file_path,
    get_log_level_from_env,
    get_logger,
    set_log_level,
    setup_logging,
)


class TestGetLogLevelFromEnv:
    """Tests for get_log_level_from_env."""

    def test_default_is_info(self):
        with patch.dict(os.environ, {}, clear=True):
            assert get_log_level_from_env() == logging.INFO

    def test_level_name(self):
        with patch.dict(os.environ, {"MAILBOX_SYNC_LOG_LEVEL": "warn"}, clear=True):
            assert get_log_level_from_env() == logging.WARNING

    def test_debug_flag_wins(self):
        env = {"MAILBOX_SYNC_LOG_LEVEL": "ERROR", "MAILBOX_SYNC_DEBUG": "true"}
        with patch.dict(os.environ, env, clear=True):
            assert get_log_level_from_env() == logging.DEBUG

    def test_unknown_level_falls_back_to_info(self):
        with patch.dict(os.environ, {"MAILBOX_SYNC_LOG_LEVEL": "LOUD"}, clear=True):
            assert get_log_level_from_env() == logging.INFO


class TestGetLogFilePath:
    def test_environment_override(self, tmp_path):
        target = tmp_path / "custom.log"
        with patch.dict(os.environ, {"MAILBOX_SYNC_LOG_FILE": str(target)}):
            assert get_log_file_path(tmp_path / "logs") == target

    def test_environment_disables(self, tmp_path):
        with patch.dict(os.environ, {"MAILBOX_SYNC_LOG_FILE": "none"}):
            assert get_log_file_path(tmp_path) is None

    def test_daily_file_in_log_dir(self, tmp_path):
        with patch.dict(os.environ, {}, clear=True):
            path = get_log_file_path(tmp_path)

        assert path == daily_log_file(tmp_path)
        assert path.name.startswith(LOG_FILE_PREFIX)

    def test_no_file_without_log_dir(self):
        with patch.dict(os.environ, {}, clear=True):
            assert get_log_file_path() is None


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_console_only(self):
        logger = setup_logging(level=logging.WARNING, enable_file_logging=False)

        assert logger.name == "mailbox_sync"
        assert logger.level == logging.WARNING
        assert logger.propagate is False
        assert len(logger.handlers) == 1
        assert logger.handlers[0].formatter._fmt == CONSOLE_FORMAT

    def test_verbose_uses_debug_and_verbose_format(self):
        logger = setup_logging(verbose=True, enable_file_logging=False, use_colors=False)

        assert logger.level == logging.DEBUG
        assert logger.handlers[0].formatter._fmt == VERBOSE_FORMAT

    def test_file_handler(self, tmp_path):
        log_file = tmp_path / "nested" / "sync.log"

        logger = setup_logging(level=logging.INFO, log_file=log_file)
        get_logger("sync.engine").info("pass finished")
        for handler in logger.handlers:
            handler.flush()

        file_handlers = [h for h in logger.handlers if isinstance(h, logging.FileHandler)]
        assert len(file_handlers) == 1
        assert file_handlers[0].level == logging.DEBUG
        assert "pass finished" in log_file.read_text()

    def test_repeated_setup_replaces_handlers(self):
        setup_logging(enable_file_logging=False)
        logger = setup_logging(enable_file_logging=False)

        assert len(logger.handlers) == 1

    def test_set_log_level_leaves_file_handler_at_debug(self, tmp_path):
        logger = setup_logging(level=logging.INFO, log_file=tmp_path / "sync.log")

        set_log_level(logging.ERROR)

        levels = {type(h): h.level for h in logger.handlers}
        assert levels[logging.FileHandler] == logging.DEBUG
        assert levels[logging.StreamHandler] == logging.ERROR


class TestGetLogger:
    def test_prefixes_package_name(self):
        assert get_logger("daemon").name == "mailbox_sync.daemon"

    def test_keeps_qualified_name(self):
        assert get_logger("mailbox_sync.sync.engine").name == "mailbox_sync.sync.engine"


class TestColoredFormatter:
    def test_no_colors_without_terminal(self):
        formatter = ColoredFormatter("%(levelname)s: %(message)s")
        record = logging.LogRecord("x", logging.ERROR, __file__, 1, "boom", None, None)

        with patch("sys.stderr") as stderr:
            stderr.isatty.return_value = False
            formatter.use_colors = formatter._supports_color()

        assert formatter.format(record) == "ERROR: boom"

    def test_colors_do_not_leak_into_record(self):
        formatter = ColoredFormatter("%(levelname)s")
        formatter.use_colors = True
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "ok", None, None)

        assert "\033[" in formatter.format(record)
        assert record.levelname == "INFO"


class TestCleanupOldLogs:
    def test_keeps_most_recent(self, tmp_path):
        now = time.time()
        for index in range(5):
            path = tmp_path / f"{LOG_FILE_PREFIX}2026010{index}.log"
            path.write_text("x")
            os.utime(path, (now - 100 + index, now - 100 + index))
        (tmp_path / "unrelated.log").write_text("x")

        deleted = cleanup_old_logs(tmp_path, keep_count=2)

        assert deleted == 3
        remaining = sorted(p.name for p in tmp_path.iterdir())
        assert remaining == [
            f"{LOG_FILE_PREFIX}20260103.log",
            f"{LOG_FILE_PREFIX}20260104.log",
            "unrelated.log",
        ]

    def test_missing_directory(self, tmp_path):
        assert cleanup_old_logs(Path(tmp_path / "absent")) == 0
