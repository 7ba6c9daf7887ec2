"""
Logging configuration module for mailbox_sync.

Provides centralized logging configuration with support for:
- Console and daily file logging
- Configurable log levels via environment variables
- Colored console output when the terminal supports it
"""

import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

# Root of the package logger hierarchy
LOGGER_NAME = "mailbox_sync"

# Simplified format for console
CONSOLE_FORMAT = "%(levelname)s: %(message)s"

# Verbose format, also used for log files
VERBOSE_FORMAT = (
    "%(asctime)s - %(name)s - %(levelname)s - [%(threadName)s] - %(message)s"
)

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Log file names carry the day they were opened
LOG_FILE_PREFIX = "mailbox_sync_"

# Environment variable names
ENV_LOG_LEVEL = "MAILBOX_SYNC_LOG_LEVEL"
ENV_DEBUG = "MAILBOX_SYNC_DEBUG"
ENV_LOG_FILE = "MAILBOX_SYNC_LOG_FILE"


class ColoredFormatter(logging.Formatter):
    """
    A logging formatter that adds ANSI color codes to the level name.

    Colors are only applied when stderr is a terminal that supports them.
    """

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(
        self,
        fmt: Optional[str] = None,
        datefmt: Optional[str] = None,
        use_colors: bool = True,
    ):
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors and self._supports_color()

    def _supports_color(self) -> bool:
        if not hasattr(sys.stderr, "isatty") or not sys.stderr.isatty():
            return False

        # https://no-color.org/
        if os.environ.get("NO_COLOR"):
            return False

        return os.environ.get("TERM", "") != "dumb"

    def format(self, record: logging.LogRecord) -> str:
        # Copy so other handlers see the plain level name
        record = logging.makeLogRecord(record.__dict__)

        if self.use_colors and record.levelname in self.COLORS:
            color = self.COLORS[record.levelname]
            record.levelname = f"{color}{record.levelname}{self.RESET}"

        return super().format(record)


def get_log_level_from_env() -> int:
    """
    Get the logging level from environment variables.

    MAILBOX_SYNC_DEBUG takes precedence over MAILBOX_SYNC_LOG_LEVEL.
    Unknown level names fall back to INFO.
    """
    if os.environ.get(ENV_DEBUG, "").lower() in ("1", "true", "yes"):
        return logging.DEBUG

    level_str = os.environ.get(ENV_LOG_LEVEL, "INFO").upper()

    level_map = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "WARN": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }

    return level_map.get(level_str, logging.INFO)


def daily_log_file(log_dir: Path) -> Path:
    """Log file for today inside ``log_dir``."""
    return log_dir / f"{LOG_FILE_PREFIX}{datetime.now().strftime('%Y%m%d')}.log"


def get_log_file_path(log_dir: Optional[Path] = None) -> Optional[Path]:
    """
    Resolve the log file path.

    MAILBOX_SYNC_LOG_FILE wins ("none" or "disabled" turns file logging
    off); otherwise a daily file in ``log_dir``; otherwise no file.
    """
    log_file = os.environ.get(ENV_LOG_FILE)
    if log_file is not None:
        if log_file.lower() in ("none", "disabled", ""):
            return None
        return Path(log_file).expanduser()

    if log_dir is not None:
        return daily_log_file(Path(log_dir).expanduser())

    return None


def setup_logging(
    level: Optional[int] = None,
    verbose: bool = False,
    log_dir: Optional[Path] = None,
    log_file: Optional[Path] = None,
    enable_file_logging: bool = True,
    use_colors: bool = True,
) -> logging.Logger:
    """
    Configure logging for the mailbox_sync application.

    Args:
        level: Logging level. If None, determined from environment variables.
        verbose: If True, log at DEBUG with the verbose format.
        log_dir: Directory for daily log files.
        log_file: Explicit log file path; overrides log_dir and environment.
        enable_file_logging: If False, disable file logging entirely.
        use_colors: If True, color console output (when supported).

    Returns:
        The mailbox_sync package logger

    Example:
        setup_logging(verbose=True)
        setup_logging(log_dir=Path("~/.mailbox-sync/logs").expanduser())
    """
    if level is None:
        level = get_log_level_from_env()
    if verbose:
        level = logging.DEBUG

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.handlers.clear()
    logger.propagate = False

    console_format = VERBOSE_FORMAT if verbose else CONSOLE_FORMAT

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)

    console_formatter: logging.Formatter
    if use_colors:
        console_formatter = ColoredFormatter(console_format, DATE_FORMAT)
    else:
        console_formatter = logging.Formatter(console_format, DATE_FORMAT)

    console_handler.setFormatter(console_formatter)
    logger.addHandler(console_handler)

    if enable_file_logging:
        file_path = log_file or get_log_file_path(log_dir)

        if file_path:
            try:
                file_path.parent.mkdir(parents=True, exist_ok=True)

                file_handler = logging.FileHandler(file_path, encoding="utf-8")
                file_handler.setLevel(logging.DEBUG)  # Always capture debug in file
                file_handler.setFormatter(logging.Formatter(VERBOSE_FORMAT, DATE_FORMAT))
                logger.addHandler(file_handler)

                logger.debug(f"Log file: {file_path}")
            except OSError as e:
                logger.warning(f"Could not create log file {file_path}: {e}")

    return logger


def cleanup_old_logs(log_dir: Path, keep_count: int = 10) -> int:
    """
    Delete old daily log files, keeping the ``keep_count`` most recent.

    Returns:
        Number of files deleted.
    """
    if keep_count <= 0 or not log_dir.exists():
        return 0

    logs = sorted(
        log_dir.glob(f"{LOG_FILE_PREFIX}*.log"),
        key=lambda p: p.stat().st_mtime,
        reverse=True,
    )

    deleted_count = 0
    for old_log in logs[keep_count:]:
        try:
            old_log.unlink()
            deleted_count += 1
        except OSError as e:
            logging.getLogger(LOGGER_NAME).debug(f"Could not delete {old_log}: {e}")

    return deleted_count


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger inside the mailbox_sync hierarchy.

    Example:
        logger = get_logger(__name__)
    """
    if not name.startswith(LOGGER_NAME):
        name = f"{LOGGER_NAME}.{name}"

    return logging.getLogger(name)


def set_log_level(level: int) -> None:
    """Change the console logging level at runtime."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    for handler in logger.handlers:
        # File handlers stay at DEBUG
        if not isinstance(handler, logging.FileHandler):
            handler.setLevel(level)


__all__ = [
    "setup_logging",
    "get_logger",
    "set_log_level",
    "cleanup_old_logs",
    "ColoredFormatter",
    "get_log_level_from_env",
    "get_log_file_path",
    "daily_log_file",
    "LOGGER_NAME",
    "CONSOLE_FORMAT",
    "VERBOSE_FORMAT",
    "DATE_FORMAT",
]
