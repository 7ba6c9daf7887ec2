"""
Layout of the mailbox-sync configuration directory.

Everything the reconciler keeps on disk lives under one directory:

    ~/.mailbox-sync/
        config.yaml              reconciler options
        mirror.db                mirror store and idempotency keys
        daemon.pid               PID of the running daemon
        reauth_required.json     accounts waiting to be re-linked
        tokens/<ref>.json        OAuth token per credential reference

The directory itself is chosen by an explicit argument, then the
MAILBOX_SYNC_CONFIG_DIR environment variable, then ~/.mailbox-sync.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_CONFIG_DIR = Path.home() / ".mailbox-sync"
CONFIG_DIR_ENV_VAR = "MAILBOX_SYNC_CONFIG_DIR"

CONFIG_FILE_NAME = "config.yaml"
MIRROR_DB_NAME = "mirror.db"
PID_FILE_NAME = "daemon.pid"
REAUTH_FILE_NAME = "reauth_required.json"
TOKENS_DIR_NAME = "tokens"


def resolve_config_dir(config_dir: Path | str | None = None) -> Path:
    """Absolute configuration directory; an empty environment value is ignored."""
    if config_dir is None:
        config_dir = os.environ.get(CONFIG_DIR_ENV_VAR) or DEFAULT_CONFIG_DIR
    return Path(config_dir).expanduser().resolve()


@dataclass(frozen=True)
class ConfigLayout:
    """
    Files the service, daemon and auth store keep under one config directory.

    Usage:
        layout = ConfigLayout.resolve()          # env var or ~/.mailbox-sync
        db = MirrorDatabase(str(layout.mirror_db))
    """

    root: Path

    @classmethod
    def resolve(cls, config_dir: Path | str | None = None) -> ConfigLayout:
        return cls(resolve_config_dir(config_dir))

    @property
    def config_file(self) -> Path:
        return self.root / CONFIG_FILE_NAME

    @property
    def mirror_db(self) -> Path:
        return self.root / MIRROR_DB_NAME

    @property
    def pid_file(self) -> Path:
        return self.root / PID_FILE_NAME

    @property
    def reauth_file(self) -> Path:
        return self.root / REAUTH_FILE_NAME

    @property
    def tokens_dir(self) -> Path:
        return self.root / TOKENS_DIR_NAME
