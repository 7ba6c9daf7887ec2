"""
Reconciler configuration.

All feature gating and tuning is supplied explicitly at construction time.

Configuration file format (config.yaml):

    enabled: true
    interval: 5m               # or interval_ms: 300000
    batch_size: 50
    stale_threshold_ms: 3600000
    resync_message_cap: 1000
    max_workers: 4
    operation_timeout_ms: 30000
    push_lock_timeout_ms: 500
    idempotency_retention_ms: 604800000
    count_label: INBOX
    run_immediately: false
    db_path: ~/.mailbox-sync/mirror.db
    log_dir: ~/.mailbox-sync/logs
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Optional

from mailbox_sync.config.loader import ConfigError, ConfigLoader
from mailbox_sync.daemon import parse_interval
from mailbox_sync.utils import ConfigLayout, resolve_config_dir

logger = logging.getLogger(__name__)

# Keys that must be positive integers
POSITIVE_INT_KEYS = (
    "interval_ms",
    "batch_size",
    "stale_threshold_ms",
    "resync_message_cap",
    "max_workers",
    "operation_timeout_ms",
    "idempotency_retention_ms",
)


@dataclass
class ReconcilerConfig:
    """
    Options recognized by the reconciliation engine and scheduler.

    Attributes:
        enabled: Whether periodic and administrative reconciliation run at all
        interval_ms: Milliseconds between scheduler ticks
        batch_size: Maximum accounts per periodic batch
        stale_threshold_ms: Accounts reconciled more recently are skipped
        resync_message_cap: Recent messages listed by a full resync
        max_workers: Accounts reconciled concurrently within a batch
        operation_timeout_ms: Bound on each provider call and store lock wait
        push_lock_timeout_ms: How long the push path waits for an account lock
        idempotency_retention_ms: Age after which idempotency keys are pruned
        count_label: Label scoping both remote and mirror counts
        run_immediately: Run a batch as soon as the scheduler starts
        db_path: Mirror database path, None for <config_dir>/mirror.db
        log_dir: Directory for log files, None for the default location
    """

    enabled: bool = True
    interval_ms: int = 300_000
    batch_size: int = 50
    stale_threshold_ms: int = 3_600_000
    resync_message_cap: int = 1000
    max_workers: int = 4
    operation_timeout_ms: int = 30_000
    push_lock_timeout_ms: int = 500
    idempotency_retention_ms: int = 7 * 24 * 3_600_000
    count_label: str = "INBOX"
    run_immediately: bool = False
    db_path: Optional[str] = None
    log_dir: Optional[str] = None

    @property
    def operation_timeout(self) -> float:
        """Operation timeout in seconds."""
        return self.operation_timeout_ms / 1000

    def resolve_db_path(self, config_dir: Path) -> str:
        """Database path, defaulting to the config directory."""
        if self.db_path:
            if self.db_path == ":memory:":
                return self.db_path
            return str(Path(self.db_path).expanduser())
        return str(ConfigLayout(config_dir).mirror_db)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ReconcilerConfig:
        """
        Create a config from a dictionary, validating types and ranges.

        ``interval`` accepts interval strings like "30s" or "5m" and takes
        precedence over ``interval_ms``.

        Raises:
            ConfigError: If a value has the wrong type or range
        """
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ConfigError(
                f"Configuration must be a dictionary, got {type(data).__name__}"
            )

        known = {f.name for f in fields(cls)}
        values: dict[str, Any] = {}

        for key, value in data.items():
            if key in known:
                values[key] = value
            elif key != "interval":
                logger.debug(f"Ignoring unknown configuration key '{key}'")

        # Applied last so it wins over interval_ms regardless of key order
        if "interval" in data:
            try:
                values["interval_ms"] = parse_interval(data["interval"])
            except ValueError as e:
                raise ConfigError(str(e)) from e

        for key in ("enabled", "run_immediately"):
            if key in values and not isinstance(values[key], bool):
                raise ConfigError(
                    f"Invalid type for '{key}': expected bool, "
                    f"got {type(values[key]).__name__}"
                )

        for key in (*POSITIVE_INT_KEYS, "push_lock_timeout_ms"):
            if key not in values:
                continue
            value = values[key]
            # bool is an int subclass; reject it explicitly
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigError(
                    f"Invalid type for '{key}': expected int, "
                    f"got {type(value).__name__}"
                )
            minimum = 0 if key == "push_lock_timeout_ms" else 1
            if value < minimum:
                raise ConfigError(f"{key} must be >= {minimum}, got {value}")

        # Remote and mirror counts must share one label
        if "count_label" in values and values["count_label"] is None:
            raise ConfigError("count_label must be a non-empty string")

        for key in ("count_label", "db_path", "log_dir"):
            if key in values and values[key] is not None:
                if not isinstance(values[key], str) or not values[key].strip():
                    raise ConfigError(f"{key} must be a non-empty string")

        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        """Dictionary representation of the config."""
        return asdict(self)


def load_config(config_dir: Path | str | None = None) -> ReconcilerConfig:
    """
    Load and validate ``config.yaml`` from the configuration directory.

    A missing file yields the defaults.

    Raises:
        ConfigError: If the file cannot be parsed or is invalid
    """
    loader = ConfigLoader(config_dir=resolve_config_dir(config_dir))
    return ReconcilerConfig.from_dict(loader.load())
