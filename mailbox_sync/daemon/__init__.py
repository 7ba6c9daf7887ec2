"""
mailbox_sync.daemon - Scheduler and daemon module

Periodic batch reconciliation, PID file management and signal handling.
"""

import re


def parse_interval(interval: str | int) -> int:
    """Parse an interval string into milliseconds.

    Accepts interval strings with units (s, m, h, d) or plain integers.

    Args:
        interval: Interval specification. Examples:
            - "30s" -> 30000
            - "5m" -> 300000
            - "1h" -> 3600000
            - "1d" -> 86400000
            - 1500 -> 1500 milliseconds (pass-through)
            - "1500" -> 1500 milliseconds (numeric string)

    Returns:
        Interval in milliseconds as an integer.

    Raises:
        ValueError: If the interval format is invalid or uses an unknown unit.
    """
    if isinstance(interval, bool):
        raise ValueError("Invalid interval type: bool. Expected str or int.")

    if isinstance(interval, int):
        if interval <= 0:
            raise ValueError(f"Interval must be positive, got {interval}")
        return interval

    if isinstance(interval, str):
        # Try numeric string first
        try:
            value = int(interval)
        except ValueError:
            pass
        else:
            if value <= 0:
                raise ValueError(f"Interval must be positive, got {value}")
            return value

        # Parse interval with unit suffix
        match = re.match(r"^(\d+)\s*([smhd])$", interval.lower().strip())
        if not match:
            raise ValueError(
                f"Invalid interval format: '{interval}'. "
                "Use format like '30s', '5m', '1h', or '1d'."
            )

        value = int(match.group(1))
        unit = match.group(2)

        multipliers = {
            "s": 1000,
            "m": 60_000,
            "h": 3_600_000,
            "d": 86_400_000,
        }

        if value == 0:
            raise ValueError(f"Interval must be positive, got '{interval}'")
        return value * multipliers[unit]

    raise ValueError(
        f"Invalid interval type: {type(interval).__name__}. Expected str or int."
    )


# Imports after parse_interval to avoid circular dependencies
from mailbox_sync.daemon.scheduler import (  # noqa: E402
    BatchSummary,
    DaemonAlreadyRunningError,
    DaemonError,
    DaemonRunner,
    PIDFileError,
    PIDFileManager,
    ReconciliationScheduler,
    SchedulerStats,
)

__all__ = [
    "parse_interval",
    "ReconciliationScheduler",
    "SchedulerStats",
    "BatchSummary",
    "DaemonRunner",
    "DaemonError",
    "PIDFileError",
    "DaemonAlreadyRunningError",
    "PIDFileManager",
]
