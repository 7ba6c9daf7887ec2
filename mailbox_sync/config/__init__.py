"""
mailbox_sync.config - Configuration management module

Contains configuration loading, validation, and default settings.
"""

from mailbox_sync.config.loader import ConfigError, ConfigLoader
from mailbox_sync.config.settings import ReconcilerConfig, load_config

__all__ = [
    "ReconcilerConfig",
    "ConfigError",
    "ConfigLoader",
    "load_config",
]
