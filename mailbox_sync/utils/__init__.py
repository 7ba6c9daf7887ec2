"""
mailbox_sync.utils - Utility module

Configuration directory layout and logging configuration.
"""

from mailbox_sync.utils.paths import DEFAULT_CONFIG_DIR, ConfigLayout, resolve_config_dir

__all__ = ["ConfigLayout", "resolve_config_dir", "DEFAULT_CONFIG_DIR"]
