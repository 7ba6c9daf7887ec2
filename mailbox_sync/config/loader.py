"""
Configuration loader module for mailbox reconciliation.

Provides YAML-based configuration file loading with support for:
- Loading configuration from default or custom paths
- Graceful handling of missing configuration files
- Rejecting files that are not a YAML mapping
"""

import logging
from pathlib import Path
from typing import Any

import yaml

from mailbox_sync.utils.paths import CONFIG_FILE_NAME, resolve_config_dir

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration loading or validation fails."""

    pass


class ConfigLoader:
    """
    YAML configuration file loader.

    Attributes:
        config_dir: Directory containing the configuration file
        config_file: Name of the configuration file

    Usage:
        loader = ConfigLoader()
        raw = loader.load()

        # With custom path
        loader = ConfigLoader(config_dir=Path("/custom/path"))
        raw = loader.load()

        # Load from specific file
        raw = loader.load_from_file("/path/to/config.yaml")
    """

    def __init__(
        self, config_dir: Path | None = None, config_file: str = CONFIG_FILE_NAME
    ):
        """
        Initialize the configuration loader.

        Args:
            config_dir: Directory containing the configuration file.
                       Defaults to ~/.mailbox-sync/ or $MAILBOX_SYNC_CONFIG_DIR
            config_file: Name of the configuration file (default: config.yaml)
        """
        self.config_dir = resolve_config_dir(config_dir)
        self.config_file = config_file

    @property
    def config_path(self) -> Path:
        """Full path to the configuration file."""
        return self.config_dir / self.config_file

    def load(self) -> dict[str, Any]:
        """
        Load configuration from the default configuration file.

        Returns:
            Dictionary of configuration values, or empty dict if the file
            doesn't exist

        Raises:
            ConfigError: If the configuration file exists but cannot be parsed
        """
        return self.load_from_file(self.config_path)

    def load_from_file(self, path: Path | str) -> dict[str, Any]:
        """
        Load configuration from a specific file.

        Args:
            path: Path to the configuration file

        Returns:
            Dictionary of configuration values, or empty dict if the file
            doesn't exist or is empty

        Raises:
            ConfigError: If the file cannot be read or is not a YAML mapping
        """
        path = Path(path)

        if not path.exists():
            logger.debug(f"Configuration file not found: {path}")
            return {}

        try:
            with open(path, encoding="utf-8") as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse YAML configuration file: {e}") from e
        except OSError as e:
            raise ConfigError(f"Failed to read configuration file: {e}") from e

        if config is None:
            logger.debug(f"Configuration file is empty: {path}")
            return {}

        if not isinstance(config, dict):
            raise ConfigError(
                f"Configuration file must contain a YAML dictionary, "
                f"got {type(config).__name__}"
            )

        logger.debug(f"Loaded configuration from {path}")
        return config
