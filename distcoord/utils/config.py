"""
Configuration management for distcoord.

Handles loading and merging configuration from:
- Built-in defaults
- The repository's config/default.yaml (when present)
- An explicit YAML configuration file
- Environment variables
"""

import copy
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

DEFAULTS: Dict[str, Any] = {
    "node": {
        "id": 1,
        "data_dir": "./data",
    },
    "peers": {
        "count": 4,
        "host": "localhost",
        "base_port": 5000,
    },
    "election": {
        "settle_delay_s": 3.0,
        "probe_timeout_s": 2.0,
        "step_down_timeout_s": 1.0,
        "heartbeat_interval_s": 30.0,
        "liveness_interval_s": 10.0,
    },
    "delivery": {
        "max_attempts": 3,
        "base_delay_s": 1.0,
        "grace_window_s": 300.0,
        "delivered_retention_s": 5.0,
        "cleanup_interval_s": 5.0,
    },
    "checkpoint": {
        "interval_s": 300.0,
        "sync_interval_s": 600.0,
        "snapshot_window_days": 7,
    },
    "oplog": {
        "max_buffer_size": 1000,
    },
    "batch": {
        "mode": "thread",
        "max_workers": None,
        "default_chunk_size": 20,
    },
    "startup": {
        "connect_attempts": 5,
    },
    "logging": {
        "level": "INFO",
        "format": "json",
        "output": "stdout",
    },
}


class Config:
    """Configuration manager for a coordination node."""

    def __init__(self, config_file: Optional[str] = None):
        """
        Initialize configuration.

        Args:
            config_file: Path to configuration file. If None, uses defaults only.
        """
        self._config: Dict[str, Any] = copy.deepcopy(DEFAULTS)
        self._load_default_config()

        if config_file:
            self._load_config_file(config_file)

        self._apply_env_overrides()

    def _load_default_config(self) -> None:
        """Load the repository default configuration file if it exists."""
        default_config_path = Path(__file__).parent.parent.parent / "config" / "default.yaml"
        if default_config_path.exists():
            self._load_config_file(str(default_config_path))

    def _load_config_file(self, config_file: str) -> None:
        """
        Load configuration from YAML file.

        Args:
            config_file: Path to YAML configuration file
        """
        with open(config_file, "r") as f:
            file_config = yaml.safe_load(f) or {}
            self._merge_config(file_config)

    def _merge_config(self, new_config: Dict[str, Any]) -> None:
        """Deep merge new configuration into existing configuration."""
        self._config = self._deep_merge(self._config, new_config)

    def _deep_merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """
        Deep merge two dictionaries.

        Args:
            base: Base dictionary
            override: Override dictionary

        Returns:
            Merged dictionary
        """
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value
        return result

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides."""
        # NODE_ID may be "node-3" or just "3"
        if node_id := os.getenv("NODE_ID"):
            self.set("node.id", int(node_id.rsplit("-", 1)[-1]))

        # WORKER_ID is the numeric peer id assigned by the process launcher
        if worker_id := os.getenv("WORKER_ID"):
            self.set("node.id", int(worker_id))

        if peer_count := os.getenv("PEER_COUNT"):
            self.set("peers.count", int(peer_count))

        if peer_host := os.getenv("PEER_HOST"):
            self.set("peers.host", peer_host)

        if base_port := os.getenv("PEER_BASE_PORT"):
            self.set("peers.base_port", int(base_port))

        if data_dir := os.getenv("DATA_DIR"):
            self.set("node.data_dir", data_dir)

        if log_level := os.getenv("LOG_LEVEL"):
            self.set("logging.level", log_level)

        if log_format := os.getenv("LOG_FORMAT"):
            self.set("logging.format", log_format)

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key: Configuration key in dot notation (e.g., "peers.base_port")
            default: Default value if key not found

        Returns:
            Configuration value
        """
        keys = key.split(".")
        value = self._config
        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default
        return value

    def set(self, key: str, value: Any) -> None:
        """
        Set configuration value using dot notation.

        Args:
            key: Configuration key in dot notation
            value: Value to set
        """
        keys = key.split(".")
        config = self._config
        for k in keys[:-1]:
            if k not in config:
                config[k] = {}
            config = config[k]
        config[keys[-1]] = value

    def section(self, key: str) -> Dict[str, Any]:
        """Return a copy of a configuration section (empty if missing)."""
        value = self.get(key, {})
        return dict(value) if isinstance(value, dict) else {}

    def to_dict(self) -> Dict[str, Any]:
        """
        Get entire configuration as dictionary.

        Returns:
            Configuration dictionary
        """
        return copy.deepcopy(self._config)


_config: Optional[Config] = None


def get_config(config_file: Optional[str] = None) -> Config:
    """
    Get global configuration instance.

    Args:
        config_file: Optional configuration file path

    Returns:
        Configuration instance
    """
    global _config
    if _config is None:
        _config = Config(config_file)
    return _config


def reset_config() -> None:
    """Reset global configuration (mainly for testing)."""
    global _config
    _config = None
