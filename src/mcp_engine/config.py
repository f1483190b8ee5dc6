"""Engine configuration loading and validation.

Configuration lives in a YAML file. ``${VAR}`` references are expanded from
the environment, then the result is merged over the built-in defaults.
"""

from __future__ import annotations

import copy
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")

DEFAULT_POOLING: dict[str, Any] = {
    "enabled": False,
    "max_connections": 10,
    "timeout": 30,
    "idle_timeout": 300,
    "health_check_interval": 60,
    "eviction_policy": "lru",
}

DEFAULT_NOTIFICATIONS: dict[str, Any] = {
    "queue_notifications": False,
    "max_pending_notifications": 1000,
    "sse_heartbeat_interval": 30,
    "sse_poll_interval": 0.1,
    "enable_delivery_tracking": True,
    "max_tracked_notifications": 1000,
    "log_notifications": True,
}


class ConfigLoadError(Exception):
    """Raised when configuration loading or validation fails."""

    pass


def expand_env_vars(value: str) -> str:
    """Expand environment variables in a string.

    Supports ${VAR_NAME} syntax. Unknown variables are left unchanged.

    Args:
        value: String potentially containing environment variable references.

    Returns:
        String with known environment variables expanded.
    """

    def replacer(match: re.Match[str]) -> str:
        env_value = os.environ.get(match.group(1))
        if env_value is not None:
            return env_value
        return match.group(0)

    return _ENV_PATTERN.sub(replacer, value)


def expand_tree(value: Any) -> Any:
    """Recursively expand environment variables in every string of a tree."""
    if isinstance(value, str):
        return expand_env_vars(value)
    if isinstance(value, dict):
        return {key: expand_tree(item) for key, item in value.items()}
    if isinstance(value, list):
        return [expand_tree(item) for item in value]
    return value


def deep_merge(base: dict[str, Any], override: dict[str, Any] | None) -> dict[str, Any]:
    """Merge ``override`` into a copy of ``base``.

    Nested dictionaries are merged key by key; any other value in
    ``override`` replaces the base value.

    Args:
        base: Default values.
        override: Values taking precedence.

    Returns:
        New merged dictionary. Neither input is modified.
    """
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


@dataclass
class EngineConfig:
    """Top-level engine configuration."""

    server_name: str = "mcp-engine"
    server_version: str = "1.0.0"
    default_transport: str = "stdio"
    transports: dict[str, dict[str, Any]] = field(default_factory=dict)
    pooling: dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_POOLING))
    notifications: dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_NOTIFICATIONS))
    log_level: str = "INFO"
    audit_log_file: str = ""
    requests_per_minute: int = 0

    @classmethod
    def from_dict(cls, config: dict[str, Any]) -> EngineConfig:
        """Create an EngineConfig from a configuration dictionary.

        Args:
            config: Dictionary parsed from YAML configuration.

        Returns:
            EngineConfig with defaults applied.

        Raises:
            ConfigLoadError: If a section has the wrong shape.
        """
        config = expand_tree(config)

        for section in ("server", "transports", "connection_pooling", "notifications"):
            if not isinstance(config.get(section, {}), dict):
                raise ConfigLoadError(f"'{section}' must be a mapping")

        server = config.get("server", {})
        transports = config.get("transports", {})
        for name, settings in transports.items():
            if not isinstance(settings, dict):
                raise ConfigLoadError(f"Transport '{name}' settings must be a mapping")

        if "default" in config:
            default_transport = config["default"]
            if transports and default_transport not in transports:
                raise ConfigLoadError(f"Default transport '{default_transport}' is not configured")
        elif transports and "stdio" not in transports:
            default_transport = next(iter(transports))
        else:
            default_transport = "stdio"

        return cls(
            server_name=server.get("name", "mcp-engine"),
            server_version=str(server.get("version", "1.0.0")),
            default_transport=default_transport,
            transports=transports,
            pooling=deep_merge(DEFAULT_POOLING, config.get("connection_pooling")),
            notifications=deep_merge(DEFAULT_NOTIFICATIONS, config.get("notifications")),
            log_level=str(config.get("logging", {}).get("level", "INFO")).upper(),
            audit_log_file=config.get("audit", {}).get("log_file", ""),
            requests_per_minute=int(config.get("rate_limit", {}).get("requests_per_minute", 0)),
        )

    @property
    def server_info(self) -> dict[str, str]:
        """Server identity advertised during initialize."""
        return {"name": self.server_name, "version": self.server_version}

    def transport_config(self, name: str) -> dict[str, Any]:
        """Get a copy of the settings for one transport driver.

        Args:
            name: Driver name.

        Returns:
            Driver settings, or an empty dict if none are configured.
        """
        return copy.deepcopy(self.transports.get(name, {}))


def load_config(path: Path) -> EngineConfig:
    """Load engine configuration from a YAML file.

    Args:
        path: Path to the configuration YAML file.

    Returns:
        EngineConfig instance.

    Raises:
        ConfigLoadError: If the file cannot be found, parsed, or validated.
    """
    if not path.exists():
        raise ConfigLoadError(f"Config file not found: {path}")

    try:
        with open(path) as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Failed to parse config YAML: {e}") from e

    if config is None:
        config = {}
    if not isinstance(config, dict):
        raise ConfigLoadError("Config must be a YAML mapping")

    return EngineConfig.from_dict(config)
