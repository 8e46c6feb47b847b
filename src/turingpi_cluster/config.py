"""CLI configuration management.

Handles persistent CLI configuration stored in ~/.turingpi/config.yaml.
Supports environment variable overrides and CLI flag precedence.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog
import yaml

from .errors import ConfigError
from .shared.paths import CONFIG_FILE, TURINGPI_DIR

logger = structlog.get_logger(__name__)

# Default values
DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_INSTALL_TIMEOUT = 600
DEFAULT_ADDON_TIMEOUT = 120
DEFAULT_HTTP_TIMEOUT = 10.0
DEFAULT_LOG_LEVEL = "warning"

# Environment variable mappings
ENV_VARS = {
    "state_dir": "TURINGPI_STATE_DIR",
    "poll_interval": "TURINGPI_POLL_INTERVAL",
    "install_timeout": "TURINGPI_INSTALL_TIMEOUT",
    "addon_timeout": "TURINGPI_ADDON_TIMEOUT",
    "http_timeout": "TURINGPI_HTTP_TIMEOUT",
    "talosctl": "TURINGPI_TALOSCTL",
    "helm": "TURINGPI_HELM",
    "kubectl": "TURINGPI_KUBECTL",
    "log_level": "TURINGPI_LOG_LEVEL",
}

# Value parsers per key
_PARSERS: dict[str, Any] = {
    "state_dir": lambda v: Path(str(v)).expanduser(),
    "poll_interval": float,
    "install_timeout": int,
    "addon_timeout": int,
    "http_timeout": float,
    "talosctl": str,
    "helm": str,
    "kubectl": str,
    "log_level": str,
}


@dataclass
class CLIConfig:
    """CLI configuration."""

    state_dir: Path = TURINGPI_DIR
    poll_interval: float = DEFAULT_POLL_INTERVAL
    install_timeout: int = DEFAULT_INSTALL_TIMEOUT
    addon_timeout: int = DEFAULT_ADDON_TIMEOUT
    http_timeout: float = DEFAULT_HTTP_TIMEOUT
    talosctl: str = "talosctl"
    helm: str = "helm"
    kubectl: str = "kubectl"
    log_level: str = DEFAULT_LOG_LEVEL

    # Track where each value came from
    _sources: dict[str, str] = field(default_factory=dict)

    def get_source(self, key: str) -> str:
        """Get the source of a config value."""
        return self._sources.get(key, "default")

    def as_dict(self) -> dict[str, Any]:
        """Return public values, paths rendered as strings."""
        values = {key: getattr(self, key) for key in ENV_VARS}
        values["state_dir"] = str(self.state_dir)
        return values


def get_config_path() -> Path:
    """Get the CLI config file path.

    Returns:
        Path to ~/.turingpi/config.yaml (TURINGPI_CONFIG overrides it)
    """
    override = os.environ.get("TURINGPI_CONFIG")
    return Path(override).expanduser() if override else CONFIG_FILE


def _parse(key: str, value: Any) -> Any:
    try:
        return _PARSERS[key](value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {key}: {value!r} ({e})") from e


def load_config() -> CLIConfig:
    """Load CLI configuration.

    Precedence (highest to lowest):
    1. Environment variables
    2. Config file (~/.turingpi/config.yaml)
    3. Defaults

    Returns:
        CLIConfig with values and sources

    Raises:
        ConfigError: If a value cannot be converted to its type.
    """
    config = CLIConfig()
    sources: dict[str, str] = {key: "default" for key in ENV_VARS}

    # Load from config file
    config_path = get_config_path()
    if config_path.exists():
        try:
            with open(config_path) as f:
                file_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Ignoring unreadable config file {config_path}: {e}")
            file_config = {}

        for key in ENV_VARS:
            if key in file_config:
                setattr(config, key, _parse(key, file_config[key]))
                sources[key] = "config file"

    # Override with environment variables
    for key, env_var in ENV_VARS.items():
        if os.environ.get(env_var):
            setattr(config, key, _parse(key, os.environ[env_var]))
            sources[key] = "environment"

    config._sources = sources
    return config


def save_config(key: str, value: Any) -> None:
    """Save a config value to the config file.

    Args:
        key: Config key (one of ENV_VARS)
        value: Value to save

    Raises:
        ConfigError: If the key is unknown or the value invalid.
    """
    if key not in ENV_VARS:
        raise ConfigError(f"Unknown config key: {key}")
    parsed = _parse(key, value)

    config_path = get_config_path()

    # Load existing config
    existing: dict[str, Any] = {}
    if config_path.exists():
        with open(config_path) as f:
            existing = yaml.safe_load(f) or {}

    existing[key] = str(parsed) if isinstance(parsed, Path) else parsed

    config_path.parent.mkdir(parents=True, exist_ok=True)

    with open(config_path, "w") as f:
        yaml.dump(existing, f, default_flow_style=False)


def unset_config(key: str) -> bool:
    """Remove a config value from the config file.

    Args:
        key: Config key to remove

    Returns:
        True if key was removed, False if not found
    """
    config_path = get_config_path()
    if not config_path.exists():
        return False

    with open(config_path) as f:
        existing = yaml.safe_load(f) or {}

    if key not in existing:
        return False

    del existing[key]

    with open(config_path, "w") as f:
        yaml.dump(existing, f, default_flow_style=False)

    return True
