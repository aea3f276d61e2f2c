"""
Configuration settings management for Home Registry.

This module handles loading, validating, and saving configuration settings
from YAML files with support for environment variable overrides.

Configuration is loaded from ~/.homeregistry/config.yaml by default, with the
path overridable via the HOMEREGISTRY_CONFIG environment variable.

The snapshot sealing passphrase is deliberately not a setting: it is read
from HOMEREGISTRY_BACKUP_PASSPHRASE only and never written to disk.
"""

from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from homeregistry.backup.service import DEFAULT_MAX_UPLOAD_BYTES

# Default configuration directory
DEFAULT_CONFIG_DIR = Path.home() / ".homeregistry"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"

DEFAULT_SEAL_ITERATIONS = 600_000

PASSPHRASE_ENV_VAR = "HOMEREGISTRY_BACKUP_PASSPHRASE"


@dataclass
class DatabaseConfig:
    """Live store settings."""

    # Empty means <data_dir>/home_registry.db
    path: str = ""


@dataclass
class BackupConfig:
    """Snapshot catalog settings."""

    # Empty means <data_dir>/backups
    directory: str = ""
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES
    seal_secrets: bool = False
    seal_iterations: int = DEFAULT_SEAL_ITERATIONS


@dataclass
class ApiConfig:
    """HTTP API settings."""

    host: str = "127.0.0.1"
    port: int = 8080
    # SHA-256 hex digest of each token -> username it acts as
    tokens: dict[str, str] = field(default_factory=dict)


@dataclass
class Settings:
    """
    Complete Home Registry configuration settings.

    Settings are loaded from a YAML configuration file and can be overridden
    by environment variables prefixed with HOMEREGISTRY_.

    Attributes:
        data_dir: Directory for the database and snapshot files.
        log_level: Logging verbosity (DEBUG, INFO, WARNING, ERROR).
        database: Live store settings.
        backup: Snapshot catalog and sealing settings.
        api: HTTP API settings.
    """

    data_dir: str = str(DEFAULT_CONFIG_DIR / "data")
    log_level: str = "INFO"

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    backup: BackupConfig = field(default_factory=BackupConfig)
    api: ApiConfig = field(default_factory=ApiConfig)

    @property
    def database_path(self) -> Path:
        """Resolved path of the SQLite database."""
        if self.database.path:
            return Path(self.database.path).expanduser()
        return Path(self.data_dir).expanduser() / "home_registry.db"

    @property
    def backup_dir(self) -> Path:
        """Resolved snapshot directory."""
        if self.backup.directory:
            return Path(self.backup.directory).expanduser()
        return Path(self.data_dir).expanduser() / "backups"


class ConfigurationError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


def get_config_path() -> Path:
    """
    Get the configuration file path.

    Returns the path from HOMEREGISTRY_CONFIG environment variable if set,
    otherwise returns the default path (~/.homeregistry/config.yaml).
    """
    env_path = os.environ.get("HOMEREGISTRY_CONFIG")
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_FILE


def get_backup_passphrase() -> str | None:
    """Get the snapshot sealing passphrase from the environment."""
    return os.environ.get(PASSPHRASE_ENV_VAR) or None


def load_config(config_path: Path | None = None) -> Settings:
    """
    Load configuration from YAML file.

    Reads configuration from the specified path (or default if not provided),
    applies environment variable overrides, and validates the configuration.

    Args:
        config_path: Optional path to configuration file. If not provided,
                    uses HOMEREGISTRY_CONFIG environment variable or default path.

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If the configuration file cannot be read or
                          contains invalid settings.
    """
    if config_path is None:
        config_path = get_config_path()

    settings = Settings()

    if config_path.exists():
        try:
            with open(config_path) as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Cannot read config file: {e}") from e

        if not isinstance(config_data, dict):
            raise ConfigurationError("Config file must contain a mapping")

        settings = _apply_config_data(settings, config_data)

    settings = _apply_environment_overrides(settings)

    _validate_config(settings)

    return settings


def save_config(settings: Settings, config_path: Path | None = None) -> None:
    """
    Save configuration to YAML file.

    Args:
        settings: Settings instance to save.
        config_path: Optional path to configuration file.

    Raises:
        ConfigurationError: If the configuration cannot be written.
    """
    if config_path is None:
        config_path = get_config_path()

    config_path.parent.mkdir(parents=True, exist_ok=True)

    config_data = _settings_to_dict(settings)

    try:
        with open(config_path, "w") as f:
            yaml.safe_dump(config_data, f, default_flow_style=False, sort_keys=False)
        # Token digests are not secrets, but the file names admin accounts
        os.chmod(config_path, 0o600)
    except OSError as e:
        raise ConfigurationError(f"Cannot write config file: {e}") from e


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _apply_config_data(settings: Settings, data: dict[str, Any]) -> Settings:
    """Apply configuration data from parsed YAML to settings."""
    try:
        app_data = data.get("homeregistry") or {}
        if "data_dir" in app_data:
            settings.data_dir = str(app_data["data_dir"])
        if "log_level" in app_data:
            settings.log_level = str(app_data["log_level"]).upper()

        database = data.get("database") or {}
        if "path" in database:
            settings.database.path = str(database["path"] or "")

        backup = data.get("backup") or {}
        if "directory" in backup:
            settings.backup.directory = str(backup["directory"] or "")
        if "max_upload_bytes" in backup:
            settings.backup.max_upload_bytes = int(backup["max_upload_bytes"])
        if "seal_secrets" in backup:
            settings.backup.seal_secrets = _to_bool(backup["seal_secrets"])
        if "seal_iterations" in backup:
            settings.backup.seal_iterations = int(backup["seal_iterations"])

        api = data.get("api") or {}
        if "host" in api:
            settings.api.host = str(api["host"])
        if "port" in api:
            settings.api.port = int(api["port"])
        if "tokens" in api:
            tokens = api["tokens"] or {}
            if not isinstance(tokens, dict):
                raise ConfigurationError("api.tokens must map token digests to usernames")
            settings.api.tokens = {str(k): str(v) for k, v in tokens.items()}
    except (AttributeError, TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid config value: {e}") from e

    return settings


def _apply_environment_overrides(settings: Settings) -> Settings:
    """Apply environment variable overrides to settings."""
    env_map: dict[str, tuple[str, Callable[[str], Any]]] = {
        "HOMEREGISTRY_DATA_DIR": ("data_dir", str),
        "HOMEREGISTRY_LOG_LEVEL": ("log_level", lambda x: x.upper()),
        "HOMEREGISTRY_DATABASE_PATH": ("database.path", str),
        "HOMEREGISTRY_BACKUP_DIR": ("backup.directory", str),
        "HOMEREGISTRY_MAX_UPLOAD_BYTES": ("backup.max_upload_bytes", int),
        "HOMEREGISTRY_API_HOST": ("api.host", str),
        "HOMEREGISTRY_API_PORT": ("api.port", int),
    }

    for env_var, (attr_path, converter) in env_map.items():
        value = os.environ.get(env_var)
        if value is not None:
            try:
                _set_nested_attr(settings, attr_path, converter(value))
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {env_var}: {value}") from e

    return settings


def _set_nested_attr(obj: Any, path: str, value: Any) -> None:
    """Set a nested attribute on an object using dot notation."""
    parts = path.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    setattr(obj, parts[-1], value)


def _validate_config(settings: Settings) -> None:
    """
    Validate configuration settings.

    Raises:
        ConfigurationError: If configuration is invalid.
    """
    valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    if settings.log_level not in valid_log_levels:
        raise ConfigurationError(
            f"Invalid log_level: {settings.log_level}. "
            f"Must be one of: {', '.join(sorted(valid_log_levels))}"
        )

    if settings.backup.max_upload_bytes < 1:
        raise ConfigurationError("max_upload_bytes must be at least 1")

    if settings.backup.seal_iterations < 1:
        raise ConfigurationError("seal_iterations must be at least 1")

    if not 0 <= settings.api.port <= 65535:
        raise ConfigurationError(f"Invalid api port: {settings.api.port}")

    for digest in settings.api.tokens:
        if len(digest) != 64 or any(c not in "0123456789abcdefABCDEF" for c in digest):
            raise ConfigurationError(
                "api.tokens keys must be SHA-256 hex digests; "
                "use 'homeregistry token' to generate one"
            )


def _settings_to_dict(settings: Settings) -> dict[str, Any]:
    """Convert Settings instance to dictionary for YAML serialization."""
    return {
        "homeregistry": {
            "data_dir": settings.data_dir,
            "log_level": settings.log_level,
        },
        "database": {
            "path": settings.database.path,
        },
        "backup": {
            "directory": settings.backup.directory,
            "max_upload_bytes": settings.backup.max_upload_bytes,
            "seal_secrets": settings.backup.seal_secrets,
            "seal_iterations": settings.backup.seal_iterations,
        },
        "api": {
            "host": settings.api.host,
            "port": settings.api.port,
            "tokens": dict(settings.api.tokens),
        },
    }
