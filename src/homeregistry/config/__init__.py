"""
Configuration management for Home Registry.

This module handles loading, validating, and saving configuration settings.
"""

from homeregistry.config.settings import (
    ConfigurationError,
    Settings,
    get_backup_passphrase,
    load_config,
    save_config,
)

__all__ = [
    "Settings",
    "load_config",
    "save_config",
    "get_backup_passphrase",
    "ConfigurationError",
]
