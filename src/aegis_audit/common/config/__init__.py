"""Configuration module."""

from aegis_audit.common.config.settings import (
    Config,
    Environment,
    LogLevel,
    StorageType,
    get_config,
    reset_config,
)

__all__ = [
    "Config",
    "Environment",
    "LogLevel",
    "StorageType",
    "get_config",
    "reset_config",
]
