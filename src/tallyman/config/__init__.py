"""Application configuration helpers."""

from __future__ import annotations

from .env import env_choice, env_int, require_env_vars
from .errors import ConfigurationError, MissingConfigurationError
from .logging import configure_logging
from .queue import QueueConfig, get_queue_config
from .reconciliation import ReconciliationConfig, get_reconciliation_config
from .storage import (
    DatabaseConfig,
    StorageConfig,
    get_database_config,
    get_database_uri,
    get_storage_config,
)

__all__ = [
    "ConfigurationError",
    "DatabaseConfig",
    "MissingConfigurationError",
    "QueueConfig",
    "ReconciliationConfig",
    "StorageConfig",
    "configure_logging",
    "env_choice",
    "env_int",
    "get_database_config",
    "get_database_uri",
    "get_queue_config",
    "get_reconciliation_config",
    "get_storage_config",
    "require_env_vars",
]
