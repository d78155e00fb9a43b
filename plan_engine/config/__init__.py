"""Configuration helpers for storage locations."""

from .database_config import (
    DatabaseConfig,
    get_database_config,
    get_main_database_path,
    reset_database_config,
)

__all__ = [
    "DatabaseConfig",
    "get_database_config",
    "get_main_database_path",
    "reset_database_config",
]
