"""
Storage locations.

Everything lives under one root directory (``DB_ROOT``)::

    <root>/main/plan_registry.db   registry of every plan
    <root>/plans/plan_<id>.sqlite  one file per plan
"""

import logging
import os
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_DB_ROOT = "data/databases"


class DatabaseConfig:
    def __init__(self, db_root: Optional[str] = None):
        self.db_root = db_root or os.getenv("DB_ROOT", DEFAULT_DB_ROOT)
        self.registry_dir = Path(self.db_root, "main")
        self.plans_dir = Path(self.db_root, "plans")
        for directory in (self.registry_dir, self.plans_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def get_main_db_path(self) -> str:
        return str(self.registry_dir / "plan_registry.db")

    def get_plan_store_dir(self) -> Path:
        return self.plans_dir

    def get_plan_db_path(self, plan_id: int) -> Path:
        return self.plans_dir / f"plan_{plan_id}.sqlite"


_db_config: Optional[DatabaseConfig] = None


def get_database_config() -> DatabaseConfig:
    global _db_config
    if _db_config is None:
        _db_config = DatabaseConfig()
        logger.debug("Storage root: %s", _db_config.db_root)
    return _db_config


def reset_database_config() -> None:
    """Drop the cached config so the next call re-reads ``DB_ROOT``."""
    global _db_config
    _db_config = None


def get_main_database_path() -> str:
    return get_database_config().get_main_db_path()
