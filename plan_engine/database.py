"""Registry database initialisation.

The registry only indexes plans (title, analysis, status, version). The
phases, tasks, edges, history and progress snapshots of each plan live in a
dedicated SQLite file opened with :func:`plan_db_connection`.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .config.database_config import get_database_config, get_main_database_path
from .database_pool import close_registry_pool, get_db, open_registry_pool

logger = logging.getLogger(__name__)


def init_db() -> None:
    """Initialise the registry database and the plan directory."""
    config = get_database_config()
    main_db_path = get_main_database_path()

    open_registry_pool(main_db_path)
    config.get_plan_store_dir().mkdir(parents=True, exist_ok=True)

    with get_db() as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS plans (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                description TEXT,
                analysis_id TEXT,
                owner_id TEXT,
                status TEXT NOT NULL DEFAULT 'active',
                version INTEGER NOT NULL DEFAULT 0,
                plan_db_path TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_plans_updated_at ON plans(updated_at DESC, id DESC)"
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_plans_analysis ON plans(analysis_id, status)"
        )

    logger.info("Plan registry initialised at %s", main_db_path)


def close_db_pool() -> None:
    close_registry_pool()


@contextmanager
def plan_db_connection(plan_path: Path) -> Iterator[sqlite3.Connection]:
    """Open one transaction on a plan file; commit on success, roll back on error."""
    conn = sqlite3.connect(plan_path, isolation_level="DEFERRED", timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")

    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
