"""Per-plan SQLite file management."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from ..config.database_config import get_database_config
from ..database import plan_db_connection

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1"

META_KEYS = (
    "title",
    "description",
    "analysis_id",
    "owner_id",
    "status",
    "version",
    "created_at",
    "updated_at",
    "completed_at",
    "last_edge_id",
    "metadata",
)


def _json_dump(data: Any) -> Optional[str]:
    if data is None:
        return None
    return json.dumps(data, ensure_ascii=False)


def _json_load(data: Optional[str]) -> Any:
    if not data:
        return None
    try:
        return json.loads(data)
    except (TypeError, ValueError):
        logger.warning("Discarding unreadable JSON column value")
        return None


def get_plan_db_path(plan_id: int) -> Path:
    """Return the database file of ``plan_id``."""
    base_dir = get_database_config().get_plan_store_dir()
    base_dir.mkdir(parents=True, exist_ok=True)
    return base_dir / f"plan_{plan_id}.sqlite"


def initialize_plan_database(plan_id: int) -> Path:
    """Create the per-plan tables; safe to call on an existing file."""
    db_path = get_plan_db_path(plan_id)

    with plan_db_connection(db_path) as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS plan_meta (
                key TEXT PRIMARY KEY,
                value TEXT
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS phases (
                id INTEGER PRIMARY KEY,
                label TEXT NOT NULL,
                position INTEGER NOT NULL,
                description TEXT,
                estimated_duration TEXT,
                completed_at TEXT
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS tasks (
                id INTEGER PRIMARY KEY,
                phase_id INTEGER NOT NULL,
                title TEXT NOT NULL,
                description TEXT,
                estimated_time TEXT,
                resources TEXT,
                position INTEGER,
                status TEXT NOT NULL DEFAULT 'not_started',
                created_by TEXT NOT NULL DEFAULT 'system',
                created_at TEXT,
                updated_at TEXT,
                completed_at TEXT,
                completed_by TEXT,
                deleted_at TEXT,
                FOREIGN KEY (phase_id) REFERENCES phases (id) ON DELETE CASCADE
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS task_dependencies (
                id INTEGER PRIMARY KEY,
                prerequisite_task_id INTEGER NOT NULL,
                dependent_task_id INTEGER NOT NULL,
                created_at TEXT,
                CHECK (prerequisite_task_id <> dependent_task_id),
                UNIQUE (prerequisite_task_id, dependent_task_id),
                FOREIGN KEY (prerequisite_task_id) REFERENCES tasks (id) ON DELETE CASCADE,
                FOREIGN KEY (dependent_task_id) REFERENCES tasks (id) ON DELETE CASCADE
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS progress_snapshots (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                version INTEGER NOT NULL,
                total_tasks INTEGER NOT NULL,
                completed_tasks INTEGER NOT NULL,
                in_progress_tasks INTEGER NOT NULL DEFAULT 0,
                skipped_tasks INTEGER NOT NULL DEFAULT 0,
                per_phase_json TEXT,
                overall_completion_percent INTEGER NOT NULL,
                timestamp TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS task_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                version INTEGER NOT NULL UNIQUE,
                actor_id TEXT NOT NULL,
                operation TEXT NOT NULL,
                target_id INTEGER,
                before_state TEXT,
                after_state TEXT,
                payload TEXT NOT NULL,
                override INTEGER NOT NULL DEFAULT 0,
                undoes_version INTEGER,
                timestamp TEXT NOT NULL
            )
            """
        )
        # dense order is only enforced among live tasks
        conn.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS idx_tasks_phase_position
            ON tasks(phase_id, position) WHERE deleted_at IS NULL
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_phase ON tasks(phase_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_history_actor ON task_history(actor_id, version)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_snapshots_version ON progress_snapshots(version)")

        _upsert_meta(conn, "schema_version", SCHEMA_VERSION)
        conn.execute("INSERT OR IGNORE INTO plan_meta (key, value) VALUES ('version', '0')")

    logger.info("Initialized plan database %s at %s", plan_id, db_path)
    return db_path


def remove_plan_database(plan_id: int) -> None:
    """Delete the plan database file."""
    db_path = get_plan_db_path(plan_id)
    try:
        if db_path.exists():
            db_path.unlink()
            logger.info("Removed plan database at %s", db_path)
    except OSError as exc:  # pragma: no cover - best effort cleanup
        logger.warning("Failed to remove plan database %s: %s", db_path, exc)


def _upsert_meta(conn, key: str, value: Optional[str]) -> None:
    conn.execute(
        """
        INSERT INTO plan_meta (key, value)
        VALUES (?, ?)
        ON CONFLICT(key) DO UPDATE SET value=excluded.value
        """,
        (key, value),
    )


def read_meta(conn) -> Dict[str, Optional[str]]:
    rows = conn.execute("SELECT key, value FROM plan_meta").fetchall()
    return {row["key"]: row["value"] for row in rows}


def write_meta(conn, values: Dict[str, Any]) -> None:
    for key, value in values.items():
        if isinstance(value, (dict, list)):
            value = _json_dump(value)
        elif value is not None:
            value = str(value)
        _upsert_meta(conn, key, value)
