from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict, List, Optional

from ..database import get_db, plan_db_connection
from ..errors import DatabaseError, ErrorCode, NotFoundError, VersionConflictError
from ..services.plans.plan_models import (
    DependencyEdge,
    HistoryEntry,
    Phase,
    PhaseProgress,
    PlanInfo,
    PlanState,
    PlanStatus,
    PlanSummary,
    ProgressSnapshot,
    Task,
)
from .plan_storage import (
    _json_dump,
    _json_load,
    get_plan_db_path,
    initialize_plan_database,
    read_meta,
    remove_plan_database,
    write_meta,
)

logger = logging.getLogger(__name__)


class PlanRepository:
    """Repository for the plan registry (main DB) and per-plan SQLite storage."""

    def list_plans(
        self,
        *,
        status: Optional[str] = None,
        analysis_id: Optional[str] = None,
        owner_id: Optional[str] = None,
    ) -> List[PlanSummary]:
        sql = [
            "SELECT id, title, description, analysis_id, status, version, updated_at",
            "FROM plans",
            "WHERE 1=1",
        ]
        params: List[Any] = []
        if status:
            sql.append("AND status=?")
            params.append(status)
        if analysis_id:
            sql.append("AND analysis_id=?")
            params.append(analysis_id)
        if owner_id:
            sql.append("AND owner_id=?")
            params.append(owner_id)
        sql.append("ORDER BY updated_at DESC, id DESC")
        with get_db() as conn:
            rows = conn.execute("\n".join(sql), params).fetchall()

        return [
            PlanSummary(
                id=row["id"],
                title=row["title"],
                description=row["description"],
                analysis_id=row["analysis_id"],
                status=row["status"],
                version=row["version"],
                updated_at=row["updated_at"],
            )
            for row in rows
        ]

    def find_active_plan_for_analysis(self, analysis_id: str) -> Optional[int]:
        with get_db() as conn:
            row = conn.execute(
                "SELECT id FROM plans WHERE analysis_id=? AND status=? ORDER BY id DESC LIMIT 1",
                (analysis_id, PlanStatus.ACTIVE.value),
            ).fetchone()
        return row["id"] if row else None

    def plan_exists(self, plan_id: int) -> bool:
        with get_db() as conn:
            row = conn.execute("SELECT 1 FROM plans WHERE id=?", (plan_id,)).fetchone()
        return row is not None

    def register_plan(
        self,
        title: str,
        *,
        description: Optional[str] = None,
        analysis_id: Optional[str] = None,
        owner_id: Optional[str] = None,
    ) -> int:
        """Reserve a plan id in the registry and create its database file."""
        with get_db() as conn:
            cursor = conn.execute(
                """
                INSERT INTO plans (title, description, analysis_id, owner_id, status, version, plan_db_path)
                VALUES (?, ?, ?, ?, ?, 0, NULL)
                """,
                (title, description, analysis_id, owner_id, PlanStatus.ACTIVE.value),
            )
            plan_id = cursor.lastrowid
            conn.execute(
                "UPDATE plans SET plan_db_path=?, updated_at=CURRENT_TIMESTAMP WHERE id=?",
                (f"plan_{plan_id}.sqlite", plan_id),
            )

        initialize_plan_database(plan_id)
        return plan_id

    def unregister_plan(self, plan_id: int) -> None:
        """Drop a plan whose first commit never landed."""
        remove_plan_database(plan_id)
        with get_db() as conn:
            conn.execute("DELETE FROM plans WHERE id=?", (plan_id,))

    def sync_registry(self, plan: PlanInfo) -> None:
        """Mirror the committed plan header into the registry."""
        with get_db() as conn:
            conn.execute(
                """
                UPDATE plans
                SET title=?, description=?, status=?, version=?, updated_at=CURRENT_TIMESTAMP
                WHERE id=?
                """,
                (plan.title, plan.description, plan.status.value, plan.version, plan.id),
            )

    # ------------------------------------------------------------------
    # per-plan state
    # ------------------------------------------------------------------

    def load_state(self, plan_id: int) -> PlanState:
        if not self.plan_exists(plan_id):
            raise NotFoundError(f"Plan {plan_id} not found", error_code=ErrorCode.PLAN_NOT_FOUND, plan_id=plan_id)
        try:
            with plan_db_connection(get_plan_db_path(plan_id)) as conn:
                meta = read_meta(conn)
                phase_rows = conn.execute("SELECT * FROM phases ORDER BY position, id").fetchall()
                task_rows = conn.execute("SELECT * FROM tasks ORDER BY phase_id, position, id").fetchall()
                edge_rows = conn.execute("SELECT * FROM task_dependencies ORDER BY id").fetchall()
        except sqlite3.Error as exc:
            raise DatabaseError(
                f"Failed to load plan {plan_id}",
                error_code=ErrorCode.DATABASE_CONNECTION_FAILED,
                operation="load_state",
                context={"plan_id": plan_id},
                cause=exc,
            ) from exc

        if int(meta.get("version") or 0) == 0:
            raise NotFoundError(f"Plan {plan_id} not found", error_code=ErrorCode.PLAN_NOT_FOUND, plan_id=plan_id)
        return _rows_to_plan_state(plan_id, meta, phase_rows, task_rows, edge_rows)

    def write_state(self, conn, state: PlanState, expected_version: int) -> None:
        """Replace the stored plan with ``state`` inside the caller's transaction.

        The stored version must still equal ``expected_version``; the write is
        rejected otherwise so a concurrent writer can never be overwritten.
        """
        row = conn.execute("SELECT value FROM plan_meta WHERE key='version'").fetchone()
        stored_version = int(row["value"]) if row and row["value"] is not None else 0
        if stored_version != expected_version:
            raise VersionConflictError(state.id, expected_version, stored_version)
        updated = conn.execute(
            "UPDATE plan_meta SET value=? WHERE key='version' AND value=?",
            (str(state.version), str(expected_version)),
        ).rowcount
        if updated == 0:
            raise VersionConflictError(state.id, expected_version, stored_version)

        plan = state.plan
        write_meta(
            conn,
            {
                "title": plan.title,
                "description": plan.description,
                "analysis_id": plan.analysis_id,
                "owner_id": plan.owner_id,
                "status": plan.status.value,
                "created_at": plan.created_at,
                "updated_at": plan.updated_at,
                "completed_at": plan.completed_at,
                "last_edge_id": plan.last_edge_id,
                "metadata": plan.metadata,
            },
        )

        conn.execute("DELETE FROM task_dependencies")
        conn.execute("DELETE FROM tasks")
        conn.execute("DELETE FROM phases")
        for phase in state.phases:
            conn.execute(
                """
                INSERT INTO phases (id, label, position, description, estimated_duration, completed_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    phase.id,
                    phase.label,
                    phase.position,
                    phase.description,
                    phase.estimated_duration,
                    phase.completed_at,
                ),
            )
        for task in sorted(state.tasks.values(), key=lambda item: item.id):
            conn.execute(
                """
                INSERT INTO tasks (
                    id, phase_id, title, description, estimated_time, resources, position,
                    status, created_by, created_at, updated_at, completed_at, completed_by, deleted_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    task.id,
                    task.phase_id,
                    task.title,
                    task.description,
                    task.estimated_time,
                    _json_dump(task.resources),
                    task.order,
                    task.status.value,
                    task.created_by.value,
                    task.created_at,
                    task.updated_at,
                    task.completed_at,
                    task.completed_by,
                    task.deleted_at,
                ),
            )
        for edge in state.dependencies:
            conn.execute(
                """
                INSERT INTO task_dependencies (id, prerequisite_task_id, dependent_task_id, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (edge.id, edge.prerequisite_task_id, edge.dependent_task_id, edge.created_at),
            )

    # ------------------------------------------------------------------
    # history and progress rows
    # ------------------------------------------------------------------

    def insert_history_entry(self, conn, entry: HistoryEntry) -> int:
        cursor = conn.execute(
            """
            INSERT INTO task_history (
                version, actor_id, operation, target_id, before_state, after_state,
                payload, override, undoes_version, timestamp
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.version,
                entry.actor_id,
                entry.operation,
                entry.target_id,
                _json_dump(entry.before_state),
                _json_dump(entry.after_state),
                _json_dump(entry.payload),
                1 if entry.override else 0,
                entry.undoes_version,
                entry.timestamp,
            ),
        )
        return cursor.lastrowid

    def list_history_entries(
        self,
        plan_id: int,
        *,
        since_version: int = 0,
        to_version: Optional[int] = None,
        actor_id: Optional[str] = None,
    ) -> List[HistoryEntry]:
        query = ["SELECT * FROM task_history WHERE version > ?"]
        params: List[Any] = [since_version]
        if to_version is not None:
            query.append("AND version <= ?")
            params.append(to_version)
        if actor_id is not None:
            query.append("AND actor_id = ?")
            params.append(actor_id)
        query.append("ORDER BY version ASC")
        with plan_db_connection(get_plan_db_path(plan_id)) as conn:
            rows = conn.execute("\n".join(query), params).fetchall()
        return [_row_to_history_entry(plan_id, row) for row in rows]

    def insert_progress_snapshot(self, conn, snapshot: ProgressSnapshot) -> int:
        cursor = conn.execute(
            """
            INSERT INTO progress_snapshots (
                version, total_tasks, completed_tasks, in_progress_tasks, skipped_tasks,
                per_phase_json, overall_completion_percent, timestamp
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                snapshot.version,
                snapshot.total_tasks,
                snapshot.completed_tasks,
                snapshot.in_progress_tasks,
                snapshot.skipped_tasks,
                _json_dump([phase.model_dump(mode="json") for phase in snapshot.per_phase_completion]),
                snapshot.overall_completion_percent,
                snapshot.timestamp,
            ),
        )
        return cursor.lastrowid

    def list_progress_snapshots(self, plan_id: int, *, limit: Optional[int] = None) -> List[ProgressSnapshot]:
        """Snapshots in version order; ``limit`` keeps the most recent ones."""
        query = "SELECT * FROM progress_snapshots ORDER BY version DESC, id DESC"
        params: List[Any] = []
        if limit:
            query += " LIMIT ?"
            params.append(limit)
        with plan_db_connection(get_plan_db_path(plan_id)) as conn:
            rows = conn.execute(query, params).fetchall()
        snapshots = [_row_to_snapshot(plan_id, row) for row in rows]
        snapshots.reverse()
        return snapshots

    def latest_snapshot_timestamp(self, plan_id: int) -> Optional[str]:
        with plan_db_connection(get_plan_db_path(plan_id)) as conn:
            row = conn.execute("SELECT MAX(timestamp) AS latest FROM progress_snapshots").fetchone()
        return row["latest"] if row else None

    def record_progress_snapshot(self, plan_id: int, snapshot: ProgressSnapshot) -> int:
        """Store a snapshot outside of a mutation commit."""
        with plan_db_connection(get_plan_db_path(plan_id)) as conn:
            return self.insert_progress_snapshot(conn, snapshot)


def _rows_to_plan_state(plan_id: int, meta: Dict[str, Optional[str]], phase_rows, task_rows, edge_rows) -> PlanState:
    plan = PlanInfo(
        id=plan_id,
        title=meta.get("title") or f"Plan {plan_id}",
        description=meta.get("description"),
        analysis_id=meta.get("analysis_id"),
        owner_id=meta.get("owner_id"),
        status=meta.get("status") or PlanStatus.ACTIVE.value,
        version=int(meta.get("version") or 0),
        created_at=meta.get("created_at"),
        updated_at=meta.get("updated_at"),
        completed_at=meta.get("completed_at"),
        last_edge_id=int(meta.get("last_edge_id") or 0),
        metadata=_json_load(meta.get("metadata")) or {},
    )
    phases = [
        Phase(
            id=row["id"],
            plan_id=plan_id,
            label=row["label"],
            position=row["position"],
            description=row["description"],
            estimated_duration=row["estimated_duration"],
            completed_at=row["completed_at"],
        )
        for row in phase_rows
    ]
    tasks: Dict[int, Task] = {}
    for row in task_rows:
        tasks[row["id"]] = Task(
            id=row["id"],
            plan_id=plan_id,
            phase_id=row["phase_id"],
            title=row["title"],
            description=row["description"],
            estimated_time=row["estimated_time"],
            resources=_json_load(row["resources"]) or [],
            order=row["position"],
            status=row["status"],
            created_by=row["created_by"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            completed_at=row["completed_at"],
            completed_by=row["completed_by"],
            deleted_at=row["deleted_at"],
        )
    edges = [
        DependencyEdge(
            id=row["id"],
            prerequisite_task_id=row["prerequisite_task_id"],
            dependent_task_id=row["dependent_task_id"],
            created_at=row["created_at"],
        )
        for row in edge_rows
    ]
    return PlanState(plan=plan, phases=phases, tasks=tasks, dependencies=edges)


def _row_to_history_entry(plan_id: int, row) -> HistoryEntry:
    return HistoryEntry(
        id=row["id"],
        plan_id=plan_id,
        version=row["version"],
        actor_id=row["actor_id"],
        operation=row["operation"],
        target_id=row["target_id"],
        before_state=_json_load(row["before_state"]),
        after_state=_json_load(row["after_state"]),
        payload=_json_load(row["payload"]) or {},
        override=bool(row["override"]),
        undoes_version=row["undoes_version"],
        timestamp=row["timestamp"],
    )


def _row_to_snapshot(plan_id: int, row) -> ProgressSnapshot:
    phases = [PhaseProgress(**item) for item in (_json_load(row["per_phase_json"]) or [])]
    return ProgressSnapshot(
        id=row["id"],
        plan_id=plan_id,
        version=row["version"],
        total_tasks=row["total_tasks"],
        completed_tasks=row["completed_tasks"],
        in_progress_tasks=row["in_progress_tasks"],
        skipped_tasks=row["skipped_tasks"],
        per_phase_completion=phases,
        overall_completion_percent=row["overall_completion_percent"],
        timestamp=row["timestamp"],
    )
