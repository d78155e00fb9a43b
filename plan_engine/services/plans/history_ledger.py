"""Append-only mutation history: audit trail, replay and undo."""

from __future__ import annotations

import logging
from typing import List, Optional

from pydantic import BaseModel

from ...database import plan_db_connection
from ...errors import ErrorCode, SystemError, ValidationError
from ...repository.plan_repository import PlanRepository
from ...repository.plan_storage import get_plan_db_path
from .mutations import (
    AddDependency,
    CreatePlan,
    DeleteTask,
    RemoveDependency,
    ReorderPhase,
    ReorderTask,
    RestoreTask,
    SetPlanStatus,
    UpdateTask,
    apply_mutation,
    parse_mutation,
    seed_plan,
)
from .plan_models import DependencyEdge, HistoryEntry, PlanState

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("title", "description", "estimated_time", "resources", "status")
CLEARABLE_FIELDS = ("description", "estimated_time")


class HistoryLedger:
    """Reads and writes the ``task_history`` table of each plan."""

    def __init__(self, repo: Optional[PlanRepository] = None, skipped_satisfies: bool = True) -> None:
        self._repo = repo or PlanRepository()
        self._skipped_satisfies = skipped_satisfies

    def append(self, entry: HistoryEntry, conn=None) -> HistoryEntry:
        """Store ``entry``; pass ``conn`` to join the caller's commit transaction."""
        if conn is not None:
            entry_id = self._repo.insert_history_entry(conn, entry)
        else:
            with plan_db_connection(get_plan_db_path(entry.plan_id)) as own_conn:
                entry_id = self._repo.insert_history_entry(own_conn, entry)
        return entry.model_copy(update={"id": entry_id})

    def list_since(self, plan_id: int, version: int = 0) -> List[HistoryEntry]:
        """Entries with a version strictly greater than ``version``."""
        return self._repo.list_history_entries(plan_id, since_version=version)

    def replay(
        self,
        plan_id: int,
        from_version: int = 0,
        base_state: Optional[PlanState] = None,
        to_version: Optional[int] = None,
    ) -> PlanState:
        """Rebuild the plan by re-applying recorded mutations.

        From version 0 the first entry must be the plan's creation; otherwise
        ``base_state`` (at ``from_version``) is the starting point.
        """
        if from_version > 0 and (base_state is None or base_state.version != from_version):
            raise ValidationError(
                f"Replay from version {from_version} needs the state at that version",
                field_name="from_version",
                field_value=from_version,
            )
        entries = self._repo.list_history_entries(plan_id, since_version=from_version, to_version=to_version)
        state = base_state
        for entry in entries:
            mutation = parse_mutation(entry.payload)
            if isinstance(mutation, CreatePlan):
                applied = seed_plan(plan_id, mutation, entry.actor_id, now=entry.timestamp)
            elif state is None:
                raise SystemError(
                    f"History of plan {plan_id} does not start with its creation",
                    context={"plan_id": plan_id, "version": entry.version},
                )
            else:
                applied = apply_mutation(
                    state,
                    mutation,
                    entry.actor_id,
                    now=entry.timestamp,
                    skipped_satisfies=self._skipped_satisfies,
                )
            if applied.state.version != entry.version:
                raise SystemError(
                    f"Replay of plan {plan_id} diverged at version {entry.version}",
                    context={"plan_id": plan_id, "expected": entry.version, "actual": applied.state.version},
                )
            state = applied.state

        if state is None:
            raise ValidationError(
                f"Plan {plan_id} has no history to replay",
                error_code=ErrorCode.PLAN_NOT_FOUND,
                context={"plan_id": plan_id},
            )
        if to_version is not None and state.version != to_version:
            raise ValidationError(
                f"Plan {plan_id} has no version {to_version}",
                error_code=ErrorCode.FIELD_VALUE_OUT_OF_RANGE,
                field_name="version",
                field_value=to_version,
            )
        logger.debug("Replayed plan %s to version %s (%s entries)", plan_id, state.version, len(entries))
        return state

    def undo_candidates(self, plan_id: int, actor_id: str) -> List[HistoryEntry]:
        """The actor's changes that have not been undone yet, newest first."""
        entries = self._repo.list_history_entries(plan_id)
        undone = {entry.undoes_version for entry in entries if entry.undoes_version is not None}
        return [
            entry
            for entry in reversed(entries)
            if entry.actor_id == actor_id
            and entry.undoes_version is None
            and entry.version not in undone
            and entry.operation != "create_plan"
        ]


def inverse_mutation(entry: HistoryEntry) -> BaseModel:
    """Forward mutation that reverts ``entry`` when applied to a later state."""
    before = entry.before_state or {}
    operation = entry.operation

    if operation == "add_task":
        return DeleteTask(task_id=entry.target_id)
    if operation == "restore_task":
        return DeleteTask(task_id=entry.target_id)
    if operation == "delete_task":
        task = before.get("task") or {}
        return RestoreTask(
            task_id=entry.target_id,
            order=task.get("order") or 0,
            edges=[DependencyEdge(**edge) for edge in before.get("edges") or []],
        )
    if operation == "update_task":
        changes = {}
        for name in UPDATABLE_FIELDS:
            if name not in entry.payload:
                continue
            if entry.payload[name] is None and name not in CLEARABLE_FIELDS:
                continue
            previous = before.get(name)
            if previous is None and name not in CLEARABLE_FIELDS:
                continue
            changes[name] = previous
        return UpdateTask(task_id=entry.target_id, override_dependencies=True, **changes)
    if operation == "reorder_task":
        return ReorderTask(task_id=entry.target_id, new_order=before["order"], phase_id=before.get("phase_id"))
    if operation == "reorder_phase":
        return ReorderPhase(phase_id=before["phase_id"], task_ids=before["task_ids"])
    if operation == "add_dependency":
        return RemoveDependency(edge_id=entry.target_id)
    if operation == "remove_dependency":
        return AddDependency(
            prerequisite_task_id=before["prerequisite_task_id"],
            dependent_task_id=before["dependent_task_id"],
        )
    if operation == "set_plan_status":
        return SetPlanStatus(status=before["status"])
    raise ValidationError(
        f"Operation {operation} cannot be undone",
        field_name="operation",
        field_value=operation,
    )
