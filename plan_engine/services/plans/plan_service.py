"""Wiring of the plan engine components behind one entry point."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel

from ...errors import ErrorCode, NotFoundError
from ...repository.plan_repository import PlanRepository
from ..foundation.settings import AppSettings, get_settings
from . import dependency_validator
from .graph_store import CommittedMutation, GraphStore
from .history_ledger import HistoryLedger
from .mutation_sequencer import MutationSequencer
from .mutations import CreatePlan
from .plan_models import (
    HistoryEntry,
    OwnerProgressSummary,
    PlanState,
    PlanStatus,
    PlanSummary,
    ProgressMetrics,
    ProgressSnapshot,
    Task,
)
from .progress_calculator import live_metrics, needs_daily_snapshot, owner_rollup, recompute
from .snapshot_exporter import SnapshotExporter
from .sync_broadcaster import SyncBroadcaster

logger = logging.getLogger(__name__)


class PlanEngine:
    """Reads go straight to the graph store; writes go through the mutation lanes."""

    def __init__(self, settings: Optional[AppSettings] = None) -> None:
        self.settings = settings or get_settings()
        skipped_satisfies = self.settings.skipped_satisfies_dependencies
        self.repo = PlanRepository()
        self.ledger = HistoryLedger(self.repo, skipped_satisfies=skipped_satisfies)
        self.store = GraphStore(self.repo, self.ledger, skipped_satisfies=skipped_satisfies)
        self.broadcaster = SyncBroadcaster(buffer_size=self.settings.broadcast_buffer_size)
        self.sequencer = MutationSequencer(
            self.store,
            self.broadcaster,
            validation_timeout=self.settings.mutation_validation_timeout,
            queue_timeout=self.settings.mutation_queue_timeout,
            workers=self.settings.validation_workers,
        )
        self.exporter = SnapshotExporter(self.store, skipped_satisfies=skipped_satisfies)

    # writes -------------------------------------------------------------

    def create_plan(self, mutation: CreatePlan, actor_id: str) -> CommittedMutation:
        return self.sequencer.create_plan(mutation, actor_id)

    def mutate(
        self, plan_id: int, mutation: BaseModel, expected_version: Optional[int], actor_id: str
    ) -> CommittedMutation:
        return self.sequencer.execute(plan_id, mutation, expected_version, actor_id)

    def undo(self, plan_id: int, actor_id: str, expected_version: Optional[int] = None) -> CommittedMutation:
        return self.sequencer.undo(plan_id, actor_id, expected_version)

    # reads --------------------------------------------------------------

    def get_plan(self, plan_id: int) -> PlanState:
        return self.store.get_plan(plan_id)

    def list_plans(
        self,
        *,
        status: Optional[str] = None,
        analysis_id: Optional[str] = None,
        owner_id: Optional[str] = None,
    ) -> List[PlanSummary]:
        return self.repo.list_plans(status=status, analysis_id=analysis_id, owner_id=owner_id)

    def get_task(self, plan_id: int, task_id: int) -> Task:
        task = self.get_plan(plan_id).get_task(task_id)
        if task is None:
            raise NotFoundError(
                f"Task {task_id} not found in plan {plan_id}",
                error_code=ErrorCode.TASK_NOT_FOUND,
                plan_id=plan_id,
                task_id=task_id,
            )
        return task

    def blockers(self, plan_id: int, task_id: int) -> List[Task]:
        state = self.get_plan(plan_id)
        self.get_task(plan_id, task_id)
        return dependency_validator.blocking_prerequisites(
            state, task_id, self.settings.skipped_satisfies_dependencies
        )

    def ready_tasks(self, plan_id: int) -> List[Task]:
        return dependency_validator.ready_tasks(self.get_plan(plan_id), self.settings.skipped_satisfies_dependencies)

    def progress(self, plan_id: int) -> ProgressSnapshot:
        return recompute(self.get_plan(plan_id))

    def metrics(self, plan_id: int) -> ProgressMetrics:
        return live_metrics(self.get_plan(plan_id), window_days=self.settings.velocity_window_days)

    def progress_history(self, plan_id: int, limit: Optional[int] = None) -> List[ProgressSnapshot]:
        self.get_plan(plan_id)
        return self.repo.list_progress_snapshots(plan_id, limit=limit or self.settings.progress_history_limit)

    def owner_summary(self, owner_id: str) -> OwnerProgressSummary:
        plans = self.repo.list_plans(status=PlanStatus.ACTIVE.value, owner_id=owner_id)
        metrics = [self.metrics(plan.id) for plan in plans]
        return owner_rollup(owner_id, metrics)

    def should_create_snapshot(self, plan_id: int, now: Optional[datetime] = None) -> bool:
        self.get_plan(plan_id)
        return needs_daily_snapshot(self.repo.latest_snapshot_timestamp(plan_id), now)

    def capture_daily_snapshot(self, plan_id: int, now: Optional[datetime] = None) -> Optional[ProgressSnapshot]:
        """Record today's snapshot unless one exists; returns the new snapshot or None."""

        def work() -> Optional[ProgressSnapshot]:
            if not self.should_create_snapshot(plan_id, now):
                return None
            stamp = now.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ") if now else None
            snapshot = recompute(self.get_plan(plan_id), stamp)
            snapshot.id = self.repo.record_progress_snapshot(plan_id, snapshot)
            logger.info("Daily snapshot of plan %s at version %s", plan_id, snapshot.version)
            return snapshot

        return self.sequencer.run_exclusive(plan_id, "daily_snapshot", work)

    def history(self, plan_id: int, since_version: int = 0) -> List[HistoryEntry]:
        self.get_plan(plan_id)
        return self.ledger.list_since(plan_id, since_version)

    def shutdown(self) -> None:
        self.sequencer.shutdown()


_plan_engine: Optional[PlanEngine] = None


def get_plan_engine() -> PlanEngine:
    """Return the process-wide engine."""
    global _plan_engine
    if _plan_engine is None:
        _plan_engine = PlanEngine()
    return _plan_engine


def reset_plan_engine() -> None:
    """Drop the engine so the next call rebuilds it from current settings."""
    global _plan_engine
    if _plan_engine is not None:
        _plan_engine.shutdown()
    _plan_engine = None
