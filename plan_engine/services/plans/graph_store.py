"""Single source of truth for plan state.

Mutations go through two steps: :meth:`GraphStore.prepare` checks the
caller's version and computes the next state without side effects, and
:meth:`GraphStore.commit` persists state, history entry and progress snapshot
in one SQLite transaction. The in-memory cache only moves forward after that
transaction commits, so a failed write leaves the last committed version in
place.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from pydantic import BaseModel

from ...database import plan_db_connection
from ...errors import BusinessError, DatabaseError, ErrorCode, VersionConflictError
from ...repository.plan_repository import PlanRepository
from ...repository.plan_storage import get_plan_db_path
from .history_ledger import HistoryLedger
from .mutations import AppliedMutation, CreatePlan, apply_mutation, seed_plan
from .plan_models import DomainEvent, HistoryEntry, PlanState, ProgressSnapshot, utc_now_iso
from .progress_calculator import recompute

logger = logging.getLogger(__name__)


@dataclass
class PreparedMutation:
    plan_id: int
    base_version: int
    actor_id: str
    timestamp: str
    applied: AppliedMutation
    undoes_version: Optional[int] = None


@dataclass
class CommittedMutation:
    state: PlanState
    entry: HistoryEntry
    snapshot: Optional[ProgressSnapshot] = None
    events: List[DomainEvent] = field(default_factory=list)

    @property
    def version(self) -> int:
        return self.state.version


class GraphStore:
    def __init__(
        self,
        repo: Optional[PlanRepository] = None,
        ledger: Optional[HistoryLedger] = None,
        skipped_satisfies: bool = True,
    ) -> None:
        self._repo = repo or PlanRepository()
        self._ledger = ledger or HistoryLedger(self._repo, skipped_satisfies=skipped_satisfies)
        self._skipped_satisfies = skipped_satisfies
        self._cache: Dict[int, PlanState] = {}
        self._lock = threading.Lock()

    @property
    def repo(self) -> PlanRepository:
        return self._repo

    @property
    def ledger(self) -> HistoryLedger:
        return self._ledger

    def get_plan(self, plan_id: int) -> PlanState:
        """Committed state of ``plan_id``; callers receive their own copy."""
        with self._lock:
            cached = self._cache.get(plan_id)
        if cached is None:
            cached = self._repo.load_state(plan_id)
            with self._lock:
                existing = self._cache.get(plan_id)
                if existing is None or existing.version < cached.version:
                    self._cache[plan_id] = cached
                else:
                    cached = existing
        return cached.model_copy(deep=True)

    def current_version(self, plan_id: int) -> int:
        return self.get_plan(plan_id).version

    def evict(self, plan_id: int) -> None:
        with self._lock:
            self._cache.pop(plan_id, None)

    def create_plan(self, mutation: CreatePlan, actor_id: str) -> CommittedMutation:
        """Register a new plan and commit version 1."""
        if mutation.analysis_id:
            existing = self._repo.find_active_plan_for_analysis(mutation.analysis_id)
            if existing is not None:
                raise BusinessError(
                    f"Analysis {mutation.analysis_id} already has active plan {existing}",
                    error_code=ErrorCode.PLAN_ALREADY_EXISTS,
                    context={"plan_id": existing, "analysis_id": mutation.analysis_id},
                )
        plan_id = self._repo.register_plan(
            mutation.title,
            description=mutation.description,
            analysis_id=mutation.analysis_id,
            owner_id=mutation.owner_id,
        )
        now = utc_now_iso()
        prepared = PreparedMutation(
            plan_id=plan_id,
            base_version=0,
            actor_id=actor_id,
            timestamp=now,
            applied=seed_plan(plan_id, mutation, actor_id, now=now),
        )
        try:
            return self.commit(prepared)
        except DatabaseError:
            self._repo.unregister_plan(plan_id)
            raise

    def prepare(
        self,
        plan_id: int,
        mutation: BaseModel,
        expected_version: Optional[int],
        actor_id: str,
        *,
        undoes_version: Optional[int] = None,
    ) -> PreparedMutation:
        """Validate ``mutation`` against the committed state; no side effects.

        ``expected_version`` of ``None`` applies against whatever version is
        current when the mutation reaches the front of its lane.
        """
        state = self.get_plan(plan_id)
        if expected_version is not None and expected_version != state.version:
            logger.info(
                "Version conflict on plan %s: expected %s, current %s",
                plan_id,
                expected_version,
                state.version,
            )
            raise VersionConflictError(plan_id, expected_version, state.version, current_state=state)
        now = utc_now_iso()
        applied = apply_mutation(state, mutation, actor_id, now=now, skipped_satisfies=self._skipped_satisfies)
        return PreparedMutation(
            plan_id=plan_id,
            base_version=state.version,
            actor_id=actor_id,
            timestamp=now,
            applied=applied,
            undoes_version=undoes_version,
        )

    def commit(self, prepared: PreparedMutation) -> CommittedMutation:
        applied = prepared.applied
        state = applied.state
        entry = HistoryEntry(
            plan_id=prepared.plan_id,
            version=state.version,
            actor_id=prepared.actor_id,
            operation=applied.operation,
            target_id=applied.target_id,
            before_state=applied.before_state,
            after_state=applied.after_state,
            payload=applied.payload,
            override=applied.override,
            undoes_version=prepared.undoes_version,
            timestamp=prepared.timestamp,
        )
        snapshot = recompute(state, prepared.timestamp) if applied.affects_progress else None

        try:
            with plan_db_connection(get_plan_db_path(prepared.plan_id)) as conn:
                self._repo.write_state(conn, state, expected_version=prepared.base_version)
                entry = self._ledger.append(entry, conn=conn)
                if snapshot is not None:
                    snapshot = snapshot.model_copy(
                        update={"id": self._repo.insert_progress_snapshot(conn, snapshot)}
                    )
        except VersionConflictError:
            self.evict(prepared.plan_id)
            raise
        except sqlite3.Error as exc:
            raise DatabaseError(
                f"Failed to commit {applied.operation} on plan {prepared.plan_id}",
                error_code=ErrorCode.TRANSACTION_FAILED,
                operation=applied.operation,
                context={"plan_id": prepared.plan_id, "version": state.version},
                cause=exc,
            ) from exc

        with self._lock:
            self._cache[prepared.plan_id] = state.model_copy(deep=True)
        try:
            self._repo.sync_registry(state.plan)
        except sqlite3.Error as exc:
            logger.warning("Registry mirror for plan %s lagging behind: %s", prepared.plan_id, exc)

        logger.info(
            "Committed %s on plan %s at version %s",
            applied.operation,
            prepared.plan_id,
            state.version,
            extra={"plan_id": prepared.plan_id, "version": state.version, "actor_id": prepared.actor_id},
        )
        return CommittedMutation(state=state.model_copy(deep=True), entry=entry, snapshot=snapshot, events=applied.events)

    def apply_mutation(
        self,
        plan_id: int,
        mutation: BaseModel,
        expected_version: Optional[int],
        actor_id: str,
    ) -> CommittedMutation:
        return self.commit(self.prepare(plan_id, mutation, expected_version, actor_id))
