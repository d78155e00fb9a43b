"""Per-plan serialization of mutations.

Every plan gets its own FIFO lane (``idle -> processing -> idle``); lanes are
created on first use, dropped again once idle and empty, and never share a
lock. Validation runs on a worker pool with a deadline.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Deque, Dict, List, Optional, TypeVar

from pydantic import BaseModel

from ...errors import (
    DuplicateDependencyError,
    MutationCancelledError,
    NotFoundError,
    NothingToUndoError,
    SelfReferenceError,
    ValidationError,
    ValidationTimeoutError,
    WouldCycleError,
)
from .graph_store import CommittedMutation, GraphStore, PreparedMutation
from .history_ledger import inverse_mutation
from .mutations import CreatePlan
from .plan_models import PlanStatus
from .sync_broadcaster import SyncBroadcaster

logger = logging.getLogger(__name__)

T = TypeVar("T")

LANE_IDLE = "idle"
LANE_PROCESSING = "processing"

# creation has no plan id yet; plan ids start at 1
_REGISTRY_LANE = 0

# an inverse that no longer fits the current plan
_NOT_INVERTIBLE = (NotFoundError, ValidationError, WouldCycleError, DuplicateDependencyError, SelfReferenceError)


class MutationTicket:
    """Place in a plan's queue; cancellable until the mutation is dequeued."""

    def __init__(
        self,
        plan_id: int,
        operation: str,
        lane: "_Lane",
        release: Optional[Callable[[int, "_Lane"], None]] = None,
    ) -> None:
        self.plan_id = plan_id
        self.operation = operation
        self._lane = lane
        self._release = release
        self.cancelled = False
        self.dequeued = False

    def cancel(self) -> bool:
        """Abandon the request; returns False once it has started running."""
        with self._lane.condition:
            if self.dequeued:
                return False
            self.cancelled = True
            if self in self._lane.waiting:
                self._lane.waiting.remove(self)
            self._lane.condition.notify_all()
        if self._release is not None:
            self._release(self.plan_id, self._lane)
        return True


class _Lane:
    def __init__(self) -> None:
        self.condition = threading.Condition()
        self.waiting: Deque[MutationTicket] = deque()
        self.state = LANE_IDLE


class MutationSequencer:
    def __init__(
        self,
        store: GraphStore,
        broadcaster: SyncBroadcaster,
        *,
        validation_timeout: float = 5.0,
        queue_timeout: Optional[float] = None,
        workers: int = 4,
    ) -> None:
        self._store = store
        self._broadcaster = broadcaster
        self._validation_timeout = validation_timeout
        self._queue_timeout = queue_timeout or None
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="plan-validate")
        self._lanes: Dict[int, _Lane] = {}
        self._lanes_lock = threading.Lock()

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------

    def ticket(self, plan_id: int, operation: str) -> MutationTicket:
        """Join the plan's queue now; pass the ticket to :meth:`execute` later."""
        with self._lanes_lock:
            lane = self._lanes.get(plan_id)
            if lane is None:
                lane = _Lane()
                self._lanes[plan_id] = lane
            ticket = MutationTicket(plan_id, operation, lane, release=self._release_lane)
            with lane.condition:
                lane.waiting.append(ticket)
        return ticket

    def execute(
        self,
        plan_id: int,
        mutation: BaseModel,
        expected_version: Optional[int],
        actor_id: str,
        *,
        queue_timeout: Optional[float] = None,
        ticket: Optional[MutationTicket] = None,
    ) -> CommittedMutation:
        operation = getattr(mutation, "kind", type(mutation).__name__)

        def work() -> CommittedMutation:
            prepared = self._prepare_with_deadline(
                plan_id,
                operation,
                lambda: self._store.prepare(plan_id, mutation, expected_version, actor_id),
            )
            return self._commit_and_publish(prepared)

        return self._run_in_lane(plan_id, operation, work, queue_timeout=queue_timeout, ticket=ticket)

    def undo(
        self,
        plan_id: int,
        actor_id: str,
        expected_version: Optional[int] = None,
        *,
        queue_timeout: Optional[float] = None,
    ) -> CommittedMutation:
        """Commit the inverse of the actor's latest change that still applies.

        Changes that later edits made irreversible (task deleted by someone
        else, reorder that no longer fits the phase) are passed over.
        """

        def work() -> CommittedMutation:
            self._store.get_plan(plan_id)
            stale: List[int] = []
            for target in self._store.ledger.undo_candidates(plan_id, actor_id):
                try:
                    inverse = inverse_mutation(target)
                    prepared = self._prepare_with_deadline(
                        plan_id,
                        "undo",
                        lambda inverse=inverse, version=target.version: self._store.prepare(
                            plan_id,
                            inverse,
                            expected_version,
                            actor_id,
                            undoes_version=version,
                        ),
                    )
                except _NOT_INVERTIBLE as exc:
                    # later edits by others made this change irreversible
                    logger.info(
                        "Skipping undo of version %s on plan %s for %s: %s",
                        target.version,
                        plan_id,
                        actor_id,
                        exc.message,
                    )
                    stale.append(target.version)
                    continue
                return self._commit_and_publish(prepared)
            raise NothingToUndoError(plan_id, actor_id, skipped_versions=stale)

        return self._run_in_lane(plan_id, "undo", work, queue_timeout=queue_timeout)

    def create_plan(self, mutation: CreatePlan, actor_id: str) -> CommittedMutation:
        def work() -> CommittedMutation:
            committed = self._store.create_plan(mutation, actor_id)
            self._publish(committed)
            return committed

        return self._run_in_lane(_REGISTRY_LANE, "create_plan", work)

    def run_exclusive(self, plan_id: int, operation: str, work: Callable[[], T]) -> T:
        """Run non-mutating work that must not interleave with the plan's commits."""
        return self._run_in_lane(plan_id, operation, work)

    def lane_state(self, plan_id: int) -> str:
        with self._lanes_lock:
            lane = self._lanes.get(plan_id)
        if lane is None:
            return LANE_IDLE
        with lane.condition:
            return lane.state

    def queue_depth(self, plan_id: int) -> int:
        with self._lanes_lock:
            lane = self._lanes.get(plan_id)
        if lane is None:
            return 0
        with lane.condition:
            return len(lane.waiting)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def lane_count(self) -> int:
        with self._lanes_lock:
            return len(self._lanes)

    # ------------------------------------------------------------------
    # internal helpers
    # ------------------------------------------------------------------

    def _release_lane(self, plan_id: int, lane: _Lane) -> None:
        """Forget an idle lane with nobody queued; the next ticket recreates it."""
        with self._lanes_lock:
            if self._lanes.get(plan_id) is not lane:
                return
            with lane.condition:
                if lane.state == LANE_IDLE and not lane.waiting:
                    del self._lanes[plan_id]

    def _run_in_lane(
        self,
        plan_id: int,
        operation: str,
        work: Callable[[], T],
        *,
        queue_timeout: Optional[float] = None,
        ticket: Optional[MutationTicket] = None,
    ) -> T:
        if ticket is None:
            ticket = self.ticket(plan_id, operation)
        lane = ticket._lane
        timeout = queue_timeout if queue_timeout is not None else self._queue_timeout
        deadline = time.monotonic() + timeout if timeout else None

        try:
            with lane.condition:
                while not ticket.cancelled and (lane.state != LANE_IDLE or lane.waiting[0] is not ticket):
                    remaining = None if deadline is None else deadline - time.monotonic()
                    if remaining is not None and remaining <= 0:
                        lane.waiting.remove(ticket)
                        lane.condition.notify_all()
                        logger.warning("Mutation %s on plan %s timed out in queue", operation, plan_id)
                        raise MutationCancelledError(plan_id, operation, reason="queue_timeout")
                    lane.condition.wait(remaining)
                if ticket.cancelled:
                    raise MutationCancelledError(plan_id, operation)
                lane.waiting.popleft()
                ticket.dequeued = True
                lane.state = LANE_PROCESSING

            try:
                return work()
            finally:
                with lane.condition:
                    lane.state = LANE_IDLE
                    lane.condition.notify_all()
        finally:
            self._release_lane(plan_id, lane)

    def _prepare_with_deadline(
        self, plan_id: int, operation: str, prepare: Callable[[], PreparedMutation]
    ) -> PreparedMutation:
        future = self._executor.submit(prepare)
        try:
            return future.result(timeout=self._validation_timeout)
        except FutureTimeoutError:
            future.cancel()
            logger.warning(
                "Validation of %s on plan %s exceeded %.2fs",
                operation,
                plan_id,
                self._validation_timeout,
            )
            raise ValidationTimeoutError(plan_id, self._validation_timeout, operation) from None

    def _commit_and_publish(self, prepared: PreparedMutation) -> CommittedMutation:
        committed = self._store.commit(prepared)
        self._publish(committed)
        return committed

    def _publish(self, committed: CommittedMutation) -> None:
        entry = committed.entry
        delta: Dict[str, Any] = {
            "operation": entry.operation,
            "actor_id": entry.actor_id,
            "target_id": entry.target_id,
            "before_state": entry.before_state,
            "after_state": entry.after_state,
            "undoes_version": entry.undoes_version,
            "events": [event.model_dump(mode="json") for event in committed.events],
            "progress": committed.snapshot.model_dump(mode="json") if committed.snapshot else None,
        }
        self._broadcaster.publish(entry.plan_id, entry.version, delta)
        if committed.state.plan.status == PlanStatus.ARCHIVED:
            self._broadcaster.drop(entry.plan_id)
