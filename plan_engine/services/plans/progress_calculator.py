"""Task -> phase -> plan progress aggregation."""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional, Set, Tuple

from .plan_models import (
    DomainEvent,
    OwnerProgressSummary,
    PhaseProgress,
    PlanState,
    ProgressMetrics,
    ProgressSnapshot,
    Task,
    TaskStatus,
    parse_iso,
    utc_now_iso,
)

PHASE_COMPLETED = "phase_completed"
PLAN_COMPLETED = "plan_completed"


def round_percent(numerator: int, denominator: int) -> int:
    """``numerator / denominator * 100`` rounded half up."""
    if denominator <= 0:
        return 0
    value = Decimal(numerator) * 100 / Decimal(denominator)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _phase_progress(state: PlanState) -> List[PhaseProgress]:
    rollups: List[PhaseProgress] = []
    for phase in state.iter_phases():
        tasks = state.phase_tasks(phase.id)
        completed = sum(1 for task in tasks if task.status == TaskStatus.COMPLETED)
        skipped = sum(1 for task in tasks if task.status == TaskStatus.SKIPPED)
        countable = len(tasks) - skipped
        # nothing left to do counts as done
        percent = 100 if countable == 0 else round_percent(completed, countable)
        rollups.append(
            PhaseProgress(
                phase_id=phase.id,
                label=phase.label,
                position=phase.position,
                total_tasks=len(tasks),
                completed_tasks=completed,
                skipped_tasks=skipped,
                completion_percent=percent,
                is_complete=countable == completed and completed > 0,
            )
        )
    return rollups


def _overall_percent(tasks: List[Task]) -> int:
    if not tasks:
        return 0
    completed = sum(1 for task in tasks if task.status == TaskStatus.COMPLETED)
    countable = sum(1 for task in tasks if task.status != TaskStatus.SKIPPED)
    if countable == 0:
        return 100
    return round_percent(completed, countable)


def recompute(state: PlanState, now: Optional[str] = None) -> ProgressSnapshot:
    """Build the progress snapshot of ``state`` at its current version."""
    tasks = state.live_tasks()
    return ProgressSnapshot(
        plan_id=state.id,
        version=state.version,
        total_tasks=len(tasks),
        completed_tasks=sum(1 for task in tasks if task.status == TaskStatus.COMPLETED),
        in_progress_tasks=sum(1 for task in tasks if task.status == TaskStatus.IN_PROGRESS),
        skipped_tasks=sum(1 for task in tasks if task.status == TaskStatus.SKIPPED),
        per_phase_completion=_phase_progress(state),
        overall_completion_percent=_overall_percent(tasks),
        timestamp=now or utc_now_iso(),
    )


def plan_is_complete(state: PlanState) -> bool:
    tasks = state.live_tasks()
    has_completed = any(task.status == TaskStatus.COMPLETED for task in tasks)
    return has_completed and _overall_percent(tasks) == 100


def completed_phase_ids(state: PlanState) -> Set[int]:
    return {rollup.phase_id for rollup in _phase_progress(state) if rollup.is_complete}


def completion_transitions(
    before: Optional[PlanState], after: PlanState, now: str
) -> Tuple[PlanState, List[DomainEvent]]:
    """Stamp or clear ``completed_at`` marks on ``after`` and report new completions.

    A phase or plan fires its event once when it reaches 100%; dropping below
    clears the mark so reaching 100% again fires again.
    """
    events: List[DomainEvent] = []
    done_phases = completed_phase_ids(after)
    for phase in after.iter_phases():
        if phase.id in done_phases:
            if phase.completed_at is None:
                phase.completed_at = now
                events.append(DomainEvent(type=PHASE_COMPLETED, phase_id=phase.id, label=phase.label, timestamp=now))
        else:
            phase.completed_at = None

    if plan_is_complete(after):
        if after.plan.completed_at is None:
            after.plan.completed_at = now
            events.append(DomainEvent(type=PLAN_COMPLETED, label=after.plan.title, timestamp=now))
    else:
        after.plan.completed_at = None
    return after, events


def _average_task_hours(tasks: List[Task]) -> int:
    durations: List[float] = []
    for task in tasks:
        if task.status != TaskStatus.COMPLETED or not task.completed_at or not task.created_at:
            continue
        delta = parse_iso(task.completed_at) - parse_iso(task.created_at)
        durations.append(delta.total_seconds() / 3600)
    if not durations:
        return 0
    return int(Decimal(sum(durations) / len(durations)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _velocity(tasks: List[Task], now: datetime, window_days: int) -> float:
    """Completed tasks per week over the trailing window."""
    window_start = now - timedelta(days=window_days)
    recent = [
        parse_iso(task.completed_at)
        for task in tasks
        if task.status == TaskStatus.COMPLETED and task.completed_at and parse_iso(task.completed_at) >= window_start
    ]
    if not recent:
        return 0.0
    weeks_elapsed = (now - min(recent)).total_seconds() / (7 * 24 * 3600)
    if weeks_elapsed < 0.1:
        return float(len(recent))
    return round(len(recent) / weeks_elapsed, 1)


def _current_phase(state: PlanState) -> Optional[str]:
    phases = list(state.iter_phases())
    for phase in phases:
        if any(
            task.status in (TaskStatus.NOT_STARTED, TaskStatus.IN_PROGRESS) for task in state.phase_tasks(phase.id)
        ):
            return phase.label
    return phases[-1].label if phases else None


def live_metrics(state: PlanState, now: Optional[str] = None, window_days: int = 30) -> ProgressMetrics:
    """On-demand analytics: counts, velocity and a completion estimate."""
    moment = parse_iso(now) if now else datetime.now(timezone.utc)
    tasks = state.live_tasks()
    counts: Dict[TaskStatus, int] = {status: 0 for status in TaskStatus}
    for task in tasks:
        counts[task.status] += 1

    velocity = _velocity(tasks, moment, window_days)
    remaining = counts[TaskStatus.NOT_STARTED] + counts[TaskStatus.IN_PROGRESS]
    estimated_completion = None
    if remaining and velocity > 0:
        days = math.ceil(remaining * 7 / velocity)
        estimated_completion = (moment + timedelta(days=days)).strftime("%Y-%m-%dT%H:%M:%S.%fZ")

    return ProgressMetrics(
        plan_id=state.id,
        version=state.version,
        total_tasks=len(tasks),
        completed_tasks=counts[TaskStatus.COMPLETED],
        in_progress_tasks=counts[TaskStatus.IN_PROGRESS],
        not_started_tasks=counts[TaskStatus.NOT_STARTED],
        skipped_tasks=counts[TaskStatus.SKIPPED],
        completion_percent=_overall_percent(tasks),
        current_phase=_current_phase(state),
        velocity=velocity,
        average_task_hours=_average_task_hours(tasks),
        estimated_completion=estimated_completion,
        phases=_phase_progress(state),
    )


def owner_rollup(owner_id: str, plans: List[ProgressMetrics]) -> OwnerProgressSummary:
    """Sum counts over an owner's active plans; velocity averages plans that move at all."""
    total = sum(metrics.total_tasks for metrics in plans)
    completed = sum(metrics.completed_tasks for metrics in plans)
    moving = [metrics.velocity for metrics in plans if metrics.velocity > 0]
    average_velocity = 0.0
    if moving:
        average = Decimal(str(sum(moving))) / len(moving)
        average_velocity = float(average.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))
    return OwnerProgressSummary(
        owner_id=owner_id,
        active_plans=len(plans),
        total_tasks=total,
        completed_tasks=completed,
        overall_completion_percent=round_percent(completed, total),
        average_velocity=average_velocity,
    )


def needs_daily_snapshot(latest_timestamp: Optional[str], now: Optional[datetime] = None) -> bool:
    """True unless a snapshot was taken since UTC midnight of ``now``."""
    if not latest_timestamp:
        return True
    moment = now or datetime.now(timezone.utc)
    midnight = moment.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    taken = parse_iso(latest_timestamp)
    return taken is None or taken < midnight
