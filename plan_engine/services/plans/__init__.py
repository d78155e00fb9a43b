"""Task dependency graph, ordering and progress tracking for action plans."""

from .plan_models import (
    DependencyEdge,
    GeneratedPlan,
    HistoryEntry,
    Phase,
    PlanInfo,
    PlanState,
    PlanStatus,
    PlanSummary,
    ProgressSnapshot,
    Task,
    TaskStatus,
)

__all__ = [
    "DependencyEdge",
    "GeneratedPlan",
    "HistoryEntry",
    "Phase",
    "PlanInfo",
    "PlanState",
    "PlanStatus",
    "PlanSummary",
    "ProgressSnapshot",
    "Task",
    "TaskStatus",
]
