from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class TaskStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"


class PlanStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


class TaskOrigin(str, Enum):
    SYSTEM = "system"
    USER = "user"


class PlanInfo(BaseModel):
    """Plan-level metadata, including the committed version."""

    id: int
    title: str
    description: Optional[str] = None
    analysis_id: Optional[str] = None
    owner_id: Optional[str] = None
    status: PlanStatus = PlanStatus.ACTIVE
    version: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None
    # edges are hard-deleted, so ids are never reused
    last_edge_id: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Phase(BaseModel):
    id: int
    plan_id: int
    label: str
    position: int
    description: Optional[str] = None
    estimated_duration: Optional[str] = None
    completed_at: Optional[str] = None


class Task(BaseModel):
    """Single trackable unit of work inside a phase."""

    id: int
    plan_id: int
    phase_id: int
    title: str
    description: Optional[str] = None
    estimated_time: Optional[str] = None
    resources: List[str] = Field(default_factory=list)
    order: Optional[int] = None
    status: TaskStatus = TaskStatus.NOT_STARTED
    created_by: TaskOrigin = TaskOrigin.SYSTEM
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None
    completed_by: Optional[str] = None
    deleted_at: Optional[str] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def display_name(self) -> str:
        return self.title.strip() or f"Task {self.id}"


class DependencyEdge(BaseModel):
    """``prerequisite_task_id`` must finish before ``dependent_task_id``."""

    id: int
    prerequisite_task_id: int
    dependent_task_id: int
    created_at: Optional[str] = None


class PlanSummary(BaseModel):
    """Lightweight plan metadata used for list operations."""

    id: int
    title: str
    description: Optional[str] = None
    analysis_id: Optional[str] = None
    status: PlanStatus = PlanStatus.ACTIVE
    version: int = 0
    updated_at: Optional[str] = None


class PlanState(BaseModel):
    """Complete in-memory state of one plan at one version."""

    plan: PlanInfo
    phases: List[Phase] = Field(default_factory=list)
    tasks: Dict[int, Task] = Field(default_factory=dict)
    dependencies: List[DependencyEdge] = Field(default_factory=list)

    @property
    def id(self) -> int:
        return self.plan.id

    @property
    def version(self) -> int:
        return self.plan.version

    def get_phase(self, phase_id: int) -> Optional[Phase]:
        for phase in self.phases:
            if phase.id == phase_id:
                return phase
        return None

    def get_task(self, task_id: int) -> Optional[Task]:
        """Live (not deleted) task by id."""
        task = self.tasks.get(task_id)
        if task is None or task.is_deleted:
            return None
        return task

    def live_tasks(self) -> List[Task]:
        return [task for task in self.tasks.values() if not task.is_deleted]

    def phase_tasks(self, phase_id: int) -> List[Task]:
        """Live tasks of a phase in ``order``."""
        tasks = [task for task in self.live_tasks() if task.phase_id == phase_id]
        tasks.sort(key=lambda task: (task.order if task.order is not None else 0, task.id))
        return tasks

    def phase_task_ids(self, phase_id: int) -> List[int]:
        return [task.id for task in self.phase_tasks(phase_id)]

    def get_edge(self, edge_id: int) -> Optional[DependencyEdge]:
        for edge in self.dependencies:
            if edge.id == edge_id:
                return edge
        return None

    def find_edge(self, prerequisite_task_id: int, dependent_task_id: int) -> Optional[DependencyEdge]:
        for edge in self.dependencies:
            if edge.prerequisite_task_id == prerequisite_task_id and edge.dependent_task_id == dependent_task_id:
                return edge
        return None

    def prerequisites_of(self, task_id: int) -> List[int]:
        return [edge.prerequisite_task_id for edge in self.dependencies if edge.dependent_task_id == task_id]

    def dependents_of(self, task_id: int) -> List[int]:
        return [edge.dependent_task_id for edge in self.dependencies if edge.prerequisite_task_id == task_id]

    def edges_touching(self, task_id: int) -> List[DependencyEdge]:
        return [
            edge
            for edge in self.dependencies
            if edge.prerequisite_task_id == task_id or edge.dependent_task_id == task_id
        ]

    def next_task_id(self) -> int:
        return max(self.tasks.keys(), default=0) + 1

    def next_edge_id(self) -> int:
        return max([self.plan.last_edge_id, *(edge.id for edge in self.dependencies)]) + 1

    def iter_phases(self) -> Iterable[Phase]:
        return sorted(self.phases, key=lambda phase: phase.position)


class PhaseProgress(BaseModel):
    phase_id: int
    label: str
    position: int
    total_tasks: int = 0
    completed_tasks: int = 0
    skipped_tasks: int = 0
    completion_percent: int = 0
    is_complete: bool = False


class ProgressSnapshot(BaseModel):
    """Immutable, timestamped completion summary of one plan version."""

    id: Optional[int] = None
    plan_id: int
    version: int
    total_tasks: int
    completed_tasks: int
    in_progress_tasks: int = 0
    skipped_tasks: int = 0
    per_phase_completion: List[PhaseProgress] = Field(default_factory=list)
    overall_completion_percent: int
    timestamp: str


class ProgressMetrics(BaseModel):
    """Live analytics view of a plan, computed on demand."""

    plan_id: int
    version: int
    total_tasks: int
    completed_tasks: int
    in_progress_tasks: int
    not_started_tasks: int
    skipped_tasks: int
    completion_percent: int
    current_phase: Optional[str] = None
    velocity: float = 0.0
    average_task_hours: int = 0
    estimated_completion: Optional[str] = None
    phases: List[PhaseProgress] = Field(default_factory=list)


class OwnerProgressSummary(BaseModel):
    """Dashboard rollup over every active plan of one owner."""

    owner_id: str
    active_plans: int = 0
    total_tasks: int = 0
    completed_tasks: int = 0
    overall_completion_percent: int = 0
    average_velocity: float = 0.0


class HistoryEntry(BaseModel):
    """Immutable audit record of one committed mutation."""

    id: Optional[int] = None
    plan_id: int
    version: int
    actor_id: str
    operation: str
    target_id: Optional[int] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    override: bool = False
    undoes_version: Optional[int] = None
    timestamp: str


class DomainEvent(BaseModel):
    """Side event raised by a commit, e.g. a phase reaching 100%."""

    type: str
    phase_id: Optional[int] = None
    label: Optional[str] = None
    timestamp: Optional[str] = None


class GeneratedTask(BaseModel):
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    estimated_time: Optional[str] = None
    resources: List[str] = Field(default_factory=list)
    # migration imports may carry progress over from legacy plans
    status: TaskStatus = TaskStatus.NOT_STARTED


class GeneratedPhase(BaseModel):
    label: str = Field(..., min_length=1)
    description: Optional[str] = None
    estimated_duration: Optional[str] = None
    tasks: List[GeneratedTask] = Field(default_factory=list)


class GeneratedPlan(BaseModel):
    """One-shot payload produced by the plan generation service."""

    phases: List[GeneratedPhase] = Field(default_factory=list)
