"""Point-in-time export projections of a plan."""

from __future__ import annotations

import csv
import io
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from ...errors import ErrorCode, ValidationError
from . import dependency_validator
from .graph_store import GraphStore
from .plan_models import PlanState, PlanStatus, Task, TaskOrigin, TaskStatus, utc_now_iso
from .progress_calculator import recompute

logger = logging.getLogger(__name__)

PROJECTION_VERSION = "1.0"

CSV_HEADER = [
    "Phase",
    "Phase Order",
    "Task",
    "Task Order",
    "Description",
    "Status",
    "Estimated Time",
    "Resources",
    "Prerequisites",
    "Completed At",
    "Completed By",
    "Is Custom",
]


class ExportFormat(str, Enum):
    JSON = "json"
    CSV = "csv"
    MARKDOWN = "markdown"


class ExportTask(BaseModel):
    id: int
    title: str
    description: Optional[str] = None
    order: int
    status: TaskStatus
    estimated_time: Optional[str] = None
    resources: List[str] = Field(default_factory=list)
    is_custom: bool = False
    prerequisites: List[str] = Field(default_factory=list)
    blocked: bool = False
    completed_at: Optional[str] = None
    completed_by: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class ExportPhase(BaseModel):
    id: int
    label: str
    position: int
    description: Optional[str] = None
    estimated_duration: Optional[str] = None
    total_tasks: int = 0
    completed_tasks: int = 0
    completion_percent: int = 0
    completed_at: Optional[str] = None
    tasks: List[ExportTask] = Field(default_factory=list)


class ExportStatistics(BaseModel):
    total_phases: int
    total_tasks: int
    completed_tasks: int
    in_progress_tasks: int
    not_started_tasks: int
    skipped_tasks: int
    completion_percent: int


class ExportProjection(BaseModel):
    """Stable, format-agnostic view consumed by the renderers."""

    projection_version: str = PROJECTION_VERSION
    exported_at: str
    include_completed: bool = True
    include_skipped: bool = True
    plan_id: int
    plan_version: int
    title: str
    description: Optional[str] = None
    status: PlanStatus
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None
    statistics: ExportStatistics
    phases: List[ExportPhase] = Field(default_factory=list)


@dataclass
class ExportResult:
    content: str
    media_type: str
    filename: str
    projection: ExportProjection


def prerequisite_label(state: PlanState, task: Task) -> str:
    phase = state.get_phase(task.phase_id)
    phase_label = phase.label if phase else f"Phase {task.phase_id}"
    return f"{phase_label} / {task.display_name()}"


def _visible(task: Task, include_completed: bool, include_skipped: bool) -> bool:
    if not include_completed and task.status == TaskStatus.COMPLETED:
        return False
    if not include_skipped and task.status == TaskStatus.SKIPPED:
        return False
    return True


def project(
    state: PlanState,
    include_completed: bool = True,
    include_skipped: bool = True,
    now: Optional[str] = None,
    skipped_satisfies: bool = True,
) -> ExportProjection:
    """Build the projection; statistics and rollups always cover the whole plan."""
    snapshot = recompute(state, now)
    rollups = {rollup.phase_id: rollup for rollup in snapshot.per_phase_completion}

    phases: List[ExportPhase] = []
    for phase in state.iter_phases():
        rollup = rollups.get(phase.id)
        tasks: List[ExportTask] = []
        for task in state.phase_tasks(phase.id):
            if not _visible(task, include_completed, include_skipped):
                continue
            prerequisites = [state.get_task(prereq_id) for prereq_id in state.prerequisites_of(task.id)]
            prerequisites = [prereq for prereq in prerequisites if prereq is not None]
            tasks.append(
                ExportTask(
                    id=task.id,
                    title=task.title,
                    description=task.description,
                    order=task.order or 0,
                    status=task.status,
                    estimated_time=task.estimated_time,
                    resources=list(task.resources),
                    is_custom=task.created_by == TaskOrigin.USER,
                    prerequisites=[prerequisite_label(state, prereq) for prereq in prerequisites],
                    blocked=not dependency_validator.is_unblocked(state, task.id, skipped_satisfies),
                    completed_at=task.completed_at,
                    completed_by=task.completed_by,
                    created_at=task.created_at,
                    updated_at=task.updated_at,
                )
            )
        phases.append(
            ExportPhase(
                id=phase.id,
                label=phase.label,
                position=phase.position,
                description=phase.description,
                estimated_duration=phase.estimated_duration,
                total_tasks=rollup.total_tasks if rollup else 0,
                completed_tasks=rollup.completed_tasks if rollup else 0,
                completion_percent=rollup.completion_percent if rollup else 0,
                completed_at=phase.completed_at,
                tasks=tasks,
            )
        )

    return ExportProjection(
        exported_at=now or utc_now_iso(),
        include_completed=include_completed,
        include_skipped=include_skipped,
        plan_id=state.id,
        plan_version=state.version,
        title=state.plan.title,
        description=state.plan.description,
        status=state.plan.status,
        created_at=state.plan.created_at,
        updated_at=state.plan.updated_at,
        completed_at=state.plan.completed_at,
        statistics=ExportStatistics(
            total_phases=len(state.phases),
            total_tasks=snapshot.total_tasks,
            completed_tasks=snapshot.completed_tasks,
            in_progress_tasks=snapshot.in_progress_tasks,
            not_started_tasks=snapshot.total_tasks
            - snapshot.completed_tasks
            - snapshot.in_progress_tasks
            - snapshot.skipped_tasks,
            skipped_tasks=snapshot.skipped_tasks,
            completion_percent=snapshot.overall_completion_percent,
        ),
        phases=phases,
    )


def render_json(projection: ExportProjection) -> str:
    return json.dumps(projection.model_dump(mode="json"), ensure_ascii=False, indent=2)


def render_csv(projection: ExportProjection) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for phase in projection.phases:
        for task in phase.tasks:
            writer.writerow(
                [
                    phase.label,
                    phase.position,
                    task.title,
                    task.order,
                    task.description or "",
                    task.status.value,
                    task.estimated_time or "",
                    "; ".join(task.resources),
                    "; ".join(task.prerequisites),
                    task.completed_at or "",
                    task.completed_by or "",
                    "Yes" if task.is_custom else "No",
                ]
            )
    return buffer.getvalue()


_STATUS_BADGES: Dict[TaskStatus, str] = {
    TaskStatus.IN_PROGRESS: " (in progress)",
    TaskStatus.SKIPPED: " (skipped)",
}


def render_markdown(projection: ExportProjection) -> str:
    stats = projection.statistics
    lines: List[str] = [f"# {projection.title}", ""]
    if projection.description:
        lines.extend([projection.description, ""])
    lines.extend(
        [
            f"**Status:** {projection.status.value}",
            f"**Progress:** {stats.completed_tasks}/{stats.total_tasks} tasks completed ({stats.completion_percent}%)",
            f"**Version:** {projection.plan_version}",
            "",
            "---",
            "",
        ]
    )
    for phase in projection.phases:
        lines.extend([f"## {phase.label}", ""])
        if phase.description:
            lines.extend([phase.description, ""])
        if phase.estimated_duration:
            lines.extend([f"**Estimated Duration:** {phase.estimated_duration}", ""])
        lines.extend(
            [
                f"**Phase Progress:** {phase.completed_tasks}/{phase.total_tasks} tasks ({phase.completion_percent}%)",
                "",
            ]
        )
        for task in phase.tasks:
            checkbox = "[x]" if task.status == TaskStatus.COMPLETED else "[ ]"
            line = f"- {checkbox} {task.title}{_STATUS_BADGES.get(task.status, '')}"
            if task.is_custom:
                line += " (custom)"
            lines.append(line)
            if task.description:
                lines.append(f"  - **Description:** {task.description}")
            if task.estimated_time:
                lines.append(f"  - **Estimated Time:** {task.estimated_time}")
            if task.resources:
                lines.append(f"  - **Resources:** {', '.join(task.resources)}")
            if task.prerequisites:
                lines.append(f"  - **Depends on:** {', '.join(task.prerequisites)}")
            if task.completed_at:
                lines.append(f"  - **Completed:** {task.completed_at[:10]}")
        lines.append("")
    lines.extend(["---", "", f"*Exported on {projection.exported_at[:10]}*", ""])
    return "\n".join(lines)


_RENDERERS = {
    ExportFormat.JSON: (render_json, "application/json", "json"),
    ExportFormat.CSV: (render_csv, "text/csv", "csv"),
    ExportFormat.MARKDOWN: (render_markdown, "text/markdown", "md"),
}


class SnapshotExporter:
    def __init__(self, store: GraphStore, skipped_satisfies: bool = True) -> None:
        self._store = store
        self._skipped_satisfies = skipped_satisfies

    def state_at(self, plan_id: int, version: Optional[int] = None) -> PlanState:
        """Live state, or the state rebuilt from history at ``version``."""
        current = self._store.get_plan(plan_id)
        if version is None or version == current.version:
            return current
        if version < 1 or version > current.version:
            raise ValidationError(
                f"Plan {plan_id} has versions 1..{current.version}, not {version}",
                error_code=ErrorCode.FIELD_VALUE_OUT_OF_RANGE,
                field_name="version",
                field_value=version,
            )
        return self._store.ledger.replay(plan_id, to_version=version)

    def export(
        self,
        plan_id: int,
        fmt: ExportFormat = ExportFormat.JSON,
        version: Optional[int] = None,
        include_completed: bool = True,
        include_skipped: bool = True,
    ) -> ExportResult:
        fmt = ExportFormat(fmt)
        state = self.state_at(plan_id, version)
        projection = project(
            state, include_completed, include_skipped, skipped_satisfies=self._skipped_satisfies
        )
        renderer, media_type, extension = _RENDERERS[fmt]
        logger.info("Exported plan %s version %s as %s", plan_id, state.version, fmt.value)
        return ExportResult(
            content=renderer(projection),
            media_type=media_type,
            filename=f"plan_{plan_id}_v{state.version}.{extension}",
            projection=projection,
        )
