"""Plan mutations and their pure application.

Each mutation is a pydantic model tagged by ``kind``. :func:`apply_mutation`
takes a committed :class:`PlanState` and returns an :class:`AppliedMutation`
holding the next state (version + 1) together with everything the store and
the ledger need to persist it. Nothing here touches storage, so the same code
path serves live commits and history replay.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Annotated, Any, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from ...errors import (
    DependencyNotSatisfiedError,
    ErrorCode,
    NotFoundError,
    PlanArchivedError,
    ValidationError,
)
from . import order_sequencer
from .dependency_validator import (
    BLOCKED_TARGET_STATUSES,
    EdgeCheck,
    blocking_prerequisites,
    can_add_edge,
    ensure_can_add_edge,
)
from .plan_models import (
    DependencyEdge,
    DomainEvent,
    GeneratedPlan,
    Phase,
    PlanInfo,
    PlanState,
    PlanStatus,
    Task,
    TaskOrigin,
    TaskStatus,
    utc_now_iso,
)
from .progress_calculator import completion_transitions


class CreatePlan(BaseModel):
    kind: Literal["create_plan"] = "create_plan"
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    analysis_id: Optional[str] = None
    owner_id: Optional[str] = None
    generated: GeneratedPlan = Field(default_factory=GeneratedPlan)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AddTask(BaseModel):
    kind: Literal["add_task"] = "add_task"
    phase_id: int
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    estimated_time: Optional[str] = None
    resources: List[str] = Field(default_factory=list)
    after_task_id: Optional[int] = None
    created_by: TaskOrigin = TaskOrigin.USER
    # assigned on first application and kept for replay
    task_id: Optional[int] = None


class UpdateTask(BaseModel):
    kind: Literal["update_task"] = "update_task"
    task_id: int
    title: Optional[str] = None
    description: Optional[str] = None
    estimated_time: Optional[str] = None
    resources: Optional[List[str]] = None
    status: Optional[TaskStatus] = None
    override_dependencies: bool = False


_CLEARABLE_UPDATE_FIELDS = ("description", "estimated_time")
_UPDATE_CONTROL_FIELDS = ("kind", "task_id", "override_dependencies")


def update_changes(mutation: UpdateTask) -> Dict[str, Any]:
    """Fields the caller actually sent.

    An explicit ``None`` clears ``description`` or ``estimated_time``; for
    the other fields ``None`` means "leave as is".
    """
    changes: Dict[str, Any] = {}
    for name in mutation.model_fields_set:
        if name in _UPDATE_CONTROL_FIELDS:
            continue
        value = getattr(mutation, name)
        if value is None and name not in _CLEARABLE_UPDATE_FIELDS:
            continue
        changes[name] = value
    return changes


def mutation_payload(mutation: BaseModel) -> Dict[str, Any]:
    """JSON stored in history; updates keep only the fields that were sent."""
    payload = mutation.model_dump(mode="json")
    if isinstance(mutation, UpdateTask):
        sent = set(mutation.model_fields_set) | set(_UPDATE_CONTROL_FIELDS)
        payload = {name: value for name, value in payload.items() if name in sent}
    return payload


class DeleteTask(BaseModel):
    kind: Literal["delete_task"] = "delete_task"
    task_id: int


class RestoreTask(BaseModel):
    kind: Literal["restore_task"] = "restore_task"
    task_id: int
    order: int = 0
    edges: List[DependencyEdge] = Field(default_factory=list)


class ReorderTask(BaseModel):
    kind: Literal["reorder_task"] = "reorder_task"
    task_id: int
    new_order: int
    phase_id: Optional[int] = None


class ReorderPhase(BaseModel):
    kind: Literal["reorder_phase"] = "reorder_phase"
    phase_id: int
    task_ids: List[int]


class AddDependency(BaseModel):
    kind: Literal["add_dependency"] = "add_dependency"
    prerequisite_task_id: int
    dependent_task_id: int
    prerequisite_plan_id: Optional[int] = None
    edge_id: Optional[int] = None


class RemoveDependency(BaseModel):
    kind: Literal["remove_dependency"] = "remove_dependency"
    edge_id: int


class SetPlanStatus(BaseModel):
    kind: Literal["set_plan_status"] = "set_plan_status"
    status: PlanStatus


Mutation = Annotated[
    Union[
        CreatePlan,
        AddTask,
        UpdateTask,
        DeleteTask,
        RestoreTask,
        ReorderTask,
        ReorderPhase,
        AddDependency,
        RemoveDependency,
        SetPlanStatus,
    ],
    Field(discriminator="kind"),
]

_MUTATION_ADAPTER: TypeAdapter = TypeAdapter(Mutation)


def parse_mutation(payload: Dict[str, Any]):
    """Rebuild a mutation from its stored payload."""
    return _MUTATION_ADAPTER.validate_python(payload)


@dataclass
class AppliedMutation:
    """Result of applying one mutation; nothing has been persisted yet."""

    state: PlanState
    operation: str
    payload: Dict[str, Any]
    target_id: Optional[int] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    affects_progress: bool = False
    override: bool = False
    events: List[DomainEvent] = field(default_factory=list)


@dataclass
class _Outcome:
    normalized: BaseModel
    target_id: Optional[int] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    affects_progress: bool = False
    override: bool = False


def _dump(model: Optional[BaseModel]) -> Optional[Dict[str, Any]]:
    return model.model_dump(mode="json") if model is not None else None


def _require_phase(state: PlanState, phase_id: int) -> Phase:
    phase = state.get_phase(phase_id)
    if phase is None:
        raise NotFoundError(
            f"Phase {phase_id} not found in plan {state.id}",
            error_code=ErrorCode.PHASE_NOT_FOUND,
            plan_id=state.id,
            phase_id=phase_id,
        )
    return phase


def _require_task(state: PlanState, task_id: int) -> Task:
    task = state.get_task(task_id)
    if task is None:
        raise NotFoundError(
            f"Task {task_id} not found in plan {state.id}",
            error_code=ErrorCode.TASK_NOT_FOUND,
            plan_id=state.id,
            task_id=task_id,
            current_version=state.version,
        )
    return task


def _write_orders(state: PlanState, ordered_ids: List[int]) -> None:
    for task_id, order in order_sequencer.renumber(ordered_ids).items():
        state.tasks[task_id].order = order


def _apply_add_task(state: PlanState, mutation: AddTask, actor_id: str, now: str, skipped_satisfies: bool) -> _Outcome:
    phase = _require_phase(state, mutation.phase_id)
    if mutation.after_task_id is not None:
        anchor = _require_task(state, mutation.after_task_id)
        if anchor.phase_id != phase.id:
            raise ValidationError(
                f"Anchor task {anchor.id} belongs to phase {anchor.phase_id}, not {phase.id}",
                field_name="after_task_id",
                field_value=anchor.id,
            )
    task_id = mutation.task_id if mutation.task_id is not None else state.next_task_id()
    if task_id in state.tasks:
        raise ValidationError(f"Task id {task_id} is already taken", field_name="task_id", field_value=task_id)

    ordered = order_sequencer.insert_task(state.phase_task_ids(phase.id), task_id, mutation.after_task_id)
    task = Task(
        id=task_id,
        plan_id=state.id,
        phase_id=phase.id,
        title=mutation.title,
        description=mutation.description,
        estimated_time=mutation.estimated_time,
        resources=list(mutation.resources),
        created_by=mutation.created_by,
        created_at=now,
        updated_at=now,
    )
    state.tasks[task_id] = task
    _write_orders(state, ordered)
    return _Outcome(
        normalized=mutation.model_copy(update={"task_id": task_id}),
        target_id=task_id,
        after_state=_dump(task),
        affects_progress=True,
    )


def _apply_update_task(
    state: PlanState, mutation: UpdateTask, actor_id: str, now: str, skipped_satisfies: bool
) -> _Outcome:
    task = _require_task(state, mutation.task_id)
    changes = update_changes(mutation)
    if not changes:
        raise ValidationError(
            "Update carries no fields to change",
            error_code=ErrorCode.MISSING_REQUIRED_FIELD,
            context={"task_id": task.id},
        )
    before = _dump(task)
    affects_progress = False
    override = False

    new_status = mutation.status
    if new_status is not None and new_status != task.status:
        if new_status in BLOCKED_TARGET_STATUSES:
            blocking = blocking_prerequisites(state, task.id, skipped_satisfies)
            if blocking and not mutation.override_dependencies:
                raise DependencyNotSatisfiedError(task.id, new_status.value, [blocker.id for blocker in blocking])
            override = bool(blocking)
        task.status = new_status
        if new_status == TaskStatus.COMPLETED:
            task.completed_at = now
            task.completed_by = actor_id
        else:
            task.completed_at = None
            task.completed_by = None
        affects_progress = True

    for name in ("title", "description", "estimated_time"):
        if name in changes:
            setattr(task, name, changes[name])
    if "resources" in changes:
        task.resources = list(changes["resources"])
    if not task.title.strip():
        raise ValidationError("Task title cannot be empty", field_name="title")
    task.updated_at = now

    return _Outcome(
        normalized=mutation,
        target_id=task.id,
        before_state=before,
        after_state=_dump(task),
        affects_progress=affects_progress,
        override=override,
    )


def _apply_delete_task(
    state: PlanState, mutation: DeleteTask, actor_id: str, now: str, skipped_satisfies: bool
) -> _Outcome:
    task = _require_task(state, mutation.task_id)
    touching = state.edges_touching(task.id)
    before = {"task": _dump(task), "edges": [_dump(edge) for edge in touching]}

    ordered = order_sequencer.remove_task(state.phase_task_ids(task.phase_id), task.id)
    removed_ids = {edge.id for edge in touching}
    state.dependencies = [edge for edge in state.dependencies if edge.id not in removed_ids]
    task.deleted_at = now
    task.updated_at = now
    task.order = None
    _write_orders(state, ordered)
    return _Outcome(
        normalized=mutation,
        target_id=task.id,
        before_state=before,
        after_state={"task": _dump(task), "edges": []},
        affects_progress=True,
    )


def _apply_restore_task(
    state: PlanState, mutation: RestoreTask, actor_id: str, now: str, skipped_satisfies: bool
) -> _Outcome:
    task = state.tasks.get(mutation.task_id)
    if task is None:
        raise NotFoundError(
            f"Task {mutation.task_id} not found in plan {state.id}",
            error_code=ErrorCode.TASK_NOT_FOUND,
            plan_id=state.id,
            task_id=mutation.task_id,
        )
    if not task.is_deleted:
        raise ValidationError(f"Task {task.id} is not deleted", field_name="task_id", field_value=task.id)

    current = state.phase_task_ids(task.phase_id)
    index = max(0, min(mutation.order, len(current)))
    ordered = order_sequencer.insert_at(current, task.id, index)
    task.deleted_at = None
    task.updated_at = now
    _write_orders(state, ordered)

    restored: List[DependencyEdge] = []
    for edge in mutation.edges:
        # endpoints deleted or rewired since are dropped silently
        verdict = can_add_edge(state, edge.prerequisite_task_id, edge.dependent_task_id)
        if verdict != EdgeCheck.OK or state.get_edge(edge.id) is not None:
            continue
        state.dependencies.append(edge)
        state.plan.last_edge_id = max(state.plan.last_edge_id, edge.id)
        restored.append(edge)

    return _Outcome(
        normalized=mutation.model_copy(update={"order": index, "edges": restored}),
        target_id=task.id,
        after_state={"task": _dump(task), "edges": [_dump(edge) for edge in restored]},
        affects_progress=True,
    )


def _apply_reorder_task(
    state: PlanState, mutation: ReorderTask, actor_id: str, now: str, skipped_satisfies: bool
) -> _Outcome:
    task = _require_task(state, mutation.task_id)
    if mutation.phase_id is not None and mutation.phase_id != task.phase_id:
        raise ValidationError(
            f"Task {task.id} belongs to phase {task.phase_id}; tasks cannot move across phases",
            field_name="phase_id",
            field_value=mutation.phase_id,
        )
    before = {"task_id": task.id, "phase_id": task.phase_id, "order": task.order}
    ordered = order_sequencer.reorder_task(state.phase_task_ids(task.phase_id), task.id, mutation.new_order)
    _write_orders(state, ordered)
    return _Outcome(
        normalized=mutation.model_copy(update={"phase_id": task.phase_id}),
        target_id=task.id,
        before_state=before,
        after_state={"task_id": task.id, "phase_id": task.phase_id, "order": task.order, "phase_order": ordered},
    )


def _apply_reorder_phase(
    state: PlanState, mutation: ReorderPhase, actor_id: str, now: str, skipped_satisfies: bool
) -> _Outcome:
    phase = _require_phase(state, mutation.phase_id)
    current = state.phase_task_ids(phase.id)
    ordered = order_sequencer.apply_sequence(current, mutation.task_ids)
    _write_orders(state, ordered)
    return _Outcome(
        normalized=mutation,
        target_id=phase.id,
        before_state={"phase_id": phase.id, "task_ids": current},
        after_state={"phase_id": phase.id, "task_ids": ordered},
    )


def _apply_add_dependency(
    state: PlanState, mutation: AddDependency, actor_id: str, now: str, skipped_satisfies: bool
) -> _Outcome:
    ensure_can_add_edge(
        state, mutation.prerequisite_task_id, mutation.dependent_task_id, mutation.prerequisite_plan_id
    )
    edge_id = mutation.edge_id if mutation.edge_id is not None else state.next_edge_id()
    edge = DependencyEdge(
        id=edge_id,
        prerequisite_task_id=mutation.prerequisite_task_id,
        dependent_task_id=mutation.dependent_task_id,
        created_at=now,
    )
    state.dependencies.append(edge)
    state.plan.last_edge_id = max(state.plan.last_edge_id, edge_id)
    return _Outcome(
        normalized=mutation.model_copy(update={"edge_id": edge_id, "prerequisite_plan_id": None}),
        target_id=edge_id,
        after_state=_dump(edge),
    )


def _apply_remove_dependency(
    state: PlanState, mutation: RemoveDependency, actor_id: str, now: str, skipped_satisfies: bool
) -> _Outcome:
    edge = state.get_edge(mutation.edge_id)
    if edge is None:
        raise NotFoundError(
            f"Dependency {mutation.edge_id} not found in plan {state.id}",
            error_code=ErrorCode.DEPENDENCY_NOT_FOUND,
            plan_id=state.id,
            edge_id=mutation.edge_id,
        )
    state.dependencies = [existing for existing in state.dependencies if existing.id != edge.id]
    return _Outcome(normalized=mutation, target_id=edge.id, before_state=_dump(edge))


def _apply_set_plan_status(
    state: PlanState, mutation: SetPlanStatus, actor_id: str, now: str, skipped_satisfies: bool
) -> _Outcome:
    before = {"status": state.plan.status.value}
    state.plan.status = mutation.status
    return _Outcome(
        normalized=mutation,
        target_id=state.id,
        before_state=before,
        after_state={"status": mutation.status.value},
    )


_HANDLERS: Dict[str, Callable[..., _Outcome]] = {
    "add_task": _apply_add_task,
    "update_task": _apply_update_task,
    "delete_task": _apply_delete_task,
    "restore_task": _apply_restore_task,
    "reorder_task": _apply_reorder_task,
    "reorder_phase": _apply_reorder_phase,
    "add_dependency": _apply_add_dependency,
    "remove_dependency": _apply_remove_dependency,
    "set_plan_status": _apply_set_plan_status,
}


def apply_mutation(
    state: PlanState,
    mutation: BaseModel,
    actor_id: str,
    now: Optional[str] = None,
    skipped_satisfies: bool = True,
) -> AppliedMutation:
    """Apply ``mutation`` to a copy of ``state``; the input is left untouched."""
    now = now or utc_now_iso()
    kind = getattr(mutation, "kind", None)
    if kind == "create_plan":
        raise ValidationError(f"Plan {state.id} already exists", error_code=ErrorCode.PLAN_ALREADY_EXISTS)
    handler = _HANDLERS.get(kind)
    if handler is None:
        raise ValidationError(f"Unsupported mutation kind: {kind}", field_name="kind", field_value=kind)
    if state.plan.status == PlanStatus.ARCHIVED and kind != "set_plan_status":
        raise PlanArchivedError(state.id)

    draft = state.model_copy(deep=True)
    outcome = handler(draft, mutation, actor_id, now, skipped_satisfies)
    draft.plan.version = state.version + 1
    draft.plan.updated_at = now

    events: List[DomainEvent] = []
    if outcome.affects_progress:
        draft, events = completion_transitions(state, draft, now)

    return AppliedMutation(
        state=draft,
        operation=kind,
        payload=mutation_payload(outcome.normalized),
        target_id=outcome.target_id,
        before_state=outcome.before_state,
        after_state=outcome.after_state,
        affects_progress=outcome.affects_progress,
        override=outcome.override,
        events=events,
    )


def seed_plan(plan_id: int, mutation: CreatePlan, actor_id: str, now: Optional[str] = None) -> AppliedMutation:
    """Build version 1 of a plan from its generated content.

    Phases take positions ``1..N`` and tasks sequential orders; no
    dependency edges are created.
    """
    now = now or utc_now_iso()
    plan = PlanInfo(
        id=plan_id,
        title=mutation.title,
        description=mutation.description,
        analysis_id=mutation.analysis_id,
        owner_id=mutation.owner_id,
        version=1,
        created_at=now,
        updated_at=now,
        metadata=dict(mutation.metadata),
    )
    state = PlanState(plan=plan)
    next_task_id = 1
    for position, generated_phase in enumerate(mutation.generated.phases, start=1):
        phase = Phase(
            id=position,
            plan_id=plan_id,
            label=generated_phase.label,
            position=position,
            description=generated_phase.description,
            estimated_duration=generated_phase.estimated_duration,
        )
        state.phases.append(phase)
        for order, generated_task in enumerate(generated_phase.tasks):
            completed = generated_task.status == TaskStatus.COMPLETED
            state.tasks[next_task_id] = Task(
                id=next_task_id,
                plan_id=plan_id,
                phase_id=phase.id,
                title=generated_task.title,
                description=generated_task.description,
                estimated_time=generated_task.estimated_time,
                resources=list(generated_task.resources),
                order=order,
                status=generated_task.status,
                created_by=TaskOrigin.SYSTEM,
                created_at=now,
                updated_at=now,
                completed_at=now if completed else None,
                completed_by=actor_id if completed else None,
            )
            next_task_id += 1

    state, events = completion_transitions(None, state, now)
    return AppliedMutation(
        state=state,
        operation=mutation.kind,
        payload=mutation.model_dump(mode="json"),
        target_id=plan_id,
        after_state={"phases": len(state.phases), "tasks": len(state.tasks)},
        affects_progress=True,
        events=events,
    )
