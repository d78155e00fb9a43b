from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Header, Query, Response
from pydantic import BaseModel, Field

from ..services.plans.mutations import (
    AddDependency,
    AddTask,
    DeleteTask,
    RemoveDependency,
    ReorderPhase,
    ReorderTask,
    UpdateTask,
)
from ..services.plans.plan_models import TaskStatus
from ..services.plans.plan_service import get_plan_engine
from ..utils.route_helpers import parse_if_match, resolve_actor
from . import register_router
from .plan_routes import MutationResponse, mutation_response

task_router = APIRouter(prefix="/plans/{plan_id}", tags=["tasks"])


class AddTaskRequest(BaseModel):
    phase_id: int
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    estimated_time: Optional[str] = None
    resources: List[str] = Field(default_factory=list)
    after_task_id: Optional[int] = Field(None, description="Insert right after this task; appended when omitted")
    expected_version: Optional[int] = Field(None, ge=0)


class UpdateTaskRequest(BaseModel):
    title: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    estimated_time: Optional[str] = None
    resources: Optional[List[str]] = None
    status: Optional[TaskStatus] = None
    override_dependencies: bool = False
    expected_version: Optional[int] = Field(None, ge=0)


class ReorderTaskRequest(BaseModel):
    task_id: int
    new_order: int = Field(..., ge=0)
    phase_id: Optional[int] = None
    expected_version: Optional[int] = Field(None, ge=0)


class ReorderPhaseRequest(BaseModel):
    task_ids: List[int]
    expected_version: Optional[int] = Field(None, ge=0)


class AddDependencyRequest(BaseModel):
    prerequisite_task_id: int
    prerequisite_plan_id: Optional[int] = Field(None, description="Defaults to this plan; any other plan is rejected")
    expected_version: Optional[int] = Field(None, ge=0)


@task_router.post("/tasks", summary="Add a user task to a phase", status_code=201)
def add_task(
    plan_id: int,
    request: AddTaskRequest,
    response: Response,
    if_match: Optional[str] = Header(None),
    x_actor_id: Optional[str] = Header(None),
) -> MutationResponse:
    mutation = AddTask(**request.model_dump(exclude={"expected_version"}))
    committed = get_plan_engine().mutate(
        plan_id, mutation, parse_if_match(if_match, request.expected_version), resolve_actor(x_actor_id)
    )
    return mutation_response(committed, response)


@task_router.get("/tasks/ready", summary="Tasks whose prerequisites are all satisfied")
def ready_tasks(plan_id: int):
    tasks = get_plan_engine().ready_tasks(plan_id)
    return [task.model_dump(mode="json") for task in tasks]


@task_router.post("/tasks/reorder", summary="Move a task within its phase")
def reorder_task(
    plan_id: int,
    request: ReorderTaskRequest,
    response: Response,
    if_match: Optional[str] = Header(None),
    x_actor_id: Optional[str] = Header(None),
) -> MutationResponse:
    mutation = ReorderTask(**request.model_dump(exclude={"expected_version"}))
    committed = get_plan_engine().mutate(
        plan_id, mutation, parse_if_match(if_match, request.expected_version), resolve_actor(x_actor_id)
    )
    return mutation_response(committed, response)


@task_router.get("/tasks/{task_id}", summary="Single task")
def get_task(plan_id: int, task_id: int):
    return get_plan_engine().get_task(plan_id, task_id).model_dump(mode="json")


@task_router.patch("/tasks/{task_id}", summary="Edit a task or change its status")
def update_task(
    plan_id: int,
    task_id: int,
    request: UpdateTaskRequest,
    response: Response,
    if_match: Optional[str] = Header(None),
    x_actor_id: Optional[str] = Header(None),
) -> MutationResponse:
    fields = request.model_dump(exclude={"expected_version"}, exclude_unset=True)
    mutation = UpdateTask(task_id=task_id, **fields)
    committed = get_plan_engine().mutate(
        plan_id, mutation, parse_if_match(if_match, request.expected_version), resolve_actor(x_actor_id)
    )
    return mutation_response(committed, response)


@task_router.delete("/tasks/{task_id}", summary="Soft-delete a task and its dependency edges")
def delete_task(
    plan_id: int,
    task_id: int,
    response: Response,
    expected_version: Optional[int] = Query(None, ge=0),
    if_match: Optional[str] = Header(None),
    x_actor_id: Optional[str] = Header(None),
) -> MutationResponse:
    committed = get_plan_engine().mutate(
        plan_id,
        DeleteTask(task_id=task_id),
        parse_if_match(if_match, expected_version),
        resolve_actor(x_actor_id),
    )
    return mutation_response(committed, response)


@task_router.get("/tasks/{task_id}/blockers", summary="Prerequisites still blocking a task")
def blockers(plan_id: int, task_id: int):
    tasks = get_plan_engine().blockers(plan_id, task_id)
    return {
        "plan_id": plan_id,
        "task_id": task_id,
        "blocked": bool(tasks),
        "blockers": [task.model_dump(mode="json") for task in tasks],
    }


@task_router.post(
    "/tasks/{task_id}/dependencies",
    summary="Make a task depend on a prerequisite",
    status_code=201,
)
def add_dependency(
    plan_id: int,
    task_id: int,
    request: AddDependencyRequest,
    response: Response,
    if_match: Optional[str] = Header(None),
    x_actor_id: Optional[str] = Header(None),
) -> MutationResponse:
    mutation = AddDependency(
        prerequisite_task_id=request.prerequisite_task_id,
        dependent_task_id=task_id,
        prerequisite_plan_id=request.prerequisite_plan_id,
    )
    committed = get_plan_engine().mutate(
        plan_id, mutation, parse_if_match(if_match, request.expected_version), resolve_actor(x_actor_id)
    )
    return mutation_response(committed, response)


@task_router.delete("/dependencies/{edge_id}", summary="Remove a dependency edge")
def remove_dependency(
    plan_id: int,
    edge_id: int,
    response: Response,
    expected_version: Optional[int] = Query(None, ge=0),
    if_match: Optional[str] = Header(None),
    x_actor_id: Optional[str] = Header(None),
) -> MutationResponse:
    committed = get_plan_engine().mutate(
        plan_id,
        RemoveDependency(edge_id=edge_id),
        parse_if_match(if_match, expected_version),
        resolve_actor(x_actor_id),
    )
    return mutation_response(committed, response)


@task_router.post("/phases/{phase_id}/reorder", summary="Replace the task order of a phase")
def reorder_phase(
    plan_id: int,
    phase_id: int,
    request: ReorderPhaseRequest,
    response: Response,
    if_match: Optional[str] = Header(None),
    x_actor_id: Optional[str] = Header(None),
) -> MutationResponse:
    committed = get_plan_engine().mutate(
        plan_id,
        ReorderPhase(phase_id=phase_id, task_ids=request.task_ids),
        parse_if_match(if_match, request.expected_version),
        resolve_actor(x_actor_id),
    )
    return mutation_response(committed, response)


register_router(
    namespace="tasks",
    version="v1",
    path="/plans/{plan_id}/tasks",
    router=task_router,
    tags=["tasks"],
    requires_plan=True,
    description="Task edits, ordering and dependency edges",
)
