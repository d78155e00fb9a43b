from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Header, Query, Response
from pydantic import BaseModel, Field

from ..services.plans.graph_store import CommittedMutation
from ..services.plans.mutations import CreatePlan, SetPlanStatus
from ..services.plans.plan_models import GeneratedPlan, PlanState, PlanStatus
from ..services.plans.plan_service import get_plan_engine
from ..utils.route_helpers import etag_for, parse_if_match, resolve_actor
from . import register_router

logger = logging.getLogger(__name__)

plan_router = APIRouter(prefix="/plans", tags=["plans"])


class CreatePlanRequest(BaseModel):
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    analysis_id: Optional[str] = Field(None, description="Analysis the plan was generated from")
    owner_id: Optional[str] = None
    generated: GeneratedPlan = Field(default_factory=GeneratedPlan, description="One-shot generated phases and tasks")
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SetStatusRequest(BaseModel):
    status: PlanStatus
    expected_version: Optional[int] = Field(None, ge=0)


class UndoRequest(BaseModel):
    expected_version: Optional[int] = Field(None, ge=0)


class MutationResponse(BaseModel):
    plan_id: int
    version: int
    operation: str
    target_id: Optional[int] = None
    undoes_version: Optional[int] = None
    events: List[Dict[str, Any]] = Field(default_factory=list)
    progress: Optional[Dict[str, Any]] = None
    plan: Dict[str, Any]


def state_payload(state: PlanState, include_deleted: bool = False) -> Dict[str, Any]:
    """JSON view of a plan; soft-deleted tasks are hidden unless asked for."""
    payload = state.model_dump(mode="json")
    if not include_deleted:
        payload["tasks"] = {
            key: task for key, task in payload["tasks"].items() if task.get("deleted_at") is None
        }
    return payload


def mutation_response(committed: CommittedMutation, response: Response) -> MutationResponse:
    """Common body for every write; also sets the new version as ``ETag``."""
    entry = committed.entry
    response.headers["ETag"] = etag_for(committed.version)
    return MutationResponse(
        plan_id=entry.plan_id,
        version=committed.version,
        operation=entry.operation,
        target_id=entry.target_id,
        undoes_version=entry.undoes_version,
        events=[event.model_dump(mode="json") for event in committed.events],
        progress=committed.snapshot.model_dump(mode="json") if committed.snapshot else None,
        plan=state_payload(committed.state),
    )


@plan_router.post("", summary="Create a plan from a generated payload", status_code=201)
def create_plan(
    request: CreatePlanRequest,
    response: Response,
    x_actor_id: Optional[str] = Header(None),
) -> MutationResponse:
    mutation = CreatePlan(**request.model_dump())
    committed = get_plan_engine().create_plan(mutation, resolve_actor(x_actor_id))
    response.headers["Location"] = f"/plans/{committed.state.id}"
    return mutation_response(committed, response)


@plan_router.get("", summary="List plans")
def list_plans(
    status: Optional[PlanStatus] = Query(None),
    analysis_id: Optional[str] = Query(None),
    owner_id: Optional[str] = Query(None),
):
    summaries = get_plan_engine().list_plans(
        status=status.value if status else None,
        analysis_id=analysis_id,
        owner_id=owner_id,
    )
    return [summary.model_dump(mode="json") for summary in summaries]


@plan_router.get("/{plan_id}", summary="Full plan state")
def get_plan(plan_id: int, response: Response, include_deleted: bool = Query(False)):
    state = get_plan_engine().get_plan(plan_id)
    response.headers["ETag"] = etag_for(state.version)
    return state_payload(state, include_deleted=include_deleted)


@plan_router.post("/{plan_id}/status", summary="Archive, complete or reactivate a plan")
def set_plan_status(
    plan_id: int,
    request: SetStatusRequest,
    response: Response,
    if_match: Optional[str] = Header(None),
    x_actor_id: Optional[str] = Header(None),
) -> MutationResponse:
    committed = get_plan_engine().mutate(
        plan_id,
        SetPlanStatus(status=request.status),
        parse_if_match(if_match, request.expected_version),
        resolve_actor(x_actor_id),
    )
    return mutation_response(committed, response)


@plan_router.post("/{plan_id}/undo", summary="Undo the caller's latest change")
def undo(
    plan_id: int,
    response: Response,
    request: Optional[UndoRequest] = None,
    if_match: Optional[str] = Header(None),
    x_actor_id: Optional[str] = Header(None),
) -> MutationResponse:
    expected = parse_if_match(if_match, request.expected_version if request else None)
    committed = get_plan_engine().undo(plan_id, resolve_actor(x_actor_id), expected)
    return mutation_response(committed, response)


@plan_router.get("/{plan_id}/history", summary="Mutation history after a version")
def history(plan_id: int, since_version: int = Query(0, ge=0)):
    entries = get_plan_engine().history(plan_id, since_version)
    return {
        "plan_id": plan_id,
        "since_version": since_version,
        "entries": [entry.model_dump(mode="json") for entry in entries],
    }


register_router(
    namespace="plans",
    version="v1",
    path="/plans",
    router=plan_router,
    tags=["plans"],
    description="Plan lifecycle, undo and history",
)
