from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Query, Response

from ..services.plans.plan_service import get_plan_engine
from ..utils.route_helpers import etag_for
from . import register_router

progress_router = APIRouter(prefix="/plans/{plan_id}/progress", tags=["progress"])
owner_progress_router = APIRouter(prefix="/owners/{owner_id}/progress", tags=["progress"])


@progress_router.get("", summary="Live progress rollups and metrics")
def get_progress(plan_id: int, response: Response):
    engine = get_plan_engine()
    snapshot = engine.progress(plan_id)
    metrics = engine.metrics(plan_id)
    response.headers["ETag"] = etag_for(snapshot.version)
    return {
        "snapshot": snapshot.model_dump(mode="json"),
        "metrics": metrics.model_dump(mode="json"),
    }


@progress_router.get("/history", summary="Stored progress snapshots, oldest first")
def progress_history(plan_id: int, limit: Optional[int] = Query(None, ge=1, le=1000)):
    snapshots = get_plan_engine().progress_history(plan_id, limit=limit)
    return [snapshot.model_dump(mode="json") for snapshot in snapshots]


@progress_router.post("/snapshots", summary="Record today's progress snapshot if none exists yet")
def capture_daily_snapshot(plan_id: int, response: Response):
    snapshot = get_plan_engine().capture_daily_snapshot(plan_id)
    if snapshot is None:
        return {"created": False, "snapshot": None}
    response.status_code = 201
    return {"created": True, "snapshot": snapshot.model_dump(mode="json")}


@owner_progress_router.get("", summary="Progress rollup over the owner's active plans")
def owner_progress(owner_id: str):
    return get_plan_engine().owner_summary(owner_id).model_dump(mode="json")


register_router(
    namespace="progress",
    version="v1",
    path="/plans/{plan_id}/progress",
    router=progress_router,
    tags=["progress"],
    requires_plan=True,
    description="Completion rollups, velocity and snapshot history",
)

register_router(
    namespace="owners",
    version="v1",
    path="/owners/{owner_id}/progress",
    router=owner_progress_router,
    tags=["progress"],
    description="Dashboard rollup across an owner's active plans",
)
