from __future__ import annotations

from typing import Optional

from fastapi import APIRouter
from fastapi.responses import Response
from pydantic import BaseModel, Field

from ..services.plans.plan_service import get_plan_engine
from ..services.plans.snapshot_exporter import ExportFormat
from ..utils.route_helpers import etag_for
from . import register_router

export_router = APIRouter(prefix="/plans/{plan_id}/export", tags=["export"])


class ExportRequest(BaseModel):
    format: ExportFormat = ExportFormat.JSON
    include_completed: bool = True
    include_skipped: bool = True
    version: Optional[int] = Field(None, ge=1, description="Export the plan as it was at this version")


@export_router.post("", summary="Export the plan as JSON, CSV or Markdown")
def export_plan(plan_id: int, request: Optional[ExportRequest] = None):
    request = request or ExportRequest()
    result = get_plan_engine().exporter.export(
        plan_id,
        request.format,
        version=request.version,
        include_completed=request.include_completed,
        include_skipped=request.include_skipped,
    )
    return Response(
        content=result.content,
        media_type=result.media_type,
        headers={
            "Content-Disposition": f'attachment; filename="{result.filename}"',
            "ETag": etag_for(result.projection.plan_version),
        },
    )


register_router(
    namespace="export",
    version="v1",
    path="/plans/{plan_id}/export",
    router=export_router,
    tags=["export"],
    requires_plan=True,
    description="Point-in-time plan exports",
)
