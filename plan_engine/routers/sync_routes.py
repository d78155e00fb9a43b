from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import APIRouter, Query
from fastapi.responses import StreamingResponse

from ..services.foundation.settings import get_settings
from ..services.plans.plan_service import get_plan_engine
from . import register_router

logger = logging.getLogger(__name__)

sync_router = APIRouter(prefix="/plans/{plan_id}/events", tags=["sync"])


def _sse_message(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


def _needs_snapshot(since_version: Optional[int], current_version: int, oldest_buffered: Optional[int]) -> bool:
    """Whether the replay buffer alone cannot bring the client up to date."""
    if since_version is None:
        return True
    if since_version >= current_version:
        return False
    return oldest_buffered is None or oldest_buffered > since_version + 1


@sync_router.get("", summary="Subscribe to committed plan versions (SSE)")
async def stream_plan_events(plan_id: int, since_version: Optional[int] = Query(None, ge=0)):
    engine = get_plan_engine()
    # raises NotFound before the stream starts
    engine.get_plan(plan_id)

    heartbeat_seconds = get_settings().broadcast_heartbeat_seconds
    headers = {
        "Cache-Control": "no-cache",
        "X-Accel-Buffering": "no",
    }

    async def event_generator() -> AsyncIterator[str]:
        # attached only once the response actually streams
        subscription = engine.broadcaster.subscribe(
            plan_id, since_version=since_version, loop=asyncio.get_running_loop()
        )
        floor = since_version or 0
        try:
            state = engine.get_plan(plan_id)
            oldest = engine.broadcaster.oldest_version(plan_id)
            if _needs_snapshot(since_version, state.version, oldest):
                message_type = "snapshot" if since_version is None else "resync"
                yield _sse_message(
                    {
                        "type": message_type,
                        "plan_id": plan_id,
                        "version": state.version,
                        "plan": state.model_dump(mode="json"),
                    }
                )
                floor = state.version
            while True:
                try:
                    event = await asyncio.wait_for(subscription.queue.get(), timeout=heartbeat_seconds)
                except asyncio.TimeoutError:
                    yield _sse_message(
                        {
                            "type": "heartbeat",
                            "plan_id": plan_id,
                            "version": engine.store.current_version(plan_id),
                        }
                    )
                    continue
                if event.version <= floor:
                    continue
                floor = event.version
                payload = event.to_payload()
                payload["type"] = "event"
                yield _sse_message(payload)
        finally:
            engine.broadcaster.unsubscribe(subscription)
            logger.debug("Subscriber %s left plan %s", subscription.subscriber_id, plan_id)

    return StreamingResponse(event_generator(), media_type="text/event-stream", headers=headers)


register_router(
    namespace="sync",
    version="v1",
    path="/plans/{plan_id}/events",
    router=sync_router,
    tags=["sync"],
    requires_plan=True,
    streaming=True,
    description="Ordered stream of committed plan versions",
)
