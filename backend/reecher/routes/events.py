"""
SSE streaming endpoint for sync progress.

Frontend connects via EventSource (native browser API) with the JWT passed as
a query parameter (EventSource does not support custom headers). Polling
/api/sync/progress remains the fallback.
"""
import asyncio
import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from reecher.auth import user_id_from_token
from reecher.models import SyncProgressResponse
from reecher.services import Services, get_services
from reecher.sse import progress_broadcaster

logger = logging.getLogger(__name__)

router = APIRouter(tags=["events"])

# SSE keepalive interval, keeps proxies and browsers from closing idle connections
_KEEPALIVE_INTERVAL = 30  # seconds


def _format_event(event: str, payload: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(payload)}\n\n"


@router.get("/events/sync-progress")
async def sync_progress_stream(
    request: Request,
    token: str,
    services: Services = Depends(get_services),
):
    """SSE endpoint for the caller's sync progress.

    Sends the current snapshot first, then every update the tracker publishes.
    """
    user_id = user_id_from_token(token)
    initial = SyncProgressResponse.from_progress(await services.tracker.status(user_id)).model_dump(mode="json")
    queue = progress_broadcaster.subscribe(user_id)

    async def generate():
        try:
            yield _format_event("sync_progress", initial)
            while True:
                if await request.is_disconnected():
                    break
                try:
                    data = await asyncio.wait_for(queue.get(), timeout=_KEEPALIVE_INTERVAL)
                    yield _format_event(data.get("event", "message"), data.get("payload", {}))
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
        except asyncio.CancelledError:
            pass
        finally:
            progress_broadcaster.unsubscribe(user_id, queue)

    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )
