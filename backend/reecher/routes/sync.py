"""
Group sync, group listing and broadcast routes
"""
import logging
from fastapi import APIRouter, Depends, Query

from reecher.auth import get_current_user_id
from reecher.models import (
    BroadcastResponse,
    ClassifyRequest,
    GroupResponse,
    GroupsListResponse,
    SendMessageRequest,
    StartSyncRequest,
    SyncProgressResponse,
)
from reecher.services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Sync"])


@router.post("/sync/start", response_model=SyncProgressResponse)
async def start_sync(
    request: StartSyncRequest,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    """Start a background group sync. Poll /sync/progress (about every 3s) or subscribe to SSE."""
    progress = await services.engine.start_sync(user_id, classify=request.classify)
    return SyncProgressResponse.from_progress(progress)


@router.post("/sync/classify", response_model=SyncProgressResponse)
async def start_classification(
    request: ClassifyRequest,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    progress = await services.engine.start_classification(user_id, request.group_ids)
    return SyncProgressResponse.from_progress(progress)


@router.post("/sync/cancel")
async def cancel_sync(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    return {"cancelled": await services.engine.cancel(user_id)}


@router.get("/sync/progress", response_model=SyncProgressResponse)
async def get_sync_progress(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    progress = await services.tracker.status(user_id)
    return SyncProgressResponse.from_progress(progress)


@router.get("/groups", response_model=GroupsListResponse)
async def list_groups(
    admin_only: bool = Query(False),
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    groups = await services.engine.list_groups(user_id, admin_only=admin_only)
    return GroupsListResponse(
        groups=[
            GroupResponse(
                group_id=g.group_id,
                name=g.name,
                participant_count=g.participant_count,
                admin_status=g.admin_status,
                avatar_url=g.avatar_url,
                last_synced_at=g.last_synced_at,
            )
            for g in groups
        ],
        total=len(groups),
    )


@router.post("/messages/send", response_model=BroadcastResponse)
async def send_to_groups(
    request: SendMessageRequest,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    return await services.sender.send_to_groups(user_id, request.group_ids, request.body, request.media_url)
