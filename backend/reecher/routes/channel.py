"""
WhatsApp channel lifecycle routes

Every route acts on the caller's own channel; the user id comes from the JWT.
Core errors (ReecherError) are turned into JSON responses by the app-level
exception handler.
"""
import logging
from fastapi import APIRouter, Depends

from reecher.auth import get_current_user_id
from reecher.models import (
    ChannelStatusResponse,
    CreateChannelRequest,
    LiveEligibilityResponse,
    PhoneLoginRequest,
    PhoneLoginResponse,
    QrResponse,
    RecoverRequest,
    RecoveryReport,
    RepairResponse,
)
from reecher.services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/channel", tags=["Channel"])


@router.get("/status", response_model=ChannelStatusResponse)
async def get_channel_status(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    """Current channel status, reconciled with the gateway when a token exists."""
    channel = await services.controller.check_status(user_id)
    return ChannelStatusResponse.from_channel(channel)


@router.post("", response_model=ChannelStatusResponse)
async def create_channel(
    request: CreateChannelRequest,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    channel = await services.controller.create_channel(user_id, force=request.force)
    return ChannelStatusResponse.from_channel(channel)


@router.post("/qr", response_model=QrResponse)
async def get_qr(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    return await services.controller.get_qr(user_id)


@router.post("/phone-login", response_model=PhoneLoginResponse)
async def phone_login(
    request: PhoneLoginRequest,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    return await services.controller.login_with_phone(user_id, request.phone)


@router.post("/disconnect", response_model=ChannelStatusResponse)
async def hard_disconnect(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    """Log out of WhatsApp, keep the channel for a fresh login."""
    channel = await services.controller.hard_disconnect(user_id)
    return ChannelStatusResponse.from_channel(channel)


@router.delete("", response_model=ChannelStatusResponse)
async def delete_channel(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    channel = await services.controller.delete_channel(user_id)
    return ChannelStatusResponse.from_channel(channel)


@router.post("/repair", response_model=RepairResponse)
async def repair_identifier(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    return await services.controller.repair_identifier(user_id)


@router.post("/recover", response_model=RecoveryReport)
async def recover(
    request: RecoverRequest,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    report = await services.controller.recover_or_recreate(user_id, force_new=request.force_new)
    if not report.success:
        logger.info("[CHANNEL] Recovery for user %s incomplete: %s", user_id, [s.step for s in report.steps])
    return report


@router.get("/live-eligibility", response_model=LiveEligibilityResponse)
async def live_eligibility(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    channel = await services.controller.get_channel(user_id)
    return LiveEligibilityResponse(
        eligible=await services.controller.is_live_eligible(user_id),
        plan=await services.plans.plan_status(user_id),
        mode=channel.mode,
    )


@router.post("/upgrade", response_model=ChannelStatusResponse)
async def upgrade_to_live(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    channel = await services.controller.upgrade_to_live(user_id)
    return ChannelStatusResponse.from_channel(channel)
