"""
Inbound gateway webhook.

The gateway posts channel/users status events; we resolve the owning user by
channel identifier and apply the status through the same mapping as a
status check. Unknown channels are acknowledged and logged as orphans so the
gateway stops retrying.

Accepted shapes:
  {"event": "channel", "data": {"id": "...", "status": "..."}}
  {"event": {"type": "users", "event": "post"}, "channel_id": "...", "health": {"status": {"text": "..."}}}
"""
import logging
from typing import Any, Dict, Optional, Tuple

from fastapi import APIRouter, Body, Depends

from reecher.auth import verify_webhook_secret
from reecher.errors import ReecherError
from reecher.gateway import map_gateway_status
from reecher.models import GatewayStatus
from reecher.services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

_STATUS_EVENTS = {"channel", "channels", "users", "user"}


def _parse_event(payload: Dict[str, Any]) -> Tuple[str, Optional[str], Any]:
    """Return (event type, channel id, raw status)."""
    event = payload.get("event") or payload.get("type") or ""
    action = ""
    if isinstance(event, dict):
        action = str(event.get("event") or "").lower()
        event = event.get("type") or ""
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    channel_id = data.get("id") or payload.get("channel_id")
    raw_status = data.get("status")
    if raw_status is None and isinstance(payload.get("health"), dict):
        raw_status = payload["health"].get("status")
    if raw_status is None and str(event).lower() in ("users", "user"):
        # users.post = logged in, users.delete = logged out
        raw_status = {"post": "authenticated", "delete": "qr"}.get(action)
    return str(event).lower(), channel_id, raw_status


@router.post("/whapi", dependencies=[Depends(verify_webhook_secret)])
async def receive_gateway_event(
    payload: Dict[str, Any] = Body(...),
    services: Services = Depends(get_services),
):
    event, channel_id, raw_status = _parse_event(payload)
    if event not in _STATUS_EVENTS or not channel_id or raw_status is None:
        return {"ok": True, "applied": False}

    channel = await services.store.find_by_channel_id(channel_id)
    if channel is None:
        logger.warning("[WEBHOOK] Event for unknown channel %s (orphan upstream?)", channel_id)
        return {"ok": True, "applied": False}

    status = map_gateway_status(raw_status)
    if status in (GatewayStatus.UNKNOWN, GatewayStatus.FAILED):
        logger.info("[WEBHOOK] Channel %s reported %r, no change", channel_id, raw_status)
        return {"ok": True, "applied": False}

    try:
        updated = await services.controller.apply_gateway_status(channel.user_id, status)
    except ReecherError as e:
        logger.warning("[WEBHOOK] Could not apply %s to user %s: %s", status.value, channel.user_id, e)
        return {"ok": True, "applied": False}
    logger.info("[WEBHOOK] Channel %s is now %s", channel_id, updated.status.value)
    return {"ok": True, "applied": True, "status": updated.status.value}
