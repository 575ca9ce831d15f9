"""
Broadcast: send one message to a set of the user's synced groups.
"""
import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from reecher.backoff import rate_limit_delay
from reecher.config import settings
from reecher.errors import AuthInvalid, InvalidState
from reecher.gateway import GatewayClient, GatewayErrorKind
from reecher.models import BroadcastResponse, ChannelStatus, SendResult
from reecher.store import ChannelStore

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class MessageSender:
    def __init__(
        self,
        store: ChannelStore,
        gateway: GatewayClient,
        *,
        sleep: Optional[Sleep] = None,
        delay_seconds: Optional[float] = None,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self._sleep = sleep or asyncio.sleep
        self.delay_seconds = settings.SEND_DELAY_SECONDS if delay_seconds is None else delay_seconds

    async def _send_one(self, token: str, group_id: str, body: str, media_url: Optional[str]) -> SendResult:
        result = await self.gateway.send_message(token, group_id, body, media_url)
        if not result.ok and result.is_transient:
            await self._sleep(rate_limit_delay(1, base=settings.RATE_LIMIT_BACKOFF_BASE_SECONDS))
            result = await self.gateway.send_message(token, group_id, body, media_url)
        if result.ok:
            return SendResult(group_id=group_id, ok=True, message_id=result.value.message_id)
        if result.error == GatewayErrorKind.UNAUTHORIZED:
            raise AuthInvalid()
        return SendResult(group_id=group_id, ok=False, error=result.to_exception().hint)

    async def send_to_groups(
        self, user_id: str, group_ids: List[str], body: str, media_url: Optional[str] = None
    ) -> BroadcastResponse:
        """Send ``body`` to each group in order, pacing sends. Unknown groups are reported, not sent."""
        channel = await self.store.get_channel(user_id)
        if channel.status != ChannelStatus.CONNECTED or not channel.secret_token:
            raise InvalidState("Connect WhatsApp before sending messages")

        known = {g.group_id for g in await self.store.list_groups(user_id)}
        results: List[SendResult] = []
        attempted = 0
        for group_id in dict.fromkeys(group_ids):
            if group_id not in known:
                results.append(SendResult(group_id=group_id, ok=False, error="Group not synced for this account"))
                continue
            if attempted:
                await self._sleep(self.delay_seconds)
            attempted += 1
            results.append(await self._send_one(channel.secret_token, group_id, body, media_url))

        sent = sum(1 for r in results if r.ok)
        logger.info("[SEND] User %s broadcast to %d groups: %d sent, %d failed", user_id, len(results), sent, len(results) - sent)
        return BroadcastResponse(sent=sent, failed=len(results) - sent, results=results)
