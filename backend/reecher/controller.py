"""
Channel Lifecycle Controller.

Drives a user's channel through

    none -> created -> initializing -> unauthorized -> qr_displayed -> connected

plus logout, delete, identifier repair and recovery. The controller is the only
writer of channel status apart from the reaper; every write goes through the
store's compare-and-swap ``transition``.

"Already connected" answers from the gateway (mid QR request, mid phone login,
during a status check or via webhook) all land in ``_mark_connected``.
"""
import asyncio
import logging
import secrets
from typing import Awaitable, Callable, List, Optional

from reecher.backoff import ready_poll_delay
from reecher.billing import PlanProvider
from reecher.config import settings
from reecher.errors import (
    ChannelMissing,
    Conflict,
    InvalidPhone,
    InvalidState,
    MalformedIdentifier,
    RepairFailed,
    ReecherError,
    Transient,
)
from reecher.gateway import GatewayClient, GatewayErrorKind, GatewayResult, mask_token
from reecher.models import (
    TRANSIENT_CHANNEL_STATUSES,
    Channel,
    ChannelMode,
    ChannelStatus,
    GatewayStatus,
    LoginMethod,
    PhoneLoginResponse,
    PlanStatus,
    QrResponse,
    ReadyOutcome,
    RecoveryReport,
    RecoveryStep,
    RepairResponse,
    is_canonical_channel_id,
    normalize_phone,
)
from reecher.store import ChannelStore
from reecher.tasks import safe_create_task

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

# Channel states from which the user can (re)start a login
_LOGIN_STATES = (ChannelStatus.UNAUTHORIZED, ChannelStatus.QR_DISPLAYED)
_HEALTHY_STATES = (ChannelStatus.UNAUTHORIZED, ChannelStatus.QR_DISPLAYED, ChannelStatus.CONNECTED)


def _channel_name(user_id: str) -> str:
    return f"reecher-{user_id[:8]}-{secrets.token_hex(3)}"


class ChannelController:
    def __init__(
        self,
        store: ChannelStore,
        gateway: GatewayClient,
        plans: PlanProvider,
        *,
        sleep: Optional[Sleep] = None,
        ready_max_attempts: Optional[int] = None,
        webhook_url: Optional[str] = None,
        poll_in_background: bool = True,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.plans = plans
        self._sleep = sleep or asyncio.sleep
        self.ready_max_attempts = ready_max_attempts or settings.READY_POLL_MAX_ATTEMPTS
        self.webhook_url = settings.WEBHOOK_URL if webhook_url is None else webhook_url
        self.poll_in_background = poll_in_background

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _require_channel(self, user_id: str) -> Channel:
        channel = await self.store.get_channel(user_id)
        if not channel.secret_token:
            raise ChannelMissing()
        return channel

    async def _fail_from_gateway(self, channel: Channel, result: GatewayResult) -> ReecherError:
        """Turn a gateway failure into the error to raise, cleaning up if the channel vanished."""
        if result.error == GatewayErrorKind.NOT_FOUND:
            logger.warning("[CHANNEL] Channel %s vanished upstream, clearing user %s", channel.channel_id, channel.user_id)
            await self.store.request_cancel(channel.user_id)
            await self.store.delete_groups(channel.user_id)
            await self.store.clear(channel.user_id)
        elif result.error == GatewayErrorKind.UNAUTHORIZED:
            logger.warning("[CHANNEL] Token %s rejected for user %s", mask_token(channel.secret_token), channel.user_id)
        return result.to_exception()

    async def _settle(self, user_id: str, target: ChannelStatus, **fields) -> Channel:
        """Walk a provisioning channel forward to ``target`` along the lifecycle graph."""
        channel = await self.store.get_channel(user_id)
        if channel.status == ChannelStatus.CREATED and target != ChannelStatus.CREATED:
            channel = await self.store.transition(user_id, ChannelStatus.CREATED, ChannelStatus.INITIALIZING)
        if channel.status == target:
            return channel
        return await self.store.transition(user_id, channel.status, target, **fields)

    async def _mark_connected(self, user_id: str, phone: Optional[str] = None) -> Channel:
        channel = await self.store.get_channel(user_id)
        if channel.status == ChannelStatus.CONNECTED:
            if phone and channel.phone_number != phone:
                channel = await self.store.update_fields(user_id, ChannelStatus.CONNECTED, phone_number=phone)
            return channel
        fields = {"phone_number": phone} if phone else {}
        channel = await self._settle(user_id, ChannelStatus.CONNECTED, **fields)
        logger.info("[CHANNEL] User %s connected (channel %s)", user_id, channel.channel_id)
        await self._configure_webhook(channel)
        return channel

    async def _configure_webhook(self, channel: Channel) -> None:
        if not self.webhook_url or not channel.secret_token:
            return
        result = await self.gateway.configure_webhook(channel.secret_token, self.webhook_url)
        if not result.ok:
            logger.warning("[CHANNEL] Webhook setup failed for %s: %s", channel.channel_id, result.error)

    async def _ensure_login_ready(self, channel: Channel) -> Channel:
        """A channel still provisioning gets one health check before a login request."""
        if channel.status not in TRANSIENT_CHANNEL_STATUSES:
            return channel
        result = await self.gateway.get_status(channel.secret_token)
        if not result.ok:
            raise await self._fail_from_gateway(channel, result)
        health = result.value
        if health.status == GatewayStatus.CONNECTED:
            return await self._mark_connected(channel.user_id, health.phone)
        if health.status == GatewayStatus.UNAUTHORIZED:
            return await self._settle(channel.user_id, ChannelStatus.UNAUTHORIZED)
        raise Transient("Channel is still starting up, retry in a few seconds")

    # ------------------------------------------------------------------
    # Creation and readiness
    # ------------------------------------------------------------------

    async def get_channel(self, user_id: str) -> Channel:
        return await self.store.get_channel(user_id)

    async def create_channel(self, user_id: str, force: bool = False, schedule_poll: Optional[bool] = None) -> Channel:
        plan = await self.plans.plan_status(user_id)
        if plan == PlanStatus.EXPIRED:
            raise InvalidState("Your trial has ended, choose a plan to reconnect WhatsApp")

        _, previous = await self.store.reserve_channel(user_id, force)
        if previous.is_active:
            logger.info("[CHANNEL] Replacing channel %s for user %s", previous.channel_id, user_id)
            await self.store.request_cancel(user_id)
            await self.store.delete_groups(user_id)
            if not await self._delete_upstream(previous):
                logger.warning(
                    "[CHANNEL] Previous channel %r of user %s not deleted upstream, needs manual cleanup",
                    previous.channel_id, user_id,
                )

        result = await self.gateway.create_channel(_channel_name(user_id), ChannelMode.TRIAL)
        if not result.ok:
            await self.store.clear(user_id, status=ChannelStatus.NONE, expected=[ChannelStatus.CREATED])
            logger.error("[CHANNEL] Gateway refused channel creation for user %s: %s", user_id, result.error)
            raise result.to_exception()

        info = result.value
        channel_id = info.id or info.name
        if not is_canonical_channel_id(channel_id):
            logger.warning("[CHANNEL] Gateway returned non-canonical id %r for user %s, repair needed", channel_id, user_id)
        channel = await self.store.attach_identity(user_id, channel_id, info.token)
        logger.info("[CHANNEL] Created %s for user %s (token %s)", channel_id, user_id, mask_token(info.token))

        if schedule_poll is None:
            schedule_poll = self.poll_in_background
        if schedule_poll:
            safe_create_task(self.wait_until_ready(user_id), name=f"ready-poll-{user_id}")
        return channel

    async def wait_until_ready(self, user_id: str, max_attempts: Optional[int] = None) -> ReadyOutcome:
        """Poll gateway health with exponential backoff until the channel can show a QR."""
        attempts = max_attempts or self.ready_max_attempts
        for attempt in range(attempts):
            channel = await self.store.get_channel(user_id)
            if channel.status in _HEALTHY_STATES:
                return ReadyOutcome.READY
            if channel.status not in TRANSIENT_CHANNEL_STATUSES or not channel.secret_token:
                return ReadyOutcome.FAILED

            result = await self.gateway.get_status(channel.secret_token)
            if result.ok:
                health = result.value
                try:
                    if health.status == GatewayStatus.UNAUTHORIZED:
                        await self._settle(user_id, ChannelStatus.UNAUTHORIZED)
                        logger.info("[CHANNEL] %s ready for login after %d polls", channel.channel_id, attempt + 1)
                        return ReadyOutcome.READY
                    if health.status == GatewayStatus.CONNECTED:
                        await self._mark_connected(user_id, health.phone)
                        return ReadyOutcome.READY
                    if health.status == GatewayStatus.FAILED:
                        logger.warning("[CHANNEL] %s reported %r while launching", channel.channel_id, health.raw_status)
                        return ReadyOutcome.FAILED
                    if channel.status == ChannelStatus.CREATED:
                        await self.store.transition(user_id, ChannelStatus.CREATED, ChannelStatus.INITIALIZING)
                except Conflict:
                    logger.debug("[CHANNEL] Concurrent update while polling %s, re-reading", user_id)
            elif result.is_transient:
                logger.info("[CHANNEL] Readiness poll %d for %s hit %s, backing off", attempt + 1, user_id, result.detail or result.error)
            else:
                logger.warning("[CHANNEL] Readiness poll for %s failed: %s", user_id, result.error)
                return ReadyOutcome.FAILED

            if attempt < attempts - 1:
                await self._sleep(ready_poll_delay(
                    attempt,
                    base=settings.READY_POLL_BASE_SECONDS,
                    factor=settings.READY_POLL_FACTOR,
                    cap=settings.READY_POLL_CAP_SECONDS,
                ))

        logger.warning("[CHANNEL] %s not ready after %d polls", user_id, attempts)
        return ReadyOutcome.TIMED_OUT

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    async def get_qr(self, user_id: str) -> QrResponse:
        channel = await self._require_channel(user_id)
        if channel.status == ChannelStatus.CONNECTED:
            return QrResponse(status=ChannelStatus.CONNECTED, already_connected=True)
        channel = await self._ensure_login_ready(channel)
        if channel.status == ChannelStatus.CONNECTED:
            return QrResponse(status=ChannelStatus.CONNECTED, already_connected=True)
        if channel.status not in _LOGIN_STATES:
            raise InvalidState(f"Cannot show a QR code while the channel is {channel.status.value}")

        result = await self.gateway.get_qr(channel.secret_token)
        if not result.ok:
            raise await self._fail_from_gateway(channel, result)
        if result.value.already_authenticated:
            await self._mark_connected(user_id)
            return QrResponse(status=ChannelStatus.CONNECTED, already_connected=True)

        if channel.status == ChannelStatus.UNAUTHORIZED:
            await self.store.transition(
                user_id, ChannelStatus.UNAUTHORIZED, ChannelStatus.QR_DISPLAYED, login_method=LoginMethod.QR
            )
        elif channel.login_method != LoginMethod.QR:
            await self.store.update_fields(user_id, ChannelStatus.QR_DISPLAYED, login_method=LoginMethod.QR)
        return QrResponse(status=ChannelStatus.QR_DISPLAYED, qr_code=result.value.image)

    async def login_with_phone(self, user_id: str, phone: str) -> PhoneLoginResponse:
        """Request a pairing code for ``phone``.

        When the gateway answers with a code, the user types it into WhatsApp on
        the phone; completion is then observed by ``check_status`` (or the
        webhook) exactly like a QR scan.
        """
        digits = normalize_phone(phone)
        if not 8 <= len(digits) <= 15:
            raise InvalidPhone()

        channel = await self._require_channel(user_id)
        if channel.status == ChannelStatus.CONNECTED:
            return PhoneLoginResponse(status=ChannelStatus.CONNECTED)
        channel = await self._ensure_login_ready(channel)
        if channel.status == ChannelStatus.CONNECTED:
            return PhoneLoginResponse(status=ChannelStatus.CONNECTED)
        if channel.status not in _LOGIN_STATES:
            raise InvalidState(f"Cannot log in while the channel is {channel.status.value}")

        result = await self.gateway.login_with_phone(channel.secret_token, digits)
        if not result.ok:
            raise await self._fail_from_gateway(channel, result)
        if result.value.authenticated:
            await self._mark_connected(user_id, digits)
            return PhoneLoginResponse(status=ChannelStatus.CONNECTED)

        fields = {"login_method": LoginMethod.PHONE_CODE, "phone_number": digits}
        if channel.status == ChannelStatus.UNAUTHORIZED:
            await self.store.transition(user_id, ChannelStatus.UNAUTHORIZED, ChannelStatus.QR_DISPLAYED, **fields)
        else:
            await self.store.update_fields(user_id, ChannelStatus.QR_DISPLAYED, **fields)
        logger.info("[CHANNEL] Pairing code issued for user %s", user_id)
        return PhoneLoginResponse(
            status=ChannelStatus.QR_DISPLAYED, code_required=True, pairing_code=result.value.code
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def check_status(self, user_id: str) -> Channel:
        """Reconcile local status with the gateway's. Writes only on change."""
        channel = await self.store.get_channel(user_id)
        if not channel.secret_token:
            return channel
        result = await self.gateway.get_status(channel.secret_token)
        if not result.ok:
            if result.error == GatewayErrorKind.NOT_FOUND:
                await self._fail_from_gateway(channel, result)
                return await self.store.get_channel(user_id)
            raise await self._fail_from_gateway(channel, result)
        try:
            return await self.apply_gateway_status(user_id, result.value.status, phone=result.value.phone)
        except Conflict:
            # Somebody moved the channel between our read and write; one retry on fresh state
            return await self.apply_gateway_status(user_id, result.value.status, phone=result.value.phone)

    async def apply_gateway_status(
        self, user_id: str, gateway_status: GatewayStatus, phone: Optional[str] = None
    ) -> Channel:
        channel = await self.store.get_channel(user_id)
        if not channel.secret_token:
            return channel

        if gateway_status == GatewayStatus.CONNECTED:
            return await self._mark_connected(user_id, phone)

        if gateway_status == GatewayStatus.UNAUTHORIZED:
            if channel.status in TRANSIENT_CHANNEL_STATUSES:
                return await self._settle(user_id, ChannelStatus.UNAUTHORIZED)
            if channel.status == ChannelStatus.CONNECTED:
                logger.warning("[CHANNEL] User %s was logged out upstream", user_id)
                channel = await self.store.transition(
                    user_id, ChannelStatus.CONNECTED, ChannelStatus.UNAUTHORIZED, login_method=None
                )
                await self.store.request_cancel(user_id)
                await self.store.delete_groups(user_id)
            return channel

        if gateway_status == GatewayStatus.INITIALIZING:
            if channel.status == ChannelStatus.CREATED:
                return await self.store.transition(user_id, ChannelStatus.CREATED, ChannelStatus.INITIALIZING)
            return channel

        logger.info("[CHANNEL] Gateway status %s for user %s, leaving %s", gateway_status.value, user_id, channel.status.value)
        return channel

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def _delete_upstream(self, channel: Channel) -> bool:
        """Best-effort upstream delete; True when the gateway no longer has it."""
        if not channel.channel_id or not is_canonical_channel_id(channel.channel_id):
            return False
        result = await self.gateway.delete_channel(channel.channel_id)
        if result.ok or result.error == GatewayErrorKind.NOT_FOUND:
            return True
        logger.warning("[CHANNEL] Upstream delete of %s failed: %s", channel.channel_id, result.error)
        return False

    async def hard_disconnect(self, user_id: str) -> Channel:
        """Log out of WhatsApp but keep the channel and token for re-authentication."""
        channel = await self._require_channel(user_id)
        await self.store.request_cancel(user_id)

        result = await self.gateway.logout(channel.secret_token)
        if not result.ok:
            logger.warning("[CHANNEL] Logout for user %s failed (%s), continuing", user_id, result.error)

        if channel.status != ChannelStatus.UNAUTHORIZED:
            channel = await self.store.transition(
                user_id, channel.status, ChannelStatus.UNAUTHORIZED, force=True, login_method=None
            )
        removed = await self.store.delete_groups(user_id)
        logger.info("[CHANNEL] Hard disconnect for user %s, %d groups removed", user_id, removed)
        return channel

    async def delete_channel(self, user_id: str) -> Channel:
        channel = await self.store.get_channel(user_id)
        if channel.status == ChannelStatus.NONE:
            return channel
        if channel.channel_id:
            if not channel.identifier_valid:
                raise MalformedIdentifier(channel.channel_id)
            result = await self.gateway.delete_channel(channel.channel_id)
            if not result.ok and result.error != GatewayErrorKind.NOT_FOUND:
                raise result.to_exception()
        await self.store.request_cancel(user_id)
        await self.store.delete_groups(user_id)
        channel = await self.store.clear(user_id, status=ChannelStatus.NONE)
        logger.info("[CHANNEL] Deleted channel for user %s", user_id)
        return channel

    # ------------------------------------------------------------------
    # Repair and recovery
    # ------------------------------------------------------------------

    async def repair_identifier(self, user_id: str) -> RepairResponse:
        """Replace a malformed stored identifier with the gateway's canonical one.

        The only match accepted is a gateway channel whose display name equals
        the stored value. Anything else raises RepairFailed.
        """
        channel = await self.store.get_channel(user_id)
        if not channel.channel_id:
            raise ChannelMissing()
        if channel.identifier_valid:
            return RepairResponse(repaired=False, channel_id=channel.channel_id)

        result = await self.gateway.list_channels()
        if not result.ok:
            raise result.to_exception()
        match = next((c for c in result.value if c.name == channel.channel_id), None)
        if match is None:
            raise RepairFailed(detail=channel.channel_id)
        if not is_canonical_channel_id(match.id):
            raise RepairFailed("Gateway listing has no valid identifier for this channel", detail=match.id)

        updated = await self.store.update_identifier(user_id, channel.channel_id, match.id)
        logger.info("[CHANNEL] Repaired identifier for user %s: %r -> %s", user_id, channel.channel_id, match.id)

        upgraded = False
        if updated.mode != ChannelMode.LIVE and await self.is_live_eligible(user_id):
            try:
                await self.upgrade_to_live(user_id)
                upgraded = True
            except ReecherError as e:
                logger.warning("[CHANNEL] Live upgrade after repair failed for %s: %s", user_id, e.hint)
        return RepairResponse(
            repaired=True, channel_id=match.id, previous_id=channel.channel_id, upgraded_to_live=upgraded
        )

    async def recover_or_recreate(self, user_id: str, force_new: bool = False) -> RecoveryReport:
        """Status check, then identifier repair, then (force_new) delete and recreate."""
        steps: List[RecoveryStep] = []
        channel = await self.store.get_channel(user_id)
        if not channel.secret_token:
            steps.append(RecoveryStep(step="inspect", outcome="failed", detail="no channel on record"))
            return await self._recreate(user_id, steps)

        healthy = False
        try:
            channel = await self.check_status(user_id)
            healthy = channel.status in _HEALTHY_STATES
            steps.append(RecoveryStep(
                step="check_status", outcome="ok" if healthy else "failed", detail=f"status {channel.status.value}"
            ))
        except ReecherError as e:
            steps.append(RecoveryStep(step="check_status", outcome="failed", detail=e.hint))

        channel = await self.store.get_channel(user_id)
        if channel.channel_id and not channel.identifier_valid:
            try:
                repair = await self.repair_identifier(user_id)
                steps.append(RecoveryStep(step="repair_identifier", outcome="ok", detail=f"now {repair.channel_id}"))
            except ReecherError as e:
                healthy = False
                steps.append(RecoveryStep(step="repair_identifier", outcome="failed", detail=e.hint))
        else:
            steps.append(RecoveryStep(step="repair_identifier", outcome="skipped", detail="identifier valid"))

        if not force_new:
            channel = await self.store.get_channel(user_id)
            return RecoveryReport(
                success=healthy,
                status=channel.status,
                steps=steps,
                hint=None if healthy else "Retry with force_new to delete and recreate the channel",
            )
        return await self._recreate(user_id, steps)

    async def _recreate(self, user_id: str, steps: List[RecoveryStep]) -> RecoveryReport:
        channel = await self.store.get_channel(user_id)
        if channel.channel_id:
            deleted = await self._delete_upstream(channel)
            steps.append(RecoveryStep(
                step="delete_upstream",
                outcome="ok" if deleted else "skipped",
                detail="" if deleted else "upstream channel left for the reaper",
            ))
        await self.store.request_cancel(user_id)
        await self.store.delete_groups(user_id)
        await self.store.clear(user_id, status=ChannelStatus.NONE)
        steps.append(RecoveryStep(step="clear_local", outcome="ok"))

        try:
            created = await self.create_channel(user_id, force=True)
        except ReecherError as e:
            steps.append(RecoveryStep(step="create_channel", outcome="failed", detail=e.hint))
            current = await self.store.get_channel(user_id)
            return RecoveryReport(success=False, status=current.status, steps=steps, hint=e.hint)
        steps.append(RecoveryStep(step="create_channel", outcome="ok", detail=created.channel_id or ""))
        return RecoveryReport(success=True, status=created.status, steps=steps)

    # ------------------------------------------------------------------
    # Plan / mode
    # ------------------------------------------------------------------

    async def is_live_eligible(self, user_id: str) -> bool:
        channel = await self.store.get_channel(user_id)
        if not channel.is_active or not channel.identifier_valid:
            return False
        return await self.plans.plan_status(user_id) == PlanStatus.PAID

    async def upgrade_to_live(self, user_id: str) -> Channel:
        channel = await self._require_channel(user_id)
        if channel.mode == ChannelMode.LIVE:
            return channel
        if await self.plans.plan_status(user_id) != PlanStatus.PAID:
            raise InvalidState("Live mode requires a paid plan")
        if not channel.identifier_valid:
            raise MalformedIdentifier(channel.channel_id or "")
        result = await self.gateway.set_channel_mode(channel.channel_id, ChannelMode.LIVE)
        if not result.ok:
            raise await self._fail_from_gateway(channel, result)
        channel = await self.store.update_fields(user_id, channel.status, mode=ChannelMode.LIVE)
        logger.info("[CHANNEL] Channel %s upgraded to live", channel.channel_id)
        return channel
