"""
Cleanup / Reaper - periodic consistency sweep.

Each sweep:
  1. Channels stuck in created/initializing past REAPER_STUCK_MINUTES are
     deleted upstream (best effort) and forced to ``disconnected``.
  2. Channels waiting for login past REAPER_UNAUTHORIZED_HOURS get their token
     validated against the gateway health check: rejected tokens are cleared,
     drifted statuses are corrected to the gateway's answer.
  3. Connected channels not touched for REAPER_CONNECTED_AUDIT_MINUTES are
     health-checked; a session logged out upstream goes back to
     ``unauthorized`` through the controller, which also drops its groups.
  4. Active channels whose plan has expired are torn down to ``expired``.
     Upstream deletes in steps 1 and 4 happen only after the local row is cleared.
  5. Sync runs that stopped reporting progress are finished as ``failed``.

The sweep is idempotent; a Conflict on any row means someone else moved it
first and the row is skipped.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import sentry_sdk

from reecher.billing import PlanProvider
from reecher.config import settings
from reecher.controller import ChannelController
from reecher.errors import Conflict, InvalidState
from reecher.gateway import GatewayClient, GatewayErrorKind
from reecher.metrics import metrics
from reecher.models import (
    Channel,
    ChannelStatus,
    GatewayStatus,
    PlanStatus,
    ReaperReport,
    SyncStatus,
    TRANSIENT_CHANNEL_STATUSES,
    is_canonical_channel_id,
)
from reecher.progress import SyncProgressTracker
from reecher.store import ChannelStore

logger = logging.getLogger(__name__)

_AWAITING_LOGIN = (ChannelStatus.UNAUTHORIZED, ChannelStatus.QR_DISPLAYED)
_LIVE_STATUSES = (
    ChannelStatus.CREATED,
    ChannelStatus.INITIALIZING,
    ChannelStatus.UNAUTHORIZED,
    ChannelStatus.QR_DISPLAYED,
    ChannelStatus.CONNECTED,
)


class Reaper:
    def __init__(
        self,
        store: ChannelStore,
        gateway: GatewayClient,
        plans: PlanProvider,
        tracker: Optional[SyncProgressTracker] = None,
        controller: Optional[ChannelController] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.plans = plans
        self.tracker = tracker or SyncProgressTracker(store)
        self.controller = controller or ChannelController(store, gateway, plans, poll_in_background=False)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.stuck_after = timedelta(minutes=settings.REAPER_STUCK_MINUTES)
        self.unauthorized_after = timedelta(hours=settings.REAPER_UNAUTHORIZED_HOURS)
        self.connected_audit_after = timedelta(minutes=settings.REAPER_CONNECTED_AUDIT_MINUTES)
        self.sync_lost_after = timedelta(minutes=settings.REAPER_SYNC_LOST_MINUTES)

    def _count(self, report: ReaperReport, action: str) -> None:
        setattr(report, action, getattr(report, action) + 1)
        metrics.reaper_actions_total.inc((action,))

    async def _delete_upstream(self, channel_id: Optional[str]) -> None:
        if not is_canonical_channel_id(channel_id):
            return
        result = await self.gateway.delete_channel(channel_id)
        if not result.ok and result.error != GatewayErrorKind.NOT_FOUND:
            logger.warning("[REAPER] Upstream delete of %s failed: %s", channel_id, result.error)

    async def _teardown(self, channel: Channel, status: ChannelStatus, delete_upstream: bool = False) -> None:
        """Clear the row if it is still in the listed status, then clean up.

        The upstream channel is only deleted once the local row no longer
        points at it, so a row moved concurrently keeps a working channel.
        """
        await self.store.clear(channel.user_id, status=status, expected=[channel.status])
        await self.store.request_cancel(channel.user_id)
        await self.store.delete_groups(channel.user_id)
        if delete_upstream:
            await self._delete_upstream(channel.channel_id)

    async def _handle_failed_check(self, channel: Channel, result, report: ReaperReport) -> None:
        """A rejected or vanished channel is cleared; anything else is only counted."""
        if result.error in (GatewayErrorKind.UNAUTHORIZED, GatewayErrorKind.NOT_FOUND):
            await self._teardown(channel, ChannelStatus.DISCONNECTED)
            logger.info("[REAPER] Cleared rejected token for user %s (%s)", channel.user_id, result.error.value)
            self._count(report, "tokens_cleared")
        else:
            report.errors += 1

    # ------------------------------------------------------------------
    # Sweep steps
    # ------------------------------------------------------------------

    async def reap_stuck_channels(self, report: ReaperReport) -> None:
        cutoff = self._clock() - self.stuck_after
        for channel in await self.store.list_channels(TRANSIENT_CHANNEL_STATUSES, updated_before=cutoff):
            try:
                await self._teardown(channel, ChannelStatus.DISCONNECTED, delete_upstream=True)
            except Conflict:
                continue
            logger.info("[REAPER] Reaped channel stuck in %s for user %s", channel.status.value, channel.user_id)
            self._count(report, "stuck_reaped")

    async def validate_waiting_channels(self, report: ReaperReport) -> None:
        cutoff = self._clock() - self.unauthorized_after
        for channel in await self.store.list_channels(_AWAITING_LOGIN, updated_before=cutoff):
            if not channel.secret_token:
                continue
            result = await self.gateway.get_status(channel.secret_token)
            try:
                if not result.ok:
                    await self._handle_failed_check(channel, result, report)
                    continue

                health = result.value
                if health.status == GatewayStatus.CONNECTED:
                    fields = {"phone_number": health.phone} if health.phone else {}
                    await self.store.transition(channel.user_id, channel.status, ChannelStatus.CONNECTED, **fields)
                elif health.status == GatewayStatus.UNAUTHORIZED and channel.status == ChannelStatus.QR_DISPLAYED:
                    await self.store.transition(
                        channel.user_id, ChannelStatus.QR_DISPLAYED, ChannelStatus.UNAUTHORIZED, login_method=None
                    )
                else:
                    continue
            except (Conflict, InvalidState):
                continue
            logger.info("[REAPER] Corrected status for user %s to match gateway (%s)", channel.user_id, health.raw_status)
            self._count(report, "status_corrected")

    async def audit_connected_channels(self, report: ReaperReport) -> None:
        """Catch sessions logged out upstream while the row still says connected.

        A healthy channel keeps its old ``updated_at``, so it is re-checked on
        every sweep once past the audit window.
        """
        cutoff = self._clock() - self.connected_audit_after
        for channel in await self.store.list_channels((ChannelStatus.CONNECTED,), updated_before=cutoff):
            if not channel.secret_token:
                continue
            result = await self.gateway.get_status(channel.secret_token)
            try:
                if not result.ok:
                    await self._handle_failed_check(channel, result, report)
                    continue
                health = result.value
                if health.status != GatewayStatus.UNAUTHORIZED:
                    continue
                updated = await self.controller.apply_gateway_status(channel.user_id, health.status)
                if updated.status != ChannelStatus.UNAUTHORIZED:
                    continue
            except (Conflict, InvalidState):
                continue
            logger.info("[REAPER] User %s was logged out upstream, status corrected", channel.user_id)
            self._count(report, "status_corrected")

    async def expire_trials(self, report: ReaperReport) -> None:
        for channel in await self.store.list_channels(_LIVE_STATUSES):
            if not channel.is_active:
                continue
            if await self.plans.plan_status(channel.user_id) != PlanStatus.EXPIRED:
                continue
            try:
                await self._teardown(channel, ChannelStatus.EXPIRED, delete_upstream=True)
            except Conflict:
                continue
            logger.info("[REAPER] Trial expired for user %s, channel torn down", channel.user_id)
            self._count(report, "trials_expired")

    async def fail_lost_syncs(self, report: ReaperReport) -> None:
        cutoff = self._clock() - self.sync_lost_after
        for progress in await self.store.list_stale_progress(cutoff):
            await self.tracker.finish(
                progress.user_id,
                SyncStatus.FAILED,
                "Sync worker lost",
                error="The sync stopped responding, start it again",
            )
            logger.warning("[REAPER] Sync for user %s stopped reporting, marked failed", progress.user_id)
            self._count(report, "syncs_failed")

    async def sweep(self) -> ReaperReport:
        report = ReaperReport()
        for step in (
            self.reap_stuck_channels,
            self.validate_waiting_channels,
            self.audit_connected_channels,
            self.expire_trials,
            self.fail_lost_syncs,
        ):
            try:
                await step(report)
            except Exception as e:
                report.errors += 1
                logger.exception("[REAPER] %s failed", step.__name__)
                if sentry_sdk.is_initialized():
                    sentry_sdk.capture_exception(e)
        logger.info(
            "[REAPER] Sweep done: %d stuck, %d tokens cleared, %d corrected, %d expired, %d syncs failed, %d errors",
            report.stuck_reaped, report.tokens_cleared, report.status_corrected,
            report.trials_expired, report.syncs_failed, report.errors,
        )
        return report

    async def run_forever(self, interval_seconds: Optional[int] = None) -> None:
        """Background loop: sweep every ``interval_seconds``."""
        interval = interval_seconds or settings.REAPER_INTERVAL_SECONDS
        while True:
            try:
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("[REAPER] Sweep error: %s", e)
            try:
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                break
