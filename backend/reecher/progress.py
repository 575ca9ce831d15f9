"""
Sync Progress Tracker: a pure projection of sync-engine progress.

The engine calls ``start`` / ``update`` / ``finish``; UI callers poll
``status`` (or subscribe to the SSE stream fed from ``publish``). No retry
logic lives here.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from reecher.config import settings
from reecher.metrics import metrics
from reecher.models import SyncPhase, SyncProgress, SyncProgressResponse, SyncStatus, TERMINAL_SYNC_STATUSES
from reecher.sse import ProgressBroadcaster
from reecher.store import ChannelStore

logger = logging.getLogger(__name__)


class SyncProgressTracker:
    def __init__(
        self,
        store: ChannelStore,
        broadcaster: Optional[ProgressBroadcaster] = None,
        stale_seconds: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.broadcaster = broadcaster
        self.stale_after = timedelta(seconds=stale_seconds if stale_seconds is not None else settings.PROGRESS_STALE_SECONDS)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _publish(self, progress: Optional[SyncProgress]) -> None:
        if progress is None or self.broadcaster is None:
            return
        payload = SyncProgressResponse.from_progress(progress).model_dump(mode="json")
        self.broadcaster.publish(progress.user_id, "sync_progress", payload)

    async def start(self, user_id: str, phase: SyncPhase, message: str = "") -> SyncProgress:
        """Open a new run. Raises Busy when one is already starting/running."""
        progress = await self.store.start_progress(user_id, phase, message)
        metrics.sync_runs_active.inc()
        self._publish(progress)
        return progress

    async def update(self, user_id: str, **delta) -> Optional[SyncProgress]:
        progress = await self.store.update_progress(user_id, **delta)
        self._publish(progress)
        return progress

    async def finish(
        self, user_id: str, status: SyncStatus, message: str = "", error: Optional[str] = None, **fields
    ) -> Optional[SyncProgress]:
        if status not in TERMINAL_SYNC_STATUSES:
            raise ValueError(f"{status} is not a terminal sync status")
        progress, closed = await self.store.finish_progress(user_id, status, message=message, error=error, **fields)
        if not closed:
            # Already finished elsewhere (reaper, cancel): keep the first outcome
            return progress
        metrics.sync_runs_active.dec()
        metrics.sync_runs_total.inc((status.value,))
        logger.info("[SYNC] Run for user %s finished: %s %s", user_id, status.value, message)
        self._publish(progress)
        return progress

    async def status(self, user_id: str) -> SyncProgress:
        progress = await self.store.get_progress(user_id)
        if progress is None:
            return SyncProgress(user_id=user_id)
        if progress.status in TERMINAL_SYNC_STATUSES:
            finished = progress.completed_at or progress.updated_at
            if finished is None or self._clock() - finished > self.stale_after:
                return SyncProgress(user_id=user_id)
        return progress

    async def last_completed_at(self, user_id: str) -> Optional[datetime]:
        progress = await self.store.get_progress(user_id)
        if progress is None or progress.status != SyncStatus.COMPLETED:
            return None
        return progress.completed_at

    async def request_cancel(self, user_id: str) -> bool:
        return await self.store.request_cancel(user_id)

    async def is_cancel_requested(self, user_id: str) -> bool:
        progress = await self.store.get_progress(user_id)
        return progress is not None and progress.cancel_requested
