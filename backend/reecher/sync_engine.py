"""
Background Sync Engine.

Phase 1 (collection) pages through the gateway's group list from offset 0
until a short or empty batch, or until the API-call cap. Rate-limited calls
back off progressively and retry the same offset. A successful pass replaces
the user's group rows wholesale with admin_status=unknown.

Phase 2 (classification) fetches each pending group's participant list in
small batches and records whether the connected number is creator, admin or
member.

One run per user at a time: the progress row is the lock (``Busy`` when a
run is starting/running). Cancellation is cooperative and checked between
pages and between classification batches.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

import sentry_sdk

from reecher.backoff import collection_delay, rate_limit_delay
from reecher.config import settings
from reecher.errors import AuthInvalid, CooldownActive, InvalidState, ReecherError, Transient
from reecher.gateway import MAX_GROUP_BATCH, GatewayClient, GatewayErrorKind, GroupInfo, Participant
from reecher.models import (
    AdminStatus,
    ChannelStatus,
    Group,
    SyncPhase,
    SyncProgress,
    SyncStatus,
    normalize_phone,
)
from reecher.progress import SyncProgressTracker
from reecher.store import ChannelStore
from reecher.tasks import safe_create_task

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

_CREATOR_RANKS = {"creator", "owner", "superadmin"}
_ADMIN_RANKS = {"admin", "administrator"}


# ============================================================
# Role detection
# ============================================================

def phones_match(own_phone: str, participant_id: str) -> bool:
    """Compare numbers ignoring formatting, JID suffixes and local/international prefixes.

    "972501234567", "+972 50-123-4567", "0501234567" and
    "972501234567@s.whatsapp.net" all match each other: when both numbers
    have at least 9 digits, the last 9 decide.
    """
    own = normalize_phone(own_phone.split("@")[0])
    other = normalize_phone(participant_id.split("@")[0])
    if not own or not other:
        return False
    if own == other:
        return True
    if len(own) >= 9 and len(other) >= 9:
        return own[-9:] == other[-9:]
    return False


def rank_to_admin_status(rank: str) -> AdminStatus:
    rank = (rank or "").strip().lower()
    if rank in _CREATOR_RANKS:
        return AdminStatus.CREATOR
    if rank in _ADMIN_RANKS:
        return AdminStatus.ADMIN
    return AdminStatus.MEMBER


def detect_role(own_phone: str, participants: Iterable[Participant]) -> AdminStatus:
    for participant in participants:
        if phones_match(own_phone, participant.id):
            return rank_to_admin_status(participant.rank)
    return AdminStatus.MEMBER


# ============================================================
# Phase results
# ============================================================

@dataclass
class CollectionResult:
    groups: List[GroupInfo] = field(default_factory=list)
    api_calls: int = 0
    cancelled: bool = False
    hit_cap: bool = False
    error: Optional[ReecherError] = None


@dataclass
class ClassificationResult:
    classified: int = 0
    admins: int = 0
    failed: int = 0
    cancelled: bool = False


class _RunStopped(Exception):
    """Raised inside a run when it was cancelled or finished by someone else."""


class SyncEngine:
    def __init__(
        self,
        store: ChannelStore,
        gateway: GatewayClient,
        tracker: SyncProgressTracker,
        *,
        sleep: Optional[Sleep] = None,
        clock: Optional[Callable[[], datetime]] = None,
        batch_size: Optional[int] = None,
        max_api_calls: Optional[int] = None,
        classification_batch_size: Optional[int] = None,
        cooldown_seconds: Optional[int] = None,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.tracker = tracker
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.batch_size = min(batch_size or settings.COLLECTION_BATCH_SIZE, MAX_GROUP_BATCH)
        self.max_api_calls = max_api_calls or settings.COLLECTION_MAX_API_CALLS
        self.classification_batch_size = classification_batch_size or settings.CLASSIFICATION_BATCH_SIZE
        self.cooldown_seconds = settings.SYNC_COOLDOWN_SECONDS if cooldown_seconds is None else cooldown_seconds
        self._runs: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def _connected_channel(self, user_id: str):
        channel = await self.store.get_channel(user_id)
        if channel.status != ChannelStatus.CONNECTED or not channel.secret_token:
            raise InvalidState("Connect WhatsApp before syncing groups")
        return channel

    async def _check_cooldown(self, user_id: str) -> None:
        if self.cooldown_seconds <= 0:
            return
        last = await self.tracker.last_completed_at(user_id)
        if last is None:
            return
        elapsed = (self._clock() - last).total_seconds()
        if elapsed < self.cooldown_seconds:
            raise CooldownActive(int(self.cooldown_seconds - elapsed) + 1)

    def _launch(self, user_id: str, coro) -> None:
        task = safe_create_task(coro, name=f"sync-{user_id}")
        self._runs[user_id] = task
        task.add_done_callback(lambda t: self._runs.pop(user_id, None) if self._runs.get(user_id) is t else None)

    async def start_sync(self, user_id: str, classify: bool = True) -> SyncProgress:
        """Start collection (and optionally classification) in the background.

        Raises Busy when a run is already starting/running, CooldownActive when
        the last successful run is too recent.
        """
        await self._connected_channel(user_id)
        await self._check_cooldown(user_id)
        progress = await self.tracker.start(user_id, SyncPhase.COLLECTION, "Starting group sync")
        logger.info("[SYNC] Starting sync for user %s (classify=%s)", user_id, classify)
        self._launch(user_id, self.run_sync(user_id, classify=classify))
        return progress

    async def start_classification(self, user_id: str, group_ids: Optional[List[str]] = None) -> SyncProgress:
        """Run only the classification phase, for ``group_ids`` or every pending group."""
        await self._connected_channel(user_id)
        progress = await self.tracker.start(user_id, SyncPhase.CLASSIFICATION, "Checking admin rights")
        self._launch(user_id, self.run_classification(user_id, group_ids))
        return progress

    async def cancel(self, user_id: str) -> bool:
        requested = await self.tracker.request_cancel(user_id)
        if requested:
            logger.info("[SYNC] Cancel requested for user %s", user_id)
        return requested

    async def list_groups(self, user_id: str, admin_only: bool = False) -> List[Group]:
        if admin_only:
            return await self.store.list_groups(user_id, admin_statuses=[AdminStatus.ADMIN, AdminStatus.CREATOR])
        return await self.store.list_groups(user_id)

    async def join(self, user_id: str) -> None:
        """Wait for the user's in-process run, if any."""
        task = self._runs.get(user_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._runs.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Run bodies
    # ------------------------------------------------------------------

    async def _should_stop(self, user_id: str) -> bool:
        progress = await self.store.get_progress(user_id)
        return progress is None or progress.cancel_requested or not progress.is_active

    async def _run_guarded(self, user_id: str, body) -> None:
        try:
            await body()
        except _RunStopped:
            await self.tracker.finish(user_id, SyncStatus.CANCELLED, "Sync cancelled")
        except ReecherError as e:
            logger.warning("[SYNC] Run for user %s failed: %s", user_id, e)
            await self.tracker.finish(user_id, SyncStatus.FAILED, "Sync failed", error=e.hint)
        except asyncio.CancelledError:
            await self.tracker.finish(user_id, SyncStatus.FAILED, "Sync interrupted", error="Server restarted, start the sync again")
            raise
        except Exception as e:
            logger.exception("[SYNC] Unexpected error for user %s", user_id)
            if sentry_sdk.is_initialized():
                sentry_sdk.capture_exception(e)
            await self.tracker.finish(user_id, SyncStatus.FAILED, "Sync failed", error="Unexpected error, try again later")

    async def run_sync(self, user_id: str, classify: bool = True) -> None:
        async def body() -> None:
            channel = await self._connected_channel(user_id)
            await self.tracker.update(user_id, status=SyncStatus.RUNNING, message="Collecting groups")

            collection = await self.collect_groups(user_id, channel.secret_token)
            if collection.cancelled:
                raise _RunStopped()
            if not collection.error and not await self._still_connected(user_id):
                raise _RunStopped()

            if collection.error:
                written = await self._store_collection(user_id, collection.groups) if collection.groups else 0
                await self.tracker.finish(
                    user_id, SyncStatus.FAILED,
                    f"Stopped after {written} groups",
                    error=collection.error.hint,
                    groups_found=written,
                )
                return
            written = await self._store_collection(user_id, collection.groups)
            logger.info("[SYNC] Collected %d groups for user %s in %d calls", written, user_id, collection.api_calls)

            admins = 0
            if classify and written:
                result = await self.classify_groups(user_id, channel.secret_token, await self._own_phone(user_id))
                if result.cancelled:
                    raise _RunStopped()
                admins = await self._count_admin_groups(user_id)
            await self.tracker.finish(
                user_id, SyncStatus.COMPLETED,
                f"Found {written} groups" + (f", admin in {admins}" if classify else ""),
                groups_found=written,
                admin_groups=admins,
            )

        await self._run_guarded(user_id, body)

    async def run_classification(self, user_id: str, group_ids: Optional[List[str]] = None) -> None:
        async def body() -> None:
            channel = await self._connected_channel(user_id)
            await self.tracker.update(user_id, status=SyncStatus.RUNNING)
            result = await self.classify_groups(user_id, channel.secret_token, await self._own_phone(user_id), group_ids)
            if result.cancelled:
                raise _RunStopped()
            admins = await self._count_admin_groups(user_id)
            await self.tracker.finish(
                user_id, SyncStatus.COMPLETED,
                f"Checked {result.classified} groups, admin in {admins}",
                admin_groups=admins,
            )

        await self._run_guarded(user_id, body)

    async def _still_connected(self, user_id: str) -> bool:
        channel = await self.store.get_channel(user_id)
        return channel.status == ChannelStatus.CONNECTED and not await self._should_stop(user_id)

    async def _store_collection(self, user_id: str, groups: List[GroupInfo]) -> int:
        now = self._clock()
        rows = [
            Group(
                user_id=user_id,
                group_id=g.group_id,
                name=g.name,
                participant_count=g.participant_count,
                admin_status=AdminStatus.UNKNOWN,
                avatar_url=g.avatar_url,
                last_synced_at=now,
            )
            for g in groups
        ]
        return await self.store.replace_groups(user_id, rows)

    async def _count_admin_groups(self, user_id: str) -> int:
        rows = await self.store.list_groups(user_id, admin_statuses=[AdminStatus.ADMIN, AdminStatus.CREATOR])
        return len(rows)

    async def _own_phone(self, user_id: str) -> str:
        channel = await self.store.get_channel(user_id)
        if channel.phone_number:
            return channel.phone_number
        result = await self.gateway.get_status(channel.secret_token)
        if result.ok and result.value.phone:
            await self.store.update_fields(user_id, ChannelStatus.CONNECTED, phone_number=result.value.phone)
            return result.value.phone
        if not result.ok and result.error == GatewayErrorKind.UNAUTHORIZED:
            raise AuthInvalid()
        raise InvalidState("Could not determine your WhatsApp number, reconnect and try again")

    # ------------------------------------------------------------------
    # Phase 1: collection
    # ------------------------------------------------------------------

    async def collect_groups(self, user_id: str, token: str) -> CollectionResult:
        collected: Dict[str, GroupInfo] = {}
        result = CollectionResult()
        offset = 0
        batches = 0
        consecutive_failures = 0

        while result.api_calls < self.max_api_calls:
            if await self._should_stop(user_id):
                result.cancelled = True
                break
            if result.api_calls:
                await self._sleep(collection_delay(
                    result.api_calls,
                    base=settings.COLLECTION_DELAY_BASE_SECONDS,
                    step=settings.COLLECTION_DELAY_STEP_SECONDS,
                    ceiling=settings.COLLECTION_DELAY_CEILING_SECONDS,
                ))

            result.api_calls += 1
            page = await self.gateway.list_groups(token, offset, self.batch_size)
            if not page.ok:
                if page.is_transient:
                    consecutive_failures += 1
                    delay = rate_limit_delay(
                        consecutive_failures,
                        base=settings.RATE_LIMIT_BACKOFF_BASE_SECONDS,
                        factor=settings.RATE_LIMIT_BACKOFF_FACTOR,
                        ceiling=settings.RATE_LIMIT_BACKOFF_CEILING_SECONDS,
                    )
                    logger.warning(
                        "[SYNC] Rate limited at offset %d (failure %d), retrying in %.1fs",
                        offset, consecutive_failures, delay,
                    )
                    await self.tracker.update(user_id, message=f"Gateway busy, retrying in {int(delay)}s")
                    await self._sleep(delay)
                    continue
                logger.error("[SYNC] Collection aborted at offset %d: %s", offset, page.error)
                result.error = page.to_exception()
                break

            consecutive_failures = 0
            batch = page.value
            batches += 1
            for group in batch:
                if group.group_id:
                    collected.setdefault(group.group_id, group)
            await self.tracker.update(
                user_id,
                groups_found=len(collected),
                total_scanned=offset + len(batch),
                current_batch=batches,
                message=f"Found {len(collected)} groups so far",
            )

            if not batch:
                logger.info("[SYNC] Empty batch at offset %d, treating as end of list (may be an upstream glitch)", offset)
                break
            if len(batch) < self.batch_size:
                break
            offset += len(batch)
        else:
            result.hit_cap = True
            logger.warning("[SYNC] Hit the %d-call cap for user %s at offset %d", self.max_api_calls, user_id, offset)
            if not collected and consecutive_failures:
                result.error = Transient("WhatsApp gateway kept rate limiting, try again later")

        result.groups = list(collected.values())
        return result

    # ------------------------------------------------------------------
    # Phase 2: classification
    # ------------------------------------------------------------------

    async def _classify_one(self, token: str, own_phone: str, group: Group) -> Optional[Tuple[AdminStatus, int]]:
        attempts = max(settings.CLASSIFICATION_RETRY_ATTEMPTS, 1)
        for attempt in range(1, attempts + 1):
            result = await self.gateway.get_group(token, group.group_id)
            if result.ok:
                info = result.value
                return detect_role(own_phone, info.participants), info.participant_count or group.participant_count
            if result.error == GatewayErrorKind.UNAUTHORIZED:
                raise AuthInvalid()
            if not result.is_transient:
                logger.info("[SYNC] Could not inspect group %s: %s", group.group_id, result.error)
                return None
            if attempt < attempts:
                await self._sleep(rate_limit_delay(
                    attempt,
                    base=settings.RATE_LIMIT_BACKOFF_BASE_SECONDS,
                    factor=settings.RATE_LIMIT_BACKOFF_FACTOR,
                    ceiling=settings.RATE_LIMIT_BACKOFF_CEILING_SECONDS,
                ))
        return None

    async def classify_groups(
        self, user_id: str, token: str, own_phone: str, group_ids: Optional[List[str]] = None
    ) -> ClassificationResult:
        if group_ids is None:
            pending = await self.store.list_groups(user_id, admin_statuses=[AdminStatus.UNKNOWN])
        else:
            wanted = set(group_ids)
            pending = [g for g in await self.store.list_groups(user_id) if g.group_id in wanted]

        result = ClassificationResult()
        total = len(pending)
        await self.tracker.update(
            user_id,
            phase=SyncPhase.CLASSIFICATION,
            groups_found=total,
            total_scanned=0,
            current_batch=0,
            message=f"Checking admin rights in {total} groups",
        )

        size = self.classification_batch_size
        for batch_number, start in enumerate(range(0, total, size), start=1):
            if await self._should_stop(user_id):
                result.cancelled = True
                return result
            for index, group in enumerate(pending[start:start + size]):
                if start or index:
                    await self._sleep(settings.CLASSIFICATION_DELAY_SECONDS)
                outcome = await self._classify_one(token, own_phone, group)
                if outcome is None:
                    result.failed += 1
                    continue
                role, participants = outcome
                await self.store.update_group_role(user_id, group.group_id, role, participants)
                result.classified += 1
                if role in (AdminStatus.ADMIN, AdminStatus.CREATOR):
                    result.admins += 1
            await self.tracker.update(
                user_id,
                total_scanned=min(start + size, total),
                current_batch=batch_number,
                admin_groups=result.admins,
                message=f"Checked {min(start + size, total)} of {total} groups",
            )

        if result.failed:
            logger.warning("[SYNC] %d groups left unclassified for user %s", result.failed, user_id)
        return result
