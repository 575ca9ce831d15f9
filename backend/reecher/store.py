"""
Channel State Store: the single source of truth for channel, group and sync-progress rows.

Status changes go through ``transition``, a compare-and-swap on the current
status, so two concurrent writers racing the same channel get exactly one
winner; the loser sees ``Conflict``. ``clear`` nulls identifier and token in
the same write that sets the new status.

Two backends share these semantics:
  - PostgresStore: asyncpg, conditional UPDATE ... RETURNING, tokens encrypted at rest
  - MemoryStore: dicts behind an asyncio.Lock, for local runs and tests
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

import asyncpg

from reecher.database import Database
from reecher.encryption import TokenEncryption
from reecher.errors import AlreadyExists, Busy, Conflict, InvalidState
from reecher.metrics import metrics
from reecher.models import (
    ACTIVE_SYNC_STATUSES,
    AdminStatus,
    Channel,
    ChannelMode,
    ChannelStatus,
    Group,
    LoginMethod,
    SyncPhase,
    SyncProgress,
    SyncStatus,
    as_status_set,
    is_allowed_transition,
)

logger = logging.getLogger(__name__)

# Columns a transition/update may set besides status
_CHANNEL_FIELDS = ("login_method", "phone_number", "mode")
_PROGRESS_FIELDS = ("status", "phase", "groups_found", "total_scanned", "current_batch", "admin_groups", "message")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _check_fields(fields: Dict[str, Any], allowed: Tuple[str, ...]) -> None:
    unknown = set(fields) - set(allowed)
    if unknown:
        raise ValueError(f"Unsupported fields: {sorted(unknown)}")


def _db_value(value: Any) -> Any:
    return value.value if hasattr(value, "value") else value


class ChannelStore(ABC):
    """Storage contract shared by the controller, sync engine, tracker and reaper."""

    # ------------------------------------------------------------------
    # Shared rules
    # ------------------------------------------------------------------

    @staticmethod
    def _legal_sources(
        expected: Iterable[ChannelStatus], new: ChannelStatus, force: bool
    ) -> FrozenSet[ChannelStatus]:
        expected = as_status_set(expected)
        if force:
            return expected
        return frozenset(s for s in expected if is_allowed_transition(s, new))

    @staticmethod
    def _reject(current: ChannelStatus, expected: FrozenSet[ChannelStatus], new: ChannelStatus) -> Exception:
        if current in expected:
            return InvalidState(
                f"Cannot move channel from {current.value} to {new.value}",
                detail=f"{current.value}->{new.value}",
            )
        return Conflict(
            detail=f"expected {sorted(s.value for s in expected)}, found {current.value}",
            current_status=current.value,
        )

    @staticmethod
    def _check_reservable(current: Channel, force: bool) -> None:
        if current.status == ChannelStatus.CREATED and current.channel_id is None:
            raise AlreadyExists("Channel creation already in progress")
        if current.is_active and not force:
            raise AlreadyExists()

    @staticmethod
    def _record_transition(old: ChannelStatus, new: ChannelStatus) -> None:
        if old != new:
            metrics.channel_transitions_total.inc((old.value, new.value))

    # ------------------------------------------------------------------
    # Channel rows
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_channel(self, user_id: str) -> Channel:
        """Current row, or a status=none placeholder when the user has none."""

    @abstractmethod
    async def find_by_channel_id(self, channel_id: str) -> Optional[Channel]:
        ...

    @abstractmethod
    async def list_channels(
        self, statuses: Iterable[ChannelStatus], updated_before: Optional[datetime] = None
    ) -> List[Channel]:
        ...

    @abstractmethod
    async def reserve_channel(self, user_id: str, force: bool = False) -> Tuple[Channel, Channel]:
        """Claim the user's slot for a new channel (status=created, no identifiers yet).

        Returns (reserved, previous). Raises AlreadyExists if an active channel
        exists and ``force`` is False, or if another creation is in flight.
        """

    @abstractmethod
    async def attach_identity(self, user_id: str, channel_id: str, secret_token: str) -> Channel:
        """Record the gateway identity on a reserved row. Conflict if the row moved on."""

    @abstractmethod
    async def transition(
        self,
        user_id: str,
        expected: "ChannelStatus | Iterable[ChannelStatus]",
        new: ChannelStatus,
        *,
        force: bool = False,
        **fields: Any,
    ) -> Channel:
        """Compare-and-swap the status. Conflict if the current status is not expected."""

    @abstractmethod
    async def update_fields(
        self, user_id: str, expected: "ChannelStatus | Iterable[ChannelStatus]", **fields: Any
    ) -> Channel:
        """Update non-status columns under the same optimistic status check."""

    @abstractmethod
    async def clear(
        self,
        user_id: str,
        status: ChannelStatus = ChannelStatus.DISCONNECTED,
        expected: "Optional[Iterable[ChannelStatus]]" = None,
    ) -> Channel:
        """Null identifier and token and set ``status`` in one write."""

    @abstractmethod
    async def update_identifier(self, user_id: str, expected_old: str, new_id: str) -> Channel:
        ...

    # ------------------------------------------------------------------
    # Group rows
    # ------------------------------------------------------------------

    @abstractmethod
    async def replace_groups(self, user_id: str, groups: List[Group]) -> int:
        """Delete-all-then-insert; returns the number of rows written."""

    @abstractmethod
    async def list_groups(
        self, user_id: str, admin_statuses: Optional[Iterable[AdminStatus]] = None
    ) -> List[Group]:
        ...

    @abstractmethod
    async def update_group_role(
        self, user_id: str, group_id: str, admin_status: AdminStatus, participant_count: Optional[int] = None
    ) -> bool:
        """Set the classification result without touching last_synced_at."""

    @abstractmethod
    async def delete_groups(self, user_id: str) -> int:
        ...

    # ------------------------------------------------------------------
    # Sync progress rows
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_progress(self, user_id: str) -> Optional[SyncProgress]:
        ...

    @abstractmethod
    async def start_progress(self, user_id: str, phase: SyncPhase, message: str = "") -> SyncProgress:
        """Overwrite the user's progress row with a fresh starting run. Busy if one is active."""

    @abstractmethod
    async def update_progress(self, user_id: str, **fields: Any) -> Optional[SyncProgress]:
        """Update an active run; returns None when no run is active."""

    @abstractmethod
    async def finish_progress(
        self, user_id: str, status: SyncStatus, message: str = "", error: Optional[str] = None, **fields: Any
    ) -> Tuple[Optional[SyncProgress], bool]:
        """Close the active run. The flag is True only for the call that closed it;
        later callers get the stored row with its first outcome and False."""

    @abstractmethod
    async def request_cancel(self, user_id: str) -> bool:
        ...

    @abstractmethod
    async def list_stale_progress(self, updated_before: datetime) -> List[SyncProgress]:
        ...


# ============================================================
# In-memory backend
# ============================================================

class MemoryStore(ChannelStore):
    """Process-local store with the same atomicity guarantees as PostgresStore."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._lock = asyncio.Lock()
        self._clock = clock or _utcnow
        self._channels: Dict[str, Channel] = {}
        self._groups: Dict[str, Dict[str, Group]] = {}
        self._progress: Dict[str, SyncProgress] = {}

    def _current(self, user_id: str) -> Channel:
        return self._channels.get(user_id) or Channel(user_id=user_id)

    def _save(self, channel: Channel) -> Channel:
        self._channels[channel.user_id] = channel
        return channel.model_copy()

    async def get_channel(self, user_id: str) -> Channel:
        async with self._lock:
            return self._current(user_id).model_copy()

    async def find_by_channel_id(self, channel_id: str) -> Optional[Channel]:
        async with self._lock:
            for channel in self._channels.values():
                if channel.channel_id == channel_id:
                    return channel.model_copy()
            return None

    async def list_channels(
        self, statuses: Iterable[ChannelStatus], updated_before: Optional[datetime] = None
    ) -> List[Channel]:
        wanted = frozenset(statuses)
        async with self._lock:
            return [
                c.model_copy()
                for c in self._channels.values()
                if c.status in wanted and (updated_before is None or (c.updated_at and c.updated_at < updated_before))
            ]

    async def reserve_channel(self, user_id: str, force: bool = False) -> Tuple[Channel, Channel]:
        async with self._lock:
            previous = self._current(user_id)
            self._check_reservable(previous, force)
            now = self._clock()
            reserved = Channel(
                user_id=user_id,
                status=ChannelStatus.CREATED,
                mode=ChannelMode.TRIAL,
                created_at=now,
                updated_at=now,
            )
            self._record_transition(previous.status, ChannelStatus.CREATED)
            return self._save(reserved), previous.model_copy()

    async def attach_identity(self, user_id: str, channel_id: str, secret_token: str) -> Channel:
        async with self._lock:
            current = self._current(user_id)
            if current.status != ChannelStatus.CREATED or current.channel_id is not None:
                raise Conflict(detail="reservation no longer pending", current_status=current.status.value)
            return self._save(current.model_copy(update={
                "channel_id": channel_id,
                "secret_token": secret_token,
                "updated_at": self._clock(),
            }))

    async def transition(self, user_id, expected, new, *, force=False, **fields) -> Channel:
        _check_fields(fields, _CHANNEL_FIELDS)
        expected = as_status_set(expected)
        sources = self._legal_sources(expected, new, force)
        async with self._lock:
            current = self._current(user_id)
            if current.status not in sources:
                raise self._reject(current.status, expected, new)
            if new == ChannelStatus.CONNECTED and not current.secret_token:
                raise InvalidState("Cannot mark a channel connected without a token")
            self._record_transition(current.status, new)
            return self._save(current.model_copy(update={**fields, "status": new, "updated_at": self._clock()}))

    async def update_fields(self, user_id, expected, **fields) -> Channel:
        _check_fields(fields, _CHANNEL_FIELDS)
        expected = as_status_set(expected)
        async with self._lock:
            current = self._current(user_id)
            if current.status not in expected:
                raise Conflict(current_status=current.status.value)
            return self._save(current.model_copy(update={**fields, "updated_at": self._clock()}))

    async def clear(self, user_id, status=ChannelStatus.DISCONNECTED, expected=None) -> Channel:
        async with self._lock:
            current = self._current(user_id)
            if expected is not None and current.status not in frozenset(expected):
                raise Conflict(current_status=current.status.value)
            self._record_transition(current.status, status)
            return self._save(current.model_copy(update={
                "status": status,
                "channel_id": None,
                "secret_token": None,
                "login_method": None,
                "phone_number": None,
                "updated_at": self._clock(),
            }))

    async def update_identifier(self, user_id: str, expected_old: str, new_id: str) -> Channel:
        async with self._lock:
            current = self._current(user_id)
            if current.channel_id != expected_old:
                raise Conflict(detail="identifier changed concurrently", current_status=current.status.value)
            return self._save(current.model_copy(update={"channel_id": new_id, "updated_at": self._clock()}))

    async def replace_groups(self, user_id: str, groups: List[Group]) -> int:
        async with self._lock:
            rows = {g.group_id: g.model_copy(update={"user_id": user_id}) for g in groups}
            self._groups[user_id] = rows
            return len(rows)

    async def list_groups(self, user_id, admin_statuses=None) -> List[Group]:
        wanted = frozenset(admin_statuses) if admin_statuses is not None else None
        async with self._lock:
            rows = self._groups.get(user_id, {}).values()
            result = [g.model_copy() for g in rows if wanted is None or g.admin_status in wanted]
        return sorted(result, key=lambda g: (g.name.lower(), g.group_id))

    async def update_group_role(self, user_id, group_id, admin_status, participant_count=None) -> bool:
        async with self._lock:
            group = self._groups.get(user_id, {}).get(group_id)
            if group is None:
                return False
            update: Dict[str, Any] = {"admin_status": admin_status, "classified_at": self._clock()}
            if participant_count is not None:
                update["participant_count"] = participant_count
            self._groups[user_id][group_id] = group.model_copy(update=update)
            return True

    async def delete_groups(self, user_id: str) -> int:
        async with self._lock:
            return len(self._groups.pop(user_id, {}))

    async def get_progress(self, user_id: str) -> Optional[SyncProgress]:
        async with self._lock:
            row = self._progress.get(user_id)
            return row.model_copy() if row else None

    async def start_progress(self, user_id: str, phase: SyncPhase, message: str = "") -> SyncProgress:
        async with self._lock:
            current = self._progress.get(user_id)
            if current is not None and current.is_active:
                raise Busy()
            now = self._clock()
            row = SyncProgress(
                user_id=user_id,
                status=SyncStatus.STARTING,
                phase=phase,
                message=message,
                started_at=now,
                updated_at=now,
            )
            self._progress[user_id] = row
            return row.model_copy()

    async def update_progress(self, user_id: str, **fields) -> Optional[SyncProgress]:
        _check_fields(fields, _PROGRESS_FIELDS)
        async with self._lock:
            current = self._progress.get(user_id)
            if current is None or not current.is_active:
                return None
            row = current.model_copy(update={**fields, "updated_at": self._clock()})
            self._progress[user_id] = row
            return row.model_copy()

    async def finish_progress(self, user_id, status, message="", error=None, **fields) -> Tuple[Optional[SyncProgress], bool]:
        _check_fields(fields, _PROGRESS_FIELDS)
        async with self._lock:
            current = self._progress.get(user_id)
            if current is None:
                return None, False
            if not current.is_active:
                return current.model_copy(), False
            now = self._clock()
            row = current.model_copy(update={
                **fields,
                "status": status,
                "message": message,
                "error": error,
                "completed_at": now,
                "updated_at": now,
            })
            self._progress[user_id] = row
            return row.model_copy(), True

    async def request_cancel(self, user_id: str) -> bool:
        async with self._lock:
            current = self._progress.get(user_id)
            if current is None or not current.is_active:
                return False
            self._progress[user_id] = current.model_copy(update={"cancel_requested": True})
            return True

    async def list_stale_progress(self, updated_before: datetime) -> List[SyncProgress]:
        async with self._lock:
            return [
                p.model_copy()
                for p in self._progress.values()
                if p.is_active and p.updated_at is not None and p.updated_at < updated_before
            ]


# ============================================================
# Postgres backend
# ============================================================

_ACTIVE_SYNC_VALUES = [s.value for s in ACTIVE_SYNC_STATUSES]


def _set_clause(fields: Dict[str, Any], first_index: int) -> Tuple[str, list]:
    """Build ``col = $n`` fragments from whitelisted column names."""
    parts = []
    values = []
    for offset, (column, value) in enumerate(fields.items()):
        parts.append(f"{column} = ${first_index + offset}")
        values.append(_db_value(value))
    return ", ".join(parts), values


class PostgresStore(ChannelStore):
    """asyncpg-backed store. Channel tokens are encrypted with the owning user id as AAD."""

    def __init__(self, database: Database, encryption: TokenEncryption) -> None:
        self._db = database
        self._crypto = encryption

    # -- row mapping ----------------------------------------------------

    def _to_channel(self, row: Optional[asyncpg.Record], user_id: str = "") -> Channel:
        if row is None:
            return Channel(user_id=user_id)
        data = dict(row)
        token = data.get("secret_token")
        if token:
            data["secret_token"] = self._crypto.decrypt(token, aad=data["user_id"])
        data["status"] = ChannelStatus(data["status"])
        data["mode"] = ChannelMode(data["mode"])
        data["login_method"] = LoginMethod(data["login_method"]) if data.get("login_method") else None
        return Channel(**data)

    @staticmethod
    def _to_group(row: asyncpg.Record) -> Group:
        data = dict(row)
        data["admin_status"] = AdminStatus(data["admin_status"])
        return Group(**data)

    @staticmethod
    def _to_progress(row: asyncpg.Record) -> SyncProgress:
        data = dict(row)
        data["status"] = SyncStatus(data["status"])
        data["phase"] = SyncPhase(data["phase"]) if data.get("phase") else None
        return SyncProgress(**data)

    # -- channels -------------------------------------------------------

    async def get_channel(self, user_id: str) -> Channel:
        row = await self._db.fetchrow("SELECT * FROM channels WHERE user_id = $1", user_id)
        return self._to_channel(row, user_id)

    async def find_by_channel_id(self, channel_id: str) -> Optional[Channel]:
        row = await self._db.fetchrow("SELECT * FROM channels WHERE channel_id = $1 LIMIT 1", channel_id)
        return self._to_channel(row) if row else None

    async def list_channels(self, statuses, updated_before=None) -> List[Channel]:
        rows = await self._db.fetch(
            """SELECT * FROM channels
               WHERE status = ANY($1::text[])
                 AND ($2::timestamptz IS NULL OR updated_at < $2)""",
            [s.value for s in statuses], updated_before,
        )
        return [self._to_channel(r) for r in rows]

    async def reserve_channel(self, user_id: str, force: bool = False) -> Tuple[Channel, Channel]:
        async with self._db.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow("SELECT * FROM channels WHERE user_id = $1 FOR UPDATE", user_id)
                previous = self._to_channel(row, user_id)
                self._check_reservable(previous, force)
                # The WHERE guard also covers a concurrent first insert for a user with no row yet
                reserved = await conn.fetchrow(
                    """INSERT INTO channels (user_id, channel_id, secret_token, status, mode, created_at, updated_at)
                       VALUES ($1, NULL, NULL, 'created', 'trial', NOW(), NOW())
                       ON CONFLICT (user_id) DO UPDATE SET
                           channel_id = NULL, secret_token = NULL, status = 'created', mode = 'trial',
                           login_method = NULL, phone_number = NULL, created_at = NOW(), updated_at = NOW()
                       WHERE NOT (channels.status = 'created' AND channels.channel_id IS NULL)
                         AND ($2 OR channels.channel_id IS NULL OR channels.status IN ('none', 'expired'))
                       RETURNING *""",
                    user_id, force,
                )
        if reserved is None:
            raise AlreadyExists()
        self._record_transition(previous.status, ChannelStatus.CREATED)
        return self._to_channel(reserved), previous

    async def attach_identity(self, user_id: str, channel_id: str, secret_token: str) -> Channel:
        row = await self._db.fetchrow(
            """UPDATE channels SET channel_id = $2, secret_token = $3, updated_at = NOW()
               WHERE user_id = $1 AND status = 'created' AND channel_id IS NULL
               RETURNING *""",
            user_id, channel_id, self._crypto.encrypt(secret_token, aad=user_id),
        )
        if row is None:
            current = await self.get_channel(user_id)
            raise Conflict(detail="reservation no longer pending", current_status=current.status.value)
        return self._to_channel(row)

    async def transition(self, user_id, expected, new, *, force=False, **fields) -> Channel:
        _check_fields(fields, _CHANNEL_FIELDS)
        expected = as_status_set(expected)
        sources = self._legal_sources(expected, new, force)
        if not sources:
            current = await self.get_channel(user_id)
            raise self._reject(current.status, expected, new)
        extra, values = _set_clause(fields, 4)
        query = f"""UPDATE channels SET status = $3, updated_at = NOW(){', ' + extra if extra else ''}
                    WHERE user_id = $1 AND status = ANY($2::text[])
                      AND ($3 <> 'connected' OR secret_token IS NOT NULL)
                    RETURNING *, (SELECT status FROM channels WHERE user_id = $1) AS previous_status"""
        row = await self._db.fetchrow(query, user_id, [s.value for s in sources], new.value, *values)
        if row is None:
            current = await self.get_channel(user_id)
            if new == ChannelStatus.CONNECTED and current.status in sources and not current.secret_token:
                raise InvalidState("Cannot mark a channel connected without a token")
            raise self._reject(current.status, expected, new)
        data = dict(row)
        previous = ChannelStatus(data.pop("previous_status"))
        self._record_transition(previous, new)
        return self._to_channel(data)

    async def update_fields(self, user_id, expected, **fields) -> Channel:
        _check_fields(fields, _CHANNEL_FIELDS)
        expected = as_status_set(expected)
        if not fields:
            return await self.get_channel(user_id)
        extra, values = _set_clause(fields, 3)
        row = await self._db.fetchrow(
            f"""UPDATE channels SET {extra}, updated_at = NOW()
                WHERE user_id = $1 AND status = ANY($2::text[])
                RETURNING *""",
            user_id, [s.value for s in expected], *values,
        )
        if row is None:
            current = await self.get_channel(user_id)
            raise Conflict(current_status=current.status.value)
        return self._to_channel(row)

    async def clear(self, user_id, status=ChannelStatus.DISCONNECTED, expected=None) -> Channel:
        expected_values = [s.value for s in expected] if expected is not None else None
        row = await self._db.fetchrow(
            """UPDATE channels SET status = $2, channel_id = NULL, secret_token = NULL,
                   login_method = NULL, phone_number = NULL, updated_at = NOW()
               WHERE user_id = $1 AND ($3::text[] IS NULL OR status = ANY($3::text[]))
               RETURNING *, (SELECT status FROM channels WHERE user_id = $1) AS previous_status""",
            user_id, status.value, expected_values,
        )
        if row is None:
            current = await self.get_channel(user_id)
            if expected is None:
                return current
            raise Conflict(current_status=current.status.value)
        data = dict(row)
        self._record_transition(ChannelStatus(data.pop("previous_status")), status)
        return self._to_channel(data)

    async def update_identifier(self, user_id: str, expected_old: str, new_id: str) -> Channel:
        row = await self._db.fetchrow(
            """UPDATE channels SET channel_id = $3, updated_at = NOW()
               WHERE user_id = $1 AND channel_id = $2
               RETURNING *""",
            user_id, expected_old, new_id,
        )
        if row is None:
            current = await self.get_channel(user_id)
            raise Conflict(detail="identifier changed concurrently", current_status=current.status.value)
        return self._to_channel(row)

    # -- groups ---------------------------------------------------------

    async def replace_groups(self, user_id: str, groups: List[Group]) -> int:
        rows = {g.group_id: g for g in groups}
        args = [
            (user_id, g.group_id, g.name, g.participant_count, g.admin_status.value, g.avatar_url, g.last_synced_at)
            for g in rows.values()
        ]
        async with self._db.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("DELETE FROM whatsapp_groups WHERE user_id = $1", user_id)
                if args:
                    await conn.executemany(
                        """INSERT INTO whatsapp_groups
                           (user_id, group_id, name, participant_count, admin_status, avatar_url, last_synced_at)
                           VALUES ($1, $2, $3, $4, $5, $6, $7)""",
                        args,
                    )
        return len(args)

    async def list_groups(self, user_id, admin_statuses=None) -> List[Group]:
        statuses = [s.value for s in admin_statuses] if admin_statuses is not None else None
        rows = await self._db.fetch(
            """SELECT user_id, group_id, name, participant_count, admin_status, avatar_url,
                      last_synced_at, classified_at
               FROM whatsapp_groups
               WHERE user_id = $1 AND ($2::text[] IS NULL OR admin_status = ANY($2::text[]))
               ORDER BY lower(name), group_id""",
            user_id, statuses,
        )
        return [self._to_group(r) for r in rows]

    async def update_group_role(self, user_id, group_id, admin_status, participant_count=None) -> bool:
        status = await self._db.execute(
            """UPDATE whatsapp_groups
               SET admin_status = $3, participant_count = COALESCE($4, participant_count), classified_at = NOW()
               WHERE user_id = $1 AND group_id = $2""",
            user_id, group_id, admin_status.value, participant_count,
        )
        return status.endswith(" 1")

    async def delete_groups(self, user_id: str) -> int:
        status = await self._db.execute("DELETE FROM whatsapp_groups WHERE user_id = $1", user_id)
        # status string like "DELETE 5"
        return int(status.split()[-1]) if status else 0

    # -- progress -------------------------------------------------------

    async def get_progress(self, user_id: str) -> Optional[SyncProgress]:
        row = await self._db.fetchrow("SELECT * FROM sync_progress WHERE user_id = $1", user_id)
        return self._to_progress(row) if row else None

    async def start_progress(self, user_id: str, phase: SyncPhase, message: str = "") -> SyncProgress:
        row = await self._db.fetchrow(
            """INSERT INTO sync_progress
               (user_id, status, phase, message, started_at, updated_at)
               VALUES ($1, 'starting', $2, $3, NOW(), NOW())
               ON CONFLICT (user_id) DO UPDATE SET
                   status = 'starting', phase = EXCLUDED.phase, groups_found = 0, total_scanned = 0,
                   current_batch = 0, admin_groups = 0, message = EXCLUDED.message,
                   cancel_requested = FALSE, started_at = NOW(), completed_at = NULL,
                   updated_at = NOW(), error = NULL
               WHERE sync_progress.status <> ALL($4::text[])
               RETURNING *""",
            user_id, phase.value, message, _ACTIVE_SYNC_VALUES,
        )
        if row is None:
            raise Busy()
        return self._to_progress(row)

    async def update_progress(self, user_id: str, **fields) -> Optional[SyncProgress]:
        _check_fields(fields, _PROGRESS_FIELDS)
        if not fields:
            return await self.get_progress(user_id)
        extra, values = _set_clause(fields, 3)
        row = await self._db.fetchrow(
            f"""UPDATE sync_progress SET {extra}, updated_at = NOW()
                WHERE user_id = $1 AND status = ANY($2::text[])
                RETURNING *""",
            user_id, _ACTIVE_SYNC_VALUES, *values,
        )
        return self._to_progress(row) if row else None

    async def finish_progress(self, user_id, status, message="", error=None, **fields) -> Tuple[Optional[SyncProgress], bool]:
        _check_fields(fields, _PROGRESS_FIELDS)
        extra, values = _set_clause(fields, 6)
        row = await self._db.fetchrow(
            f"""UPDATE sync_progress
                SET status = $3, message = $4, error = $5, completed_at = NOW(), updated_at = NOW()
                    {', ' + extra if extra else ''}
                WHERE user_id = $1 AND status = ANY($2::text[])
                RETURNING *""",
            user_id, _ACTIVE_SYNC_VALUES, status.value, message, error, *values,
        )
        if row is None:
            return await self.get_progress(user_id), False
        return self._to_progress(row), True

    async def request_cancel(self, user_id: str) -> bool:
        row = await self._db.fetchrow(
            """UPDATE sync_progress SET cancel_requested = TRUE
               WHERE user_id = $1 AND status = ANY($2::text[])
               RETURNING user_id""",
            user_id, _ACTIVE_SYNC_VALUES,
        )
        return row is not None

    async def list_stale_progress(self, updated_before: datetime) -> List[SyncProgress]:
        rows = await self._db.fetch(
            "SELECT * FROM sync_progress WHERE status = ANY($1::text[]) AND updated_at < $2",
            _ACTIVE_SYNC_VALUES, updated_before,
        )
        return [self._to_progress(r) for r in rows]
