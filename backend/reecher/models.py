"""
Pydantic models for channel, group and sync-progress records plus request/response validation
"""
import re
from pydantic import BaseModel, Field
from typing import Dict, FrozenSet, Iterable, Optional, List
from datetime import datetime
from enum import Enum

from reecher.config import settings


# ============================================================
# Enums
# ============================================================

class ChannelStatus(str, Enum):
    NONE = "none"
    CREATED = "created"
    INITIALIZING = "initializing"
    UNAUTHORIZED = "unauthorized"
    QR_DISPLAYED = "qr_displayed"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    EXPIRED = "expired"


class ChannelMode(str, Enum):
    TRIAL = "trial"
    LIVE = "live"


class LoginMethod(str, Enum):
    QR = "qr"
    PHONE_CODE = "phone_code"


class AdminStatus(str, Enum):
    UNKNOWN = "unknown"
    ADMIN = "admin"
    CREATOR = "creator"
    MEMBER = "member"


class SyncStatus(str, Enum):
    NOT_RUNNING = "not_running"
    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SyncPhase(str, Enum):
    COLLECTION = "collection"
    CLASSIFICATION = "classification"


class PlanStatus(str, Enum):
    TRIAL = "trial"
    PAID = "paid"
    EXPIRED = "expired"


class ReadyOutcome(str, Enum):
    READY = "ready"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class GatewayStatus(str, Enum):
    """Local reading of the gateway's health vocabulary."""
    CONNECTED = "connected"
    UNAUTHORIZED = "unauthorized"
    INITIALIZING = "initializing"
    FAILED = "failed"
    UNKNOWN = "unknown"


ACTIVE_SYNC_STATUSES: FrozenSet[SyncStatus] = frozenset({SyncStatus.STARTING, SyncStatus.RUNNING})
TERMINAL_SYNC_STATUSES: FrozenSet[SyncStatus] = frozenset(
    {SyncStatus.COMPLETED, SyncStatus.FAILED, SyncStatus.CANCELLED}
)

# Statuses in which the channel is still being provisioned upstream
TRANSIENT_CHANNEL_STATUSES: FrozenSet[ChannelStatus] = frozenset(
    {ChannelStatus.CREATED, ChannelStatus.INITIALIZING}
)

# Lifecycle graph. Forced moves to DISCONNECTED/EXPIRED (reaper, clear) bypass it.
ALLOWED_TRANSITIONS: Dict[ChannelStatus, FrozenSet[ChannelStatus]] = {
    ChannelStatus.NONE: frozenset({ChannelStatus.CREATED}),
    ChannelStatus.CREATED: frozenset({ChannelStatus.INITIALIZING}),
    ChannelStatus.INITIALIZING: frozenset({ChannelStatus.UNAUTHORIZED, ChannelStatus.CONNECTED}),
    ChannelStatus.UNAUTHORIZED: frozenset(
        {ChannelStatus.QR_DISPLAYED, ChannelStatus.CONNECTED, ChannelStatus.NONE}
    ),
    ChannelStatus.QR_DISPLAYED: frozenset(
        {ChannelStatus.CONNECTED, ChannelStatus.UNAUTHORIZED, ChannelStatus.NONE}
    ),
    ChannelStatus.CONNECTED: frozenset({ChannelStatus.UNAUTHORIZED, ChannelStatus.NONE}),
    ChannelStatus.DISCONNECTED: frozenset({ChannelStatus.CREATED}),
    ChannelStatus.EXPIRED: frozenset({ChannelStatus.CREATED}),
}


def is_allowed_transition(current: ChannelStatus, new: ChannelStatus) -> bool:
    if new == ChannelStatus.EXPIRED:
        return current != ChannelStatus.EXPIRED
    return new in ALLOWED_TRANSITIONS.get(current, frozenset())


def as_status_set(expected: "ChannelStatus | Iterable[ChannelStatus]") -> FrozenSet[ChannelStatus]:
    if isinstance(expected, ChannelStatus):
        return frozenset({expected})
    return frozenset(expected)


# ============================================================
# Identifier / phone helpers
# ============================================================

# Partner identifiers: 12 upper-case alphanumerics or XXXXXX-XXXXX
CANONICAL_CHANNEL_ID = re.compile(r"^(?:[A-Z]{6}-[A-Z0-9]{5}|[A-Z0-9]{12})$")


def is_canonical_channel_id(value: Optional[str]) -> bool:
    return bool(value) and CANONICAL_CHANNEL_ID.match(value) is not None


def normalize_phone(phone: str) -> str:
    """Strip everything but digits (spaces, dashes, leading +, parentheses)."""
    return "".join(ch for ch in phone if ch.isdigit())


# ============================================================
# Stored records
# ============================================================

class Channel(BaseModel):
    user_id: str
    channel_id: Optional[str] = None
    secret_token: Optional[str] = None
    status: ChannelStatus = ChannelStatus.NONE
    mode: ChannelMode = ChannelMode.TRIAL
    login_method: Optional[LoginMethod] = None
    phone_number: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        """Active channels block creation of a second one."""
        if self.status in (ChannelStatus.NONE, ChannelStatus.EXPIRED):
            return False
        return self.channel_id is not None

    @property
    def identifier_valid(self) -> bool:
        return is_canonical_channel_id(self.channel_id)

    class Config:
        from_attributes = True


class Group(BaseModel):
    user_id: str
    group_id: str
    name: str = "Unknown"
    participant_count: int = 0
    admin_status: AdminStatus = AdminStatus.UNKNOWN
    avatar_url: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    classified_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SyncProgress(BaseModel):
    user_id: str
    status: SyncStatus = SyncStatus.NOT_RUNNING
    phase: Optional[SyncPhase] = None
    groups_found: int = 0
    total_scanned: int = 0
    current_batch: int = 0
    admin_groups: int = 0
    message: str = ""
    cancel_requested: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_SYNC_STATUSES

    @property
    def percent(self) -> int:
        """Percentage of the current phase.

        Classification is scanned over found. Collection has no known total, so
        pages fetched are measured against the API-call cap. Both stay below 100
        until the run completes.
        """
        if self.status == SyncStatus.COMPLETED:
            return 100
        if self.phase == SyncPhase.CLASSIFICATION and self.groups_found:
            return min(99, int(self.total_scanned * 100 / self.groups_found))
        if self.phase == SyncPhase.COLLECTION and self.is_active:
            budget = max(settings.COLLECTION_MAX_API_CALLS, 1)
            return min(99, int(self.current_batch * 100 / budget))
        return 0

    class Config:
        from_attributes = True


# ============================================================
# Channel API Models
# ============================================================

class CreateChannelRequest(BaseModel):
    force: bool = False


class ChannelStatusResponse(BaseModel):
    status: ChannelStatus
    channel_id: Optional[str] = None
    mode: ChannelMode = ChannelMode.TRIAL
    login_method: Optional[LoginMethod] = None
    phone_number: Optional[str] = None
    identifier_valid: bool = False
    has_token: bool = False
    updated_at: Optional[datetime] = None

    @classmethod
    def from_channel(cls, channel: Channel) -> "ChannelStatusResponse":
        return cls(
            status=channel.status,
            channel_id=channel.channel_id,
            mode=channel.mode,
            login_method=channel.login_method,
            phone_number=channel.phone_number,
            identifier_valid=channel.identifier_valid,
            has_token=channel.secret_token is not None,
            updated_at=channel.updated_at,
        )


class QrResponse(BaseModel):
    status: ChannelStatus
    qr_code: Optional[str] = None  # data:image/png;base64,...
    already_connected: bool = False


class PhoneLoginRequest(BaseModel):
    phone: str = Field(..., description="Phone number in any format (+972 50-...)", max_length=32)


class PhoneLoginResponse(BaseModel):
    status: ChannelStatus
    code_required: bool = False
    pairing_code: Optional[str] = None


class RepairResponse(BaseModel):
    repaired: bool
    channel_id: Optional[str] = None
    previous_id: Optional[str] = None
    upgraded_to_live: bool = False


class RecoverRequest(BaseModel):
    force_new: bool = False


class RecoveryStep(BaseModel):
    step: str
    outcome: str  # ok | failed | skipped
    detail: str = ""


class RecoveryReport(BaseModel):
    success: bool
    status: ChannelStatus
    steps: List[RecoveryStep] = Field(default_factory=list)
    hint: Optional[str] = None


class LiveEligibilityResponse(BaseModel):
    eligible: bool
    plan: PlanStatus
    mode: ChannelMode


# ============================================================
# Sync API Models
# ============================================================

class StartSyncRequest(BaseModel):
    classify: bool = True


class ClassifyRequest(BaseModel):
    group_ids: Optional[List[str]] = Field(None, max_length=1000)


class SyncProgressResponse(BaseModel):
    status: SyncStatus
    phase: Optional[SyncPhase] = None
    percent: int = 0
    groups_found: int = 0
    total_scanned: int = 0
    current_batch: int = 0
    admin_groups: int = 0
    message: str = ""
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    @classmethod
    def from_progress(cls, progress: SyncProgress) -> "SyncProgressResponse":
        return cls(
            status=progress.status,
            phase=progress.phase,
            percent=progress.percent,
            groups_found=progress.groups_found,
            total_scanned=progress.total_scanned,
            current_batch=progress.current_batch,
            admin_groups=progress.admin_groups,
            message=progress.message,
            started_at=progress.started_at,
            completed_at=progress.completed_at,
            error=progress.error,
        )


class GroupResponse(BaseModel):
    group_id: str
    name: str
    participant_count: int
    admin_status: AdminStatus
    avatar_url: Optional[str] = None
    last_synced_at: Optional[datetime] = None


class GroupsListResponse(BaseModel):
    groups: List[GroupResponse]
    total: int


# ============================================================
# Messaging Models
# ============================================================

class SendMessageRequest(BaseModel):
    group_ids: List[str] = Field(..., min_length=1, max_length=200)
    body: str = Field(..., min_length=1, max_length=4096)
    media_url: Optional[str] = Field(None, max_length=2048)


class SendResult(BaseModel):
    group_id: str
    ok: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class BroadcastResponse(BaseModel):
    sent: int
    failed: int
    results: List[SendResult]


# ============================================================
# Reaper Models
# ============================================================

class ReaperReport(BaseModel):
    stuck_reaped: int = 0
    tokens_cleared: int = 0
    status_corrected: int = 0
    trials_expired: int = 0
    syncs_failed: int = 0
    errors: int = 0
