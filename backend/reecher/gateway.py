"""
Async client for the Whapi partner gateway.

Two hosts are involved:
  - manager host, authenticated with the partner token: channel CRUD and mode changes
  - gate host, authenticated with the per-channel token: health, login, groups, messages

Every operation returns a GatewayResult instead of raising, so callers decide
how a given failure maps onto their own state. The client never touches the
channel store.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from reecher.config import settings
from reecher.errors import AuthInvalid, GatewayFailure, NotFoundUpstream, ReecherError, Transient
from reecher.metrics import metrics
from reecher.models import ChannelMode, GatewayStatus, normalize_phone

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Failures where the request never reached the gateway, safe to resend even for PUT/POST
_TRANSIENT_EXCEPTIONS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)

# Upper bound on groups requested per page, keeps single responses bounded
MAX_GROUP_BATCH = 150

QR_DATA_URI_PREFIX = "data:image/png;base64,"


# ============================================================
# Status vocabulary
# ============================================================

# Every upstream status string the gateway is known to emit, mapped once.
STATUS_VOCABULARY: Dict[str, GatewayStatus] = {
    "ready": GatewayStatus.CONNECTED,
    "authenticated": GatewayStatus.CONNECTED,
    "auth": GatewayStatus.CONNECTED,
    "connected": GatewayStatus.CONNECTED,
    "online": GatewayStatus.CONNECTED,
    "qr": GatewayStatus.UNAUTHORIZED,
    "unauthorized": GatewayStatus.UNAUTHORIZED,
    "launched": GatewayStatus.UNAUTHORIZED,
    "launch": GatewayStatus.UNAUTHORIZED,
    "active": GatewayStatus.UNAUTHORIZED,
    "loading": GatewayStatus.INITIALIZING,
    "initializing": GatewayStatus.INITIALIZING,
    "init": GatewayStatus.INITIALIZING,
    "creating": GatewayStatus.INITIALIZING,
    "starting": GatewayStatus.INITIALIZING,
    "pending": GatewayStatus.INITIALIZING,
    "failed": GatewayStatus.FAILED,
    "error": GatewayStatus.FAILED,
    "stop": GatewayStatus.FAILED,
    "stopped": GatewayStatus.FAILED,
    "sync_error": GatewayStatus.FAILED,
    "disconnected": GatewayStatus.FAILED,
    "offline": GatewayStatus.FAILED,
}


def map_gateway_status(raw: Any) -> GatewayStatus:
    """Translate a raw upstream status (string or {"text": ...} object)."""
    if isinstance(raw, dict):
        raw = raw.get("text") or raw.get("status")
    if not isinstance(raw, str):
        return GatewayStatus.UNKNOWN
    return STATUS_VOCABULARY.get(raw.strip().lower(), GatewayStatus.UNKNOWN)


# ============================================================
# Result types
# ============================================================

class GatewayErrorKind(str, Enum):
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    UNKNOWN = "unknown"


_ERROR_CLASSES = {
    GatewayErrorKind.UNAUTHORIZED: AuthInvalid,
    GatewayErrorKind.NOT_FOUND: NotFoundUpstream,
    GatewayErrorKind.RATE_LIMITED: Transient,
    GatewayErrorKind.UNKNOWN: GatewayFailure,
}


@dataclass
class GatewayResult(Generic[T]):
    value: Optional[T] = None
    error: Optional[GatewayErrorKind] = None
    status_code: Optional[int] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def is_transient(self) -> bool:
        return self.error == GatewayErrorKind.RATE_LIMITED

    @classmethod
    def success(cls, value: T, status_code: Optional[int] = None) -> "GatewayResult[T]":
        return cls(value=value, status_code=status_code)

    @classmethod
    def failure(cls, kind: GatewayErrorKind, status_code: Optional[int] = None, detail: str = "") -> "GatewayResult[T]":
        return cls(error=kind, status_code=status_code, detail=detail)

    def to_exception(self) -> ReecherError:
        return _ERROR_CLASSES[self.error or GatewayErrorKind.UNKNOWN](detail=self.detail)

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.to_exception()
        return self.value  # type: ignore[return-value]


@dataclass
class ChannelInfo:
    id: str
    token: Optional[str]
    name: str = ""
    mode: Optional[str] = None


@dataclass
class HealthInfo:
    status: GatewayStatus
    raw_status: str = ""
    phone: Optional[str] = None


@dataclass
class QrPayload:
    image: Optional[str] = None
    already_authenticated: bool = False


@dataclass
class PhoneLoginInfo:
    code: Optional[str] = None
    authenticated: bool = False


@dataclass
class Participant:
    id: str
    rank: str = "member"


@dataclass
class GroupInfo:
    group_id: str
    name: str
    participant_count: int = 0
    avatar_url: Optional[str] = None
    participants: List[Participant] = field(default_factory=list)


@dataclass
class SentMessage:
    message_id: Optional[str] = None


# ============================================================
# Payload parsing
# ============================================================

def normalize_qr_image(value: str) -> str:
    """Return the QR as a data URI, whether the gateway sent it prefixed or bare."""
    value = value.strip()
    if value.startswith("data:image"):
        return value
    return QR_DATA_URI_PREFIX + "".join(value.split())


def extract_qr_image(payload: Any) -> Optional[str]:
    """Find the QR image in the several shapes the gateway has used over time."""
    if isinstance(payload, str):
        return normalize_qr_image(payload) if payload.strip() else None
    if not isinstance(payload, dict):
        return None
    if payload.get("type") == "qrCode" and isinstance(payload.get("message"), str):
        return normalize_qr_image(payload["message"])
    for key in ("base64", "image", "qr", "qrCode", "qr_code", "screen"):
        candidate = payload.get(key)
        if isinstance(candidate, str) and candidate.strip():
            return normalize_qr_image(candidate)
    nested = payload.get("data")
    if isinstance(nested, (dict, str)):
        return extract_qr_image(nested)
    return None


def _parse_channel(data: Dict[str, Any], fallback_name: str = "") -> ChannelInfo:
    return ChannelInfo(
        id=str(data.get("id") or ""),
        token=data.get("token"),
        name=str(data.get("name") or fallback_name),
        mode=data.get("mode"),
    )


def _parse_group(data: Dict[str, Any]) -> GroupInfo:
    participants = [
        Participant(id=str(p.get("id", "")), rank=str(p.get("rank") or p.get("role") or "member"))
        for p in data.get("participants") or []
        if isinstance(p, dict)
    ]
    count = len(participants) or int(data.get("size") or data.get("participants_count") or 0)
    return GroupInfo(
        group_id=str(data.get("id", "")),
        name=data.get("name") or data.get("subject") or "Unknown",
        participant_count=count,
        avatar_url=data.get("chat_pic"),
        participants=participants,
    )


def _extract_list(body: Any, *keys: str) -> list:
    if isinstance(body, list):
        return body
    if isinstance(body, dict):
        for key in keys:
            value = body.get(key)
            if isinstance(value, list):
                return value
    return []


def _classify_status_code(status_code: int) -> GatewayErrorKind:
    if status_code in (401, 403):
        return GatewayErrorKind.UNAUTHORIZED
    if status_code == 404:
        return GatewayErrorKind.NOT_FOUND
    if status_code == 429 or status_code >= 500:
        return GatewayErrorKind.RATE_LIMITED
    return GatewayErrorKind.UNKNOWN


def mask_token(token: Optional[str]) -> str:
    """First and last four characters only, for log lines."""
    if not token:
        return "<none>"
    if len(token) <= 8:
        return "****"
    return f"{token[:4]}...{token[-4:]}"


# ============================================================
# Client
# ============================================================

class GatewayClient:
    """Typed wrapper around the gateway's REST surface."""

    def __init__(
        self,
        gate_url: Optional[str] = None,
        manager_url: Optional[str] = None,
        partner_token: Optional[str] = None,
        project_id: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.gate_url = (gate_url or settings.WHAPI_GATE_URL).rstrip("/")
        self.manager_url = (manager_url or settings.WHAPI_MANAGER_URL).rstrip("/")
        self._partner_token = partner_token or settings.WHAPI_PARTNER_TOKEN
        self._project_id = project_id or settings.WHAPI_PROJECT_ID
        self._timeout = timeout or settings.WHAPI_TIMEOUT_SECONDS
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                headers={"Accept": "application/json"},
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client (call at app shutdown)."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
        retry=retry_if_exception_type(_TRANSIENT_EXCEPTIONS),
        reraise=True,
    )
    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        return await self._get_client().request(method, url, **kwargs)

    async def _request(
        self,
        operation: str,
        method: str,
        url: str,
        token: str,
        *,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
        passthrough_statuses: tuple = (),
    ) -> GatewayResult[Any]:
        headers = {"Authorization": f"Bearer {token}"}
        try:
            response = await self._send(method, url, headers=headers, json=json, params=params)
        except httpx.TimeoutException as e:
            logger.warning("[GATEWAY] %s timed out: %s", operation, type(e).__name__)
            metrics.gateway_requests_total.inc((operation, "timeout"))
            return GatewayResult.failure(GatewayErrorKind.RATE_LIMITED, detail="timeout")
        except httpx.TransportError as e:
            logger.warning("[GATEWAY] %s transport error: %s", operation, e)
            metrics.gateway_requests_total.inc((operation, "transport_error"))
            return GatewayResult.failure(GatewayErrorKind.RATE_LIMITED, detail="transport error")

        code = response.status_code
        if code >= 400 and code not in passthrough_statuses:
            kind = _classify_status_code(code)
            metrics.gateway_requests_total.inc((operation, kind.value))
            logger.info("[GATEWAY] %s failed: HTTP %d (%s)", operation, code, kind.value)
            return GatewayResult.failure(kind, status_code=code, detail=response.text[:200])

        metrics.gateway_requests_total.inc((operation, "ok"))
        if not response.content:
            return GatewayResult.success({}, status_code=code)
        try:
            return GatewayResult.success(response.json(), status_code=code)
        except ValueError:
            logger.warning("[GATEWAY] %s returned non-JSON body (HTTP %d)", operation, code)
            return GatewayResult.success({}, status_code=code)

    # ------------------------------------------------------------------
    # Partner (manager host) operations
    # ------------------------------------------------------------------

    async def create_channel(self, name: str, mode: ChannelMode = ChannelMode.TRIAL) -> GatewayResult[ChannelInfo]:
        result = await self._request(
            "create_channel", "PUT", f"{self.manager_url}/channels", self._partner_token,
            json={"name": name, "projectId": self._project_id, "mode": mode.value},
        )
        if not result.ok:
            return result
        body = result.value if isinstance(result.value, dict) else {}
        channel = _parse_channel(body, fallback_name=name)
        if not channel.token:
            return GatewayResult.failure(GatewayErrorKind.UNKNOWN, result.status_code, "create response has no token")
        return GatewayResult.success(channel, result.status_code)

    async def list_channels(self) -> GatewayResult[List[ChannelInfo]]:
        result = await self._request(
            "list_channels", "GET", f"{self.manager_url}/channels", self._partner_token,
            params={"projectId": self._project_id},
        )
        if not result.ok:
            return result
        channels = [_parse_channel(c) for c in _extract_list(result.value, "items", "data", "channels") if isinstance(c, dict)]
        return GatewayResult.success(channels, result.status_code)

    async def delete_channel(self, channel_id: str) -> GatewayResult[None]:
        result = await self._request(
            "delete_channel", "DELETE", f"{self.manager_url}/channels/{channel_id}", self._partner_token,
        )
        if not result.ok:
            return result
        return GatewayResult.success(None, result.status_code)

    async def set_channel_mode(self, channel_id: str, mode: ChannelMode) -> GatewayResult[None]:
        result = await self._request(
            "set_channel_mode", "PATCH", f"{self.manager_url}/channels/{channel_id}/mode", self._partner_token,
            json={"mode": mode.value},
        )
        if not result.ok:
            return result
        return GatewayResult.success(None, result.status_code)

    # ------------------------------------------------------------------
    # Channel (gate host) operations
    # ------------------------------------------------------------------

    async def get_status(self, token: str) -> GatewayResult[HealthInfo]:
        result = await self._request("get_status", "GET", f"{self.gate_url}/health", token)
        if not result.ok:
            return result
        body = result.value if isinstance(result.value, dict) else {}
        raw = body.get("status")
        raw_text = raw.get("text", "") if isinstance(raw, dict) else str(raw or "")
        user = body.get("user") or body.get("me") or {}
        phone = None
        if isinstance(user, dict):
            phone = user.get("phone") or user.get("id")
        return GatewayResult.success(
            HealthInfo(
                status=map_gateway_status(raw),
                raw_status=raw_text,
                phone=normalize_phone(str(phone)) if phone else None,
            ),
            result.status_code,
        )

    async def get_qr(self, token: str) -> GatewayResult[QrPayload]:
        # 409 means the session is already logged in
        result = await self._request(
            "get_qr", "GET", f"{self.gate_url}/users/login", token,
            passthrough_statuses=(409,),
        )
        if not result.ok:
            return result
        body = result.value
        if result.status_code == 409:
            return GatewayResult.success(QrPayload(already_authenticated=True), 409)
        if isinstance(body, dict) and map_gateway_status(body.get("status")) == GatewayStatus.CONNECTED:
            return GatewayResult.success(QrPayload(already_authenticated=True), result.status_code)
        image = extract_qr_image(body)
        if image is None:
            return GatewayResult.failure(GatewayErrorKind.UNKNOWN, result.status_code, "no QR image in response")
        return GatewayResult.success(QrPayload(image=image), result.status_code)

    async def login_with_phone(self, token: str, phone: str) -> GatewayResult[PhoneLoginInfo]:
        digits = normalize_phone(phone)
        result = await self._request(
            "login_with_phone", "GET", f"{self.gate_url}/users/login/{digits}", token,
            passthrough_statuses=(409,),
        )
        if not result.ok:
            return result
        body = result.value if isinstance(result.value, dict) else {}
        if result.status_code == 409 or map_gateway_status(body.get("status")) == GatewayStatus.CONNECTED:
            return GatewayResult.success(PhoneLoginInfo(authenticated=True), result.status_code)
        code = body.get("code")
        if not code:
            return GatewayResult.failure(GatewayErrorKind.UNKNOWN, result.status_code, "no pairing code in response")
        return GatewayResult.success(PhoneLoginInfo(code=str(code)), result.status_code)

    async def logout(self, token: str) -> GatewayResult[None]:
        result = await self._request("logout", "POST", f"{self.gate_url}/users/logout", token)
        if not result.ok:
            return result
        return GatewayResult.success(None, result.status_code)

    async def list_groups(self, token: str, offset: int, count: int) -> GatewayResult[List[GroupInfo]]:
        count = max(1, min(count, MAX_GROUP_BATCH))
        result = await self._request(
            "list_groups", "GET", f"{self.gate_url}/groups", token,
            params={"count": count, "offset": offset},
        )
        if not result.ok:
            return result
        groups = [_parse_group(g) for g in _extract_list(result.value, "groups", "items", "data") if isinstance(g, dict)]
        return GatewayResult.success(groups, result.status_code)

    async def get_group(self, token: str, group_id: str) -> GatewayResult[GroupInfo]:
        result = await self._request("get_group", "GET", f"{self.gate_url}/groups/{group_id}", token)
        if not result.ok:
            return result
        body = result.value if isinstance(result.value, dict) else {}
        return GatewayResult.success(_parse_group(body), result.status_code)

    async def send_message(
        self, token: str, to: str, body: str, media_url: Optional[str] = None
    ) -> GatewayResult[SentMessage]:
        payload: Dict[str, Any] = {"to": to, "body": body}
        if media_url:
            payload["media"] = {"url": media_url}
        result = await self._request("send_message", "POST", f"{self.gate_url}/messages/text", token, json=payload)
        if not result.ok:
            return result
        data = result.value if isinstance(result.value, dict) else {}
        message = data.get("message") if isinstance(data.get("message"), dict) else {}
        return GatewayResult.success(SentMessage(message_id=message.get("id") or data.get("id")), result.status_code)

    async def configure_webhook(self, token: str, url: str) -> GatewayResult[None]:
        result = await self._request(
            "configure_webhook", "PATCH", f"{self.gate_url}/settings", token,
            json={
                "webhooks": [{
                    "url": url,
                    "events": {"messages": False, "statuses": False, "channels": True, "users": True},
                }]
            },
        )
        if not result.ok:
            return result
        return GatewayResult.success(None, result.status_code)
