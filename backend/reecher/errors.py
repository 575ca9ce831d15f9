"""
Error taxonomy shared by the gateway client, controller, sync engine and routes.

Every error carries a short user-facing ``hint`` instead of a raw upstream
string, plus a ``retryable`` flag so callers know whether a later retry makes
sense. Routes translate these into HTTP responses (see ``http_status``).
"""
from typing import Optional


class ReecherError(Exception):
    """Base class for errors surfaced by the core."""

    kind = "error"
    http_status = 500
    default_hint = "Unexpected error, please try again"
    retryable = False

    def __init__(self, hint: Optional[str] = None, *, detail: str = "") -> None:
        self.hint = hint or self.default_hint
        self.detail = detail
        super().__init__(self.hint if not detail else f"{self.hint} ({detail})")

    def to_dict(self) -> dict:
        return {"error": self.kind, "detail": self.hint, "retryable": self.retryable}


class Transient(ReecherError):
    """Timeout, 429 or 5xx from the gateway after bounded retries."""

    kind = "transient"
    http_status = 503
    default_hint = "WhatsApp gateway is busy, retry in a few seconds"
    retryable = True


class AuthInvalid(ReecherError):
    """The stored channel token is dead. Never retried."""

    kind = "auth_invalid"
    http_status = 409
    default_hint = "Token invalid, recreate channel"


class NotFoundUpstream(ReecherError):
    kind = "not_found_upstream"
    http_status = 404
    default_hint = "Channel no longer exists on the gateway, create a new one"


class Conflict(ReecherError):
    """A concurrent caller changed the channel first. Re-fetch and retry once."""

    kind = "conflict"
    http_status = 409
    default_hint = "Channel state changed concurrently, refresh and retry"
    retryable = True

    def __init__(self, hint: Optional[str] = None, *, detail: str = "", current_status: Optional[str] = None) -> None:
        self.current_status = current_status
        super().__init__(hint, detail=detail)


class MalformedIdentifier(ReecherError):
    kind = "malformed_identifier"
    http_status = 422
    default_hint = "Channel identifier is malformed, run repair"

    def __init__(self, identifier: str = "", hint: Optional[str] = None) -> None:
        self.identifier = identifier
        super().__init__(hint, detail=identifier)


class Busy(ReecherError):
    kind = "busy"
    http_status = 429
    default_hint = "A sync is already running, wait for it or cancel it first"
    retryable = True


class CooldownActive(Busy):
    kind = "cooldown"

    def __init__(self, retry_after_seconds: int) -> None:
        self.retry_after_seconds = retry_after_seconds
        super().__init__(f"Groups were synced recently, retry in {retry_after_seconds}s")


class AlreadyExists(ReecherError):
    kind = "already_exists"
    http_status = 409
    default_hint = "A channel already exists, pass force to replace it"


class RepairFailed(ReecherError):
    kind = "repair_failed"
    http_status = 502
    default_hint = "Could not find a matching channel on the gateway, recreate channel"


class InvalidState(ReecherError):
    kind = "invalid_state"
    http_status = 409
    default_hint = "Operation not allowed in the current channel state"


class GatewayFailure(ReecherError):
    """Unclassified gateway error (4xx other than auth/not-found, malformed payload)."""

    kind = "gateway_error"
    http_status = 502
    default_hint = "WhatsApp gateway rejected the request, try again or recover the channel"


class ChannelMissing(ReecherError):
    kind = "channel_missing"
    http_status = 404
    default_hint = "No WhatsApp channel yet, create one first"


class InvalidPhone(ReecherError):
    kind = "invalid_phone"
    http_status = 422
    default_hint = "Enter a valid phone number including the country code"
