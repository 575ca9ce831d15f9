"""
Authentication utilities.

User tokens are issued by the external auth provider and signed with
JWT_SECRET; we only verify them and read the ``sub`` claim. Internal
endpoints (reaper trigger) and gateway webhooks use shared secrets.
"""
import hmac
from typing import Dict, Optional

import jwt
from jwt.exceptions import InvalidTokenError as JWTError
from fastapi import Depends, Header, HTTPException, Query, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from reecher.config import settings


security = HTTPBearer()
_internal_security = HTTPBearer()


def decode_token(token: str) -> Dict:
    """Decode and verify a user JWT."""
    try:
        return jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            options={"verify_aud": False},
        )
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")


def user_id_from_token(token: str) -> str:
    payload = decode_token(token)
    # Refresh tokens (when the provider marks them) must not reach the API
    if payload.get("type", "access") != "access":
        raise HTTPException(status_code=401, detail="Invalid token type")
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token payload")
    return str(user_id)


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials = Security(security),
) -> str:
    """Get the authenticated user's id from the bearer token"""
    return user_id_from_token(credentials.credentials)


def verify_internal_token(credentials: HTTPAuthorizationCredentials = Depends(_internal_security)) -> None:
    """Verify the internal API secret (cron jobs, ops tooling)."""
    if not hmac.compare_digest(credentials.credentials, settings.internal_api_secret):
        raise HTTPException(status_code=401, detail="Invalid internal API token")


def verify_webhook_secret(
    x_webhook_secret: Optional[str] = Header(None),
    secret: Optional[str] = Query(None),
) -> None:
    """Gateway webhooks carry the shared secret as a header or ``?secret=`` query param.

    With no WEBHOOK_SECRET configured the endpoint is closed.
    """
    if not settings.WEBHOOK_SECRET:
        raise HTTPException(status_code=404, detail="Webhooks are not enabled")
    supplied = x_webhook_secret or secret or ""
    if not hmac.compare_digest(supplied, settings.WEBHOOK_SECRET):
        raise HTTPException(status_code=401, detail="Invalid webhook secret")
