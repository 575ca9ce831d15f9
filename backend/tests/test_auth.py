"""
Unit tests for reecher.auth: user JWT verification, internal token and
webhook secret checks.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import jwt as pyjwt
import pytest
from fastapi import HTTPException

from reecher.auth import (
    decode_token,
    get_current_user_id,
    user_id_from_token,
    verify_internal_token,
    verify_webhook_secret,
)


def _token(settings, **claims):
    payload = {"exp": datetime.now(timezone.utc) + timedelta(hours=1)}
    payload.update(claims)
    return pyjwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def _credentials(value):
    credentials = MagicMock()
    credentials.credentials = value
    return credentials


# ------------------------------------------------------------------
# User tokens
# ------------------------------------------------------------------

class TestDecodeToken:
    def test_decode_valid_token(self, mock_settings):
        payload = decode_token(_token(mock_settings, sub="user-99"))
        assert payload["sub"] == "user-99"

    def test_audience_is_not_checked(self, mock_settings):
        payload = decode_token(_token(mock_settings, sub="u1", aud="authenticated"))
        assert payload["aud"] == "authenticated"

    def test_expired_token_raises(self, mock_settings):
        token = _token(mock_settings, sub="u1", exp=datetime.now(timezone.utc) - timedelta(seconds=1))
        with pytest.raises(HTTPException) as exc_info:
            decode_token(token)
        assert exc_info.value.status_code == 401

    def test_tampered_token_raises(self, mock_settings):
        token = _token(mock_settings, sub="u1")
        with pytest.raises(HTTPException) as exc_info:
            decode_token(token[:-4] + "XXXX")
        assert exc_info.value.status_code == 401

    def test_wrong_secret_raises(self, mock_settings):
        token = pyjwt.encode({"sub": "u1"}, "some-other-secret-of-decent-length", algorithm="HS256")
        with pytest.raises(HTTPException):
            decode_token(token)


class TestUserId:
    def test_reads_sub(self, mock_settings):
        assert user_id_from_token(_token(mock_settings, sub="abc")) == "abc"

    def test_numeric_sub_becomes_string(self, mock_settings):
        assert user_id_from_token(_token(mock_settings, sub="42", type="access")) == "42"

    def test_refresh_token_rejected(self, mock_settings):
        with pytest.raises(HTTPException) as exc_info:
            user_id_from_token(_token(mock_settings, sub="u1", type="refresh"))
        assert exc_info.value.detail == "Invalid token type"

    def test_missing_sub_rejected(self, mock_settings):
        with pytest.raises(HTTPException) as exc_info:
            user_id_from_token(_token(mock_settings))
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_dependency_returns_user_id(self, mock_settings):
        user_id = await get_current_user_id(credentials=_credentials(_token(mock_settings, sub="u7")))
        assert user_id == "u7"


# ------------------------------------------------------------------
# Shared secrets
# ------------------------------------------------------------------

class TestInternalToken:
    def test_accepts_configured_secret(self, mock_settings):
        assert verify_internal_token(_credentials("internal-secret")) is None

    def test_rejects_other_values(self, mock_settings):
        with pytest.raises(HTTPException) as exc_info:
            verify_internal_token(_credentials("nope"))
        assert exc_info.value.status_code == 401

    def test_falls_back_to_jwt_secret(self, mock_settings):
        mock_settings.INTERNAL_API_SECRET = ""
        assert verify_internal_token(_credentials(mock_settings.JWT_SECRET)) is None


class TestWebhookSecret:
    def test_header_accepted(self, mock_settings):
        assert verify_webhook_secret(x_webhook_secret="hook-secret", secret=None) is None

    def test_query_param_accepted(self, mock_settings):
        assert verify_webhook_secret(x_webhook_secret=None, secret="hook-secret") is None

    def test_wrong_secret_rejected(self, mock_settings):
        with pytest.raises(HTTPException) as exc_info:
            verify_webhook_secret(x_webhook_secret="guess", secret=None)
        assert exc_info.value.status_code == 401

    def test_missing_secret_rejected(self, mock_settings):
        with pytest.raises(HTTPException):
            verify_webhook_secret(x_webhook_secret=None, secret=None)

    def test_closed_when_not_configured(self, mock_settings):
        mock_settings.WEBHOOK_SECRET = ""
        with pytest.raises(HTTPException) as exc_info:
            verify_webhook_secret(x_webhook_secret="anything", secret=None)
        assert exc_info.value.status_code == 404
