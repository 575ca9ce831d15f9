"""
Shared pytest fixtures for Reecher backend tests.

Required settings are provided through the environment before any
``reecher`` module is imported, so ``Settings()`` never needs a real .env.
"""
import os

os.environ.setdefault("WHAPI_PARTNER_TOKEN", "partner-token-for-tests")
os.environ.setdefault("WHAPI_PROJECT_ID", "project-test")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret-that-is-long-enough")
os.environ.setdefault("ENCRYPTION_KEY", "a" * 32)
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("WEBHOOK_URL", "")

from collections import defaultdict
from typing import Any, Dict, List

from unittest.mock import patch

import pytest

from reecher.billing import InMemoryPlanProvider
from reecher.controller import ChannelController
from reecher.gateway import (
    ChannelInfo,
    GatewayErrorKind,
    GatewayResult,
    GroupInfo,
    HealthInfo,
    PhoneLoginInfo,
    QrPayload,
    SentMessage,
)
from reecher.messaging import MessageSender
from reecher.models import ChannelMode, ChannelStatus, GatewayStatus
from reecher.progress import SyncProgressTracker
from reecher.reaper import Reaper
from reecher.sse import ProgressBroadcaster
from reecher.store import MemoryStore
from reecher.sync_engine import SyncEngine

VALID_CHANNEL_ID = "ABCDEF-GHIJK"
TOKEN = "tok-secret-1"


def ok(value: Any = None) -> GatewayResult:
    return GatewayResult.success(value, 200)


def fail(kind: GatewayErrorKind, status_code: int = 0) -> GatewayResult:
    return GatewayResult.failure(kind, status_code or None, detail=kind.value)


def health(status: GatewayStatus, phone: str = None) -> GatewayResult:
    return ok(HealthInfo(status=status, raw_status=status.value, phone=phone))


class FakeGateway:
    """Scripted stand-in for GatewayClient.

    ``script(op, *results)`` queues results for an operation; once the queue
    is empty the default answer is used. A queued callable is invoked with
    the call arguments. Every call is recorded in ``calls``.
    """

    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self._queues: Dict[str, list] = defaultdict(list)
        self.groups: List[GroupInfo] = []
        self.group_details: Dict[str, GroupInfo] = {}
        self.defaults: Dict[str, Any] = {
            "create_channel": lambda name, mode: ok(
                ChannelInfo(id=VALID_CHANNEL_ID, token=TOKEN, name=name, mode=mode.value)
            ),
            "list_channels": ok([]),
            "delete_channel": ok(None),
            "set_channel_mode": ok(None),
            "get_status": health(GatewayStatus.UNAUTHORIZED),
            "get_qr": ok(QrPayload(image="data:image/png;base64,iVBORw0KGgo=")),
            "login_with_phone": ok(PhoneLoginInfo(code="ABCD-EFGH")),
            "logout": ok(None),
            "list_groups": self._page_groups,
            "get_group": self._group_detail,
            "send_message": lambda token, to, body, media_url: ok(SentMessage(message_id=f"msg-{to}")),
            "configure_webhook": ok(None),
        }

    def _page_groups(self, token, offset, count):
        return ok(self.groups[offset:offset + count])

    def _group_detail(self, token, group_id):
        info = self.group_details.get(group_id)
        if info is None:
            return fail(GatewayErrorKind.NOT_FOUND, 404)
        return ok(info)

    def script(self, op: str, *results: Any) -> None:
        self._queues[op].extend(results)

    def count(self, op: str) -> int:
        return sum(1 for call in self.calls if call[0] == op)

    def _next(self, op: str, *args: Any) -> GatewayResult:
        self.calls.append((op,) + args)
        queue = self._queues.get(op)
        item = queue.pop(0) if queue else self.defaults[op]
        if callable(item):
            item = item(*args)
        return item

    async def create_channel(self, name, mode=ChannelMode.TRIAL):
        return self._next("create_channel", name, mode)

    async def list_channels(self):
        return self._next("list_channels")

    async def delete_channel(self, channel_id):
        return self._next("delete_channel", channel_id)

    async def set_channel_mode(self, channel_id, mode):
        return self._next("set_channel_mode", channel_id, mode)

    async def get_status(self, token):
        return self._next("get_status", token)

    async def get_qr(self, token):
        return self._next("get_qr", token)

    async def login_with_phone(self, token, phone):
        return self._next("login_with_phone", token, phone)

    async def logout(self, token):
        return self._next("logout", token)

    async def list_groups(self, token, offset, count):
        return self._next("list_groups", token, offset, count)

    async def get_group(self, token, group_id):
        return self._next("get_group", token, group_id)

    async def send_message(self, token, to, body, media_url=None):
        return self._next("send_message", token, to, body, media_url)

    async def configure_webhook(self, token, url):
        return self._next("configure_webhook", token, url)

    async def close(self):
        pass


class FakeSettings:
    """Auth-relevant settings with fixed test values."""
    JWT_SECRET = "test-jwt-secret-that-is-long-enough"
    JWT_ALGORITHM = "HS256"
    INTERNAL_API_SECRET = "internal-secret"
    WEBHOOK_SECRET = "hook-secret"
    ENVIRONMENT = "testing"

    @property
    def internal_api_secret(self):
        return self.INTERNAL_API_SECRET or self.JWT_SECRET


@pytest.fixture()
def mock_settings():
    """Patch reecher.auth.settings so auth helpers see the fake values."""
    fake = FakeSettings()
    with patch("reecher.auth.settings", fake):
        yield fake


class RecordedSleep:
    """No-op replacement for asyncio.sleep that remembers requested delays."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture()
def store():
    return MemoryStore()


@pytest.fixture()
def gateway():
    return FakeGateway()


@pytest.fixture()
def sleep():
    return RecordedSleep()


@pytest.fixture()
def plans():
    return InMemoryPlanProvider()


@pytest.fixture()
def broadcaster():
    return ProgressBroadcaster()


@pytest.fixture()
def tracker(store, broadcaster):
    return SyncProgressTracker(store, broadcaster)


@pytest.fixture()
def controller(store, gateway, plans, sleep):
    return ChannelController(store, gateway, plans, sleep=sleep, ready_max_attempts=5, webhook_url="", poll_in_background=False)


@pytest.fixture()
def engine(store, gateway, tracker, sleep):
    return SyncEngine(store, gateway, tracker, sleep=sleep, batch_size=3, max_api_calls=10, cooldown_seconds=0)


@pytest.fixture()
def sender(store, gateway, sleep):
    return MessageSender(store, gateway, sleep=sleep, delay_seconds=0.5)


@pytest.fixture()
def reaper(store, gateway, plans, tracker, controller):
    return Reaper(store, gateway, plans, tracker, controller)


def make_groups(count: int, prefix: str = "g") -> List[GroupInfo]:
    return [GroupInfo(group_id=f"{prefix}{i}@g.us", name=f"Group {i}", participant_count=10) for i in range(count)]


async def connected_channel(store: MemoryStore, user_id: str = "user-1", phone: str = "972501234567"):
    """Drive a fresh store row to connected through the legal transitions."""
    await store.reserve_channel(user_id)
    await store.attach_identity(user_id, VALID_CHANNEL_ID, TOKEN)
    await store.transition(user_id, ChannelStatus.CREATED, ChannelStatus.INITIALIZING)
    await store.transition(user_id, ChannelStatus.INITIALIZING, ChannelStatus.UNAUTHORIZED)
    return await store.transition(user_id, ChannelStatus.UNAUTHORIZED, ChannelStatus.CONNECTED, phone_number=phone)


async def unauthorized_channel(store: MemoryStore, user_id: str = "user-1", channel_id: str = VALID_CHANNEL_ID):
    await store.reserve_channel(user_id)
    await store.attach_identity(user_id, channel_id, TOKEN)
    await store.transition(user_id, ChannelStatus.CREATED, ChannelStatus.INITIALIZING)
    return await store.transition(user_id, ChannelStatus.INITIALIZING, ChannelStatus.UNAUTHORIZED)
