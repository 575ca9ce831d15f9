"""
Tests for reecher.controller.ChannelController: creation, readiness polling,
login, status reconciliation, teardown, repair and recovery.
"""
import asyncio
import logging

import httpx
import pytest

from conftest import (
    TOKEN,
    VALID_CHANNEL_ID,
    connected_channel,
    fail,
    health,
    ok,
    unauthorized_channel,
)
from reecher.controller import ChannelController
from reecher.errors import (
    AlreadyExists,
    AuthInvalid,
    ChannelMissing,
    InvalidPhone,
    InvalidState,
    MalformedIdentifier,
    NotFoundUpstream,
    RepairFailed,
    Transient,
)
from reecher.gateway import ChannelInfo, GatewayClient, GatewayErrorKind, PhoneLoginInfo, QrPayload
from reecher.models import (
    ChannelMode,
    ChannelStatus,
    GatewayStatus,
    Group,
    LoginMethod,
    PlanStatus,
    ReadyOutcome,
    SyncPhase,
)


# ------------------------------------------------------------------
# Creation
# ------------------------------------------------------------------

class TestCreateChannel:
    @pytest.mark.asyncio
    async def test_creates_in_trial_mode(self, controller, gateway):
        channel = await controller.create_channel("u1")
        assert channel.status == ChannelStatus.CREATED
        assert channel.channel_id == VALID_CHANNEL_ID
        assert channel.secret_token == TOKEN
        assert channel.mode == ChannelMode.TRIAL
        assert gateway.calls[0][0] == "create_channel"
        assert gateway.calls[0][2] == ChannelMode.TRIAL

    @pytest.mark.asyncio
    async def test_gateway_failure_leaves_no_reservation(self, controller, gateway, store):
        gateway.script("create_channel", fail(GatewayErrorKind.RATE_LIMITED, 503))
        with pytest.raises(Transient):
            await controller.create_channel("u1")
        channel = await store.get_channel("u1")
        assert channel.status == ChannelStatus.NONE
        assert channel.channel_id is None

        # A retry is not blocked by the failed attempt
        channel = await controller.create_channel("u1")
        assert channel.channel_id == VALID_CHANNEL_ID

    @pytest.mark.asyncio
    async def test_expired_plan_refused_before_gateway(self, controller, gateway, plans):
        plans.set_plan("u1", PlanStatus.EXPIRED)
        with pytest.raises(InvalidState):
            await controller.create_channel("u1")
        assert gateway.count("create_channel") == 0

    @pytest.mark.asyncio
    async def test_existing_channel_needs_force(self, controller, gateway, store):
        await unauthorized_channel(store, "u1")
        with pytest.raises(AlreadyExists):
            await controller.create_channel("u1")
        assert gateway.count("create_channel") == 0

    @pytest.mark.asyncio
    async def test_force_replaces_and_deletes_previous(self, controller, gateway, store):
        await connected_channel(store, "u1")
        await store.replace_groups("u1", [Group(user_id="u1", group_id="a@g.us")])
        gateway.script("create_channel", ok(ChannelInfo(id="ZYXWVU-TSRQP", token="tok-2")))

        channel = await controller.create_channel("u1", force=True)

        assert channel.channel_id == "ZYXWVU-TSRQP"
        assert ("delete_channel", VALID_CHANNEL_ID) in gateway.calls
        assert await store.list_groups("u1") == []

    @pytest.mark.asyncio
    async def test_force_over_malformed_id_warns_about_orphan(self, controller, gateway, store, caplog):
        await unauthorized_channel(store, "u1", channel_id="reecher-u1-abc")
        gateway.script("create_channel", ok(ChannelInfo(id="ZYXWVU-TSRQP", token="tok-2")))

        with caplog.at_level(logging.WARNING, logger="reecher.controller"):
            channel = await controller.create_channel("u1", force=True)

        assert channel.channel_id == "ZYXWVU-TSRQP"
        assert gateway.count("delete_channel") == 0
        assert any("reecher-u1-abc" in r.getMessage() and "manual cleanup" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_concurrent_creates_call_gateway_once(self, controller, gateway):
        results = await asyncio.gather(
            controller.create_channel("u1"),
            controller.create_channel("u1"),
            return_exceptions=True,
        )
        assert sum(1 for r in results if not isinstance(r, Exception)) == 1
        assert sum(1 for r in results if isinstance(r, AlreadyExists)) == 1
        assert gateway.count("create_channel") == 1

    @pytest.mark.asyncio
    async def test_display_name_stored_when_no_canonical_id(self, controller, gateway):
        gateway.script("create_channel", ok(ChannelInfo(id="", token=TOKEN, name="reecher-u1-abc")))
        channel = await controller.create_channel("u1")
        assert channel.channel_id == "reecher-u1-abc"
        assert not channel.identifier_valid


# ------------------------------------------------------------------
# Readiness polling
# ------------------------------------------------------------------

class TestWaitUntilReady:
    @pytest.mark.asyncio
    async def test_polls_with_backoff_until_unauthorized(self, controller, gateway, store, sleep):
        await controller.create_channel("u1")
        gateway.script(
            "get_status",
            health(GatewayStatus.INITIALIZING),
            health(GatewayStatus.INITIALIZING),
            health(GatewayStatus.UNAUTHORIZED),
        )
        outcome = await controller.wait_until_ready("u1")
        assert outcome == ReadyOutcome.READY
        assert sleep.delays == [2.0, 3.0]
        assert (await store.get_channel("u1")).status == ChannelStatus.UNAUTHORIZED

    @pytest.mark.asyncio
    async def test_times_out_after_max_attempts(self, controller, gateway, store, sleep):
        await controller.create_channel("u1")
        gateway.script("get_status", *[health(GatewayStatus.INITIALIZING)] * 5)
        outcome = await controller.wait_until_ready("u1")
        assert outcome == ReadyOutcome.TIMED_OUT
        assert gateway.count("get_status") == 5
        assert len(sleep.delays) == 4
        assert sleep.delays == sorted(sleep.delays)
        assert (await store.get_channel("u1")).status == ChannelStatus.INITIALIZING

    @pytest.mark.asyncio
    async def test_transient_errors_keep_polling(self, controller, gateway):
        await controller.create_channel("u1")
        gateway.script(
            "get_status",
            fail(GatewayErrorKind.RATE_LIMITED, 429),
            health(GatewayStatus.UNAUTHORIZED),
        )
        assert await controller.wait_until_ready("u1") == ReadyOutcome.READY

    @pytest.mark.asyncio
    async def test_rejected_token_fails(self, controller, gateway):
        await controller.create_channel("u1")
        gateway.script("get_status", fail(GatewayErrorKind.UNAUTHORIZED, 401))
        assert await controller.wait_until_ready("u1") == ReadyOutcome.FAILED

    @pytest.mark.asyncio
    async def test_already_connected_counts_as_ready(self, controller, gateway, store):
        await controller.create_channel("u1")
        gateway.script("get_status", health(GatewayStatus.CONNECTED, phone="972501234567"))
        assert await controller.wait_until_ready("u1") == ReadyOutcome.READY
        channel = await store.get_channel("u1")
        assert channel.status == ChannelStatus.CONNECTED
        assert channel.phone_number == "972501234567"


# ------------------------------------------------------------------
# Login
# ------------------------------------------------------------------

class TestQrLogin:
    @pytest.mark.asyncio
    async def test_qr_moves_to_displayed(self, controller, store):
        await unauthorized_channel(store, "u1")
        response = await controller.get_qr("u1")
        assert response.status == ChannelStatus.QR_DISPLAYED
        assert response.qr_code.startswith("data:image/png;base64,")
        channel = await store.get_channel("u1")
        assert channel.status == ChannelStatus.QR_DISPLAYED
        assert channel.login_method == LoginMethod.QR

    @pytest.mark.asyncio
    async def test_refreshing_qr_stays_displayed(self, controller, store):
        await unauthorized_channel(store, "u1")
        await controller.get_qr("u1")
        response = await controller.get_qr("u1")
        assert response.status == ChannelStatus.QR_DISPLAYED

    @pytest.mark.asyncio
    async def test_already_authenticated_marks_connected(self, controller, gateway, store):
        await unauthorized_channel(store, "u1")
        gateway.script("get_qr", ok(QrPayload(already_authenticated=True)))
        response = await controller.get_qr("u1")
        assert response.already_connected
        assert (await store.get_channel("u1")).status == ChannelStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_connected_channel_skips_gateway(self, controller, gateway, store):
        await connected_channel(store, "u1")
        response = await controller.get_qr("u1")
        assert response.already_connected
        assert gateway.count("get_qr") == 0

    @pytest.mark.asyncio
    async def test_missing_channel(self, controller):
        with pytest.raises(ChannelMissing):
            await controller.get_qr("u1")

    @pytest.mark.asyncio
    async def test_provisioning_channel_checks_health_first(self, controller, store):
        await controller.create_channel("u1")
        response = await controller.get_qr("u1")
        assert response.status == ChannelStatus.QR_DISPLAYED

    @pytest.mark.asyncio
    async def test_channel_gone_upstream_is_cleared(self, controller, gateway, store):
        await unauthorized_channel(store, "u1")
        gateway.script("get_qr", fail(GatewayErrorKind.NOT_FOUND, 404))
        with pytest.raises(NotFoundUpstream):
            await controller.get_qr("u1")
        channel = await store.get_channel("u1")
        assert channel.status == ChannelStatus.DISCONNECTED
        assert channel.secret_token is None


class TestPhoneLogin:
    @pytest.mark.asyncio
    async def test_pairing_code_returned(self, controller, gateway, store):
        await unauthorized_channel(store, "u1")
        response = await controller.login_with_phone("u1", "+972 50-123-4567")
        assert response.code_required
        assert response.pairing_code == "ABCD-EFGH"
        assert ("login_with_phone", TOKEN, "972501234567") in gateway.calls
        channel = await store.get_channel("u1")
        assert channel.status == ChannelStatus.QR_DISPLAYED
        assert channel.login_method == LoginMethod.PHONE_CODE
        assert channel.phone_number == "972501234567"

    @pytest.mark.asyncio
    async def test_invalid_phone_rejected_before_gateway(self, controller, gateway, store):
        await unauthorized_channel(store, "u1")
        with pytest.raises(InvalidPhone):
            await controller.login_with_phone("u1", "12-34")
        assert gateway.count("login_with_phone") == 0

    @pytest.mark.asyncio
    async def test_authenticated_answer_connects(self, controller, gateway, store):
        await unauthorized_channel(store, "u1")
        gateway.script("login_with_phone", ok(PhoneLoginInfo(authenticated=True)))
        response = await controller.login_with_phone("u1", "972501234567")
        assert response.status == ChannelStatus.CONNECTED
        assert (await store.get_channel("u1")).phone_number == "972501234567"


# ------------------------------------------------------------------
# Status reconciliation
# ------------------------------------------------------------------

class TestCheckStatus:
    @pytest.mark.asyncio
    async def test_scan_completes_login(self, controller, gateway, store):
        await unauthorized_channel(store, "u1")
        await controller.get_qr("u1")
        gateway.script("get_status", health(GatewayStatus.CONNECTED, phone="972501234567"))
        channel = await controller.check_status("u1")
        assert channel.status == ChannelStatus.CONNECTED
        assert channel.phone_number == "972501234567"
        assert gateway.count("configure_webhook") == 0

    @pytest.mark.asyncio
    async def test_webhook_configured_on_connect(self, store, gateway, plans, sleep):
        controller = ChannelController(
            store, gateway, plans, sleep=sleep, webhook_url="https://api.example.com/hook", poll_in_background=False
        )
        await unauthorized_channel(store, "u1")
        gateway.script("get_status", health(GatewayStatus.CONNECTED))
        await controller.check_status("u1")
        assert ("configure_webhook", TOKEN, "https://api.example.com/hook") in gateway.calls

    @pytest.mark.asyncio
    async def test_no_write_when_unchanged(self, controller, store):
        before = await unauthorized_channel(store, "u1")
        after = await controller.check_status("u1")
        assert after.status == ChannelStatus.UNAUTHORIZED
        assert after.updated_at == before.updated_at

    @pytest.mark.asyncio
    async def test_logout_upstream_drops_groups_and_cancels_sync(self, controller, gateway, store):
        await connected_channel(store, "u1")
        await store.replace_groups("u1", [Group(user_id="u1", group_id="a@g.us")])
        await store.start_progress("u1", SyncPhase.COLLECTION)
        gateway.script("get_status", health(GatewayStatus.UNAUTHORIZED))

        channel = await controller.check_status("u1")

        assert channel.status == ChannelStatus.UNAUTHORIZED
        assert await store.list_groups("u1") == []
        assert (await store.get_progress("u1")).cancel_requested

    @pytest.mark.asyncio
    async def test_channel_gone_is_cleared(self, controller, gateway, store):
        await connected_channel(store, "u1")
        gateway.script("get_status", fail(GatewayErrorKind.NOT_FOUND, 404))
        channel = await controller.check_status("u1")
        assert channel.status == ChannelStatus.DISCONNECTED
        assert channel.channel_id is None

    @pytest.mark.asyncio
    async def test_rejected_token_surfaces_auth_invalid(self, controller, gateway, store):
        await connected_channel(store, "u1")
        gateway.script("get_status", fail(GatewayErrorKind.UNAUTHORIZED, 401))
        with pytest.raises(AuthInvalid) as exc_info:
            await controller.check_status("u1")
        assert exc_info.value.hint == "Token invalid, recreate channel"
        assert (await store.get_channel("u1")).status == ChannelStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_no_token_no_gateway_call(self, controller, gateway):
        channel = await controller.check_status("u1")
        assert channel.status == ChannelStatus.NONE
        assert gateway.count("get_status") == 0


# ------------------------------------------------------------------
# Teardown
# ------------------------------------------------------------------

class TestTeardown:
    @pytest.mark.asyncio
    async def test_hard_disconnect_keeps_token(self, controller, gateway, store):
        await connected_channel(store, "u1")
        await store.replace_groups("u1", [Group(user_id="u1", group_id="a@g.us")])
        channel = await controller.hard_disconnect("u1")
        assert channel.status == ChannelStatus.UNAUTHORIZED
        assert channel.secret_token == TOKEN
        assert channel.login_method is None
        assert gateway.count("logout") == 1
        assert await store.list_groups("u1") == []

    @pytest.mark.asyncio
    async def test_hard_disconnect_tolerates_logout_failure(self, controller, gateway, store):
        await connected_channel(store, "u1")
        gateway.script("logout", fail(GatewayErrorKind.UNKNOWN, 400))
        channel = await controller.hard_disconnect("u1")
        assert channel.status == ChannelStatus.UNAUTHORIZED

    @pytest.mark.asyncio
    async def test_delete_clears_to_none(self, controller, gateway, store):
        await connected_channel(store, "u1")
        channel = await controller.delete_channel("u1")
        assert channel.status == ChannelStatus.NONE
        assert channel.channel_id is None
        assert channel.secret_token is None
        assert ("delete_channel", VALID_CHANNEL_ID) in gateway.calls

    @pytest.mark.asyncio
    async def test_delete_tolerates_upstream_404(self, controller, gateway, store):
        await connected_channel(store, "u1")
        gateway.script("delete_channel", fail(GatewayErrorKind.NOT_FOUND, 404))
        channel = await controller.delete_channel("u1")
        assert channel.status == ChannelStatus.NONE

    @pytest.mark.asyncio
    async def test_delete_refuses_malformed_identifier(self, controller, gateway, store):
        await unauthorized_channel(store, "u1", channel_id="reecher-u1-abc")
        with pytest.raises(MalformedIdentifier):
            await controller.delete_channel("u1")
        assert gateway.count("delete_channel") == 0


# ------------------------------------------------------------------
# Repair, recovery, live mode
# ------------------------------------------------------------------

class TestRepairAndRecovery:
    @pytest.mark.asyncio
    async def test_repair_by_display_name(self, controller, gateway, store):
        await unauthorized_channel(store, "u1", channel_id="reecher-u1-abc")
        gateway.script("list_channels", ok([
            ChannelInfo(id="QWERTY-UIOPA", token=None, name="someone-else"),
            ChannelInfo(id=VALID_CHANNEL_ID, token=None, name="reecher-u1-abc"),
        ]))
        response = await controller.repair_identifier("u1")
        assert response.repaired
        assert response.channel_id == VALID_CHANNEL_ID
        assert response.previous_id == "reecher-u1-abc"
        assert not response.upgraded_to_live
        assert (await store.get_channel("u1")).channel_id == VALID_CHANNEL_ID

    @pytest.mark.asyncio
    async def test_repair_upgrades_paid_users(self, controller, gateway, store, plans):
        plans.set_plan("u1", PlanStatus.PAID)
        await unauthorized_channel(store, "u1", channel_id="reecher-u1-abc")
        gateway.script("list_channels", ok([ChannelInfo(id=VALID_CHANNEL_ID, token=None, name="reecher-u1-abc")]))
        response = await controller.repair_identifier("u1")
        assert response.upgraded_to_live
        assert (await store.get_channel("u1")).mode == ChannelMode.LIVE

    @pytest.mark.asyncio
    async def test_repair_without_match_fails(self, controller, store):
        await unauthorized_channel(store, "u1", channel_id="reecher-u1-abc")
        with pytest.raises(RepairFailed):
            await controller.repair_identifier("u1")
        assert (await store.get_channel("u1")).channel_id == "reecher-u1-abc"

    @pytest.mark.asyncio
    async def test_valid_identifier_needs_no_repair(self, controller, gateway, store):
        await unauthorized_channel(store, "u1")
        response = await controller.repair_identifier("u1")
        assert not response.repaired
        assert gateway.count("list_channels") == 0

    @pytest.mark.asyncio
    async def test_recover_healthy_channel(self, controller, store):
        await unauthorized_channel(store, "u1")
        report = await controller.recover_or_recreate("u1")
        assert report.success
        assert [s.step for s in report.steps] == ["check_status", "repair_identifier"]

    @pytest.mark.asyncio
    async def test_recover_force_new_recreates(self, controller, gateway, store):
        await unauthorized_channel(store, "u1")
        gateway.script("create_channel", ok(ChannelInfo(id="ZYXWVU-TSRQP", token="tok-2")))
        report = await controller.recover_or_recreate("u1", force_new=True)
        assert report.success
        assert report.status == ChannelStatus.CREATED
        assert [s.step for s in report.steps][-3:] == ["delete_upstream", "clear_local", "create_channel"]
        assert (await store.get_channel("u1")).channel_id == "ZYXWVU-TSRQP"

    @pytest.mark.asyncio
    async def test_recover_failed_repair_reports_hint(self, controller, store):
        await unauthorized_channel(store, "u1", channel_id="reecher-u1-abc")
        report = await controller.recover_or_recreate("u1")
        assert not report.success
        assert report.hint is not None


class TestLiveMode:
    @pytest.mark.asyncio
    async def test_trial_user_not_eligible(self, controller, store):
        await connected_channel(store, "u1")
        assert not await controller.is_live_eligible("u1")
        with pytest.raises(InvalidState):
            await controller.upgrade_to_live("u1")

    @pytest.mark.asyncio
    async def test_paid_user_upgrades(self, controller, gateway, store, plans):
        plans.set_plan("u1", PlanStatus.PAID)
        await connected_channel(store, "u1")
        assert await controller.is_live_eligible("u1")
        channel = await controller.upgrade_to_live("u1")
        assert channel.mode == ChannelMode.LIVE
        assert ("set_channel_mode", VALID_CHANNEL_ID, ChannelMode.LIVE) in gateway.calls

    @pytest.mark.asyncio
    async def test_malformed_identifier_not_eligible(self, controller, store, plans):
        plans.set_plan("u1", PlanStatus.PAID)
        await unauthorized_channel(store, "u1", channel_id="reecher-u1-abc")
        assert not await controller.is_live_eligible("u1")


# ------------------------------------------------------------------
# Full lifecycle over HTTP
# ------------------------------------------------------------------

class _ScriptedWhapi:
    """httpx.MockTransport handler answering by path; /health replies are queued."""

    def __init__(self, *health_bodies):
        self.health_bodies = list(health_bodies)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.host, request.url.path))
        if request.url.path == "/channels" and request.method == "PUT":
            return httpx.Response(200, json={"id": VALID_CHANNEL_ID, "token": TOKEN, "name": "reecher-u1"})
        if request.url.path == "/health":
            return httpx.Response(200, json=self.health_bodies.pop(0))
        if request.url.path == "/users/login":
            return httpx.Response(200, json={"status": "OK", "base64": "iVBORw0KGgo="})
        return httpx.Response(404, json={"error": "unexpected"})


class TestLifecycleScenario:
    @pytest.mark.asyncio
    async def test_create_to_connected_through_raw_gateway_statuses(self, store, plans, sleep):
        whapi = _ScriptedWhapi(
            {"status": {"code": 1, "text": "LOADING"}},
            {"status": {"code": 1, "text": "LOADING"}},
            {"status": {"code": 2, "text": "LAUNCHED"}},
            {"status": {"code": 4, "text": "AUTH"}, "user": {"id": "972501234567", "name": "Dana"}},
        )
        gateway = GatewayClient(
            gate_url="https://gate.test",
            manager_url="https://manager.test",
            partner_token="partner-secret",
            project_id="proj-1",
            transport=httpx.MockTransport(whapi),
        )
        controller = ChannelController(
            store, gateway, plans, sleep=sleep, ready_max_attempts=5, webhook_url="", poll_in_background=False
        )

        channel = await controller.create_channel("u1")
        assert channel.status == ChannelStatus.CREATED

        assert await controller.wait_until_ready("u1") == ReadyOutcome.READY
        assert (await store.get_channel("u1")).status == ChannelStatus.UNAUTHORIZED
        assert sleep.delays == [2.0, 3.0]

        qr = await controller.get_qr("u1")
        assert qr.status == ChannelStatus.QR_DISPLAYED
        assert qr.qr_code == "data:image/png;base64,iVBORw0KGgo="
        assert (await store.get_channel("u1")).status == ChannelStatus.QR_DISPLAYED

        channel = await controller.check_status("u1")
        assert channel.status == ChannelStatus.CONNECTED
        assert channel.phone_number == "972501234567"

        assert [path for _, _, path in whapi.requests] == [
            "/channels", "/health", "/health", "/health", "/users/login", "/health",
        ]
        assert whapi.requests[0][1] == "manager.test"
        await gateway.close()
