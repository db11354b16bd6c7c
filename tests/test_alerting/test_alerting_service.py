"""
Tests for the Alerting Service.

Covers:
- Create: channel derivation, in-app notifications, delivery results
- Deduplication inside the window, release after the window
- Per-channel fault isolation and webhook delivery
- Alert row committed before fan-out
- Preset alerts keyed per target so fan-out to several audiences is not deduplicated
- Escalation chain ADMIN → SUPER_ADMIN → all admins, capped
- Read / actioned management, unread counts and stats
"""

import uuid

import httpx
import pytest
from sqlalchemy import select

from conftest import add_rows, make_employee, make_user
from trustgate.alerting.channels import ChannelRouter, WebhookDispatcher
from trustgate.alerting.presets import SecurityAlerts
from trustgate.alerting.schemas import (
    AlertCategory,
    AlertChannel,
    AlertFilters,
    AlertPriority,
    AlertRequest,
    AlertStatus,
    TargetType,
)
from trustgate.alerting.service import AlertingService, escalation_target
from trustgate.db.models import AlertRecordModel, AlertWebhook, Notification
from trustgate.errors import NotFoundError, ValidationError
from trustgate.services.resilience import CircuitBreaker


class ExplodingDispatcher:
    async def dispatch(self, alert, recipients, session_factory):
        raise ConnectionError("push gateway down")


class StatusPeekingDispatcher:
    """Reads the alert row from its own session, then fails."""

    def __init__(self):
        self.seen_status = None

    async def dispatch(self, alert, recipients, session_factory):
        async with session_factory() as session:
            row = await session.get(AlertRecordModel, alert.id)
            self.seen_status = row.status if row is not None else None
        raise RuntimeError("notification store full")


@pytest.fixture
def service(session_factory, clock):
    return AlertingService(session_factory, clock=clock)


def _user_request(user_id, **overrides) -> AlertRequest:
    values = {
        "category": AlertCategory.SECURITY,
        "priority": AlertPriority.MEDIUM,
        "title": "New device signed in",
        "message": "Your account was accessed from a new device.",
        "target_type": TargetType.USER,
        "target_id": str(user_id),
        "source": "device_registry",
        "source_id": "device-1",
    }
    values.update(overrides)
    return AlertRequest(**values)


def _role_request(**overrides) -> AlertRequest:
    values = {
        "category": AlertCategory.FRAUD,
        "priority": AlertPriority.HIGH,
        "title": "Fraud detected",
        "message": "Score 72 on tx-1",
        "target_type": TargetType.ROLE,
        "target_role": "FRAUD_ANALYST",
        "source": "fraud_service",
        "source_id": "tx-1",
    }
    values.update(overrides)
    return AlertRequest(**values)


class TestCreate:
    @pytest.mark.asyncio
    async def test_user_alert(self, service, session_factory):
        user = await make_user(session_factory)
        alert = await service.create_alert(_user_request(user.id))

        assert alert.status == AlertStatus.SENT
        assert alert.channels == [AlertChannel.IN_APP, AlertChannel.PUSH]
        assert alert.escalate_after_minutes == 240
        assert alert.delivery["IN_APP"]["success"] is True
        # No push token on file
        assert alert.delivery["PUSH"]["success"] is False

        async with session_factory() as session:
            rows = (await session.execute(select(Notification))).scalars().all()
        assert [(r.recipient_type, r.recipient_id) for r in rows] == [("user", user.id)]

    @pytest.mark.asyncio
    async def test_role_alert_reaches_every_holder(self, service, session_factory):
        await make_employee(session_factory, role="FRAUD_ANALYST")
        await make_employee(session_factory, role="FRAUD_ANALYST")
        await make_employee(session_factory, role="ANALYST")
        await service.create_alert(_role_request())

        async with session_factory() as session:
            rows = (await session.execute(select(Notification))).scalars().all()
        assert len(rows) == 2

    @pytest.mark.asyncio
    async def test_target_validation(self, service):
        with pytest.raises(ValidationError):
            await service.create_alert(_user_request(None, target_id=None))
        with pytest.raises(ValidationError):
            await service.create_alert(_user_request("not-a-uuid"))
        with pytest.raises(ValidationError):
            await service.create_alert(_role_request(target_role=None))

    @pytest.mark.asyncio
    async def test_dedup_window(self, service, session_factory, clock):
        user = await make_user(session_factory)
        assert await service.create_alert(_user_request(user.id)) is not None
        assert await service.create_alert(_user_request(user.id)) is None
        assert await service.create_alert(_user_request(user.id, source_id="device-2")) is not None

        clock.advance(minutes=6)
        assert await service.create_alert(_user_request(user.id)) is not None

    @pytest.mark.asyncio
    async def test_failing_channel_is_isolated(self, session_factory, clock):
        router = ChannelRouter(dispatchers={AlertChannel.PUSH: ExplodingDispatcher()})
        service = AlertingService(session_factory, router=router, clock=clock)
        user = await make_user(session_factory)

        alert = await service.create_alert(_user_request(user.id))
        assert alert.status == AlertStatus.SENT
        assert alert.delivery["PUSH"] == {"success": False, "detail": "push gateway down"}
        assert alert.delivery["IN_APP"]["success"] is True

    @pytest.mark.asyncio
    async def test_alert_committed_before_fan_out(self, session_factory, clock):
        peeking = StatusPeekingDispatcher()
        router = ChannelRouter(dispatchers={AlertChannel.IN_APP: peeking})
        service = AlertingService(session_factory, router=router, clock=clock)
        user = await make_user(session_factory)

        alert = await service.create_alert(_user_request(user.id, channels=[AlertChannel.IN_APP]))
        assert peeking.seen_status == AlertStatus.PENDING.value
        assert alert.status == AlertStatus.SENT
        assert alert.delivery["IN_APP"] == {"success": False, "detail": "notification store full"}

        stored = await service.get_alert(alert.id)
        assert stored.status == AlertStatus.SENT
        assert stored.delivery["IN_APP"]["success"] is False

    @pytest.mark.asyncio
    async def test_webhook_delivery(self, session_factory, clock):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.host)
            return httpx.Response(202)

        webhook = WebhookDispatcher(breaker=CircuitBreaker("test_webhook"), transport=httpx.MockTransport(handler))
        service = AlertingService(
            session_factory, router=ChannelRouter(dispatchers={AlertChannel.WEBHOOK: webhook}), clock=clock,
        )
        await add_rows(
            session_factory,
            AlertWebhook(url="https://hooks.example.com/fraud", categories=["FRAUD"]),
            AlertWebhook(url="http://10.0.0.8/internal", categories=["FRAUD"]),
            AlertWebhook(url="https://hooks.example.com/system", categories=["SYSTEM"]),
        )

        alert = await service.create_alert(_role_request(channels=[AlertChannel.WEBHOOK]))
        assert seen == ["hooks.example.com"]
        assert alert.delivery["WEBHOOK"]["success"] is True
        assert alert.delivery["WEBHOOK"]["detail"].startswith("1/2 webhooks accepted")

    @pytest.mark.asyncio
    async def test_preset(self, service, session_factory):
        user = await make_user(session_factory)
        alerts = SecurityAlerts(service)
        record = await alerts.new_device(user.id, "dev-1", "iPhone 15", "190.1.2.3")
        assert record.category == AlertCategory.SECURITY
        assert record.data["device_name"] == "iPhone 15"


class TestEscalation:
    def test_targets_by_level(self):
        assert escalation_target(1) == (TargetType.ROLE, "ADMIN")
        assert escalation_target(2) == (TargetType.ROLE, "SUPER_ADMIN")
        assert escalation_target(3) == (TargetType.ALL_ADMINS, None)

    @pytest.mark.asyncio
    async def test_chain_until_cap(self, service, clock):
        root = await service.create_alert(_role_request())

        assert await service.process_escalations() == 0

        clock.advance(minutes=61)
        assert await service.process_escalations() == 1
        # Already escalated alerts are skipped on the next sweep
        assert await service.process_escalations() == 0

        [level1] = await service.get_alerts(AlertFilters(target_type=TargetType.ROLE, since=clock()))
        assert level1.parent_alert_id == root.id
        assert level1.escalation_level == 1
        assert level1.target_role == "ADMIN"
        assert level1.title.startswith("ESCALATED (level 1)")
        assert level1.data["original_alert_id"] == str(root.id)

        clock.advance(minutes=61)
        assert await service.process_escalations() == 1
        clock.advance(minutes=61)
        assert await service.process_escalations() == 1
        clock.advance(minutes=61)
        assert await service.process_escalations() == 0

        chain = await service.get_alerts(AlertFilters(limit=10))
        assert sorted(a.escalation_level for a in chain) == [0, 1, 2, 3]
        assert {a.target_type for a in chain if a.escalation_level == 3} == {TargetType.ALL_ADMINS}

        # Original is untouched
        original = await service.get_alert(root.id)
        assert original.status == AlertStatus.SENT
        assert original.escalation_level == 0

    @pytest.mark.asyncio
    async def test_read_alert_is_not_escalated(self, service, clock):
        root = await service.create_alert(_role_request())
        await service.mark_read(root.id, actor_id="analyst-1")
        clock.advance(minutes=61)
        assert await service.process_escalations() == 0

    @pytest.mark.asyncio
    async def test_escalate_missing_alert(self, service):
        with pytest.raises(NotFoundError):
            await service.escalate_alert(uuid.uuid4())


class TestManagement:
    @pytest.mark.asyncio
    async def test_read_then_actioned(self, service, session_factory):
        user = await make_user(session_factory)
        alert = await service.create_alert(_user_request(user.id))
        assert await service.get_unread_count(TargetType.USER, str(user.id)) == 1

        read = await service.mark_read(alert.id, actor_id=str(user.id))
        assert read.status == AlertStatus.READ
        assert await service.get_unread_count(TargetType.USER, str(user.id)) == 0

        with pytest.raises(ValidationError):
            await service.mark_actioned(alert.id, actor_id="analyst-1", action="")

        actioned = await service.mark_actioned(alert.id, actor_id="analyst-1", action="Device confirmed")
        assert actioned.status == AlertStatus.ACTIONED
        assert actioned.read_at == read.read_at

        # Reading again never downgrades ACTIONED
        again = await service.mark_read(alert.id, actor_id="analyst-2")
        assert again.status == AlertStatus.ACTIONED

    @pytest.mark.asyncio
    async def test_stats(self, service, session_factory):
        user = await make_user(session_factory)
        await service.create_alert(_user_request(user.id))
        await service.create_alert(_role_request())

        stats = await service.get_alert_stats("day")
        assert stats["total"] == 2
        assert stats["by_category"] == {"SECURITY": 1, "FRAUD": 1}
        assert stats["by_status"] == {"SENT": 2}

        with pytest.raises(ValidationError):
            await service.get_alert_stats("decade")


class TestPresetKeys:
    @pytest.mark.asyncio
    async def test_anomaly_reaches_role_supervisor_and_admins(self, service, session_factory):
        await make_employee(session_factory, role="SECURITY")
        await make_employee(session_factory, role="ADMIN")
        employee = await make_employee(session_factory)
        supervisor = await make_employee(session_factory, role="SUPERVISOR")
        alerts = SecurityAlerts(service)
        anomaly_id = uuid.uuid4()
        args = (employee.id, anomaly_id, "UNUSUAL_APPROVAL_PATTERN", "CRITICAL", "6 approvals in 1h")

        role_alert = await alerts.employee_anomaly(*args)
        supervisor_alert = await alerts.employee_anomaly(
            *args, target_type=TargetType.EMPLOYEE, target_id=str(supervisor.id),
        )
        admin_alert = await alerts.employee_anomaly(*args, target_type=TargetType.ALL_ADMINS)

        assert role_alert is not None and role_alert.target_role == "SECURITY"
        assert supervisor_alert is not None and supervisor_alert.target_id == str(supervisor.id)
        assert admin_alert is not None and admin_alert.target_type == TargetType.ALL_ADMINS
        # The same audience is still deduplicated
        assert await alerts.employee_anomaly(*args, target_type=TargetType.ALL_ADMINS) is None

    @pytest.mark.asyncio
    async def test_fraud_without_transaction_is_keyed_by_user(self, service, session_factory):
        first = await make_user(session_factory)
        second = await make_user(session_factory)
        alerts = SecurityAlerts(service)

        analyst_first = await alerts.fraud_detected(first.id, None, 85, "CRITICAL", "Blacklisted IP")
        analyst_second = await alerts.fraud_detected(second.id, None, 85, "CRITICAL", "Blacklisted IP")

        assert analyst_first is not None and analyst_first.source_id == str(first.id)
        assert analyst_second is not None and analyst_second.source_id == str(second.id)
        assert analyst_second.target_role == "FRAUD_ANALYST"
        assert await alerts.fraud_detected(first.id, None, 85, "CRITICAL", "Blacklisted IP") is None

    @pytest.mark.asyncio
    async def test_trigger_on_running_switch_reaches_admins(self, service, session_factory):
        await make_employee(session_factory, role="ADMIN")
        alerts = SecurityAlerts(service)
        switch_id = str(uuid.uuid4())

        alert = await alerts.kill_switch_trigger_fired("ERROR_RATE_EXCEEDED", "Error rate 12.00%", switch_id, "ops-1")

        assert alert is not None
        assert alert.priority == AlertPriority.EMERGENCY
        assert alert.target_type == TargetType.ALL_ADMINS
        assert alert.data["switch_id"] == switch_id
        assert "ops-1" in alert.message
        assert await alerts.kill_switch_trigger_fired(
            "ERROR_RATE_EXCEEDED", "Error rate 13.00%", switch_id, "ops-1",
        ) is None
