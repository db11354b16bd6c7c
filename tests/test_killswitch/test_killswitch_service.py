"""
Tests for the Kill Switch service.

Covers:
- Activate / deactivate with audit trail and idempotency
- Operation checks across axes and user segments
- Maintenance mode and expiry cleanup
- Auto-triggers with per-reason deduplication
- Compare-and-replace retries and fail-closed reads
"""

from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from conftest import NOW, make_transaction, make_user
from trustgate.db.models import AuditLog
from trustgate.errors import ConflictError, ValidationError
from trustgate.killswitch.repository import KillSwitchRepository, StaleVersionError
from trustgate.killswitch.schemas import KillSwitchScope
from trustgate.killswitch.service import ERROR_RATE_EXCEEDED, KillSwitchService


class RecordingAlerts:
    def __init__(self):
        self.calls = []
        self.triggers = []

    async def kill_switch_activated(self, *args):
        self.calls.append(args)

    async def kill_switch_trigger_fired(self, *args):
        self.triggers.append(args)


class FlakyRepository(KillSwitchRepository):
    """Loses the first `conflicts` writes and can be told to fail reads."""

    def __init__(self, session_factory, conflicts: int = 0):
        super().__init__(session_factory)
        self.conflicts = conflicts
        self.fail_loads = False

    async def load(self):
        if self.fail_loads:
            raise ConnectionError("settings store unreachable")
        return await super().load()

    async def replace(self, state, expected_version, actor, now):
        if expected_version > 0 and self.conflicts > 0:
            self.conflicts -= 1
            raise StaleVersionError(self.key, expected_version)
        return await super().replace(state, expected_version, actor, now)


@pytest.fixture
def alerts():
    return RecordingAlerts()


@pytest.fixture
def service(session_factory, clock, alerts):
    return KillSwitchService(session_factory, alerts=alerts, clock=clock)


async def _audit_actions(session_factory) -> list[str]:
    async with session_factory() as session:
        rows = (await session.execute(select(AuditLog).order_by(AuditLog.created_at))).scalars().all()
    return [r.action for r in rows]


class TestManualControl:
    @pytest.mark.asyncio
    async def test_defaults_allow_everything(self, service, session_factory):
        user = await make_user(session_factory)
        decision = await service.check_operation_allowed(user.id, "transfers", "AR", "outgoing")
        assert decision.allowed is True

        state = await service.get_state()
        assert state.version == 1
        assert state.auto_triggers.enabled is True

    @pytest.mark.asyncio
    async def test_activate_and_deactivate_product(self, service, session_factory, alerts):
        user = await make_user(session_factory)
        state = await service.activate("PRODUCT", "Crypto", "Exchange outage", activated_by="ops-1")
        assert state.products["crypto"] is True
        assert len(state.active_kill_switches) == 1
        assert alerts.calls[0][1:] == ("PRODUCT", "crypto", "Exchange outage", "ops-1")

        decision = await service.check_operation_allowed(user.id, "crypto")
        assert decision.allowed is False
        assert decision.reason_code == "PRODUCT_CRYPTO"
        assert (await service.check_operation_allowed(user.id, "cards")).allowed is True

        state = await service.deactivate(KillSwitchScope.PRODUCT, "crypto", "Recovered", deactivated_by="ops-1")
        assert state.products["crypto"] is False
        assert state.active_kill_switches == ()
        assert (await service.check_operation_allowed(user.id, "crypto")).allowed is True
        assert await _audit_actions(session_factory) == ["KILL_SWITCH_ACTIVATED", "KILL_SWITCH_DEACTIVATED"]

    @pytest.mark.asyncio
    async def test_activate_is_idempotent(self, service, session_factory, alerts):
        first = await service.activate("REGION", "BR", "Regulator request", activated_by="ops-1")
        second = await service.activate("REGION", "br", "Regulator request", activated_by="ops-2")
        assert second.version == first.version
        assert len(alerts.calls) == 1
        assert await _audit_actions(session_factory) == ["KILL_SWITCH_ACTIVATED"]

        await service.deactivate("REGION", "BR", "done", deactivated_by="ops-1")
        again = await service.deactivate("REGION", "BR", "done", deactivated_by="ops-1")
        assert again.regions["BR"] is False
        assert (await _audit_actions(session_factory)).count("KILL_SWITCH_DEACTIVATED") == 1

    @pytest.mark.asyncio
    async def test_deactivate_leaves_other_axes(self, service):
        await service.activate("PRODUCT", "cards", "Issuer outage", activated_by="ops-1")
        await service.activate("TRANSACTION_TYPE", "international", "Correspondent down", activated_by="ops-1")
        state = await service.deactivate("PRODUCT", "cards", "Recovered", deactivated_by="ops-1")
        assert state.transaction_types["international"] is True
        assert [ks.target for ks in state.active_kill_switches] == ["international"]

    @pytest.mark.asyncio
    async def test_validation(self, service):
        with pytest.raises(ValidationError):
            await service.activate("PLANET", "earth", "why", activated_by="ops-1")
        with pytest.raises(ValidationError):
            await service.activate("PRODUCT", "lottery", "why", activated_by="ops-1")
        with pytest.raises(ValidationError):
            await service.activate("PRODUCT", "cards", "", activated_by="ops-1")
        with pytest.raises(ValidationError):
            await service.activate("PRODUCT", "cards", "why", activated_by="ops-1", expires_in_minutes=0)

    @pytest.mark.asyncio
    async def test_segment_uses_account_age(self, service, session_factory):
        newcomer = await make_user(session_factory, created_at=NOW - timedelta(days=5))
        veteran = await make_user(session_factory)
        await service.activate("USER_SEGMENT", "new_users", "Signup fraud wave", activated_by="ops-1")

        decision = await service.check_operation_allowed(newcomer.id, "transfers")
        assert decision.reason_code == "USER_SEGMENT_NEW_USERS"
        assert (await service.check_operation_allowed(veteran.id, "transfers")).allowed is True

    @pytest.mark.asyncio
    async def test_segment_lookup_failure_fails_closed(self, service, session_factory, clock):
        user = await make_user(session_factory)
        await service.activate("USER_SEGMENT", "low_trust", "Mule accounts", activated_by="ops-1")

        def unreachable_store():
            raise OperationalError("SELECT users", {}, ConnectionError("identity store down"))

        reader = KillSwitchService(
            unreachable_store, repository=KillSwitchRepository(session_factory), clock=clock,
        )
        decision = await reader.check_operation_allowed(user.id, "transfers")
        assert decision.allowed is False
        assert decision.reason_code == "KILL_SWITCH_UNAVAILABLE"

        # Axes that need no user lookup still answer normally
        await service.deactivate("USER_SEGMENT", "low_trust", "Resolved", deactivated_by="ops-1")
        reader._cache.invalidate()
        assert (await reader.check_operation_allowed(user.id, "transfers")).allowed is True


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_maintenance_window(self, service, session_factory, clock):
        user = await make_user(session_factory)
        await service.activate_maintenance("ops-1", "DB upgrade", 30, message="Back at 14:30")

        decision = await service.check_operation_allowed(user.id, "transfers")
        assert decision.reason_code == "MAINTENANCE_MODE"
        assert decision.message == "Back at 14:30"

        clock.advance(minutes=31)
        assert await service.cleanup_expired() == 1
        state = await service.get_state()
        assert state.maintenance_mode is False
        assert state.active_kill_switches == ()
        assert (await service.check_operation_allowed(user.id, "transfers")).allowed is True

    @pytest.mark.asyncio
    async def test_invalid_duration(self, service):
        with pytest.raises(ValidationError):
            await service.activate_maintenance("ops-1", "DB upgrade", 0)


class TestAutoTriggers:
    @pytest.mark.asyncio
    async def test_error_rate_trips_outgoing_once(self, service, session_factory, clock):
        user = await make_user(session_factory)
        for i in range(10):
            await make_transaction(
                session_factory, user.id, 1_000, NOW - timedelta(minutes=5),
                status="FAILED" if i < 2 else "COMPLETED",
            )
        await service.update_auto_trigger_config("ops-1", volume_anomaly_multiplier=10_000)

        assert await service.check_auto_triggers() == [ERROR_RATE_EXCEEDED]
        state = await service.get_state()
        [switch] = state.active_kill_switches
        assert switch.auto_activated is True
        assert switch.activated_by == "system_auto_trigger"
        assert switch.reason.startswith("[AUTO] ERROR_RATE_EXCEEDED")
        assert switch.expires_at == NOW + timedelta(minutes=30)

        decision = await service.check_operation_allowed(user.id, "transfers", transaction_type="outgoing")
        assert decision.reason_code == "TX_TYPE_OUTGOING"

        assert await service.check_auto_triggers() == []

        clock.advance(minutes=31)
        assert await service.cleanup_expired() == 1
        assert (await service.check_operation_allowed(user.id, "transfers", transaction_type="outgoing")).allowed

    @pytest.mark.asyncio
    async def test_disabled_triggers(self, service, session_factory):
        user = await make_user(session_factory)
        await make_transaction(session_factory, user.id, 1_000, NOW - timedelta(minutes=5), status="FAILED")
        await service.update_auto_trigger_config("ops-1", enabled=False)
        assert await service.check_auto_triggers() == []

    @pytest.mark.asyncio
    async def test_second_reason_joins_running_switch(self, service, alerts):
        assert await service.auto_activate("FRAUD_RATE_EXCEEDED", "Fraud rate 6.00%") is True
        assert await service.auto_activate(ERROR_RATE_EXCEEDED, "Error rate 12.00%") is True
        assert await service.auto_activate(ERROR_RATE_EXCEEDED, "Error rate 14.00%") is False

        [switch] = (await service.get_state()).active_kill_switches
        assert "FRAUD_RATE_EXCEEDED" in switch.reason
        assert "ERROR_RATE_EXCEEDED" in switch.reason
        assert len(alerts.calls) == 1
        assert [t[0] for t in alerts.triggers] == [ERROR_RATE_EXCEEDED]
        assert alerts.triggers[0][2] == str(switch.id)

    @pytest.mark.asyncio
    async def test_manual_switch_is_left_alone(self, service, alerts):
        await service.activate("TRANSACTION_TYPE", "outgoing", "Manual stop", activated_by="ops-1")
        assert await service.auto_activate(ERROR_RATE_EXCEEDED, "Error rate 12.00%") is False
        [switch] = (await service.get_state()).active_kill_switches
        assert switch.auto_activated is False
        assert len(alerts.calls) == 1
        assert alerts.triggers == [(ERROR_RATE_EXCEEDED, "Error rate 12.00%", str(switch.id), "ops-1")]

    @pytest.mark.asyncio
    async def test_invalid_config(self, service):
        with pytest.raises(ValidationError):
            await service.update_auto_trigger_config("ops-1", fraud_rate_threshold=150)


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_retries_lost_write(self, session_factory, clock):
        repository = FlakyRepository(session_factory, conflicts=1)
        service = KillSwitchService(session_factory, repository=repository, clock=clock)
        await service.get_state()

        state = await service.activate("PRODUCT", "cards", "Issuer outage", activated_by="ops-1")
        assert state.products["cards"] is True
        assert state.version == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self, session_factory, clock):
        repository = FlakyRepository(session_factory, conflicts=5)
        service = KillSwitchService(session_factory, repository=repository, write_attempts=2, clock=clock)
        await service.get_state()

        with pytest.raises(ConflictError):
            await service.activate("PRODUCT", "cards", "Issuer outage", activated_by="ops-1")

    @pytest.mark.asyncio
    async def test_fails_closed_without_state(self, session_factory, clock):
        user = await make_user(session_factory)
        repository = FlakyRepository(session_factory)
        repository.fail_loads = True
        service = KillSwitchService(session_factory, repository=repository, clock=clock)

        decision = await service.check_operation_allowed(user.id, "transfers")
        assert decision.allowed is False
        assert decision.reason_code == "KILL_SWITCH_UNAVAILABLE"

    @pytest.mark.asyncio
    async def test_serves_stale_state_when_store_fails(self, session_factory, clock):
        user = await make_user(session_factory)
        repository = FlakyRepository(session_factory)
        service = KillSwitchService(session_factory, repository=repository, cache_ttl_seconds=0, clock=clock)
        await service.activate("PRODUCT", "cards", "Issuer outage", activated_by="ops-1")

        repository.fail_loads = True
        decision = await service.check_operation_allowed(user.id, "cards")
        assert decision.reason_code == "PRODUCT_CARDS"

    @pytest.mark.asyncio
    async def test_stats(self, service):
        await service.activate("PRODUCT", "cards", "Issuer outage", activated_by="ops-1")
        stats = await service.get_stats()
        assert stats["active_count"] == 1
        assert stats["by_scope"]["PRODUCT"] == 1
        assert stats["modified_by"] == "ops-1"
