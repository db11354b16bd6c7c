"""
Kill Switch service.

Gates operations on five axes (global, product, region, transaction type,
user segment) plus maintenance mode. Reads go through a short TTL cache;
writes load the stored document, derive a new one and compare-and-replace
it, retrying on a concurrent write. The cache is refreshed with whatever
was written.

Auto-triggers watch the trailing hour of traffic and, past a threshold,
stop outgoing transfers for a limited time and page the admins.
"""

from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trustgate.alerting.presets import SecurityAlerts
from trustgate.config import settings
from trustgate.db import queries
from trustgate.db.compat import as_uuid, utcnow
from trustgate.errors import ConflictError, DependencyUnavailableError, PolicyDecision, ValidationError
from trustgate.killswitch.repository import KillSwitchRepository, StaleVersionError
from trustgate.killswitch.rules import (
    UserFacts,
    check_axes,
    check_segment,
    expired_switches,
    find_active,
    is_switch_on,
    normalize_target,
    segments_need_user,
    with_switch,
)
from trustgate.killswitch.schemas import (
    MAINTENANCE_TARGET,
    ActiveKillSwitch,
    AutoTriggerConfig,
    KillSwitchScope,
    KillSwitchState,
    default_state,
)
from trustgate.services.audit import audit_logger
from trustgate.services.cache import TTLCache

logger = structlog.get_logger(__name__)

AUTO_ACTOR = "system_auto_trigger"
CLEANUP_ACTOR = "system_auto_cleanup"
AUTO_TARGET = "outgoing"
TRIGGER_WINDOW = timedelta(hours=1)
VOLUME_BASELINE_WINDOW = timedelta(days=7)
CONFIRMED_FRAUD_TYPES = ("CONFIRMED_FRAUD",)

FRAUD_RATE_EXCEEDED = "FRAUD_RATE_EXCEEDED"
ERROR_RATE_EXCEEDED = "ERROR_RATE_EXCEEDED"
VOLUME_ANOMALY = "VOLUME_ANOMALY"


class KillSwitchService:
    """Check, flip and auto-trigger kill switches."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        alerts: Optional[SecurityAlerts] = None,
        repository: Optional[KillSwitchRepository] = None,
        cache_ttl_seconds: float = settings.killswitch_cache_ttl_seconds,
        auto_duration_minutes: int = settings.killswitch_auto_duration_minutes,
        write_attempts: int = settings.killswitch_write_attempts,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.alerts = alerts
        self.repository = repository or KillSwitchRepository(session_factory)
        self.auto_duration_minutes = auto_duration_minutes
        self.write_attempts = write_attempts
        self._cache: TTLCache[KillSwitchState] = TTLCache(cache_ttl_seconds)
        self._clock = clock

    # ── State ──────────────────────────────────────────────────────────

    async def get_state(self) -> KillSwitchState:
        cached = self._cache.get()
        if cached is not None:
            return cached
        try:
            state = await self._load_or_init()
        except Exception as e:
            stale = self._cache.peek()
            if stale is None:
                raise DependencyUnavailableError("Kill switch state unavailable") from e
            logger.warning("kill_switch_state_stale_fallback", error=str(e))
            return stale
        self._cache.set(state)
        return state

    async def _load_or_init(self) -> KillSwitchState:
        state = await self.repository.load()
        if state is not None:
            return state
        try:
            return await self.repository.replace(default_state(self._clock()), 0, "system", self._clock())
        except StaleVersionError:
            # Initialized concurrently
            return await self.repository.load()

    async def _mutate(
        self, actor: str, change: Callable[[KillSwitchState], Optional[KillSwitchState]],
    ) -> tuple[KillSwitchState, bool]:
        """Apply `change` to the stored document with compare-and-replace.

        `change` returns None when there is nothing to do. Returns the
        current document and whether a write happened.
        """
        for attempt in range(1, self.write_attempts + 1):
            current = await self._load_or_init()
            updated = change(current)
            if updated is None:
                self._cache.set(current)
                return current, False
            now = self._clock()
            updated = updated.model_copy(update={"last_modified": now, "modified_by": actor})
            try:
                stored = await self.repository.replace(updated, current.version, actor, now)
            except StaleVersionError:
                logger.info("kill_switch_write_conflict", attempt=attempt, actor=actor)
                continue
            self._cache.set(stored)
            return stored, True
        raise ConflictError(
            "Kill switch state changed concurrently, retry",
            details={"attempts": self.write_attempts},
        )

    # ── Checks ─────────────────────────────────────────────────────────

    async def check_operation_allowed(
        self,
        user_id,
        product: str,
        region: Optional[str] = None,
        transaction_type: Optional[str] = None,
    ) -> PolicyDecision:
        """Global → maintenance → product → region → transaction type → user segment."""
        user_id = as_uuid(user_id, "user_id")
        try:
            state = await self.get_state()
        except DependencyUnavailableError:
            logger.error("kill_switch_check_failed_closed", user_id=str(user_id), product=product)
            return _unavailable()

        decision = check_axes(state, product, region, transaction_type)
        if decision is None:
            user = None
            if segments_need_user(state):
                try:
                    user = await self._user_facts(user_id)
                except Exception as e:
                    logger.error("kill_switch_user_facts_failed", user_id=str(user_id), error=str(e))
                    return _unavailable()
            decision = check_segment(state, user)

        if decision is None:
            return PolicyDecision.allow()
        logger.info(
            "kill_switch_denied",
            user_id=str(user_id),
            product=product,
            region=region,
            transaction_type=transaction_type,
            reason_code=decision.reason_code,
        )
        return decision

    async def _user_facts(self, user_id) -> Optional[UserFacts]:
        async with self.session_factory() as session:
            user = await queries.get_user(session, user_id)
            if user is None:
                return None
            snapshot = await queries.get_latest_trust_snapshot(session, user_id)
            open_alerts = await queries.count_open_fraud_alerts(session, user_id)
        return UserFacts(
            account_age_days=(self._clock() - user.created_at).total_seconds() / 86400,
            kyc_status=user.kyc_status,
            user_level=user.user_level,
            trust_score=snapshot.score if snapshot else None,
            open_fraud_alerts=open_alerts,
        )

    # ── Manual control ─────────────────────────────────────────────────

    async def activate(
        self,
        scope,
        target: str,
        reason: str,
        activated_by: str,
        expires_in_minutes: Optional[int] = None,
        auto: bool = False,
    ) -> KillSwitchState:
        """Turn a switch on. Activating an already-active switch changes nothing."""
        scope = self._scope(scope)
        target = normalize_target(scope, target)
        if not reason:
            raise ValidationError("A reason is required", details={"field": "reason"})
        if expires_in_minutes is not None and expires_in_minutes <= 0:
            raise ValidationError("Expiry must be positive", details={"field": "expires_in_minutes"})

        now = self._clock()
        switch = ActiveKillSwitch(
            scope=scope,
            target=target,
            reason=reason,
            activated_at=now,
            activated_by=activated_by,
            expires_at=now + timedelta(minutes=expires_in_minutes) if expires_in_minutes else None,
            auto_activated=auto,
        )

        def change(state: KillSwitchState) -> Optional[KillSwitchState]:
            if is_switch_on(state, scope, target) and find_active(state, scope, target) is not None:
                return None
            updated = with_switch(state, scope, target, True)
            others = tuple(ks for ks in state.active_kill_switches if not (ks.scope == scope and ks.target == target))
            return updated.model_copy(update={"active_kill_switches": others + (switch,)})

        state, written = await self._mutate(activated_by, change)
        if not written:
            logger.info("kill_switch_already_active", scope=scope.value, target=target)
            return state

        async with self.session_factory() as session:
            await audit_logger.log(
                session,
                action="KILL_SWITCH_ACTIVATED",
                resource="kill_switch",
                resource_id=switch.id,
                actor_id=activated_by,
                actor_type="system" if auto else "employee",
                description=f"Kill switch activated: {scope.value} - {target}",
                severity="CRITICAL",
                metadata={
                    "scope": scope.value,
                    "target": target,
                    "reason": reason,
                    "expires_at": switch.expires_at.isoformat() if switch.expires_at else None,
                    "auto": auto,
                },
            )
            await session.commit()

        logger.critical(
            "kill_switch_activated",
            scope=scope.value,
            target=target,
            reason=reason,
            activated_by=activated_by,
            auto=auto,
            version=state.version,
        )
        await self._notify(switch)
        return state

    async def deactivate(self, scope, target: str, reason: str, deactivated_by: str) -> KillSwitchState:
        """Turn a switch off. Other axes are left exactly as they were."""
        scope = self._scope(scope)
        target = normalize_target(scope, target)

        def change(state: KillSwitchState) -> Optional[KillSwitchState]:
            if not is_switch_on(state, scope, target) and find_active(state, scope, target) is None:
                return None
            updated = with_switch(state, scope, target, False)
            remaining = tuple(
                ks for ks in state.active_kill_switches if not (ks.scope == scope and ks.target == target)
            )
            return updated.model_copy(update={"active_kill_switches": remaining})

        state, written = await self._mutate(deactivated_by, change)
        if not written:
            return state

        async with self.session_factory() as session:
            await audit_logger.log(
                session,
                action="KILL_SWITCH_DEACTIVATED",
                resource="kill_switch",
                actor_id=deactivated_by,
                actor_type="system" if deactivated_by.startswith("system") else "employee",
                description=f"Kill switch deactivated: {scope.value} - {target}",
                severity="HIGH",
                metadata={"scope": scope.value, "target": target, "reason": reason},
            )
            await session.commit()

        logger.warning(
            "kill_switch_deactivated",
            scope=scope.value,
            target=target,
            reason=reason,
            deactivated_by=deactivated_by,
            version=state.version,
        )
        return state

    async def activate_maintenance(
        self,
        activated_by: str,
        reason: str,
        estimated_duration_minutes: int,
        message: Optional[str] = None,
    ) -> KillSwitchState:
        if estimated_duration_minutes <= 0:
            raise ValidationError("Duration must be positive", details={"field": "estimated_duration_minutes"})
        now = self._clock()
        switch = ActiveKillSwitch(
            scope=KillSwitchScope.GLOBAL,
            target=MAINTENANCE_TARGET,
            reason=reason,
            activated_at=now,
            activated_by=activated_by,
            expires_at=now + timedelta(minutes=estimated_duration_minutes),
        )

        def change(state: KillSwitchState) -> KillSwitchState:
            others = tuple(ks for ks in state.active_kill_switches if ks.target != MAINTENANCE_TARGET)
            return state.model_copy(update={
                "maintenance_mode": True,
                "maintenance_message": message,
                "active_kill_switches": others + (switch,),
            })

        state, _ = await self._mutate(activated_by, change)
        async with self.session_factory() as session:
            await audit_logger.log(
                session,
                action="MAINTENANCE_MODE_ACTIVATED",
                resource="kill_switch",
                resource_id=switch.id,
                actor_id=activated_by,
                actor_type="employee",
                description=f"Maintenance mode for {estimated_duration_minutes} minutes: {reason}",
                severity="HIGH",
            )
            await session.commit()
        logger.warning("maintenance_mode_activated", activated_by=activated_by, minutes=estimated_duration_minutes)
        return state

    async def deactivate_maintenance(self, deactivated_by: str) -> KillSwitchState:
        def change(state: KillSwitchState) -> Optional[KillSwitchState]:
            if not state.maintenance_mode:
                return None
            return state.model_copy(update={
                "maintenance_mode": False,
                "maintenance_message": None,
                "active_kill_switches": tuple(
                    ks for ks in state.active_kill_switches if ks.target != MAINTENANCE_TARGET
                ),
            })

        state, written = await self._mutate(deactivated_by, change)
        if written:
            async with self.session_factory() as session:
                await audit_logger.log(
                    session,
                    action="MAINTENANCE_MODE_DEACTIVATED",
                    resource="kill_switch",
                    actor_id=deactivated_by,
                    actor_type="system" if deactivated_by.startswith("system") else "employee",
                    severity="INFO",
                )
                await session.commit()
            logger.info("maintenance_mode_deactivated", deactivated_by=deactivated_by)
        return state

    async def update_auto_trigger_config(
        self,
        updated_by: str,
        enabled: Optional[bool] = None,
        fraud_rate_threshold: Optional[float] = None,
        error_rate_threshold: Optional[float] = None,
        volume_anomaly_multiplier: Optional[float] = None,
    ) -> KillSwitchState:
        changes = {
            k: v
            for k, v in {
                "enabled": enabled,
                "fraud_rate_threshold": fraud_rate_threshold,
                "error_rate_threshold": error_rate_threshold,
                "volume_anomaly_multiplier": volume_anomaly_multiplier,
            }.items()
            if v is not None
        }
        if not changes:
            return await self.get_state()

        def change(state: KillSwitchState) -> KillSwitchState:
            merged = {**state.auto_triggers.model_dump(), **changes}
            try:
                config = AutoTriggerConfig.model_validate(merged)
            except ValueError as e:
                raise ValidationError(f"Invalid auto-trigger configuration: {e}") from e
            return state.model_copy(update={"auto_triggers": config})

        state, _ = await self._mutate(updated_by, change)
        async with self.session_factory() as session:
            await audit_logger.log(
                session,
                action="KILL_SWITCH_AUTO_TRIGGERS_UPDATED",
                resource="kill_switch",
                actor_id=updated_by,
                actor_type="employee",
                severity="HIGH",
                metadata=changes,
            )
            await session.commit()
        logger.info("kill_switch_auto_triggers_updated", updated_by=updated_by, **changes)
        return state

    # ── Auto-triggers ──────────────────────────────────────────────────

    async def check_auto_triggers(self) -> list[str]:
        """Evaluate the trailing hour; returns the reasons that activated a switch."""
        state = await self.get_state()
        config = state.auto_triggers
        if not config.enabled:
            return []

        now = self._clock()
        since = now - TRIGGER_WINDOW
        async with self.session_factory() as session:
            total = await queries.count_all_transactions_since(session, since)
            failed = await queries.count_all_transactions_since(session, since, status="FAILED")
            fraud = await queries.count_fraud_alerts_since(session, since, alert_types=CONFIRMED_FRAUD_TYPES)
            weekly = await queries.count_all_transactions_since(session, now - VOLUME_BASELINE_WINDOW)
        hourly_average = weekly / (VOLUME_BASELINE_WINDOW.total_seconds() / 3600)

        triggered: list[str] = []
        if total > 0:
            fraud_rate = fraud / total * 100
            if fraud_rate >= config.fraud_rate_threshold:
                if await self.auto_activate(FRAUD_RATE_EXCEEDED, f"Fraud rate {fraud_rate:.2f}%"):
                    triggered.append(FRAUD_RATE_EXCEEDED)
            error_rate = failed / total * 100
            if error_rate >= config.error_rate_threshold:
                if await self.auto_activate(ERROR_RATE_EXCEEDED, f"Error rate {error_rate:.2f}%"):
                    triggered.append(ERROR_RATE_EXCEEDED)
        if hourly_average > 0 and total > hourly_average * config.volume_anomaly_multiplier:
            if await self.auto_activate(VOLUME_ANOMALY, f"Volume {total} (hourly average {hourly_average:.1f})"):
                triggered.append(VOLUME_ANOMALY)

        logger.info(
            "kill_switch_auto_triggers_checked",
            transactions=total,
            failed=failed,
            confirmed_fraud=fraud,
            hourly_average=round(hourly_average, 2),
            triggered=triggered,
        )
        return triggered

    async def auto_activate(self, reason_code: str, details: str) -> bool:
        """Stop outgoing transfers for a while. One active switch per reason.

        A reason that fires while an auto switch already stops outgoing
        transfers is appended to that switch. Admins hear about every
        reason that fires, also when a manual switch already stops outgoing
        transfers and nothing is written.
        """
        state = await self._load_or_init()
        if any(ks.auto_activated and reason_code in ks.reason for ks in state.active_kill_switches):
            logger.info("kill_switch_auto_already_active", reason=reason_code)
            return False

        reason = f"[AUTO] {reason_code}: {details}"
        running = find_active(state, KillSwitchScope.TRANSACTION_TYPE, AUTO_TARGET)
        if running is None:
            await self.activate(
                KillSwitchScope.TRANSACTION_TYPE,
                AUTO_TARGET,
                reason=reason,
                activated_by=AUTO_ACTOR,
                expires_in_minutes=self.auto_duration_minutes,
                auto=True,
            )
            return True
        if not running.auto_activated:
            logger.warning("kill_switch_auto_skipped_manual_active", reason=reason_code)
            await self._notify_trigger(reason_code, details, running)
            return False

        def change(current: KillSwitchState) -> Optional[KillSwitchState]:
            switch = find_active(current, KillSwitchScope.TRANSACTION_TYPE, AUTO_TARGET)
            if switch is None or not switch.auto_activated or reason_code in switch.reason:
                return None
            merged = switch.model_copy(update={"reason": f"{switch.reason}; {reason}"})
            return current.model_copy(update={
                "active_kill_switches": tuple(
                    merged if ks.id == switch.id else ks for ks in current.active_kill_switches
                ),
            })

        stored, written = await self._mutate(AUTO_ACTOR, change)
        if not written:
            return False
        logger.critical("kill_switch_auto_reason_added", reason=reason_code, version=stored.version)
        await self._notify_trigger(
            reason_code, details, find_active(stored, KillSwitchScope.TRANSACTION_TYPE, AUTO_TARGET),
        )
        return True

    async def cleanup_expired(self) -> int:
        """Deactivate every switch past its expiry."""
        state = await self._load_or_init()
        expired = expired_switches(state, self._clock())
        for switch in expired:
            if switch.target == MAINTENANCE_TARGET:
                await self.deactivate_maintenance(CLEANUP_ACTOR)
            else:
                await self.deactivate(switch.scope, switch.target, "Automatic expiry", CLEANUP_ACTOR)
        if expired:
            logger.info("kill_switches_expired", count=len(expired))
        return len(expired)

    async def _notify(self, switch: ActiveKillSwitch) -> None:
        if self.alerts is None:
            return
        try:
            await self.alerts.kill_switch_activated(
                str(switch.id), switch.scope.value, switch.target, switch.reason, switch.activated_by,
            )
        except Exception as e:
            logger.error("kill_switch_notification_failed", switch_id=str(switch.id), error=str(e))

    async def _notify_trigger(self, reason_code: str, details: str, switch: ActiveKillSwitch) -> None:
        """Page admins about a trigger that fired while outgoing transfers were already stopped."""
        if self.alerts is None:
            return
        try:
            await self.alerts.kill_switch_trigger_fired(reason_code, details, str(switch.id), switch.activated_by)
        except Exception as e:
            logger.error("kill_switch_trigger_notification_failed", reason=reason_code, error=str(e))

    # ── Stats ──────────────────────────────────────────────────────────

    async def get_stats(self) -> dict:
        state = await self.get_state()
        active = state.active_kill_switches
        return {
            "global_kill": state.global_kill,
            "maintenance_mode": state.maintenance_mode,
            "active_count": len(active),
            "by_scope": {s.value: sum(1 for ks in active if ks.scope == s) for s in KillSwitchScope},
            "auto_activated": sum(1 for ks in active if ks.auto_activated),
            "auto_triggers_enabled": state.auto_triggers.enabled,
            "last_modified": state.last_modified,
            "modified_by": state.modified_by,
            "version": state.version,
        }

    @staticmethod
    def _scope(scope) -> KillSwitchScope:
        try:
            return KillSwitchScope(scope)
        except ValueError:
            raise ValidationError(f"Unknown kill switch scope: {scope!r}", details={"field": "scope"})


def _unavailable() -> PolicyDecision:
    return PolicyDecision.deny(
        "KILL_SWITCH_UNAVAILABLE", "Operation temporarily unavailable. Try again shortly.",
    )
