"""
Device Trust Registry.

One record per (user, fingerprint). Counter and trust-level changes are
single UPDATE statements evaluated by the database, so concurrent logins
from one device never lose an increment. Trust factors are derived on
read; the registry never stores an aggregate.

Trust level transitions:
- NEW on first registration
- TRUSTED only via `trust_device`
- UNTRUSTED only via `block_device`
- TRUSTED → KNOWN automatically once a device accumulates 5 failed operations
"""

import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog
from sqlalchemy import and_, delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trustgate.alerting.presets import SecurityAlerts
from trustgate.db import queries
from trustgate.db.compat import as_uuid, utcnow
from trustgate.db.models import DeviceRecord
from trustgate.devices.fingerprint import (
    detect_platform,
    device_display_name,
    extract_device_model,
    extract_os_version,
    generate_fingerprint,
)
from trustgate.devices.schemas import (
    DeviceInfo,
    DevicePlatform,
    DeviceSignals,
    DeviceStats,
    DeviceTrustFactor,
    DeviceTrustLevel,
    FactorImpact,
)
from trustgate.errors import NotFoundError, PolicyDecision, ValidationError
from trustgate.services.audit import audit_logger

logger = structlog.get_logger(__name__)

# ── Configuration ─────────────────────────────────────────────────────────

FAILED_OPS_DEGRADE_THRESHOLD: int = 5
FREQUENT_USE_LOGINS: int = 20
HIGH_SUCCESS_RATE: float = 0.95
LOW_SUCCESS_RATE: float = 0.7
RECENTLY_ACTIVE = timedelta(days=7)


def compute_trust_factors(device: DeviceRecord, now: datetime) -> list[DeviceTrustFactor]:
    """Signed trust inputs for one device at `now`."""
    factors: list[DeviceTrustFactor] = []

    age_days = (now - device.first_seen_at).total_seconds() / 86400
    if age_days >= 90:
        factors.append(DeviceTrustFactor("DEVICE_AGE_90D", True, FactorImpact.POSITIVE))
    elif age_days >= 30:
        factors.append(DeviceTrustFactor("DEVICE_AGE_30D", True, FactorImpact.POSITIVE))
    elif age_days < 1:
        factors.append(DeviceTrustFactor("NEW_DEVICE", True, FactorImpact.NEGATIVE))

    if device.login_count >= FREQUENT_USE_LOGINS:
        factors.append(DeviceTrustFactor("FREQUENT_USE", device.login_count, FactorImpact.POSITIVE))

    total_ops = device.successful_ops + device.failed_ops
    if total_ops > 0:
        success_rate = device.successful_ops / total_ops
        if success_rate >= HIGH_SUCCESS_RATE:
            factors.append(DeviceTrustFactor("HIGH_SUCCESS_RATE", round(success_rate, 4), FactorImpact.POSITIVE))
        elif success_rate < LOW_SUCCESS_RATE:
            factors.append(DeviceTrustFactor("LOW_SUCCESS_RATE", round(success_rate, 4), FactorImpact.NEGATIVE))

    if device.is_emulator:
        factors.append(DeviceTrustFactor("EMULATOR_DETECTED", True, FactorImpact.NEGATIVE))
    if device.is_rooted:
        factors.append(DeviceTrustFactor("ROOTED_DEVICE", True, FactorImpact.NEGATIVE))
    if device.trusted_at is not None:
        factors.append(DeviceTrustFactor("USER_TRUSTED", True, FactorImpact.POSITIVE))
    if device.is_blocked:
        factors.append(DeviceTrustFactor("BLOCKED", device.blocked_reason, FactorImpact.NEGATIVE))

    return factors


def evaluate_device_policy(device: Optional[DeviceRecord]) -> PolicyDecision:
    """Allow / deny for a device record (None = never seen)."""
    if device is None:
        # First login from this device: allowed, the risk assessor prices it in
        return PolicyDecision.allow()
    if device.is_blocked:
        return PolicyDecision.deny(
            "DEVICE_BLOCKED",
            device.blocked_reason or "Device is blocked",
            device_id=str(device.id),
        )
    trusted = device.trust_level == DeviceTrustLevel.TRUSTED.value
    if device.is_emulator and not trusted:
        return PolicyDecision.deny("EMULATOR_NOT_ALLOWED", "Emulators are not allowed", device_id=str(device.id))
    if device.is_rooted and not trusted:
        return PolicyDecision.deny(
            "ROOTED_NOT_ALLOWED", "Rooted or jailbroken devices are not allowed", device_id=str(device.id),
        )
    return PolicyDecision.allow()


class DeviceRegistry:
    """Register, trust, block and police user devices."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        alerts: Optional[SecurityAlerts] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.alerts = alerts
        self._clock = clock

    # ── Registration ───────────────────────────────────────────────────

    async def register_device(
        self, user_id, signals: DeviceSignals, ip_address: Optional[str] = None
    ) -> DeviceInfo:
        """Upsert keyed by (user, fingerprint)."""
        user_id = as_uuid(user_id, "user_id")
        fingerprint = generate_fingerprint(signals)
        now = self._clock()

        async with self.session_factory() as session:
            if await queries.get_user(session, user_id) is None:
                raise NotFoundError(f"User {user_id} not found", details={"user_id": str(user_id)})

            device = await self._touch_existing(session, user_id, fingerprint, ip_address, now)
            is_new = device is None
            if is_new:
                platform = detect_platform(signals.user_agent)
                os_version = extract_os_version(signals.user_agent)
                model = extract_device_model(signals.user_agent)
                device = DeviceRecord(
                    user_id=user_id,
                    fingerprint=fingerprint,
                    device_name=device_display_name(model, platform, os_version),
                    platform=platform.value,
                    os_version=os_version,
                    device_model=model,
                    trust_level=DeviceTrustLevel.NEW.value,
                    first_seen_at=now,
                    last_seen_at=now,
                    last_ip=ip_address,
                    login_count=1,
                    successful_ops=0,
                    failed_ops=0,
                    is_blocked=False,
                    is_emulator=signals.is_emulator,
                    is_rooted=signals.is_rooted,
                )
                session.add(device)
                try:
                    await session.flush()
                except IntegrityError:
                    # Concurrent first login from the same device won the insert
                    await session.rollback()
                    is_new = False
                    device = await self._touch_existing(session, user_id, fingerprint, ip_address, now)
                    if device is None:
                        raise
                else:
                    await audit_logger.log(
                        session,
                        action="DEVICE_REGISTERED",
                        resource="device",
                        resource_id=device.id,
                        actor_id=str(user_id),
                        actor_type="user",
                        description=device.device_name,
                        metadata={"platform": device.platform, "ip_address": ip_address},
                    )
            await session.commit()

        logger.info(
            "device_registered" if is_new else "device_seen",
            user_id=str(user_id),
            fingerprint=fingerprint,
            platform=device.platform,
            login_count=device.login_count,
        )

        if is_new:
            await self._notify_new_device(device, ip_address)

        return self._to_info(device, now, is_new=is_new)

    async def _touch_existing(
        self,
        session: AsyncSession,
        user_id: uuid.UUID,
        fingerprint: str,
        ip_address: Optional[str],
        now: datetime,
    ) -> Optional[DeviceRecord]:
        result = await session.execute(
            update(DeviceRecord)
            .where(and_(DeviceRecord.user_id == user_id, DeviceRecord.fingerprint == fingerprint))
            .values(
                last_seen_at=now,
                login_count=DeviceRecord.login_count + 1,
                last_ip=ip_address,
            )
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            return None
        device = await queries.get_device(session, user_id, fingerprint)
        if device is not None:
            await session.refresh(device)
        return device

    async def _notify_new_device(self, device: DeviceRecord, ip_address: Optional[str]) -> None:
        if self.alerts is None:
            return
        try:
            await self.alerts.new_device(device.user_id, device.id, device.device_name or "unknown", ip_address)
        except Exception as e:
            logger.error("new_device_notification_failed", device_id=str(device.id), error=str(e))

    # ── Reads ──────────────────────────────────────────────────────────

    async def get_device(self, user_id, fingerprint: str) -> Optional[DeviceInfo]:
        user_id = as_uuid(user_id, "user_id")
        async with self.session_factory() as session:
            device = await queries.get_device(session, user_id, fingerprint)
        if device is None:
            return None
        return self._to_info(device, self._clock())

    async def list_user_devices(self, user_id) -> list[DeviceInfo]:
        user_id = as_uuid(user_id, "user_id")
        async with self.session_factory() as session:
            result = await session.execute(
                select(DeviceRecord)
                .where(DeviceRecord.user_id == user_id)
                .order_by(DeviceRecord.last_seen_at.desc())
            )
            devices = result.scalars().all()
        now = self._clock()
        return [self._to_info(d, now) for d in devices]

    async def is_device_allowed(self, user_id, fingerprint: str) -> PolicyDecision:
        user_id = as_uuid(user_id, "user_id")
        async with self.session_factory() as session:
            device = await queries.get_device(session, user_id, fingerprint)
        decision = evaluate_device_policy(device)
        if not decision.allowed:
            logger.warning(
                "device_denied",
                user_id=str(user_id),
                fingerprint=fingerprint,
                reason_code=decision.reason_code,
            )
        return decision

    async def get_device_stats(self, user_id) -> DeviceStats:
        user_id = as_uuid(user_id, "user_id")
        async with self.session_factory() as session:
            result = await session.execute(select(DeviceRecord).where(DeviceRecord.user_id == user_id))
            devices = result.scalars().all()

        now = self._clock()
        return DeviceStats(
            total=len(devices),
            trusted=sum(1 for d in devices if d.trust_level == DeviceTrustLevel.TRUSTED.value),
            blocked=sum(1 for d in devices if d.is_blocked),
            platforms={
                p.value: sum(1 for d in devices if d.platform == p.value)
                for p in (DevicePlatform.IOS, DevicePlatform.ANDROID, DevicePlatform.WEB)
            },
            recently_active=sum(1 for d in devices if now - d.last_seen_at < RECENTLY_ACTIVE),
        )

    # ── Mutations ──────────────────────────────────────────────────────

    async def record_operation(self, user_id, fingerprint: str, success: bool) -> DeviceInfo:
        """Bump a success / failure counter; degrade TRUSTED → KNOWN on repeated failure."""
        user_id = as_uuid(user_id, "user_id")
        match = and_(DeviceRecord.user_id == user_id, DeviceRecord.fingerprint == fingerprint)
        counter = (
            {"successful_ops": DeviceRecord.successful_ops + 1}
            if success
            else {"failed_ops": DeviceRecord.failed_ops + 1}
        )

        async with self.session_factory() as session:
            result = await session.execute(
                update(DeviceRecord).where(match).values(**counter)
                .execution_options(synchronize_session=False)
            )
            if not result.rowcount:
                raise NotFoundError(
                    "Device not registered",
                    details={"user_id": str(user_id), "fingerprint": fingerprint},
                )

            degraded = False
            if not success:
                # Only TRUSTED degrades; UNTRUSTED / NEW / KNOWN stay put
                result = await session.execute(
                    update(DeviceRecord)
                    .where(
                        and_(
                            match,
                            DeviceRecord.trust_level == DeviceTrustLevel.TRUSTED.value,
                            DeviceRecord.failed_ops >= FAILED_OPS_DEGRADE_THRESHOLD,
                        )
                    )
                    .values(trust_level=DeviceTrustLevel.KNOWN.value)
                    .execution_options(synchronize_session=False)
                )
                degraded = bool(result.rowcount)

            device = await queries.get_device(session, user_id, fingerprint)
            await session.refresh(device)
            if degraded:
                await audit_logger.log(
                    session,
                    action="DEVICE_TRUST_DEGRADED",
                    resource="device",
                    resource_id=device.id,
                    description=f"{device.failed_ops} failed operations",
                    severity="WARNING",
                )
            await session.commit()

        if degraded:
            logger.warning(
                "device_trust_degraded",
                user_id=str(user_id),
                fingerprint=fingerprint,
                failed_ops=device.failed_ops,
            )
        return self._to_info(device, self._clock())

    async def trust_device(self, user_id, device_id, actor_id: Optional[str] = None) -> DeviceInfo:
        user_id = as_uuid(user_id, "user_id")
        device_id = as_uuid(device_id, "device_id")
        now = self._clock()
        async with self.session_factory() as session:
            device = await self._get_owned(session, user_id, device_id)
            device.trust_level = DeviceTrustLevel.TRUSTED.value
            device.trusted_at = now
            await audit_logger.log(
                session,
                action="DEVICE_TRUSTED",
                resource="device",
                resource_id=device.id,
                actor_id=actor_id or str(user_id),
                actor_type="user" if actor_id is None else "employee",
            )
            await session.commit()
        logger.info("device_trusted", user_id=str(user_id), device_id=str(device_id))
        return self._to_info(device, now)

    async def block_device(
        self, user_id, device_id, reason: str, actor_id: Optional[str] = None
    ) -> DeviceInfo:
        if not reason:
            raise ValidationError("A block reason is required", details={"field": "reason"})
        user_id = as_uuid(user_id, "user_id")
        device_id = as_uuid(device_id, "device_id")
        now = self._clock()
        async with self.session_factory() as session:
            device = await self._get_owned(session, user_id, device_id)
            device.trust_level = DeviceTrustLevel.UNTRUSTED.value
            device.is_blocked = True
            device.blocked_reason = reason
            invalidated = await queries.invalidate_device_sessions(
                session, user_id, device.fingerprint, "device_blocked", now,
            )
            await audit_logger.log(
                session,
                action="DEVICE_BLOCKED",
                resource="device",
                resource_id=device.id,
                actor_id=actor_id or str(user_id),
                actor_type="user" if actor_id is None else "employee",
                description=reason,
                severity="WARNING",
                metadata={"sessions_invalidated": invalidated},
            )
            await session.commit()
        logger.warning(
            "device_blocked",
            user_id=str(user_id),
            device_id=str(device_id),
            reason=reason,
            sessions_invalidated=invalidated,
        )
        return self._to_info(device, now)

    async def remove_device(self, user_id, device_id, actor_id: Optional[str] = None) -> None:
        user_id = as_uuid(user_id, "user_id")
        device_id = as_uuid(device_id, "device_id")
        async with self.session_factory() as session:
            device = await self._get_owned(session, user_id, device_id)
            await session.execute(delete(DeviceRecord).where(DeviceRecord.id == device.id))
            await audit_logger.log(
                session,
                action="DEVICE_REMOVED",
                resource="device",
                resource_id=device_id,
                actor_id=actor_id or str(user_id),
                actor_type="user" if actor_id is None else "employee",
            )
            await session.commit()
        logger.info("device_removed", user_id=str(user_id), device_id=str(device_id))

    # ── Helpers ────────────────────────────────────────────────────────

    @staticmethod
    async def _get_owned(session: AsyncSession, user_id: uuid.UUID, device_id: uuid.UUID) -> DeviceRecord:
        result = await session.execute(
            select(DeviceRecord).where(and_(DeviceRecord.id == device_id, DeviceRecord.user_id == user_id))
        )
        device = result.scalar_one_or_none()
        if device is None:
            raise NotFoundError(
                f"Device {device_id} not found",
                details={"user_id": str(user_id), "device_id": str(device_id)},
            )
        return device

    @staticmethod
    def _to_info(device: DeviceRecord, now: datetime, is_new: bool = False) -> DeviceInfo:
        return DeviceInfo(
            id=device.id,
            user_id=device.user_id,
            fingerprint=device.fingerprint,
            trust_level=DeviceTrustLevel(device.trust_level),
            platform=DevicePlatform(device.platform),
            os_version=device.os_version,
            device_model=device.device_model,
            device_name=device.device_name,
            first_seen_at=device.first_seen_at,
            last_seen_at=device.last_seen_at,
            last_ip=device.last_ip,
            login_count=device.login_count,
            successful_ops=device.successful_ops,
            failed_ops=device.failed_ops,
            is_blocked=device.is_blocked,
            blocked_reason=device.blocked_reason,
            is_emulator=device.is_emulator,
            is_rooted=device.is_rooted,
            trust_factors=compute_trust_factors(device, now),
            is_new=is_new,
        )
