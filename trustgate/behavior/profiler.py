"""
Behavioral Profile Builder & Anomaly Detector.

Builds a per-user profile from a 90-day session window and a 180-day
transaction window, then compares live events against it. The stored
profile is a versioned snapshot: a rebuild replaces every sub-structure
and bumps the version, nothing is patched field by field.
"""

import asyncio
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trustgate.behavior.aggregation import (
    SESSION_WINDOW,
    TRANSACTION_WINDOW,
    detect_event_anomalies,
    determine_segment,
    device_patterns,
    navigation_patterns,
    risk_indicators,
    temporal_patterns,
    transactional_patterns,
)
from trustgate.behavior.schemas import (
    AnalyticsPoint,
    BehaviorAnomaly,
    BehaviorEvent,
    BehaviorProfile,
    DevicePatterns,
    DevicePoint,
    IdentityFacts,
    NavigationPatterns,
    RiskIndicators,
    SessionPoint,
    TemporalPatterns,
    TransactionalPatterns,
    TransactionPoint,
)
from trustgate.db import queries
from trustgate.db.compat import as_uuid, utcnow
from trustgate.db.models import BehaviorProfileRecord
from trustgate.errors import NotFoundError

logger = structlog.get_logger(__name__)

FRAUD_ALERT_WINDOW = timedelta(days=30)
VELOCITY_WINDOW = timedelta(hours=1)
LOCATION_SESSION_SAMPLE = 100


def _profile_from_record(record: BehaviorProfileRecord) -> BehaviorProfile:
    return BehaviorProfile(
        user_id=record.user_id,
        temporal=TemporalPatterns.model_validate(record.temporal),
        transactional=TransactionalPatterns.model_validate(record.transactional),
        navigation=NavigationPatterns.model_validate(record.navigation),
        device=DevicePatterns.model_validate(record.device),
        risk_indicators=RiskIndicators.model_validate(record.risk_indicators),
        segment=record.segment,
        version=record.version,
        data_points=record.data_points,
        updated_at=record.updated_at,
    )


class BehaviorProfiler:
    """Build, persist and query behavioral profiles."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self._clock = clock

    # ── Build ──────────────────────────────────────────────────────────

    async def build_profile(self, user_id) -> BehaviorProfile:
        """Recompute every sub-profile and store a new version."""
        user_id = as_uuid(user_id, "user_id")
        now = self._clock()

        identity = await self._load_identity(user_id)
        if identity is None:
            raise NotFoundError(f"User {user_id} not found", details={"user_id": str(user_id)})

        sessions, transactions, events, (devices, recent_ips), fraud_alerts, read_rate, data_points = (
            await asyncio.gather(
                self._load_sessions(user_id, now),
                self._load_transactions(user_id, now),
                self._load_events(user_id),
                self._load_devices(user_id),
                self._count_fraud_alerts(user_id, now),
                self._load_read_rate(user_id),
                self._count_data_points(user_id),
            )
        )

        temporal = temporal_patterns(sessions)
        transactional = transactional_patterns(transactions)
        indicators = risk_indicators(identity, fraud_alerts, read_rate, now)

        profile = BehaviorProfile(
            user_id=user_id,
            temporal=temporal,
            transactional=transactional,
            navigation=navigation_patterns(events),
            device=device_patterns(devices, recent_ips, now),
            risk_indicators=indicators,
            segment=determine_segment(temporal, transactional, indicators, now),
            data_points=data_points,
            updated_at=now,
        )
        profile = await self._save(profile)

        logger.info(
            "behavior_profile_built",
            user_id=str(user_id),
            segment=profile.segment.value,
            version=profile.version,
            data_points=profile.data_points,
        )
        return profile

    async def _save(self, profile: BehaviorProfile) -> BehaviorProfile:
        values = {
            "temporal": profile.temporal.model_dump(mode="json"),
            "transactional": profile.transactional.model_dump(mode="json"),
            "navigation": profile.navigation.model_dump(mode="json"),
            "device": profile.device.model_dump(mode="json"),
            "risk_indicators": profile.risk_indicators.model_dump(mode="json"),
            "segment": profile.segment.value,
            "data_points": profile.data_points,
            "updated_at": profile.updated_at,
        }
        async with self.session_factory() as session:
            record = await queries.get_behavior_profile(session, profile.user_id)
            if record is None:
                record = BehaviorProfileRecord(user_id=profile.user_id, version=1, **values)
                session.add(record)
                try:
                    await session.commit()
                except IntegrityError:
                    # A concurrent build stored the first version
                    await session.rollback()
                    record = await queries.get_behavior_profile(session, profile.user_id)
                    self._apply(record, values)
                    await session.commit()
            else:
                self._apply(record, values)
                await session.commit()
            version = record.version
        return profile.model_copy(update={"version": version})

    @staticmethod
    def _apply(record: BehaviorProfileRecord, values: dict) -> None:
        for key, value in values.items():
            setattr(record, key, value)
        record.version = record.version + 1

    # ── Reads ──────────────────────────────────────────────────────────

    async def get_profile(self, user_id) -> Optional[BehaviorProfile]:
        user_id = as_uuid(user_id, "user_id")
        async with self.session_factory() as session:
            record = await queries.get_behavior_profile(session, user_id)
        if record is None:
            return None
        return _profile_from_record(record)

    async def get_or_build_profile(self, user_id) -> BehaviorProfile:
        profile = await self.get_profile(user_id)
        if profile is not None:
            return profile
        return await self.build_profile(user_id)

    # ── Anomaly detection ──────────────────────────────────────────────

    async def detect_anomalies(self, user_id, event: BehaviorEvent) -> list[BehaviorAnomaly]:
        user_id = as_uuid(user_id, "user_id")
        profile = await self.get_or_build_profile(user_id)
        now = self._clock()

        async with self.session_factory() as session:
            recent = await queries.count_transactions_since(session, user_id, now - VELOCITY_WINDOW)

        anomalies = detect_event_anomalies(profile, event, recent, now)
        for anomaly in anomalies:
            logger.warning(
                "behavior_anomaly_detected",
                user_id=str(user_id),
                anomaly_type=anomaly.anomaly_type.value,
                confidence=anomaly.confidence,
                deviation=anomaly.deviation,
                action=event.action,
            )
        return anomalies

    # ── Batch ──────────────────────────────────────────────────────────

    async def update_all_profiles(self, limit: Optional[int] = None) -> dict:
        """Rebuild every active user's profile; one failure never stops the batch."""
        async with self.session_factory() as session:
            user_ids = await queries.list_active_user_ids(session, limit=limit)

        updated = 0
        failed = 0
        for user_id in user_ids:
            try:
                await self.build_profile(user_id)
                updated += 1
            except Exception as e:
                failed += 1
                logger.error("behavior_profile_rebuild_failed", user_id=str(user_id), error=str(e))

        logger.info("behavior_profiles_rebuilt", updated=updated, failed=failed)
        return {"updated": updated, "failed": failed}

    # ── Loaders (one short-lived session each) ─────────────────────────

    async def _load_identity(self, user_id: uuid.UUID) -> Optional[IdentityFacts]:
        async with self.session_factory() as session:
            user = await queries.get_user(session, user_id)
        if user is None:
            return None
        return IdentityFacts(
            created_at=user.created_at,
            kyc_status=user.kyc_status,
            email_verified=user.email_verified,
            phone_verified=user.phone_verified,
            has_address=bool(user.address_street and user.address_city),
            has_birth_date=user.birth_date is not None,
            balance=float(user.balance or 0),
        )

    async def _load_sessions(self, user_id: uuid.UUID, now: datetime) -> list[SessionPoint]:
        async with self.session_factory() as session:
            rows = await queries.get_sessions_since(session, user_id, now - SESSION_WINDOW)
        return [SessionPoint(started_at=r.created_at, ended_at=r.ended_at, ip_address=r.ip_address) for r in rows]

    async def _load_transactions(self, user_id: uuid.UUID, now: datetime) -> list[TransactionPoint]:
        async with self.session_factory() as session:
            rows = await queries.get_completed_transactions_since(session, user_id, now - TRANSACTION_WINDOW)
        return [
            TransactionPoint(
                amount=float(r.amount),
                type=r.type,
                created_at=r.created_at,
                recipient=r.destination_account,
            )
            for r in rows
        ]

    async def _load_events(self, user_id: uuid.UUID) -> list[AnalyticsPoint]:
        async with self.session_factory() as session:
            rows = await queries.get_analytics_events(session, user_id)
        return [AnalyticsPoint(event_type=r.event_type, data=dict(r.event_data or {})) for r in rows]

    async def _load_devices(self, user_id: uuid.UUID) -> tuple[list[DevicePoint], list[Optional[str]]]:
        async with self.session_factory() as session:
            devices = await queries.list_user_devices(session, user_id)
            recent = await queries.get_recent_sessions(session, user_id, limit=LOCATION_SESSION_SAMPLE)
        points = [
            DevicePoint(platform=d.platform, login_count=d.login_count, first_seen_at=d.first_seen_at)
            for d in devices
        ]
        return points, [s.ip_address for s in recent]

    async def _count_fraud_alerts(self, user_id: uuid.UUID, now: datetime) -> int:
        async with self.session_factory() as session:
            return await queries.count_fraud_alerts_since(session, now - FRAUD_ALERT_WINDOW, user_id=user_id)

    async def _load_read_rate(self, user_id: uuid.UUID) -> Optional[float]:
        async with self.session_factory() as session:
            return await queries.get_notification_read_rate(session, user_id)

    async def _count_data_points(self, user_id: uuid.UUID) -> int:
        async with self.session_factory() as session:
            return await queries.count_user_data_points(session, user_id)
