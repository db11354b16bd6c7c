"""
Alerting Service — single entry point every component uses to notify a
user, employee, role, team or all admins.

Pipeline:
1. Validate the request and derive channels from priority (unless overridden)
2. Claim the dedup window for (category, source, sourceId, target)
3. Persist the alert (PENDING), resolve recipients and commit
4. Fan out per channel outside any transaction (each channel fault-isolated)
5. Mark SENT with per-channel delivery results in a fresh session

Escalation never mutates the original: an unread alert whose timer ran out
gets a NEW linked alert one level up (ADMIN role → SUPER_ADMIN role → all
admins), capped at the configured maximum level.
"""

import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog
from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trustgate.alerting.channels import ChannelRouter
from trustgate.alerting.dedup import DedupManager
from trustgate.alerting.schemas import (
    ADMIN_ROLES,
    ESCALATION_MINUTES,
    PRIORITY_CHANNELS,
    AlertFilters,
    AlertPriority,
    AlertRecipient,
    AlertRecord,
    AlertRequest,
    AlertStatus,
    TargetType,
)
from trustgate.config import settings
from trustgate.db import queries
from trustgate.db.compat import as_uuid, utcnow
from trustgate.db.models import AlertRecordModel
from trustgate.errors import NotFoundError, ValidationError
from trustgate.services.audit import audit_logger

logger = structlog.get_logger(__name__)

ESCALATION_SOURCE = "escalation_service"
# Sweep ignores alerts younger than this regardless of their timer
ESCALATION_MIN_AGE = timedelta(minutes=1)

STATS_PERIODS = {"day": timedelta(days=1), "week": timedelta(days=7), "month": timedelta(days=30)}


def escalation_target(level: int) -> tuple[TargetType, Optional[str]]:
    """Who an alert goes to once escalated to `level`."""
    if level == 1:
        return TargetType.ROLE, "ADMIN"
    if level == 2:
        return TargetType.ROLE, "SUPER_ADMIN"
    return TargetType.ALL_ADMINS, None


class AlertingService:
    """Create, deliver, escalate and manage alerts."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        router: Optional[ChannelRouter] = None,
        dedup: Optional[DedupManager] = None,
        max_escalation_level: int = settings.alert_max_escalation_level,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.router = router or ChannelRouter()
        self.dedup = dedup or DedupManager(clock=clock)
        self.max_escalation_level = max_escalation_level
        self._clock = clock

    # ── Create ─────────────────────────────────────────────────────────

    async def create_alert(self, request: AlertRequest) -> Optional[AlertRecord]:
        """
        Create and deliver an alert.

        Returns:
            The delivered AlertRecord, or None when an identical alert was
            already delivered inside the dedup window (already handled).
        """
        self._validate_target(request)

        dedup_key = request.dedup_key
        if not await self.dedup.claim(dedup_key):
            logger.info(
                "alert_deduplicated",
                category=request.category.value,
                source=request.source,
                source_id=request.source_id,
                target_id=request.target_id,
            )
            return None

        channels = request.channels or PRIORITY_CHANNELS[request.priority]
        now = self._clock()

        try:
            async with self.session_factory() as session:
                row = AlertRecordModel(
                    id=uuid.uuid4(),
                    category=request.category.value,
                    priority=request.priority.value,
                    title=request.title,
                    message=request.message,
                    data=request.data,
                    target_type=request.target_type.value,
                    target_id=request.target_id,
                    target_role=request.target_role,
                    source=request.source,
                    source_id=request.source_id,
                    channels=[c.value for c in channels],
                    delivery={},
                    status=AlertStatus.PENDING.value,
                    escalation_level=request.escalation_level,
                    escalate_after_minutes=ESCALATION_MINUTES[request.priority],
                    parent_alert_id=request.parent_alert_id,
                    dedup_key=dedup_key,
                    created_at=now,
                    expires_at=(
                        now + timedelta(minutes=request.expires_in_minutes)
                        if request.expires_in_minutes else None
                    ),
                )
                session.add(row)
                recipients = await self._resolve_recipients(session, request)
                await session.commit()
        except Exception:
            await self.dedup.release(dedup_key)
            raise

        delivery = await self.router.dispatch_alert(
            AlertRecord.from_row(row), recipients, self.session_factory,
        )

        async with self.session_factory() as session:
            stored = await session.get(AlertRecordModel, row.id)
            stored.delivery = delivery
            stored.status = AlertStatus.SENT.value
            stored.sent_at = self._clock()
            await session.commit()
            row = stored

        failed = [name for name, result in delivery.items() if not result.get("success")]
        logger.info(
            "alert_created",
            alert_id=str(row.id),
            category=row.category,
            priority=row.priority,
            target_type=row.target_type,
            channels=row.channels,
            recipients=len(recipients),
            failed_channels=failed,
            escalation_level=row.escalation_level,
        )
        return AlertRecord.from_row(row)

    @staticmethod
    def _validate_target(request: AlertRequest) -> None:
        if request.target_type in (TargetType.USER, TargetType.EMPLOYEE):
            if not request.target_id:
                raise ValidationError(
                    f"target_id is required for {request.target_type.value} alerts",
                    details={"field": "target_id"},
                )
            as_uuid(request.target_id, "target_id")
        if request.target_type in (TargetType.ROLE, TargetType.TEAM) and not request.target_role:
            raise ValidationError(
                f"target_role is required for {request.target_type.value} alerts",
                details={"field": "target_role"},
            )

    async def _resolve_recipients(
        self, session: AsyncSession, request: AlertRequest
    ) -> list[AlertRecipient]:
        if request.target_type == TargetType.USER:
            user = await queries.get_user(session, as_uuid(request.target_id, "target_id"))
            if user is None:
                return []
            return [AlertRecipient(
                kind="user", id=user.id, email=user.email, phone=user.phone, push_token=user.push_token,
            )]

        if request.target_type == TargetType.EMPLOYEE:
            employee = await queries.get_employee(session, as_uuid(request.target_id, "target_id"))
            if employee is None:
                return []
            return [AlertRecipient(kind="employee", id=employee.id, email=employee.email)]

        if request.target_type == TargetType.ALL_ADMINS:
            roles = ADMIN_ROLES
        else:
            roles = (request.target_role,)
        employees = await queries.get_employees_by_roles(session, roles)
        return [AlertRecipient(kind="employee", id=e.id, email=e.email) for e in employees]

    # ── Escalation ─────────────────────────────────────────────────────

    async def process_escalations(self) -> int:
        """
        Escalate every SENT alert whose timer ran out and that has no
        escalation yet. Safe to re-run: an already escalated alert has a
        child and is skipped.
        """
        now = self._clock()
        async with self.session_factory() as session:
            result = await session.execute(
                select(AlertRecordModel).where(
                    and_(
                        AlertRecordModel.status == AlertStatus.SENT.value,
                        AlertRecordModel.escalate_after_minutes.is_not(None),
                        AlertRecordModel.escalation_level < self.max_escalation_level,
                        AlertRecordModel.created_at <= now - ESCALATION_MIN_AGE,
                    )
                )
            )
            candidates = result.scalars().all()

            due: list[uuid.UUID] = []
            for alert in candidates:
                if now - alert.created_at < timedelta(minutes=alert.escalate_after_minutes):
                    continue
                if alert.expires_at is not None and alert.expires_at <= now:
                    continue
                if await self._has_escalation(session, alert.id):
                    continue
                due.append(alert.id)

        escalated = 0
        for alert_id in due:
            try:
                if await self.escalate_alert(alert_id) is not None:
                    escalated += 1
            except Exception as e:
                logger.error("alert_escalation_failed", alert_id=str(alert_id), error=str(e))

        if escalated:
            logger.info("alert_escalations_processed", escalated=escalated, candidates=len(due))
        return escalated

    async def escalate_alert(self, alert_id) -> Optional[AlertRecord]:
        """Raise a linked alert one level above `alert_id`."""
        alert_id = as_uuid(alert_id, "alert_id")
        async with self.session_factory() as session:
            alert = await session.get(AlertRecordModel, alert_id)
            if alert is None:
                raise NotFoundError(f"Alert {alert_id} not found", details={"alert_id": str(alert_id)})
            if alert.escalation_level >= self.max_escalation_level:
                logger.info("alert_escalation_capped", alert_id=str(alert_id), level=alert.escalation_level)
                return None
            if await self._has_escalation(session, alert.id):
                return None

        new_level = alert.escalation_level + 1
        target_type, target_role = escalation_target(new_level)
        title = f"ESCALATED (level {new_level}): {alert.title}"[:255]

        child = await self.create_alert(
            AlertRequest(
                category=alert.category,
                priority=AlertPriority.HIGH,
                title=title,
                message=f"Alert unattended for {alert.escalate_after_minutes} minutes. {alert.message}",
                target_type=target_type,
                target_role=target_role,
                source=ESCALATION_SOURCE,
                source_id=str(alert.id),
                data={"original_alert_id": str(alert.id), "escalation_level": new_level},
                parent_alert_id=alert.id,
                escalation_level=new_level,
            )
        )
        if child is not None:
            logger.warning(
                "alert_escalated",
                alert_id=str(alert.id),
                escalated_alert_id=str(child.id),
                level=new_level,
                target_type=target_type.value,
                target_role=target_role,
            )
        return child

    @staticmethod
    async def _has_escalation(session: AsyncSession, alert_id: uuid.UUID) -> bool:
        result = await session.execute(
            select(func.count(AlertRecordModel.id)).where(AlertRecordModel.parent_alert_id == alert_id)
        )
        return (result.scalar() or 0) > 0

    # ── Management ─────────────────────────────────────────────────────

    async def mark_read(self, alert_id, actor_id: str) -> AlertRecord:
        alert_id = as_uuid(alert_id, "alert_id")
        async with self.session_factory() as session:
            alert = await self._get_or_404(session, alert_id)
            # ACTIONED already implies read
            if alert.status != AlertStatus.ACTIONED.value:
                alert.status = AlertStatus.READ.value
            if alert.read_at is None:
                alert.read_at = self._clock()
                alert.read_by = str(actor_id)
            await audit_logger.log(
                session,
                action="ALERT_READ",
                resource="alert",
                resource_id=alert.id,
                actor_id=actor_id,
                actor_type="employee",
            )
            await session.commit()
            return AlertRecord.from_row(alert)

    async def mark_actioned(self, alert_id, actor_id: str, action: str) -> AlertRecord:
        alert_id = as_uuid(alert_id, "alert_id")
        if not action:
            raise ValidationError("action is required", details={"field": "action"})
        async with self.session_factory() as session:
            alert = await self._get_or_404(session, alert_id)
            now = self._clock()
            alert.status = AlertStatus.ACTIONED.value
            alert.actioned_at = now
            alert.actioned_by = str(actor_id)
            alert.action_taken = action
            if alert.read_at is None:
                alert.read_at = now
                alert.read_by = str(actor_id)
            await audit_logger.log(
                session,
                action="ALERT_ACTIONED",
                resource="alert",
                resource_id=alert.id,
                actor_id=actor_id,
                actor_type="employee",
                description=action,
            )
            await session.commit()
            logger.info("alert_actioned", alert_id=str(alert_id), actor_id=str(actor_id), action=action)
            return AlertRecord.from_row(alert)

    async def get_alert(self, alert_id) -> AlertRecord:
        async with self.session_factory() as session:
            return AlertRecord.from_row(await self._get_or_404(session, as_uuid(alert_id, "alert_id")))

    async def get_alerts(self, filters: Optional[AlertFilters] = None) -> list[AlertRecord]:
        filters = filters or AlertFilters()
        conditions = []
        if filters.target_type:
            conditions.append(AlertRecordModel.target_type == filters.target_type.value)
        if filters.target_id:
            conditions.append(AlertRecordModel.target_id == filters.target_id)
        if filters.category:
            conditions.append(AlertRecordModel.category == filters.category.value)
        if filters.priority:
            conditions.append(AlertRecordModel.priority == filters.priority.value)
        if filters.status:
            conditions.append(AlertRecordModel.status == filters.status.value)
        if filters.since:
            conditions.append(AlertRecordModel.created_at >= filters.since)
        if filters.until:
            conditions.append(AlertRecordModel.created_at <= filters.until)

        stmt = select(AlertRecordModel).order_by(AlertRecordModel.created_at.desc()).limit(filters.limit)
        if conditions:
            stmt = stmt.where(and_(*conditions))
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return [AlertRecord.from_row(row) for row in result.scalars().all()]

    async def get_unread_count(self, target_type: TargetType, target_id: str) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.count(AlertRecordModel.id)).where(
                    and_(
                        AlertRecordModel.target_type == TargetType(target_type).value,
                        AlertRecordModel.target_id == str(target_id),
                        AlertRecordModel.status == AlertStatus.SENT.value,
                    )
                )
            )
            return result.scalar() or 0

    async def get_alert_stats(self, period: str = "day") -> dict:
        if period not in STATS_PERIODS:
            raise ValidationError(f"Unknown period: {period}", details={"allowed": list(STATS_PERIODS)})
        since = self._clock() - STATS_PERIODS[period]

        async with self.session_factory() as session:
            total = (
                await session.execute(
                    select(func.count(AlertRecordModel.id)).where(AlertRecordModel.created_at >= since)
                )
            ).scalar() or 0

            breakdowns: dict[str, dict[str, int]] = {}
            for name, column in (
                ("by_category", AlertRecordModel.category),
                ("by_priority", AlertRecordModel.priority),
                ("by_status", AlertRecordModel.status),
            ):
                result = await session.execute(
                    select(column, func.count(AlertRecordModel.id))
                    .where(AlertRecordModel.created_at >= since)
                    .group_by(column)
                )
                breakdowns[name] = {key: count for key, count in result.all()}

        return {"period": period, "total": total, **breakdowns}

    @staticmethod
    async def _get_or_404(session: AsyncSession, alert_id: uuid.UUID) -> AlertRecordModel:
        alert = await session.get(AlertRecordModel, alert_id)
        if alert is None:
            raise NotFoundError(f"Alert {alert_id} not found", details={"alert_id": str(alert_id)})
        return alert
