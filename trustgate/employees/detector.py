"""
Employee Anomaly Detector.

Every back-office action is appended to the activity trail and run
through eight independent checks against the employee's baseline. Each
finding is persisted and answered by severity:

    CRITICAL  terminate the active session, notify supervisor and admins
    HIGH      require dual approval on the employee's next sensitive operations
    MEDIUM    alert only
    LOW       alert only

The baseline is recomputed at most once per refresh period. When it
cannot be recomputed the stored one is used, however old.
"""

import asyncio
import uuid
from datetime import datetime, time, timedelta
from typing import Callable, Optional

import structlog
from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trustgate.alerting.presets import SecurityAlerts
from trustgate.alerting.schemas import TargetType
from trustgate.config import settings
from trustgate.db import queries
from trustgate.db.compat import as_uuid, utcnow
from trustgate.db.models import (
    Employee,
    EmployeeActivity,
    EmployeeAnomalyRecord,
    EmployeeBaselineRecord,
)
from trustgate.employees.baseline import (
    APPROVAL_KEYWORD,
    BASELINE_WINDOW,
    DATA_ACCESS_KEYWORD,
    EXPORT_KEYWORD,
    compute_baseline,
    is_stale,
)
from trustgate.employees.checks import (
    SENSITIVE_RESOURCES,
    check_approval_pattern,
    check_bulk_data_access,
    check_export_spike,
    check_geo,
    check_off_hours,
    check_sensitive_access,
    check_unassigned_client,
    check_velocity,
    is_approval,
    is_export,
    is_sensitive,
)
from trustgate.employees.schemas import (
    STATUS_TRANSITIONS,
    ActionTaken,
    AnomalyFilters,
    AnomalyFinding,
    AnomalySeverity,
    AnomalyStatus,
    EmployeeAction,
    EmployeeAnomaly,
    EmployeeAnomalyType,
    EmployeeBaseline,
    ResponseAction,
)
from trustgate.errors import DependencyUnavailableError, NotFoundError, ValidationError
from trustgate.services.audit import audit_logger

logger = structlog.get_logger(__name__)

HOUR = timedelta(hours=1)
VELOCITY_WINDOW = timedelta(minutes=5)
GEO_SESSION_SAMPLE = 5

OPEN_STATUSES = (AnomalyStatus.DETECTED, AnomalyStatus.INVESTIGATING, AnomalyStatus.CONFIRMED)
SEVERITY_POINTS: dict[AnomalySeverity, int] = {
    AnomalySeverity.CRITICAL: 40,
    AnomalySeverity.HIGH: 20,
    AnomalySeverity.MEDIUM: 10,
    AnomalySeverity.LOW: 5,
}
AUDIT_SEVERITY: dict[AnomalySeverity, str] = {
    AnomalySeverity.CRITICAL: "CRITICAL",
    AnomalySeverity.HIGH: "HIGH",
    AnomalySeverity.MEDIUM: "WARNING",
    AnomalySeverity.LOW: "INFO",
}


def _baseline_from_record(record: EmployeeBaselineRecord) -> EmployeeBaseline:
    return EmployeeBaseline(
        employee_id=record.employee_id,
        work_hours_start=record.work_hours_start,
        work_hours_end=record.work_hours_end,
        work_days=tuple(record.work_days or ()),
        avg_daily_actions=record.avg_daily_actions,
        avg_daily_data_access=record.avg_daily_data_access,
        avg_daily_approvals=record.avg_daily_approvals,
        avg_daily_exports=record.avg_daily_exports,
        assigned_client_ids=tuple(record.assigned_client_ids or ()),
        known_ips=tuple(record.known_ips or ()),
        updated_at=record.updated_at,
    )


def _action_to_dict(action: ActionTaken) -> dict:
    return {
        "action": action.action.value,
        "timestamp": action.timestamp.isoformat(),
        "performed_by": action.performed_by,
        "details": action.details,
    }


def _action_from_dict(data: dict) -> ActionTaken:
    return ActionTaken(
        action=ResponseAction(data["action"]),
        timestamp=datetime.fromisoformat(data["timestamp"]),
        performed_by=data.get("performed_by", "system"),
        details=data.get("details"),
    )


def _to_anomaly(row: EmployeeAnomalyRecord) -> EmployeeAnomaly:
    return EmployeeAnomaly(
        id=row.id,
        employee_id=row.employee_id,
        anomaly_type=EmployeeAnomalyType(row.anomaly_type),
        severity=AnomalySeverity(row.severity),
        description=row.description,
        status=AnomalyStatus(row.status),
        detected_at=row.detected_at,
        baseline=dict(row.baseline or {}),
        actual=dict(row.actual or {}),
        deviation_percent=row.deviation_percent,
        session_id=row.session_id,
        actions_taken=[_action_from_dict(a) for a in row.actions_taken or []],
        reviewed_by=row.reviewed_by,
        review_notes=row.review_notes,
        resolved_at=row.resolved_at,
        resolved_by=row.resolved_by,
    )


class EmployeeAnomalyDetector:
    """Detect, answer and track anomalous employee behavior."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        alerts: Optional[SecurityAlerts] = None,
        baseline_max_age_hours: int = settings.employee_baseline_max_age_hours,
        high_value_approval: float = settings.employee_high_value_approval,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.alerts = alerts
        self.baseline_max_age = timedelta(hours=baseline_max_age_hours)
        self.high_value_approval = high_value_approval
        self._clock = clock

    # ── Analysis ───────────────────────────────────────────────────────

    async def analyze_action(self, action: EmployeeAction) -> list[EmployeeAnomaly]:
        now = self._clock()
        async with self.session_factory() as session:
            employee = await queries.get_employee(session, action.employee_id)
            if employee is None:
                raise NotFoundError(
                    f"Employee {action.employee_id} not found",
                    details={"employee_id": str(action.employee_id)},
                )
            session.add(EmployeeActivity(
                employee_id=action.employee_id,
                action=action.action,
                resource=action.resource,
                resource_id=action.resource_id,
                ip_address=action.ip_address,
                session_id=action.session_id,
                metadata_=action.metadata,
                created_at=now,
            ))
            await session.commit()

        baseline = await self._current_baseline(action.employee_id, now)

        checks = {
            EmployeeAnomalyType.OFF_HOURS_ACCESS: self._off_hours(baseline, now),
            EmployeeAnomalyType.BULK_DATA_ACCESS: self._bulk_access(baseline, action, now),
            EmployeeAnomalyType.UNASSIGNED_CLIENT_ACCESS: self._unassigned_client(baseline, action, employee.role),
            EmployeeAnomalyType.UNUSUAL_APPROVAL_PATTERN: self._approvals(baseline, action, now),
            EmployeeAnomalyType.DATA_EXPORT_SPIKE: self._exports(baseline, action, now),
            EmployeeAnomalyType.VELOCITY_ANOMALY: self._velocity(action, now),
            EmployeeAnomalyType.GEO_ANOMALY: self._geo(baseline, action, now),
            EmployeeAnomalyType.REPEATED_SENSITIVE_ACCESS: self._sensitive(action, now),
        }
        results = await asyncio.gather(*checks.values(), return_exceptions=True)

        findings: list[AnomalyFinding] = []
        for check, result in zip(checks, results):
            if isinstance(result, BaseException):
                logger.error(
                    "employee_check_failed",
                    check=check.value,
                    employee_id=str(action.employee_id),
                    error=str(result),
                )
            elif result is not None:
                findings.append(result)

        if not findings:
            return []

        anomalies = await self._record_and_respond(employee, action, findings, now)
        for anomaly in anomalies:
            await self._notify(employee, anomaly)
        return anomalies

    async def _record_and_respond(
        self,
        employee: Employee,
        action: EmployeeAction,
        findings: list[AnomalyFinding],
        now: datetime,
    ) -> list[EmployeeAnomaly]:
        """Persist findings and apply the severity response in one transaction."""
        anomalies: list[EmployeeAnomaly] = []
        async with self.session_factory() as session:
            for finding in findings:
                taken = await self._respond(session, employee, action, finding, now)
                record = EmployeeAnomalyRecord(
                    employee_id=employee.id,
                    anomaly_type=finding.anomaly_type.value,
                    severity=finding.severity.value,
                    description=finding.description,
                    baseline=finding.baseline,
                    actual=finding.actual,
                    deviation_percent=finding.deviation_percent,
                    status=AnomalyStatus.DETECTED.value,
                    actions_taken=[_action_to_dict(a) for a in taken],
                    session_id=action.session_id,
                    detected_at=now,
                )
                session.add(record)
                await session.flush()
                await audit_logger.log(
                    session,
                    action="EMPLOYEE_ANOMALY_DETECTED",
                    resource="employee",
                    resource_id=employee.id,
                    description=f"[{finding.severity}] {finding.anomaly_type}: {finding.description}",
                    severity=AUDIT_SEVERITY[finding.severity],
                    metadata={
                        "anomaly_id": str(record.id),
                        "action": action.action,
                        "resource": action.resource,
                        "ip_address": action.ip_address,
                        "actions_taken": [a.action.value for a in taken],
                    },
                )
                anomalies.append(_to_anomaly(record))

                log = logger.error if finding.severity == AnomalySeverity.CRITICAL else logger.warning
                log(
                    "employee_anomaly_detected",
                    employee_id=str(employee.id),
                    anomaly_type=finding.anomaly_type.value,
                    severity=finding.severity.value,
                    actions_taken=[a.action.value for a in taken],
                )
            await session.commit()
        return anomalies

    async def _respond(
        self,
        session: AsyncSession,
        employee: Employee,
        action: EmployeeAction,
        finding: AnomalyFinding,
        now: datetime,
    ) -> list[ActionTaken]:
        taken: list[ActionTaken] = []
        reason = f"anomaly_{finding.anomaly_type.value}"

        if finding.severity == AnomalySeverity.CRITICAL:
            if action.session_id is not None:
                ended = await queries.terminate_employee_session(session, action.session_id, reason, now)
                if ended:
                    taken.append(ActionTaken(
                        ResponseAction.SESSION_TERMINATED, now,
                        details="Session terminated automatically on a critical anomaly",
                    ))
            taken.append(ActionTaken(ResponseAction.SUPERVISOR_NOTIFIED, now))
        elif finding.severity == AnomalySeverity.HIGH:
            row = await queries.get_employee(session, employee.id)
            if row is not None and not row.requires_dual_approval:
                row.requires_dual_approval = True
            taken.append(ActionTaken(ResponseAction.DUAL_APPROVAL_REQUIRED, now, details=reason))

        if self.alerts is not None:
            taken.append(ActionTaken(ResponseAction.ALERT_SENT, now))
        return taken

    async def _notify(self, employee: Employee, anomaly: EmployeeAnomaly) -> None:
        if self.alerts is None:
            return
        args = (employee.id, anomaly.id, anomaly.anomaly_type.value, anomaly.severity.value, anomaly.description)
        try:
            await self.alerts.employee_anomaly(*args)
            if anomaly.severity == AnomalySeverity.CRITICAL:
                if employee.supervisor_id is not None:
                    await self.alerts.employee_anomaly(
                        *args, target_type=TargetType.EMPLOYEE, target_id=str(employee.supervisor_id),
                    )
                await self.alerts.employee_anomaly(*args, target_type=TargetType.ALL_ADMINS)
        except Exception as e:
            logger.error(
                "employee_anomaly_notification_failed",
                employee_id=str(employee.id),
                anomaly_id=str(anomaly.id),
                error=str(e),
            )

    # ── Check fact loaders ─────────────────────────────────────────────

    async def _off_hours(self, baseline: EmployeeBaseline, now: datetime) -> Optional[AnomalyFinding]:
        return check_off_hours(baseline, now)

    async def _bulk_access(
        self, baseline: EmployeeBaseline, action: EmployeeAction, now: datetime,
    ) -> Optional[AnomalyFinding]:
        async with self.session_factory() as session:
            views = await queries.count_employee_activity_since(
                session, action.employee_id, now - HOUR, action_contains=DATA_ACCESS_KEYWORD,
            )
        return check_bulk_data_access(baseline, views)

    async def _unassigned_client(
        self, baseline: EmployeeBaseline, action: EmployeeAction, role: str,
    ) -> Optional[AnomalyFinding]:
        return check_unassigned_client(baseline, role, action.resource, action.resource_id)

    async def _approvals(
        self, baseline: EmployeeBaseline, action: EmployeeAction, now: datetime,
    ) -> Optional[AnomalyFinding]:
        if not is_approval(action.action):
            return None
        async with self.session_factory() as session:
            rows = await queries.get_employee_activity_since(session, action.employee_id, now - HOUR)
        approvals = [r for r in rows if APPROVAL_KEYWORD in r.action.upper()]
        high_value = sum(1 for r in approvals if self._amount(r) >= self.high_value_approval)
        return check_approval_pattern(baseline, action.action, len(approvals), high_value)

    async def _exports(
        self, baseline: EmployeeBaseline, action: EmployeeAction, now: datetime,
    ) -> Optional[AnomalyFinding]:
        if not is_export(action.action):
            return None
        async with self.session_factory() as session:
            exports = await queries.count_employee_activity_since(
                session, action.employee_id, self._start_of_day(now), action_contains=EXPORT_KEYWORD,
            )
        return check_export_spike(baseline, action.action, exports)

    async def _velocity(self, action: EmployeeAction, now: datetime) -> Optional[AnomalyFinding]:
        async with self.session_factory() as session:
            recent = await queries.count_employee_activity_since(session, action.employee_id, now - VELOCITY_WINDOW)
        return check_velocity(recent)

    async def _geo(
        self, baseline: EmployeeBaseline, action: EmployeeAction, now: datetime,
    ) -> Optional[AnomalyFinding]:
        if action.ip_address in baseline.known_ips:
            return None
        async with self.session_factory() as session:
            sessions = await queries.get_employee_sessions_since(
                session, action.employee_id, now - HOUR, limit=GEO_SESSION_SAMPLE,
            )
        return check_geo(baseline, action.ip_address, [s.ip_address for s in sessions])

    async def _sensitive(self, action: EmployeeAction, now: datetime) -> Optional[AnomalyFinding]:
        if not is_sensitive(action.action, action.resource):
            return None
        async with self.session_factory() as session:
            count = await queries.count_sensitive_activity_since(
                session, action.employee_id, self._start_of_day(now), SENSITIVE_RESOURCES,
            )
        return check_sensitive_access(action.action, action.resource, count)

    @staticmethod
    def _amount(row: EmployeeActivity) -> float:
        try:
            return float((row.metadata_ or {}).get("amount") or 0)
        except (TypeError, ValueError):
            return 0.0

    @staticmethod
    def _start_of_day(now: datetime) -> datetime:
        return datetime.combine(now.date(), time.min)

    # ── Baseline ───────────────────────────────────────────────────────

    async def _current_baseline(self, employee_id: uuid.UUID, now: datetime) -> EmployeeBaseline:
        async with self.session_factory() as session:
            result = await session.execute(
                select(EmployeeBaselineRecord).where(EmployeeBaselineRecord.employee_id == employee_id)
            )
            record = result.scalar_one_or_none()
        stored = _baseline_from_record(record) if record is not None else None
        if stored is not None and not is_stale(stored, now, self.baseline_max_age):
            return stored

        try:
            return await self._recompute_baseline(employee_id, now)
        except Exception as e:
            if stored is None:
                raise DependencyUnavailableError(
                    f"Baseline unavailable for employee {employee_id}",
                    details={"employee_id": str(employee_id)},
                ) from e
            logger.warning(
                "employee_baseline_stale_fallback",
                employee_id=str(employee_id),
                baseline_age_hours=round((now - stored.updated_at).total_seconds() / 3600, 1),
                error=str(e),
            )
            return stored

    async def refresh_baseline(self, employee_id) -> EmployeeBaseline:
        """Recompute the baseline now, whatever its age."""
        employee_id = as_uuid(employee_id, "employee_id")
        async with self.session_factory() as session:
            employee = await queries.get_employee(session, employee_id)
        if employee is None:
            raise NotFoundError(f"Employee {employee_id} not found", details={"employee_id": str(employee_id)})
        return await self._recompute_baseline(employee_id, self._clock())

    async def refresh_all_baselines(self) -> dict:
        async with self.session_factory() as session:
            employee_ids = await queries.list_active_employee_ids(session)

        refreshed = 0
        failed = 0
        for employee_id in employee_ids:
            try:
                await self._recompute_baseline(employee_id, self._clock())
                refreshed += 1
            except Exception as e:
                failed += 1
                logger.error("employee_baseline_refresh_failed", employee_id=str(employee_id), error=str(e))

        logger.info("employee_baselines_refreshed", refreshed=refreshed, failed=failed)
        return {"refreshed": refreshed, "failed": failed}

    async def _recompute_baseline(self, employee_id: uuid.UUID, now: datetime) -> EmployeeBaseline:
        since = now - BASELINE_WINDOW
        async with self.session_factory() as session:
            sessions = await queries.get_employee_sessions_since(session, employee_id, since)
            activity = await queries.get_employee_activity_since(session, employee_id, since)
            known_ips = await queries.get_employee_known_ips(session, employee_id)

        baseline = compute_baseline(
            employee_id,
            [s.created_at for s in sessions],
            [(a.action, a.created_at) for a in activity],
            known_ips,
            now,
        )
        values = {
            "work_hours_start": baseline.work_hours_start,
            "work_hours_end": baseline.work_hours_end,
            "work_days": list(baseline.work_days),
            "avg_daily_actions": baseline.avg_daily_actions,
            "avg_daily_data_access": baseline.avg_daily_data_access,
            "avg_daily_approvals": baseline.avg_daily_approvals,
            "avg_daily_exports": baseline.avg_daily_exports,
            "assigned_client_ids": list(baseline.assigned_client_ids),
            "known_ips": list(baseline.known_ips),
            "updated_at": now,
        }

        async with self.session_factory() as session:
            result = await session.execute(
                select(EmployeeBaselineRecord).where(EmployeeBaselineRecord.employee_id == employee_id)
            )
            record = result.scalar_one_or_none()
            if record is None:
                session.add(EmployeeBaselineRecord(employee_id=employee_id, **values))
                try:
                    await session.commit()
                except IntegrityError:
                    # Refreshed concurrently; that copy is just as fresh
                    await session.rollback()
            else:
                for key, value in values.items():
                    setattr(record, key, value)
                await session.commit()

        logger.info(
            "employee_baseline_refreshed",
            employee_id=str(employee_id),
            work_hours=f"{baseline.work_hours_start}-{baseline.work_hours_end}",
            known_ips=len(baseline.known_ips),
        )
        return baseline

    # ── Review ─────────────────────────────────────────────────────────

    async def get_anomalies(self, filters: Optional[AnomalyFilters] = None) -> list[EmployeeAnomaly]:
        filters = filters or AnomalyFilters()
        conditions = []
        if filters.employee_id:
            conditions.append(EmployeeAnomalyRecord.employee_id == filters.employee_id)
        if filters.status:
            conditions.append(EmployeeAnomalyRecord.status == filters.status.value)
        if filters.severity:
            conditions.append(EmployeeAnomalyRecord.severity == filters.severity.value)
        if filters.date_from:
            conditions.append(EmployeeAnomalyRecord.detected_at >= filters.date_from)
        if filters.date_to:
            conditions.append(EmployeeAnomalyRecord.detected_at <= filters.date_to)

        stmt = select(EmployeeAnomalyRecord).order_by(EmployeeAnomalyRecord.detected_at.desc())
        if conditions:
            stmt = stmt.where(and_(*conditions))
        async with self.session_factory() as session:
            result = await session.execute(stmt.limit(filters.limit))
            rows = result.scalars().all()
        return [_to_anomaly(r) for r in rows]

    async def update_anomaly_status(
        self,
        anomaly_id,
        status,
        reviewer: str,
        notes: Optional[str] = None,
    ) -> EmployeeAnomaly:
        """Move an anomaly along its review state machine."""
        anomaly_id = as_uuid(anomaly_id, "anomaly_id")
        try:
            target = AnomalyStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown anomaly status: {status!r}", details={"field": "status"})

        now = self._clock()
        async with self.session_factory() as session:
            result = await session.execute(
                select(EmployeeAnomalyRecord).where(EmployeeAnomalyRecord.id == anomaly_id)
            )
            record = result.scalar_one_or_none()
            if record is None:
                raise NotFoundError(f"Anomaly {anomaly_id} not found", details={"anomaly_id": str(anomaly_id)})

            current = AnomalyStatus(record.status)
            if target not in STATUS_TRANSITIONS[current]:
                raise ValidationError(
                    f"Cannot move anomaly from {current} to {target}",
                    code="invalid_transition",
                    details={"from": current.value, "to": target.value},
                )

            record.status = target.value
            record.reviewed_by = reviewer
            if notes is not None:
                record.review_notes = notes
            if target == AnomalyStatus.RESOLVED:
                record.resolved_at = now
                record.resolved_by = reviewer

            await audit_logger.log(
                session,
                action="EMPLOYEE_ANOMALY_STATUS_CHANGED",
                resource="employee_anomaly",
                resource_id=record.id,
                actor_id=reviewer,
                actor_type="employee",
                description=f"{current} -> {target}",
                metadata={"employee_id": str(record.employee_id), "notes": notes},
            )
            await session.commit()

        logger.info(
            "employee_anomaly_status_changed",
            anomaly_id=str(anomaly_id),
            from_status=current.value,
            to_status=target.value,
            reviewer=reviewer,
        )
        return _to_anomaly(record)

    async def clear_dual_approval(self, employee_id, actor: str) -> None:
        """Lift the dual-approval requirement after review."""
        employee_id = as_uuid(employee_id, "employee_id")
        async with self.session_factory() as session:
            employee = await queries.get_employee(session, employee_id)
            if employee is None:
                raise NotFoundError(f"Employee {employee_id} not found", details={"employee_id": str(employee_id)})
            employee.requires_dual_approval = False
            await audit_logger.log(
                session,
                action="EMPLOYEE_DUAL_APPROVAL_CLEARED",
                resource="employee",
                resource_id=employee_id,
                actor_id=actor,
                actor_type="employee",
            )
            await session.commit()
        logger.info("employee_dual_approval_cleared", employee_id=str(employee_id), actor=actor)

    async def get_employee_risk_summary(self, employee_id, days: int = 30) -> dict:
        employee_id = as_uuid(employee_id, "employee_id")
        since = self._clock() - timedelta(days=days)
        async with self.session_factory() as session:
            employee = await queries.get_employee(session, employee_id)
            if employee is None:
                raise NotFoundError(f"Employee {employee_id} not found", details={"employee_id": str(employee_id)})
            result = await session.execute(
                select(EmployeeAnomalyRecord).where(
                    and_(
                        EmployeeAnomalyRecord.employee_id == employee_id,
                        EmployeeAnomalyRecord.detected_at >= since,
                    )
                )
            )
            rows = result.scalars().all()

        by_severity = {s.value: 0 for s in AnomalySeverity}
        by_type: dict[str, int] = {}
        open_count = 0
        score = 0
        for row in rows:
            by_severity[row.severity] = by_severity.get(row.severity, 0) + 1
            by_type[row.anomaly_type] = by_type.get(row.anomaly_type, 0) + 1
            if row.status in OPEN_STATUSES:
                open_count += 1
                score += SEVERITY_POINTS.get(AnomalySeverity(row.severity), 0)
        score = min(100, score)

        if score >= 70:
            level = "CRITICAL"
        elif score >= 40:
            level = "HIGH"
        elif score >= 15:
            level = "MEDIUM"
        else:
            level = "LOW"

        return {
            "employee_id": str(employee_id),
            "role": employee.role,
            "period_days": days,
            "total_anomalies": len(rows),
            "open_anomalies": open_count,
            "by_severity": by_severity,
            "by_type": by_type,
            "risk_score": score,
            "risk_level": level,
            "requires_dual_approval": employee.requires_dual_approval,
        }
