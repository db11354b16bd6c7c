"""
Tests for the Employee Anomaly Detector.

Covers:
- Activity appended before checks run
- Severity responses: alert only, dual approval, session termination
- Stored-baseline fallback and fail-closed without any baseline
- Review state machine and risk summary
"""

import uuid
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from conftest import NOW, add_rows, make_employee, make_employee_session
from trustgate.alerting.schemas import TargetType
from trustgate.db.models import EmployeeActivity, EmployeeBaselineRecord, EmployeeSession
from trustgate.db import queries
from trustgate.employees.detector import EmployeeAnomalyDetector
from trustgate.employees.schemas import (
    AnomalySeverity,
    AnomalyStatus,
    EmployeeAction,
    EmployeeAnomalyType,
    ResponseAction,
)
from trustgate.errors import DependencyUnavailableError, NotFoundError, ValidationError


class RecordingAlerts:
    def __init__(self):
        self.calls = []

    async def employee_anomaly(self, *args, **kwargs):
        self.calls.append((args, kwargs))


@pytest.fixture
def detector(session_factory, clock):
    return EmployeeAnomalyDetector(session_factory, clock=clock)


async def _store_baseline(session_factory, employee_id, updated_at=NOW, **fields):
    values = {
        "work_hours_start": 9,
        "work_hours_end": 18,
        "work_days": [0, 1, 2, 3, 4],
        "known_ips": ["10.0.0.5"],
        "updated_at": updated_at,
    }
    values.update(fields)
    await add_rows(session_factory, EmployeeBaselineRecord(employee_id=employee_id, **values))


async def _activity(session_factory, employee_id, action, count, minutes_ago=10, **fields):
    rows = [
        EmployeeActivity(
            employee_id=employee_id,
            action=action,
            resource=fields.get("resource", "financing"),
            ip_address="10.0.0.5",
            metadata_=fields.get("metadata", {}),
            created_at=NOW - timedelta(minutes=minutes_ago),
        )
        for _ in range(count)
    ]
    await add_rows(session_factory, *rows)


def _action(employee_id, **overrides) -> EmployeeAction:
    values = {
        "employee_id": employee_id,
        "action": "LOGIN",
        "resource": "session",
        "ip_address": "10.0.0.5",
    }
    values.update(overrides)
    return EmployeeAction(**values)


class TestAnalysis:
    @pytest.mark.asyncio
    async def test_off_hours_login_on_sunday(self, detector, session_factory, clock):
        employee = await make_employee(session_factory)
        clock.now = datetime(2026, 3, 1, 3, 0, 0)

        anomalies = await detector.analyze_action(_action(employee.id))
        assert [a.anomaly_type for a in anomalies] == [EmployeeAnomalyType.OFF_HOURS_ACCESS]
        assert anomalies[0].severity == AnomalySeverity.MEDIUM
        assert anomalies[0].status == AnomalyStatus.DETECTED
        assert anomalies[0].actions_taken == []

        async with session_factory() as session:
            rows = (await session.execute(select(EmployeeActivity))).scalars().all()
        assert [r.action for r in rows] == ["LOGIN"]

    @pytest.mark.asyncio
    async def test_normal_action(self, detector, session_factory):
        employee = await make_employee(session_factory)
        await _store_baseline(session_factory, employee.id)
        assert await detector.analyze_action(_action(employee.id)) == []

    @pytest.mark.asyncio
    async def test_unknown_employee(self, detector):
        with pytest.raises(NotFoundError):
            await detector.analyze_action(_action(uuid.uuid4()))

    @pytest.mark.asyncio
    async def test_bulk_access_requires_dual_approval(self, detector, session_factory):
        employee = await make_employee(session_factory)
        await _store_baseline(session_factory, employee.id, avg_daily_data_access=1.0)
        await _activity(session_factory, employee.id, "VIEW_CLIENT", 3, resource="user_list")

        anomalies = await detector.analyze_action(_action(employee.id, action="VIEW_CLIENT", resource="user_list"))
        assert [a.anomaly_type for a in anomalies] == [EmployeeAnomalyType.BULK_DATA_ACCESS]
        assert [t.action for t in anomalies[0].actions_taken] == [ResponseAction.DUAL_APPROVAL_REQUIRED]

        async with session_factory() as session:
            row = await queries.get_employee(session, employee.id)
        assert row.requires_dual_approval is True

        await detector.clear_dual_approval(employee.id, actor="supervisor-1")
        async with session_factory() as session:
            row = await queries.get_employee(session, employee.id)
        assert row.requires_dual_approval is False

    @pytest.mark.asyncio
    async def test_critical_approvals_terminate_session(self, session_factory, clock):
        alerts = RecordingAlerts()
        detector = EmployeeAnomalyDetector(session_factory, alerts=alerts, clock=clock)
        supervisor = await make_employee(session_factory, role="SUPERVISOR")
        employee = await make_employee(session_factory, supervisor_id=supervisor.id)
        emp_session = await make_employee_session(session_factory, employee.id)
        await _store_baseline(session_factory, employee.id, avg_daily_approvals=1.0)
        await _activity(
            session_factory, employee.id, "APPROVE_FINANCING", 4, metadata={"amount": 2_000_000},
        )

        anomalies = await detector.analyze_action(_action(
            employee.id,
            action="APPROVE_FINANCING",
            resource="financing",
            session_id=emp_session.id,
            metadata={"amount": 50_000},
        ))
        assert [a.anomaly_type for a in anomalies] == [EmployeeAnomalyType.UNUSUAL_APPROVAL_PATTERN]
        anomaly = anomalies[0]
        assert anomaly.severity == AnomalySeverity.CRITICAL
        assert [t.action for t in anomaly.actions_taken] == [
            ResponseAction.SESSION_TERMINATED,
            ResponseAction.SUPERVISOR_NOTIFIED,
            ResponseAction.ALERT_SENT,
        ]

        async with session_factory() as session:
            row = await session.get(EmployeeSession, emp_session.id)
        assert row.is_active is False
        assert row.terminated_reason == "anomaly_UNUSUAL_APPROVAL_PATTERN"

        targets = [kwargs.get("target_type") for _, kwargs in alerts.calls]
        assert targets == [None, TargetType.EMPLOYEE, TargetType.ALL_ADMINS]
        assert alerts.calls[1][1]["target_id"] == str(supervisor.id)


class TestBaselineLifecycle:
    @pytest.mark.asyncio
    async def test_stale_baseline_used_when_refresh_fails(self, detector, session_factory, monkeypatch):
        employee = await make_employee(session_factory)
        await _store_baseline(session_factory, employee.id, updated_at=NOW - timedelta(days=10))

        async def broken(*args):
            raise RuntimeError("activity store unreachable")

        monkeypatch.setattr(detector, "_recompute_baseline", broken)
        assert await detector.analyze_action(_action(employee.id)) == []

    @pytest.mark.asyncio
    async def test_no_baseline_fails_closed(self, detector, session_factory, monkeypatch):
        employee = await make_employee(session_factory)

        async def broken(*args):
            raise RuntimeError("activity store unreachable")

        monkeypatch.setattr(detector, "_recompute_baseline", broken)
        with pytest.raises(DependencyUnavailableError):
            await detector.analyze_action(_action(employee.id))

    @pytest.mark.asyncio
    async def test_refresh_from_sessions(self, detector, session_factory):
        employee = await make_employee(session_factory)
        for days in range(1, 11):
            await make_employee_session(
                session_factory, employee.id, created_at=(NOW - timedelta(days=days)).replace(hour=10),
            )

        baseline = await detector.refresh_baseline(employee.id)
        assert (baseline.work_hours_start, baseline.work_hours_end) == (10, 10)
        assert baseline.known_ips == ("10.0.0.5",)

        result = await detector.refresh_all_baselines()
        assert result == {"refreshed": 1, "failed": 0}


class TestReview:
    @pytest.mark.asyncio
    async def test_state_machine(self, detector, session_factory, clock):
        employee = await make_employee(session_factory)
        clock.now = datetime(2026, 3, 1, 3, 0, 0)
        anomaly = (await detector.analyze_action(_action(employee.id)))[0]

        with pytest.raises(ValidationError) as exc:
            await detector.update_anomaly_status(anomaly.id, "RESOLVED", reviewer="sec-1")
        assert exc.value.code == "invalid_transition"

        with pytest.raises(ValidationError):
            await detector.update_anomaly_status(anomaly.id, "ARCHIVED", reviewer="sec-1")

        investigating = await detector.update_anomaly_status(anomaly.id, "INVESTIGATING", reviewer="sec-1")
        assert investigating.status == AnomalyStatus.INVESTIGATING
        assert investigating.resolved_at is None

        resolved = await detector.update_anomaly_status(
            anomaly.id, AnomalyStatus.RESOLVED, reviewer="sec-2", notes="Night shift cover",
        )
        assert resolved.status == AnomalyStatus.RESOLVED
        assert resolved.resolved_by == "sec-2"
        assert resolved.review_notes == "Night shift cover"

    @pytest.mark.asyncio
    async def test_unknown_anomaly(self, detector):
        with pytest.raises(NotFoundError):
            await detector.update_anomaly_status(uuid.uuid4(), "INVESTIGATING", reviewer="sec-1")

    @pytest.mark.asyncio
    async def test_risk_summary(self, detector, session_factory, clock):
        employee = await make_employee(session_factory)
        clock.now = datetime(2026, 3, 1, 3, 0, 0)
        anomaly = (await detector.analyze_action(_action(employee.id)))[0]

        summary = await detector.get_employee_risk_summary(employee.id)
        assert summary["total_anomalies"] == 1
        assert summary["open_anomalies"] == 1
        assert summary["risk_score"] == 10
        assert summary["risk_level"] == "LOW"
        assert summary["by_type"] == {"OFF_HOURS_ACCESS": 1}

        await detector.update_anomaly_status(anomaly.id, "FALSE_POSITIVE", reviewer="sec-1")
        summary = await detector.get_employee_risk_summary(employee.id)
        assert summary["open_anomalies"] == 0
        assert summary["risk_score"] == 0

        listed = await detector.get_anomalies()
        assert [a.id for a in listed] == [anomaly.id]
