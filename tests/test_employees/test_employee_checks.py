"""
Tests for employee baselines and the anomaly checks.

Covers:
- Work hours from session-start percentiles, work days by share
- Daily averages over active days
- Each check's firing condition and severity
"""

import uuid
from datetime import datetime, timedelta

from trustgate.employees.baseline import compute_baseline, is_stale, work_days, work_hours
from trustgate.employees.checks import (
    check_approval_pattern,
    check_bulk_data_access,
    check_export_spike,
    check_geo,
    check_off_hours,
    check_sensitive_access,
    check_unassigned_client,
    check_velocity,
    deviation_percent,
)
from trustgate.employees.schemas import AnomalySeverity, EmployeeAnomalyType, EmployeeBaseline

MONDAY = datetime(2026, 3, 2)
EMPLOYEE_ID = uuid.uuid4()


def _baseline(**fields) -> EmployeeBaseline:
    return EmployeeBaseline(employee_id=EMPLOYEE_ID, **fields)


class TestBaseline:
    def test_defaults_without_sessions(self):
        assert work_hours([]) == (9, 18)
        assert work_days([]) == (0, 1, 2, 3, 4)

    def test_work_hours_percentiles(self):
        starts = [MONDAY.replace(hour=h) for h in (7, 8, 9, 9, 10, 10, 11, 12, 17, 22)]
        # floor(10 × 0.1) = 1 → 8, floor(10 × 0.9) = 9 → 22
        assert work_hours(starts) == (8, 22)

    def test_work_days_needs_more_than_ten_percent(self):
        starts = [MONDAY + timedelta(days=d) for d in (0, 0, 0, 1, 1, 1, 2, 2, 2, 5)]
        # Saturday holds exactly 10% and is dropped
        assert work_days(starts) == (0, 1, 2)

    def test_daily_averages_over_active_days(self):
        activity = [
            ("VIEW_CLIENT", MONDAY.replace(hour=10)),
            ("VIEW_CLIENT", MONDAY.replace(hour=11)),
            ("APPROVE_FINANCING", MONDAY.replace(hour=12)),
            ("EXPORT_REPORT", (MONDAY + timedelta(days=1)).replace(hour=10)),
        ]
        baseline = compute_baseline(EMPLOYEE_ID, [], activity, ["10.0.0.2", "10.0.0.1", "10.0.0.2"], MONDAY)
        assert baseline.avg_daily_actions == 2
        assert baseline.avg_daily_data_access == 1
        assert baseline.avg_daily_approvals == 0.5
        assert baseline.avg_daily_exports == 0.5
        assert baseline.known_ips == ("10.0.0.1", "10.0.0.2")
        assert baseline.assigned_client_ids == ()

    def test_staleness(self):
        baseline = _baseline(updated_at=MONDAY)
        assert not is_stale(baseline, MONDAY + timedelta(hours=23), timedelta(hours=24))
        assert is_stale(baseline, MONDAY + timedelta(hours=24), timedelta(hours=24))
        assert is_stale(_baseline(), MONDAY, timedelta(hours=24))


class TestChecks:
    def test_off_hours(self):
        baseline = _baseline()
        assert check_off_hours(baseline, MONDAY.replace(hour=14)) is None
        assert check_off_hours(baseline, MONDAY.replace(hour=18)) is None

        night = check_off_hours(baseline, MONDAY.replace(hour=22))
        assert night.anomaly_type == EmployeeAnomalyType.OFF_HOURS_ACCESS
        assert night.severity == AnomalySeverity.MEDIUM

        sunday = check_off_hours(baseline, MONDAY.replace(hour=11) - timedelta(days=1))
        assert "non-working day" in sunday.description

    def test_bulk_access(self):
        baseline = _baseline(avg_daily_data_access=10)
        assert check_bulk_data_access(baseline, 30) is None
        finding = check_bulk_data_access(baseline, 31)
        assert finding.severity == AnomalySeverity.HIGH
        assert finding.deviation_percent == 210.0

    def test_unassigned_client(self):
        baseline = _baseline()
        assert check_unassigned_client(baseline, "ANALYST", "user", "u-1") is not None
        assert check_unassigned_client(baseline, "CUSTOMER_SERVICE", "user", "u-1") is None
        assert check_unassigned_client(baseline, "ANALYST", "report", "u-1") is None
        assert check_unassigned_client(_baseline(assigned_client_ids=("u-1",)), "ANALYST", "user", "u-1") is None

    def test_approvals(self):
        baseline = _baseline(avg_daily_approvals=1)
        assert check_approval_pattern(baseline, "VIEW_CLIENT", 20, 0) is None
        assert check_approval_pattern(baseline, "APPROVE_LOAN", 4, 0) is None
        assert check_approval_pattern(baseline, "APPROVE_LOAN", 5, 0).severity == AnomalySeverity.HIGH
        assert check_approval_pattern(baseline, "APPROVE_LOAN", 5, 1).severity == AnomalySeverity.CRITICAL

    def test_export_spike_minimum(self):
        baseline = _baseline(avg_daily_exports=0)
        assert check_export_spike(baseline, "EXPORT_CSV", 2) is None
        assert check_export_spike(baseline, "EXPORT_CSV", 3) is not None
        assert check_export_spike(_baseline(avg_daily_exports=2), "EXPORT_CSV", 5) is None

    def test_velocity(self):
        assert check_velocity(50) is None
        assert check_velocity(51).anomaly_type == EmployeeAnomalyType.VELOCITY_ANOMALY

    def test_geo(self):
        ips = ["1.1.1.1", "2.2.2.2", "3.3.3.3", None]
        assert check_geo(_baseline(), "9.9.9.9", ips).anomaly_type == EmployeeAnomalyType.GEO_ANOMALY
        assert check_geo(_baseline(known_ips=("9.9.9.9",)), "9.9.9.9", ips) is None
        assert check_geo(_baseline(), "9.9.9.9", ips[:2]) is None

    def test_sensitive(self):
        assert check_sensitive_access("VIEW_DNI", "user", 5) is not None
        assert check_sensitive_access("VIEW", "kyc_documents", 4) is None
        assert check_sensitive_access("VIEW_NAME", "user", 10) is None

    def test_deviation_without_baseline(self):
        assert deviation_percent(3, 0) == 300.0
