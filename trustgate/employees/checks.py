"""
Employee anomaly checks.

Eight independent checks. Each takes the baseline plus the counts it
needs, already loaded, and returns at most one finding.
"""

from datetime import datetime
from typing import Optional, Sequence

from trustgate.employees.baseline import APPROVAL_KEYWORD, EXPORT_KEYWORD
from trustgate.employees.schemas import (
    AnomalyFinding,
    AnomalySeverity,
    EmployeeAnomalyType,
    EmployeeBaseline,
)

BULK_ACCESS_MULTIPLIER = 3
APPROVAL_MULTIPLIER = 2
APPROVAL_MIN_COUNT = 5
EXPORT_MULTIPLIER = 3
EXPORT_MIN_COUNT = 3
VELOCITY_MAX_ACTIONS = 50            # per 5 minutes
GEO_MIN_DISTINCT_IPS = 3
SENSITIVE_MIN_COUNT = 5

UNRESTRICTED_CLIENT_ROLES = frozenset({"CUSTOMER_SERVICE", "SUPER_ADMIN"})
CLIENT_RESOURCE = "user"
SENSITIVE_FIELDS = ("password", "dni", "cvu", "balance", "cuil", "income")
SENSITIVE_RESOURCES = ("kyc_documents", "fraud_alerts", "risk_flags")

WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


def deviation_percent(actual: float, baseline: float) -> float:
    if baseline > 0:
        return round((actual - baseline) / baseline * 100, 2)
    return round(actual * 100, 2)


def is_approval(action: str) -> bool:
    return APPROVAL_KEYWORD in action.upper()


def is_export(action: str) -> bool:
    return EXPORT_KEYWORD in action.upper()


def is_sensitive(action: str, resource: str) -> bool:
    lowered = action.lower()
    return any(f in lowered for f in SENSITIVE_FIELDS) or resource in SENSITIVE_RESOURCES


# ── Checks ────────────────────────────────────────────────────────────────


def check_off_hours(baseline: EmployeeBaseline, now: datetime) -> Optional[AnomalyFinding]:
    hour, weekday = now.hour, now.weekday()
    off_hours = hour < baseline.work_hours_start or hour > baseline.work_hours_end
    off_day = weekday not in baseline.work_days
    if not (off_hours or off_day):
        return None
    return AnomalyFinding(
        anomaly_type=EmployeeAnomalyType.OFF_HOURS_ACCESS,
        severity=AnomalySeverity.MEDIUM,
        description=(
            f"Access outside working hours ({hour:02d}:00 on {WEEKDAY_NAMES[weekday]}"
            f"{', non-working day' if off_day else ''})"
        ),
        baseline={
            "start": baseline.work_hours_start,
            "end": baseline.work_hours_end,
            "days": list(baseline.work_days),
        },
        actual={"hour": hour, "weekday": weekday},
    )


def check_bulk_data_access(baseline: EmployeeBaseline, views_last_hour: int) -> Optional[AnomalyFinding]:
    threshold = baseline.avg_daily_data_access * BULK_ACCESS_MULTIPLIER
    if views_last_hour <= threshold:
        return None
    return AnomalyFinding(
        anomaly_type=EmployeeAnomalyType.BULK_DATA_ACCESS,
        severity=AnomalySeverity.HIGH,
        description=(
            f"Bulk data access: {views_last_hour} reads in 1 hour "
            f"(daily average {baseline.avg_daily_data_access:.1f})"
        ),
        baseline={"avg_daily_data_access": baseline.avg_daily_data_access},
        actual={"views_last_hour": views_last_hour},
        deviation_percent=deviation_percent(views_last_hour, baseline.avg_daily_data_access),
    )


def check_unassigned_client(
    baseline: EmployeeBaseline, role: str, resource: str, resource_id: Optional[str],
) -> Optional[AnomalyFinding]:
    if resource != CLIENT_RESOURCE or not resource_id:
        return None
    if resource_id in baseline.assigned_client_ids or role in UNRESTRICTED_CLIENT_ROLES:
        return None
    return AnomalyFinding(
        anomaly_type=EmployeeAnomalyType.UNASSIGNED_CLIENT_ACCESS,
        severity=AnomalySeverity.MEDIUM,
        description=f"Access to unassigned client {resource_id}",
        baseline={"assigned_clients": len(baseline.assigned_client_ids)},
        actual={"client_id": resource_id},
    )


def check_approval_pattern(
    baseline: EmployeeBaseline, action: str, approvals_last_hour: int, high_value_approvals: int,
) -> Optional[AnomalyFinding]:
    if not is_approval(action):
        return None
    threshold = baseline.avg_daily_approvals * APPROVAL_MULTIPLIER
    if approvals_last_hour <= threshold or approvals_last_hour < APPROVAL_MIN_COUNT:
        return None
    return AnomalyFinding(
        anomaly_type=EmployeeAnomalyType.UNUSUAL_APPROVAL_PATTERN,
        severity=AnomalySeverity.CRITICAL if high_value_approvals > 0 else AnomalySeverity.HIGH,
        description=(
            f"Unusual approval pattern: {approvals_last_hour} in 1 hour "
            f"({high_value_approvals} high value)"
        ),
        baseline={"avg_daily_approvals": baseline.avg_daily_approvals},
        actual={"approvals_last_hour": approvals_last_hour, "high_value_approvals": high_value_approvals},
        deviation_percent=deviation_percent(approvals_last_hour, baseline.avg_daily_approvals),
    )


def check_export_spike(
    baseline: EmployeeBaseline, action: str, exports_today: int,
) -> Optional[AnomalyFinding]:
    if not is_export(action):
        return None
    threshold = max(baseline.avg_daily_exports * EXPORT_MULTIPLIER, EXPORT_MIN_COUNT)
    if exports_today < threshold:
        return None
    return AnomalyFinding(
        anomaly_type=EmployeeAnomalyType.DATA_EXPORT_SPIKE,
        severity=AnomalySeverity.HIGH,
        description=f"Export spike: {exports_today} today (average {baseline.avg_daily_exports:.1f})",
        baseline={"avg_daily_exports": baseline.avg_daily_exports},
        actual={"exports_today": exports_today},
        deviation_percent=deviation_percent(exports_today, baseline.avg_daily_exports),
    )


def check_velocity(actions_last_5min: int) -> Optional[AnomalyFinding]:
    if actions_last_5min <= VELOCITY_MAX_ACTIONS:
        return None
    return AnomalyFinding(
        anomaly_type=EmployeeAnomalyType.VELOCITY_ANOMALY,
        severity=AnomalySeverity.HIGH,
        description=f"Action velocity: {actions_last_5min} actions in 5 minutes (possible automation)",
        baseline={"max_actions_5min": VELOCITY_MAX_ACTIONS},
        actual={"actions_5min": actions_last_5min, "per_second": round(actions_last_5min / 300, 3)},
    )


def check_geo(
    baseline: EmployeeBaseline, ip_address: str, recent_session_ips: Sequence[Optional[str]],
) -> Optional[AnomalyFinding]:
    if ip_address in baseline.known_ips:
        return None
    distinct_ips = sorted({ip for ip in recent_session_ips if ip})
    if len(distinct_ips) < GEO_MIN_DISTINCT_IPS:
        return None
    return AnomalyFinding(
        anomaly_type=EmployeeAnomalyType.GEO_ANOMALY,
        severity=AnomalySeverity.HIGH,
        description=f"Multiple locations in 1 hour: {len(distinct_ips)} different IPs",
        baseline={"known_ips": list(baseline.known_ips)},
        actual={"current_ip": ip_address, "recent_ips": distinct_ips},
    )


def check_sensitive_access(action: str, resource: str, sensitive_today: int) -> Optional[AnomalyFinding]:
    if not is_sensitive(action, resource):
        return None
    if sensitive_today < SENSITIVE_MIN_COUNT:
        return None
    return AnomalyFinding(
        anomaly_type=EmployeeAnomalyType.REPEATED_SENSITIVE_ACCESS,
        severity=AnomalySeverity.MEDIUM,
        description=f"Repeated sensitive data access: {sensitive_today} times today",
        baseline={"max_daily": SENSITIVE_MIN_COUNT},
        actual={"sensitive_today": sensitive_today, "resource": resource, "action": action},
    )
