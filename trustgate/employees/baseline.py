"""
Employee baseline.

A 30-day rolling picture of how an employee normally works: the band of
hours their sessions start in, the weekdays they work, average daily
volumes for four action families and the IPs they connect from.
"""

import math
import uuid
from collections import Counter
from datetime import datetime, timedelta
from typing import Iterable, Sequence

from trustgate.employees.schemas import EmployeeBaseline

BASELINE_WINDOW = timedelta(days=30)

DEFAULT_WORK_HOURS = (9, 18)
DEFAULT_WORK_DAYS = (0, 1, 2, 3, 4)      # Monday-Friday
WORK_DAY_MIN_SHARE = 0.1

# Action-name keywords for each averaged family
DATA_ACCESS_KEYWORD = "VIEW"
APPROVAL_KEYWORD = "APPROVE"
EXPORT_KEYWORD = "EXPORT"


def percentile_hour(sorted_hours: Sequence[int], fraction: float, default: int) -> int:
    if not sorted_hours:
        return default
    index = min(len(sorted_hours) - 1, math.floor(len(sorted_hours) * fraction))
    return sorted_hours[index]


def work_hours(session_starts: Sequence[datetime]) -> tuple[int, int]:
    """10th and 90th percentile of session start hours."""
    hours = sorted(s.hour for s in session_starts)
    return (
        percentile_hour(hours, 0.1, DEFAULT_WORK_HOURS[0]),
        percentile_hour(hours, 0.9, DEFAULT_WORK_HOURS[1]),
    )


def work_days(session_starts: Sequence[datetime]) -> tuple[int, ...]:
    """Weekdays holding more than 10% of the sessions."""
    if not session_starts:
        return DEFAULT_WORK_DAYS
    counts = Counter(s.weekday() for s in session_starts)
    days = tuple(sorted(d for d, n in counts.items() if n > len(session_starts) * WORK_DAY_MIN_SHARE))
    return days or DEFAULT_WORK_DAYS


def _contains(action: str, keyword: str) -> bool:
    return keyword in action.upper()


def compute_baseline(
    employee_id: uuid.UUID,
    session_starts: Sequence[datetime],
    activity: Iterable[tuple[str, datetime]],
    known_ips: Iterable[str],
    now: datetime,
) -> EmployeeBaseline:
    """`activity` is (action, created_at) for the window."""
    activity = list(activity)
    active_days = len({created_at.date() for _, created_at in activity}) or 1

    def daily(keyword: str) -> float:
        return sum(1 for action, _ in activity if _contains(action, keyword)) / active_days

    start, end = work_hours(session_starts)
    return EmployeeBaseline(
        employee_id=employee_id,
        work_hours_start=start,
        work_hours_end=end,
        work_days=work_days(session_starts),
        avg_daily_actions=len(activity) / active_days,
        avg_daily_data_access=daily(DATA_ACCESS_KEYWORD),
        avg_daily_approvals=daily(APPROVAL_KEYWORD),
        avg_daily_exports=daily(EXPORT_KEYWORD),
        assigned_client_ids=(),
        known_ips=tuple(sorted(set(known_ips))),
        updated_at=now,
    )


def is_stale(baseline: EmployeeBaseline, now: datetime, max_age: timedelta) -> bool:
    return baseline.updated_at is None or now - baseline.updated_at >= max_age
