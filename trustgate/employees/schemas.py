"""
Employee Anomaly schemas.

An anomaly is born DETECTED and moves only through explicit reviewer
action: DETECTED → {INVESTIGATING, FALSE_POSITIVE, CONFIRMED} → RESOLVED.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Optional

from pydantic import BaseModel, Field


class EmployeeAnomalyType(StrEnum):
    OFF_HOURS_ACCESS = "OFF_HOURS_ACCESS"
    BULK_DATA_ACCESS = "BULK_DATA_ACCESS"
    UNASSIGNED_CLIENT_ACCESS = "UNASSIGNED_CLIENT_ACCESS"
    UNUSUAL_APPROVAL_PATTERN = "UNUSUAL_APPROVAL_PATTERN"
    DATA_EXPORT_SPIKE = "DATA_EXPORT_SPIKE"
    PRIVILEGE_ESCALATION = "PRIVILEGE_ESCALATION"
    REPEATED_SENSITIVE_ACCESS = "REPEATED_SENSITIVE_ACCESS"
    MODIFICATION_WITHOUT_TICKET = "MODIFICATION_WITHOUT_TICKET"
    VELOCITY_ANOMALY = "VELOCITY_ANOMALY"
    GEO_ANOMALY = "GEO_ANOMALY"


class AnomalySeverity(StrEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class AnomalyStatus(StrEnum):
    DETECTED = "DETECTED"
    INVESTIGATING = "INVESTIGATING"
    FALSE_POSITIVE = "FALSE_POSITIVE"
    CONFIRMED = "CONFIRMED"
    RESOLVED = "RESOLVED"


STATUS_TRANSITIONS: dict[AnomalyStatus, frozenset[AnomalyStatus]] = {
    AnomalyStatus.DETECTED: frozenset({
        AnomalyStatus.INVESTIGATING,
        AnomalyStatus.FALSE_POSITIVE,
        AnomalyStatus.CONFIRMED,
    }),
    AnomalyStatus.INVESTIGATING: frozenset({
        AnomalyStatus.FALSE_POSITIVE,
        AnomalyStatus.CONFIRMED,
        AnomalyStatus.RESOLVED,
    }),
    AnomalyStatus.FALSE_POSITIVE: frozenset({AnomalyStatus.RESOLVED}),
    AnomalyStatus.CONFIRMED: frozenset({AnomalyStatus.RESOLVED}),
    AnomalyStatus.RESOLVED: frozenset(),
}


class ResponseAction(StrEnum):
    ALERT_SENT = "ALERT_SENT"
    SESSION_TERMINATED = "SESSION_TERMINATED"
    DUAL_APPROVAL_REQUIRED = "DUAL_APPROVAL_REQUIRED"
    SUPERVISOR_NOTIFIED = "SUPERVISOR_NOTIFIED"


class EmployeeAction(BaseModel):
    """One back-office action to analyze."""
    employee_id: uuid.UUID
    action: str = Field(..., min_length=1, max_length=100)
    resource: str = Field(..., min_length=1, max_length=100)
    resource_id: Optional[str] = None
    ip_address: str = Field(..., min_length=1, max_length=45)
    user_agent: Optional[str] = None
    session_id: Optional[uuid.UUID] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class AnomalyFilters(BaseModel):
    employee_id: Optional[uuid.UUID] = None
    status: Optional[AnomalyStatus] = None
    severity: Optional[AnomalySeverity] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    limit: int = Field(default=50, ge=1, le=500)


@dataclass(frozen=True)
class EmployeeBaseline:
    employee_id: uuid.UUID
    work_hours_start: int = 9
    work_hours_end: int = 18
    work_days: tuple[int, ...] = (0, 1, 2, 3, 4)         # 0 = Monday
    avg_daily_actions: float = 0.0
    avg_daily_data_access: float = 0.0
    avg_daily_approvals: float = 0.0
    avg_daily_exports: float = 0.0
    # Client assignment is not sourced anywhere yet; stays empty
    assigned_client_ids: tuple[str, ...] = ()
    known_ips: tuple[str, ...] = ()
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class AnomalyFinding:
    """A check's output before it is persisted."""
    anomaly_type: EmployeeAnomalyType
    severity: AnomalySeverity
    description: str
    baseline: dict = field(default_factory=dict)
    actual: dict = field(default_factory=dict)
    deviation_percent: float = 0.0


@dataclass(frozen=True)
class ActionTaken:
    action: ResponseAction
    timestamp: datetime
    performed_by: str = "system"
    details: Optional[str] = None


@dataclass(frozen=True)
class EmployeeAnomaly:
    id: uuid.UUID
    employee_id: uuid.UUID
    anomaly_type: EmployeeAnomalyType
    severity: AnomalySeverity
    description: str
    status: AnomalyStatus
    detected_at: datetime
    baseline: dict = field(default_factory=dict)
    actual: dict = field(default_factory=dict)
    deviation_percent: float = 0.0
    session_id: Optional[uuid.UUID] = None
    actions_taken: list[ActionTaken] = field(default_factory=list)
    reviewed_by: Optional[str] = None
    review_notes: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
