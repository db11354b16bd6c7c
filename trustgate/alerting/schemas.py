"""
Alert Schemas.

Defines alert categories, priorities, channels, targets and the alert
request / record models shared by every component that raises alerts.
"""

import uuid
from datetime import datetime
from enum import StrEnum
from typing import Any, Optional

from pydantic import BaseModel, Field


# ── Enums ──────────────────────────────────────────────────────────────


class AlertCategory(StrEnum):
    SECURITY = "SECURITY"
    FRAUD = "FRAUD"
    COMPLIANCE = "COMPLIANCE"
    SYSTEM = "SYSTEM"
    BUSINESS = "BUSINESS"
    USER_ACTION = "USER_ACTION"


class AlertPriority(StrEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"
    EMERGENCY = "EMERGENCY"


class AlertChannel(StrEnum):
    IN_APP = "IN_APP"
    PUSH = "PUSH"
    TELEGRAM = "TELEGRAM"
    EMAIL = "EMAIL"
    SMS = "SMS"
    WEBHOOK = "WEBHOOK"


class AlertStatus(StrEnum):
    PENDING = "PENDING"
    SENT = "SENT"
    READ = "READ"
    ACTIONED = "ACTIONED"
    EXPIRED = "EXPIRED"


class TargetType(StrEnum):
    USER = "USER"
    EMPLOYEE = "EMPLOYEE"
    ROLE = "ROLE"
    TEAM = "TEAM"
    ALL_ADMINS = "ALL_ADMINS"


# ── Routing tables ─────────────────────────────────────────────────────

PRIORITY_CHANNELS: dict[AlertPriority, list[AlertChannel]] = {
    AlertPriority.LOW: [AlertChannel.IN_APP],
    AlertPriority.MEDIUM: [AlertChannel.IN_APP, AlertChannel.PUSH],
    AlertPriority.HIGH: [AlertChannel.IN_APP, AlertChannel.PUSH, AlertChannel.TELEGRAM],
    AlertPriority.CRITICAL: [
        AlertChannel.IN_APP, AlertChannel.PUSH, AlertChannel.TELEGRAM, AlertChannel.EMAIL,
    ],
    AlertPriority.EMERGENCY: [
        AlertChannel.IN_APP, AlertChannel.PUSH, AlertChannel.TELEGRAM,
        AlertChannel.EMAIL, AlertChannel.SMS, AlertChannel.WEBHOOK,
    ],
}

# Minutes an alert may stay unread before the escalation sweep picks it up
ESCALATION_MINUTES: dict[AlertPriority, int] = {
    AlertPriority.LOW: 1440,
    AlertPriority.MEDIUM: 240,
    AlertPriority.HIGH: 60,
    AlertPriority.CRITICAL: 15,
    AlertPriority.EMERGENCY: 5,
}

ADMIN_ROLES = ("SUPER_ADMIN", "ADMIN")


# ── Request / Record ───────────────────────────────────────────────────


class AlertRequest(BaseModel):
    """Everything a caller supplies to raise an alert."""
    category: AlertCategory
    priority: AlertPriority
    title: str = Field(..., min_length=1, max_length=255)
    message: str = Field(..., min_length=1)
    target_type: TargetType
    target_id: Optional[str] = None
    target_role: Optional[str] = None
    source: str = Field(..., min_length=1)
    source_id: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)
    channels: Optional[list[AlertChannel]] = None   # None = derive from priority
    expires_in_minutes: Optional[int] = Field(default=None, ge=1)
    parent_alert_id: Optional[uuid.UUID] = None
    escalation_level: int = Field(default=0, ge=0)

    @property
    def target_key(self) -> str:
        """Who the alert is for: a user or employee id, a role, or all admins."""
        return f"{self.target_type}:{self.target_id or self.target_role or '*'}"

    @property
    def dedup_key(self) -> str:
        return f"{self.category}|{self.source}|{self.source_id}|{self.target_key}"


class AlertRecord(BaseModel):
    """Persisted alert as returned to callers."""
    id: uuid.UUID
    category: AlertCategory
    priority: AlertPriority
    title: str
    message: str
    target_type: TargetType
    target_id: Optional[str] = None
    target_role: Optional[str] = None
    source: str
    source_id: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)
    channels: list[AlertChannel] = Field(default_factory=list)
    delivery: dict[str, dict] = Field(default_factory=dict)
    status: AlertStatus
    escalation_level: int = 0
    escalate_after_minutes: Optional[int] = None
    parent_alert_id: Optional[uuid.UUID] = None
    created_at: datetime
    sent_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    actioned_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "AlertRecord":
        return cls(
            id=row.id,
            category=row.category,
            priority=row.priority,
            title=row.title,
            message=row.message,
            target_type=row.target_type,
            target_id=row.target_id,
            target_role=row.target_role,
            source=row.source,
            source_id=row.source_id,
            data=row.data or {},
            channels=row.channels or [],
            delivery=row.delivery or {},
            status=row.status,
            escalation_level=row.escalation_level,
            escalate_after_minutes=row.escalate_after_minutes,
            parent_alert_id=row.parent_alert_id,
            created_at=row.created_at,
            sent_at=row.sent_at,
            read_at=row.read_at,
            actioned_at=row.actioned_at,
        )


class AlertRecipient(BaseModel):
    """A resolved delivery target."""
    kind: str                       # "user" | "employee"
    id: uuid.UUID
    email: Optional[str] = None
    phone: Optional[str] = None
    push_token: Optional[str] = None


class AlertFilters(BaseModel):
    target_type: Optional[TargetType] = None
    target_id: Optional[str] = None
    category: Optional[AlertCategory] = None
    priority: Optional[AlertPriority] = None
    status: Optional[AlertStatus] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    limit: int = Field(default=50, ge=1, le=500)
