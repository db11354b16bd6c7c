"""
Behavioral profile schemas.

A profile is a versioned snapshot: every rebuild replaces all five
sub-structures at once.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Optional

from pydantic import BaseModel, Field


class UserSegment(StrEnum):
    NEW_USER = "NEW_USER"          # no sessions in the window
    DORMANT = "DORMANT"            # inactive 30+ days
    AT_RISK = "AT_RISK"            # churn signals
    HIGH_VALUE = "HIGH_VALUE"      # high volume
    POWER_USER = "POWER_USER"      # frequent and broad usage
    PASSIVE = "PASSIVE"            # low usage
    REGULAR = "REGULAR"


class AnomalyType(StrEnum):
    UNUSUAL_TIME = "UNUSUAL_TIME"
    UNUSUAL_AMOUNT = "UNUSUAL_AMOUNT"
    VELOCITY_SPIKE = "VELOCITY_SPIKE"


# ── Input points (typed views over historical records) ─────────────────


@dataclass(frozen=True)
class SessionPoint:
    started_at: datetime
    ended_at: Optional[datetime] = None
    ip_address: Optional[str] = None


@dataclass(frozen=True)
class TransactionPoint:
    amount: float
    type: str
    created_at: datetime
    recipient: Optional[str] = None


@dataclass(frozen=True)
class DevicePoint:
    platform: str
    login_count: int
    first_seen_at: datetime


@dataclass(frozen=True)
class AnalyticsPoint:
    event_type: str
    data: dict = field(default_factory=dict)


@dataclass(frozen=True)
class IdentityFacts:
    """Identity inputs to the risk indicators."""
    created_at: datetime
    kyc_status: str
    email_verified: bool
    phone_verified: bool
    has_address: bool
    has_birth_date: bool
    balance: float


# ── Profile sub-structures ─────────────────────────────────────────────


class TemporalPatterns(BaseModel):
    preferred_hours: list[int] = Field(default_factory=list)
    preferred_days: list[int] = Field(default_factory=list)    # 0 = Monday
    avg_session_duration_minutes: int = 0
    avg_sessions_per_week: float = 0.0
    last_active_at: Optional[datetime] = None


class TransactionalPatterns(BaseModel):
    avg_amount: float = 0.0
    median_amount: float = 0.0
    max_amount: float = 0.0
    avg_per_month: float = 0.0
    preferred_types: list[str] = Field(default_factory=list)
    frequent_recipients: list[str] = Field(default_factory=list)
    avg_hours_between: float = 0.0


class NavigationPatterns(BaseModel):
    most_visited_screens: list[str] = Field(default_factory=list)
    feature_adoption_rate: int = 0
    search_patterns: list[str] = Field(default_factory=list)


class DevicePatterns(BaseModel):
    primary_platform: str = "unknown"
    device_count: int = 0
    avg_device_age_days: int = 0
    location_consistency: float = 0.0


class RiskIndicators(BaseModel):
    unusual_activity_score: int = Field(default=50, ge=0, le=100)
    account_stability_score: int = Field(default=50, ge=0, le=100)
    verification_completeness: int = Field(default=0, ge=0, le=100)
    communication_engagement: int = Field(default=0, ge=0, le=100)


class BehaviorProfile(BaseModel):
    user_id: uuid.UUID
    temporal: TemporalPatterns
    transactional: TransactionalPatterns
    navigation: NavigationPatterns
    device: DevicePatterns
    risk_indicators: RiskIndicators
    segment: UserSegment
    version: int = 1
    data_points: int = 0
    updated_at: datetime


# ── Live events & anomalies ────────────────────────────────────────────


class BehaviorEvent(BaseModel):
    """One live action compared against the stored profile."""
    action: str = Field(..., min_length=1)
    timestamp: datetime
    amount: Optional[float] = Field(default=None, ge=0)
    metadata: dict[str, Any] = Field(default_factory=dict)


@dataclass(frozen=True)
class BehaviorAnomaly:
    user_id: uuid.UUID
    anomaly_type: AnomalyType
    confidence: float           # 0-100
    deviation: float            # % from baseline
    description: str
    detected_at: datetime
    related_data: dict = field(default_factory=dict)
