"""
TrustGate SQLAlchemy Models.

Two groups of tables:
- Engine-owned: decisions, snapshots, device registry, alerts, audit log.
- Read-side: identity store, ledger, session store and employee directory
  the engine consults. Owned by other services; modelled here so the
  engine has a concrete read interface.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from trustgate.db.compat import GUID, JSONType, utcnow
from trustgate.db.engine import Base


def _genuuid():
    return uuid.uuid4()


# ──────────────────────────────────────────────────────────────────────────────
# 1. Identity store (read-side)
# ──────────────────────────────────────────────────────────────────────────────


class User(Base):
    """Customer identity record: KYC, verification flags, level, balance."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(50))
    email_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    phone_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    kyc_status: Mapped[str] = mapped_column(String(20), default="PENDING", nullable=False)
    user_level: Mapped[str] = mapped_column(String(20), default="PLATA", nullable=False)
    address_street: Mapped[Optional[str]] = mapped_column(String(255))
    address_city: Mapped[Optional[str]] = mapped_column(String(100))
    birth_date: Mapped[Optional[date]] = mapped_column(Date)
    balance: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=0, nullable=False)
    average_balance: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2))
    push_token: Mapped[Optional[str]] = mapped_column(String(255))
    preferences: Mapped[dict] = mapped_column(JSONType(), default=dict, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="ACTIVE", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class UserSession(Base):
    __tablename__ = "user_sessions"
    __table_args__ = (
        Index("ix_user_sessions_user_created", "user_id", "created_at"),
        Index("ix_user_sessions_fingerprint", "device_fingerprint"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    user_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("users.id"), nullable=False)
    device_fingerprint: Mapped[Optional[str]] = mapped_column(String(64))
    ip_address: Mapped[Optional[str]] = mapped_column(String(45))
    latitude: Mapped[Optional[float]] = mapped_column(Float)
    longitude: Mapped[Optional[float]] = mapped_column(Float)
    country: Mapped[Optional[str]] = mapped_column(String(2))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    invalidated_reason: Mapped[Optional[str]] = mapped_column(String(100))


class LoginAttempt(Base):
    __tablename__ = "login_attempts"
    __table_args__ = (Index("ix_login_attempts_user_created", "user_id", "created_at"),)

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    user_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("users.id"), nullable=False)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45))
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class AccountChange(Base):
    """History of credential / contact changes (password, email, phone)."""

    __tablename__ = "account_changes"
    __table_args__ = (Index("ix_account_changes_user_changed", "user_id", "changed_at"),)

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    user_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("users.id"), nullable=False)
    field_name: Mapped[str] = mapped_column(String(50), nullable=False)
    changed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class Referral(Base):
    __tablename__ = "referrals"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    referrer_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("users.id"), nullable=False)
    referred_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("users.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="PENDING", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class SupportTicket(Base):
    __tablename__ = "support_tickets"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    user_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("users.id"), nullable=False)
    satisfaction_rating: Mapped[Optional[int]] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class AnalyticsEvent(Base):
    """App analytics: screen views, feature usage, searches."""

    __tablename__ = "user_analytics_events"
    __table_args__ = (Index("ix_analytics_events_user_created", "user_id", "created_at"),)

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    user_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("users.id"), nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    event_data: Mapped[dict] = mapped_column(JSONType(), default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


# ──────────────────────────────────────────────────────────────────────────────
# 2. Ledger (read-side)
# ──────────────────────────────────────────────────────────────────────────────


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        Index("ix_transactions_user_created", "user_id", "created_at"),
        Index("ix_transactions_status", "status"),
        Index("ix_transactions_destination", "destination_account"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    user_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("users.id"), nullable=False)
    type: Mapped[str] = mapped_column(String(40), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="COMPLETED", nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="ARS", nullable=False)
    destination_account: Mapped[Optional[str]] = mapped_column(String(64))
    is_international: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class Investment(Base):
    __tablename__ = "investments"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    user_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("users.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="ACTIVE", nullable=False)
    current_value: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class Financing(Base):
    __tablename__ = "financings"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    user_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("users.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="ACTIVE", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class Installment(Base):
    __tablename__ = "installments"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    financing_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("financings.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="PENDING", nullable=False)
    due_date: Mapped[Optional[date]] = mapped_column(Date)


class Contact(Base):
    __tablename__ = "contacts"
    __table_args__ = (Index("ix_contacts_user_account", "user_id", "account_identifier"),)

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    user_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("users.id"), nullable=False)
    account_identifier: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(255))
    transfer_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class IPBlacklist(Base):
    __tablename__ = "ip_blacklist"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    ip_address: Mapped[str] = mapped_column(String(45), unique=True, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class FlaggedAccount(Base):
    """Recipient watchlist."""

    __tablename__ = "flagged_accounts"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    account_identifier: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class FraudAlert(Base):
    """Case record for fraud analysts."""

    __tablename__ = "fraud_alerts"
    __table_args__ = (
        Index("ix_fraud_alerts_user_status", "user_id", "status"),
        Index("ix_fraud_alerts_created", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    user_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("users.id"), nullable=False)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(64))
    alert_type: Mapped[str] = mapped_column(String(40), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    fraud_score: Mapped[Optional[float]] = mapped_column(Float)
    description: Mapped[Optional[str]] = mapped_column(Text)
    risk_factors: Mapped[list] = mapped_column(JSONType(), default=list, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="PENDING", nullable=False)
    auto_decision: Mapped[Optional[str]] = mapped_column(String(20))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


# ──────────────────────────────────────────────────────────────────────────────
# 3. Employee directory (read-side)
# ──────────────────────────────────────────────────────────────────────────────


class Employee(Base):
    __tablename__ = "employees"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(40), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="ACTIVE", nullable=False)
    supervisor_id: Mapped[Optional[uuid.UUID]] = mapped_column(GUID(), ForeignKey("employees.id"))
    requires_dual_approval: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class EmployeeSession(Base):
    __tablename__ = "employee_sessions"
    __table_args__ = (Index("ix_employee_sessions_emp_created", "employee_id", "created_at"),)

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    employee_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("employees.id"), nullable=False)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    terminated_reason: Mapped[Optional[str]] = mapped_column(String(255))


class EmployeeActivity(Base):
    """Every back-office action an employee performs."""

    __tablename__ = "employee_activity"
    __table_args__ = (Index("ix_employee_activity_emp_created", "employee_id", "created_at"),)

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    employee_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("employees.id"), nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    resource: Mapped[str] = mapped_column(String(100), nullable=False)
    resource_id: Mapped[Optional[str]] = mapped_column(String(64))
    ip_address: Mapped[Optional[str]] = mapped_column(String(45))
    session_id: Mapped[Optional[uuid.UUID]] = mapped_column(GUID())
    metadata_: Mapped[dict] = mapped_column("metadata", JSONType(), default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


# ──────────────────────────────────────────────────────────────────────────────
# 4. Trust score
# ──────────────────────────────────────────────────────────────────────────────


class TrustScoreSnapshot(Base):
    """Immutable trust score snapshot. Superseded, never updated."""

    __tablename__ = "trust_scores"
    __table_args__ = (Index("ix_trust_scores_user_calculated", "user_id", "calculated_at"),)

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    user_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("users.id"), nullable=False)
    score: Mapped[int] = mapped_column(Integer, nullable=False)
    tier: Mapped[str] = mapped_column(String(20), nullable=False)
    identity_score: Mapped[int] = mapped_column(Integer, nullable=False)
    financial_score: Mapped[int] = mapped_column(Integer, nullable=False)
    behavioral_score: Mapped[int] = mapped_column(Integer, nullable=False)
    transactional_score: Mapped[int] = mapped_column(Integer, nullable=False)
    social_score: Mapped[int] = mapped_column(Integer, nullable=False)
    factors: Mapped[list] = mapped_column(JSONType(), default=list, nullable=False)
    calculated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


# ──────────────────────────────────────────────────────────────────────────────
# 5. Device registry
# ──────────────────────────────────────────────────────────────────────────────


class DeviceRecord(Base):
    __tablename__ = "user_devices"
    __table_args__ = (
        UniqueConstraint("user_id", "fingerprint", name="uq_user_devices_user_fingerprint"),
        Index("ix_user_devices_user", "user_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    user_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("users.id"), nullable=False)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    device_name: Mapped[Optional[str]] = mapped_column(String(255))
    platform: Mapped[str] = mapped_column(String(20), default="unknown", nullable=False)
    os_version: Mapped[Optional[str]] = mapped_column(String(50))
    device_model: Mapped[Optional[str]] = mapped_column(String(100))
    trust_level: Mapped[str] = mapped_column(String(20), default="NEW", nullable=False)
    first_seen_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    last_ip: Mapped[Optional[str]] = mapped_column(String(45))
    login_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    successful_ops: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_ops: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_blocked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    blocked_reason: Mapped[Optional[str]] = mapped_column(String(255))
    is_emulator: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_rooted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    trusted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)


# ──────────────────────────────────────────────────────────────────────────────
# 6. Decisions
# ──────────────────────────────────────────────────────────────────────────────


class RiskAssessmentRecord(Base):
    """One row per authentication risk assessment. Audit record."""

    __tablename__ = "risk_assessments"
    __table_args__ = (
        Index("ix_risk_assessments_user_created", "user_id", "created_at"),
        Index("ix_risk_assessments_session", "session_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    user_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("users.id"), nullable=False)
    session_id: Mapped[str] = mapped_column(String(64), nullable=False)
    operation: Mapped[str] = mapped_column(String(50), nullable=False)
    risk_score: Mapped[int] = mapped_column(Integer, nullable=False)
    risk_level: Mapped[str] = mapped_column(String(20), nullable=False)
    required_action: Mapped[str] = mapped_column(String(20), nullable=False)
    risk_factors: Mapped[list] = mapped_column(JSONType(), default=list, nullable=False)
    cooldown_minutes: Mapped[Optional[int]] = mapped_column(Integer)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45))
    device_fingerprint: Mapped[Optional[str]] = mapped_column(String(64))
    amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2))
    challenge_completed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    challenge_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class FraudEvaluationRecord(Base):
    """Append-only fraud evaluation."""

    __tablename__ = "fraud_evaluations"
    __table_args__ = (Index("ix_fraud_evaluations_user_evaluated", "user_id", "evaluated_at"),)

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    user_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("users.id"), nullable=False)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(64))
    fraud_score: Mapped[int] = mapped_column(Integer, nullable=False)
    risk_level: Mapped[str] = mapped_column(String(20), nullable=False)
    confidence: Mapped[int] = mapped_column(Integer, nullable=False)
    decision: Mapped[str] = mapped_column(String(20), nullable=False)
    decision_reason: Mapped[str] = mapped_column(Text, nullable=False)
    risk_factors: Mapped[list] = mapped_column(JSONType(), default=list, nullable=False)
    positive_factors: Mapped[list] = mapped_column(JSONType(), default=list, nullable=False)
    model_version: Mapped[str] = mapped_column(String(20), nullable=False)
    model_scores: Mapped[dict] = mapped_column(JSONType(), default=dict, nullable=False)
    recommendations: Mapped[list] = mapped_column(JSONType(), default=list, nullable=False)
    context: Mapped[dict] = mapped_column(JSONType(), default=dict, nullable=False)
    processing_time_ms: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    evaluated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


# ──────────────────────────────────────────────────────────────────────────────
# 7. Behavioral profiles
# ──────────────────────────────────────────────────────────────────────────────


class BehaviorProfileRecord(Base):
    """Current behavioral snapshot per user. Replaced wholesale on rebuild."""

    __tablename__ = "behavior_profiles"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    user_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("users.id"), unique=True, nullable=False)
    temporal: Mapped[dict] = mapped_column(JSONType(), default=dict, nullable=False)
    transactional: Mapped[dict] = mapped_column(JSONType(), default=dict, nullable=False)
    navigation: Mapped[dict] = mapped_column(JSONType(), default=dict, nullable=False)
    device: Mapped[dict] = mapped_column(JSONType(), default=dict, nullable=False)
    risk_indicators: Mapped[dict] = mapped_column(JSONType(), default=dict, nullable=False)
    segment: Mapped[str] = mapped_column(String(20), nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    data_points: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


# ──────────────────────────────────────────────────────────────────────────────
# 8. Employee anomaly
# ──────────────────────────────────────────────────────────────────────────────


class EmployeeBaselineRecord(Base):
    __tablename__ = "employee_baselines"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    employee_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("employees.id"), unique=True, nullable=False,
    )
    work_hours_start: Mapped[int] = mapped_column(Integer, default=9, nullable=False)
    work_hours_end: Mapped[int] = mapped_column(Integer, default=18, nullable=False)
    work_days: Mapped[list] = mapped_column(JSONType(), default=list, nullable=False)
    avg_daily_actions: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    avg_daily_data_access: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    avg_daily_approvals: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    avg_daily_exports: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    assigned_client_ids: Mapped[list] = mapped_column(JSONType(), default=list, nullable=False)
    known_ips: Mapped[list] = mapped_column(JSONType(), default=list, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class EmployeeAnomalyRecord(Base):
    __tablename__ = "employee_anomalies"
    __table_args__ = (
        Index("ix_employee_anomalies_emp_detected", "employee_id", "detected_at"),
        Index("ix_employee_anomalies_status", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    employee_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("employees.id"), nullable=False)
    anomaly_type: Mapped[str] = mapped_column(String(40), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    baseline: Mapped[dict] = mapped_column(JSONType(), default=dict, nullable=False)
    actual: Mapped[dict] = mapped_column(JSONType(), default=dict, nullable=False)
    deviation_percent: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="DETECTED", nullable=False)
    actions_taken: Mapped[list] = mapped_column(JSONType(), default=list, nullable=False)
    session_id: Mapped[Optional[uuid.UUID]] = mapped_column(GUID())
    detected_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    reviewed_by: Mapped[Optional[str]] = mapped_column(String(64))
    review_notes: Mapped[Optional[str]] = mapped_column(Text)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(64))


# ──────────────────────────────────────────────────────────────────────────────
# 9. System settings (kill switch document)
# ──────────────────────────────────────────────────────────────────────────────


class SystemSetting(Base):
    """Versioned configuration document. Replaced atomically via version CAS."""

    __tablename__ = "system_settings"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[dict] = mapped_column(JSONType(), nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_by: Mapped[Optional[str]] = mapped_column(String(64))


# ──────────────────────────────────────────────────────────────────────────────
# 10. Alerting
# ──────────────────────────────────────────────────────────────────────────────


class AlertRecordModel(Base):
    __tablename__ = "alerts"
    __table_args__ = (
        Index("ix_alerts_target", "target_type", "target_id"),
        Index("ix_alerts_status_created", "status", "created_at"),
        Index("ix_alerts_dedup_key", "dedup_key"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    category: Mapped[str] = mapped_column(String(20), nullable=False)
    priority: Mapped[str] = mapped_column(String(20), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[dict] = mapped_column(JSONType(), default=dict, nullable=False)
    target_type: Mapped[str] = mapped_column(String(20), nullable=False)
    target_id: Mapped[Optional[str]] = mapped_column(String(64))
    target_role: Mapped[Optional[str]] = mapped_column(String(40))
    source: Mapped[str] = mapped_column(String(100), nullable=False)
    source_id: Mapped[Optional[str]] = mapped_column(String(64))
    channels: Mapped[list] = mapped_column(JSONType(), default=list, nullable=False)
    delivery: Mapped[dict] = mapped_column(JSONType(), default=dict, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="PENDING", nullable=False)
    escalation_level: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    escalate_after_minutes: Mapped[Optional[int]] = mapped_column(Integer)
    parent_alert_id: Mapped[Optional[uuid.UUID]] = mapped_column(GUID(), ForeignKey("alerts.id"))
    dedup_key: Mapped[str] = mapped_column(String(255), nullable=False)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    read_by: Mapped[Optional[str]] = mapped_column(String(64))
    actioned_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    actioned_by: Mapped[Optional[str]] = mapped_column(String(64))
    action_taken: Mapped[Optional[str]] = mapped_column(String(255))
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class AlertWebhook(Base):
    """Outbound webhook subscription for one or more alert categories."""

    __tablename__ = "alert_webhooks"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    url: Mapped[str] = mapped_column(String(500), nullable=False)
    categories: Mapped[list] = mapped_column(JSONType(), default=list, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class Notification(Base):
    """In-app notification for a user or employee."""

    __tablename__ = "notifications"
    __table_args__ = (Index("ix_notifications_recipient", "recipient_type", "recipient_id"),)

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    recipient_type: Mapped[str] = mapped_column(String(20), nullable=False)
    recipient_id: Mapped[uuid.UUID] = mapped_column(GUID(), nullable=False)
    alert_id: Mapped[Optional[uuid.UUID]] = mapped_column(GUID(), ForeignKey("alerts.id"))
    category: Mapped[str] = mapped_column(String(20), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


# ──────────────────────────────────────────────────────────────────────────────
# 11. Audit
# ──────────────────────────────────────────────────────────────────────────────


class AuditLog(Base):
    """
    Append-only audit trail. Written by every mutation, never updated.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_created", "created_at"),
        Index("ix_audit_logs_action", "action"),
        Index("ix_audit_logs_resource", "resource", "resource_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    actor_id: Mapped[Optional[str]] = mapped_column(String(64))
    actor_type: Mapped[str] = mapped_column(String(20), default="system", nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    resource: Mapped[str] = mapped_column(String(100), nullable=False)
    resource_id: Mapped[Optional[str]] = mapped_column(String(64))
    description: Mapped[Optional[str]] = mapped_column(Text)
    severity: Mapped[str] = mapped_column(String(20), default="INFO", nullable=False)
    metadata_: Mapped[dict] = mapped_column("metadata", JSONType(), default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
