"""
Read queries over the identity store, ledger, session store and employee
directory.

Plain async functions taking an explicit session; engines compose them.
Callers pass window boundaries (`since`) so every function is a pure read.
"""

import uuid
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import and_, case, distinct, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from trustgate.db.models import (
    AccountChange,
    AnalyticsEvent,
    BehaviorProfileRecord,
    Contact,
    DeviceRecord,
    Employee,
    EmployeeActivity,
    EmployeeSession,
    Financing,
    FlaggedAccount,
    FraudAlert,
    Installment,
    Investment,
    IPBlacklist,
    LoginAttempt,
    Notification,
    Referral,
    SupportTicket,
    Transaction,
    TrustScoreSnapshot,
    User,
    UserSession,
)

OPEN_FRAUD_ALERT_STATUSES = ("PENDING", "OPEN", "INVESTIGATING")
SECURITY_INCIDENT_TYPES = ("BYPASS_ATTEMPT", "SUSPICIOUS_BEHAVIOR")


# ── Identity ─────────────────────────────────────────────────────────────


async def get_user(session: AsyncSession, user_id: uuid.UUID) -> Optional[User]:
    result = await session.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def list_active_user_ids(session: AsyncSession, limit: Optional[int] = None) -> list[uuid.UUID]:
    stmt = select(User.id).where(User.status == "ACTIVE").order_by(User.created_at)
    if limit:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def has_recent_change(
    session: AsyncSession, user_id: uuid.UUID, fields: Sequence[str], since: datetime
) -> bool:
    result = await session.execute(
        select(AccountChange.id).where(
            and_(
                AccountChange.user_id == user_id,
                AccountChange.field_name.in_(list(fields)),
                AccountChange.changed_at >= since,
            )
        ).limit(1)
    )
    return result.first() is not None


async def count_completed_referrals(session: AsyncSession, user_id: uuid.UUID) -> int:
    result = await session.execute(
        select(func.count(Referral.id)).where(
            and_(Referral.referrer_id == user_id, Referral.status == "COMPLETED")
        )
    )
    return result.scalar() or 0


async def get_referrer_id(session: AsyncSession, user_id: uuid.UUID) -> Optional[uuid.UUID]:
    result = await session.execute(
        select(Referral.referrer_id).where(
            and_(Referral.referred_id == user_id, Referral.status == "COMPLETED")
        ).limit(1)
    )
    return result.scalar_one_or_none()


async def get_support_rating(session: AsyncSession, user_id: uuid.UUID) -> tuple[int, float]:
    """(rated ticket count, average rating)."""
    result = await session.execute(
        select(
            func.count(SupportTicket.id),
            func.avg(SupportTicket.satisfaction_rating),
        ).where(
            and_(
                SupportTicket.user_id == user_id,
                SupportTicket.satisfaction_rating.is_not(None),
            )
        )
    )
    count, avg = result.one()
    return int(count or 0), float(avg or 0.0)


async def get_analytics_events(
    session: AsyncSession, user_id: uuid.UUID, limit: int = 1000
) -> Sequence[AnalyticsEvent]:
    result = await session.execute(
        select(AnalyticsEvent)
        .where(AnalyticsEvent.user_id == user_id)
        .order_by(AnalyticsEvent.created_at.desc())
        .limit(limit)
    )
    return result.scalars().all()


async def get_notification_read_rate(session: AsyncSession, user_id: uuid.UUID) -> Optional[float]:
    """Share of the user's notifications that were read, or None if none exist."""
    result = await session.execute(
        select(
            func.count(Notification.id),
            func.sum(case((Notification.is_read.is_(True), 1), else_=0)),
        ).where(
            and_(Notification.recipient_type == "USER", Notification.recipient_id == user_id)
        )
    )
    total, read = result.one()
    if not total:
        return None
    return float(read or 0) / float(total)


# ── Trust snapshots ──────────────────────────────────────────────────────


async def get_latest_trust_snapshot(
    session: AsyncSession, user_id: uuid.UUID
) -> Optional[TrustScoreSnapshot]:
    result = await session.execute(
        select(TrustScoreSnapshot)
        .where(TrustScoreSnapshot.user_id == user_id)
        .order_by(TrustScoreSnapshot.calculated_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_trust_history(
    session: AsyncSession, user_id: uuid.UUID, limit: int = 30
) -> Sequence[TrustScoreSnapshot]:
    result = await session.execute(
        select(TrustScoreSnapshot)
        .where(TrustScoreSnapshot.user_id == user_id)
        .order_by(TrustScoreSnapshot.calculated_at.desc())
        .limit(limit)
    )
    return result.scalars().all()


# ── Sessions & logins ────────────────────────────────────────────────────


async def count_sessions_since(session: AsyncSession, user_id: uuid.UUID, since: datetime) -> int:
    result = await session.execute(
        select(func.count(UserSession.id)).where(
            and_(UserSession.user_id == user_id, UserSession.created_at >= since)
        )
    )
    return result.scalar() or 0


async def get_sessions_since(
    session: AsyncSession, user_id: uuid.UUID, since: datetime, limit: Optional[int] = None
) -> Sequence[UserSession]:
    stmt = (
        select(UserSession)
        .where(and_(UserSession.user_id == user_id, UserSession.created_at >= since))
        .order_by(UserSession.created_at.desc())
    )
    if limit:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    return result.scalars().all()


async def get_recent_sessions(
    session: AsyncSession, user_id: uuid.UUID, limit: int = 100
) -> Sequence[UserSession]:
    result = await session.execute(
        select(UserSession)
        .where(UserSession.user_id == user_id)
        .order_by(UserSession.created_at.desc())
        .limit(limit)
    )
    return result.scalars().all()


async def get_last_located_session(
    session: AsyncSession, user_id: uuid.UUID, exclude_session_id: Optional[str] = None
) -> Optional[UserSession]:
    """Most recent session carrying coordinates."""
    conditions = [
        UserSession.user_id == user_id,
        UserSession.latitude.is_not(None),
        UserSession.longitude.is_not(None),
    ]
    if exclude_session_id:
        try:
            conditions.append(UserSession.id != uuid.UUID(str(exclude_session_id)))
        except ValueError:
            pass
    result = await session.execute(
        select(UserSession)
        .where(and_(*conditions))
        .order_by(UserSession.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def count_distinct_fingerprints_since(
    session: AsyncSession, user_id: uuid.UUID, since: datetime
) -> int:
    result = await session.execute(
        select(func.count(distinct(UserSession.device_fingerprint))).where(
            and_(
                UserSession.user_id == user_id,
                UserSession.created_at >= since,
                UserSession.device_fingerprint.is_not(None),
            )
        )
    )
    return result.scalar() or 0


async def count_failed_logins_since(
    session: AsyncSession, user_id: uuid.UUID, since: datetime
) -> int:
    result = await session.execute(
        select(func.count(LoginAttempt.id)).where(
            and_(
                LoginAttempt.user_id == user_id,
                LoginAttempt.success.is_(False),
                LoginAttempt.created_at >= since,
            )
        )
    )
    return result.scalar() or 0


async def invalidate_device_sessions(
    session: AsyncSession, user_id: uuid.UUID, fingerprint: str, reason: str, now: datetime
) -> int:
    result = await session.execute(
        update(UserSession)
        .where(
            and_(
                UserSession.user_id == user_id,
                UserSession.device_fingerprint == fingerprint,
                UserSession.is_active.is_(True),
            )
        )
        .values(is_active=False, ended_at=now, invalidated_reason=reason)
    )
    return result.rowcount or 0


# ── Ledger ───────────────────────────────────────────────────────────────


async def get_active_investment_total(session: AsyncSession, user_id: uuid.UUID) -> float:
    result = await session.execute(
        select(func.coalesce(func.sum(Investment.current_value), 0)).where(
            and_(Investment.user_id == user_id, Investment.status == "ACTIVE")
        )
    )
    return float(result.scalar() or 0)


async def get_deposit_dates_since(
    session: AsyncSession, user_id: uuid.UUID, since: datetime
) -> list[datetime]:
    result = await session.execute(
        select(Transaction.created_at).where(
            and_(
                Transaction.user_id == user_id,
                Transaction.type == "TRANSFER_IN",
                Transaction.status == "COMPLETED",
                Transaction.created_at >= since,
            )
        )
    )
    return list(result.scalars().all())


async def count_transaction_types_since(
    session: AsyncSession, user_id: uuid.UUID, since: datetime
) -> int:
    result = await session.execute(
        select(func.count(distinct(Transaction.type))).where(
            and_(Transaction.user_id == user_id, Transaction.created_at >= since)
        )
    )
    return result.scalar() or 0


async def get_installment_counts(session: AsyncSession, user_id: uuid.UUID) -> dict[str, int]:
    """Installment counts per status across all of the user's financings."""
    result = await session.execute(
        select(Installment.status, func.count(Installment.id))
        .join(Financing, Financing.id == Installment.financing_id)
        .where(Financing.user_id == user_id)
        .group_by(Installment.status)
    )
    return {status: int(count) for status, count in result.all()}


async def count_active_defaults(session: AsyncSession, user_id: uuid.UUID) -> int:
    """Overdue installments on still-active financings."""
    result = await session.execute(
        select(func.count(Installment.id))
        .join(Financing, Financing.id == Installment.financing_id)
        .where(
            and_(
                Financing.user_id == user_id,
                Financing.status == "ACTIVE",
                Installment.status == "OVERDUE",
            )
        )
    )
    return result.scalar() or 0


async def count_transactions_since(
    session: AsyncSession,
    user_id: uuid.UUID,
    since: datetime,
    status: Optional[str] = None,
) -> int:
    conditions = [Transaction.user_id == user_id, Transaction.created_at >= since]
    if status:
        conditions.append(Transaction.status == status)
    result = await session.execute(select(func.count(Transaction.id)).where(and_(*conditions)))
    return result.scalar() or 0


async def count_reversed_transactions(session: AsyncSession, user_id: uuid.UUID) -> int:
    result = await session.execute(
        select(func.count(Transaction.id)).where(
            and_(Transaction.user_id == user_id, Transaction.status == "REVERSED")
        )
    )
    return result.scalar() or 0


async def get_average_amount(
    session: AsyncSession, user_id: uuid.UUID, tx_type: Optional[str] = None
) -> float:
    """Average completed transaction amount, optionally for one type."""
    conditions = [Transaction.user_id == user_id, Transaction.status == "COMPLETED"]
    if tx_type:
        conditions.append(Transaction.type == tx_type)
    result = await session.execute(select(func.avg(Transaction.amount)).where(and_(*conditions)))
    return float(result.scalar() or 0)


async def get_completed_transactions_since(
    session: AsyncSession, user_id: uuid.UUID, since: datetime
) -> Sequence[Transaction]:
    result = await session.execute(
        select(Transaction)
        .where(
            and_(
                Transaction.user_id == user_id,
                Transaction.status == "COMPLETED",
                Transaction.created_at >= since,
            )
        )
        .order_by(Transaction.created_at.asc())
    )
    return result.scalars().all()


async def has_completed_transfer_to(
    session: AsyncSession, user_id: uuid.UUID, account: str
) -> bool:
    result = await session.execute(
        select(Transaction.id).where(
            and_(
                Transaction.user_id == user_id,
                Transaction.destination_account == account,
                Transaction.status == "COMPLETED",
            )
        ).limit(1)
    )
    return result.first() is not None


async def get_contact(session: AsyncSession, user_id: uuid.UUID, account: str) -> Optional[Contact]:
    result = await session.execute(
        select(Contact).where(
            and_(Contact.user_id == user_id, Contact.account_identifier == account)
        ).limit(1)
    )
    return result.scalar_one_or_none()


async def get_outgoing_total_since(
    session: AsyncSession, user_id: uuid.UUID, since: datetime
) -> float:
    result = await session.execute(
        select(func.coalesce(func.sum(Transaction.amount), 0)).where(
            and_(
                Transaction.user_id == user_id,
                Transaction.type == "TRANSFER_OUT",
                Transaction.status == "COMPLETED",
                Transaction.created_at >= since,
            )
        )
    )
    return float(result.scalar() or 0)


async def count_new_recipients_since(
    session: AsyncSession, user_id: uuid.UUID, since: datetime
) -> int:
    """Distinct recipients in the window never completed to before the window."""
    recent = await session.execute(
        select(distinct(Transaction.destination_account)).where(
            and_(
                Transaction.user_id == user_id,
                Transaction.created_at >= since,
                Transaction.destination_account.is_not(None),
            )
        )
    )
    recipients = [r for r in recent.scalars().all() if r]
    if not recipients:
        return 0
    known = await session.execute(
        select(distinct(Transaction.destination_account)).where(
            and_(
                Transaction.user_id == user_id,
                Transaction.created_at < since,
                Transaction.status == "COMPLETED",
                Transaction.destination_account.in_(recipients),
            )
        )
    )
    return len(set(recipients) - set(known.scalars().all()))


async def has_international_history(session: AsyncSession, user_id: uuid.UUID) -> bool:
    result = await session.execute(
        select(Transaction.id).where(
            and_(
                Transaction.user_id == user_id,
                Transaction.is_international.is_(True),
                Transaction.status == "COMPLETED",
            )
        ).limit(1)
    )
    return result.first() is not None


async def is_ip_blacklisted(session: AsyncSession, ip_address: Optional[str]) -> bool:
    if not ip_address:
        return False
    result = await session.execute(
        select(IPBlacklist.id).where(IPBlacklist.ip_address == ip_address).limit(1)
    )
    return result.first() is not None


async def get_flagged_account(session: AsyncSession, account: str) -> Optional[FlaggedAccount]:
    result = await session.execute(
        select(FlaggedAccount).where(FlaggedAccount.account_identifier == account).limit(1)
    )
    return result.scalar_one_or_none()


# ── Fraud cases ──────────────────────────────────────────────────────────


async def count_open_fraud_alerts(session: AsyncSession, user_id: uuid.UUID) -> int:
    result = await session.execute(
        select(func.count(FraudAlert.id)).where(
            and_(
                FraudAlert.user_id == user_id,
                FraudAlert.status.in_(OPEN_FRAUD_ALERT_STATUSES),
            )
        )
    )
    return result.scalar() or 0


async def count_fraud_alerts_since(
    session: AsyncSession,
    since: datetime,
    user_id: Optional[uuid.UUID] = None,
    alert_types: Optional[Sequence[str]] = None,
    statuses: Optional[Sequence[str]] = None,
) -> int:
    conditions = [FraudAlert.created_at >= since]
    if user_id is not None:
        conditions.append(FraudAlert.user_id == user_id)
    if alert_types:
        conditions.append(FraudAlert.alert_type.in_(list(alert_types)))
    if statuses:
        conditions.append(FraudAlert.status.in_(list(statuses)))
    result = await session.execute(select(func.count(FraudAlert.id)).where(and_(*conditions)))
    return result.scalar() or 0


# ── Platform-wide volume (kill-switch auto-triggers) ─────────────────────


async def count_all_transactions_since(
    session: AsyncSession, since: datetime, status: Optional[str] = None
) -> int:
    conditions = [Transaction.created_at >= since]
    if status:
        conditions.append(Transaction.status == status)
    result = await session.execute(select(func.count(Transaction.id)).where(and_(*conditions)))
    return result.scalar() or 0


# ── Devices ──────────────────────────────────────────────────────────────


async def get_device(
    session: AsyncSession, user_id: uuid.UUID, fingerprint: str
) -> Optional[DeviceRecord]:
    result = await session.execute(
        select(DeviceRecord).where(
            and_(DeviceRecord.user_id == user_id, DeviceRecord.fingerprint == fingerprint)
        )
    )
    return result.scalar_one_or_none()


async def list_user_devices(session: AsyncSession, user_id: uuid.UUID) -> Sequence[DeviceRecord]:
    result = await session.execute(select(DeviceRecord).where(DeviceRecord.user_id == user_id))
    return result.scalars().all()


# ── Behavioral profiles ──────────────────────────────────────────────────


async def get_behavior_profile(
    session: AsyncSession, user_id: uuid.UUID
) -> Optional[BehaviorProfileRecord]:
    result = await session.execute(
        select(BehaviorProfileRecord).where(BehaviorProfileRecord.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def count_user_data_points(session: AsyncSession, user_id: uuid.UUID) -> int:
    """Sessions + transactions + analytics events on record for a user."""
    total = 0
    for model in (UserSession, Transaction, AnalyticsEvent):
        result = await session.execute(select(func.count(model.id)).where(model.user_id == user_id))
        total += result.scalar() or 0
    return total


# ── Employees ─────────────────────────────────────────────────────────────


async def get_employee(session: AsyncSession, employee_id: uuid.UUID) -> Optional[Employee]:
    result = await session.execute(select(Employee).where(Employee.id == employee_id))
    return result.scalar_one_or_none()


async def get_employees_by_roles(session: AsyncSession, roles: Sequence[str]) -> Sequence[Employee]:
    result = await session.execute(
        select(Employee).where(
            and_(Employee.role.in_(list(roles)), Employee.status == "ACTIVE")
        )
    )
    return result.scalars().all()


async def list_active_employee_ids(session: AsyncSession) -> list[uuid.UUID]:
    result = await session.execute(select(Employee.id).where(Employee.status == "ACTIVE"))
    return list(result.scalars().all())


async def get_employee_sessions_since(
    session: AsyncSession, employee_id: uuid.UUID, since: datetime, limit: Optional[int] = None
) -> Sequence[EmployeeSession]:
    stmt = (
        select(EmployeeSession)
        .where(and_(EmployeeSession.employee_id == employee_id, EmployeeSession.created_at >= since))
        .order_by(EmployeeSession.created_at.desc())
    )
    if limit:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    return result.scalars().all()


async def get_employee_activity_since(
    session: AsyncSession, employee_id: uuid.UUID, since: datetime
) -> Sequence[EmployeeActivity]:
    result = await session.execute(
        select(EmployeeActivity)
        .where(
            and_(
                EmployeeActivity.employee_id == employee_id,
                EmployeeActivity.created_at >= since,
            )
        )
        .order_by(EmployeeActivity.created_at.asc())
    )
    return result.scalars().all()


async def get_employee_known_ips(session: AsyncSession, employee_id: uuid.UUID) -> list[str]:
    result = await session.execute(
        select(distinct(EmployeeSession.ip_address)).where(
            and_(
                EmployeeSession.employee_id == employee_id,
                EmployeeSession.ip_address.is_not(None),
            )
        )
    )
    return sorted(ip for ip in result.scalars().all() if ip)


async def count_employee_activity_since(
    session: AsyncSession,
    employee_id: uuid.UUID,
    since: datetime,
    action_contains: Optional[str] = None,
) -> int:
    """Actions since `since`, optionally those whose name contains a keyword (case-insensitive)."""
    conditions = [EmployeeActivity.employee_id == employee_id, EmployeeActivity.created_at >= since]
    if action_contains:
        conditions.append(func.upper(EmployeeActivity.action).contains(action_contains.upper()))
    result = await session.execute(select(func.count(EmployeeActivity.id)).where(and_(*conditions)))
    return result.scalar() or 0


async def count_sensitive_activity_since(
    session: AsyncSession,
    employee_id: uuid.UUID,
    since: datetime,
    resources: Sequence[str],
    action_keyword: str = "SENSITIVE",
) -> int:
    result = await session.execute(
        select(func.count(EmployeeActivity.id)).where(
            and_(
                EmployeeActivity.employee_id == employee_id,
                EmployeeActivity.created_at >= since,
                or_(
                    EmployeeActivity.resource.in_(list(resources)),
                    func.upper(EmployeeActivity.action).contains(action_keyword),
                ),
            )
        )
    )
    return result.scalar() or 0


async def terminate_employee_session(
    session: AsyncSession, session_id: uuid.UUID, reason: str, now: datetime
) -> int:
    result = await session.execute(
        update(EmployeeSession)
        .where(and_(EmployeeSession.id == session_id, EmployeeSession.is_active.is_(True)))
        .values(is_active=False, ended_at=now, terminated_reason=reason)
    )
    return result.rowcount or 0
