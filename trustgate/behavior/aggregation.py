"""
Behavioral aggregation functions.

Explicit, typed reductions over ordered historical records. Every function
is pure: inputs are plain point sequences plus the evaluation time, output
is one profile sub-structure.
"""

from collections import Counter
from datetime import datetime, timedelta
from typing import Optional, Sequence

from trustgate.behavior.schemas import (
    AnalyticsPoint,
    AnomalyType,
    BehaviorAnomaly,
    BehaviorEvent,
    BehaviorProfile,
    DevicePatterns,
    DevicePoint,
    IdentityFacts,
    NavigationPatterns,
    RiskIndicators,
    SessionPoint,
    TemporalPatterns,
    TransactionalPatterns,
    TransactionPoint,
    UserSegment,
)

# ── Windows & constants ───────────────────────────────────────────────────

SESSION_WINDOW = timedelta(days=90)
TRANSACTION_WINDOW = timedelta(days=180)
SESSION_WINDOW_WEEKS = 90 / 7
TRANSACTION_WINDOW_MONTHS = 6

TOP_HOURS = 5
PREFERRED_DAY_SHARE = 0.10
TOP_TRANSACTION_TYPES = 3
FREQUENT_RECIPIENT_MIN = 3
MAX_FREQUENT_RECIPIENTS = 10

TRACKED_FEATURES = ("transfer", "invest", "finance", "qr", "cards", "services", "rewards")
TOP_SCREENS = 5
MAX_SEARCHES = 10

# Segment thresholds
DORMANT_DAYS = 30
AT_RISK_DAYS = 14
AT_RISK_STABILITY = 30
HIGH_VALUE_AVG_AMOUNT = 500_000
HIGH_VALUE_MONTHLY_TX = 20
POWER_USER_WEEKLY_SESSIONS = 5
POWER_USER_TYPES = 3

# Anomaly thresholds
HOUR_TOLERANCE = 2
AMOUNT_DEVIATION_PCT = 200
VELOCITY_MULTIPLIER = 10


def _top_keys(counts: Counter, n: int) -> list:
    # Ties broken by first appearance so the result is deterministic
    return [key for key, _ in counts.most_common(n)]


# ── Sub-profiles ──────────────────────────────────────────────────────────


def temporal_patterns(sessions: Sequence[SessionPoint]) -> TemporalPatterns:
    if not sessions:
        return TemporalPatterns()

    ordered = sorted(sessions, key=lambda s: s.started_at)
    hours = Counter(s.started_at.hour for s in ordered)
    days = Counter(s.started_at.weekday() for s in ordered)
    total = len(ordered)

    durations = [
        (s.ended_at - s.started_at).total_seconds() / 60
        for s in ordered
        if s.ended_at is not None
    ]
    avg_duration = sum(durations) / len(durations) if durations else 0.0

    return TemporalPatterns(
        preferred_hours=_top_keys(hours, TOP_HOURS),
        preferred_days=sorted(d for d, c in days.items() if c > total * PREFERRED_DAY_SHARE),
        avg_session_duration_minutes=round(avg_duration),
        avg_sessions_per_week=round(total / SESSION_WINDOW_WEEKS, 1),
        last_active_at=ordered[-1].started_at,
    )


def transactional_patterns(transactions: Sequence[TransactionPoint]) -> TransactionalPatterns:
    if not transactions:
        return TransactionalPatterns()

    ordered = sorted(transactions, key=lambda t: t.created_at)
    amounts = [t.amount for t in ordered]
    sorted_amounts = sorted(amounts)

    types = Counter(t.type for t in ordered)
    recipients = Counter(t.recipient for t in ordered if t.recipient)
    frequent = [
        r for r, c in recipients.most_common()
        if c >= FREQUENT_RECIPIENT_MIN
    ][:MAX_FREQUENT_RECIPIENTS]

    gaps_hours = 0.0
    if len(ordered) > 1:
        span = (ordered[-1].created_at - ordered[0].created_at).total_seconds() / 3600
        gaps_hours = span / (len(ordered) - 1)

    return TransactionalPatterns(
        avg_amount=round(sum(amounts) / len(amounts)),
        median_amount=round(sorted_amounts[len(sorted_amounts) // 2]),
        max_amount=round(max(amounts)),
        avg_per_month=round(len(ordered) / TRANSACTION_WINDOW_MONTHS, 1),
        preferred_types=_top_keys(types, TOP_TRANSACTION_TYPES),
        frequent_recipients=frequent,
        avg_hours_between=round(gaps_hours, 1),
    )


def navigation_patterns(events: Sequence[AnalyticsPoint]) -> NavigationPatterns:
    if not events:
        return NavigationPatterns()

    screens = Counter(
        e.data.get("screen") or "unknown" for e in events if e.event_type == "screen_view"
    )
    used_features = {
        e.data.get("feature") for e in events if e.event_type == "feature_used"
    } & set(TRACKED_FEATURES)
    searches = [
        e.data["query"] for e in events if e.event_type == "search" and e.data.get("query")
    ][:MAX_SEARCHES]

    return NavigationPatterns(
        most_visited_screens=_top_keys(screens, TOP_SCREENS),
        feature_adoption_rate=round(len(used_features) / len(TRACKED_FEATURES) * 100),
        search_patterns=searches,
    )


def device_patterns(
    devices: Sequence[DevicePoint],
    recent_ips: Sequence[Optional[str]],
    now: datetime,
) -> DevicePatterns:
    if not devices:
        return DevicePatterns()

    platform_logins: Counter = Counter()
    for d in devices:
        platform_logins[d.platform] += d.login_count
    primary = _top_keys(platform_logins, 1)[0]

    ages = [(now - d.first_seen_at).total_seconds() / 86400 for d in devices]
    unique_ips = len(set(recent_ips))
    consistency = max(0.0, 1 - unique_ips / max(len(recent_ips), 1))

    return DevicePatterns(
        primary_platform=primary,
        device_count=len(devices),
        avg_device_age_days=round(sum(ages) / len(ages)),
        location_consistency=round(consistency, 2),
    )


def risk_indicators(
    identity: Optional[IdentityFacts],
    fraud_alerts_30d: int,
    notification_read_rate: Optional[float],
    now: datetime,
) -> RiskIndicators:
    if identity is None:
        return RiskIndicators()

    unusual = max(0, 100 - fraud_alerts_30d * 20)

    age_days = (now - identity.created_at).total_seconds() / 86400
    if age_days > 180:
        age_points = 40
    elif age_days > 90:
        age_points = 30
    elif age_days > 30:
        age_points = 20
    else:
        age_points = 10
    kyc_approved = identity.kyc_status == "APPROVED"
    stability = min(100, age_points + (30 if identity.balance > 0 else 0) + (30 if kyc_approved else 0))

    verification = (
        (20 if identity.email_verified else 0)
        + (20 if identity.phone_verified else 0)
        + (40 if kyc_approved else 0)
        + (10 if identity.has_address else 0)
        + (10 if identity.has_birth_date else 0)
    )

    engagement = 50 if notification_read_rate is None else round(notification_read_rate * 100)

    return RiskIndicators(
        unusual_activity_score=unusual,
        account_stability_score=stability,
        verification_completeness=verification,
        communication_engagement=engagement,
    )


# ── Segmentation ──────────────────────────────────────────────────────────


def determine_segment(
    temporal: TemporalPatterns,
    transactional: TransactionalPatterns,
    indicators: RiskIndicators,
    now: datetime,
) -> UserSegment:
    """Ordered first-match decision list; exactly one segment per profile."""
    if temporal.avg_sessions_per_week == 0 or temporal.last_active_at is None:
        return UserSegment.NEW_USER

    days_inactive = (now - temporal.last_active_at).total_seconds() / 86400
    if days_inactive > DORMANT_DAYS:
        return UserSegment.DORMANT

    if indicators.account_stability_score < AT_RISK_STABILITY or days_inactive > AT_RISK_DAYS:
        return UserSegment.AT_RISK

    if (
        transactional.avg_amount > HIGH_VALUE_AVG_AMOUNT
        or transactional.avg_per_month > HIGH_VALUE_MONTHLY_TX
    ):
        return UserSegment.HIGH_VALUE

    if (
        temporal.avg_sessions_per_week >= POWER_USER_WEEKLY_SESSIONS
        and len(transactional.preferred_types) >= POWER_USER_TYPES
    ):
        return UserSegment.POWER_USER

    if temporal.avg_sessions_per_week < 1:
        return UserSegment.PASSIVE

    return UserSegment.REGULAR


# ── Anomaly detection ─────────────────────────────────────────────────────


def detect_event_anomalies(
    profile: BehaviorProfile,
    event: BehaviorEvent,
    transactions_last_hour: int,
    now: datetime,
) -> list[BehaviorAnomaly]:
    """
    Compare one live event to a stored profile.

    Three independent checks (time, amount, velocity); none suppresses
    another.
    """
    anomalies: list[BehaviorAnomaly] = []
    hours = profile.temporal.preferred_hours

    # Time of day
    hour = event.timestamp.hour
    if hours and hour not in hours:
        lo, hi = min(hours), max(hours)
        if hour < lo - HOUR_TOLERANCE or hour > hi + HOUR_TOLERANCE:
            midpoint = (lo + hi) / 2
            anomalies.append(BehaviorAnomaly(
                user_id=profile.user_id,
                anomaly_type=AnomalyType.UNUSUAL_TIME,
                confidence=70,
                deviation=round(abs(hour - midpoint) / 12 * 100, 1),
                description=f"Activity at {hour:02d}:00 is outside the usual {lo:02d}:00-{hi:02d}:00 range",
                detected_at=now,
                related_data={"hour": hour, "preferred_hours": hours},
            ))

    # Amount
    avg_amount = profile.transactional.avg_amount
    if event.amount and avg_amount > 0:
        deviation = (event.amount - avg_amount) / avg_amount * 100
        if deviation > AMOUNT_DEVIATION_PCT:
            anomalies.append(BehaviorAnomaly(
                user_id=profile.user_id,
                anomaly_type=AnomalyType.UNUSUAL_AMOUNT,
                confidence=round(min(95.0, 50 + deviation / 10), 1),
                deviation=round(deviation, 1),
                description=f"Amount {event.amount:,.0f} is {deviation:.0f}% above the average {avg_amount:,.0f}",
                detected_at=now,
                related_data={"amount": event.amount, "avg_amount": avg_amount},
            ))

    # Velocity
    expected_hourly = profile.transactional.avg_per_month / (30 * 24)
    if transactions_last_hour > expected_hourly * VELOCITY_MULTIPLIER:
        if expected_hourly > 0:
            deviation = (transactions_last_hour - expected_hourly) / expected_hourly * 100
        else:
            deviation = transactions_last_hour * 100.0
        anomalies.append(BehaviorAnomaly(
            user_id=profile.user_id,
            anomaly_type=AnomalyType.VELOCITY_SPIKE,
            confidence=85,
            deviation=round(deviation, 1),
            description=f"{transactions_last_hour} transactions in the last hour (expected {expected_hourly:.1f})",
            detected_at=now,
            related_data={"recent_count": transactions_last_hour, "expected_hourly": expected_hourly},
        ))

    return anomalies
