"""
Trust Score point tables.

Five pure component scorers over plain fact records. Each returns its
clamped score plus the signed factors that produced it. Missing related
data arrives as zeros / None and simply earns no points.
"""

from dataclasses import dataclass
from typing import Optional

from trustgate.trust.schemas import (
    TrustComponent,
    TrustComponents,
    TrustFactor,
    TrustTier,
    TrustTrend,
)

# ── Configuration ─────────────────────────────────────────────────────────

COMPONENT_MIN: int = 0
COMPONENT_MAX: int = 200
GLOBAL_MAX: int = 1000
GLOBAL_SCALE: int = 5

COMPONENT_WEIGHTS: dict[TrustComponent, float] = {
    TrustComponent.IDENTITY: 0.25,
    TrustComponent.FINANCIAL: 0.25,
    TrustComponent.BEHAVIORAL: 0.15,
    TrustComponent.TRANSACTIONAL: 0.25,
    TrustComponent.SOCIAL: 0.10,
}

# Upper bounds (exclusive) of each tier band
TIER_BANDS: list[tuple[int, TrustTier]] = [
    (200, TrustTier.CRITICAL),
    (400, TrustTier.LOW),
    (600, TrustTier.MEDIUM),
    (800, TrustTier.HIGH),
]

TREND_DEAD_BAND: int = 20

KYC_POINTS: dict[str, tuple[str, int, str]] = {
    "APPROVED": ("KYC_APPROVED", 80, "KYC completed and approved"),
    "IN_PROGRESS": ("KYC_IN_PROGRESS", 30, "KYC in progress"),
    "PENDING": ("KYC_PENDING", 10, "KYC pending"),
    "REJECTED": ("KYC_REJECTED", -20, "KYC rejected"),
}

# (min days, factor, points, description), first match wins
ACCOUNT_AGE_POINTS: list[tuple[int, str, int, str]] = [
    (365, "ACCOUNT_AGE_1Y", 40, "Account older than one year"),
    (180, "ACCOUNT_AGE_6M", 30, "Account older than six months"),
    (90, "ACCOUNT_AGE_3M", 20, "Account older than three months"),
    (30, "ACCOUNT_AGE_1M", 10, "Account older than one month"),
]

INVESTMENT_POINTS: list[tuple[float, str, int, str]] = [
    (150_000_000, "INVESTMENT_DIAMANTE", 60, "Diamante-level investment"),
    (50_000_000, "INVESTMENT_BLACK", 50, "Black-level investment"),
    (10_000_000, "INVESTMENT_ORO", 40, "Oro-level investment"),
    (1_000_000, "INVESTMENT_PLATA", 25, "Plata-level investment"),
]

LEVEL_BONUS: dict[str, int] = {
    "PLATA": 10,
    "ORO": 25,
    "BLACK": 40,
    "DIAMANTE": 50,
}


# ── Facts ─────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class IdentityFacts:
    kyc_status: str
    email_verified: bool
    phone_verified: bool
    account_age_days: float
    has_complete_profile: bool


@dataclass(frozen=True)
class FinancialFacts:
    investment_total: float = 0.0
    deposit_months: int = 0           # distinct months with a completed deposit, last 3 months
    balance: float = 0.0
    average_balance: float = 0.0
    user_level: Optional[str] = None


@dataclass(frozen=True)
class BehavioralFacts:
    sessions_30d: int = 0
    transaction_types_30d: int = 0
    push_enabled: bool = False
    security_incidents_30d: int = 0


@dataclass(frozen=True)
class TransactionalFacts:
    installments_paid: int = 0
    installments_overdue: int = 0
    active_defaults: int = 0
    completed_6m: int = 0
    reversals: int = 0


@dataclass(frozen=True)
class SocialFacts:
    completed_referrals: int = 0
    referrer_score: Optional[int] = None
    rated_tickets: int = 0
    avg_rating: float = 0.0
    newsletter_subscribed: bool = False
    app_review_given: bool = False


def clamp_component(points: int) -> int:
    return max(COMPONENT_MIN, min(COMPONENT_MAX, points))


def _total(base: int, factors: list[TrustFactor]) -> int:
    return clamp_component(base + sum(f.impact for f in factors))


# ── Component scorers ─────────────────────────────────────────────────────


def identity_score(facts: IdentityFacts) -> tuple[int, list[TrustFactor]]:
    cat = TrustComponent.IDENTITY
    factors: list[TrustFactor] = []

    kyc = KYC_POINTS.get(facts.kyc_status)
    if kyc:
        factors.append(TrustFactor(kyc[0], kyc[1], kyc[2], cat))
    if facts.email_verified:
        factors.append(TrustFactor("EMAIL_VERIFIED", 20, "E-mail verified", cat))
    if facts.phone_verified:
        factors.append(TrustFactor("PHONE_VERIFIED", 30, "Phone verified", cat))
    for min_days, name, points, desc in ACCOUNT_AGE_POINTS:
        if facts.account_age_days > min_days:
            factors.append(TrustFactor(name, points, desc, cat))
            break
    if facts.has_complete_profile:
        factors.append(TrustFactor("COMPLETE_PROFILE", 30, "Address and birth date on file", cat))

    return _total(0, factors), factors


def financial_score(facts: FinancialFacts) -> tuple[int, list[TrustFactor]]:
    cat = TrustComponent.FINANCIAL
    factors: list[TrustFactor] = []

    for threshold, name, points, desc in INVESTMENT_POINTS:
        if facts.investment_total >= threshold:
            factors.append(TrustFactor(name, points, desc, cat))
            break
    else:
        if facts.investment_total > 0:
            factors.append(TrustFactor("HAS_INVESTMENT", 10, "Has an active investment", cat))

    if facts.deposit_months >= 3:
        factors.append(TrustFactor("CONSISTENT_DEPOSITS", 50, "Deposits in each of the last 3 months", cat))
    elif facts.deposit_months >= 2:
        factors.append(TrustFactor("REGULAR_DEPOSITS", 30, "Regular deposits", cat))

    balance, avg = facts.balance, facts.average_balance
    if balance > 0 and avg > 0 and balance >= avg * 0.8:
        factors.append(TrustFactor("STABLE_BALANCE", 40, "Balance above 80% of its average", cat))
    elif balance >= avg * 0.5:
        factors.append(TrustFactor("MODERATE_BALANCE", 20, "Moderate balance", cat))

    bonus = LEVEL_BONUS.get(facts.user_level or "", 0)
    if bonus:
        factors.append(TrustFactor(f"LEVEL_{facts.user_level}", bonus, f"Level {facts.user_level}", cat))

    return _total(0, factors), factors


def behavioral_score(facts: BehavioralFacts) -> tuple[int, list[TrustFactor]]:
    cat = TrustComponent.BEHAVIORAL
    factors: list[TrustFactor] = []

    if facts.sessions_30d >= 20:
        factors.append(TrustFactor("VERY_ACTIVE", 40, "20+ sessions in 30 days", cat))
    elif facts.sessions_30d >= 10:
        factors.append(TrustFactor("ACTIVE_USER", 30, "10+ sessions in 30 days", cat))
    elif facts.sessions_30d >= 4:
        factors.append(TrustFactor("REGULAR_USER", 15, "Regular usage", cat))
    elif facts.sessions_30d == 0:
        factors.append(TrustFactor("INACTIVE_USER", -30, "No sessions in 30 days", cat))

    if facts.transaction_types_30d >= 5:
        factors.append(TrustFactor("POWER_USER", 50, "Uses 5+ features", cat))
    elif facts.transaction_types_30d >= 3:
        factors.append(TrustFactor("DIVERSE_USAGE", 30, "Uses several features", cat))
    elif facts.transaction_types_30d >= 1:
        factors.append(TrustFactor("BASIC_USAGE", 15, "Basic usage", cat))

    if facts.push_enabled:
        factors.append(TrustFactor("PUSH_ENABLED", 20, "Push notifications enabled", cat))

    incidents = facts.security_incidents_30d
    if incidents == 0:
        factors.append(TrustFactor("CLEAN_BEHAVIOR", 40, "No security incidents", cat))
    else:
        factors.append(TrustFactor(
            "SECURITY_INCIDENTS", -incidents * 20, f"{incidents} security incidents", cat,
        ))

    return _total(50, factors), factors


def transactional_score(facts: TransactionalFacts) -> tuple[int, list[TrustFactor]]:
    cat = TrustComponent.TRANSACTIONAL
    factors: list[TrustFactor] = []

    paid, overdue = facts.installments_paid, facts.installments_overdue
    if paid + overdue > 0:
        rate = paid / (paid + overdue)
        if rate == 1 and paid >= 6:
            factors.append(TrustFactor("PERFECT_PAYMENT", 80, "Perfect payment history (6+ installments)", cat))
        elif rate >= 0.95:
            factors.append(TrustFactor("EXCELLENT_PAYMENT", 60, "Payment rate above 95%", cat))
        elif rate >= 0.8:
            factors.append(TrustFactor("GOOD_PAYMENT", 40, "Payment rate above 80%", cat))
        else:
            factors.append(TrustFactor("POOR_PAYMENT", -30, "Poor payment history", cat))

    if facts.active_defaults == 0:
        factors.append(TrustFactor("NO_DEFAULTS", 40, "No overdue installments", cat))
    else:
        factors.append(TrustFactor(
            "ACTIVE_DEFAULTS", -facts.active_defaults * 20,
            f"{facts.active_defaults} overdue installments", cat,
        ))

    if facts.completed_6m >= 50:
        factors.append(TrustFactor("HIGH_VOLUME", 40, "High transaction volume", cat))
    elif facts.completed_6m >= 20:
        factors.append(TrustFactor("MODERATE_VOLUME", 25, "Moderate transaction volume", cat))
    elif facts.completed_6m >= 5:
        factors.append(TrustFactor("LOW_VOLUME", 10, "Low transaction volume", cat))

    if facts.reversals == 0:
        factors.append(TrustFactor("NO_DISPUTES", 40, "No reversed transactions", cat))
    else:
        factors.append(TrustFactor(
            "HAS_DISPUTES", -facts.reversals * 15, f"{facts.reversals} reversed transactions", cat,
        ))

    return _total(50, factors), factors


def social_score(facts: SocialFacts) -> tuple[int, list[TrustFactor]]:
    cat = TrustComponent.SOCIAL
    factors: list[TrustFactor] = []

    if facts.completed_referrals >= 10:
        factors.append(TrustFactor("TOP_REFERRER", 80, "10+ completed referrals", cat))
    elif facts.completed_referrals >= 5:
        factors.append(TrustFactor("ACTIVE_REFERRER", 50, "5+ completed referrals", cat))
    elif facts.completed_referrals >= 1:
        factors.append(TrustFactor("HAS_REFERRALS", 25, "Has completed referrals", cat))

    if facts.referrer_score is not None:
        if facts.referrer_score >= 700:
            factors.append(TrustFactor("TRUSTED_REFERRAL", 30, "Referred by a trusted user", cat))
        elif facts.referrer_score >= 500:
            factors.append(TrustFactor("VALID_REFERRAL", 15, "Referred by a valid user", cat))

    if facts.rated_tickets > 0:
        if facts.avg_rating >= 4.5:
            factors.append(TrustFactor("EXCELLENT_FEEDBACK", 40, "Excellent support feedback", cat))
        elif facts.avg_rating >= 4:
            factors.append(TrustFactor("GOOD_FEEDBACK", 25, "Good support feedback", cat))

    if facts.newsletter_subscribed:
        factors.append(TrustFactor("NEWSLETTER_SUBSCRIBED", 20, "Newsletter subscriber", cat))
    if facts.app_review_given:
        factors.append(TrustFactor("APP_REVIEWED", 30, "Left an app review", cat))

    return _total(50, factors), factors


# ── Composite ─────────────────────────────────────────────────────────────


def global_score(components: TrustComponents) -> int:
    """round(Σ component × weight × 5), clamped to [0, 1000]."""
    values = components.as_dict()
    weighted = sum(values[c.value] * w for c, w in COMPONENT_WEIGHTS.items())
    return max(0, min(GLOBAL_MAX, round(weighted * GLOBAL_SCALE)))


def tier_for_score(score: int) -> TrustTier:
    for upper, tier in TIER_BANDS:
        if score < upper:
            return tier
    return TrustTier.ELITE


def trend_for(current: int, previous: Optional[int]) -> TrustTrend:
    if previous is None:
        return TrustTrend.STABLE
    diff = current - previous
    if diff > TREND_DEAD_BAND:
        return TrustTrend.UP
    if diff < -TREND_DEAD_BAND:
        return TrustTrend.DOWN
    return TrustTrend.STABLE
