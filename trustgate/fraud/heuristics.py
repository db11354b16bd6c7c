"""
Fraud sub-models.

Five hand-written, deterministic scorers over already-loaded facts, plus
the combination step: weighted ensemble, trust multiplier, confidence,
risk level, decision and recommendations. Nothing here touches the
database, so identical facts and model version always give the same
evaluation.
"""

from dataclasses import dataclass
from statistics import pvariance
from typing import Optional

from trustgate.behavior.schemas import BehaviorProfile, UserSegment
from trustgate.fraud.schemas import (
    FactorCategory,
    FraudDecision,
    FraudFactor,
    FraudRiskLevel,
    ModelScores,
)
from trustgate.trust.schemas import TrustTier

# ── Configuration ─────────────────────────────────────────────────────────

MODEL_WEIGHTS = ModelScores(
    anomaly=0.25,
    pattern=0.30,
    rules=0.25,
    velocity=0.10,
    behavior=0.10,
)

TRUST_MULTIPLIERS: dict[TrustTier, float] = {
    TrustTier.ELITE: 0.7,
    TrustTier.HIGH: 0.85,
    TrustTier.MEDIUM: 1.0,
    TrustTier.LOW: 1.15,
    TrustTier.CRITICAL: 1.3,
}

DAILY_LIMITS: dict[str, float] = {
    "DIAMANTE": 5_000_000,
    "BLACK": 2_500_000,
    "ORO": 1_000_000,
}
DEFAULT_DAILY_LIMIT: float = 500_000
DAILY_LIMIT_WARNING_RATIO: float = 0.9

NEW_ACCOUNT_DAYS = 7
NEW_ACCOUNT_HIGH_AMOUNT: float = 500_000
UNVERIFIED_HIGH_AMOUNT: float = 100_000
ESTABLISHED_ACCOUNT_DAYS = 365
FREQUENT_RECIPIENT_TRANSFERS = 3
RECENT_FAILURES = 3
HOLD_ESCALATION_AMOUNT: float = 1_000_000

# Any of these forces DECLINE whatever the score
CRITICAL_FACTORS = frozenset({"BLACKLISTED_IP", "HIGH_RISK_RECIPIENT"})

# (exclusive upper bound, level)
LEVEL_BANDS: list[tuple[int, FraudRiskLevel]] = [
    (20, FraudRiskLevel.MINIMAL),
    (40, FraudRiskLevel.LOW),
    (60, FraudRiskLevel.MEDIUM),
    (80, FraudRiskLevel.HIGH),
]

# (exclusive upper bound, decision, reason)
DECISION_BANDS: list[tuple[int, FraudDecision, str]] = [
    (20, FraudDecision.APPROVE, "Low risk, transaction approved"),
    (40, FraudDecision.APPROVE_WITH_2FA, "Moderate risk, additional verification required"),
    (60, FraudDecision.REVIEW, "Elevated risk, manual review required"),
    (80, FraudDecision.HOLD, "High risk, funds held pending investigation"),
    (90, FraudDecision.DECLINE, "Very high risk, transaction declined"),
]
BLOCK_REASON = "Critical risk, user blocked for investigation"

RISKY_SEGMENTS = frozenset({UserSegment.AT_RISK, UserSegment.DORMANT})
VALUABLE_SEGMENTS = frozenset({UserSegment.POWER_USER, UserSegment.HIGH_VALUE})


# ── Facts ─────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class AnomalyFacts:
    amount: float
    average_amount: float
    transactions_last_hour: int
    hour: int
    is_new_recipient: bool


@dataclass(frozen=True)
class PatternFacts:
    recent_credential_change: bool = False
    fingerprints_24h: int = 0
    impossible_travel: bool = False
    pattern_break: bool = False


@dataclass(frozen=True)
class RuleFacts:
    amount: float
    account_age_days: int
    kyc_status: str
    ip_blacklisted: bool = False
    is_international: bool = False
    has_international_history: bool = True
    failed_last_hour: int = 0
    flagged_reason: Optional[str] = None
    is_flagged_recipient: bool = False
    contact_transfers: Optional[int] = None
    device_trusted: bool = False


@dataclass(frozen=True)
class VelocityFacts:
    amount: float
    transactions_last_hour: int
    daily_outgoing_total: float
    user_level: str
    new_recipients_24h: int


@dataclass(frozen=True)
class SubScore:
    """A rule-based model's score with the factors that produced it."""
    score: float
    risk_factors: tuple[FraudFactor, ...] = ()
    positive_factors: tuple[FraudFactor, ...] = ()


# ── Sub-models ────────────────────────────────────────────────────────────


def anomaly_score(facts: AnomalyFacts) -> float:
    score = 0.0
    if facts.average_amount > 0:
        deviation = abs(facts.amount - facts.average_amount) / facts.average_amount
        score += min(30.0, deviation * 20)
    if facts.transactions_last_hour > 5:
        score += min(25.0, (facts.transactions_last_hour - 5) * 5)
    if 0 <= facts.hour <= 5:
        score += 15
    if facts.is_new_recipient:
        score += 20
    # Suspiciously round amounts
    if facts.amount >= 10_000 and facts.amount % 1000 == 0:
        score += 10
    return min(100.0, score)


def pattern_score(facts: PatternFacts) -> float:
    score = 0.0
    if facts.recent_credential_change:
        score += 25
    if facts.fingerprints_24h >= 3:
        score += 20
    if facts.impossible_travel:
        score += 30
    if facts.pattern_break:
        score += 25
    return min(100.0, score)


def is_pattern_break(profile: Optional[BehaviorProfile], tx_type: str, amount: float) -> bool:
    """Unusual transaction type at more than three times the usual amount."""
    if profile is None:
        return False
    patterns = profile.transactional
    if tx_type in patterns.preferred_types:
        return False
    return patterns.avg_amount > 0 and amount > patterns.avg_amount * 3


def rules_score(facts: RuleFacts) -> SubScore:
    risk: list[FraudFactor] = []
    positive: list[FraudFactor] = []

    if facts.ip_blacklisted:
        risk.append(FraudFactor("BLACKLISTED_IP", 50, "IP address is blacklisted", FactorCategory.NETWORK))
    if facts.amount >= NEW_ACCOUNT_HIGH_AMOUNT and facts.account_age_days < NEW_ACCOUNT_DAYS:
        risk.append(FraudFactor(
            "HIGH_AMOUNT_NEW_ACCOUNT", 40, "High amount on an account under 7 days old",
            FactorCategory.TRANSACTION,
        ))
    if facts.is_international and not facts.has_international_history:
        risk.append(FraudFactor(
            "FIRST_INTERNATIONAL", 25, "First international transfer", FactorCategory.TRANSACTION,
        ))
    if facts.failed_last_hour >= RECENT_FAILURES:
        risk.append(FraudFactor(
            "MULTIPLE_FAILURES", 30, f"{facts.failed_last_hour} failed transactions in the last hour",
            FactorCategory.BEHAVIOR,
        ))
    if facts.kyc_status != "APPROVED" and facts.amount >= UNVERIFIED_HIGH_AMOUNT:
        risk.append(FraudFactor(
            "UNVERIFIED_HIGH_AMOUNT", 35, "High amount without completed KYC", FactorCategory.IDENTITY,
        ))
    if facts.is_flagged_recipient:
        reason = facts.flagged_reason or "watchlisted"
        risk.append(FraudFactor(
            "HIGH_RISK_RECIPIENT", 45, f"Recipient flagged: {reason}", FactorCategory.TRANSACTION,
        ))

    if facts.account_age_days > ESTABLISHED_ACCOUNT_DAYS:
        positive.append(FraudFactor(
            "ESTABLISHED_CUSTOMER", -15, "Customer for more than a year", FactorCategory.IDENTITY,
        ))
    if facts.contact_transfers is not None and facts.contact_transfers >= FREQUENT_RECIPIENT_TRANSFERS:
        positive.append(FraudFactor(
            "FREQUENT_RECIPIENT", -20, "Frequent recipient", FactorCategory.TRANSACTION,
        ))
    if facts.device_trusted:
        positive.append(FraudFactor("TRUSTED_DEVICE", -15, "Trusted device", FactorCategory.DEVICE))

    score = sum(f.weight for f in risk) + sum(f.weight for f in positive)
    return SubScore(max(0.0, float(score)), tuple(risk), tuple(positive))


def daily_limit_for(user_level: str) -> float:
    return DAILY_LIMITS.get(user_level.upper(), DEFAULT_DAILY_LIMIT)


def velocity_score(facts: VelocityFacts) -> SubScore:
    risk: list[FraudFactor] = []

    if facts.transactions_last_hour >= 10:
        risk.append(FraudFactor(
            "HIGH_HOURLY_VELOCITY", 40, f"{facts.transactions_last_hour} transactions in the last hour",
            FactorCategory.VELOCITY,
        ))
    elif facts.transactions_last_hour >= 5:
        risk.append(FraudFactor(
            "ELEVATED_HOURLY_VELOCITY", 20, f"{facts.transactions_last_hour} transactions in the last hour",
            FactorCategory.VELOCITY,
        ))

    limit = daily_limit_for(facts.user_level)
    if facts.daily_outgoing_total + facts.amount > limit * DAILY_LIMIT_WARNING_RATIO:
        risk.append(FraudFactor(
            "NEAR_DAILY_LIMIT", 25, f"Close to the daily limit ({limit:,.0f})", FactorCategory.VELOCITY,
        ))

    if facts.new_recipients_24h >= 5:
        risk.append(FraudFactor(
            "MANY_NEW_RECIPIENTS", 35, f"{facts.new_recipients_24h} new recipients in 24h",
            FactorCategory.VELOCITY,
        ))

    return SubScore(min(100.0, float(sum(f.weight for f in risk))), tuple(risk))


def _hour_distance(hour: int, preferred: list[int]) -> int:
    return min(min(abs(hour - h), 24 - abs(hour - h)) for h in preferred)


def behavior_score(profile: Optional[BehaviorProfile], amount: float, hour: int) -> SubScore:
    if profile is None:
        return SubScore(30.0, (FraudFactor(
            "NO_BEHAVIOR_PROFILE", 30, "No behavioral profile yet", FactorCategory.BEHAVIOR,
        ),))

    risk: list[FraudFactor] = []
    positive: list[FraudFactor] = []

    preferred = profile.temporal.preferred_hours
    if preferred and _hour_distance(hour, preferred) > 3:
        risk.append(FraudFactor("OUT_OF_HOURS", 20, "Outside the usual hours", FactorCategory.BEHAVIOR))

    average = profile.transactional.avg_amount
    if average > 0:
        deviation = (amount - average) / average
        if deviation > 3:
            risk.append(FraudFactor(
                "AMOUNT_DEVIATION", 30, f"Amount {deviation + 1:.1f}x the usual", FactorCategory.BEHAVIOR,
            ))
        elif deviation > 1.5:
            risk.append(FraudFactor(
                "AMOUNT_ELEVATED", 15, "Amount well above the usual", FactorCategory.BEHAVIOR,
            ))

    if profile.segment in RISKY_SEGMENTS:
        risk.append(FraudFactor(
            "RISKY_SEGMENT", 25, f"User segment: {profile.segment}", FactorCategory.BEHAVIOR,
        ))
    elif profile.segment in VALUABLE_SEGMENTS:
        positive.append(FraudFactor(
            "VALUABLE_SEGMENT", -15, f"User segment: {profile.segment}", FactorCategory.BEHAVIOR,
        ))

    score = sum(f.weight for f in risk) + sum(f.weight for f in positive)
    return SubScore(max(0.0, float(score)), tuple(risk), tuple(positive))


# ── Combination ───────────────────────────────────────────────────────────


def combine(scores: ModelScores, tier: TrustTier) -> int:
    """Weighted ensemble, scaled by the user's trust tier, clamped to 0-100."""
    weighted = (
        scores.anomaly * MODEL_WEIGHTS.anomaly
        + scores.pattern * MODEL_WEIGHTS.pattern
        + scores.rules * MODEL_WEIGHTS.rules
        + scores.velocity * MODEL_WEIGHTS.velocity
        + scores.behavior * MODEL_WEIGHTS.behavior
    )
    weighted *= TRUST_MULTIPLIERS.get(tier, 1.0)
    return max(0, min(100, round(weighted)))


def confidence(
    scores: ModelScores,
    risk_factor_count: int,
    concordance_weight: float = 0.6,
    factor_weight: float = 0.4,
) -> int:
    """Agreement across models blended with how much evidence fired."""
    variance = pvariance(list(scores.as_dict().values()))
    concordance = max(0.0, 100 - variance)
    factor_confidence = min(100, 50 + risk_factor_count * 10)
    value = concordance * concordance_weight + factor_confidence * factor_weight
    return max(0, min(100, round(value)))


def risk_level_for(score: int) -> FraudRiskLevel:
    for upper, level in LEVEL_BANDS:
        if score < upper:
            return level
    return FraudRiskLevel.CRITICAL


def decide(score: int, risk_factors: list[FraudFactor]) -> tuple[FraudDecision, str]:
    critical = next((f for f in risk_factors if f.factor in CRITICAL_FACTORS), None)
    if critical is not None:
        return FraudDecision.DECLINE, f"Critical factor: {critical.description}"
    for upper, decision, reason in DECISION_BANDS:
        if score < upper:
            return decision, reason
    return FraudDecision.BLOCK_USER, BLOCK_REASON


def recommendations_for(
    decision: FraudDecision, risk_factors: list[FraudFactor], amount: float,
) -> list[str]:
    recs: list[str] = []
    if decision == FraudDecision.APPROVE_WITH_2FA:
        recs.append("Request 2FA verification")
    elif decision == FraudDecision.REVIEW:
        recs.append("Assign to a fraud analyst for review")
        recs.append("Verify identity by phone call")
    elif decision == FraudDecision.HOLD:
        recs.append("Hold funds for 24-48 hours")
        recs.append("Notify the customer about the hold")
        if amount > HOLD_ESCALATION_AMOUNT:
            recs.append("Escalate to compliance")

    categories = {f.category for f in risk_factors}
    if FactorCategory.VELOCITY in categories:
        recs.append("Apply a temporary transaction cooldown")
    if FactorCategory.DEVICE in categories:
        recs.append("Require device re-verification")
    return recs
