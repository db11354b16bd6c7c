"""
Trust Score schemas.

Tier, benefits and trend are pure functions of the global score; nothing
here carries hidden state.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum


class TrustTier(StrEnum):
    CRITICAL = "CRITICAL"    # 0-199: severe restrictions
    LOW = "LOW"              # 200-399: moderate restrictions
    MEDIUM = "MEDIUM"        # 400-599: normal operation
    HIGH = "HIGH"            # 600-799: basic benefits
    ELITE = "ELITE"          # 800-1000: every benefit


class TrustTrend(StrEnum):
    UP = "UP"
    DOWN = "DOWN"
    STABLE = "STABLE"


class TrustComponent(StrEnum):
    IDENTITY = "identity"
    FINANCIAL = "financial"
    BEHAVIORAL = "behavioral"
    TRANSACTIONAL = "transactional"
    SOCIAL = "social"


class ScoreSource(StrEnum):
    COMPUTED = "computed"    # recomputed now
    CACHED = "cached"        # fresh snapshot (< TTL)
    STALE = "stale"          # last stored snapshot, recompute failed
    DEFAULT = "default"      # no snapshot ever stored


@dataclass(frozen=True)
class TrustFactor:
    factor: str
    impact: int              # signed points inside its component
    description: str
    category: TrustComponent


@dataclass(frozen=True)
class TrustComponents:
    """Five component scores, each clamped to [0, 200]."""
    identity: int = 0
    financial: int = 0
    behavioral: int = 0
    transactional: int = 0
    social: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            TrustComponent.IDENTITY.value: self.identity,
            TrustComponent.FINANCIAL.value: self.financial,
            TrustComponent.BEHAVIORAL.value: self.behavioral,
            TrustComponent.TRANSACTIONAL.value: self.transactional,
            TrustComponent.SOCIAL.value: self.social,
        }


@dataclass(frozen=True)
class TierBenefits:
    financing_limit_percent: int
    instant_withdrawal: bool
    reduced_validations: bool
    premium_support: bool
    higher_limits: bool
    beta_features: bool


TIER_BENEFITS: dict[TrustTier, TierBenefits] = {
    TrustTier.CRITICAL: TierBenefits(0, False, False, False, False, False),
    TrustTier.LOW: TierBenefits(5, False, False, False, False, False),
    TrustTier.MEDIUM: TierBenefits(10, False, False, False, False, False),
    TrustTier.HIGH: TierBenefits(15, True, True, False, True, False),
    TrustTier.ELITE: TierBenefits(20, True, True, True, True, True),
}


@dataclass(frozen=True)
class TrustScoreResult:
    """
    One trust evaluation.

    `factors` is empty when the result comes from a stored snapshot; the
    snapshot persists component scores, not the explanation.
    """
    user_id: uuid.UUID
    global_score: int                 # 0-1000
    tier: TrustTier
    components: TrustComponents
    benefits: TierBenefits
    calculated_at: datetime
    next_review_at: datetime
    trend: TrustTrend = TrustTrend.STABLE
    factors: list[TrustFactor] = field(default_factory=list)
    source: ScoreSource = ScoreSource.COMPUTED
