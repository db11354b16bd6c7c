"""
Fraud Evaluation schemas.

Evaluations are append-only: one row per evaluated transaction, carrying
every sub-model score so the decision can be audited later.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Optional

from pydantic import BaseModel, Field

from trustgate.riskauth.schemas import GeoLocation


class FraudRiskLevel(StrEnum):
    MINIMAL = "MINIMAL"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class FraudDecision(StrEnum):
    APPROVE = "APPROVE"                      # no friction
    APPROVE_WITH_2FA = "APPROVE_WITH_2FA"    # approve after verification
    REVIEW = "REVIEW"                        # manual review
    HOLD = "HOLD"                            # hold funds
    DECLINE = "DECLINE"
    BLOCK_USER = "BLOCK_USER"


# Ordered mildest → harshest
DECISION_SEVERITY: list[FraudDecision] = list(FraudDecision)


class FactorCategory(StrEnum):
    IDENTITY = "IDENTITY"
    DEVICE = "DEVICE"
    BEHAVIOR = "BEHAVIOR"
    TRANSACTION = "TRANSACTION"
    VELOCITY = "VELOCITY"
    NETWORK = "NETWORK"


class FraudModel(StrEnum):
    ANOMALY = "anomaly_heuristic"
    PATTERN = "pattern_heuristic"
    RULES = "expert_rules"
    VELOCITY = "velocity"
    BEHAVIOR = "behavior_deviation"


class TransactionContext(BaseModel):
    """The transaction being evaluated."""
    user_id: uuid.UUID
    type: str = Field(..., min_length=1, max_length=40)
    amount: float = Field(..., ge=0)
    currency: str = Field(default="ARS", min_length=3, max_length=3)
    session_id: str = Field(..., min_length=1, max_length=64)
    ip_address: str = Field(..., min_length=1, max_length=45)
    transaction_id: Optional[str] = None
    destination_account: Optional[str] = None
    destination_name: Optional[str] = None
    is_international: bool = False
    device_fingerprint: Optional[str] = None
    geo_location: Optional[GeoLocation] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


@dataclass(frozen=True)
class FraudFactor:
    factor: str
    weight: int
    description: str
    category: FactorCategory


@dataclass(frozen=True)
class ModelScores:
    anomaly: float = 0.0
    pattern: float = 0.0
    rules: float = 0.0
    velocity: float = 0.0
    behavior: float = 0.0

    def as_dict(self) -> dict[str, float]:
        return {
            FraudModel.ANOMALY.value: self.anomaly,
            FraudModel.PATTERN.value: self.pattern,
            FraudModel.RULES.value: self.rules,
            FraudModel.VELOCITY.value: self.velocity,
            FraudModel.BEHAVIOR.value: self.behavior,
        }


@dataclass(frozen=True)
class FraudEvaluation:
    id: uuid.UUID
    user_id: uuid.UUID
    transaction_id: Optional[str]
    fraud_score: int                     # 0-100
    risk_level: FraudRiskLevel
    confidence: int                      # 0-100
    decision: FraudDecision
    decision_reason: str
    model_scores: ModelScores
    model_version: str
    evaluated_at: datetime
    processing_time_ms: float
    risk_factors: list[FraudFactor] = field(default_factory=list)
    positive_factors: list[FraudFactor] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    degraded: bool = False
