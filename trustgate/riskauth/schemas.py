"""
Risk-Based Authentication schemas.

Adaptive friction: the required action is a pure function of the 0-100
risk score (plus the fail-closed override when evaluation degraded).
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, Field


class RiskLevel(StrEnum):
    MINIMAL = "MINIMAL"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class AuthAction(StrEnum):
    ALLOW = "ALLOW"                  # no extra friction
    BIOMETRY = "BIOMETRY"            # fingerprint / face
    PIN = "PIN"
    OTP = "OTP"                      # one-time code
    TWO_FACTOR = "2FA"               # authenticator app
    STEP_UP = "STEP_UP"              # biometry + 2FA
    COOLDOWN = "COOLDOWN"
    BLOCK = "BLOCK"
    MANUAL_REVIEW = "MANUAL_REVIEW"


class GeoLocation(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    country: Optional[str] = Field(default=None, max_length=2)
    city: Optional[str] = None


class OperationContext(BaseModel):
    """One sensitive operation attempt to assess."""
    user_id: uuid.UUID
    session_id: str = Field(..., min_length=1, max_length=64)
    operation: str = Field(..., min_length=1, max_length=50)
    ip_address: str = Field(..., min_length=1, max_length=45)
    user_agent: str = ""
    amount: Optional[float] = Field(default=None, ge=0)
    destination_account: Optional[str] = None
    device_fingerprint: Optional[str] = None
    geo_location: Optional[GeoLocation] = None


@dataclass(frozen=True)
class RiskFactor:
    factor: str
    weight: int                  # signed contribution to the 0-100 score
    description: str
    mitigatable: bool            # a step-up challenge can offset it


@dataclass(frozen=True)
class RiskAssessment:
    id: uuid.UUID
    user_id: uuid.UUID
    session_id: str
    operation: str
    risk_score: int
    risk_level: RiskLevel
    required_action: AuthAction
    risk_factors: list[RiskFactor]
    device_trusted: bool
    location_trusted: bool
    time_trusted: bool
    user_message: str
    created_at: datetime
    cooldown_minutes: Optional[int] = None
    degraded: bool = False
    challenge_completed: bool = False


class ChallengeResponse(BaseModel):
    """Shape depends on the challenge: biometry flag, OTP or TOTP code."""
    otp: Optional[str] = None
    biometry_passed: bool = False
    totp_code: Optional[str] = None


@dataclass(frozen=True)
class ChallengeResult:
    success: bool
    message: str
    assessment_id: Optional[uuid.UUID] = None
    details: dict = field(default_factory=dict)
