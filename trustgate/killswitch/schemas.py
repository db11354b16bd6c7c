"""
Kill Switch schemas.

The whole configuration is one document. It is never patched in place:
every change produces a new document that replaces the stored one.
"""

import uuid
from datetime import datetime
from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class KillSwitchScope(StrEnum):
    GLOBAL = "GLOBAL"
    PRODUCT = "PRODUCT"
    REGION = "REGION"
    USER_SEGMENT = "USER_SEGMENT"
    TRANSACTION_TYPE = "TRANSACTION_TYPE"


PRODUCTS = (
    "transfers",
    "investments",
    "financing",
    "cards",
    "qr_payments",
    "service_payments",
    "withdrawals",
    "deposits",
    "crypto",
    "all",
)
REGIONS = ("AR", "BR", "CL", "UY", "MX")
USER_SEGMENTS = (
    "new_users",          # account younger than 30 days
    "low_trust",          # latest trust score below 400
    "high_risk",          # open fraud alerts
    "unverified",         # KYC not approved
    "level_plata",
    "level_oro",
    "level_black",
    "level_diamante",
    "all",
)
TRANSACTION_TYPES = ("incoming", "outgoing", "internal", "international")

ALL_TARGET = "all"
MAINTENANCE_TARGET = "MAINTENANCE"


class AutoTriggerConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    fraud_rate_threshold: float = Field(default=5.0, ge=0, le=100)       # % of last-hour transactions
    error_rate_threshold: float = Field(default=10.0, ge=0, le=100)      # % failed in the last hour
    volume_anomaly_multiplier: float = Field(default=10.0, gt=0)         # × 7-day hourly average


class ActiveKillSwitch(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    scope: KillSwitchScope
    target: str
    reason: str
    activated_at: datetime
    activated_by: str
    expires_at: Optional[datetime] = None
    auto_activated: bool = False


class KillSwitchState(BaseModel):
    model_config = ConfigDict(frozen=True)

    global_kill: bool = False
    maintenance_mode: bool = False
    maintenance_message: Optional[str] = None
    products: dict[str, bool] = Field(default_factory=lambda: {p: False for p in PRODUCTS})
    regions: dict[str, bool] = Field(default_factory=lambda: {r: False for r in REGIONS})
    user_segments: dict[str, bool] = Field(default_factory=lambda: {s: False for s in USER_SEGMENTS})
    transaction_types: dict[str, bool] = Field(default_factory=lambda: {t: False for t in TRANSACTION_TYPES})
    auto_triggers: AutoTriggerConfig = Field(default_factory=AutoTriggerConfig)
    active_kill_switches: tuple[ActiveKillSwitch, ...] = ()
    last_modified: datetime
    modified_by: str = "system"
    # Storage version of the document this state was read from; not stored in it
    version: int = Field(default=0, exclude=True)


def default_state(now: datetime) -> KillSwitchState:
    """Everything enabled, auto-triggers on."""
    return KillSwitchState(last_modified=now, modified_by="system")
