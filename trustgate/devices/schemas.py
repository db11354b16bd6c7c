"""
Device registry schemas.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, Field


class DeviceTrustLevel(StrEnum):
    NEW = "NEW"
    KNOWN = "KNOWN"
    TRUSTED = "TRUSTED"
    UNTRUSTED = "UNTRUSTED"


class DevicePlatform(StrEnum):
    IOS = "ios"
    ANDROID = "android"
    WEB = "web"
    UNKNOWN = "unknown"


class FactorImpact(StrEnum):
    POSITIVE = "POSITIVE"
    NEGATIVE = "NEGATIVE"
    NEUTRAL = "NEUTRAL"


class DeviceSignals(BaseModel):
    """Raw device / browser characteristics reported by the client."""

    user_agent: str = Field(..., min_length=1)
    platform: Optional[str] = None
    screen_width: Optional[int] = Field(default=None, ge=0)
    screen_height: Optional[int] = Field(default=None, ge=0)
    color_depth: Optional[int] = None
    timezone: Optional[str] = None
    language: Optional[str] = None
    hardware_concurrency: Optional[int] = None
    canvas_hash: Optional[str] = None
    webgl_vendor: Optional[str] = None
    webgl_renderer: Optional[str] = None
    fonts_hash: Optional[str] = None
    device_id: Optional[str] = None          # IDFV / Android ID
    is_emulator: bool = False
    is_rooted: bool = False
    app_version: Optional[str] = None


@dataclass(frozen=True)
class DeviceTrustFactor:
    """One signed input to device trust, computed on read."""
    factor: str
    value: object
    impact: FactorImpact


@dataclass(frozen=True)
class DeviceInfo:
    """Read model of a registered device plus its computed trust factors."""
    id: uuid.UUID
    user_id: uuid.UUID
    fingerprint: str
    trust_level: DeviceTrustLevel
    platform: DevicePlatform
    os_version: Optional[str]
    device_model: Optional[str]
    device_name: Optional[str]
    first_seen_at: datetime
    last_seen_at: datetime
    last_ip: Optional[str]
    login_count: int
    successful_ops: int
    failed_ops: int
    is_blocked: bool
    blocked_reason: Optional[str]
    is_emulator: bool
    is_rooted: bool
    trust_factors: list[DeviceTrustFactor] = field(default_factory=list)
    is_new: bool = False


@dataclass(frozen=True)
class DeviceStats:
    total: int
    trusted: int
    blocked: int
    platforms: dict[str, int]
    recently_active: int
