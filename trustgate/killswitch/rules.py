"""
Kill switch rules.

Pure functions over the configuration document: which axis a scope
flips, the new document after a switch, and whether an operation is
denied. Axes are checked in a fixed order and the first one that is on
decides.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from trustgate.errors import PolicyDecision, ValidationError
from trustgate.killswitch.schemas import (
    ALL_TARGET,
    PRODUCTS,
    TRANSACTION_TYPES,
    USER_SEGMENTS,
    ActiveKillSwitch,
    KillSwitchScope,
    KillSwitchState,
)

NEW_USER_DAYS = 30
LOW_TRUST_SCORE = 400

PRODUCT_NAMES: dict[str, str] = {
    "transfers": "Transfers",
    "investments": "Investments",
    "financing": "Financing",
    "cards": "Cards",
    "qr_payments": "QR payments",
    "service_payments": "Service payments",
    "withdrawals": "Withdrawals",
    "deposits": "Deposits",
    "crypto": "Crypto",
    "all": "All services",
}

SEGMENT_MESSAGES: dict[str, str] = {
    "all": "Operations are temporarily suspended for all users.",
    "new_users": "Operations are temporarily limited for new accounts.",
    "low_trust": "Your account requires additional verification.",
    "high_risk": "Your account is under security review.",
    "unverified": "Complete your identity verification to continue.",
}


@dataclass(frozen=True)
class UserFacts:
    """What the segment axis needs to know about the user."""
    account_age_days: float
    kyc_status: str
    user_level: str
    trust_score: Optional[int] = None
    open_fraud_alerts: int = 0


# ── Targets ───────────────────────────────────────────────────────────────


def normalize_target(scope: KillSwitchScope, target: str) -> str:
    """Validate a switch target for its scope and return its canonical form."""
    if scope == KillSwitchScope.GLOBAL:
        return target or "GLOBAL"
    if scope == KillSwitchScope.REGION:
        region = (target or "").upper()
        if len(region) != 2 or not region.isalpha():
            raise ValidationError(f"Invalid region: {target!r}", details={"field": "target"})
        return region

    allowed = {
        KillSwitchScope.PRODUCT: PRODUCTS,
        KillSwitchScope.USER_SEGMENT: USER_SEGMENTS,
        KillSwitchScope.TRANSACTION_TYPE: TRANSACTION_TYPES,
    }[scope]
    normalized = (target or "").lower()
    if normalized not in allowed:
        raise ValidationError(
            f"Unknown {scope.value.lower()} target: {target!r}",
            details={"field": "target", "allowed": list(allowed)},
        )
    return normalized


def with_switch(state: KillSwitchState, scope: KillSwitchScope, target: str, on: bool) -> KillSwitchState:
    """Flip one axis flag. Returns a new document."""
    if scope == KillSwitchScope.GLOBAL:
        return state.model_copy(update={"global_kill": on})
    field_name = {
        KillSwitchScope.PRODUCT: "products",
        KillSwitchScope.REGION: "regions",
        KillSwitchScope.USER_SEGMENT: "user_segments",
        KillSwitchScope.TRANSACTION_TYPE: "transaction_types",
    }[scope]
    flags = dict(getattr(state, field_name))
    flags[target] = on
    return state.model_copy(update={field_name: flags})


def is_switch_on(state: KillSwitchState, scope: KillSwitchScope, target: str) -> bool:
    if scope == KillSwitchScope.GLOBAL:
        return state.global_kill
    flags = {
        KillSwitchScope.PRODUCT: state.products,
        KillSwitchScope.REGION: state.regions,
        KillSwitchScope.USER_SEGMENT: state.user_segments,
        KillSwitchScope.TRANSACTION_TYPE: state.transaction_types,
    }[scope]
    return bool(flags.get(target))


def find_active(state: KillSwitchState, scope: KillSwitchScope, target: str) -> Optional[ActiveKillSwitch]:
    return next(
        (ks for ks in state.active_kill_switches if ks.scope == scope and ks.target == target),
        None,
    )


def expired_switches(state: KillSwitchState, now: datetime) -> list[ActiveKillSwitch]:
    return [ks for ks in state.active_kill_switches if ks.expires_at is not None and ks.expires_at < now]


# ── Checks ────────────────────────────────────────────────────────────────


def check_axes(
    state: KillSwitchState,
    product: str,
    region: Optional[str] = None,
    transaction_type: Optional[str] = None,
) -> Optional[PolicyDecision]:
    """Every axis except the user segment, in order."""
    if state.global_kill:
        return PolicyDecision.deny(
            "GLOBAL_KILL", "The system is temporarily suspended for emergency maintenance.",
        )

    if state.maintenance_mode:
        return PolicyDecision.deny(
            "MAINTENANCE_MODE",
            state.maintenance_message or "Scheduled maintenance in progress. We will be back soon.",
        )

    product = product.lower()
    if state.products.get(product) or state.products.get(ALL_TARGET):
        blocked = product if state.products.get(product) else ALL_TARGET
        name = PRODUCT_NAMES.get(product, product)
        return PolicyDecision.deny(
            f"PRODUCT_{blocked.upper()}", f"{name} temporarily unavailable.", product=product,
        )

    if region and state.regions.get(region.upper()):
        return PolicyDecision.deny(
            f"REGION_{region.upper()}", "Service temporarily unavailable in your region.", region=region.upper(),
        )

    if transaction_type and state.transaction_types.get(transaction_type.lower()):
        return PolicyDecision.deny(
            f"TX_TYPE_{transaction_type.upper()}",
            "This type of operation is temporarily suspended.",
            transaction_type=transaction_type.lower(),
        )
    return None


def segments_need_user(state: KillSwitchState) -> bool:
    return any(on for segment, on in state.user_segments.items() if segment != ALL_TARGET)


def check_segment(state: KillSwitchState, user: Optional[UserFacts]) -> Optional[PolicyDecision]:
    segments = state.user_segments
    if segments.get(ALL_TARGET):
        return _segment_denial(ALL_TARGET)
    if user is None:
        return None

    if segments.get("new_users") and user.account_age_days < NEW_USER_DAYS:
        return _segment_denial("new_users")
    if segments.get("low_trust") and user.trust_score is not None and user.trust_score < LOW_TRUST_SCORE:
        return _segment_denial("low_trust")
    if segments.get("high_risk") and user.open_fraud_alerts > 0:
        return _segment_denial("high_risk")
    if segments.get("unverified") and user.kyc_status != "APPROVED":
        return _segment_denial("unverified")

    level_segment = f"level_{user.user_level.lower()}"
    if segments.get(level_segment):
        return PolicyDecision.deny(
            f"USER_SEGMENT_{level_segment.upper()}",
            f"Operations are temporarily limited for {user.user_level.upper()} users.",
            segment=level_segment,
        )
    return None


def _segment_denial(segment: str) -> PolicyDecision:
    return PolicyDecision.deny(f"USER_SEGMENT_{segment.upper()}", SEGMENT_MESSAGES[segment], segment=segment)
