"""
Risk evaluators.

Each evaluator is a pure function from already-loaded facts to the list of
signed factors it contributes. The assessor loads the facts concurrently
and sums the weights; nothing here touches the database.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from trustgate.riskauth.schemas import AuthAction, RiskFactor, RiskLevel
from trustgate.services.network import haversine_km, is_hosting_ip
from trustgate.trust.schemas import TrustTier

# ── Configuration ─────────────────────────────────────────────────────────

OPERATION_BASE_RISK: dict[str, int] = {
    "login": 10,
    "view_balance": 0,
    "view_transactions": 0,
    "transfer_internal": 20,
    "transfer_external": 35,
    "transfer_new_recipient": 50,
    "withdraw": 40,
    "invest": 15,
    "financing_request": 30,
    "change_password": 60,
    "change_email": 70,
    "change_phone": 70,
    "add_card": 40,
    "export_data": 50,
    "close_account": 90,
}
UNKNOWN_OPERATION_RISK: int = 25

CRITICAL_OPERATIONS = frozenset({"change_password", "change_email", "change_phone", "close_account"})
CRITICAL_OPERATION_FLOOR: int = 50

# Operation → ledger transaction type used for the amount baseline
AMOUNT_BASELINE_TYPES: dict[str, str] = {
    "transfer_internal": "TRANSFER_OUT",
    "transfer_external": "TRANSFER_OUT",
    "transfer_new_recipient": "TRANSFER_OUT",
    "withdraw": "INVESTMENT_WITHDRAWAL",
}

HIGH_RISK_COUNTRIES = frozenset({"KP", "IR", "SY", "MM", "AF", "YE"})
UNUSUAL_HOURS = range(2, 6)          # 02:00-05:59
HIGH_AMOUNT: float = 1_000_000
FREQUENT_RECIPIENT_TRANSFERS: int = 3

# (max score inclusive, level, action); above the last band is CRITICAL
ACTION_LADDER: list[tuple[int, RiskLevel, AuthAction]] = [
    (15, RiskLevel.MINIMAL, AuthAction.ALLOW),
    (30, RiskLevel.LOW, AuthAction.BIOMETRY),
    (50, RiskLevel.MEDIUM, AuthAction.OTP),
    (75, RiskLevel.HIGH, AuthAction.STEP_UP),
]
BLOCK_SCORE: int = 90

DEVICE_RISK_FACTORS = frozenset({"NO_DEVICE_INFO", "NEW_DEVICE", "UNTRUSTED_DEVICE"})
LOCATION_RISK_FACTORS = frozenset({"BLACKLISTED_IP", "VPN_PROXY_DETECTED", "HIGH_RISK_COUNTRY", "IMPOSSIBLE_TRAVEL"})
TIME_RISK_FACTORS = frozenset({"UNUSUAL_TIME"})


# ── Facts ─────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class LastPosition:
    lat: float
    lng: float
    seen_at: datetime


@dataclass(frozen=True)
class HistoryFacts:
    transactions_last_hour: int = 0
    failed_logins_24h: int = 0
    open_fraud_alerts_24h: int = 0


# ── Evaluators ────────────────────────────────────────────────────────────


def operation_risk(operation: str) -> list[RiskFactor]:
    base = OPERATION_BASE_RISK.get(operation, UNKNOWN_OPERATION_RISK)
    if base <= 0:
        return []
    return [RiskFactor("OPERATION_TYPE", base, f"Operation: {operation}", False)]


def device_risk(fingerprint: Optional[str], trust_level: Optional[str]) -> list[RiskFactor]:
    """`trust_level` is None when the fingerprint is not registered for the user."""
    if not fingerprint:
        return [RiskFactor("NO_DEVICE_INFO", 15, "No device information", True)]
    if trust_level is None:
        return [RiskFactor("NEW_DEVICE", 25, "Unregistered device", True)]
    if trust_level == "UNTRUSTED":
        return [RiskFactor("UNTRUSTED_DEVICE", 35, "Device marked as untrusted", True)]
    if trust_level == "TRUSTED":
        return [RiskFactor("TRUSTED_DEVICE", -10, "Trusted device", False)]
    return []


def location_risk(
    ip_address: str,
    ip_blacklisted: bool,
    country: Optional[str] = None,
    position: Optional[tuple[float, float]] = None,
    last_position: Optional[LastPosition] = None,
    now: Optional[datetime] = None,
    max_speed_kmh: float = 900.0,
) -> list[RiskFactor]:
    # A blacklisted IP ends the location checks
    if ip_blacklisted:
        return [RiskFactor("BLACKLISTED_IP", 50, "IP address is blacklisted", False)]

    factors: list[RiskFactor] = []
    if is_hosting_ip(ip_address):
        factors.append(RiskFactor("VPN_PROXY_DETECTED", 20, "Connection through a VPN or proxy", True))
    if country and country.upper() in HIGH_RISK_COUNTRIES:
        factors.append(RiskFactor("HIGH_RISK_COUNTRY", 40, f"High-risk country: {country.upper()}", False))
    if position is not None and last_position is not None and now is not None:
        if is_impossible_travel(position, last_position, now, max_speed_kmh):
            factors.append(RiskFactor(
                "IMPOSSIBLE_TRAVEL", 35, "Location inconsistent with recent history", True,
            ))
    return factors


def is_impossible_travel(
    position: tuple[float, float],
    last_position: LastPosition,
    now: datetime,
    max_speed_kmh: float,
) -> bool:
    hours = max(0.0, (now - last_position.seen_at).total_seconds() / 3600)
    distance = haversine_km(last_position.lat, last_position.lng, position[0], position[1])
    return distance > hours * max_speed_kmh


def time_risk(now: datetime) -> list[RiskFactor]:
    if now.hour in UNUSUAL_HOURS:
        return [RiskFactor("UNUSUAL_TIME", 10, "Operation at an unusual hour", True)]
    return []


def amount_risk(amount: Optional[float], average: float) -> list[RiskFactor]:
    if not amount:
        return []
    if average > 0 and amount > average * 5:
        return [RiskFactor("AMOUNT_5X_AVERAGE", 30, f"Amount 5x above the average ({average:.0f})", True)]
    if average > 0 and amount > average * 3:
        return [RiskFactor("AMOUNT_3X_AVERAGE", 15, "Amount 3x above the average", True)]
    if amount >= HIGH_AMOUNT:
        return [RiskFactor("HIGH_AMOUNT", 20, "High amount (1M+)", True)]
    return []


def recipient_risk(contact_transfers: Optional[int], has_prior_transfer: bool) -> list[RiskFactor]:
    if contact_transfers is not None and contact_transfers >= FREQUENT_RECIPIENT_TRANSFERS:
        return [RiskFactor("FREQUENT_RECIPIENT", -10, "Frequent recipient", False)]
    if not has_prior_transfer:
        return [RiskFactor("NEW_RECIPIENT", 20, "First transfer to this recipient", True)]
    return []


def history_risk(facts: HistoryFacts) -> list[RiskFactor]:
    factors: list[RiskFactor] = []
    if facts.transactions_last_hour >= 10:
        factors.append(RiskFactor("HIGH_VELOCITY", 25, "10+ operations in the last hour", True))
    elif facts.transactions_last_hour >= 5:
        factors.append(RiskFactor("ELEVATED_VELOCITY", 10, "5+ operations in the last hour", True))
    if facts.failed_logins_24h >= 3:
        factors.append(RiskFactor(
            "FAILED_LOGINS", 15, f"{facts.failed_logins_24h} failed logins in 24h", True,
        ))
    if facts.open_fraud_alerts_24h > 0:
        factors.append(RiskFactor("RECENT_FRAUD_ALERT", 30, "Open fraud alert in the last 24h", False))
    return factors


def trust_adjustment(score: int) -> list[RiskFactor]:
    if score >= 800:
        return [RiskFactor("ELITE_TRUST_SCORE", -20, f"{TrustTier.ELITE} trust score", False)]
    if score >= 600:
        return [RiskFactor("HIGH_TRUST_SCORE", -10, f"{TrustTier.HIGH} trust score", False)]
    if score < 200:
        return [RiskFactor("CRITICAL_TRUST_SCORE", 30, f"{TrustTier.CRITICAL} trust score", False)]
    if score < 400:
        return [RiskFactor("LOW_TRUST_SCORE", 15, f"{TrustTier.LOW} trust score", False)]
    return []


# ── Score → decision ──────────────────────────────────────────────────────


def clamp_score(score: int, operation: str) -> int:
    score = max(0, min(100, score))
    if operation in CRITICAL_OPERATIONS:
        score = max(score, CRITICAL_OPERATION_FLOOR)
    return score


def action_for_score(score: int) -> tuple[RiskLevel, AuthAction]:
    for upper, level, action in ACTION_LADDER:
        if score <= upper:
            return level, action
    if score >= BLOCK_SCORE:
        return RiskLevel.CRITICAL, AuthAction.BLOCK
    return RiskLevel.CRITICAL, AuthAction.MANUAL_REVIEW


def calculate_cooldown(score: int) -> int:
    if score >= 90:
        return 60
    if score >= 80:
        return 30
    if score >= 70:
        return 15
    return 5


def user_message(action: AuthAction, factors: list[RiskFactor]) -> str:
    main = next((f.description.lower() for f in factors if f.weight > 0), "a security check")
    messages = {
        AuthAction.ALLOW: "",
        AuthAction.BIOMETRY: "Confirm with your fingerprint or face to continue.",
        AuthAction.PIN: "Enter your security PIN.",
        AuthAction.OTP: f"Because of {main}, we sent you a verification code.",
        AuthAction.TWO_FACTOR: "Enter the code from your authenticator app.",
        AuthAction.STEP_UP: f"We detected {main}. Verify your identity with biometrics and a code.",
        AuthAction.COOLDOWN: "For your security, wait a few minutes before trying again.",
        AuthAction.BLOCK: "This operation was blocked for security. Contact support if you think this is a mistake.",
        AuthAction.MANUAL_REVIEW: "This operation needs additional verification. We will contact you shortly.",
    }
    return messages.get(action, "Security verification required.")
