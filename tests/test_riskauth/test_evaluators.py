"""
Tests for the risk evaluators.

Covers:
- Score → action ladder and cooldown bands
- Critical operation floor and clamping
- Location, amount, recipient, history and trust factors
"""

from datetime import datetime, timedelta

from hypothesis import given
from hypothesis import strategies as st

from trustgate.riskauth.evaluators import (
    HistoryFacts,
    LastPosition,
    action_for_score,
    amount_risk,
    calculate_cooldown,
    clamp_score,
    device_risk,
    history_risk,
    location_risk,
    operation_risk,
    recipient_risk,
    time_risk,
    trust_adjustment,
)
from trustgate.riskauth.schemas import AuthAction, RiskLevel

NOW = datetime(2026, 3, 2, 14, 0, 0)


def _names(factors) -> set[str]:
    return {f.factor for f in factors}


class TestLadder:
    def test_band_edges(self):
        assert action_for_score(0) == (RiskLevel.MINIMAL, AuthAction.ALLOW)
        assert action_for_score(15) == (RiskLevel.MINIMAL, AuthAction.ALLOW)
        assert action_for_score(16) == (RiskLevel.LOW, AuthAction.BIOMETRY)
        assert action_for_score(31) == (RiskLevel.MEDIUM, AuthAction.OTP)
        assert action_for_score(51) == (RiskLevel.HIGH, AuthAction.STEP_UP)
        assert action_for_score(75) == (RiskLevel.HIGH, AuthAction.STEP_UP)
        assert action_for_score(76) == (RiskLevel.CRITICAL, AuthAction.MANUAL_REVIEW)
        assert action_for_score(89) == (RiskLevel.CRITICAL, AuthAction.MANUAL_REVIEW)
        assert action_for_score(90) == (RiskLevel.CRITICAL, AuthAction.BLOCK)

    @given(raw=st.integers(min_value=-500, max_value=500), op=st.sampled_from(["login", "change_email", "unknown_op"]))
    def test_clamp_bounds(self, raw, op):
        score = clamp_score(raw, op)
        assert 0 <= score <= 100
        if op == "change_email":
            assert score >= 50

    @given(a=st.integers(min_value=0, max_value=100), b=st.integers(min_value=0, max_value=100))
    def test_ladder_monotonic(self, a, b):
        lo, hi = sorted((a, b))
        levels = list(RiskLevel)
        assert levels.index(action_for_score(hi)[0]) >= levels.index(action_for_score(lo)[0])

    def test_cooldown_bands(self):
        assert calculate_cooldown(95) == 60
        assert calculate_cooldown(85) == 30
        assert calculate_cooldown(72) == 15
        assert calculate_cooldown(40) == 5


class TestEvaluators:
    def test_operation_base(self):
        assert operation_risk("view_balance") == []
        assert operation_risk("close_account")[0].weight == 90
        assert operation_risk("something_else")[0].weight == 25

    def test_device(self):
        assert _names(device_risk(None, None)) == {"NO_DEVICE_INFO"}
        assert _names(device_risk("fp", None)) == {"NEW_DEVICE"}
        assert _names(device_risk("fp", "UNTRUSTED")) == {"UNTRUSTED_DEVICE"}
        assert device_risk("fp", "TRUSTED")[0].weight == -10
        assert device_risk("fp", "KNOWN") == []

    def test_blacklisted_ip_short_circuits(self):
        factors = location_risk("52.1.1.1", True, country="IR")
        assert _names(factors) == {"BLACKLISTED_IP"}

    def test_vpn_and_country(self):
        assert _names(location_risk("52.1.1.1", False, country="ir")) == {"VPN_PROXY_DETECTED", "HIGH_RISK_COUNTRY"}

    def test_impossible_travel(self):
        # Buenos Aires an hour ago, Madrid now
        last = LastPosition(-34.6037, -58.3816, NOW - timedelta(hours=1))
        factors = location_risk("190.1.1.1", False, position=(40.4168, -3.7038), last_position=last, now=NOW)
        assert _names(factors) == {"IMPOSSIBLE_TRAVEL"}

    def test_plausible_travel(self):
        last = LastPosition(-34.6037, -58.3816, NOW - timedelta(hours=20))
        factors = location_risk("190.1.1.1", False, position=(40.4168, -3.7038), last_position=last, now=NOW)
        assert factors == []

    def test_unusual_time(self):
        assert _names(time_risk(NOW.replace(hour=3))) == {"UNUSUAL_TIME"}
        assert time_risk(NOW.replace(hour=6)) == []

    def test_amount(self):
        assert _names(amount_risk(600, 100)) == {"AMOUNT_5X_AVERAGE"}
        assert _names(amount_risk(400, 100)) == {"AMOUNT_3X_AVERAGE"}
        assert _names(amount_risk(2_000_000, 0)) == {"HIGH_AMOUNT"}
        assert amount_risk(None, 100) == []

    def test_recipient(self):
        assert _names(recipient_risk(5, True)) == {"FREQUENT_RECIPIENT"}
        assert _names(recipient_risk(None, False)) == {"NEW_RECIPIENT"}
        assert recipient_risk(1, True) == []

    def test_history(self):
        factors = history_risk(HistoryFacts(transactions_last_hour=12, failed_logins_24h=3, open_fraud_alerts_24h=1))
        assert _names(factors) == {"HIGH_VELOCITY", "FAILED_LOGINS", "RECENT_FRAUD_ALERT"}
        assert _names(history_risk(HistoryFacts(transactions_last_hour=6))) == {"ELEVATED_VELOCITY"}

    def test_trust_adjustment(self):
        assert trust_adjustment(850)[0].weight == -20
        assert trust_adjustment(650)[0].weight == -10
        assert trust_adjustment(500) == []
        assert trust_adjustment(300)[0].weight == 15
        assert trust_adjustment(150)[0].weight == 30
