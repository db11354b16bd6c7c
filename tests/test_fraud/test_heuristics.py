"""
Tests for the fraud sub-models and the combination step.

Covers:
- Each rule-based sub-model on hand-picked facts
- Trust multiplier and clamping in the ensemble
- Confidence from model concordance
- Level bands, decision bands and critical-factor override
"""

from hypothesis import given
from hypothesis import strategies as st

from trustgate.fraud.heuristics import (
    AnomalyFacts,
    PatternFacts,
    RuleFacts,
    VelocityFacts,
    anomaly_score,
    behavior_score,
    combine,
    confidence,
    daily_limit_for,
    decide,
    pattern_score,
    recommendations_for,
    risk_level_for,
    rules_score,
    velocity_score,
)
from trustgate.fraud.schemas import FactorCategory, FraudDecision, FraudFactor, FraudRiskLevel, ModelScores
from trustgate.trust.schemas import TrustTier

score_values = st.floats(min_value=0, max_value=100, allow_nan=False)


class TestSubModels:
    def test_anomaly_stacks_signals(self):
        facts = AnomalyFacts(
            amount=50_000, average_amount=10_000, transactions_last_hour=0, hour=3, is_new_recipient=True,
        )
        # deviation cap 30 + night 15 + new recipient 20 + round amount 10
        assert anomaly_score(facts) == 75

    def test_anomaly_quiet(self):
        facts = AnomalyFacts(
            amount=1_234, average_amount=1_200, transactions_last_hour=1, hour=14, is_new_recipient=False,
        )
        assert anomaly_score(facts) < 1

    def test_pattern(self):
        assert pattern_score(PatternFacts()) == 0
        assert pattern_score(PatternFacts(True, 3, True, True)) == 100

    def test_rules_new_unverified_account(self):
        result = rules_score(RuleFacts(amount=600_000, account_age_days=2, kyc_status="PENDING"))
        assert {f.factor for f in result.risk_factors} == {"HIGH_AMOUNT_NEW_ACCOUNT", "UNVERIFIED_HIGH_AMOUNT"}
        assert result.score == 75

    def test_rules_positive_factors_floor_at_zero(self):
        result = rules_score(RuleFacts(
            amount=1_000, account_age_days=800, kyc_status="APPROVED", contact_transfers=5, device_trusted=True,
        ))
        assert result.score == 0
        assert {f.factor for f in result.positive_factors} == {
            "ESTABLISHED_CUSTOMER", "FREQUENT_RECIPIENT", "TRUSTED_DEVICE",
        }

    def test_first_international(self):
        result = rules_score(RuleFacts(
            amount=1_000, account_age_days=100, kyc_status="APPROVED",
            is_international=True, has_international_history=False,
        ))
        assert [f.factor for f in result.risk_factors] == ["FIRST_INTERNATIONAL"]

    def test_velocity(self):
        result = velocity_score(VelocityFacts(
            amount=10_000, transactions_last_hour=12, daily_outgoing_total=950_000,
            user_level="ORO", new_recipients_24h=0,
        ))
        assert {f.factor for f in result.risk_factors} == {"HIGH_HOURLY_VELOCITY", "NEAR_DAILY_LIMIT"}
        assert result.score == 65

    def test_daily_limits(self):
        assert daily_limit_for("diamante") == 5_000_000
        assert daily_limit_for("PLATA") == 500_000

    def test_behavior_without_profile(self):
        result = behavior_score(None, 1_000, 12)
        assert result.score == 30
        assert result.risk_factors[0].factor == "NO_BEHAVIOR_PROFILE"


class TestCombination:
    def test_trust_multiplier(self):
        scores = ModelScores(50, 50, 50, 50, 50)
        assert combine(scores, TrustTier.MEDIUM) == 50
        assert combine(scores, TrustTier.ELITE) == 35
        assert combine(scores, TrustTier.CRITICAL) == 65

    @given(a=score_values, b=score_values, c=score_values, d=score_values, e=score_values,
           tier=st.sampled_from(list(TrustTier)))
    def test_combined_score_bounded(self, a, b, c, d, e, tier):
        assert 0 <= combine(ModelScores(a, b, c, d, e), tier) <= 100

    @given(a=score_values, b=score_values, n=st.integers(min_value=0, max_value=20))
    def test_confidence_bounded(self, a, b, n):
        assert 0 <= confidence(ModelScores(a, b, a, b, a), n) <= 100

    def test_confidence_full_agreement(self):
        # concordance 100 × 0.6 + factor confidence 50 × 0.4
        assert confidence(ModelScores(40, 40, 40, 40, 40), 0) == 80

    def test_level_bands(self):
        assert risk_level_for(19) == FraudRiskLevel.MINIMAL
        assert risk_level_for(20) == FraudRiskLevel.LOW
        assert risk_level_for(59) == FraudRiskLevel.MEDIUM
        assert risk_level_for(79) == FraudRiskLevel.HIGH
        assert risk_level_for(80) == FraudRiskLevel.CRITICAL

    def test_decision_bands(self):
        assert decide(10, [])[0] == FraudDecision.APPROVE
        assert decide(25, [])[0] == FraudDecision.APPROVE_WITH_2FA
        assert decide(55, [])[0] == FraudDecision.REVIEW
        assert decide(70, [])[0] == FraudDecision.HOLD
        assert decide(85, [])[0] == FraudDecision.DECLINE
        assert decide(95, [])[0] == FraudDecision.BLOCK_USER

    def test_critical_factor_forces_decline(self):
        factor = FraudFactor("HIGH_RISK_RECIPIENT", 45, "Recipient flagged", FactorCategory.TRANSACTION)
        assert decide(5, [factor])[0] == FraudDecision.DECLINE
        assert decide(97, [factor])[0] == FraudDecision.DECLINE

    def test_hold_recommendations(self):
        velocity = FraudFactor("HIGH_HOURLY_VELOCITY", 40, "x", FactorCategory.VELOCITY)
        recs = recommendations_for(FraudDecision.HOLD, [velocity], 2_000_000)
        assert "Escalate to compliance" in recs
        assert "Apply a temporary transaction cooldown" in recs
        assert recommendations_for(FraudDecision.APPROVE, [], 100) == []
