"""
Tests for the Trust Score point tables.

Covers:
- Component clamping to [0, 200]
- Global score bounds and weighting
- Tier bands and trend dead band
- Individual point rules
"""

from hypothesis import given, settings
from hypothesis import strategies as st

from trustgate.trust.components import (
    BehavioralFacts,
    FinancialFacts,
    IdentityFacts,
    SocialFacts,
    TransactionalFacts,
    behavioral_score,
    clamp_component,
    financial_score,
    global_score,
    identity_score,
    social_score,
    tier_for_score,
    transactional_score,
    trend_for,
)
from trustgate.trust.schemas import TrustComponents, TrustTier, TrustTrend

component = st.integers(min_value=0, max_value=200)


class TestGlobalScoreProperties:
    @given(a=component, b=component, c=component, d=component, e=component)
    @settings(max_examples=100)
    def test_global_score_bounded(self, a, b, c, d, e):
        score = global_score(TrustComponents(a, b, c, d, e))
        assert 0 <= score <= 1000

    @given(points=st.integers(min_value=-10_000, max_value=10_000))
    def test_clamp_component(self, points):
        assert 0 <= clamp_component(points) <= 200

    @given(score=st.integers(min_value=0, max_value=1000), delta=st.integers(min_value=0, max_value=1000))
    def test_tier_monotonic(self, score, delta):
        order = list(TrustTier)
        higher = min(1000, score + delta)
        assert order.index(tier_for_score(higher)) >= order.index(tier_for_score(score))

    def test_all_max_components_is_1000(self):
        assert global_score(TrustComponents(200, 200, 200, 200, 200)) == 1000

    def test_weighting(self):
        # Identity alone: 200 × 0.25 × 5
        assert global_score(TrustComponents(identity=200)) == 250
        # Social alone: 200 × 0.10 × 5
        assert global_score(TrustComponents(social=200)) == 100


class TestTiersAndTrend:
    def test_band_edges(self):
        assert tier_for_score(0) == TrustTier.CRITICAL
        assert tier_for_score(199) == TrustTier.CRITICAL
        assert tier_for_score(200) == TrustTier.LOW
        assert tier_for_score(400) == TrustTier.MEDIUM
        assert tier_for_score(600) == TrustTier.HIGH
        assert tier_for_score(799) == TrustTier.HIGH
        assert tier_for_score(800) == TrustTier.ELITE
        assert tier_for_score(1000) == TrustTier.ELITE

    def test_trend_dead_band(self):
        assert trend_for(520, 500) == TrustTrend.STABLE
        assert trend_for(521, 500) == TrustTrend.UP
        assert trend_for(479, 500) == TrustTrend.DOWN
        assert trend_for(500, None) == TrustTrend.STABLE


class TestComponentRules:
    def test_identity_full(self):
        score, factors = identity_score(IdentityFacts(
            kyc_status="APPROVED",
            email_verified=True,
            phone_verified=True,
            account_age_days=400,
            has_complete_profile=True,
        ))
        assert score == 200
        assert {f.factor for f in factors} == {
            "KYC_APPROVED", "EMAIL_VERIFIED", "PHONE_VERIFIED", "ACCOUNT_AGE_1Y", "COMPLETE_PROFILE",
        }

    def test_identity_rejected_kyc_clamps_to_zero(self):
        score, _ = identity_score(IdentityFacts("REJECTED", False, False, 1, False))
        assert score == 0

    def test_only_one_age_band_counts(self):
        _, factors = identity_score(IdentityFacts("PENDING", False, False, 200, False))
        assert [f.factor for f in factors if f.factor.startswith("ACCOUNT_AGE")] == ["ACCOUNT_AGE_6M"]

    def test_financial_investment_ladder(self):
        _, factors = financial_score(FinancialFacts(investment_total=12_000_000))
        assert "INVESTMENT_ORO" in {f.factor for f in factors}
        _, factors = financial_score(FinancialFacts(investment_total=500))
        assert "HAS_INVESTMENT" in {f.factor for f in factors}

    def test_behavioral_incidents_penalised(self):
        clean, _ = behavioral_score(BehavioralFacts(sessions_30d=10))
        dirty, factors = behavioral_score(BehavioralFacts(sessions_30d=10, security_incidents_30d=3))
        assert clean - dirty == 40 + 60
        assert any(f.factor == "SECURITY_INCIDENTS" and f.impact == -60 for f in factors)

    def test_transactional_perfect_payment(self):
        score, factors = transactional_score(TransactionalFacts(installments_paid=6, completed_6m=60))
        assert "PERFECT_PAYMENT" in {f.factor for f in factors}
        assert score == 200

    def test_transactional_defaults_and_disputes(self):
        score, _ = transactional_score(TransactionalFacts(active_defaults=2, reversals=2))
        # 50 - 40 - 30
        assert score == 0

    def test_social_referrer_bonus(self):
        score, factors = social_score(SocialFacts(completed_referrals=1, referrer_score=750))
        assert {f.factor for f in factors} == {"HAS_REFERRALS", "TRUSTED_REFERRAL"}
        assert score == 50 + 25 + 30
