"""
Tests for behavioral aggregation.

Covers:
- Temporal and transactional reductions
- Segment decision list
- Live-event anomalies (time, amount, velocity)
"""

import uuid
from datetime import datetime, timedelta

from hypothesis import given
from hypothesis import strategies as st

from trustgate.behavior.aggregation import (
    detect_event_anomalies,
    determine_segment,
    risk_indicators,
    temporal_patterns,
    transactional_patterns,
)
from trustgate.behavior.schemas import (
    AnomalyType,
    BehaviorEvent,
    BehaviorProfile,
    DevicePatterns,
    IdentityFacts,
    NavigationPatterns,
    RiskIndicators,
    SessionPoint,
    TemporalPatterns,
    TransactionalPatterns,
    TransactionPoint,
    UserSegment,
)

NOW = datetime(2026, 3, 2, 14, 0, 0)


def _profile(hours=(9, 10, 11, 12), avg_amount=10_000.0, avg_per_month=30.0) -> BehaviorProfile:
    return BehaviorProfile(
        user_id=uuid.uuid4(),
        temporal=TemporalPatterns(preferred_hours=list(hours), avg_sessions_per_week=3, last_active_at=NOW),
        transactional=TransactionalPatterns(avg_amount=avg_amount, avg_per_month=avg_per_month),
        navigation=NavigationPatterns(),
        device=DevicePatterns(),
        risk_indicators=RiskIndicators(),
        segment=UserSegment.REGULAR,
        updated_at=NOW,
    )


class TestReductions:
    def test_temporal_patterns(self):
        sessions = [
            SessionPoint(started_at=NOW - timedelta(days=d, hours=4), ended_at=NOW - timedelta(days=d, hours=3, minutes=30))
            for d in range(1, 11)
        ]
        patterns = temporal_patterns(sessions)
        assert patterns.preferred_hours == [10]
        assert patterns.avg_session_duration_minutes == 30
        assert patterns.last_active_at == NOW - timedelta(days=1, hours=4)

    def test_empty_inputs(self):
        assert temporal_patterns([]) == TemporalPatterns()
        assert transactional_patterns([]) == TransactionalPatterns()

    def test_transactional_patterns(self):
        txs = [
            TransactionPoint(amount=a, type="TRANSFER_OUT", created_at=NOW - timedelta(days=i), recipient="acc-1")
            for i, a in enumerate([100.0, 200.0, 300.0])
        ]
        patterns = transactional_patterns(txs)
        assert patterns.avg_amount == 200
        assert patterns.median_amount == 200
        assert patterns.max_amount == 300
        assert patterns.frequent_recipients == ["acc-1"]
        assert patterns.avg_hours_between == 24.0
        assert patterns.avg_per_month == 0.5

    @given(alerts=st.integers(min_value=0, max_value=50), rate=st.one_of(st.none(), st.floats(0, 1)))
    def test_risk_indicators_bounded(self, alerts, rate):
        identity = IdentityFacts(NOW - timedelta(days=400), "APPROVED", True, True, True, True, 1000.0)
        indicators = risk_indicators(identity, alerts, rate, NOW)
        for value in indicators.model_dump().values():
            assert 0 <= value <= 100


class TestSegments:
    def test_new_user(self):
        assert determine_segment(TemporalPatterns(), TransactionalPatterns(), RiskIndicators(), NOW) == UserSegment.NEW_USER

    def test_dormant(self):
        temporal = TemporalPatterns(avg_sessions_per_week=1, last_active_at=NOW - timedelta(days=40))
        assert determine_segment(temporal, TransactionalPatterns(), RiskIndicators(), NOW) == UserSegment.DORMANT

    def test_high_value(self):
        temporal = TemporalPatterns(avg_sessions_per_week=2, last_active_at=NOW)
        transactional = TransactionalPatterns(avg_amount=600_000)
        indicators = RiskIndicators(account_stability_score=80)
        assert determine_segment(temporal, transactional, indicators, NOW) == UserSegment.HIGH_VALUE

    def test_power_user(self):
        temporal = TemporalPatterns(avg_sessions_per_week=6, last_active_at=NOW)
        transactional = TransactionalPatterns(preferred_types=["A", "B", "C"])
        indicators = RiskIndicators(account_stability_score=80)
        assert determine_segment(temporal, transactional, indicators, NOW) == UserSegment.POWER_USER


class TestEventAnomalies:
    def test_unusual_time(self):
        event = BehaviorEvent(action="transfer", timestamp=NOW.replace(hour=3))
        anomalies = detect_event_anomalies(_profile(), event, 0, NOW)
        assert [a.anomaly_type for a in anomalies] == [AnomalyType.UNUSUAL_TIME]

    def test_hour_inside_tolerance_is_normal(self):
        event = BehaviorEvent(action="transfer", timestamp=NOW.replace(hour=14))
        assert detect_event_anomalies(_profile(), event, 0, NOW) == []

    def test_unusual_amount(self):
        event = BehaviorEvent(action="transfer", timestamp=NOW.replace(hour=10), amount=50_000)
        anomalies = detect_event_anomalies(_profile(), event, 0, NOW)
        assert len(anomalies) == 1
        assert anomalies[0].anomaly_type == AnomalyType.UNUSUAL_AMOUNT
        assert anomalies[0].deviation == 400.0
        assert anomalies[0].confidence == 90.0

    def test_velocity_spike(self):
        # 30 per month → 0.0417 per hour, ×10 → 0.417
        event = BehaviorEvent(action="transfer", timestamp=NOW.replace(hour=10))
        anomalies = detect_event_anomalies(_profile(), event, 3, NOW)
        assert [a.anomaly_type for a in anomalies] == [AnomalyType.VELOCITY_SPIKE]

    def test_checks_are_independent(self):
        event = BehaviorEvent(action="transfer", timestamp=NOW.replace(hour=2), amount=100_000)
        types = {a.anomaly_type for a in detect_event_anomalies(_profile(), event, 5, NOW)}
        assert types == {AnomalyType.UNUSUAL_TIME, AnomalyType.UNUSUAL_AMOUNT, AnomalyType.VELOCITY_SPIKE}
