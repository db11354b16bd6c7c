"""
Tests for the Trust Score Engine.

Covers:
- Computation from stored user data and snapshot persistence
- Established ORO customer reaching the HIGH tier
- Fresh snapshot reuse inside the TTL, recompute after it
- Trend across recalculations
- Degradation: stale snapshot, neutral default, unavailable error
"""

import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update

from conftest import add_rows, make_transaction, make_user
from trustgate.db.models import Investment, TrustScoreSnapshot, User
from trustgate.errors import DependencyUnavailableError, NotFoundError
from trustgate.trust.engine import TrustScoreEngine
from trustgate.trust.schemas import ScoreSource, TrustTier, TrustTrend


@pytest.fixture
def engine_under_test(session_factory, clock):
    return TrustScoreEngine(session_factory, clock=clock)


async def _new_user(session_factory, clock):
    return await make_user(
        session_factory,
        created_at=clock() - timedelta(days=1),
        kyc_status="PENDING",
        email_verified=False,
        phone_verified=False,
        user_level="ORO",
    )


async def _snapshot_count(session_factory, user_id) -> int:
    async with session_factory() as session:
        result = await session.execute(
            select(func.count(TrustScoreSnapshot.id)).where(TrustScoreSnapshot.user_id == user_id)
        )
        return result.scalar()


class TestComputation:
    @pytest.mark.asyncio
    async def test_new_user_score(self, engine_under_test, session_factory, clock):
        user = await _new_user(session_factory, clock)
        result = await engine_under_test.recalculate(user.id)

        # identity 10, financial 45, behavioral 60, transactional 130, social 50
        assert result.components.identity == 10
        assert result.components.financial == 45
        assert result.components.behavioral == 60
        assert result.components.transactional == 130
        assert result.components.social == 50
        assert result.global_score == 301
        assert result.tier == TrustTier.LOW
        assert result.source == ScoreSource.COMPUTED
        assert result.next_review_at == clock() + timedelta(hours=24)
        assert await _snapshot_count(session_factory, user.id) == 1

    @pytest.mark.asyncio
    async def test_established_oro_customer(self, engine_under_test, session_factory, clock):
        # Verified 400-day ORO customer, $20M invested, no defaults. Also
        # holds a steady balance and deposited in each of the last 3 months.
        user = await make_user(
            session_factory,
            created_at=clock() - timedelta(days=400),
            user_level="ORO",
            balance=Decimal("250000"),
            average_balance=Decimal("240000"),
        )
        await add_rows(session_factory, Investment(user_id=user.id, current_value=Decimal("20000000")))
        for days_ago in (1, 20, 50):
            await make_transaction(
                session_factory, user.id, 500_000, clock() - timedelta(days=days_ago), type="TRANSFER_IN",
            )

        result = await engine_under_test.recalculate(user.id)

        # identity 170, financial 155, behavioral 75, transactional 130, social 50
        assert result.components.identity == 170
        assert result.components.financial == 155
        assert result.components.behavioral == 75
        assert result.components.transactional == 130
        assert result.global_score >= 600
        assert result.tier in (TrustTier.HIGH, TrustTier.ELITE)
        assert result.benefits.instant_withdrawal is True
        factors = {f.factor for f in result.factors}
        assert {"INVESTMENT_ORO", "LEVEL_ORO", "CONSISTENT_DEPOSITS", "STABLE_BALANCE", "NO_DEFAULTS"} <= factors

    @pytest.mark.asyncio
    async def test_unknown_user(self, engine_under_test):
        with pytest.raises(NotFoundError):
            await engine_under_test.get_score(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_trend_up_after_kyc(self, engine_under_test, session_factory, clock):
        user = await _new_user(session_factory, clock)
        await engine_under_test.recalculate(user.id)

        async with session_factory() as session:
            await session.execute(
                update(User).where(User.id == user.id).values(
                    kyc_status="APPROVED", email_verified=True, phone_verified=True,
                )
            )
            await session.commit()

        clock.advance(hours=1)
        result = await engine_under_test.recalculate(user.id)
        assert result.global_score == 451
        assert result.tier == TrustTier.MEDIUM
        assert result.trend == TrustTrend.UP


class TestSnapshots:
    @pytest.mark.asyncio
    async def test_fresh_snapshot_reused(self, engine_under_test, session_factory, clock):
        user = await _new_user(session_factory, clock)
        first = await engine_under_test.get_score(user.id)
        clock.advance(hours=2)
        second = await engine_under_test.get_score(user.id)

        assert second.source == ScoreSource.CACHED
        assert second.global_score == first.global_score
        assert await _snapshot_count(session_factory, user.id) == 1

    @pytest.mark.asyncio
    async def test_expired_snapshot_recomputed(self, engine_under_test, session_factory, clock):
        user = await _new_user(session_factory, clock)
        await engine_under_test.get_score(user.id)
        clock.advance(hours=25)
        result = await engine_under_test.get_score(user.id)

        assert result.source == ScoreSource.COMPUTED
        assert await _snapshot_count(session_factory, user.id) == 2

    @pytest.mark.asyncio
    async def test_history_newest_first(self, engine_under_test, session_factory, clock):
        user = await _new_user(session_factory, clock)
        await engine_under_test.recalculate(user.id)
        clock.advance(hours=1)
        await engine_under_test.recalculate(user.id)

        history = await engine_under_test.get_score_history(user.id)
        assert len(history) == 2
        assert history[0].calculated_at > history[1].calculated_at


class TestDegradation:
    @pytest.mark.asyncio
    async def test_stale_snapshot_when_recompute_fails(self, engine_under_test, session_factory, clock, monkeypatch):
        user = await _new_user(session_factory, clock)
        first = await engine_under_test.recalculate(user.id)
        clock.advance(hours=30)

        async def broken(*args, **kwargs):
            raise RuntimeError("db down")

        monkeypatch.setattr(engine_under_test, "_financial_facts", broken)
        result = await engine_under_test.get_score(user.id)
        assert result.source == ScoreSource.STALE
        assert result.global_score == first.global_score

    @pytest.mark.asyncio
    async def test_unavailable_without_snapshot(self, engine_under_test, session_factory, clock, monkeypatch):
        user = await _new_user(session_factory, clock)

        async def broken(*args, **kwargs):
            raise RuntimeError("db down")

        monkeypatch.setattr(engine_under_test, "_financial_facts", broken)
        with pytest.raises(DependencyUnavailableError):
            await engine_under_test.get_score(user.id)

    @pytest.mark.asyncio
    async def test_lookup_falls_back_to_neutral_default(self, engine_under_test, session_factory, clock, monkeypatch):
        user = await _new_user(session_factory, clock)

        async def broken(*args, **kwargs):
            raise RuntimeError("db down")

        monkeypatch.setattr(engine_under_test, "_financial_facts", broken)
        result = await engine_under_test.lookup_for_adjustment(user.id)
        assert result.source == ScoreSource.DEFAULT
        assert result.global_score == 500
        assert result.tier == TrustTier.MEDIUM
