"""
Trust Score Engine.

Composite 0-1000 score from five weighted components. Snapshots are
immutable: a recalculation appends a new row, reads pick the latest.

Read paths:
- get_score: fresh snapshot (< TTL) or recompute
- recalculate: always recompute
- lookup_for_adjustment: bounded read used by the risk / fraud paths;
  degrades fresh → last stored → neutral default instead of failing
"""

import asyncio
import uuid
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trustgate.config import settings
from trustgate.db import queries
from trustgate.db.compat import as_uuid, utcnow
from trustgate.db.models import TrustScoreSnapshot
from trustgate.errors import DependencyUnavailableError, NotFoundError
from trustgate.services.resilience import with_timeout
from trustgate.trust.components import (
    BehavioralFacts,
    FinancialFacts,
    IdentityFacts,
    SocialFacts,
    TransactionalFacts,
    behavioral_score,
    financial_score,
    global_score,
    identity_score,
    social_score,
    tier_for_score,
    transactional_score,
    trend_for,
)
from trustgate.trust.schemas import (
    TIER_BENEFITS,
    ScoreSource,
    TierBenefits,
    TrustComponents,
    TrustScoreResult,
    TrustTier,
)

logger = structlog.get_logger(__name__)

# ── Configuration ─────────────────────────────────────────────────────────

DEFAULT_SCORE: int = 500
BEHAVIOR_WINDOW = timedelta(days=30)
DEPOSIT_WINDOW = timedelta(days=90)
VOLUME_WINDOW = timedelta(days=180)


def get_tier_benefits(tier: TrustTier) -> TierBenefits:
    return TIER_BENEFITS[TrustTier(tier)]


class TrustScoreEngine:
    """Compute, cache and serve user trust scores."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ttl_hours: int = settings.trust_score_ttl_hours,
        timeout_seconds: float = settings.dependency_timeout_seconds,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.ttl = timedelta(hours=ttl_hours)
        self.timeout_seconds = timeout_seconds
        self._clock = clock

    # ── Public API ─────────────────────────────────────────────────────

    async def get_score(self, user_id) -> TrustScoreResult:
        """Fresh stored snapshot if younger than the TTL, else recompute."""
        user_id = as_uuid(user_id, "user_id")
        now = self._clock()

        async with self.session_factory() as session:
            latest = await queries.get_latest_trust_snapshot(session, user_id)

        if latest is not None and now - latest.calculated_at < self.ttl:
            return self._from_snapshot(latest, ScoreSource.CACHED)

        try:
            return await self.recalculate(user_id)
        except NotFoundError:
            raise
        except Exception as e:
            if latest is None:
                logger.error("trust_score_unavailable", user_id=str(user_id), error=str(e))
                raise DependencyUnavailableError(
                    "Trust score could not be computed and no snapshot exists",
                    details={"user_id": str(user_id)},
                ) from e
            logger.warning("trust_score_stale_fallback", user_id=str(user_id), error=str(e))
            return self._from_snapshot(latest, ScoreSource.STALE)

    async def recalculate(self, user_id) -> TrustScoreResult:
        """Always recompute and append a snapshot."""
        user_id = as_uuid(user_id, "user_id")
        now = self._clock()

        async with self.session_factory() as session:
            user = await queries.get_user(session, user_id)
            previous = await queries.get_latest_trust_snapshot(session, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found", details={"user_id": str(user_id)})

        identity_facts = IdentityFacts(
            kyc_status=user.kyc_status,
            email_verified=user.email_verified,
            phone_verified=user.phone_verified,
            account_age_days=(now - user.created_at).total_seconds() / 86400,
            has_complete_profile=bool(user.address_street and user.address_city and user.birth_date),
        )
        financial_facts, behavioral_facts, transactional_facts, social_facts = await asyncio.gather(
            self._financial_facts(user, now),
            self._behavioral_facts(user, now),
            self._transactional_facts(user_id, now),
            self._social_facts(user),
        )

        identity, identity_factors = identity_score(identity_facts)
        financial, financial_factors = financial_score(financial_facts)
        behavioral, behavioral_factors = behavioral_score(behavioral_facts)
        transactional, transactional_factors = transactional_score(transactional_facts)
        social, social_factors = social_score(social_facts)

        components = TrustComponents(
            identity=identity,
            financial=financial,
            behavioral=behavioral,
            transactional=transactional,
            social=social,
        )
        factors = identity_factors + financial_factors + behavioral_factors + transactional_factors + social_factors
        score = global_score(components)
        tier = tier_for_score(score)
        trend = trend_for(score, previous.score if previous is not None else None)

        async with self.session_factory() as session:
            session.add(TrustScoreSnapshot(
                user_id=user_id,
                score=score,
                tier=tier.value,
                identity_score=identity,
                financial_score=financial,
                behavioral_score=behavioral,
                transactional_score=transactional,
                social_score=social,
                factors=[
                    {"factor": f.factor, "impact": f.impact, "category": f.category.value}
                    for f in factors
                ],
                calculated_at=now,
            ))
            await session.commit()

        logger.info(
            "trust_score_calculated",
            user_id=str(user_id),
            score=score,
            tier=tier.value,
            trend=trend.value,
        )
        return TrustScoreResult(
            user_id=user_id,
            global_score=score,
            tier=tier,
            components=components,
            benefits=TIER_BENEFITS[tier],
            calculated_at=now,
            next_review_at=now + self.ttl,
            trend=trend,
            factors=factors,
            source=ScoreSource.COMPUTED,
        )

    async def get_score_history(self, user_id, limit: int = settings.trust_history_limit) -> list[TrustScoreResult]:
        user_id = as_uuid(user_id, "user_id")
        async with self.session_factory() as session:
            rows = await queries.get_trust_history(session, user_id, limit=limit)
        return [self._from_snapshot(r, ScoreSource.CACHED) for r in rows]

    @staticmethod
    def get_tier_benefits(tier: TrustTier) -> TierBenefits:
        return get_tier_benefits(tier)

    async def recalculate_all(self, user_ids: Optional[Iterable] = None) -> dict:
        """Batch recompute; one user's failure never stops the batch."""
        if user_ids is None:
            async with self.session_factory() as session:
                user_ids = await queries.list_active_user_ids(session)

        updated = 0
        failed = 0
        for user_id in user_ids:
            try:
                await self.recalculate(user_id)
                updated += 1
            except Exception as e:
                failed += 1
                logger.error("trust_score_batch_failed", user_id=str(user_id), error=str(e))

        logger.info("trust_scores_recalculated", updated=updated, failed=failed)
        return {"updated": updated, "failed": failed}

    async def lookup_for_adjustment(self, user_id) -> TrustScoreResult:
        """
        Trust read for other components.

        Never raises: a failed or slow computation falls back to the last
        stored snapshot, then to a neutral MEDIUM default.
        """
        user_id = as_uuid(user_id, "user_id")
        try:
            return await with_timeout(self.get_score(user_id), self.timeout_seconds, "trust_score")
        except Exception as e:
            logger.warning("trust_lookup_degraded", user_id=str(user_id), error=str(e))

        try:
            async with self.session_factory() as session:
                latest = await queries.get_latest_trust_snapshot(session, user_id)
        except Exception as e:
            logger.error("trust_snapshot_read_failed", user_id=str(user_id), error=str(e))
            latest = None
        if latest is not None:
            return self._from_snapshot(latest, ScoreSource.STALE)
        return self.default_result(user_id)

    def default_result(self, user_id: uuid.UUID) -> TrustScoreResult:
        now = self._clock()
        tier = tier_for_score(DEFAULT_SCORE)
        return TrustScoreResult(
            user_id=user_id,
            global_score=DEFAULT_SCORE,
            tier=tier,
            components=TrustComponents(),
            benefits=TIER_BENEFITS[tier],
            calculated_at=now,
            next_review_at=now,
            source=ScoreSource.DEFAULT,
        )

    # ── Internals ──────────────────────────────────────────────────────

    def _from_snapshot(self, row: TrustScoreSnapshot, source: ScoreSource) -> TrustScoreResult:
        tier = tier_for_score(row.score)
        return TrustScoreResult(
            user_id=row.user_id,
            global_score=row.score,
            tier=tier,
            components=TrustComponents(
                identity=row.identity_score,
                financial=row.financial_score,
                behavioral=row.behavioral_score,
                transactional=row.transactional_score,
                social=row.social_score,
            ),
            benefits=TIER_BENEFITS[tier],
            calculated_at=row.calculated_at,
            next_review_at=row.calculated_at + self.ttl,
            source=source,
        )

    async def _financial_facts(self, user, now: datetime) -> FinancialFacts:
        async with self.session_factory() as session:
            invested = await queries.get_active_investment_total(session, user.id)
            deposits = await queries.get_deposit_dates_since(session, user.id, now - DEPOSIT_WINDOW)
        balance = float(user.balance or 0)
        average = float(user.average_balance) if user.average_balance is not None else balance
        return FinancialFacts(
            investment_total=invested,
            deposit_months=len({(d.year, d.month) for d in deposits}),
            balance=balance,
            average_balance=average,
            user_level=user.user_level,
        )

    async def _behavioral_facts(self, user, now: datetime) -> BehavioralFacts:
        since = now - BEHAVIOR_WINDOW
        async with self.session_factory() as session:
            sessions = await queries.count_sessions_since(session, user.id, since)
            types = await queries.count_transaction_types_since(session, user.id, since)
            incidents = await queries.count_fraud_alerts_since(
                session, since, user_id=user.id, alert_types=queries.SECURITY_INCIDENT_TYPES,
            )
        return BehavioralFacts(
            sessions_30d=sessions,
            transaction_types_30d=types,
            push_enabled=bool(user.push_token),
            security_incidents_30d=incidents,
        )

    async def _transactional_facts(self, user_id: uuid.UUID, now: datetime) -> TransactionalFacts:
        async with self.session_factory() as session:
            installments = await queries.get_installment_counts(session, user_id)
            defaults = await queries.count_active_defaults(session, user_id)
            completed = await queries.count_transactions_since(
                session, user_id, now - VOLUME_WINDOW, status="COMPLETED",
            )
            reversals = await queries.count_reversed_transactions(session, user_id)
        return TransactionalFacts(
            installments_paid=installments.get("PAID", 0),
            installments_overdue=installments.get("OVERDUE", 0),
            active_defaults=defaults,
            completed_6m=completed,
            reversals=reversals,
        )

    async def _social_facts(self, user) -> SocialFacts:
        async with self.session_factory() as session:
            referrals = await queries.count_completed_referrals(session, user.id)
            referrer_id = await queries.get_referrer_id(session, user.id)
            referrer_snapshot = (
                await queries.get_latest_trust_snapshot(session, referrer_id)
                if referrer_id is not None
                else None
            )
            rated, avg_rating = await queries.get_support_rating(session, user.id)
        prefs = user.preferences or {}
        return SocialFacts(
            completed_referrals=referrals,
            referrer_score=referrer_snapshot.score if referrer_snapshot is not None else None,
            rated_tickets=rated,
            avg_rating=avg_rating,
            newsletter_subscribed=bool(prefs.get("newsletter_subscribed")),
            app_review_given=bool(prefs.get("app_review_given")),
        )
