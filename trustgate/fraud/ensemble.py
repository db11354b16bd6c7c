"""
Fraud Evaluation Ensemble.

Five independent sub-models load their facts concurrently (one session
each), score 0-100, and are combined with fixed weights. The user's trust
tier scales the result. Every evaluation is persisted with its model
scores, model version and processing time; a score at or above the alert
threshold also opens a fraud case, writes an audit entry and notifies the
customer and the fraud analysts.

A failed sub-model contributes 0 and is logged. When that happens on the
user's first-ever evaluation the decision is raised to at least REVIEW.
"""

import asyncio
import time
import uuid
from dataclasses import asdict
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trustgate.alerting.presets import SecurityAlerts
from trustgate.behavior.profiler import BehaviorProfiler
from trustgate.config import settings
from trustgate.db import queries
from trustgate.db.compat import as_uuid, utcnow
from trustgate.db.models import FraudAlert, FraudEvaluationRecord, User
from trustgate.errors import NotFoundError
from trustgate.fraud.heuristics import (
    AnomalyFacts,
    PatternFacts,
    RuleFacts,
    SubScore,
    VelocityFacts,
    anomaly_score,
    behavior_score,
    combine,
    confidence,
    decide,
    is_pattern_break,
    pattern_score,
    recommendations_for,
    risk_level_for,
    rules_score,
    velocity_score,
)
from trustgate.fraud.schemas import (
    DECISION_SEVERITY,
    FactorCategory,
    FraudDecision,
    FraudEvaluation,
    FraudFactor,
    FraudModel,
    FraudRiskLevel,
    ModelScores,
    TransactionContext,
)
from trustgate.riskauth.evaluators import LastPosition, is_impossible_travel
from trustgate.services.audit import audit_logger
from trustgate.trust.engine import TrustScoreEngine
from trustgate.trust.schemas import TrustTier

logger = structlog.get_logger(__name__)

HOUR = timedelta(hours=1)
DAY = timedelta(hours=24)
CREDENTIAL_CHANGE_WINDOW = timedelta(days=3)
CREDENTIAL_FIELDS = ("password", "email")
DEGRADED_MINIMUM_DECISION = FraudDecision.REVIEW


def _factor_to_dict(factor: FraudFactor) -> dict:
    data = asdict(factor)
    data["category"] = factor.category.value
    return data


def _factor_from_dict(data: dict) -> FraudFactor:
    return FraudFactor(
        factor=data["factor"],
        weight=int(data["weight"]),
        description=data.get("description", ""),
        category=FactorCategory(data["category"]),
    )


def _at_least(decision: FraudDecision, minimum: FraudDecision) -> FraudDecision:
    if DECISION_SEVERITY.index(decision) < DECISION_SEVERITY.index(minimum):
        return minimum
    return decision


class FraudEnsemble:
    """Evaluate transactions for fraud and keep the evaluation trail."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        trust_engine: Optional[TrustScoreEngine] = None,
        profiler: Optional[BehaviorProfiler] = None,
        alerts: Optional[SecurityAlerts] = None,
        model_version: str = settings.fraud_model_version,
        alert_threshold: float = settings.fraud_alert_threshold,
        concordance_weight: float = settings.fraud_confidence_concordance_weight,
        factor_weight: float = settings.fraud_confidence_factor_weight,
        max_speed_kmh: float = settings.max_travel_speed_kmh,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.trust_engine = trust_engine or TrustScoreEngine(session_factory, clock=clock)
        self.profiler = profiler or BehaviorProfiler(session_factory, clock=clock)
        self.alerts = alerts
        self.model_version = model_version
        self.alert_threshold = alert_threshold
        self.concordance_weight = concordance_weight
        self.factor_weight = factor_weight
        self.max_speed_kmh = max_speed_kmh
        self._clock = clock

    # ── Evaluation ─────────────────────────────────────────────────────

    async def evaluate_transaction(self, context: TransactionContext) -> FraudEvaluation:
        started = time.perf_counter()
        now = self._clock()

        async with self.session_factory() as session:
            user = await queries.get_user(session, context.user_id)
        if user is None:
            raise NotFoundError(
                f"User {context.user_id} not found", details={"user_id": str(context.user_id)}
            )

        models = {
            FraudModel.ANOMALY: self._anomaly(context, now),
            FraudModel.PATTERN: self._pattern(context, now),
            FraudModel.RULES: self._rules(context, user, now),
            FraudModel.VELOCITY: self._velocity(context, user, now),
            FraudModel.BEHAVIOR: self._behavior(context, now),
        }
        results = await asyncio.gather(
            *models.values(),
            self.trust_engine.lookup_for_adjustment(context.user_id),
            return_exceptions=True,
        )
        *model_results, trust = results

        subscores: dict[FraudModel, SubScore] = {}
        failed: list[str] = []
        for model, result in zip(models, model_results):
            if isinstance(result, BaseException):
                failed.append(model.value)
                logger.error(
                    "fraud_model_failed",
                    model=model.value,
                    user_id=str(context.user_id),
                    error=str(result),
                )
                subscores[model] = SubScore(0.0)
                continue
            subscores[model] = result if isinstance(result, SubScore) else SubScore(result)

        tier = TrustTier.MEDIUM
        if isinstance(trust, BaseException):
            logger.error("fraud_trust_lookup_failed", user_id=str(context.user_id), error=str(trust))
        else:
            tier = trust.tier

        scores = ModelScores(
            anomaly=subscores[FraudModel.ANOMALY].score,
            pattern=subscores[FraudModel.PATTERN].score,
            rules=subscores[FraudModel.RULES].score,
            velocity=subscores[FraudModel.VELOCITY].score,
            behavior=subscores[FraudModel.BEHAVIOR].score,
        )
        risk_factors = [f for s in subscores.values() for f in s.risk_factors]
        positive_factors = [f for s in subscores.values() for f in s.positive_factors]

        fraud_score = combine(scores, tier)
        level = risk_level_for(fraud_score)
        decision, reason = decide(fraud_score, risk_factors)
        conf = confidence(scores, len(risk_factors), self.concordance_weight, self.factor_weight)

        degraded = bool(failed)
        if degraded and not await self._has_prior_evaluation(context.user_id):
            escalated = _at_least(decision, DEGRADED_MINIMUM_DECISION)
            if escalated != decision:
                decision = escalated
                reason = f"Evaluation degraded ({', '.join(failed)}), manual review required"

        recommendations = recommendations_for(decision, risk_factors, context.amount)
        processing_ms = round((time.perf_counter() - started) * 1000, 2)

        record = FraudEvaluationRecord(
            user_id=context.user_id,
            transaction_id=context.transaction_id,
            fraud_score=fraud_score,
            risk_level=level.value,
            confidence=conf,
            decision=decision.value,
            decision_reason=reason,
            risk_factors=[_factor_to_dict(f) for f in risk_factors],
            positive_factors=[_factor_to_dict(f) for f in positive_factors],
            model_version=self.model_version,
            model_scores=scores.as_dict(),
            recommendations=recommendations,
            context={
                **context.model_dump(mode="json"),
                "trust_tier": tier.value,
                "degraded_models": failed,
            },
            processing_time_ms=processing_ms,
            evaluated_at=now,
        )
        async with self.session_factory() as session:
            session.add(record)
            if fraud_score >= self.alert_threshold:
                await self._open_fraud_case(session, context, fraud_score, level, decision, reason, risk_factors)
            await session.commit()

        log = logger.warning if fraud_score >= self.alert_threshold else logger.info
        log(
            "fraud_evaluated",
            user_id=str(context.user_id),
            transaction_id=context.transaction_id,
            fraud_score=fraud_score,
            risk_level=level.value,
            decision=decision.value,
            confidence=conf,
            trust_tier=tier.value,
            degraded=degraded,
            processing_time_ms=processing_ms,
        )

        if fraud_score >= self.alert_threshold:
            await self._notify(context, fraud_score, level, reason)

        return FraudEvaluation(
            id=record.id,
            user_id=context.user_id,
            transaction_id=context.transaction_id,
            fraud_score=fraud_score,
            risk_level=level,
            confidence=conf,
            decision=decision,
            decision_reason=reason,
            model_scores=scores,
            model_version=self.model_version,
            evaluated_at=now,
            processing_time_ms=processing_ms,
            risk_factors=risk_factors,
            positive_factors=positive_factors,
            recommendations=recommendations,
            degraded=degraded,
        )

    async def _open_fraud_case(
        self,
        session: AsyncSession,
        context: TransactionContext,
        fraud_score: int,
        level: FraudRiskLevel,
        decision: FraudDecision,
        reason: str,
        risk_factors: list[FraudFactor],
    ) -> None:
        critical = level == FraudRiskLevel.CRITICAL
        alert = FraudAlert(
            user_id=context.user_id,
            transaction_id=context.transaction_id,
            alert_type="HIGH_RISK_TRANSACTION" if critical else "SUSPICIOUS_TRANSACTION",
            severity=level.value,
            fraud_score=float(fraud_score),
            description=reason,
            risk_factors=[_factor_to_dict(f) for f in risk_factors],
            status="PENDING",
            auto_decision=decision.value,
            created_at=self._clock(),
        )
        session.add(alert)
        await session.flush()
        await audit_logger.log(
            session,
            action="FRAUD_ALERT_CREATED",
            resource="fraud_alert",
            resource_id=alert.id,
            description=f"Fraud score {fraud_score}: {reason}",
            severity="CRITICAL" if critical else "HIGH",
            metadata={
                "user_id": str(context.user_id),
                "transaction_id": context.transaction_id,
                "fraud_score": fraud_score,
                "decision": decision.value,
            },
        )

    async def _notify(
        self, context: TransactionContext, fraud_score: int, level: FraudRiskLevel, reason: str,
    ) -> None:
        if self.alerts is None:
            return
        try:
            await self.alerts.fraud_detected(
                context.user_id, context.transaction_id, fraud_score, level.value, reason,
            )
        except Exception as e:
            logger.error(
                "fraud_notification_failed",
                user_id=str(context.user_id),
                transaction_id=context.transaction_id,
                error=str(e),
            )

    # ── Sub-model fact loaders ─────────────────────────────────────────

    async def _anomaly(self, context: TransactionContext, now: datetime) -> float:
        async with self.session_factory() as session:
            average = await queries.get_average_amount(session, context.user_id)
            hourly = await queries.count_transactions_since(session, context.user_id, now - HOUR)
            new_recipient = False
            if context.destination_account:
                new_recipient = not await queries.has_completed_transfer_to(
                    session, context.user_id, context.destination_account,
                )
        return anomaly_score(AnomalyFacts(
            amount=context.amount,
            average_amount=average,
            transactions_last_hour=hourly,
            hour=now.hour,
            is_new_recipient=new_recipient,
        ))

    async def _pattern(self, context: TransactionContext, now: datetime) -> float:
        geo = context.geo_location
        async with self.session_factory() as session:
            changed = await queries.has_recent_change(
                session, context.user_id, CREDENTIAL_FIELDS, now - CREDENTIAL_CHANGE_WINDOW,
            )
            fingerprints = await queries.count_distinct_fingerprints_since(session, context.user_id, now - DAY)
            last = None
            if geo is not None:
                last = await queries.get_last_located_session(session, context.user_id, context.session_id)

        travel = bool(
            geo is not None
            and last is not None
            and is_impossible_travel(
                (geo.lat, geo.lng),
                LastPosition(last.latitude, last.longitude, last.created_at),
                now,
                self.max_speed_kmh,
            )
        )
        profile = await self.profiler.get_profile(context.user_id)
        return pattern_score(PatternFacts(
            recent_credential_change=changed,
            fingerprints_24h=fingerprints,
            impossible_travel=travel,
            pattern_break=is_pattern_break(profile, context.type, context.amount),
        ))

    async def _rules(self, context: TransactionContext, user: User, now: datetime) -> SubScore:
        account = context.destination_account
        async with self.session_factory() as session:
            blacklisted = await queries.is_ip_blacklisted(session, context.ip_address)
            intl_history = True
            if context.is_international:
                intl_history = await queries.has_international_history(session, context.user_id)
            failures = await queries.count_transactions_since(
                session, context.user_id, now - HOUR, status="FAILED",
            )
            flagged = await queries.get_flagged_account(session, account) if account else None
            contact = await queries.get_contact(session, context.user_id, account) if account else None
            device = None
            if context.device_fingerprint:
                device = await queries.get_device(session, context.user_id, context.device_fingerprint)

        return rules_score(RuleFacts(
            amount=context.amount,
            account_age_days=(now - user.created_at).days,
            kyc_status=user.kyc_status,
            ip_blacklisted=blacklisted,
            is_international=context.is_international,
            has_international_history=intl_history,
            failed_last_hour=failures,
            is_flagged_recipient=flagged is not None,
            flagged_reason=flagged.reason if flagged else None,
            contact_transfers=contact.transfer_count if contact else None,
            device_trusted=device is not None and device.trust_level == "TRUSTED",
        ))

    async def _velocity(self, context: TransactionContext, user: User, now: datetime) -> SubScore:
        async with self.session_factory() as session:
            hourly = await queries.count_transactions_since(session, context.user_id, now - HOUR)
            daily_total = await queries.get_outgoing_total_since(session, context.user_id, now - DAY)
            new_recipients = await queries.count_new_recipients_since(session, context.user_id, now - DAY)
        return velocity_score(VelocityFacts(
            amount=context.amount,
            transactions_last_hour=hourly,
            daily_outgoing_total=daily_total,
            user_level=user.user_level,
            new_recipients_24h=new_recipients,
        ))

    async def _behavior(self, context: TransactionContext, now: datetime) -> SubScore:
        profile = await self.profiler.get_profile(context.user_id)
        return behavior_score(profile, context.amount, now.hour)

    async def _has_prior_evaluation(self, user_id: uuid.UUID) -> bool:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(FraudEvaluationRecord.id)
                    .where(FraudEvaluationRecord.user_id == user_id)
                    .limit(1)
                )
                return result.first() is not None
        except Exception as e:
            logger.error("fraud_history_read_failed", user_id=str(user_id), error=str(e))
            return False

    # ── Queries ────────────────────────────────────────────────────────

    async def get_user_evaluations(self, user_id, limit: int = 20) -> list[FraudEvaluation]:
        user_id = as_uuid(user_id, "user_id")
        async with self.session_factory() as session:
            result = await session.execute(
                select(FraudEvaluationRecord)
                .where(FraudEvaluationRecord.user_id == user_id)
                .order_by(FraudEvaluationRecord.evaluated_at.desc())
                .limit(limit)
            )
            rows = result.scalars().all()
        return [self._to_evaluation(r) for r in rows]

    async def get_fraud_stats(self, days: int = 30) -> dict:
        """Evaluation volume, decision mix and alert count for the trailing window."""
        since = self._clock() - timedelta(days=days)
        async with self.session_factory() as session:
            result = await session.execute(
                select(
                    FraudEvaluationRecord.decision,
                    func.count(FraudEvaluationRecord.id),
                    func.avg(FraudEvaluationRecord.fraud_score),
                )
                .where(FraudEvaluationRecord.evaluated_at >= since)
                .group_by(FraudEvaluationRecord.decision)
            )
            rows = result.all()
            alerts = await queries.count_fraud_alerts_since(session, since)
            levels = await session.execute(
                select(FraudEvaluationRecord.risk_level, func.count(FraudEvaluationRecord.id))
                .where(FraudEvaluationRecord.evaluated_at >= since)
                .group_by(FraudEvaluationRecord.risk_level)
            )
            by_level = {level: count for level, count in levels.all()}

        total = sum(count for _, count, _ in rows)
        score_sum = sum((avg or 0) * count for _, count, avg in rows)
        by_decision = {decision: count for decision, count, _ in rows}
        blocked = by_decision.get(FraudDecision.DECLINE.value, 0) + by_decision.get(
            FraudDecision.BLOCK_USER.value, 0
        )
        return {
            "period_days": days,
            "total_evaluations": total,
            "average_score": round(score_sum / total, 2) if total else 0.0,
            "by_decision": by_decision,
            "by_risk_level": by_level,
            "blocked_rate": round(blocked / total, 4) if total else 0.0,
            "alerts_created": alerts,
        }

    def _to_evaluation(self, row: FraudEvaluationRecord) -> FraudEvaluation:
        raw = row.model_scores or {}
        scores = ModelScores(
            anomaly=float(raw.get(FraudModel.ANOMALY.value, 0.0)),
            pattern=float(raw.get(FraudModel.PATTERN.value, 0.0)),
            rules=float(raw.get(FraudModel.RULES.value, 0.0)),
            velocity=float(raw.get(FraudModel.VELOCITY.value, 0.0)),
            behavior=float(raw.get(FraudModel.BEHAVIOR.value, 0.0)),
        )
        return FraudEvaluation(
            id=row.id,
            user_id=row.user_id,
            transaction_id=row.transaction_id,
            fraud_score=row.fraud_score,
            risk_level=FraudRiskLevel(row.risk_level),
            confidence=row.confidence,
            decision=FraudDecision(row.decision),
            decision_reason=row.decision_reason,
            model_scores=scores,
            model_version=row.model_version,
            evaluated_at=row.evaluated_at,
            processing_time_ms=row.processing_time_ms,
            risk_factors=[_factor_from_dict(f) for f in row.risk_factors or []],
            positive_factors=[_factor_from_dict(f) for f in row.positive_factors or []],
            recommendations=list(row.recommendations or []),
            degraded=bool((row.context or {}).get("degraded_models")),
        )
