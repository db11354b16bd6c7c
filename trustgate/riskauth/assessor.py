"""
Risk-Based Authentication Assessor.

Adaptive friction: minimal for good users, maximal for suspicious ones.
Independent evaluators load their facts concurrently (one session each)
and append signed factors; the assessor sums, clamps, maps the score to a
required action and persists the assessment before returning it.

A failed evaluator contributes nothing and is logged. When evaluation
degraded and the user has no earlier assessment to fall back on, the
result fails closed to MANUAL_REVIEW.
"""

import asyncio
import uuid
from dataclasses import asdict
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional

import structlog
from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trustgate.config import settings
from trustgate.db import queries
from trustgate.db.compat import as_uuid, utcnow
from trustgate.db.models import RiskAssessmentRecord
from trustgate.errors import ValidationError
from trustgate.riskauth.evaluators import (
    AMOUNT_BASELINE_TYPES,
    DEVICE_RISK_FACTORS,
    LOCATION_RISK_FACTORS,
    TIME_RISK_FACTORS,
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
    user_message,
)
from trustgate.riskauth.schemas import (
    AuthAction,
    ChallengeResponse,
    ChallengeResult,
    OperationContext,
    RiskAssessment,
    RiskFactor,
    RiskLevel,
)
from trustgate.trust.engine import TrustScoreEngine

logger = structlog.get_logger(__name__)

OPEN_ALERT_STATUSES = ("PENDING", "INVESTIGATING")
CODE_LENGTH = 6
COOLDOWN_ACTIONS = frozenset({AuthAction.BLOCK, AuthAction.MANUAL_REVIEW})


def _factor_from_dict(data: dict) -> RiskFactor:
    return RiskFactor(
        factor=data["factor"],
        weight=int(data["weight"]),
        description=data.get("description", ""),
        mitigatable=bool(data.get("mitigatable", False)),
    )


class RiskAssessor:
    """Assess operation risk and verify step-up challenges."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        trust_engine: Optional[TrustScoreEngine] = None,
        max_speed_kmh: float = settings.max_travel_speed_kmh,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.trust_engine = trust_engine or TrustScoreEngine(session_factory, clock=clock)
        self.max_speed_kmh = max_speed_kmh
        self._clock = clock

    # ── Assessment ─────────────────────────────────────────────────────

    async def assess_risk(self, context: OperationContext) -> RiskAssessment:
        now = self._clock()
        evaluators = {
            "device": self._device_factors(context),
            "location": self._location_factors(context, now),
            "amount": self._amount_factors(context),
            "recipient": self._recipient_factors(context),
            "history": self._history_factors(context, now),
            "trust": self._trust_factors(context),
        }
        results = await asyncio.gather(*evaluators.values(), return_exceptions=True)

        factors: list[RiskFactor] = operation_risk(context.operation)
        failed: list[str] = []
        for name, result in zip(evaluators, results):
            if isinstance(result, BaseException):
                failed.append(name)
                logger.error(
                    "risk_evaluator_failed",
                    evaluator=name,
                    user_id=str(context.user_id),
                    error=str(result),
                )
                continue
            factors.extend(result)
        factors.extend(time_risk(now))

        score = clamp_score(sum(f.weight for f in factors), context.operation)
        level, action = action_for_score(score)

        degraded = bool(failed)
        if degraded and not await self._has_prior_assessment(context.user_id):
            factors.append(RiskFactor(
                "EVALUATION_DEGRADED", 0, f"Evaluators unavailable: {', '.join(failed)}", False,
            ))
            level, action = RiskLevel.CRITICAL, AuthAction.MANUAL_REVIEW

        cooldown = calculate_cooldown(score) if action in COOLDOWN_ACTIONS else None
        names = {f.factor for f in factors}

        record = RiskAssessmentRecord(
            user_id=context.user_id,
            session_id=context.session_id,
            operation=context.operation,
            risk_score=score,
            risk_level=level.value,
            required_action=action.value,
            risk_factors=[asdict(f) for f in factors],
            cooldown_minutes=cooldown,
            ip_address=context.ip_address,
            device_fingerprint=context.device_fingerprint,
            amount=Decimal(str(context.amount)) if context.amount is not None else None,
            challenge_completed=False,
            created_at=now,
        )
        async with self.session_factory() as session:
            session.add(record)
            await session.commit()

        log = logger.warning if action in COOLDOWN_ACTIONS else logger.info
        log(
            "risk_assessed",
            user_id=str(context.user_id),
            operation=context.operation,
            risk_score=score,
            risk_level=level.value,
            required_action=action.value,
            factors=sorted(names),
            degraded=degraded,
        )

        return RiskAssessment(
            id=record.id,
            user_id=context.user_id,
            session_id=context.session_id,
            operation=context.operation,
            risk_score=score,
            risk_level=level,
            required_action=action,
            risk_factors=factors,
            device_trusted=not (names & DEVICE_RISK_FACTORS),
            location_trusted=not (names & LOCATION_RISK_FACTORS),
            time_trusted=not (names & TIME_RISK_FACTORS),
            user_message=user_message(action, factors),
            created_at=now,
            cooldown_minutes=cooldown,
            degraded=degraded,
        )

    # ── Evaluator fact loaders ─────────────────────────────────────────

    async def _device_factors(self, context: OperationContext) -> list[RiskFactor]:
        if not context.device_fingerprint:
            return device_risk(None, None)
        async with self.session_factory() as session:
            device = await queries.get_device(session, context.user_id, context.device_fingerprint)
        return device_risk(context.device_fingerprint, device.trust_level if device else None)

    async def _location_factors(self, context: OperationContext, now: datetime) -> list[RiskFactor]:
        geo = context.geo_location
        async with self.session_factory() as session:
            blacklisted = await queries.is_ip_blacklisted(session, context.ip_address)
            last = None
            if geo is not None and not blacklisted:
                last = await queries.get_last_located_session(session, context.user_id, context.session_id)
        return location_risk(
            context.ip_address,
            blacklisted,
            country=geo.country if geo else None,
            position=(geo.lat, geo.lng) if geo else None,
            last_position=LastPosition(last.latitude, last.longitude, last.created_at) if last else None,
            now=now,
            max_speed_kmh=self.max_speed_kmh,
        )

    async def _amount_factors(self, context: OperationContext) -> list[RiskFactor]:
        if not context.amount:
            return []
        tx_type = AMOUNT_BASELINE_TYPES.get(context.operation)
        average = 0.0
        if tx_type:
            async with self.session_factory() as session:
                average = await queries.get_average_amount(session, context.user_id, tx_type)
        return amount_risk(context.amount, average)

    async def _recipient_factors(self, context: OperationContext) -> list[RiskFactor]:
        account = context.destination_account
        if not account:
            return []
        async with self.session_factory() as session:
            contact = await queries.get_contact(session, context.user_id, account)
            prior = await queries.has_completed_transfer_to(session, context.user_id, account)
        return recipient_risk(contact.transfer_count if contact else None, prior)

    async def _history_factors(self, context: OperationContext, now: datetime) -> list[RiskFactor]:
        async with self.session_factory() as session:
            recent = await queries.count_transactions_since(session, context.user_id, now - timedelta(hours=1))
            failed = await queries.count_failed_logins_since(session, context.user_id, now - timedelta(hours=24))
            alerts = await queries.count_fraud_alerts_since(
                session, now - timedelta(hours=24), user_id=context.user_id, statuses=OPEN_ALERT_STATUSES,
            )
        return history_risk(HistoryFacts(recent, failed, alerts))

    async def _trust_factors(self, context: OperationContext) -> list[RiskFactor]:
        trust = await self.trust_engine.lookup_for_adjustment(context.user_id)
        return trust_adjustment(trust.global_score)

    async def _has_prior_assessment(self, user_id: uuid.UUID) -> bool:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(RiskAssessmentRecord.id)
                    .where(RiskAssessmentRecord.user_id == user_id)
                    .limit(1)
                )
                return result.first() is not None
        except Exception as e:
            logger.error("risk_history_read_failed", user_id=str(user_id), error=str(e))
            return False

    # ── Challenges ─────────────────────────────────────────────────────

    async def verify_challenge(
        self,
        user_id,
        session_id: str,
        challenge_type,
        response: ChallengeResponse,
    ) -> ChallengeResult:
        """Check a challenge response against the latest assessment of the session."""
        user_id = as_uuid(user_id, "user_id")
        try:
            challenge = AuthAction(challenge_type)
        except ValueError:
            raise ValidationError(
                f"Unknown challenge type: {challenge_type!r}",
                details={"field": "challenge_type"},
            )

        async with self.session_factory() as session:
            result = await session.execute(
                select(RiskAssessmentRecord)
                .where(
                    and_(
                        RiskAssessmentRecord.user_id == user_id,
                        RiskAssessmentRecord.session_id == session_id,
                    )
                )
                .order_by(RiskAssessmentRecord.created_at.desc())
                .limit(1)
            )
            assessment = result.scalar_one_or_none()
            if assessment is None:
                return ChallengeResult(False, "Session not found")

            if challenge == AuthAction.BIOMETRY:
                passed = response.biometry_passed
                ok_msg, fail_msg = "Biometric verification succeeded", "Biometric verification failed"
            elif challenge == AuthAction.OTP:
                passed = bool(response.otp) and len(response.otp) == CODE_LENGTH
                ok_msg, fail_msg = "Code verified", "Invalid code"
            elif challenge in (AuthAction.TWO_FACTOR, AuthAction.STEP_UP):
                passed = bool(response.totp_code) and len(response.totp_code) == CODE_LENGTH
                ok_msg, fail_msg = "Verification complete", "Invalid 2FA code"
            else:
                return ChallengeResult(False, "Unsupported challenge type", assessment.id)

            if passed:
                assessment.challenge_completed = True
                assessment.challenge_completed_at = self._clock()
                await session.commit()

        logger.info(
            "challenge_verified" if passed else "challenge_failed",
            user_id=str(user_id),
            session_id=session_id,
            challenge_type=challenge.value,
            assessment_id=str(assessment.id),
        )
        return ChallengeResult(passed, ok_msg if passed else fail_msg, assessment.id)

    # ── History ────────────────────────────────────────────────────────

    async def get_assessment_history(self, user_id, limit: int = 50) -> list[RiskAssessment]:
        user_id = as_uuid(user_id, "user_id")
        async with self.session_factory() as session:
            result = await session.execute(
                select(RiskAssessmentRecord)
                .where(RiskAssessmentRecord.user_id == user_id)
                .order_by(RiskAssessmentRecord.created_at.desc())
                .limit(limit)
            )
            rows = result.scalars().all()
        return [self._to_assessment(r) for r in rows]

    @staticmethod
    def _to_assessment(row: RiskAssessmentRecord) -> RiskAssessment:
        factors = [_factor_from_dict(f) for f in row.risk_factors or []]
        names = {f.factor for f in factors}
        action = AuthAction(row.required_action)
        return RiskAssessment(
            id=row.id,
            user_id=row.user_id,
            session_id=row.session_id,
            operation=row.operation,
            risk_score=row.risk_score,
            risk_level=RiskLevel(row.risk_level),
            required_action=action,
            risk_factors=factors,
            device_trusted=not (names & DEVICE_RISK_FACTORS),
            location_trusted=not (names & LOCATION_RISK_FACTORS),
            time_trusted=not (names & TIME_RISK_FACTORS),
            user_message=user_message(action, factors),
            created_at=row.created_at,
            cooldown_minutes=row.cooldown_minutes,
            degraded="EVALUATION_DEGRADED" in names,
            challenge_completed=row.challenge_completed,
        )
