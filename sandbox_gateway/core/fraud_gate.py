"""
Fraud gate consulted before a checkout session may complete.

Rules score a transaction 0-100; workspace thresholds turn the score
into allow / review / block. Any failure of the analysis itself,
including a timeout, fails open to ``allow``.
"""
import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Protocol

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from sandbox_gateway.config import Settings
from sandbox_gateway.core.errors import ValidationError
from sandbox_gateway.database.models import WorkspaceSettings
from sandbox_gateway.integrations.velocity import VelocityTracker
from sandbox_gateway.monitoring.metrics import MetricsCollector

logger = structlog.get_logger(__name__)

ALLOW = "allow"
REVIEW = "review"
BLOCK = "block"

HIGH_AMOUNT = 1_000_000
NEW_CUSTOMER_HIGH_AMOUNT = 500_000
VELOCITY_LIMIT_PER_HOUR = 5


@dataclass(frozen=True)
class TransactionAttributes:
    """What the gate knows about one payment attempt."""

    transaction_id: str
    amount: int
    currency: str
    description: str
    customer_email: Optional[str]
    workspace_id: str
    created_at: datetime
    client_ip: Optional[str] = None
    is_new_customer: bool = False


@dataclass
class RiskScore:
    score: int
    level: str
    factors: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class FraudThresholds:
    block: int
    review: int
    flag: int
    enabled: bool = True


@dataclass
class FraudDecision:
    action: str
    score: int
    level: str
    factors: List[str] = field(default_factory=list)
    flagged: bool = False
    failed_open: bool = False


def risk_level(score: int) -> str:
    if score >= 80:
        return "critical"
    if score >= 60:
        return "high"
    if score >= 40:
        return "medium"
    return "low"


def decide(risk: RiskScore, thresholds: FraudThresholds) -> FraudDecision:
    """
    Map a score onto an action.

    score >= block -> block; review <= score < block -> review; else allow.
    The flag threshold only marks the decision.
    """
    if risk.score >= thresholds.block:
        action = BLOCK
    elif risk.score >= thresholds.review:
        action = REVIEW
    else:
        action = ALLOW
    return FraudDecision(
        action=action,
        score=risk.score,
        level=risk.level,
        factors=list(risk.factors),
        flagged=risk.score >= thresholds.flag,
    )


class RiskAnalyzer(Protocol):
    async def analyze(self, attributes: TransactionAttributes) -> RiskScore:
        ...


class RuleBasedAnalyzer:
    """
    Additive rule scoring.

    Rules and weights:
    - high amount (> 1,000,000 minor units): 20
    - unusual hour (before 06:00 or from 23:00): 15
    - new customer with amount > 500,000: 30
    - more than 5 attempts by the customer this hour: 30 (needs Redis)
    """

    def __init__(self, velocity: Optional[VelocityTracker] = None):
        self.velocity = velocity

    async def analyze(self, attributes: TransactionAttributes) -> RiskScore:
        score = 0
        factors: List[str] = []

        if attributes.amount > HIGH_AMOUNT:
            score += 20
            factors.append("high_amount")

        hour = attributes.created_at.hour
        if hour < 6 or hour >= 23:
            score += 15
            factors.append("unusual_hour")

        if attributes.is_new_customer and attributes.amount > NEW_CUSTOMER_HIGH_AMOUNT:
            score += 30
            factors.append("new_customer_high_amount")

        if self.velocity is not None and attributes.customer_email:
            attempts = await self.velocity.record_attempt(
                attributes.workspace_id, attributes.customer_email, attributes.created_at
            )
            if attempts > VELOCITY_LIMIT_PER_HOUR:
                score += 30
                factors.append("high_velocity")

        score = min(score, 100)
        return RiskScore(score=score, level=risk_level(score), factors=factors)


class FraudGate:
    """
    Decides allow / review / block for a payment attempt.

    Thresholds come from the workspace's settings row, falling back to
    application settings.
    """

    def __init__(self, settings: Settings, analyzer: Optional[RiskAnalyzer] = None):
        self.settings = settings
        self.analyzer = analyzer or RuleBasedAnalyzer()
        self.timeout_seconds = settings.fraud_timeout_seconds

    def default_thresholds(self) -> FraudThresholds:
        return FraudThresholds(
            block=self.settings.fraud_block_threshold,
            review=self.settings.fraud_review_threshold,
            flag=self.settings.fraud_flag_threshold,
            enabled=self.settings.fraud_enabled,
        )

    async def thresholds_for(self, db: AsyncSession, workspace_id: str) -> FraudThresholds:
        row = await db.get(WorkspaceSettings, workspace_id)
        if row is None:
            return self.default_thresholds()
        return FraudThresholds(
            block=row.fraud_block_threshold,
            review=row.fraud_review_threshold,
            flag=row.fraud_flag_threshold,
            enabled=row.fraud_enabled,
        )

    async def update_thresholds(
        self,
        db: AsyncSession,
        workspace_id: str,
        enabled: Optional[bool] = None,
        block: Optional[int] = None,
        review: Optional[int] = None,
        flag: Optional[int] = None,
    ) -> FraudThresholds:
        current = await self.thresholds_for(db, workspace_id)
        updated = FraudThresholds(
            block=current.block if block is None else block,
            review=current.review if review is None else review,
            flag=current.flag if flag is None else flag,
            enabled=current.enabled if enabled is None else enabled,
        )
        for name in ("block", "review", "flag"):
            value = getattr(updated, name)
            if not 0 <= value <= 100:
                raise ValidationError(f"{name} threshold must be between 0 and 100", field=name)
        if updated.review > updated.block:
            raise ValidationError("review threshold cannot exceed block threshold", field="review")

        row = await db.get(WorkspaceSettings, workspace_id)
        if row is None:
            row = WorkspaceSettings(workspace_id=workspace_id)
            db.add(row)
        row.fraud_enabled = updated.enabled
        row.fraud_block_threshold = updated.block
        row.fraud_review_threshold = updated.review
        row.fraud_flag_threshold = updated.flag
        await db.commit()

        logger.info(
            "fraud_settings_updated",
            workspace_id=workspace_id,
            enabled=updated.enabled,
            block=updated.block,
            review=updated.review,
            flag=updated.flag,
        )
        return updated

    async def evaluate(self, db: AsyncSession, attributes: TransactionAttributes) -> FraudDecision:
        """
        Analyze a transaction and decide.

        Never raises: a failed or slow analysis yields ``allow``.
        """
        start = time.perf_counter()
        thresholds = await self.thresholds_for(db, attributes.workspace_id)
        if not thresholds.enabled:
            return FraudDecision(action=ALLOW, score=0, level="low")

        try:
            risk = await asyncio.wait_for(
                self.analyzer.analyze(attributes), timeout=self.timeout_seconds
            )
            decision = decide(risk, thresholds)
        except Exception as e:
            logger.warning(
                "fraud_gate_failed_open",
                transaction_id=attributes.transaction_id,
                workspace_id=attributes.workspace_id,
                error=str(e) or type(e).__name__,
            )
            decision = FraudDecision(action=ALLOW, score=0, level="low", failed_open=True)

        MetricsCollector.record_fraud_decision(
            decision.action, decision.failed_open, time.perf_counter() - start
        )
        logger.info(
            "fraud_decision",
            transaction_id=attributes.transaction_id,
            action=decision.action,
            score=decision.score,
            level=decision.level,
            flagged=decision.flagged,
        )
        return decision
