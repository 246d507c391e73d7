"""
Checkout session state machine.

pending -> completed | failed | refunded | expired

``pending`` is the only state a payment can be attempted from. Every
transition is a conditional UPDATE keyed on the current status, so a
session leaves ``pending`` exactly once even under concurrent requests.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sandbox_gateway.config import Settings
from sandbox_gateway.core.customers import CustomerLedger
from sandbox_gateway.core.errors import (
    FraudBlockedError,
    InvalidStateError,
    NotFoundError,
    ReviewRequiredError,
    ValidationError,
)
from sandbox_gateway.core.fraud_gate import BLOCK, REVIEW, FraudGate, TransactionAttributes
from sandbox_gateway.core.gateway_simulator import GatewaySimulator, RandomGatewaySimulator
from sandbox_gateway.core.purpose import (
    AdhocPurpose,
    TemplatePreviewPurpose,
    parse_purpose,
)
from sandbox_gateway.database.models import CheckoutSession, FraudReview
from sandbox_gateway.integrations.catalog import CatalogReader
from sandbox_gateway.integrations.notifier import LoggingNotifier, Notifier
from sandbox_gateway.monitoring.metrics import MetricsCollector
from sandbox_gateway.utils import Clock, isoformat, new_id, utc_now

logger = structlog.get_logger(__name__)

TERMINAL_STATUSES = ("completed", "failed", "refunded", "expired")
TEMPLATE_PREVIEW_AMOUNT = 250_000
TEMPLATE_PREVIEW_CURRENCY = "NGN"
SYSTEM_PAYMENT_METHOD = "saved_method"


def session_payload(session: CheckoutSession, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Public representation used in API bodies and webhook data."""
    status = session.effective_status(now) if now is not None else session.status
    return {
        "id": session.id,
        "workspace_id": session.workspace_id,
        "amount": session.amount,
        "currency": session.currency,
        "description": session.description,
        "customer_email": session.customer_email,
        "customer_name": session.customer_name,
        "status": status,
        "purpose": parse_purpose(session.purpose).to_json(),
        "metadata": dict(session.metadata_ or {}),
        "payment_method": session.payment_method,
        "failure_reason": session.failure_reason,
        "refund_amount": session.refund_amount,
        "success_url": session.success_url,
        "cancel_url": session.cancel_url,
        "created_at": isoformat(session.created_at),
        "expires_at": isoformat(session.expires_at),
        "completed_at": isoformat(session.completed_at),
        "failed_at": isoformat(session.failed_at),
        "refunded_at": isoformat(session.refunded_at),
    }


class SessionStateMachine:
    """
    Owns the lifecycle of checkout sessions.

    Collaborators are injected: the fraud gate and catalog reader, the
    webhook dispatcher, the notifier, the gateway simulator and the clock.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        fraud_gate: FraudGate,
        catalog: CatalogReader,
        dispatcher: Any = None,
        notifier: Optional[Notifier] = None,
        simulator: Optional[GatewaySimulator] = None,
        clock: Clock = utc_now,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.fraud_gate = fraud_gate
        self.catalog = catalog
        self.dispatcher = dispatcher
        self.notifier = notifier or LoggingNotifier()
        self.simulator = simulator or RandomGatewaySimulator(settings.simulated_success_rate)
        self.clock = clock
        self.customers = CustomerLedger(clock)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    @staticmethod
    def _validate(
        amount: Any, currency: Optional[str], description: Optional[str], minimum_amount: int = 1
    ) -> str:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < minimum_amount:
            if minimum_amount > 0:
                raise ValidationError("Amount must be a positive integer in minor units", field="amount")
            raise ValidationError("Amount must be a non-negative integer in minor units", field="amount")
        if not currency or not currency.strip():
            raise ValidationError("Currency is required", field="currency")
        currency = currency.strip().upper()
        if len(currency) != 3 or not currency.isalpha():
            raise ValidationError("Currency must be a 3-letter ISO code", field="currency")
        if not description or not description.strip():
            raise ValidationError("Description is required", field="description")
        return currency

    async def stage_session(
        self,
        db: AsyncSession,
        workspace_id: str,
        amount: int,
        currency: str,
        description: str,
        customer_email: Optional[str] = None,
        customer_name: Optional[str] = None,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        purpose: Any = None,
        ttl: Optional[timedelta] = None,
        minimum_amount: int = 1,
    ) -> CheckoutSession:
        """Add a new pending session to ``db`` without committing."""
        currency = self._validate(amount, currency, description, minimum_amount)
        purpose = purpose or AdhocPurpose()
        now = self.clock()

        if customer_email:
            await self.customers.ensure(db, workspace_id, customer_email, customer_name, currency)

        session = CheckoutSession(
            id=new_id("sess"),
            workspace_id=workspace_id,
            amount=amount,
            currency=currency,
            description=description.strip(),
            customer_email=customer_email.lower() if customer_email else None,
            customer_name=customer_name,
            status="pending",
            purpose=purpose.to_json(),
            metadata_=dict(metadata or {}),
            success_url=success_url,
            cancel_url=cancel_url,
            created_at=now,
            updated_at=now,
            expires_at=now + (ttl or timedelta(minutes=self.settings.session_ttl_minutes)),
        )
        db.add(session)
        await db.flush()

        MetricsCollector.record_session_created(purpose.kind, currency)
        logger.info(
            "session_created",
            session_id=session.id,
            workspace_id=workspace_id,
            amount=amount,
            currency=currency,
            purpose=purpose.kind,
            expires_at=isoformat(session.expires_at),
        )
        return session

    async def create(self, workspace_id: str, amount: int, currency: str, description: str, **kwargs: Any) -> CheckoutSession:
        """
        Create a pending checkout session.

        Raises:
            ValidationError: amount not a positive integer, currency or
                description missing
        """
        async with self.session_factory() as db:
            session = await self.stage_session(db, workspace_id, amount, currency, description, **kwargs)
            await db.commit()
        return session

    async def create_payment_link(
        self, workspace_id: str, amount: int, currency: str, description: str, **kwargs: Any
    ) -> CheckoutSession:
        """Shareable link: an ad-hoc session that stays open for a day."""
        kwargs.setdefault("purpose", AdhocPurpose(source="payment-link"))
        kwargs.setdefault("ttl", timedelta(hours=self.settings.payment_link_ttl_hours))
        return await self.create(workspace_id, amount, currency, description, **kwargs)

    async def get_or_create_template_preview(self, workspace_id: str) -> CheckoutSession:
        """Reuse the workspace's open preview session or create a new one."""
        now = self.clock()
        async with self.session_factory() as db:
            result = await db.execute(
                select(CheckoutSession)
                .where(
                    CheckoutSession.workspace_id == workspace_id,
                    CheckoutSession.status == "pending",
                    CheckoutSession.expires_at > now,
                )
                .order_by(CheckoutSession.created_at.desc())
            )
            for candidate in result.scalars():
                if parse_purpose(candidate.purpose).kind == "templatePreview":
                    return candidate

            session = await self.stage_session(
                db,
                workspace_id,
                TEMPLATE_PREVIEW_AMOUNT,
                TEMPLATE_PREVIEW_CURRENCY,
                "Checkout template preview",
                customer_email="preview@example.com",
                customer_name="Preview Customer",
                purpose=TemplatePreviewPurpose(),
                ttl=timedelta(hours=1),
            )
            await db.commit()
        return session

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    async def _load(self, db: AsyncSession, workspace_id: Optional[str], session_id: str) -> CheckoutSession:
        session = await db.get(CheckoutSession, session_id)
        if session is None or (workspace_id is not None and session.workspace_id != workspace_id):
            raise NotFoundError("session", session_id)
        return session

    async def get(self, workspace_id: Optional[str], session_id: str) -> CheckoutSession:
        """Fetch a session; ``workspace_id=None`` is the public checkout lookup."""
        async with self.session_factory() as db:
            return await self._load(db, workspace_id, session_id)

    def checkout_url(self, session_id: str) -> str:
        return f"{self.settings.checkout_base_url.rstrip('/')}/checkout/{session_id}"

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _transition(
        self, db: AsyncSession, session_id: str, expected_status: str, values: Dict[str, Any]
    ) -> bool:
        result = await db.execute(
            update(CheckoutSession)
            .where(CheckoutSession.id == session_id, CheckoutSession.status == expected_status)
            .values({getattr(CheckoutSession, key): value for key, value in values.items()})
            .values(updated_at=self.clock())
        )
        return result.rowcount == 1

    async def _ensure_pending(self, db: AsyncSession, session: CheckoutSession, now: datetime) -> None:
        if session.status != "pending":
            raise InvalidStateError(
                f"Session {session.id} is already {session.status}",
                reason="terminal",
                current_status=session.status,
            )
        if session.is_expired(now):
            if await self._transition(db, session.id, "pending", {"status": "expired"}):
                await db.commit()
                MetricsCollector.record_sessions_expired(1)
            raise InvalidStateError(
                f"Session {session.id} expired at {isoformat(session.expires_at)}",
                reason="expired",
                current_status="expired",
            )

    async def _latest_review(self, db: AsyncSession, session: CheckoutSession) -> Optional[FraudReview]:
        result = await db.execute(
            select(FraudReview)
            .where(FraudReview.session_id == session.id)
            .order_by(FraudReview.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _is_new_customer(self, db: AsyncSession, session: CheckoutSession) -> bool:
        if not session.customer_email:
            return True
        customer = await self.customers.find(db, session.workspace_id, session.customer_email)
        return customer is None or customer.total_transactions == 0

    async def _check_fraud(self, db: AsyncSession, session: CheckoutSession, now: datetime, client_ip: Optional[str]) -> None:
        review = await self._latest_review(db, session)
        if review is not None:
            if review.status == "approved":
                logger.info("fraud_gate_skipped_approved_review", session_id=session.id, review_id=review.id)
                return
            if review.status == "pending":
                MetricsCollector.record_session_processed("review")
                raise ReviewRequiredError(session.id, review.id, review.score, review.level)
            MetricsCollector.record_session_processed("blocked")
            raise FraudBlockedError(session.id, review.score, review.level)

        attributes = TransactionAttributes(
            transaction_id=session.id,
            amount=session.amount,
            currency=session.currency,
            description=session.description,
            customer_email=session.customer_email,
            workspace_id=session.workspace_id,
            created_at=now,
            client_ip=client_ip,
            is_new_customer=await self._is_new_customer(db, session),
        )
        decision = await self.fraud_gate.evaluate(db, attributes)

        if decision.action == BLOCK:
            MetricsCollector.record_session_processed("blocked")
            logger.warning("session_blocked", session_id=session.id, score=decision.score, factors=decision.factors)
            raise FraudBlockedError(session.id, decision.score, decision.level)

        if decision.action == REVIEW:
            review = FraudReview(
                id=new_id("frv"),
                session_id=session.id,
                workspace_id=session.workspace_id,
                score=decision.score,
                level=decision.level,
                factors=list(decision.factors),
                status="pending",
                created_at=now,
            )
            db.add(review)
            await db.commit()
            MetricsCollector.record_session_processed("review")
            logger.info("fraud_review_created", session_id=session.id, review_id=review.id, score=decision.score)
            raise ReviewRequiredError(session.id, review.id, decision.score, decision.level)

    async def process(
        self,
        workspace_id: Optional[str],
        session_id: str,
        payment_method: Optional[str] = None,
        client_ip: Optional[str] = None,
    ) -> CheckoutSession:
        """
        Attempt payment for a pending session.

        Raises:
            NotFoundError: unknown session
            InvalidStateError: already terminal (``reason='terminal'``),
                past expiry (``reason='expired'``) or lost a race
                (``reason='conflict'``)
            FraudBlockedError: the gate blocked; session stays pending
            ReviewRequiredError: a fraud review was opened; session stays pending
        """
        payment_method = payment_method or "card"
        now = self.clock()

        async with self.session_factory() as db:
            session = await self._load(db, workspace_id, session_id)
            await self._ensure_pending(db, session, now)
            await self._check_fraud(db, session, now, client_ip)

            outcome = self.simulator.charge(session.amount, session.currency, payment_method)

            if outcome.success:
                values = {
                    "status": "completed",
                    "completed_at": now,
                    "payment_method": payment_method,
                    "metadata_": {**(session.metadata_ or {}), "paymentMethod": payment_method},
                }
            else:
                values = {
                    "status": "failed",
                    "failed_at": now,
                    "payment_method": payment_method,
                    "failure_reason": outcome.failure_reason,
                }

            if not await self._transition(db, session.id, "pending", values):
                await db.rollback()
                raise InvalidStateError(
                    f"Session {session_id} was processed concurrently",
                    reason="conflict",
                )

            if outcome.success and session.customer_email:
                await self.customers.record_completed(
                    db, session.workspace_id, session.customer_email, session.currency, session.amount
                )
            await db.commit()
            await db.refresh(session)

        if outcome.success:
            MetricsCollector.record_session_processed("completed", session.amount)
            logger.info("session_completed", session_id=session.id, amount=session.amount, currency=session.currency)
            self._emit(session.workspace_id, "payment.completed", session_payload(session))
            await self._notify_receipt(session)
        else:
            MetricsCollector.record_session_processed("failed")
            logger.info("session_failed", session_id=session.id, reason=session.failure_reason)
            self._emit(session.workspace_id, "payment.failed", session_payload(session))

        return session

    async def refund(self, workspace_id: str, session_id: str, amount: Optional[int] = None) -> CheckoutSession:
        """
        Refund a completed session, fully by default.

        Raises:
            InvalidStateError: session is not completed
            ValidationError: amount not in (0, session amount]
        """
        now = self.clock()
        async with self.session_factory() as db:
            session = await self._load(db, workspace_id, session_id)
            if session.status != "completed":
                raise InvalidStateError(
                    f"Only completed sessions can be refunded; {session.id} is {session.effective_status(now)}",
                    reason="pending" if session.effective_status(now) == "pending" else (
                        "expired" if session.effective_status(now) == "expired" else "terminal"
                    ),
                    current_status=session.effective_status(now),
                )

            refund_amount = session.amount if amount is None else amount
            if isinstance(refund_amount, bool) or not isinstance(refund_amount, int) or not 0 < refund_amount <= session.amount:
                raise ValidationError(
                    f"Refund amount must be between 1 and {session.amount}", field="amount"
                )

            if not await self._transition(
                db,
                session.id,
                "completed",
                {"status": "refunded", "refund_amount": refund_amount, "refunded_at": now},
            ):
                await db.rollback()
                raise InvalidStateError(
                    f"Session {session_id} was refunded concurrently", reason="conflict"
                )

            if session.customer_email:
                await self.customers.record_refund(
                    db, session.workspace_id, session.customer_email, session.currency, refund_amount
                )
            await db.commit()
            await db.refresh(session)

        MetricsCollector.record_refund(session.currency)
        logger.info("session_refunded", session_id=session.id, refund_amount=refund_amount)
        self._emit(session.workspace_id, "payment.refunded", session_payload(session))
        return session

    async def record_system_charge(
        self,
        db: AsyncSession,
        workspace_id: str,
        amount: int,
        currency: str,
        description: str,
        customer_email: Optional[str],
        purpose: Any,
    ) -> CheckoutSession:
        """
        Record a system-initiated charge as an already completed session.

        Used for subscription renewals. Skips the fraud gate; the caller
        owns the transaction and emits webhooks after committing.
        """
        now = self.clock()
        session = await self.stage_session(
            db,
            workspace_id,
            amount,
            currency,
            description,
            customer_email=customer_email,
            purpose=purpose,
            metadata={"paymentMethod": SYSTEM_PAYMENT_METHOD},
            minimum_amount=0,
        )
        session.status = "completed"
        session.completed_at = now
        session.payment_method = SYSTEM_PAYMENT_METHOD
        await db.flush()
        if customer_email:
            await self.customers.record_completed(db, workspace_id, customer_email, session.currency, amount)
        return session

    async def expire_stale(self, now: Optional[datetime] = None) -> int:
        """Mark every pending session past its expiry as expired."""
        now = now or self.clock()
        async with self.session_factory() as db:
            result = await db.execute(
                update(CheckoutSession)
                .where(CheckoutSession.status == "pending", CheckoutSession.expires_at <= now)
                .values(status="expired", updated_at=now)
            )
            await db.commit()
        count = result.rowcount or 0
        MetricsCollector.record_sessions_expired(count)
        if count:
            logger.info("sessions_expired", count=count)
        return count

    # ------------------------------------------------------------------
    # Fraud reviews
    # ------------------------------------------------------------------

    async def resolve_review(
        self, workspace_id: str, review_id: str, approve: bool, note: Optional[str] = None
    ) -> FraudReview:
        async with self.session_factory() as db:
            review = await db.get(FraudReview, review_id)
            if review is None or review.workspace_id != workspace_id:
                raise NotFoundError("fraud_review", review_id)
            if review.status != "pending":
                raise InvalidStateError(
                    f"Review {review_id} is already {review.status}",
                    reason="terminal",
                    current_status=review.status,
                )
            review.status = "approved" if approve else "denied"
            review.reviewer_note = note
            review.resolved_at = self.clock()
            await db.commit()

        logger.info("fraud_review_resolved", review_id=review_id, status=review.status)
        return review

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    async def stats(self, workspace_id: str) -> Dict[str, Any]:
        """Session counts and amount totals per status for one workspace."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(
                    CheckoutSession.status,
                    func.count(CheckoutSession.id),
                    func.coalesce(func.sum(CheckoutSession.amount), 0),
                )
                .where(CheckoutSession.workspace_id == workspace_id)
                .group_by(CheckoutSession.status)
            )
            rows = result.all()

        by_status = {status: {"count": 0, "amount": 0} for status in ("pending",) + TERMINAL_STATUSES}
        for status, count, amount in rows:
            by_status[status] = {"count": int(count), "amount": int(amount)}

        total = sum(entry["count"] for entry in by_status.values())
        attempted = by_status["completed"]["count"] + by_status["failed"]["count"] + by_status["refunded"]["count"]
        succeeded = by_status["completed"]["count"] + by_status["refunded"]["count"]
        return {
            "workspace_id": workspace_id,
            "total_sessions": total,
            "by_status": by_status,
            "success_rate": round(succeeded / attempted * 100, 2) if attempted else 0.0,
        }

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------

    def _emit(self, workspace_id: str, event: str, data: Dict[str, Any]) -> None:
        if self.dispatcher is not None:
            self.dispatcher.dispatch(workspace_id, event, data)

    async def _notify_receipt(self, session: CheckoutSession) -> None:
        if not session.customer_email:
            return
        try:
            await self.notifier.payment_receipt(session)
        except Exception as e:
            logger.warning("notify_payment_receipt_failed", session_id=session.id, error=str(e))
