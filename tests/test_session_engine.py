"""
Tests for the checkout session state machine.
"""
import random
from datetime import timedelta
from typing import Any

import pytest
from sqlalchemy import select

from sandbox_gateway.core.errors import (
    FraudBlockedError,
    InvalidStateError,
    NotFoundError,
    ReviewRequiredError,
    ValidationError,
)
from sandbox_gateway.core.fraud_gate import FraudGate
from sandbox_gateway.core.gateway_simulator import DeterministicGatewaySimulator, RandomGatewaySimulator
from sandbox_gateway.core.purpose import parse_purpose
from sandbox_gateway.core.session_engine import SessionStateMachine
from sandbox_gateway.database.models import CheckoutSession, Customer, FraudReview
from sandbox_gateway.integrations.catalog import CatalogReader

from .conftest import WORKSPACE, FixedScoreAnalyzer


def build_engine(
    session_factory: Any,
    settings: Any,
    clock: Any,
    dispatcher: Any,
    analyzer: Any = None,
    simulator: Any = None,
) -> SessionStateMachine:
    return SessionStateMachine(
        session_factory,
        settings,
        fraud_gate=FraudGate(settings, analyzer),
        catalog=CatalogReader(),
        dispatcher=dispatcher,
        simulator=simulator or DeterministicGatewaySimulator([True]),
        clock=clock,
    )


class TestCreate:

    @pytest.mark.asyncio
    async def test_create_pending_session_with_expiry(self, sessions: SessionStateMachine, clock: Any) -> None:
        session = await sessions.create(
            WORKSPACE, 500000, "ngn", "Annual plan", customer_email="Ada@Example.com"
        )

        assert session.id.startswith("sess_")
        assert session.status == "pending"
        assert session.currency == "NGN"
        assert session.customer_email == "ada@example.com"
        assert session.expires_at == clock.now + timedelta(hours=1)
        assert parse_purpose(session.purpose).kind == "adhoc"

    @pytest.mark.asyncio
    async def test_create_upserts_customer(self, sessions: SessionStateMachine, session_factory: Any) -> None:
        await sessions.create(WORKSPACE, 1000, "USD", "One", customer_email="ada@example.com")
        await sessions.create(WORKSPACE, 2000, "USD", "Two", customer_email="ADA@example.com")

        async with session_factory() as db:
            customers = (await db.execute(select(Customer))).scalars().all()
        assert len(customers) == 1
        assert customers[0].total_transactions == 0

    @pytest.mark.parametrize(
        "amount,currency,description",
        [
            (0, "USD", "Zero"),
            (-5, "USD", "Negative"),
            (10.5, "USD", "Fraction"),
            (1000, "", "No currency"),
            (1000, "USD", "   "),
        ],
    )
    @pytest.mark.asyncio
    async def test_create_rejects_bad_input(
        self, sessions: SessionStateMachine, amount: Any, currency: str, description: str
    ) -> None:
        with pytest.raises(ValidationError):
            await sessions.create(WORKSPACE, amount, currency, description)

    @pytest.mark.asyncio
    async def test_payment_link_lasts_a_day(self, sessions: SessionStateMachine, clock: Any) -> None:
        session = await sessions.create_payment_link(WORKSPACE, 1500, "USD", "Shared link")

        purpose = parse_purpose(session.purpose)
        assert purpose.kind == "adhoc"
        assert purpose.source == "payment-link"
        assert session.expires_at == clock.now + timedelta(hours=24)

    @pytest.mark.asyncio
    async def test_template_preview_is_reused_until_expired(
        self, sessions: SessionStateMachine, clock: Any
    ) -> None:
        first = await sessions.get_or_create_template_preview(WORKSPACE)
        again = await sessions.get_or_create_template_preview(WORKSPACE)
        assert again.id == first.id
        assert first.amount == 250000 and first.currency == "NGN"

        clock.advance(hours=2)
        fresh = await sessions.get_or_create_template_preview(WORKSPACE)
        assert fresh.id != first.id

    @pytest.mark.asyncio
    async def test_checkout_url(self, sessions: SessionStateMachine) -> None:
        assert sessions.checkout_url("sess_abc") == "https://pay.example.test/checkout/sess_abc"

    @pytest.mark.asyncio
    async def test_get_is_workspace_scoped(self, sessions: SessionStateMachine) -> None:
        session = await sessions.create(WORKSPACE, 1000, "USD", "Scoped")
        assert (await sessions.get(None, session.id)).id == session.id
        with pytest.raises(NotFoundError):
            await sessions.get("ws_other", session.id)


class TestProcess:

    @pytest.mark.asyncio
    async def test_success_completes_and_updates_customer(
        self, sessions: SessionStateMachine, dispatcher: Any, clock: Any, session_factory: Any
    ) -> None:
        session = await sessions.create(WORKSPACE, 500000, "NGN", "Order", customer_email="ada@example.com")
        processed = await sessions.process(WORKSPACE, session.id, payment_method="bank_transfer")

        assert processed.status == "completed"
        assert processed.completed_at == clock.now
        assert processed.payment_method == "bank_transfer"
        assert processed.metadata_["paymentMethod"] == "bank_transfer"
        assert dispatcher.names() == ["payment.completed"]

        async with session_factory() as db:
            total = await sessions.customers.currency_total(db, WORKSPACE, "ada@example.com", "NGN")
            customer = await sessions.customers.find(db, WORKSPACE, "ada@example.com")
        assert total == 500000
        assert customer.total_transactions == 1

    @pytest.mark.asyncio
    async def test_failure_records_reason(
        self, session_factory: Any, test_settings: Any, clock: Any, dispatcher: Any
    ) -> None:
        engine = build_engine(
            session_factory, test_settings, clock, dispatcher,
            simulator=DeterministicGatewaySimulator([False]),
        )
        session = await engine.create(WORKSPACE, 1000, "USD", "Order", customer_email="ada@example.com")
        processed = await engine.process(WORKSPACE, session.id)

        assert processed.status == "failed"
        assert processed.failure_reason == "Payment simulation failed"
        assert processed.failed_at == clock.now
        assert dispatcher.names() == ["payment.failed"]

    @pytest.mark.asyncio
    async def test_processing_twice_is_rejected(self, sessions: SessionStateMachine, simulator: Any) -> None:
        session = await sessions.create(WORKSPACE, 1000, "USD", "Once")
        await sessions.process(WORKSPACE, session.id)

        with pytest.raises(InvalidStateError) as exc_info:
            await sessions.process(WORKSPACE, session.id)

        assert exc_info.value.reason == "terminal"
        assert exc_info.value.current_status == "completed"
        assert simulator.calls == 1

    @pytest.mark.asyncio
    async def test_lost_transition_is_a_conflict(
        self, sessions: SessionStateMachine, dispatcher: Any, mocker: Any
    ) -> None:
        """Another writer moved the session between our read and our UPDATE."""
        session = await sessions.create(WORKSPACE, 1000, "USD", "Contended")
        mocker.patch.object(sessions, "_transition", new=mocker.AsyncMock(return_value=False))

        with pytest.raises(InvalidStateError) as exc_info:
            await sessions.process(WORKSPACE, session.id)

        assert exc_info.value.reason == "conflict"
        assert session.id in exc_info.value.message
        assert dispatcher.names() == []

    @pytest.mark.asyncio
    async def test_expired_session_is_distinguished(
        self, sessions: SessionStateMachine, clock: Any
    ) -> None:
        session = await sessions.create(WORKSPACE, 1000, "USD", "Late")
        clock.advance(minutes=61)

        with pytest.raises(InvalidStateError) as exc_info:
            await sessions.process(WORKSPACE, session.id)
        assert exc_info.value.reason == "expired"

        stored = await sessions.get(WORKSPACE, session.id)
        assert stored.status == "expired"

        with pytest.raises(InvalidStateError) as exc_info:
            await sessions.process(WORKSPACE, session.id)
        assert exc_info.value.reason == "terminal"

    @pytest.mark.asyncio
    async def test_block_leaves_session_pending(
        self, session_factory: Any, test_settings: Any, clock: Any, dispatcher: Any
    ) -> None:
        simulator = DeterministicGatewaySimulator([True])
        engine = build_engine(
            session_factory, test_settings, clock, dispatcher,
            analyzer=FixedScoreAnalyzer(90), simulator=simulator,
        )
        session = await engine.create(WORKSPACE, 1000, "USD", "Risky")

        with pytest.raises(FraudBlockedError) as exc_info:
            await engine.process(WORKSPACE, session.id)

        assert exc_info.value.score == 90
        assert (await engine.get(WORKSPACE, session.id)).status == "pending"
        assert simulator.calls == 0
        assert dispatcher.names() == []

    @pytest.mark.asyncio
    async def test_review_opens_review_and_approval_lets_payment_through(
        self, session_factory: Any, test_settings: Any, clock: Any, dispatcher: Any
    ) -> None:
        analyzer = FixedScoreAnalyzer(55, ["high_amount"])
        engine = build_engine(session_factory, test_settings, clock, dispatcher, analyzer=analyzer)
        session = await engine.create(WORKSPACE, 1000, "USD", "Borderline")

        with pytest.raises(ReviewRequiredError) as exc_info:
            await engine.process(WORKSPACE, session.id)
        review_id = exc_info.value.review_id

        async with session_factory() as db:
            review = await db.get(FraudReview, review_id)
        assert review.status == "pending"
        assert review.score == 55
        assert review.factors == ["high_amount"]
        assert (await engine.get(WORKSPACE, session.id)).status == "pending"

        # Still pending review: no second review, no second analysis
        with pytest.raises(ReviewRequiredError):
            await engine.process(WORKSPACE, session.id)
        assert analyzer.calls == 1

        resolved = await engine.resolve_review(WORKSPACE, review_id, approve=True, note="Known customer")
        assert resolved.status == "approved"

        processed = await engine.process(WORKSPACE, session.id)
        assert processed.status == "completed"
        assert analyzer.calls == 1

    @pytest.mark.asyncio
    async def test_denied_review_blocks(
        self, session_factory: Any, test_settings: Any, clock: Any, dispatcher: Any
    ) -> None:
        engine = build_engine(session_factory, test_settings, clock, dispatcher, analyzer=FixedScoreAnalyzer(55))
        session = await engine.create(WORKSPACE, 1000, "USD", "Borderline")
        with pytest.raises(ReviewRequiredError) as exc_info:
            await engine.process(WORKSPACE, session.id)

        await engine.resolve_review(WORKSPACE, exc_info.value.review_id, approve=False)

        with pytest.raises(FraudBlockedError):
            await engine.process(WORKSPACE, session.id)
        with pytest.raises(InvalidStateError):
            await engine.resolve_review(WORKSPACE, exc_info.value.review_id, approve=True)

    @pytest.mark.asyncio
    async def test_fraud_failure_fails_open(
        self, session_factory: Any, test_settings: Any, clock: Any, dispatcher: Any
    ) -> None:
        class Broken:
            async def analyze(self, attrs: Any) -> Any:
                raise RuntimeError("scoring backend down")

        engine = build_engine(session_factory, test_settings, clock, dispatcher, analyzer=Broken())
        session = await engine.create(WORKSPACE, 1000, "USD", "Order")

        processed = await engine.process(WORKSPACE, session.id)
        assert processed.status == "completed"

    @pytest.mark.asyncio
    async def test_ngn_scenario_splits_roughly_ninety_ten(
        self, session_factory: Any, test_settings: Any, clock: Any, dispatcher: Any
    ) -> None:
        engine = build_engine(
            session_factory, test_settings, clock, dispatcher,
            simulator=RandomGatewaySimulator(0.9, rng=random.Random(2024)),
        )

        trials = 150
        completed = 0
        for _ in range(trials):
            session = await engine.create(
                WORKSPACE, 500000, "NGN", "Scenario", customer_email="bola@example.com"
            )
            processed = await engine.process(WORKSPACE, session.id)
            if processed.status == "completed":
                completed += 1
                assert processed.completed_at is not None
            else:
                assert processed.status == "failed"
                assert processed.failure_reason

        async with session_factory() as db:
            total = await engine.customers.currency_total(db, WORKSPACE, "bola@example.com", "NGN")

        assert total == completed * 500000
        assert 0.8 <= completed / trials <= 0.98


class TestRefund:

    @pytest.mark.asyncio
    async def test_full_refund_reverses_aggregates(
        self, sessions: SessionStateMachine, dispatcher: Any, clock: Any, session_factory: Any
    ) -> None:
        session = await sessions.create(WORKSPACE, 500000, "NGN", "Order", customer_email="ada@example.com")
        await sessions.process(WORKSPACE, session.id)

        refunded = await sessions.refund(WORKSPACE, session.id)

        assert refunded.status == "refunded"
        assert refunded.refund_amount == 500000
        assert refunded.refunded_at == clock.now
        assert dispatcher.names() == ["payment.completed", "payment.refunded"]
        async with session_factory() as db:
            total = await sessions.customers.currency_total(db, WORKSPACE, "ada@example.com", "NGN")
        assert total == 0

    @pytest.mark.asyncio
    async def test_partial_refund(self, sessions: SessionStateMachine, session_factory: Any) -> None:
        session = await sessions.create(WORKSPACE, 10000, "USD", "Order", customer_email="ada@example.com")
        await sessions.process(WORKSPACE, session.id)

        refunded = await sessions.refund(WORKSPACE, session.id, amount=2500)

        assert refunded.refund_amount == 2500
        async with session_factory() as db:
            total = await sessions.customers.currency_total(db, WORKSPACE, "ada@example.com", "USD")
        assert total == 7500

    @pytest.mark.asyncio
    async def test_refund_requires_completed(self, sessions: SessionStateMachine) -> None:
        session = await sessions.create(WORKSPACE, 1000, "USD", "Unpaid")
        with pytest.raises(InvalidStateError) as exc_info:
            await sessions.refund(WORKSPACE, session.id)
        assert exc_info.value.reason == "pending"

        await sessions.process(WORKSPACE, session.id)
        await sessions.refund(WORKSPACE, session.id)
        with pytest.raises(InvalidStateError) as exc_info:
            await sessions.refund(WORKSPACE, session.id)
        assert exc_info.value.reason == "terminal"

    @pytest.mark.asyncio
    async def test_refund_amount_bounds(self, sessions: SessionStateMachine) -> None:
        session = await sessions.create(WORKSPACE, 1000, "USD", "Order")
        await sessions.process(WORKSPACE, session.id)
        with pytest.raises(ValidationError):
            await sessions.refund(WORKSPACE, session.id, amount=1001)
        with pytest.raises(ValidationError):
            await sessions.refund(WORKSPACE, session.id, amount=0)

    @pytest.mark.asyncio
    async def test_lost_refund_transition_is_a_conflict(
        self, sessions: SessionStateMachine, session_factory: Any, mocker: Any
    ) -> None:
        session = await sessions.create(WORKSPACE, 1000, "USD", "Order", customer_email="ada@example.com")
        await sessions.process(WORKSPACE, session.id)
        mocker.patch.object(sessions, "_transition", new=mocker.AsyncMock(return_value=False))

        with pytest.raises(InvalidStateError) as exc_info:
            await sessions.refund(WORKSPACE, session.id)

        assert exc_info.value.reason == "conflict"
        async with session_factory() as db:
            total = await sessions.customers.currency_total(db, WORKSPACE, "ada@example.com", "USD")
        assert total == 1000


class TestSweepAndStats:

    @pytest.mark.asyncio
    async def test_expire_stale_only_touches_past_pending(
        self, sessions: SessionStateMachine, clock: Any, session_factory: Any
    ) -> None:
        stale = await sessions.create(WORKSPACE, 1000, "USD", "Stale")
        paid = await sessions.create(WORKSPACE, 1000, "USD", "Paid")
        await sessions.process(WORKSPACE, paid.id)
        clock.advance(minutes=30)
        fresh = await sessions.create(WORKSPACE, 1000, "USD", "Fresh")
        clock.advance(minutes=31)

        assert await sessions.expire_stale() == 1

        async with session_factory() as db:
            statuses = dict((await db.execute(select(CheckoutSession.id, CheckoutSession.status))).all())
        assert statuses == {stale.id: "expired", paid.id: "completed", fresh.id: "pending"}

    @pytest.mark.asyncio
    async def test_stats(self, session_factory: Any, test_settings: Any, clock: Any, dispatcher: Any) -> None:
        engine = build_engine(
            session_factory, test_settings, clock, dispatcher,
            simulator=DeterministicGatewaySimulator([True, False, True]),
        )
        for amount in (1000, 2000, 3000):
            session = await engine.create(WORKSPACE, amount, "USD", "Order")
            await engine.process(WORKSPACE, session.id)
        await engine.create(WORKSPACE, 4000, "USD", "Open")

        stats = await engine.stats(WORKSPACE)

        assert stats["total_sessions"] == 4
        assert stats["by_status"]["completed"] == {"count": 2, "amount": 4000}
        assert stats["by_status"]["failed"] == {"count": 1, "amount": 2000}
        assert stats["by_status"]["pending"] == {"count": 1, "amount": 4000}
        assert stats["success_rate"] == pytest.approx(66.67)
