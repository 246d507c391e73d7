"""
Notify-and-forget collaborator for customer-facing messages.

Email rendering lives elsewhere; the engine only hands over what
happened. The default implementation writes a structured log line.
"""
from typing import Any, Dict, Protocol

import structlog

logger = structlog.get_logger(__name__)


class Notifier(Protocol):
    async def upcoming_renewal(self, subscription: Any, amount: int, currency: str) -> None:
        ...

    async def payment_receipt(self, session: Any) -> None:
        ...

    async def subscription_canceled(self, subscription: Any) -> None:
        ...


class LoggingNotifier:
    """Notifier that records each notification as a log event."""

    async def upcoming_renewal(self, subscription: Any, amount: int, currency: str) -> None:
        logger.info(
            "notify_upcoming_renewal",
            subscription_id=subscription.id,
            customer_email=subscription.customer_email,
            period_end=subscription.current_period_end.isoformat(),
            amount=amount,
            currency=currency,
        )

    async def payment_receipt(self, session: Any) -> None:
        logger.info(
            "notify_payment_receipt",
            session_id=session.id,
            customer_email=session.customer_email,
            amount=session.amount,
            currency=session.currency,
        )

    async def subscription_canceled(self, subscription: Any) -> None:
        logger.info(
            "notify_subscription_canceled",
            subscription_id=subscription.id,
            customer_email=subscription.customer_email,
        )


class RecordingNotifier:
    """In-memory notifier; useful for local runs and tests."""

    def __init__(self) -> None:
        self.sent: list[Dict[str, Any]] = []

    async def upcoming_renewal(self, subscription: Any, amount: int, currency: str) -> None:
        self.sent.append(
            {
                "kind": "upcoming_renewal",
                "subscription_id": subscription.id,
                "period_end": subscription.current_period_end,
                "amount": amount,
                "currency": currency,
            }
        )

    async def payment_receipt(self, session: Any) -> None:
        self.sent.append({"kind": "payment_receipt", "session_id": session.id})

    async def subscription_canceled(self, subscription: Any) -> None:
        self.sent.append({"kind": "subscription_canceled", "subscription_id": subscription.id})
