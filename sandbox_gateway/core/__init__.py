"""Payment session and subscription lifecycle engine."""
from .billing import SubscriptionBillingEngine
from .delivery_retry import WebhookRetryQueue
from .errors import (
    DeliveryError,
    FraudBlockedError,
    InvalidStateError,
    NotFoundError,
    ReviewRequiredError,
    SandboxError,
    SchedulerError,
    ValidationError,
)
from .fraud_gate import FraudDecision, FraudGate, TransactionAttributes
from .gateway_simulator import DeterministicGatewaySimulator, RandomGatewaySimulator
from .intervals import IntervalUnit, add_interval
from .scheduler import RenewalScheduler
from .session_engine import SessionStateMachine

__all__ = [
    "DeliveryError",
    "DeterministicGatewaySimulator",
    "FraudBlockedError",
    "FraudDecision",
    "FraudGate",
    "IntervalUnit",
    "InvalidStateError",
    "NotFoundError",
    "RandomGatewaySimulator",
    "RenewalScheduler",
    "ReviewRequiredError",
    "SandboxError",
    "SchedulerError",
    "SessionStateMachine",
    "SubscriptionBillingEngine",
    "TransactionAttributes",
    "ValidationError",
    "WebhookRetryQueue",
    "add_interval",
]
