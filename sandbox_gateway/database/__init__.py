"""Database package for the sandbox gateway."""
from .connection import (
    build_engine,
    build_session_factory,
    init_db,
)
from .models import (
    Base,
    CheckoutSession,
    Customer,
    CustomerCurrencyTotal,
    FraudReview,
    Plan,
    Product,
    Subscription,
    SubscriptionReminder,
    WebhookDelivery,
    WebhookEndpoint,
    WorkspaceSettings,
)

__all__ = [
    "Base",
    "CheckoutSession",
    "Customer",
    "CustomerCurrencyTotal",
    "FraudReview",
    "Plan",
    "Product",
    "Subscription",
    "SubscriptionReminder",
    "WebhookDelivery",
    "WebhookEndpoint",
    "WorkspaceSettings",
    "build_engine",
    "build_session_factory",
    "init_db",
]
