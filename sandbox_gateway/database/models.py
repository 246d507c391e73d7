"""SQLAlchemy database models for the payment gateway sandbox."""
from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from sandbox_gateway.utils import new_id, utc_now

JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER PRIMARY KEY columns
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")

SESSION_STATUSES = ("pending", "completed", "failed", "refunded", "expired")
SUBSCRIPTION_STATUSES = ("trialing", "active", "paused", "canceled")
PLAN_INTERVALS = ("day", "week", "month", "quarter", "year")


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class CheckoutSession(Base):
    """
    One checkout attempt.

    Sessions are never deleted. Status leaves ``pending`` exactly once and
    every transition is written with a conditional UPDATE on the current
    status.
    """

    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(40), primary_key=True, default=lambda: new_id("sess"))
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    customer_email: Mapped[str | None] = mapped_column(String(320), nullable=True, index=True)
    customer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    purpose: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    metadata_: Mapped[Dict[str, Any]] = mapped_column("metadata", JSONType, nullable=False, default=dict)
    success_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancel_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    refund_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now, index=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount >= 0", name="non_negative_amount"),
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'refunded', 'expired')",
            name="valid_session_status",
        ),
        Index("idx_sessions_workspace_status", "workspace_id", "status"),
    )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def effective_status(self, now: datetime) -> str:
        """Stored status, except a pending session past its expiry reads as expired."""
        if self.status == "pending" and self.is_expired(now):
            return "expired"
        return self.status

    def __repr__(self) -> str:
        return (
            f"<CheckoutSession(id={self.id}, workspace={self.workspace_id}, "
            f"amount={self.amount}, status={self.status})>"
        )


class Customer(Base):
    """Per-workspace customer aggregate keyed by email."""

    __tablename__ = "customers"

    id: Mapped[str] = mapped_column(String(40), primary_key=True, default=lambda: new_id("cust"))
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    total_transactions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (UniqueConstraint("workspace_id", "email", name="uq_customer_workspace_email"),)

    def __repr__(self) -> str:
        return f"<Customer(id={self.id}, email={self.email}, total={self.total_transactions})>"


class CustomerCurrencyTotal(Base):
    """Running count and total for one customer in one currency."""

    __tablename__ = "customer_currency_totals"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    customer_id: Mapped[str] = mapped_column(
        String(40), ForeignKey("customers.id"), nullable=False, index=True
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    __table_args__ = (UniqueConstraint("customer_id", "currency", name="uq_customer_currency"),)


class Product(Base):
    """Catalog product. Owned by catalog management, read-only here."""

    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(40), primary_key=True, default=lambda: new_id("prod"))
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    image: Mapped[str | None] = mapped_column(Text, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)


class Plan(Base):
    """Pricing term. Immutable once active, read-only here."""

    __tablename__ = "plans"

    id: Mapped[str] = mapped_column(String(40), primary_key=True, default=lambda: new_id("plan"))
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    product_id: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    interval: Mapped[str] = mapped_column(String(10), nullable=False)
    trial_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint("amount >= 0", name="plan_non_negative_amount"),
        CheckConstraint(
            "interval IN ('day', 'week', 'month', 'quarter', 'year')",
            name="valid_plan_interval",
        ),
    )


class Subscription(Base):
    """
    Recurring billing agreement.

    ``version`` is bumped by every write; writers update with
    ``WHERE id = :id AND version = :seen`` so a cancel racing a renewal
    cannot resurrect or double-advance the record.
    """

    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(40), primary_key=True, default=lambda: new_id("sub"))
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    customer_email: Mapped[str] = mapped_column(String(320), nullable=False)
    product_id: Mapped[str] = mapped_column(String(40), nullable=False)
    plan_id: Mapped[str] = mapped_column(String(40), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    start_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    current_period_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    metadata_: Mapped[Dict[str, Any]] = mapped_column("metadata", JSONType, nullable=False, default=dict)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('trialing', 'active', 'paused', 'canceled')",
            name="valid_subscription_status",
        ),
        CheckConstraint("current_period_end > current_period_start", name="period_end_after_start"),
        Index("idx_subscriptions_status_period_end", "status", "current_period_end"),
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, status={self.status}, "
            f"period_end={self.current_period_end}, version={self.version})>"
        )


class SubscriptionReminder(Base):
    """
    Reminder ledger: one row per (subscription, period end) ever reminded.

    The unique constraint is what makes reminders idempotent across ticks
    and across scheduler processes.
    """

    __tablename__ = "subscription_reminders"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    subscription_id: Mapped[str] = mapped_column(
        String(40), ForeignKey("subscriptions.id"), nullable=False, index=True
    )
    period_end: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    sent_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        UniqueConstraint("subscription_id", "period_end", name="uq_reminder_subscription_period"),
    )


class WebhookEndpoint(Base):
    """Workspace-scoped listener URL with its secret, retry policy and delivery stats."""

    __tablename__ = "webhook_endpoints"

    id: Mapped[str] = mapped_column(String(40), primary_key=True, default=lambda: new_id("wh"))
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    secret: Mapped[str] = mapped_column(String(255), nullable=False)
    events: Mapped[List[str]] = mapped_column(JSONType, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    retry_delay_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=5000)
    backoff_multiplier: Mapped[float] = mapped_column(Float, nullable=False, default=2.0)
    timeout_seconds: Mapped[float] = mapped_column(Float, nullable=False, default=30.0)
    total_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    successful_deliveries: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_deliveries: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_successful_delivery: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_failed_delivery: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)

    def supports_event(self, event: str) -> bool:
        return event in (self.events or [])

    def delivery_rate(self) -> float:
        if not self.total_attempts:
            return 0.0
        return self.successful_deliveries / self.total_attempts * 100

    def retry_delay_seconds(self, attempt_number: int) -> float:
        """Delay before re-attempt ``attempt_number`` (1-based)."""
        multiplier = self.backoff_multiplier ** max(attempt_number - 1, 0)
        return self.retry_delay_ms * multiplier / 1000.0

    def __repr__(self) -> str:
        return f"<WebhookEndpoint(id={self.id}, url={self.url}, active={self.is_active})>"


class WebhookDelivery(Base):
    """
    One event sent to one endpoint, with the exact envelope that was signed.

    Failed rows are picked up by the retry queue until ``max_retries``
    re-attempts are used up. A row is ``sending`` while one caller holds
    the claim for its next POST; ``next_attempt_at`` is then the lease expiry.
    """

    __tablename__ = "webhook_deliveries"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    endpoint_id: Mapped[str] = mapped_column(
        String(40), ForeignKey("webhook_endpoints.id"), nullable=False, index=True
    )
    event: Mapped[str] = mapped_column(String(100), nullable=False)
    webhook_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    envelope: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_attempt_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'sending', 'delivered', 'failed', 'exhausted')",
            name="valid_delivery_status",
        ),
        Index("idx_deliveries_retry", "status", "next_attempt_at"),
    )


class FraudReview(Base):
    """Manual follow-up item created when the fraud gate answers ``review``."""

    __tablename__ = "fraud_reviews"

    id: Mapped[str] = mapped_column(String(40), primary_key=True, default=lambda: new_id("frv"))
    session_id: Mapped[str] = mapped_column(
        String(40), ForeignKey("sessions.id"), nullable=False, index=True
    )
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    score: Mapped[int] = mapped_column(Integer, nullable=False)
    level: Mapped[str] = mapped_column(String(20), nullable=False)
    factors: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    reviewer_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'approved', 'denied')", name="valid_review_status"
        ),
    )


class WorkspaceSettings(Base):
    """Per-workspace fraud configuration; absent rows fall back to application settings."""

    __tablename__ = "workspace_settings"

    workspace_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    fraud_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    fraud_block_threshold: Mapped[int] = mapped_column(Integer, nullable=False)
    fraud_review_threshold: Mapped[int] = mapped_column(Integer, nullable=False)
    fraud_flag_threshold: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utc_now, onupdate=utc_now
    )
