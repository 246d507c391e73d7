"""
Prometheus metrics for the sandbox engine.

Tracks:
- Sessions created and processed by outcome
- Fraud decisions by action
- Webhook delivery attempts and latency
- Scheduler ticks, reminders, renewals and per-record errors
- Webhook retry queue depth
"""
from prometheus_client import Counter, Gauge, Histogram

# Session metrics
sessions_created_total = Counter(
    "sandbox_sessions_created_total",
    "Total checkout sessions created",
    ["purpose", "currency"],
)

sessions_processed_total = Counter(
    "sandbox_sessions_processed_total",
    "Total checkout sessions processed",
    ["outcome"],  # completed, failed, blocked, review, rejected
)

session_amount_minor_units = Histogram(
    "sandbox_session_amount_minor_units",
    "Amounts of completed sessions in minor units",
    buckets=(100, 1000, 10000, 100000, 500000, 1000000, 5000000, 10000000),
)

refunds_total = Counter(
    "sandbox_refunds_total",
    "Total refunds recorded",
    ["currency"],
)

sessions_expired_total = Counter(
    "sandbox_sessions_expired_total",
    "Total pending sessions marked expired",
)

# Fraud metrics
fraud_decisions_total = Counter(
    "sandbox_fraud_decisions_total",
    "Total fraud gate decisions",
    ["action", "failed_open"],
)

fraud_analysis_duration_seconds = Histogram(
    "sandbox_fraud_analysis_duration_seconds",
    "Fraud analysis duration in seconds",
    buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0),
)

# Subscription metrics
subscriptions_transitions_total = Counter(
    "sandbox_subscription_transitions_total",
    "Total subscription lifecycle transitions",
    ["transition"],  # created, paused, resumed, canceled, renewed
)

# Webhook metrics
webhook_delivery_attempts_total = Counter(
    "sandbox_webhook_delivery_attempts_total",
    "Total webhook delivery attempts",
    ["event", "outcome"],  # success, failure
)

webhook_delivery_duration_seconds = Histogram(
    "sandbox_webhook_delivery_duration_seconds",
    "Webhook POST duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

webhook_retry_queue_depth = Gauge(
    "sandbox_webhook_retry_queue_depth",
    "Deliveries waiting for a retry",
)

# Scheduler metrics
scheduler_ticks_total = Counter(
    "sandbox_scheduler_ticks_total",
    "Total renewal scheduler ticks",
)

scheduler_reminders_total = Counter(
    "sandbox_scheduler_reminders_total",
    "Total upcoming-renewal reminders emitted",
)

scheduler_renewals_total = Counter(
    "sandbox_scheduler_renewals_total",
    "Total subscription periods advanced",
)

scheduler_errors_total = Counter(
    "sandbox_scheduler_errors_total",
    "Total per-subscription scheduler failures",
    ["phase"],  # reminder, renewal
)

scheduler_tick_duration_seconds = Histogram(
    "sandbox_scheduler_tick_duration_seconds",
    "Scheduler tick duration in seconds",
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0),
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_session_created(purpose: str, currency: str) -> None:
        sessions_created_total.labels(purpose=purpose, currency=currency).inc()

    @staticmethod
    def record_session_processed(outcome: str, amount: int | None = None) -> None:
        sessions_processed_total.labels(outcome=outcome).inc()
        if outcome == "completed" and amount is not None:
            session_amount_minor_units.observe(amount)

    @staticmethod
    def record_refund(currency: str) -> None:
        refunds_total.labels(currency=currency).inc()

    @staticmethod
    def record_sessions_expired(count: int) -> None:
        if count:
            sessions_expired_total.inc(count)

    @staticmethod
    def record_fraud_decision(action: str, failed_open: bool, duration_seconds: float) -> None:
        fraud_decisions_total.labels(action=action, failed_open=str(failed_open).lower()).inc()
        fraud_analysis_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_subscription_transition(transition: str) -> None:
        subscriptions_transitions_total.labels(transition=transition).inc()

    @staticmethod
    def record_webhook_attempt(event: str, success: bool, duration_seconds: float) -> None:
        webhook_delivery_attempts_total.labels(
            event=event, outcome="success" if success else "failure"
        ).inc()
        webhook_delivery_duration_seconds.observe(duration_seconds)

    @staticmethod
    def set_retry_queue_depth(depth: int) -> None:
        webhook_retry_queue_depth.set(depth)

    @staticmethod
    def record_scheduler_tick(
        duration_seconds: float, reminders: int, renewals: int
    ) -> None:
        scheduler_ticks_total.inc()
        scheduler_tick_duration_seconds.observe(duration_seconds)
        if reminders:
            scheduler_reminders_total.inc(reminders)
        if renewals:
            scheduler_renewals_total.inc(renewals)

    @staticmethod
    def record_scheduler_error(phase: str) -> None:
        scheduler_errors_total.labels(phase=phase).inc()
