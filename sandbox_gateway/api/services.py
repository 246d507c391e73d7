"""
Process composition root.

Builds every engine service once and owns the background loops, so the
scheduler's running state belongs to the process rather than a global.
"""
from dataclasses import dataclass
from typing import Optional

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from sandbox_gateway.config import Settings
from sandbox_gateway.core.billing import SubscriptionBillingEngine
from sandbox_gateway.core.delivery_retry import WebhookRetryQueue
from sandbox_gateway.core.fraud_gate import FraudGate, RuleBasedAnalyzer
from sandbox_gateway.core.gateway_simulator import GatewaySimulator
from sandbox_gateway.core.scheduler import RenewalScheduler
from sandbox_gateway.core.session_engine import SessionStateMachine
from sandbox_gateway.database.connection import build_engine, build_session_factory
from sandbox_gateway.integrations.catalog import CatalogReader
from sandbox_gateway.integrations.notifier import LoggingNotifier, Notifier
from sandbox_gateway.integrations.velocity import VelocityTracker
from sandbox_gateway.integrations.webhook_dispatcher import WebhookDispatcher
from sandbox_gateway.monitoring.health import HealthCheck
from sandbox_gateway.utils import Clock, utc_now

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    settings: Settings
    engine: Optional[AsyncEngine]
    session_factory: async_sessionmaker[AsyncSession]
    sessions: SessionStateMachine
    billing: SubscriptionBillingEngine
    scheduler: RenewalScheduler
    dispatcher: WebhookDispatcher
    retry_queue: WebhookRetryQueue
    fraud_gate: FraudGate
    health: HealthCheck
    velocity: Optional[VelocityTracker] = None

    async def start_background(self) -> None:
        if self.settings.scheduler_enabled:
            self.scheduler.start()
        if self.settings.webhook_retry_enabled:
            self.retry_queue.start()

    async def aclose(self) -> None:
        await self.scheduler.stop()
        await self.retry_queue.stop()
        await self.dispatcher.close()
        if self.velocity is not None:
            await self.velocity.close()
        if self.engine is not None:
            await self.engine.dispose()
        logger.info("services_closed")


def build_services(
    settings: Settings,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    simulator: Optional[GatewaySimulator] = None,
    notifier: Optional[Notifier] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    clock: Clock = utc_now,
) -> Services:
    """
    Wire the engine together.

    Tests pass their own session factory, simulator, HTTP client and clock.
    """
    engine = None
    if session_factory is None:
        engine = build_engine(settings)
        session_factory = build_session_factory(engine)

    notifier = notifier or LoggingNotifier()
    velocity = VelocityTracker.from_url(settings.redis_url) if settings.redis_url else None
    catalog = CatalogReader()
    fraud_gate = FraudGate(settings, RuleBasedAnalyzer(velocity))
    dispatcher = WebhookDispatcher(session_factory, settings, http_client=http_client, clock=clock)
    sessions = SessionStateMachine(
        session_factory,
        settings,
        fraud_gate=fraud_gate,
        catalog=catalog,
        dispatcher=dispatcher,
        notifier=notifier,
        simulator=simulator,
        clock=clock,
    )
    billing = SubscriptionBillingEngine(
        session_factory, sessions, catalog, dispatcher=dispatcher, notifier=notifier, clock=clock
    )
    scheduler = RenewalScheduler(
        session_factory, settings, billing, sessions, notifier=notifier, clock=clock
    )
    retry_queue = WebhookRetryQueue(
        session_factory,
        dispatcher,
        batch_size=settings.webhook_retry_batch_size,
        poll_interval_seconds=settings.webhook_retry_poll_seconds,
        clock=clock,
    )
    health = HealthCheck(
        session_factory,
        redis_client=velocity.redis if velocity is not None else None,
        scheduler=scheduler,
    )
    return Services(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        sessions=sessions,
        billing=billing,
        scheduler=scheduler,
        dispatcher=dispatcher,
        retry_queue=retry_queue,
        fraud_gate=fraud_gate,
        health=health,
        velocity=velocity,
    )
