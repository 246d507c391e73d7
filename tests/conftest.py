"""
Pytest configuration and fixtures.

Every test gets its own SQLite file, a controllable clock and a
deterministic gateway simulator.
"""
from datetime import datetime, timedelta
from typing import Any, AsyncGenerator, Callable, Dict, List

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from sandbox_gateway.config import Settings
from sandbox_gateway.core.billing import SubscriptionBillingEngine
from sandbox_gateway.core.fraud_gate import FraudGate, RiskScore
from sandbox_gateway.core.gateway_simulator import DeterministicGatewaySimulator
from sandbox_gateway.core.scheduler import RenewalScheduler
from sandbox_gateway.core.session_engine import SessionStateMachine
from sandbox_gateway.database.models import Base, Plan, Product
from sandbox_gateway.integrations.catalog import CatalogReader
from sandbox_gateway.integrations.notifier import RecordingNotifier

WORKSPACE = "ws_test"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingDispatcher:
    """Stands in for the webhook dispatcher; remembers what was emitted."""

    def __init__(self) -> None:
        self.events: List[Dict[str, Any]] = []

    def dispatch(self, workspace_id: str, event: str, data: Dict[str, Any]) -> None:
        self.events.append({"workspace_id": workspace_id, "event": event, "data": data})

    def names(self) -> List[str]:
        return [entry["event"] for entry in self.events]


class FixedScoreAnalyzer:
    """Risk analyzer returning a preset score."""

    def __init__(self, score: int, factors: List[str] | None = None):
        self.score = score
        self.factors = factors or ["preset"]
        self.calls = 0

    async def analyze(self, attributes: Any) -> RiskScore:
        self.calls += 1
        return RiskScore(score=self.score, level="preset", factors=list(self.factors))


class Receiver:
    """Programmable stand-in for a merchant's webhook listener."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.responder: Callable[[httpx.Request], httpx.Response] = lambda request: httpx.Response(200)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'sandbox_test.db'}",
        redis_url=None,
        app_name="sandbox-gateway-test",
        app_env="test",
        log_level="DEBUG",
        scheduler_enabled=False,
        webhook_retry_enabled=False,
        checkout_base_url="https://pay.example.test",
    )


@pytest.fixture
def clock() -> FakeClock:
    # Midday, so the unusual-hour rule stays quiet
    return FakeClock(datetime(2026, 3, 10, 12, 0, 0))


@pytest_asyncio.fixture
async def session_factory(test_settings: Settings) -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
    """Fresh schema on a temporary SQLite file."""
    engine = create_async_engine(
        test_settings.database_url,
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    await engine.dispose()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def simulator() -> DeterministicGatewaySimulator:
    return DeterministicGatewaySimulator([True])


@pytest.fixture
def fraud_gate(test_settings: Settings) -> FraudGate:
    return FraudGate(test_settings)


@pytest.fixture
def sessions(
    session_factory: async_sessionmaker[AsyncSession],
    test_settings: Settings,
    fraud_gate: FraudGate,
    dispatcher: RecordingDispatcher,
    notifier: RecordingNotifier,
    simulator: DeterministicGatewaySimulator,
    clock: FakeClock,
) -> SessionStateMachine:
    return SessionStateMachine(
        session_factory,
        test_settings,
        fraud_gate=fraud_gate,
        catalog=CatalogReader(),
        dispatcher=dispatcher,
        notifier=notifier,
        simulator=simulator,
        clock=clock,
    )


@pytest.fixture
def billing(
    session_factory: async_sessionmaker[AsyncSession],
    sessions: SessionStateMachine,
    dispatcher: RecordingDispatcher,
    notifier: RecordingNotifier,
    clock: FakeClock,
) -> SubscriptionBillingEngine:
    return SubscriptionBillingEngine(
        session_factory, sessions, CatalogReader(), dispatcher=dispatcher, notifier=notifier, clock=clock
    )


@pytest.fixture
def scheduler(
    session_factory: async_sessionmaker[AsyncSession],
    test_settings: Settings,
    billing: SubscriptionBillingEngine,
    sessions: SessionStateMachine,
    notifier: RecordingNotifier,
    clock: FakeClock,
) -> RenewalScheduler:
    return RenewalScheduler(
        session_factory, test_settings, billing, sessions, notifier=notifier, clock=clock
    )


@pytest_asyncio.fixture
async def make_plan(
    session_factory: async_sessionmaker[AsyncSession], clock: FakeClock
) -> Callable[..., Any]:
    """Factory inserting a product and a plan straight into the catalog tables."""

    async def _make(
        interval: str = "month",
        trial_days: int = 0,
        amount: int = 500000,
        currency: str = "NGN",
        active: bool = True,
        workspace_id: str = WORKSPACE,
    ) -> Plan:
        async with session_factory() as db:
            product = Product(workspace_id=workspace_id, name="Pro", created_at=clock())
            db.add(product)
            await db.flush()
            plan = Plan(
                workspace_id=workspace_id,
                product_id=product.id,
                amount=amount,
                currency=currency,
                interval=interval,
                trial_days=trial_days,
                active=active,
                created_at=clock(),
            )
            db.add(plan)
            await db.commit()
        return plan

    return _make


@pytest.fixture
def receiver() -> Receiver:
    return Receiver()
