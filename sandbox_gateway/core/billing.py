"""
Subscription billing engine.

States: trialing -> active <-> paused, any -> canceled (terminal).

Every write is a compare-and-set on ``version`` plus the set of statuses
the transition is legal from. A request that loses a race re-reads the
row and tries again while the transition is still legal.
"""
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Tuple

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sandbox_gateway.core.errors import InvalidStateError, NotFoundError, ValidationError
from sandbox_gateway.core.intervals import add_days, add_interval
from sandbox_gateway.core.purpose import SubscriptionChargePurpose
from sandbox_gateway.core.session_engine import SessionStateMachine, session_payload
from sandbox_gateway.database.models import CheckoutSession, Plan, Subscription
from sandbox_gateway.integrations.catalog import CatalogReader
from sandbox_gateway.integrations.notifier import LoggingNotifier, Notifier
from sandbox_gateway.monitoring.metrics import MetricsCollector
from sandbox_gateway.utils import Clock, isoformat, new_id, utc_now

logger = structlog.get_logger(__name__)

BILLABLE_STATUSES = ("trialing", "active")
LIVE_STATUSES = ("trialing", "active", "paused")
MAX_WRITE_ATTEMPTS = 3


def subscription_payload(subscription: Subscription) -> Dict[str, Any]:
    return {
        "id": subscription.id,
        "workspace_id": subscription.workspace_id,
        "customer_email": subscription.customer_email,
        "product_id": subscription.product_id,
        "plan_id": subscription.plan_id,
        "status": subscription.status,
        "start_date": isoformat(subscription.start_date),
        "current_period_start": isoformat(subscription.current_period_start),
        "current_period_end": isoformat(subscription.current_period_end),
        "cancel_at_period_end": subscription.cancel_at_period_end,
        "canceled_at": isoformat(subscription.canceled_at),
        "metadata": dict(subscription.metadata_ or {}),
    }


async def compare_and_set(
    db: AsyncSession,
    subscription: Subscription,
    allowed_statuses: Iterable[str],
    values: Dict[str, Any],
) -> bool:
    """
    Apply ``values`` only if the row still has the version we read and a
    status in ``allowed_statuses``. Bumps the version on success.
    """
    result = await db.execute(
        update(Subscription)
        .where(
            Subscription.id == subscription.id,
            Subscription.version == subscription.version,
            Subscription.status.in_(list(allowed_statuses)),
        )
        .values(version=Subscription.version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


class SubscriptionBillingEngine:
    """Creates subscriptions and applies explicit lifecycle requests."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        sessions: SessionStateMachine,
        catalog: CatalogReader,
        dispatcher: Any = None,
        notifier: Optional[Notifier] = None,
        clock: Clock = utc_now,
    ):
        self.session_factory = session_factory
        self.sessions = sessions
        self.catalog = catalog
        self.dispatcher = dispatcher
        self.notifier = notifier or LoggingNotifier()
        self.clock = clock

    async def _load(self, db: AsyncSession, workspace_id: str, subscription_id: str) -> Subscription:
        subscription = await db.get(Subscription, subscription_id, populate_existing=True)
        if subscription is None or subscription.workspace_id != workspace_id:
            raise NotFoundError("subscription", subscription_id)
        return subscription

    async def _resolve_plan(self, db: AsyncSession, workspace_id: str, plan_id: str) -> Plan:
        plan = await self.catalog.get_plan(db, workspace_id, plan_id)
        if plan is None or not plan.active:
            raise NotFoundError("plan", plan_id)
        return plan

    async def create(
        self,
        workspace_id: str,
        customer_email: str,
        plan_id: str,
        charge_now: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Subscription, Optional[CheckoutSession]]:
        """
        Start a subscription on ``plan_id``.

        - ``charge_now``: active immediately, one interval long, with a
          pending first-charge session
        - otherwise, with trial days: trialing until ``now + trial_days``
        - otherwise: active for one interval with nothing charged yet

        Raises:
            NotFoundError: plan missing or inactive
        """
        if not customer_email or "@" not in customer_email:
            raise ValidationError("A valid customer email is required", field="customer_email")

        now = self.clock()
        first_charge: Optional[CheckoutSession] = None

        async with self.session_factory() as db:
            plan = await self._resolve_plan(db, workspace_id, plan_id)

            if charge_now:
                status, period_end = "active", add_interval(now, plan.interval)
            elif plan.trial_days > 0:
                status, period_end = "trialing", add_days(now, plan.trial_days)
            else:
                status, period_end = "active", add_interval(now, plan.interval)

            subscription = Subscription(
                id=new_id("sub"),
                workspace_id=workspace_id,
                customer_email=customer_email.lower(),
                product_id=plan.product_id,
                plan_id=plan.id,
                status=status,
                start_date=now,
                current_period_start=now,
                current_period_end=period_end,
                cancel_at_period_end=False,
                metadata_=dict(metadata or {}),
                version=1,
                created_at=now,
                updated_at=now,
            )
            db.add(subscription)
            await db.flush()

            if charge_now:
                first_charge = await self.sessions.stage_session(
                    db,
                    workspace_id,
                    plan.amount,
                    plan.currency,
                    f"Subscription first payment ({plan.interval})",
                    customer_email=customer_email,
                    purpose=SubscriptionChargePurpose(
                        subscription_id=subscription.id,
                        plan_id=plan.id,
                        product_id=plan.product_id,
                    ),
                )
            await db.commit()

        MetricsCollector.record_subscription_transition("created")
        logger.info(
            "subscription_created",
            subscription_id=subscription.id,
            plan_id=plan_id,
            status=status,
            current_period_end=isoformat(period_end),
            first_charge_session_id=first_charge.id if first_charge else None,
        )
        self._emit(workspace_id, "subscription.created", subscription_payload(subscription))
        return subscription, first_charge

    async def get(self, workspace_id: str, subscription_id: str) -> Subscription:
        async with self.session_factory() as db:
            return await self._load(db, workspace_id, subscription_id)

    async def _apply(
        self,
        workspace_id: str,
        subscription_id: str,
        allowed_statuses: Tuple[str, ...],
        values: Dict[str, Any],
        action: str,
    ) -> Subscription:
        """Read, check, compare-and-set; re-read on a lost race."""
        async with self.session_factory() as db:
            for _ in range(MAX_WRITE_ATTEMPTS):
                subscription = await self._load(db, workspace_id, subscription_id)
                if subscription.status not in allowed_statuses:
                    raise InvalidStateError(
                        f"Cannot {action} a {subscription.status} subscription",
                        reason="terminal" if subscription.status == "canceled" else "conflict",
                        current_status=subscription.status,
                    )
                if await compare_and_set(
                    db, subscription, allowed_statuses, {**values, "updated_at": self.clock()}
                ):
                    await db.commit()
                    return await self._load(db, workspace_id, subscription_id)
                await db.rollback()
                logger.info("subscription_write_conflict", subscription_id=subscription_id, action=action)

        raise InvalidStateError(
            f"Subscription {subscription_id} kept changing; {action} not applied",
            reason="conflict",
        )

    async def cancel(self, workspace_id: str, subscription_id: str, at_period_end: bool = False) -> Subscription:
        """
        Cancel now, or only flag the cancellation for the end of the period.

        A deferred cancel leaves the status alone; the scheduler performs
        the transition once ``current_period_end <= now``.
        """
        if at_period_end:
            subscription = await self._apply(
                workspace_id, subscription_id, LIVE_STATUSES, {"cancel_at_period_end": True}, "cancel"
            )
            logger.info("subscription_cancel_scheduled", subscription_id=subscription_id)
            self._emit(workspace_id, "subscription.updated", subscription_payload(subscription))
            return subscription

        subscription = await self._apply(
            workspace_id,
            subscription_id,
            LIVE_STATUSES,
            {"status": "canceled", "canceled_at": self.clock(), "cancel_at_period_end": False},
            "cancel",
        )
        MetricsCollector.record_subscription_transition("canceled")
        logger.info("subscription_canceled", subscription_id=subscription_id)
        self._emit(workspace_id, "subscription.cancelled", subscription_payload(subscription))
        await self._notify_canceled(subscription)
        return subscription

    async def pause(self, workspace_id: str, subscription_id: str) -> Subscription:
        subscription = await self._apply(
            workspace_id, subscription_id, BILLABLE_STATUSES, {"status": "paused"}, "pause"
        )
        MetricsCollector.record_subscription_transition("paused")
        logger.info("subscription_paused", subscription_id=subscription_id)
        self._emit(workspace_id, "subscription.updated", subscription_payload(subscription))
        return subscription

    async def resume(self, workspace_id: str, subscription_id: str) -> Subscription:
        subscription = await self._apply(
            workspace_id, subscription_id, ("paused",), {"status": "active"}, "resume"
        )
        MetricsCollector.record_subscription_transition("resumed")
        logger.info("subscription_resumed", subscription_id=subscription_id)
        self._emit(workspace_id, "subscription.updated", subscription_payload(subscription))
        return subscription

    async def renew(
        self, db: AsyncSession, subscription: Subscription, now: datetime
    ) -> Optional[CheckoutSession]:
        """
        Advance one due subscription by a single period, in ``db``'s transaction.

        Records a completed charge, moves the period forward and makes the
        subscription active. Returns None without charging if another
        writer changed the row since it was read.
        """
        plan = await self.catalog.get_plan(db, subscription.workspace_id, subscription.plan_id)
        if plan is None:
            raise NotFoundError("plan", subscription.plan_id)

        description = (
            "Subscription first charge after trial"
            if subscription.status == "trialing"
            else "Subscription renewal charge"
        )
        charge = await self.sessions.record_system_charge(
            db,
            subscription.workspace_id,
            plan.amount,
            plan.currency,
            description,
            subscription.customer_email,
            SubscriptionChargePurpose(
                subscription_id=subscription.id,
                plan_id=plan.id,
                product_id=plan.product_id,
            ),
        )

        period_start = subscription.current_period_end
        advanced = await compare_and_set(
            db,
            subscription,
            BILLABLE_STATUSES,
            {
                "status": "active",
                "current_period_start": period_start,
                "current_period_end": add_interval(period_start, plan.interval),
                "updated_at": now,
            },
        )
        if not advanced:
            await db.rollback()
            logger.info("subscription_renewal_skipped_stale", subscription_id=subscription.id)
            return None

        await db.commit()
        MetricsCollector.record_session_processed("completed", charge.amount)
        MetricsCollector.record_subscription_transition("renewed")
        return charge

    async def finalize_cancellation(self, db: AsyncSession, subscription: Subscription, now: datetime) -> bool:
        """Apply a deferred cancel once its period is over."""
        canceled = await compare_and_set(
            db,
            subscription,
            LIVE_STATUSES,
            {"status": "canceled", "canceled_at": now, "cancel_at_period_end": False, "updated_at": now},
        )
        if not canceled:
            await db.rollback()
            return False
        await db.commit()
        MetricsCollector.record_subscription_transition("canceled")
        return True

    def emit_renewal(self, subscription: Subscription, charge: CheckoutSession) -> None:
        self._emit(subscription.workspace_id, "subscription.updated", subscription_payload(subscription))
        self._emit(subscription.workspace_id, "payment.completed", session_payload(charge))

    def emit_canceled(self, subscription: Subscription) -> None:
        self._emit(subscription.workspace_id, "subscription.cancelled", subscription_payload(subscription))

    def _emit(self, workspace_id: str, event: str, data: Dict[str, Any]) -> None:
        if self.dispatcher is not None:
            self.dispatcher.dispatch(workspace_id, event, data)

    async def _notify_canceled(self, subscription: Subscription) -> None:
        try:
            await self.notifier.subscription_canceled(subscription)
        except Exception as e:
            logger.warning("notify_subscription_canceled_failed", subscription_id=subscription.id, error=str(e))
