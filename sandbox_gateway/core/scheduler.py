"""
Renewal scheduler.

A periodic background task that, on every tick and in this order:
1. Emits upcoming-renewal reminders, at most once per (subscription, period end)
2. Renews subscriptions whose period has ended, or applies deferred cancels
3. Expires stale pending checkout sessions

Each subscription is handled in its own transaction; one failing record
is logged and skipped without aborting the rest of the tick.
"""
import asyncio
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sandbox_gateway.config import Settings
from sandbox_gateway.core.billing import BILLABLE_STATUSES, SubscriptionBillingEngine
from sandbox_gateway.core.errors import SchedulerError
from sandbox_gateway.core.session_engine import SessionStateMachine
from sandbox_gateway.database.models import Subscription, SubscriptionReminder
from sandbox_gateway.database.statements import insert_ignore
from sandbox_gateway.integrations.notifier import LoggingNotifier, Notifier
from sandbox_gateway.monitoring.metrics import MetricsCollector
from sandbox_gateway.utils import Clock, isoformat, utc_now

logger = structlog.get_logger(__name__)


class RenewalScheduler:
    """
    Scheduler service owned by the process composition root.

    ``start()`` refuses to launch a second loop while one is running;
    ``run_once()`` is safe to call manually and serializes with the loop.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        billing: SubscriptionBillingEngine,
        sessions: SessionStateMachine,
        notifier: Optional[Notifier] = None,
        clock: Clock = utc_now,
    ):
        self.session_factory = session_factory
        self.billing = billing
        self.sessions = sessions
        self.notifier = notifier or LoggingNotifier()
        self.clock = clock
        self.interval_seconds = settings.scheduler_interval_seconds
        self.lookahead = timedelta(days=settings.reminder_lookahead_days)
        self._task: Optional[asyncio.Task] = None
        self._tick_lock = asyncio.Lock()
        self.last_run_at: Optional[datetime] = None

        logger.info(
            "renewal_scheduler_initialized",
            interval_seconds=self.interval_seconds,
            lookahead_days=settings.reminder_lookahead_days,
        )

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """
        Launch the periodic loop.

        Returns:
            bool: False if a loop is already running
        """
        if self.is_running:
            logger.warning("renewal_scheduler_already_running")
            return False
        self._task = asyncio.create_task(self._run_forever(), name="renewal-scheduler")
        logger.info("renewal_scheduler_started")
        return True

    async def stop(self) -> None:
        """Cancel the loop and wait for it to unwind."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("renewal_scheduler_stopped")

    async def _run_forever(self) -> None:
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("renewal_scheduler_tick_failed", error=str(e))
            await asyncio.sleep(self.interval_seconds)

    async def run_once(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Run one tick: reminders, then renewals, then the expiry sweep.

        Returns:
            Dict[str, Any]: Counts of what the tick did
        """
        async with self._tick_lock:
            now = now or self.clock()
            start = time.perf_counter()

            reminders, reminder_errors = await self._reminder_scan(now)
            renewals, cancellations, renewal_errors = await self._renewal_scan(now)
            expired = await self.sessions.expire_stale(now)

            duration = time.perf_counter() - start
            self.last_run_at = now
            MetricsCollector.record_scheduler_tick(duration, reminders, renewals)

            summary = {
                "ran_at": isoformat(now),
                "reminders_sent": reminders,
                "renewals": renewals,
                "cancellations": cancellations,
                "sessions_expired": expired,
                "errors": reminder_errors + renewal_errors,
            }
            logger.info("renewal_scheduler_tick", duration_seconds=duration, **summary)
            return summary

    async def _due(self, db: AsyncSession, *conditions: Any) -> List[Subscription]:
        result = await db.execute(
            select(Subscription)
            .where(Subscription.status.in_(BILLABLE_STATUSES), *conditions)
            .order_by(Subscription.current_period_end)
        )
        return list(result.scalars().all())

    async def _reminder_scan(self, now: datetime) -> tuple[int, int]:
        async with self.session_factory() as db:
            candidates = await self._due(
                db,
                Subscription.current_period_end > now,
                Subscription.current_period_end <= now + self.lookahead,
            )

        sent = errors = 0
        for subscription in candidates:
            try:
                if await self._remind(subscription, now):
                    sent += 1
            except Exception as e:
                errors += 1
                self._record_failure(SchedulerError(subscription.id, "reminder", e))
        return sent, errors

    async def _remind(self, subscription: Subscription, now: datetime) -> bool:
        """Claim the ledger entry for this period end; notify only if we claimed it."""
        async with self.session_factory() as db:
            plan = await self.billing.catalog.get_plan(db, subscription.workspace_id, subscription.plan_id)
            claimed = await insert_ignore(
                db,
                SubscriptionReminder,
                {
                    "subscription_id": subscription.id,
                    "period_end": subscription.current_period_end,
                    "sent_at": now,
                },
                index_elements=["subscription_id", "period_end"],
            )
            await db.commit()

        if not claimed:
            return False

        await self.notifier.upcoming_renewal(
            subscription,
            plan.amount if plan else 0,
            plan.currency if plan else "",
        )
        logger.info(
            "subscription_reminder_sent",
            subscription_id=subscription.id,
            period_end=isoformat(subscription.current_period_end),
        )
        return True

    async def _renewal_scan(self, now: datetime) -> tuple[int, int, int]:
        async with self.session_factory() as db:
            due = await self._due(db, Subscription.current_period_end <= now)

        renewed = canceled = errors = 0
        for subscription in due:
            try:
                outcome = await self._renew_one(subscription, now)
            except Exception as e:
                errors += 1
                self._record_failure(SchedulerError(subscription.id, "renewal", e))
                continue
            if outcome == "renewed":
                renewed += 1
            elif outcome == "canceled":
                canceled += 1
        return renewed, canceled, errors

    async def _renew_one(self, subscription: Subscription, now: datetime) -> Optional[str]:
        async with self.session_factory() as db:
            if subscription.cancel_at_period_end:
                if not await self.billing.finalize_cancellation(db, subscription, now):
                    return None
                current = await db.get(Subscription, subscription.id, populate_existing=True)
                logger.info("subscription_canceled_at_period_end", subscription_id=subscription.id)
                self.billing.emit_canceled(current)
                await self.notifier.subscription_canceled(current)
                return "canceled"

            charge = await self.billing.renew(db, subscription, now)
            if charge is None:
                return None
            current = await db.get(Subscription, subscription.id, populate_existing=True)

        logger.info(
            "subscription_renewed",
            subscription_id=current.id,
            session_id=charge.id,
            current_period_end=isoformat(current.current_period_end),
        )
        self.billing.emit_renewal(current, charge)
        return "renewed"

    def _record_failure(self, error: SchedulerError) -> None:
        MetricsCollector.record_scheduler_error(error.phase)
        logger.error(
            "renewal_scheduler_record_failed",
            subscription_id=error.subscription_id,
            phase=error.phase,
            error=str(error.cause),
            error_type=type(error.cause).__name__,
        )
