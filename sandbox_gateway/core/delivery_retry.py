"""
Webhook retry queue.

Polls the delivery table for failed deliveries whose backoff has
elapsed, plus claimed deliveries whose sender never reported back,
and re-attempts each one through the dispatcher. The dispatcher
decides the next backoff or marks the delivery exhausted.
"""
import asyncio
from typing import List, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sandbox_gateway.database.models import WebhookDelivery
from sandbox_gateway.integrations.webhook_dispatcher import WebhookDispatcher
from sandbox_gateway.monitoring.metrics import MetricsCollector
from sandbox_gateway.utils import Clock, utc_now

logger = structlog.get_logger(__name__)

# ``sending`` rows are due again only when their claim lease has run out
RETRYABLE_STATUSES = ("failed", "sending")


class WebhookRetryQueue:
    """
    Re-attempts failed webhook deliveries with exponential backoff.

    Runs as a background loop next to the API or as its own worker.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: WebhookDispatcher,
        batch_size: int = 50,
        poll_interval_seconds: float = 5.0,
        clock: Clock = utc_now,
    ):
        """
        Initialize the retry queue.

        Args:
            session_factory: Database session factory
            dispatcher: Dispatcher that performs each attempt
            batch_size: Deliveries retried per batch
            poll_interval_seconds: Polling interval when idle
            clock: Time source
        """
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self.clock = clock
        self._running = False
        self._task: Optional[asyncio.Task] = None

        logger.info(
            "webhook_retry_queue_initialized",
            batch_size=batch_size,
            poll_interval=poll_interval_seconds,
        )

    @property
    def is_running(self) -> bool:
        return self._running

    async def _fetch_due(self) -> List[int]:
        now = self.clock()
        async with self.session_factory() as db:
            result = await db.execute(
                select(WebhookDelivery.id)
                .where(
                    WebhookDelivery.status.in_(RETRYABLE_STATUSES),
                    WebhookDelivery.next_attempt_at <= now,
                )
                .order_by(WebhookDelivery.next_attempt_at)
                .limit(self.batch_size)
            )
            return list(result.scalars().all())

    async def process_batch(self) -> int:
        """
        Retry one batch of due deliveries.

        Returns:
            int: Number of deliveries that succeeded on this attempt
        """
        try:
            delivery_ids = await self._fetch_due()
        except Exception as e:
            logger.error("webhook_retry_fetch_failed", error=str(e))
            return 0

        if not delivery_ids:
            return 0

        logger.info("webhook_retry_batch_started", batch_size=len(delivery_ids))

        delivered = 0
        for delivery_id in delivery_ids:
            try:
                result = await self.dispatcher.attempt_delivery(delivery_id)
            except Exception as e:
                logger.error("webhook_retry_attempt_error", delivery_id=delivery_id, error=str(e))
                continue
            if result is not None and result.success:
                delivered += 1

        logger.info(
            "webhook_retry_batch_processed",
            total=len(delivery_ids),
            delivered=delivered,
            failed=len(delivery_ids) - delivered,
        )
        MetricsCollector.set_retry_queue_depth(await self.get_pending_count())
        return delivered

    async def run(self) -> None:
        """Poll until ``stop()`` is called."""
        self._running = True
        logger.info("webhook_retry_queue_started")

        try:
            while self._running:
                try:
                    await self.process_batch()
                except Exception as e:
                    logger.error("webhook_retry_queue_error", error=str(e))
                await asyncio.sleep(self.poll_interval_seconds)
        finally:
            self._running = False
            logger.info("webhook_retry_queue_stopped")

    def start(self) -> bool:
        """Run the loop as a background task; False if already running."""
        if self._task is not None and not self._task.done():
            return False
        self._task = asyncio.create_task(self.run(), name="webhook-retry-queue")
        return True

    def stop_soon(self) -> None:
        """Ask the loop to exit after its current batch."""
        self._running = False
        logger.info("webhook_retry_queue_stop_requested")

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("webhook_retry_queue_stop_requested")

    async def get_pending_count(self) -> int:
        """Deliveries still waiting for a retry."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(func.count(WebhookDelivery.id)).where(WebhookDelivery.status.in_(RETRYABLE_STATUSES))
            )
            return int(result.scalar_one())
