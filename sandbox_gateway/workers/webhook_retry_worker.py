"""
Webhook retry worker.

Re-attempts failed webhook deliveries in its own process.
"""
import asyncio
import signal

import structlog

from sandbox_gateway.api.services import build_services
from sandbox_gateway.config import get_settings
from sandbox_gateway.database.connection import init_db
from sandbox_gateway.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def start_webhook_retry_worker() -> None:
    settings = get_settings()
    setup_logging(settings, component="webhook-retry-worker")

    logger.info(
        "webhook_retry_worker_starting",
        batch_size=settings.webhook_retry_batch_size,
        poll_seconds=settings.webhook_retry_poll_seconds,
    )

    services = build_services(settings)
    await init_db(services.engine)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, services.retry_queue.stop_soon)

    try:
        await services.retry_queue.run()
    except Exception as e:
        logger.error("webhook_retry_worker_error", error=str(e))
        raise
    finally:
        await services.aclose()
        logger.info("webhook_retry_worker_stopped")


def main() -> None:
    asyncio.run(start_webhook_retry_worker())


if __name__ == "__main__":
    main()
