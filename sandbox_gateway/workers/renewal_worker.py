"""
Renewal scheduler worker.

Runs the scheduler in its own process for deployments where the API
is started with ``SCHEDULER_ENABLED=false``.
"""
import asyncio
import signal

import structlog

from sandbox_gateway.api.services import build_services
from sandbox_gateway.config import get_settings
from sandbox_gateway.database.connection import init_db
from sandbox_gateway.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def start_renewal_worker() -> None:
    """Run scheduler ticks until SIGINT/SIGTERM."""
    settings = get_settings()
    setup_logging(settings, component="renewal-worker")

    logger.info("renewal_worker_starting", interval_seconds=settings.scheduler_interval_seconds)

    services = build_services(settings)
    await init_db(services.engine)

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_requested.set)

    try:
        services.scheduler.start()
        await stop_requested.wait()
        logger.info("renewal_worker_shutdown_signal_received")
    except Exception as e:
        logger.error("renewal_worker_error", error=str(e))
        raise
    finally:
        await services.aclose()
        logger.info("renewal_worker_stopped")


def main() -> None:
    asyncio.run(start_renewal_worker())


if __name__ == "__main__":
    main()
