"""
Health checks for liveness/readiness probes.

Checks:
- Database connectivity
- Redis connectivity (only when a Redis URL is configured)
- Renewal scheduler state
"""
from typing import Any, Dict, Optional

import structlog
from redis.asyncio import Redis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """Health check service for the engine's dependencies."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis_client: Optional[Redis] = None,
        scheduler: Optional[Any] = None,
    ) -> None:
        self.session_factory = session_factory
        self.redis_client = redis_client
        self.scheduler = scheduler

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            async with self.session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()

            return {
                "status": "healthy",
                "service": "database",
                "message": "Database connection successful",
            }

        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")

    async def check_redis(self) -> Dict[str, Any]:
        """
        Check Redis connectivity.

        Raises:
            HealthCheckError: If Redis check fails
        """
        if self.redis_client is None:
            return {
                "status": "skipped",
                "service": "redis",
                "message": "Redis not configured",
            }
        try:
            await self.redis_client.ping()
            return {
                "status": "healthy",
                "service": "redis",
                "message": "Redis connection successful",
            }

        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {str(e)}")

    def check_scheduler(self) -> Dict[str, Any]:
        running = bool(self.scheduler is not None and self.scheduler.is_running)
        return {
            "status": "running" if running else "stopped",
            "service": "scheduler",
        }

    async def check_all(self) -> Dict[str, Any]:
        """Run all health checks."""
        checks: Dict[str, Any] = {}
        all_healthy = True

        try:
            checks["database"] = await self.check_database()
        except HealthCheckError as e:
            checks["database"] = {
                "status": "unhealthy",
                "service": "database",
                "error": str(e),
            }
            all_healthy = False

        # Redis only feeds the velocity rule, which fails open
        try:
            checks["redis"] = await self.check_redis()
        except HealthCheckError as e:
            checks["redis"] = {
                "status": "degraded",
                "service": "redis",
                "error": str(e),
            }

        checks["scheduler"] = self.check_scheduler()

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """
        Readiness probe: ready once the database answers.

        Raises:
            HealthCheckError: If the database is unreachable
        """
        await self.check_database()
        return {
            "status": "ready",
            "message": "Application is ready to accept traffic",
        }
