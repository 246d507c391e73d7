"""
Redis-based velocity counter for the fraud gate.

Counts payment attempts per (workspace, customer) in a rolling one-hour
bucket. Redis errors propagate; the fraud gate fails open on them.
"""
from datetime import datetime
from typing import Optional

import redis.asyncio as aioredis
from redis.asyncio import Redis

from sandbox_gateway.utils import utc_now


class VelocityTracker:
    """Hourly attempt counter keyed by workspace and customer email."""

    WINDOW_1HR = 3600

    def __init__(self, redis_client: Redis):
        self.redis = redis_client

    @classmethod
    def from_url(cls, url: str) -> "VelocityTracker":
        return cls(aioredis.from_url(url, encoding="utf-8", decode_responses=True))

    def _key(self, workspace_id: str, customer_email: str, timestamp: datetime) -> str:
        bucket = int(timestamp.timestamp()) // self.WINDOW_1HR
        return f"velocity:{workspace_id}:{customer_email.lower()}:{bucket}"

    async def record_attempt(
        self, workspace_id: str, customer_email: str, timestamp: Optional[datetime] = None
    ) -> int:
        """
        Count one attempt and return the total for the current hour.

        Increment and expiry run in one pipeline.
        """
        timestamp = timestamp or utc_now()
        key = self._key(workspace_id, customer_email, timestamp)
        pipe = self.redis.pipeline()
        pipe.incr(key)
        pipe.expire(key, self.WINDOW_1HR)
        count, _ = await pipe.execute()
        return int(count)

    async def close(self) -> None:
        await self.redis.aclose()
