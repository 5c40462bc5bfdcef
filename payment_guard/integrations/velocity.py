"""
Redis-based velocity tracking for risk scoring.
Counts a customer's recent payment attempts in a sliding window.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from payment_guard.core.vault import sha256_hex

logger = logging.getLogger(__name__)


class VelocityTracker:
    """
    Sliding-window transaction counter backed by a Redis sorted set.

    Customers are keyed by the SHA-256 of their national ID so raw PII
    never reaches Redis.
    """

    KEY_PREFIX = "payment_guard:velocity"

    def __init__(self, redis_client: Redis, window_seconds: int = 3600):
        self.redis = redis_client
        self.window_seconds = window_seconds

    @classmethod
    def from_url(cls, redis_url: str, window_seconds: int = 3600) -> "VelocityTracker":
        return cls(Redis.from_url(redis_url), window_seconds=window_seconds)

    def _key(self, national_id: str) -> str:
        return f"{self.KEY_PREFIX}:{sha256_hex(national_id)}"

    async def recent_count(self, national_id: str, now: Optional[datetime] = None) -> int:
        """Number of payment attempts inside the window ending at ``now``."""
        ts = (now or datetime.now(timezone.utc)).timestamp()
        key = self._key(national_id)

        start_time = time.perf_counter()
        pipe = self.redis.pipeline()
        pipe.zremrangebyscore(key, 0, ts - self.window_seconds)
        pipe.zcount(key, ts - self.window_seconds, "+inf")
        try:
            results = await pipe.execute()
        except RedisError as e:
            # score without history while Redis is unavailable
            logger.warning(f"Velocity lookup failed, assuming no history: {e}")
            return 0
        latency_ms = (time.perf_counter() - start_time) * 1000

        logger.debug(f"Velocity lookup latency: {latency_ms:.2f}ms")
        return int(results[1] or 0)

    async def record(
        self, national_id: str, payment_id: str, now: Optional[datetime] = None
    ) -> None:
        """Add one payment attempt to the customer's window."""
        ts = (now or datetime.now(timezone.utc)).timestamp()
        key = self._key(national_id)

        pipe = self.redis.pipeline()
        pipe.zadd(key, {payment_id: ts})
        pipe.zremrangebyscore(key, 0, ts - self.window_seconds)
        pipe.expire(key, self.window_seconds)
        try:
            await pipe.execute()
        except RedisError as e:
            logger.warning(f"Velocity record failed for payment {payment_id}: {e}")

    async def close(self) -> None:
        await self.redis.aclose()
