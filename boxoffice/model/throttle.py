# model/throttle.py
from __future__ import annotations

import redis.asyncio as redis
from loguru import logger

from ..errors import RateLimited


# ---- keys
def k_rate(name: str, key: str) -> str: return f"rl:{name}:{key}"


class RateLimiter:
    """Fixed-window counter shared by every instance through Redis."""

    def __init__(
        self, r: redis.Redis, name: str, limit: int, window_seconds: int
    ) -> None:
        self.r = r
        self.name = name
        self.limit = limit
        self.window = window_seconds

    async def hit(self, key: str) -> bool:
        """Count one request; False once the window's limit is exceeded."""
        k = k_rate(self.name, key)
        pipe = self.r.pipeline(transaction=True)
        pipe.incr(k)
        # NX: only the hit that opens the window sets the deadline
        pipe.expire(k, self.window, nx=True)
        count, _ = await pipe.execute()
        return count <= self.limit

    async def check(self, key: str) -> None:
        if not await self.hit(key):
            logger.warning("rate limit {} exceeded for {}", self.name, key)
            raise RateLimited(
                f"Too many requests. Try again in {self.window} seconds."
            )

    async def reset(self, key: str) -> None:
        await self.r.delete(k_rate(self.name, key))
