from __future__ import annotations

import logging
import threading
from time import monotonic
from typing import Dict, Optional, Tuple

import redis
import redis.asyncio as aioredis

logger = logging.getLogger("photo_catalog")


class RateLimiter:
    """Fixed window rate limiter keyed per owner, backed by Redis or process memory."""

    def __init__(self, limit: int, window_seconds: int = 60, redis_url: str = "") -> None:
        self.limit = max(limit, 1)
        self.window_seconds = window_seconds
        self._clients: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()
        # Connections are opened lazily on the first hit.
        self._redis_client: Optional[aioredis.Redis] = aioredis.from_url(redis_url) if redis_url else None

    @property
    def use_redis(self) -> bool:
        return self._redis_client is not None

    async def hit(self, key: str) -> Tuple[bool, int]:
        """
        Register a hit for the given key.
        Returns (allowed, retry_after_seconds).
        """
        if self._redis_client is not None:
            try:
                return await self._hit_redis(key)
            except redis.RedisError as exc:
                logger.warning("event=rate_limit_redis_error error=%s", exc)
        return self._hit_memory(key)

    async def _hit_redis(self, key: str) -> Tuple[bool, int]:
        redis_key = f"rate_limit:uploads:{key}"
        pipe = self._redis_client.pipeline()
        pipe.incr(redis_key)
        pipe.ttl(redis_key)
        count, ttl = await pipe.execute()
        if ttl is None or ttl < 0:
            await self._redis_client.expire(redis_key, self.window_seconds)
            ttl = self.window_seconds
        if count > self.limit:
            return False, max(int(ttl), 1)
        return True, int(ttl)

    def _hit_memory(self, key: str) -> Tuple[bool, int]:
        now = monotonic()
        with self._lock:
            count, reset_at = self._clients.get(key, (0, now + self.window_seconds))
            if now > reset_at:
                count = 0
                reset_at = now + self.window_seconds
            if count >= self.limit:
                retry_after = max(0, int(reset_at - now))
                return False, retry_after or 1

            self._clients[key] = (count + 1, reset_at)
            retry_after = max(0, int(reset_at - now))
            return True, retry_after

    async def close(self) -> None:
        if self._redis_client is not None:
            await self._redis_client.aclose()
