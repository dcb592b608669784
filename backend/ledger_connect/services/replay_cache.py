"""
Replay caches for webhook delivery ids.

Both caches expose one atomic operation:

    existed = await cache.get_or_insert(key, ttl_seconds)

It records the key with a TTL and reports whether it was already present.
Backend failures raise ReplayCacheUnavailable; the webhook verifier decides
how to degrade.

Key schema:
- webhook:{provider}:{delivery_id} -> receipt timestamp (TTL 600s)
"""

import logging
import time
from typing import Callable, Dict, Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from ledger_connect.platform.errors import ReplayCacheUnavailable

logger = logging.getLogger(__name__)


class ReplayCache(Protocol):
    async def get_or_insert(self, key: str, ttl_seconds: int) -> bool:
        ...


class InMemoryReplayCache:
    """
    Process-local TTL map. Expired keys are swept on every call.

    Only safe for a single process; use RedisReplayCache across replicas.
    """

    def __init__(self, time_source: Callable[[], float] = time.monotonic):
        self._time = time_source
        self._entries: Dict[str, float] = {}

    def _sweep(self, now: float) -> None:
        expired = [key for key, expires_at in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]

    async def get_or_insert(self, key: str, ttl_seconds: int) -> bool:
        now = self._time()
        self._sweep(now)
        if key in self._entries:
            return True
        self._entries[key] = now + ttl_seconds
        return False

    def __len__(self) -> int:
        self._sweep(self._time())
        return len(self._entries)


class RedisReplayCache:
    """Redis-backed cache using SET NX EX, atomic across replicas."""

    def __init__(self, redis_client: aioredis.Redis):
        self._redis = redis_client

    async def get_or_insert(self, key: str, ttl_seconds: int) -> bool:
        try:
            inserted = await self._redis.set(key, str(int(time.time())), nx=True, ex=ttl_seconds)
        except (RedisError, OSError) as e:
            logger.warning(
                "Replay cache lookup failed",
                extra={"cache_key": key, "error_type": type(e).__name__},
                exc_info=True,
            )
            raise ReplayCacheUnavailable() from e
        return not inserted

    async def ping(self) -> bool:
        """Health probe. Returns False on Redis failures."""
        try:
            return bool(await self._redis.ping())
        except (RedisError, OSError):
            logger.warning("Replay cache ping failed", exc_info=True)
            return False

