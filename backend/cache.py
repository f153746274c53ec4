"""
Shared cache/queue store backed by Redis.
Holds the priority queues, retry queues, rate-limit counters and daily statistics.
Every operation touches a single key so workers never need an extra lock.
"""
import logging
from typing import Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from services.sms_errors import PersistenceError

logger = logging.getLogger(__name__)


class CacheStore:
    client: Optional[redis.Redis] = None

    def __init__(self, redis_url: str):
        self.redis_url = redis_url

    async def connect(self):
        try:
            self.client = redis.from_url(self.redis_url, decode_responses=True)
            await self.client.ping()
            logger.info("Connected to Redis shared store")
        except RedisError as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise PersistenceError(f"Redis unavailable: {e}") from e

    async def close(self):
        if self.client:
            await self.client.aclose()
            logger.info("Redis connection closed")

    def _redis(self) -> redis.Redis:
        if self.client is None:
            raise PersistenceError("Shared store is not connected")
        return self.client

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self._redis().get(key)
        except RedisError as e:
            raise PersistenceError(f"Redis GET {key} failed: {e}") from e

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        try:
            await self._redis().set(key, value, ex=ttl_seconds)
        except RedisError as e:
            raise PersistenceError(f"Redis SET {key} failed: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            await self._redis().delete(key)
        except RedisError as e:
            raise PersistenceError(f"Redis DEL {key} failed: {e}") from e

    async def incr_with_ttl(self, key: str, ttl_seconds: int) -> int:
        """Increment a window counter, creating it with its TTL on first write."""
        try:
            r = self._redis()
            # SET NX EX only creates; INCR keeps the existing TTL
            await r.set(key, 0, ex=ttl_seconds, nx=True)
            return int(await r.incr(key))
        except RedisError as e:
            raise PersistenceError(f"Redis INCR {key} failed: {e}") from e

    async def push(self, key: str, value: str) -> int:
        try:
            return int(await self._redis().rpush(key, value))
        except RedisError as e:
            raise PersistenceError(f"Redis RPUSH {key} failed: {e}") from e

    async def pop_many(self, key: str, count: int) -> List[str]:
        """Atomically pop up to count entries from the head of a list (FIFO)."""
        try:
            items = await self._redis().lpop(key, count)
        except RedisError as e:
            raise PersistenceError(f"Redis LPOP {key} failed: {e}") from e
        return list(items or [])

    async def list_range(self, key: str, start: int = 0, end: int = -1) -> List[str]:
        try:
            return list(await self._redis().lrange(key, start, end))
        except RedisError as e:
            raise PersistenceError(f"Redis LRANGE {key} failed: {e}") from e

    async def remove(self, key: str, value: str, count: int = 1) -> int:
        try:
            return int(await self._redis().lrem(key, count, value))
        except RedisError as e:
            raise PersistenceError(f"Redis LREM {key} failed: {e}") from e

    async def length(self, key: str) -> int:
        try:
            return int(await self._redis().llen(key))
        except RedisError as e:
            raise PersistenceError(f"Redis LLEN {key} failed: {e}") from e

    async def expire(self, key: str, ttl_seconds: int) -> None:
        try:
            await self._redis().expire(key, ttl_seconds)
        except RedisError as e:
            raise PersistenceError(f"Redis EXPIRE {key} failed: {e}") from e

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        try:
            return int(await self._redis().hincrby(key, field, amount))
        except RedisError as e:
            raise PersistenceError(f"Redis HINCRBY {key} failed: {e}") from e

    async def hgetall(self, key: str) -> Dict[str, str]:
        try:
            return dict(await self._redis().hgetall(key))
        except RedisError as e:
            raise PersistenceError(f"Redis HGETALL {key} failed: {e}") from e
