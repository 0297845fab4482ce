from __future__ import annotations
from typing import Any, Iterable, Optional

import orjson
import redis.asyncio as redis
from redis.exceptions import RedisError
import structlog

log = structlog.get_logger(__name__)


class Cache:
    """Read cache in Redis. An unreachable Redis behaves like a cold cache."""

    def __init__(self, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self.r.get(key)
        except RedisError as e:
            log.warning("cache_unavailable", op="get", key=key, error=str(e))
            return None
        if raw is None:
            return None
        return orjson.loads(raw)

    async def set(
        self, key: str, value: Any, ttl: Optional[int] = None
    ) -> None:
        try:
            await self.r.set(key, orjson.dumps(value), ex=ttl or self.ttl)
        except RedisError as e:
            log.warning("cache_unavailable", op="set", key=key, error=str(e))

    async def invalidate(self, keys: Iterable[str]) -> None:
        keys = list(keys)
        if not keys:
            return
        try:
            await self.r.delete(*keys)
        except RedisError as e:
            log.warning("cache_unavailable", op="invalidate", keys=keys,
                        error=str(e))
            return
        log.debug("cache_invalidated", keys=keys)
