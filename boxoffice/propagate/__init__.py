# propagate/__init__.py
from __future__ import annotations
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Union

import redis.asyncio as redis
import structlog

from . import _memory, _redis
from .realtime import Broadcaster

log = structlog.get_logger(__name__)

AnyCache = Union[_memory.Cache, _redis.Cache]


# Factory keeps server.py simple and constructor-agnostic:
def new_cache(backend: str, *, r: Optional[redis.Redis] = None,
              ttl_seconds: int = 300) -> AnyCache:
    if backend == "redis":
        if r is None:
            raise RuntimeError("Cache(redis) requires r=redis.Redis")
        return _redis.Cache(r=r, ttl_seconds=ttl_seconds)
    if backend == "memory":
        return _memory.Cache(ttl_seconds=ttl_seconds)
    raise RuntimeError(f"unknown cache backend: {backend}")


async def cached(
    cache: AnyCache,
    key: str,
    loader: Callable[[], Awaitable[Any]],
    ttl: Optional[int] = None,
) -> Any:
    """Read-through: serve `key` from cache or compute, store and return."""
    hit = await cache.get(key)
    if hit is not None:
        return hit
    value = await loader()
    await cache.set(key, value, ttl)
    return value


class Propagator:
    """Post-commit side effects: drop stale read views, tell observers.

    Only ever called after a transaction committed. Never raises: the
    change it describes is already durable.
    """

    def __init__(self, cache: AnyCache, broadcaster: Broadcaster) -> None:
        self.cache = cache
        self.broadcaster = broadcaster

    async def invalidate(self, keys: Iterable[str]) -> None:
        keys = list(keys)
        try:
            await self.cache.invalidate(keys)
        except Exception:
            log.exception("cache_invalidation_failed", keys=keys)

    async def broadcast(self, event: str, payload: Dict[str, Any]) -> None:
        try:
            await self.broadcaster.broadcast(event, payload)
        except Exception:
            log.exception("broadcast_failed", event_name=event)

    async def propagate(
        self, keys: Iterable[str], event: str, payload: Dict[str, Any]
    ) -> None:
        await self.invalidate(keys)
        await self.broadcast(event, payload)


__all__ = ["Broadcaster", "Propagator", "cached", "new_cache", "AnyCache"]
