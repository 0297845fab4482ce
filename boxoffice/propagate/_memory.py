from __future__ import annotations
import time
from typing import Any, Dict, Iterable, Optional, Tuple

import orjson
import structlog

log = structlog.get_logger(__name__)


class Cache:
    """In-process TTL cache for single-worker deployments and tests.

    Values are stored serialized so callers never share mutable state with
    the cache.
    """

    def __init__(self, ttl_seconds: int) -> None:
        self.ttl = ttl_seconds
        self._entries: Dict[str, Tuple[float, bytes]] = {}

    async def get(self, key: str) -> Optional[Any]:
        hit = self._entries.get(key)
        if hit is None:
            return None
        expires_at, raw = hit
        if expires_at <= time.monotonic():
            self._entries.pop(key, None)
            return None
        return orjson.loads(raw)

    async def set(
        self, key: str, value: Any, ttl: Optional[int] = None
    ) -> None:
        expires_at = time.monotonic() + (ttl or self.ttl)
        self._entries[key] = (expires_at, orjson.dumps(value))

    async def invalidate(self, keys: Iterable[str]) -> None:
        keys = list(keys)
        for key in keys:
            self._entries.pop(key, None)
        if keys:
            log.debug("cache_invalidated", keys=keys)

    def __contains__(self, key: str) -> bool:
        hit = self._entries.get(key)
        return hit is not None and hit[0] > time.monotonic()
