"""Tests for caches, the broadcaster and the propagator."""

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from boxoffice.propagate import Broadcaster, Propagator, cached, new_cache
from boxoffice.propagate import _redis

from conftest import FakeSocket


class DownRedis:
    """A redis.asyncio client whose server is gone."""

    async def get(self, key):
        raise RedisConnectionError("connection refused")

    async def set(self, key, value, ex=None):
        raise RedisConnectionError("connection refused")

    async def delete(self, *keys):
        raise RedisConnectionError("connection refused")


class TestMemoryCache:

    async def test_read_through(self):
        cache = new_cache("memory", ttl_seconds=60)
        calls = []

        async def load():
            calls.append(1)
            return {"tiers": [1, 2]}

        assert await cached(cache, "events:all", load) == {"tiers": [1, 2]}
        assert await cached(cache, "events:all", load) == {"tiers": [1, 2]}
        assert len(calls) == 1

    async def test_invalidate_exact_keys(self):
        cache = new_cache("memory", ttl_seconds=60)
        await cache.set("events:all", [1])
        await cache.set("events:detail:e1", {"id": "e1"})

        await cache.invalidate(["events:all"])

        assert await cache.get("events:all") is None
        assert await cache.get("events:detail:e1") == {"id": "e1"}

    async def test_values_are_copies(self):
        cache = new_cache("memory", ttl_seconds=60)
        value = {"n": 1}
        await cache.set("k", value)
        value["n"] = 2
        assert await cache.get("k") == {"n": 1}

    def test_unknown_backend(self):
        with pytest.raises(RuntimeError):
            new_cache("memcached")

    def test_redis_backend_needs_client(self):
        with pytest.raises(RuntimeError):
            new_cache("redis")


class TestRedisCacheDown:

    async def test_errors_are_misses(self):
        cache = _redis.Cache(r=DownRedis(), ttl_seconds=60)
        assert await cache.get("events:all") is None
        await cache.set("events:all", [1])
        await cache.invalidate(["events:all"])

    async def test_read_through_falls_back_to_loader(self):
        cache = _redis.Cache(r=DownRedis(), ttl_seconds=60)

        async def load():
            return {"from": "db"}

        assert await cached(cache, "inventory:e1", load) == {"from": "db"}


class TestBroadcaster:

    async def test_broadcast_reaches_all(self):
        b = Broadcaster()
        s1, s2 = FakeSocket(), FakeSocket()
        await b.connect(s1)
        await b.connect(s2)

        delivered = await b.broadcast("inventory_update", {"available": 3})

        assert delivered == 2
        assert s1.accepted and s2.accepted
        assert s1.received == [
            {"event": "inventory_update", "data": {"available": 3}}
        ]

    async def test_dead_socket_is_dropped(self):
        b = Broadcaster()
        alive, dead = FakeSocket(), FakeSocket(broken=True)
        await b.connect(alive)
        await b.connect(dead)

        assert await b.broadcast("merch_update", {}) == 1
        assert b.count == 1
        assert await b.broadcast("merch_update", {}) == 1

    async def test_close(self):
        b = Broadcaster()
        s = FakeSocket()
        await b.connect(s)
        await b.close()
        assert s.closed
        assert b.count == 0


class TestPropagator:

    async def test_invalidates_then_broadcasts(self):
        cache = new_cache("memory", ttl_seconds=60)
        await cache.set("events:all", [1])
        b = Broadcaster()
        s = FakeSocket()
        await b.connect(s)

        await Propagator(cache, b).propagate(
            ["events:all"], "inventory_update", {"tier_id": "ga"}
        )

        assert "events:all" not in cache
        assert s.received[0]["data"] == {"tier_id": "ga"}

    async def test_never_raises(self):
        class BrokenCache:
            async def invalidate(self, keys):
                raise RuntimeError("boom")

        class BrokenBroadcaster:
            async def broadcast(self, event, payload):
                raise RuntimeError("boom")

        await Propagator(BrokenCache(), BrokenBroadcaster()).propagate(
            ["k"], "inventory_update", {}
        )
