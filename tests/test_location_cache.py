from __future__ import annotations

import asyncio
import json

import pytest

from fakes import FakeRedis, make_record, make_settings
from livetrack.errors import InfrastructureError
from livetrack.location_cache import (
    MemoryLocationCache,
    RedisLocationCache,
    create_location_cache,
)


def test_memory_cache_last_write_wins() -> None:
    cache = MemoryLocationCache()

    async def run():
        await cache.set_bus_location("bus-1", make_record(lat=43.1))
        await cache.set_bus_location("bus-1", make_record(lat=43.2))
        return await cache.get_bus_location("bus-1"), await cache.get_all_bus_locations()

    record, everything = asyncio.run(run())
    assert record.lat == 43.2
    assert len(everything) == 1


def test_memory_cache_returns_copies() -> None:
    cache = MemoryLocationCache()

    async def run():
        original = make_record()
        await cache.set_bus_location("bus-1", original)
        original.lat = 1.0
        first = await cache.get_bus_location("bus-1")
        first.lat = 2.0
        return await cache.get_bus_location("bus-1")

    assert asyncio.run(run()).lat == 43.47


def test_memory_cache_unknown_bus() -> None:
    assert asyncio.run(MemoryLocationCache().get_bus_location("nope")) is None


def test_redis_cache_stores_one_json_value_per_bus() -> None:
    fake = FakeRedis()
    cache = RedisLocationCache(client=fake, ttl_seconds=3600)

    async def run():
        await cache.set_bus_location("bus-1", make_record().model_copy(update={"is_online": True}))
        await cache.set_bus_location("bus-2", make_record(bus_id="bus-2", org="org-2"))
        return await cache.get_bus_location("bus-1"), await cache.get_all_bus_locations()

    record, everything = asyncio.run(run())

    stored = json.loads(fake.data["bus:location:bus-1"])
    assert stored["busId"] == "bus-1"
    assert stored["organizationId"] == "org-1"
    assert "isOnline" not in stored
    assert fake.expiry["bus:location:bus-1"] == 3600
    assert record.bus_id == "bus-1"
    assert record.is_online is None
    assert sorted(r.bus_id for r in everything) == ["bus-1", "bus-2"]


def test_redis_cache_empty_snapshot() -> None:
    cache = RedisLocationCache(client=FakeRedis())
    assert asyncio.run(cache.get_all_bus_locations()) == []


def test_redis_errors_become_infrastructure_errors() -> None:
    cache = RedisLocationCache(client=FakeRedis(fail=True))
    with pytest.raises(InfrastructureError):
        asyncio.run(cache.get_bus_location("bus-1"))
    with pytest.raises(InfrastructureError):
        asyncio.run(cache.set_bus_location("bus-1", make_record()))


def test_redis_timeout_becomes_infrastructure_error() -> None:
    cache = RedisLocationCache(client=FakeRedis(delay=0.5), timeout=0.01)
    with pytest.raises(InfrastructureError):
        asyncio.run(cache.get_bus_location("bus-1"))


def test_redis_health_check_and_close() -> None:
    healthy = RedisLocationCache(client=FakeRedis())
    broken = RedisLocationCache(client=FakeRedis(fail=True))
    assert asyncio.run(healthy.health_check()) is True
    assert asyncio.run(broken.health_check()) is False

    asyncio.run(healthy.close())
    assert healthy.redis.closed


def test_create_location_cache_selects_backend() -> None:
    assert isinstance(create_location_cache(make_settings()), MemoryLocationCache)
    with pytest.raises(ValueError):
        create_location_cache(make_settings(CACHE_BACKEND="memcached"))
    with pytest.raises(ValueError):
        create_location_cache(make_settings(CACHE_BACKEND="redis", REDIS_URL=None))
