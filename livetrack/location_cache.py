"""
Latest-known-position cache, one record per bus
"""

import asyncio
import logging
from typing import Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from .errors import InfrastructureError
from .models import LocationRecord

logger = logging.getLogger(__name__)

BUS_LOCATION_PREFIX = "bus:location:"


class LocationCache:
    """Last-write-wins store of LocationRecords keyed by bus id"""

    async def set_bus_location(self, bus_id: str, record: LocationRecord) -> None:
        raise NotImplementedError

    async def get_bus_location(self, bus_id: str) -> Optional[LocationRecord]:
        raise NotImplementedError

    async def get_all_bus_locations(self) -> List[LocationRecord]:
        raise NotImplementedError

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        pass


class MemoryLocationCache(LocationCache):
    """In-process cache; each write replaces the whole record"""

    def __init__(self):
        self._records: Dict[str, LocationRecord] = {}

    async def set_bus_location(self, bus_id: str, record: LocationRecord) -> None:
        self._records[bus_id] = record.model_copy(deep=True)

    async def get_bus_location(self, bus_id: str) -> Optional[LocationRecord]:
        record = self._records.get(bus_id)
        return record.model_copy(deep=True) if record else None

    async def get_all_bus_locations(self) -> List[LocationRecord]:
        return [record.model_copy(deep=True) for record in list(self._records.values())]


class RedisLocationCache(LocationCache):
    """Redis-backed cache; records are stored as single JSON strings"""

    def __init__(
        self,
        url: Optional[str] = None,
        client=None,
        timeout: float = 2.0,
        ttl_seconds: Optional[int] = None
    ):
        if client is None:
            if not url:
                raise ValueError("REDIS_URL is required for the redis cache backend")
            client = redis.from_url(url, decode_responses=True)
        self.redis = client
        self.timeout = timeout
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _key(bus_id: str) -> str:
        return f"{BUS_LOCATION_PREFIX}{bus_id}"

    async def _call(self, operation: str, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(f"Redis {operation} timed out after {self.timeout}s")
            raise InfrastructureError("Location cache timed out")
        except RedisError as e:
            logger.error(f"Redis {operation} failed: {str(e)}")
            raise InfrastructureError("Location cache unavailable")

    async def set_bus_location(self, bus_id: str, record: LocationRecord) -> None:
        # is_online is derived at read time and never persisted
        payload = record.model_dump_json(by_alias=True, exclude={"is_online"})
        await self._call(
            "set",
            self.redis.set(self._key(bus_id), payload, ex=self.ttl_seconds)
        )

    async def get_bus_location(self, bus_id: str) -> Optional[LocationRecord]:
        data = await self._call("get", self.redis.get(self._key(bus_id)))
        return LocationRecord.model_validate_json(data) if data else None

    async def _scan_keys(self) -> List[str]:
        return [key async for key in self.redis.scan_iter(match=f"{BUS_LOCATION_PREFIX}*")]

    async def get_all_bus_locations(self) -> List[LocationRecord]:
        keys = await self._call("scan", self._scan_keys())
        if not keys:
            return []
        values = await self._call("mget", self.redis.mget(keys))
        return [LocationRecord.model_validate_json(v) for v in values if v]

    async def health_check(self) -> bool:
        try:
            return bool(await self._call("ping", self.redis.ping()))
        except InfrastructureError:
            return False

    async def close(self) -> None:
        await self.redis.aclose()


def create_location_cache(settings) -> LocationCache:
    """Build the cache backend selected by settings.CACHE_BACKEND"""
    if settings.CACHE_BACKEND == "redis":
        logger.info("Using Redis location cache")
        return RedisLocationCache(
            url=settings.REDIS_URL,
            timeout=settings.CACHE_TIMEOUT_SECONDS,
            ttl_seconds=settings.CACHE_TTL_SECONDS
        )
    if settings.CACHE_BACKEND != "memory":
        raise ValueError(f"Unknown CACHE_BACKEND: {settings.CACHE_BACKEND}")
    logger.info("Using in-memory location cache")
    return MemoryLocationCache()
