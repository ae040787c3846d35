"""
Read path: cached locations tagged with liveness, scoped by organization
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .errors import NotFoundError, ValidationError
from .history_store import HistoryStore
from .liveness import is_online
from .location_cache import LocationCache
from .models import BusInfo, HistoryEntry, LocationRecord
from .registry import BusRegistry

logger = logging.getLogger(__name__)

PUBLIC_HISTORY_LIMIT = 100
DRIVER_HISTORY_LIMIT = 1000
NO_LOCATION_MESSAGE = "No location data available"


def offline_placeholder(bus_id: str, bus: Optional[BusInfo] = None) -> Dict[str, Any]:
    """What readers get for a bus that has never reported"""
    placeholder = {
        "busId": bus_id,
        "lat": None,
        "lon": None,
        "speed": None,
        "updatedAt": None,
        "isOnline": False,
        "message": NO_LOCATION_MESSAGE,
    }
    if bus is not None:
        placeholder.update({
            "busNumber": bus.bus_number,
            "busName": bus.bus_name,
            "organizationId": bus.organization_id,
        })
    return placeholder


class TrackingService:
    """Answers "where is this bus" style queries for REST and socket readers"""

    def __init__(
        self,
        cache: LocationCache,
        registry: BusRegistry,
        history_store: HistoryStore,
        offline_threshold_seconds: float = 30
    ):
        self.cache = cache
        self.registry = registry
        self.history_store = history_store
        self.offline_threshold_seconds = offline_threshold_seconds

    def tag(self, record: LocationRecord, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Payload for a cached record with isOnline computed at read time"""
        online = is_online(record.updated_at, self.offline_threshold_seconds, now)
        return record.model_copy(update={"is_online": online}).to_payload()

    async def _warm_from_history(self, bus: BusInfo) -> Optional[LocationRecord]:
        """Rebuild a cache entry from the newest logged fix, if any"""
        try:
            entries = await self.history_store.query_history(bus_id=bus.bus_id, limit=1)
        except Exception as e:
            logger.error(f"Error reading last fix for bus {bus.bus_number}: {str(e)}")
            return None
        if not entries:
            return None

        last = entries[0]
        record = LocationRecord(
            busId=bus.bus_id,
            busNumber=bus.bus_number,
            busName=bus.bus_name,
            lat=last.lat,
            lon=last.lon,
            speed=last.speed,
            heading=last.heading,
            accuracy=last.accuracy,
            altitude=last.altitude,
            driverName=bus.driver.name if bus.driver else None,
            driverPhone=bus.driver.phone if bus.driver else None,
            organizationId=bus.organization_id,
            source=last.source,
            updatedAt=last.timestamp,
            recordedAt=last.timestamp,
        )
        await self.cache.set_bus_location(bus.bus_id, record)
        logger.debug(f"Warmed location cache for bus {bus.bus_number} from history")
        return record

    async def get_current_location(
        self,
        bus_id: str,
        organization_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Latest location of a bus with its liveness tag.

        With organization_id set, buses of other organizations are reported
        as not found. A bus without any known fix gets an offline placeholder.
        """
        record = await self.cache.get_bus_location(bus_id)
        bus = None
        if record is None or organization_id:
            bus = await self.registry.get_bus(bus_id)

        if organization_id:
            owner = bus.organization_id if bus else (record.organization_id if record else None)
            if owner is not None and owner != organization_id:
                raise NotFoundError("Bus not found in this organization")

        if record is None and bus is not None:
            record = await self._warm_from_history(bus)
        if record is None:
            return offline_placeholder(bus_id, bus)
        return self.tag(record, now)

    async def get_all_locations(
        self,
        organization_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> List[Dict[str, Any]]:
        """Every cached location, optionally limited to one organization"""
        records = await self.cache.get_all_bus_locations()
        if organization_id:
            records = [r for r in records if r.organization_id == organization_id]
        return [self.tag(r, now) for r in records]

    async def get_bus_by_number(
        self,
        bus_number: str,
        organization_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Public lookup by (case-insensitive) bus number, with route stops"""
        sanitized = bus_number.strip().upper()[:20]
        bus = await self.registry.find_by_number(sanitized, organization_id)
        if bus is None:
            raise NotFoundError(f"Bus {sanitized} not found")
        if not bus.is_active:
            raise ValidationError(f"Bus {sanitized} is not active")

        location = await self.get_current_location(bus.bus_id, now=now)
        location["stops"] = [
            stop.model_dump() for stop in sorted(bus.stops, key=lambda s: s.order)
        ]
        if bus.driver and not location.get("driverName"):
            location["driverName"] = bus.driver.name
        return location

    async def dashboard_stats(
        self, organization_id: str, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Online/offline counts over an organization's active buses"""
        buses = await self.registry.list_buses(organization_id)
        bus_ids = {b.bus_id for b in buses}
        drivers = {b.driver.id for b in buses if b.driver}

        records = await self.cache.get_all_bus_locations()
        online = sum(
            1 for r in records
            if r.bus_id in bus_ids and is_online(r.updated_at, self.offline_threshold_seconds, now)
        )
        now = now or datetime.now(timezone.utc)
        return {
            "totalBuses": len(buses),
            "totalDrivers": len(drivers),
            "onlineBuses": online,
            "offlineBuses": max(0, len(buses) - online),
            "lastUpdated": now.isoformat(),
        }

    async def bus_status_list(
        self, organization_id: str, now: Optional[datetime] = None
    ) -> List[Dict[str, Any]]:
        """One row per active bus of the organization, online or not"""
        buses = await self.registry.list_buses(organization_id)
        locations = {r.bus_id: r for r in await self.cache.get_all_bus_locations()}

        status_list = []
        for bus in buses:
            location = locations.get(bus.bus_id)
            status_list.append({
                "id": bus.bus_id,
                "busNumber": bus.bus_number,
                "busName": bus.bus_name,
                "driver": bus.driver.name if bus.driver else None,
                "driverPhone": bus.driver.phone if bus.driver else None,
                "lat": location.lat if location else None,
                "lon": location.lon if location else None,
                "speed": location.speed if location else None,
                "lastUpdate": location.updated_at.isoformat() if location else None,
                "isOnline": (
                    is_online(location.updated_at, self.offline_threshold_seconds, now)
                    if location else False
                ),
            })
        return status_list

    async def get_bus_history(self, bus_id: str, limit: int = 10) -> List[HistoryEntry]:
        if await self.registry.get_bus(bus_id) is None:
            raise NotFoundError("Bus not found")
        limit = max(1, min(limit, PUBLIC_HISTORY_LIMIT))
        return await self.history_store.query_history(bus_id=bus_id, limit=limit)

    async def get_driver_history(self, driver_id: str, limit: int = 10) -> List[HistoryEntry]:
        limit = max(1, min(limit, DRIVER_HISTORY_LIMIT))
        return await self.history_store.query_history(driver_id=driver_id, limit=limit)
