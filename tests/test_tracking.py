from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from fakes import NOW, make_bus, make_record, make_stops
from livetrack.errors import NotFoundError
from livetrack.history_store import MemoryHistoryStore
from livetrack.location_cache import MemoryLocationCache
from livetrack.models import HistoryEntry
from livetrack.registry import MemoryBusRegistry
from livetrack.tracking import TrackingService


def build_service(buses=None, records=(), history=()):
    cache = MemoryLocationCache()
    store = MemoryHistoryStore()
    store.entries = list(history)
    registry = MemoryBusRegistry(buses if buses is not None else [
        make_bus(stops=make_stops()),
        make_bus(bus_id="bus-2", number="B2", driver_id="drv-2"),
        make_bus(bus_id="bus-3", number="X1", org="org-2", driver_id=None),
    ])
    service = TrackingService(cache, registry, store, offline_threshold_seconds=30)

    async def seed():
        for record in records:
            await cache.set_bus_location(record.bus_id, record)

    asyncio.run(seed())
    return service, cache


def test_current_location_is_tagged_at_read_time() -> None:
    service, _ = build_service(records=[make_record(updated_at=NOW)])

    fresh = asyncio.run(service.get_current_location("bus-1", now=NOW + timedelta(seconds=29)))
    stale = asyncio.run(service.get_current_location("bus-1", now=NOW + timedelta(seconds=31)))

    assert fresh["isOnline"] is True
    assert stale["isOnline"] is False
    assert stale["lat"] == 43.47


def test_unknown_location_gives_offline_placeholder() -> None:
    service, _ = build_service()

    known_bus = asyncio.run(service.get_current_location("bus-2", now=NOW))
    unknown_bus = asyncio.run(service.get_current_location("ghost", now=NOW))

    assert known_bus["lat"] is None
    assert known_bus["isOnline"] is False
    assert known_bus["busNumber"] == "B2"
    assert known_bus["message"] == "No location data available"
    assert unknown_bus == {
        "busId": "ghost",
        "lat": None,
        "lon": None,
        "speed": None,
        "updatedAt": None,
        "isOnline": False,
        "message": "No location data available",
    }


def test_cache_miss_is_warmed_from_last_logged_fix() -> None:
    logged = HistoryEntry(id="h1", busId="bus-2", lat=43.5, lon=-80.5, speed=12, timestamp=NOW)
    service, cache = build_service(history=[logged])

    location = asyncio.run(service.get_current_location("bus-2", now=NOW + timedelta(seconds=5)))

    assert location["lat"] == 43.5
    assert location["isOnline"] is True
    assert asyncio.run(cache.get_bus_location("bus-2")).bus_number == "B2"


def test_organization_scoping() -> None:
    service, _ = build_service(records=[make_record(bus_id="bus-3", org="org-2")])

    with pytest.raises(NotFoundError):
        asyncio.run(service.get_current_location("bus-3", organization_id="org-1", now=NOW))
    own = asyncio.run(service.get_current_location("bus-3", organization_id="org-2", now=NOW))
    assert own["busId"] == "bus-3"


def test_all_locations_filtered_by_organization() -> None:
    service, _ = build_service(records=[
        make_record(bus_id="bus-1"),
        make_record(bus_id="bus-2", updated_at=NOW - timedelta(minutes=5)),
        make_record(bus_id="bus-3", org="org-2"),
    ])

    org_one = asyncio.run(service.get_all_locations("org-1", now=NOW))
    everyone = asyncio.run(service.get_all_locations(now=NOW))

    assert sorted(l["busId"] for l in org_one) == ["bus-1", "bus-2"]
    assert {l["busId"]: l["isOnline"] for l in org_one} == {"bus-1": True, "bus-2": False}
    assert len(everyone) == 3


def test_bus_by_number_includes_ordered_stops() -> None:
    service, _ = build_service(records=[make_record()])

    bus = asyncio.run(service.get_bus_by_number(" b1 ", now=NOW))

    assert bus["busId"] == "bus-1"
    assert bus["isOnline"] is True
    assert [s["name"] for s in bus["stops"]] == ["Main Gate", "Library", "Stadium"]
    with pytest.raises(NotFoundError):
        asyncio.run(service.get_bus_by_number("nope"))


def test_dashboard_stats_and_status_list() -> None:
    service, _ = build_service(records=[
        make_record(bus_id="bus-1"),
        make_record(bus_id="bus-3", org="org-2"),
    ])

    stats = asyncio.run(service.dashboard_stats("org-1", now=NOW))
    rows = asyncio.run(service.bus_status_list("org-1", now=NOW))

    assert stats["totalBuses"] == 2
    assert stats["totalDrivers"] == 2
    assert stats["onlineBuses"] == 1
    assert stats["offlineBuses"] == 1
    assert [(r["busNumber"], r["isOnline"]) for r in rows] == [("B1", True), ("B2", False)]
    assert rows[1]["lat"] is None


def test_history_limits_are_capped() -> None:
    history = [
        HistoryEntry(id=f"h{i}", busId="bus-1", driverId="drv-1", lat=43.47, lon=-80.54,
                     timestamp=NOW - timedelta(seconds=i))
        for i in range(150)
    ]
    service, _ = build_service(history=history)

    assert len(asyncio.run(service.get_bus_history("bus-1", limit=500))) == 100
    assert len(asyncio.run(service.get_driver_history("drv-1", limit=500))) == 150
    assert len(asyncio.run(service.get_bus_history("bus-1", limit=0))) == 1
    with pytest.raises(NotFoundError):
        asyncio.run(service.get_bus_history("ghost"))
