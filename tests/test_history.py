from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from fakes import NOW, FakeTable
from livetrack.history_store import (
    DRIVER_INDEX_NAME,
    DynamoHistoryStore,
    HistoryStore,
    MemoryHistoryStore,
)
from livetrack.history_writer import HistoryWriter
from livetrack.models import HistoryEntry


def entry(i: int, bus_id: str = "bus-1", driver_id: str | None = "drv-1", speed: float = 20.0) -> HistoryEntry:
    return HistoryEntry(
        id=f"e{i}",
        busId=bus_id,
        driverId=driver_id,
        lat=43.47,
        lon=-80.54,
        speed=speed,
        heading=90.0,
        timestamp=NOW + timedelta(seconds=i),
    )


def test_memory_store_queries_newest_first_with_limit() -> None:
    store = MemoryHistoryStore()

    async def run():
        await store.append_many([entry(i) for i in range(5)])
        await store.append_history(entry(9, bus_id="bus-2", driver_id="drv-2"))
        newest = await store.query_history(bus_id="bus-1", limit=3)
        oldest_first = await store.query_history(bus_id="bus-1", limit=3, order="asc")
        by_driver = await store.query_history(driver_id="drv-2")
        recent = await store.query_history(bus_id="bus-1", since=NOW + timedelta(seconds=3))
        return newest, oldest_first, by_driver, recent

    newest, oldest_first, by_driver, recent = asyncio.run(run())
    assert [e.id for e in newest] == ["e4", "e3", "e2"]
    assert [e.id for e in oldest_first] == ["e2", "e3", "e4"]
    assert [e.id for e in by_driver] == ["e9"]
    assert [e.id for e in recent] == ["e4", "e3"]


def test_query_requires_exactly_one_key() -> None:
    store = MemoryHistoryStore()
    with pytest.raises(ValueError):
        asyncio.run(store.query_history())
    with pytest.raises(ValueError):
        asyncio.run(store.query_history(bus_id="bus-1", driver_id="drv-1"))
    with pytest.raises(ValueError):
        asyncio.run(store.query_history(bus_id="bus-1", order="sideways"))


def test_dynamo_store_writes_in_batches() -> None:
    table = FakeTable()
    store = DynamoHistoryStore("history", table=table, batch_size=2, ttl_days=30)

    written = asyncio.run(store.append_many([entry(i) for i in range(5)]))

    assert written == 5
    assert table.batches == 3
    item = table.items[0]
    assert item["busId"] == "bus-1"
    assert item["driverId"] == "drv-1"
    assert item["latitude"] == Decimal("43.47")
    assert item["timestamp"] == int(NOW.timestamp() * 1000)
    assert item["date"] == "2026-03-04"
    assert "accuracy" not in item


def test_dynamo_store_query_round_trips_items() -> None:
    table = FakeTable()
    store = DynamoHistoryStore("history", table=table)

    async def run():
        await store.append_many([entry(i) for i in range(3)])
        by_bus = await store.query_history(bus_id="bus-1", limit=2)
        by_driver = await store.query_history(driver_id="drv-1", limit=2)
        return by_bus, by_driver

    by_bus, by_driver = asyncio.run(run())
    assert [e.id for e in by_bus] == ["e2", "e1"]
    assert by_bus[0].timestamp == NOW + timedelta(seconds=2)
    assert by_bus[0].heading == 90.0
    assert "IndexName" not in table.queries[0]
    assert table.queries[0]["ScanIndexForward"] is False
    assert table.queries[1]["IndexName"] == DRIVER_INDEX_NAME
    assert [e.id for e in by_driver] == ["e2", "e1"]


def test_dynamo_health_check() -> None:
    table = FakeTable()
    store = DynamoHistoryStore("history", table=table)
    assert asyncio.run(store.health_check()) is True
    table.table_status = "CREATING"
    assert asyncio.run(store.health_check()) is False


def test_writer_drains_queue_into_store() -> None:
    store = MemoryHistoryStore()

    async def run():
        writer = HistoryWriter(store, batch_size=2)
        writer.start()
        for i in range(5):
            assert writer.submit(entry(i))
        await writer.flush()
        healthy = writer.is_healthy()
        await writer.stop()
        return writer, healthy

    writer, healthy = asyncio.run(run())
    assert len(store.entries) == 5
    assert writer.records_processed == 5
    assert healthy
    assert not writer.is_healthy()
    assert writer.get_lag_ms() is not None


def test_writer_drops_when_queue_is_full() -> None:
    async def run():
        writer = HistoryWriter(MemoryHistoryStore(), max_queue_size=2)
        return writer, [writer.submit(entry(i)) for i in range(3)]

    writer, accepted = asyncio.run(run())
    assert accepted == [True, True, False]
    assert writer.dropped_count == 1


class BrokenStore(HistoryStore):
    async def append_many(self, entries):
        raise RuntimeError("table is gone")


def test_writer_counts_store_failures_and_keeps_going() -> None:
    async def run():
        writer = HistoryWriter(BrokenStore())
        writer.start()
        writer.submit(entry(1))
        writer.submit(entry(2))
        await asyncio.wait_for(writer.flush(), timeout=1)
        await writer.stop()
        return writer

    writer = asyncio.run(run())
    assert writer.error_count == 2
    assert writer.records_processed == 0


def test_dynamo_entries_sharing_a_timestamp_both_survive() -> None:
    table = FakeTable(key_names=("busId", "fixKey"))
    store = DynamoHistoryStore("history", table=table)
    first = entry(0)
    resend = first.model_copy(update={"id": "e0-resend", "lat": 43.48})

    async def run():
        await store.append_history(first)
        await store.append_history(resend)
        return await store.query_history(bus_id="bus-1", limit=10)

    entries = asyncio.run(run())

    assert sorted(e.id for e in entries) == ["e0", "e0-resend"]
    assert len({item["fixKey"] for item in table.items}) == 2
    assert table.items[0]["fixKey"] == f"{int(NOW.timestamp() * 1000):013d}#e0"


def test_dynamo_since_uses_range_key_for_bus_queries() -> None:
    table = FakeTable()
    store = DynamoHistoryStore("history", table=table)

    async def run():
        await store.query_history(bus_id="bus-1", since=NOW)
        await store.query_history(driver_id="drv-1", since=NOW)

    asyncio.run(run())
    by_bus, by_driver = (q["KeyConditionExpression"] for q in table.queries)
    bus_key, bus_value = by_bus.get_expression()["values"][1].get_expression()["values"]
    driver_key, driver_value = by_driver.get_expression()["values"][1].get_expression()["values"]
    assert bus_key.name == "fixKey"
    assert bus_value == f"{int(NOW.timestamp() * 1000):013d}#"
    assert driver_key.name == "timestamp"
    assert driver_value == int(NOW.timestamp() * 1000)


def test_memory_retention_keeps_last_fix_per_bus() -> None:
    now = datetime.now(timezone.utc)
    store = MemoryHistoryStore(retention_days=7)

    def at(i: int, age: timedelta, bus_id: str) -> HistoryEntry:
        return entry(i, bus_id=bus_id).model_copy(update={"timestamp": now - age})

    async def run():
        await store.append_many([
            at(1, timedelta(days=30), "bus-1"),
            at(2, timedelta(days=20), "bus-1"),
            at(3, timedelta(days=10), "bus-2"),
            at(4, timedelta(days=9), "bus-2"),
        ])
        before = [e.id for e in store.entries]
        await store.append_history(at(5, timedelta(minutes=1), "bus-2"))
        return before

    before = asyncio.run(run())
    assert before == ["e2", "e4"]
    assert [e.id for e in store.entries] == ["e2", "e5"]


def test_memory_prune_on_demand_keeps_newest() -> None:
    store = MemoryHistoryStore()
    asyncio.run(store.append_many([entry(i) for i in range(3)]))
    assert store.prune(NOW + timedelta(days=1)) == 2
    assert [e.id for e in store.entries] == ["e2"]
