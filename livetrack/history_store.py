"""
Durable GPS history storage (append + ordered read)
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import boto3
from boto3.dynamodb.conditions import Key

from .models import HistoryEntry

logger = logging.getLogger(__name__)

DRIVER_INDEX_NAME = "driverId-timestamp-index"


def fix_key(ts_ms: int, entry_id: str = "") -> str:
    """Range key that sorts by time and stays unique per entry"""
    return f"{ts_ms:013d}#{entry_id}"


def _check_query(bus_id: Optional[str], driver_id: Optional[str], order: str):
    if bool(bus_id) == bool(driver_id):
        raise ValueError("Exactly one of bus_id or driver_id is required")
    if order not in ("asc", "desc"):
        raise ValueError(f"Invalid order: {order}")


class HistoryStore:
    """Append-only GPS log"""

    async def append_history(self, entry: HistoryEntry) -> None:
        await self.append_many([entry])

    async def append_many(self, entries: List[HistoryEntry]) -> int:
        raise NotImplementedError

    async def query_history(
        self,
        bus_id: Optional[str] = None,
        driver_id: Optional[str] = None,
        limit: int = 10,
        since: Optional[datetime] = None,
        order: str = "desc"
    ) -> List[HistoryEntry]:
        raise NotImplementedError

    async def health_check(self) -> bool:
        return True


class MemoryHistoryStore(HistoryStore):
    """
    In-process history, used for development and tests.

    With retention_days set, entries older than that are pruned on append,
    except the newest entry of each bus.
    """

    def __init__(self, retention_days: Optional[int] = None):
        self.entries: List[HistoryEntry] = []
        self.retention_days = retention_days

    async def append_many(self, entries: List[HistoryEntry]) -> int:
        self.entries.extend(entries)
        if self.retention_days is not None:
            self.prune(datetime.now(timezone.utc) - timedelta(days=self.retention_days))
        return len(entries)

    def prune(self, cutoff: datetime) -> int:
        """Drop entries older than cutoff, keeping the last known fix per bus"""
        newest: Dict[str, HistoryEntry] = {}
        for e in self.entries:
            if e.bus_id not in newest or e.timestamp > newest[e.bus_id].timestamp:
                newest[e.bus_id] = e
        keep = {id(e) for e in newest.values()}
        kept = [e for e in self.entries if e.timestamp >= cutoff or id(e) in keep]
        removed = len(self.entries) - len(kept)
        if removed:
            self.entries = kept
            logger.debug(f"Pruned {removed} history entries older than {cutoff.isoformat()}")
        return removed

    async def query_history(
        self,
        bus_id: Optional[str] = None,
        driver_id: Optional[str] = None,
        limit: int = 10,
        since: Optional[datetime] = None,
        order: str = "desc"
    ) -> List[HistoryEntry]:
        _check_query(bus_id, driver_id, order)
        matches = [
            e for e in self.entries
            if (bus_id and e.bus_id == bus_id) or (driver_id and e.driver_id == driver_id)
        ]
        if since is not None:
            matches = [e for e in matches if e.timestamp >= since]
        # Newest first, then cut, then flip for ascending reads
        matches.sort(key=lambda e: e.timestamp, reverse=True)
        matches = matches[:limit]
        if order == "asc":
            matches.reverse()
        return matches


class DynamoHistoryStore(HistoryStore):
    """
    Handles GPS history in DynamoDB.

    Table key is busId (hash) + fixKey (range), where fixKey is the
    zero-padded millisecond timestamp plus the entry id so fixes sharing a
    device timestamp never overwrite each other. The driver index keys on
    driverId + timestamp.
    """

    def __init__(
        self,
        table_name: str,
        region: str = "us-east-1",
        ttl_days: int = 30,
        batch_size: int = 25,
        table=None
    ):
        if table is None:
            dynamodb = boto3.resource('dynamodb', region_name=region)
            table = dynamodb.Table(table_name)
        self.table = table
        self.table_name = table_name
        self.ttl_days = ttl_days
        self.batch_size = batch_size

    async def health_check(self) -> bool:
        """Check if the history table is accessible"""
        try:
            loop = asyncio.get_event_loop()
            status = await loop.run_in_executor(None, lambda: self.table.table_status)
            return status == 'ACTIVE'
        except Exception as e:
            logger.error(f"DynamoDB health check failed: {str(e)}")
            return False

    def _to_item(self, entry: HistoryEntry) -> Dict[str, Any]:
        ts_ms = int(entry.timestamp.timestamp() * 1000)
        item = {
            'id': entry.id,
            'busId': entry.bus_id,
            'fixKey': fix_key(ts_ms, entry.id),
            'timestamp': ts_ms,
            'latitude': Decimal(str(entry.lat)),
            'longitude': Decimal(str(entry.lon)),
            'speed': Decimal(str(entry.speed)),
            'source': entry.source,
            'date': entry.timestamp.strftime('%Y-%m-%d'),
            'ttl': int((datetime.now(timezone.utc) + timedelta(days=self.ttl_days)).timestamp())
        }

        # Add optional fields
        if entry.driver_id:
            item['driverId'] = entry.driver_id
        if entry.heading is not None:
            item['heading'] = Decimal(str(entry.heading))
        if entry.accuracy is not None:
            item['accuracy'] = Decimal(str(entry.accuracy))
        if entry.altitude is not None:
            item['altitude'] = Decimal(str(entry.altitude))
        return item

    @staticmethod
    def _from_item(item: Dict[str, Any]) -> HistoryEntry:
        return HistoryEntry(
            id=item['id'],
            busId=item['busId'],
            driverId=item.get('driverId'),
            lat=float(item['latitude']),
            lon=float(item['longitude']),
            speed=float(item.get('speed', 0)),
            heading=float(item['heading']) if 'heading' in item else None,
            accuracy=float(item['accuracy']) if 'accuracy' in item else None,
            altitude=float(item['altitude']) if 'altitude' in item else None,
            source=item.get('source', 'DEVICE'),
            timestamp=datetime.fromtimestamp(int(item['timestamp']) / 1000, tz=timezone.utc)
        )

    def _write_batch(self, batch: List[HistoryEntry]) -> None:
        with self.table.batch_writer() as batch_writer:
            for entry in batch:
                batch_writer.put_item(Item=self._to_item(entry))

    async def append_many(self, entries: List[HistoryEntry]) -> int:
        """Store entries in batches of batch_size (DynamoDB limit is 25)"""
        loop = asyncio.get_event_loop()
        written = 0
        for i in range(0, len(entries), self.batch_size):
            batch = entries[i:i + self.batch_size]
            await loop.run_in_executor(None, self._write_batch, batch)
            written += len(batch)
        return written

    async def query_history(
        self,
        bus_id: Optional[str] = None,
        driver_id: Optional[str] = None,
        limit: int = 10,
        since: Optional[datetime] = None,
        order: str = "desc"
    ) -> List[HistoryEntry]:
        """Get history for a bus or a driver"""
        _check_query(bus_id, driver_id, order)

        since_ms = int(since.timestamp() * 1000) if since is not None else None
        if bus_id:
            key_condition = Key('busId').eq(bus_id)
            if since_ms is not None:
                key_condition = key_condition & Key('fixKey').gte(fix_key(since_ms))
        else:
            key_condition = Key('driverId').eq(driver_id)
            if since_ms is not None:
                key_condition = key_condition & Key('timestamp').gte(since_ms)

        params = {
            'KeyConditionExpression': key_condition,
            'ScanIndexForward': False,  # Most recent first
            'Limit': limit
        }
        if driver_id:
            params['IndexName'] = DRIVER_INDEX_NAME

        loop = asyncio.get_event_loop()
        response = await loop.run_in_executor(None, lambda: self.table.query(**params))

        entries = [self._from_item(item) for item in response.get('Items', [])]
        if order == "asc":
            entries.reverse()
        return entries


def create_history_store(settings) -> HistoryStore:
    """Build the history backend selected by settings.HISTORY_BACKEND"""
    if settings.HISTORY_BACKEND == "dynamodb":
        logger.info(f"Using DynamoDB history table {settings.HISTORY_TABLE_NAME}")
        return DynamoHistoryStore(
            table_name=settings.HISTORY_TABLE_NAME,
            region=settings.AWS_REGION,
            ttl_days=settings.HISTORY_TTL_DAYS,
            batch_size=settings.HISTORY_BATCH_SIZE
        )
    if settings.HISTORY_BACKEND != "memory":
        raise ValueError(f"Unknown HISTORY_BACKEND: {settings.HISTORY_BACKEND}")
    return MemoryHistoryStore(retention_days=settings.HISTORY_TTL_DAYS)
