"""
GPS ingest pipeline: validate a fix, commit it to the cache, log it, fan it out
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Set

from .errors import ThrottledError, ValidationError
from .geo import MAX_LAT, MAX_LON, MIN_LAT, MIN_LON, is_number, is_valid_coordinate
from .history_writer import HistoryWriter
from .location_cache import LocationCache
from .models import (
    BusInfo,
    GpsFix,
    HistoryEntry,
    IngestResult,
    LocationRecord,
    SOURCE_DEVICE,
    SOURCE_DRIVER_APP,
)
from .rooms import RoomBroadcaster

logger = logging.getLogger(__name__)

MAX_SPEED_KMH = 300.0
MAX_FUTURE_SKEW_MS = 3600000  # 1 hour
MAX_FIX_AGE_MS = 86400000  # 24 hours


def _optional_number(payload: Dict[str, Any], field: str) -> Optional[float]:
    value = payload.get(field)
    if value is None:
        return None
    if not is_number(value):
        raise ValidationError(f"Invalid {field}: {value}")
    return float(value)


def parse_timestamp(value: Any, now: datetime) -> Optional[datetime]:
    """
    Accept epoch milliseconds or ISO-8601.

    A readable but implausible device clock (far future, over a day old) is
    ignored with a warning and the fix is stamped with receive time instead.
    """
    if value is None:
        return None
    if is_number(value):
        try:
            ts = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            raise ValidationError(f"Invalid timestamp: {value}")
    elif isinstance(value, str):
        try:
            ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"Invalid timestamp: {value}")
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
    else:
        raise ValidationError(f"Invalid timestamp: {value}")

    delta_ms = (ts - now).total_seconds() * 1000
    if delta_ms > MAX_FUTURE_SKEW_MS:
        logger.warning(f"Device timestamp {value} is too far in the future, using receive time")
        return None
    if -delta_ms > MAX_FIX_AGE_MS:
        logger.warning(f"Device timestamp {value} is too old (>24 hours), using receive time")
        return None
    return ts


def parse_fix(payload: Any, now: Optional[datetime] = None) -> GpsFix:
    """
    Validate an incoming GPS payload.

    Required fields:
    - lat: latitude (-90 to 90)
    - lon: longitude (-180 to 180), and not both zero

    Optional fields:
    - speed: km/h, negatives coerced to 0, missing means 0
    - heading: degrees (0-360, 360 folded to 0)
    - accuracy: meters, non-negative
    - altitude: meters
    - timestamp: device fix time, epoch ms or ISO-8601
    """
    if not isinstance(payload, dict):
        raise ValidationError("Invalid GPS payload")
    now = now or datetime.now(timezone.utc)

    lat, lon = payload.get("lat"), payload.get("lon")
    if lat is None or lon is None:
        raise ValidationError("lat/lon required")
    if not is_valid_coordinate(lat, lon):
        raise ValidationError(
            f"Invalid GPS coordinates: ({lat}, {lon}). Latitude must be between "
            f"{MIN_LAT} and {MAX_LAT}, longitude between {MIN_LON} and {MAX_LON}"
        )

    speed = _optional_number(payload, "speed")
    speed = max(0.0, speed) if speed is not None else 0.0
    if speed > MAX_SPEED_KMH:
        raise ValidationError(f"Invalid speed: {speed}. Must be at most {MAX_SPEED_KMH} km/h")

    heading = _optional_number(payload, "heading")
    if heading is not None:
        if not 0 <= heading <= 360:
            raise ValidationError(f"Invalid heading: {heading}. Must be between 0 and 360 degrees")
        heading = heading % 360

    accuracy = _optional_number(payload, "accuracy")
    if accuracy is not None and accuracy < 0:
        raise ValidationError(f"Invalid accuracy: {accuracy}. Must be non-negative")

    return GpsFix(
        lat=float(lat),
        lon=float(lon),
        speed=speed,
        heading=heading,
        accuracy=accuracy,
        altitude=_optional_number(payload, "altitude"),
        timestamp=parse_timestamp(payload.get("timestamp"), now),
    )


@dataclass
class IngestContext:
    """Who sent the fix: the bus (always) and the driver (driver app only)"""
    bus: BusInfo
    driver_id: Optional[str] = None

    @property
    def source(self) -> str:
        return SOURCE_DRIVER_APP if self.driver_id else SOURCE_DEVICE


class GpsIngestPipeline:
    """Accepts fixes from devices and drivers and commits them"""

    def __init__(
        self,
        cache: LocationCache,
        history_writer: HistoryWriter,
        broadcaster: RoomBroadcaster,
        offline_threshold_seconds: float = 30,
        min_interval_seconds: float = 0.0,
        reject_out_of_order: bool = False,
        low_accuracy_warn_meters: float = 10000.0
    ):
        self.cache = cache
        self.history_writer = history_writer
        self.broadcaster = broadcaster
        self.offline_threshold_seconds = offline_threshold_seconds
        self.min_interval_seconds = min_interval_seconds
        self.reject_out_of_order = reject_out_of_order
        self.low_accuracy_warn_meters = low_accuracy_warn_meters

        self.fixes_accepted = 0
        self.fixes_rejected = 0
        self._last_accepted: Dict[str, datetime] = {}
        self._broadcasts: Set[asyncio.Task] = set()

    def _check_throttle(self, bus_id: str, now: datetime) -> None:
        if self.min_interval_seconds <= 0:
            return
        last = self._last_accepted.get(bus_id)
        if last is not None and (now - last).total_seconds() < self.min_interval_seconds:
            raise ThrottledError(
                f"GPS updates for this bus are limited to one every {self.min_interval_seconds}s"
            )

    async def _check_order(self, bus_id: str, fix: GpsFix) -> None:
        if not self.reject_out_of_order or fix.timestamp is None:
            return
        cached = await self.cache.get_bus_location(bus_id)
        if cached and cached.recorded_at and fix.timestamp < cached.recorded_at:
            raise ValidationError("GPS fix is older than the current location")

    @staticmethod
    def build_record(fix: GpsFix, ctx: IngestContext, now: datetime) -> LocationRecord:
        bus = ctx.bus
        return LocationRecord(
            busId=bus.bus_id,
            busNumber=bus.bus_number,
            busName=bus.bus_name,
            lat=fix.lat,
            lon=fix.lon,
            speed=fix.speed,
            heading=fix.heading,
            accuracy=fix.accuracy,
            altitude=fix.altitude,
            driverName=bus.driver.name if bus.driver else None,
            driverPhone=bus.driver.phone if bus.driver else None,
            organizationId=bus.organization_id,
            source=ctx.source,
            updatedAt=now,
            recordedAt=fix.timestamp or now,
        )

    async def ingest(
        self,
        payload: Dict[str, Any],
        ctx: IngestContext,
        now: Optional[datetime] = None
    ) -> IngestResult:
        """Validate and commit one fix; raises ValidationError/ThrottledError before any write"""
        now = now or datetime.now(timezone.utc)
        bus = ctx.bus
        try:
            fix = parse_fix(payload, now)
            self._check_throttle(bus.bus_id, now)
            await self._check_order(bus.bus_id, fix)
        except (ValidationError, ThrottledError) as e:
            self.fixes_rejected += 1
            logger.warning(f"Rejected GPS fix for bus {bus.bus_number}: {e.message}")
            raise

        if fix.accuracy and fix.accuracy > self.low_accuracy_warn_meters:
            logger.warning(f"Low GPS accuracy ({fix.accuracy}m) for bus {bus.bus_number}")

        record = self.build_record(fix, ctx, now)
        await self.cache.set_bus_location(bus.bus_id, record)
        self._last_accepted[bus.bus_id] = now
        self.fixes_accepted += 1
        logger.info(
            f"GPS update: {bus.bus_number} @ {fix.lat:.4f}, {fix.lon:.4f} ({fix.speed} km/h)"
        )

        self.history_writer.submit(HistoryEntry(
            id=uuid.uuid4().hex,
            busId=bus.bus_id,
            driverId=ctx.driver_id or (bus.driver.id if bus.driver else None),
            lat=fix.lat,
            lon=fix.lon,
            speed=fix.speed,
            heading=fix.heading,
            accuracy=fix.accuracy,
            altitude=fix.altitude,
            source=ctx.source,
            timestamp=fix.timestamp or now,
        ))

        # A fix that was just accepted is online by definition
        self._broadcast(record.model_copy(update={"is_online": True}))

        return IngestResult(busNumber=bus.bus_number, updatedAt=now)

    async def stop_tracking(
        self, bus_id: str, now: Optional[datetime] = None
    ) -> Optional[LocationRecord]:
        """Mark a bus offline immediately, keeping its last position"""
        now = now or datetime.now(timezone.utc)
        cached = await self.cache.get_bus_location(bus_id)
        if not cached:
            return None

        age = max(3600, self.offline_threshold_seconds + 1)
        stopped = cached.model_copy(update={
            "updated_at": now - timedelta(seconds=age),
            "is_online": None,
        })
        await self.cache.set_bus_location(bus_id, stopped)
        self._last_accepted.pop(bus_id, None)

        offline = stopped.model_copy(update={"is_online": False})
        self._broadcast(offline)
        logger.info(f"Tracking stopped: {cached.bus_number}")
        return offline

    def _broadcast(self, record: LocationRecord) -> None:
        """Fan out in the background so subscribers never hold up the caller"""
        task = asyncio.create_task(self.broadcaster.publish_location(record))
        self._broadcasts.add(task)

        def done(finished: asyncio.Task) -> None:
            self._broadcasts.discard(finished)
            if finished.cancelled():
                return
            error = finished.exception()
            if error is not None:
                logger.error(f"Broadcast failed for bus {record.bus_number}: {str(error)}")

        task.add_done_callback(done)

    async def flush_broadcasts(self) -> None:
        """Wait for fan-outs still in flight"""
        if self._broadcasts:
            await asyncio.gather(*list(self._broadcasts), return_exceptions=True)
