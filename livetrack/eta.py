"""
Heuristic ETA prediction

Distance is great-circle distance scaled by a road factor. Speed is the
current speed (blended with the bus's historical average when one is known),
or a cruising default when the bus is idle, then adjusted by static
hour-of-day and day-of-week traffic tables.
"""

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from .geo import haversine_distance
from .history_store import HistoryStore
from .liveness import is_online
from .models import ETAResult, EtaFactors, EtaRange, LocationRecord, Stop, TrafficForecastEntry

logger = logging.getLogger(__name__)

STATUS_PREDICTED = "PREDICTED"
STATUS_PASSED = "PASSED"
STATUS_UNAVAILABLE = "UNAVAILABLE"

TYPE_REAL_TIME = "REAL_TIME"
TYPE_HISTORICAL = "HISTORICAL"
TYPE_ESTIMATED = "ESTIMATED"


def traffic_condition(factor: float) -> str:
    """Human-readable traffic level for a combined speed factor"""
    if factor >= 1.2:
        return "LIGHT"
    if factor >= 0.9:
        return "NORMAL"
    if factor >= 0.7:
        return "MODERATE"
    if factor >= 0.5:
        return "HEAVY"
    return "VERY_HEAVY"


def confidence_label(confidence: float) -> str:
    if confidence >= 0.8:
        return "HIGH"
    if confidence >= 0.65:
        return "MEDIUM"
    return "LOW"


class TrafficProfile:
    """Static hour -> multiplier and weekday -> multiplier tables"""

    def __init__(self, hour_factors: Dict[int, float], day_factors: Dict[int, float], tz: str = "UTC"):
        self.hour_factors = dict(hour_factors)
        self.day_factors = dict(day_factors)
        self.tz = ZoneInfo(tz)

    def factors(self, when: datetime) -> Tuple[float, float]:
        local = when.astimezone(self.tz)
        return (
            self.hour_factors.get(local.hour, 1.0),
            self.day_factors.get(local.weekday(), 1.0),
        )


class HistoricalSpeedProvider:
    """Trimmed-mean moving speed per bus from recent history, cached"""

    def __init__(
        self,
        store: HistoryStore,
        cache_ttl_seconds: float = 1800,
        lookback_days: int = 7,
        max_samples: int = 1000,
        min_samples: int = 10
    ):
        self.store = store
        self.cache_ttl_seconds = cache_ttl_seconds
        self.lookback_days = lookback_days
        self.max_samples = max_samples
        self.min_samples = min_samples
        self._cache: Dict[str, Tuple[float, Optional[float]]] = {}

    async def average_speed(self, bus_id: str, now: Optional[datetime] = None) -> Optional[float]:
        """Average km/h over moving fixes, or None when there is not enough data"""
        cached = self._cache.get(bus_id)
        if cached and time.time() - cached[0] < self.cache_ttl_seconds:
            return cached[1]

        now = now or datetime.now(timezone.utc)
        try:
            entries = await self.store.query_history(
                bus_id=bus_id,
                limit=self.max_samples,
                since=now - timedelta(days=self.lookback_days)
            )
        except Exception as e:
            logger.error(f"Error calculating historical speed for {bus_id}: {str(e)}")
            return None

        speeds = sorted(e.speed for e in entries if 5 < e.speed < 100)
        if len(speeds) < self.min_samples:
            average = None
        else:
            # Exclude top/bottom 10%
            trimmed = speeds[int(len(speeds) * 0.1):int(len(speeds) * 0.9)]
            average = sum(trimmed) / len(trimmed)

        self._cache[bus_id] = (time.time(), average)
        return average


class EtaPredictor:
    """Estimates arrival times from a bus's cached location"""

    def __init__(
        self,
        traffic: TrafficProfile,
        offline_threshold_seconds: float = 30,
        speed_provider: Optional[HistoricalSpeedProvider] = None,
        default_speed_kmh: float = 25.0,
        min_speed_kmh: float = 10.0,
        min_eta_seconds: int = 30,
        road_factor: float = 1.4,
        moving_speed_threshold_kmh: float = 5.0
    ):
        self.traffic = traffic
        self.offline_threshold_seconds = offline_threshold_seconds
        self.speed_provider = speed_provider
        self.default_speed_kmh = default_speed_kmh
        self.min_speed_kmh = min_speed_kmh
        self.min_eta_seconds = min_eta_seconds
        self.road_factor = road_factor
        self.moving_speed_threshold_kmh = moving_speed_threshold_kmh

    def _is_trackable(self, record: Optional[LocationRecord], now: datetime) -> bool:
        if record is None or record.lat is None or record.lon is None:
            return False
        return is_online(record.updated_at, self.offline_threshold_seconds, now)

    async def _effective_speed(self, record: LocationRecord, now: datetime) -> Tuple[float, float, str]:
        """(speed km/h, confidence, prediction type) before traffic adjustment"""
        historical = None
        if self.speed_provider is not None:
            historical = await self.speed_provider.average_speed(record.bus_id, now)

        current = record.speed or 0.0
        if current > self.moving_speed_threshold_kmh:
            if historical:
                return current * 0.6 + historical * 0.4, 0.85, TYPE_REAL_TIME
            return current, 0.8, TYPE_REAL_TIME
        if historical:
            return historical, 0.7, TYPE_HISTORICAL
        # Idle or missing speed: never divide by ~0
        return self.default_speed_kmh, 0.5, TYPE_ESTIMATED

    def _estimate(
        self,
        road_distance_m: float,
        speed: Tuple[float, float, str],
        now: datetime
    ) -> ETAResult:
        effective, confidence, prediction_type = speed
        hour_factor, day_factor = self.traffic.factors(now)
        adjusted = max(effective * hour_factor * day_factor, self.min_speed_kmh)

        seconds = (road_distance_m / 1000) / adjusted * 3600
        eta_seconds = max(int(round(seconds)), self.min_eta_seconds)
        eta_minutes = int(round(eta_seconds / 60))

        return ETAResult(
            available=True,
            status=STATUS_PREDICTED,
            etaSeconds=eta_seconds,
            eta=eta_minutes,
            etaRange=EtaRange(min=int(round(eta_minutes * 0.8)), max=int(round(eta_minutes * 1.2))),
            arrivalTime=now + timedelta(seconds=eta_seconds),
            distance=int(round(road_distance_m)),
            effectiveSpeed=int(round(adjusted)),
            confidence=confidence,
            confidenceLabel=confidence_label(confidence),
            predictionType=prediction_type,
            factors=EtaFactors(
                hourFactor=hour_factor,
                dayFactor=day_factor,
                trafficCondition=traffic_condition(hour_factor * day_factor),
            ),
        )

    @staticmethod
    def _unavailable(stop: Optional[Stop] = None) -> ETAResult:
        return ETAResult(
            stopId=stop.id if stop else None,
            stopName=stop.name if stop else None,
            stopOrder=stop.order if stop else None,
            available=False,
            status=STATUS_UNAVAILABLE,
            confidenceLabel="STALE",
            message="Bus is offline",
        )

    async def predict_eta(
        self,
        record: Optional[LocationRecord],
        dest_lat: float,
        dest_lon: float,
        now: Optional[datetime] = None
    ) -> ETAResult:
        """ETA from the bus's current position to one destination"""
        now = now or datetime.now(timezone.utc)
        if not self._is_trackable(record, now):
            return self._unavailable()

        distance = haversine_distance(record.lat, record.lon, dest_lat, dest_lon)
        speed = await self._effective_speed(record, now)
        return self._estimate(distance * self.road_factor, speed, now)

    async def predict_route_etas(
        self,
        record: Optional[LocationRecord],
        stops: List[Stop],
        now: Optional[datetime] = None
    ) -> List[ETAResult]:
        """
        ETA for each stop on the route, in stop order.

        The stop closest to the bus is treated as the current stop; earlier
        stops are marked passed. Distance accumulates stop to stop from there.
        """
        now = now or datetime.now(timezone.utc)
        ordered = sorted(stops, key=lambda s: s.order)
        if not ordered:
            return []
        if not self._is_trackable(record, now):
            return [self._unavailable(stop) for stop in ordered]

        distances = [
            haversine_distance(record.lat, record.lon, s.latitude, s.longitude) for s in ordered
        ]
        closest = min(range(len(ordered)), key=lambda i: distances[i])
        speed = await self._effective_speed(record, now)

        results: List[ETAResult] = []
        cumulative = 0.0
        for i, stop in enumerate(ordered):
            if i < closest:
                results.append(ETAResult(
                    stopId=stop.id,
                    stopName=stop.name,
                    stopOrder=stop.order,
                    available=False,
                    status=STATUS_PASSED,
                    confidenceLabel=confidence_label(speed[1]),
                    message="Stop already passed",
                ))
                continue

            if i == closest:
                cumulative = distances[i]
            else:
                prev = ordered[i - 1]
                cumulative += haversine_distance(prev.latitude, prev.longitude, stop.latitude, stop.longitude)

            result = self._estimate(cumulative * self.road_factor, speed, now)
            results.append(result.model_copy(update={
                "stop_id": stop.id,
                "stop_name": stop.name,
                "stop_order": stop.order,
            }))
        return results

    def traffic_forecast(self, hours: int = 6, now: Optional[datetime] = None) -> List[TrafficForecastEntry]:
        """Traffic levels for the next `hours` hours from the static tables"""
        now = now or datetime.now(timezone.utc)
        forecast = []
        for i in range(hours):
            when = now + timedelta(hours=i)
            hour_factor, day_factor = self.traffic.factors(when)
            combined = hour_factor * day_factor
            hour = when.astimezone(self.traffic.tz).hour
            forecast.append(TrafficForecastEntry(
                hour=hour,
                time=f"{hour:02d}:00",
                trafficLevel=traffic_condition(combined),
                speedFactor=int(round(combined * 100)),
                bestForTravel=combined >= 0.9,
            ))
        return forecast
