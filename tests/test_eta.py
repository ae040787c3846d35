from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from fakes import NEUTRAL_DAYS, NEUTRAL_HOURS, NOW, make_record, make_stops
from livetrack.config import DEFAULT_DAY_FACTORS, DEFAULT_HOUR_FACTORS
from livetrack.eta import (
    EtaPredictor,
    HistoricalSpeedProvider,
    TrafficProfile,
    traffic_condition,
)
from livetrack.geo import haversine_distance
from livetrack.history_store import MemoryHistoryStore
from livetrack.models import HistoryEntry

DEST = (43.48, -80.54)


def neutral_predictor(**kwargs) -> EtaPredictor:
    kwargs.setdefault("road_factor", 1.0)
    return EtaPredictor(TrafficProfile(NEUTRAL_HOURS, NEUTRAL_DAYS), **kwargs)


def history_with_speeds(speeds: list[float]) -> MemoryHistoryStore:
    store = MemoryHistoryStore()
    store.entries = [
        HistoryEntry(id=f"h{i}", busId="bus-1", lat=43.47, lon=-80.54, speed=s,
                     timestamp=NOW - timedelta(minutes=i + 1))
        for i, s in enumerate(speeds)
    ]
    return store


def test_eta_is_distance_over_speed_without_traffic() -> None:
    record = make_record(lat=43.47, lon=-80.54, speed=36)
    result = asyncio.run(neutral_predictor().predict_eta(record, *DEST, now=NOW))

    distance = haversine_distance(43.47, -80.54, *DEST)
    assert result.available
    assert result.status == "PREDICTED"
    assert result.eta_seconds == pytest.approx(distance / 10, abs=1)
    assert result.distance_meters == round(distance)
    assert result.prediction_type == "REAL_TIME"
    assert result.confidence_label == "HIGH"
    assert result.arrival_time == NOW + timedelta(seconds=result.eta_seconds)
    assert result.eta_range.min <= result.eta_minutes <= result.eta_range.max


def test_traffic_tables_and_road_factor_apply() -> None:
    predictor = EtaPredictor(TrafficProfile(DEFAULT_HOUR_FACTORS, DEFAULT_DAY_FACTORS))
    record = make_record(lat=43.47, lon=-80.54, speed=36)

    result = asyncio.run(predictor.predict_eta(record, *DEST, now=NOW))

    # Wednesday noon
    assert result.factors.hour_factor == 0.8
    assert result.factors.day_factor == 0.9
    assert result.factors.traffic_condition == "MODERATE"
    adjusted = 36 * 0.8 * 0.9
    distance = haversine_distance(43.47, -80.54, *DEST) * 1.4
    assert result.eta_seconds == pytest.approx(distance / 1000 / adjusted * 3600, abs=1)


def test_idle_bus_uses_cruising_speed() -> None:
    record = make_record(speed=0)
    result = asyncio.run(neutral_predictor().predict_eta(record, *DEST, now=NOW))

    assert result.effective_speed_kmh == 25
    assert result.prediction_type == "ESTIMATED"
    assert result.confidence == 0.5
    assert result.confidence_label == "LOW"


def test_speed_is_floored_and_eta_clamped() -> None:
    slow_hours = {h: 0.5 for h in range(24)}
    slow_days = {d: 0.5 for d in range(7)}
    predictor = EtaPredictor(TrafficProfile(slow_hours, slow_days), road_factor=1.0)
    record = make_record(speed=6)
    result = asyncio.run(predictor.predict_eta(record, *DEST, now=NOW))
    assert result.effective_speed_kmh == 10

    nearby = asyncio.run(neutral_predictor().predict_eta(record, 43.4701, -80.54, now=NOW))
    assert nearby.eta_seconds == 30


def test_offline_bus_has_no_eta() -> None:
    stale = make_record(speed=40, updated_at=NOW - timedelta(seconds=31))
    for record in (stale, None):
        result = asyncio.run(neutral_predictor().predict_eta(record, *DEST, now=NOW))
        assert not result.available
        assert result.status == "UNAVAILABLE"
        assert result.confidence_label == "STALE"
        assert result.message == "Bus is offline"
        assert result.eta_seconds is None


def test_historical_speed_is_trimmed_mean() -> None:
    provider = HistoricalSpeedProvider(history_with_speeds([float(s) for s in range(10, 30)] + [3.0, 150.0]))
    assert asyncio.run(provider.average_speed("bus-1", now=NOW)) == pytest.approx(19.5)


def test_historical_speed_needs_enough_samples() -> None:
    provider = HistoricalSpeedProvider(history_with_speeds([20.0] * 9))
    assert asyncio.run(provider.average_speed("bus-1", now=NOW)) is None


def test_historical_speed_is_cached() -> None:
    store = history_with_speeds([20.0] * 12)
    provider = HistoricalSpeedProvider(store)
    assert asyncio.run(provider.average_speed("bus-1", now=NOW)) == 20.0
    store.entries = []
    assert asyncio.run(provider.average_speed("bus-1", now=NOW)) == 20.0


def test_history_blends_with_current_speed() -> None:
    provider = HistoricalSpeedProvider(history_with_speeds([20.0] * 12))
    predictor = neutral_predictor(speed_provider=provider)

    moving = asyncio.run(predictor.predict_eta(make_record(speed=30), *DEST, now=NOW))
    idle = asyncio.run(predictor.predict_eta(make_record(speed=0), *DEST, now=NOW))

    assert moving.effective_speed_kmh == 26
    assert moving.confidence == 0.85
    assert idle.effective_speed_kmh == 20
    assert idle.prediction_type == "HISTORICAL"
    assert idle.confidence_label == "MEDIUM"


def test_route_etas_skip_passed_stops_and_accumulate() -> None:
    stops = list(reversed(make_stops()))
    record = make_record(lat=43.4745, lon=-80.54, speed=36)

    results = asyncio.run(neutral_predictor().predict_route_etas(record, stops, now=NOW))

    assert [r.stop_id for r in results] == ["s1", "s2", "s3"]
    assert results[0].status == "PASSED"
    assert results[0].eta_seconds is None
    assert results[1].status == "PREDICTED"

    to_s2 = haversine_distance(43.4745, -80.54, 43.4750, -80.5400)
    s2_to_s3 = haversine_distance(43.4750, -80.5400, 43.4800, -80.5400)
    assert results[1].distance_meters == round(to_s2)
    assert results[2].distance_meters == round(to_s2 + s2_to_s3)
    assert results[2].eta_seconds > results[1].eta_seconds


def test_route_etas_when_offline_or_without_stops() -> None:
    stale = make_record(updated_at=NOW - timedelta(minutes=5))
    results = asyncio.run(neutral_predictor().predict_route_etas(stale, make_stops(), now=NOW))
    assert [r.status for r in results] == ["UNAVAILABLE"] * 3
    assert results[0].stop_name == "Main Gate"

    assert asyncio.run(neutral_predictor().predict_route_etas(make_record(), [], now=NOW)) == []


@pytest.mark.parametrize(
    "factor, label",
    [(1.3, "LIGHT"), (1.2, "LIGHT"), (1.0, "NORMAL"), (0.75, "MODERATE"), (0.5, "HEAVY"), (0.3, "VERY_HEAVY")],
)
def test_traffic_condition_labels(factor, label) -> None:
    assert traffic_condition(factor) == label


def test_traffic_forecast_for_next_hours() -> None:
    predictor = EtaPredictor(TrafficProfile(DEFAULT_HOUR_FACTORS, DEFAULT_DAY_FACTORS))
    forecast = predictor.traffic_forecast(hours=6, now=NOW)

    assert [f.hour for f in forecast] == [12, 13, 14, 15, 16, 17]
    assert forecast[0].time == "12:00"
    assert forecast[0].speed_factor == 72
    assert forecast[0].traffic_level == "MODERATE"
    assert forecast[5].traffic_level == "VERY_HEAVY"
    assert not any(f.best_for_travel for f in forecast)


def test_traffic_profile_uses_local_time() -> None:
    profile = TrafficProfile(DEFAULT_HOUR_FACTORS, DEFAULT_DAY_FACTORS, tz="America/Toronto")
    # 12:00 UTC is 07:00 in Toronto before the DST change
    assert profile.factors(NOW) == (0.65, 0.9)
