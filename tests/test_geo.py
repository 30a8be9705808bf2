import asyncio
from types import SimpleNamespace

import pytest
import requests

from ems.geo import (
    ConstantEstimator,
    OsrmEstimator,
    StraightLineEstimator,
    build_estimator,
    haversine_km,
    linear_eta_minutes,
)

PHILLY = (39.9526, -75.1652)
NYC = (40.7128, -74.0060)
PITTSBURGH = (40.4406, -79.9959)


def test_distance_is_zero_for_identical_points():
    assert haversine_km(PHILLY, PHILLY) == 0.0


def test_distance_is_symmetric():
    assert haversine_km(PHILLY, NYC) == pytest.approx(haversine_km(NYC, PHILLY))


def test_distance_obeys_triangle_inequality():
    direct = haversine_km(PHILLY, PITTSBURGH)
    via_nyc = haversine_km(PHILLY, NYC) + haversine_km(NYC, PITTSBURGH)
    assert direct <= via_nyc


def test_distance_matches_known_value():
    # Philadelphia to New York is roughly 130 km as the crow flies
    assert haversine_km(PHILLY, NYC) == pytest.approx(130, abs=3)


def test_linear_eta_rounds_to_nearest_minute():
    assert linear_eta_minutes(50.0) == 60
    assert linear_eta_minutes(0.0) == 0
    # 12.5 km at 50 km/h is 15.0 minutes; 12.9 km is 15.48
    assert linear_eta_minutes(12.9) == 15
    # 1.5 minutes rounds up
    assert linear_eta_minutes(1.25) == 2


def test_constant_estimator_returns_configured_minutes():
    assert asyncio.run(ConstantEstimator(10).estimate(PHILLY, NYC)) == 10


def test_straight_line_estimator_uses_speed():
    minutes = asyncio.run(StraightLineEstimator(speed_kmh=60).estimate(PHILLY, NYC))
    assert minutes == pytest.approx(haversine_km(PHILLY, NYC))


def test_osrm_estimator_reads_route_duration(monkeypatch):
    calls = []

    def fake_get(url, timeout, headers):
        calls.append(url)
        return SimpleNamespace(raise_for_status=lambda: None, json=lambda: {"routes": [{"duration": 900}]})

    monkeypatch.setattr(requests, "get", fake_get)
    minutes = asyncio.run(OsrmEstimator("http://osrm.test/").estimate(PHILLY, NYC))

    assert minutes == 15
    # lon,lat ordering
    assert calls[0].startswith("http://osrm.test/route/v1/driving/-75.1652,39.9526;-74.006,40.7128")


def test_osrm_estimator_falls_back_when_routing_fails(monkeypatch):
    def failing_get(url, timeout, headers):
        raise requests.ConnectionError("offline")

    monkeypatch.setattr(requests, "get", failing_get)
    estimator = OsrmEstimator("http://osrm.test", fallback=ConstantEstimator(42))

    assert asyncio.run(estimator.estimate(PHILLY, NYC)) == 42


def test_build_estimator_by_name():
    settings = SimpleNamespace(
        travel_estimator="straight_line",
        constant_travel_minutes=10,
        dashboard_speed_kmh=50,
        osrm_url="http://osrm.test",
        osrm_timeout_seconds=1,
    )
    assert isinstance(build_estimator(settings), StraightLineEstimator)

    settings.travel_estimator = "osrm"
    assert isinstance(build_estimator(settings), OsrmEstimator)

    settings.travel_estimator = "teleport"
    with pytest.raises(ValueError):
        build_estimator(settings)
