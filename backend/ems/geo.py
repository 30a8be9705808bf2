import asyncio
import logging
import math
from typing import Tuple

import requests

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0

# (latitude, longitude)
Coordinates = Tuple[float, float]


def haversine_km(a: Coordinates, b: Coordinates) -> float:
    """Great-circle distance between two (lat, lon) points in km."""
    lat1, lon1 = a
    lat2, lon2 = b
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def linear_eta_minutes(distance_km: float, speed_kmh: float = 50.0) -> int:
    # half-up rounding to the nearest minute
    return int(math.floor(distance_km / speed_kmh * 60 + 0.5))


class GeoEstimator:
    """Travel-time provider used when ranking dispatch candidates."""

    async def estimate(self, origin: Coordinates, destination: Coordinates) -> float:
        raise NotImplementedError


class ConstantEstimator(GeoEstimator):
    def __init__(self, minutes: float = 10.0):
        self.minutes = minutes

    async def estimate(self, origin, destination):
        return self.minutes


class StraightLineEstimator(GeoEstimator):
    def __init__(self, speed_kmh: float = 50.0):
        self.speed_kmh = speed_kmh

    async def estimate(self, origin, destination):
        return haversine_km(origin, destination) / self.speed_kmh * 60


class OsrmEstimator(GeoEstimator):
    """Driving time from an OSRM route service.

    The HTTP call runs in a worker thread so ranking of other requests keeps
    going. Any routing failure falls back to the straight-line estimate.
    """

    def __init__(self, base_url: str, timeout: float = 5.0, fallback: GeoEstimator = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.fallback = fallback or StraightLineEstimator()

    def _route_minutes(self, origin: Coordinates, destination: Coordinates) -> float:
        # OSRM takes lon,lat pairs
        url = (
            f"{self.base_url}/route/v1/driving/"
            f"{origin[1]},{origin[0]};{destination[1]},{destination[0]}"
            "?overview=false"
        )
        r = requests.get(url, timeout=self.timeout, headers={"User-Agent": "unified-ems"})
        r.raise_for_status()
        routes = r.json().get("routes", [])
        if not routes:
            raise ValueError("OSRM returned no route")
        return routes[0]["duration"] / 60

    async def estimate(self, origin, destination):
        try:
            return await asyncio.to_thread(self._route_minutes, origin, destination)
        except (requests.RequestException, ValueError, KeyError) as e:
            logger.warning("OSRM estimate failed (%s); using straight-line fallback", e)
            return await self.fallback.estimate(origin, destination)


def build_estimator(settings) -> GeoEstimator:
    kind = settings.travel_estimator
    if kind == "constant":
        return ConstantEstimator(settings.constant_travel_minutes)
    if kind == "straight_line":
        return StraightLineEstimator(settings.dashboard_speed_kmh)
    if kind == "osrm":
        return OsrmEstimator(
            settings.osrm_url,
            timeout=settings.osrm_timeout_seconds,
            fallback=StraightLineEstimator(settings.dashboard_speed_kmh),
        )
    raise ValueError(f"Unknown travel estimator: {kind!r}")
