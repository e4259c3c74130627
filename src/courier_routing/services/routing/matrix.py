"""Travel distance/duration matrices with an OSRM source and a haversine fallback."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

import httpx
import numpy as np

from ...config import settings
from ...models.domain import GeoPoint
from ..geospatial import haversine_km
from .osrm_client import OSRMClient

logger = logging.getLogger(__name__)

UNREACHABLE_FALLBACK_RATE = 0.5


@dataclass(slots=True)
class TravelMatrix:
    """Free-flow travel between points; distances in km, durations in minutes."""

    distance_km: np.ndarray
    duration_min: np.ndarray
    source: str

    @property
    def size(self) -> int:
        return int(self.distance_km.shape[0])


def haversine_matrix(points: Sequence[GeoPoint]) -> TravelMatrix:
    count = len(points)
    distances = np.zeros((count, count), dtype=float)
    for i, a in enumerate(points):
        for j in range(i + 1, count):
            b = points[j]
            km = haversine_km(a.latitude, a.longitude, b.latitude, b.longitude) * settings.road_distance_factor
            distances[i, j] = km
            distances[j, i] = km
    durations = distances / settings.average_speed_kmh * 60.0
    return TravelMatrix(distance_km=distances, duration_min=durations, source="haversine")


def _from_osrm_table(table: dict, fallback: TravelMatrix) -> TravelMatrix | None:
    durations = table.get("durations")
    distances = table.get("distances")
    if not durations or not distances:
        return None
    count = fallback.size
    if len(durations) != count or len(distances) != count:
        logger.warning(f"OSRM matrix size mismatch: expected {count}, got {len(durations)}x{len(distances)}")
        return None

    distance_km = np.array(fallback.distance_km, copy=True)
    duration_min = np.array(fallback.duration_min, copy=True)
    missing = 0
    off_diagonal = count * (count - 1)
    for i in range(count):
        for j in range(count):
            if i == j:
                continue
            seconds = durations[i][j]
            meters = distances[i][j]
            if seconds is None or meters is None:
                missing += 1
                continue
            duration_min[i, j] = float(seconds) / 60.0
            distance_km[i, j] = float(meters) / 1000.0

    if off_diagonal and missing / off_diagonal > UNREACHABLE_FALLBACK_RATE:
        logger.warning(
            f"Too many unreachable pairs from OSRM ({missing}/{off_diagonal}). Using haversine fallback."
        )
        return None
    if missing:
        logger.info(f"Filled {missing} unreachable OSRM pairs with haversine estimates")
    return TravelMatrix(distance_km=distance_km, duration_min=duration_min, source="osrm")


def build_travel_matrix(points: Sequence[GeoPoint], client: OSRMClient | None = None) -> TravelMatrix:
    """Matrix between ``points`` from OSRM when available, haversine otherwise."""
    if not points:
        raise ValueError("At least one point is required to build a travel matrix.")
    fallback = haversine_matrix(points)
    if len(points) < 2:
        return fallback

    if client is None:
        if not settings.osrm_base_url:
            return fallback
        try:
            client = OSRMClient()
        except ValueError as e:
            logger.warning(f"OSRM client initialization failed: {e}. Using haversine fallback.")
            return fallback

    try:
        table = client.table([point.as_tuple() for point in points])
    except (ConnectionError, ValueError, httpx.HTTPError) as e:
        logger.warning(f"OSRM table request failed: {e}. Using haversine fallback.")
        return fallback

    matrix = _from_osrm_table(table, fallback)
    return matrix if matrix is not None else fallback
