"""Geospatial helper functions."""

from __future__ import annotations

import math
from itertools import combinations
from typing import Sequence

import numpy as np
from shapely.geometry import LineString, Point

from ..models.domain import GeoPoint

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Compute distance between two coordinates using the Haversine formula."""

    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def distance_km(a: GeoPoint, b: GeoPoint) -> float:
    return haversine_km(a.latitude, a.longitude, b.latitude, b.longitude)


def bearing_degrees(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Calculate the initial bearing from (lat1, lon1) to (lat2, lon2)."""

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_lambda = math.radians(lon2 - lon1)
    y = math.sin(delta_lambda) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(delta_lambda)
    bearing = math.degrees(math.atan2(y, x))
    return (bearing + 360) % 360


def centroid(points: Sequence[GeoPoint]) -> GeoPoint:
    if not points:
        raise ValueError("Cannot compute the centroid of an empty point set.")
    lat = sum(point.latitude for point in points) / len(points)
    lon = sum(point.longitude for point in points) / len(points)
    return GeoPoint(lat, lon)


def max_pairwise_km(points: Sequence[GeoPoint]) -> float:
    """Largest distance between any two of the points (0 for fewer than two)."""
    return max((distance_km(a, b) for a, b in combinations(points, 2)), default=0.0)


def distance_to_path_km(point: GeoPoint, path: Sequence[GeoPoint]) -> float:
    """Distance from a point to the polyline through ``path``.

    Shapely finds the closest point on the line in lon/lat space, the distance itself is
    measured with haversine. Good enough at city scale.
    """
    if not path:
        raise ValueError("Path must contain at least one point.")
    if len(path) == 1:
        return distance_km(point, path[0])
    line = LineString([(p.longitude, p.latitude) for p in path])
    target = Point(point.longitude, point.latitude)
    nearest = line.interpolate(line.project(target))
    return haversine_km(point.latitude, point.longitude, nearest.y, nearest.x)


def project_to_km(points: Sequence[GeoPoint], origin: GeoPoint) -> np.ndarray:
    """Equirectangular projection to (x, y) km around ``origin``; fine for city-sized areas."""
    lat_ref = math.radians(origin.latitude)
    lats = np.radians([p.latitude for p in points])
    lons = np.radians([p.longitude for p in points])
    x = EARTH_RADIUS_KM * (lons - math.radians(origin.longitude)) * math.cos(lat_ref)
    y = EARTH_RADIUS_KM * (lats - lat_ref)
    return np.column_stack([x, y])
