"""Planar helpers for proximity queries around WGS84 points."""

from __future__ import annotations

import math
from typing import Any, List, Mapping

from lampfinder.models import Coordinates

EARTH_RADIUS_METERS = 6371000.0


def create_buffer_polygon(lat: float, lng: float, buffer_meters: float, num_points: int = 32) -> List[List[float]]:
    """Approximate a circle around ``(lat, lng)`` as a closed ring of ``[lng, lat]`` vertices.

    Degree offsets use an equirectangular approximation, which is accurate to
    well under a metre at the buffer sizes used for lamp lookups.

    Args:
        lat: Latitude of the centre in degrees.
        lng: Longitude of the centre in degrees.
        buffer_meters: Radius of the buffer.
        num_points: Number of distinct vertices; the ring repeats the first one.

    Returns:
        ``num_points + 1`` vertices with the last equal to the first.
    """

    if num_points < 3:
        raise ValueError("num_points must be at least 3")
    lat_offset = math.degrees(buffer_meters / EARTH_RADIUS_METERS)
    lng_offset = math.degrees(buffer_meters / (EARTH_RADIUS_METERS * math.cos(math.radians(lat))))

    ring: List[List[float]] = []
    for index in range(num_points):
        angle = 2 * math.pi * index / num_points
        ring.append([lng + lng_offset * math.cos(angle), lat + lat_offset * math.sin(angle)])
    ring.append(list(ring[0]))
    return ring


def buffer_geometry(lat: float, lng: float, buffer_meters: float, num_points: int = 32, wkid: int = 4326) -> dict:
    """Return an Esri JSON polygon for a circular buffer."""

    return {
        "rings": [create_buffer_polygon(lat, lng, buffer_meters, num_points)],
        "spatialReference": {"wkid": wkid},
    }


def geometry_centroid(geometry: Mapping[str, Any] | None) -> Coordinates | None:
    """Reduce an Esri geometry to a single ``(x, y)`` pair.

    Points use their coordinates directly; polygons use the arithmetic mean of
    the vertices of their first ring. Anything else yields ``None``.
    """

    if not geometry:
        return None
    x, y = geometry.get("x"), geometry.get("y")
    if _is_number(x) and _is_number(y):
        return (float(x), float(y))

    rings = geometry.get("rings")
    if not rings or not isinstance(rings, list):
        return None
    ring = [point for point in rings[0] if isinstance(point, (list, tuple)) and len(point) >= 2]
    if not ring:
        return None
    sum_x = sum(float(point[0]) for point in ring)
    sum_y = sum(float(point[1]) for point in ring)
    return (sum_x / len(ring), sum_y / len(ring))


def haversine_meters(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two WGS84 points in metres."""

    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_METERS * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


__all__ = [
    "EARTH_RADIUS_METERS",
    "buffer_geometry",
    "create_buffer_polygon",
    "geometry_centroid",
    "haversine_meters",
]
