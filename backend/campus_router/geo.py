# Pure geographic helpers. No side effects, no settings.
from __future__ import annotations

import math
from collections.abc import Sequence

from .models import CampusBounds, Coordinate

EARTH_RADIUS_KM = 6371.0
WALKING_PACE_KM_PER_MIN = 0.083  # ~5 km/h

# Comparison tolerances in km.
ENDPOINT_TOL_KM = 0.00001  # 1 cm
VERTEX_TOL_KM = 0.001  # 1 m


def distance_km(a: Coordinate, b: Coordinate) -> float:
    """Great-circle (haversine) distance in kilometres."""
    phi1 = math.radians(a.lat)
    phi2 = math.radians(b.lat)
    dphi = phi2 - phi1
    dlambda = math.radians(b.lon - a.lon)
    h = (
        math.sin(dphi / 2.0) ** 2
        + (math.cos(phi1) * math.cos(phi2) * (math.sin(dlambda / 2.0) ** 2))
    )
    return 2.0 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(max(0.0, h))))


def walking_minutes(km: float, pace_km_per_min: float = WALKING_PACE_KM_PER_MIN) -> int:
    """Walking time rounded up to whole minutes."""
    if km <= 0.0:
        return 0
    return int(math.ceil(km / pace_km_per_min))


def inside(coord: Coordinate, bounds: CampusBounds) -> bool:
    return (
        bounds.south_lat <= coord.lat <= bounds.north_lat
        and bounds.west_lon <= coord.lon <= bounds.east_lon
    )


def interpolate(a: Coordinate, b: Coordinate, n: int) -> list[Coordinate]:
    """n+1 evenly spaced points from a to b, both included."""
    steps = max(1, int(n))
    out = [a]
    for i in range(1, steps):
        ratio = i / steps
        out.append(
            Coordinate(
                lat=a.lat + (b.lat - a.lat) * ratio,
                lon=a.lon + (b.lon - a.lon) * ratio,
            )
        )
    out.append(b)
    return out


def same_point(a: Coordinate, b: Coordinate, tol_km: float = VERTEX_TOL_KM) -> bool:
    # Strict: a zero tolerance never matches, even for identical points.
    return distance_km(a, b) < tol_km


def polyline_length_km(coords: Sequence[Coordinate]) -> float:
    return sum(distance_km(coords[i], coords[i + 1]) for i in range(len(coords) - 1))


def dedup_vertices(coords: Sequence[Coordinate], tol_km: float = VERTEX_TOL_KM) -> list[Coordinate]:
    """Drop vertices within tol_km of their predecessor; first and last are kept exactly."""
    if len(coords) <= 1:
        return list(coords)
    first, last = coords[0], coords[-1]
    out: list[Coordinate] = [first]
    for coord in coords[1:-1]:
        if not same_point(out[-1], coord, tol_km):
            out.append(coord)
    # The last point wins over interior vertices sitting on top of it.
    while len(out) > 1 and same_point(out[-1], last, tol_km):
        out.pop()
    if out == [last]:
        return out
    out.append(last)
    return out
