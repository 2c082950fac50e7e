"""Geodesic distance between WGS-84 points and the radius test built on it."""

import math

from errors import InvalidCoordinate

EARTH_RADIUS_M = 6_371_000


def _coordinate(value, name: str, limit: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise InvalidCoordinate(f"{name} must be a number, got {value!r}") from None
    if not math.isfinite(number):
        raise InvalidCoordinate(f"{name} must be finite, got {value!r}")
    if abs(number) > limit:
        raise InvalidCoordinate(f"{name} {number} out of range [-{limit}, {limit}]")
    return number


def haversine_m(lat1, lon1, lat2, lon2) -> float:
    """Distance in metres between two WGS-84 points (haversine, spherical Earth).

    Accepts anything float() accepts (floats, Decimals, numeric strings).
    """
    lat1 = _coordinate(lat1, "lat1", 90.0)
    lon1 = _coordinate(lon1, "lon1", 180.0)
    lat2 = _coordinate(lat2, "lat2", 90.0)
    lon2 = _coordinate(lon2, "lon2", 180.0)

    rlat1, rlat2 = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = math.sin(dlat / 2) ** 2 + math.cos(rlat1) * math.cos(rlat2) * math.sin(dlon / 2) ** 2
    # rounding can push a a hair outside [0, 1] for antipodal points
    a = min(1.0, max(0.0, a))
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def is_within_radius(distance_m: float, radius_m: float) -> bool:
    """Inclusive: a user exactly on the boundary is present."""
    return distance_m <= radius_m
