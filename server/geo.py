"""Spatial primitives: haversine distance, accuracy-weighted centroid, radius tests."""

import math
from typing import Iterable, Sequence

from errors import InvalidInput

EARTH_RADIUS_M = 6_371_000

# Weight given to fixes that carry no accuracy estimate (1 / 10 m)
NEUTRAL_ACCURACY_M = 10.0
MIN_ACCURACY_M = 1.0


def _require(value, name: str) -> float:
    if value is None:
        raise InvalidInput(f"missing {name}")
    return value


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Distance in metres between two WGS-84 points."""
    for value, name in ((lat1, "latitude"), (lon1, "longitude"), (lat2, "latitude"), (lon2, "longitude")):
        _require(value, name)
    rlat1, rlat2 = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = math.sin(dlat / 2) ** 2 + math.cos(rlat1) * math.cos(rlat2) * math.sin(dlon / 2) ** 2
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def distance_m(a, b) -> float:
    """Distance between two objects exposing ``latitude``/``longitude``."""
    if a is None or b is None:
        raise InvalidInput("distance needs two points")
    return haversine_m(a.latitude, a.longitude, b.latitude, b.longitude)


def within_radius(a, b, radius_m: float) -> bool:
    return distance_m(a, b) <= radius_m


def point_weight(point) -> float:
    """Centroid weight of a fix: inverse of its accuracy radius."""
    accuracy = getattr(point, "accuracy", None)
    if accuracy is None:
        accuracy = NEUTRAL_ACCURACY_M
    return 1.0 / max(MIN_ACCURACY_M, accuracy)


def weighted_centroid(points: Iterable) -> tuple[float, float]:
    """Accuracy-weighted mean position of ``points`` as ``(lat, lon)``."""
    if points is None:
        raise InvalidInput("centroid of no points")
    total = lat_sum = lon_sum = 0.0
    count = 0
    for p in points:
        lat = _require(p.latitude, "latitude")
        lon = _require(p.longitude, "longitude")
        w = point_weight(p)
        total += w
        lat_sum += lat * w
        lon_sum += lon * w
        count += 1
    if count == 0:
        raise InvalidInput("centroid of an empty point set")
    return lat_sum / total, lon_sum / total


class RunningCentroid:
    """Incrementally maintained weighted centroid of a growing cluster."""

    def __init__(self):
        self._total = 0.0
        self._lat = 0.0
        self._lon = 0.0

    def add(self, point) -> None:
        w = point_weight(point)
        self._total += w
        self._lat += point.latitude * w
        self._lon += point.longitude * w

    @property
    def latitude(self) -> float:
        return self._lat / self._total

    @property
    def longitude(self) -> float:
        return self._lon / self._total


def path_length_m(points: Sequence) -> float:
    """Polyline length of an ordered sequence of points."""
    return sum(distance_m(a, b) for a, b in zip(points, points[1:]))


def is_valid_coordinate(lat, lon) -> bool:
    if lat is None or lon is None:
        return False
    if math.isnan(lat) or math.isnan(lon):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0
