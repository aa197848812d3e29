"""
Matching stops onto shape polylines.

Polylines are sequences of (lat, lon) vertices.  Distances are squared
Euclidean in degree space; stops sit close to their shape so no geodesic
correction is applied.
"""

from dataclasses import dataclass
from typing import Sequence

LatLon = tuple[float, float]


@dataclass(frozen=True)
class Place:
    """A named point a vehicle can be at: network stop or user-defined location."""

    name: str
    lat: float
    lon: float

    @property
    def lonlat(self) -> list[float]:
        return [self.lon, self.lat]


def nearest_index(point: LatLon, polyline: Sequence[LatLon]) -> int:
    """
    Index of the polyline vertex closest to point.
    Ties resolve to the earliest vertex; an empty polyline yields 0.
    """
    best = 0
    best_d = float("inf")
    lat, lon = point
    for i, (v_lat, v_lon) in enumerate(polyline):
        d = (v_lon - lon) ** 2 + (v_lat - lat) ** 2
        if d < best_d:
            best_d = d
            best = i
    return best


def slice_polyline(polyline: Sequence[LatLon], i: int, j: int) -> list[LatLon]:
    """Vertices i..j inclusive.  Callers guarantee i <= j."""
    return list(polyline[i:j + 1])


def to_lonlat(points: Sequence[LatLon]) -> list[list[float]]:
    """(lat, lon) vertices → [lon, lat] pairs for GeoJSON-style output."""
    return [[lon, lat] for lat, lon in points]
