"""
Builds the route geometry document for GTFS trips.

Output (one element per composed trip / route-direction):
  {
    "starting_point": {"latitude", "longitude", "address"},
    "next_points": [
      {
        "latitude", "longitude", "address",
        "duration":          "<n>.<d> minutes",   # departure → next departure
        "route_coordinates": [[lon, lat], ...],   # shape slice between stops
      },
      ...
    ],
  }

Each stop is matched to its nearest shape vertex and stops are re-ordered by
that vertex index, so stop_times that are not in geographic order still
produce a forward-running polyline.
"""

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Any

from timetable.clock import parse_seconds
from timetable.geometry import LatLon, nearest_index, slice_polyline, to_lonlat
from timetable.index import StopTime, TableIndex

logger = logging.getLogger(__name__)

RouteDocument = dict[str, Any]


class CompositionError(ValueError):
    """The requested trip or route cannot produce a route document."""


@dataclass
class RouteStop:
    """A stop_time joined with its stop and matched onto the shape."""

    stop_id: str
    name: str
    lat: float
    lon: float
    departure_time: str
    pos: int = 0


def compose_trip(index: TableIndex, trip_id: str) -> RouteDocument:
    """
    Route document for a single trip, matched against its own shape.

    Raises:
        CompositionError: Unknown trip, no stop_times, or a shape with no vertices.
    """
    trip = index.trips.get(trip_id)
    if trip is None:
        raise CompositionError(f"Trip not found: {trip_id}")
    times = index.stop_times(trip_id)
    if not times:
        raise CompositionError(f"No stop_times for trip {trip_id}")
    shape = index.shape(trip.shape_id)
    if not shape:
        raise CompositionError(f"No shapes found for shape_id={trip.shape_id}")

    stops = _join_stops(index, times)
    return _compose(stops, shape)


def compose_route_direction(index: TableIndex, route_id: str, direction_id: int) -> RouteDocument:
    """
    Route document for every trip of route_id/direction_id merged onto the
    shape used by the most trips.

    Raises:
        CompositionError: No stop_time-bearing trips, or the chosen shape has no vertices.
    """
    trips = [
        t for t in index.trips_for_route(route_id)
        if (t.direction_id or 0) == direction_id and index.stop_times(t.trip_id)
    ]
    if not trips:
        raise CompositionError(
            f"No stop_times found for route_id={route_id} direction_id={direction_id}"
        )

    shape_id = choose_shape(t.shape_id for t in trips)
    shape = index.shape(shape_id)
    if not shape:
        raise CompositionError(f"No shapes found for shape_id={shape_id}")
    logger.info(
        "Composing route %s direction %d from %d trips on shape %s.",
        route_id, direction_id, len(trips), shape_id,
    )

    stops: list[RouteStop] = []
    for t in trips:
        stops.extend(_join_stops(index, index.stop_times(t.trip_id)))
    return _compose(stops, shape)


def choose_shape(shape_ids) -> str:
    """Most frequent shape id; ties go to the one seen first."""
    counts = Counter(shape_ids)
    return counts.most_common(1)[0][0]


def _join_stops(index: TableIndex, times: list[StopTime]) -> list[RouteStop]:
    """Attach stop coordinates; stop_times whose stop is unknown or unlocated are dropped."""
    joined: list[RouteStop] = []
    for st in times:
        stop = index.stops.get(st.stop_id)
        if stop is None or stop.lat is None or stop.lon is None:
            logger.warning("Stop %s on trip %s has no coordinates; skipped.", st.stop_id, st.trip_id)
            continue
        joined.append(RouteStop(
            stop_id=st.stop_id,
            name=stop.name,
            lat=stop.lat,
            lon=stop.lon,
            departure_time=st.departure_time,
        ))
    return joined


def _compose(stops: list[RouteStop], shape: list[LatLon]) -> RouteDocument:
    for rs in stops:
        rs.pos = nearest_index((rs.lat, rs.lon), shape)
    stops.sort(key=lambda rs: rs.pos)
    if not stops:
        raise CompositionError("None of the trip's stops have coordinates.")

    next_points = []
    for prev, nxt in zip(stops, stops[1:]):
        next_points.append({
            "latitude": nxt.lat,
            "longitude": nxt.lon,
            "address": nxt.name,
            "duration": format_minutes(_travel_minutes(prev.departure_time, nxt.departure_time)),
            "route_coordinates": to_lonlat(slice_polyline(shape, prev.pos, nxt.pos)),
        })

    first = stops[0]
    return {
        "starting_point": {
            "latitude": first.lat,
            "longitude": first.lon,
            "address": first.name,
        },
        "next_points": next_points,
    }


def _travel_minutes(dep_a: str, dep_b: str) -> float:
    a, b = parse_seconds(dep_a), parse_seconds(dep_b)
    if a is None or b is None:
        return 0.0
    return max(0.0, (b - a) / 60)


def format_minutes(minutes: float) -> str:
    return f"{minutes:.1f} minutes"
