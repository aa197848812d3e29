"""
Chooses the scheduled trip that serves one duty-chain Trip activity.

A Trip activity names a route plus a departure and destination by stop
*name* (the names of the trip's first and last stops, from TripEndpoints).
Among the matching trips, the earliest one that departs inside the roster
window and not before the chain cursor wins.

"Earliest" and "not before" are ranked by forward distance from the roster
start (00:00 without a roster), so an overnight duty orders 23:50 before
00:10.  Equal departures fall back to trip_id for a deterministic result.
"""

import logging
from dataclasses import dataclass

from timetable.clock import RosterWindow, forward_distance, parse_time
from timetable.geometry import Place
from timetable.index import StopTime, TableIndex, natural_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TripMatch:
    trip_id: str
    departure: int   # minutes of day
    arrival: int | None
    departure_time: str  # raw GTFS value
    arrival_time: str


def trip_times(rows: list[StopTime]) -> tuple[str, str]:
    """
    (departure, arrival) strings for a sequence-sorted trip: departure at the
    first stop (arrival as fallback), arrival at the last stop (departure as
    fallback).
    """
    first, last = rows[0], rows[-1]
    return (
        first.departure_time or first.arrival_time or "",
        last.arrival_time or last.departure_time or "",
    )


def select_trip(
    index: TableIndex,
    route_id: str,
    dep_name: str,
    dest_name: str,
    roster: RosterWindow | None = None,
    not_before: int | None = None,
) -> TripMatch | None:
    """
    Return the earliest eligible trip on route_id from dep_name to dest_name.

    Returns None when nothing qualifies; callers clear their resolved fields
    rather than treating this as an error.
    """
    if not route_id or not dep_name or not dest_name:
        return None

    anchor = roster.start if roster else 0
    threshold = forward_distance(anchor, not_before) if not_before is not None else None

    best: TripMatch | None = None
    best_key: tuple | None = None
    for trip in index.trips_for_route(route_id):
        ep = index.endpoints.get(trip.trip_id)
        if ep is None or ep.start_name != dep_name or ep.end_name != dest_name:
            continue
        rows = index.stop_times(trip.trip_id)
        if not rows:
            continue

        dep_raw, arr_raw = trip_times(rows)
        dep = parse_time(dep_raw)
        if dep is None:
            continue
        if roster is not None and not roster.contains(dep):
            continue
        rank = forward_distance(anchor, dep)
        if threshold is not None and rank < threshold:
            continue

        key = (rank, natural_key(trip.trip_id))
        if best_key is None or key < best_key:
            best_key = key
            best = TripMatch(
                trip_id=trip.trip_id,
                departure=dep,
                arrival=parse_time(arr_raw),
                departure_time=dep_raw,
                arrival_time=arr_raw,
            )

    if best is None:
        logger.debug(
            "No eligible trip on route %s from %r to %r.", route_id, dep_name, dest_name
        )
    return best


def departure_names(index: TableIndex, route_id: str) -> list[str]:
    """Distinct first-stop names of the route's trips, natural-sorted."""
    names = set()
    for trip in index.trips_for_route(route_id):
        ep = index.endpoints.get(trip.trip_id)
        if ep and ep.start_name:
            names.add(ep.start_name)
    return sorted(names, key=natural_key)


def destination_names(index: TableIndex, route_id: str, dep_name: str | None = None) -> list[str]:
    """Distinct last-stop names of the route's trips, optionally only those leaving dep_name."""
    names = set()
    for trip in index.trips_for_route(route_id):
        ep = index.endpoints.get(trip.trip_id)
        if not ep or not ep.end_name:
            continue
        if dep_name is not None and ep.start_name != dep_name:
            continue
        names.add(ep.end_name)
    return sorted(names, key=natural_key)


def resolve_departure_stop(index: TableIndex, route_id: str, dep_name: str) -> Place | None:
    """
    Coordinates of the network stop a route's trips leave from under dep_name.
    First trip (table order) with usable coordinates wins.
    """
    for trip in index.trips_for_route(route_id):
        ep = index.endpoints.get(trip.trip_id)
        if ep is None or ep.start_name != dep_name:
            continue
        stop = index.stops.get(ep.start_stop_id)
        if stop and stop.lat is not None and stop.lon is not None:
            return Place(name=stop.name or dep_name, lat=stop.lat, lon=stop.lon)
    return None
