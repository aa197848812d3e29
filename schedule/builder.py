"""
Schedule entries for every kind of duty activity.

A schedule entry is the JSON-ready dict

  {
    "runNo": str, "startTime": "HH:MM", "endTime": "HH:MM", "runName": str,
    "busStops": [
      {"name", "time", "latitude", "longitude", "address", "abbreviation",
       "time_point"?},
      ...
    ],
  }

Builders that also produce geometry return a BuildResult pairing the route
document(s) with the schedule entries.  runNo is left empty for every
non-trip entry; output generation renumbers the final list.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from ingestion.run_paths import RunPath
from routing.composer import (
    CompositionError,
    RouteDocument,
    compose_route_direction,
    compose_trip,
    format_minutes,
)
from routing.directions import DirectionsResult
from routing.selector import trip_times
from timetable.clock import format_hhmm, parse_time
from timetable.geometry import Place
from timetable.index import StopTime, TableIndex

logger = logging.getLogger(__name__)

ScheduleEntry = dict[str, Any]


@dataclass
class BuildResult:
    route_data: list[RouteDocument] = field(default_factory=list)
    schedule_data: list[ScheduleEntry] = field(default_factory=list)

    def extend(self, other: "BuildResult") -> None:
        self.route_data.extend(other.route_data)
        self.schedule_data.extend(other.schedule_data)


@dataclass(frozen=True)
class TimingPoint:
    stop_id: str
    name: str
    sequence: int
    time: str
    timepoint: int
    automatic: bool


def abbreviate(name: str | None) -> str:
    """
    Short label for a stop address: "Main St / 5th Ave" → "MS/5A".

    Each "/"-separated part that is already a single upper-case token passes
    through; otherwise a leading "Stop " is dropped and the first letter of
    each word (split on whitespace and hyphens) is kept.
    """
    if not name:
        return ""
    parts = []
    for part in name.split("/"):
        part = part.strip()
        if part == part.upper() and " " not in part:
            parts.append(part)
            continue
        if part.lower().startswith("stop "):
            part = part[5:]
        words = [w for w in part.replace("-", " ").split() if w]
        parts.append("".join(w[0].upper() for w in words))
    return "/".join(parts)


def bus_stop(
    name: str,
    time: str,
    place: Place | None,
    address: str | None = None,
    time_point: int | None = None,
) -> dict[str, Any]:
    address = address if address is not None else (place.name if place else "")
    stop = {
        "name": name,
        "time": time,
        "latitude": place.lat if place else None,
        "longitude": place.lon if place else None,
        "address": address,
        "abbreviation": abbreviate(address),
    }
    if time_point is not None:
        stop["time_point"] = time_point
    return stop


def entry(run_name: str, start: int | None, end: int | None, stops: list, run_no: str = "") -> ScheduleEntry:
    return {
        "runNo": run_no,
        "startTime": format_hhmm(start),
        "endTime": format_hhmm(end),
        "runName": run_name,
        "busStops": stops,
    }


def last_stop_place(item: ScheduleEntry) -> Place | None:
    """Location of an entry's final bus stop, used as the next activity's origin."""
    stops = item.get("busStops") or []
    if not stops:
        return None
    s = stops[-1]
    if s.get("latitude") is None or s.get("longitude") is None:
        return None
    return Place(s.get("address") or "", s["latitude"], s["longitude"])


# ---------------------------------------------------------------------------
# GTFS trips
# ---------------------------------------------------------------------------

def _stop_time_text(st: StopTime, last: bool) -> str:
    raw = (st.arrival_time or st.departure_time) if last else (st.departure_time or st.arrival_time)
    return format_hhmm(parse_time(raw))


def _stop_place(index: TableIndex, stop_id: str) -> Place | None:
    stop = index.stops.get(stop_id)
    if stop is None or stop.lat is None or stop.lon is None:
        return None
    return Place(stop.name, stop.lat, stop.lon)


def trip_schedule(
    index: TableIndex,
    trip_id: str,
    extra_stop_ids: Iterable[str] = (),
    start_override: int | None = None,
    end_override: int | None = None,
) -> ScheduleEntry:
    """
    Schedule entry for one trip, keeping the first and last stop, exact
    timepoints and any explicitly requested extra stops.

    Overrides replace only the first and last stop times (and the entry's
    start/end); intermediate timepoints keep their timetable values.

    Raises:
        CompositionError: Unknown trip or no stop_times.
    """
    trip = index.trips.get(trip_id)
    if trip is None:
        raise CompositionError(f"Trip not found: {trip_id}")
    times = index.stop_times(trip_id)
    if not times:
        raise CompositionError(f"No stop_times for trip {trip_id}")

    extras = set(extra_stop_ids)
    last_idx = len(times) - 1
    stops = []
    for j, st in enumerate(times):
        is_first, is_last = j == 0, j == last_idx
        if not (is_first or is_last or st.timepoint == 1 or st.stop_id in extras):
            continue
        name = "Stop S" if is_first else "Stop E" if is_last else f"Stop {j}"
        stop = index.stops.get(st.stop_id)
        stops.append(bus_stop(
            name,
            _stop_time_text(st, is_last),
            _stop_place(index, st.stop_id),
            address=stop.name if stop else "",
        ))

    dep_raw, arr_raw = trip_times(times)
    start = start_override if start_override is not None else parse_time(dep_raw)
    end = end_override if end_override is not None else parse_time(arr_raw)
    if start_override is not None:
        stops[0]["time"] = format_hhmm(start_override)
    if end_override is not None:
        stops[-1]["time"] = format_hhmm(end_override)

    info = index.routes.get(trip.route_id)
    run_no = (info.short_name or info.long_name) if info else ""
    return entry(trip.route_id, start, end, stops, run_no=run_no or trip.route_id)


def build_trip(
    index: TableIndex,
    trip_id: str,
    extra_stop_ids: Iterable[str] = (),
    start_override: int | None = None,
    end_override: int | None = None,
) -> BuildResult:
    """Route document plus schedule entry for a single resolved trip."""
    return BuildResult(
        route_data=[compose_trip(index, trip_id)],
        schedule_data=[trip_schedule(index, trip_id, extra_stop_ids, start_override, end_override)],
    )


def build_route_direction(index: TableIndex, route_id: str, direction_id: int) -> BuildResult:
    """
    Aggregated geometry for route+direction plus one "Route i" entry per
    StopTime-bearing trip, listing every stop.
    """
    doc = compose_route_direction(index, route_id, direction_id)
    schedule = []
    trips = [
        t for t in index.trips_for_route(route_id)
        if (t.direction_id or 0) == direction_id and index.stop_times(t.trip_id)
    ]
    for i, trip in enumerate(trips, start=1):
        times = index.stop_times(trip.trip_id)
        stops = []
        for j, st in enumerate(times, start=1):
            stop = index.stops.get(st.stop_id)
            stops.append(bus_stop(
                f"Stop {j}",
                format_hhmm(parse_time(st.departure_time)),
                _stop_place(index, st.stop_id),
                address=stop.name if stop else "",
                time_point=st.timepoint,
            ))
        dep_raw, arr_raw = trip_times(times)
        schedule.append(entry(
            route_id, parse_time(dep_raw), parse_time(arr_raw), stops, run_no=f"Route {i}"
        ))
    logger.info("Built %d schedule entries for route %s direction %d.", len(schedule), route_id, direction_id)
    return BuildResult(route_data=[doc], schedule_data=schedule)


def trip_timing_points(index: TableIndex, trip_id: str) -> list[TimingPoint]:
    """
    Every stop of a trip with its timetable flag.  `automatic` marks the
    exact timepoints that are always kept; first and last stops are kept
    regardless and so are never reported as automatic.
    """
    times = index.stop_times(trip_id)
    last_idx = len(times) - 1
    out = []
    for j, st in enumerate(times):
        stop = index.stops.get(st.stop_id)
        out.append(TimingPoint(
            stop_id=st.stop_id,
            name=stop.name if stop else "",
            sequence=st.sequence,
            time=_stop_time_text(st, j == last_idx),
            timepoint=st.timepoint,
            automatic=st.timepoint == 1 and 0 < j < last_idx,
        ))
    return out


# ---------------------------------------------------------------------------
# Non-trip activities
# ---------------------------------------------------------------------------

def break_schedule(location: Place | None, start: int, end: int, run_name: str = "Break") -> ScheduleEntry | None:
    """Single-stop entry at the break location; None when there is nowhere to put it."""
    if location is None:
        return None
    return entry(run_name, start, end, [bus_stop("Stop E", format_hhmm(end), location)])


def reposition_schedule(origin: Place | None, dest: Place, start: int, end: int) -> ScheduleEntry:
    stops = []
    if origin is not None:
        stops.append(bus_stop("Stop S", format_hhmm(start), origin, time_point=1))
    stops.append(bus_stop("Stop E", format_hhmm(end), dest, time_point=1))
    return entry("REP", start, end, stops)


def _pin_endpoints(coords: list[list[float]], origin: Place, dest: Place) -> list[list[float]]:
    """Make the polyline begin exactly at origin and end exactly at dest."""
    coords = [list(c) for c in coords]
    if not coords:
        return [origin.lonlat, dest.lonlat]
    if coords[0] != origin.lonlat:
        coords.insert(0, origin.lonlat)
    if coords[-1] != dest.lonlat:
        coords.append(dest.lonlat)
    return coords


def reposition_route(origin: Place, dest: Place, result: DirectionsResult | None) -> RouteDocument:
    """
    Geometry for a repositioning move.  Without a routing result the move is
    drawn as a straight line with a zero duration.
    """
    if result is None:
        coords = [origin.lonlat, dest.lonlat]
        minutes = 0.0
    else:
        coords = _pin_endpoints(result.coords, origin, dest)
        minutes = result.duration_s / 60
    return {
        "starting_point": {"latitude": origin.lat, "longitude": origin.lon, "address": origin.name},
        "next_points": [{
            "latitude": dest.lat,
            "longitude": dest.lon,
            "address": dest.name,
            "duration": format_minutes(minutes),
            "route_coordinates": coords,
        }],
    }


def build_school_run(path: RunPath, start: int | None, end: int | None) -> BuildResult:
    """Off-network run: the full path as per-segment waypoints with no segment durations."""
    next_points = []
    for (a_lat, a_lon), (b_lat, b_lon) in zip(path.coords, path.coords[1:]):
        next_points.append({
            "latitude": b_lat,
            "longitude": b_lon,
            "address": "",
            "duration": "",
            "route_coordinates": [[a_lon, a_lat], [b_lon, b_lat]],
        })
    doc = {
        "starting_point": {
            "latitude": path.start.lat,
            "longitude": path.start.lon,
            "address": path.start.name,
        },
        "next_points": next_points,
    }
    stops = [
        bus_stop("Stop S", format_hhmm(start), path.start, address=path.dep_name, time_point=1),
        bus_stop("Stop E", format_hhmm(end), path.end, address=path.dest_name, time_point=1),
    ]
    run_name = f"School {path.number}" if path.number else "School"
    return BuildResult(route_data=[doc], schedule_data=[entry(run_name, start, end, stops)])


def build_custom_leg(origin: Place, dest: Place, result: DirectionsResult, dep: int, arr: int) -> BuildResult:
    """Point-to-point leg between a network stop and a user-defined location."""
    doc = {
        "starting_point": {"latitude": origin.lat, "longitude": origin.lon, "address": origin.name},
        "next_points": [{
            "latitude": dest.lat,
            "longitude": dest.lon,
            "address": dest.name,
            "duration": format_minutes(result.duration_s / 60),
            "route_coordinates": _pin_endpoints(result.coords, origin, dest),
        }],
    }
    stops = [
        bus_stop("Stop S", format_hhmm(dep), origin, time_point=1),
        bus_stop("Stop E", format_hhmm(arr), dest, time_point=1),
    ]
    return BuildResult(route_data=[doc], schedule_data=[entry("Custom", dep, arr, stops)])
