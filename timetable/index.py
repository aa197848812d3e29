"""
In-memory lookups over decoded GTFS tables.

Built once per feed load and shared by the selector, composer, schedule
builder and duty chain:

  stops               stop_id → Stop
  route_ids           distinct route_ids from trips.txt, natural-sorted
  trips               trip_id → Trip (in table order)
  stop_times_by_trip  trip_id → [StopTime] sorted by stop_sequence
  endpoints           trip_id → TripEndpoints (min/max stop_sequence stops)
  shapes              shape_id → [(lat, lon)] sorted by shape_pt_sequence

Rows with a missing identifier or an unparsable sequence number are skipped
silently; building the index never raises on row content.
"""

import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from timetable.geometry import LatLon

logger = logging.getLogger(__name__)

_TRUE_FLAGS = {"1", "true", "t", "yes", "y"}
_FALSE_FLAGS = {"0", "false", "f", "no", "n"}


@dataclass(frozen=True)
class Stop:
    stop_id: str
    name: str
    lat: float | None
    lon: float | None


@dataclass(frozen=True)
class RouteInfo:
    route_id: str
    short_name: str = ""
    long_name: str = ""


@dataclass(frozen=True)
class Trip:
    trip_id: str
    route_id: str
    direction_id: int | None  # blank in the feed; read as 0
    shape_id: str
    headsign: str = ""


@dataclass(frozen=True)
class StopTime:
    trip_id: str
    stop_id: str
    sequence: int
    arrival_time: str
    departure_time: str
    timepoint: int = 1  # 1 = exact, 0 = approximate


@dataclass(frozen=True)
class TripEndpoints:
    start_stop_id: str
    end_stop_id: str
    start_name: str
    end_name: str


@dataclass
class TableIndex:
    stops: dict[str, Stop] = field(default_factory=dict)
    routes: dict[str, RouteInfo] = field(default_factory=dict)
    route_ids: list[str] = field(default_factory=list)
    trips: dict[str, Trip] = field(default_factory=dict)
    stop_times_by_trip: dict[str, list[StopTime]] = field(default_factory=dict)
    endpoints: dict[str, TripEndpoints] = field(default_factory=dict)
    shapes: dict[str, list[LatLon]] = field(default_factory=dict)

    @classmethod
    def from_tables(cls, tables: Any) -> "TableIndex":
        """Build every lookup from a GtfsTables-like object of DataFrames."""
        index = cls()
        index.stops = _index_stops(_records(tables.stops))
        index.routes = _index_routes(_records(tables.routes))
        index.trips = _index_trips(_records(tables.trips))
        index.route_ids = sorted(
            {t.route_id for t in index.trips.values()}, key=natural_key
        )
        stop_time_rows = _records(tables.stop_times)
        index.stop_times_by_trip = _index_stop_times(stop_time_rows)
        index.endpoints = build_trip_endpoints(stop_time_rows, index.stops)
        index.shapes = _index_shapes(_records(tables.shapes))
        return index

    def trips_for_route(self, route_id: str) -> list[Trip]:
        return [t for t in self.trips.values() if t.route_id == route_id]

    def stop_times(self, trip_id: str) -> list[StopTime]:
        return self.stop_times_by_trip.get(trip_id, [])

    def shape(self, shape_id: str) -> list[LatLon]:
        return self.shapes.get(shape_id, [])

    def route_label(self, route_id: str) -> str:
        """Route id followed by its short (or long) name when the feed has one."""
        info = self.routes.get(route_id)
        nice = (info.short_name or info.long_name) if info else ""
        return f"{route_id} — {nice}" if nice else route_id


def natural_key(value: str) -> list:
    """Sort key treating digit runs numerically and ignoring case ("R2" < "R10")."""
    return [
        (0, int(part)) if part.isdigit() else (1, part.lower())
        for part in re.split(r"(\d+)", str(value))
        if part != ""
    ]


def to_timepoint(value: Any) -> int:
    """
    GTFS timepoint flag → 1 (exact) or 0 (approximate).
    Omitted or unrecognised values default to exact.
    """
    if value is None:
        return 1
    s = str(value).strip().lower()
    if s == "":
        return 1
    if s in _TRUE_FLAGS:
        return 1
    if s in _FALSE_FLAGS:
        return 0
    try:
        return 1 if float(s) else 0
    except ValueError:
        return 1


def build_trip_endpoints(
    stop_time_rows: list[dict[str, Any]], stops: dict[str, Stop]
) -> dict[str, TripEndpoints]:
    """
    One pass over stop_times tracking, per trip, the stop at the minimum and
    maximum stop_sequence.
    """
    # trip_id → [min_seq, start_stop_id, max_seq, end_stop_id]
    agg: dict[str, list] = {}
    for row in stop_time_rows:
        trip_id = _text(row.get("trip_id"))
        stop_id = _text(row.get("stop_id"))
        seq = _int(row.get("stop_sequence"))
        if not trip_id or not stop_id or seq is None:
            continue
        cur = agg.get(trip_id)
        if cur is None:
            agg[trip_id] = [seq, stop_id, seq, stop_id]
            continue
        if seq < cur[0]:
            cur[0], cur[1] = seq, stop_id
        if seq > cur[2]:
            cur[2], cur[3] = seq, stop_id

    out: dict[str, TripEndpoints] = {}
    for trip_id, (_, start_id, _, end_id) in agg.items():
        start, end = stops.get(start_id), stops.get(end_id)
        out[trip_id] = TripEndpoints(
            start_stop_id=start_id,
            end_stop_id=end_id,
            start_name=start.name if start else "",
            end_name=end.name if end else "",
        )
    return out


# ---------------------------------------------------------------------------
# Table → lookup builders
# ---------------------------------------------------------------------------

def _records(df) -> list[dict[str, Any]]:
    if df is None or len(df) == 0:
        return []
    return df.to_dict("records")


def _index_stops(rows: list[dict[str, Any]]) -> dict[str, Stop]:
    stops: dict[str, Stop] = {}
    for row in rows:
        stop_id = _text(row.get("stop_id"))
        if not stop_id:
            continue
        stops[stop_id] = Stop(
            stop_id=stop_id,
            name=_text(row.get("stop_name")),
            lat=_float(row.get("stop_lat")),
            lon=_float(row.get("stop_lon")),
        )
    logger.info("Indexed %d stops.", len(stops))
    return stops


def _index_routes(rows: list[dict[str, Any]]) -> dict[str, RouteInfo]:
    routes: dict[str, RouteInfo] = {}
    for row in rows:
        route_id = _text(row.get("route_id"))
        if not route_id:
            continue
        routes[route_id] = RouteInfo(
            route_id=route_id,
            short_name=_text(row.get("route_short_name")),
            long_name=_text(row.get("route_long_name")),
        )
    return routes


def _index_trips(rows: list[dict[str, Any]]) -> dict[str, Trip]:
    trips: dict[str, Trip] = {}
    skipped = 0
    for row in rows:
        trip_id = _text(row.get("trip_id"))
        route_id = _text(row.get("route_id"))
        if not trip_id or not route_id:
            skipped += 1
            continue
        trips[trip_id] = Trip(
            trip_id=trip_id,
            route_id=route_id,
            direction_id=_int(row.get("direction_id")),
            shape_id=_text(row.get("shape_id")),
            headsign=_text(row.get("trip_headsign")),
        )
    if skipped:
        logger.warning("Skipped %d trips without trip_id or route_id.", skipped)
    logger.info("Indexed %d trips.", len(trips))
    return trips


def _index_stop_times(rows: list[dict[str, Any]]) -> dict[str, list[StopTime]]:
    by_trip: dict[str, list[StopTime]] = defaultdict(list)
    skipped = 0
    for row in rows:
        trip_id = _text(row.get("trip_id"))
        stop_id = _text(row.get("stop_id"))
        seq = _int(row.get("stop_sequence"))
        if not trip_id or not stop_id or seq is None:
            skipped += 1
            continue
        tp = row.get("timepoint")
        if tp is None or _text(tp) == "":
            tp = row.get("time_point")
        by_trip[trip_id].append(StopTime(
            trip_id=trip_id,
            stop_id=stop_id,
            sequence=seq,
            arrival_time=_text(row.get("arrival_time")),
            departure_time=_text(row.get("departure_time")),
            timepoint=to_timepoint(tp),
        ))
    for times in by_trip.values():
        times.sort(key=lambda st: st.sequence)
    if skipped:
        logger.warning("Skipped %d stop_times with missing ids or bad stop_sequence.", skipped)
    logger.info("Indexed stop times for %d trips.", len(by_trip))
    return dict(by_trip)


def _index_shapes(rows: list[dict[str, Any]]) -> dict[str, list[LatLon]]:
    raw: dict[str, list[tuple[int, float, float]]] = defaultdict(list)
    for row in rows:
        shape_id = _text(row.get("shape_id"))
        seq = _int(row.get("shape_pt_sequence"))
        lat = _float(row.get("shape_pt_lat"))
        lon = _float(row.get("shape_pt_lon"))
        if not shape_id or seq is None or lat is None or lon is None:
            continue
        raw[shape_id].append((seq, lat, lon))
    shapes: dict[str, list[LatLon]] = {}
    for shape_id, pts in raw.items():
        pts.sort(key=lambda p: p[0])
        shapes[shape_id] = [(lat, lon) for _, lat, lon in pts]
    logger.info("Indexed %d shapes.", len(shapes))
    return shapes


def _text(value: Any) -> str:
    return "" if value is None else str(value).strip()


def _int(value: Any) -> int | None:
    try:
        return int(float(_text(value)))
    except (ValueError, OverflowError):
        return None


def _float(value: Any) -> float | None:
    try:
        return float(_text(value))
    except ValueError:
        return None
