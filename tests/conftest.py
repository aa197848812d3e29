"""
Shared fixtures: a small GTFS feed built in memory.

Route R1 (short name "10") runs Central Station → Hospital in direction 0
along shape SH1 and back in direction 1 along SH2:

  trip  dir  departs  arrives
  T1    0    06:15    06:45
  T2    0    07:00    07:30
  T3    0    08:00    08:30
  T9    0    23:50    24:20 (00:20)
  T4    1    06:50    07:20

Each trip calls at S1 Central Station, S2 Queen St (timepoint 0),
S3 Park Rd (timepoint blank → exact) and S4 Hospital, ten minutes apart.
Route R2 has no routes.txt row and a single trip T7 Park Rd → Queen St.
"""

import io
import zipfile

import pytest

from ingestion.gtfs_static import load_feed

STOPS = [
    ("S1", "Central Station", "-36.8500", "174.7600"),
    ("S2", "Queen St", "-36.8510", "174.7610"),
    ("S3", "Park Rd", "-36.8520", "174.7620"),
    ("S4", "Hospital", "-36.8530", "174.7630"),
    ("S5", "Unmapped", "", ""),
]

SHAPE_SH1 = [
    (-36.8500, 174.7600),
    (-36.8505, 174.7605),
    (-36.8510, 174.7610),
    (-36.8520, 174.7620),
    (-36.8530, 174.7630),
]

TRIPS = [
    # trip_id, route_id, direction_id, shape_id, stop order, first departure (minutes)
    ("T1", "R1", "0", "SH1", ["S1", "S2", "S3", "S4"], 6 * 60 + 15),
    ("T2", "R1", "0", "SH1", ["S1", "S2", "S3", "S4"], 7 * 60),
    ("T3", "R1", "0", "SH1", ["S1", "S2", "S3", "S4"], 8 * 60),
    ("T9", "R1", "0", "SH1", ["S1", "S2", "S3", "S4"], 23 * 60 + 50),
    ("T4", "R1", "1", "SH2", ["S4", "S3", "S2", "S1"], 6 * 60 + 50),
    ("T7", "R2", "0", "SH2", ["S3", "S2"], 9 * 60),
]

TIMEPOINTS = {"S2": "0", "S3": ""}


def gtfs_time(minutes: int) -> str:
    """Minutes since service-day start → GTFS HH:MM:SS (hours may exceed 23)."""
    return f"{minutes // 60:02d}:{minutes % 60:02d}:00"


def csv_text(header: list[str], rows: list[tuple]) -> str:
    lines = [",".join(header)]
    lines += [",".join(str(v) for v in row) for row in rows]
    return "\n".join(lines) + "\n"


def feed_files() -> dict[str, str]:
    stop_times = []
    for trip_id, _, _, _, stop_ids, first in TRIPS:
        for i, stop_id in enumerate(stop_ids):
            t = gtfs_time(first + 10 * i)
            stop_times.append((trip_id, t, t, stop_id, i + 1, TIMEPOINTS.get(stop_id, "1")))

    shapes = []
    for seq, (lat, lon) in enumerate(SHAPE_SH1, start=1):
        shapes.append(("SH1", lat, lon, seq))
    for seq, (lat, lon) in enumerate(reversed(SHAPE_SH1), start=1):
        shapes.append(("SH2", lat, lon, seq))

    return {
        "stops.txt": csv_text(["stop_id", "stop_name", "stop_lat", "stop_lon"], STOPS),
        "routes.txt": csv_text(
            ["route_id", "route_short_name", "route_long_name"],
            [("R1", "10", "Central to Hospital")],
        ),
        "trips.txt": csv_text(
            ["route_id", "service_id", "trip_id", "direction_id", "shape_id"],
            [(route, "WK", trip, direction, shape) for trip, route, direction, shape, _, _ in TRIPS],
        ),
        "stop_times.txt": csv_text(
            ["trip_id", "arrival_time", "departure_time", "stop_id", "stop_sequence", "timepoint"],
            stop_times,
        ),
        "shapes.txt": csv_text(
            ["shape_id", "shape_pt_lat", "shape_pt_lon", "shape_pt_sequence"], shapes
        ),
    }


def make_zip(files: dict[str, str]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, text in files.items():
            zf.writestr(name, text)
    return buf.getvalue()


@pytest.fixture
def files() -> dict[str, str]:
    return feed_files()


@pytest.fixture
def feed_zip() -> bytes:
    return make_zip(feed_files())


@pytest.fixture
def index(feed_zip):
    return load_feed(feed_zip)
