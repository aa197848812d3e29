"""
Decodes off-network route paths (school runs) from a GeoJSON FeatureCollection.

Each usable line feature becomes one RunPath:
  id          "school:" + ROUTEPATTERN | OBJECTID | random uuid
  name        ROUTENAME | ROUTENUMBER | id
  dep/dest    "<dep> to <dest>" split out of the name, else the whole name
  coords      all line parts concatenated, as (lat, lon)
  start/end   first and last vertex, named after dep/dest

Features whose geometry is not a LineString/MultiLineString, or that carry
no vertices, are skipped.
"""

import json
import logging
import re
import uuid
from dataclasses import dataclass, field

from timetable.geometry import LatLon, Place

logger = logging.getLogger(__name__)

_NAME_SPLIT = re.compile(r"^(.*?)\s+to\s+(.*)$", re.IGNORECASE)


class RunPathError(ValueError):
    """The upload is not a FeatureCollection with at least one usable line."""


@dataclass(frozen=True)
class RunPath:
    id: str
    name: str
    dep_name: str
    dest_name: str
    start: Place
    end: Place
    coords: list[LatLon] = field(default_factory=list)
    number: str = ""
    agency: str = ""


def parse_run_paths(payload: str | bytes) -> list[RunPath]:
    """
    Raises:
        RunPathError: Invalid JSON, not a FeatureCollection, or no usable features.
    """
    try:
        doc = json.loads(payload)
    except ValueError as exc:
        raise RunPathError(f"Invalid GeoJSON: {exc}") from exc
    if not isinstance(doc, dict) or doc.get("type") != "FeatureCollection":
        raise RunPathError("Invalid GeoJSON: expected a FeatureCollection.")

    paths: list[RunPath] = []
    skipped = 0
    for feature in doc.get("features") or []:
        path = _to_run_path(feature)
        if path is None:
            skipped += 1
            continue
        paths.append(path)

    if skipped:
        logger.warning("Skipped %d features without a usable line geometry.", skipped)
    if not paths:
        raise RunPathError("No line features found in the GeoJSON.")
    logger.info("Loaded %d run paths.", len(paths))
    return paths


def _to_run_path(feature) -> RunPath | None:
    if not isinstance(feature, dict):
        return None
    coords = _line_vertices(feature.get("geometry"))
    if not coords:
        return None

    props = feature.get("properties") or {}
    raw_id = props.get("ROUTEPATTERN") or props.get("OBJECTID") or uuid.uuid4()
    path_id = f"school:{raw_id}"
    name = str(props.get("ROUTENAME") or props.get("ROUTENUMBER") or raw_id)
    dep_name, dest_name = split_route_name(name)

    (s_lat, s_lon), (e_lat, e_lon) = coords[0], coords[-1]
    return RunPath(
        id=path_id,
        name=name,
        dep_name=dep_name,
        dest_name=dest_name,
        start=Place(dep_name, s_lat, s_lon),
        end=Place(dest_name, e_lat, e_lon),
        coords=coords,
        number=str(props.get("ROUTENUMBER") or ""),
        agency=str(props.get("AGENCYNAME") or props.get("AGENCY") or ""),
    )


def split_route_name(name: str) -> tuple[str, str]:
    """Split "Oak Park to Hill School" into ("Oak Park", "Hill School"); otherwise the name twice."""
    m = _NAME_SPLIT.match(name.strip())
    if not m:
        return name, name
    return m.group(1).strip(), m.group(2).strip()


def _line_vertices(geometry) -> list[LatLon]:
    if not isinstance(geometry, dict):
        return []
    kind = geometry.get("type")
    raw = geometry.get("coordinates") or []
    if kind == "LineString":
        parts = [raw]
    elif kind == "MultiLineString":
        parts = raw
    else:
        return []

    out: list[LatLon] = []
    for part in parts:
        for vertex in part or []:
            try:
                lon, lat = float(vertex[0]), float(vertex[1])
            except (TypeError, ValueError, IndexError):
                continue
            out.append((lat, lon))
    return out
