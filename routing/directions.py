"""
Point-to-point travel lookups (OpenRouteService) with a session-wide memo.

Used for custom legs (network stop → user-defined location) and for the
geometry of repositioning moves.  Every lookup returns a polyline in
[lon, lat] order plus duration (seconds) and distance (metres).

Results, successful or failed, are cached per (origin, destination) pair
for the lifetime of the RouteCache.  Concurrent requests for the same pair
share one underlying call.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

import httpx

from config import ORS_API_KEY, ORS_BASE_URL, ORS_PROFILE, ORS_TIMEOUT_SECONDS
from timetable.geometry import Place

logger = logging.getLogger(__name__)


class DirectionsError(RuntimeError):
    """The routing service could not produce a route for this pair."""


@dataclass(frozen=True)
class DirectionsResult:
    coords: list[list[float]] = field(default_factory=list)  # [lon, lat]
    duration_s: float = 0.0
    distance_m: float = 0.0


Lookup = Callable[[Place, Place], Awaitable[DirectionsResult]]


def cache_key(origin: Place, dest: Place) -> str:
    return f"{origin.lon},{origin.lat}|{dest.lon},{dest.lat}"


async def fetch_directions(origin: Place, dest: Place) -> DirectionsResult:
    """
    Ask OpenRouteService for a route between two places.

    Raises:
        DirectionsError: No API key configured, HTTP/transport failure, or a
                         response without the expected GeoJSON structure.
    """
    if not ORS_API_KEY:
        raise DirectionsError("Routing is not configured: set ORS_API_KEY.")

    url = f"{ORS_BASE_URL}/v2/directions/{ORS_PROFILE}"
    params = {
        "api_key": ORS_API_KEY,
        "start": f"{origin.lon},{origin.lat}",
        "end": f"{dest.lon},{dest.lat}",
    }
    try:
        async with httpx.AsyncClient(timeout=ORS_TIMEOUT_SECONDS) as client:
            resp = await client.get(url, params=params)
            resp.raise_for_status()
    except httpx.HTTPStatusError as exc:
        raise DirectionsError(f"Routing service returned HTTP {exc.response.status_code}.") from exc
    except httpx.HTTPError as exc:
        raise DirectionsError(f"Routing service unreachable: {exc}") from exc

    try:
        return parse_directions(resp.json())
    except ValueError as exc:
        raise DirectionsError(f"Unexpected routing response: {exc}") from exc


def parse_directions(data: dict) -> DirectionsResult:
    """
    Pull geometry and the first segment's totals out of an ORS GeoJSON response.

    Raises:
        ValueError: Any part of the expected structure has the wrong type.
    """
    data = _object(data, "response")
    feature = _object(_first(data.get("features"), "features"), "feature")
    coords = _object(feature.get("geometry"), "geometry", optional=True).get("coordinates") or []
    properties = _object(feature.get("properties"), "properties", optional=True)
    seg = _object(_first(properties.get("segments"), "segments"), "segment")
    try:
        return DirectionsResult(
            coords=[[float(c[0]), float(c[1])] for c in coords],
            duration_s=float(seg.get("duration") or 0),
            distance_m=float(seg.get("distance") or 0),
        )
    except (TypeError, IndexError) as exc:
        raise ValueError(str(exc)) from exc


def _object(value, what: str, optional: bool = False) -> dict:
    if optional and value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{what} is not a JSON object")
    return value


def _first(items, what: str):
    """First element of a JSON array; {} when the array is missing or empty."""
    if not items:
        return {}
    if not isinstance(items, list):
        raise ValueError(f"{what} is not a JSON array")
    return items[0]


class RouteCache:
    """Append-only memo in front of a lookup function."""

    def __init__(self, lookup: Lookup = fetch_directions) -> None:
        self._lookup = lookup
        self._results: dict[str, DirectionsResult | DirectionsError] = {}
        self._inflight: dict[str, asyncio.Future] = {}

    def __len__(self) -> int:
        return len(self._results)

    def peek(self, origin: Place, dest: Place) -> DirectionsResult | DirectionsError | None:
        """Settled outcome for the pair, if any, without issuing a lookup."""
        return self._results.get(cache_key(origin, dest))

    async def route(self, origin: Place, dest: Place) -> DirectionsResult:
        """
        Memoized lookup.  A cached failure is raised again as-is.

        Raises:
            DirectionsError: The (possibly cached) lookup failed.
        """
        key = cache_key(origin, dest)
        cached = self._results.get(key)
        if cached is not None:
            logger.debug("Route cache hit for %s.", key)
            if isinstance(cached, DirectionsError):
                raise cached
            return cached

        pending = self._inflight.get(key)
        if pending is None:
            pending = asyncio.ensure_future(self._settle(key, origin, dest))
            self._inflight[key] = pending
        return await asyncio.shield(pending)

    async def _settle(self, key: str, origin: Place, dest: Place) -> DirectionsResult:
        try:
            result = await self._lookup(origin, dest)
        except DirectionsError as exc:
            logger.warning("Route lookup %s failed: %s", key, exc)
            self._results[key] = exc
            raise
        finally:
            self._inflight.pop(key, None)
        self._results[key] = result
        return result
