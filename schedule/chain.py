"""
Duty chain engine.

A DutyPlanner owns one ChainState: the ordered activity list plus everything
the activities resolve against (feed index, off-network run paths, custom
stops, roster window).  Every edit recomputes the chain left to right,
threading a single time cursor through it:

  Trip         earliest matching GTFS trip not before the cursor;
               cursor → arrival (or the arrival override)
  Trip→custom  external point-to-point lookup from the departure stop;
               cursor held until the lookup settles
  Break/Sign   start = cursor, end = cursor + minutes
  Reposition   start = cursor, end = cursor + minutes
  School run   user-chosen start/end kept after the cursor and inside
               the roster window

External lookups are queued in an outbox by the (synchronous) recompute
and started by dispatch().  Each lookup carries a token; the latest token
per activity is the only one whose result is applied.  A settled result is
written to its activity and the chain recomputed from that activity.
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any

from config import ROSTER_TIME_STEP_MINUTES
from ingestion.gtfs_static import load_feed
from ingestion.run_paths import RunPath, parse_run_paths
from routing.directions import DirectionsError, DirectionsResult, Lookup, RouteCache, fetch_directions
from routing.selector import resolve_departure_stop, select_trip
from schedule.activities import (
    CUSTOM_PREFIX,
    Activity,
    ActivityState,
    BreakActivity,
    BreakKind,
    CustomLeg,
    CustomStop,
    RepositionActivity,
    SchoolRunActivity,
    TripActivity,
    chain_end,
)
from schedule.builder import BuildResult
from schedule.generate import generate_outputs
from timetable.clock import RosterWindow, add_minutes, format_hhmm, parse_time, ranks_before
from timetable.geometry import Place
from timetable.index import TableIndex

logger = logging.getLogger(__name__)

_EDITABLE = {
    TripActivity: {"route_id", "dep", "dest", "dep_override", "arr_override", "extra_stop_ids"},
    BreakActivity: {"variant", "minutes", "location"},
    RepositionActivity: {"minutes", "destination"},
    SchoolRunActivity: {"run_path_id", "start", "end"},
}


@dataclass
class ChainState:
    activities: list[Activity] = field(default_factory=list)
    roster: RosterWindow | None = None
    index: TableIndex | None = None
    run_paths: dict[str, RunPath] = field(default_factory=dict)
    custom_stops: dict[str, CustomStop] = field(default_factory=dict)


@dataclass(frozen=True)
class PendingLookup:
    activity_id: str
    token: int
    origin: Place
    dest: Place


def parse_optional_time(value: Any) -> int | None:
    """HH:MM text or minutes → minutes-of-day; blank → None; garbage → ValueError."""
    if value is None or value == "":
        return None
    if isinstance(value, int):
        return value % 1440
    minutes = parse_time(value)
    if minutes is None:
        raise ValueError(f"Invalid time: {value!r}")
    return minutes


def _minutes(value: Any) -> int:
    minutes = int(value)
    if minutes < 0:
        raise ValueError("Duration must not be negative.")
    return minutes


class DutyPlanner:
    """Controller for one planning session."""

    def __init__(self, lookup: Lookup = fetch_directions) -> None:
        self.state = ChainState()
        self.cache = RouteCache(lookup)
        self._activity_ids = itertools.count(1)
        self._custom_stop_ids = itertools.count(1)
        self._token_seq = itertools.count(1)
        self._tokens: dict[str, int] = {}
        self._outbox: list[PendingLookup] = []
        self._tasks: set[asyncio.Task] = set()
        self.state.activities.append(self._new_activity("trip"))

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def load_feed(self, zip_bytes: bytes) -> TableIndex:
        """Decode a GTFS zip and re-resolve the chain against it.  FeedError propagates."""
        return self.use_index(load_feed(zip_bytes))

    def use_index(self, index: TableIndex) -> TableIndex:
        self.state.index = index
        self.recompute(0)
        return index

    def load_run_paths(self, payload: str | bytes) -> list[RunPath]:
        paths = parse_run_paths(payload)
        self.state.run_paths = {p.id: p for p in paths}
        self.recompute(0)
        return paths

    def set_roster(self, start: str | None, end: str | None) -> RosterWindow | None:
        """
        Set the roster window from two HH:MM strings; either one blank clears it.

        Raises:
            ValueError: A non-blank value is not a valid time.
        """
        if not start or not end:
            roster = None
        else:
            roster = RosterWindow.parse(start, end)
            if roster is None:
                raise ValueError(f"Invalid roster window: {start!r} to {end!r}")
        self.state.roster = roster
        self.recompute(0)
        return roster

    def roster_times(self, after: str | None = None) -> list[str]:
        """HH:MM values inside the roster window, optionally only those after `after`."""
        roster = self.state.roster
        if roster is None:
            return []
        threshold = parse_optional_time(after)
        return [format_hhmm(t) for t in roster.times(ROSTER_TIME_STEP_MINUTES, threshold)]

    def add_custom_stop(self, name: str, lat: float, lon: float) -> CustomStop:
        name = (name or "").strip()
        if not name:
            raise ValueError("A custom stop needs a name.")
        if not -90 <= lat <= 90 or not -180 <= lon <= 180:
            raise ValueError(f"Coordinates out of range: {lat}, {lon}")
        stop = CustomStop(id=str(next(self._custom_stop_ids)), name=name, lat=lat, lon=lon)
        self.state.custom_stops[stop.id] = stop
        self.recompute(0)
        return stop

    def remove_custom_stop(self, stop_id: str) -> None:
        del self.state.custom_stops[stop_id]
        self.recompute(0)

    def resolve_location(self, ref: str | None) -> Place | None:
        """A GTFS stop_id or custom:<id> reference → Place (None if unknown or unlocated)."""
        if not ref:
            return None
        if ref.startswith(CUSTOM_PREFIX):
            stop = self.state.custom_stops.get(ref[len(CUSTOM_PREFIX):])
            return stop.place if stop else None
        index = self.state.index
        stop = index.stops.get(ref) if index else None
        if stop is None or stop.lat is None or stop.lon is None:
            return None
        return Place(stop.name, stop.lat, stop.lon)

    # ------------------------------------------------------------------
    # Chain editing
    # ------------------------------------------------------------------

    def get(self, activity_id: str) -> Activity:
        return self.state.activities[self._position(activity_id)]

    def _position(self, activity_id: str) -> int:
        for i, a in enumerate(self.state.activities):
            if a.id == activity_id:
                return i
        raise KeyError(activity_id)

    def _new_activity(self, kind: str) -> Activity:
        activity_id = str(next(self._activity_ids))
        if kind == "trip":
            return TripActivity(activity_id)
        if kind in ("break", "sign_on", "sign_off"):
            return BreakActivity(activity_id, variant=BreakKind(kind))
        if kind == "reposition":
            return RepositionActivity(activity_id)
        if kind == "school":
            return SchoolRunActivity(activity_id)
        raise ValueError(f"Unknown activity kind: {kind!r}")

    def add_activity(self, kind: str, position: int | None = None) -> Activity:
        activity = self._new_activity(kind)
        acts = self.state.activities
        if position is None:
            acts.append(activity)
        else:
            acts.insert(max(0, min(position, len(acts))), activity)
        self.recompute(0)
        return activity

    def remove_activity(self, activity_id: str) -> None:
        """
        Raises:
            KeyError:   Unknown activity.
            ValueError: It is the only activity left.
        """
        idx = self._position(activity_id)
        if len(self.state.activities) == 1:
            raise ValueError("At least one activity must remain.")
        del self.state.activities[idx]
        self._tokens.pop(activity_id, None)
        self.recompute(0)

    def update_activity(self, activity_id: str, **changes: Any) -> Activity:
        """
        Apply field edits and recompute from the edited activity.

        Time fields take "HH:MM" strings ("" or None clears).

        Raises:
            KeyError:   Unknown activity.
            ValueError: A field the activity does not have, or an invalid value.
        """
        idx = self._position(activity_id)
        activity = self.state.activities[idx]
        unknown = set(changes) - _EDITABLE[type(activity)]
        if unknown:
            raise ValueError(f"Cannot set {sorted(unknown)} on a {activity.kind} activity.")

        if isinstance(activity, TripActivity):
            self._edit_trip(activity, changes)
        elif isinstance(activity, BreakActivity):
            if "variant" in changes:
                activity.variant = BreakKind(changes["variant"])
            if "minutes" in changes:
                activity.minutes = _minutes(changes["minutes"])
            if "location" in changes:
                activity.location = changes["location"] or ""
        elif isinstance(activity, RepositionActivity):
            if "minutes" in changes:
                activity.minutes = _minutes(changes["minutes"])
            if "destination" in changes:
                activity.destination = changes["destination"] or ""
        elif isinstance(activity, SchoolRunActivity):
            if "run_path_id" in changes:
                activity.run_path_id = changes["run_path_id"] or ""
            if "start" in changes:
                activity.start = parse_optional_time(changes["start"])
            if "end" in changes:
                activity.end = parse_optional_time(changes["end"])

        self.recompute(idx)
        return activity

    def _edit_trip(self, trip: TripActivity, changes: dict[str, Any]) -> None:
        if "route_id" in changes and (changes["route_id"] or "") != trip.route_id:
            trip.route_id = changes["route_id"] or ""
            trip.dep = trip.dest = ""
            trip.dep_override = trip.arr_override = None
            trip.extra_stop_ids = []
            trip.custom_leg = None
            trip.clear_resolved()
        if "dep" in changes and (changes["dep"] or "") != trip.dep:
            trip.dep = changes["dep"] or ""
            trip.dest = ""
            trip.dep_override = trip.arr_override = None
            trip.custom_leg = None
        if "dest" in changes and (changes["dest"] or "") != trip.dest:
            trip.dest = changes["dest"] or ""
            trip.dep_override = trip.arr_override = None
            trip.custom_leg = None
        if "dep_override" in changes:
            trip.dep_override = parse_optional_time(changes["dep_override"])
        if "arr_override" in changes:
            trip.arr_override = parse_optional_time(changes["arr_override"])
        if (
            trip.dep_override is not None
            and trip.arr_override is not None
            and ranks_before(trip.arr_override, trip.dep_override, self._anchor())
        ):
            trip.arr_override = trip.dep_override
        if "extra_stop_ids" in changes:
            trip.extra_stop_ids = list(changes["extra_stop_ids"] or [])

    # ------------------------------------------------------------------
    # Recomputation
    # ------------------------------------------------------------------

    def _anchor(self) -> int:
        return self.state.roster.start if self.state.roster else 0

    def cursor_before(self, idx: int) -> int:
        """End time of the nearest earlier activity that has one, else the roster start."""
        for activity in reversed(self.state.activities[:idx]):
            t = chain_end(activity)
            if t is not None:
                return t
        return self._anchor()

    def recompute(self, start_index: int = 0) -> None:
        acts = self.state.activities
        start_index = max(0, min(start_index, len(acts)))
        cursor = self.cursor_before(start_index)
        for activity in acts[start_index:]:
            if isinstance(activity, TripActivity):
                cursor = self._advance_trip(activity, cursor)
            elif isinstance(activity, BreakActivity):
                activity.start = cursor
                activity.end = add_minutes(cursor, max(0, activity.minutes))
                activity.state = ActivityState.RESOLVED
                cursor = activity.end
            elif isinstance(activity, RepositionActivity):
                activity.start = cursor
                activity.end = add_minutes(cursor, max(0, activity.minutes))
                activity.state = (
                    ActivityState.RESOLVED
                    if self.resolve_location(activity.destination)
                    else ActivityState.UNCONFIGURED
                )
                cursor = activity.end
            elif isinstance(activity, SchoolRunActivity):
                cursor = self._advance_school_run(activity, cursor)
            else:
                raise ValueError(f"Unknown activity type: {type(activity).__name__}")

    def _advance_school_run(self, run: SchoolRunActivity, cursor: int) -> int:
        roster = self.state.roster
        anchor = self._anchor()
        if run.start is None or not ranks_before(cursor, run.start, anchor):
            run.start = cursor
        if roster is not None:
            run.start = roster.clamp(run.start)
        if run.end is not None:
            if roster is not None:
                run.end = roster.clamp(run.end)
            if ranks_before(run.end, run.start, anchor):
                run.end = run.start
        complete = run.run_path_id in self.state.run_paths and run.end is not None
        run.state = ActivityState.RESOLVED if complete else ActivityState.UNCONFIGURED
        return run.end if run.end is not None else run.start

    def _advance_trip(self, trip: TripActivity, cursor: int) -> int:
        roster = self.state.roster
        if roster is not None:
            if trip.dep_override is not None:
                trip.dep_override = roster.clamp(trip.dep_override)
            if trip.arr_override is not None:
                trip.arr_override = roster.clamp(trip.arr_override)

        index = self.state.index
        if index is None or not (trip.route_id and trip.dep and trip.dest):
            self._drop_custom_leg(trip)
            trip.clear_resolved()
            trip.state = ActivityState.UNCONFIGURED
            return cursor

        if trip.is_custom:
            return self._advance_custom_leg(trip, cursor)

        self._drop_custom_leg(trip)
        match = select_trip(index, trip.route_id, trip.dep, trip.dest, roster, not_before=cursor)
        if match is None:
            trip.clear_resolved()
            trip.state = ActivityState.UNCONFIGURED
            return cursor

        if trip.trip_id and trip.trip_id != match.trip_id:
            trip.extra_stop_ids = []
        trip.trip_id = match.trip_id
        trip.dep_time = match.departure
        trip.arr_time = match.arrival
        trip.state = ActivityState.RESOLVED
        end = trip.end
        return end if end is not None else cursor

    def _drop_custom_leg(self, trip: TripActivity) -> None:
        trip.custom_leg = None
        self._tokens.pop(trip.id, None)

    def _advance_custom_leg(self, trip: TripActivity, cursor: int) -> int:
        trip.trip_id = ""
        dep = trip.dep_override if trip.dep_override is not None else cursor
        trip.dep_time = dep
        trip.arr_time = None

        origin = resolve_departure_stop(self.state.index, trip.route_id, trip.dep)
        dest = self.resolve_location(trip.dest)
        if origin is None or dest is None:
            self._drop_custom_leg(trip)
            trip.state = ActivityState.UNCONFIGURED
            return cursor

        leg = trip.custom_leg
        if leg is None or not leg.serves(origin, dest):
            leg = trip.custom_leg = CustomLeg(origin, dest)
            cached = self.cache.peek(origin, dest)
            if isinstance(cached, DirectionsResult):
                leg.result = cached
            elif isinstance(cached, DirectionsError):
                leg.error = str(cached)
            else:
                self._issue(trip.id, origin, dest)

        if leg.result is not None:
            trip.arr_time = add_minutes(dep, round(leg.result.duration_s / 60))
            trip.state = ActivityState.RESOLVED
            return trip.end
        if leg.error:
            trip.state = ActivityState.FAILED
            return cursor
        trip.state = ActivityState.RESOLVING
        return cursor

    # ------------------------------------------------------------------
    # External lookups
    # ------------------------------------------------------------------

    def _issue(self, activity_id: str, origin: Place, dest: Place) -> None:
        token = next(self._token_seq)
        self._tokens[activity_id] = token
        self._outbox.append(PendingLookup(activity_id, token, origin, dest))
        logger.info("Queued route lookup %d for activity %s.", token, activity_id)

    @property
    def pending_lookups(self) -> list[PendingLookup]:
        return list(self._outbox)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def dispatch(self) -> int:
        """Start every queued lookup as a task on the running loop; returns how many started."""
        loop = asyncio.get_running_loop()
        queued, self._outbox = self._outbox, []
        for pending in queued:
            task = loop.create_task(self._run_lookup(pending))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return len(queued)

    async def settle(self) -> None:
        """Run lookups until none are queued or in flight."""
        self.dispatch()
        while self._tasks:
            await asyncio.gather(*list(self._tasks))
            self.dispatch()

    async def _run_lookup(self, pending: PendingLookup) -> None:
        try:
            result = await self.cache.route(pending.origin, pending.dest)
        except DirectionsError as exc:
            self.apply_lookup(pending, None, str(exc) or "Route lookup failed.")
        else:
            self.apply_lookup(pending, result, "")
        self.dispatch()

    def apply_lookup(self, pending: PendingLookup, result: DirectionsResult | None, error: str) -> bool:
        """
        Write a settled lookup into its activity and recompute from there.
        Returns False when the result was discarded as stale.
        """
        if self._tokens.get(pending.activity_id) != pending.token:
            logger.debug("Discarding stale lookup %d for activity %s.", pending.token, pending.activity_id)
            return False
        try:
            idx = self._position(pending.activity_id)
        except KeyError:
            return False
        trip = self.state.activities[idx]
        if not isinstance(trip, TripActivity) or trip.custom_leg is None:
            return False

        if result is not None:
            trip.custom_leg.result = result
        else:
            trip.custom_leg.error = error
            logger.warning("Route lookup for activity %s failed: %s", trip.id, error)
        self.recompute(idx)
        return True

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    async def generate(self) -> BuildResult:
        """
        Settle outstanding lookups, then build both output documents.

        Raises:
            GenerationError: The settled chain produced no schedule rows.
        """
        await self.settle()
        return await generate_outputs(self.state, self.cache, self.resolve_location)
