"""
Turns a settled duty chain into the two output documents.

Walks the activities in chain order, tracking where the vehicle is (the
last stop of the previous entry) so that breaks without an explicit
location and repositioning moves know their origin.  The schedule is then
sorted by start time within the duty, filtered to the roster window and
renumbered 1..N.
"""

import logging
from typing import Callable

from routing.directions import DirectionsError, RouteCache
from schedule.activities import (
    ActivityState,
    BreakActivity,
    RepositionActivity,
    SchoolRunActivity,
    TripActivity,
)
from schedule.builder import (
    BuildResult,
    ScheduleEntry,
    break_schedule,
    build_custom_leg,
    build_school_run,
    build_trip,
    last_stop_place,
    reposition_route,
    reposition_schedule,
)
from timetable.clock import RosterWindow, forward_distance, parse_time
from timetable.geometry import Place

logger = logging.getLogger(__name__)


class GenerationError(RuntimeError):
    """The chain produced no schedule rows."""


async def generate_outputs(
    state,
    cache: RouteCache,
    resolve_location: Callable[[str | None], Place | None],
) -> BuildResult:
    out = BuildResult()
    here: Place | None = None

    for activity in state.activities:
        if isinstance(activity, TripActivity):
            if activity.state != ActivityState.RESOLVED:
                continue
            if activity.is_custom:
                leg = activity.custom_leg
                built = build_custom_leg(leg.origin, leg.dest, leg.result, activity.start, activity.end)
                here = leg.dest
            else:
                built = build_trip(
                    state.index,
                    activity.trip_id,
                    activity.extra_stop_ids,
                    activity.dep_override,
                    activity.arr_override,
                )
                here = last_stop_place(built.schedule_data[-1]) or here
            out.extend(built)

        elif isinstance(activity, BreakActivity):
            if activity.start is None:
                continue
            location = resolve_location(activity.location) if activity.location else here
            item = break_schedule(location, activity.start, activity.end, activity.run_name)
            if item is None:
                logger.warning("Break %s has no location; skipped.", activity.id)
                continue
            out.schedule_data.append(item)
            here = location

        elif isinstance(activity, RepositionActivity):
            dest = resolve_location(activity.destination)
            if dest is None or activity.start is None:
                continue
            out.schedule_data.append(reposition_schedule(here, dest, activity.start, activity.end))
            if here is not None:
                try:
                    result = await cache.route(here, dest)
                except DirectionsError as exc:
                    logger.warning("Reposition %s drawn as a straight line: %s", activity.id, exc)
                    result = None
                out.route_data.append(reposition_route(here, dest, result))
            here = dest

        elif isinstance(activity, SchoolRunActivity):
            path = state.run_paths.get(activity.run_path_id)
            if path is None or activity.start is None or activity.end is None:
                continue
            out.extend(build_school_run(path, activity.start, activity.end))
            here = path.end

    if not out.schedule_data:
        raise GenerationError("Nothing to generate: pick at least one trip (breaks need a preceding trip).")

    out.schedule_data = finalize_schedule(out.schedule_data, state.roster)
    logger.info(
        "Generated %d route documents and %d schedule entries.",
        len(out.route_data),
        len(out.schedule_data),
    )
    return out


def in_roster(item: ScheduleEntry, roster: RosterWindow) -> bool:
    """School runs need only overlap the roster; everything else must start inside it."""
    start = parse_time(item.get("startTime"))
    if start is None:
        return False
    if str(item.get("runName", "")).lower().startswith("school"):
        end = parse_time(item.get("endTime"))
        return roster.overlaps(start, end if end is not None else start)
    return roster.contains(start)


def finalize_schedule(entries: list[ScheduleEntry], roster: RosterWindow | None) -> list[ScheduleEntry]:
    """Sort by start time within the duty, drop entries outside the roster, renumber."""
    anchor = roster.start if roster else 0

    def key(item: ScheduleEntry) -> tuple[int, int]:
        t = parse_time(item.get("startTime"))
        return (1, 0) if t is None else (0, forward_distance(anchor, t))

    ordered = sorted(entries, key=key)
    if roster is not None:
        ordered = [item for item in ordered if in_roster(item, roster)]
    return [{**item, "runNo": str(i)} for i, item in enumerate(ordered, start=1)]
