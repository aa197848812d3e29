"""
FastAPI application entry point.

One planning session is held in-process (module-level DutyPlanner).  Every
edit recomputes the duty chain synchronously and starts any external route
lookups it queued in the background; GET /plan shows them as "resolving"
until they settle.

Endpoints (v1):
  GET    /health
  POST   /feed                               raw GTFS zip body
  POST   /run-paths                          raw GeoJSON body
  GET    /routes
  GET    /routes/{route_id}/departures
  GET    /routes/{route_id}/destinations?dep=<name>
  GET    /routes/{route_id}/geometry?direction_id=<0|1>
  GET    /trips/{trip_id}/timing-points
  PUT    /roster
  GET    /roster/times?after=<HH:MM>
  POST   /custom-stops
  DELETE /custom-stops/{stop_id}
  GET    /plan
  POST   /plan/activities
  PATCH  /plan/activities/{activity_id}
  DELETE /plan/activities/{activity_id}
  POST   /plan/generate
"""

import logging
from dataclasses import asdict

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware

from api.schemas import (
    ActivityPatch,
    CustomStopRequest,
    CustomStopResult,
    GenerateResponse,
    HealthResponse,
    LoadResponse,
    NewActivityRequest,
    PlanResponse,
    RosterRequest,
    RouteDirectionResponse,
    RouteOption,
    RunPathResult,
    TimingPointResult,
)
from config import CORS_ORIGINS
from ingestion.gtfs_static import FeedError
from ingestion.run_paths import RunPathError
from routing.composer import CompositionError
from routing.selector import departure_names, destination_names
from schedule.activities import Activity, BreakActivity, RepositionActivity, TripActivity
from schedule.builder import build_route_direction, trip_timing_points
from schedule.chain import DutyPlanner
from schedule.generate import GenerationError
from timetable.clock import format_hhmm
from timetable.index import TableIndex

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

_planner = DutyPlanner()


def get_planner() -> DutyPlanner:
    return _planner


def _require_index(planner: DutyPlanner) -> TableIndex:
    if planner.state.index is None:
        raise HTTPException(status_code=409, detail="No GTFS feed loaded. POST a zip to /feed first.")
    return planner.state.index


def _require_route(index: TableIndex, route_id: str) -> None:
    if route_id not in index.route_ids:
        raise HTTPException(status_code=404, detail=f"Unknown route: {route_id}")


app = FastAPI(
    title="GTFS Duty Planner",
    description="Builds route geometry and duty schedules from a GTFS feed and a chain of activities.",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------

def _activity_view(activity: Activity) -> dict:
    base = {"kind": activity.kind, "id": activity.id, "state": activity.state.value}
    if isinstance(activity, TripActivity):
        leg = activity.custom_leg
        return {
            **base,
            "route_id": activity.route_id,
            "dep": activity.dep,
            "dest": activity.dest,
            "trip_id": activity.trip_id,
            "dep_time": format_hhmm(activity.dep_time),
            "arr_time": format_hhmm(activity.arr_time),
            "dep_override": format_hhmm(activity.dep_override),
            "arr_override": format_hhmm(activity.arr_override),
            "duration": activity.duration,
            "extra_stop_ids": activity.extra_stop_ids,
            "custom_leg": None if leg is None else {
                "origin": leg.origin.name,
                "destination": leg.dest.name,
                "duration_s": leg.result.duration_s if leg.result else None,
                "distance_m": leg.result.distance_m if leg.result else None,
                "error": leg.error,
            },
        }
    if isinstance(activity, BreakActivity):
        return {
            **base,
            "variant": activity.variant.value,
            "minutes": activity.minutes,
            "location": activity.location,
            "start": format_hhmm(activity.start),
            "end": format_hhmm(activity.end),
        }
    if isinstance(activity, RepositionActivity):
        return {
            **base,
            "minutes": activity.minutes,
            "destination": activity.destination,
            "start": format_hhmm(activity.start),
            "end": format_hhmm(activity.end),
        }
    return {
        **base,
        "run_path_id": activity.run_path_id,
        "start": format_hhmm(activity.start),
        "end": format_hhmm(activity.end),
    }


def _plan_view(planner: DutyPlanner) -> dict:
    roster = planner.state.roster
    return {
        "roster": None if roster is None else {
            "start": format_hhmm(roster.start),
            "end": format_hhmm(roster.end),
            "overnight": roster.overnight,
        },
        "activities": [_activity_view(a) for a in planner.state.activities],
        "pending_lookups": len(planner.pending_lookups) + planner.in_flight,
    }


# ---------------------------------------------------------------------------
# Health & loading
# ---------------------------------------------------------------------------

@app.get("/health", response_model=HealthResponse)
async def health(planner: DutyPlanner = Depends(get_planner)) -> HealthResponse:
    """Whether a feed is loaded, what it holds, and the state of the session."""
    index = planner.state.index
    return {
        "status": "ok",
        "feed": {
            "loaded": index is not None,
            "routes": len(index.route_ids) if index else 0,
            "trips": len(index.trips) if index else 0,
            "stops": len(index.stops) if index else 0,
            "shapes": len(index.shapes) if index else 0,
        },
        "run_paths": len(planner.state.run_paths),
        "custom_stops": len(planner.state.custom_stops),
        "activities": len(planner.state.activities),
        "route_cache_entries": len(planner.cache),
        "lookups_in_flight": planner.in_flight,
    }


@app.post("/feed", response_model=LoadResponse)
async def upload_feed(request: Request, planner: DutyPlanner = Depends(get_planner)) -> LoadResponse:
    """Load a GTFS static zip (raw request body) and re-resolve the chain against it."""
    body = await request.body()
    try:
        index = planner.load_feed(body)
    except FeedError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    planner.dispatch()
    return {
        "status": "ok",
        "message": (
            f"Loaded {len(index.route_ids)} routes, {len(index.trips)} trips, "
            f"{len(index.stops)} stops and {len(index.shapes)} shapes."
        ),
    }


@app.post("/run-paths", response_model=list[RunPathResult])
async def upload_run_paths(request: Request, planner: DutyPlanner = Depends(get_planner)) -> list[RunPathResult]:
    """Load off-network (school) route paths from a GeoJSON FeatureCollection body."""
    body = await request.body()
    try:
        paths = planner.load_run_paths(body)
    except RunPathError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    planner.dispatch()
    return [
        {
            "id": p.id,
            "name": p.name,
            "dep_name": p.dep_name,
            "dest_name": p.dest_name,
            "number": p.number,
            "agency": p.agency,
            "vertices": len(p.coords),
        }
        for p in paths
    ]


# ---------------------------------------------------------------------------
# Feed browsing
# ---------------------------------------------------------------------------

@app.get("/routes", response_model=list[RouteOption])
async def list_routes(planner: DutyPlanner = Depends(get_planner)) -> list[RouteOption]:
    index = _require_index(planner)
    return [{"route_id": r, "label": index.route_label(r)} for r in index.route_ids]


@app.get("/routes/{route_id}/departures", response_model=list[str])
async def route_departures(route_id: str, planner: DutyPlanner = Depends(get_planner)) -> list[str]:
    index = _require_index(planner)
    _require_route(index, route_id)
    return departure_names(index, route_id)


@app.get("/routes/{route_id}/destinations", response_model=list[str])
async def route_destinations(
    route_id: str,
    dep: str | None = Query(None, description="Only destinations of trips leaving this stop name"),
    planner: DutyPlanner = Depends(get_planner),
) -> list[str]:
    index = _require_index(planner)
    _require_route(index, route_id)
    return destination_names(index, route_id, dep)


@app.get("/routes/{route_id}/geometry", response_model=RouteDirectionResponse)
async def route_geometry(
    route_id: str,
    direction_id: int = Query(0, ge=0, le=1),
    planner: DutyPlanner = Depends(get_planner),
) -> RouteDirectionResponse:
    """Aggregated geometry (dominant shape) and per-trip schedule for a route direction."""
    index = _require_index(planner)
    _require_route(index, route_id)
    try:
        built = build_route_direction(index, route_id, direction_id)
    except CompositionError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return {"route_data": built.route_data, "schedule_data": built.schedule_data}


@app.get("/trips/{trip_id}/timing-points", response_model=list[TimingPointResult])
async def timing_points(trip_id: str, planner: DutyPlanner = Depends(get_planner)) -> list[TimingPointResult]:
    index = _require_index(planner)
    if trip_id not in index.trips:
        raise HTTPException(status_code=404, detail=f"Unknown trip: {trip_id}")
    return [asdict(tp) for tp in trip_timing_points(index, trip_id)]


# ---------------------------------------------------------------------------
# Roster & custom stops
# ---------------------------------------------------------------------------

@app.put("/roster", response_model=PlanResponse)
async def set_roster(body: RosterRequest, planner: DutyPlanner = Depends(get_planner)) -> PlanResponse:
    try:
        planner.set_roster(body.start, body.end)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    planner.dispatch()
    return _plan_view(planner)


@app.get("/roster/times", response_model=list[str])
async def roster_times(
    after: str | None = Query(None, description="Only times after this HH:MM within the duty"),
    planner: DutyPlanner = Depends(get_planner),
) -> list[str]:
    try:
        return planner.roster_times(after)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))


@app.post("/custom-stops", response_model=CustomStopResult, status_code=201)
async def add_custom_stop(body: CustomStopRequest, planner: DutyPlanner = Depends(get_planner)) -> CustomStopResult:
    try:
        stop = planner.add_custom_stop(body.name, body.lat, body.lon)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    planner.dispatch()
    return {"id": stop.id, "ref": stop.ref, "name": stop.name, "lat": stop.lat, "lon": stop.lon}


@app.delete("/custom-stops/{stop_id}", status_code=204)
async def remove_custom_stop(stop_id: str, planner: DutyPlanner = Depends(get_planner)) -> None:
    try:
        planner.remove_custom_stop(stop_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown custom stop: {stop_id}")
    planner.dispatch()


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------

@app.get("/plan", response_model=PlanResponse)
async def get_plan(planner: DutyPlanner = Depends(get_planner)) -> PlanResponse:
    return _plan_view(planner)


@app.post("/plan/activities", response_model=PlanResponse, status_code=201)
async def add_activity(body: NewActivityRequest, planner: DutyPlanner = Depends(get_planner)) -> PlanResponse:
    planner.add_activity(body.kind, body.position)
    planner.dispatch()
    return _plan_view(planner)


@app.patch("/plan/activities/{activity_id}", response_model=PlanResponse)
async def update_activity(
    activity_id: str,
    body: ActivityPatch,
    planner: DutyPlanner = Depends(get_planner),
) -> PlanResponse:
    changes = body.model_dump(exclude_unset=True)
    for name in ("minutes", "variant"):
        if changes.get(name, "") is None:
            del changes[name]
    try:
        planner.update_activity(activity_id, **changes)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown activity: {activity_id}")
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    planner.dispatch()
    return _plan_view(planner)


@app.delete("/plan/activities/{activity_id}", response_model=PlanResponse)
async def remove_activity(activity_id: str, planner: DutyPlanner = Depends(get_planner)) -> PlanResponse:
    try:
        planner.remove_activity(activity_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown activity: {activity_id}")
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    planner.dispatch()
    return _plan_view(planner)


@app.post("/plan/generate", response_model=GenerateResponse)
async def generate(planner: DutyPlanner = Depends(get_planner)) -> GenerateResponse:
    """
    Wait for outstanding route lookups, then build the route geometry and
    the roster-filtered duty schedule.
    """
    try:
        built = await planner.generate()
    except (GenerationError, CompositionError) as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return {"route_data": built.route_data, "schedule_data": built.schedule_data}
