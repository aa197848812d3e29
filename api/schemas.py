from __future__ import annotations
from typing import Annotated, Any, Literal
from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# GET /health
# ---------------------------------------------------------------------------

class FeedStats(BaseModel):
    loaded: bool
    routes: int
    trips: int
    stops: int
    shapes: int


class HealthResponse(BaseModel):
    status: Literal["ok"]
    feed: FeedStats
    run_paths: int
    custom_stops: int
    activities: int
    route_cache_entries: int
    lookups_in_flight: int


# ---------------------------------------------------------------------------
# POST /feed, POST /run-paths
# ---------------------------------------------------------------------------

class LoadResponse(BaseModel):
    status: Literal["ok"]
    message: str


class RunPathResult(BaseModel):
    id: str
    name: str
    dep_name: str
    dest_name: str
    number: str
    agency: str
    vertices: int


# ---------------------------------------------------------------------------
# GET /routes, /routes/{route_id}/*
# ---------------------------------------------------------------------------

class RouteOption(BaseModel):
    route_id: str
    label: str


class TimingPointResult(BaseModel):
    stop_id: str
    name: str
    sequence: int
    time: str
    timepoint: int
    automatic: bool


class RouteDirectionResponse(BaseModel):
    route_data: list[dict[str, Any]]
    schedule_data: list[dict[str, Any]]


# ---------------------------------------------------------------------------
# Roster & custom stops
# ---------------------------------------------------------------------------

class RosterRequest(BaseModel):
    start: str | None = Field(None, description="HH:MM; blank clears the roster")
    end: str | None = Field(None, description="HH:MM; blank clears the roster")


class RosterResponse(BaseModel):
    start: str | None
    end: str | None
    overnight: bool


class CustomStopRequest(BaseModel):
    name: str = Field(..., min_length=1)
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)


class CustomStopResult(BaseModel):
    id: str
    ref: str
    name: str
    lat: float
    lon: float


# ---------------------------------------------------------------------------
# GET /plan: activity views
# ---------------------------------------------------------------------------

State = Literal["unconfigured", "resolving", "resolved", "failed"]


class CustomLegView(BaseModel):
    origin: str
    destination: str
    duration_s: float | None
    distance_m: float | None
    error: str


class TripView(BaseModel):
    kind: Literal["trip"]
    id: str
    state: State
    route_id: str
    dep: str
    dest: str
    trip_id: str
    dep_time: str
    arr_time: str
    dep_override: str
    arr_override: str
    duration: str
    extra_stop_ids: list[str]
    custom_leg: CustomLegView | None


class BreakView(BaseModel):
    kind: Literal["break"]
    id: str
    state: State
    variant: Literal["break", "sign_on", "sign_off"]
    minutes: int
    location: str
    start: str
    end: str


class RepositionView(BaseModel):
    kind: Literal["reposition"]
    id: str
    state: State
    minutes: int
    destination: str
    start: str
    end: str


class SchoolRunView(BaseModel):
    kind: Literal["school"]
    id: str
    state: State
    run_path_id: str
    start: str
    end: str


ActivityView = Annotated[
    TripView | BreakView | RepositionView | SchoolRunView, Field(discriminator="kind")
]


class PlanResponse(BaseModel):
    roster: RosterResponse | None
    activities: list[ActivityView]
    pending_lookups: int


# ---------------------------------------------------------------------------
# Plan editing
# ---------------------------------------------------------------------------

class NewActivityRequest(BaseModel):
    kind: Literal["trip", "break", "sign_on", "sign_off", "reposition", "school"]
    position: int | None = Field(None, ge=0, description="Insert position; default appends")


class ActivityPatch(BaseModel):
    """Only the fields present in the request body are applied."""

    route_id: str | None = None
    dep: str | None = None
    dest: str | None = None
    dep_override: str | None = None
    arr_override: str | None = None
    extra_stop_ids: list[str] | None = None
    variant: Literal["break", "sign_on", "sign_off"] | None = None
    minutes: int | None = Field(None, ge=0)
    location: str | None = None
    destination: str | None = None
    run_path_id: str | None = None
    start: str | None = None
    end: str | None = None


class GenerateResponse(BaseModel):
    route_data: list[dict[str, Any]]
    schedule_data: list[dict[str, Any]]
