"""
Activity types of a duty chain.

Each kind carries only its own fields; the chain recomputation dispatches on
the concrete type.  Times are minutes-of-day (None = unset).  Location
fields hold either a GTFS stop_id or a "custom:<id>" reference to a
user-defined CustomStop.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar, Union

from config import DEFAULT_BREAK_MINUTES, DEFAULT_REPOSITION_MINUTES
from routing.directions import DirectionsResult
from timetable.clock import duration_label
from timetable.geometry import Place

CUSTOM_PREFIX = "custom:"


class ActivityState(str, Enum):
    UNCONFIGURED = "unconfigured"
    RESOLVING = "resolving"
    RESOLVED = "resolved"
    FAILED = "failed"


class BreakKind(str, Enum):
    BREAK = "break"
    SIGN_ON = "sign_on"
    SIGN_OFF = "sign_off"


_BREAK_RUN_NAMES = {
    BreakKind.BREAK: "Break",
    BreakKind.SIGN_ON: "Sign On",
    BreakKind.SIGN_OFF: "Sign Off",
}


def is_custom_ref(ref: str | None) -> bool:
    return bool(ref) and ref.startswith(CUSTOM_PREFIX)


@dataclass
class CustomStop:
    """A user-defined named point."""

    id: str
    name: str
    lat: float
    lon: float

    @property
    def ref(self) -> str:
        return f"{CUSTOM_PREFIX}{self.id}"

    @property
    def place(self) -> Place:
        return Place(self.name, self.lat, self.lon)


@dataclass
class CustomLeg:
    """External lookup state for a trip that ends at a custom stop."""

    origin: Place
    dest: Place
    result: DirectionsResult | None = None
    error: str = ""

    def serves(self, origin: Place, dest: Place) -> bool:
        return self.origin == origin and self.dest == dest


@dataclass
class TripActivity:
    id: str
    route_id: str = ""
    dep: str = ""        # departure stop name
    dest: str = ""       # destination stop name, or custom:<id>
    dep_override: int | None = None
    arr_override: int | None = None
    extra_stop_ids: list[str] = field(default_factory=list)

    # Resolved by the chain
    trip_id: str = ""
    dep_time: int | None = None
    arr_time: int | None = None
    custom_leg: CustomLeg | None = None
    state: ActivityState = ActivityState.UNCONFIGURED

    kind: ClassVar[str] = "trip"

    @property
    def is_custom(self) -> bool:
        return is_custom_ref(self.dest)

    @property
    def start(self) -> int | None:
        return self.dep_override if self.dep_override is not None else self.dep_time

    @property
    def end(self) -> int | None:
        return self.arr_override if self.arr_override is not None else self.arr_time

    @property
    def duration(self) -> str:
        return duration_label(self.start, self.end)

    def clear_resolved(self) -> None:
        self.trip_id = ""
        self.dep_time = None
        self.arr_time = None


@dataclass
class BreakActivity:
    id: str
    variant: BreakKind = BreakKind.BREAK
    minutes: int = DEFAULT_BREAK_MINUTES
    location: str = ""   # empty: previous activity's end location
    start: int | None = None
    end: int | None = None
    state: ActivityState = ActivityState.UNCONFIGURED

    kind: ClassVar[str] = "break"

    @property
    def run_name(self) -> str:
        return _BREAK_RUN_NAMES[self.variant]


@dataclass
class RepositionActivity:
    id: str
    minutes: int = DEFAULT_REPOSITION_MINUTES
    destination: str = ""
    start: int | None = None
    end: int | None = None
    state: ActivityState = ActivityState.UNCONFIGURED

    kind: ClassVar[str] = "reposition"


@dataclass
class SchoolRunActivity:
    id: str
    run_path_id: str = ""
    start: int | None = None
    end: int | None = None
    state: ActivityState = ActivityState.UNCONFIGURED

    kind: ClassVar[str] = "school"


Activity = Union[TripActivity, BreakActivity, RepositionActivity, SchoolRunActivity]


def chain_end(activity: Activity) -> int | None:
    """The time this activity hands on to the next one, if it has one yet."""
    if isinstance(activity, SchoolRunActivity):
        return activity.end if activity.end is not None else activity.start
    if isinstance(activity, TripActivity) and activity.state != ActivityState.RESOLVED:
        return None
    return activity.end
