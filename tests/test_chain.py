"""
Tests for schedule.chain.DutyPlanner — cursor threading, roster rules,
override side rules and the token-guarded external lookups.

Async behaviour runs under asyncio.run() with a scripted lookup whose calls
can be held open until the test releases them.
"""

import asyncio
import copy

import httpx
import pytest

from routing import directions
from routing.directions import DirectionsError, DirectionsResult
from schedule.activities import ActivityState, BreakKind
from schedule.chain import DutyPlanner
from timetable.clock import parse_time


def hm(text: str) -> int:
    return parse_time(text)


class ScriptedLookup:
    """Point-to-point lookup keyed by destination name; optionally gated."""

    def __init__(self, outcomes: dict):
        self.outcomes = outcomes
        self.gates: dict[str, asyncio.Event] = {}
        self.calls: list[str] = []

    async def __call__(self, origin, dest):
        self.calls.append(dest.name)
        gate = self.gates.get(dest.name)
        if gate is not None:
            await gate.wait()
        outcome = self.outcomes[dest.name]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _planner(index, roster=("06:00", "10:00"), lookup=None) -> DutyPlanner:
    planner = DutyPlanner(lookup) if lookup else DutyPlanner()
    planner.use_index(index)
    if roster:
        planner.set_roster(*roster)
    return planner


def _route_trip(planner, dest="Hospital"):
    trip = planner.state.activities[0]
    planner.update_activity(trip.id, route_id="R1", dep="Central Station", dest=dest)
    return trip


async def _until_settled(trip, limit: int = 200) -> None:
    for _ in range(limit):
        if trip.state != ActivityState.RESOLVING:
            return
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Cursor threading
# ---------------------------------------------------------------------------

class TestCursor:
    def test_trip_then_break(self, index):
        planner = _planner(index)
        trip = _route_trip(planner)
        assert trip.state == ActivityState.RESOLVED
        assert (trip.trip_id, trip.dep_time, trip.arr_time) == ("T1", hm("06:15"), hm("06:45"))
        assert trip.duration == "30m"

        brk = planner.add_activity("break")
        planner.update_activity(brk.id, minutes=10)
        assert (brk.start, brk.end) == (hm("06:45"), hm("06:55"))

    def test_second_trip_not_before_first_arrival(self, index):
        planner = _planner(index)
        _route_trip(planner)
        second = planner.add_activity("trip")
        planner.update_activity(second.id, route_id="R1", dep="Central Station", dest="Hospital")
        assert second.trip_id == "T2"

    def test_unmatched_trip_clears_and_holds_cursor(self, index):
        planner = _planner(index, roster=("10:00", "12:00"))
        trip = _route_trip(planner)
        brk = planner.add_activity("sign_on")
        assert trip.trip_id == "" and trip.dep_time is None
        assert trip.state == ActivityState.UNCONFIGURED
        assert brk.start == hm("10:00")
        assert brk.run_name == "Sign On"

    def test_no_roster_starts_at_midnight(self, index):
        planner = _planner(index, roster=None)
        brk = planner.add_activity("break", position=0)
        assert brk.start == 0
        assert brk.variant == BreakKind.BREAK

    def test_earlier_edit_shifts_later_activities(self, index):
        planner = _planner(index)
        trip = _route_trip(planner)
        brk = planner.add_activity("break")
        planner.update_activity(trip.id, arr_override="07:05")
        assert brk.start == hm("07:05")

    def test_reposition_advances_cursor(self, index):
        planner = _planner(index)
        _route_trip(planner)
        rep = planner.add_activity("reposition")
        planner.update_activity(rep.id, minutes=20, destination="S1")
        assert (rep.start, rep.end) == (hm("06:45"), hm("07:05"))
        assert rep.state == ActivityState.RESOLVED

    def test_roster_change_recomputes(self, index):
        planner = _planner(index)
        trip = _route_trip(planner)
        planner.set_roster("07:30", "09:00")
        assert trip.trip_id == "T3"

    def test_recompute_is_idempotent(self, index):
        planner = _planner(index)
        _route_trip(planner)
        planner.add_activity("break")
        school = planner.add_activity("school")
        planner.update_activity(school.id, end="08:00")
        planner.recompute(0)
        snapshot = copy.deepcopy(planner.state.activities)
        planner.recompute(0)
        assert planner.state.activities == snapshot
        assert planner.pending_lookups == []


# ---------------------------------------------------------------------------
# School runs
# ---------------------------------------------------------------------------

class TestSchoolRun:
    def test_overnight_roster_defaults_and_snaps(self, index):
        planner = _planner(index, roster=("22:00", "02:00"))
        school = planner.add_activity("school")
        assert school.start == hm("22:00")

        planner.update_activity(school.id, end="01:30")
        assert school.end == hm("01:30")

        planner.update_activity(school.id, end="20:00")
        assert school.end == hm("22:00")

    def test_start_before_cursor_snaps_to_cursor(self, index):
        planner = _planner(index, roster=("22:00", "02:00"))
        trip = _route_trip(planner)
        assert trip.trip_id == "T9"
        school = planner.add_activity("school")
        planner.update_activity(school.id, start="23:00")
        assert school.start == hm("00:20")

    def test_incomplete_run_hands_on_its_start(self, index):
        planner = _planner(index)
        school = planner.add_activity("school")
        planner.update_activity(school.id, start="07:00")
        brk = planner.add_activity("break")
        assert school.state == ActivityState.UNCONFIGURED
        assert brk.start == hm("07:00")

    def test_times_clamped_into_roster(self, index):
        planner = _planner(index)
        school = planner.add_activity("school")
        planner.update_activity(school.id, start="07:00", end="11:30")
        assert school.end == hm("10:00")


# ---------------------------------------------------------------------------
# Editing rules
# ---------------------------------------------------------------------------

class TestEditing:
    def test_departure_override_pushes_arrival_override(self, index):
        planner = _planner(index)
        trip = _route_trip(planner)
        planner.update_activity(trip.id, arr_override="06:40")
        planner.update_activity(trip.id, dep_override="06:50")
        assert trip.arr_override == hm("06:50")

    def test_overrides_clamped_to_roster(self, index):
        planner = _planner(index)
        trip = _route_trip(planner)
        planner.update_activity(trip.id, dep_override="05:00")
        assert trip.dep_override == hm("06:00")
        assert trip.start == hm("06:00")

    def test_route_change_clears_selection(self, index):
        planner = _planner(index)
        trip = _route_trip(planner)
        planner.update_activity(trip.id, dep_override="06:20")
        planner.update_activity(trip.id, route_id="R2")
        assert (trip.dep, trip.dest, trip.trip_id, trip.dep_override) == ("", "", "", None)

    def test_departure_change_clears_destination(self, index):
        planner = _planner(index)
        trip = _route_trip(planner)
        planner.update_activity(trip.id, dep="Hospital")
        assert trip.dest == ""
        assert trip.state == ActivityState.UNCONFIGURED

    def test_extra_stops_reset_when_trip_changes(self, index):
        planner = _planner(index)
        trip = _route_trip(planner)
        planner.update_activity(trip.id, extra_stop_ids=["S2"])
        assert trip.extra_stop_ids == ["S2"]
        planner.set_roster("06:30", "10:00")
        assert trip.trip_id == "T2"
        assert trip.extra_stop_ids == []

    def test_unknown_field_rejected(self, index):
        planner = _planner(index)
        trip = planner.state.activities[0]
        with pytest.raises(ValueError):
            planner.update_activity(trip.id, minutes=5)

    def test_invalid_time_rejected(self, index):
        planner = _planner(index)
        school = planner.add_activity("school")
        with pytest.raises(ValueError):
            planner.update_activity(school.id, end="soon")

    def test_unknown_activity(self, index):
        planner = _planner(index)
        with pytest.raises(KeyError):
            planner.update_activity("999", dep="x")

    def test_unknown_kind(self, index):
        with pytest.raises(ValueError):
            _planner(index).add_activity("lunch")

    def test_last_activity_cannot_be_removed(self, index):
        planner = _planner(index)
        with pytest.raises(ValueError):
            planner.remove_activity(planner.state.activities[0].id)

    def test_remove_recomputes(self, index):
        planner = _planner(index)
        trip = _route_trip(planner)
        brk = planner.add_activity("break")
        planner.remove_activity(trip.id)
        assert brk.start == hm("06:00")

    def test_invalid_roster(self, index):
        planner = _planner(index)
        with pytest.raises(ValueError):
            planner.set_roster("6am", "10:00")

    def test_blank_roster_clears(self, index):
        planner = _planner(index)
        planner.set_roster("", "10:00")
        assert planner.state.roster is None

    def test_roster_times(self, index):
        planner = _planner(index, roster=("06:00", "06:03"))
        assert planner.roster_times() == ["06:00", "06:01", "06:02", "06:03"]
        assert planner.roster_times(after="06:01") == ["06:02", "06:03"]


class TestLocations:
    def test_resolve_network_and_custom(self, index):
        planner = _planner(index)
        stop = planner.add_custom_stop("Depot", -36.86, 174.75)
        assert planner.resolve_location("S1").name == "Central Station"
        assert planner.resolve_location(stop.ref).name == "Depot"
        assert planner.resolve_location("S5") is None
        assert planner.resolve_location("custom:nope") is None

    def test_custom_stop_validation(self, index):
        planner = _planner(index)
        with pytest.raises(ValueError):
            planner.add_custom_stop("Bad", 95.0, 0.0)
        with pytest.raises(ValueError):
            planner.add_custom_stop("  ", 0.0, 0.0)

    def test_remove_unknown_custom_stop(self, index):
        with pytest.raises(KeyError):
            _planner(index).remove_custom_stop("nope")


# ---------------------------------------------------------------------------
# Custom legs (external lookups)
# ---------------------------------------------------------------------------

class TestCustomLeg:
    def test_lookup_is_queued_not_run(self, index):
        lookup = ScriptedLookup({"Depot": DirectionsResult(duration_s=600)})
        planner = _planner(index, lookup=lookup)
        depot = planner.add_custom_stop("Depot", -36.86, 174.75)
        trip = _route_trip(planner, dest=depot.ref)
        brk = planner.add_activity("break")
        assert trip.state == ActivityState.RESOLVING
        assert trip.dep_time == hm("06:00")
        assert brk.start == hm("06:00")
        assert len(planner.pending_lookups) == 1
        assert lookup.calls == []

    def test_settled_leg_advances_cursor(self, index):
        lookup = ScriptedLookup({"Depot": DirectionsResult(coords=[[1.0, 2.0]], duration_s=590, distance_m=4000)})

        async def scenario():
            planner = _planner(index, lookup=lookup)
            depot = planner.add_custom_stop("Depot", -36.86, 174.75)
            trip = _route_trip(planner, dest=depot.ref)
            brk = planner.add_activity("break")
            await planner.settle()
            return planner, trip, brk

        planner, trip, brk = asyncio.run(scenario())
        assert trip.state == ActivityState.RESOLVED
        assert trip.arr_time == hm("06:10")
        assert brk.start == hm("06:10")
        assert trip.custom_leg.origin.name == "Central Station"
        assert planner.pending_lookups == []
        assert lookup.calls == ["Depot"]

    def test_failed_leg_holds_cursor(self, index):
        lookup = ScriptedLookup({"Depot": DirectionsError("service down")})

        async def scenario():
            planner = _planner(index, lookup=lookup)
            depot = planner.add_custom_stop("Depot", -36.86, 174.75)
            trip = _route_trip(planner, dest=depot.ref)
            brk = planner.add_activity("break")
            await planner.settle()
            return trip, brk

        trip, brk = asyncio.run(scenario())
        assert trip.state == ActivityState.FAILED
        assert trip.arr_time is None
        assert trip.custom_leg.error == "service down"
        assert brk.start == hm("06:00")

    def test_malformed_routing_response_fails_leg(self, index, monkeypatch):
        real_client = httpx.AsyncClient

        def client_factory(**kwargs):
            transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"features": [None]}))
            return real_client(transport=transport, **kwargs)

        monkeypatch.setattr(directions, "ORS_API_KEY", "test-key")
        monkeypatch.setattr(directions.httpx, "AsyncClient", client_factory)

        async def scenario():
            planner = _planner(index, lookup=directions.fetch_directions)
            depot = planner.add_custom_stop("Depot", -36.86, 174.75)
            trip = _route_trip(planner, dest=depot.ref)
            await planner.settle()
            return planner, trip

        planner, trip = asyncio.run(scenario())
        assert trip.state == ActivityState.FAILED
        assert "Unexpected routing response" in trip.custom_leg.error
        assert isinstance(planner.cache.peek(trip.custom_leg.origin, trip.custom_leg.dest), DirectionsError)

    def test_stale_result_discarded(self, index):
        lookup = ScriptedLookup({
            "School A": DirectionsResult(duration_s=600),
            "School B": DirectionsResult(duration_s=1200),
        })

        async def scenario():
            lookup.gates["School A"] = asyncio.Event()
            planner = _planner(index, lookup=lookup)
            a = planner.add_custom_stop("School A", -36.86, 174.75)
            b = planner.add_custom_stop("School B", -36.87, 174.74)
            trip = _route_trip(planner, dest=a.ref)
            planner.dispatch()
            await asyncio.sleep(0)

            planner.update_activity(trip.id, dest=b.ref)
            planner.dispatch()
            await _until_settled(trip)
            resolved_b = trip.arr_time

            lookup.gates["School A"].set()
            await planner.settle()
            return trip, resolved_b

        trip, resolved_b = asyncio.run(scenario())
        assert resolved_b == hm("06:20")
        assert trip.arr_time == hm("06:20")
        assert trip.custom_leg.dest.name == "School B"
        assert lookup.calls == ["School A", "School B"]

    def test_stale_token_rejected_without_event_loop(self, index):
        planner = _planner(index, lookup=ScriptedLookup({}))
        a = planner.add_custom_stop("School A", -36.86, 174.75)
        b = planner.add_custom_stop("School B", -36.87, 174.74)
        trip = _route_trip(planner, dest=a.ref)
        first = planner.pending_lookups[0]
        planner.update_activity(trip.id, dest=b.ref)
        second = planner.pending_lookups[-1]

        assert not planner.apply_lookup(first, DirectionsResult(duration_s=60), "")
        assert trip.state == ActivityState.RESOLVING
        assert planner.apply_lookup(second, DirectionsResult(duration_s=300), "")
        assert trip.arr_time == hm("06:05")

    def test_settled_pair_is_reused(self, index):
        lookup = ScriptedLookup({
            "School A": DirectionsResult(duration_s=600),
            "School B": DirectionsResult(duration_s=1200),
        })

        async def scenario():
            planner = _planner(index, lookup=lookup)
            a = planner.add_custom_stop("School A", -36.86, 174.75)
            b = planner.add_custom_stop("School B", -36.87, 174.74)
            trip = _route_trip(planner, dest=a.ref)
            await planner.settle()
            planner.update_activity(trip.id, dest=b.ref)
            await planner.settle()
            planner.update_activity(trip.id, dest=a.ref)
            await planner.settle()
            return planner, trip

        planner, trip = asyncio.run(scenario())
        assert lookup.calls == ["School A", "School B"]
        assert trip.arr_time == hm("06:10")
        assert len(planner.cache) == 2

    def test_departure_override_moves_leg(self, index):
        lookup = ScriptedLookup({"Depot": DirectionsResult(duration_s=600)})

        async def scenario():
            planner = _planner(index, lookup=lookup)
            depot = planner.add_custom_stop("Depot", -36.86, 174.75)
            trip = _route_trip(planner, dest=depot.ref)
            await planner.settle()
            planner.update_activity(trip.id, dep_override="07:00")
            return planner, trip

        planner, trip = asyncio.run(scenario())
        assert (trip.dep_time, trip.arr_time) == (hm("07:00"), hm("07:10"))
        assert planner.pending_lookups == []

    def test_removing_custom_stop_unconfigures_leg(self, index):
        planner = _planner(index, lookup=ScriptedLookup({}))
        depot = planner.add_custom_stop("Depot", -36.86, 174.75)
        trip = _route_trip(planner, dest=depot.ref)
        pending = planner.pending_lookups[0]
        planner.remove_custom_stop(depot.id)
        assert trip.state == ActivityState.UNCONFIGURED
        assert not planner.apply_lookup(pending, DirectionsResult(duration_s=60), "")
