"""
Circular time-of-day arithmetic for duty chains.

Every time value is an integer minute-of-day in [0, 1440).  GTFS strings
("HH:MM[:SS]", hours possibly >= 24) are normalised on the way in: the hour
is taken modulo 24 and seconds are rounded to the nearest minute (>= 30 s
rounds up).  Missing minute/second fields default to 0.

Four operations decide every ordering question in the planner:

  forward_distance(a, b)            minutes going clockwise from a to b
  window_contains(t, start, end)    t inside a (possibly overnight) window
  interval_overlaps_window(...)     activity interval touches the window
  clamp_to_window(t, start, end)    snap t into the window

Anything that needs "is x before y on this duty" ranks both values by their
forward distance from a common anchor (see ranks_before).
"""

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 1440


def parse_time(value: str | None) -> int | None:
    """
    Convert "HH:MM[:SS]" to minutes past midnight in [0, 1440).
    Returns None for empty or non-numeric input.
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    parts = text.split(":")
    try:
        hours = int(parts[0])
        minutes = int(parts[1]) if len(parts) > 1 and parts[1] != "" else 0
        seconds = int(parts[2]) if len(parts) > 2 and parts[2] != "" else 0
    except ValueError:
        return None
    total = (hours % 24) * 60 + minutes + (1 if seconds >= 30 else 0)
    return total % MINUTES_PER_DAY


def parse_seconds(value: str | None) -> int | None:
    """
    Convert "HH:MM[:SS]" to seconds past midnight with the hour taken modulo 24.
    Used where sub-minute precision matters (inter-stop durations).
    """
    if value is None:
        return None
    text = str(value).strip()
    if ":" not in text:
        return None
    parts = text.split(":")
    try:
        hours = int(parts[0]) if parts[0] else 0
        minutes = int(parts[1]) if len(parts) > 1 and parts[1] else 0
        seconds = int(parts[2]) if len(parts) > 2 and parts[2] else 0
    except ValueError:
        return None
    return (hours % 24) * 3600 + minutes * 60 + seconds


def format_hhmm(minutes: int | None) -> str:
    """Minutes-of-day → "HH:MM" ("" for None)."""
    if minutes is None:
        return ""
    m = minutes % MINUTES_PER_DAY
    return f"{m // 60:02d}:{m % 60:02d}"


def add_minutes(t: int, minutes: int) -> int:
    return (t + minutes) % MINUTES_PER_DAY


def forward_distance(a: int, b: int) -> int:
    """Minutes travelling forward (clockwise) from a until reaching b."""
    return (b - a + MINUTES_PER_DAY) % MINUTES_PER_DAY


def window_contains(t: int, start: int, end: int) -> bool:
    if start <= end:
        return start <= t <= end
    return t >= start or t <= end


def _split_at_midnight(start: int, end: int) -> list[tuple[int, int]]:
    if start <= end:
        return [(start, end)]
    return [(start, MINUTES_PER_DAY - 1), (0, end)]


def interval_overlaps_window(s: int, e: int, start: int, end: int) -> bool:
    """True if the (possibly wrapping) interval [s, e] touches the window [start, end]."""
    for a0, a1 in _split_at_midnight(s, e):
        for b0, b1 in _split_at_midnight(start, end):
            if a0 <= b1 and b0 <= a1:
                return True
    return False


def clamp_to_window(t: int, start: int, end: int) -> int:
    """
    Snap t into [start, end].

    Non-wrapping windows clamp numerically.  For an overnight window a value
    already inside is returned unchanged; otherwise it snaps to whichever
    boundary is circularly closer (start wins ties).
    """
    if start <= end:
        return min(max(t, start), end)
    if window_contains(t, start, end):
        return t
    to_start = forward_distance(t, start)
    to_end = forward_distance(end, t)
    return start if to_start <= to_end else end


def ranks_before(a: int, b: int, anchor: int) -> bool:
    """True if a comes strictly before b when counting forward from anchor."""
    return forward_distance(anchor, a) < forward_distance(anchor, b)


def duration_label(start: int | None, end: int | None) -> str:
    """Human-readable forward duration, e.g. "1h 5m" or "40m"."""
    if start is None or end is None:
        return ""
    d = forward_distance(start, end)
    hours, mins = divmod(d, 60)
    return (f"{hours}h " if hours else "") + f"{mins}m"


@dataclass(frozen=True)
class RosterWindow:
    """Duty-defining start/end time-of-day; start > end spans midnight."""

    start: int
    end: int

    @classmethod
    def parse(cls, start: str | None, end: str | None) -> "RosterWindow | None":
        s, e = parse_time(start), parse_time(end)
        if s is None or e is None:
            return None
        return cls(s, e)

    @property
    def overnight(self) -> bool:
        return self.start > self.end

    def contains(self, t: int) -> bool:
        return window_contains(t, self.start, self.end)

    def overlaps(self, s: int, e: int) -> bool:
        return interval_overlaps_window(s, e, self.start, self.end)

    def clamp(self, t: int) -> int:
        return clamp_to_window(t, self.start, self.end)

    def rank(self, t: int) -> int:
        """Minutes since the roster start."""
        return forward_distance(self.start, t)

    def times(self, step: int = 1, after: int | None = None) -> list[int]:
        """
        Every minute value inside the window at the given step, in duty order.
        With `after`, keep only values ranked strictly after it.
        """
        if step <= 0:
            return []
        out: list[int] = []
        for a, b in _split_at_midnight(self.start, self.end):
            out.extend(range(a, b + 1, step))
        if after is not None:
            cutoff = self.rank(after)
            out = [t for t in out if self.rank(t) > cutoff]
        return out
