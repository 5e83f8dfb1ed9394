"""Slot resolution: open appointment times for one day at one location.

The day is modelled as a single interval [open, close) in the location's
timezone. Busy calendar events are clipped to that interval, merged, and
subtracted; every free stretch long enough for the requested duration
yields slot start times on clock-aligned granularity boundaries.

Everything here is a pure function of its inputs.
"""
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, List, Optional, Tuple, FrozenSet, Dict, Any
from zoneinfo import ZoneInfo

from agent_admin import config
from agent_admin.business_config import Location, WEEKDAYS


_TIME_PATTERN = re.compile(
    r"\b(\d{1,2})(?::(\d{2}))?\s*([ap])\.?\s*m\b\.?|\b(\d{1,2})(?::(\d{2}))?\b",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class Interval:
    """Half-open time interval [start, end)."""
    start: datetime
    end: datetime

    @property
    def duration(self) -> timedelta:
        # Elapsed time; same-zone subtraction would be wall-clock
        return self.end.astimezone(timezone.utc) - self.start.astimezone(timezone.utc)

    def is_empty(self) -> bool:
        return self.end <= self.start

    def clip(self, bounds: "Interval") -> "Interval":
        return Interval(max(self.start, bounds.start), min(self.end, bounds.end))

    def contains(self, other: "Interval") -> bool:
        return self.start <= other.start and other.end <= self.end

    def to_dict(self) -> Dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass(frozen=True)
class OperatingWindow:
    """Opening days and hours of a location, in its own timezone."""
    days: FrozenSet[int]  # datetime.weekday() numbers, Monday == 0
    open_time: time
    close_time: time
    timezone: ZoneInfo

    def is_open_on(self, day: date) -> bool:
        return day.weekday() in self.days

    def bounds_for(self, day: date) -> Optional[Interval]:
        """Opening interval for a date, or None when closed that day."""
        if not self.is_open_on(day):
            return None
        start = datetime.combine(day, self.open_time, tzinfo=self.timezone)
        end = datetime.combine(day, self.close_time, tzinfo=self.timezone)
        if end <= start:
            return None
        return Interval(start, end)


@dataclass
class DayAvailability:
    """Result of resolving one day."""
    day: date
    window: Optional[Interval]
    busy: List[Interval] = field(default_factory=list)
    free: List[Interval] = field(default_factory=list)
    slots: List[Interval] = field(default_factory=list)
    blocked_all_day: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.day.isoformat(),
            "open": self.window is not None,
            "blockedAllDay": self.blocked_all_day,
            "window": self.window.to_dict() if self.window else None,
            "busy": [i.to_dict() for i in self.busy],
            "freeIntervals": [i.to_dict() for i in self.free],
            "slots": [i.to_dict() for i in self.slots],
        }


def _to_time(hour: int, minute: int, meridiem: Optional[str]) -> Optional[time]:
    if meridiem:
        meridiem = meridiem.lower()
        if not 1 <= hour <= 12:
            return None
        if meridiem == "p" and hour < 12:
            hour += 12
        elif meridiem == "a" and hour == 12:
            hour = 0
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        return None
    return time(hour, minute)


def parse_operating_hours(text: Optional[str]) -> Optional[Tuple[time, time]]:
    """
    Parse free-text opening hours into (open, close).

    Accepts "9:00 AM - 5:00 PM", "09:00-17:00", "9am to 6pm", "9 - 5".
    The first and last times mentioned are used. Returns None when the text
    doesn't describe a usable window.
    """
    if not text:
        return None

    found = []
    for match in _TIME_PATTERN.finditer(text):
        if match.group(1) is not None:
            hour, minute, meridiem = match.group(1), match.group(2), match.group(3)
        else:
            hour, minute, meridiem = match.group(4), match.group(5), None
        found.append((int(hour), int(minute or 0), meridiem))

    if len(found) < 2:
        return None

    open_h, open_m, open_mer = found[0]
    close_h, close_m, close_mer = found[-1]

    opens = _to_time(open_h, open_m, open_mer)
    closes = _to_time(close_h, close_m, close_mer)
    if opens is None or closes is None:
        return None

    # "9 - 5" means 9 AM to 5 PM
    if closes <= opens and close_mer is None and close_h < 12:
        closes = time(close_h + 12, close_m)
    if closes <= opens:
        return None
    return opens, closes


def parse_clock_time(text: Optional[str]) -> Optional[time]:
    """Parse a single time of day: "14:30", "14:30:00", "2:30 PM", "9am"."""
    if not text:
        return None
    text = str(text).strip()
    try:
        return time.fromisoformat(text).replace(tzinfo=None)
    except ValueError:
        pass
    match = _TIME_PATTERN.fullmatch(text)
    if match is None:
        return None
    if match.group(1) is not None:
        return _to_time(int(match.group(1)), int(match.group(2) or 0), match.group(3))
    return _to_time(int(match.group(4)), int(match.group(5) or 0), None)


def _weekday_numbers(days: Iterable[int]) -> FrozenSet[int]:
    """ISO weekday numbers (1=Mon..7=Sun, 0 also Sunday) -> date.weekday()."""
    return frozenset((d - 1) % 7 for d in days)


def window_for_location(location: Optional[Location] = None) -> OperatingWindow:
    """
    Operating window for a location, falling back to the configured
    business hours for anything the location leaves unspecified.
    """
    defaults = config.get_business_hours()
    default_hours = (time(defaults["start"]), time(defaults["end"]))

    if location is None:
        return OperatingWindow(
            days=_weekday_numbers(defaults["days"]),
            open_time=default_hours[0],
            close_time=default_hours[1],
            timezone=ZoneInfo(defaults["timezone"]),
        )

    if location.operating_days:
        days = frozenset(WEEKDAYS.index(d) for d in location.operating_days)
    else:
        days = _weekday_numbers(defaults["days"])

    opens, closes = parse_operating_hours(location.operating_hours) or default_hours
    return OperatingWindow(
        days=days,
        open_time=opens,
        close_time=closes,
        timezone=ZoneInfo(location.time_zone),
    )


def merge_intervals(intervals: Iterable[Interval]) -> List[Interval]:
    """Sort by start and merge overlapping or touching intervals."""
    ordered = sorted((i for i in intervals if not i.is_empty()), key=lambda i: i.start)
    merged: List[Interval] = []
    for current in ordered:
        if merged and current.start <= merged[-1].end:
            last = merged[-1]
            merged[-1] = Interval(last.start, max(last.end, current.end))
        else:
            merged.append(current)
    return merged


def subtract_intervals(window: Interval, busy: Iterable[Interval]) -> List[Interval]:
    """Maximal sub-intervals of ``window`` not covered by any busy interval."""
    clipped = [b.clip(window) for b in busy]
    free: List[Interval] = []
    cursor = window.start
    for block in merge_intervals(clipped):
        if block.start > cursor:
            free.append(Interval(cursor, block.start))
        cursor = max(cursor, block.end)
    if cursor < window.end:
        free.append(Interval(cursor, window.end))
    return free


def _next_boundary(moment: datetime, granularity: timedelta) -> datetime:
    """First clock-aligned boundary at or after the naive wall time ``moment``."""
    midnight = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    offset = moment - midnight
    steps = -(-offset // granularity)  # ceiling division
    return midnight + steps * granularity


def slot_starts(
    free: Interval,
    duration: timedelta,
    granularity: timedelta,
    not_before: Optional[datetime] = None
) -> List[datetime]:
    """
    Every boundary start inside ``free`` that leaves room for ``duration``.

    Boundaries are stepped in local wall time; fit is checked in UTC so a
    DST change inside the interval neither stretches nor shrinks it. Wall
    times skipped by a spring-forward change are not offered.
    """
    tz = free.start.tzinfo
    utc = timezone.utc
    start_utc, end_utc = free.start.astimezone(utc), free.end.astimezone(utc)
    earliest = max(start_utc, not_before.astimezone(utc)) if not_before else start_utc

    starts = []
    wall = _next_boundary(free.start.replace(tzinfo=None), granularity)
    while True:
        candidate = _existing_local_time(wall, tz)
        wall += granularity
        if candidate is None:
            continue
        candidate_utc = candidate.astimezone(utc)
        if candidate_utc + duration > end_utc:
            return starts
        if candidate_utc >= earliest:
            starts.append(candidate)


def add_elapsed(moment: datetime, delta: timedelta) -> datetime:
    """``moment`` plus real elapsed time, in ``moment``'s zone."""
    return (moment.astimezone(timezone.utc) + delta).astimezone(moment.tzinfo)


def _existing_local_time(wall: datetime, tz) -> Optional[datetime]:
    """``wall`` in ``tz``, or None when the clock skips over it."""
    candidate = wall.replace(tzinfo=tz)
    if candidate.astimezone(timezone.utc).astimezone(tz).replace(tzinfo=None) != wall:
        return None
    return candidate


def _busy_interval(event, tz: ZoneInfo) -> Interval:
    start, end = event.start, event.end
    if start.tzinfo is None:
        start = start.replace(tzinfo=tz)
    if end.tzinfo is None:
        end = end.replace(tzinfo=tz)
    return Interval(start.astimezone(tz), end.astimezone(tz))


def blocks_whole_day(event, day: date) -> bool:
    """True for an all-day event whose date range includes ``day``."""
    if not getattr(event, "is_all_day", False):
        return False
    first = event.start.date() if isinstance(event.start, datetime) else event.start
    last = event.end.date() if isinstance(event.end, datetime) else event.end
    # Google's end date is exclusive; a same-day end still means that one day
    last = max(last, first + timedelta(days=1))
    return first <= day < last


def resolve_slots(
    day: date,
    window: OperatingWindow,
    events: Iterable,
    duration_minutes: int,
    granularity_minutes: int = config.SLOT_GRANULARITY_MINUTES,
    not_before: Optional[datetime] = None
) -> DayAvailability:
    """
    Resolve open appointment slots for one day.

    Args:
        day: Target date (in the location's timezone)
        window: Operating window of the location
        events: Busy calendar events (objects with start, end, is_all_day)
        duration_minutes: Requested appointment length
        granularity_minutes: Spacing of offered start times
        not_before: Drop slots starting before this instant (e.g. now)

    Returns:
        DayAvailability with the merged busy blocks, the maximal free
        intervals long enough for the duration, and the slots.
    """
    if duration_minutes <= 0:
        raise ValueError("duration_minutes must be positive")
    if granularity_minutes <= 0:
        raise ValueError("granularity_minutes must be positive")

    bounds = window.bounds_for(day)
    if bounds is None:
        return DayAvailability(day=day, window=None)

    events = list(events)
    if any(blocks_whole_day(e, day) for e in events):
        return DayAvailability(day=day, window=bounds, busy=[bounds], blocked_all_day=True)

    timed = [
        _busy_interval(e, window.timezone)
        for e in events
        if not getattr(e, "is_all_day", False)
    ]
    busy = merge_intervals(b.clip(bounds) for b in timed)

    duration = timedelta(minutes=duration_minutes)
    granularity = timedelta(minutes=granularity_minutes)
    free = [f for f in subtract_intervals(bounds, busy) if f.duration >= duration]

    slots = [
        Interval(start, add_elapsed(start, duration))
        for interval in free
        for start in slot_starts(interval, duration, granularity, not_before)
    ]
    return DayAvailability(day=day, window=bounds, busy=busy, free=free, slots=slots)


def is_slot_free(
    requested: Interval,
    window: OperatingWindow,
    events: Iterable
) -> Tuple[bool, str]:
    """
    Check a specific requested interval against opening hours and events.

    Returns:
        (available, reason) where reason is a short machine-readable code
    """
    tz = window.timezone
    requested = Interval(requested.start.astimezone(tz), requested.end.astimezone(tz))
    day = requested.start.date()

    bounds = window.bounds_for(day)
    if bounds is None:
        return False, "closed"
    if not bounds.contains(requested):
        return False, "outside_hours"

    events = list(events)
    if any(blocks_whole_day(e, day) for e in events):
        return False, "busy"

    for event in events:
        if getattr(event, "is_all_day", False):
            continue
        busy = _busy_interval(event, tz)
        if busy.start < requested.end and requested.start < busy.end:
            return False, "busy"
    return True, "available"
