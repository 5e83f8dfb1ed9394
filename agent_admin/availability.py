"""Availability reading and slot formatting.

AvailabilityReader summarizes the next week of calendar events into a few
capacity metrics for the dashboard. TimeFilter and the format helpers turn
resolved slots into something an assistant can say out loud.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from agent_admin import config
from agent_admin.calendar_client import CalendarEvent, GoogleCalendarClient
from agent_admin.slots import Interval

logger = logging.getLogger(__name__)


@dataclass
class AvailabilityReport:
    """Capacity metrics for a 7-day forward window."""
    total_events: int
    events_by_day: Dict[str, int]
    events_today: int
    available_slots_today: int
    is_highly_available: bool
    events: List[CalendarEvent] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "metrics": {
                "totalEventsNext7Days": self.total_events,
                "eventsByDay": self.events_by_day,
                "eventsToday": self.events_today,
                "availableSlotsToday": self.available_slots_today,
                "isHighlyAvailable": self.is_highly_available,
            },
            "events": [e.to_summary() for e in self.events],
        }


class AvailabilityReader:
    """Read-only view over a calendar's next seven days."""

    def __init__(
        self,
        calendar: GoogleCalendarClient,
        tz=None,
        now: Optional[Callable[[], datetime]] = None
    ):
        self.calendar = calendar
        self.tz = tz or timezone.utc
        self._now = now or (lambda: datetime.now(self.tz))

    def read(self) -> AvailabilityReport:
        """
        Fetch events from now to now + 7 days and derive the metrics.

        Today's available slots assume an 8-slot day of one-hour meetings;
        only timed events count against it.

        Raises:
            CalendarError: If the calendar can't be read
        """
        now = self._now().astimezone(self.tz)
        window_end = now + timedelta(days=config.AVAILABILITY_WINDOW_DAYS)
        events = self.calendar.list_events(now, window_end, max_results=100)

        today = now.date()
        by_day: Dict[str, int] = {}
        for offset in range(config.AVAILABILITY_WINDOW_DAYS + 1):
            by_day[(today + timedelta(days=offset)).isoformat()] = 0

        events_today = 0
        for event in events:
            start_day = self._local_date(event)
            key = start_day.isoformat()
            if key in by_day:
                by_day[key] += 1
            if not event.is_all_day and start_day == today:
                events_today += 1

        available_today = max(0, config.MAX_SLOTS_PER_DAY - events_today)
        logger.info(
            f"Availability read: {len(events)} events in window, {events_today} today"
        )

        return AvailabilityReport(
            total_events=len(events),
            events_by_day=by_day,
            events_today=events_today,
            available_slots_today=available_today,
            is_highly_available=available_today > config.HIGH_AVAILABILITY_THRESHOLD,
            events=events[:config.MAX_EVENTS_RETURNED],
        )

    def _local_date(self, event: CalendarEvent) -> date:
        if event.is_all_day or event.start.tzinfo is None:
            return event.start.date()
        return event.start.astimezone(self.tz).date()


class TimeOfDay(str, Enum):
    """Time of day preferences."""
    MORNING = "morning"  # Before 12:00
    AFTERNOON = "afternoon"  # 12:00 and after
    ANY = "any"


class TimeFilter:
    """Filter resolved slots by time of day."""

    MORNING_CUTOFF = 12  # 12:00 (noon)

    def filter_by_time_of_day(
        self,
        slots: List[Interval],
        preference: TimeOfDay
    ) -> List[Interval]:
        """
        Filter slots by time of day preference.

        Args:
            slots: Resolved slots
            preference: Morning, afternoon, or any

        Returns:
            Filtered slots
        """
        if preference == TimeOfDay.ANY:
            return slots

        filtered = []
        for slot in slots:
            hour = slot.start.hour

            if preference == TimeOfDay.MORNING and hour < self.MORNING_CUTOFF:
                filtered.append(slot)
            elif preference == TimeOfDay.AFTERNOON and hour >= self.MORNING_CUTOFF:
                filtered.append(slot)

        return filtered

    @staticmethod
    def parse_preference(value: Optional[str]) -> TimeOfDay:
        try:
            return TimeOfDay((value or "any").strip().lower())
        except ValueError:
            return TimeOfDay.ANY


def format_time_12h(moment: datetime) -> str:
    """9:00 AM, 1:30 PM"""
    period = "AM" if moment.hour < 12 else "PM"
    hour_12 = moment.hour if moment.hour <= 12 else moment.hour - 12
    hour_12 = 12 if hour_12 == 0 else hour_12
    return f"{hour_12}:{moment.minute:02d} {period}"


def format_date(day: date) -> str:
    """Monday, March 2"""
    return f"{day.strftime('%A, %B')} {day.day}"


def format_date_time(moment: datetime) -> str:
    return f"{format_date(moment.date())} at {format_time_12h(moment)}"


def describe_slots(slots: List[Interval], day: date) -> str:
    """Sentence offering the given slots for one day."""
    if not slots:
        return (
            f"Unfortunately, there are no available slots on {format_date(day)}. "
            "Would you like me to check another day?"
        )
    times = ", ".join(format_time_12h(s.start) for s in slots)
    plural = "s" if len(slots) > 1 else ""
    return (
        f"I found {len(slots)} available time slot{plural} on {format_date(day)}: "
        f"{times}. Which time works best for you?"
    )
