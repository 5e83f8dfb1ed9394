"""Shared test fixtures."""
from datetime import datetime, time, timedelta
from zoneinfo import ZoneInfo

import pytest

from agent_admin.calendar_client import CalendarEvent
from agent_admin.config_store import ConfigStore


NY = ZoneInfo("America/New_York")


@pytest.fixture(autouse=True)
def setup_env(monkeypatch):
    """Deterministic environment for every test."""
    monkeypatch.setenv("BUSINESS_HOURS_START", "9")
    monkeypatch.setenv("BUSINESS_HOURS_END", "17")
    monkeypatch.setenv("BUSINESS_DAYS", "1,2,3,4,5")
    monkeypatch.setenv("TIMEZONE", "America/New_York")
    monkeypatch.setenv("APPOINTMENT_DURATION", "60")
    monkeypatch.setenv("REQUIRE_API_KEY", "false")
    monkeypatch.setenv("CONFIG_BACKEND", "sql")
    for name in ("SMTP_HOST", "NOTIFICATION_EMAIL", "APP_URL"):
        monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture
def store():
    """ConfigStore backed by in-memory SQLite."""
    return ConfigStore(database_url="sqlite:///:memory:")


@pytest.fixture
def business_document():
    """Minimal valid BusinessConfig document (camelCase, as stored)."""
    return {
        "metadata": {"businessName": "Downtown Dental", "industry": "Healthcare"},
        "services": [
            {"id": "srv-1", "name": "Cleaning", "durationMinutes": 60},
            {"id": "srv-2", "name": "Checkup", "durationMinutes": 30},
        ],
        "locations": [
            {
                "id": "loc-1",
                "name": "Main office",
                "operatingDays": ["monday", "tuesday", "wednesday", "thursday", "friday"],
                "operatingHours": "9:00 AM - 5:00 PM",
                "timeZone": "America/New_York",
            }
        ],
        "operationMode": "Training",
    }


@pytest.fixture
def make_event():
    """Build a CalendarEvent for a New York wall-clock interval."""
    def _create(start, end, summary="Busy", event_id="evt", all_day=False):
        if all_day:
            return CalendarEvent(
                id=event_id, summary=summary,
                start=datetime.combine(start, time.min),
                end=datetime.combine(end, time.min),
                is_all_day=True,
            )
        return CalendarEvent(
            id=event_id, summary=summary,
            start=start.replace(tzinfo=NY), end=end.replace(tzinfo=NY),
        )
    return _create


class FakeCalendar:
    """In-memory stand-in for GoogleCalendarClient."""

    def __init__(self, events=None):
        self.events = list(events or [])
        self.inserted = []
        self.list_calls = []

    def list_events(self, time_min, time_max, max_results=250):
        self.list_calls.append((time_min, time_max, max_results))
        return [
            e for e in self.events
            if e.is_all_day or (e.end > time_min and e.start < time_max)
        ]

    def events_on(self, day, tz):
        start = datetime.combine(day, time.min, tzinfo=tz)
        return self.list_events(start, start + timedelta(days=1))

    def insert_event(self, body, send_updates="none"):
        self.inserted.append((body, send_updates))
        return {"id": f"new-{len(self.inserted)}", "htmlLink": "https://calendar.google.com/event?eid=x"}


@pytest.fixture
def fake_calendar():
    return FakeCalendar
