"""
Calendar tools invoked by the voice assistant during a call.

VAPI posts tool calls to the webhook; each one is executed here and
answered with a JSON string result. A failing tool only fails its own
call; the other calls in the same request still get their results.
"""
import json
import logging
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from agent_admin import config
from agent_admin.availability import (
    TimeFilter,
    describe_slots,
    format_date,
    format_date_time,
    format_time_12h,
)
from agent_admin.business_config import BusinessConfig, WEEKDAYS
from agent_admin.calendar_client import CalendarAuthError, CalendarError, GoogleCalendarClient
from agent_admin.config import MissingConfigurationError
from agent_admin.slots import (
    Interval,
    add_elapsed,
    is_slot_free,
    parse_clock_time,
    resolve_slots,
    window_for_location,
)

logger = logging.getLogger(__name__)

NOT_CONNECTED_MESSAGE = (
    "Authentication Error: Calendar not connected (No Refresh Token). "
    "Please reconnect in Admin Settings."
)
REFRESH_FAILED_MESSAGE = (
    "Authentication Error: Failed to refresh token. Please reconnect Google Calendar."
)


class ToolArgumentError(ValueError):
    """Raised when a tool call is missing or has unusable arguments."""
    pass


def _text(value: Any) -> Optional[str]:
    """Scalar tool argument as text; model output sometimes sends numbers."""
    if value is None or value == "":
        return None
    if isinstance(value, (dict, list, bool)):
        raise ToolArgumentError(f"Expected text, got {value!r}")
    return str(value)


def parse_date(value: Any) -> date:
    """Date from "YYYY-MM-DD" or an ISO datetime string."""
    value = _text(value)
    if not value:
        raise ToolArgumentError("A date is required (YYYY-MM-DD)")
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        raise ToolArgumentError(f"Invalid date: {value}")


def _split_date_time(args: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    """Accept date/time separately or combined as dateTime."""
    date_text = _text(args.get("date") or args.get("startDate"))
    time_text = _text(args.get("time"))
    combined = _text(args.get("dateTime") or args.get("dateTimeStr"))
    if combined and "T" in combined:
        date_part, time_part = combined.split("T", 1)
        date_text = date_text or date_part
        time_text = time_text or time_part[:5]
    elif combined:
        date_text = date_text or combined
    return date_text, time_text


def _valid_email(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    cleaned = "".join(value.split())
    return cleaned if "@" in cleaned else None


class BookingTools:
    """Tool implementations bound to one calendar and (optionally) one agent."""

    def __init__(
        self,
        calendar: GoogleCalendarClient,
        business: Optional[BusinessConfig] = None,
        now: Optional[Callable[[], datetime]] = None
    ):
        self.calendar = calendar
        self.business = business
        self.window = window_for_location(business.primary_location() if business else None)
        self.tz = self.window.timezone
        self._now = now or (lambda: datetime.now(self.tz))
        self.time_filter = TimeFilter()

    def now(self) -> datetime:
        return self._now().astimezone(self.tz)

    def _duration(self, requested: Any = None, service: Optional[str] = None) -> int:
        if requested:
            try:
                minutes = int(float(requested))
            except (TypeError, ValueError):
                raise ToolArgumentError(f"Invalid duration: {requested}")
            if minutes <= 0:
                raise ToolArgumentError(f"Invalid duration: {requested}")
            return minutes
        if self.business is not None:
            match = self.business.find_service(service)
            if match is not None:
                return match.duration_minutes
        return config.get_appointment_duration()

    def _open_days_text(self) -> str:
        names = [WEEKDAYS[d].capitalize() for d in sorted(self.window.days)]
        return ", ".join(names) if names else "no days"

    def _hours_text(self) -> str:
        opens = datetime.combine(date.today(), self.window.open_time)
        closes = datetime.combine(date.today(), self.window.close_time)
        return f"{format_time_12h(opens)} - {format_time_12h(closes)}"

    def _requested_interval(self, day: date, time_text: str, minutes: int) -> Interval:
        clock = parse_clock_time(time_text)
        if clock is None:
            raise ToolArgumentError(f"Invalid time: {time_text}")
        start = datetime.combine(day, clock, tzinfo=self.tz)
        return Interval(start, add_elapsed(start, timedelta(minutes=minutes)))

    # Tools

    def check_availability(self, args: Dict[str, Any]) -> Dict[str, Any]:
        date_text, time_text = _split_date_time(args)
        day = parse_date(date_text)
        minutes = self._duration(args.get("duration"), _text(args.get("service")))

        if not time_text:
            result = self.find_available_slots({**args, "date": day.isoformat()})
            available = bool(result["availableSlots"])
            return {
                "available": available,
                "message": result["message"],
                "plainEnglishStatus": "DAY HAS OPENINGS." if available else "DAY FULLY BOOKED.",
            }

        requested = self._requested_interval(day, time_text, minutes)
        if requested.start < self.now():
            return self._unavailable("in_past", "That time has already passed. Would you like me to find another time?")

        ok, reason = is_slot_free(requested, self.window, self.calendar.events_on(day, self.tz))
        if ok:
            return {
                "available": True,
                "message": f"Yes, {format_date_time(requested.start)} is available! Would you like to book this time?",
                "plainEnglishStatus": "SLOT AVAILABLE.",
            }
        if reason == "closed":
            return self._unavailable(reason, f"We are not open on this day. Our business days are {self._open_days_text()}.")
        if reason == "outside_hours":
            return self._unavailable(reason, f"This time is outside our business hours ({self._hours_text()}).")
        return self._unavailable(
            reason, "This time slot is already booked. Would you like me to find other available times?"
        )

    @staticmethod
    def _unavailable(reason: str, message: str) -> Dict[str, Any]:
        return {
            "available": False,
            "reason": reason,
            "message": message,
            "plainEnglishStatus": "SLOT BUSY.",
        }

    def find_available_slots(self, args: Dict[str, Any]) -> Dict[str, Any]:
        date_text, _ = _split_date_time(args)
        day = parse_date(date_text)
        minutes = self._duration(args.get("duration"), _text(args.get("service")))
        preference = self.time_filter.parse_preference(_text(args.get("timeOfDay")))

        if not self.window.is_open_on(day):
            return {
                "success": False,
                "availableSlots": [],
                "count": 0,
                "message": (
                    f"We are not open on this day. Our business days are {self._open_days_text()}. "
                    "Would you like me to check another day?"
                ),
            }

        start = datetime.combine(day, datetime.min.time(), tzinfo=self.tz)
        events = self.calendar.list_events(
            start, start + timedelta(days=config.AVAILABILITY_WINDOW_DAYS + 1)
        )
        now = self.now()

        resolved = resolve_slots(day, self.window, events, minutes, not_before=now)
        slots = self.time_filter.filter_by_time_of_day(resolved.slots, preference)
        slots = slots[:config.MAX_SLOTS_PER_ANSWER]

        message = describe_slots(slots, day)
        if not slots:
            next_day = self._next_day_with_slots(day, events, minutes, now, preference)
            if next_day is not None:
                message += f" The next day with openings is {format_date(next_day)}."

        return {
            "success": bool(slots),
            "availableSlots": [
                {
                    "date": s.start.date().isoformat(),
                    "time": format_time_12h(s.start),
                    "datetime": s.start.isoformat(),
                    "duration": f"{minutes} minutes",
                }
                for s in slots
            ],
            "count": len(slots),
            "message": message,
        }

    def _next_day_with_slots(self, day, events, minutes, now, preference) -> Optional[date]:
        for offset in range(1, config.AVAILABILITY_WINDOW_DAYS + 1):
            candidate = day + timedelta(days=offset)
            resolved = resolve_slots(candidate, self.window, events, minutes, not_before=now)
            if self.time_filter.filter_by_time_of_day(resolved.slots, preference):
                return candidate
        return None

    def create_event(self, args: Dict[str, Any]) -> Dict[str, Any]:
        date_text, time_text = _split_date_time(args)
        day = parse_date(date_text)
        if not time_text:
            raise ToolArgumentError("A time is required (HH:MM)")

        service = _text(args.get("service"))
        name = _text(args.get("customerName") or args.get("name")) or "Customer"
        email = _valid_email(_text(args.get("customerEmail") or args.get("email")))
        phone = _text(args.get("customerPhone") or args.get("phone"))
        minutes = self._duration(args.get("duration"), service)
        requested = self._requested_interval(day, time_text, minutes)

        ok, reason = is_slot_free(requested, self.window, self.calendar.events_on(day, self.tz))
        if not ok:
            logger.info(f"Refused booking at {requested.start.isoformat()}: {reason}")
            return {
                "success": False,
                "reason": reason,
                "message": "That time is no longer available. Would you like me to find other available times?",
            }

        description = [f"Service: {service or 'General Appointment'}", f"Customer: {name}"]
        if email:
            description.append(f"Email: {email}")
        if phone:
            description.append(f"Phone: {phone}")

        body = {
            "summary": f"{service or 'Appointment'} - {name}",
            "description": "\n".join(description),
            "start": {"dateTime": requested.start.isoformat(), "timeZone": self.tz.key},
            "end": {"dateTime": requested.end.isoformat(), "timeZone": self.tz.key},
            "attendees": [{"email": email}] if email else [],
            "reminders": {
                "useDefault": False,
                "overrides": [
                    {"method": "email", "minutes": 24 * 60},
                    {"method": "popup", "minutes": 60},
                ],
            },
        }
        event = self.calendar.insert_event(body, send_updates="all" if email else "none")
        logger.info(f"Booked event {event.get('id')} at {requested.start.isoformat()}")

        confirmation = (
            "You will receive a confirmation email shortly." if email else "Your appointment is confirmed!"
        )
        return {
            "success": True,
            "eventId": event.get("id"),
            "eventLink": event.get("htmlLink"),
            "message": (
                f"Perfect! I've booked your {service or 'appointment'} for "
                f"{format_date_time(requested.start)}. {confirmation}"
            ),
        }

    def get_current_datetime(self, args: Dict[str, Any]) -> Dict[str, Any]:
        now = self.now()
        return {
            "success": True,
            "dateTime": now.isoformat(),
            "humanReadable": f"{now.strftime('%A')}, {now.strftime('%B')} {now.day}, {now.year} at {format_time_12h(now)}",
            "timeZone": self.tz.key,
        }

    def confirm_details(self, args: Dict[str, Any]) -> Dict[str, Any]:
        name = args.get("customerName") or args.get("name") or "you"
        return {
            "success": True,
            "message": (
                f"Let me confirm: {args.get('service') or 'appointment'} on {args.get('date')} "
                f"at {args.get('time')} for {name}. Is this correct?"
            ),
        }

    def handlers(self) -> Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]]:
        return {
            "checkavailability": self.check_availability,
            "findavailableslots": self.find_available_slots,
            "createevent": self.create_event,
            "getcurrentdatetime": self.get_current_datetime,
            "confirmdetails": self.confirm_details,
        }


def _arguments(function: Dict[str, Any]) -> Dict[str, Any]:
    raw = function.get("arguments") or {}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw) if raw.strip() else {}
        except ValueError:
            raise ToolArgumentError("Tool arguments are not valid JSON")
    if not isinstance(raw, dict):
        raise ToolArgumentError("Tool arguments must be an object")
    return raw


def execute_tool_call(tools: BookingTools, tool_call: Dict[str, Any]) -> Dict[str, Any]:
    """Run one tool call and wrap its result for VAPI."""
    call_id = tool_call.get("id")
    function = tool_call.get("function") or {}
    name = function.get("name") or ""

    handler = tools.handlers().get(name.lower())
    if handler is None:
        result = {"error": f"Unknown tool: {name}"}
    else:
        try:
            result = handler(_arguments(function))
        except (ToolArgumentError, CalendarError, MissingConfigurationError) as e:
            logger.warning(f"Tool {name} failed: {e}")
            result = {"error": str(e), "success": False}
        except Exception as e:
            logger.exception(f"Tool {name} crashed")
            result = {"error": f"Tool {name} failed: {e}", "success": False}

    return {"toolCallId": call_id, "result": json.dumps(result)}


def process_tool_calls(tools: BookingTools, tool_calls: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    results = []
    for tool_call in tool_calls:
        logger.info(f"Executing tool {(tool_call.get('function') or {}).get('name')}")
        results.append(execute_tool_call(tools, tool_call))
    return results


def tool_calls_from(message: Dict[str, Any]) -> List[Dict[str, Any]]:
    return message.get("toolCalls") or message.get("toolCallList") or []


def _explain_all(tool_calls: List[Dict[str, Any]], text: str) -> Dict[str, Any]:
    return {"results": [{"toolCallId": tc.get("id"), "result": text} for tc in tool_calls]}


def run_agent_tool_calls(
    message: Dict[str, Any],
    store,
    calendar_factory: Callable[..., GoogleCalendarClient] = GoogleCalendarClient.from_refresh_token,
    now: Optional[Callable[[], datetime]] = None
) -> Dict[str, Any]:
    """
    Execute a webhook's tool calls against the calling agent's own calendar.

    Problems finding the agent or authorizing its calendar are explained in
    every tool result rather than raised, so the assistant can tell the
    caller what went wrong.
    """
    tool_calls = tool_calls_from(message)
    call = message.get("call") or {}
    assistant_id = call.get("assistantId") or (message.get("assistant") or {}).get("id")

    agent = store.find_agent_by_assistant_id(assistant_id) if assistant_id else None
    if agent is None:
        logger.error(f"No agent found for assistant {assistant_id}")
        return _explain_all(tool_calls, "Agent configuration not found")

    try:
        business = agent.config
    except ValidationError as e:
        logger.error(f"Agent {agent.org_id}/{agent.agent_id} has an invalid configuration: {e}")
        return _explain_all(tool_calls, "Agent configuration invalid")

    integration = business.calendar_integration()
    if integration is None or not integration.refresh_token:
        logger.error(f"Agent {agent.org_id}/{agent.agent_id} has no Google refresh token")
        return _explain_all(tool_calls, NOT_CONNECTED_MESSAGE)

    try:
        calendar = calendar_factory(integration.refresh_token, integration.calendar_id)
    except (CalendarAuthError, MissingConfigurationError) as e:
        logger.error(f"Calendar authorization failed for {agent.org_id}/{agent.agent_id}: {e}")
        return _explain_all(tool_calls, REFRESH_FAILED_MESSAGE)

    tools = BookingTools(calendar, business, now=now)
    return {"results": process_tool_calls(tools, tool_calls)}
