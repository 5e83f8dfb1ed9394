"""
Google Calendar access.

Two credential sources are supported: the service account configured in the
environment (used by the public tools endpoint and the availability reader),
and an agent's stored OAuth refresh token (used during live calls).
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, Optional

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2 import credentials as oauth_credentials
from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from agent_admin import config
from agent_admin.config import MissingConfigurationError

logger = logging.getLogger(__name__)


class CalendarError(Exception):
    """Raised when the calendar API call fails."""

    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message)
        self.status_code = status_code


class CalendarAuthError(CalendarError):
    """Raised when stored Google credentials can no longer be refreshed."""

    def __init__(self, message: str):
        super().__init__(message, status_code=401)


@dataclass
class CalendarEvent:
    """Read-only view of a Google Calendar event."""
    id: str
    summary: str
    start: datetime
    end: datetime
    is_all_day: bool = False
    html_link: Optional[str] = None
    description: Optional[str] = None

    @classmethod
    def from_google_event(cls, event: Dict[str, Any]) -> "CalendarEvent":
        """Create CalendarEvent from a Google Calendar API item."""
        start_data = event.get("start", {})
        end_data = event.get("end", {})

        if "date" in start_data:
            # All-day event: dates only, end is exclusive
            start = datetime.fromisoformat(start_data["date"])
            end = datetime.fromisoformat(end_data.get("date", start_data["date"]))
            is_all_day = True
        else:
            start = datetime.fromisoformat(start_data.get("dateTime", "").replace("Z", "+00:00"))
            end = datetime.fromisoformat(end_data.get("dateTime", "").replace("Z", "+00:00"))
            is_all_day = False

        return cls(
            id=event.get("id", ""),
            summary=event.get("summary") or "Busy",
            start=start,
            end=end,
            is_all_day=is_all_day,
            html_link=event.get("htmlLink"),
            description=event.get("description"),
        )

    def to_summary(self) -> Dict[str, Any]:
        start = self.start.date().isoformat() if self.is_all_day else self.start.isoformat()
        end = self.end.date().isoformat() if self.is_all_day else self.end.isoformat()
        return {
            "id": self.id,
            "summary": self.summary,
            "startTime": start,
            "endTime": end,
            "htmlLink": self.html_link,
        }


def service_account_credentials(account: Optional[Dict[str, str]] = None):
    """
    Build service-account credentials from the environment.

    Raises:
        MissingConfigurationError: If the email or private key is not set
    """
    account = account or config.get_service_account()
    if not account:
        raise MissingConfigurationError("Calendar integration credentials missing.")

    info = {
        "type": "service_account",
        "client_email": account["client_email"],
        "private_key": account["private_key"],
        "token_uri": config.GOOGLE_TOKEN_URL,
    }
    return service_account.Credentials.from_service_account_info(
        info, scopes=config.GOOGLE_CALENDAR_SCOPES
    )


def refresh_token_credentials(refresh_token: str, access_token: Optional[str] = None):
    """
    Build user credentials from a stored refresh token and refresh them now.

    Refreshing eagerly means an expired or revoked grant is reported before
    any tool runs.

    Raises:
        MissingConfigurationError: If the OAuth client is not configured
        CalendarAuthError: If Google refuses the refresh
    """
    client = config.get_google_client()
    if not client:
        raise MissingConfigurationError("Missing Google OAuth client credentials.")

    creds = oauth_credentials.Credentials(
        token=access_token,
        refresh_token=refresh_token,
        client_id=client["client_id"],
        client_secret=client["client_secret"],
        token_uri=config.GOOGLE_TOKEN_URL,
        scopes=config.GOOGLE_CALENDAR_SCOPES,
    )
    try:
        creds.refresh(Request())
    except RefreshError as e:
        logger.warning(f"Google token refresh failed: {e}")
        raise CalendarAuthError("Failed to refresh Google token") from e
    return creds


class GoogleCalendarClient:
    """Thin wrapper around the Calendar v3 events resource."""

    def __init__(self, credentials=None, calendar_id: Optional[str] = None, service=None):
        self.calendar_id = calendar_id or config.get_calendar_id()
        self._credentials = credentials
        self._service = service

    @classmethod
    def from_service_account(cls, calendar_id: Optional[str] = None) -> "GoogleCalendarClient":
        return cls(service_account_credentials(), calendar_id=calendar_id)

    @classmethod
    def from_refresh_token(
        cls,
        refresh_token: str,
        calendar_id: Optional[str] = None
    ) -> "GoogleCalendarClient":
        return cls(refresh_token_credentials(refresh_token), calendar_id=calendar_id or "primary")

    @property
    def service(self):
        if self._service is None:
            self._service = build(
                "calendar", "v3", credentials=self._credentials, cache_discovery=False
            )
        return self._service

    def list_events(
        self,
        time_min: datetime,
        time_max: datetime,
        max_results: int = 250
    ) -> List[CalendarEvent]:
        """
        List single (expanded) events between two instants, ordered by start.

        Raises:
            CalendarError: If the API call fails
        """
        try:
            response = self.service.events().list(
                calendarId=self.calendar_id,
                timeMin=time_min.isoformat(),
                timeMax=time_max.isoformat(),
                singleEvents=True,
                orderBy="startTime",
                maxResults=max_results,
            ).execute()
        except HttpError as e:
            logger.error(f"Calendar API error listing events: {e}")
            raise CalendarError(f"Calendar API error: {e.resp.status}", status_code=e.resp.status) from e
        except RefreshError as e:
            raise CalendarAuthError("Failed to refresh Google token") from e

        events = []
        for item in response.get("items", []):
            if item.get("status") == "cancelled":
                continue
            try:
                events.append(CalendarEvent.from_google_event(item))
            except ValueError as e:
                logger.warning(f"Skipping unparseable event {item.get('id')}: {e}")
        return events

    def events_on(self, day: date, tz) -> List[CalendarEvent]:
        """All events overlapping a calendar day in the given timezone."""
        start = datetime.combine(day, time.min, tzinfo=tz)
        return self.list_events(start, start + timedelta(days=1))

    def insert_event(self, body: Dict[str, Any], send_updates: str = "none") -> Dict[str, Any]:
        """
        Insert an event.

        Raises:
            CalendarError: If the API call fails
        """
        try:
            return self.service.events().insert(
                calendarId=self.calendar_id,
                body=body,
                sendUpdates=send_updates,
            ).execute()
        except HttpError as e:
            logger.error(f"Calendar API error inserting event: {e}")
            raise CalendarError(f"Calendar API error: {e.resp.status}", status_code=e.resp.status) from e
        except RefreshError as e:
            raise CalendarAuthError("Failed to refresh Google token") from e
