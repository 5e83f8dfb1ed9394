"""Configuration for the voice agent admin service.

Static values live here as constants. Anything that comes from the
environment is read through a getter at call time so a running process
(or a test) sees the current value.
"""
import os
from typing import Dict, Any, List, Optional

from dotenv import load_dotenv

load_dotenv()


class MissingConfigurationError(Exception):
    """Raised when required credentials or settings are absent."""
    pass


# Default business hours when a location has none (or they can't be parsed)
DEFAULT_OPEN_HOUR = 9
DEFAULT_CLOSE_HOUR = 17
DEFAULT_BUSINESS_DAYS = "1,2,3,4,5"  # Mon-Fri, ISO weekday numbers
DEFAULT_TIMEZONE = "America/New_York"
DEFAULT_APPOINTMENT_MINUTES = 60
SLOT_GRANULARITY_MINUTES = 30
MAX_SLOTS_PER_ANSWER = 5

# Availability reader metrics: 9-5 day of 1-hour meetings
AVAILABILITY_WINDOW_DAYS = 7
MAX_SLOTS_PER_DAY = 8
HIGH_AVAILABILITY_THRESHOLD = 4
MAX_EVENTS_RETURNED = 5

# External endpoints
VAPI_BASE_URL = "https://api.vapi.ai"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_SCOPES = ["https://www.googleapis.com/auth/calendar"]
HTTP_TIMEOUT_SECONDS = 15

# Billing plans
PLAN_PRO = "PRO"
PLAN_BASIC = "BASIC"


def get_database_url() -> str:
    return os.getenv("DATABASE_URL", "sqlite:///voice_admin.db")


def get_config_backend() -> str:
    """Config store backend: 'sql' (default) or 'firestore'."""
    return os.getenv("CONFIG_BACKEND", "sql").strip().lower()


def get_business_hours() -> Dict[str, Any]:
    """
    Fallback business hours from the environment.

    Returns:
        Dict with start/end hour, ISO weekday numbers and timezone
    """
    days = os.getenv("BUSINESS_DAYS", DEFAULT_BUSINESS_DAYS)
    return {
        "start": int(os.getenv("BUSINESS_HOURS_START", DEFAULT_OPEN_HOUR)),
        "end": int(os.getenv("BUSINESS_HOURS_END", DEFAULT_CLOSE_HOUR)),
        "days": [int(d) for d in days.split(",") if d.strip()],
        "timezone": os.getenv("TIMEZONE", DEFAULT_TIMEZONE),
    }


def get_appointment_duration() -> int:
    return int(os.getenv("APPOINTMENT_DURATION", DEFAULT_APPOINTMENT_MINUTES))


def get_calendar_id() -> str:
    return os.getenv("GOOGLE_CALENDAR_ID", "primary")


def get_service_account() -> Optional[Dict[str, str]]:
    """
    Service-account credentials for Google Calendar, if configured.

    Private keys pasted into .env usually carry escaped newlines and
    sometimes surrounding quotes; both are cleaned here.
    """
    email = os.getenv("GOOGLE_SERVICE_ACCOUNT_EMAIL")
    key = os.getenv("GOOGLE_SERVICE_ACCOUNT_PRIVATE_KEY")
    if not email or not key:
        return None
    return {
        "client_email": email,
        "private_key": key.replace("\\n", "\n").replace('"', ""),
    }


def get_google_client() -> Optional[Dict[str, str]]:
    """OAuth client id/secret used for code exchange and token refresh."""
    client_id = os.getenv("GOOGLE_CLIENT_ID") or os.getenv("NEXT_PUBLIC_GOOGLE_CLIENT_ID")
    client_secret = os.getenv("GOOGLE_CLIENT_SECRET")
    if not client_id or not client_secret:
        return None
    return {"client_id": client_id, "client_secret": client_secret}


def get_vapi_api_key() -> Optional[str]:
    return os.getenv("VAPI_PRIVATE_KEY")


def get_app_url() -> Optional[str]:
    """Public base URL of this service (without trailing slash)."""
    url = os.getenv("APP_URL")
    return url.rstrip("/") if url else None


def get_stripe_secret_key() -> Optional[str]:
    return os.getenv("STRIPE_SECRET_KEY")


def get_stripe_webhook_secret() -> Optional[str]:
    return os.getenv("STRIPE_WEBHOOK_SECRET")


def get_firebase_service_account() -> Optional[str]:
    return os.getenv("FIREBASE_SERVICE_ACCOUNT_KEY")


def get_firebase_project_id() -> Optional[str]:
    return os.getenv("FIREBASE_PROJECT_ID")


def get_smtp_settings() -> Optional[Dict[str, Any]]:
    """SMTP settings for call summary emails, or None when email is off."""
    host = os.getenv("SMTP_HOST")
    if not host:
        return None
    return {
        "host": host,
        "port": int(os.getenv("SMTP_PORT", "587")),
        "username": os.getenv("SMTP_USER"),
        "password": os.getenv("SMTP_PASSWORD"),
        "from_address": os.getenv("EMAIL_FROM_ADDRESS", "Voice Agent <noreply@example.com>"),
    }


def get_notification_email() -> Optional[str]:
    return os.getenv("NOTIFICATION_EMAIL")


def api_key_required() -> bool:
    return os.getenv("REQUIRE_API_KEY", "false").strip().lower() in ("1", "true", "yes")


def get_cors_origins() -> List[str]:
    origins = os.getenv("CORS_ORIGINS", "http://localhost:3000")
    return [o.strip() for o in origins.split(",") if o.strip()]
