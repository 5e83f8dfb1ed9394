"""
Business configuration schema for a voice agent.

One BusinessConfig document exists per (organization, agent). Documents
are stored and exchanged with camelCase keys; Python code uses the
snake_case attribute names. Unknown keys are kept so documents written by
newer clients survive a round-trip through this service.
"""
from typing import Optional, List, Dict, Any
from enum import Enum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]


class _Document(BaseModel):
    """Base for all config sections: camelCase aliases, extra keys kept."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )


class OperationMode(str, Enum):
    TRAINING = "Training"
    PRODUCTION = "Production"
    FALLBACK = "Fallback"


class DeliveryMode(str, Enum):
    PHYSICAL = "Physical"
    VIRTUAL = "Virtual"
    HYBRID = "Hybrid"


class BusinessMetadata(_Document):
    business_name: str = Field(default="", max_length=200)
    industry: str = ""
    primary_use_case: str = ""
    target_users: str = ""
    description: str = ""
    created_at: Optional[str] = None


class Service(_Document):
    """A bookable service offered by the business."""
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=100)
    description: str = ""
    duration_minutes: int = Field(..., gt=0, le=480, description="Duration in minutes (1-480)")
    booking_rules: str = ""


class Location(_Document):
    """A place (or virtual presence) with its own opening days and hours."""
    id: str = Field(..., min_length=1)
    name: str = ""
    mode: DeliveryMode = DeliveryMode.PHYSICAL
    operating_days: List[str] = Field(default_factory=lambda: WEEKDAYS[:5])
    operating_hours: str = Field(default="", description="Free text, e.g. '9:00 AM - 5:00 PM'")
    time_zone: str = "UTC"

    @field_validator("operating_days")
    @classmethod
    def normalize_days(cls, v):
        by_prefix = {day[:3]: day for day in WEEKDAYS}
        days, unknown = [], []
        for raw in v:
            day = (raw or "").strip().lower()
            if not day:
                continue
            full = by_prefix.get(day[:3])
            if full is None or not full.startswith(day):
                unknown.append(raw)
            elif full not in days:
                days.append(full)
        if unknown:
            raise ValueError(f"Unknown operating days: {', '.join(unknown)}")
        return days

    @field_validator("time_zone")
    @classmethod
    def check_time_zone(cls, v):
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown time zone: {v}")
        return v


class Resource(_Document):
    """Staff member, room or role that may be selected for a booking."""
    id: str = Field(..., min_length=1)
    name: str = ""
    role: str = ""
    availability_rules: str = ""
    selection_required: bool = False


class DataFields(_Document):
    mandatory: List[str] = Field(default_factory=lambda: ["Name", "Phone"])
    optional: List[str] = Field(default_factory=lambda: ["Email"])
    validation_rules: str = "Phone must be E.164 format"


class ConversationRules(_Document):
    tone: str = "Helpful and polite"
    formality: str = "Professional"
    speaking_style: str = "Clear and concise"
    speech_pace: str = "Normal"
    small_talk_allowed: bool = True
    identity_disclosure: str = "Always"


class SafetyBoundaries(_Document):
    allowed_topics: str = "Services, Booking, Business Info"
    disallowed_topics: str = "Competitors, Personal Advice, Politics"
    compliance_constraints: str = "None"


class GoogleCalendarIntegration(_Document):
    is_connected: bool = False
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    calendar_id: Optional[str] = None
    connected_email: Optional[str] = None


class FirebaseIntegration(_Document):
    is_connected: bool = False
    project_id: Optional[str] = None


class BillingIntegration(_Document):
    plan: Optional[str] = None


class Integrations(_Document):
    google_calendar: Optional[GoogleCalendarIntegration] = None
    firebase: Optional[FirebaseIntegration] = None
    billing: Optional[BillingIntegration] = None

    @field_validator("google_calendar", "firebase", mode="before")
    @classmethod
    def expand_connected_flag(cls, v):
        """Older documents store a bare connected flag instead of an object."""
        if isinstance(v, bool):
            return {"isConnected": v}
        return v


class TranscriberSettings(_Document):
    provider: str = "deepgram"
    model: str = "nova-2"
    language: str = "en"
    user_name: Optional[str] = None
    user_email: Optional[str] = None
    user_phone: Optional[str] = None


class VapiSettings(_Document):
    """Voice-assistant platform settings used when provisioning."""
    model: str = "gpt-4o-mini"
    provider: str = "openai"
    voice_id: str = "Mia"
    voice_provider: str = "vapi"
    first_message: Optional[str] = None
    system_prompt: str = ""
    knowledge_base: Optional[str] = None
    temperature: float = Field(default=0.3, ge=0, le=2)
    background_sound: Optional[str] = None
    transcriber: TranscriberSettings = Field(default_factory=TranscriberSettings)
    assistant_id: Optional[str] = None
    show_floating_widget: Optional[bool] = None
    user_name: Optional[str] = None
    user_email: Optional[str] = None
    user_phone: Optional[str] = None

    def known_user(self) -> Dict[str, Optional[str]]:
        """Caller details known before the call, from either place they are kept."""
        return {
            "name": self.user_name or self.transcriber.user_name,
            "email": self.user_email or self.transcriber.user_email,
            "phone": self.user_phone or self.transcriber.user_phone,
        }


class BusinessConfig(_Document):
    """Complete configuration of one voice agent."""
    id: Optional[str] = None
    metadata: BusinessMetadata = Field(default_factory=BusinessMetadata)
    services: List[Service] = Field(default_factory=list)
    locations: List[Location] = Field(default_factory=list)
    resources: List[Resource] = Field(default_factory=list)
    data_fields: DataFields = Field(default_factory=DataFields)
    conversation: ConversationRules = Field(default_factory=ConversationRules)
    safety: SafetyBoundaries = Field(default_factory=SafetyBoundaries)
    operation_mode: OperationMode = OperationMode.TRAINING
    integrations: Optional[Integrations] = None
    saved_at: Optional[str] = None
    vapi: Optional[VapiSettings] = None

    @field_validator("services")
    @classmethod
    def unique_service_ids(cls, v):
        ids = [s.id for s in v]
        if len(ids) != len(set(ids)):
            raise ValueError("Service ids must be unique")
        return v

    def to_document(self) -> Dict[str, Any]:
        """Serialize with camelCase keys for storage / the wire."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @property
    def business_name(self) -> str:
        return self.metadata.business_name.strip() or "the company"

    def primary_location(self) -> Optional[Location]:
        return self.locations[0] if self.locations else None

    def find_service(self, name: Optional[str]) -> Optional[Service]:
        """Case-insensitive lookup of a service by name."""
        if not name:
            return None
        wanted = name.strip().lower()
        return next((s for s in self.services if s.name.strip().lower() == wanted), None)

    def calendar_integration(self) -> Optional[GoogleCalendarIntegration]:
        if self.integrations and self.integrations.google_calendar:
            return self.integrations.google_calendar
        return None

    def calendar_connected(self) -> bool:
        calendar = self.calendar_integration()
        return bool(calendar and calendar.is_connected)

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
        json_schema_extra={
            "example": {
                "metadata": {
                    "businessName": "Downtown Dental",
                    "industry": "Healthcare",
                    "description": "Family dental clinic"
                },
                "services": [
                    {"id": "srv-001", "name": "Cleaning", "durationMinutes": 60, "bookingRules": ""}
                ],
                "locations": [
                    {
                        "id": "loc-001",
                        "name": "Main office",
                        "operatingDays": ["monday", "tuesday", "wednesday", "thursday", "friday"],
                        "operatingHours": "9:00 AM - 5:00 PM",
                        "timeZone": "America/New_York"
                    }
                ],
                "operationMode": "Training"
            }
        },
    )
