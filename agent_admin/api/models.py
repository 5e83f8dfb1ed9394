"""Pydantic models for API request/response validation.

Request bodies use the camelCase keys the admin UI sends. Fields whose
absence answers 400 are Optional here; the handlers check them.
"""
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from agent_admin.business_config import BusinessConfig


class _Request(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProvisionRequest(_Request):
    """Body of POST /api/vapi/assistant."""
    org_id: Optional[str] = Field(None, description="Organization of a stored agent")
    agent_id: Optional[str] = Field(None, description="Stored agent to provision")
    config: Optional[BusinessConfig] = Field(
        None, description="Inline configuration; used instead of the stored one when given"
    )


class ToolSyncRequest(_Request):
    """Body of POST /api/vapi/assistant/sync."""
    assistant_id: Optional[str] = None
    org_id: Optional[str] = None
    agent_id: Optional[str] = None


class CallRequest(_Request):
    phone_number: Optional[str] = Field(None, examples=["+15551234567"])
    assistant_id: Optional[str] = None


class CheckoutRequest(_Request):
    org_id: Optional[str] = None
    price_id: Optional[str] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "orgId": "org-123",
                "priceId": "price_1234",
                "successUrl": "https://app.example.com/billing?success=1",
                "cancelUrl": "https://app.example.com/billing?canceled=1"
            }
        }
    )


class GoogleCodeRequest(_Request):
    code: Optional[str] = None


class CustomTokenRequest(_Request):
    uid: Optional[str] = None


class ErrorResponse(BaseModel):
    """Error response schema."""
    error: str = Field(..., description="Error message")
    detail: Optional[str] = Field(None, description="Detailed error information")
    code: Optional[str] = Field(None, description="Error code")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": "Version conflict",
                "detail": "Version 3 is stale (current: 4)",
                "code": "VERSION_CONFLICT"
            }
        }
    )
