"""FastAPI server for the voice agent admin service.

Features:
- Agent config read / merge-write with ETag and If-Match
- Calendar availability metrics and slot resolution
- VAPI provisioning, tool-schema sync, outbound calls, tool webhooks
- Stripe checkout and webhooks
- Google OAuth code exchange and Firebase custom tokens
- Global exception handling with {error, detail, code} bodies
- Request ids bound into structured logs
"""
import os
from contextlib import asynccontextmanager
from datetime import UTC, date, datetime
from typing import Any, Dict, Optional

from firebase_admin import exceptions as firebase_exceptions
from fastapi import Body, Depends, FastAPI, Header, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from agent_admin import config
from agent_admin.api.dependencies import (
    get_billing_service,
    get_calendar_factory,
    get_call_report_service,
    get_config_store,
    get_oauth_client,
    get_service_calendar,
    get_service_calendar_factory,
    get_token_minter,
    get_vapi_client,
    require_org_access,
)
from agent_admin.api.models import (
    CallRequest,
    CheckoutRequest,
    CustomTokenRequest,
    ErrorResponse,
    GoogleCodeRequest,
    ProvisionRequest,
    ToolSyncRequest,
)
from agent_admin.availability import AvailabilityReader
from agent_admin.billing import BillingError, WebhookSignatureError
from agent_admin.calendar_client import CalendarError
from agent_admin.config import MissingConfigurationError
from agent_admin.config_store import ConfigNotFoundError, ConfigStoreError, VersionConflictError
from agent_admin.google_auth import GoogleAuthError
from agent_admin.logging_config import RequestIDMiddleware, get_logger, setup_structured_logging
from agent_admin.provisioning import AssistantConflictError, MissingAssistantError, ProvisioningForwarder
from agent_admin.slots import resolve_slots, window_for_location
from agent_admin.tool_calls import BookingTools, process_tool_calls, run_agent_tool_calls, tool_calls_from
from agent_admin.vapi_client import VapiAPIError

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown logic."""
    setup_structured_logging(
        os.getenv("LOG_LEVEL", "INFO"),
        json_logs=os.getenv("LOG_FORMAT", "json").lower() != "console",
    )
    logger.info(f"Voice agent admin starting up (config backend: {config.get_config_backend()})")
    yield
    logger.info("Voice agent admin shutting down...")


app = FastAPI(
    title="Voice Agent Admin API",
    description="Configure, provision and operate voice-AI phone agents",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestIDMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.get_cors_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "ETag"],
)


def error_response(status_code: int, error: str, detail: Optional[str] = None, code: Optional[str] = None, headers=None):
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, detail=detail, code=code).model_dump(),
        headers=headers,
    )


def etag_for(version: str) -> str:
    return f'"{version}"'


def version_from_if_match(if_match: Optional[str]) -> Optional[str]:
    """Strip the weak prefix and quotes from an If-Match value."""
    if not if_match or if_match.strip() == "*":
        return None
    value = if_match.strip()
    if value.startswith("W/"):
        value = value[2:]
    return value.strip('"')


# Global exception handlers
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle request validation errors consistently."""
    logger.warning(f"Validation error: {exc.errors()}")
    return error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY, "Validation Error", str(exc.errors()), "VALIDATION_ERROR"
    )


@app.exception_handler(ValidationError)
async def config_validation_handler(request: Request, exc: ValidationError):
    """Merged configuration failed BusinessConfig validation."""
    logger.warning(f"Invalid configuration: {exc.errors()}")
    return error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY, "Invalid configuration", str(exc.errors()), "INVALID_CONFIG"
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return error_response(exc.status_code, str(exc.detail), code="HTTP_ERROR", headers=getattr(exc, "headers", None))


@app.exception_handler(ConfigNotFoundError)
async def not_found_handler(request: Request, exc: ConfigNotFoundError):
    return error_response(status.HTTP_404_NOT_FOUND, "Agent not found", str(exc), "NOT_FOUND")


@app.exception_handler(VersionConflictError)
async def version_conflict_handler(request: Request, exc: VersionConflictError):
    headers = {"ETag": etag_for(exc.current_version)} if exc.current_version else None
    return error_response(status.HTTP_409_CONFLICT, "Version conflict", str(exc), "VERSION_CONFLICT", headers)


@app.exception_handler(AssistantConflictError)
async def assistant_conflict_handler(request: Request, exc: AssistantConflictError):
    return error_response(status.HTTP_409_CONFLICT, "Assistant conflict", str(exc), "ASSISTANT_CONFLICT")


@app.exception_handler(ConfigStoreError)
async def store_error_handler(request: Request, exc: ConfigStoreError):
    return error_response(status.HTTP_503_SERVICE_UNAVAILABLE, "Config store unavailable", str(exc), "STORE_UNAVAILABLE")


@app.exception_handler(MissingConfigurationError)
async def missing_configuration_handler(request: Request, exc: MissingConfigurationError):
    logger.error(f"Missing configuration: {exc}")
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc), code="MISSING_CONFIGURATION")


@app.exception_handler(VapiAPIError)
async def vapi_error_handler(request: Request, exc: VapiAPIError):
    return error_response(exc.status_code, exc.message, code="UPSTREAM_ERROR")


@app.exception_handler(CalendarError)
async def calendar_error_handler(request: Request, exc: CalendarError):
    return error_response(exc.status_code, str(exc), code="CALENDAR_ERROR")


@app.exception_handler(GoogleAuthError)
async def google_auth_error_handler(request: Request, exc: GoogleAuthError):
    return error_response(exc.status_code, str(exc), code="UPSTREAM_ERROR")


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    return error_response(exc.status_code, str(exc), code="BILLING_ERROR")


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Catch-all handler for unexpected exceptions."""
    logger.error(f"Unexpected error: {exc}", exc_info=True)
    return error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "Internal Server Error",
        "An unexpected error occurred. Please try again later.",
        "INTERNAL_ERROR",
    )


@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint for load balancers."""
    return {
        "status": "healthy",
        "service": "voice-agent-admin",
        "version": "1.0.0"
    }


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API info."""
    return {
        "message": "Voice Agent Admin API",
        "docs": "/docs",
        "health": "/health"
    }


# Agent configuration

@app.get("/api/agent/{org_id}", tags=["Agents"], dependencies=[Depends(require_org_access)])
def list_agents(org_id: str, store=Depends(get_config_store)):
    agents = store.list_agents(org_id)
    return {
        "orgId": org_id,
        "agents": [
            {
                "agentId": a.agent_id,
                "version": a.version,
                "businessName": (a.data.get("metadata") or {}).get("businessName", ""),
                "assistantId": (a.data.get("vapi") or {}).get("assistantId"),
            }
            for a in agents
        ],
    }


@app.get("/api/agent/{org_id}/{agent_id}", tags=["Agents"], dependencies=[Depends(require_org_access)])
def get_agent(org_id: str, agent_id: str, response: Response, store=Depends(get_config_store)):
    """
    Fetch an agent's configuration.

    The ETag header carries the document version; send it back as
    If-Match on PATCH to detect concurrent edits.
    """
    document = store.get_agent_config(org_id, agent_id)
    response.headers["ETag"] = etag_for(document.version)
    return document.data


@app.patch("/api/agent/{org_id}/{agent_id}", tags=["Agents"], dependencies=[Depends(require_org_access)])
def patch_agent(
    org_id: str,
    agent_id: str,
    response: Response,
    patch: Dict[str, Any] = Body(...),
    if_match: Optional[str] = Header(None),
    store=Depends(get_config_store)
):
    """
    Merge a partial configuration into the stored one.

    Raises:
        409: If-Match no longer matches the stored version
        422: Merged configuration is invalid
    """
    if not patch.get("savedAt"):
        patch["savedAt"] = datetime.now(UTC).isoformat()

    document = store.merge_agent_config(
        org_id, agent_id, patch, expected_version=version_from_if_match(if_match)
    )
    logger.info(f"Agent {org_id}/{agent_id} saved at version {document.version}")
    response.headers["ETag"] = etag_for(document.version)
    return document.data


@app.get("/api/organization/{org_id}", tags=["Agents"], dependencies=[Depends(require_org_access)])
def get_organization(org_id: str, response: Response, store=Depends(get_config_store)):
    try:
        document = store.get_organization(org_id)
    except ConfigNotFoundError as e:
        return error_response(status.HTTP_404_NOT_FOUND, "Organization not found", str(e), "NOT_FOUND")
    response.headers["ETag"] = etag_for(document.version)
    return document.data


# Calendar

@app.get("/api/calendar/availability", tags=["Calendar"])
def calendar_availability(calendar=Depends(get_service_calendar)):
    """Event counts and capacity metrics for the next seven days."""
    tz = window_for_location(None).timezone
    return AvailabilityReader(calendar, tz=tz).read().to_dict()


@app.get("/api/calendar/slots", tags=["Calendar"])
def calendar_slots(
    day: date = Query(..., alias="date", description="YYYY-MM-DD"),
    duration: Optional[int] = Query(None, gt=0, le=480),
    granularity: int = Query(config.SLOT_GRANULARITY_MINUTES, gt=0, le=240),
    org_id: Optional[str] = Query(None, alias="orgId"),
    agent_id: Optional[str] = Query(None, alias="agentId"),
    service: Optional[str] = None,
    store=Depends(get_config_store),
    calendar_factory=Depends(get_calendar_factory),
    service_calendar=Depends(get_service_calendar_factory)
):
    """
    Open slots for one day.

    With orgId/agentId the agent's primary location and (when connected)
    its own calendar are used; otherwise the service-account calendar and
    the default business hours.
    """
    business = None
    calendar = None
    if org_id and agent_id:
        business = store.get_agent_config(org_id, agent_id).config
        integration = business.calendar_integration()
        if integration and integration.is_connected and integration.refresh_token:
            calendar = calendar_factory(integration.refresh_token, integration.calendar_id)
    if calendar is None:
        calendar = service_calendar()

    window = window_for_location(business.primary_location() if business else None)
    minutes = duration
    if minutes is None and business is not None and business.find_service(service):
        minutes = business.find_service(service).duration_minutes
    minutes = minutes or config.get_appointment_duration()

    events = calendar.events_on(day, window.timezone)
    result = resolve_slots(day, window, events, minutes, granularity_minutes=granularity)
    return {**result.to_dict(), "durationMinutes": minutes, "granularityMinutes": granularity}


# VAPI

@app.post("/api/vapi/assistant", tags=["VAPI"])
def provision_assistant(
    request: ProvisionRequest,
    store=Depends(get_config_store),
    client=Depends(get_vapi_client)
):
    """Create or update the remote assistant from a configuration."""
    if request.config is None and not (request.org_id and request.agent_id):
        return error_response(status.HTTP_400_BAD_REQUEST, "Missing configuration", code="BAD_REQUEST")

    business = request.config
    if business is None:
        business = store.get_agent_config(request.org_id, request.agent_id).config

    forwarder = ProvisioningForwarder(client, store)
    return forwarder.provision(business, request.org_id, request.agent_id)


@app.post("/api/vapi/assistant/sync", tags=["VAPI"])
def sync_assistant_tools(
    request: ToolSyncRequest,
    store=Depends(get_config_store),
    client=Depends(get_vapi_client)
):
    """Push the fixed calendar tool schemas to a remote assistant."""
    forwarder = ProvisioningForwarder(client, store)
    if request.assistant_id:
        return forwarder.sync_tool_schemas(request.assistant_id).to_dict()
    if request.org_id and request.agent_id:
        business = store.get_agent_config(request.org_id, request.agent_id).config
        try:
            return forwarder.sync_for_config(business).to_dict()
        except MissingAssistantError as e:
            return error_response(status.HTTP_400_BAD_REQUEST, str(e), code="BAD_REQUEST")
    return error_response(status.HTTP_400_BAD_REQUEST, "Missing assistantId or orgId/agentId", code="BAD_REQUEST")


@app.post("/api/vapi/call", tags=["VAPI"])
def create_call(request: CallRequest, client=Depends(get_vapi_client)):
    if not request.phone_number or not request.assistant_id:
        return error_response(status.HTTP_400_BAD_REQUEST, "Missing phoneNumber or assistantId", code="BAD_REQUEST")
    return client.create_phone_call(request.assistant_id, request.phone_number)


@app.post("/api/vapi/tools", tags=["VAPI"])
def run_tools(payload: Dict[str, Any] = Body(...), calendar=Depends(get_service_calendar)):
    """Execute tool calls against the service-account calendar."""
    tool_calls = tool_calls_from(payload.get("message") or {})
    if not tool_calls:
        return error_response(status.HTTP_400_BAD_REQUEST, "No tool calls found in request", code="BAD_REQUEST")
    return {"results": process_tool_calls(BookingTools(calendar), tool_calls)}


@app.post("/api/vapi/webhook", tags=["VAPI"])
def vapi_webhook(
    payload: Dict[str, Any] = Body(...),
    store=Depends(get_config_store),
    calendar_factory=Depends(get_calendar_factory),
    reports=Depends(get_call_report_service)
):
    """Server URL for provisioned assistants."""
    message = payload.get("message") or {}
    message_type = message.get("type")

    if message_type == "tool-calls":
        logger.info("Received tool calls")
        return run_agent_tool_calls(message, store, calendar_factory)
    if message_type == "end-of-call-report":
        logger.info("Received end-of-call report")
        return reports.handle(message)
    return {"message": "Handled"}


# Billing

@app.post("/api/stripe/checkout", tags=["Billing"])
def stripe_checkout(request: CheckoutRequest, billing=Depends(get_billing_service)):
    if not request.org_id or not request.price_id:
        return error_response(status.HTTP_400_BAD_REQUEST, "Missing orgId or priceId", code="BAD_REQUEST")
    url = billing.create_checkout_session(
        request.org_id, request.price_id, request.success_url, request.cancel_url
    )
    return {"url": url}


@app.post("/api/stripe/webhook", tags=["Billing"])
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    billing=Depends(get_billing_service)
):
    """Verified Stripe events; an unverifiable request changes nothing."""
    payload = await request.body()
    try:
        event = billing.verify_event(payload, stripe_signature)
    except WebhookSignatureError as e:
        return error_response(status.HTTP_400_BAD_REQUEST, f"Webhook Error: {e}", code="INVALID_SIGNATURE")
    return await run_in_threadpool(billing.handle_event, event)


# Auth bootstrapping

@app.post("/api/auth/google", tags=["Auth"])
def google_code_exchange(request: GoogleCodeRequest, oauth=Depends(get_oauth_client)):
    if not request.code:
        return error_response(status.HTTP_400_BAD_REQUEST, "Missing auth code", code="BAD_REQUEST")
    return oauth.exchange_code(request.code)


@app.post("/api/auth/create-custom-token", tags=["Auth"])
def firebase_custom_token(request: CustomTokenRequest, mint=Depends(get_token_minter)):
    if not request.uid:
        return error_response(status.HTTP_400_BAD_REQUEST, "User ID is required", code="BAD_REQUEST")
    try:
        token = mint(request.uid)
    except (ValueError, firebase_exceptions.FirebaseError) as e:
        logger.error(f"Error creating custom token: {e}")
        return error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to create custom token", str(e), "TOKEN_ERROR"
        )
    return {"customToken": token}
