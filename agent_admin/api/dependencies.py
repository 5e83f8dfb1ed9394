"""FastAPI dependency injection functions."""
from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from agent_admin import config
from agent_admin.auth import APIKeyManager, InvalidAPIKeyError, OrgAccessError
from agent_admin.billing import BillingService
from agent_admin.calendar_client import GoogleCalendarClient
from agent_admin.call_reports import CallReportService
from agent_admin.config_store import create_config_store
from agent_admin.firebase import create_custom_token
from agent_admin.google_auth import GoogleOAuthClient
from agent_admin.vapi_client import VapiClient


# Initialize singletons
_config_store = None
_api_key_manager = None


def get_config_store():
    """Get or create the config store singleton for the configured backend."""
    global _config_store
    if _config_store is None:
        _config_store = create_config_store()
    return _config_store


def get_api_key_manager() -> APIKeyManager:
    """Get or create API key manager singleton."""
    global _api_key_manager
    if _api_key_manager is None:
        _api_key_manager = APIKeyManager(database_url=config.get_database_url())
    return _api_key_manager


def get_vapi_client() -> VapiClient:
    """VAPI client; raises MissingConfigurationError without VAPI_PRIVATE_KEY."""
    return VapiClient()


def get_service_calendar() -> GoogleCalendarClient:
    """Calendar authenticated as the configured service account."""
    return GoogleCalendarClient.from_service_account()


def get_service_calendar_factory():
    """Deferred service-account calendar, for routes that may not need it."""
    return GoogleCalendarClient.from_service_account


def get_calendar_factory():
    """Builds a calendar client from an agent's stored refresh token."""
    return GoogleCalendarClient.from_refresh_token


def get_oauth_client() -> GoogleOAuthClient:
    return GoogleOAuthClient()


def get_token_minter():
    return create_custom_token


def get_billing_service(store=Depends(get_config_store)) -> BillingService:
    return BillingService(store)


def get_call_report_service(store=Depends(get_config_store)) -> CallReportService:
    return CallReportService(store)


async def require_org_access(
    org_id: str,
    x_api_key: Optional[str] = Header(None, description="API Key")
) -> Optional[str]:
    """
    Gate org-scoped routes behind an API key when REQUIRE_API_KEY is on.

    Returns:
        org_id of the validated key, or None when keys are not required

    Raises:
        HTTPException 401: Missing or invalid API key
        HTTPException 403: Key belongs to a different organization
    """
    if not config.api_key_required():
        return None

    if not x_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API key",
            headers={"WWW-Authenticate": "ApiKey"}
        )
    try:
        return get_api_key_manager().authorize_org(x_api_key, org_id)
    except InvalidAPIKeyError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "ApiKey"}
        )
    except OrgAccessError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
