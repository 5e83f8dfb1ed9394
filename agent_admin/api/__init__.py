"""API package initialization."""
from agent_admin.api.models import ErrorResponse, ProvisionRequest, CheckoutRequest

__all__ = ["ErrorResponse", "ProvisionRequest", "CheckoutRequest"]
