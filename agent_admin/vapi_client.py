"""VAPI REST client.

Covers the assistant resource (/assistant, /assistant/{id}) and outbound
phone calls (/call/phone). Upstream failures raise VapiAPIError carrying the
upstream status so the API layer can pass it through.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from agent_admin import config
from agent_admin.config import MissingConfigurationError
from agent_admin.http_client import create_http_session, response_error_message

logger = logging.getLogger(__name__)


class VapiAPIError(Exception):
    """Raised when VAPI answers with a non-2xx status or cannot be reached."""

    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


@dataclass
class RemoteAssistant:
    """Assistant definition as read, plus the version token to write against."""
    data: Dict[str, Any]
    version: Optional[str]

    @property
    def id(self) -> Optional[str]:
        return self.data.get("id")


class VapiClient:
    """Small wrapper around the VAPI REST API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = config.VAPI_BASE_URL,
        session: Optional[requests.Session] = None
    ):
        self.api_key = api_key or config.get_vapi_api_key()
        if not self.api_key:
            raise MissingConfigurationError("VAPI Private Key is not configured on the server")
        self.base_url = base_url.rstrip("/")
        self.session = session or create_http_session()

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if extra:
            headers.update(extra)
        return headers

    def _send(self, method: str, path: str, action: str, **kwargs) -> requests.Response:
        """Issue a request; transport failures become a 502 VapiAPIError."""
        try:
            response = getattr(self.session, method)(f"{self.base_url}{path}", **kwargs)
        except requests.RequestException as e:
            logger.error(f"VAPI {action} failed: {e}")
            raise VapiAPIError(f"VAPI unreachable: {e}", status_code=502) from e
        self._check(response, action)
        return response

    def _check(self, response: requests.Response, action: str):
        if response.ok:
            return
        message = response_error_message(response)
        logger.error(f"VAPI {action} failed with {response.status_code}: {message}")
        raise VapiAPIError(message, status_code=response.status_code)

    def get_assistant(self, assistant_id: str) -> RemoteAssistant:
        """
        Fetch an assistant definition.

        The version token is the ETag header when VAPI sends one, otherwise
        the assistant's updatedAt timestamp.
        """
        response = self._send(
            "get", f"/assistant/{assistant_id}", f"get assistant {assistant_id}", headers=self._headers()
        )
        data = response.json()
        version = response.headers.get("ETag") or data.get("updatedAt")
        return RemoteAssistant(data=data, version=version)

    def list_assistants(self, limit: int = 100) -> List[Dict[str, Any]]:
        response = self._send(
            "get", "/assistant", "list assistants", headers=self._headers(), params={"limit": limit}
        )
        return response.json()

    def create_assistant(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = self._send(
            "post", "/assistant", "create assistant", headers=self._headers(), json=payload
        )
        return response.json()

    def update_assistant(
        self,
        assistant_id: str,
        payload: Dict[str, Any],
        if_match: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        PATCH an assistant.

        Args:
            assistant_id: Assistant to update
            payload: Partial assistant body
            if_match: Version token the update is based on; sent as If-Match

        Raises:
            VapiAPIError: On any non-2xx answer (412 when If-Match is stale)
        """
        extra = {"If-Match": if_match} if if_match else None
        response = self._send(
            "patch",
            f"/assistant/{assistant_id}",
            f"update assistant {assistant_id}",
            headers=self._headers(extra),
            json=payload,
        )
        return response.json()

    def create_phone_call(self, assistant_id: str, phone_number: str) -> Dict[str, Any]:
        response = self._send(
            "post",
            "/call/phone",
            "create phone call",
            headers=self._headers(),
            json={"assistantId": assistant_id, "customer": {"number": phone_number}},
        )
        return response.json()
