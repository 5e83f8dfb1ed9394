"""Google OAuth token endpoint calls."""
import logging
from typing import Any, Dict, Optional

import requests

from agent_admin import config
from agent_admin.config import MissingConfigurationError
from agent_admin.http_client import create_http_session, response_error_message

logger = logging.getLogger(__name__)


class GoogleAuthError(Exception):
    """Token endpoint refused the request."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


class GoogleOAuthClient:
    """Authorization-code exchange against Google's token endpoint."""

    def __init__(self, client: Optional[Dict[str, str]] = None, session: Optional[requests.Session] = None):
        self.client = client or config.get_google_client()
        if not self.client:
            raise MissingConfigurationError("Server misconfiguration: Missing Credentials")
        self.session = session or create_http_session()

    def _post(self, data: Dict[str, str]) -> Dict[str, Any]:
        payload = {
            "client_id": self.client["client_id"],
            "client_secret": self.client["client_secret"],
            **data,
        }
        try:
            response = self.session.post(config.GOOGLE_TOKEN_URL, data=payload)
        except requests.RequestException as e:
            logger.error(f"Google token endpoint unreachable: {e}")
            raise GoogleAuthError(f"Token endpoint unreachable: {e}", status_code=502) from e
        if not response.ok:
            message = response_error_message(response)
            logger.error(f"Google token endpoint returned {response.status_code}: {message}")
            raise GoogleAuthError(message, status_code=response.status_code)
        return response.json()

    def exchange_code(self, code: str) -> Dict[str, Any]:
        """
        Exchange a popup-mode authorization code for tokens.

        Returns:
            Token response (access_token, expires_in, and usually refresh_token)
        """
        tokens = self._post({
            "code": code,
            "redirect_uri": "postmessage",
            "grant_type": "authorization_code",
        })
        if not tokens.get("refresh_token"):
            logger.warning("No refresh token returned; the user may need to revoke access and reconnect")
        return tokens
