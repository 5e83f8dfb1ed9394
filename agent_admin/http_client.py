"""HTTP client utilities with retry and connection pooling.

Purpose: one place that configures outbound HTTP for the VAPI and Google
OAuth calls.

Pattern: requests.Session with a urllib3 retry strategy and tenacity for
connection-level retries. Only GET is retried; writes go out once with a
timeout and their failures are reported to the caller.
"""
import logging

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log
)

from agent_admin import config

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = (429, 500, 502, 503, 504)


class RetryableHTTPError(requests.exceptions.HTTPError):
    """Raised for GET responses whose status is worth retrying."""
    pass


def _last_response(retry_state):
    """After the final attempt hand back the upstream error response."""
    exc = retry_state.outcome.exception()
    if isinstance(exc, RetryableHTTPError):
        return exc.response
    raise exc


def create_http_session(
    max_retries: int = 3,
    backoff_factor: float = 1.0,
    timeout: int = config.HTTP_TIMEOUT_SECONDS
) -> requests.Session:
    """
    Create HTTP session with retry and connection pooling.

    Args:
        max_retries: Maximum number of GET retry attempts (default: 3)
        backoff_factor: Backoff multiplier; delays are 1s, 2s, 4s at 1.0
        timeout: Request timeout in seconds applied to every method

    Returns:
        Configured requests.Session
    """
    session = requests.Session()

    retry_strategy = Retry(
        total=max_retries,
        backoff_factor=backoff_factor,
        status_forcelist=list(RETRYABLE_STATUS),
        allowed_methods=["GET"],
        raise_on_status=False,
    )

    adapter = HTTPAdapter(
        max_retries=retry_strategy,
        pool_connections=10,
        pool_maxsize=10,
    )
    session.mount("http://", adapter)
    session.mount("https://", adapter)

    original_get = session.get
    original_post = session.post
    original_patch = session.patch

    @retry(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential(multiplier=backoff_factor, min=0, max=8),
        retry=retry_if_exception_type((
            requests.exceptions.ConnectionError,
            requests.exceptions.Timeout,
            RetryableHTTPError
        )),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        retry_error_callback=_last_response
    )
    def get_with_retry(*args, **kwargs):
        kwargs.setdefault("timeout", timeout)
        response = original_get(*args, **kwargs)
        if response.status_code in RETRYABLE_STATUS:
            raise RetryableHTTPError(
                f"{response.status_code} from {response.url}", response=response
            )
        return response

    def post_with_timeout(*args, **kwargs):
        kwargs.setdefault("timeout", timeout)
        return original_post(*args, **kwargs)

    def patch_with_timeout(*args, **kwargs):
        kwargs.setdefault("timeout", timeout)
        return original_patch(*args, **kwargs)

    session.get = get_with_retry
    session.post = post_with_timeout
    session.patch = patch_with_timeout

    return session


def response_error_message(response: requests.Response) -> str:
    """Best-effort error message from an upstream JSON error body."""
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"

    if isinstance(body, dict):
        message = body.get("message") or body.get("error_description") or body.get("error")
        if isinstance(message, list):
            return "; ".join(str(m) for m in message)
        if isinstance(message, dict):
            return str(message.get("message") or message)
        if message:
            return str(message)
    return str(body)
