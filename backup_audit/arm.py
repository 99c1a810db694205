"""
Resilient GET client for the Azure Resource Manager REST surface.

Transient failures (HTTP 429/500/502/503/504, connection errors, timeouts)
are retried with exponential backoff of 2^attempt seconds. Callers never see
an exception for a transient or terminal HTTP failure, only ``None``, which
they must treat as "unknown" rather than "empty". Authentication failures
are the exception: they raise ``AuthError`` and abort the run.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import requests
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .constants import (
    ARM_ENDPOINT,
    ARM_SCOPE,
    DEFAULT_BACKOFF_BASE,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_REQUEST_TIMEOUT,
    RETRYABLE_STATUS_CODES,
)
from .utils import AuthError

logger = logging.getLogger(__name__)

# Refresh the bearer token this many seconds before it expires
_TOKEN_REFRESH_MARGIN = 300


class TransientHTTPError(Exception):
    """A retryable HTTP status from the management API."""
    def __init__(self, status_code: int, url: str):
        self.status_code = status_code
        self.url = url
        super().__init__(f"HTTP {status_code} from {url}")


_RETRYABLE_EXCEPTIONS = (TransientHTTPError, requests.ConnectionError, requests.Timeout)


@dataclass(frozen=True)
class ArmResponse:
    """Parsed 2xx response."""
    status_code: int
    body: Any
    headers: Dict[str, str] = field(default_factory=dict)

    def header(self, name: str) -> Optional[str]:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in (self.headers or {}).items():
            if key.lower() == lowered:
                return value
        return None

    @property
    def items(self) -> List[Dict[str, Any]]:
        """The ``value`` array of a list response, or an empty list."""
        if isinstance(self.body, dict):
            return self.body.get('value') or []
        return []


class ArmClient:
    """
    Bounded-retry authenticated GET against Azure Resource Manager.

    Args:
        credential: azure-identity credential exposing ``get_token``
        session: requests session (injectable for tests)
        base_url: ARM endpoint prefixed to relative targets
        max_attempts: total attempts per request, including the first
        timeout: per-request timeout in seconds
        sleep: sleep function used between attempts
    """

    def __init__(
        self,
        credential,
        session: Optional[requests.Session] = None,
        base_url: str = ARM_ENDPOINT,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.credential = credential
        self.session = session or requests.Session()
        self.base_url = base_url.rstrip('/')
        self.max_attempts = max(1, int(max_attempts))
        self.timeout = timeout
        self._sleep = sleep
        self._token: Optional[str] = None
        self._token_expires_on = 0.0
        self.request_count = 0

    def _url(self, target: str) -> str:
        if target.lower().startswith(('https://', 'http://')):
            return target
        return f"{self.base_url}/{target.lstrip('/')}"

    def _bearer_token(self) -> str:
        if self._token and time.time() < self._token_expires_on - _TOKEN_REFRESH_MARGIN:
            return self._token
        try:
            access_token = self.credential.get_token(ARM_SCOPE)
        except Exception as e:
            raise AuthError(
                f"Failed to acquire a management token: {e}", provider="azure", original_error=e
            ) from e
        self._token = access_token.token
        self._token_expires_on = float(getattr(access_token, 'expires_on', 0) or 0)
        return self._token

    def _send(self, url: str, params: Optional[Dict[str, Any]], attempt: int) -> Optional[ArmResponse]:
        headers = {"Authorization": f"Bearer {self._bearer_token()}"}
        self.request_count += 1
        try:
            response = self.session.get(url, headers=headers, params=params, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            logger.warning(f"GET {url} attempt {attempt}/{self.max_attempts} failed: {e}")
            raise

        status = response.status_code
        if status in RETRYABLE_STATUS_CODES:
            logger.warning(f"GET {url} attempt {attempt}/{self.max_attempts} failed: HTTP {status}")
            raise TransientHTTPError(status, url)

        if status == 401:
            raise AuthError(f"Management API rejected credentials (HTTP 401) for {url}", provider="azure")

        if not 200 <= status < 300:
            if status == 404:
                logger.debug(f"GET {url} returned HTTP 404")
            else:
                logger.warning(f"GET {url} failed with non-retryable HTTP {status}")
            return None

        try:
            body = response.json()
        except ValueError:
            logger.debug(f"GET {url} returned a non-JSON body")
            body = {}

        return ArmResponse(status_code=status, body=body, headers=dict(response.headers or {}))

    def get(self, target: str, params: Optional[Dict[str, Any]] = None) -> Optional[ArmResponse]:
        """
        GET a relative ARM path or absolute URL.

        Returns the parsed response, or None when the request failed
        terminally or exhausted its retries.

        Raises:
            AuthError: on token acquisition failure or HTTP 401
        """
        url = self._url(target)
        retryer = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=1, exp_base=DEFAULT_BACKOFF_BASE),
            retry=retry_if_exception_type(_RETRYABLE_EXCEPTIONS),
            sleep=self._sleep,
            reraise=True,
        )
        try:
            for attempt in retryer:
                with attempt:
                    response = self._send(url, params, attempt.retry_state.attempt_number)
        except _RETRYABLE_EXCEPTIONS as e:
            logger.warning(f"GET {url} gave up after {self.max_attempts} attempts: {e}")
            return None
        except requests.RequestException as e:
            logger.warning(f"GET {url} failed: {e}")
            return None
        return response
