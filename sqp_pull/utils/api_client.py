"""
SP-API Client Module
HTTP transport for the Reports API with retry, pacing, and error classification.

Features:
- Per-call access token (one client serves every seller of a region)
- Automatic retry with exponential backoff for connection errors and 429/5xx
- Request pacing per API type, updated from x-amzn-RateLimit-Limit
- Retry-After header support
- 401/403 surfaced as SPAPIAuthError so callers can force a token refresh
"""

import time
import random
import logging
import requests
from typing import Optional, Dict

logger = logging.getLogger(__name__)


# =============================================================================
# Custom Exceptions
# =============================================================================

class SPAPIError(Exception):
    """Base exception for SP-API errors."""
    def __init__(self, message: str, status_code: int = None, response_body: dict = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class SPAPIRateLimitError(SPAPIError):
    """Rate limit exceeded (429)."""
    pass


class SPAPITransientError(SPAPIError):
    """Transient error that may succeed on retry (500, 502, 503, 504, connection)."""
    pass


class SPAPIFatalError(SPAPIError):
    """Request rejected (4xx other than 401/403/429)."""
    pass


class SPAPIAuthError(SPAPIError):
    """Access token rejected (401/403)."""
    pass


AUTH_STATUS_CODES = {401, 403}


# =============================================================================
# Request Pacing
# =============================================================================

class RequestPacer:
    """
    Keeps a minimum interval between requests of the same API type.

    Reports API limits (from Amazon docs):
    - createReport: 0.0167 req/sec (1 per minute)
    - getReport, getReportDocument: 2 req/sec
    """

    DEFAULT_LIMITS = {
        "reports_create": 0.0167,
        "reports_get": 2.0,
        "documents": 2.0,
        "default": 1.0
    }

    def __init__(self):
        self.last_request_time: Dict[str, float] = {}
        self.current_limits: Dict[str, float] = {}

    def get_min_interval(self, api_type: str) -> float:
        limit = self.current_limits.get(api_type) or self.DEFAULT_LIMITS.get(api_type, 1.0)
        return 1.0 / limit if limit > 0 else 1.0

    def wait_if_needed(self, api_type: str):
        """Block until safe to make next request."""
        last_time = self.last_request_time.get(api_type)
        if last_time is None:
            return

        elapsed = time.time() - last_time
        min_interval = self.get_min_interval(api_type)
        if elapsed < min_interval:
            wait_time = min_interval - elapsed
            logger.debug(f"Pacing: waiting {wait_time:.2f}s for {api_type}")
            time.sleep(wait_time)

    def record_request(self, api_type: str, response: requests.Response = None):
        self.last_request_time[api_type] = time.time()

        if response is None:
            return
        limit_header = response.headers.get("x-amzn-RateLimit-Limit")
        if limit_header:
            try:
                limit = float(limit_header)
            except (ValueError, TypeError):
                return
            if limit > 0:
                self.current_limits[api_type] = limit
                logger.debug(f"Updated rate limit for {api_type}: {limit}/sec")


# =============================================================================
# Retry Strategy
# =============================================================================

class RetryStrategy:
    """
    Transport-level retry for short hiccups.

    Backoff formula: delay = min(base_delay * 2^attempt, max_delay) + 10% jitter
    """

    TRANSIENT_STATUS_CODES = {429, 500, 502, 503, 504}
    TRANSIENT_EXCEPTIONS = (
        requests.exceptions.ConnectionError,
        requests.exceptions.Timeout,
        requests.exceptions.ChunkedEncodingError,
    )

    def __init__(self, max_retries: int = 2, base_delay: float = 1.0, max_delay: float = 30.0):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay

    def should_retry(
        self,
        exception: Optional[Exception],
        response: Optional[requests.Response],
        attempt: int
    ) -> bool:
        if attempt >= self.max_retries:
            return False
        if exception is not None and isinstance(exception, self.TRANSIENT_EXCEPTIONS):
            return True
        if response is not None and response.status_code in self.TRANSIENT_STATUS_CODES:
            return True
        return False

    def get_delay(self, attempt: int, response: Optional[requests.Response] = None) -> float:
        if response is not None:
            retry_after = response.headers.get("Retry-After")
            if retry_after:
                try:
                    return float(retry_after)
                except (ValueError, TypeError):
                    pass

        delay = min(self.base_delay * (2 ** attempt), self.max_delay)
        return delay + random.uniform(0, delay * 0.1)


# =============================================================================
# SP-API Client
# =============================================================================

class SPAPIClient:
    """
    SP-API HTTP client.

    Usage:
        client = SPAPIClient(max_retries=2, timeout=30)
        response = client.get(url, access_token=token, api_type="reports_get")
    """

    def __init__(
        self,
        max_retries: int = 2,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        timeout: int = 30,
        session: requests.Session = None
    ):
        self.timeout = timeout
        self.pacer = RequestPacer()
        self.retry_strategy = RetryStrategy(
            max_retries=max_retries,
            base_delay=base_delay,
            max_delay=max_delay
        )
        self.session = session or requests.Session()

        self.stats = {
            "requests": 0,
            "retries": 0,
            "rate_limit_waits": 0,
            "errors": 0
        }

    def request(
        self,
        method: str,
        url: str,
        access_token: str = None,
        api_type: str = "default",
        **kwargs
    ) -> requests.Response:
        """
        Make an HTTP request with retry and pacing.

        Args:
            method: HTTP method (GET, POST, etc.)
            url: Full URL
            access_token: LWA access token for x-amz-access-token (omit for S3 URLs)
            api_type: API type for pacing
            **kwargs: Passed to requests (json, params, headers, etc.)

        Returns:
            Response object

        Raises:
            SPAPIAuthError: On 401/403
            SPAPIRateLimitError: On 429 after transport retries
            SPAPITransientError: On 5xx or connection failure after transport retries
            SPAPIFatalError: On any other 4xx
        """
        headers = dict(kwargs.pop("headers", None) or {})
        if access_token:
            headers["x-amz-access-token"] = access_token
        kwargs["headers"] = headers
        kwargs.setdefault("timeout", self.timeout)

        attempt = 0
        while True:
            self.pacer.wait_if_needed(api_type)

            try:
                self.stats["requests"] += 1
                logger.debug(f"Request {method} {url} (attempt {attempt + 1})")
                response = self.session.request(method, url, **kwargs)
            except self.retry_strategy.TRANSIENT_EXCEPTIONS as e:
                self.pacer.record_request(api_type)
                if self.retry_strategy.should_retry(e, None, attempt):
                    delay = self.retry_strategy.get_delay(attempt)
                    self.stats["retries"] += 1
                    logger.warning(
                        f"Connection error on {method} {url}: {type(e).__name__}. "
                        f"Retry {attempt + 1}/{self.retry_strategy.max_retries} in {delay:.1f}s"
                    )
                    time.sleep(delay)
                    attempt += 1
                    continue

                self.stats["errors"] += 1
                raise SPAPITransientError(f"Connection failed: {e}") from e

            self.pacer.record_request(api_type, response)

            if response.status_code < 400:
                return response

            if self.retry_strategy.should_retry(None, response, attempt):
                delay = self.retry_strategy.get_delay(attempt, response)
                self.stats["retries"] += 1
                status_msg = f"HTTP {response.status_code}"
                if response.status_code == 429:
                    self.stats["rate_limit_waits"] += 1
                    status_msg = "Rate limited (429)"
                logger.warning(
                    f"{status_msg} on {method} {url}. "
                    f"Retry {attempt + 1}/{self.retry_strategy.max_retries} in {delay:.1f}s"
                )
                time.sleep(delay)
                attempt += 1
                continue

            self.stats["errors"] += 1
            raise self._error_for(response)

    @staticmethod
    def _error_for(response: requests.Response) -> SPAPIError:
        try:
            error_body = response.json()
        except ValueError:
            error_body = None

        code = response.status_code
        if code in AUTH_STATUS_CODES:
            return SPAPIAuthError(f"Unauthorized: HTTP {code}", status_code=code, response_body=error_body)
        if code == 429:
            return SPAPIRateLimitError("Rate limit exceeded", status_code=code, response_body=error_body)
        if code >= 500:
            return SPAPITransientError(f"Server error: HTTP {code}", status_code=code, response_body=error_body)
        return SPAPIFatalError(f"Request failed: HTTP {code}", status_code=code, response_body=error_body)

    def get(self, url: str, access_token: str = None, api_type: str = "default", **kwargs) -> requests.Response:
        return self.request("GET", url, access_token=access_token, api_type=api_type, **kwargs)

    def post(self, url: str, access_token: str = None, api_type: str = "default", **kwargs) -> requests.Response:
        return self.request("POST", url, access_token=access_token, api_type=api_type, **kwargs)

    def get_stats(self) -> dict:
        return self.stats.copy()
