"""
HTTP client for JSON upstream APIs, served through the tiered cache.

Every request goes through the orchestrator, so callers get fresh data when
upstream is healthy and last-known-good data when it is not.
"""
import hashlib
import json
import logging
from typing import Any, Dict, Optional, Union
from urllib.parse import urlencode

import requests
from tenacity import (
    Retrying,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

from tiercache.cache import (
    CacheOrchestrator,
    CacheOutcome,
    DataClass,
    FetchFailure,
    NotModified,
    RateLimited,
    get_orchestrator,
    supports_conditional_fetch,
)
from tiercache.rate_limiter import UpstreamThrottle
from tiercache.settings import settings

logger = logging.getLogger("api_client")


class UpstreamServerError(Exception):
    """5xx from upstream; retried before giving up."""

    def __init__(self, status_code: int):
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


RETRYABLE_ERRORS = (
    requests.ConnectionError,
    requests.Timeout,
    UpstreamServerError,
)


def build_cache_key(service: str, endpoint: str, params: Optional[Dict[str, Any]] = None) -> str:
    """
    Deterministic cache key for a request.

    Same service, endpoint and params (in any order) give the same key.
    None-valued params are ignored.
    """
    key = f"{service}:{endpoint.strip('/')}"
    cleaned = {k: v for k, v in (params or {}).items() if v is not None}
    if cleaned:
        encoded = json.dumps(cleaned, sort_keys=True, default=str)
        key += ":" + hashlib.md5(encoded.encode("utf-8")).hexdigest()
    return key


class ApiClient:
    """
    Cached, retrying, throttled GET client for one upstream service.

    Usage:
        client = ApiClient("lastfm", "https://ws.audioscrobbler.com/2.0")
        outcome = client.get("user/recent", {"user": "rj"}, DataClass.HISTORY)
        if outcome.has_data:
            render(outcome.data)
    """

    def __init__(
        self,
        service: str,
        base_url: str,
        orchestrator: Optional[CacheOrchestrator] = None,
        default_data_class: DataClass = DataClass.HISTORY,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        session: Optional[requests.Session] = None,
        throttle: Optional[UpstreamThrottle] = None,
    ):
        """
        Initialize the client.

        Args:
            service: Service name, also the cache key namespace
            base_url: Base URL all endpoints are relative to
            orchestrator: Cache to go through (global one if None)
            default_data_class: Data class for requests that don't name one
            headers: Headers sent with every request (auth etc.)
            timeout: Per-request timeout in seconds
            max_retries: Retries after the first attempt for transient failures
            session: requests session to use
            throttle: Cooldown tracker for this service
        """
        self.service = service
        self.base_url = base_url.rstrip("/")
        self.orchestrator = orchestrator or get_orchestrator()
        self.default_data_class = default_data_class
        self.headers = headers or {}
        self.timeout = timeout if timeout is not None else settings.request_timeout_seconds
        self.max_retries = max_retries if max_retries is not None else settings.max_retries
        self.session = session or requests.Session()
        self.throttle = throttle or UpstreamThrottle(service)

    def build_url(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> str:
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        cleaned = sorted((k, v) for k, v in (params or {}).items() if v is not None)
        if cleaned:
            url += "?" + urlencode(cleaned)
        return url

    def get(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        data_class: Optional[Union[DataClass, str]] = None,
        single_flight: bool = True,
    ) -> CacheOutcome:
        """
        GET an endpoint through the cache.

        Args:
            endpoint: Path relative to base_url
            params: Query parameters
            data_class: Volatility class (client default if None)
            single_flight: Lock so concurrent misses make one upstream call

        Returns:
            CacheOutcome; never raises for upstream failures
        """
        data_class = data_class or self.default_data_class
        cache_key = build_cache_key(self.service, endpoint, params)
        url = self.build_url(endpoint, params)

        def fetch(key: str) -> Any:
            return self._request(url, data_class, key)

        if single_flight:
            return self.orchestrator.resolve_single_flight(cache_key, data_class, fetch)
        return self.orchestrator.resolve(cache_key, data_class, fetch)

    def invalidate(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> bool:
        """Drop the cached response for one request."""
        return self.orchestrator.invalidate(build_cache_key(self.service, endpoint, params))

    def _request(self, url: str, data_class: Union[DataClass, str], cache_key: str) -> Any:
        """
        Perform the upstream call and translate failures into cache errors.

        Raises:
            RateLimited: Cooling down, or upstream answered 429
            NotModified: Upstream answered 304 to a conditional request
            FetchFailure: Any other failure
        """
        if self.throttle.should_throttle():
            remaining = self.throttle.remaining_cooldown()
            logger.info(f"{self.service} throttled for {remaining}s more, skipping upstream")
            raise RateLimited(f"{self.service} cooling down", retry_after=remaining)

        conditional = supports_conditional_fetch(data_class)
        headers = dict(self.headers)
        if conditional:
            # A 304 is only useful if there is still a copy to confirm
            if self.orchestrator.fallback.has(cache_key):
                headers.update(self.orchestrator.validators.request_headers(url))
            else:
                self.orchestrator.validators.delete(url)

        try:
            response = self._send(url, headers)
        except UpstreamServerError as e:
            self.throttle.record_error(e.status_code)
            raise FetchFailure(f"{self.service}: HTTP {e.status_code}", e.status_code) from e
        except requests.RequestException as e:
            self.throttle.record_error()
            raise FetchFailure(f"{self.service}: {e}") from e

        status = response.status_code

        if status == 304:
            self.throttle.record_success()
            raise NotModified(url)

        if status == 429:
            self.throttle.record_error(429)
            logger.warning(f"{self.service} rate limited us")
            raise RateLimited(f"{self.service} rate limited", retry_after=self.throttle.remaining_cooldown())

        if status >= 400:
            self.throttle.record_error(status)
            raise FetchFailure(f"{self.service}: HTTP {status}", status)

        try:
            data = response.json()
        except ValueError as e:
            raise FetchFailure(f"{self.service}: invalid JSON response", status) from e

        if conditional:
            self.orchestrator.validators.store_from_response(url, response.headers)
        self.throttle.record_success()
        return data

    def _send(self, url: str, headers: Dict[str, str]) -> requests.Response:
        """GET with retries on connection errors, timeouts and 5xx."""
        retrying = Retrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            reraise=True,
        )
        return retrying(self._send_once, url, headers)

    def _send_once(self, url: str, headers: Dict[str, str]) -> requests.Response:
        logger.debug(f"GET {url}")
        response = self.session.get(url, headers=headers, timeout=self.timeout)
        if response.status_code >= 500:
            raise UpstreamServerError(response.status_code)
        return response
