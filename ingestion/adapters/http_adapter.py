"""
HTTP provider adapter with authentication, rate limiting, and retry logic.

This module provides the shared request machinery for provider adapters:
- Exponential backoff retry logic for transient failures
- Retry-After handling for rate limits
- Circuit breaker pattern to prevent hammering a failing provider
- Mapping of HTTP failures onto the sync exception hierarchy
"""

import httpx
import asyncio
import math
from typing import Dict, Any, Optional
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from ingestion.base import ProviderAdapter
from core.config import settings
from core.exceptions import (
    ProviderResponseError,
    NetworkError,
    RateLimitError,
    ProviderTimeoutError,
    CredentialInvalidError,
)
import logging

logger = logging.getLogger(__name__)


def parse_retry_after(value: Optional[str], default: float) -> float:
    """
    Seconds to wait from a Retry-After header.

    Accepts both forms the header allows: delta-seconds ("120") and an
    HTTP-date ("Wed, 21 Oct 2015 07:28:00 GMT"). A date in the past means
    retry now. Anything unparseable falls back to default.
    """
    if value is None:
        return default

    try:
        seconds = float(value)
    except ValueError:
        seconds = None
    if seconds is not None:
        return max(0.0, seconds) if math.isfinite(seconds) else default

    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.debug(f"Unparseable Retry-After header {value!r}, using {default}s")
        return default
    if retry_at is None:
        return default
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    return max(0.0, (retry_at - datetime.now(timezone.utc)).total_seconds())


class ItemNotFound(Exception):
    """Raised internally when a single-item lookup returns 404."""
    pass


class HTTPProviderAdapter(ProviderAdapter):
    """
    JSON-over-HTTP adapter base with resilience patterns.

    Features:
    - Bearer token authentication
    - Retry logic with exponential backoff
    - Circuit breaker pattern
    - Rate limiting protection

    Attributes:
        max_retries: Maximum number of attempts per request (default: settings)
        retry_delay: Initial retry delay in seconds (default: settings)
        timeout: Request timeout in seconds (default: settings)
        circuit_breaker_threshold: Failures before circuit opens (default: 5)
        circuit_breaker_timeout: Seconds before circuit reset (default: 60)
    """

    def __init__(
        self,
        base_url: str,
        access_token: Optional[str] = None,
        preferences=None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        super().__init__(access_token=access_token, preferences=preferences)
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries if max_retries is not None else settings.PROVIDER_MAX_RETRIES
        self.retry_delay = retry_delay if retry_delay is not None else settings.PROVIDER_RETRY_DELAY
        self.timeout = timeout if timeout is not None else settings.PROVIDER_TIMEOUT_SECONDS
        self._client = client

        # Circuit breaker state
        self._circuit_breaker_failures = 0
        self._circuit_breaker_threshold = 5
        self._circuit_breaker_open_until: Optional[datetime] = None
        self._circuit_breaker_timeout = 60  # seconds

    @property
    def name(self) -> str:
        return self.provider.value

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json",
        }

    def _is_circuit_open(self) -> bool:
        """Check if circuit breaker is open."""
        if self._circuit_breaker_open_until is None:
            return False

        if datetime.utcnow() >= self._circuit_breaker_open_until:
            logger.info(f"Circuit breaker reset for {self.name}")
            self._circuit_breaker_failures = 0
            self._circuit_breaker_open_until = None
            return False

        return True

    def _record_failure(self):
        """Record a failure and potentially open circuit breaker."""
        self._circuit_breaker_failures += 1

        if self._circuit_breaker_failures >= self._circuit_breaker_threshold:
            self._circuit_breaker_open_until = datetime.utcnow() + timedelta(
                seconds=self._circuit_breaker_timeout
            )
            logger.warning(
                f"Circuit breaker opened for {self.name}. "
                f"Will retry after {self._circuit_breaker_timeout} seconds."
            )

    def _record_success(self):
        self._circuit_breaker_failures = 0
        self._circuit_breaker_open_until = None

    async def _make_request_with_retry(
        self,
        client: httpx.AsyncClient,
        url: str,
        params: Dict[str, Any]
    ) -> httpx.Response:
        """
        GET with retry logic and exponential backoff.

        Raises:
            CredentialInvalidError: 401/403, never retried
            ItemNotFound: 404, never retried
            RateLimitError: 429 after max retries
            NetworkError: 5xx or connection failures after max retries
            ProviderTimeoutError: Timeouts after max retries
        """
        if self._is_circuit_open():
            raise NetworkError(
                f"Circuit breaker is open for {self.name}",
                context={
                    "provider": self.name,
                    "url": url,
                    "open_until": self._circuit_breaker_open_until.isoformat()
                }
            )

        last_exception = None

        for attempt in range(self.max_retries):
            try:
                logger.debug(f"Request attempt {attempt + 1}/{self.max_retries} to {url}")

                response = await client.get(
                    url,
                    headers=self._headers(),
                    params=params,
                    timeout=self.timeout
                )

                if response.status_code in (401, 403):
                    self._record_failure()
                    raise CredentialInvalidError(
                        f"Credential rejected by {self.name}",
                        context={
                            "status_code": response.status_code,
                            "url": url,
                            "provider": self.name
                        }
                    )

                if response.status_code == 404:
                    raise ItemNotFound(url)

                if response.status_code == 429:
                    retry_after = parse_retry_after(
                        response.headers.get("Retry-After"),
                        default=self.retry_delay * (2 ** attempt)
                    )
                    logger.warning(f"Rate limited by {self.name}. Retrying after {retry_after} seconds")

                    if attempt < self.max_retries - 1:
                        await asyncio.sleep(retry_after)
                        continue
                    self._record_failure()
                    raise RateLimitError(
                        f"Rate limit exceeded for {url}",
                        context={
                            "status_code": 429,
                            "url": url,
                            "provider": self.name,
                            "retry_count": attempt + 1
                        },
                        retry_after=math.ceil(retry_after)
                    )

                if response.status_code >= 500:
                    if attempt < self.max_retries - 1:
                        delay = self.retry_delay * (2 ** attempt)
                        logger.warning(
                            f"Server error {response.status_code} from {self.name}. "
                            f"Retrying in {delay} seconds (attempt {attempt + 1}/{self.max_retries})"
                        )
                        await asyncio.sleep(delay)
                        continue
                    self._record_failure()
                    raise NetworkError(
                        f"Server error after {self.max_retries} retries",
                        context={
                            "status_code": response.status_code,
                            "url": url,
                            "provider": self.name,
                            "retry_count": attempt + 1,
                            "response_body": response.text[:500]
                        }
                    )

                if response.status_code >= 400:
                    raise ProviderResponseError(
                        f"Unexpected status {response.status_code} from {self.name}",
                        context={
                            "status_code": response.status_code,
                            "url": url,
                            "provider": self.name,
                            "response_body": response.text[:500]
                        }
                    )

                self._record_success()
                return response

            except httpx.TimeoutException as e:
                last_exception = e
                if attempt < self.max_retries - 1:
                    delay = self.retry_delay * (2 ** attempt)
                    logger.warning(f"Request timeout from {self.name}. Retrying in {delay} seconds")
                    await asyncio.sleep(delay)
                else:
                    self._record_failure()
                    raise ProviderTimeoutError(
                        f"Request timeout after {self.max_retries} retries",
                        context={
                            "url": url,
                            "provider": self.name,
                            "timeout": self.timeout,
                            "retry_count": attempt + 1
                        },
                        original_exception=e
                    )

            except httpx.TransportError as e:
                last_exception = e
                if attempt < self.max_retries - 1:
                    delay = self.retry_delay * (2 ** attempt)
                    logger.warning(f"Network error from {self.name}. Retrying in {delay} seconds")
                    await asyncio.sleep(delay)
                else:
                    self._record_failure()
                    raise NetworkError(
                        f"Network error after {self.max_retries} retries",
                        context={
                            "url": url,
                            "provider": self.name,
                            "retry_count": attempt + 1
                        },
                        original_exception=e
                    )

        raise NetworkError(
            "Max retries exceeded",
            context={"url": url, "provider": self.name},
            original_exception=last_exception
        )

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET base_url + path and decode the JSON body."""
        url = f"{self.base_url}{path}"
        params = {k: v for k, v in (params or {}).items() if v is not None}

        if self._client is not None:
            response = await self._make_request_with_retry(self._client, url, params)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await self._make_request_with_retry(client, url, params)

        try:
            return response.json()
        except ValueError as e:
            raise ProviderResponseError(
                "Failed to parse JSON response",
                context={
                    "url": url,
                    "provider": self.name,
                    "response_body": response.text[:500]
                },
                original_exception=e
            )

    async def _get_page(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """List-endpoint lookup; the response must be a JSON object."""
        try:
            data = await self._get_json(path, params)
        except ItemNotFound as e:
            raise ProviderResponseError(
                f"List endpoint not found on {self.name}",
                context={"path": path, "provider": self.name},
                original_exception=e
            )
        if not isinstance(data, dict):
            raise ProviderResponseError(
                f"Unexpected page payload from {self.name}",
                context={"path": path, "provider": self.name}
            )
        return data

    async def _get_item(self, path: str) -> Optional[Dict[str, Any]]:
        """Single-item lookup; None when the provider no longer has it."""
        try:
            data = await self._get_json(path)
        except ItemNotFound:
            logger.info(f"{self.name} item at {path} no longer exists, skipping")
            return None
        if not isinstance(data, dict):
            raise ProviderResponseError(
                f"Unexpected item payload from {self.name}",
                context={"path": path, "provider": self.name}
            )
        return data

    async def aclose(self):
        if self._client is not None:
            await self._client.aclose()
