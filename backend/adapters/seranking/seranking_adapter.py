"""
SE Ranking keyword export adapter.

Fetches search volume, CPC, competition, difficulty and trend history for
batches of up to 100 keywords. Requests are gated by the in-process rate
limiter and retried on 429, 5xx and transport failures. An optional
circuit breaker stops calls entirely during a sustained provider outage.
"""

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any, Optional

import httpx

from core.domain.enrichment import HealthStatus
from core.interfaces.services import KeywordDataProvider

from .circuit_breaker import CircuitBreaker
from .errors import (
    SeRankingAuthError,
    SeRankingError,
    SeRankingNetworkError,
    SeRankingParsingError,
    SeRankingTimeoutError,
    error_from_status,
)
from .rate_limiter import RateLimiter
from .request_builder import (
    KeywordData,
    build_export_request,
    build_headers,
    parse_keyword_response,
)

logger = logging.getLogger(__name__)

# (api_key, api_url) for the active integration, or None when unconfigured
CredentialLoader = Callable[[], Awaitable[Optional[tuple[str, str]]]]


class SeRankingAdapter(KeywordDataProvider):
    """
    SE Ranking keyword export API adapter.

    The API key and base URL are resolved through ``credential_loader`` and
    cached for ``credential_ttl`` seconds rather than looked up per call.
    """

    HEALTH_CHECK_KEYWORD = "test"
    HEALTH_CHECK_COUNTRY = "us"

    def __init__(
        self,
        credential_loader: CredentialLoader,
        rate_limiter: Optional[RateLimiter] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        timeout: float = 30.0,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
        max_backoff: float = 30.0,
        max_retry_after: float = 300.0,
        credential_ttl: float = 300.0,
        health_ttl: float = 300.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize SE Ranking adapter.

        Args:
            credential_loader: Coroutine returning (api_key, api_url) or None
            rate_limiter: Shared limiter gating every HTTP attempt
            circuit_breaker: Breaker consulted before every HTTP attempt
            timeout: Hard HTTP timeout in seconds
            retry_attempts: Total attempts per call, including the first
            retry_delay: Base delay for exponential backoff
            max_backoff: Ceiling for computed backoff delays
            max_retry_after: Ceiling for server-supplied Retry-After hints
            credential_ttl: Seconds a resolved credential is reused
            health_ttl: Seconds a health check result is reused
            transport: Optional httpx transport (used by tests)
        """
        self._credential_loader = credential_loader
        self.rate_limiter = rate_limiter
        self.circuit_breaker = circuit_breaker
        self.timeout = timeout
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delay = retry_delay
        self.max_backoff = max_backoff
        self.max_retry_after = max_retry_after
        self.credential_ttl = credential_ttl
        self.health_ttl = health_ttl
        self._transport = transport

        self._credentials: Optional[tuple[str, str]] = None
        self._credentials_loaded_at = 0.0
        self._last_health: Optional[dict[str, Any]] = None
        self._last_health_at = 0.0

        self._metrics = {
            "total_requests": 0,
            "successful_requests": 0,
            "failed_requests": 0,
            "total_response_ms": 0.0,
        }

    # ── Public API ────────────────────────────────────────────────────────────

    async def fetch_keyword_data(self, keywords: list[str], country_code: str) -> list[KeywordData]:
        """
        Fetch keyword metrics for one batch.

        Args:
            keywords: 1-100 keywords; larger batches must be chunked by the caller
            country_code: Provider database, e.g. "us"

        Returns:
            One KeywordData per keyword the provider reported

        Raises:
            SeRankingInvalidRequestError: Batch or country failed validation
            SeRankingAuthError: No usable API key
            SeRankingError: Last attempt's error once retries are exhausted
        """
        request = build_export_request(keywords, country_code)
        api_key, api_url = await self._get_credentials()
        batch_size = len(request.data["keywords[]"])

        payload = await self._request_with_retry(
            url=f"{api_url.rstrip('/')}{request.path}",
            params=request.params,
            data=request.data,
            headers=build_headers(api_key),
            request_count=batch_size,
        )

        if self.rate_limiter is not None:
            await self.rate_limiter.record_request(batch_size)

        results = parse_keyword_response(payload)
        logger.info(
            "SE Ranking export returned %d results for %d keywords (%s)",
            len(results), batch_size, request.params["source"],
        )
        return results

    async def test_connection(self) -> dict[str, Any]:
        """
        Check the provider with a single keyword.

        Returns:
            Health dict with status healthy/degraded/unhealthy
        """
        start = time.monotonic()
        error_message = None
        try:
            await self.fetch_keyword_data([self.HEALTH_CHECK_KEYWORD], self.HEALTH_CHECK_COUNTRY)
            status = HealthStatus.HEALTHY
        except SeRankingAuthError as e:
            status = HealthStatus.UNHEALTHY
            error_message = e.message
        except SeRankingError as e:
            status = HealthStatus.DEGRADED
            error_message = e.message

        result = {
            "status": status.value,
            "response_time_ms": int((time.monotonic() - start) * 1000),
            "last_check": datetime.now(UTC).isoformat(),
            "error_message": error_message,
        }
        self._last_health = result
        self._last_health_at = time.monotonic()

        if status != HealthStatus.HEALTHY:
            logger.warning("SE Ranking health check %s: %s", status.value, error_message)
        return result

    async def is_healthy(self) -> bool:
        """Healthy according to a health check no older than ``health_ttl``."""
        if self._last_health is None or time.monotonic() - self._last_health_at > self.health_ttl:
            await self.test_connection()
        return self._last_health["status"] == HealthStatus.HEALTHY.value

    def get_rate_limit_status(self) -> dict[str, Any] | None:
        return self.rate_limiter.get_status() if self.rate_limiter else None

    def get_metrics(self) -> dict[str, Any]:
        total = self._metrics["total_requests"]
        return {
            "total_requests": total,
            "successful_requests": self._metrics["successful_requests"],
            "failed_requests": self._metrics["failed_requests"],
            "average_response_ms": round(self._metrics["total_response_ms"] / total, 1) if total else 0.0,
            "circuit_breaker": self.circuit_breaker.get_status() if self.circuit_breaker else None,
        }

    def invalidate_credentials(self) -> None:
        """Force the next call to reload the API key."""
        self._credentials = None
        self._credentials_loaded_at = 0.0

    # ── Internal helpers ──────────────────────────────────────────────────────

    async def _get_credentials(self) -> tuple[str, str]:
        now = time.monotonic()
        if self._credentials and now - self._credentials_loaded_at < self.credential_ttl:
            return self._credentials

        credentials = await self._credential_loader()
        if not credentials or not credentials[0]:
            self.invalidate_credentials()
            raise SeRankingAuthError("SE Ranking API key not configured or integration inactive")

        self._credentials = credentials
        self._credentials_loaded_at = now
        return credentials

    async def _request_with_retry(
        self,
        url: str,
        params: dict[str, str],
        data: dict[str, Any],
        headers: dict[str, str],
        request_count: int,
    ) -> Any:
        """Send the request, retrying retryable failures with backoff."""
        for attempt in range(self.retry_attempts):
            if self.circuit_breaker is not None:
                self.circuit_breaker.before_request()
            try:
                if self.rate_limiter is not None:
                    await self.rate_limiter.wait_for_availability(request_count)
                payload = await self._send(url, params, data, headers)
            except SeRankingError as e:
                if self.circuit_breaker is not None:
                    self.circuit_breaker.record_failure(e)
                if isinstance(e, SeRankingAuthError):
                    self.invalidate_credentials()
                if not e.retryable or attempt == self.retry_attempts - 1:
                    raise
                delay = self._retry_delay_for(e, attempt)
                logger.warning(
                    "SE Ranking %s (attempt %d/%d), retrying in %.1fs: %s",
                    e.error_type.value, attempt + 1, self.retry_attempts, delay, e.message,
                )
                await asyncio.sleep(delay)
            else:
                if self.circuit_breaker is not None:
                    self.circuit_breaker.record_success()
                return payload

    async def _send(
        self,
        url: str,
        params: dict[str, str],
        data: dict[str, Any],
        headers: dict[str, str],
    ) -> Any:
        start = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, params=params, data=data, headers=headers)
        except httpx.TimeoutException as e:
            self._record_call(start, ok=False)
            raise SeRankingTimeoutError(f"Request timed out after {self.timeout}s") from e
        except httpx.RequestError as e:
            self._record_call(start, ok=False)
            raise SeRankingNetworkError(f"Request failed: {e}") from e

        if response.status_code >= 400:
            self._record_call(start, ok=False)
            raise error_from_status(
                response.status_code,
                f"SE Ranking API error {response.status_code}: {self._error_detail(response)}",
                retry_after=self._parse_retry_after(response.headers.get("Retry-After")),
            )

        self._record_call(start, ok=True)
        try:
            return response.json()
        except ValueError as e:
            raise SeRankingParsingError(f"Response is not valid JSON: {e}") from e

    def _retry_delay_for(self, error: SeRankingError, attempt: int) -> float:
        if error.retry_after is not None:
            return min(error.retry_after + random.uniform(0, 1), self.max_retry_after)
        return self._backoff(attempt)

    def _backoff(self, attempt: int) -> float:
        return min(self.retry_delay * (2 ** attempt) + random.uniform(0, 1), self.max_backoff)

    def _parse_retry_after(self, value: str | None) -> float | None:
        """Retry-After as delta-seconds or an HTTP date, capped at ``max_retry_after``."""
        if not value:
            return None
        value = value.strip()
        try:
            seconds = float(value)
        except ValueError:
            try:
                retry_at = parsedate_to_datetime(value)
            except (TypeError, ValueError):
                return None
            if retry_at.tzinfo is None:
                retry_at = retry_at.replace(tzinfo=UTC)
            seconds = (retry_at - datetime.now(UTC)).total_seconds()
        return min(max(0.0, seconds), self.max_retry_after)

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200] or response.reason_phrase
        if isinstance(body, dict):
            return str(body.get("message") or body.get("error") or body)[:200]
        return str(body)[:200]

    def _record_call(self, start: float, ok: bool) -> None:
        self._metrics["total_requests"] += 1
        self._metrics["total_response_ms"] += (time.monotonic() - start) * 1000
        if ok:
            self._metrics["successful_requests"] += 1
        else:
            self._metrics["failed_requests"] += 1
