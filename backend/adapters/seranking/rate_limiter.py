"""
In-process rate limiter for provider calls.

Three fixed windows (minute, hour, day) are enforced together; a request
proceeds only when every window has room for it. State lives in memory
for the lifetime of the process and complements the durable quota record
kept by the integration service.

Budget is taken when ``wait_for_availability`` grants a slot, so
concurrent callers cannot oversubscribe a window between the check and
the call. ``record_request`` tracks calls that completed successfully.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Optional

from .errors import SeRankingRateLimitError

logger = logging.getLogger(__name__)


@dataclass
class RateLimitConfig:
    """
    Rate limit configuration.

    Attributes:
        requests_per_minute: Limit per rolling minute window
        requests_per_hour: Limit per hour window
        requests_per_day: Limit per day window
        max_wait_seconds: Longest a caller may block waiting for budget
    """

    requests_per_minute: int = 60
    requests_per_hour: int = 3000
    requests_per_day: int = 50000
    max_wait_seconds: float = 120.0


@dataclass
class RateLimitResult:
    """
    Result of rate limit check.

    Attributes:
        allowed: Whether the request fits every window
        reason: Why the request was blocked (if blocked)
        current_count: Count in the blocking window
        limit: The limit of the blocking window
        retry_after: Seconds until the blocking window resets
    """

    allowed: bool
    reason: Optional[str] = None
    current_count: Optional[int] = None
    limit: Optional[int] = None
    retry_after: Optional[float] = None


class _Window:
    __slots__ = ("name", "limit", "length", "count", "reset_at")

    def __init__(self, name: str, limit: int, length: float, now: float) -> None:
        self.name = name
        self.limit = limit
        self.length = length
        self.count = 0
        self.reset_at = now + length

    def roll(self, now: float) -> None:
        if now >= self.reset_at:
            self.count = 0
            self.reset_at = now + self.length

    def remaining(self) -> int:
        return max(0, self.limit - self.count)


class RateLimiter:
    """Minute/hour/day request budgets for the keyword provider."""

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or RateLimitConfig()
        self._clock = clock
        self._lock = asyncio.Lock()
        now = clock()
        self._windows = [
            _Window("minute", self.config.requests_per_minute, 60.0, now),
            _Window("hour", self.config.requests_per_hour, 3600.0, now),
            _Window("day", self.config.requests_per_day, 86400.0, now),
        ]
        self._recorded_requests = 0

    # ── Public API ────────────────────────────────────────────────────────────

    @property
    def max_request_count(self) -> int:
        """Largest single request the tightest window can ever admit."""
        return min(window.limit for window in self._windows)

    def check(self, request_count: int = 1) -> RateLimitResult:
        """Non-blocking check of whether ``request_count`` requests fit now."""
        now = self._clock()
        for window in self._windows:
            window.roll(now)
            if window.count + request_count > window.limit:
                return RateLimitResult(
                    allowed=False,
                    reason=(
                        f"Per-{window.name} limit reached: "
                        f"{window.count}/{window.limit} requests"
                    ),
                    current_count=window.count,
                    limit=window.limit,
                    retry_after=max(0.0, window.reset_at - now),
                )
        return RateLimitResult(allowed=True)

    def is_allowed(self, request_count: int = 1) -> bool:
        return self.check(request_count).allowed

    async def wait_for_availability(self, request_count: int = 1) -> None:
        """
        Block until every window has room for ``request_count`` requests, then take it.

        Raises:
            SeRankingRateLimitError: The request can never fit, or the wait would
                exceed ``max_wait_seconds``
        """
        if request_count > self.max_request_count:
            smallest = min(self._windows, key=lambda w: w.limit)
            raise SeRankingRateLimitError(
                f"Request of {request_count} exceeds per-{smallest.name} limit of {smallest.limit}"
            )

        deadline = self._clock() + self.config.max_wait_seconds
        while True:
            async with self._lock:
                result = self.check(request_count)
                if result.allowed:
                    for window in self._windows:
                        window.count += request_count
                    return

            wait = result.retry_after or 0.0
            if self._clock() + wait > deadline:
                raise SeRankingRateLimitError(
                    f"Rate limit wait of {wait:.1f}s exceeds maximum of "
                    f"{self.config.max_wait_seconds:.0f}s ({result.reason})",
                    retry_after=wait,
                )

            logger.info("Rate limit reached (%s); waiting %.1fs", result.reason, wait)
            await asyncio.sleep(wait)

    async def record_request(self, request_count: int = 1) -> None:
        """Record requests that completed successfully."""
        async with self._lock:
            self._recorded_requests += request_count

    def get_status(self) -> dict[str, Any]:
        """Remaining budget and reset time per window."""
        now = self._clock()
        wall_now = datetime.now(UTC)
        status: dict[str, Any] = {"recorded_requests": self._recorded_requests}
        for window in self._windows:
            window.roll(now)
            reset_in = max(0.0, window.reset_at - now)
            status[window.name] = {
                "limit": window.limit,
                "used": window.count,
                "remaining": window.remaining(),
                "reset_in_seconds": round(reset_in, 3),
                "reset_at": (wall_now + timedelta(seconds=reset_in)).isoformat(),
            }
        return status

    def reset(self) -> None:
        """Clear all window counters."""
        now = self._clock()
        for window in self._windows:
            window.count = 0
            window.reset_at = now + window.length
        self._recorded_requests = 0


def create_rate_limiter(
    requests_per_minute: int,
    requests_per_hour: int,
    requests_per_day: int,
    max_wait_seconds: float,
) -> RateLimiter:
    """Create a rate limiter from explicit budgets."""
    return RateLimiter(
        RateLimitConfig(
            requests_per_minute=requests_per_minute,
            requests_per_hour=requests_per_hour,
            requests_per_day=requests_per_day,
            max_wait_seconds=max_wait_seconds,
        )
    )
