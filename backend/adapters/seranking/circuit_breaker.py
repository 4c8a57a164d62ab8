"""
Circuit breaker for provider calls.

Counts consecutive provider-side failures (transport errors, timeouts and
5xx responses). Once ``failure_threshold`` is reached the circuit opens and
calls are rejected without touching the network until ``recovery_timeout``
has passed. The next call is then let through as a single trial: success
closes the circuit, failure opens it again.

State lives in memory for the lifetime of the process, like the rate limiter.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from .errors import SeRankingCircuitOpenError, SeRankingError, SeRankingRateLimitError

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    """
    Circuit breaker configuration.

    Attributes:
        failure_threshold: Consecutive failures that open the circuit
        recovery_timeout: Seconds the circuit stays open before a trial call
    """

    failure_threshold: int = 5
    recovery_timeout: float = 60.0


def counts_as_outage(error: SeRankingError) -> bool:
    """Whether a failure says something about provider health."""
    # 429 is throttling, and auth/quota/validation errors are caller-side
    return error.retryable and not isinstance(error, SeRankingRateLimitError)


class CircuitBreaker:
    """Closed/open/half-open guard in front of the keyword provider."""

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False
        self._trial_started_at = 0.0
        self.trips = 0

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self._retry_in() <= 0:
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
            logger.info("Provider circuit half-open; allowing a trial request")
        return self._state

    # ── Public API ────────────────────────────────────────────────────────────

    def before_request(self) -> None:
        """
        Admit a call or reject it while the circuit is open.

        Raises:
            SeRankingCircuitOpenError: Circuit open, or a half-open trial is already running
        """
        state = self.state
        if state == CircuitState.CLOSED:
            return
        # A trial that never reported back (e.g. cancelled) expires after recovery_timeout
        if state == CircuitState.HALF_OPEN and (
            not self._trial_in_flight
            or self._clock() - self._trial_started_at >= self.config.recovery_timeout
        ):
            self._trial_in_flight = True
            self._trial_started_at = self._clock()
            return
        raise SeRankingCircuitOpenError(
            f"Provider circuit is {state.value} after {self._failure_count} consecutive failures",
            retry_after=max(0.0, self._retry_in()),
        )

    def record_success(self) -> None:
        if self._state != CircuitState.CLOSED:
            logger.info("Provider circuit closed after successful trial request")
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at = None
        self._trial_in_flight = False

    def record_failure(self, error: SeRankingError) -> None:
        """Count ``error`` if it reflects provider health, opening the circuit at the threshold."""
        if not counts_as_outage(error):
            # Trial slot is freed without judging the provider
            self._trial_in_flight = False
            return

        self._failure_count += 1
        if self._state == CircuitState.HALF_OPEN or self._failure_count >= self.config.failure_threshold:
            self._open()

    def get_status(self) -> dict[str, Any]:
        state = self.state
        return {
            "state": state.value,
            "failure_count": self._failure_count,
            "failure_threshold": self.config.failure_threshold,
            "trips": self.trips,
            "retry_in_seconds": round(max(0.0, self._retry_in()), 3) if state == CircuitState.OPEN else 0.0,
        }

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at = None
        self._trial_in_flight = False

    # ── Internal helpers ──────────────────────────────────────────────────────

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._trial_in_flight = False
        self.trips += 1
        logger.warning(
            "Provider circuit opened after %d consecutive failures; pausing calls for %.0fs",
            self._failure_count, self.config.recovery_timeout,
        )

    def _retry_in(self) -> float:
        if self._opened_at is None:
            return 0.0
        return self._opened_at + self.config.recovery_timeout - self._clock()
