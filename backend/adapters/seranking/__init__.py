# SE Ranking Adapters
# Keyword export API client, rate limiting, circuit breaking and error taxonomy

from .circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState
from .errors import (
    ErrorType,
    SeRankingAuthError,
    SeRankingCircuitOpenError,
    SeRankingError,
    SeRankingInvalidRequestError,
    SeRankingNetworkError,
    SeRankingParsingError,
    SeRankingQuotaExceededError,
    SeRankingRateLimitError,
    SeRankingTimeoutError,
    SeRankingUnknownError,
    error_from_status,
)
from .rate_limiter import RateLimitConfig, RateLimiter, RateLimitResult, create_rate_limiter
from .request_builder import MAX_KEYWORDS_PER_REQUEST, KeywordData
from .seranking_adapter import SeRankingAdapter

__all__ = [
    "ErrorType",
    "SeRankingError",
    "SeRankingAuthError",
    "SeRankingCircuitOpenError",
    "SeRankingRateLimitError",
    "SeRankingQuotaExceededError",
    "SeRankingInvalidRequestError",
    "SeRankingNetworkError",
    "SeRankingTimeoutError",
    "SeRankingParsingError",
    "SeRankingUnknownError",
    "error_from_status",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    "RateLimitConfig",
    "RateLimitResult",
    "RateLimiter",
    "create_rate_limiter",
    "KeywordData",
    "MAX_KEYWORDS_PER_REQUEST",
    "SeRankingAdapter",
]
