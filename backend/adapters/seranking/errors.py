"""
SE Ranking provider error taxonomy.

Every failure raised by the adapter is a ``SeRankingError`` carrying its
``error_type`` and whether a caller may retry it.
"""

from enum import Enum
from typing import Any


class ErrorType(str, Enum):
    """Provider failure categories."""

    AUTHENTICATION_ERROR = "authentication_error"
    RATE_LIMIT_ERROR = "rate_limit_error"
    QUOTA_EXCEEDED_ERROR = "quota_exceeded_error"
    INVALID_REQUEST_ERROR = "invalid_request_error"
    NETWORK_ERROR = "network_error"
    TIMEOUT_ERROR = "timeout_error"
    PARSING_ERROR = "parsing_error"
    UNKNOWN_ERROR = "unknown_error"


# Custom Exceptions
class SeRankingError(Exception):
    """Base exception for SE Ranking adapter errors."""

    error_type: ErrorType = ErrorType.UNKNOWN_ERROR
    retryable: bool = False

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retry_after: float | None = None,
        details: Any = None,
        retryable: bool | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.retry_after = retry_after
        self.details = details
        if retryable is not None:
            self.retryable = retryable

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.error_type.value,
            "message": self.message,
            "status_code": self.status_code,
            "retryable": self.retryable,
            "retry_after": self.retry_after,
        }


class SeRankingAuthError(SeRankingError):
    """Raised when the API key is missing or rejected."""

    error_type = ErrorType.AUTHENTICATION_ERROR


class SeRankingRateLimitError(SeRankingError):
    """Raised on HTTP 429 or when the local rate limiter cannot grant a slot."""

    error_type = ErrorType.RATE_LIMIT_ERROR
    retryable = True


class SeRankingQuotaExceededError(SeRankingError):
    """Raised when the account quota is exhausted; wait for the reset."""

    error_type = ErrorType.QUOTA_EXCEEDED_ERROR


class SeRankingInvalidRequestError(SeRankingError):
    """Raised for malformed requests (caller bug)."""

    error_type = ErrorType.INVALID_REQUEST_ERROR


class SeRankingNetworkError(SeRankingError):
    """Raised for transport failures and 5xx gateway errors."""

    error_type = ErrorType.NETWORK_ERROR
    retryable = True


class SeRankingTimeoutError(SeRankingError):
    """Raised when a request exceeds the HTTP timeout."""

    error_type = ErrorType.TIMEOUT_ERROR
    retryable = True


class SeRankingParsingError(SeRankingError):
    """Raised when the provider payload does not match the expected shape."""

    error_type = ErrorType.PARSING_ERROR


class SeRankingCircuitOpenError(SeRankingError):
    """Raised without a network call while the provider circuit is open."""

    error_type = ErrorType.NETWORK_ERROR
    retryable = True


class SeRankingUnknownError(SeRankingError):
    """Catch-all; only retried for server-side statuses."""

    error_type = ErrorType.UNKNOWN_ERROR


def error_from_status(
    status_code: int,
    message: str,
    retry_after: float | None = None,
    details: Any = None,
) -> SeRankingError:
    """Map an HTTP error status onto the matching adapter exception."""
    if status_code == 401:
        return SeRankingAuthError(message, status_code=status_code, details=details)
    if status_code == 429:
        return SeRankingRateLimitError(
            message, status_code=status_code, retry_after=retry_after, details=details
        )
    if status_code in (402, 403):
        return SeRankingQuotaExceededError(message, status_code=status_code, details=details)
    if status_code == 400:
        return SeRankingInvalidRequestError(message, status_code=status_code, details=details)
    if status_code in (500, 502, 503, 504):
        return SeRankingNetworkError(message, status_code=status_code, details=details)
    return SeRankingUnknownError(
        message,
        status_code=status_code,
        details=details,
        retryable=status_code >= 500,
    )
