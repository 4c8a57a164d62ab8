"""
Unit tests for the SE Ranking keyword export adapter.

All HTTP traffic goes through httpx.MockTransport; retries are observed by
patching asyncio.sleep inside the adapter module.
"""

from unittest.mock import AsyncMock, patch
from urllib.parse import parse_qs

import httpx
import pytest

from adapters.seranking import (
    SeRankingAdapter,
    SeRankingAuthError,
    SeRankingCircuitOpenError,
    SeRankingInvalidRequestError,
    SeRankingNetworkError,
    SeRankingParsingError,
    SeRankingQuotaExceededError,
    SeRankingRateLimitError,
    SeRankingTimeoutError,
)
from adapters.seranking.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from adapters.seranking.errors import ErrorType, error_from_status
from adapters.seranking.request_builder import KeywordData, parse_keyword_response

SLEEP = "adapters.seranking.seranking_adapter.asyncio.sleep"
JITTER = "adapters.seranking.seranking_adapter.random.uniform"

SHOES = {
    "keyword": "buy shoes online",
    "is_data_found": True,
    "volume": 1200,
    "cpc": "0.85",
    "competition": 0.6,
    "difficulty": 45,
    "history_trend": {"2026-09": 1100},
}


def make_adapter(handler, loader=None, **options) -> SeRankingAdapter:
    return SeRankingAdapter(
        credential_loader=loader or AsyncMock(return_value=("secret-key", "https://api.seranking.test")),
        transport=httpx.MockTransport(handler),
        **options,
    )


class Recorder:
    """Transport handler replaying a list of responses and recording requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


# ---------------------------------------------------------------------------
# Request shape and parsing
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_fetch_sends_token_header_and_form_body():
    recorder = Recorder(httpx.Response(200, json=[SHOES]))
    adapter = make_adapter(recorder)

    results = await adapter.fetch_keyword_data(["buy shoes online"], "US")

    request = recorder.requests[0]
    assert request.method == "POST"
    assert request.url.path == "/v1/keywords/export"
    assert request.url.params["source"] == "us"
    assert request.headers["Authorization"] == "Token secret-key"
    assert request.headers["Accept"] == "application/json"

    form = parse_qs(request.content.decode())
    assert form["keywords[]"] == ["buy shoes online"]
    assert form["sort"] == ["cpc"]
    assert form["sort_order"] == ["desc"]

    assert results == [
        KeywordData(
            keyword="buy shoes online",
            is_data_found=True,
            volume=1200,
            cpc=0.85,
            competition=0.6,
            difficulty=45,
            history_trend={"2026-09": 1100},
        )
    ]


@pytest.mark.asyncio
async def test_more_than_100_keywords_rejected_before_sending():
    recorder = Recorder(httpx.Response(200, json=[]))
    adapter = make_adapter(recorder)

    with pytest.raises(SeRankingInvalidRequestError):
        await adapter.fetch_keyword_data([f"kw {i}" for i in range(101)], "us")

    assert recorder.requests == []


@pytest.mark.asyncio
async def test_invalid_country_code_rejected():
    adapter = make_adapter(Recorder(httpx.Response(200, json=[])))

    with pytest.raises(SeRankingInvalidRequestError):
        await adapter.fetch_keyword_data(["shoes"], "united states")


@pytest.mark.asyncio
async def test_non_list_payload_is_parsing_error():
    adapter = make_adapter(Recorder(httpx.Response(200, json={"error": "unexpected"})))

    with pytest.raises(SeRankingParsingError) as exc_info:
        await adapter.fetch_keyword_data(["shoes"], "us")

    assert not exc_info.value.retryable


def test_parse_keyword_response_coerces_types():
    [item] = parse_keyword_response([{"keyword": "shoes", "is_data_found": 1, "volume": "10.4"}])
    assert item.is_data_found is True
    assert item.volume == 10
    assert item.cpc is None


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_429_honours_retry_after_then_succeeds():
    recorder = Recorder(
        httpx.Response(429, headers={"Retry-After": "7"}, json={"message": "slow down"}),
        httpx.Response(200, json=[SHOES]),
    )
    adapter = make_adapter(recorder)

    with patch(SLEEP, new_callable=AsyncMock) as sleep:
        results = await adapter.fetch_keyword_data(["buy shoes online"], "us")

    assert len(results) == 1
    assert len(recorder.requests) == 2
    delay = sleep.await_args.args[0]
    assert 7 <= delay <= 8


@pytest.mark.asyncio
async def test_retry_after_is_capped():
    recorder = Recorder(
        httpx.Response(429, headers={"Retry-After": "3600"}),
        httpx.Response(200, json=[]),
    )
    adapter = make_adapter(recorder, max_retry_after=300)

    with patch(SLEEP, new_callable=AsyncMock) as sleep, patch(JITTER, return_value=1.0):
        await adapter.fetch_keyword_data(["shoes"], "us")

    assert sleep.await_args.args[0] == 300


@pytest.mark.asyncio
async def test_retry_after_jitter_never_exceeds_cap():
    recorder = Recorder(
        httpx.Response(429, headers={"Retry-After": "299.5"}),
        httpx.Response(200, json=[]),
    )
    adapter = make_adapter(recorder, max_retry_after=300)

    with patch(SLEEP, new_callable=AsyncMock) as sleep, patch(JITTER, return_value=0.9):
        await adapter.fetch_keyword_data(["shoes"], "us")

    assert sleep.await_args.args[0] == 300


@pytest.mark.asyncio
async def test_server_errors_retry_with_backoff_until_exhausted():
    recorder = Recorder(httpx.Response(503, text="unavailable"))
    adapter = make_adapter(recorder, retry_attempts=3, retry_delay=1.0)

    with patch(SLEEP, new_callable=AsyncMock) as sleep:
        with pytest.raises(SeRankingNetworkError) as exc_info:
            await adapter.fetch_keyword_data(["shoes"], "us")

    assert exc_info.value.status_code == 503
    assert len(recorder.requests) == 3
    delays = [call.args[0] for call in sleep.await_args_list]
    assert len(delays) == 2
    assert 1 <= delays[0] <= 2
    assert 2 <= delays[1] <= 3


@pytest.mark.asyncio
async def test_client_errors_are_not_retried():
    recorder = Recorder(httpx.Response(400, json={"message": "bad keyword"}))
    adapter = make_adapter(recorder)

    with patch(SLEEP, new_callable=AsyncMock) as sleep:
        with pytest.raises(SeRankingInvalidRequestError):
            await adapter.fetch_keyword_data(["shoes"], "us")

    assert len(recorder.requests) == 1
    sleep.assert_not_called()


@pytest.mark.asyncio
async def test_quota_exhausted_is_not_retried():
    recorder = Recorder(httpx.Response(402, json={"message": "no credits"}))
    adapter = make_adapter(recorder)

    with pytest.raises(SeRankingQuotaExceededError):
        await adapter.fetch_keyword_data(["shoes"], "us")

    assert len(recorder.requests) == 1


@pytest.mark.asyncio
async def test_timeout_maps_to_retryable_timeout_error():
    recorder = Recorder(httpx.ReadTimeout("timed out"))
    adapter = make_adapter(recorder, retry_attempts=2)

    with patch(SLEEP, new_callable=AsyncMock):
        with pytest.raises(SeRankingTimeoutError) as exc_info:
            await adapter.fetch_keyword_data(["shoes"], "us")

    assert exc_info.value.retryable
    assert len(recorder.requests) == 2


def test_error_from_status_mapping():
    assert error_from_status(401, "x").error_type == ErrorType.AUTHENTICATION_ERROR
    assert error_from_status(429, "x").retryable
    assert error_from_status(403, "x").error_type == ErrorType.QUOTA_EXCEEDED_ERROR
    assert error_from_status(502, "x").error_type == ErrorType.NETWORK_ERROR
    unknown_client = error_from_status(418, "x")
    assert unknown_client.error_type == ErrorType.UNKNOWN_ERROR
    assert not unknown_client.retryable
    assert error_from_status(507, "x").retryable


# ---------------------------------------------------------------------------
# Credentials and health
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_missing_credentials_raise_auth_error():
    recorder = Recorder(httpx.Response(200, json=[]))
    adapter = make_adapter(recorder, loader=AsyncMock(return_value=None))

    with pytest.raises(SeRankingAuthError):
        await adapter.fetch_keyword_data(["shoes"], "us")

    assert recorder.requests == []


@pytest.mark.asyncio
async def test_credentials_are_cached_between_calls():
    loader = AsyncMock(return_value=("secret-key", "https://api.seranking.test"))
    adapter = make_adapter(Recorder(httpx.Response(200, json=[])), loader=loader)

    await adapter.fetch_keyword_data(["a"], "us")
    await adapter.fetch_keyword_data(["b"], "us")

    assert loader.await_count == 1


@pytest.mark.asyncio
async def test_rejected_key_invalidates_cached_credentials():
    loader = AsyncMock(return_value=("stale-key", "https://api.seranking.test"))
    adapter = make_adapter(Recorder(httpx.Response(401, json={"message": "bad token"})), loader=loader)

    with pytest.raises(SeRankingAuthError):
        await adapter.fetch_keyword_data(["a"], "us")
    with pytest.raises(SeRankingAuthError):
        await adapter.fetch_keyword_data(["a"], "us")

    assert loader.await_count == 2


@pytest.mark.asyncio
async def test_test_connection_reports_healthy():
    recorder = Recorder(httpx.Response(200, json=[{"keyword": "test", "is_data_found": True}]))
    adapter = make_adapter(recorder)

    health = await adapter.test_connection()

    assert health["status"] == "healthy"
    assert health["error_message"] is None
    assert recorder.requests[0].url.params["source"] == "us"
    assert await adapter.is_healthy()


@pytest.mark.asyncio
async def test_test_connection_unhealthy_on_auth_failure():
    adapter = make_adapter(Recorder(httpx.Response(401, json={"message": "bad token"})))

    health = await adapter.test_connection()

    assert health["status"] == "unhealthy"
    assert "401" in health["error_message"]


@pytest.mark.asyncio
async def test_test_connection_degraded_on_other_errors():
    adapter = make_adapter(Recorder(httpx.Response(400, json={"message": "bad"})))

    health = await adapter.test_connection()

    assert health["status"] == "degraded"


@pytest.mark.asyncio
async def test_metrics_track_calls():
    adapter = make_adapter(Recorder(httpx.Response(200, json=[])))
    await adapter.fetch_keyword_data(["a"], "us")

    metrics = adapter.get_metrics()
    assert metrics["total_requests"] == 1
    assert metrics["successful_requests"] == 1
    assert adapter.get_rate_limit_status() is None


# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_sustained_outage_opens_circuit_and_stops_http_calls():
    recorder = Recorder(httpx.Response(503, text="unavailable"))
    breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=5, recovery_timeout=60))
    adapter = make_adapter(recorder, circuit_breaker=breaker, retry_attempts=3)

    with patch(SLEEP, new_callable=AsyncMock):
        with pytest.raises(SeRankingNetworkError):
            await adapter.fetch_keyword_data(["a"], "us")
        with pytest.raises(SeRankingCircuitOpenError):
            await adapter.fetch_keyword_data(["b"], "us")
        with pytest.raises(SeRankingCircuitOpenError) as exc_info:
            await adapter.fetch_keyword_data(["c"], "us")

    assert len(recorder.requests) == 5
    assert exc_info.value.error_type == ErrorType.NETWORK_ERROR
    assert exc_info.value.retryable
    status = adapter.get_metrics()["circuit_breaker"]
    assert status["state"] == "open"
    assert status["trips"] == 1


@pytest.mark.asyncio
async def test_circuit_ignores_client_errors():
    recorder = Recorder(httpx.Response(400, json={"message": "bad"}))
    adapter = make_adapter(recorder, circuit_breaker=CircuitBreaker(CircuitBreakerConfig(failure_threshold=2)))

    for _ in range(4):
        with pytest.raises(SeRankingInvalidRequestError):
            await adapter.fetch_keyword_data(["a"], "us")

    assert len(recorder.requests) == 4
    assert adapter.get_metrics()["circuit_breaker"]["state"] == "closed"


@pytest.mark.asyncio
async def test_open_circuit_reports_degraded_health():
    recorder = Recorder(httpx.Response(200, json=[]))
    breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=1))
    breaker.record_failure(SeRankingNetworkError("down", status_code=502))
    adapter = make_adapter(recorder, circuit_breaker=breaker)

    health = await adapter.test_connection()

    assert health["status"] == "degraded"
    assert "circuit" in health["error_message"]
    assert recorder.requests == []
