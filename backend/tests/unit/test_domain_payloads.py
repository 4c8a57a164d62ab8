"""
Unit tests for enrichment domain types: payload variants, priorities,
progress and result envelopes.
"""

from datetime import UTC, datetime

import pytest

from core.domain.enrichment import (
    BulkEnrichmentPayload,
    BulkEnrichmentResult,
    CacheRefreshPayload,
    DataSource,
    EnrichmentResult,
    JobPriority,
    JobProgress,
    JobStatus,
    JobType,
    SingleKeywordPayload,
    payload_from_dict,
)


def test_payload_from_dict_selects_variant():
    single = payload_from_dict("single_keyword", {"keyword": " shoes ", "country_code": "US"})
    assert single == SingleKeywordPayload(keyword="shoes", country_code="us", language_code="en")

    bulk = payload_from_dict(JobType.BULK_ENRICHMENT, {"keywords": ["a", " ", "b"], "country_code": "gb"})
    assert bulk.keywords == ("a", "b")
    assert bulk.total_items == 2

    refresh = payload_from_dict("cache_refresh", {"filter_criteria": {"limit": 25}})
    assert isinstance(refresh, CacheRefreshPayload)
    assert refresh.total_items == 25


@pytest.mark.parametrize(
    "job_type, data",
    [
        ("single_keyword", {"country_code": "us"}),
        ("single_keyword", {"keyword": "shoes"}),
        ("bulk_enrichment", {"keywords": [], "country_code": "us"}),
        ("bulk_enrichment", {"keywords": ["  "], "country_code": "us"}),
        ("cache_refresh", {}),
        ("keyword_magic", {"keyword": "shoes"}),
    ],
)
def test_malformed_payloads_raise_value_error(job_type, data):
    with pytest.raises(ValueError):
        payload_from_dict(job_type, data)


def test_payload_dict_round_trip_keeps_variant():
    payload = BulkEnrichmentPayload(keywords=("a", "b"), country_code="de", language_code="de")
    assert payload_from_dict(payload.job_type, payload.to_dict()) == payload


def test_job_priority_parse():
    assert JobPriority.parse(None) is JobPriority.NORMAL
    assert JobPriority.parse("low") is JobPriority.LOW
    assert JobPriority.parse(10) is JobPriority.HIGH
    assert JobPriority.HIGH > JobPriority.NORMAL > JobPriority.LOW
    with pytest.raises(ValueError):
        JobPriority.parse(7)


def test_terminal_statuses():
    assert JobStatus.CANCELLED.is_terminal
    assert not JobStatus.RETRYING.is_terminal


def test_job_progress_from_partial_dict():
    started = datetime(2026, 10, 18, 9, tzinfo=UTC)
    progress = JobProgress.from_dict({"total": 10, "processed": 4, "started_at": started.isoformat()})

    assert progress.failed == 0
    assert progress.started_at == started
    assert progress.to_dict()["estimated_completion_at"] is None


def test_bulk_result_summary_counts_sources():
    outcome = BulkEnrichmentResult(
        results=[
            EnrichmentResult("a", True, data={"id": "1"}, source=DataSource.CACHE),
            EnrichmentResult("b", True, data={"id": "2"}, source=DataSource.API),
            EnrichmentResult("c", False, error="down", error_type="network_error", retryable=True),
        ]
    )

    assert outcome.summary() == {"total": 3, "successful": 2, "failed": 1, "from_cache": 1, "from_api": 1}
    assert outcome.has_retryable_failure
    assert outcome.results[0].entry_id == "1"


def test_failed_result_envelope():
    body = EnrichmentResult("c", False, error="down", error_type="network_error", retryable=True).to_dict()

    assert body["data"] is None
    assert body["error"] == {"type": "network_error", "message": "down", "retryable": True}
