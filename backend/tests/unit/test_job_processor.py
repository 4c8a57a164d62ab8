"""
Unit tests for the enrichment job processor.

Jobs run against a real in-memory queue and enrichment service backed by
the fake provider, so queue transitions are observed end to end.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import update

from adapters.seranking import SeRankingNetworkError, SeRankingParsingError
from adapters.seranking.request_builder import KeywordData
from core.domain.enrichment import (
    BulkEnrichmentPayload,
    CacheRefreshPayload,
    JobSpec,
    SingleKeywordPayload,
)
from infrastructure.database.models import EnrichmentJob, KeywordBankEntry
from services.enrichment_queue import EnrichmentQueue
from services.enrichment_service import EnrichmentService
from services.job_processor import JobProcessor, default_worker_id

OWNER = "user-1"


@pytest.fixture
def queue(session_factory) -> EnrichmentQueue:
    return EnrichmentQueue(session_factory)


@pytest.fixture
def service(keyword_bank, fake_provider, active_integration) -> EnrichmentService:
    return EnrichmentService(keyword_bank, fake_provider, active_integration)


@pytest.fixture
def processor(queue, service) -> JobProcessor:
    return JobProcessor(queue, service, worker_id="test-worker", batch_size=2, poll_interval=0.01)


def test_default_worker_id_is_unique():
    assert default_worker_id() != default_worker_id()


@pytest.mark.asyncio
async def test_process_next_without_jobs(processor):
    assert await processor.process_next() is False


@pytest.mark.asyncio
async def test_single_keyword_job_completes(processor, queue, fake_provider):
    fake_provider.data["shoes"] = KeywordData("shoes", True, volume=100)
    job_id = await queue.enqueue(OWNER, JobSpec(payload=SingleKeywordPayload("shoes", "us")))

    assert await processor.process_next()

    status = await queue.get_job_status(job_id)
    assert status["status"] == "completed"
    assert status["result"]["summary"]["successful"] == 1
    assert status["result"]["results"][0]["data"]["volume"] == 100
    assert status["progress"]["processed"] == 1
    assert processor.jobs_processed == 1


@pytest.mark.asyncio
async def test_bulk_job_runs_in_batches_and_reports_progress(processor, queue, fake_provider):
    keywords = ("a", "b", "c", "d", "e")
    job_id = await queue.enqueue(OWNER, JobSpec(payload=BulkEnrichmentPayload(keywords, "us")))

    await processor.process_next()

    assert [call[0] for call in fake_provider.calls] == [["a", "b"], ["c", "d"], ["e"]]
    status = await queue.get_job_status(job_id)
    assert status["status"] == "completed"
    assert status["progress"]["processed"] == 5
    assert status["result"]["summary"]["total"] == 5


@pytest.mark.asyncio
async def test_force_refresh_config_bypasses_cache(processor, queue, fake_provider, keyword_bank):
    await keyword_bank.upsert(KeywordData("shoes", True, volume=1), "us")
    await queue.enqueue(OWNER, JobSpec(payload=SingleKeywordPayload("shoes", "us"), force_refresh=True))

    await processor.process_next()

    assert fake_provider.calls == [(["shoes"], "us")]


@pytest.mark.asyncio
async def test_retryable_failure_reschedules_job(processor, queue, fake_provider):
    fake_provider.error = SeRankingNetworkError("bad gateway", status_code=502)
    job_id = await queue.enqueue(OWNER, JobSpec(payload=SingleKeywordPayload("shoes", "us")))

    await processor.process_next()

    status = await queue.get_job_status(job_id)
    assert status["status"] == "retrying"
    assert status["retry_count"] == 1
    assert "network_error" in status["error_message"]
    assert processor.jobs_failed == 1


@pytest.mark.asyncio
async def test_non_retryable_failure_fails_job(processor, queue, fake_provider):
    fake_provider.error = SeRankingParsingError("unreadable response")
    job_id = await queue.enqueue(OWNER, JobSpec(payload=SingleKeywordPayload("shoes", "us")))

    await processor.process_next()

    status = await queue.get_job_status(job_id)
    assert status["status"] == "failed"
    assert status["error_message"] == "unreadable response"


@pytest.mark.asyncio
async def test_bulk_job_with_no_data_keywords_completes(processor, queue):
    job_id = await queue.enqueue(OWNER, JobSpec(payload=BulkEnrichmentPayload(("ok", "y" * 100), "us")))
    await processor.process_next()

    status = await queue.get_job_status(job_id)
    assert status["status"] == "completed"
    assert status["result"]["summary"] == {
        "total": 2, "successful": 2, "failed": 0, "from_cache": 0, "from_api": 2,
    }


@pytest.mark.asyncio
async def test_malformed_payload_fails_without_retry(processor, queue, db_session):
    job_id = await queue.enqueue(OWNER, JobSpec(payload=SingleKeywordPayload("shoes", "us")))
    await db_session.execute(update(EnrichmentJob).where(EnrichmentJob.id == job_id).values(source_data={}))
    await db_session.commit()

    await processor.process_next()

    status = await queue.get_job_status(job_id)
    assert status["status"] == "failed"
    assert status["error_message"].startswith("Invalid payload")


@pytest.mark.asyncio
async def test_unexpected_exception_is_retried(queue):
    service = AsyncMock()
    service.enrich_keyword.side_effect = RuntimeError("connection reset")
    processor = JobProcessor(queue, service, worker_id="test-worker")
    job_id = await queue.enqueue(OWNER, JobSpec(payload=SingleKeywordPayload("shoes", "us")))

    await processor.process_next()

    status = await queue.get_job_status(job_id)
    assert status["status"] == "retrying"
    assert status["error_message"] == "connection reset"


@pytest.mark.asyncio
async def test_cancel_between_batches_stops_bulk_job(queue, service, fake_provider):
    processor = JobProcessor(queue, service, worker_id="test-worker", batch_size=1)
    job_id = await queue.enqueue(OWNER, JobSpec(payload=BulkEnrichmentPayload(("a", "b", "c"), "us")))
    job = await queue.dequeue(processor.worker_id)

    original = service.enrich_bulk

    async def cancel_after_first(*args, **kwargs):
        outcome = await original(*args, **kwargs)
        await queue.cancel(job_id)
        return outcome

    service.enrich_bulk = cancel_after_first
    await processor.process_job(job)

    assert len(fake_provider.calls) == 1
    status = await queue.get_job_status(job_id)
    assert status["status"] == "cancelled"
    assert status["result"] is None
    assert processor.jobs_processed == 0


@pytest.mark.asyncio
async def test_cache_refresh_job(processor, queue, keyword_bank, fake_provider, db_session):
    await keyword_bank.upsert(KeywordData("old", True, volume=1), "us")
    await db_session.execute(
        update(KeywordBankEntry).values(data_updated_at=datetime.now(UTC) - timedelta(days=9))
    )
    await db_session.commit()
    fake_provider.data["old"] = KeywordData("old", True, volume=42)

    job_id = await queue.enqueue(OWNER, JobSpec(payload=CacheRefreshPayload(filter_criteria={"limit": 10})))
    await processor.process_next()

    status = await queue.get_job_status(job_id)
    assert status["status"] == "completed"
    assert status["result"]["summary"]["from_api"] == 1
    assert (await keyword_bank.get("old", "us")).volume == 42


@pytest.mark.asyncio
async def test_start_runs_jobs_until_stopped(queue, service):
    processor = JobProcessor(queue, service, worker_id="test-worker", max_concurrent_jobs=1, poll_interval=0.01)
    job_ids = [
        await queue.enqueue(OWNER, JobSpec(payload=SingleKeywordPayload(keyword, "us")))
        for keyword in ("a", "b", "c", "d")
    ]

    runner = asyncio.create_task(processor.start())
    for _ in range(200):
        if processor.jobs_processed == len(job_ids):
            break
        await asyncio.sleep(0.01)

    await processor.stop()
    await asyncio.wait_for(runner, timeout=1)

    assert processor.jobs_processed == 4
    assert processor.get_status()["is_running"] is False
    for job_id in job_ids:
        assert (await queue.get_job_status(job_id))["status"] == "completed"
