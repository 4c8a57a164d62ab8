"""
Unit tests for the durable enrichment job queue.

Covers:
- Enqueue validation, capacity and batch isolation
- Priority then FIFO dequeue order, scheduled jobs
- Exclusive claiming under concurrent dequeue
- Retry scheduling with exponential delay and exhaustion
- Cancel, complete-after-cancel, cleanup and stale lock release
- Progress, status, stats and lifecycle events
"""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import update

from core.domain.enrichment import (
    BulkEnrichmentPayload,
    CacheRefreshPayload,
    JobEventType,
    JobPriority,
    JobSpec,
    JobStatus,
    SingleKeywordPayload,
)
from infrastructure.database.models import EnrichmentJob
from services.enrichment_queue import (
    EnrichmentQueue,
    InvalidJobError,
    QueueFullError,
    generate_job_name,
    validate_job_spec,
)
from services.job_events import JobEventBus

OWNER = "user-1"


def single(keyword: str = "running shoes", priority: JobPriority = JobPriority.NORMAL, **kwargs) -> JobSpec:
    return JobSpec(payload=SingleKeywordPayload(keyword=keyword, country_code="us"), priority=priority, **kwargs)


def bulk(*keywords: str) -> JobSpec:
    return JobSpec(payload=BulkEnrichmentPayload(keywords=tuple(keywords), country_code="us"))


@pytest.fixture
def event_bus() -> JobEventBus:
    return JobEventBus()


@pytest.fixture
def queue(session_factory, event_bus) -> EnrichmentQueue:
    return EnrichmentQueue(session_factory, event_bus=event_bus, retry_delay=60, retry_multiplier=2.0)


async def _set_columns(db_session, job_id: str, **values) -> None:
    await db_session.execute(update(EnrichmentJob).where(EnrichmentJob.id == job_id).values(**values))
    await db_session.commit()


async def _make_eligible(db_session, job_id: str) -> None:
    await _set_columns(db_session, job_id, next_retry_at=datetime.now(UTC) - timedelta(seconds=1))


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


# ---------------------------------------------------------------------------
# Enqueue
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_enqueue_stores_queued_job(queue):
    job_id = await queue.enqueue(OWNER, bulk("a", "b", "c"))

    status = await queue.get_job_status(job_id)
    assert status["status"] == "queued"
    assert status["job_type"] == "bulk_enrichment"
    assert status["source_data"]["keywords"] == ["a", "b", "c"]
    assert status["progress"]["total"] == 3
    assert status["priority"] == JobPriority.NORMAL
    assert status["name"].startswith("Bulk: 3 keywords")
    assert status["queue_position"] == 1


@pytest.mark.asyncio
async def test_enqueue_rejects_invalid_specs(queue):
    with pytest.raises(InvalidJobError):
        await queue.enqueue(OWNER, {"keyword": "shoes"})
    with pytest.raises(InvalidJobError):
        await queue.enqueue("", single())
    with pytest.raises(InvalidJobError):
        await queue.enqueue(OWNER, JobSpec(payload=SingleKeywordPayload(keyword="shoes", country_code="u5a")))
    with pytest.raises(InvalidJobError):
        await queue.enqueue(OWNER, single("x" * 101))
    with pytest.raises(InvalidJobError):
        await queue.enqueue(OWNER, JobSpec(payload=CacheRefreshPayload(filter_criteria={"limit": 0})))
    with pytest.raises(InvalidJobError):
        await queue.enqueue(OWNER, single(max_retries=-1))

    assert await queue.get_queue_size() == 0


def test_validate_job_spec_parses_priority_names():
    spec = validate_job_spec(JobSpec(payload=SingleKeywordPayload("shoes", "us"), priority="high"))
    assert spec.priority is JobPriority.HIGH

    with pytest.raises(InvalidJobError):
        validate_job_spec(JobSpec(payload=SingleKeywordPayload("shoes", "us"), priority="urgent"))


def test_generated_job_names():
    now = datetime(2026, 10, 18, 9, 30, tzinfo=UTC)
    assert generate_job_name(single("shoes"), now) == "Single: shoes (us) - 20261018T093000"
    assert generate_job_name(bulk("a", "b"), now) == "Bulk: 2 keywords - 20261018T093000"
    refresh = JobSpec(payload=CacheRefreshPayload(filter_criteria={}))
    assert generate_job_name(refresh, now) == "Cache Refresh - 20261018T093000"


@pytest.mark.asyncio
async def test_enqueue_rejects_when_full(session_factory):
    queue = EnrichmentQueue(session_factory, max_queue_size=2)
    await queue.enqueue(OWNER, single("a"))
    await queue.enqueue(OWNER, single("b"))

    with pytest.raises(QueueFullError):
        await queue.enqueue(OWNER, single("c"))


@pytest.mark.asyncio
async def test_finished_jobs_do_not_count_against_capacity(session_factory):
    queue = EnrichmentQueue(session_factory, max_queue_size=1)
    job_id = await queue.enqueue(OWNER, single("a"))
    await queue.cancel(job_id)

    assert await queue.enqueue(OWNER, single("b"))


@pytest.mark.asyncio
async def test_enqueue_batch_isolates_failures(session_factory):
    queue = EnrichmentQueue(session_factory, max_queue_size=2)

    results = await queue.enqueue_batch(
        OWNER,
        [single("a"), JobSpec(payload=SingleKeywordPayload("b", "not a country")), single("c"), single("d")],
    )

    assert [r.success for r in results] == [True, False, True, False]
    assert "country" in results[1].error.lower()
    assert "full" in results[3].error.lower()
    assert await queue.get_queue_size() == 2


# ---------------------------------------------------------------------------
# Dequeue
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_dequeue_orders_by_priority_then_age(queue):
    low = await queue.enqueue(OWNER, single("low", JobPriority.LOW))
    normal = await queue.enqueue(OWNER, single("normal"))
    high_first = await queue.enqueue(OWNER, single("high one", JobPriority.HIGH))
    high_second = await queue.enqueue(OWNER, single("high two", JobPriority.HIGH))

    assert await queue.get_queue_position(low) == 4

    claimed = [(await queue.dequeue("w1")).id for _ in range(4)]

    assert claimed == [high_first, high_second, normal, low]
    assert await queue.dequeue("w1") is None


@pytest.mark.asyncio
async def test_dequeue_locks_job(queue):
    job_id = await queue.enqueue(OWNER, single())

    job = await queue.dequeue("worker-a")

    assert job.id == job_id
    assert job.status == "processing"
    assert job.worker_id == "worker-a"
    assert job.locked_at is not None
    assert job.started_at is not None
    assert await queue.dequeue("worker-b") is None


@pytest.mark.asyncio
async def test_scheduled_job_waits_until_due(queue, db_session):
    job_id = await queue.enqueue(OWNER, single(), scheduled_for=datetime.now(UTC) + timedelta(hours=1))

    assert await queue.dequeue("w1") is None

    await _make_eligible(db_session, job_id)
    assert (await queue.dequeue("w1")).id == job_id


@pytest.mark.asyncio
async def test_paused_queue_hands_out_nothing(queue):
    await queue.enqueue(OWNER, single())
    queue.pause()
    assert await queue.dequeue("w1") is None

    queue.resume()
    assert await queue.dequeue("w1") is not None


@pytest.mark.asyncio
async def test_concurrent_dequeue_claims_job_once(file_session_factory):
    queue = EnrichmentQueue(file_session_factory)
    job_id = await queue.enqueue(OWNER, single())

    results = await asyncio.gather(queue.dequeue("worker-a"), queue.dequeue("worker-b"))

    claimed = [job for job in results if job is not None]
    assert len(claimed) == 1
    assert claimed[0].id == job_id


@pytest.mark.asyncio
async def test_release_stale_locks_requeues_abandoned_jobs(queue, db_session):
    job_id = await queue.enqueue(OWNER, single())
    await queue.dequeue("dead-worker")
    await _set_columns(db_session, job_id, locked_at=datetime.now(UTC) - timedelta(minutes=10))

    released = await queue.release_stale_locks(timeout=300)

    assert released == 1
    job = await queue.dequeue("live-worker")
    assert job.id == job_id
    assert job.worker_id == "live-worker"


# ---------------------------------------------------------------------------
# Failure and retry
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_fail_schedules_exponential_retry(queue, db_session):
    job_id = await queue.enqueue(OWNER, single())
    await queue.dequeue("w1")
    assert await queue.fail(job_id, "gateway timeout", should_retry=True)

    status = await queue.get_job_status(job_id)
    assert status["status"] == "retrying"
    assert status["retry_count"] == 1
    assert status["worker_id"] is None
    assert status["locked_at"] is None
    # Not eligible before next_retry_at
    assert await queue.dequeue("w1") is None

    await _make_eligible(db_session, job_id)
    assert (await queue.dequeue("w1")).id == job_id

    before = datetime.now(UTC)
    await queue.fail(job_id, "gateway timeout again", should_retry=True)

    status = await queue.get_job_status(job_id)
    assert status["retry_count"] == 2
    next_retry_at = _as_utc(datetime.fromisoformat(status["next_retry_at"]))
    assert (next_retry_at - before).total_seconds() == pytest.approx(120, abs=5)


@pytest.mark.asyncio
async def test_fail_after_max_retries_is_permanent(queue, db_session):
    job_id = await queue.enqueue(OWNER, single(max_retries=1))

    await queue.dequeue("w1")
    await queue.fail(job_id, "first", should_retry=True)
    await _make_eligible(db_session, job_id)
    await queue.dequeue("w1")
    await queue.fail(job_id, "second", should_retry=True)

    status = await queue.get_job_status(job_id)
    assert status["status"] == "failed"
    assert status["error_message"] == "second"
    assert status["completed_at"] is not None
    assert status["locked_at"] is None
    # Terminal jobs ignore further failures
    assert await queue.fail(job_id, "third") is False


@pytest.mark.asyncio
async def test_non_retryable_failure_is_permanent(queue):
    job_id = await queue.enqueue(OWNER, single())
    await queue.dequeue("w1")

    await queue.fail(job_id, "invalid keyword", should_retry=False)

    assert (await queue.get_job_status(job_id))["status"] == "failed"


# ---------------------------------------------------------------------------
# Completion, cancellation, cleanup
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_complete_stores_result_and_unlocks(queue):
    job_id = await queue.enqueue(OWNER, single())
    await queue.dequeue("w1")

    assert await queue.complete(job_id, {"summary": {"successful": 1}})

    status = await queue.get_job_status(job_id)
    assert status["status"] == "completed"
    assert status["result"] == {"summary": {"successful": 1}}
    assert status["worker_id"] is None
    assert status["queue_position"] is None


@pytest.mark.asyncio
async def test_cancel_only_affects_queued_or_processing(queue):
    queued = await queue.enqueue(OWNER, single("a"))
    assert await queue.cancel(queued, owner_id="someone-else") == 0
    assert await queue.cancel(queued, owner_id=OWNER) == 1
    assert await queue.cancel(queued) == 0

    done = await queue.enqueue(OWNER, single("b"))
    await queue.dequeue("w1")
    await queue.complete(done, {})
    assert await queue.cancel(done) == 0
    assert (await queue.get_job_status(done))["status"] == "completed"


@pytest.mark.asyncio
async def test_result_of_job_cancelled_mid_flight_is_discarded(queue):
    job_id = await queue.enqueue(OWNER, single())
    await queue.dequeue("w1")

    assert await queue.cancel(job_id) == 1
    assert await queue.complete(job_id, {"summary": {}}) is False

    status = await queue.get_job_status(job_id)
    assert status["status"] == "cancelled"
    assert status["result"] is None
    assert status["cancelled_at"] is not None


@pytest.mark.asyncio
async def test_cleanup_removes_old_finished_jobs_only(queue, db_session):
    old_done = await queue.enqueue(OWNER, single("a"))
    await queue.dequeue("w1")
    await queue.complete(old_done, {})
    old_cancelled = await queue.enqueue(OWNER, single("b"))
    await queue.cancel(old_cancelled)
    recent_done = await queue.enqueue(OWNER, single("c"))
    await queue.dequeue("w1")
    await queue.complete(recent_done, {})
    old_failed = await queue.enqueue(OWNER, single("d"))
    await queue.dequeue("w1")
    await queue.fail(old_failed, "boom", should_retry=False)

    long_ago = datetime.now(UTC) - timedelta(days=40)
    await _set_columns(db_session, old_done, completed_at=long_ago)
    await _set_columns(db_session, old_cancelled, cancelled_at=long_ago)
    await _set_columns(db_session, old_failed, completed_at=long_ago)

    assert await queue.cleanup(retention_days=30) == 2
    assert await queue.get_job_status(old_done) is None
    assert await queue.get_job_status(old_cancelled) is None
    assert await queue.get_job_status(recent_done) is not None
    assert await queue.get_job_status(old_failed) is not None


# ---------------------------------------------------------------------------
# Progress, queries, events
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_update_progress_merges_and_estimates_completion(queue):
    job_id = await queue.enqueue(OWNER, bulk("a", "b", "c", "d"))
    await queue.dequeue("w1")

    assert await queue.update_progress(job_id, {"processed": 2, "successful": 2})

    progress = (await queue.get_job_status(job_id))["progress"]
    assert progress["total"] == 4
    assert progress["processed"] == 2
    assert progress["successful"] == 2
    assert progress["started_at"] is not None
    assert progress["estimated_completion_at"] is not None


@pytest.mark.asyncio
async def test_update_progress_ignores_terminal_jobs(queue):
    job_id = await queue.enqueue(OWNER, single())
    await queue.cancel(job_id)

    assert await queue.update_progress(job_id, {"processed": 1}) is False


@pytest.mark.asyncio
async def test_get_job_status_filters_by_owner(queue):
    job_id = await queue.enqueue(OWNER, single())

    assert await queue.get_job_status(job_id, owner_id=OWNER) is not None
    assert await queue.get_job_status(job_id, owner_id="intruder") is None


@pytest.mark.asyncio
async def test_list_jobs_by_owner_and_status(queue):
    first = await queue.enqueue(OWNER, single("a"))
    await queue.enqueue(OWNER, single("b"))
    await queue.enqueue("user-2", single("c"))
    await queue.cancel(first)

    assert len(await queue.list_jobs(OWNER)) == 2
    cancelled = await queue.list_jobs(OWNER, status=JobStatus.CANCELLED)
    assert [job.id for job in cancelled] == [first]


@pytest.mark.asyncio
async def test_queue_stats(queue):
    done = await queue.enqueue(OWNER, single("a"))
    await queue.dequeue("w1")
    await queue.complete(done, {})
    await queue.enqueue(OWNER, single("b"))

    stats = await queue.get_queue_stats()

    assert stats["total"] == 2
    assert stats["by_status"]["completed"] == 1
    assert stats["by_status"]["queued"] == 1
    assert stats["queue_size"] == 1
    assert stats["oldest_queued_at"] is not None
    assert stats["health"] == "healthy"


@pytest.mark.asyncio
async def test_lifecycle_events_are_emitted(queue, event_bus):
    events = []
    event_bus.subscribe(events.append)

    job_id = await queue.enqueue(OWNER, single())
    await queue.dequeue("w1")
    await queue.update_progress(job_id, {"processed": 1})
    await queue.fail(job_id, "timeout", should_retry=True)

    assert [e.event_type for e in events] == [
        JobEventType.CREATED,
        JobEventType.STARTED,
        JobEventType.PROGRESS,
        JobEventType.RETRYING,
    ]
    assert all(e.job_id == job_id and e.owner_id == OWNER for e in events)
    assert events[-1].data["retry_count"] == 1


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_break_queue(queue, event_bus):
    def broken(event):
        raise RuntimeError("subscriber down")

    event_bus.subscribe(broken)

    job_id = await queue.enqueue(OWNER, single())
    assert (await queue.dequeue("w1")).id == job_id
