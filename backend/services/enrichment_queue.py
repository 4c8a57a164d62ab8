"""
Enrichment Job Queue.

Durable, priority-ordered queue of enrichment jobs stored in the
``enrichment_jobs`` table, so any number of worker processes can share it.

Lifecycle::

    queued -> processing -> completed
                         -> retrying -> (eligible again at next_retry_at)
                         -> failed     (retries exhausted)
    queued/processing -> cancelled

A job is claimed with a single conditional UPDATE on ``locked_at IS NULL``;
that compare-and-lock is the only concurrency control between workers.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Optional

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adapters.seranking.errors import SeRankingInvalidRequestError
from adapters.seranking.request_builder import MAX_KEYWORD_LENGTH, validate_country_code
from core.domain.enrichment import (
    IN_FLIGHT_STATUSES,
    TERMINAL_STATUSES,
    BulkEnrichmentPayload,
    CacheRefreshPayload,
    JobEventType,
    JobPriority,
    JobProgress,
    JobSpec,
    JobStatus,
    SingleKeywordPayload,
)
from infrastructure.database.models.enrichment_job import EnrichmentJob
from services.job_events import JobEvent, JobEventBus

logger = logging.getLogger(__name__)

MAX_BULK_KEYWORDS = 1000
# Completed jobs sampled for the average processing time in stats
_STATS_SAMPLE_SIZE = 100

_TERMINAL = [s.value for s in TERMINAL_STATUSES]
_IN_FLIGHT = [s.value for s in IN_FLIGHT_STATUSES]
_ELIGIBLE = [JobStatus.QUEUED.value, JobStatus.RETRYING.value]


class QueueError(Exception):
    """Base class for job queue errors."""


class QueueFullError(QueueError):
    """The queue holds as many in-flight jobs as it is allowed to."""


class InvalidJobError(QueueError):
    """The job spec failed validation."""


@dataclass
class EnqueueResult:
    """Outcome of one item of ``enqueue_batch``."""

    index: int
    job_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.job_id is not None


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything stored is UTC
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=UTC)


def generate_job_name(spec: JobSpec, now: Optional[datetime] = None) -> str:
    """Human readable job name, e.g. ``Bulk: 25 keywords - 20261018T093000``."""
    stamp = (now or datetime.now(UTC)).strftime("%Y%m%dT%H%M%S")
    match spec.payload:
        case SingleKeywordPayload(keyword=keyword, country_code=country):
            return f"Single: {keyword} ({country}) - {stamp}"
        case BulkEnrichmentPayload(keywords=keywords):
            return f"Bulk: {len(keywords)} keywords - {stamp}"
        case CacheRefreshPayload():
            return f"Cache Refresh - {stamp}"


def validate_job_spec(spec: Any) -> JobSpec:
    """
    Check a job spec before it is stored.

    Raises:
        InvalidJobError: With a message naming the offending field
    """
    if not isinstance(spec, JobSpec):
        raise InvalidJobError(f"Expected JobSpec, got {type(spec).__name__}")

    try:
        spec.priority = JobPriority.parse(spec.priority)
    except ValueError as e:
        raise InvalidJobError(str(e)) from e

    if spec.max_retries is not None and spec.max_retries < 0:
        raise InvalidJobError("max_retries must not be negative")
    if spec.retry_delay is not None and spec.retry_delay < 0:
        raise InvalidJobError("retry_delay must not be negative")

    match spec.payload:
        case SingleKeywordPayload(keyword=keyword, country_code=country):
            _check_keywords([keyword])
            _check_country(country)
        case BulkEnrichmentPayload(keywords=keywords, country_code=country):
            if not keywords:
                raise InvalidJobError("Bulk job has no keywords")
            if len(keywords) > MAX_BULK_KEYWORDS:
                raise InvalidJobError(f"Bulk job exceeds {MAX_BULK_KEYWORDS} keywords")
            _check_keywords(keywords)
            _check_country(country)
        case CacheRefreshPayload(filter_criteria=criteria):
            for key in ("limit", "older_than_days"):
                value = criteria.get(key)
                if value is not None and (not isinstance(value, int) or value <= 0):
                    raise InvalidJobError(f"filter_criteria.{key} must be a positive integer")
            if criteria.get("country_code"):
                _check_country(criteria["country_code"])
        case _:
            raise InvalidJobError(f"Unsupported job payload: {type(spec.payload).__name__}")

    return spec


def _check_keywords(keywords) -> None:
    for keyword in keywords:
        if not keyword or not keyword.strip():
            raise InvalidJobError("Keyword is empty")
        if len(keyword.strip()) > MAX_KEYWORD_LENGTH:
            raise InvalidJobError(f"Keyword exceeds {MAX_KEYWORD_LENGTH} characters: {keyword[:30]}...")


def _check_country(country_code: str) -> None:
    try:
        validate_country_code(country_code)
    except SeRankingInvalidRequestError as e:
        raise InvalidJobError(e.message) from e


class EnrichmentQueue:
    """Database-backed enrichment job queue."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        event_bus: Optional[JobEventBus] = None,
        max_queue_size: int = 10000,
        max_retries: int = 3,
        retry_delay: int = 60,
        retry_multiplier: float = 2.0,
        retention_days: int = 30,
        processing_timeout: int = 300,
    ):
        self.session_factory = session_factory
        self.event_bus = event_bus or JobEventBus()
        self.max_queue_size = max_queue_size
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.retry_multiplier = retry_multiplier
        self.retention_days = retention_days
        self.processing_timeout = processing_timeout
        self.is_paused = False

    # ── Submission ────────────────────────────────────────────────────────────

    async def enqueue(
        self,
        owner_id: str,
        spec: JobSpec,
        scheduled_for: Optional[datetime] = None,
    ) -> str:
        """
        Add a job to the queue.

        Args:
            owner_id: Owner of the job, used for status and cancel filters
            spec: Validated job spec
            scheduled_for: Earliest time the job may be dequeued

        Returns:
            The new job id

        Raises:
            InvalidJobError: The spec failed validation
            QueueFullError: The queue is at capacity
        """
        if not owner_id:
            raise InvalidJobError("owner_id is required")
        spec = validate_job_spec(spec)

        size = await self.get_queue_size()
        if size >= self.max_queue_size:
            raise QueueFullError(f"Queue is full ({size}/{self.max_queue_size} jobs)")

        job = self._build_job(owner_id, spec, scheduled_for)
        async with self.session_factory() as db:
            db.add(job)
            await db.commit()

        logger.info(
            "Enqueued %s job %s (priority=%s, items=%d)",
            job.job_type, job.id, spec.priority.name, spec.payload.total_items,
            extra={"job_id": job.id, "owner_id": owner_id},
        )
        await self._emit(JobEventType.CREATED, job, {"name": job.name, "priority": job.priority})
        return job.id

    async def enqueue_batch(
        self,
        owner_id: str,
        specs: list[JobSpec],
        scheduled_for: Optional[datetime] = None,
    ) -> list[EnqueueResult]:
        """Enqueue each spec on its own; one bad item does not block the others."""
        results = []
        for index, spec in enumerate(specs):
            try:
                job_id = await self.enqueue(owner_id, spec, scheduled_for)
                results.append(EnqueueResult(index=index, job_id=job_id))
            except (QueueError, SQLAlchemyError) as e:
                logger.warning("Batch item %d rejected: %s", index, e)
                results.append(EnqueueResult(index=index, error=str(e)))

        accepted = sum(1 for r in results if r.success)
        logger.info("Batch enqueue: %d/%d jobs accepted", accepted, len(specs))
        return results

    # ── Claiming ──────────────────────────────────────────────────────────────

    async def dequeue(self, worker_id: str) -> Optional[EnrichmentJob]:
        """
        Claim the next eligible job for ``worker_id``.

        Picks the highest priority, oldest job that is queued (or retrying
        with ``next_retry_at`` passed) and unlocked, then locks it with one
        conditional UPDATE. Returns None when nothing is eligible or another
        worker won the race for the candidate.
        """
        if self.is_paused:
            return None

        now = datetime.now(UTC)
        async with self.session_factory() as db:
            candidate = await db.scalar(
                select(EnrichmentJob.id)
                .where(
                    EnrichmentJob.status.in_(_ELIGIBLE),
                    EnrichmentJob.locked_at.is_(None),
                    or_(EnrichmentJob.next_retry_at.is_(None), EnrichmentJob.next_retry_at <= now),
                )
                .order_by(EnrichmentJob.priority.desc(), EnrichmentJob.created_at.asc())
                .limit(1)
            )
            if candidate is None:
                return None

            result = await db.execute(
                update(EnrichmentJob)
                .where(
                    EnrichmentJob.id == candidate,
                    EnrichmentJob.locked_at.is_(None),
                    EnrichmentJob.status.in_(_ELIGIBLE),
                )
                .values(
                    status=JobStatus.PROCESSING.value,
                    worker_id=worker_id,
                    locked_at=now,
                    started_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()

            if not result.rowcount:
                logger.debug("Worker %s lost the lock race for job %s", worker_id, candidate)
                return None

            job = await db.get(EnrichmentJob, candidate)

        logger.info("Worker %s claimed job %s", worker_id, job.id, extra={"job_id": job.id, "worker_id": worker_id})
        await self._emit(JobEventType.STARTED, job, {"worker_id": worker_id})
        return job

    async def release_stale_locks(self, timeout: Optional[int] = None) -> int:
        """Put processing jobs locked longer than ``timeout`` seconds back in the queue."""
        cutoff = datetime.now(UTC) - timedelta(seconds=timeout or self.processing_timeout)
        async with self.session_factory() as db:
            result = await db.execute(
                update(EnrichmentJob)
                .where(
                    EnrichmentJob.status == JobStatus.PROCESSING.value,
                    EnrichmentJob.locked_at.is_not(None),
                    EnrichmentJob.locked_at < cutoff,
                )
                .values(
                    status=JobStatus.QUEUED.value,
                    worker_id=None,
                    locked_at=None,
                    updated_at=datetime.now(UTC),
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        released = result.rowcount or 0
        if released:
            logger.warning("Released %d stale job locks", released)
        return released

    def pause(self) -> None:
        """Stop handing out jobs; submission keeps working."""
        self.is_paused = True
        logger.info("Enrichment queue paused")

    def resume(self) -> None:
        self.is_paused = False
        logger.info("Enrichment queue resumed")

    # ── Job updates ───────────────────────────────────────────────────────────

    async def update_progress(self, job_id: str, delta: dict[str, Any]) -> bool:
        """
        Merge ``delta`` into the job's progress and refresh the completion estimate.

        Returns False when the job is unknown or already terminal.
        """
        now = datetime.now(UTC)
        async with self.session_factory() as db:
            job = await db.get(EnrichmentJob, job_id)
            if job is None or job.status in _TERMINAL:
                return False

            merged = {**(job.progress or {}), **delta}
            progress = JobProgress.from_dict(merged)
            if progress.started_at is None:
                progress.started_at = _as_utc(job.started_at) or now

            if progress.processed > 0 and progress.total > 0:
                elapsed = (now - _as_utc(progress.started_at)).total_seconds()
                per_item = elapsed / progress.processed
                remaining = max(progress.total - progress.processed, 0)
                progress.estimated_completion_at = now + timedelta(seconds=remaining * per_item)

            job.progress = progress.to_dict()
            job.updated_at = now
            await db.commit()

        await self._emit(JobEventType.PROGRESS, job, {"progress": job.progress})
        return True

    async def complete(self, job_id: str, result: Optional[dict[str, Any]] = None) -> bool:
        """
        Mark a processing job completed.

        Returns False when the job is no longer processing, e.g. it was
        cancelled while its work was in flight. The result is discarded then.
        """
        now = datetime.now(UTC)
        async with self.session_factory() as db:
            outcome = await db.execute(
                update(EnrichmentJob)
                .where(
                    EnrichmentJob.id == job_id,
                    EnrichmentJob.status == JobStatus.PROCESSING.value,
                )
                .values(
                    status=JobStatus.COMPLETED.value,
                    result=result,
                    completed_at=now,
                    worker_id=None,
                    locked_at=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            if not outcome.rowcount:
                logger.info("Job %s is no longer processing; result discarded", job_id, extra={"job_id": job_id})
                return False
            job = await db.get(EnrichmentJob, job_id)

        logger.info("Job %s completed", job_id, extra={"job_id": job_id})
        await self._emit(JobEventType.COMPLETED, job, {"result": result})
        return True

    async def fail(self, job_id: str, error: str, should_retry: bool = True) -> bool:
        """
        Record a job failure.

        With ``n = retry_count + 1``, a retryable failure with ``n`` within the
        job's max retries is rescheduled at ``now + delay * multiplier ** retry_count``
        and unlocked. Anything else fails the job permanently.

        Returns False when the job is unknown or already terminal.
        """
        now = datetime.now(UTC)
        async with self.session_factory() as db:
            job = await db.get(EnrichmentJob, job_id)
            if job is None or job.status in _TERMINAL:
                return False

            config = job.config or {}
            max_retries = config.get("max_retries", self.max_retries)
            base_delay = config.get("retry_delay", self.retry_delay)
            attempt = job.retry_count + 1

            values: dict[str, Any] = {
                "error_message": error,
                "worker_id": None,
                "locked_at": None,
                "updated_at": now,
            }
            if should_retry and attempt <= max_retries:
                delay = base_delay * self.retry_multiplier ** job.retry_count
                values.update(
                    status=JobStatus.RETRYING.value,
                    retry_count=attempt,
                    last_retry_at=now,
                    next_retry_at=now + timedelta(seconds=delay),
                )
                event_type = JobEventType.RETRYING
            else:
                values.update(status=JobStatus.FAILED.value, completed_at=now)
                event_type = JobEventType.FAILED

            outcome = await db.execute(
                update(EnrichmentJob)
                .where(EnrichmentJob.id == job_id, EnrichmentJob.status.not_in(_TERMINAL))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            if not outcome.rowcount:
                return False
            await db.refresh(job)

        if event_type == JobEventType.RETRYING:
            logger.warning(
                "Job %s failed (attempt %d/%d), retrying at %s: %s",
                job_id, attempt, max_retries, job.next_retry_at, error,
                extra={"job_id": job_id},
            )
            data = {"error": error, "retry_count": attempt, "next_retry_at": values["next_retry_at"].isoformat()}
        else:
            logger.error("Job %s failed permanently: %s", job_id, error, extra={"job_id": job_id})
            data = {"error": error, "retry_count": job.retry_count}

        await self._emit(event_type, job, data)
        return True

    async def cancel(self, job_id: str, owner_id: Optional[str] = None) -> int:
        """
        Cancel a queued or processing job.

        A processing job's in-flight work is not interrupted; its result is
        discarded when it finishes. Returns the number of jobs cancelled,
        0 for unknown, foreign or terminal jobs.
        """
        now = datetime.now(UTC)
        conditions = [
            EnrichmentJob.id == job_id,
            EnrichmentJob.status.in_([JobStatus.QUEUED.value, JobStatus.PROCESSING.value]),
        ]
        if owner_id is not None:
            conditions.append(EnrichmentJob.owner_id == owner_id)

        async with self.session_factory() as db:
            outcome = await db.execute(
                update(EnrichmentJob)
                .where(and_(*conditions))
                .values(
                    status=JobStatus.CANCELLED.value,
                    cancelled_at=now,
                    worker_id=None,
                    locked_at=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            cancelled = outcome.rowcount or 0
            job = await db.get(EnrichmentJob, job_id) if cancelled else None

        if job is not None:
            logger.info("Job %s cancelled", job_id, extra={"job_id": job_id})
            await self._emit(JobEventType.CANCELLED, job, {})
        return cancelled

    # ── Queries ───────────────────────────────────────────────────────────────

    async def get_job_status(self, job_id: str, owner_id: Optional[str] = None) -> Optional[dict[str, Any]]:
        """Job snapshot plus queue position, or None if unknown or owned by someone else."""
        async with self.session_factory() as db:
            job = await db.get(EnrichmentJob, job_id)
        if job is None or (owner_id is not None and job.owner_id != owner_id):
            return None

        status = job.to_dict()
        status["queue_position"] = await self.get_queue_position(job_id)
        return status

    async def list_jobs(
        self,
        owner_id: str,
        status: Optional[JobStatus] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[EnrichmentJob]:
        query = select(EnrichmentJob).where(EnrichmentJob.owner_id == owner_id)
        if status is not None:
            query = query.where(EnrichmentJob.status == JobStatus(status).value)
        query = query.order_by(EnrichmentJob.created_at.desc()).limit(limit).offset(offset)

        async with self.session_factory() as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    async def get_queue_size(self) -> int:
        """Number of queued, processing and retrying jobs."""
        async with self.session_factory() as db:
            count = await db.scalar(
                select(func.count(EnrichmentJob.id)).where(EnrichmentJob.status.in_(_IN_FLIGHT))
            )
        return count or 0

    async def get_queue_position(self, job_id: str) -> Optional[int]:
        """1-based position among waiting jobs, or None if the job is not waiting."""
        async with self.session_factory() as db:
            job = await db.get(EnrichmentJob, job_id)
            if job is None or job.status not in _ELIGIBLE:
                return None

            ahead = await db.scalar(
                select(func.count(EnrichmentJob.id)).where(
                    EnrichmentJob.status.in_(_ELIGIBLE),
                    EnrichmentJob.id != job.id,
                    or_(
                        EnrichmentJob.priority > job.priority,
                        and_(
                            EnrichmentJob.priority == job.priority,
                            EnrichmentJob.created_at < job.created_at,
                        ),
                    ),
                )
            )
        return (ahead or 0) + 1

    async def get_queue_stats(self) -> dict[str, Any]:
        """Counts per status, average processing time and a health verdict."""
        async with self.session_factory() as db:
            rows = await db.execute(
                select(EnrichmentJob.status, func.count(EnrichmentJob.id)).group_by(EnrichmentJob.status)
            )
            counts = {s.value: 0 for s in JobStatus}
            counts.update({status: count for status, count in rows.all()})

            recent = await db.execute(
                select(EnrichmentJob.started_at, EnrichmentJob.completed_at)
                .where(
                    EnrichmentJob.status == JobStatus.COMPLETED.value,
                    EnrichmentJob.started_at.is_not(None),
                    EnrichmentJob.completed_at.is_not(None),
                )
                .order_by(EnrichmentJob.completed_at.desc())
                .limit(_STATS_SAMPLE_SIZE)
            )
            durations = [
                (_as_utc(done) - _as_utc(started)).total_seconds() for started, done in recent.all()
            ]

            oldest = await db.scalar(
                select(func.min(EnrichmentJob.created_at)).where(
                    EnrichmentJob.status == JobStatus.QUEUED.value
                )
            )

        total = sum(counts.values())
        active = counts["queued"] + counts["retrying"] + counts["processing"]
        failure_rate = counts["failed"] / total if total else 0.0

        if failure_rate > 0.5 or active > self.max_queue_size * 0.9:
            health = "critical"
        elif failure_rate > 0.2 or active > self.max_queue_size * 0.7:
            health = "degraded"
        else:
            health = "healthy"

        return {
            "total": total,
            "by_status": counts,
            "queue_size": active,
            "max_queue_size": self.max_queue_size,
            "average_processing_seconds": sum(durations) / len(durations) if durations else 0.0,
            "oldest_queued_at": _as_utc(oldest).isoformat() if oldest else None,
            "health": health,
            "paused": self.is_paused,
        }

    # ── Maintenance ───────────────────────────────────────────────────────────

    async def cleanup(self, retention_days: Optional[int] = None) -> int:
        """Delete completed and cancelled jobs older than the retention window."""
        days = retention_days if retention_days is not None else self.retention_days
        cutoff = datetime.now(UTC) - timedelta(days=days)

        async with self.session_factory() as db:
            result = await db.execute(
                delete(EnrichmentJob)
                .where(
                    or_(
                        and_(
                            EnrichmentJob.status == JobStatus.COMPLETED.value,
                            EnrichmentJob.completed_at < cutoff,
                        ),
                        and_(
                            EnrichmentJob.status == JobStatus.CANCELLED.value,
                            EnrichmentJob.cancelled_at < cutoff,
                        ),
                    )
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        deleted = result.rowcount or 0
        if deleted:
            logger.info("Cleaned up %d finished enrichment jobs older than %d days", deleted, days)
        return deleted

    # ── Internal helpers ──────────────────────────────────────────────────────

    def _build_job(self, owner_id: str, spec: JobSpec, scheduled_for: Optional[datetime]) -> EnrichmentJob:
        config: dict[str, Any] = {"force_refresh": spec.force_refresh}
        if spec.max_retries is not None:
            config["max_retries"] = spec.max_retries
        if spec.retry_delay is not None:
            config["retry_delay"] = spec.retry_delay

        return EnrichmentJob(
            owner_id=owner_id,
            name=spec.name or generate_job_name(spec),
            job_type=spec.job_type.value,
            status=JobStatus.QUEUED.value,
            priority=int(spec.priority),
            config=config,
            source_data=spec.payload.to_dict(),
            progress=JobProgress(total=spec.payload.total_items).to_dict(),
            retry_count=0,
            next_retry_at=_as_utc(scheduled_for),
        )

    async def _emit(self, event_type: JobEventType, job: EnrichmentJob, data: dict[str, Any]) -> None:
        await self.event_bus.emit(
            JobEvent(event_type=event_type, job_id=job.id, owner_id=job.owner_id, data=data)
        )
