"""
Enrichment Job Processor.

Claims jobs from the ``EnrichmentQueue`` and runs them through the
``EnrichmentService``, up to ``max_concurrent_jobs`` at a time.
"""

import asyncio
import logging
import os
import socket
import time
from typing import Any, Optional
from uuid import uuid4

from core.domain.enrichment import (
    DEFAULT_REFRESH_ESTIMATE,
    BulkEnrichmentPayload,
    BulkEnrichmentResult,
    CacheRefreshPayload,
    JobPayload,
    JobStatus,
    SingleKeywordPayload,
    payload_from_dict,
)
from infrastructure.database.models.enrichment_job import EnrichmentJob
from services.enrichment_queue import EnrichmentQueue
from services.enrichment_service import EnrichmentService

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:8]}"


class JobProcessor:
    """Runs queued enrichment jobs."""

    def __init__(
        self,
        queue: EnrichmentQueue,
        enrichment_service: EnrichmentService,
        worker_id: Optional[str] = None,
        max_concurrent_jobs: int = 3,
        batch_size: int = 25,
        poll_interval: float = 5.0,
    ):
        self.queue = queue
        self.enrichment_service = enrichment_service
        self.worker_id = worker_id or default_worker_id()
        self.max_concurrent_jobs = max_concurrent_jobs
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self.is_running = False
        self.jobs_processed = 0
        self.jobs_failed = 0
        self._active: set[asyncio.Task] = set()

    async def start(self):
        """Poll the queue and keep up to ``max_concurrent_jobs`` jobs running."""
        if self.is_running:
            logger.warning("Job processor is already running")
            return

        self.is_running = True
        logger.info(
            "Job processor %s started - %d slots, polling every %.1f seconds",
            self.worker_id, self.max_concurrent_jobs, self.poll_interval,
        )

        while self.is_running:
            try:
                await self._fill_slots()
            except Exception as e:
                logger.error(f"Job processor error: {e}", exc_info=True)

            await asyncio.sleep(self.poll_interval)

    async def stop(self, drain: bool = True):
        """Stop polling; with ``drain`` wait for running jobs to finish."""
        if not self.is_running:
            return

        self.is_running = False
        if drain and self._active:
            logger.info("Waiting for %d running jobs to finish", len(self._active))
            await asyncio.gather(*self._active, return_exceptions=True)
        logger.info("Job processor %s stopped", self.worker_id)

    def get_status(self) -> dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "is_running": self.is_running,
            "active_jobs": len(self._active),
            "max_concurrent_jobs": self.max_concurrent_jobs,
            "jobs_processed": self.jobs_processed,
            "jobs_failed": self.jobs_failed,
        }

    async def process_next(self) -> bool:
        """Claim and run one job inline. Returns False when nothing was claimed."""
        job = await self.queue.dequeue(self.worker_id)
        if job is None:
            return False
        await self.process_job(job)
        return True

    async def process_job(self, job: EnrichmentJob) -> None:
        """Run one claimed job and record its outcome on the queue."""
        start = time.monotonic()
        try:
            payload = payload_from_dict(job.job_type, job.source_data or {})
        except ValueError as e:
            logger.error("Job %s has an invalid payload: %s", job.id, e, extra={"job_id": job.id})
            await self.queue.fail(job.id, f"Invalid payload: {e}", should_retry=False)
            self.jobs_failed += 1
            return

        force_refresh = bool((job.config or {}).get("force_refresh", False))
        try:
            outcome = await self._dispatch(job, payload, force_refresh)
        except Exception as e:
            logger.error(f"Job {job.id} raised: {e}", exc_info=True, extra={"job_id": job.id})
            await self.queue.fail(job.id, str(e), should_retry=True)
            self.jobs_failed += 1
            return

        await self._finish(job, outcome, int((time.monotonic() - start) * 1000))

    # ── Internal helpers ──────────────────────────────────────────────────────

    async def _fill_slots(self) -> None:
        while self.is_running and len(self._active) < self.max_concurrent_jobs:
            job = await self.queue.dequeue(self.worker_id)
            if job is None:
                return
            task = asyncio.create_task(self._run_guarded(job), name=f"enrichment-job-{job.id}")
            self._active.add(task)
            task.add_done_callback(self._active.discard)

    async def _run_guarded(self, job: EnrichmentJob) -> None:
        try:
            await self.process_job(job)
        except Exception as e:
            logger.error(f"Unhandled error in job {job.id}: {e}", exc_info=True, extra={"job_id": job.id})

    async def _dispatch(self, job: EnrichmentJob, payload: JobPayload, force_refresh: bool) -> BulkEnrichmentResult:
        match payload:
            case SingleKeywordPayload(keyword=keyword, country_code=country, language_code=language):
                result = await self.enrichment_service.enrich_keyword(keyword, country, force_refresh, language)
                outcome = BulkEnrichmentResult(results=[result])
                await self._report_progress(job.id, outcome, total=1)
                return outcome
            case BulkEnrichmentPayload(keywords=keywords, country_code=country, language_code=language):
                return await self._run_bulk(job, list(keywords), country, language, force_refresh)
            case CacheRefreshPayload(filter_criteria=criteria):
                outcome = await self.enrichment_service.refresh_stale(
                    limit=criteria.get("limit") or DEFAULT_REFRESH_ESTIMATE,
                    older_than_days=criteria.get("older_than_days"),
                    country_code=criteria.get("country_code"),
                    language_code=criteria.get("language_code"),
                )
                await self._report_progress(job.id, outcome, total=len(outcome.results))
                return outcome

    async def _run_bulk(
        self,
        job: EnrichmentJob,
        keywords: list[str],
        country: str,
        language: str,
        force_refresh: bool,
    ) -> BulkEnrichmentResult:
        combined = BulkEnrichmentResult()
        for offset in range(0, len(keywords), self.batch_size):
            if offset and await self._is_cancelled(job.id):
                logger.info("Job %s was cancelled, stopping after %d keywords", job.id, offset)
                break

            chunk = keywords[offset:offset + self.batch_size]
            outcome = await self.enrichment_service.enrich_bulk(chunk, country, force_refresh, language)
            combined.results.extend(outcome.results)
            await self._report_progress(job.id, combined, total=len(keywords))

        return combined

    async def _report_progress(self, job_id: str, outcome: BulkEnrichmentResult, total: int) -> None:
        await self.queue.update_progress(
            job_id,
            {
                "total": total,
                "processed": len(outcome.results),
                "successful": outcome.successful,
                "failed": outcome.failed,
            },
        )

    async def _is_cancelled(self, job_id: str) -> bool:
        status = await self.queue.get_job_status(job_id)
        return status is None or status["status"] == JobStatus.CANCELLED.value

    async def _finish(self, job: EnrichmentJob, outcome: BulkEnrichmentResult, duration_ms: int) -> None:
        summary = outcome.summary()
        log_extra = {"job_id": job.id, "worker_id": self.worker_id, "duration_ms": duration_ms}

        if outcome.has_retryable_failure:
            errors = sorted({r.error_type or "unknown" for r in outcome.results if not r.success and r.retryable})
            await self.queue.fail(
                job.id,
                f"{summary['failed']} of {summary['total']} keywords failed with retryable errors ({', '.join(errors)})",
                should_retry=True,
            )
            self.jobs_failed += 1
            return

        if outcome.results and outcome.successful == 0:
            first_error = next(r.error for r in outcome.results if not r.success)
            await self.queue.fail(job.id, first_error or "All keywords failed", should_retry=False)
            self.jobs_failed += 1
            return

        result = {
            "summary": summary,
            "results": [r.to_dict() for r in outcome.results],
        }
        if await self.queue.complete(job.id, result):
            self.jobs_processed += 1
            logger.info(
                "Job %s finished: %d successful, %d failed (%d from cache)",
                job.id, summary["successful"], summary["failed"], summary["from_cache"],
                extra=log_extra,
            )
