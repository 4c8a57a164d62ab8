"""Keyword Intelligence Pipeline - process entry point and composition root."""

import asyncio
import logging
import signal
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from adapters.seranking import (
    CircuitBreaker,
    CircuitBreakerConfig,
    RateLimiter,
    SeRankingAdapter,
    create_rate_limiter,
)
from infrastructure.config import Settings, get_settings
from infrastructure.database import close_db, create_engine_from_settings, create_session_factory, init_db
from infrastructure.logging_config import setup_logging
from services.enrichment_queue import EnrichmentQueue
from services.enrichment_service import EnrichmentService
from services.enrichment_worker import EnrichmentWorker
from services.integration_service import IntegrationService
from services.job_events import JobEventBus, RedisJobEventPublisher
from services.job_processor import JobProcessor
from services.keyword_bank import KeywordBankService
from services.keyword_records import SqlKeywordRecordRepository
from services.quota_monitor import QuotaMonitor

logger = logging.getLogger(__name__)


@dataclass
class Pipeline:
    """Every long-lived component, wired once per process."""

    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    rate_limiter: RateLimiter
    integration_service: IntegrationService
    provider: SeRankingAdapter
    keyword_bank: KeywordBankService
    enrichment_service: EnrichmentService
    event_bus: JobEventBus
    event_publisher: Optional[RedisJobEventPublisher]
    queue: EnrichmentQueue
    processor: JobProcessor
    worker: EnrichmentWorker
    quota_monitor: QuotaMonitor


def build_pipeline(config: Optional[Settings] = None, engine: Optional[AsyncEngine] = None) -> Pipeline:
    """Construct the pipeline from settings. Nothing is started or connected."""
    config = config or get_settings()
    engine = engine or create_engine_from_settings(config)
    session_factory = create_session_factory(engine)

    rate_limiter = create_rate_limiter(
        requests_per_minute=config.rate_limit_per_minute,
        requests_per_hour=config.rate_limit_per_hour,
        requests_per_day=config.rate_limit_per_day,
        max_wait_seconds=config.rate_limit_max_wait,
    )

    integration_service = IntegrationService(
        session_factory,
        service_name=config.seranking_service_name,
        default_api_url=config.seranking_api_url,
        reset_interval=config.quota_reset_interval,
        warning_threshold=config.quota_warning_threshold,
        critical_threshold=config.quota_critical_threshold,
    )

    circuit_breaker = CircuitBreaker(
        CircuitBreakerConfig(
            failure_threshold=config.seranking_circuit_failure_threshold,
            recovery_timeout=config.seranking_circuit_recovery_timeout,
        )
    )

    provider = SeRankingAdapter(
        credential_loader=integration_service.get_active_credentials,
        rate_limiter=rate_limiter,
        circuit_breaker=circuit_breaker,
        timeout=config.seranking_timeout,
        retry_attempts=config.seranking_retry_attempts,
        retry_delay=config.seranking_retry_delay,
        max_backoff=config.seranking_max_backoff,
        max_retry_after=config.seranking_max_retry_after,
        credential_ttl=config.seranking_credential_ttl,
        health_ttl=config.seranking_health_ttl,
    )
    integration_service.set_provider(provider)

    keyword_bank = KeywordBankService(session_factory, freshness_days=config.cache_freshness_days)
    # A chunk must fit the tightest rate window or the limiter rejects it outright
    enrichment_service = EnrichmentService(
        keyword_bank,
        provider,
        integration_service,
        chunk_size=rate_limiter.max_request_count,
    )

    event_bus = JobEventBus()
    event_publisher = None
    if config.redis_url:
        event_publisher = RedisJobEventPublisher(config.redis_url, channel=config.job_events_channel)
        event_bus.subscribe(event_publisher)

    queue = EnrichmentQueue(
        session_factory,
        event_bus=event_bus,
        max_queue_size=config.queue_max_size,
        max_retries=config.queue_max_retries,
        retry_delay=config.queue_retry_delay,
        retry_multiplier=config.queue_retry_multiplier,
        retention_days=config.queue_retention_days,
        processing_timeout=config.queue_processing_timeout,
    )
    processor = JobProcessor(
        queue,
        enrichment_service,
        max_concurrent_jobs=config.queue_max_concurrent_jobs,
        batch_size=config.queue_batch_size,
        poll_interval=config.queue_poll_interval,
    )
    worker = EnrichmentWorker(
        enrichment_service,
        SqlKeywordRecordRepository(session_factory),
        batch_limit=config.worker_batch_limit,
        item_delay=config.worker_item_delay,
        interval=config.worker_interval,
    )
    quota_monitor = QuotaMonitor(integration_service, check_interval=config.quota_check_interval)

    return Pipeline(
        settings=config,
        engine=engine,
        session_factory=session_factory,
        rate_limiter=rate_limiter,
        integration_service=integration_service,
        provider=provider,
        keyword_bank=keyword_bank,
        enrichment_service=enrichment_service,
        event_bus=event_bus,
        event_publisher=event_publisher,
        queue=queue,
        processor=processor,
        worker=worker,
        quota_monitor=quota_monitor,
    )


async def _periodic(name: str, interval: float, action: Callable[[], Awaitable[int]], run_first: bool = False):
    """Run ``action`` every ``interval`` seconds, logging failures and continuing."""
    if not run_first:
        await asyncio.sleep(interval)
    while True:
        try:
            affected = await action()
            if affected:
                logger.info("%s: %d rows affected", name, affected)
        except Exception as e:
            logger.warning("%s failed: %s", name, e, exc_info=True)
        await asyncio.sleep(interval)


async def run(config: Optional[Settings] = None) -> None:
    """Start every background loop and block until SIGINT/SIGTERM."""
    config = config or get_settings()
    setup_logging(json_output=config.log_json or config.is_production, level=config.log_level)

    logger.info("Starting %s v%s", config.app_name, config.app_version)
    logger.info("Environment: %s", config.environment)

    pipeline = build_pipeline(config)

    if config.environment == "development":
        logger.info("Development mode - initializing database...")
        await init_db(pipeline.engine)

    # Jobs locked by a process that died before this start go back to the queue
    released = await pipeline.queue.release_stale_locks()
    if released:
        logger.warning("Recovered %d jobs left processing by a previous run", released)

    if pipeline.event_publisher:
        logger.info("Connecting to Redis for job events...")
        await pipeline.event_publisher.connect()

    tasks = [
        asyncio.create_task(pipeline.worker.start(), name="enrichment-worker"),
        asyncio.create_task(pipeline.processor.start(), name="job-processor"),
        asyncio.create_task(pipeline.quota_monitor.start(), name="quota-monitor"),
        asyncio.create_task(
            _periodic("Job cleanup", config.queue_cleanup_interval, pipeline.queue.cleanup),
            name="job-cleanup",
        ),
        asyncio.create_task(
            _periodic(
                "Stale lock release",
                config.queue_processing_timeout,
                pipeline.queue.release_stale_locks,
            ),
            name="stale-lock-release",
        ),
        asyncio.create_task(
            _periodic(
                "Keyword bank cleanup",
                config.cache_cleanup_interval,
                lambda: pipeline.keyword_bank.cleanup_stale(config.cache_cleanup_days),
                run_first=True,
            ),
            name="keyword-bank-cleanup",
        ),
    ]

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            pass

    logger.info("Pipeline started successfully!")
    await stop_event.wait()

    # Shutdown
    logger.info("Shutting down...")
    await pipeline.worker.stop()
    await pipeline.quota_monitor.stop()

    # Wait up to 30 s for in-flight jobs; unfinished ones are recovered by the stale lock sweep
    try:
        await asyncio.wait_for(pipeline.processor.stop(), timeout=30.0)
    except TimeoutError:
        logger.warning("Timed out waiting for running jobs to finish")

    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)

    if pipeline.event_publisher:
        await pipeline.event_publisher.disconnect()

    await close_db(pipeline.engine)
    logger.info("Shutdown complete")


def cli() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    cli()
