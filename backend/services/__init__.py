"""
Service layer for keyword enrichment.
"""

from services.enrichment_queue import EnrichmentQueue, InvalidJobError, QueueError, QueueFullError
from services.enrichment_service import EnrichmentService
from services.enrichment_worker import EnrichmentWorker
from services.integration_service import IntegrationService
from services.job_events import JobEvent, JobEventBus, RedisJobEventPublisher
from services.job_processor import JobProcessor
from services.keyword_bank import KeywordBankService
from services.keyword_records import SqlKeywordRecordRepository
from services.quota_monitor import QuotaMonitor

__all__ = [
    "EnrichmentQueue",
    "EnrichmentService",
    "EnrichmentWorker",
    "IntegrationService",
    "InvalidJobError",
    "JobEvent",
    "JobEventBus",
    "JobProcessor",
    "KeywordBankService",
    "QueueError",
    "QueueFullError",
    "QuotaMonitor",
    "RedisJobEventPublisher",
    "SqlKeywordRecordRepository",
]
