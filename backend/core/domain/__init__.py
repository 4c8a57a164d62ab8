# Domain Entities
# Pure business objects with no external dependencies
from .enrichment import (
    BulkEnrichmentPayload,
    BulkEnrichmentResult,
    CacheRefreshPayload,
    DataSource,
    EnrichmentResult,
    HealthStatus,
    JobEventType,
    JobPayload,
    JobPriority,
    JobProgress,
    JobSpec,
    JobStatus,
    JobType,
    KeywordIntent,
    QuotaStatus,
    ResetInterval,
    SingleKeywordPayload,
    payload_from_dict,
)
from .keyword import KeywordRecord

__all__ = [
    "JobType",
    "JobStatus",
    "JobPriority",
    "JobEventType",
    "JobSpec",
    "JobPayload",
    "JobProgress",
    "SingleKeywordPayload",
    "BulkEnrichmentPayload",
    "CacheRefreshPayload",
    "payload_from_dict",
    "KeywordIntent",
    "DataSource",
    "ResetInterval",
    "HealthStatus",
    "EnrichmentResult",
    "BulkEnrichmentResult",
    "QuotaStatus",
    "KeywordRecord",
]
