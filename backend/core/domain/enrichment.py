"""Keyword enrichment domain entities."""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, ClassVar, Optional, Union


class JobType(str, Enum):
    """Kinds of enrichment work, each with its own payload shape."""
    SINGLE_KEYWORD = "single_keyword"
    BULK_ENRICHMENT = "bulk_enrichment"
    CACHE_REFRESH = "cache_refresh"


class JobStatus(str, Enum):
    """Enrichment job lifecycle status."""
    QUEUED = "queued"
    PROCESSING = "processing"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
# Statuses counted against the queue capacity
IN_FLIGHT_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.PROCESSING, JobStatus.RETRYING})


class JobPriority(IntEnum):
    """Dequeue priority; higher values are served first."""
    LOW = 1
    NORMAL = 5
    HIGH = 10

    @classmethod
    def parse(cls, value: Union[str, int, "JobPriority", None]) -> "JobPriority":
        if value is None:
            return cls.NORMAL
        if isinstance(value, str):
            try:
                return cls[value.upper()]
            except KeyError:
                raise ValueError(f"Unknown job priority: {value!r}") from None
        return cls(value)


class JobEventType(str, Enum):
    """Notifications emitted by the job queue."""
    CREATED = "created"
    STARTED = "started"
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"
    CANCELLED = "cancelled"


class KeywordIntent(str, Enum):
    """Search intent inferred from keyword wording."""
    COMMERCIAL = "commercial"
    INFORMATIONAL = "informational"
    NAVIGATIONAL = "navigational"
    TRANSACTIONAL = "transactional"


class DataSource(str, Enum):
    """Where an enrichment result was served from."""
    CACHE = "cache"
    API = "api"


class ResetInterval(str, Enum):
    """How often provider quota usage resets."""
    DAILY = "daily"
    MONTHLY = "monthly"


class HealthStatus(str, Enum):
    """Provider connectivity health."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


# ── Job payloads ──────────────────────────────────────────────────────────────

# Used as the item count of a cache refresh job when no limit is given
DEFAULT_REFRESH_ESTIMATE = 100


def _require_str(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"'{key}' is required")
    return value.strip()


@dataclass(frozen=True)
class SingleKeywordPayload:
    """Enrich one keyword for one locale."""

    job_type: ClassVar[JobType] = JobType.SINGLE_KEYWORD

    keyword: str
    country_code: str
    language_code: str = "en"

    @property
    def total_items(self) -> int:
        return 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "keyword": self.keyword,
            "country_code": self.country_code,
            "language_code": self.language_code,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SingleKeywordPayload":
        return cls(
            keyword=_require_str(data, "keyword"),
            country_code=_require_str(data, "country_code").lower(),
            language_code=(data.get("language_code") or "en").lower(),
        )


@dataclass(frozen=True)
class BulkEnrichmentPayload:
    """Enrich a list of keywords sharing one locale."""

    job_type: ClassVar[JobType] = JobType.BULK_ENRICHMENT

    keywords: tuple[str, ...]
    country_code: str
    language_code: str = "en"

    @property
    def total_items(self) -> int:
        return len(self.keywords)

    def to_dict(self) -> dict[str, Any]:
        return {
            "keywords": list(self.keywords),
            "country_code": self.country_code,
            "language_code": self.language_code,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BulkEnrichmentPayload":
        keywords = data.get("keywords")
        if not isinstance(keywords, (list, tuple)) or not keywords:
            raise ValueError("'keywords' must be a non-empty list")
        cleaned = tuple(k.strip() for k in keywords if isinstance(k, str) and k.strip())
        if not cleaned:
            raise ValueError("'keywords' contains no usable keyword")
        return cls(
            keywords=cleaned,
            country_code=_require_str(data, "country_code").lower(),
            language_code=(data.get("language_code") or "en").lower(),
        )


@dataclass(frozen=True)
class CacheRefreshPayload:
    """Re-fetch stale keyword bank entries matching ``filter_criteria``.

    Recognised criteria: ``older_than_days``, ``limit``, ``country_code``,
    ``language_code``.
    """

    job_type: ClassVar[JobType] = JobType.CACHE_REFRESH

    filter_criteria: dict[str, Any]

    @property
    def total_items(self) -> int:
        return int(self.filter_criteria.get("limit") or DEFAULT_REFRESH_ESTIMATE)

    def to_dict(self) -> dict[str, Any]:
        return {"filter_criteria": dict(self.filter_criteria)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CacheRefreshPayload":
        criteria = data.get("filter_criteria")
        if not isinstance(criteria, dict):
            raise ValueError("'filter_criteria' is required")
        return cls(filter_criteria=dict(criteria))


JobPayload = Union[SingleKeywordPayload, BulkEnrichmentPayload, CacheRefreshPayload]


def payload_from_dict(job_type: Union[JobType, str], data: dict[str, Any]) -> JobPayload:
    """Rebuild the payload variant for ``job_type``.

    Raises:
        ValueError: Unknown job type or malformed payload
    """
    match JobType(job_type):
        case JobType.SINGLE_KEYWORD:
            return SingleKeywordPayload.from_dict(data)
        case JobType.BULK_ENRICHMENT:
            return BulkEnrichmentPayload.from_dict(data)
        case JobType.CACHE_REFRESH:
            return CacheRefreshPayload.from_dict(data)


@dataclass
class JobSpec:
    """Everything needed to enqueue an enrichment job."""

    payload: JobPayload
    priority: JobPriority = JobPriority.NORMAL
    name: Optional[str] = None
    force_refresh: bool = False
    max_retries: Optional[int] = None
    retry_delay: Optional[int] = None  # seconds

    @property
    def job_type(self) -> JobType:
        return self.payload.job_type


@dataclass
class JobProgress:
    """Progress counters stored on a job row."""

    total: int = 0
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    started_at: Optional[datetime] = None
    estimated_completion_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "estimated_completion_at": (
                self.estimated_completion_at.isoformat() if self.estimated_completion_at else None
            ),
        }

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "JobProgress":
        data = data or {}

        def _dt(value: Any) -> Optional[datetime]:
            return datetime.fromisoformat(value) if value else None

        return cls(
            total=int(data.get("total", 0)),
            processed=int(data.get("processed", 0)),
            successful=int(data.get("successful", 0)),
            failed=int(data.get("failed", 0)),
            skipped=int(data.get("skipped", 0)),
            started_at=_dt(data.get("started_at")),
            estimated_completion_at=_dt(data.get("estimated_completion_at")),
        )


# ── Results ───────────────────────────────────────────────────────────────────


@dataclass
class EnrichmentResult:
    """Uniform success/error envelope returned for every keyword lookup."""

    keyword: str
    success: bool
    data: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    retryable: bool = False
    source: Optional[DataSource] = None

    @property
    def entry_id(self) -> Optional[str]:
        return self.data.get("id") if self.data else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "keyword": self.keyword,
            "success": self.success,
            "data": self.data,
            "error": {"type": self.error_type, "message": self.error, "retryable": self.retryable}
            if not self.success
            else None,
            "metadata": {"source": self.source.value if self.source else None},
        }


@dataclass
class BulkEnrichmentResult:
    """Per-keyword results of a bulk lookup plus a summary."""

    results: list[EnrichmentResult] = field(default_factory=list)

    @property
    def successful(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def from_cache(self) -> int:
        return sum(1 for r in self.results if r.success and r.source == DataSource.CACHE)

    @property
    def from_api(self) -> int:
        return sum(1 for r in self.results if r.success and r.source == DataSource.API)

    @property
    def has_retryable_failure(self) -> bool:
        return any(not r.success and r.retryable for r in self.results)

    def summary(self) -> dict[str, int]:
        return {
            "total": len(self.results),
            "successful": self.successful,
            "failed": self.failed,
            "from_cache": self.from_cache,
            "from_api": self.from_api,
        }


@dataclass
class QuotaStatus:
    """Provider quota usage snapshot."""

    used: int
    limit: int
    remaining: int
    percentage: float
    approaching_limit: bool
    exceeded: bool
    reset_date: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "used": self.used,
            "limit": self.limit,
            "remaining": self.remaining,
            "percentage": self.percentage,
            "approaching_limit": self.approaching_limit,
            "exceeded": self.exceeded,
            "reset_date": self.reset_date.isoformat() if self.reset_date else None,
        }
