"""
Provider Integration Service.

Owns the provider credential and the soft usage quota: reads settings,
records usage, resets counters on schedule and raises one-shot threshold
alerts. The quota is an advisory ceiling for monitoring, not a billing
ledger.
"""

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adapters.seranking.errors import ErrorType
from core.domain.enrichment import HealthStatus, QuotaStatus, ResetInterval
from core.interfaces.services import KeywordDataProvider
from infrastructure.database.models.integration import IntegrationUsageLog, SiteIntegration

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_NAME = "seranking_keyword_export"
DEFAULT_API_URL = "https://api.seranking.com"


def next_reset_date(interval: Union[ResetInterval, str], now: Optional[datetime] = None) -> datetime:
    """Start of the next quota period: 1st of next month, or next midnight UTC."""
    now = now or datetime.now(UTC)
    if ResetInterval(interval) == ResetInterval.MONTHLY:
        if now.month == 12:
            return datetime(now.year + 1, 1, 1, tzinfo=UTC)
        return datetime(now.year, now.month + 1, 1, tzinfo=UTC)
    tomorrow = now + timedelta(days=1)
    return datetime(tomorrow.year, tomorrow.month, tomorrow.day, tzinfo=UTC)


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


@dataclass
class IntegrationSettings:
    """Provider configuration and quota counters."""

    service_name: str
    api_key: str
    api_url: str
    quota_limit: int
    quota_used: int
    quota_reset_date: datetime
    reset_interval: ResetInterval
    is_active: bool
    configured: bool = True
    owner_id: Optional[str] = None

    def to_dict(self, include_secret: bool = False) -> dict[str, Any]:
        return {
            "service_name": self.service_name,
            "api_key": self.api_key if include_secret else ("***" if self.api_key else ""),
            "api_url": self.api_url,
            "quota_limit": self.quota_limit,
            "quota_used": self.quota_used,
            "quota_reset_date": self.quota_reset_date.isoformat(),
            "reset_interval": self.reset_interval.value,
            "is_active": self.is_active,
            "configured": self.configured,
        }


@dataclass
class QuotaCheck:
    """Whether a number of provider requests fits the remaining quota."""

    allowed: bool
    remaining: int
    reason: Optional[str] = None
    # Set when blocked: authentication for a missing or disabled credential, quota otherwise
    error_type: Optional[ErrorType] = None


@dataclass
class QuotaAlert:
    """A threshold crossing, delivered once per threshold per cycle."""

    level: str  # warning, critical
    percentage: float
    used: int
    limit: int
    triggered_at: datetime


AlertHandler = Callable[[QuotaAlert], Union[Awaitable[None], None]]


class IntegrationService:
    """Quota and credential tracker for the keyword provider."""

    ALERT_WARNING = "warning"
    ALERT_CRITICAL = "critical"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        service_name: str = DEFAULT_SERVICE_NAME,
        default_api_url: str = DEFAULT_API_URL,
        reset_interval: Union[ResetInterval, str] = ResetInterval.MONTHLY,
        warning_threshold: float = 0.8,
        critical_threshold: float = 0.95,
        provider: Optional[KeywordDataProvider] = None,
    ):
        self.session_factory = session_factory
        self.service_name = service_name
        self.default_api_url = default_api_url
        self.reset_interval = ResetInterval(reset_interval)
        self.warning_threshold = warning_threshold
        self.critical_threshold = critical_threshold
        self.provider = provider
        # level -> when the alert fired; cleared once usage drops below warning
        self.active_alerts: dict[str, datetime] = {}
        self._alert_handlers: list[AlertHandler] = []

    def set_provider(self, provider: KeywordDataProvider) -> None:
        self.provider = provider

    def add_alert_handler(self, handler: AlertHandler) -> None:
        self._alert_handlers.append(handler)

    # ── Settings ──────────────────────────────────────────────────────────────

    async def get_settings(self, owner_id: Optional[str] = None) -> IntegrationSettings:
        """
        Current integration settings.

        Returns inert defaults (quota 0, inactive) when the integration has
        not been configured.

        Args:
            owner_id: Requesting user, recorded for audit logging only
        """
        async with self.session_factory() as db:
            row = await self._get_row(db)

        if row is None:
            logger.debug(
                "Integration %s not configured (requested by %s); using defaults",
                self.service_name, owner_id or "system",
            )
            return IntegrationSettings(
                service_name=self.service_name,
                api_key="",
                api_url=self.default_api_url,
                quota_limit=0,
                quota_used=0,
                quota_reset_date=next_reset_date(self.reset_interval),
                reset_interval=self.reset_interval,
                is_active=False,
                configured=False,
            )

        return self._to_settings(row)

    async def get_active_credentials(self) -> Optional[tuple[str, str]]:
        """(api_key, api_url) of an active integration, else None."""
        current = await self.get_settings()
        if not current.is_active or not current.api_key:
            return None
        return current.api_key, current.api_url or self.default_api_url

    async def update_settings(
        self,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        quota_limit: Optional[int] = None,
        reset_interval: Optional[Union[ResetInterval, str]] = None,
        is_active: Optional[bool] = None,
        owner_id: Optional[str] = None,
    ) -> IntegrationSettings:
        """Create or update the integration row with the given fields."""
        async with self.session_factory() as db:
            row = await self._get_row(db)
            if row is None:
                interval = ResetInterval(reset_interval or self.reset_interval)
                row = SiteIntegration(
                    service_name=self.service_name,
                    api_url=self.default_api_url,
                    quota_limit=0,
                    quota_used=0,
                    quota_reset_date=next_reset_date(interval),
                    quota_reset_interval=interval.value,
                    is_active=False,
                )
                db.add(row)

            if api_key is not None:
                row.api_key = api_key
            if api_url is not None:
                row.api_url = api_url
            if quota_limit is not None:
                if quota_limit < 0:
                    raise ValueError("quota_limit must be non-negative")
                row.quota_limit = quota_limit
            if reset_interval is not None:
                row.quota_reset_interval = ResetInterval(reset_interval).value
            if is_active is not None:
                row.is_active = is_active
            if owner_id is not None:
                row.owner_id = owner_id

            await db.commit()
            logger.info("Updated integration settings for %s", self.service_name)
            return self._to_settings(row)

    # ── Usage ─────────────────────────────────────────────────────────────────

    async def record_usage(
        self,
        request_count: int = 1,
        operation_type: str = "keyword_export",
        successful: bool = True,
        response_time_ms: Optional[int] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> bool:
        """
        Add ``request_count`` to the quota counter and append a usage log.

        The counter is incremented read-then-write, so concurrent workers can
        lose an increment. This is accepted: the quota is a soft monitoring
        ceiling, not a billing ledger.

        Returns:
            False when there is no configured integration to record against
        """
        now = datetime.now(UTC)
        async with self.session_factory() as db:
            row = await self._get_row(db)
            if row is None:
                logger.warning("Cannot record usage: integration %s not configured", self.service_name)
                return False

            row.quota_used = row.quota_used + request_count
            db.add(
                IntegrationUsageLog(
                    service_name=self.service_name,
                    operation_type=operation_type,
                    request_count=request_count,
                    successful_requests=request_count if successful else 0,
                    failed_requests=0 if successful else request_count,
                    response_time_ms=response_time_ms,
                    log_metadata=metadata,
                    usage_date=now.date(),
                    created_at=now,
                )
            )
            await db.commit()

        await self.check_quota_thresholds()
        return True

    async def reset_usage(self) -> bool:
        """Zero the counter and move the reset date to the next period."""
        async with self.session_factory() as db:
            row = await self._get_row(db)
            if row is None:
                return False
            row.quota_used = 0
            row.quota_reset_date = next_reset_date(row.quota_reset_interval)
            await db.commit()
            reset_date = row.quota_reset_date

        self.active_alerts.clear()
        logger.info("Reset quota usage for %s; next reset %s", self.service_name, reset_date.isoformat())
        return True

    async def check_auto_reset(self) -> bool:
        """Reset usage if the reset date has passed. Returns True when a reset ran."""
        current = await self.get_settings()
        if not current.configured:
            return False
        if datetime.now(UTC) >= _as_utc(current.quota_reset_date):
            await self.reset_usage()
            logger.info("Auto-reset quota for %s", self.service_name)
            return True
        return False

    # ── Quota ─────────────────────────────────────────────────────────────────

    async def get_quota_status(self) -> QuotaStatus:
        current = await self.get_settings()
        return self._quota_from_settings(current)

    async def check_quota_available(self, request_count: int = 1) -> QuotaCheck:
        """Whether ``request_count`` provider requests may be issued now."""
        current = await self.get_settings()
        quota = self._quota_from_settings(current)

        if not current.configured:
            return QuotaCheck(
                allowed=False,
                remaining=quota.remaining,
                reason="Integration is not configured",
                error_type=ErrorType.AUTHENTICATION_ERROR,
            )
        if not current.is_active:
            return QuotaCheck(
                allowed=False,
                remaining=quota.remaining,
                reason="Integration is not active",
                error_type=ErrorType.AUTHENTICATION_ERROR,
            )
        if not current.api_key:
            return QuotaCheck(
                allowed=False,
                remaining=quota.remaining,
                reason="Integration has no API key",
                error_type=ErrorType.AUTHENTICATION_ERROR,
            )
        if quota.remaining < request_count:
            return QuotaCheck(
                allowed=False,
                remaining=quota.remaining,
                error_type=ErrorType.QUOTA_EXCEEDED_ERROR,
                reason=(
                    f"Insufficient quota: {quota.remaining} remaining, "
                    f"{request_count} requested (resets {quota.reset_date.isoformat()})"
                ),
            )
        return QuotaCheck(allowed=True, remaining=quota.remaining)

    async def check_quota_thresholds(self) -> Optional[QuotaAlert]:
        """
        Fire a one-shot alert when usage crosses the warning or critical line.

        Returns:
            The alert fired by this call, if any
        """
        quota = await self.get_quota_status()
        if quota.limit <= 0:
            return None

        level = None
        if quota.percentage >= self.critical_threshold:
            level = self.ALERT_CRITICAL
        elif quota.percentage >= self.warning_threshold:
            level = self.ALERT_WARNING
        else:
            self.active_alerts.clear()
            return None

        if level in self.active_alerts:
            return None

        alert = QuotaAlert(
            level=level,
            percentage=quota.percentage,
            used=quota.used,
            limit=quota.limit,
            triggered_at=datetime.now(UTC),
        )
        self.active_alerts[level] = alert.triggered_at

        message = "%s: %s quota usage at %d%% (%d/%d)"
        args = (level.upper(), self.service_name, round(quota.percentage * 100), quota.used, quota.limit)
        if level == self.ALERT_CRITICAL:
            logger.error(message, *args)
        else:
            logger.warning(message, *args)

        for handler in self._alert_handlers:
            try:
                outcome = handler(alert)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.error(f"Quota alert handler failed: {e}", exc_info=True)
        return alert

    # ── Reporting & health ────────────────────────────────────────────────────

    async def get_usage_report(self, period: str = "monthly") -> dict[str, Any]:
        """Aggregate usage logs for the last day, week or month."""
        end = datetime.now(UTC)
        if period == "daily":
            start = end.replace(hour=0, minute=0, second=0, microsecond=0)
        elif period == "weekly":
            start = end - timedelta(days=7)
        elif period == "monthly":
            start = end - timedelta(days=30)
        else:
            raise ValueError(f"Unknown report period: {period}")

        async with self.session_factory() as db:
            result = await db.execute(
                select(IntegrationUsageLog)
                .where(
                    IntegrationUsageLog.service_name == self.service_name,
                    IntegrationUsageLog.created_at >= start,
                    IntegrationUsageLog.created_at <= end,
                )
                .order_by(IntegrationUsageLog.created_at.asc())
                .limit(10000)
            )
            logs = list(result.scalars().all())

        total = sum(log.request_count for log in logs)
        successful = sum(log.successful_requests for log in logs)
        failed = sum(log.failed_requests for log in logs)

        daily: dict[str, dict[str, int]] = {}
        operations: dict[str, dict[str, Any]] = {}
        for log in logs:
            day = daily.setdefault(log.usage_date.isoformat(), {"requests": 0, "successful": 0})
            day["requests"] += log.request_count
            day["successful"] += log.successful_requests

            op = operations.setdefault(
                log.operation_type,
                {"requests": 0, "successful": 0, "response_ms": 0, "timed": 0},
            )
            op["requests"] += log.request_count
            op["successful"] += log.successful_requests
            if log.response_time_ms:
                op["response_ms"] += log.response_time_ms
                op["timed"] += 1

        def _rate(ok: int, count: int) -> float:
            return round(ok / count * 100, 2) if count else 0.0

        peak_day, peak_count = "", 0
        for date_key, data in daily.items():
            if data["requests"] > peak_count:
                peak_day, peak_count = date_key, data["requests"]

        quota = await self.get_quota_status()
        return {
            "period": {"start": start.isoformat(), "end": end.isoformat(), "type": period},
            "total_requests": total,
            "successful_requests": successful,
            "failed_requests": failed,
            "success_rate": _rate(successful, total),
            "quota_usage": {
                "used": quota.used,
                "limit": quota.limit,
                "percentage": round(quota.percentage * 100, 2),
                "remaining": quota.remaining,
            },
            "daily_breakdown": [
                {"date": key, "requests": data["requests"], "success_rate": _rate(data["successful"], data["requests"])}
                for key, data in daily.items()
            ],
            "operation_breakdown": {
                name: {
                    "requests": data["requests"],
                    "success_rate": _rate(data["successful"], data["requests"]),
                    "avg_response_time": round(data["response_ms"] / data["timed"]) if data["timed"] else 0,
                }
                for name, data in operations.items()
            },
            "peak_usage_day": peak_day,
            "peak_usage_count": peak_count,
        }

    async def test_integration(self) -> dict[str, Any]:
        """Check the provider and persist the health outcome."""
        if self.provider is None:
            raise RuntimeError("No keyword data provider attached to the integration service")

        health = await self.provider.test_connection()
        async with self.session_factory() as db:
            row = await self._get_row(db)
            if row is not None:
                row.health_status = health["status"]
                row.last_health_check = datetime.now(UTC)
                await db.commit()

        if health["status"] != HealthStatus.HEALTHY.value:
            logger.warning("Integration %s health: %s", self.service_name, health["status"])
        return health

    # ── Internal helpers ──────────────────────────────────────────────────────

    async def _get_row(self, db: AsyncSession) -> Optional[SiteIntegration]:
        result = await db.execute(
            select(SiteIntegration).where(SiteIntegration.service_name == self.service_name)
        )
        return result.scalar_one_or_none()

    def _to_settings(self, row: SiteIntegration) -> IntegrationSettings:
        return IntegrationSettings(
            service_name=row.service_name,
            api_key=row.api_key or "",
            api_url=row.api_url or self.default_api_url,
            quota_limit=row.quota_limit or 0,
            quota_used=row.quota_used or 0,
            quota_reset_date=_as_utc(row.quota_reset_date),
            reset_interval=ResetInterval(row.quota_reset_interval),
            is_active=bool(row.is_active),
            owner_id=row.owner_id,
        )

    def _quota_from_settings(self, current: IntegrationSettings) -> QuotaStatus:
        used, limit = current.quota_used, current.quota_limit
        if limit > 0:
            percentage = used / limit
        else:
            # No quota configured: nothing may be spent
            percentage = 1.0
        return QuotaStatus(
            used=used,
            limit=limit,
            remaining=max(0, limit - used),
            percentage=round(percentage, 4),
            approaching_limit=percentage >= self.warning_threshold,
            exceeded=percentage >= 1.0,
            reset_date=current.quota_reset_date,
        )
