"""
Provider integration settings and usage log models.
"""

from datetime import date, datetime
from uuid import uuid4

from sqlalchemy import JSON, Boolean, Date, DateTime, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin


class SiteIntegration(Base, TimestampMixin):
    """Credential and quota counters for one external provider."""

    __tablename__ = "site_integrations"

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    owner_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    service_name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    api_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    api_url: Mapped[str] = mapped_column(String(500), nullable=False)

    quota_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    quota_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    quota_reset_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    quota_reset_interval: Mapped[str] = mapped_column(String(10), nullable=False, default="monthly")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    health_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    last_health_check: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<SiteIntegration(service={self.service_name}, used={self.quota_used}/{self.quota_limit})>"


class IntegrationUsageLog(Base):
    """Append-only record of provider calls, aggregated by usage reports."""

    __tablename__ = "integration_usage_logs"

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    service_name: Mapped[str] = mapped_column(String(100), nullable=False)
    operation_type: Mapped[str] = mapped_column(String(50), nullable=False, default="keyword_export")
    request_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    successful_requests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_requests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    log_metadata: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    usage_date: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_integration_usage_logs_service_created", "service_name", "created_at"),
    )
