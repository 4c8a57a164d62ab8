"""
Enrichment job queue models.
"""

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin


class EnrichmentJob(Base, TimestampMixin):
    """A durable unit of keyword enrichment work.

    A job is claimed by exactly one worker through a conditional update on
    ``locked_at IS NULL``; ``worker_id``/``locked_at`` are cleared whenever the
    job leaves ``processing``.
    """

    __tablename__ = "enrichment_jobs"

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    job_type: Mapped[str] = mapped_column(String(32), nullable=False)
    # queued, processing, retrying, completed, failed, cancelled
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="queued")
    # Higher value is served first (see JobPriority)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5)

    # Job options: retry_delay, max_retries, force_refresh, batch_size
    config: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    # Serialized payload variant, discriminated by job_type
    source_data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    # total, processed, successful, failed, skipped, started_at, estimated_completion_at
    progress: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    result: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    worker_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        # Dequeue scan: eligible status, priority desc, oldest first
        Index("ix_enrichment_jobs_dequeue", "status", "priority", "created_at"),
        Index("ix_enrichment_jobs_owner_status", "owner_id", "status"),
    )

    def to_dict(self) -> dict[str, Any]:
        def _iso(value: datetime | None) -> str | None:
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "job_type": self.job_type,
            "status": self.status,
            "priority": self.priority,
            "config": self.config,
            "source_data": self.source_data,
            "progress": self.progress,
            "result": self.result,
            "error_message": self.error_message,
            "retry_count": self.retry_count,
            "last_retry_at": _iso(self.last_retry_at),
            "next_retry_at": _iso(self.next_retry_at),
            "worker_id": self.worker_id,
            "locked_at": _iso(self.locked_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "cancelled_at": _iso(self.cancelled_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self) -> str:
        return f"<EnrichmentJob(id={self.id}, type={self.job_type}, status={self.status})>"
