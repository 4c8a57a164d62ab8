"""Tracked keyword records owned by the surrounding application."""
from datetime import datetime
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin


class TrackedKeyword(Base, TimestampMixin):
    """A user's tracked keyword.

    Creation and deletion happen elsewhere; the enrichment pipeline only
    writes ``keyword_bank_id`` and ``intelligence_updated_at``.
    """

    __tablename__ = "tracked_keywords"

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    keyword: Mapped[str] = mapped_column(String(255), nullable=False)
    # ISO 3166-1 alpha-2, lowercase
    country_code: Mapped[str] = mapped_column(String(3), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    keyword_bank_id: Mapped[str | None] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("keyword_bank.id", ondelete="SET NULL"),
        nullable=True,
    )
    intelligence_updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    __table_args__ = (
        Index("ix_tracked_keywords_unenriched", "is_active", "keyword_bank_id"),
    )

    def __repr__(self) -> str:
        return f"<TrackedKeyword(keyword={self.keyword}, country={self.country_code})>"
