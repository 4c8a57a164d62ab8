"""Keyword bank model: cached provider intelligence per keyword and locale."""
from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin


class KeywordBankEntry(Base, TimestampMixin):
    """One provider result for a normalized (keyword, country, language) tuple.

    Rows with ``is_data_found=False`` are valid negative results and are
    served from cache like any other entry.
    """

    __tablename__ = "keyword_bank"

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    # Normalized: trimmed + lowercase
    keyword: Mapped[str] = mapped_column(String(255), nullable=False)
    country_code: Mapped[str] = mapped_column(String(3), nullable=False)
    language_code: Mapped[str] = mapped_column(String(10), nullable=False, default="en")

    is_data_found: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    volume: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cpc: Mapped[float | None] = mapped_column(Float, nullable=True)
    competition: Mapped[float | None] = mapped_column(Float, nullable=True)
    difficulty: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # {"2024-01-01": 1200, ...} as returned by the provider
    history_trend: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    keyword_intent: Mapped[str | None] = mapped_column(String(20), nullable=True)

    data_updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )

    __table_args__ = (
        UniqueConstraint(
            "keyword",
            "country_code",
            "language_code",
            name="uq_keyword_bank_keyword_locale",
        ),
        Index("ix_keyword_bank_country_language", "country_code", "language_code"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "keyword": self.keyword,
            "country_code": self.country_code,
            "language_code": self.language_code,
            "is_data_found": self.is_data_found,
            "volume": self.volume,
            "cpc": self.cpc,
            "competition": self.competition,
            "difficulty": self.difficulty,
            "history_trend": self.history_trend,
            "keyword_intent": self.keyword_intent,
            "data_updated_at": self.data_updated_at.isoformat() if self.data_updated_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self) -> str:
        return f"<KeywordBankEntry(keyword={self.keyword}, country={self.country_code})>"
