"""
SQL access to tracked keyword records for the enrichment worker.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.domain.keyword import KeywordRecord
from core.interfaces.repositories import KeywordRecordRepository
from infrastructure.database.models.keyword import TrackedKeyword

logger = logging.getLogger(__name__)


def _to_record(row: TrackedKeyword) -> KeywordRecord:
    return KeywordRecord(
        id=row.id,
        owner_id=row.owner_id,
        keyword=row.keyword,
        country_code=(row.country_code or "").lower(),
        keyword_bank_id=row.keyword_bank_id,
        intelligence_updated_at=row.intelligence_updated_at,
    )


class SqlKeywordRecordRepository(KeywordRecordRepository):
    """``KeywordRecordRepository`` over the ``tracked_keywords`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def find_needing_enrichment(self, limit: int = 50) -> list[KeywordRecord]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(TrackedKeyword)
                .where(
                    TrackedKeyword.is_active.is_(True),
                    TrackedKeyword.keyword_bank_id.is_(None),
                )
                # Never-attempted records first, then the least recently attempted
                .order_by(
                    TrackedKeyword.intelligence_updated_at.asc().nulls_first(),
                    TrackedKeyword.created_at.asc(),
                )
                .limit(limit)
            )
            return [_to_record(row) for row in result.scalars().all()]

    async def link_cache_entry(
        self,
        record_id: str,
        entry_id: Optional[str],
        updated_at: datetime,
    ) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                update(TrackedKeyword)
                .where(TrackedKeyword.id == record_id)
                .values(keyword_bank_id=entry_id, intelligence_updated_at=updated_at)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        if not result.rowcount:
            logger.warning("Keyword record %s not found while linking intelligence", record_id)
            return False
        return True

    async def mark_attempted(self, record_id: str, attempted_at: datetime) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                update(TrackedKeyword)
                .where(TrackedKeyword.id == record_id, TrackedKeyword.keyword_bank_id.is_(None))
                .values(intelligence_updated_at=attempted_at)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        return bool(result.rowcount)
