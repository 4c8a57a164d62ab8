"""Repository interfaces for data access."""

from abc import ABC, abstractmethod
from datetime import datetime

from ..domain.keyword import KeywordRecord


class KeywordRecordRepository(ABC):
    """Access to tracked keyword records owned by the surrounding application."""

    @abstractmethod
    async def find_needing_enrichment(self, limit: int = 50) -> list[KeywordRecord]:
        """Active records without a keyword bank linkage."""
        ...

    @abstractmethod
    async def link_cache_entry(
        self,
        record_id: str,
        entry_id: str | None,
        updated_at: datetime,
    ) -> bool:
        """Write the keyword bank reference back onto a record."""
        ...

    @abstractmethod
    async def mark_attempted(self, record_id: str, attempted_at: datetime) -> bool:
        """Stamp a failed attempt on an unlinked record so it yields its turn."""
        ...
