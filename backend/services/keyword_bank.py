"""
Keyword Bank Service.

Durable cache of provider intelligence keyed by the normalized
(keyword, country, language) tuple. Decides which keywords can be served
from cache and which need a provider call.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import and_, delete, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adapters.seranking.request_builder import KeywordData
from core.domain.enrichment import KeywordIntent
from infrastructure.database.models.keyword_bank import KeywordBankEntry

logger = logging.getLogger(__name__)

DEFAULT_LANGUAGE = "en"

# Checked in order; first match wins
_INTENT_PATTERNS = [
    (
        KeywordIntent.COMMERCIAL,
        re.compile(r"\b(buy|purchase|order|shop|store|price|cost|cheap|deal|discount|sale)\b"),
    ),
    (
        KeywordIntent.INFORMATIONAL,
        re.compile(r"\b(how|what|why|when|where|guide|tutorial|learn|tips|help|advice)\b"),
    ),
    (
        KeywordIntent.NAVIGATIONAL,
        re.compile(r"\b(login|sign in|account|website|official|homepage)\b"),
    ),
    (
        KeywordIntent.TRANSACTIONAL,
        re.compile(r"\b(download|subscribe|register|signup|trial|demo|quote|contact)\b"),
    ),
]

_UPSERT_COLUMNS = (
    "is_data_found",
    "volume",
    "cpc",
    "competition",
    "difficulty",
    "history_trend",
    "keyword_intent",
    "data_updated_at",
    "updated_at",
)


def normalize_keyword(keyword: str) -> str:
    return keyword.strip().lower()


def normalize_locale(country_code: str, language_code: Optional[str] = None) -> tuple[str, str]:
    return country_code.strip().lower(), (language_code or DEFAULT_LANGUAGE).strip().lower()


def classify_intent(keyword: str, is_data_found: bool) -> Optional[KeywordIntent]:
    """
    Infer search intent from keyword wording.

    Returns None when the provider had no data for the keyword.
    """
    if not is_data_found or not keyword:
        return None

    text = keyword.lower()
    for intent, pattern in _INTENT_PATTERNS:
        if pattern.search(text):
            return intent

    return KeywordIntent.INFORMATIONAL if len(text.split()) >= 3 else KeywordIntent.COMMERCIAL


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything stored is UTC
    return value if value.tzinfo else value.replace(tzinfo=UTC)


@dataclass
class CacheCheckResult:
    """Cache policy decision for a keyword list."""

    missing: list[str] = field(default_factory=list)
    stale: list[str] = field(default_factory=list)
    fresh: list[KeywordBankEntry] = field(default_factory=list)
    total: int = 0

    @property
    def hit_rate(self) -> float:
        if not self.total:
            return 0.0
        return (len(self.fresh) + len(self.stale)) / self.total

    @property
    def needs_api_call(self) -> bool:
        return bool(self.missing or self.stale)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_keywords": self.total,
            "missing": list(self.missing),
            "stale": list(self.stale),
            "fresh": [entry.keyword for entry in self.fresh],
            "hit_rate": round(self.hit_rate, 4),
            "needs_api_call": self.needs_api_call,
        }


@dataclass
class KeywordBankQuery:
    """Filters for browsing the keyword bank."""

    keyword_contains: Optional[str] = None
    country_code: Optional[str] = None
    language_code: Optional[str] = None
    is_data_found: Optional[bool] = None
    intent: Optional[KeywordIntent] = None
    min_volume: Optional[int] = None
    max_volume: Optional[int] = None
    min_difficulty: Optional[int] = None
    max_difficulty: Optional[int] = None
    limit: int = 50
    offset: int = 0


class KeywordBankService:
    """Cache store for keyword intelligence."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        freshness_days: int = 7,
    ):
        self.session_factory = session_factory
        self.freshness_days = freshness_days

    # ── Lookups ───────────────────────────────────────────────────────────────

    async def get(
        self,
        keyword: str,
        country_code: str,
        language_code: str = DEFAULT_LANGUAGE,
    ) -> Optional[KeywordBankEntry]:
        """
        Look up one cached entry.

        A store failure is logged and reported as a miss.
        """
        country, language = normalize_locale(country_code, language_code)
        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    select(KeywordBankEntry).where(
                        KeywordBankEntry.keyword == normalize_keyword(keyword),
                        KeywordBankEntry.country_code == country,
                        KeywordBankEntry.language_code == language,
                    )
                )
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Keyword bank lookup failed for '%s': %s", keyword, e)
            return None

    async def get_batch(
        self,
        keywords: list[str],
        country_code: str,
        language_code: str = DEFAULT_LANGUAGE,
    ) -> list[KeywordBankEntry]:
        """
        Fetch every cached entry for ``keywords`` in one query.

        Raises:
            SQLAlchemyError: Store unavailable
        """
        normalized = sorted({normalize_keyword(k) for k in keywords if k and k.strip()})
        if not normalized:
            return []
        country, language = normalize_locale(country_code, language_code)

        async with self.session_factory() as db:
            return await self._select_batch(db, normalized, country, language)

    async def check_freshness(
        self,
        keywords: list[str],
        country_code: str,
        language_code: str = DEFAULT_LANGUAGE,
        freshness_days: Optional[int] = None,
    ) -> CacheCheckResult:
        """
        Split ``keywords`` into missing, stale and fresh.

        An entry is stale once ``data_updated_at`` is at or before
        ``now - freshness_days``. When the store is unavailable every keyword
        is reported missing so the caller falls back to the provider.
        """
        normalized = list(dict.fromkeys(normalize_keyword(k) for k in keywords if k and k.strip()))
        window = timedelta(days=self.freshness_days if freshness_days is None else freshness_days)
        cutoff = datetime.now(UTC) - window

        try:
            entries = await self.get_batch(normalized, country_code, language_code)
        except SQLAlchemyError as e:
            logger.error("Keyword bank freshness check failed, treating as cache miss: %s", e)
            return CacheCheckResult(missing=normalized, total=len(normalized))

        by_keyword = {entry.keyword: entry for entry in entries}
        result = CacheCheckResult(total=len(normalized))
        for keyword in normalized:
            entry = by_keyword.get(keyword)
            if entry is None:
                result.missing.append(keyword)
            elif _as_utc(entry.data_updated_at) <= cutoff:
                result.stale.append(keyword)
            else:
                result.fresh.append(entry)

        logger.debug(
            "Cache check (%s/%s): %d fresh, %d stale, %d missing",
            country_code, language_code, len(result.fresh), len(result.stale), len(result.missing),
        )
        return result

    # ── Writes ────────────────────────────────────────────────────────────────

    async def upsert(
        self,
        data: KeywordData,
        country_code: str,
        language_code: str = DEFAULT_LANGUAGE,
        keyword: Optional[str] = None,
    ) -> KeywordBankEntry:
        """
        Store one provider result, replacing any entry for the same tuple.

        Args:
            data: Provider result (negative results are stored too)
            country_code: Locale country
            language_code: Locale language
            keyword: Key to store under; defaults to ``data.keyword``

        Returns:
            The stored entry
        """
        entries = await self.upsert_many([(keyword or data.keyword, data)], country_code, language_code)
        return entries[0]

    async def upsert_many(
        self,
        items: list[tuple[str, KeywordData]],
        country_code: str,
        language_code: str = DEFAULT_LANGUAGE,
    ) -> list[KeywordBankEntry]:
        """
        Store several (keyword, result) pairs sharing one locale.

        Later pairs for the same keyword win.
        """
        country, language = normalize_locale(country_code, language_code)
        now = datetime.now(UTC)

        rows: dict[str, dict[str, Any]] = {}
        for keyword, data in items:
            key = normalize_keyword(keyword)
            intent = classify_intent(data.keyword or key, data.is_data_found)
            rows[key] = {
                "id": str(uuid4()),
                "keyword": key,
                "country_code": country,
                "language_code": language,
                "is_data_found": data.is_data_found,
                "volume": data.volume,
                "cpc": data.cpc,
                "competition": data.competition,
                "difficulty": data.difficulty,
                "history_trend": data.history_trend,
                "keyword_intent": intent.value if intent else None,
                "data_updated_at": now,
                "created_at": now,
                "updated_at": now,
            }
        if not rows:
            return []

        async with self.session_factory() as db:
            insert = _dialect_insert(db)
            stmt = insert(KeywordBankEntry).values(list(rows.values()))
            stmt = stmt.on_conflict_do_update(
                index_elements=["keyword", "country_code", "language_code"],
                set_={column: getattr(stmt.excluded, column) for column in _UPSERT_COLUMNS},
            )
            await db.execute(stmt)
            await db.commit()

            entries = await self._select_batch(db, sorted(rows), country, language)

        order = {key: index for index, key in enumerate(rows)}
        entries.sort(key=lambda entry: order.get(entry.keyword, len(order)))
        logger.info("Upserted %d keyword bank entries (%s/%s)", len(entries), country, language)
        return entries

    async def cleanup_stale(self, older_than_days: int = 30) -> int:
        """Delete entries whose data is older than ``older_than_days``."""
        cutoff = datetime.now(UTC) - timedelta(days=older_than_days)
        async with self.session_factory() as db:
            result = await db.execute(
                delete(KeywordBankEntry).where(KeywordBankEntry.data_updated_at < cutoff)
            )
            await db.commit()

        deleted = result.rowcount or 0
        if deleted:
            logger.info("Removed %d keyword bank entries older than %d days", deleted, older_than_days)
        return deleted

    # ── Maintenance & reporting ───────────────────────────────────────────────

    async def get_stale_keywords(
        self,
        older_than_days: Optional[int] = None,
        limit: int = 100,
        country_code: Optional[str] = None,
        language_code: Optional[str] = None,
    ) -> list[KeywordBankEntry]:
        """Oldest entries first, for cache refresh jobs."""
        days = self.freshness_days if older_than_days is None else older_than_days
        cutoff = datetime.now(UTC) - timedelta(days=days)

        stmt = select(KeywordBankEntry).where(KeywordBankEntry.data_updated_at <= cutoff)
        if country_code:
            stmt = stmt.where(KeywordBankEntry.country_code == country_code.lower())
        if language_code:
            stmt = stmt.where(KeywordBankEntry.language_code == language_code.lower())
        stmt = stmt.order_by(KeywordBankEntry.data_updated_at.asc()).limit(limit)

        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def get_stats(self) -> dict[str, int]:
        """Entry counts: total, with/without data, fresh/stale."""
        cutoff = datetime.now(UTC) - timedelta(days=self.freshness_days)
        async with self.session_factory() as db:
            total = await db.scalar(select(func.count(KeywordBankEntry.id))) or 0
            with_data = await db.scalar(
                select(func.count(KeywordBankEntry.id)).where(KeywordBankEntry.is_data_found.is_(True))
            ) or 0
            fresh = await db.scalar(
                select(func.count(KeywordBankEntry.id)).where(KeywordBankEntry.data_updated_at > cutoff)
            ) or 0

        return {
            "total": total,
            "with_data": with_data,
            "without_data": total - with_data,
            "fresh": fresh,
            "stale": total - fresh,
        }

    async def query(self, filters: KeywordBankQuery) -> tuple[list[KeywordBankEntry], int]:
        """
        Browse entries with optional filters.

        Returns:
            Tuple of (entries, total matching count)
        """
        conditions = []
        if filters.keyword_contains:
            conditions.append(KeywordBankEntry.keyword.contains(normalize_keyword(filters.keyword_contains)))
        if filters.country_code:
            conditions.append(KeywordBankEntry.country_code == filters.country_code.lower())
        if filters.language_code:
            conditions.append(KeywordBankEntry.language_code == filters.language_code.lower())
        if filters.is_data_found is not None:
            conditions.append(KeywordBankEntry.is_data_found.is_(filters.is_data_found))
        if filters.intent is not None:
            conditions.append(KeywordBankEntry.keyword_intent == filters.intent.value)
        if filters.min_volume is not None:
            conditions.append(KeywordBankEntry.volume >= filters.min_volume)
        if filters.max_volume is not None:
            conditions.append(KeywordBankEntry.volume <= filters.max_volume)
        if filters.min_difficulty is not None:
            conditions.append(KeywordBankEntry.difficulty >= filters.min_difficulty)
        if filters.max_difficulty is not None:
            conditions.append(KeywordBankEntry.difficulty <= filters.max_difficulty)

        where = and_(*conditions) if conditions else None
        stmt = select(KeywordBankEntry)
        count_stmt = select(func.count(KeywordBankEntry.id))
        if where is not None:
            stmt = stmt.where(where)
            count_stmt = count_stmt.where(where)
        stmt = (
            stmt.order_by(KeywordBankEntry.volume.desc().nulls_last(), KeywordBankEntry.keyword)
            .offset(filters.offset)
            .limit(filters.limit)
        )

        async with self.session_factory() as db:
            total = await db.scalar(count_stmt) or 0
            result = await db.execute(stmt)
            return list(result.scalars().all()), total

    # ── Internal helpers ──────────────────────────────────────────────────────

    @staticmethod
    async def _select_batch(
        db: AsyncSession,
        keywords: list[str],
        country: str,
        language: str,
    ) -> list[KeywordBankEntry]:
        result = await db.execute(
            select(KeywordBankEntry).where(
                KeywordBankEntry.keyword.in_(keywords),
                KeywordBankEntry.country_code == country,
                KeywordBankEntry.language_code == language,
            )
        )
        return list(result.scalars().all())


def _dialect_insert(db: AsyncSession):
    """Dialect-specific INSERT supporting ON CONFLICT DO UPDATE."""
    if db.bind.dialect.name == "sqlite":
        return sqlite.insert
    return postgresql.insert
