"""
Keyword Enrichment Service.

Orchestrates one lookup: consult the keyword bank, and only on a miss or
stale entry spend quota and a rate-limited provider call, then cache the
result. Every call returns an ``EnrichmentResult`` envelope; errors are
classified, never raised.
"""

import logging
import time
from collections import defaultdict
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from adapters.seranking.errors import ErrorType, SeRankingError
from adapters.seranking.request_builder import (
    MAX_KEYWORD_LENGTH,
    MAX_KEYWORDS_PER_REQUEST,
    KeywordData,
)
from core.domain.enrichment import BulkEnrichmentResult, DataSource, EnrichmentResult
from core.interfaces.services import KeywordDataProvider
from services.integration_service import IntegrationService
from services.keyword_bank import (
    DEFAULT_LANGUAGE,
    KeywordBankService,
    normalize_keyword,
    normalize_locale,
)

logger = logging.getLogger(__name__)


def _failure(keyword: str, error_type: ErrorType, message: str, retryable: bool) -> EnrichmentResult:
    return EnrichmentResult(
        keyword=keyword,
        success=False,
        error=message,
        error_type=error_type.value,
        retryable=retryable,
    )


def _chunks(items: list[str], size: int) -> list[list[str]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class EnrichmentService:
    """Cache-first keyword enrichment with quota and rate limit gating."""

    def __init__(
        self,
        keyword_bank: KeywordBankService,
        provider: KeywordDataProvider,
        integration_service: IntegrationService,
        chunk_size: int = MAX_KEYWORDS_PER_REQUEST,
    ):
        self.keyword_bank = keyword_bank
        self.provider = provider
        self.integration_service = integration_service
        self.chunk_size = max(1, min(chunk_size, MAX_KEYWORDS_PER_REQUEST))

    async def enrich_keyword(
        self,
        keyword: str,
        country_code: str,
        force_refresh: bool = False,
        language_code: str = DEFAULT_LANGUAGE,
    ) -> EnrichmentResult:
        """
        Enrich a single keyword.

        Args:
            keyword: Raw keyword as entered by the user
            country_code: ISO2 country for the provider database
            force_refresh: Skip the cache and always call the provider
            language_code: Locale language

        Returns:
            EnrichmentResult with ``source`` cache or api on success
        """
        normalized = normalize_keyword(keyword or "")
        if not normalized:
            return _failure(keyword, ErrorType.INVALID_REQUEST_ERROR, "Keyword is empty", retryable=False)

        bulk = await self.enrich_bulk([normalized], country_code, force_refresh, language_code)
        return bulk.results[0]

    async def enrich_bulk(
        self,
        keywords: list[str],
        country_code: str,
        force_refresh: bool = False,
        language_code: str = DEFAULT_LANGUAGE,
    ) -> BulkEnrichmentResult:
        """
        Enrich many keywords sharing one locale.

        Fresh entries are served from cache. Only the missing and stale
        subset is sent to the provider, in chunks of at most ``chunk_size``
        (never more than 100) per call.
        A failing chunk marks only its own keywords as failed.
        """
        ordered = list(dict.fromkeys(normalize_keyword(k) for k in keywords if k and k.strip()))
        if not ordered:
            return BulkEnrichmentResult()
        country, language = normalize_locale(country_code, language_code)

        results: dict[str, EnrichmentResult] = {}
        if force_refresh:
            to_fetch = ordered
        else:
            cache = await self.keyword_bank.check_freshness(ordered, country, language)
            for entry in cache.fresh:
                results[entry.keyword] = EnrichmentResult(
                    keyword=entry.keyword,
                    success=True,
                    data=entry.to_dict(),
                    source=DataSource.CACHE,
                )
            to_fetch = [k for k in ordered if k not in results]
            if results:
                logger.debug("Served %d keywords from cache (%s)", len(results), country)

        for keyword in [k for k in to_fetch if len(k) > MAX_KEYWORD_LENGTH]:
            results[keyword] = _failure(
                keyword,
                ErrorType.INVALID_REQUEST_ERROR,
                f"Keyword exceeds {MAX_KEYWORD_LENGTH} characters",
                retryable=False,
            )
        to_fetch = [k for k in to_fetch if k not in results]

        for chunk in _chunks(to_fetch, self.chunk_size):
            for result in await self._fetch_chunk(chunk, country, language):
                results[result.keyword] = result

        return BulkEnrichmentResult(results=[results[k] for k in ordered])

    async def refresh_stale(
        self,
        limit: int = 100,
        older_than_days: Optional[int] = None,
        country_code: Optional[str] = None,
        language_code: Optional[str] = None,
    ) -> BulkEnrichmentResult:
        """Re-fetch the oldest cached entries, grouped by locale."""
        try:
            stale = await self.keyword_bank.get_stale_keywords(
                older_than_days=older_than_days,
                limit=limit,
                country_code=country_code,
                language_code=language_code,
            )
        except SQLAlchemyError as e:
            logger.error("Could not load stale keywords: %s", e)
            return BulkEnrichmentResult()

        groups: dict[tuple[str, str], list[str]] = defaultdict(list)
        for entry in stale:
            groups[(entry.country_code, entry.language_code)].append(entry.keyword)

        combined = BulkEnrichmentResult()
        for (country, language), group in groups.items():
            outcome = await self.enrich_bulk(group, country, force_refresh=True, language_code=language)
            combined.results.extend(outcome.results)

        logger.info("Refreshed %d stale keyword bank entries", combined.successful)
        return combined

    # ── Internal helpers ──────────────────────────────────────────────────────

    async def _fetch_chunk(self, chunk: list[str], country: str, language: str) -> list[EnrichmentResult]:
        """Quota check, provider call, cache write and usage record for one chunk."""
        try:
            quota = await self.integration_service.check_quota_available(len(chunk))
        except SQLAlchemyError as e:
            logger.error("Quota check failed: %s", e)
            return [_failure(k, ErrorType.UNKNOWN_ERROR, f"Quota check failed: {e}", True) for k in chunk]

        if not quota.allowed:
            logger.warning("Skipping provider call for %d keywords: %s", len(chunk), quota.reason)
            error_type = quota.error_type or ErrorType.QUOTA_EXCEEDED_ERROR
            return [_failure(k, error_type, quota.reason or "Quota exceeded", False) for k in chunk]

        start = time.monotonic()
        try:
            fetched = await self.provider.fetch_keyword_data(chunk, country)
        except SeRankingError as e:
            logger.warning(
                "Provider call failed for %d keywords (%s, retryable=%s): %s",
                len(chunk), e.error_type.value, e.retryable, e.message,
            )
            return [_failure(k, e.error_type, e.message, e.retryable) for k in chunk]
        except Exception as e:
            logger.error(f"Unexpected provider failure: {e}", exc_info=True)
            return [_failure(k, ErrorType.UNKNOWN_ERROR, str(e), False) for k in chunk]
        elapsed_ms = int((time.monotonic() - start) * 1000)

        by_keyword = {normalize_keyword(item.keyword): item for item in fetched if item.keyword}
        # Keywords the provider left out are cached as "no data found"
        pairs = [
            (k, by_keyword.get(k) or KeywordData(keyword=k, is_data_found=False))
            for k in chunk
        ]

        try:
            entries = await self.keyword_bank.upsert_many(pairs, country, language)
            await self.integration_service.record_usage(
                len(chunk),
                response_time_ms=elapsed_ms,
                metadata={"country_code": country, "keywords": len(chunk)},
            )
        except SQLAlchemyError as e:
            logger.error("Failed to store provider results for %d keywords: %s", len(chunk), e)
            return [_failure(k, ErrorType.UNKNOWN_ERROR, f"Storage failed: {e}", True) for k in chunk]

        stored = {entry.keyword: entry for entry in entries}
        results = []
        for keyword in chunk:
            entry = stored.get(keyword)
            if entry is None:
                results.append(_failure(keyword, ErrorType.UNKNOWN_ERROR, "Result was not stored", True))
            else:
                results.append(
                    EnrichmentResult(keyword=keyword, success=True, data=entry.to_dict(), source=DataSource.API)
                )
        return results
