"""
Keyword Enrichment Worker.

Background loop for steady-state enrichment: finds tracked keywords with no
keyword bank linkage, enriches them one at a time and writes the linkage
back. Runs once on start and then on a fixed interval.
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any, Optional

from core.domain.keyword import KeywordRecord
from core.interfaces.repositories import KeywordRecordRepository
from services.enrichment_service import EnrichmentService

logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    """Counters for one worker pass."""

    found: int = 0
    linked: int = 0
    no_data: int = 0
    failed: int = 0
    duration_ms: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class EnrichmentWorker:
    """Polls for unenriched keyword records and enriches them."""

    def __init__(
        self,
        enrichment_service: EnrichmentService,
        records: KeywordRecordRepository,
        batch_limit: int = 50,
        item_delay: float = 0.5,
        interval: int = 3600,
    ):
        self.enrichment_service = enrichment_service
        self.records = records
        self.batch_limit = batch_limit
        self.item_delay = item_delay
        self.interval = interval
        self.is_running = False
        self.is_processing = False
        self.last_run_at: Optional[datetime] = None
        self.last_result: Optional[BatchResult] = None

    async def start(self):
        """Run a batch now, then every ``interval`` seconds until stopped."""
        if self.is_running:
            logger.warning("Enrichment worker is already running")
            return

        self.is_running = True
        logger.info(
            "Enrichment worker started - batch of %d every %d seconds",
            self.batch_limit, self.interval,
        )

        while self.is_running:
            try:
                await self.process_batch()
            except Exception as e:
                logger.error(f"Enrichment worker error: {e}", exc_info=True)

            await asyncio.sleep(self.interval)

    async def stop(self):
        """Stop the worker after the current item."""
        if not self.is_running:
            return

        self.is_running = False
        logger.info("Enrichment worker stopped")

    async def trigger_manual(self) -> Optional[BatchResult]:
        """Run one batch immediately. Returns None if a batch is already in flight."""
        if self.is_processing:
            logger.info("Manual trigger ignored: a batch is already being processed")
            return None
        return await self.process_batch()

    def get_status(self) -> dict[str, Any]:
        return {
            "is_running": self.is_running,
            "is_processing": self.is_processing,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_result": self.last_result.to_dict() if self.last_result else None,
            "batch_limit": self.batch_limit,
            "interval": self.interval,
        }

    async def process_batch(self) -> BatchResult:
        """
        Enrich one batch of unlinked keyword records.

        A record is linked to its keyword bank entry whenever enrichment
        succeeds, including "no data" results, so it is not polled again.
        A failed record is logged, left unlinked and stamped as attempted so
        it moves behind records that have not been tried yet.
        """
        result = BatchResult()
        if self.is_processing:
            return result

        self.is_processing = True
        start = time.monotonic()
        try:
            records = await self.records.find_needing_enrichment(limit=self.batch_limit)
            result.found = len(records)
            if not records:
                logger.debug("No keyword records need enrichment")
                return result

            logger.info(f"Enriching {len(records)} keyword records")

            for index, record in enumerate(records):
                if index and self.item_delay:
                    await asyncio.sleep(self.item_delay)

                try:
                    enriched = await self.enrichment_service.enrich_keyword(
                        record.keyword, record.country_code
                    )
                except Exception as e:
                    logger.error(
                        f"Enrichment raised for keyword record {record.id}: {e}",
                        exc_info=True,
                        extra={"keyword": record.keyword},
                    )
                    result.failed += 1
                    await self._yield_turn(record)
                    continue

                if not enriched.success:
                    logger.warning(
                        "Skipping keyword %r (%s): %s",
                        record.keyword, record.country_code, enriched.error,
                        extra={"keyword": record.keyword, "country_code": record.country_code},
                    )
                    result.failed += 1
                    await self._yield_turn(record)
                    continue

                try:
                    linked = await self.records.link_cache_entry(
                        record.id, enriched.entry_id, datetime.now(UTC)
                    )
                except Exception as e:
                    logger.error(f"Failed to link keyword record {record.id}: {e}", exc_info=True)
                    result.failed += 1
                    continue

                if not linked:
                    result.failed += 1
                elif enriched.data and not enriched.data.get("is_data_found"):
                    result.no_data += 1
                else:
                    result.linked += 1

            return result
        finally:
            result.duration_ms = int((time.monotonic() - start) * 1000)
            self.is_processing = False
            self.last_run_at = datetime.now(UTC)
            self.last_result = result
            if result.found:
                logger.info(
                    "Enrichment batch done: %d linked, %d without data, %d failed",
                    result.linked, result.no_data, result.failed,
                    extra={"duration_ms": result.duration_ms},
                )

    async def _yield_turn(self, record: KeywordRecord) -> None:
        try:
            await self.records.mark_attempted(record.id, datetime.now(UTC))
        except Exception as e:
            logger.error(f"Failed to mark keyword record {record.id} as attempted: {e}", exc_info=True)
