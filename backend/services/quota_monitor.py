"""
Quota Monitor.

Background loop that resets provider quota usage once its reset date has
passed and re-evaluates usage thresholds.
"""

import asyncio
import logging

from services.integration_service import IntegrationService

logger = logging.getLogger(__name__)


class QuotaMonitor:
    """Periodic auto-reset sweep for the provider quota."""

    def __init__(self, integration_service: IntegrationService, check_interval: int = 3600):
        self.integration_service = integration_service
        self.check_interval = check_interval
        self.is_running = False

    async def start(self):
        """Start the monitor loop; returns when stopped."""
        if self.is_running:
            logger.warning("Quota monitor is already running")
            return

        self.is_running = True
        logger.info("Quota monitor started - checking every %d seconds", self.check_interval)

        while self.is_running:
            await self.run_once()
            await asyncio.sleep(self.check_interval)

    async def stop(self):
        """Stop the monitor."""
        if not self.is_running:
            return

        self.is_running = False
        logger.info("Quota monitor stopped")

    async def run_once(self) -> bool:
        """One sweep. Returns True when usage was reset."""
        try:
            was_reset = await self.integration_service.check_auto_reset()
            await self.integration_service.check_quota_thresholds()
            return was_reset
        except Exception as e:
            logger.error(f"Quota monitor error: {e}", exc_info=True)
            return False
