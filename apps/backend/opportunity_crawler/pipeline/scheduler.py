"""
Recurring sweep that queues due crawl sources and cleans old jobs.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from opportunity_crawler.pipeline.crawl_queue import CrawlQueueService, utcnow

logger = logging.getLogger(__name__)

SCHEDULER_INTERVAL_SECONDS = 300
CLEANUP_INTERVAL = timedelta(hours=24)
MAX_CONSECUTIVE_ERRORS = 5


class CrawlScheduler:
    """Background scheduler loop for the crawl queues"""

    def __init__(
        self,
        service: CrawlQueueService,
        interval_seconds: int = SCHEDULER_INTERVAL_SECONDS,
        disabled: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.service = service
        self.interval_seconds = interval_seconds
        self.disabled = disabled
        self.clock = clock
        self.running = False
        self.last_cleanup_at: Optional[datetime] = None
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    async def run_once(self) -> Dict:
        """One sweep: daily job cleanup, then queue every due source."""
        now = self.clock()
        result: Dict = {"queued": 0, "cleanup": None}

        if self.last_cleanup_at is None or now - self.last_cleanup_at >= CLEANUP_INTERVAL:
            try:
                result["cleanup"] = await self.service.cleanup_jobs()
                self.last_cleanup_at = now
                logger.info(f"[scheduler] Cleanup result: {result['cleanup']}")
            except Exception as e:
                logger.error(f"[scheduler] Cleanup error: {e}")

        result["queued"] = await self.service.schedule_due_sources(now)
        return result

    async def scheduler_loop(self):
        logger.info("[scheduler] Scheduler started")
        consecutive_errors = 0

        while self.running:
            try:
                await self.run_once()
                consecutive_errors = 0
            except Exception as e:
                consecutive_errors += 1
                logger.error(f"[scheduler] Scheduler error: {e}", exc_info=True)
                if consecutive_errors >= MAX_CONSECUTIVE_ERRORS:
                    logger.error("[scheduler] Too many consecutive errors, backing off")
                    consecutive_errors = 0
                    await self._sleep(self.interval_seconds * 2)
                    continue

            await self._sleep(self.interval_seconds)

        logger.info("[scheduler] Scheduler stopped")

    async def _sleep(self, seconds: float):
        """Sleep between sweeps, waking early when stop() is called"""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def start(self):
        if self.disabled:
            logger.info("[scheduler] Scheduler disabled by CRAWL_DISABLE_SCHEDULER")
            return
        if self.running:
            return
        self.running = True
        self._stopping.clear()
        self._task = asyncio.create_task(self.scheduler_loop())
        logger.info("[scheduler] Scheduler task created")

    async def stop(self):
        """Let the current sweep finish, then end the loop"""
        if self._task is None:
            self.running = False
            return
        logger.info("[scheduler] Scheduler stopping...")
        self.running = False
        self._stopping.set()
        await self._task
        self._task = None
