"""
Crawl queue service.

Two queues drive the pipeline:
- listing-crawl: scrape a source's listing page, cache the entries, then
  either enqueue one detail job per entry or write drafts straight from the
  listing (``is_details_crawled``).
- details-crawl: read the cached listing batch, scrape one detail page and
  materialize its draft.

Listing jobs own the CrawlSource state machine:
INACTIVE/ERROR -> ACTIVE -> INACTIVE on success, ERROR on failure.
"""

import asyncio
import base64
import json
import logging
import random
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from opportunity_crawler.core.cache import KVStore
from opportunity_crawler.core.errors import (
    CacheMissError,
    ListingCrawlError,
    LLMResponseError,
    SourceInactiveError,
    SourceNotFoundError,
)
from opportunity_crawler.crawler.scrapers.base import BaseScraper
from opportunity_crawler.crawler.scrapers.registry import ScraperRegistry
from opportunity_crawler.models import CrawlSourceStatus, ListingEntry, frequency_interval
from opportunity_crawler.pipeline.job_store import Job, JobOptions, JobState, JobStore, MemoryJobStore
from opportunity_crawler.pipeline.materializer import DraftMaterializer
from opportunity_crawler.pipeline.queue import JobQueue

logger = logging.getLogger(__name__)

LISTING_QUEUE = "listing-crawl"
DETAILS_QUEUE = "details-crawl"
LISTING_JOB = "crawl-listing"
DETAILS_JOB = "crawl-details"

# Lower runs first
PRIORITY_MANUAL = 1
PRIORITY_BULK = 5
PRIORITY_SCHEDULED = 10
PRIORITY_DETAILS = 5

CACHE_TTL_HOURS = 24
STALE_CACHE_HOURS = 23
ERROR_MESSAGE_LIMIT = 500
MAX_DETAIL_DELAY_SECONDS = 5.0
MAX_SCHEDULE_JITTER_SECONDS = 30.0
BULK_STAGGER_SECONDS = 2.0

COMPLETED_RETENTION = timedelta(days=1)
FAILED_RETENTION = timedelta(days=7)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_cache_key(crawl_source_id: str, url: str) -> str:
    """crawl_listings:{source id}:{last 10 chars of base64(url)}"""
    url_hash = base64.b64encode(url.encode("utf-8")).decode("ascii")[-10:]
    return f"crawl_listings:{crawl_source_id}:{url_hash}"


class DraftBatchResult:
    """Outcome of writing drafts straight from listing entries"""

    def __init__(self):
        self.created = 0
        self.errors: List[Dict[str, str]] = []

    def add_error(self, opportunity_id: str, error: BaseException):
        self.errors.append({"opportunity_id": opportunity_id, "error": str(error)})

    def to_dict(self) -> Dict:
        return {"created": self.created, "errors": self.errors}

    def __repr__(self):
        return f"DraftBatchResult(created={self.created}, errors={len(self.errors)})"


class CrawlQueueService:
    """Listing and detail crawl queues plus the source state machine"""

    def __init__(
        self,
        repository,
        registry: ScraperRegistry,
        cache: KVStore,
        materializer: Optional[DraftMaterializer] = None,
        listing_store: Optional[JobStore] = None,
        details_store: Optional[JobStore] = None,
        listing_concurrency: int = 5,
        details_concurrency: int = 10,
        job_attempts: int = 3,
        backoff_seconds: float = 2.0,
        max_detail_delay: float = MAX_DETAIL_DELAY_SECONDS,
        max_schedule_jitter: float = MAX_SCHEDULE_JITTER_SECONDS,
        clock: Callable[[], datetime] = utcnow,
        rng: Optional[random.Random] = None,
    ):
        self.repository = repository
        self.registry = registry
        self.cache = cache
        self.materializer = materializer or DraftMaterializer(repository, registry)
        self.job_attempts = job_attempts
        self.backoff_seconds = backoff_seconds
        self.max_detail_delay = max_detail_delay
        self.max_schedule_jitter = max_schedule_jitter
        self.clock = clock
        self.rng = rng or random.Random()

        self.listing_queue = JobQueue(
            LISTING_QUEUE,
            listing_store or MemoryJobStore(),
            concurrency=listing_concurrency,
            default_options=self._options(PRIORITY_SCHEDULED),
        )
        self.details_queue = JobQueue(
            DETAILS_QUEUE,
            details_store or MemoryJobStore(),
            concurrency=details_concurrency,
            default_options=self._options(PRIORITY_DETAILS),
        )

        self.listing_queue.process(LISTING_JOB, self.process_listing_crawl)
        self.details_queue.process(DETAILS_JOB, self.process_details_crawl)
        self.listing_queue.on_failed(self._on_failed("Listing"))
        self.details_queue.on_failed(self._on_failed("Details"))

    def _options(self, priority: int, delay: float = 0.0) -> JobOptions:
        return JobOptions(
            priority=priority,
            delay=delay,
            attempts=self.job_attempts,
            backoff=self.backoff_seconds,
        )

    @staticmethod
    def _on_failed(label: str):
        def listener(job: Job, error: BaseException):
            logger.error(f"[crawl_queue] {label} job failed: job_id={job.id} error={error}")
        return listener

    # Job processors

    async def process_listing_crawl(self, job: Job) -> Dict[str, Any]:
        data = job.data
        crawl_source_id = data["crawl_source_id"]
        url = data["url"]
        scraper_type = data["scraper_type"]

        try:
            source = await self._get_source(crawl_source_id)
            await self.repository.mark_source_active(crawl_source_id, self.clock())

            scraper = self.registry.get(scraper_type)
            result = await scraper.scrape_listing(url)

            if not result.success or not result.entries:
                if result.errors:
                    raise ListingCrawlError(
                        f"Crawl failed: {', '.join(result.errors)}", retryable=result.retryable
                    )
                raise ListingCrawlError("No opportunities found")

            cache_key = build_cache_key(crawl_source_id, url)
            await self._cache_listings(cache_key, result.entries, crawl_source_id, url, source)

            summary: Dict[str, Any] = {"total_found": result.total_found}
            if source.get("is_details_crawled"):
                summary["details_queued"] = await self._queue_details_jobs(
                    result.entries, crawl_source_id, scraper_type, cache_key
                )
            else:
                batch = await self.create_drafts_from_listings(result.entries, crawl_source_id, scraper)
                summary["drafts_created"] = batch.created
                summary["draft_errors"] = batch.errors

            now = self.clock()
            next_crawl_at = now + frequency_interval(source.get("frequency"))
            await self.repository.mark_source_success(crawl_source_id, result.total_found, next_crawl_at, now)

            logger.info(
                f"[crawl_queue] Listing crawl completed: {result.total_found} opportunities "
                f"(source={crawl_source_id}, next crawl {next_crawl_at.isoformat()})"
            )
            return summary
        except Exception as e:
            logger.error(f"[crawl_queue] Listing crawl failed: {url} (source={crawl_source_id}): {e}")
            await self._mark_error(crawl_source_id, str(e))
            raise

    async def process_details_crawl(self, job: Job) -> Dict[str, Any]:
        data = job.data
        crawl_source_id = data["crawl_source_id"]
        opportunity_id = data["opportunity_id"]

        try:
            listings, _ = await self.get_cached_listings(data["cache_key"])
            listing = next((l for l in listings if l.get("opportunity_id") == opportunity_id), None)
            if listing is None:
                raise CacheMissError(f"Listing not found for opportunity: {opportunity_id}")

            scraper = self.registry.get(data["scraper_type"])
            details = await scraper.scrape_details(opportunity_id)
            if not details or not details.id:
                raise LLMResponseError("Invalid opportunity details format")

            source_url = scraper.details_page_url(opportunity_id)
            created = await self.materializer.materialize(
                listing, details, crawl_source_id, source_url, True, self.clock()
            )
            return {"opportunity_id": opportunity_id, "source_url": source_url, "draft_created": created}
        except Exception as e:
            logger.error(f"[crawl_queue] Details crawl failed: {opportunity_id} (source={crawl_source_id}): {e}")
            raise

    # Helpers

    async def _get_source(self, crawl_source_id: str) -> Dict:
        source = await self.repository.get_source(crawl_source_id)
        if not source:
            raise SourceNotFoundError(f"Crawl source not found: {crawl_source_id}")
        return source

    async def _cache_listings(
        self,
        cache_key: str,
        entries: List[ListingEntry],
        crawl_source_id: str,
        url: str,
        source: Dict,
    ):
        payload = {
            "listings": [entry.model_dump() for entry in entries],
            "timestamp": int(self.clock().timestamp() * 1000),
            "crawlSourceId": crawl_source_id,
            "url": url,
            "crawlSource": {
                "id": source["id"],
                "isDetailsCrawled": bool(source.get("is_details_crawled")),
            },
        }
        await self.cache.set(cache_key, json.dumps(payload, default=str), CACHE_TTL_HOURS * 60 * 60)

    async def get_cached_listings(self, cache_key: str) -> Tuple[List[Dict], Dict]:
        """
        Listing batch and source snapshot for a cache key.

        Entries older than STALE_CACHE_HOURS are still returned, with a
        warning. A missing or malformed entry raises CacheMissError.
        """
        raw = await self.cache.get(cache_key)
        if not raw:
            raise CacheMissError(f"Cache not found: {cache_key}")

        try:
            parsed = json.loads(raw)
        except ValueError as e:
            raise CacheMissError(f"Corrupted cache: {cache_key}") from e

        if (
            not isinstance(parsed, dict)
            or not isinstance(parsed.get("listings"), list)
            or not parsed.get("timestamp")
            or not parsed.get("crawlSource")
        ):
            raise CacheMissError(f"Corrupted cache: {cache_key}")

        age_hours = (self.clock().timestamp() * 1000 - parsed["timestamp"]) / (1000 * 60 * 60)
        if age_hours > STALE_CACHE_HOURS:
            logger.warning(f"[crawl_queue] Using stale cache: {cache_key} ({age_hours:.1f}h old)")

        return parsed["listings"], parsed["crawlSource"]

    async def _queue_details_jobs(
        self,
        entries: List[ListingEntry],
        crawl_source_id: str,
        scraper_type: str,
        cache_key: str,
    ) -> int:
        jobs = [
            self.queue_details_crawl(
                {
                    "crawl_source_id": crawl_source_id,
                    "opportunity_id": entry.opportunity_id,
                    "scraper_type": scraper_type,
                    "cache_key": cache_key,
                },
                self._options(PRIORITY_DETAILS, self.rng.uniform(0, self.max_detail_delay)),
            )
            for entry in entries
        ]
        await asyncio.gather(*jobs)
        return len(jobs)

    async def create_drafts_from_listings(
        self,
        entries: List[ListingEntry],
        crawl_source_id: str,
        scraper: BaseScraper,
    ) -> DraftBatchResult:
        """Write drafts from listing entries; one bad entry does not stop the rest"""
        batch = DraftBatchResult()
        now = self.clock()

        for entry in entries:
            try:
                source_url = scraper.details_page_url(entry.opportunity_id)
                if await self.materializer.create(entry, None, crawl_source_id, source_url, False, now):
                    batch.created += 1
            except Exception as e:
                logger.warning(f"[crawl_queue] Draft failed for {entry.opportunity_id}: {e}")
                batch.add_error(entry.opportunity_id, e)

        logger.info(f"[crawl_queue] Drafts from listing: {batch}")
        return batch

    async def _mark_error(self, crawl_source_id: str, message: str):
        try:
            await self.repository.mark_source_error(crawl_source_id, message[:ERROR_MESSAGE_LIMIT])
        except Exception as e:
            logger.warning(f"[crawl_queue] Could not record error for source {crawl_source_id}: {e}")

    # Public API

    async def queue_listing_crawl(self, data: Dict[str, Any], options: Optional[JobOptions] = None) -> Job:
        return await self.listing_queue.add(LISTING_JOB, data, options or self._options(PRIORITY_SCHEDULED))

    async def queue_details_crawl(self, data: Dict[str, Any], options: Optional[JobOptions] = None) -> Job:
        return await self.details_queue.add(DETAILS_JOB, data, options or self._options(PRIORITY_DETAILS))

    async def trigger_listing_crawl(
        self,
        crawl_source_id: str,
        priority: int = PRIORITY_MANUAL,
        delay: float = 0.0,
        user_id: Optional[str] = None,
    ) -> Job:
        """
        Enqueue a listing crawl for one source.

        Raises SourceNotFoundError for unknown ids and SourceInactiveError
        when the source is disabled or a crawl is already running.
        """
        source = await self._get_source(crawl_source_id)
        if not source.get("is_active"):
            raise SourceInactiveError("Crawl source is not active")
        if source.get("status") == CrawlSourceStatus.ACTIVE.value:
            raise SourceInactiveError("Crawl already in progress for this source")

        # Unknown scraper types fail here instead of inside the job
        self.registry.get(source["scraper_type"])

        data = {
            "crawl_source_id": crawl_source_id,
            "url": source["url"],
            "scraper_type": source["scraper_type"],
        }
        if user_id:
            data["user_id"] = user_id

        job = await self.queue_listing_crawl(data, self._options(priority, delay))
        logger.info(f"[crawl_queue] Listing crawl queued for {crawl_source_id} (job={job.id}, priority={priority})")
        return job

    async def trigger_bulk_crawl(self, crawl_source_ids: List[str], user_id: Optional[str] = None) -> Dict:
        """Queue several sources, staggering their start times"""
        queued: List[Dict] = []
        skipped: List[Dict] = []
        errors: List[Dict] = []

        for crawl_source_id in crawl_source_ids:
            delay = len(queued) * BULK_STAGGER_SECONDS
            try:
                job = await self.trigger_listing_crawl(crawl_source_id, PRIORITY_BULK, delay, user_id)
                queued.append({"crawl_source_id": crawl_source_id, "job_id": job.id})
            except (SourceNotFoundError, SourceInactiveError) as e:
                skipped.append({"crawl_source_id": crawl_source_id, "reason": str(e)})
            except Exception as e:
                logger.error(f"[crawl_queue] Bulk trigger failed for {crawl_source_id}: {e}")
                errors.append({"crawl_source_id": crawl_source_id, "error": str(e)})

        logger.info(
            f"[crawl_queue] Bulk crawl: {len(queued)} queued, {len(skipped)} skipped, {len(errors)} errors"
        )
        return {"queued": queued, "skipped": skipped, "errors": errors}

    async def schedule_due_sources(self, now: Optional[datetime] = None) -> int:
        """
        Queue a listing crawl for every due source.

        next_crawl_at is advanced at enqueue time so a slow run is not
        scheduled twice.
        """
        now = now or self.clock()
        sources = await self.repository.list_due_sources(now)
        queued = 0

        for source in sources:
            try:
                data = {
                    "crawl_source_id": source["id"],
                    "url": source["url"],
                    "scraper_type": source["scraper_type"],
                }
                delay = self.rng.uniform(0, self.max_schedule_jitter)
                await self.queue_listing_crawl(data, self._options(PRIORITY_SCHEDULED, delay))
                await self.repository.set_next_crawl_at(
                    source["id"], now + frequency_interval(source.get("frequency"))
                )
                queued += 1
            except Exception as e:
                logger.error(f"[crawl_queue] Failed to schedule source {source.get('id')}: {e}")

        logger.info(f"[crawl_queue] Scheduled {queued}/{len(sources)} due source(s)")
        return queued

    async def get_queue_stats(self) -> Dict[str, Dict[str, int]]:
        listing, details = await asyncio.gather(
            self.listing_queue.get_counts(),
            self.details_queue.get_counts(),
        )
        return {"listing": listing, "details": details}

    async def cleanup_jobs(self) -> Dict[str, int]:
        """
        Drop completed jobs older than a day, failed jobs older than a week
        and expired cache entries.
        """
        completed = COMPLETED_RETENTION.total_seconds()
        failed = FAILED_RETENTION.total_seconds()
        results = await asyncio.gather(
            self.listing_queue.clean(completed, JobState.COMPLETED),
            self.listing_queue.clean(failed, JobState.FAILED),
            self.details_queue.clean(completed, JobState.COMPLETED),
            self.details_queue.clean(failed, JobState.FAILED),
            self.cache.purge_expired(),
        )
        return {
            "listing_completed": results[0],
            "listing_failed": results[1],
            "details_completed": results[2],
            "details_failed": results[3],
            "cache_expired": results[4],
        }

    async def start(self):
        await self.listing_queue.start()
        await self.details_queue.start()

    async def shutdown(self):
        await asyncio.gather(self.listing_queue.close(), self.details_queue.close())
        logger.info("[crawl_queue] Crawl queues shut down")
