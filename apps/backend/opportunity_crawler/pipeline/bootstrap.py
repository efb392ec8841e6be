"""
Wiring of the crawl pipeline from configuration.
"""

import asyncio
import logging
from typing import Optional

from opportunity_crawler.config import PipelineConfig
from opportunity_crawler.core.cache import PostgresKVStore
from opportunity_crawler.core.errors import ConfigurationError
from opportunity_crawler.core.extraction import ExtractionEngine
from opportunity_crawler.core.llm_router import AIModelRouter
from opportunity_crawler.crawler.fetch import ScraperDoFetcher
from opportunity_crawler.crawler.scrapers.registry import ScraperRegistry, build_registry
from opportunity_crawler.pipeline.crawl_queue import CrawlQueueService
from opportunity_crawler.pipeline.job_store import PostgresJobStore
from opportunity_crawler.pipeline.materializer import DraftMaterializer
from opportunity_crawler.pipeline.repository import PostgresRepository
from opportunity_crawler.pipeline.scheduler import CrawlScheduler

logger = logging.getLogger(__name__)


class CrawlPipeline:
    """Running pieces of the pipeline, as used by the HTTP layer"""

    def __init__(
        self,
        service: CrawlQueueService,
        registry: ScraperRegistry,
        materializer: DraftMaterializer,
        scheduler: Optional[CrawlScheduler] = None,
    ):
        self.service = service
        self.registry = registry
        self.materializer = materializer
        self.scheduler = scheduler

    async def start(self):
        await self.service.start()
        if self.scheduler:
            await self.scheduler.start()
        logger.info("[pipeline] Crawl pipeline started")

    async def stop(self):
        if self.scheduler:
            await self.scheduler.stop()
        await self.service.shutdown()
        logger.info("[pipeline] Crawl pipeline stopped")


async def build_pipeline(config: PipelineConfig) -> CrawlPipeline:
    """Build the Postgres-backed pipeline described by ``config``"""
    if not config.is_db_enabled:
        raise ConfigurationError("DATABASE_URL is required to run the crawl pipeline")
    if not config.llm_providers:
        raise ConfigurationError("No LLM provider configured (set LLM_PROVIDERS or OPENROUTER_API_KEY)")

    cache = PostgresKVStore(config.database_url)
    job_store = PostgresJobStore(config.database_url)
    repository = PostgresRepository(config.database_url)

    await asyncio.to_thread(cache.ensure_schema)
    await asyncio.to_thread(job_store.ensure_schema)
    await repository.ensure_schema()

    router = AIModelRouter.from_dicts(config.llm_providers)
    fetcher = ScraperDoFetcher(
        api_key=config.scraperdo_api_key,
        cache=cache,
        render=config.scraperdo_render,
        super_proxy=config.scraperdo_super_proxy,
        timeout=config.scraperdo_timeout,
    )
    registry = build_registry(fetcher, ExtractionEngine(router))
    materializer = DraftMaterializer(repository, registry)

    service = CrawlQueueService(
        repository=repository,
        registry=registry,
        cache=cache,
        materializer=materializer,
        listing_store=job_store,
        details_store=job_store,
        listing_concurrency=config.listing_concurrency,
        details_concurrency=config.details_concurrency,
        job_attempts=config.job_attempts,
        backoff_seconds=config.backoff_seconds,
    )
    scheduler = CrawlScheduler(
        service,
        interval_seconds=config.scheduler_interval_seconds,
        disabled=config.scheduler_disabled,
    )
    return CrawlPipeline(service, registry, materializer, scheduler)
