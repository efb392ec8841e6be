"""
Admin endpoints for the crawl pipeline.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from opportunity_crawler.core.errors import (
    ConfigurationError,
    CrawlError,
    DraftNotFoundError,
    DraftStateError,
    SourceInactiveError,
    SourceNotFoundError,
)
from opportunity_crawler.pipeline.bootstrap import CrawlPipeline
from opportunity_crawler.pipeline.crawl_queue import PRIORITY_MANUAL

logger = logging.getLogger(__name__)
router = APIRouter(tags=["crawl"])

ERROR_STATUS = [
    ((SourceNotFoundError, DraftNotFoundError), 404),
    ((SourceInactiveError, DraftStateError), 409),
    ((ConfigurationError,), 400),
]


class CrawlTriggerRequest(BaseModel):
    priority: int = PRIORITY_MANUAL
    delay: float = Field(default=0, ge=0, description="Start delay in seconds")


class BulkCrawlRequest(BaseModel):
    source_ids: List[str] = Field(min_length=1)


class PublishDraftRequest(BaseModel):
    opportunity_type_ids: Optional[List[str]] = None


def get_pipeline(request: Request) -> CrawlPipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Crawl pipeline not configured")
    return pipeline


def http_error(error: CrawlError) -> HTTPException:
    for error_types, status_code in ERROR_STATUS:
        if isinstance(error, error_types):
            return HTTPException(status_code=status_code, detail=str(error))
    logger.error(f"[routes] Unexpected pipeline error: {error}")
    return HTTPException(status_code=500, detail=str(error))


def ok(data):
    return {"status": "ok", "data": data, "error": None}


@router.post("/admin/crawl-sources/{source_id}/crawl")
async def trigger_crawl(
    source_id: str,
    body: Optional[CrawlTriggerRequest] = None,
    pipeline: CrawlPipeline = Depends(get_pipeline),
):
    """Queue a listing crawl for one source."""
    body = body or CrawlTriggerRequest()
    try:
        job = await pipeline.service.trigger_listing_crawl(source_id, body.priority, body.delay)
    except CrawlError as e:
        raise http_error(e)
    return ok({"job_id": job.id, "crawl_source_id": source_id, "state": job.state.value})


@router.post("/admin/crawl-sources/bulk-crawl")
async def bulk_crawl(body: BulkCrawlRequest, pipeline: CrawlPipeline = Depends(get_pipeline)):
    return ok(await pipeline.service.trigger_bulk_crawl(body.source_ids))


@router.post("/admin/crawl/schedule-due")
async def schedule_due(pipeline: CrawlPipeline = Depends(get_pipeline)):
    return ok({"queued": await pipeline.service.schedule_due_sources()})


@router.get("/admin/crawl/queue-stats")
async def queue_stats(pipeline: CrawlPipeline = Depends(get_pipeline)):
    return ok(await pipeline.service.get_queue_stats())


@router.post("/admin/crawl/cleanup")
async def cleanup_jobs(pipeline: CrawlPipeline = Depends(get_pipeline)):
    return ok(await pipeline.service.cleanup_jobs())


@router.get("/admin/scrapers")
async def list_scrapers(pipeline: CrawlPipeline = Depends(get_pipeline)):
    return ok(pipeline.registry.scraper_info())


@router.post("/admin/ai-drafts/{draft_id}/publish")
async def publish_draft(
    draft_id: str,
    body: Optional[PublishDraftRequest] = None,
    pipeline: CrawlPipeline = Depends(get_pipeline),
):
    """Publish an approved draft as an opportunity."""
    type_ids = body.opportunity_type_ids if body else None
    try:
        opportunity_id = await pipeline.materializer.publish_draft(draft_id, type_ids)
    except CrawlError as e:
        raise http_error(e)
    return ok({"draft_id": draft_id, "opportunity_id": opportunity_id})
