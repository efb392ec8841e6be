"""
FastAPI service hosting the crawl pipeline.

Run with: uvicorn opportunity_crawler.main:app
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI

from opportunity_crawler import __version__
from opportunity_crawler.config import get_config
from opportunity_crawler.core.errors import ConfigurationError
from opportunity_crawler.pipeline.bootstrap import CrawlPipeline, build_pipeline
from opportunity_crawler.routes import router as crawl_router

load_dotenv()

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_app(pipeline: Optional[CrawlPipeline] = None) -> FastAPI:
    """
    Build the app. A ready pipeline can be passed in (tests); otherwise one
    is built from the environment on startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        running = pipeline
        if running is None:
            try:
                running = await build_pipeline(get_config())
            except ConfigurationError as e:
                logger.warning(f"[main] Crawl pipeline not started: {e}")
            except Exception as e:
                logger.error(f"[main] Failed to build crawl pipeline: {e}", exc_info=True)

        app.state.pipeline = running
        if running is not None:
            await running.start()

        yield

        if running is not None:
            await running.stop()

    app = FastAPI(title="Opportunity Crawler", version=__version__, lifespan=lifespan)
    app.state.pipeline = pipeline
    app.include_router(crawl_router)

    @app.get("/api/healthz")
    async def healthz():
        return {"status": "ok", "pipeline": app.state.pipeline is not None}

    return app


app = create_app()
