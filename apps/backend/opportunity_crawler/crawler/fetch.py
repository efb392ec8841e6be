"""
Page fetcher backed by the scrape.do proxy API.

Successful bodies are cached for 24 hours under ``scraper:{url}``. Failures
never raise past ``fetch``: callers check ``FetchResult.error``.
"""

import logging
from typing import Optional

import httpx
from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_attempt, wait_exponential

from opportunity_crawler.core.cache import KVStore
from opportunity_crawler.core.errors import FetchError, TransientError

logger = logging.getLogger(__name__)

SCRAPERDO_ENDPOINT = "https://api.scrape.do/"
FETCH_ATTEMPTS = 3
FETCH_CACHE_TTL_SECONDS = 60 * 60 * 24
DEFAULT_TIMEOUT = 60.0


class FetchResult:
    """Result of a page fetch"""

    def __init__(self, content: Optional[str] = None, error: Optional[str] = None):
        self.content = content
        self.error = error

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.content)

    def __repr__(self):
        size = len(self.content) if self.content else 0
        return f"FetchResult(size={size}, error={self.error!r})"


def fetch_cache_key(url: str) -> str:
    return f"scraper:{url}"


class ScraperDoFetcher:
    """Fetch pages through scrape.do with caching and retries"""

    def __init__(
        self,
        api_key: str,
        cache: KVStore,
        render: bool = False,
        super_proxy: bool = True,
        timeout: float = DEFAULT_TIMEOUT,
        attempts: int = FETCH_ATTEMPTS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        wait=None,
    ):
        self.api_key = api_key
        self.cache = cache
        self.render = render
        self.super_proxy = super_proxy
        self.timeout = httpx.Timeout(timeout)
        self.attempts = attempts
        self.transport = transport
        self.wait = wait if wait is not None else wait_exponential(multiplier=1, min=1, max=10)

    def _params(self, url: str) -> dict:
        return {
            "token": self.api_key,
            "url": url,
            "render": "true" if self.render else "false",
            "super": "true" if self.super_proxy else "false",
        }

    async def _fetch_once(self, url: str) -> str:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.get(SCRAPERDO_ENDPOINT, params=self._params(url))
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise TransientError(f"scrape.do request failed: {e}") from e

        body = response.text
        if not body:
            raise TransientError("No data returned from scraper.do")

        logger.info(f"[fetch] GET {response.status_code} {url} ({len(body)} chars)")
        return body

    async def fetch(self, url: str) -> FetchResult:
        """Fetch a URL, serving from cache when possible."""
        cache_key = fetch_cache_key(url)
        cached = await self.cache.get(cache_key)
        if cached:
            logger.info(f"[fetch] Cache hit for: {url}")
            return FetchResult(content=cached)

        logger.info(f"[fetch] Cache miss for: {url}")

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.attempts),
                wait=self.wait,
                retry=retry_if_exception_type(TransientError),
            ):
                with attempt:
                    try:
                        content = await self._fetch_once(url)
                    except TransientError as e:
                        logger.warning(
                            f"[fetch] Attempt {attempt.retry_state.attempt_number}/{self.attempts} "
                            f"failed for {url}: {e}"
                        )
                        raise
        except RetryError as e:
            last = e.last_attempt.exception()
            error = FetchError(f"Error scraping {url}: {last}")
            logger.error(f"[fetch] {error}")
            return FetchResult(error=str(error))

        await self.cache.set(cache_key, content, FETCH_CACHE_TTL_SECONDS)
        return FetchResult(content=content)
