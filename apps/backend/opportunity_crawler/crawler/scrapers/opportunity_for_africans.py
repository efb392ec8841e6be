"""
Scraper for opportunitiesforafricans.com.

Pages are fetched through the proxy fetcher, converted to markdown and run
through the LLM extraction engine.
"""

from opportunity_crawler.core.errors import CrawlError, FetchError
from opportunity_crawler.core.extraction import ExtractionEngine
from opportunity_crawler.crawler.fetch import ScraperDoFetcher
from opportunity_crawler.crawler.markdown import html_to_markdown
from opportunity_crawler.crawler.scrapers.base import BaseScraper
from opportunity_crawler.models import OpportunityDetails, ScraperType, ScrapingResult

BASE_URL = "https://opportunitiesforafricans.com"


class OpportunityForAfricansScraper(BaseScraper):
    scraper_type = ScraperType.OPPORTUNITY_FOR_AFRICANS
    display_name = "Opportunity for Africans"
    supported_domains = ["opportunitiesforafricans.com", "www.opportunitiesforafricans.com"]
    default_experience_level = "any"

    def __init__(self, fetcher: ScraperDoFetcher, engine: ExtractionEngine):
        super().__init__()
        self.fetcher = fetcher
        self.engine = engine

    def details_page_url(self, opportunity_id: str) -> str:
        return f"{BASE_URL}/{opportunity_id.lstrip('/')}"

    async def _markdown(self, url: str) -> str:
        result = await self.fetcher.fetch(url)
        if not result.ok:
            raise FetchError(result.error or f"Error scraping {url}")
        return html_to_markdown(result.content)

    async def scrape_listing(self, url: str) -> ScrapingResult:
        try:
            markdown = await self._markdown(url)
            entries = await self.engine.extract_listing(markdown)
        except CrawlError as e:
            self.logger.warning(f"[scrapers] Listing scrape failed for {url}: {e}")
            return ScrapingResult.failed(str(e), retryable=e.retryable)

        self.logger.info(f"[scrapers] {len(entries)} opportunities found on {url}")
        return ScrapingResult(success=True, entries=entries, total_found=len(entries))

    async def scrape_details(self, opportunity_id: str) -> OpportunityDetails:
        url = self.details_page_url(opportunity_id)
        try:
            markdown = await self._markdown(url)
        except FetchError as e:
            raise FetchError(f"Error scraping opportunity details for {opportunity_id}: {e}") from e
        return await self.engine.extract_details(markdown, opportunity_id)
