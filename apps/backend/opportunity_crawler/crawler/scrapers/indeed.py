"""
Indeed scraper. Listing and detail extraction are not available yet.
"""

from opportunity_crawler.core.errors import ScraperNotImplementedError
from opportunity_crawler.crawler.scrapers.base import BaseScraper
from opportunity_crawler.models import OpportunityDetails, ScraperType, ScrapingResult


class IndeedScraper(BaseScraper):
    scraper_type = ScraperType.INDEED
    display_name = "Indeed"
    supported_domains = ["indeed.com", "www.indeed.com", "ng.indeed.com", "za.indeed.com"]

    def details_page_url(self, opportunity_id: str) -> str:
        return f"https://indeed.com/viewjob?jk={opportunity_id}"

    async def scrape_listing(self, url: str) -> ScrapingResult:
        self.logger.info(f"[scrapers] Indeed listing requested for {url}")
        return ScrapingResult.failed("Indeed scraper not yet implemented", retryable=False)

    async def scrape_details(self, opportunity_id: str) -> OpportunityDetails:
        raise ScraperNotImplementedError("Indeed scraper not yet implemented")
