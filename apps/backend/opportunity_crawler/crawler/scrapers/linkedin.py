"""
LinkedIn Jobs scraper. Listing and detail extraction are not available yet.
"""

from opportunity_crawler.core.errors import ScraperNotImplementedError
from opportunity_crawler.crawler.scrapers.base import BaseScraper
from opportunity_crawler.models import OpportunityDetails, ScraperType, ScrapingResult


class LinkedInScraper(BaseScraper):
    scraper_type = ScraperType.LINKEDIN
    display_name = "LinkedIn Jobs"
    supported_domains = ["linkedin.com", "www.linkedin.com"]

    def details_page_url(self, opportunity_id: str) -> str:
        return f"https://www.linkedin.com/jobs/view/{opportunity_id}"

    async def scrape_listing(self, url: str) -> ScrapingResult:
        self.logger.info(f"[scrapers] LinkedIn listing requested for {url}")
        return ScrapingResult.failed("LinkedIn scraper not yet implemented", retryable=False)

    async def scrape_details(self, opportunity_id: str) -> OpportunityDetails:
        raise ScraperNotImplementedError("LinkedIn scraper not yet implemented")
