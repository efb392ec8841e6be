"""
Scraper registry: resolves a scraper by source type or by URL.
"""

import logging
from typing import Dict, List, Optional, Union

from opportunity_crawler.core.errors import ConfigurationError
from opportunity_crawler.core.extraction import ExtractionEngine
from opportunity_crawler.crawler.fetch import ScraperDoFetcher
from opportunity_crawler.crawler.scrapers.base import BaseScraper
from opportunity_crawler.crawler.scrapers.indeed import IndeedScraper
from opportunity_crawler.crawler.scrapers.linkedin import LinkedInScraper
from opportunity_crawler.crawler.scrapers.opportunity_for_africans import OpportunityForAfricansScraper
from opportunity_crawler.models import ScraperType

logger = logging.getLogger(__name__)


class ScraperRegistry:
    """Registry of scrapers keyed by ScraperType"""

    def __init__(self, scrapers: Optional[List[BaseScraper]] = None):
        self._scrapers: Dict[ScraperType, BaseScraper] = {}
        for scraper in scrapers or []:
            self.register(scraper)

    def register(self, scraper: BaseScraper):
        if scraper.scraper_type in self._scrapers:
            logger.warning(f"[registry] Scraper {scraper.scraper_type.value} already registered, replacing")
        self._scrapers[scraper.scraper_type] = scraper
        logger.info(f"[registry] Registered scraper: {scraper.scraper_type.value}")

    def get(self, scraper_type: Union[str, ScraperType]) -> BaseScraper:
        """Scraper for a type; unknown types are a configuration error"""
        try:
            key = ScraperType(scraper_type)
        except ValueError:
            key = None
        scraper = self._scrapers.get(key) if key else None
        if scraper is None:
            raise ConfigurationError(f"Scraper not found for type: {scraper_type}")
        return scraper

    def get_by_url(self, url: str) -> Optional[BaseScraper]:
        """First registered scraper compatible with the URL, if any"""
        for scraper in self._scrapers.values():
            if scraper.is_url_compatible(url):
                return scraper
        return None

    def available_types(self) -> List[str]:
        return [t.value for t in self._scrapers]

    def is_valid_type(self, scraper_type: str) -> bool:
        try:
            return ScraperType(scraper_type) in self._scrapers
        except ValueError:
            return False

    def scraper_info(self) -> List[Dict]:
        return [scraper.info() for scraper in self._scrapers.values()]


def build_registry(fetcher: ScraperDoFetcher, engine: ExtractionEngine) -> ScraperRegistry:
    """Registry with every built-in scraper"""
    return ScraperRegistry([
        OpportunityForAfricansScraper(fetcher, engine),
        IndeedScraper(),
        LinkedInScraper(),
    ])
