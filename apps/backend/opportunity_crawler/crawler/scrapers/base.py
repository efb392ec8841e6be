"""
Base scraper interface.

One implementation per source site. Each scraper knows which domains it
serves, how to turn a listing page into ListingEntry records, how to build a
detail page URL from an opportunity id and how to extract the full record.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List
from urllib.parse import urlparse

from opportunity_crawler.models import OpportunityDetails, ScraperType, ScrapingResult

logger = logging.getLogger(__name__)


class BaseScraper(ABC):
    """
    Base class for source scrapers.

    Subclasses set ``scraper_type``, ``display_name`` and
    ``supported_domains`` and implement the three page operations.
    """

    scraper_type: ScraperType
    display_name: str = ""
    supported_domains: List[str] = []
    default_experience_level = ""

    def __init__(self):
        self.logger = logging.getLogger(f"{__name__}.{self.scraper_type.value.lower()}")

    def is_url_compatible(self, url: str) -> bool:
        """True when the URL's host is one of the supported domains"""
        try:
            hostname = urlparse(url).hostname
        except ValueError:
            return False
        return bool(hostname) and hostname in self.supported_domains

    @abstractmethod
    def details_page_url(self, opportunity_id: str) -> str:
        """Canonical detail page URL for an opportunity id"""

    @abstractmethod
    async def scrape_listing(self, url: str) -> ScrapingResult:
        """
        Scrape a listing page.

        Failures are reported in the result, not raised.
        """

    @abstractmethod
    async def scrape_details(self, opportunity_id: str) -> OpportunityDetails:
        """Scrape one opportunity's detail page."""

    def to_opportunity_format(self, details: OpportunityDetails, opportunity_type_id: str) -> Dict:
        """Convert extracted details into an opportunity create payload"""
        return {
            "title": details.title,
            "organization": details.organization,
            "description": details.description,
            "requirements": details.requirements,
            "benefits": details.benefits,
            "compensation": details.compensation or "",
            "compensationType": details.compensation_type or "UNKNOWN",
            "locations": details.locations,
            "isRemote": details.is_remote,
            "deadline": details.deadline,
            "applicationUrl": details.application_url or "",
            "contactEmail": details.contact_email or "",
            "experienceLevel": details.experience_level or self.default_experience_level,
            "duration": details.duration or "",
            "eligibility": details.eligibility,
            "opportunityTypeIds": [opportunity_type_id],
        }

    def info(self) -> Dict:
        return {
            "type": self.scraper_type.value,
            "displayName": self.display_name,
            "supportedDomains": list(self.supported_domains),
        }

    def __repr__(self):
        return f"<{self.__class__.__name__}(type={self.scraper_type.value})>"
