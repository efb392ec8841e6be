"""
Source scrapers.

Each scraper turns a source site's listing and detail pages into
ListingEntry / OpportunityDetails records.
"""

from .base import BaseScraper
from .registry import ScraperRegistry, build_registry

__all__ = [
    'BaseScraper',
    'ScraperRegistry',
    'build_registry',
]
