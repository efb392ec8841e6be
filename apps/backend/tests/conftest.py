"""
Shared test doubles for the crawl pipeline tests.
"""

import copy
import itertools
import json
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from opportunity_crawler.core.cache import MemoryKVStore
from opportunity_crawler.crawler.scrapers.base import BaseScraper
from opportunity_crawler.crawler.scrapers.registry import ScraperRegistry
from opportunity_crawler.models import (
    ListingEntry,
    OpportunityDetails,
    ScraperType,
    ScrapingResult,
)


class FakeClock:
    """Settable UTC clock"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def timer(self) -> float:
        return self.now.timestamp()

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeRepository:
    """In-memory stand-in for PostgresRepository"""

    def __init__(self):
        self.sources: Dict[str, Dict] = {}
        self.drafts: List[Dict] = []
        self.opportunity_types: Dict[str, str] = {}
        self.opportunities: List[Dict] = []
        self._ids = itertools.count(1)
        self.fail_draft_inserts = False
        self.fail_opportunity_inserts = False

    def add_source(self, **overrides) -> Dict:
        source_id = overrides.pop("id", f"src-{next(self._ids)}")
        source = {
            "id": source_id,
            "name": "Opportunities for Africans",
            "url": "https://www.opportunitiesforafricans.com/category/scholarships/",
            "frequency": "WEEKLY",
            "scraper_type": "OPPORTUNITY_FOR_AFRICANS",
            "status": "INACTIVE",
            "is_active": True,
            "is_details_crawled": False,
            "last_crawled_at": None,
            "next_crawl_at": None,
            "opportunities_found": 0,
            "error_message": None,
        }
        source.update(overrides)
        self.sources[source_id] = source
        return source

    async def get_source(self, source_id: str) -> Optional[Dict]:
        source = self.sources.get(source_id)
        return copy.deepcopy(source) if source else None

    async def list_due_sources(self, now: datetime) -> List[Dict]:
        return [
            copy.deepcopy(s) for s in self.sources.values()
            if s["is_active"]
            and s["status"] != "ACTIVE"
            and (s["next_crawl_at"] is None or s["next_crawl_at"] <= now)
        ]

    async def mark_source_active(self, source_id: str, now: datetime):
        source = self.sources[source_id]
        source.update(status="ACTIVE", error_message=None, last_crawled_at=now)

    async def mark_source_success(self, source_id: str, found: int, next_crawl_at: datetime, now: datetime):
        source = self.sources[source_id]
        source["status"] = "INACTIVE"
        source["opportunities_found"] = (source["opportunities_found"] or 0) + found
        source["next_crawl_at"] = next_crawl_at
        source["last_crawled_at"] = now

    async def mark_source_error(self, source_id: str, message: str):
        if source_id in self.sources:
            self.sources[source_id].update(status="ERROR", error_message=message)

    async def set_next_crawl_at(self, source_id: str, next_crawl_at: datetime):
        self.sources[source_id]["next_crawl_at"] = next_crawl_at

    async def find_draft(self, source_url: str, crawl_source_id: str) -> Optional[Dict]:
        for draft in self.drafts:
            if draft["source_url"] == source_url and draft["crawl_source_id"] == crawl_source_id:
                return draft
        return None

    async def create_draft_if_absent(self, draft: Dict) -> bool:
        if self.fail_draft_inserts:
            raise RuntimeError("database is down")
        if await self.find_draft(draft["source_url"], draft["crawl_source_id"]):
            return False
        self.drafts.append({**draft, "id": f"draft-{next(self._ids)}", "opportunity_id": None})
        return True

    async def get_draft(self, draft_id: str) -> Optional[Dict]:
        for draft in self.drafts:
            if draft["id"] == draft_id:
                return draft
        return None

    async def find_opportunity_type_id(self, name: str) -> Optional[str]:
        return self.opportunity_types.get(name)

    async def publish_draft(self, draft_id: str, data: Dict) -> Optional[str]:
        draft = next((d for d in self.drafts if d["id"] == draft_id), None)
        if draft is None or draft.get("status") != "APPROVED" or draft.get("opportunity_id"):
            return None
        if self.fail_opportunity_inserts:
            raise RuntimeError("database is down")
        opportunity_id = f"opp-{next(self._ids)}"
        self.opportunities.append({**data, "id": opportunity_id})
        draft.update(status="PUBLISHED", opportunity_id=opportunity_id)
        return opportunity_id


class ScriptedRouter:
    """Model router returning canned responses in order"""

    def __init__(self, responses):
        self.responses = list(responses)
        self.prompts: List[str] = []
        self.temperatures: List[float] = []

    async def generate(self, prompt: str, temperature: float = 0.0, max_tokens=None) -> str:
        self.prompts.append(prompt)
        self.temperatures.append(temperature)
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response


class FakeScraper(BaseScraper):
    """Scraper returning preset listing entries and synthetic details"""

    scraper_type = ScraperType.OPPORTUNITY_FOR_AFRICANS
    display_name = "Fake Africans"
    supported_domains = ["opportunitiesforafricans.com", "www.opportunitiesforafricans.com"]
    default_experience_level = "any"

    def __init__(self, result: Optional[ScrapingResult] = None):
        super().__init__()
        self.result = result or ScrapingResult(success=True, entries=make_entries(3))
        self.listing_calls: List[str] = []
        self.details_calls: List[str] = []
        self.failing_details = set()

    def details_page_url(self, opportunity_id: str) -> str:
        return f"https://opportunitiesforafricans.com/{opportunity_id}"

    async def scrape_listing(self, url: str) -> ScrapingResult:
        self.listing_calls.append(url)
        return self.result

    async def scrape_details(self, opportunity_id: str) -> OpportunityDetails:
        self.details_calls.append(opportunity_id)
        if opportunity_id in self.failing_details:
            raise RuntimeError(f"detail page for {opportunity_id} timed out")
        return OpportunityDetails.from_llm(
            {
                "title": f"Detailed {opportunity_id}",
                "organization": "Mastercard Foundation",
                "description": "Full description",
                "requirements": ["Bachelor's degree"],
                "deadline": "30 January 2026",
                "isRemote": False,
            },
            opportunity_id,
        )


def make_entries(count: int) -> List[ListingEntry]:
    return [
        ListingEntry(
            opportunity_id=f"scholarship-{i}",
            title=f"Scholarship {i}",
            organization="Mastercard Foundation",
            location="Ghana",
            deadline="January 30th, 2026",
            url=f"https://opportunitiesforafricans.com/scholarship-{i}/",
        )
        for i in range(1, count + 1)
    ]


def fenced(payload) -> str:
    return "```json\n" + json.dumps(payload) + "\n```"


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def cache(clock):
    return MemoryKVStore(timer=clock.timer)


@pytest.fixture
def repository():
    return FakeRepository()


@pytest.fixture
def fake_scraper():
    return FakeScraper()


@pytest.fixture
def registry(fake_scraper):
    return ScraperRegistry([fake_scraper])
