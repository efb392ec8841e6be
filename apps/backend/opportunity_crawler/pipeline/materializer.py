"""
Draft materialization and publishing.

Drafts are keyed by (source_url, crawl_source_id). The first write wins: a
second materialize call for the same key returns False and changes nothing.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from opportunity_crawler.core.deadline import deadline_or_default
from opportunity_crawler.core.errors import ConfigurationError, DraftNotFoundError, DraftStateError
from opportunity_crawler.crawler.scrapers.registry import ScraperRegistry
from opportunity_crawler.models import DraftStatus, ListingEntry, OpportunityDetails

logger = logging.getLogger(__name__)

DEFAULT_OPPORTUNITY_TYPE = "General"


def _listing_dict(listing: Union[ListingEntry, Dict]) -> Dict[str, Any]:
    if isinstance(listing, ListingEntry):
        return listing.model_dump()
    return dict(listing)


def _listing_locations(listing: Dict) -> List[str]:
    if listing.get("location"):
        return [listing["location"]]
    locations = listing.get("locations")
    return [str(loc) for loc in locations if loc] if isinstance(locations, list) else []


def _listing_eligibility(listing: Dict) -> List[str]:
    eligibility = listing.get("eligibility")
    if isinstance(eligibility, list):
        return [str(e) for e in eligibility]
    return [eligibility] if eligibility else []


def build_draft(
    listing: Dict,
    details: Optional[OpportunityDetails],
    crawl_source_id: str,
    source_url: str,
    is_details_crawled: bool,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Merge detail fields over listing fields into a draft row.

    Detail values win when present; listing values and fixed defaults fill
    the gaps.
    """
    d = details
    deadline = deadline_or_default((d.deadline if d else None) or listing.get("deadline"), now)

    if is_details_crawled and d is not None:
        raw_scraped = {"listing": listing, "details": d.raw_data or d.model_dump(by_alias=True)}
        raw = {"listing": listing, "details": d.model_dump(by_alias=True)}
    else:
        raw_scraped = listing
        raw = listing

    return {
        "title": (d.title if d else "") or listing.get("title") or "Untitled Opportunity",
        "organization": (d.organization if d else "") or listing.get("organization") or "Unknown Organization",
        "description": (
            (d.description if d else "")
            or listing.get("excerpt")
            or listing.get("short_description")
            or "No description available"
        ),
        "requirements": d.requirements if d else [],
        "benefits": d.benefits if d else [],
        "compensation": (d.compensation if d else None) or "",
        "compensation_type": (d.compensation_type if d else None) or None,
        "locations": (d.locations if d else []) or _listing_locations(listing),
        "is_remote": bool(d.is_remote) if d else False,
        "deadline": deadline,
        "application_url": (d.application_url if d else None) or listing.get("url") or source_url,
        "contact_email": (d.contact_email if d else None) or "",
        "experience_level": (d.experience_level if d else None) or "any",
        "duration": (d.duration if d else None) or "",
        "eligibility": (d.eligibility if d else []) or _listing_eligibility(listing),
        "crawl_source_id": crawl_source_id,
        "source_url": source_url,
        "status": DraftStatus.PENDING.value,
        "is_details_crawled": is_details_crawled,
        "raw_scraped_data": raw_scraped,
        "raw_data": json.dumps(raw, default=str),
    }


class DraftMaterializer:
    """Writes deduplicated drafts and publishes approved ones"""

    def __init__(self, repository, registry: Optional[ScraperRegistry] = None):
        self.repository = repository
        self.registry = registry

    async def create(
        self,
        listing: Union[ListingEntry, Dict],
        details: Optional[OpportunityDetails],
        crawl_source_id: str,
        source_url: str,
        is_details_crawled: bool,
        now: Optional[datetime] = None,
    ) -> bool:
        """Persist a draft; persistence errors propagate"""
        listing = _listing_dict(listing)

        existing = await self.repository.find_draft(source_url, crawl_source_id)
        if existing:
            logger.debug(f"[materializer] Draft already exists, skipping: {source_url}")
            return False

        draft = build_draft(listing, details, crawl_source_id, source_url, is_details_crawled, now)
        created = await self.repository.create_draft_if_absent(draft)
        if created:
            logger.info(f"[materializer] Draft created: {draft['title']!r} ({source_url})")
        return created

    async def materialize(
        self,
        listing: Union[ListingEntry, Dict, None],
        details: Optional[OpportunityDetails],
        crawl_source_id: str,
        source_url: str,
        is_details_crawled: bool,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Create a PENDING draft unless one exists for (source_url, crawl_source_id).

        Returns True when a draft was written. Invalid input and persistence
        failures are logged and return False.
        """
        if not listing or not crawl_source_id or not source_url:
            logger.error(
                f"[materializer] Invalid draft data: crawl_source_id={crawl_source_id!r} source_url={source_url!r}"
            )
            return False

        try:
            return await self.create(listing, details, crawl_source_id, source_url, is_details_crawled, now)
        except Exception as e:
            logger.error(f"[materializer] Failed to create draft for {source_url}: {e}")
            return False

    async def publish_draft(self, draft_id: str, opportunity_type_ids: Optional[List[str]] = None) -> str:
        """
        Publish an APPROVED draft as an opportunity.

        Without explicit type ids the "General" opportunity type is used.
        Returns the new opportunity id.
        """
        draft = await self.repository.get_draft(draft_id)
        if not draft:
            raise DraftNotFoundError(f"Draft not found: {draft_id}")
        if draft.get("opportunity_id") or draft.get("status") == DraftStatus.PUBLISHED.value:
            raise DraftStateError(f"Draft {draft_id} has already been published")
        if draft.get("status") != DraftStatus.APPROVED.value:
            raise DraftStateError(f"Draft {draft_id} must be approved before publishing")

        if not opportunity_type_ids:
            default_type = await self.repository.find_opportunity_type_id(DEFAULT_OPPORTUNITY_TYPE)
            if not default_type:
                raise ConfigurationError(
                    'Default opportunity type not found. Please create a "General" opportunity type.'
                )
            opportunity_type_ids = [default_type]

        source = await self.repository.get_source(draft["crawl_source_id"])
        if not source:
            raise ConfigurationError(f"Crawl source not found for draft {draft_id}")
        if self.registry is None:
            raise ConfigurationError("No scraper registry configured for publishing")
        scraper = self.registry.get(source["scraper_type"])

        deadline = draft.get("deadline")
        details = OpportunityDetails(
            id=draft_id,
            title=draft.get("title"),
            organization=draft.get("organization"),
            description=draft.get("description"),
            requirements=draft.get("requirements"),
            benefits=draft.get("benefits"),
            compensation=draft.get("compensation"),
            compensation_type=draft.get("compensation_type"),
            locations=draft.get("locations"),
            is_remote=draft.get("is_remote"),
            deadline=deadline.isoformat() if isinstance(deadline, datetime) else deadline,
            application_url=draft.get("application_url"),
            contact_email=draft.get("contact_email"),
            experience_level=draft.get("experience_level"),
            duration=draft.get("duration"),
            eligibility=draft.get("eligibility"),
        )
        payload = scraper.to_opportunity_format(details, opportunity_type_ids[0])

        opportunity_id = await self.repository.publish_draft(draft_id, {
            "title": payload["title"],
            "organization": payload["organization"],
            "description": payload["description"],
            "requirements": payload["requirements"],
            "benefits": payload["benefits"],
            "compensation": payload["compensation"],
            "compensation_type": payload["compensationType"],
            "locations": payload["locations"],
            "is_remote": payload["isRemote"],
            "deadline": deadline or datetime.now(timezone.utc),
            "application_url": payload["applicationUrl"],
            "contact_email": payload["contactEmail"],
            "experience_level": payload["experienceLevel"],
            "duration": payload["duration"],
            "eligibility": payload["eligibility"],
            "opportunity_type_ids": list(opportunity_type_ids),
            "ai_draft_id": draft_id,
        })
        if opportunity_id is None:
            raise DraftStateError(f"Draft {draft_id} was published or changed while publishing")
        logger.info(f"[materializer] Draft {draft_id} published as opportunity {opportunity_id}")
        return opportunity_id
