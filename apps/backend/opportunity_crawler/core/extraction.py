"""
LLM extraction of listing entries and opportunity details from markdown.
"""

import logging
from typing import Any, Callable, List

import httpx
from pydantic import ValidationError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from opportunity_crawler.core.errors import LLMResponseError, TransientError
from opportunity_crawler.core.json_repair import clean_llm_json, missing_required_fields
from opportunity_crawler.core.llm_router import AIModelRouter
from opportunity_crawler.core.prompts import (
    DETAILS_REQUIRED_FIELDS,
    LISTING_ENTRY_REQUIRED_FIELDS,
    LISTING_REQUIRED_FIELDS,
    details_prompt,
    listing_prompt,
)
from opportunity_crawler.models import ListingEntry, OpportunityDetails

logger = logging.getLogger(__name__)

EXTRACTION_ATTEMPTS = 3
RETRYABLE_ERRORS = (TransientError, LLMResponseError, httpx.HTTPError)


class ExtractionEngine:
    """
    Runs the listing and details prompts through the model router.

    Each call is retried (transport, parse and schema failures alike) with
    an exponential wait between 1s and 5s.
    """

    def __init__(self, router: AIModelRouter, attempts: int = EXTRACTION_ATTEMPTS, wait=None):
        self.router = router
        self.attempts = attempts
        self.wait = wait if wait is not None else wait_exponential(multiplier=1, min=1, max=5)

    async def _generate_json(self, prompt: str, required_fields: List[str], label: str, convert: Callable[[Any], Any]):
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=self.wait,
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            reraise=True,
        ):
            with attempt:
                try:
                    response = await self.router.generate(prompt, temperature=0)
                    return convert(clean_llm_json(response, required_fields))
                except RETRYABLE_ERRORS as e:
                    logger.warning(
                        f"[extraction] {label} attempt {attempt.retry_state.attempt_number}/{self.attempts} failed: {e}"
                    )
                    raise

    async def extract_listing(self, text: str) -> List[ListingEntry]:
        """Extract the opportunities present on a listing page"""
        entries = await self._generate_json(
            listing_prompt(text), LISTING_REQUIRED_FIELDS, "listing", self._listing_entries
        )
        logger.info(f"[extraction] Extracted {len(entries)} listing entries")
        return entries

    @staticmethod
    def _listing_entries(parsed) -> List[ListingEntry]:
        listings = parsed.get("opportunity_listings") if isinstance(parsed, dict) else None
        if not isinstance(listings, list):
            raise LLMResponseError("Invalid LLM format: opportunity_listings is not a list")

        missing = missing_required_fields(listings, LISTING_ENTRY_REQUIRED_FIELDS) if listings else []
        if missing:
            raise LLMResponseError(f"Invalid LLM format: Missing required fields: {', '.join(missing)}")

        entries = []
        for index, raw in enumerate(listings):
            try:
                entries.append(ListingEntry.model_validate(raw))
            except ValidationError as e:
                logger.warning(f"[extraction] Skipping invalid listing entry {index}: {e.errors()[0]['msg']}")
        return entries

    async def extract_details(self, text: str, opportunity_id: str) -> OpportunityDetails:
        """Extract the full record of a single opportunity"""
        def details(parsed) -> OpportunityDetails:
            if not isinstance(parsed, dict):
                raise LLMResponseError("Invalid LLM format: details response is not an object")
            return OpportunityDetails.from_llm(parsed, opportunity_id)

        return await self._generate_json(details_prompt(text), DETAILS_REQUIRED_FIELDS, "details", details)
