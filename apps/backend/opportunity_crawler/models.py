"""
Domain types shared by the crawler, extraction and pipeline modules.

CrawlSource and draft rows are passed around as plain dicts (as returned by
RealDictCursor). Records produced by the LLM are validated with pydantic.
"""

from datetime import timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class CrawlFrequency(str, Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"

    @property
    def interval(self) -> timedelta:
        return FREQUENCY_INTERVALS[self]


FREQUENCY_INTERVALS = {
    CrawlFrequency.DAILY: timedelta(days=1),
    CrawlFrequency.WEEKLY: timedelta(days=7),
    CrawlFrequency.MONTHLY: timedelta(days=30),
}


def frequency_interval(frequency: Optional[str]) -> timedelta:
    """Interval for a frequency value; unknown values fall back to weekly."""
    try:
        return CrawlFrequency(frequency).interval
    except ValueError:
        return FREQUENCY_INTERVALS[CrawlFrequency.WEEKLY]


class CrawlSourceStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    ERROR = "ERROR"


class DraftStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    PUBLISHED = "PUBLISHED"


class ScraperType(str, Enum):
    OPPORTUNITY_FOR_AFRICANS = "OPPORTUNITY_FOR_AFRICANS"
    INDEED = "INDEED"
    LINKEDIN = "LINKEDIN"


def _as_str(value: Any) -> Any:
    if value is None or isinstance(value, str):
        return value
    return str(value)


def _as_list(value: Any) -> List:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [v for v in value if v is not None]
    return [value]


class ListingEntry(BaseModel):
    """One opportunity as it appears on a listing page."""

    model_config = ConfigDict(extra="allow")

    opportunity_id: str
    title: str = ""
    organization: Optional[str] = None
    location: Optional[str] = None
    deadline: Optional[str] = None
    url: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _fold_aliases(cls, data: Any) -> Any:
        # The listing prompt returns "link" and "locations"
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if not data.get("url") and data.get("link"):
            data["url"] = data["link"]
        locations = data.get("locations")
        if not data.get("location") and isinstance(locations, list) and locations:
            data["location"] = locations[0]
        if data.get("title") is None:
            data["title"] = ""
        return data

    @field_validator("opportunity_id", "organization", "location", "deadline", "url", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        return _as_str(value)

    @field_validator("opportunity_id")
    @classmethod
    def _non_empty_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("opportunity_id must not be empty")
        return value

    def extra(self, key: str, default: Any = None) -> Any:
        return (self.model_extra or {}).get(key, default)


class OpportunityDetails(BaseModel):
    """Full structured record extracted from a detail page."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    id: str
    title: str = ""
    organization: str = ""
    description: str = ""
    requirements: List[str] = Field(default_factory=list)
    benefits: List[str] = Field(default_factory=list)
    compensation: Optional[str] = None
    compensation_type: Optional[str] = None
    locations: List[str] = Field(default_factory=list)
    is_remote: bool = False
    deadline: str = ""
    application_url: Optional[str] = None
    contact_email: Optional[str] = None
    experience_level: Optional[str] = None
    duration: Optional[str] = None
    eligibility: List[str] = Field(default_factory=list)
    raw_data: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("requirements", "benefits", "locations", "eligibility", mode="before")
    @classmethod
    def _listify(cls, value: Any) -> List:
        return [str(v) for v in _as_list(value)]

    @field_validator("title", "organization", "description", "deadline", mode="before")
    @classmethod
    def _blank_if_null(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator(
        "compensation", "compensation_type", "application_url", "contact_email",
        "experience_level", "duration", mode="before",
    )
    @classmethod
    def _optional_str(cls, value: Any) -> Any:
        return _as_str(value)

    @field_validator("is_remote", mode="before")
    @classmethod
    def _null_is_false(cls, value: Any) -> Any:
        return False if value is None else value

    @classmethod
    def from_llm(cls, payload: Dict[str, Any], opportunity_id: str) -> "OpportunityDetails":
        """Build details from the extraction payload, keeping it as raw_data."""
        data = {k: v for k, v in payload.items() if k not in ("id", "rawData", "raw_data")}
        return cls.model_validate({**data, "id": opportunity_id, "raw_data": payload})


class ScrapingResult:
    """Result of scraping a listing page"""

    def __init__(
        self,
        success: bool,
        entries: Optional[List[ListingEntry]] = None,
        total_found: Optional[int] = None,
        errors: Optional[List[str]] = None,
        retryable: bool = True,
    ):
        self.success = success
        self.entries = entries or []
        self.total_found = len(self.entries) if total_found is None else total_found
        self.errors = errors or []
        self.retryable = retryable

    @classmethod
    def failed(cls, *errors: str, retryable: bool = True) -> "ScrapingResult":
        return cls(success=False, entries=[], total_found=0, errors=list(errors), retryable=retryable)

    def to_dict(self) -> Dict:
        return {
            "success": self.success,
            "opportunity_listings": [e.model_dump() for e in self.entries],
            "total_found": self.total_found,
            "errors": self.errors,
        }

    def __repr__(self):
        return f"ScrapingResult(success={self.success}, total_found={self.total_found})"
