"""
Permissive deadline parsing for scraped dates.

Handles:
- "30 January 2026"
- "January 30th, 2026"
- "30/01/2026" (day first, month first when the day cannot be a month)
- "2026-01-30"
- anything dateutil understands as a last resort
"""

import calendar
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Optional

from dateutil import parser as date_parser

logger = logging.getLogger(__name__)

DEFAULT_DEADLINE_DAYS = 30

MONTHS = {}
for _index in range(1, 13):
    MONTHS[calendar.month_name[_index].lower()] = _index
    MONTHS[calendar.month_abbr[_index].lower()] = _index
MONTHS["sept"] = 9

_MONTH_PATTERN = "|".join(sorted(MONTHS, key=len, reverse=True))

DAY_MONTH_YEAR = re.compile(rf"\b(\d{{1,2}})(?:st|nd|rd|th)?\s+({_MONTH_PATTERN})\.?,?\s+(\d{{4}})\b", re.IGNORECASE)
MONTH_DAY_YEAR = re.compile(rf"\b({_MONTH_PATTERN})\.?\s+(\d{{1,2}})(?:st|nd|rd|th)?,?\s+(\d{{4}})\b", re.IGNORECASE)
SLASHED = re.compile(r"\b(\d{1,2})/(\d{1,2})/(\d{4})\b")
ISO_LIKE = re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})\b")


def _make_date(year: int, month: int, day: int) -> Optional[datetime]:
    try:
        return datetime(year, month, day, tzinfo=timezone.utc)
    except ValueError:
        return None


def _from_day_month_year(match) -> Optional[datetime]:
    day, month_name, year = match.groups()
    return _make_date(int(year), MONTHS[month_name.lower()], int(day))


def _from_month_day_year(match) -> Optional[datetime]:
    month_name, day, year = match.groups()
    return _make_date(int(year), MONTHS[month_name.lower()], int(day))


def _from_slashed(match) -> Optional[datetime]:
    first, second, year = (int(g) for g in match.groups())
    day, month = first, second
    if day > 31 or month > 12:
        day, month = second, first
    return _make_date(year, month, day)


def _from_iso_like(match) -> Optional[datetime]:
    year, month, day = (int(g) for g in match.groups())
    return _make_date(year, month, day)


STRATEGIES = [
    (DAY_MONTH_YEAR, _from_day_month_year),
    (MONTH_DAY_YEAR, _from_month_day_year),
    (SLASHED, _from_slashed),
    (ISO_LIKE, _from_iso_like),
]


def _native_parse(text: str) -> Optional[datetime]:
    try:
        parsed = date_parser.parse(text)
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_deadline(deadline) -> Optional[datetime]:
    """
    Parse a scraped deadline string into an aware UTC datetime.

    Returns None when the value is empty or no strategy yields a valid date.
    """
    if not deadline or not isinstance(deadline, str):
        return None

    text = deadline.strip()
    if not text:
        return None

    for pattern, build in STRATEGIES:
        match = pattern.search(text)
        if match:
            parsed = build(match)
            if parsed is not None:
                return parsed

    parsed = _native_parse(text)
    if parsed is None:
        logger.debug(f"[deadline] Could not parse deadline: {deadline!r}")
    return parsed


def deadline_or_default(deadline, now: Optional[datetime] = None) -> datetime:
    """Parse a deadline, falling back to now + 30 days."""
    parsed = parse_deadline(deadline)
    if parsed is not None:
        return parsed
    now = now or datetime.now(timezone.utc)
    return now + timedelta(days=DEFAULT_DEADLINE_DAYS)
