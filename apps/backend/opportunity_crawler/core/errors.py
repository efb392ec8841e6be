"""
Error taxonomy for the crawl pipeline.

Transient and malformed-response failures are retried by whoever owns the
attempt budget (fetcher, extraction engine, job queue). Errors with
``retryable = False`` fail a queue job immediately.
"""


class CrawlError(Exception):
    """Base class for pipeline errors."""

    retryable = True


class TransientError(CrawlError):
    """Network timeout, proxy 5xx, rate limit."""


class FetchError(TransientError):
    """Fetch attempt budget exhausted."""


class LLMResponseError(CrawlError):
    """LLM output could not be parsed or is missing required fields."""


class LLMUnavailableError(TransientError):
    """Every configured provider/key pair failed."""


class ConfigurationError(CrawlError):
    """Unknown scraper type, unsupported URL, bad provider config."""

    retryable = False


class ScraperNotImplementedError(CrawlError):
    """Scraper stub for a source without a working implementation."""

    retryable = False


class CacheMissError(CrawlError):
    """Listing cache entry is gone or corrupt."""

    retryable = False


class ListingCrawlError(CrawlError):
    """Listing scrape failed or returned no entries."""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class SourceNotFoundError(CrawlError):
    retryable = False


class SourceInactiveError(CrawlError):
    """Source is disabled or already has a crawl in flight."""

    retryable = False


class DraftNotFoundError(CrawlError):
    retryable = False


class DraftStateError(CrawlError):
    """Draft is not approved or has already been published."""

    retryable = False


def is_retryable(error: BaseException) -> bool:
    """Queue-level retry decision. Unknown exceptions are retried."""
    return getattr(error, "retryable", True)
