"""
Pipeline configuration.

Everything is read from environment variables (a .env file is loaded by the
service entry point). Without DATABASE_URL the service starts but the crawl
pipeline stays disabled.
"""

import os
import json
import logging
from typing import Dict, List, Optional
from urllib.parse import urlparse

from opportunity_crawler.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_OPENROUTER_MODEL = "google/gemini-2.5-flash"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"[config] {name}={value!r} is not an integer, using {default}")
        return default


class PipelineConfig:
    """Crawl pipeline settings resolved from the environment"""

    def __init__(self):
        self.database_url = os.getenv("SUPABASE_DB_URL") or os.getenv("DATABASE_URL")

        self.scraperdo_api_key = os.getenv("SCRAPERDO_API_KEY", "")
        self.scraperdo_render = _env_bool("SCRAPERDO_RENDER", False)
        self.scraperdo_super_proxy = _env_bool("SCRAPERDO_SUPER_PROXY", True)
        self.scraperdo_timeout = float(_env_int("SCRAPERDO_TIMEOUT", 60))

        self.listing_concurrency = _env_int("CRAWL_LISTING_CONCURRENCY", 5)
        self.details_concurrency = _env_int("CRAWL_DETAILS_CONCURRENCY", 10)
        self.job_attempts = _env_int("CRAWL_JOB_ATTEMPTS", 3)
        self.backoff_seconds = float(_env_int("CRAWL_BACKOFF_SECONDS", 2))
        self.scheduler_interval_seconds = _env_int("CRAWL_SCHEDULER_INTERVAL_SECONDS", 300)
        self.scheduler_disabled = _env_bool("CRAWL_DISABLE_SCHEDULER", False)

        self.llm_providers = load_llm_providers()

        if self.database_url:
            parsed = urlparse(self.database_url)
            logger.info(
                f"[config] Database configured: {parsed.scheme}://{parsed.username}:***@"
                f"{parsed.hostname}:{parsed.port or 5432}{parsed.path}"
            )
        else:
            logger.warning("[config] DATABASE_URL not set - crawl pipeline disabled")

        if not self.scraperdo_api_key:
            logger.warning("[config] SCRAPERDO_API_KEY not set - page fetches will fail")

    @property
    def is_db_enabled(self) -> bool:
        return bool(self.database_url)


def load_llm_providers() -> List[Dict]:
    """
    Read LLM provider configs.

    LLM_PROVIDERS holds a JSON list of
    {"provider", "model", "base_url", "api_keys", "max_retries"}.
    Without it a single OpenRouter provider is built from OPENROUTER_API_KEY
    (comma separated keys are rotated).
    """
    raw = os.getenv("LLM_PROVIDERS")
    if raw:
        try:
            providers = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"LLM_PROVIDERS is not valid JSON: {e}") from e
        if not isinstance(providers, list):
            raise ConfigurationError("LLM_PROVIDERS must be a JSON list")
        return providers

    keys = [k.strip() for k in os.getenv("OPENROUTER_API_KEY", "").split(",") if k.strip()]
    if not keys:
        logger.warning("[config] No LLM provider configured - extraction will fail")
        return []

    return [{
        "provider": "openrouter",
        "model": os.getenv("OPENROUTER_MODEL", DEFAULT_OPENROUTER_MODEL),
        "base_url": DEFAULT_OPENROUTER_BASE_URL,
        "api_keys": keys,
    }]


_config: Optional[PipelineConfig] = None


def get_config() -> PipelineConfig:
    """Get or create the process-wide config"""
    global _config
    if _config is None:
        _config = PipelineConfig()
    return _config
