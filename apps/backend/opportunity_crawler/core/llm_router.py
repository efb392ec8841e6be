"""
LLM router with provider fallback and API key rotation.

Providers are tried in order. A failure rotates the failing provider's key
and moves on to the next untried provider, each with its own retry budget,
until every config has been exhausted.
"""

import logging
from typing import Dict, List, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from opportunity_crawler.core.errors import ConfigurationError, LLMUnavailableError, TransientError

logger = logging.getLogger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_TIMEOUT = 60.0
DEFAULT_MAX_RETRIES = 3


class ProviderConfig:
    """One OpenAI-compatible chat completion endpoint"""

    def __init__(
        self,
        provider: str,
        model: str,
        api_keys: List[str],
        base_url: Optional[str] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ):
        if not api_keys:
            raise ConfigurationError(f"Provider {provider!r} has no API keys")
        if provider != "openai" and not base_url:
            raise ConfigurationError(f"Provider {provider!r} requires a base_url")
        self.provider = provider
        self.model = model
        self.api_keys = list(api_keys)
        self.base_url = (base_url or OPENAI_BASE_URL).rstrip("/")
        self.max_retries = max(1, int(max_retries or DEFAULT_MAX_RETRIES))

    @classmethod
    def from_dict(cls, data: Dict) -> "ProviderConfig":
        return cls(
            provider=data.get("provider", "openai"),
            model=data["model"],
            api_keys=data.get("api_keys") or data.get("apiKeys") or [],
            base_url=data.get("base_url") or data.get("baseURL"),
            max_retries=data.get("max_retries") or data.get("maxRetries") or DEFAULT_MAX_RETRIES,
        )

    def __repr__(self):
        return f"<ProviderConfig(provider={self.provider}, model={self.model}, keys={len(self.api_keys)})>"


class RouterState:
    """Current provider index and per-provider key index."""

    def __init__(self, provider_count: int, current_index: int = 0):
        self.current_index = current_index
        self.key_indices: Dict[int, int] = {i: 0 for i in range(provider_count)}

    def __repr__(self):
        return f"RouterState(current={self.current_index}, keys={self.key_indices})"


class AIModelRouter:
    """Routes completions across providers, rotating keys on failure"""

    def __init__(
        self,
        configs: List[ProviderConfig],
        state: Optional[RouterState] = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_wait=None,
    ):
        if not configs:
            raise ConfigurationError("No model configs provided")
        self.configs = configs
        self.state = state or RouterState(len(configs))
        self.timeout = timeout
        self.transport = transport
        self.retry_wait = retry_wait if retry_wait is not None else wait_exponential(multiplier=1, min=1, max=5)

    @classmethod
    def from_dicts(cls, providers: List[Dict], **kwargs) -> "AIModelRouter":
        return cls([ProviderConfig.from_dict(p) for p in providers], **kwargs)

    def rotate_api_key(self, index: int):
        total = len(self.configs[index].api_keys)
        self.state.key_indices[index] = (self.state.key_indices.get(index, 0) + 1) % total
        logger.info(f"[llm_router] {self.configs[index].provider!r} key rotated")

    async def _call(self, index: int, prompt: str, temperature: float, max_tokens: Optional[int]) -> str:
        config = self.configs[index]
        api_key = config.api_keys[self.state.key_indices.get(index, 0)]

        payload = {
            "model": config.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": temperature,
        }
        if max_tokens:
            payload["max_tokens"] = max_tokens

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    f"{config.base_url}/chat/completions",
                    headers={
                        "Authorization": f"Bearer {api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
                response.raise_for_status()
                data = response.json()
            content = data["choices"][0]["message"]["content"] or ""
        except (httpx.HTTPError, ValueError, KeyError, IndexError, TypeError) as e:
            raise TransientError(f"{config.provider}/{config.model} failed: {e}") from e

        logger.info(f"[llm_router] [{config.provider}] generated successfully with {config.model}")
        return content

    async def _fallback_and_retry(
        self, prompt: str, temperature: float, max_tokens: Optional[int], tried: List[int]
    ) -> str:
        for index, config in enumerate(self.configs):
            if index in tried:
                continue
            self.state.current_index = index
            tried.append(index)

            try:
                async for attempt in AsyncRetrying(
                    stop=stop_after_attempt(config.max_retries),
                    wait=self.retry_wait,
                    retry=retry_if_exception_type(TransientError),
                    reraise=True,
                ):
                    with attempt:
                        try:
                            return await self._call(index, prompt, temperature, max_tokens)
                        except TransientError as e:
                            logger.warning(
                                f"[llm_router] {config.model} attempt "
                                f"{attempt.retry_state.attempt_number}/{config.max_retries} failed: {e}"
                            )
                            self.rotate_api_key(index)
                            raise
            except TransientError as e:
                logger.error(f"[llm_router] Model {config.model} exhausted, trying next: {e}")

        raise LLMUnavailableError("All model configs failed.")

    async def generate(self, prompt: str, temperature: float = 0.0, max_tokens: Optional[int] = None) -> str:
        """Generate a completion, falling back across providers."""
        tried: List[int] = []
        index = self.state.current_index
        logger.info(f"[llm_router] Generating with model: {self.configs[index].model}")

        try:
            return await self._call(index, prompt, temperature, max_tokens)
        except TransientError as e:
            logger.warning(f"[llm_router] Initial model failed: {e}")
            self.rotate_api_key(index)
            tried.append(index)
            return await self._fallback_and_retry(prompt, temperature, max_tokens, tried)
