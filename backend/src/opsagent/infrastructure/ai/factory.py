"""Vendor client factory keyed on ProviderTag."""

from functools import lru_cache

from opsagent.config import Settings, get_settings
from opsagent.infrastructure.ai.client import ChatCompletionsClient, GeminiClient, GPTClient
from opsagent.infrastructure.ai.cost_tracker import CostTracker
from opsagent.infrastructure.ai.types import ProviderTag
from opsagent.shared.exceptions import ConfigurationError
from opsagent.shared.logging import get_logger

logger = get_logger(__name__)

_CLIENT_CLASSES: dict[ProviderTag, type[ChatCompletionsClient]] = {
    ProviderTag.GPT: GPTClient,
    ProviderTag.GEMINI: GeminiClient,
}


@lru_cache(maxsize=1)
def get_cost_tracker() -> CostTracker:
    """Get a shared CostTracker instance."""
    return CostTracker()


def build_provider_client(tag: ProviderTag, settings: Settings | None = None) -> ChatCompletionsClient:
    """Build a client for one vendor.

    Args:
        tag: Which vendor to build
        settings: Settings to read credentials from (defaults to the cached ones)

    Raises:
        ConfigurationError: If the vendor's API key is not configured
    """
    settings = settings or get_settings()
    credentials = {
        ProviderTag.GPT: (settings.gpt_api_key, settings.gpt_base_url, "GPT_API_KEY"),
        ProviderTag.GEMINI: (settings.gemini_api_key, settings.gemini_base_url, "GEMINI_API_KEY"),
    }
    api_key, base_url, env_name = credentials[tag]
    if not api_key:
        raise ConfigurationError(f"{env_name} is not configured", details={"provider": tag.value})

    client_class = _CLIENT_CLASSES[tag]
    logger.info("using_ai_provider", provider=tag.value, base_url=base_url)
    return client_class(
        api_key=api_key,
        base_url=base_url,
        timeout=settings.ai_request_timeout_seconds,
    )


class ProviderClientFactory:
    """Lazily builds and caches one client per vendor."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings
        self._clients: dict[ProviderTag, ChatCompletionsClient] = {}

    def get(self, tag: ProviderTag) -> ChatCompletionsClient:
        client = self._clients.get(tag)
        if client is None:
            client = build_provider_client(tag, self._settings)
            self._clients[tag] = client
        return client

    async def close(self) -> None:
        """Close every client built so far (used at app shutdown)."""
        for client in self._clients.values():
            await client.close()
        self._clients.clear()
