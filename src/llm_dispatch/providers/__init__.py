"""Provider adapters for llm_dispatch."""

from __future__ import annotations

import httpx

from llm_dispatch.config import DispatchConfig
from llm_dispatch.registry import ProviderRegistry

from .anthropic import AnthropicProvider
from .base import BaseProvider
from .openai import OpenAIProvider
from .requesty import RequestyProvider

ADAPTER_FAMILIES: dict[str, type[BaseProvider]] = {
    OpenAIProvider.name: OpenAIProvider,
    AnthropicProvider.name: AnthropicProvider,
    RequestyProvider.name: RequestyProvider,
}


def build_adapters(
    registry: ProviderRegistry,
    config: DispatchConfig | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[str, BaseProvider]:
    """Instantiate one adapter per registered provider whose family is known."""
    config = config or DispatchConfig()
    adapters: dict[str, BaseProvider] = {}
    for provider in registry.list_providers():
        family = ADAPTER_FAMILIES.get(provider.family)
        if family is None:
            continue
        adapters[provider.id] = family(
            provider_id=provider.id,
            base_url=config.endpoint_overrides.get(provider.id, provider.endpoint),
            timeout_s=config.timeout_s,
            rate_limit_retries=config.rate_limit_retries,
            retry_backoff_s=config.retry_backoff_s,
            default_temperature=config.default_temperature,
            default_max_tokens=config.default_max_tokens,
            extra_headers=provider.extra_headers,
            transport=transport,
        )
    return adapters


__all__ = [
    "ADAPTER_FAMILIES",
    "BaseProvider",
    "OpenAIProvider",
    "AnthropicProvider",
    "RequestyProvider",
    "build_adapters",
]
