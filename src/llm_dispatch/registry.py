"""Static provider catalog and per-process credential store."""

from __future__ import annotations

import os
from collections.abc import Iterable, Mapping

from pydantic import BaseModel, ConfigDict, Field


class Provider(BaseModel):
    """Describes one upstream LLM service."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    endpoint: str
    # key into the adapter family table
    family: str
    models: tuple[str, ...]
    max_tokens: int
    supports_streaming: bool = True
    cost_per_1k_tokens: float = 0.0
    extra_headers: dict[str, str] = Field(default_factory=dict)

    def cost_for(self, total_tokens: int) -> float:
        return total_tokens / 1000 * self.cost_per_1k_tokens

    def supports_model(self, model: str) -> bool:
        return model in self.models


class ProviderRegistry:
    """Provider descriptors plus caller-supplied credentials.

    Construct one per process (or per test) and hand it to the dispatcher.
    Single-key dict reads and writes are atomic, so concurrent
    ``set_credential`` calls and in-flight dispatches need no locking; a
    dispatch keeps whatever credential it resolved.
    """

    def __init__(self, providers: Iterable[Provider] = ()) -> None:
        self._providers: dict[str, Provider] = {}
        self._credentials: dict[str, str] = {}
        for provider in providers:
            self.register(provider)

    def register(self, provider: Provider) -> None:
        """Add or overwrite a provider descriptor by id."""
        self._providers[provider.id] = provider

    def resolve(self, provider_id: str) -> Provider | None:
        return self._providers.get(provider_id)

    def get_models(self, provider_id: str) -> list[str]:
        provider = self._providers.get(provider_id)
        return list(provider.models) if provider is not None else []

    def list_providers(self) -> list[Provider]:
        return list(self._providers.values())

    def set_credential(self, provider_id: str, secret: str) -> None:
        """Store a secret for a provider; it is only validated on first use."""
        self._credentials[provider_id] = secret

    def get_credential(self, provider_id: str) -> str | None:
        return self._credentials.get(provider_id) or None

    def has_credential(self, provider_id: str) -> bool:
        return self.get_credential(provider_id) is not None

    def clear_credential(self, provider_id: str) -> None:
        self._credentials.pop(provider_id, None)

    def load_credentials_from_env(self, environ: Mapping[str, str] | None = None) -> list[str]:
        """Read ``<PROVIDER_ID>_API_KEY`` for every registered provider.

        Returns the ids that received a credential.
        """
        env = os.environ if environ is None else environ
        loaded: list[str] = []
        for provider_id in self._providers:
            secret = env.get(f"{provider_id.upper()}_API_KEY")
            if secret:
                self.set_credential(provider_id, secret)
                loaded.append(provider_id)
        return loaded


DEFAULT_PROVIDERS: tuple[Provider, ...] = (
    Provider(
        id="openai",
        name="OpenAI",
        endpoint="https://api.openai.com/v1",
        family="openai",
        models=("gpt-4-turbo-preview", "gpt-4", "gpt-3.5-turbo"),
        max_tokens=128000,
        cost_per_1k_tokens=0.03,
    ),
    Provider(
        id="anthropic",
        name="Anthropic Claude",
        endpoint="https://api.anthropic.com/v1",
        family="anthropic",
        models=("claude-3-opus-20240229", "claude-3-sonnet-20240229", "claude-3-haiku-20240307"),
        max_tokens=200000,
        cost_per_1k_tokens=0.015,
    ),
    Provider(
        id="openrouter",
        name="OpenRouter",
        endpoint="https://openrouter.ai/api/v1",
        family="openai",
        models=("meta-llama/llama-3-70b-instruct", "mistralai/mixtral-8x7b-instruct", "google/gemini-pro"),
        max_tokens=32000,
        cost_per_1k_tokens=0.015,
        extra_headers={"HTTP-Referer": "https://data-aggregator.vercel.app", "X-Title": "Data Aggregator"},
    ),
    Provider(
        id="grok",
        name="xAI Grok",
        endpoint="https://api.x.ai/v1",
        family="openai",
        models=("grok-beta",),
        max_tokens=100000,
        cost_per_1k_tokens=0.01,
    ),
    Provider(
        id="requesty",
        name="Requesty AI",
        endpoint="https://api.requesty.ai/v1",
        family="requesty",
        models=("requesty-turbo", "requesty-base"),
        max_tokens=32000,
        supports_streaming=False,
    ),
)


def default_registry() -> ProviderRegistry:
    """Return a fresh registry holding the built-in provider catalog."""
    return ProviderRegistry(DEFAULT_PROVIDERS)
