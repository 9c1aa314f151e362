"""Requesty AI adapter."""

from __future__ import annotations

from typing import Any

from llm_dispatch.errors import ProviderProtocolError
from llm_dispatch.providers.base import BaseProvider
from llm_dispatch.types import InvokeOptions, Message, NormalizedResult, TokenUsage

_COMPLETIONS_PATH = "/completions"


class RequestyProvider(BaseProvider):
    """Async adapter for Requesty completions; streaming falls back to one chunk."""

    name = "requesty"

    async def _invoke_once(
        self,
        credential: str,
        model: str,
        messages: list[Message],
        options: InvokeOptions,
    ) -> NormalizedResult:
        payload = {
            "model": model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "temperature": self._temperature(options),
            "max_tokens": self._max_tokens(options),
        }
        headers = {"X-API-Key": credential, "Content-Type": "application/json"}
        data = await self._post_json(_COMPLETIONS_PATH, headers, payload, options)

        text = data.get("response")
        if not isinstance(text, str):
            raise ProviderProtocolError(self.provider_id, "response field missing or not text")
        return NormalizedResult(text=text, usage=self._parse_usage(data.get("usage")))

    @staticmethod
    def _parse_usage(usage: Any) -> TokenUsage:
        # Usage is optional here; absent means zeros, not an estimate.
        if not isinstance(usage, dict):
            return TokenUsage()
        return TokenUsage.reported(usage.get("prompt"), usage.get("completion"), usage.get("total"))
