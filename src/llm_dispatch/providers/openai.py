"""OpenAI-compatible chat completions adapter (OpenAI, OpenRouter, Grok)."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any

from llm_dispatch.errors import ProviderError, ProviderProtocolError, error_for_status
from llm_dispatch.providers.base import BaseProvider
from llm_dispatch.types import InvokeOptions, Message, NormalizedResult, StreamChunk, TokenUsage

_CHAT_PATH = "/chat/completions"

# in-stream error codes/types and the HTTP status they correspond to
_STREAM_ERROR_STATUS = {
    "invalid_api_key": 401,
    "authentication_error": 401,
    "permission_denied": 403,
    "rate_limit_exceeded": 429,
    "insufficient_quota": 429,
    "server_error": 500,
    "service_unavailable": 503,
}


class OpenAIProvider(BaseProvider):
    """Async adapter for the Chat Completions wire format, system messages inline."""

    name = "openai"
    _logger = logging.getLogger(__name__)

    async def _invoke_once(
        self,
        credential: str,
        model: str,
        messages: list[Message],
        options: InvokeOptions,
    ) -> NormalizedResult:
        payload = self._build_payload(model, messages, options)
        data = await self._post_json(_CHAT_PATH, self._headers(credential), payload, options)

        choices = data.get("choices")
        if not choices or not isinstance(choices, list) or not isinstance(choices[0], dict):
            raise ProviderProtocolError(self.provider_id, "response has no choices")
        message = choices[0].get("message") or {}
        text = message.get("content")
        if text is not None and not isinstance(text, str):
            raise ProviderProtocolError(self.provider_id, "message content is not text")

        return NormalizedResult(text=text or "", usage=self._parse_usage(data.get("usage")))

    def stream(
        self,
        credential: str,
        model: str,
        messages: list[Message],
        options: InvokeOptions | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Return an async iterator that streams text deltas."""
        options = options or InvokeOptions()

        async def _gen() -> AsyncIterator[StreamChunk]:
            payload = self._build_payload(model, messages, options)
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}

            parts: list[str] = []
            usage: TokenUsage | None = None
            async with self._open_stream(_CHAT_PATH, self._headers(credential), payload, options) as response:
                async for event in self._sse_events(response):
                    if event == "[DONE]":
                        if usage is None:
                            # Vendor sent no usage chunk; fall back to a flagged estimate.
                            usage = TokenUsage.estimate(messages, "".join(parts))
                        yield StreamChunk(type="done", usage=usage)
                        return
                    if not isinstance(event, dict):
                        self._logger.debug("Skipping non-JSON streaming chunk: %s", event)
                        continue
                    if "error" in event:
                        raise self._stream_error(event["error"])

                    if event.get("usage"):
                        usage = self._parse_usage(event["usage"])
                    chunk = self._extract_delta_text(event)
                    if chunk:
                        parts.append(chunk)
                        yield StreamChunk(type="text_delta", text=chunk, raw=event)

            raise ProviderProtocolError(self.provider_id, "stream ended without [DONE]")

        return _gen()

    def _headers(self, credential: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {credential}",
            "Content-Type": "application/json",
        }

    def _build_payload(self, model: str, messages: list[Message], options: InvokeOptions) -> dict[str, Any]:
        return {
            "model": model,
            "messages": [self._serialize_message(m) for m in messages],
            "temperature": self._temperature(options),
            "max_tokens": self._max_tokens(options),
        }

    @staticmethod
    def _serialize_message(message: Message) -> dict[str, Any]:
        return {"role": message.role, "content": message.content}

    @staticmethod
    def _parse_usage(usage: Any) -> TokenUsage:
        if not isinstance(usage, dict):
            return TokenUsage()
        return TokenUsage.reported(
            usage.get("prompt_tokens"),
            usage.get("completion_tokens"),
            usage.get("total_tokens"),
        )

    def _extract_delta_text(self, event: dict[str, Any]) -> str:
        """Extract the standard streaming text delta (delta.content)."""
        choices = event.get("choices") or []
        if not isinstance(choices, list) or not choices:
            return ""
        if not isinstance(choices[0], dict):
            raise ProviderProtocolError(self.provider_id, "stream choice is not an object")
        delta = choices[0].get("delta") or {}
        content = delta.get("content") if isinstance(delta, dict) else None
        return content if isinstance(content, str) else ""

    def _stream_error(self, error: Any) -> ProviderError:
        if not isinstance(error, dict):
            return ProviderProtocolError(self.provider_id, f"stream error: {error}")
        message = error.get("message") or "stream error"
        code = error.get("code")
        status: int | None = None
        if isinstance(code, int) and not isinstance(code, bool):
            status = code
        elif isinstance(code, str) and code.isdigit():
            status = int(code)
        else:
            kind = code if isinstance(code, str) else error.get("type")
            status = _STREAM_ERROR_STATUS.get(kind) if isinstance(kind, str) else None
        if status is None or status < 400:
            return ProviderProtocolError(self.provider_id, f"stream error: {message}")
        return error_for_status(self.provider_id, status, message)
