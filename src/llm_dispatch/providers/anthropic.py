"""Anthropic Messages API adapter."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

from llm_dispatch.errors import ProviderError, ProviderProtocolError, error_for_status
from llm_dispatch.providers.base import BaseProvider
from llm_dispatch.types import InvokeOptions, Message, NormalizedResult, StreamChunk, TokenUsage

_MESSAGES_PATH = "/messages"
_API_VERSION = "2023-06-01"

# in-stream error types and the HTTP status they correspond to
_STREAM_ERROR_STATUS = {
    "authentication_error": 401,
    "permission_error": 403,
    "rate_limit_error": 429,
    "overloaded_error": 529,
    "api_error": 500,
}


class AnthropicProvider(BaseProvider):
    """Async adapter for the Anthropic Messages API, system content hoisted out."""

    name = "anthropic"

    async def _invoke_once(
        self,
        credential: str,
        model: str,
        messages: list[Message],
        options: InvokeOptions,
    ) -> NormalizedResult:
        payload = self._build_payload(model, messages, options)
        data = await self._post_json(_MESSAGES_PATH, self._headers(credential), payload, options)
        text = self._extract_text(data)
        return NormalizedResult(text=text, usage=self._parse_usage(data.get("usage")))

    def stream(
        self,
        credential: str,
        model: str,
        messages: list[Message],
        options: InvokeOptions | None = None,
    ) -> AsyncIterator[StreamChunk]:
        options = options or InvokeOptions()

        async def _gen() -> AsyncIterator[StreamChunk]:
            payload = self._build_payload(model, messages, options)
            payload["stream"] = True

            input_tokens: int | None = None
            output_tokens: int | None = None
            async with self._open_stream(_MESSAGES_PATH, self._headers(credential), payload, options) as response:
                async for event in self._sse_events(response):
                    if not isinstance(event, dict):
                        continue
                    event_type = event.get("type")
                    if event_type == "message_start":
                        usage = (event.get("message") or {}).get("usage") or {}
                        input_tokens = usage.get("input_tokens")
                    elif event_type == "content_block_delta":
                        text = (event.get("delta") or {}).get("text")
                        if isinstance(text, str) and text:
                            yield StreamChunk(type="text_delta", text=text, raw=event)
                    elif event_type == "message_delta":
                        usage = event.get("usage") or {}
                        output_tokens = usage.get("output_tokens", output_tokens)
                    elif event_type == "message_stop":
                        yield StreamChunk(type="done", usage=TokenUsage.reported(input_tokens, output_tokens))
                        return
                    elif event_type == "error":
                        raise self._stream_error(event.get("error") or {})

            raise ProviderProtocolError(self.provider_id, "stream ended without message_stop")

        return _gen()

    def _headers(self, credential: str) -> dict[str, str]:
        return {
            "x-api-key": credential,
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }

    def _build_payload(self, model: str, messages: list[Message], options: InvokeOptions) -> dict[str, Any]:
        system_text, msgs = self._split_system(messages)

        payload: dict[str, Any] = {
            "model": model,
            "max_tokens": self._max_tokens(options),
            "temperature": self._temperature(options),
            "messages": [self._serialize_message(m) for m in msgs],
        }
        if system_text:
            payload["system"] = system_text
        return payload

    @staticmethod
    def _split_system(messages: list[Message]) -> tuple[str, list[Message]]:
        system_parts: list[str] = []
        rest: list[Message] = []
        for m in messages:
            if m.role == "system":
                system_parts.append(m.content)
            else:
                rest.append(m)
        return ("\n".join(system_parts), rest)

    @staticmethod
    def _serialize_message(message: Message) -> dict[str, Any]:
        return {
            "role": message.role,
            "content": [{"type": "text", "text": message.content}],
        }

    def _extract_text(self, data: dict[str, Any]) -> str:
        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise ProviderProtocolError(self.provider_id, "response has no content blocks")
        parts: list[str] = []
        for b in blocks:
            if isinstance(b, dict) and b.get("type") == "text":
                parts.append(b.get("text", ""))
        return "".join(parts)

    @staticmethod
    def _parse_usage(usage: Any) -> TokenUsage:
        if not isinstance(usage, dict):
            return TokenUsage()
        return TokenUsage.reported(usage.get("input_tokens"), usage.get("output_tokens"))

    def _stream_error(self, error: dict[str, Any]) -> ProviderError:
        message = error.get("message") or "stream error"
        status = _STREAM_ERROR_STATUS.get(error.get("type", ""))
        if status is None:
            return ProviderProtocolError(self.provider_id, message)
        return error_for_status(self.provider_id, status, message)
