"""Provider-agnostic adapter interface and shared HTTP helpers."""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Iterator, Mapping
from contextlib import asynccontextmanager, contextmanager
from typing import Any

import httpx

from llm_dispatch.errors import (
    ProviderProtocolError,
    ProviderRateLimitError,
    ProviderUnavailableError,
    error_for_status,
)
from llm_dispatch.types import InvokeOptions, Message, NormalizedResult, StreamChunk

logger = logging.getLogger(__name__)

DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 2000


class BaseProvider(ABC):
    """Abstract base class for one vendor family's adapter.

    An instance is bound to a single registry provider (its id and base URL)
    and owns one ``httpx.AsyncClient``. Credentials arrive per call.
    """

    name: str

    def __init__(
        self,
        *,
        provider_id: str | None = None,
        base_url: str,
        timeout_s: float = 60.0,
        rate_limit_retries: int = 0,
        retry_backoff_s: float = 1.0,
        default_temperature: float = DEFAULT_TEMPERATURE,
        default_max_tokens: int = DEFAULT_MAX_TOKENS,
        extra_headers: Mapping[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.provider_id = provider_id or self.name
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout_s, transport=transport)
        self._rate_limit_retries = rate_limit_retries
        self._retry_backoff_s = retry_backoff_s
        self._default_temperature = default_temperature
        self._default_max_tokens = default_max_tokens
        self._extra_headers = dict(extra_headers or {})

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def invoke(
        self,
        credential: str,
        model: str,
        messages: list[Message],
        options: InvokeOptions | None = None,
    ) -> NormalizedResult:
        """Run one non-streaming completion, retrying throttled calls if configured."""
        options = options or InvokeOptions()
        attempt = 0
        while True:
            try:
                return await self._invoke_once(credential, model, messages, options)
            except ProviderRateLimitError:
                if attempt >= self._rate_limit_retries:
                    raise
                delay = self._retry_backoff_s * 2**attempt
                logger.info(
                    "Rate limited, retrying",
                    extra={"provider_id": self.provider_id, "attempt": attempt + 1, "delay_s": delay},
                )
                await asyncio.sleep(delay)
                attempt += 1

    def stream(
        self,
        credential: str,
        model: str,
        messages: list[Message],
        options: InvokeOptions | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Yield text deltas followed by exactly one ``done`` chunk.

        Vendors without a streaming protocol get this default: one full
        invocation delivered as a single delta.
        """

        async def _gen() -> AsyncIterator[StreamChunk]:
            result = await self.invoke(credential, model, messages, options)
            if result.text:
                yield StreamChunk(type="text_delta", text=result.text)
            yield StreamChunk(type="done", usage=result.usage)

        return _gen()

    @abstractmethod
    async def _invoke_once(
        self,
        credential: str,
        model: str,
        messages: list[Message],
        options: InvokeOptions,
    ) -> NormalizedResult:
        """Single vendor round trip, no retries."""
        raise NotImplementedError

    def _temperature(self, options: InvokeOptions) -> float:
        return options.temperature if options.temperature is not None else self._default_temperature

    def _max_tokens(self, options: InvokeOptions) -> int:
        return options.max_tokens or self._default_max_tokens

    @staticmethod
    def _timeout_kwargs(options: InvokeOptions) -> dict[str, Any]:
        # httpx treats timeout=None as "no timeout", so only pass overrides
        return {"timeout": options.timeout_s} if options.timeout_s is not None else {}

    @contextmanager
    def _translate_transport_errors(self) -> Iterator[None]:
        try:
            yield
        except httpx.TimeoutException as exc:
            raise ProviderUnavailableError(self.provider_id, f"request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise ProviderUnavailableError(self.provider_id, f"transport error: {exc}") from exc

    async def _post_json(
        self,
        path: str,
        headers: dict[str, str],
        payload: dict[str, Any],
        options: InvokeOptions,
    ) -> dict[str, Any]:
        with self._translate_transport_errors():
            response = await self._client.post(
                path,
                headers={**headers, **self._extra_headers},
                json=payload,
                **self._timeout_kwargs(options),
            )
        return self._json_or_error(response)

    @asynccontextmanager
    async def _open_stream(
        self,
        path: str,
        headers: dict[str, str],
        payload: dict[str, Any],
        options: InvokeOptions,
    ) -> AsyncIterator[httpx.Response]:
        with self._translate_transport_errors():
            async with self._client.stream(
                "POST",
                path,
                headers={**headers, **self._extra_headers},
                json=payload,
                **self._timeout_kwargs(options),
            ) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    raise error_for_status(
                        self.provider_id,
                        response.status_code,
                        body.decode(errors="replace") or response.reason_phrase,
                    )
                yield response

    def _json_or_error(self, response: httpx.Response) -> dict[str, Any]:
        if response.status_code >= 400:
            raise error_for_status(
                self.provider_id,
                response.status_code,
                response.text or response.reason_phrase,
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderProtocolError(self.provider_id, "response body is not valid JSON") from exc
        if not isinstance(data, dict):
            raise ProviderProtocolError(self.provider_id, f"expected a JSON object, got {type(data).__name__}")
        return data

    async def _sse_events(self, response: httpx.Response) -> AsyncIterator[dict[str, Any] | str]:
        """Yield decoded ``data:`` payloads; non-JSON payloads come through as strings."""
        async for line in response.aiter_lines():
            line = line.strip()
            # SSE also carries "event:", "id:" and comment lines; only data matters here.
            if not line.startswith("data:"):
                continue
            data_str = line[len("data:") :].strip()
            try:
                yield json.loads(data_str)
            except json.JSONDecodeError:
                yield data_str
