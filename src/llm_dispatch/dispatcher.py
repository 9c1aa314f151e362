"""Concurrent fan-out of one conversation to many provider targets."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping, Sequence
from contextlib import aclosing

import httpx

from llm_dispatch.aggregator import StreamSession
from llm_dispatch.config import DispatchConfig
from llm_dispatch.errors import (
    DispatchError,
    DispatchValidationError,
    MissingCredentialError,
    ProviderProtocolError,
    TargetValidationError,
)
from llm_dispatch.providers import BaseProvider, build_adapters
from llm_dispatch.registry import Provider, ProviderRegistry
from llm_dispatch.types import DispatchTarget, Message, ModelResponse, StreamEvent, TokenUsage
from llm_dispatch.usage import UsageTracker

logger = logging.getLogger(__name__)

StreamSink = Callable[[StreamEvent], Awaitable[None] | None]


class Dispatcher:
    """Sends one message history to every requested target concurrently.

    Failures are isolated per target: each target yields exactly one
    ModelResponse (batch) or one terminal StreamEvent (streaming), and only
    malformed dispatch input raises. The dispatcher makes one attempt per
    target and imposes no timeout of its own.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        adapters: Mapping[str, BaseProvider],
        *,
        usage: UsageTracker | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._registry = registry
        self._adapters = dict(adapters)
        self._usage = usage
        self._clock = clock

    @classmethod
    def from_config(
        cls,
        registry: ProviderRegistry,
        config: DispatchConfig | None = None,
        *,
        usage: UsageTracker | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> Dispatcher:
        """Build adapters for every registered provider from the family table."""
        return cls(registry, build_adapters(registry, config, transport=transport), usage=usage)

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    async def aclose(self) -> None:
        """Close every adapter's HTTP client."""
        await asyncio.gather(*(adapter.aclose() for adapter in self._adapters.values()))

    async def dispatch_batch(
        self,
        messages: Sequence[Message],
        targets: Sequence[DispatchTarget],
        *,
        user_key: str | None = None,
    ) -> list[ModelResponse]:
        """Wait for every target; results are positional, one per target."""
        history = self._validate(messages, targets)
        logger.debug("Dispatching batch", extra={"targets": [t.target_id for t in targets]})
        results = await asyncio.gather(*(self._run_target(history, target, user_key) for target in targets))
        return list(results)

    def stream(
        self,
        messages: Sequence[Message],
        targets: Sequence[DispatchTarget],
        *,
        user_key: str | None = None,
    ) -> StreamSession:
        """Return a session yielding every target's events as they arrive.

        Consume it with ``async with session: async for event in session``.
        """
        history = self._validate(messages, targets)
        return StreamSession(
            [
                (target, self._stream_target(index, history, target, user_key))
                for index, target in enumerate(targets)
            ]
        )

    async def dispatch_streaming(
        self,
        messages: Sequence[Message],
        targets: Sequence[DispatchTarget],
        sink: StreamSink,
        *,
        user_key: str | None = None,
    ) -> list[ModelResponse]:
        """Forward every event to ``sink`` until drained, then return the results.

        If the sink raises or the caller is cancelled, in-flight targets are
        cancelled with it.
        """
        session = self.stream(messages, targets, user_key=user_key)
        async with session:
            async for event in session:
                outcome = sink(event)
                if inspect.isawaitable(outcome):
                    await outcome
        return session.responses()

    def get_adapter(self, provider_id: str) -> BaseProvider | None:
        return self._adapters.get(provider_id)

    @staticmethod
    def _validate(messages: Sequence[Message], targets: Sequence[DispatchTarget]) -> list[Message]:
        if not messages:
            raise DispatchValidationError("at least one message is required")
        if not targets:
            raise DispatchValidationError("at least one target is required")
        return list(messages)

    def _prepare(self, target: DispatchTarget) -> tuple[Provider, BaseProvider, str]:
        """Resolve a target or raise the reason it cannot be invoked."""
        provider = self._registry.resolve(target.provider_id)
        if provider is None:
            raise TargetValidationError(f"unknown provider '{target.provider_id}'")
        credential = self._registry.get_credential(target.provider_id)
        if credential is None:
            raise MissingCredentialError(target.provider_id)
        if not provider.supports_model(target.model):
            raise TargetValidationError(f"model '{target.model}' is not supported by '{provider.id}'")
        adapter = self._adapters.get(provider.id)
        if adapter is None:
            raise TargetValidationError(f"no adapter configured for '{provider.id}'")
        return provider, adapter, credential

    async def _run_target(
        self,
        messages: list[Message],
        target: DispatchTarget,
        user_key: str | None,
    ) -> ModelResponse:
        start = self._clock()
        try:
            provider, adapter, credential = self._prepare(target)
        except DispatchError as exc:
            return self._failure(target, exc, start)

        try:
            result = await adapter.invoke(credential, target.model, messages, target.options())
        except Exception as exc:
            response = self._failure(target, exc, start, provider)
        else:
            response = ModelResponse(
                provider_id=provider.id,
                model=target.model,
                model_name=self._display_name(target, provider),
                response=result.text,
                latency_ms=self._elapsed_ms(start),
                usage=result.usage,
                cost=provider.cost_for(result.usage.total_tokens),
            )
            self._log_completed(response)
        self._record(user_key, response)
        return response

    async def _stream_target(
        self,
        index: int,
        messages: list[Message],
        target: DispatchTarget,
        user_key: str | None,
    ) -> AsyncIterator[StreamEvent]:
        start = self._clock()
        try:
            provider, adapter, credential = self._prepare(target)
        except DispatchError as exc:
            yield self._terminal(index, target, self._failure(target, exc, start))
            return

        parts: list[str] = []
        usage: TokenUsage | None = None
        try:
            chunks = adapter.stream(credential, target.model, messages, target.options())
            async with aclosing(chunks):
                async for chunk in chunks:
                    if chunk.type == "done":
                        usage = chunk.usage or TokenUsage()
                        break
                    if chunk.text:
                        parts.append(chunk.text)
                        yield StreamEvent(
                            index=index,
                            provider_id=target.provider_id,
                            model=target.model,
                            chunk=chunk.text,
                        )
            if usage is None:
                raise ProviderProtocolError(provider.id, "stream ended without a completion marker")
        except Exception as exc:
            response = self._failure(target, exc, start, provider)
        else:
            response = ModelResponse(
                provider_id=provider.id,
                model=target.model,
                model_name=self._display_name(target, provider),
                response="".join(parts),
                latency_ms=self._elapsed_ms(start),
                usage=usage,
                cost=provider.cost_for(usage.total_tokens),
            )
            self._log_completed(response)
        self._record(user_key, response)
        yield self._terminal(index, target, response, accumulated="".join(parts))

    @staticmethod
    def _terminal(
        index: int,
        target: DispatchTarget,
        response: ModelResponse,
        accumulated: str = "",
    ) -> StreamEvent:
        return StreamEvent(
            index=index,
            provider_id=target.provider_id,
            model=target.model,
            chunk="",
            is_complete=True,
            result=response,
            accumulated=accumulated,
        )

    def _failure(
        self,
        target: DispatchTarget,
        exc: Exception,
        start: float,
        provider: Provider | None = None,
    ) -> ModelResponse:
        kind = getattr(exc, "kind", "internal")
        logger.warning(
            "Target failed",
            extra={"target_id": target.target_id, "error_kind": kind, "error": str(exc)},
        )
        return ModelResponse(
            provider_id=target.provider_id,
            model=target.model,
            model_name=self._display_name(target, provider),
            latency_ms=self._elapsed_ms(start) if provider is not None else 0,
            error=str(exc) or type(exc).__name__,
            error_kind=kind,
        )

    @staticmethod
    def _display_name(target: DispatchTarget, provider: Provider | None) -> str:
        if provider is None:
            return target.target_id
        return f"{provider.name} - {target.model}"

    def _elapsed_ms(self, start: float) -> int:
        return int((self._clock() - start) * 1000)

    def _record(self, user_key: str | None, response: ModelResponse) -> None:
        if self._usage is not None and user_key is not None:
            self._usage.record_response(user_key, response)

    @staticmethod
    def _log_completed(response: ModelResponse) -> None:
        logger.info(
            "Target completed",
            extra={
                "target_id": response.model_id,
                "latency_ms": response.latency_ms,
                "usage_total_tokens": response.tokens_used,
                "usage_estimated": response.usage.estimated,
                "response_length": len(response.response),
            },
        )
