"""Provider-agnostic request/response models."""

from __future__ import annotations

import math
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["system", "user", "assistant"]

_CHARS_PER_TOKEN = 4


class Message(BaseModel):
    """Single chat message."""

    role: Role
    content: str
    timestamp: datetime | None = None


class InvokeOptions(BaseModel):
    """Per-call sampling and transport options."""

    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, gt=0)
    timeout_s: float | None = Field(default=None, gt=0)


class TokenUsage(BaseModel):
    """Token accounting for one call.

    ``estimated`` is only set when the vendor reported nothing and the counts
    were derived from character length; cost derived from such usage is
    approximate as well.
    """

    model_config = ConfigDict(frozen=True)

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated: bool = False

    @classmethod
    def reported(cls, prompt: int | None, completion: int | None, total: int | None = None) -> TokenUsage:
        prompt = prompt or 0
        completion = completion or 0
        return cls(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=total if total else prompt + completion,
        )

    @classmethod
    def estimate(cls, messages: list[Message], completion_text: str) -> TokenUsage:
        """Approximate usage at four characters per token."""
        prompt = sum(math.ceil(len(m.content) / _CHARS_PER_TOKEN) for m in messages)
        completion = math.ceil(len(completion_text) / _CHARS_PER_TOKEN)
        return cls(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=prompt + completion,
            estimated=True,
        )


class NormalizedResult(BaseModel):
    """What every adapter returns from a non-streaming call."""

    text: str
    usage: TokenUsage = Field(default_factory=TokenUsage)


class StreamChunk(BaseModel):
    """Streaming chunks emitted by adapters."""

    type: Literal["text_delta", "done"]
    text: str = ""
    usage: TokenUsage | None = None
    # provider-specific payload kept for debugging
    raw: dict[str, Any] | None = None


class DispatchTarget(BaseModel):
    """One (provider, model) pair requested for a dispatch."""

    provider_id: str
    model: str
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, gt=0)
    timeout_s: float | None = Field(default=None, gt=0)

    @property
    def target_id(self) -> str:
        return f"{self.provider_id}:{self.model}"

    def options(self) -> InvokeOptions:
        return InvokeOptions(
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            timeout_s=self.timeout_s,
        )


class ModelResponse(BaseModel):
    """Outcome of one dispatch target; failures carry ``error`` and zero metrics."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    provider_id: str
    model: str
    model_name: str
    response: str = ""
    latency_ms: int = 0
    usage: TokenUsage = Field(default_factory=TokenUsage)
    cost: float = 0.0
    error: str | None = None
    error_kind: str | None = None

    @property
    def model_id(self) -> str:
        return f"{self.provider_id}:{self.model}"

    @property
    def tokens_used(self) -> int:
        return self.usage.total_tokens

    @property
    def ok(self) -> bool:
        return self.error is None


class StreamEvent(BaseModel):
    """One event on a streaming dispatch's output channel."""

    model_config = ConfigDict(frozen=True)

    index: int
    provider_id: str
    model: str
    chunk: str = ""
    is_complete: bool = False
    # set on the terminal event only
    result: ModelResponse | None = None
    accumulated: str = ""

    @property
    def error(self) -> str | None:
        return self.result.error if self.result is not None else None
