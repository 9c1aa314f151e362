"""Runtime configuration for adapters and the dispatcher."""

from __future__ import annotations

import os
from collections.abc import Mapping

from pydantic import BaseModel, Field

_ENV_PREFIX = "LLM_DISPATCH_"


class DispatchConfig(BaseModel):
    """Transport and sampling defaults shared by every adapter."""

    timeout_s: float = Field(default=60.0, gt=0)
    rate_limit_retries: int = Field(default=0, ge=0)
    retry_backoff_s: float = Field(default=1.0, ge=0)
    default_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    default_max_tokens: int = Field(default=2000, gt=0)
    # provider id -> base URL, e.g. for a local proxy
    endpoint_overrides: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> DispatchConfig:
        """Build a config from ``LLM_DISPATCH_*`` variables, falling back to defaults."""
        env = os.environ if environ is None else environ
        values: dict[str, str] = {}
        for field in ("timeout_s", "rate_limit_retries", "retry_backoff_s"):
            raw = env.get(_ENV_PREFIX + field.upper())
            if raw:
                values[field] = raw
        return cls.model_validate(values)
