"""Running per-user, per-provider token and cost counters."""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timezone

from llm_dispatch.types import ModelResponse


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class UsageCounter:
    """Point-in-time totals for one (user, provider) pair."""

    user_key: str
    provider_id: str
    tokens_used: int = 0
    request_count: int = 0
    cost: float = 0.0
    last_used_at: datetime | None = None


@dataclass(frozen=True)
class UsageDelta:
    """Difference between two counter snapshots."""

    tokens_used: int
    request_count: int
    cost: float


class UsageTracker:
    """Additive usage counters keyed by (user_key, provider_id).

    Each key has its own lock, so updates for unrelated users never wait on
    each other. Cost is summed in call-completion order with plain float
    addition; compare totals with a tolerance.
    """

    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock
        self._counters: dict[tuple[str, str], UsageCounter] = {}
        self._locks: dict[tuple[str, str], threading.Lock] = {}
        # only guards lock creation
        self._locks_guard = threading.Lock()

    def _lock_for(self, key: tuple[str, str]) -> threading.Lock:
        lock = self._locks.get(key)
        if lock is None:
            with self._locks_guard:
                lock = self._locks.setdefault(key, threading.Lock())
        return lock

    def record(
        self,
        user_key: str,
        provider_id: str,
        tokens: int,
        cost: float,
        *,
        at: datetime | None = None,
    ) -> UsageCounter:
        """Fold one completed call into the running totals and return the new counter."""
        key = (user_key, provider_id)
        with self._lock_for(key):
            current = self._counters.get(key) or UsageCounter(user_key, provider_id)
            updated = replace(
                current,
                tokens_used=current.tokens_used + tokens,
                request_count=current.request_count + 1,
                cost=current.cost + cost,
                last_used_at=at or self._clock(),
            )
            self._counters[key] = updated
        return updated

    def record_response(self, user_key: str, response: ModelResponse) -> UsageCounter:
        return self.record(user_key, response.provider_id, response.tokens_used, response.cost)

    def snapshot(self, user_key: str, provider_id: str) -> UsageCounter:
        return self._counters.get((user_key, provider_id)) or UsageCounter(user_key, provider_id)

    def delta(self, user_key: str, provider_id: str, since: UsageCounter | None = None) -> UsageDelta:
        """Change since a snapshot the caller kept; ``None`` means since zero."""
        current = self.snapshot(user_key, provider_id)
        if since is None:
            return UsageDelta(current.tokens_used, current.request_count, current.cost)
        return UsageDelta(
            tokens_used=current.tokens_used - since.tokens_used,
            request_count=current.request_count - since.request_count,
            cost=current.cost - since.cost,
        )

    def totals(self, user_key: str) -> dict[str, UsageCounter]:
        """All provider counters for one user."""
        return {
            provider_id: counter
            for (owner, provider_id), counter in list(self._counters.items())
            if owner == user_key
        }
