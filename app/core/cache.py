"""
app/core/cache.py
──────────────────
Explicit response caching for read-heavy admin endpoints.

A CachePolicy is built at the call site and handed to TTLCache.fetch()
together with the loader coroutine:

    policy = CachePolicy(ttl_millis=30_000, key="payment:metrics")
    data = await metrics_cache.fetch(policy, lambda: build_metrics(db))
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional


@dataclass(frozen=True)
class CachePolicy:
    ttl_millis: int = 60_000
    key: Optional[str] = None
    skip: bool = False


@dataclass
class _CacheEntry:
    value: Any
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class TTLCache:
    """In-process cache keyed by CachePolicy.key."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._entries: dict[str, _CacheEntry] = {}
        self._clock = clock

    async def fetch(self, policy: CachePolicy, loader: Callable[[], Awaitable[Any]]) -> Any:
        if policy.skip or not policy.key or policy.ttl_millis <= 0:
            return await loader()

        now = self._clock()
        entry = self._entries.get(policy.key)
        if entry and not entry.is_expired(now):
            return entry.value

        value = await loader()
        self._entries[policy.key] = _CacheEntry(
            value=value,
            expires_at=now + policy.ttl_millis / 1000.0,
        )
        return value

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()
