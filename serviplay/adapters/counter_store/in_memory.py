"""Counter store backed by the in-process fallback cache.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
- No awaits happen between the read and the write of ``hit``, so on a single
  event loop the sequence is not interleaved with other requests.
"""

from __future__ import annotations

import fnmatch

from serviplay.adapters.counter_store.base import AbstractCounterStore
from serviplay.utils.fallback_cache import LocalFallbackCache


class InMemoryCounterStore(AbstractCounterStore):
    """Async counter-store facade over a LocalFallbackCache."""

    name = "memory"

    def __init__(self, cache: LocalFallbackCache) -> None:
        self._cache = cache

    @property
    def cache(self) -> LocalFallbackCache:
        return self._cache

    async def get(self, key: str) -> int | None:
        value = self._cache.get(key)
        return None if value is None else int(value)

    async def set_with_expiry(self, key: str, value: int, ttl_seconds: int) -> None:
        self._cache.set(key, value, ttl_seconds)

    async def increment(self, key: str) -> int:
        return self._cache.increment(key)

    async def delete(self, key: str) -> None:
        self._cache.delete(key)

    async def keys(self, pattern: str) -> list[str]:
        return [key for key in self._cache.keys() if fnmatch.fnmatchcase(key, pattern)]
