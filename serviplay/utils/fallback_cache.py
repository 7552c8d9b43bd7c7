"""In-process TTL map used while the counter store is unreachable.

Entries expire lazily: an entry is only purged when it is read (or bulk
cleared) after its expiry instant. There is no background sweep and no
capacity limit; memory is reclaimed on read or process restart.

All operations are plain dict operations without awaits, so they are not
interleaved by the event loop. A multi-threaded caller needs its own lock.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class CacheEntry:
    """Stored payload with its absolute expiry in epoch milliseconds."""

    value: Any
    expires_at_ms: int


class LocalFallbackCache:
    """Process-local key/value store with per-entry TTL."""

    def __init__(self, *, clock_ms: Callable[[], int] = _now_ms) -> None:
        self._clock_ms = clock_ms
        self._store: dict[str, CacheEntry] = {}

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return f"LocalFallbackCache(size={len(self._store)})"

    def __len__(self) -> int:
        return len(self._store)

    def __contains__(self, key: object) -> bool:
        # Raw membership, expired entries included
        return key in self._store

    def _live_entry(self, key: str) -> CacheEntry | None:
        entry = self._store.get(key)
        if entry is None:
            return None
        if entry.expires_at_ms <= self._clock_ms():
            del self._store[key]
            logger.debug("fallback_cache.expired", extra={"cache_key": key[:32]})
            return None
        return entry

    def get(self, key: str) -> Any | None:
        """Return the stored value, or None when absent or expired.

        An expired entry is removed as a side effect.
        """

        entry = self._live_entry(key)
        return None if entry is None else entry.value

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        """Store ``value`` until now + ttl_seconds."""

        expires_at_ms = self._clock_ms() + int(ttl_seconds * 1000)
        self._store[key] = CacheEntry(value=value, expires_at_ms=expires_at_ms)

    def increment(self, key: str) -> int:
        """Add one to an integer entry, keeping its expiry.

        A missing or expired key is not created here: the caller is expected
        to have established it with ``set``. Returns 0 in that case.
        """

        entry = self._live_entry(key)
        if entry is None:
            return 0
        entry.value = int(entry.value) + 1
        return entry.value

    def delete(self, key: str) -> None:
        self._store.pop(key, None)

    def clear_matching(self, substring: str) -> int:
        """Remove every key containing ``substring``; returns how many went."""

        doomed = [key for key in self._store if substring in key]
        for key in doomed:
            del self._store[key]
        if doomed:
            logger.debug(
                "fallback_cache.cleared",
                extra={"pattern": substring, "removed": len(doomed)},
            )
        return len(doomed)

    def keys(self) -> list[str]:
        """Snapshot of currently live keys (expired ones are purged)."""

        return [key for key in list(self._store) if self._live_entry(key) is not None]

    def clear(self) -> None:
        self._store.clear()
