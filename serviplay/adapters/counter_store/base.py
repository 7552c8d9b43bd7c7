"""Counter store interfaces.

The rate governor and the caching layer depend on this abstraction, not on
Redis directly, so the in-process fallback can stand in for the remote store
with the same contract.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CounterHit:
    """Outcome of a single admission attempt against a counter.

    Attributes:
        admitted: Whether the attempt fit in the current window.
        count: Counter value after the attempt (unchanged when rejected).
        created: True when the attempt opened a new window.
    """

    admitted: bool
    count: int
    created: bool = False


class BackendHealth:
    """Process-wide connectivity flag of the counter store.

    Starts disconnected and is flipped only by connection lifecycle events
    (connect, error, reconnecting). Operations read it without probing the
    backend first, so it can be stale until the next event arrives.
    """

    def __init__(self) -> None:
        self._connected = False
        self.last_event: str | None = None

    @property
    def connected(self) -> bool:
        return self._connected

    def mark_connected(self, event: str = "connect") -> None:
        if not self._connected:
            logger.info("counter_store.connected", extra={"event": event})
        self._connected = True
        self.last_event = event

    def mark_disconnected(self, event: str = "error", error: BaseException | None = None) -> None:
        if self._connected:
            logger.warning(
                "counter_store.disconnected",
                extra={
                    "event": event,
                    "error_type": type(error).__name__ if error else None,
                    "error_msg": str(error) if error else None,
                },
            )
        self._connected = False
        self.last_event = event


class AbstractCounterStore(ABC):
    """Key/value store holding integer counters with expiry."""

    name: str = "abstract"

    @abstractmethod
    async def get(self, key: str) -> int | None:
        """Return the counter for ``key`` or None when absent/expired."""
        raise NotImplementedError

    @abstractmethod
    async def set_with_expiry(self, key: str, value: int, ttl_seconds: int) -> None:
        """Create or overwrite ``key`` with ``value`` expiring in ttl_seconds."""
        raise NotImplementedError

    @abstractmethod
    async def increment(self, key: str) -> int:
        """Add one to an existing counter and return the new value.

        The TTL is left untouched: windows are fixed from the first request.
        """
        raise NotImplementedError

    @abstractmethod
    async def delete(self, key: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def keys(self, pattern: str) -> list[str]:
        """Return keys matching a ``*`` wildcard pattern."""
        raise NotImplementedError

    async def hit(self, key: str, *, limit: int, ttl_seconds: int) -> CounterHit:
        """Try to admit one request against the fixed window at ``key``.

        Default read-then-write sequence. Other coroutines may run between
        the read and the write when the backend awaits I/O, so concurrent
        callers can overshoot ``limit`` by up to (concurrency - 1) per window.
        Stores with an atomic primitive should override this.

        Args:
            key: Rate key identifying the window.
            limit: Admission ceiling for the window.
            ttl_seconds: Window length, applied only when the window opens.

        Returns:
            CounterHit describing the decision and resulting count.
        """

        current = await self.get(key)
        if current is None:
            await self.set_with_expiry(key, 1, ttl_seconds)
            return CounterHit(admitted=True, count=1, created=True)

        if current >= limit:
            return CounterHit(admitted=False, count=current)

        count = await self.increment(key)
        return CounterHit(admitted=True, count=count)
