"""Caching layer: Redis when reachable, the local fallback cache otherwise.

``CacheManager`` owns the process-wide resources shared by every request:
the optional Redis counter store, the local fallback cache and the
``BackendHealth`` flag connecting them. It is created once per application
(see ``serviplay.core.app_factory``) and closed on shutdown.

Besides serving counters to the rate governor it exposes JSON cache helpers
(``get``/``set``/``delete``/``clear``) that degrade to the local cache on any
Redis failure, so the service keeps working with no external services.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from typing import Any

from serviplay.adapters.counter_store.base import AbstractCounterStore, BackendHealth
from serviplay.adapters.counter_store.in_memory import InMemoryCounterStore
from serviplay.adapters.counter_store.redis_store import RedisCounterStore
from serviplay.core.config import RedisSettings
from serviplay.core.errors import BackendUnavailableError
from serviplay.utils.fallback_cache import LocalFallbackCache

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 3600


class CacheManager:
    """Owner of the counter stores and their shared health flag."""

    def __init__(
        self,
        *,
        redis_store: RedisCounterStore | None = None,
        fallback: LocalFallbackCache | None = None,
        health: BackendHealth | None = None,
        reconnect_interval_seconds: float = 5.0,
    ) -> None:
        # An empty LocalFallbackCache is falsy (__len__), so test against None
        if health is None:
            health = redis_store.health if redis_store is not None else BackendHealth()
        self._health = health
        self._redis = redis_store
        self._fallback = fallback if fallback is not None else LocalFallbackCache()
        self._fallback_store = InMemoryCounterStore(self._fallback)
        self._reconnect_interval = reconnect_interval_seconds
        self._watcher: asyncio.Task[None] | None = None

    @classmethod
    def from_settings(cls, redis_settings: RedisSettings) -> "CacheManager":
        health = BackendHealth()
        redis_store = None
        if redis_settings.url:
            redis_store = RedisCounterStore.from_url(
                redis_settings.url,
                health,
                socket_timeout=redis_settings.socket_timeout_seconds,
            )
        return cls(
            redis_store=redis_store,
            health=health,
            reconnect_interval_seconds=redis_settings.reconnect_interval_seconds,
        )

    @property
    def health(self) -> BackendHealth:
        return self._health

    @property
    def fallback_cache(self) -> LocalFallbackCache:
        return self._fallback

    @property
    def fallback_store(self) -> InMemoryCounterStore:
        return self._fallback_store

    @property
    def redis_store(self) -> RedisCounterStore | None:
        return self._redis

    @property
    def counter_store(self) -> AbstractCounterStore:
        """Store that is authoritative right now, per the health flag."""

        if self._redis is not None and self._health.connected:
            return self._redis
        return self._fallback_store

    async def connect(self) -> None:
        """Connect to Redis if configured; never raises on failure."""

        if self._redis is None:
            logger.warning(
                "cache.redis_not_configured",
                extra={"backend": self._fallback_store.name},
            )
            return

        if not await self._redis.connect():
            logger.warning(
                "cache.redis_unreachable",
                extra={"backend": self._fallback_store.name},
            )
        self._watcher = asyncio.create_task(self._watch_connection())

    async def close(self) -> None:
        watcher, self._watcher = self._watcher, None
        if watcher is not None:
            watcher.cancel()
            try:
                await watcher
            except asyncio.CancelledError:
                pass
            except Exception as exc:
                # A crashed watcher must not stop the Redis client from closing
                logger.error(
                    "cache.watcher_failed",
                    extra={"error_type": type(exc).__name__, "error_msg": str(exc)},
                )
        if self._redis is not None:
            await self._redis.close()

    async def _watch_connection(self) -> None:
        if self._redis is None:
            return
        while True:
            await asyncio.sleep(self._reconnect_interval)
            if not self._health.connected:
                await self._redis.reconnect()

    async def get(self, key: str) -> Any | None:
        """Return a cached JSON value, or None when absent."""

        if self._redis is None or not self._health.connected:
            return self._local_get(key)

        try:
            raw = await self._redis.run("get", lambda c: c.get(key))
        except BackendUnavailableError:
            logger.warning("cache.get_fallback", extra={"operation": "get"})
            return self._local_get(key)
        return None if raw is None else json.loads(raw)

    def _local_get(self, key: str) -> Any | None:
        return copy.deepcopy(self._fallback.get(key))

    async def set(self, key: str, value: Any, ttl: int = DEFAULT_TTL_SECONDS) -> None:
        """Store ``value`` (JSON-serialisable) for ``ttl`` seconds.

        A ``ttl`` of zero or less expires the key at once, so it is deleted.
        Both backends keep a copy and ``get`` hands out a fresh one, so
        mutating either object does not change the cached value.
        """

        if ttl <= 0:
            await self.delete(key)
            return

        payload = json.dumps(value)
        if self._redis is None or not self._health.connected:
            self._fallback.set(key, json.loads(payload), ttl)
            return

        try:
            await self._redis.run("set", lambda c: c.set(key, payload, ex=ttl))
        except BackendUnavailableError:
            logger.warning("cache.set_fallback", extra={"operation": "set"})
            self._fallback.set(key, json.loads(payload), ttl)

    async def delete(self, key: str) -> None:
        if self._redis is None or not self._health.connected:
            self._fallback.delete(key)
            return

        try:
            await self._redis.delete(key)
        except BackendUnavailableError:
            logger.warning("cache.delete_fallback", extra={"operation": "delete"})
            self._fallback.delete(key)

    async def clear(self, pattern: str) -> int:
        """Delete keys matching ``pattern``.

        Redis receives the pattern as-is (KEYS glob). The local cache only
        approximates it: ``*`` is stripped and the rest matched as a substring.
        """

        if self._redis is not None and self._health.connected:
            try:
                keys = await self._redis.keys(pattern)
                return await self._redis.delete_many(keys)
            except BackendUnavailableError:
                logger.warning("cache.clear_fallback", extra={"operation": "clear"})

        return self._fallback.clear_matching(pattern.replace("*", ""))

    def status(self) -> dict[str, Any]:
        return {
            "backend": self.counter_store.name,
            "redis_configured": self._redis is not None,
            "redis_connected": self._health.connected,
            "last_event": self._health.last_event,
            "fallback_entries": len(self._fallback),
        }
