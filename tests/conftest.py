"""Pytest configuration and fixtures shared across all test modules.

Environment variables are set before any import of ``serviplay`` so the
settings object is built for tests: no Redis, default rate-limit values.
"""

import os

# Set these before any imports that might load settings
os.environ["APP_ENV"] = "testing"
os.environ.pop("REDIS_URL", None)
os.environ.setdefault("RATE_LIMIT_ENABLED", "true")
os.environ.setdefault("RATE_LIMIT_WINDOW_MS", "900000")
os.environ.setdefault("RATE_LIMIT_MAX_REQUESTS", "100")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from unittest.mock import AsyncMock  # noqa: E402

import pytest  # noqa: E402

from serviplay.adapters.counter_store.base import BackendHealth  # noqa: E402
from serviplay.adapters.counter_store.redis_store import RedisCounterStore  # noqa: E402
from serviplay.core.cache import CacheManager  # noqa: E402
from serviplay.utils.fallback_cache import LocalFallbackCache  # noqa: E402


class FakeClock:
    """Deterministic millisecond clock used to test expiration logic."""

    def __init__(self, start_ms: int = 1_000_000) -> None:
        self.current = start_ms

    def __call__(self) -> int:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += round(seconds * 1000)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fallback_cache(clock: FakeClock) -> LocalFallbackCache:
    return LocalFallbackCache(clock_ms=clock)


@pytest.fixture
def redis_client() -> AsyncMock:
    """Stand-in for ``redis.asyncio.Redis``; every command is an AsyncMock."""
    client = AsyncMock()
    client.ping.return_value = True
    return client


@pytest.fixture
def health() -> BackendHealth:
    return BackendHealth()


@pytest.fixture
def redis_store(redis_client: AsyncMock, health: BackendHealth) -> RedisCounterStore:
    return RedisCounterStore(redis_client, health)


@pytest.fixture
def memory_cache_manager(fallback_cache: LocalFallbackCache) -> CacheManager:
    """Cache manager with no Redis configured (fallback only)."""
    return CacheManager(fallback=fallback_cache)


@pytest.fixture
def redis_cache_manager(
    redis_store: RedisCounterStore,
    fallback_cache: LocalFallbackCache,
    health: BackendHealth,
) -> CacheManager:
    """Cache manager whose Redis store is marked connected."""
    health.mark_connected()
    return CacheManager(redis_store=redis_store, fallback=fallback_cache, health=health)
