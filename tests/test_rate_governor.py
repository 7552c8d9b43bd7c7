"""Tests for the fixed-window RateGovernor decision logic."""

from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from serviplay.core.cache import CacheManager
from serviplay.core.rate_limit import RateGovernor, RateLimitConfig, build_rate_key
from serviplay.utils.fallback_cache import LocalFallbackCache


def _governor(cache: CacheManager, **overrides) -> RateGovernor:
    config = {"window_ms": 60_000, "max_requests": 3, "message": "slow down"}
    config.update(overrides)
    return RateGovernor(cache, RateLimitConfig(**config))


class TestRateLimitConfig:
    def test_defaults(self) -> None:
        config = RateLimitConfig()

        assert config.window_ms == 900_000
        assert config.max_requests == 100
        assert config.window_seconds == 900

    def test_window_seconds_rounds_up(self) -> None:
        assert RateLimitConfig(window_ms=1_500).window_seconds == 2
        assert RateLimitConfig(window_ms=1).window_seconds == 1

    @pytest.mark.parametrize("kwargs", [{"window_ms": 0}, {"max_requests": 0}])
    def test_invalid_values(self, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            RateLimitConfig(**kwargs)


class TestBuildRateKey:
    def test_global_and_route_keys(self) -> None:
        assert build_rate_key("10.0.0.1") == "rate_limit:10.0.0.1"
        assert build_rate_key("10.0.0.1", "/api/test") == "rate_limit:10.0.0.1:/api/test"

    def test_distinct_pairs_never_collide(self) -> None:
        # An identity containing ":" must not alias a (identity, route) pair
        assert build_rate_key("a:/x") != build_rate_key("a", "/x")
        assert build_rate_key("::1") != build_rate_key(":", ":1")
        assert build_rate_key("::1", "/r") != build_rate_key("::1")

    def test_is_deterministic(self) -> None:
        assert build_rate_key("2001:db8::1", "/api") == build_rate_key("2001:db8::1", "/api")


class TestFallbackOnlyGovernor:
    @pytest.mark.asyncio
    async def test_first_request_creates_counter_with_window_ttl(
        self, memory_cache_manager: CacheManager, fallback_cache: LocalFallbackCache, clock
    ) -> None:
        governor = _governor(memory_cache_manager, window_ms=1_500)

        decision = await governor.check("10.0.0.1")

        assert decision.admitted is True
        assert decision.count == 1
        assert decision.backend == "memory"
        key = build_rate_key("10.0.0.1")
        assert fallback_cache.get(key) == 1
        clock.advance(1.999)
        assert fallback_cache.get(key) == 1
        clock.advance(0.001)
        assert fallback_cache.get(key) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("existing", [1, 2, 3, 4])
    async def test_admits_under_limit_and_increments(
        self, memory_cache_manager: CacheManager, fallback_cache: LocalFallbackCache, existing: int
    ) -> None:
        governor = _governor(memory_cache_manager, max_requests=5)
        key = build_rate_key("ip")
        fallback_cache.set(key, existing, ttl_seconds=60)

        decision = await governor.check("ip")

        assert decision.admitted is True
        assert fallback_cache.get(key) == existing + 1
        assert decision.remaining == 5 - (existing + 1)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("existing", [5, 6, 50])
    async def test_rejects_at_or_over_limit_without_incrementing(
        self, memory_cache_manager: CacheManager, fallback_cache: LocalFallbackCache, existing: int
    ) -> None:
        governor = _governor(memory_cache_manager, max_requests=5, window_ms=90_500)
        key = build_rate_key("ip")
        fallback_cache.set(key, existing, ttl_seconds=60)

        decision = await governor.check("ip")

        assert decision.admitted is False
        assert decision.retry_after == 91
        assert decision.remaining == 0
        assert fallback_cache.get(key) == existing

    @pytest.mark.asyncio
    async def test_window_resets_after_expiry(self, memory_cache_manager: CacheManager, clock) -> None:
        governor = _governor(memory_cache_manager, max_requests=1, window_ms=10_000)

        assert (await governor.check("ip")).admitted is True
        assert (await governor.check("ip")).admitted is False

        clock.advance(10)
        assert (await governor.check("ip")).admitted is True

    @pytest.mark.asyncio
    async def test_fixed_window_allows_full_burst_right_after_boundary(
        self, memory_cache_manager: CacheManager, clock
    ) -> None:
        """Known fixed-window limitation, not a bug: 2x limit across a boundary."""
        governor = _governor(memory_cache_manager, max_requests=3, window_ms=10_000)

        await governor.check("ip")
        clock.advance(9.9)
        late = [await governor.check("ip") for _ in range(2)]
        clock.advance(0.1)
        early = [await governor.check("ip") for _ in range(3)]

        assert all(d.admitted for d in late + early)

    @pytest.mark.asyncio
    async def test_per_route_counters_are_independent(self, memory_cache_manager: CacheManager) -> None:
        login = _governor(memory_cache_manager, max_requests=2)
        search = _governor(memory_cache_manager, max_requests=2)

        assert (await login.check("ip", "/api/auth/login")).admitted
        assert (await login.check("ip", "/api/auth/login")).admitted
        assert not (await login.check("ip", "/api/auth/login")).admitted

        assert (await search.check("ip", "/api/services/search")).admitted
        assert (await search.check("ip")).admitted

    @pytest.mark.asyncio
    async def test_callers_are_isolated(self, memory_cache_manager: CacheManager) -> None:
        governor = _governor(memory_cache_manager, max_requests=1)

        assert (await governor.check("10.0.0.1")).admitted
        assert not (await governor.check("10.0.0.1")).admitted
        assert (await governor.check("10.0.0.2")).admitted


class TestRedisBackedGovernor:
    @pytest.mark.asyncio
    async def test_uses_redis_when_connected(
        self, redis_cache_manager: CacheManager, redis_client: AsyncMock, fallback_cache: LocalFallbackCache
    ) -> None:
        redis_client.eval.return_value = [1, 1, 1]
        governor = _governor(redis_cache_manager, window_ms=900_000, max_requests=100)

        decision = await governor.check("10.0.0.1")

        assert decision.admitted is True
        assert decision.backend == "redis"
        args = redis_client.eval.await_args.args
        assert args[1:] == (1, "rate_limit:10.0.0.1", 100, 900)
        assert len(fallback_cache) == 0

    @pytest.mark.asyncio
    async def test_redis_rejection(self, redis_cache_manager: CacheManager, redis_client: AsyncMock) -> None:
        redis_client.eval.return_value = [0, 3, 0]
        governor = _governor(redis_cache_manager)

        decision = await governor.check("ip")

        assert decision.admitted is False
        assert decision.retry_after == 60
        assert decision.backend == "redis"

    @pytest.mark.asyncio
    async def test_backend_fault_is_never_a_rejection(
        self, redis_cache_manager: CacheManager, redis_client: AsyncMock
    ) -> None:
        redis_client.eval.side_effect = RedisConnectionError("connection refused")
        governor = _governor(redis_cache_manager)

        decision = await governor.check("ip")

        assert decision.admitted is True
        assert decision.backend == "memory"

    @pytest.mark.asyncio
    async def test_fallback_governs_a_whole_window_while_redis_is_down(
        self, redis_cache_manager: CacheManager, redis_client: AsyncMock
    ) -> None:
        redis_client.eval.side_effect = RedisConnectionError("connection refused")
        governor = _governor(redis_cache_manager, max_requests=4)

        decisions = [await governor.check("ip") for _ in range(5)]

        assert [d.admitted for d in decisions] == [True, True, True, True, False]
        assert all(d.backend == "memory" for d in decisions)
        # Health flipped on the first failure, so Redis is not asked again
        assert redis_client.eval.await_count == 1
        assert redis_cache_manager.health.connected is False

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_open(self, redis_cache_manager: CacheManager, redis_client: AsyncMock) -> None:
        redis_client.eval.return_value = ["garbage"]
        governor = _governor(redis_cache_manager)

        decision = await governor.check("ip")

        assert decision.admitted is True
        assert decision.backend is None
        assert decision.count == 0

    @pytest.mark.asyncio
    async def test_fallback_store_error_fails_open(
        self, memory_cache_manager: CacheManager, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        async def _boom(*args, **kwargs):
            raise RuntimeError("corrupted entry")

        monkeypatch.setattr(memory_cache_manager.fallback_store, "hit", _boom)
        governor = _governor(memory_cache_manager)

        assert (await governor.check("ip")).admitted is True
