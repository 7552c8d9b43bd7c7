"""Fixed-window rate governor and its FastAPI dependencies.

Rate limiting strategy:
- One counter per rate key, created at value 1 with a TTL of the full window
  on the first request and incremented on each admitted request after that.
  The TTL is never extended, so the window is fixed from the first request.
- A request is rejected once the counter has reached ``max_requests``; the
  retry hint is always the whole window, not the time left in it.
- The global limiter keys on the caller address; per-route limiters add the
  route template, so each route has its own counters.

Backend selection follows ``CacheManager``: Redis while the health flag says
connected, the local fallback cache otherwise or when a Redis call fails.
Known limitation: like any fixed window, a burst straddling a window boundary
can see up to twice the limit admitted in a short span.

Failure policy is fail-open. Any unexpected error while deciding admits the
request and is logged; callers never see backend faults.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Awaitable, Callable
from urllib.parse import quote

from fastapi import Request

from serviplay.adapters.counter_store.base import CounterHit
from serviplay.core.cache import CacheManager
from serviplay.core.config import RateLimitSettings, settings
from serviplay.core.errors import BackendUnavailableError, RateLimitExceededError
from serviplay.core.logging import hash_for_log

logger = logging.getLogger(__name__)

KEY_PREFIX = "rate_limit"
DEFAULT_WINDOW_MS = 15 * 60 * 1000
DEFAULT_MAX_REQUESTS = 100
DEFAULT_MESSAGE = "Too many requests, please try again later"


@dataclass(frozen=True)
class RateLimitConfig:
    """Window length, admission ceiling and rejection text of one governor."""

    window_ms: int = DEFAULT_WINDOW_MS
    max_requests: int = DEFAULT_MAX_REQUESTS
    message: str = DEFAULT_MESSAGE

    def __post_init__(self) -> None:
        if self.window_ms < 1:
            raise ValueError("window_ms must be >= 1")
        if self.max_requests < 1:
            raise ValueError("max_requests must be >= 1")

    @classmethod
    def from_settings(cls, rate_limit_settings: RateLimitSettings) -> "RateLimitConfig":
        return cls(
            window_ms=rate_limit_settings.window_ms,
            max_requests=rate_limit_settings.max_requests,
            message=rate_limit_settings.message,
        )

    @property
    def window_seconds(self) -> int:
        """Window rounded up to whole seconds; used as TTL and retry hint."""
        return math.ceil(self.window_ms / 1000)


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of :meth:`RateGovernor.check`.

    Attributes:
        admitted: Whether the request may proceed.
        limit: Admission ceiling of the governor.
        count: Counter value after the decision (0 when failed open).
        retry_after: Seconds to wait, set only on rejection.
        backend: Store that decided, or None when the governor failed open.
    """

    admitted: bool
    limit: int
    count: int
    retry_after: int | None = None
    backend: str | None = None

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)


def build_rate_key(identity: str, route: str | None = None) -> str:
    """Build the counter key for a caller, optionally scoped to a route.

    The identity is percent-encoded so it never contains ``:``; this keeps
    ``(identity, route)`` pairs from colliding (e.g. IPv6 addresses).
    """

    encoded = quote(identity, safe="")
    if route is None:
        return f"{KEY_PREFIX}:{encoded}"
    return f"{KEY_PREFIX}:{encoded}:{route}"


class RateGovernor:
    """Admit-or-reject decision for one request against one rate key.

    The governor holds no counters itself; it reads and writes them through
    the cache manager it is given.
    """

    def __init__(self, cache: CacheManager, config: RateLimitConfig | None = None) -> None:
        self._cache = cache
        self._config = config or RateLimitConfig()

    @property
    def config(self) -> RateLimitConfig:
        return self._config

    async def _hit(self, key: str) -> tuple[str, CounterHit]:
        store = self._cache.counter_store
        kwargs: dict[str, Any] = {
            "limit": self._config.max_requests,
            "ttl_seconds": self._config.window_seconds,
        }
        try:
            return store.name, await store.hit(key, **kwargs)
        except BackendUnavailableError:
            fallback = self._cache.fallback_store
            if store is fallback:
                raise
            logger.warning(
                "rate_limit.backend_fallback",
                extra={"backend": store.name, "fallback": fallback.name},
            )
            return fallback.name, await fallback.hit(key, **kwargs)

    async def check(self, identity: str, route: str | None = None) -> RateLimitDecision:
        """Count one request for ``identity`` (and ``route``) and decide.

        Args:
            identity: Caller identity, normally the client address.
            route: Route template for per-route limiters; None for global.

        Returns:
            RateLimitDecision; ``admitted`` is True whenever deciding failed.
        """

        key = build_rate_key(identity, route)
        try:
            backend, hit = await self._hit(key)
        except Exception as exc:
            logger.error(
                "rate_limit.fail_open",
                extra={
                    "key_hash": hash_for_log(key),
                    "error_type": type(exc).__name__,
                    "error_msg": str(exc),
                },
            )
            return RateLimitDecision(admitted=True, limit=self._config.max_requests, count=0)

        if hit.admitted:
            logger.debug(
                "rate_limit.allowed",
                extra={
                    "key_hash": hash_for_log(key),
                    "backend": backend,
                    "count": hit.count,
                    "limit": self._config.max_requests,
                    "window_s": self._config.window_seconds,
                },
            )
            return RateLimitDecision(
                admitted=True,
                limit=self._config.max_requests,
                count=hit.count,
                backend=backend,
            )

        logger.warning(
            "rate_limit.exceeded",
            extra={
                "key_hash": hash_for_log(key),
                "backend": backend,
                "count": hit.count,
                "limit": self._config.max_requests,
                "retry_after_s": self._config.window_seconds,
            },
        )
        return RateLimitDecision(
            admitted=False,
            limit=self._config.max_requests,
            count=hit.count,
            retry_after=self._config.window_seconds,
            backend=backend,
        )


def client_identity(request: Request) -> str:
    """Caller address; honours X-Forwarded-For when APP_TRUST_PROXY is set."""

    if settings.app.trust_proxy:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
    return request.client.host if request.client else "unknown"


def route_path(request: Request) -> str:
    """Template of the matched path, e.g. ``/api/services/{service_id}``.

    Built from the full request path, so ``include_router`` prefixes are
    kept: each path parameter value is swapped back for its ``{name}``
    placeholder. Values are matched right to left, whole segments only.
    """

    segments = request.url.path.split("/")
    end = len(segments)
    for name, value in reversed(list(request.path_params.items())):
        parts = str(value).split("/")
        width = len(parts)
        for start in range(end - width, -1, -1):
            if segments[start:start + width] == parts:
                segments[start:start + width] = ["{" + name + "}"]
                end = start
                break
    return "/".join(segments)


def get_cache_manager(request: Request) -> CacheManager:
    return request.app.state.cache


def _reject(decision: RateLimitDecision, config: RateLimitConfig) -> None:
    raise RateLimitExceededError(
        code="rate_limit_exceeded",
        message=config.message,
        details={"limit": decision.limit, "retry_after": decision.retry_after or 0},
        retry_after=decision.retry_after or config.window_seconds,
        limit=decision.limit,
    )


async def enforce_rate_limit(request: Request) -> None:
    """FastAPI dependency applying the global default limit.

    Raises:
        RateLimitExceededError: When the caller is over the limit.
    """

    if not settings.rate_limit.enabled:
        return

    governor: RateGovernor = request.app.state.rate_governor
    decision = await governor.check(client_identity(request))
    if not decision.admitted:
        _reject(decision, governor.config)


def create_rate_limiter(
    *,
    window_ms: int = DEFAULT_WINDOW_MS,
    max_requests: int = DEFAULT_MAX_REQUESTS,
    message: str = DEFAULT_MESSAGE,
    route: str | None = None,
) -> Callable[[Request], Awaitable[None]]:
    """Build a per-route dependency with its own window and ceiling.

    Counters are keyed by caller and route template (see ``route_path``).
    Pass ``route`` to name the counter explicitly, e.g. to share one budget
    between several endpoints.

    Usage:
        login_limiter = create_rate_limiter(window_ms=15 * 60 * 1000, max_requests=5)

        @router.post(
            "/login",
            dependencies=[Depends(login_limiter)],
            responses=RATE_LIMIT_RESPONSES,
        )
        async def login(): ...
    """

    config = RateLimitConfig(window_ms=window_ms, max_requests=max_requests, message=message)

    async def route_rate_limit(request: Request) -> None:
        if not settings.rate_limit.enabled:
            return

        governor = RateGovernor(get_cache_manager(request), config)
        decision = await governor.check(
            client_identity(request), route or route_path(request)
        )
        if not decision.admitted:
            _reject(decision, config)

    return route_rate_limit
