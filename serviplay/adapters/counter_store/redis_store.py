"""Redis-backed counter store.

Every call goes through :meth:`RedisCounterStore.run`, which turns Redis and
socket failures into ``BackendUnavailableError``. Only connection and timeout
failures flip the shared ``BackendHealth`` flag; a rejected command leaves the
connection healthy. Calls are never retried here; the caller decides
whether to fall back.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, TypeVar

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from serviplay.adapters.counter_store.base import (
    AbstractCounterStore,
    BackendHealth,
    CounterHit,
)
from serviplay.core.errors import BackendUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# KEYS[1] = rate key, ARGV[1] = limit, ARGV[2] = ttl seconds
# Returns {admitted, count, created}
FIXED_WINDOW_HIT_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if not current then
    redis.call('SET', KEYS[1], 1, 'EX', ARGV[2])
    return {1, 1, 1}
end
current = tonumber(current)
if current >= tonumber(ARGV[1]) then
    return {0, current, 0}
end
return {1, redis.call('INCR', KEYS[1]), 0}
"""


class RedisCounterStore(AbstractCounterStore):
    """Counter store talking to Redis through ``redis.asyncio``."""

    name = "redis"

    def __init__(self, client: aioredis.Redis, health: BackendHealth) -> None:
        self._client = client
        self._health = health

    @classmethod
    def from_url(
        cls,
        url: str,
        health: BackendHealth,
        *,
        socket_timeout: float = 2.5,
    ) -> "RedisCounterStore":
        client = aioredis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client, health)

    @property
    def health(self) -> BackendHealth:
        return self._health

    async def run(self, operation: str, call: Callable[[aioredis.Redis], Awaitable[T]]) -> T:
        """Execute one Redis call, mapping failures to BackendUnavailableError.

        Args:
            operation: Short name used in logs and error details.
            call: Receives the client and returns the awaitable to execute.

        Raises:
            BackendUnavailableError: On any Redis or socket error. Only
                connection loss and timeouts mark the backend disconnected.
        """

        try:
            return await call(self._client)
        except (RedisConnectionError, RedisTimeoutError, OSError) as exc:
            self._health.mark_disconnected("error", exc)
            raise self._unavailable(operation) from exc
        except RedisError as exc:
            logger.warning(
                "counter_store.command_failed",
                extra={
                    "backend": self.name,
                    "operation": operation,
                    "error_type": type(exc).__name__,
                },
            )
            raise self._unavailable(operation) from exc

    def _unavailable(self, operation: str) -> BackendUnavailableError:
        return BackendUnavailableError(
            code="counter_store_unavailable",
            message=f"Redis {operation} failed",
            details={"backend": self.name, "operation": operation},
        )

    async def connect(self) -> bool:
        """Ping the server; updates health and reports whether it answered."""

        try:
            await self.run("ping", lambda c: c.ping())
        except BackendUnavailableError:
            return False
        self._health.mark_connected("connect")
        return True

    async def reconnect(self) -> bool:
        logger.info("counter_store.reconnecting", extra={"backend": self.name})
        try:
            await self.run("ping", lambda c: c.ping())
        except BackendUnavailableError:
            return False
        self._health.mark_connected("reconnect")
        return True

    async def close(self) -> None:
        await self._client.aclose()
        self._health.mark_disconnected("close")

    async def get(self, key: str) -> int | None:
        value = await self.run("get", lambda c: c.get(key))
        return None if value is None else int(value)

    async def set_with_expiry(self, key: str, value: int, ttl_seconds: int) -> None:
        await self.run("set", lambda c: c.set(key, value, ex=ttl_seconds))

    async def increment(self, key: str) -> int:
        return int(await self.run("incr", lambda c: c.incr(key)))

    async def delete(self, key: str) -> None:
        await self.run("delete", lambda c: c.delete(key))

    async def delete_many(self, keys: list[str]) -> int:
        if not keys:
            return 0
        return int(await self.run("delete", lambda c: c.delete(*keys)))

    async def keys(self, pattern: str) -> list[str]:
        return list(await self.run("keys", lambda c: c.keys(pattern)))

    async def hit(self, key: str, *, limit: int, ttl_seconds: int) -> CounterHit:
        """Check and count in one round trip via a Lua script."""

        result: Any = await self.run(
            "hit",
            lambda c: c.eval(FIXED_WINDOW_HIT_SCRIPT, 1, key, limit, ttl_seconds),
        )
        admitted, count, created = (int(v) for v in result)
        return CounterHit(admitted=bool(admitted), count=count, created=bool(created))
