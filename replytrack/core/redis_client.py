"""Optional Redis connection shared by the job tracker and the auth rate limiter."""

import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any, TypeVar

from redis.asyncio import Redis
from redis.asyncio.connection import ConnectionPool
from redis.exceptions import RedisError

from replytrack.core.config import Constants, settings


logger = logging.getLogger(__name__)

T = TypeVar("T")


class RedisClient:
    """Thin async wrapper over a pooled Redis connection.

    Without REDIS_URL, or when a command fails, every call returns its
    "nothing happened" value (None or False) and the caller keeps its local state.
    """

    def __init__(self, url: str | None = None) -> None:
        url = settings.redis_url if url is None else url
        self._enabled = bool(url)
        self._pool: ConnectionPool | None = None
        self._client: Redis | None = None

        self._last_successful_operation: datetime | None = None
        self._failure_count = 0
        self._total_operations = 0

        if not url:
            logger.info("Redis not configured; job stats and auth rate limits stay in-process")
            return

        try:
            self._pool = ConnectionPool.from_url(
                url, decode_responses=True, max_connections=Constants.REDIS_MAX_CONNECTIONS
            )
            self._client = Redis(connection_pool=self._pool)
        except (RedisError, ValueError) as e:
            logger.warning("Invalid Redis configuration, continuing without Redis: %s", e)
            self._enabled = False
            self._pool = None
            self._client = None

    @property
    def is_available(self) -> bool:
        return self._enabled and self._client is not None

    def get_health_status(self) -> dict[str, Any]:
        last_ok = self._last_successful_operation
        return {
            "enabled": self._enabled,
            "connected": self.is_available,
            "last_successful_operation": last_ok.isoformat() if last_ok else None,
            "failure_count": self._failure_count,
            "total_operations": self._total_operations,
        }

    async def _call(
        self,
        command: str,
        operation: Callable[[Redis], Awaitable[T]],
        default: T,
        *,
        track: bool = True,
    ) -> T:
        """Run one command, returning `default` when Redis is off or the command fails."""
        if not self.is_available or self._client is None:
            return default

        try:
            result = await operation(self._client)
        except RedisError as e:
            if track:
                self._failure_count += 1
                self._total_operations += 1
            logger.warning("Redis %s failed: %s", command, e)
            return default

        if track:
            self._last_successful_operation = datetime.now(UTC)
            self._total_operations += 1
        return result

    async def get(self, key: str) -> str | None:
        return await self._call("GET", lambda client: client.get(key), None)

    async def set(self, key: str, value: str, ttl_seconds: int) -> bool:
        async def _setex(client: Redis) -> bool:
            await client.setex(key, ttl_seconds, value)
            return True

        return await self._call("SETEX", _setex, False)

    async def delete(self, *keys: str) -> bool:
        if not keys:
            return False

        async def _delete(client: Redis) -> bool:
            await client.delete(*keys)
            return True

        return await self._call("DEL", _delete, False)

    async def set_if_not_exists(self, key: str, value: str, ttl_seconds: int) -> bool | None:
        """SET NX with a TTL: True if this call created the key, False if it existed, None if not run."""

        async def _set_nx(client: Redis) -> bool | None:
            return bool(await client.set(key, value, ex=ttl_seconds, nx=True))

        return await self._call("SET NX", _set_nx, None)

    async def increment(self, key: str) -> int | None:
        """Atomically increment a counter; None when the increment did not happen."""
        return await self._call("INCR", lambda client: client.incr(key), None)

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        async def _expire(client: Redis) -> bool:
            await client.expire(key, ttl_seconds)
            return True

        return await self._call("EXPIRE", _expire, False, track=False)

    async def ping(self) -> bool:
        async def _ping(client: Redis) -> bool:
            return bool(await client.ping())  # type: ignore[misc]

        return await self._call("PING", _ping, False, track=False)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            logger.info("Redis connection closed")


redis_client = RedisClient()
