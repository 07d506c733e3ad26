from __future__ import annotations

import json
from typing import Any, Optional

import redis.asyncio as aioredis
from redis import Redis

# Every key this package writes lives under the ``auth:`` namespace.
KEY_PREFIX = "auth:"


def _decode(raw: Optional[str]) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None


class RedisCache:
    """Thin Redis wrapper for claims, block status and revocation markers."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get_json(self, key: str) -> Any:
        return _decode(await self.client.get(f"{KEY_PREFIX}{key}"))

    async def set_json(self, key: str, value: Any, ttl_seconds: int) -> None:
        await self.client.set(f"{KEY_PREFIX}{key}", json.dumps(value), ex=max(1, int(ttl_seconds)))

    async def delete(self, key: str) -> None:
        await self.client.delete(f"{KEY_PREFIX}{key}")

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    in pytest, but exposes the same awaitable surface as :class:`RedisCache`.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def get_json(self, key: str) -> Any:
        return _decode(self._sync_client.get(f"{KEY_PREFIX}{key}"))

    async def set_json(self, key: str, value: Any, ttl_seconds: int) -> None:
        self._sync_client.set(f"{KEY_PREFIX}{key}", json.dumps(value), ex=max(1, int(ttl_seconds)))

    async def delete(self, key: str) -> None:
        self._sync_client.delete(f"{KEY_PREFIX}{key}")

    async def close(self) -> None:
        self._sync_client.close()
