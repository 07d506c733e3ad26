"""Timeouts and bounded retries around store and cache collaborators.

Store calls are blocking (psycopg pool or the in-memory store) and run in a
worker thread; cache calls are already awaitable. Both are bounded by a
timeout so a stuck collaborator cannot hold a request open.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional, TypeVar

import psycopg
from redis.exceptions import RedisError

from tessera.logging import get_logger
from tessera.service.errors import TokenError, TokenErrorKind
from tessera.storage.errors import StoreError

logger = get_logger(__name__)

T = TypeVar("T")

_STORE_FAILURES = (StoreError, psycopg.OperationalError, psycopg.InterfaceError, OSError)
_CACHE_FAILURES = (RedisError, OSError, ValueError)


class CacheUnavailable(Exception):
    """The cache did not answer in time or returned a transport error."""


async def call_store(
    fn: Callable[..., T],
    *args: Any,
    timeout: float,
    operation: Optional[str] = None,
    **kwargs: Any,
) -> T:
    """Run a blocking store call off the event loop, failing closed.

    Timeouts and transport failures surface as
    ``TokenError(store_unavailable)``; constraint violations and other
    programming errors propagate untouched.
    """
    op_name = operation or getattr(fn, "__name__", "store_call")
    try:
        return await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs), timeout=timeout)
    except asyncio.TimeoutError as exc:
        logger.warning("store_call_timeout", operation=op_name, timeout_seconds=timeout)
        raise TokenError(TokenErrorKind.STORE_UNAVAILABLE, f"{op_name} timed out") from exc
    except _STORE_FAILURES as exc:
        logger.warning(
            "store_call_failed",
            operation=op_name,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise TokenError(TokenErrorKind.STORE_UNAVAILABLE, f"{op_name} failed") from exc


async def retry_read(
    op: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    backoff_ms: int,
    operation: str = "read",
) -> T:
    """Retry a non-critical read with exponential backoff.

    Only ``store_unavailable`` failures are retried; after the last attempt
    the final error is re-raised so the caller can decide to fail open.
    """
    last_error: Optional[TokenError] = None
    for attempt in range(1, max(1, attempts) + 1):
        try:
            return await op()
        except TokenError as exc:
            if exc.kind is not TokenErrorKind.STORE_UNAVAILABLE:
                raise
            last_error = exc
            logger.info(
                "store_read_retry",
                operation=operation,
                attempt=attempt,
                max_attempts=attempts,
            )
        if attempt < attempts and backoff_ms > 0:
            await asyncio.sleep(backoff_ms * (2 ** (attempt - 1)) / 1000.0)
    assert last_error is not None
    raise last_error


async def call_cache(awaitable: Awaitable[T], *, timeout: float, operation: str) -> T:
    """Await a cache operation, converting timeouts and transport errors."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise CacheUnavailable(f"{operation} timed out") from exc
    except _CACHE_FAILURES as exc:
        raise CacheUnavailable(f"{operation} failed: {exc}") from exc
