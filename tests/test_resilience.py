import asyncio
import time

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from tessera.service.errors import TokenError, TokenErrorKind
from tessera.service.resilience import CacheUnavailable, call_cache, call_store, retry_read
from tessera.storage.errors import ConstraintViolation, StoreError


async def test_call_store_times_out_as_store_unavailable():
    def slow():
        time.sleep(0.3)
        return "late"

    with pytest.raises(TokenError) as exc:
        await call_store(slow, timeout=0.05)
    assert exc.value.kind is TokenErrorKind.STORE_UNAVAILABLE


async def test_call_store_maps_transport_errors():
    def broken():
        raise StoreError("connection reset")

    with pytest.raises(TokenError) as exc:
        await call_store(broken, timeout=1.0)
    assert exc.value.kind is TokenErrorKind.STORE_UNAVAILABLE
    assert exc.value.status_code == 503


async def test_call_store_lets_constraint_violations_through():
    def conflict():
        raise ConstraintViolation("token hash already exists", {"field": "token_hash"})

    with pytest.raises(ConstraintViolation):
        await call_store(conflict, timeout=1.0)


async def test_retry_read_recovers_after_transient_failures():
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise TokenError(TokenErrorKind.STORE_UNAVAILABLE)
        return "ok"

    assert await retry_read(flaky, attempts=3, backoff_ms=0) == "ok"
    assert len(attempts) == 3


async def test_retry_read_gives_up_after_last_attempt():
    attempts = []

    async def down():
        attempts.append(1)
        raise TokenError(TokenErrorKind.STORE_UNAVAILABLE, "still down")

    with pytest.raises(TokenError) as exc:
        await retry_read(down, attempts=2, backoff_ms=1)
    assert exc.value.message == "still down"
    assert len(attempts) == 2


async def test_retry_read_does_not_retry_other_kinds():
    attempts = []

    async def invalid():
        attempts.append(1)
        raise TokenError(TokenErrorKind.INVALID_TOKEN)

    with pytest.raises(TokenError):
        await retry_read(invalid, attempts=5, backoff_ms=0)
    assert len(attempts) == 1


async def test_call_cache_converts_timeouts_and_redis_errors():
    async def hang():
        await asyncio.sleep(1)

    async def refused():
        raise RedisConnectionError("connection refused")

    with pytest.raises(CacheUnavailable):
        await call_cache(hang(), timeout=0.01, operation="get")
    with pytest.raises(CacheUnavailable):
        await call_cache(refused(), timeout=1.0, operation="get")
