from __future__ import annotations

import asyncio
import weakref
from typing import Any, List, Optional

from tessera.logging import get_logger
from tessera.service.errors import TokenError, TokenErrorKind
from tessera.service.resilience import CacheUnavailable, call_cache, call_store, retry_read
from tessera.storage.models import Claim, User

logger = get_logger(__name__)


def build_claims(user: User, roles: List[str]) -> List[Claim]:
    claims = [
        Claim("sub", user.id),
        Claim("name", user.name or user.email),
        Claim("email", user.email),
        Claim("tenant_id", user.tenant_id),
        Claim("email_verified", "true" if user.email_verified else "false"),
    ]
    if user.phone_number:
        claims.append(Claim("phone_number", user.phone_number))
    claims.extend(Claim("role", role) for role in roles)
    return claims


class ClaimsCache:
    """Short-lived cache of a user's authorization claims.

    Misses are filled from the user/role store under a per-user lock so a
    burst of logins for one user costs a single upstream lookup. Cache
    outages are bypassed; store outages surface as ``store_unavailable``.
    """

    def __init__(
        self,
        store: Any,
        cache: Any,
        *,
        ttl_seconds: int,
        store_timeout: float,
        cache_timeout: float,
        retry_attempts: int = 3,
        retry_backoff_ms: int = 50,
    ) -> None:
        self.store = store
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.store_timeout = store_timeout
        self.cache_timeout = cache_timeout
        self.retry_attempts = retry_attempts
        self.retry_backoff_ms = retry_backoff_ms
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    @staticmethod
    def _key(user_id: str) -> str:
        return f"claims:{user_id}"

    async def get_claims(self, user_id: str) -> List[Claim]:
        cached = await self._read(user_id)
        if cached is not None:
            return cached
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        async with lock:
            cached = await self._read(user_id)
            if cached is not None:
                return cached
            claims = await self._load(user_id)
            await self._write(user_id, claims)
            return claims

    async def invalidate(self, user_id: str) -> None:
        if self.cache is None:
            return
        try:
            await call_cache(
                self.cache.delete(self._key(user_id)),
                timeout=self.cache_timeout,
                operation="claims_invalidate",
            )
        except CacheUnavailable as exc:
            # Entry expires on its own within ttl_seconds
            logger.warning("claims_invalidate_failed", user_id=user_id, error=str(exc))
        else:
            logger.info("claims_invalidated", user_id=user_id)

    async def _read(self, user_id: str) -> Optional[List[Claim]]:
        if self.cache is None:
            return None
        try:
            raw = await call_cache(
                self.cache.get_json(self._key(user_id)),
                timeout=self.cache_timeout,
                operation="claims_get",
            )
        except CacheUnavailable as exc:
            logger.warning("claims_cache_read_failed", user_id=user_id, error=str(exc))
            return None
        if not isinstance(raw, list):
            return None
        try:
            return [Claim(str(item[0]), str(item[1])) for item in raw]
        except (IndexError, TypeError):
            return None

    async def _write(self, user_id: str, claims: List[Claim]) -> None:
        if self.cache is None:
            return
        try:
            await call_cache(
                self.cache.set_json(
                    self._key(user_id),
                    [[c.type, c.value] for c in claims],
                    self.ttl_seconds,
                ),
                timeout=self.cache_timeout,
                operation="claims_set",
            )
        except CacheUnavailable as exc:
            logger.warning("claims_cache_write_failed", user_id=user_id, error=str(exc))

    async def _load(self, user_id: str) -> List[Claim]:
        async def _fetch_user() -> Optional[User]:
            return await call_store(self.store.get_user, user_id, timeout=self.store_timeout)

        async def _fetch_roles() -> List[str]:
            return await call_store(self.store.get_roles, user_id, timeout=self.store_timeout)

        user = await retry_read(
            _fetch_user,
            attempts=self.retry_attempts,
            backoff_ms=self.retry_backoff_ms,
            operation="get_user",
        )
        if user is None:
            raise TokenError(TokenErrorKind.INVALID_TOKEN, "unknown user")
        roles = await retry_read(
            _fetch_roles,
            attempts=self.retry_attempts,
            backoff_ms=self.retry_backoff_ms,
            operation="get_roles",
        )
        return build_claims(user, roles)
