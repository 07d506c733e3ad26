from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from tessera.logging import get_logger
from tessera.service.errors import TokenError, TokenErrorKind
from tessera.service.resilience import CacheUnavailable, call_cache, call_store, retry_read
from tessera.storage.models import epoch_micros, utcnow

logger = get_logger(__name__)


class BlockStatusCache:
    """Cache-backed view of ``IsUserBlocked``.

    This is the one read that fails open: if both the cache and the store
    are unreachable the user is treated as not blocked and a warning is
    logged, so a cache outage cannot lock out all traffic.
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

    @staticmethod
    def _key(user_id: str) -> str:
        return f"blocked:{user_id}"

    async def is_blocked(self, user_id: str) -> bool:
        cached = await self._read(user_id)
        if cached is not None:
            return cached

        async def _fetch() -> bool:
            return await call_store(
                self.store.is_user_blocked, user_id, timeout=self.store_timeout
            )

        try:
            blocked = bool(
                await retry_read(
                    _fetch,
                    attempts=self.retry_attempts,
                    backoff_ms=self.retry_backoff_ms,
                    operation="is_user_blocked",
                )
            )
        except TokenError as exc:
            if exc.kind is not TokenErrorKind.STORE_UNAVAILABLE:
                raise
            logger.warning("block_status_fail_open", user_id=user_id, error=exc.message)
            return False
        await self._write(user_id, blocked)
        return blocked

    async def invalidate(self, user_id: str) -> None:
        if self.cache is None:
            return
        try:
            await call_cache(
                self.cache.delete(self._key(user_id)),
                timeout=self.cache_timeout,
                operation="block_status_invalidate",
            )
        except CacheUnavailable as exc:
            logger.warning("block_status_invalidate_failed", user_id=user_id, error=str(exc))

    async def _read(self, user_id: str) -> Optional[bool]:
        if self.cache is None:
            return None
        try:
            raw = await call_cache(
                self.cache.get_json(self._key(user_id)),
                timeout=self.cache_timeout,
                operation="block_status_get",
            )
        except CacheUnavailable as exc:
            logger.warning("block_status_cache_read_failed", user_id=user_id, error=str(exc))
            return None
        return raw if isinstance(raw, bool) else None

    async def _write(self, user_id: str, blocked: bool) -> None:
        if self.cache is None:
            return
        try:
            await call_cache(
                self.cache.set_json(self._key(user_id), blocked, self.ttl_seconds),
                timeout=self.cache_timeout,
                operation="block_status_set",
            )
        except CacheUnavailable as exc:
            logger.warning("block_status_cache_write_failed", user_id=user_id, error=str(exc))


class RevocationMarkers:
    """Per-user "all tokens revoked at" timestamps.

    Access tokens are self-contained, so after ``revoke_all_for_user`` an
    access token minted earlier stays valid until expiry unless validation
    consults this marker. The marker is kept in epoch microseconds so a
    token minted moments before the revoke is still caught. Markers live
    only as long as an access token can.
    """

    def __init__(self, cache: Any, *, ttl_seconds: int, cache_timeout: float) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.cache_timeout = cache_timeout

    @staticmethod
    def _key(user_id: str) -> str:
        return f"user_tokens_revoked:{user_id}"

    async def mark(self, user_id: str, at: Optional[datetime] = None) -> bool:
        if self.cache is None:
            return False
        revoked_at = epoch_micros(at or utcnow())
        try:
            await call_cache(
                self.cache.set_json(self._key(user_id), revoked_at, self.ttl_seconds),
                timeout=self.cache_timeout,
                operation="revocation_marker_set",
            )
        except CacheUnavailable as exc:
            logger.warning("revocation_marker_set_failed", user_id=user_id, error=str(exc))
            return False
        return True

    async def revoked_since(self, user_id: str) -> Optional[int]:
        """Return the marker in epoch microseconds, or ``None`` if absent or unreadable."""
        if self.cache is None:
            return None
        try:
            raw = await call_cache(
                self.cache.get_json(self._key(user_id)),
                timeout=self.cache_timeout,
                operation="revocation_marker_get",
            )
        except CacheUnavailable as exc:
            logger.warning("revocation_marker_read_failed", user_id=user_id, error=str(exc))
            return None
        if isinstance(raw, bool) or not isinstance(raw, int):
            return None
        return raw
