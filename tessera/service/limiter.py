from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from tessera.logging import get_logger
from tessera.service.errors import TokenError, TokenErrorKind
from tessera.service.resilience import call_store, retry_read
from tessera.storage.models import RequestContext, utcnow

logger = get_logger(__name__)

SESSION_LIMIT_REASON = "session limit exceeded"


class SessionLimiter:
    """Keeps a user's active refresh tokens below ``max_active``.

    Runs before a new token is persisted, so after issuance the user holds
    at most ``max_active`` active tokens. Store failures are logged and the
    issuance proceeds.
    """

    def __init__(
        self,
        store: Any,
        *,
        max_active: int,
        store_timeout: float,
        retry_attempts: int = 3,
        retry_backoff_ms: int = 50,
    ) -> None:
        self.store = store
        self.max_active = max_active
        self.store_timeout = store_timeout
        self.retry_attempts = retry_attempts
        self.retry_backoff_ms = retry_backoff_ms

    async def enforce(
        self,
        user_id: str,
        *,
        max_active: Optional[int] = None,
        context: Optional[RequestContext] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """Revoke the oldest active tokens so one more fits; returns the count revoked."""
        limit = max_active or self.max_active
        moment = now or utcnow()

        async def _list():
            return await call_store(
                self.store.list_active_refresh_tokens,
                user_id,
                moment,
                timeout=self.store_timeout,
            )

        try:
            active = await retry_read(
                _list,
                attempts=self.retry_attempts,
                backoff_ms=self.retry_backoff_ms,
                operation="list_active_refresh_tokens",
            )
        except TokenError as exc:
            if exc.kind is not TokenErrorKind.STORE_UNAVAILABLE:
                raise
            logger.warning("session_limit_skipped", user_id=user_id, error=exc.message)
            return 0

        if len(active) < limit:
            return 0

        # newest first: keep limit - 1 so the token about to be issued fits
        overflow = active[limit - 1 :]
        revoked = 0
        for token in overflow:
            try:
                if await call_store(
                    self.store.revoke_refresh_token,
                    token.id,
                    revoked_at=moment,
                    revoked_by_ip=context.ip_address if context else None,
                    reason=SESSION_LIMIT_REASON,
                    timeout=self.store_timeout,
                ):
                    revoked += 1
            except TokenError as exc:
                logger.warning(
                    "session_limit_revoke_failed",
                    user_id=user_id,
                    token_id=token.id,
                    error=exc.message,
                )
        logger.info(
            "session_limit_enforced",
            user_id=user_id,
            active=len(active),
            max_active=limit,
            revoked=revoked,
        )
        return revoked
