from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from tessera.logging import get_logger, log_security_event
from tessera.service.errors import TokenError, TokenErrorKind
from tessera.service.resilience import call_store, retry_read
from tessera.storage.models import RefreshToken, RequestContext, utcnow

logger = get_logger(__name__)


class FamilyRevoker:
    """Revokes every non-terminal token that shares a ``family_id``.

    The revocation is a single set-update in the store. It is idempotent,
    so transient failures are retried and a partially applied revocation
    can simply be run again.
    """

    def __init__(
        self,
        store: Any,
        *,
        store_timeout: float,
        retry_attempts: int = 3,
        retry_backoff_ms: int = 50,
    ) -> None:
        self.store = store
        self.store_timeout = store_timeout
        self.retry_attempts = retry_attempts
        self.retry_backoff_ms = retry_backoff_ms

    async def revoke_family(
        self,
        family_id: str,
        *,
        exclude_token_id: Optional[str] = None,
        reason: str,
        context: Optional[RequestContext] = None,
        created_before: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> int:
        moment = now or utcnow()

        async def _revoke() -> int:
            return await call_store(
                self.store.revoke_family,
                family_id,
                exclude_token_id=exclude_token_id,
                revoked_at=moment,
                revoked_by_ip=context.ip_address if context else None,
                reason=reason,
                created_before=created_before,
                timeout=self.store_timeout,
            )

        revoked = await retry_read(
            _revoke,
            attempts=self.retry_attempts,
            backoff_ms=self.retry_backoff_ms,
            operation="revoke_family",
        )
        log_security_event(
            "token_family_revoked",
            logger=logger,
            family_id=family_id,
            excluded_token_id=exclude_token_id,
            revoked_count=revoked,
            reason=reason,
        )
        return revoked


class ReuseDetector:
    """Classifies a presented used/revoked token and revokes its family.

    With a grace window configured, a used token replayed shortly after it
    was consumed is treated as a client retry that lost the response: the
    request still fails, but the descendant minted by the winning rotation
    (created at or after ``used_at``) is spared.
    """

    def __init__(self, revoker: FamilyRevoker, *, grace_seconds: int = 0) -> None:
        self.revoker = revoker
        self.grace_seconds = grace_seconds

    def within_grace(self, token: RefreshToken, now: datetime) -> bool:
        if self.grace_seconds <= 0 or not token.is_used or token.used_at is None:
            return False
        return (now - token.used_at).total_seconds() <= self.grace_seconds

    async def handle(
        self,
        token: RefreshToken,
        kind: TokenErrorKind,
        *,
        context: Optional[RequestContext] = None,
        now: Optional[datetime] = None,
        reason: Optional[str] = None,
        allow_grace: bool = True,
        created_before: Optional[datetime] = None,
    ) -> Optional[int]:
        """Revoke ``token``'s family; returns the number revoked, ``None`` on failure.

        ``created_before`` limits the revocation to members minted before that
        instant; when omitted it is derived from the grace window.
        """
        moment = now or utcnow()
        benign = allow_grace and self.within_grace(token, moment)
        if created_before is None and benign:
            created_before = token.used_at
        log_security_event(
            "refresh_token_reuse_detected",
            logger=logger,
            token_id=token.id,
            family_id=token.family_id,
            user_id=token.user_id,
            kind=kind.value,
            ip_address=context.ip_address if context else None,
            user_agent=context.user_agent if context else None,
            within_grace=benign,
            created_before=created_before.isoformat() if created_before else None,
        )
        try:
            return await self.revoker.revoke_family(
                token.family_id,
                exclude_token_id=token.id,
                reason=reason or f"reuse detected: {kind.value}",
                context=context,
                created_before=created_before,
                now=moment,
            )
        except TokenError as exc:
            if exc.kind is not TokenErrorKind.STORE_UNAVAILABLE:
                raise
            logger.error(
                "token_family_revocation_failed",
                family_id=token.family_id,
                token_id=token.id,
                error=exc.message,
            )
            return None
