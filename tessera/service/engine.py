"""Public boundary of the session engine.

Every operation returns an explicit result object carrying a
:class:`TokenErrorKind` on failure instead of raising, so callers cannot
accidentally swallow a security outcome. Reuse detection has already run
by the time a rotation result is returned.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Optional, Union

from tessera.config import Settings
from tessera.logging import get_logger, log_security_event
from tessera.service.block_status import BlockStatusCache, RevocationMarkers
from tessera.service.claims import ClaimsCache
from tessera.service.errors import TokenError, TokenErrorKind
from tessera.service.issuer import TokenIssuer, TokenPair
from tessera.service.limiter import SessionLimiter
from tessera.service.resilience import call_store
from tessera.service.revocation import FamilyRevoker, ReuseDetector
from tessera.service.rotation import RotationEngine
from tessera.service.secrets import SigningKeyHolder
from tessera.service.tokens import JWTCodec, hash_refresh_token
from tessera.service.validator import TokenValidator
from tessera.storage.models import RefreshToken, RequestContext, User, utcnow

logger = get_logger(__name__)

LOGOUT_REASON = "revoked by user"
ADMIN_REVOKE_REASON = "revoked by administrator"


@dataclass
class SessionResult:
    ok: bool
    tokens: Optional[TokenPair] = None
    error: Optional[TokenErrorKind] = None
    message: Optional[str] = None

    @classmethod
    def failure(cls, exc: TokenError) -> "SessionResult":
        return cls(ok=False, error=exc.kind, message=exc.message)


@dataclass
class AccessValidation:
    valid: bool
    user_id: Optional[str] = None
    claims: dict[str, Any] = field(default_factory=dict)
    error: Optional[TokenErrorKind] = None


@dataclass
class RefreshValidation:
    valid: bool
    user: Optional[User] = None
    token: Optional[RefreshToken] = None
    error: Optional[TokenErrorKind] = None


@dataclass
class RevocationResult:
    ok: bool
    revoked_count: int = 0
    error: Optional[TokenErrorKind] = None
    message: Optional[str] = None


class SessionEngine:
    """Issues, rotates, validates and revokes sessions."""

    def __init__(
        self,
        store: Any,
        *,
        issuer: TokenIssuer,
        rotation: RotationEngine,
        validator: TokenValidator,
        claims: ClaimsCache,
        markers: RevocationMarkers,
        store_timeout: float,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.rotation = rotation
        self.validator = validator
        self.claims = claims
        self.markers = markers
        self.store_timeout = store_timeout

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        store: Any,
        cache: Any,
        keys: SigningKeyHolder,
    ) -> "SessionEngine":
        timeouts = {
            "store_timeout": settings.store_timeout_seconds,
        }
        retries = {
            "retry_attempts": settings.read_retry_attempts,
            "retry_backoff_ms": settings.read_retry_backoff_ms,
        }
        access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        codec = JWTCodec()
        claims = ClaimsCache(
            store,
            cache,
            ttl_seconds=settings.claims_cache_ttl_minutes * 60,
            cache_timeout=settings.cache_timeout_seconds,
            **timeouts,
            **retries,
        )
        block_status = BlockStatusCache(
            store,
            cache,
            ttl_seconds=settings.block_status_cache_ttl_minutes * 60,
            cache_timeout=settings.cache_timeout_seconds,
            **timeouts,
            **retries,
        )
        markers = RevocationMarkers(
            cache,
            ttl_seconds=int(access_ttl.total_seconds()) + settings.clock_skew_seconds,
            cache_timeout=settings.cache_timeout_seconds,
        )
        limiter = SessionLimiter(
            store, max_active=settings.max_active_refresh_tokens, **timeouts, **retries
        )
        issuer = TokenIssuer(
            store,
            claims=claims,
            block_status=block_status,
            limiter=limiter,
            keys=keys,
            codec=codec,
            access_ttl=access_ttl,
            refresh_ttl=timedelta(days=settings.refresh_token_ttl_days),
            **timeouts,
        )
        detector = ReuseDetector(
            FamilyRevoker(store, **timeouts, **retries),
            grace_seconds=settings.reuse_grace_seconds,
        )
        rotation = RotationEngine(
            store,
            issuer=issuer,
            detector=detector,
            check_ip=settings.check_ip_address,
            check_user_agent=settings.check_user_agent,
            mismatch_policy=settings.context_mismatch_policy,
            **timeouts,
        )
        validator = TokenValidator(
            store,
            keys=keys,
            block_status=block_status,
            markers=markers,
            codec=codec,
            leeway_seconds=settings.clock_skew_seconds,
            check_ip=settings.check_ip_address,
            check_user_agent=settings.check_user_agent,
            **timeouts,
        )
        return cls(
            store,
            issuer=issuer,
            rotation=rotation,
            validator=validator,
            claims=claims,
            markers=markers,
            **timeouts,
        )

    async def issue_session(
        self, user: Union[User, str], context: Optional[RequestContext] = None
    ) -> SessionResult:
        try:
            pair = await self.issuer.issue(user, context)
        except TokenError as exc:
            logger.info("session_issue_failed", error_code=exc.kind.value)
            return SessionResult.failure(exc)
        return SessionResult(ok=True, tokens=pair)

    async def rotate(
        self, raw_refresh_token: str, context: Optional[RequestContext] = None
    ) -> SessionResult:
        try:
            pair = await self.rotation.rotate(raw_refresh_token, context)
        except TokenError as exc:
            logger.info(
                "session_rotate_failed",
                error_code=exc.kind.value,
                security_event=exc.is_security_event,
            )
            return SessionResult.failure(exc)
        return SessionResult(ok=True, tokens=pair)

    async def revoke_token(
        self,
        raw_refresh_token: str,
        context: Optional[RequestContext] = None,
        reason: str = LOGOUT_REASON,
    ) -> RevocationResult:
        """Revoke one refresh token (logout). Revoking twice is not an error."""
        if not raw_refresh_token:
            return RevocationResult(ok=False, error=TokenErrorKind.INVALID_TOKEN)
        try:
            record = await call_store(
                self.store.get_refresh_token_by_hash,
                hash_refresh_token(raw_refresh_token),
                timeout=self.store_timeout,
            )
            if record is None:
                return RevocationResult(ok=False, error=TokenErrorKind.INVALID_TOKEN)
            revoked = await call_store(
                self.store.revoke_refresh_token,
                record.id,
                revoked_at=utcnow(),
                revoked_by_ip=context.ip_address if context else None,
                reason=reason,
                timeout=self.store_timeout,
            )
        except TokenError as exc:
            return RevocationResult(ok=False, error=exc.kind, message=exc.message)
        logger.info(
            "refresh_token_revoked",
            token_id=record.id,
            family_id=record.family_id,
            already_revoked=not revoked,
        )
        return RevocationResult(ok=True, revoked_count=1 if revoked else 0)

    async def revoke_all_for_user(
        self,
        user_id: str,
        context: Optional[RequestContext] = None,
        reason: str = ADMIN_REVOKE_REASON,
    ) -> RevocationResult:
        """Revoke every refresh token of ``user_id`` and outstanding access tokens."""
        try:
            revoked = await call_store(
                self.store.revoke_user_refresh_tokens,
                user_id,
                revoked_at=utcnow(),
                revoked_by_ip=context.ip_address if context else None,
                reason=reason,
                timeout=self.store_timeout,
            )
        except TokenError as exc:
            return RevocationResult(ok=False, error=exc.kind, message=exc.message)
        marker_set = await self.markers.mark(user_id)
        await self.claims.invalidate(user_id)
        log_security_event(
            "user_tokens_revoked",
            logger=logger,
            user_id=user_id,
            revoked_count=revoked,
            reason=reason,
            marker_set=marker_set,
        )
        return RevocationResult(ok=True, revoked_count=revoked)

    async def validate_access(self, token: str) -> AccessValidation:
        try:
            payload = await self.validator.validate_access(token)
        except TokenError as exc:
            return AccessValidation(valid=False, error=exc.kind)
        return AccessValidation(valid=True, user_id=str(payload["sub"]), claims=payload)

    async def validate_refresh(
        self, raw_refresh_token: str, context: Optional[RequestContext] = None
    ) -> RefreshValidation:
        try:
            user, record = await self.validator.validate_refresh(raw_refresh_token, context)
        except TokenError as exc:
            return RefreshValidation(valid=False, error=exc.kind)
        return RefreshValidation(valid=True, user=user, token=record)

    async def invalidate_claims(self, user_id: str) -> None:
        """Drop cached claims after a role or profile change."""
        await self.claims.invalidate(user_id)

    async def invalidate_block_status(self, user_id: str) -> None:
        """Drop the cached block status after blocking or unblocking a user."""
        await self.issuer.block_status.invalidate(user_id)
