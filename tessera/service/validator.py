from __future__ import annotations

import time
from datetime import datetime
from typing import Any, Callable, Optional, Tuple

from tessera.logging import get_logger
from tessera.service.block_status import BlockStatusCache, RevocationMarkers
from tessera.service.errors import TokenError, TokenErrorKind
from tessera.service.resilience import call_store
from tessera.service.rotation import context_mismatches
from tessera.service.secrets import SigningKeyHolder
from tessera.service.tokens import JWTCodec, hash_refresh_token
from tessera.storage.models import RefreshToken, RequestContext, User, utcnow

logger = get_logger(__name__)


def _issued_micros(payload: dict[str, Any]) -> Optional[int]:
    # Tokens without ``iat_us`` fall back to whole seconds, which rounds down
    precise = payload.get("iat_us")
    if isinstance(precise, int) and not isinstance(precise, bool):
        return precise
    issued_at = payload.get("iat")
    if isinstance(issued_at, (int, float)) and not isinstance(issued_at, bool):
        return int(issued_at * 1_000_000)
    return None


class TokenValidator:
    """Read-only checks for access and refresh tokens."""

    def __init__(
        self,
        store: Any,
        *,
        keys: SigningKeyHolder,
        block_status: BlockStatusCache,
        markers: RevocationMarkers,
        codec: Optional[JWTCodec] = None,
        leeway_seconds: int = 0,
        store_timeout: float,
        check_ip: bool = True,
        check_user_agent: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.keys = keys
        self.block_status = block_status
        self.markers = markers
        self.codec = codec or JWTCodec()
        self.leeway_seconds = leeway_seconds
        self.store_timeout = store_timeout
        self.check_ip = check_ip
        self.check_user_agent = check_user_agent
        self._clock = clock

    async def validate_access(self, token: str) -> dict[str, Any]:
        """Return the verified payload or raise ``TokenError``.

        Signature and lifetime are checked before any I/O; the block status
        and the user-wide revocation marker are consulted last.
        """
        if not token:
            raise TokenError(TokenErrorKind.INVALID_TOKEN, "access token missing")
        ring = await self.keys.current()
        payload = self.codec.decode(
            token, ring, leeway_seconds=self.leeway_seconds, now=self._clock()
        )
        user_id = str(payload["sub"])
        if await self.block_status.is_blocked(user_id):
            raise TokenError(TokenErrorKind.USER_BLOCKED)
        revoked_since = await self.markers.revoked_since(user_id)
        issued_us = _issued_micros(payload)
        if revoked_since is not None and issued_us is not None and issued_us < revoked_since:
            logger.info("access_token_revoked_by_marker", user_id=user_id, jti=payload.get("jti"))
            raise TokenError(TokenErrorKind.TOKEN_REVOKED)
        return payload

    async def validate_refresh(
        self,
        raw_token: str,
        context: Optional[RequestContext] = None,
        *,
        now: Optional[datetime] = None,
    ) -> Tuple[User, RefreshToken]:
        """Apply the rotation state checks without mutating anything."""
        moment = now or utcnow()
        if not raw_token:
            raise TokenError(TokenErrorKind.INVALID_TOKEN, "refresh token missing")
        record = await call_store(
            self.store.get_refresh_token_by_hash,
            hash_refresh_token(raw_token),
            timeout=self.store_timeout,
        )
        if record is None:
            raise TokenError(TokenErrorKind.INVALID_TOKEN)
        if record.is_revoked:
            raise TokenError(TokenErrorKind.TOKEN_REVOKED)
        if record.is_used:
            raise TokenError(TokenErrorKind.TOKEN_USED)
        if record.is_expired(moment):
            raise TokenError(TokenErrorKind.TOKEN_EXPIRED)

        user = await call_store(self.store.get_user, record.user_id, timeout=self.store_timeout)
        if user is None:
            raise TokenError(TokenErrorKind.INVALID_TOKEN, "unknown user")
        if await self.block_status.is_blocked(user.id):
            raise TokenError(TokenErrorKind.USER_BLOCKED)

        mismatches = context_mismatches(
            record,
            context,
            check_ip=self.check_ip,
            check_user_agent=self.check_user_agent,
        )
        if mismatches:
            logger.info(
                "refresh_validation_context_mismatch",
                token_id=record.id,
                mismatched=mismatches,
            )
        return user, record
