from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, List, Optional, Union

from tessera.logging import get_logger
from tessera.service.block_status import BlockStatusCache
from tessera.service.claims import ClaimsCache
from tessera.service.errors import TokenError, TokenErrorKind
from tessera.service.limiter import SessionLimiter
from tessera.service.resilience import call_store
from tessera.service.secrets import SigningKeyHolder
from tessera.service.tokens import JWTCodec, generate_refresh_token, hash_refresh_token
from tessera.storage.errors import ConstraintViolation
from tessera.storage.models import Claim, RefreshToken, RequestContext, User, epoch_micros, utcnow

logger = get_logger(__name__)


@dataclass
class TokenPair:
    access_token: str
    access_token_expires_at: datetime
    refresh_token: str
    refresh_token_expires_at: datetime
    user_id: str
    family_id: str
    access_token_id: str
    refresh_token_id: str
    token_type: str = "bearer"

    def as_response(self) -> dict[str, str]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_at": self.access_token_expires_at.isoformat(),
            "refresh_expires_at": self.refresh_token_expires_at.isoformat(),
        }


def claims_to_payload(claims: List[Claim]) -> dict[str, Any]:
    payload: dict[str, Any] = {"roles": []}
    for claim in claims:
        if claim.type == "role":
            payload["roles"].append(claim.value)
        elif claim.type == "email_verified":
            payload["email_verified"] = claim.value == "true"
        else:
            payload[claim.type] = claim.value
    return payload


class TokenIssuer:
    """Mints a signed access token and its paired opaque refresh token."""

    def __init__(
        self,
        store: Any,
        *,
        claims: ClaimsCache,
        block_status: BlockStatusCache,
        limiter: SessionLimiter,
        keys: SigningKeyHolder,
        codec: Optional[JWTCodec] = None,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
        store_timeout: float,
    ) -> None:
        self.store = store
        self.claims = claims
        self.block_status = block_status
        self.limiter = limiter
        self.keys = keys
        self.codec = codec or JWTCodec()
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.store_timeout = store_timeout

    async def issue(
        self,
        user: Union[User, str],
        context: Optional[RequestContext] = None,
        *,
        family_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TokenPair:
        user_id = user if isinstance(user, str) else user.id
        moment = now or utcnow()
        ctx = context or RequestContext()

        if await self.block_status.is_blocked(user_id):
            logger.info("session_issue_rejected_blocked", user_id=user_id)
            raise TokenError(TokenErrorKind.USER_BLOCKED)

        # Resolve the key before pruning so a secret outage never costs sessions
        ring = await self.keys.current()
        claims = await self.claims.get_claims(user_id)
        await self.limiter.enforce(user_id, context=ctx, now=moment)

        access_expires = moment + self.access_ttl
        jti = str(uuid.uuid4())
        issued_at = int(moment.timestamp())
        payload = {
            "iss": ring.current.issuer,
            "aud": ring.current.audience,
            **claims_to_payload(claims),
            "sub": user_id,
            "token_type": "access",
            "jti": jti,
            "iat": issued_at,
            "iat_us": epoch_micros(moment),
            "nbf": issued_at,
            "exp": int(access_expires.timestamp()),
        }
        access_token = self.codec.encode(payload, ring.current)

        raw_refresh = generate_refresh_token()
        record = RefreshToken.new(
            token_hash=hash_refresh_token(raw_refresh),
            user_id=user_id,
            access_token_id=jti,
            family_id=family_id or str(uuid.uuid4()),
            ttl=self.refresh_ttl,
            created_by_ip=ctx.ip_address,
            user_agent=ctx.user_agent,
            now=moment,
        )
        try:
            await call_store(
                self.store.create_refresh_token, record, timeout=self.store_timeout
            )
        except ConstraintViolation as exc:
            logger.warning("refresh_token_persist_rejected", user_id=user_id, error=exc.message)
            raise TokenError(TokenErrorKind.INVALID_TOKEN, exc.message) from exc

        logger.info(
            "session_tokens_issued",
            user_id=user_id,
            family_id=record.family_id,
            token_id=record.id,
            jti=jti,
            rotated=family_id is not None,
        )
        return TokenPair(
            access_token=access_token,
            access_token_expires_at=access_expires,
            refresh_token=raw_refresh,
            refresh_token_expires_at=record.expires_at,
            user_id=user_id,
            family_id=record.family_id,
            access_token_id=jti,
            refresh_token_id=record.id,
        )
