from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from tessera.config import ContextMismatchPolicy
from tessera.logging import get_logger, log_security_event
from tessera.service.errors import TokenError, TokenErrorKind
from tessera.service.issuer import TokenIssuer, TokenPair
from tessera.service.resilience import call_store
from tessera.service.revocation import ReuseDetector
from tessera.service.tokens import hash_refresh_token
from tessera.storage.models import RefreshToken, RequestContext, utcnow

logger = get_logger(__name__)


def context_mismatches(
    token: RefreshToken,
    context: Optional[RequestContext],
    *,
    check_ip: bool,
    check_user_agent: bool,
) -> List[str]:
    """Attributes of ``context`` that differ from those recorded at issuance.

    Missing values on either side never count as a mismatch.
    """
    if context is None:
        return []
    mismatches = []
    if check_ip and token.created_by_ip and context.ip_address:
        if token.created_by_ip != context.ip_address:
            mismatches.append("ip_address")
    if check_user_agent and token.user_agent and context.user_agent:
        if token.user_agent != context.user_agent:
            mismatches.append("user_agent")
    return mismatches


class RotationEngine:
    """Exchanges a refresh token for a new pair exactly once.

    ``Active -> Used`` is decided by the store's conditional update, so two
    concurrent rotations of the same token cannot both succeed even across
    processes. Every path that sees an already used or revoked token runs
    the reuse detector before raising.
    """

    def __init__(
        self,
        store: Any,
        *,
        issuer: TokenIssuer,
        detector: ReuseDetector,
        store_timeout: float,
        check_ip: bool = True,
        check_user_agent: bool = True,
        mismatch_policy: ContextMismatchPolicy = ContextMismatchPolicy.LOG,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.detector = detector
        self.store_timeout = store_timeout
        self.check_ip = check_ip
        self.check_user_agent = check_user_agent
        self.mismatch_policy = ContextMismatchPolicy(mismatch_policy)

    async def rotate(
        self,
        raw_token: str,
        context: Optional[RequestContext] = None,
        *,
        now: Optional[datetime] = None,
    ) -> TokenPair:
        moment = now or utcnow()
        if not raw_token:
            raise TokenError(TokenErrorKind.INVALID_TOKEN, "refresh token missing")

        record = await call_store(
            self.store.get_refresh_token_by_hash,
            hash_refresh_token(raw_token),
            timeout=self.store_timeout,
        )
        if record is None:
            logger.info("refresh_token_not_found")
            raise TokenError(TokenErrorKind.INVALID_TOKEN)

        if record.is_revoked:
            await self.detector.handle(record, TokenErrorKind.TOKEN_REVOKED, context=context, now=moment)
            raise TokenError(TokenErrorKind.TOKEN_REVOKED)

        if record.is_used:
            await self.detector.handle(record, TokenErrorKind.TOKEN_USED, context=context, now=moment)
            raise TokenError(TokenErrorKind.TOKEN_USED)

        if record.is_expired(moment):
            # Dead end, not a security event
            await call_store(
                self.store.mark_refresh_token_used,
                record.id,
                used_at=moment,
                timeout=self.store_timeout,
            )
            logger.info("refresh_token_expired", token_id=record.id, family_id=record.family_id)
            raise TokenError(TokenErrorKind.TOKEN_EXPIRED)

        mismatches = context_mismatches(
            record,
            context,
            check_ip=self.check_ip,
            check_user_agent=self.check_user_agent,
        )
        if mismatches:
            log_security_event(
                "refresh_token_context_mismatch",
                logger=logger,
                token_id=record.id,
                family_id=record.family_id,
                user_id=record.user_id,
                mismatched=mismatches,
                policy=self.mismatch_policy.value,
            )

        won = await call_store(
            self.store.mark_refresh_token_used,
            record.id,
            used_at=moment,
            timeout=self.store_timeout,
        )
        if not won:
            await self._lost_race(record, context, moment)

        if mismatches and self.mismatch_policy is ContextMismatchPolicy.REJECT:
            record.is_used = True
            record.used_at = moment
            await self.detector.handle(
                record,
                TokenErrorKind.TOKEN_USED,
                context=context,
                now=moment,
                reason="client context mismatch",
                allow_grace=False,
            )
            raise TokenError(TokenErrorKind.TOKEN_USED, "client context mismatch")

        pair = await self.issuer.issue(
            record.user_id,
            context,
            family_id=record.family_id,
            now=moment,
        )
        logger.info(
            "refresh_token_rotated",
            user_id=record.user_id,
            family_id=record.family_id,
            consumed_token_id=record.id,
            token_id=pair.refresh_token_id,
        )
        return pair

    async def _lost_race(
        self, record: RefreshToken, context: Optional[RequestContext], now: datetime
    ) -> None:
        # Someone else flipped the row between our read and our update; reload
        # it to learn whether it was consumed or revoked, and when. A concurrent
        # winner mints its descendant at used_at, so members from that instant
        # on are left alone whatever the grace window.
        current = await call_store(
            self.store.get_refresh_token, record.id, timeout=self.store_timeout
        )
        current = current or record
        kind = (
            TokenErrorKind.TOKEN_REVOKED
            if current.is_revoked and not current.is_used
            else TokenErrorKind.TOKEN_USED
        )
        await self.detector.handle(
            current,
            kind,
            context=context,
            now=now,
            created_before=current.used_at if current.is_used else None,
        )
        raise TokenError(kind)
