from __future__ import annotations

from enum import Enum
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each class carries an HTTP ``status_code`` and a stable ``error_code``
    so the transport layer can translate failures without inspecting
    messages.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class TokenErrorKind(str, Enum):
    INVALID_TOKEN = "invalid_token"
    BAD_SIGNATURE = "bad_signature"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_USED = "token_used"
    TOKEN_REVOKED = "token_revoked"
    USER_BLOCKED = "user_blocked"
    SIGNING_KEY_UNAVAILABLE = "signing_key_unavailable"
    STORE_UNAVAILABLE = "store_unavailable"


_KIND_STATUS = {
    TokenErrorKind.USER_BLOCKED: 403,
    TokenErrorKind.SIGNING_KEY_UNAVAILABLE: 503,
    TokenErrorKind.STORE_UNAVAILABLE: 503,
}


class TokenError(ServiceError):
    """Token lifecycle failure carrying a specific :class:`TokenErrorKind`.

    The kind doubles as the stable ``error_code``; the status code follows
    the kind (blocked users are forbidden, collaborator outages are 503,
    everything else is unauthorized).
    """

    status_code = 401

    def __init__(
        self,
        kind: TokenErrorKind,
        message: Optional[str] = None,
        *,
        detail: Optional[dict] = None,
    ) -> None:
        self.kind = TokenErrorKind(kind)
        super().__init__(
            message or self.kind.value.replace("_", " "),
            status_code=_KIND_STATUS.get(self.kind, 401),
            error_code=self.kind.value,
            detail=detail,
        )

    @property
    def is_security_event(self) -> bool:
        return self.kind in (TokenErrorKind.TOKEN_USED, TokenErrorKind.TOKEN_REVOKED)


__all__ = [
    "ServiceError",
    "TokenErrorKind",
    "TokenError",
]
