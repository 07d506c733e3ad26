from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from typing import Any, Optional

from tessera.logging import get_logger
from tessera.service.errors import TokenError, TokenErrorKind
from tessera.storage.models import KeyRing, SigningMaterial

logger = get_logger(__name__)

# 64 random bytes -> 512 bits of entropy, URL-safe text
REFRESH_TOKEN_BYTES = 64


def generate_refresh_token() -> str:
    return secrets.token_urlsafe(REFRESH_TOKEN_BYTES)


def hash_refresh_token(raw_token: str) -> str:
    """One-way hash stored in place of the raw refresh token."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(key: str, signing_input: str) -> str:
    return _encode_segment(
        hmac.new(key.encode(), signing_input.encode(), hashlib.sha256).digest()
    )


class JWTCodec:
    """Compact HS256 JSON Web Tokens for access credentials.

    The header carries ``kid`` so tokens signed just before a key rotation
    can still be verified against the previous material in the key ring.
    """

    ALGORITHM = "HS256"

    def encode(self, payload: dict[str, Any], material: SigningMaterial) -> str:
        header = {"alg": self.ALGORITHM, "typ": "JWT", "kid": material.key_id}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{_sign(material.key, signing_input)}"

    def decode(
        self,
        token: str,
        ring: KeyRing,
        *,
        leeway_seconds: int = 0,
        now: Optional[float] = None,
    ) -> dict[str, Any]:
        """Verify and decode an access token.

        Checks run in a fixed order so callers get the most specific kind:
        signature (``bad_signature``), then structure, issuer and audience
        (``invalid_token``), then lifetime (``token_expired``).
        """
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (ValueError, AttributeError):
            raise TokenError(TokenErrorKind.INVALID_TOKEN, "malformed token")

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenError(TokenErrorKind.INVALID_TOKEN, "malformed header")
        if not isinstance(header, dict) or header.get("alg") != self.ALGORITHM:
            # Reject alg=none and friends before touching the signature
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenError(TokenErrorKind.INVALID_TOKEN, "unsupported algorithm")

        signing_input = f"{header_b64}.{payload_b64}"
        material = None
        for candidate in ring.candidates(header.get("kid")):
            if hmac.compare_digest(_sign(candidate.key, signing_input), sig_b64):
                material = candidate
                break
        if material is None:
            raise TokenError(TokenErrorKind.BAD_SIGNATURE)

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenError(TokenErrorKind.INVALID_TOKEN, "malformed payload")
        if not isinstance(payload, dict):
            raise TokenError(TokenErrorKind.INVALID_TOKEN, "malformed payload")
        if payload.get("iss") != material.issuer:
            raise TokenError(TokenErrorKind.INVALID_TOKEN, "issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == material.audience
        elif isinstance(aud, list):
            valid_aud = material.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise TokenError(TokenErrorKind.INVALID_TOKEN, "audience mismatch")
        if payload.get("token_type") != "access" or not payload.get("sub"):
            raise TokenError(TokenErrorKind.INVALID_TOKEN, "not an access token")

        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenError(TokenErrorKind.INVALID_TOKEN, "missing expiry")
        current = time.time() if now is None else now
        if exp_ts <= current - leeway_seconds:
            raise TokenError(TokenErrorKind.TOKEN_EXPIRED)
        nbf = payload.get("nbf")
        if isinstance(nbf, (int, float)) and nbf > current + leeway_seconds:
            raise TokenError(TokenErrorKind.INVALID_TOKEN, "token not yet valid")
        return payload
