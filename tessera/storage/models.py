from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def epoch_micros(moment: datetime) -> int:
    """Whole microseconds since the Unix epoch, without float rounding."""
    return (moment - _EPOCH) // timedelta(microseconds=1)


@dataclass
class User:
    id: str
    email: str
    name: Optional[str] = None
    tenant_id: str = "public"
    is_blocked: bool = False
    email_verified: bool = False
    phone_number: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RequestContext:
    """Client attributes captured at the edge for issuance and rotation."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class RefreshToken:
    id: str
    token_hash: str
    user_id: str
    access_token_id: str
    family_id: str
    created_at: datetime
    expires_at: datetime
    created_by_ip: Optional[str] = None
    user_agent: Optional[str] = None
    is_used: bool = False
    used_at: Optional[datetime] = None
    is_revoked: bool = False
    revoked_at: Optional[datetime] = None
    revoked_by_ip: Optional[str] = None
    reason_revoked: Optional[str] = None

    @classmethod
    def new(
        cls,
        token_hash: str,
        user_id: str,
        access_token_id: str,
        family_id: str,
        ttl: timedelta,
        *,
        created_by_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "RefreshToken":
        created = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            token_hash=token_hash,
            user_id=user_id,
            access_token_id=access_token_id,
            family_id=family_id,
            created_at=created,
            expires_at=created + ttl,
            created_by_ip=created_by_ip,
            user_agent=user_agent,
        )

    @property
    def is_terminal(self) -> bool:
        return self.is_used or self.is_revoked

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at < (now or utcnow())

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return not self.is_terminal and not self.is_expired(now)


@dataclass(frozen=True)
class Claim:
    type: str
    value: str


@dataclass(frozen=True)
class SigningMaterial:
    key: str
    issuer: str
    audience: str
    key_id: str = "default"


@dataclass(frozen=True)
class KeyRing:
    """Immutable snapshot of the signing material in use.

    ``previous`` holds materials seen before the last rotation (newest first)
    so tokens signed just before a key swap still validate.
    """

    current: SigningMaterial
    previous: Tuple[SigningMaterial, ...] = ()
    fetched_at: datetime = field(default_factory=utcnow)

    def all_materials(self) -> List[SigningMaterial]:
        return [self.current, *self.previous]

    def candidates(self, key_id: Optional[str]) -> List[SigningMaterial]:
        """Materials that may have signed a token with header ``kid``."""
        if key_id is None:
            return self.all_materials()
        return [m for m in self.all_materials() if m.key_id == key_id]

    def rotated(self, material: SigningMaterial, fetched_at: datetime, keep: int = 3) -> "KeyRing":
        if material == self.current:
            return KeyRing(current=material, previous=self.previous, fetched_at=fetched_at)
        history = (self.current, *[m for m in self.previous if m != material])
        return KeyRing(current=material, previous=history[:keep], fetched_at=fetched_at)
