from __future__ import annotations

import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, Protocol

from tessera.config import Settings
from tessera.logging import get_logger
from tessera.service.errors import TokenError, TokenErrorKind
from tessera.storage.models import KeyRing, SigningMaterial, utcnow

logger = get_logger(__name__)

MIN_KEY_BYTES = 32
KEY_HISTORY_SIZE = 3


class SecretUnavailable(Exception):
    """The secret source could not supply usable signing material."""


class SecretProvider(Protocol):
    async def get_signing_material(self) -> SigningMaterial: ...


def validate_material(material: SigningMaterial) -> SigningMaterial:
    if not material.key or len(material.key.encode()) < MIN_KEY_BYTES:
        raise SecretUnavailable(f"signing key must be at least {MIN_KEY_BYTES} bytes")
    if not material.issuer or not material.audience:
        raise SecretUnavailable("issuer and audience are required")
    return material


class SettingsSecretProvider:
    """Signing material straight from ``Settings`` (JWT_* variables)."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    async def get_signing_material(self) -> SigningMaterial:
        return validate_material(
            SigningMaterial(
                key=self.settings.jwt_secret,
                issuer=self.settings.jwt_issuer,
                audience=self.settings.jwt_audience,
                key_id=self.settings.jwt_key_id,
            )
        )


class FileSecretProvider:
    """Reads ``{"key", "issuer", "audience", "key_id"}`` from a JSON file.

    The file is re-read on every refresh so operators can rotate the key by
    replacing it on the shared filesystem.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    async def get_signing_material(self) -> SigningMaterial:
        try:
            raw = await asyncio.to_thread(self.path.read_text)
        except OSError as exc:
            raise SecretUnavailable(f"cannot read {self.path}: {exc}") from exc
        try:
            doc = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise SecretUnavailable(f"{self.path} is not valid JSON") from exc
        if not isinstance(doc, dict):
            raise SecretUnavailable(f"{self.path} must contain a JSON object")
        return validate_material(
            SigningMaterial(
                key=str(doc.get("key") or ""),
                issuer=str(doc.get("issuer") or ""),
                audience=str(doc.get("audience") or ""),
                key_id=str(doc.get("key_id") or "default"),
            )
        )


class SigningKeyHolder:
    """Owns the signing-key snapshot and refreshes it from a provider.

    Readers get an immutable :class:`KeyRing`. While the snapshot is fresh
    no lock is taken; otherwise one caller refreshes under the lock and the
    rest re-check and reuse its result.
    """

    def __init__(
        self,
        provider: SecretProvider,
        *,
        refresh_seconds: int,
        max_stale_seconds: int,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.provider = provider
        self.refresh_seconds = refresh_seconds
        self.max_stale_seconds = max_stale_seconds
        self._clock = clock
        self._snapshot: Optional[KeyRing] = None
        self._force_refresh = False
        self._lock = asyncio.Lock()

    def _age(self, snapshot: KeyRing, now: datetime) -> float:
        return (now - snapshot.fetched_at).total_seconds()

    def _is_fresh(self, snapshot: Optional[KeyRing], now: datetime) -> bool:
        return (
            snapshot is not None
            and not self._force_refresh
            and self._age(snapshot, now) < self.refresh_seconds
        )

    async def current(self) -> KeyRing:
        snapshot = self._snapshot
        if self._is_fresh(snapshot, self._clock()):
            return snapshot
        async with self._lock:
            snapshot = self._snapshot
            now = self._clock()
            if self._is_fresh(snapshot, now):
                return snapshot
            try:
                material = await self.provider.get_signing_material()
            except SecretUnavailable as exc:
                if snapshot is not None and self._age(snapshot, now) < self.max_stale_seconds:
                    logger.warning(
                        "signing_key_refresh_failed",
                        error=str(exc),
                        serving_stale=True,
                        age_seconds=int(self._age(snapshot, now)),
                    )
                    return snapshot
                logger.error("signing_key_unavailable", error=str(exc))
                raise TokenError(TokenErrorKind.SIGNING_KEY_UNAVAILABLE) from exc
            if snapshot is None:
                fresh = KeyRing(current=material, fetched_at=now)
            else:
                fresh = snapshot.rotated(material, now, keep=KEY_HISTORY_SIZE)
                if material != snapshot.current:
                    logger.info(
                        "signing_key_rotated",
                        key_id=material.key_id,
                        previous_key_id=snapshot.current.key_id,
                    )
            self._snapshot = fresh
            self._force_refresh = False
            return fresh

    def invalidate(self) -> None:
        """Make the next ``current()`` call consult the provider."""
        self._force_refresh = True
