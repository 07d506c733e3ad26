from __future__ import annotations

import json
import os
import threading
import uuid
from dataclasses import asdict, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from tessera.logging import get_logger
from tessera.storage.errors import ConstraintViolation
from tessera.storage.models import RefreshToken, User, utcnow

_USER_DATETIME_FIELDS = ("created_at",)
_TOKEN_DATETIME_FIELDS = ("created_at", "expires_at", "used_at", "revoked_at")


class MemoryStore:
    """In-memory credential and user/role store.

    Every mutation runs under a single re-entrant lock, which makes
    ``mark_refresh_token_used`` a true compare-and-set within one process.
    When ``fs_root`` is given the state is mirrored to
    ``<fs_root>/state/memory_store.json`` after each write and reloaded on
    start-up.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.roles: Dict[str, List[str]] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self._hash_index: Dict[str, str] = {}
        # RLock so nested helpers can re-acquire within the same thread
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # users
    def create_user(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        tenant_id: str = "public",
        roles: Optional[Iterable[str]] = None,
        is_blocked: bool = False,
        email_verified: bool = False,
        phone_number: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                name=name,
                tenant_id=tenant_id,
                is_blocked=is_blocked,
                email_verified=email_verified,
                phone_number=phone_number,
            )
            self.users[user.id] = user
            self.roles[user.id] = list(roles or [])
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_roles(self, user_id: str) -> List[str]:
        with self._data_lock:
            return list(self.roles.get(user_id, []))

    def set_user_roles(self, user_id: str, roles: Iterable[str]) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for roles", {"user_id": user_id})
            self.roles[user_id] = list(roles)
            self._persist_state()

    def set_user_blocked(self, user_id: str, blocked: bool) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            user.is_blocked = blocked
            self._persist_state()

    def is_user_blocked(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            # Unknown users cannot hold sessions
            return True if user is None else user.is_blocked

    # refresh tokens
    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if token.user_id not in self.users:
                raise ConstraintViolation("refresh token user missing", {"user_id": token.user_id})
            if token.token_hash in self._hash_index:
                raise ConstraintViolation("token hash already exists", {"field": "token_hash"})
            stored = replace(token)
            self.refresh_tokens[stored.id] = stored
            self._hash_index[stored.token_hash] = stored.id
            self._persist_state()
            return replace(stored)

    def get_refresh_token(self, token_id: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token = self.refresh_tokens.get(token_id)
            return replace(token) if token else None

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token_id = self._hash_index.get(token_hash)
            if token_id is None:
                return None
            return replace(self.refresh_tokens[token_id])

    def mark_refresh_token_used(
        self, token_id: str, *, used_at: Optional[datetime] = None
    ) -> bool:
        """Flip ``is_used`` only if the row is still unused and unrevoked."""
        with self._data_lock:
            token = self.refresh_tokens.get(token_id)
            if token is None or token.is_used or token.is_revoked:
                return False
            token.is_used = True
            token.used_at = used_at or utcnow()
            self._persist_state()
            return True

    def revoke_refresh_token(
        self,
        token_id: str,
        *,
        revoked_at: Optional[datetime] = None,
        revoked_by_ip: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> bool:
        with self._data_lock:
            token = self.refresh_tokens.get(token_id)
            if token is None or token.is_revoked:
                return False
            self._apply_revocation(token, revoked_at, revoked_by_ip, reason)
            self._persist_state()
            return True

    def list_active_refresh_tokens(
        self, user_id: str, now: Optional[datetime] = None
    ) -> List[RefreshToken]:
        moment = now or utcnow()
        with self._data_lock:
            active = [
                replace(t)
                for t in self.refresh_tokens.values()
                if t.user_id == user_id and t.is_active(moment)
            ]
        return sorted(active, key=lambda t: t.created_at, reverse=True)

    def list_family_tokens(self, family_id: str) -> List[RefreshToken]:
        with self._data_lock:
            members = [replace(t) for t in self.refresh_tokens.values() if t.family_id == family_id]
        return sorted(members, key=lambda t: t.created_at)

    def revoke_family(
        self,
        family_id: str,
        *,
        exclude_token_id: Optional[str] = None,
        revoked_at: Optional[datetime] = None,
        revoked_by_ip: Optional[str] = None,
        reason: Optional[str] = None,
        created_before: Optional[datetime] = None,
    ) -> int:
        with self._data_lock:
            revoked = 0
            for token in self.refresh_tokens.values():
                if token.family_id != family_id or token.id == exclude_token_id:
                    continue
                if token.is_used or token.is_revoked:
                    continue
                if created_before is not None and token.created_at >= created_before:
                    continue
                self._apply_revocation(token, revoked_at, revoked_by_ip, reason)
                revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def revoke_user_refresh_tokens(
        self,
        user_id: str,
        *,
        revoked_at: Optional[datetime] = None,
        revoked_by_ip: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> int:
        with self._data_lock:
            revoked = 0
            for token in self.refresh_tokens.values():
                if token.user_id != user_id or token.is_revoked or token.is_used:
                    continue
                self._apply_revocation(token, revoked_at, revoked_by_ip, reason)
                revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    @staticmethod
    def _apply_revocation(
        token: RefreshToken,
        revoked_at: Optional[datetime],
        revoked_by_ip: Optional[str],
        reason: Optional[str],
    ) -> None:
        token.is_revoked = True
        token.revoked_at = revoked_at or utcnow()
        token.revoked_by_ip = revoked_by_ip
        token.reason_revoked = reason

    # persistence
    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize(obj: Any, datetime_fields: Iterable[str]) -> dict:
        data = asdict(obj)
        for name in datetime_fields:
            value = data.get(name)
            if isinstance(value, datetime):
                data[name] = value.isoformat()
        return data

    @staticmethod
    def _deserialize_datetimes(data: dict, datetime_fields: Iterable[str]) -> dict:
        for name in datetime_fields:
            raw = data.get(name)
            if isinstance(raw, str):
                data[name] = datetime.fromisoformat(raw)
        return data

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize(u, _USER_DATETIME_FIELDS) for u in self.users.values()],
            "roles": self.roles,
            "refresh_tokens": [
                self._serialize(t, _TOKEN_DATETIME_FIELDS) for t in self.refresh_tokens.values()
            ],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(state))
        os.replace(tmp_path, path)

    def _load_state(self) -> bool:
        path = self._state_path()
        if not path.exists():
            return False
        try:
            state = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            self.logger.warning("memory_store_state_unreadable", path=str(path), error=str(exc))
            return False
        for raw in state.get("users", []):
            user = User(**self._deserialize_datetimes(raw, _USER_DATETIME_FIELDS))
            self.users[user.id] = user
        self.roles = {uid: list(r) for uid, r in state.get("roles", {}).items()}
        for raw in state.get("refresh_tokens", []):
            token = RefreshToken(**self._deserialize_datetimes(raw, _TOKEN_DATETIME_FIELDS))
            self.refresh_tokens[token.id] = token
            self._hash_index[token.token_hash] = token.id
        self.logger.info(
            "memory_store_state_loaded",
            users=len(self.users),
            tokens=len(self.refresh_tokens),
        )
        return True
