from __future__ import annotations

import functools
import uuid
from datetime import datetime
from typing import Any, Callable, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tessera.logging import get_logger
from tessera.storage.errors import ConstraintViolation
from tessera.storage.models import RefreshToken, User, utcnow

logger = get_logger(__name__)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT,
        tenant_id TEXT NOT NULL DEFAULT 'public',
        is_blocked BOOLEAN NOT NULL DEFAULT FALSE,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        phone_number TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_role (
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        role TEXT NOT NULL,
        PRIMARY KEY (user_id, role)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id UUID PRIMARY KEY,
        token_hash TEXT NOT NULL UNIQUE,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        access_token_id TEXT NOT NULL,
        family_id UUID NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_by_ip TEXT,
        user_agent TEXT,
        is_used BOOLEAN NOT NULL DEFAULT FALSE,
        used_at TIMESTAMPTZ,
        is_revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ,
        revoked_by_ip TEXT,
        reason_revoked TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)",
    "CREATE INDEX IF NOT EXISTS refresh_token_family_idx ON refresh_token (family_id)",
)

_TOKEN_COLUMNS = (
    "id, token_hash, user_id, access_token_id, family_id, created_at, expires_at, "
    "created_by_ip, user_agent, is_used, used_at, is_revoked, revoked_at, "
    "revoked_by_ip, reason_revoked"
)


def _missing_on_malformed_id(default: Any) -> Callable:
    """Treat an id Postgres cannot cast to UUID as a row that does not exist."""

    def decorator(fn: Callable) -> Callable:
        @functools.wraps(fn)
        def wrapper(self, *args, **kwargs):
            try:
                return fn(self, *args, **kwargs)
            except errors.InvalidTextRepresentation as exc:
                logger.info("postgres_malformed_id", operation=fn.__name__, error=str(exc))
                return default

        return wrapper

    return decorator


class PostgresStore:
    """Postgres-backed credential and user/role store.

    Statement timeouts are applied per connection so a stuck query surfaces
    as an error instead of holding a rotation open.
    """

    def __init__(
        self,
        dsn: str,
        *,
        statement_timeout_ms: int = 3000,
        min_size: int = 2,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row.get("name"),
            tenant_id=row.get("tenant_id") or "public",
            is_blocked=bool(row.get("is_blocked", False)),
            email_verified=bool(row.get("email_verified", False)),
            phone_number=row.get("phone_number"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _token_from_row(row: dict) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            token_hash=row["token_hash"],
            user_id=str(row["user_id"]),
            access_token_id=row["access_token_id"],
            family_id=str(row["family_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            created_by_ip=row.get("created_by_ip"),
            user_agent=row.get("user_agent"),
            is_used=bool(row.get("is_used", False)),
            used_at=row.get("used_at"),
            is_revoked=bool(row.get("is_revoked", False)),
            revoked_at=row.get("revoked_at"),
            revoked_by_ip=row.get("revoked_by_ip"),
            reason_revoked=row.get("reason_revoked"),
        )

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
        user = User(
            id=str(uuid.uuid4()),
            email=email,
            name=name,
            tenant_id=tenant_id,
            is_blocked=is_blocked,
            email_verified=email_verified,
            phone_number=phone_number,
        )
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, tenant_id, is_blocked, email_verified, phone_number, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        email,
                        name,
                        tenant_id,
                        is_blocked,
                        email_verified,
                        phone_number,
                        user.created_at,
                    ),
                )
                for role in roles or []:
                    conn.execute(
                        "INSERT INTO user_role (user_id, role) VALUES (%s, %s) ON CONFLICT DO NOTHING",
                        (user.id, role),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    @_missing_on_malformed_id(None)
    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    @_missing_on_malformed_id([])
    def get_roles(self, user_id: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT role FROM user_role WHERE user_id = %s ORDER BY role", (user_id,)
            ).fetchall()
        return [row["role"] for row in rows]

    def set_user_roles(self, user_id: str, roles: Iterable[str]) -> None:
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute("DELETE FROM user_role WHERE user_id = %s", (user_id,))
                for role in roles:
                    conn.execute(
                        "INSERT INTO user_role (user_id, role) VALUES (%s, %s) ON CONFLICT DO NOTHING",
                        (user_id, role),
                    )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for roles", {"user_id": user_id})
        except errors.DataError:
            raise ConstraintViolation("malformed user id", {"user_id": user_id})

    def set_user_blocked(self, user_id: str, blocked: bool) -> None:
        try:
            with self._connect() as conn:
                result = conn.execute(
                    "UPDATE app_user SET is_blocked = %s WHERE id = %s", (blocked, user_id)
                )
        except errors.DataError:
            raise ConstraintViolation("malformed user id", {"user_id": user_id})
        if result.rowcount == 0:
            raise ConstraintViolation("user not found", {"user_id": user_id})

    @_missing_on_malformed_id(True)
    def is_user_blocked(self, user_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT is_blocked FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return True
        return bool(row["is_blocked"])

    # refresh tokens
    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT INTO refresh_token ({_TOKEN_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.token_hash,
                        token.user_id,
                        token.access_token_id,
                        token.family_id,
                        token.created_at,
                        token.expires_at,
                        token.created_by_ip,
                        token.user_agent,
                        token.is_used,
                        token.used_at,
                        token.is_revoked,
                        token.revoked_at,
                        token.revoked_by_ip,
                        token.reason_revoked,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("token hash already exists", {"field": "token_hash"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("refresh token user missing", {"user_id": token.user_id})
        except errors.DataError:
            raise ConstraintViolation(
                "malformed refresh token identifier",
                {"user_id": token.user_id, "family_id": token.family_id},
            )
        return token

    @_missing_on_malformed_id(None)
    def get_refresh_token(self, token_id: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_TOKEN_COLUMNS} FROM refresh_token WHERE id = %s", (token_id,)
            ).fetchone()
        return self._token_from_row(row) if row else None

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_TOKEN_COLUMNS} FROM refresh_token WHERE token_hash = %s",
                (token_hash,),
            ).fetchone()
        return self._token_from_row(row) if row else None

    @_missing_on_malformed_id(False)
    def mark_refresh_token_used(
        self, token_id: str, *, used_at: Optional[datetime] = None
    ) -> bool:
        """Conditional update; exactly one concurrent caller sees ``True``."""
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_token
                SET is_used = TRUE, used_at = %s
                WHERE id = %s AND is_used = FALSE AND is_revoked = FALSE
                """,
                (used_at or utcnow(), token_id),
            )
            return result.rowcount == 1

    @_missing_on_malformed_id(False)
    def revoke_refresh_token(
        self,
        token_id: str,
        *,
        revoked_at: Optional[datetime] = None,
        revoked_by_ip: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_token
                SET is_revoked = TRUE, revoked_at = %s, revoked_by_ip = %s, reason_revoked = %s
                WHERE id = %s AND is_revoked = FALSE
                """,
                (revoked_at or utcnow(), revoked_by_ip, reason, token_id),
            )
            return result.rowcount == 1

    @_missing_on_malformed_id([])
    def list_active_refresh_tokens(
        self, user_id: str, now: Optional[datetime] = None
    ) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_TOKEN_COLUMNS} FROM refresh_token
                WHERE user_id = %s AND is_used = FALSE AND is_revoked = FALSE AND expires_at >= %s
                ORDER BY created_at DESC
                """,
                (user_id, now or utcnow()),
            ).fetchall()
        return [self._token_from_row(row) for row in rows]

    @_missing_on_malformed_id([])
    def list_family_tokens(self, family_id: str) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_TOKEN_COLUMNS} FROM refresh_token WHERE family_id = %s ORDER BY created_at",
                (family_id,),
            ).fetchall()
        return [self._token_from_row(row) for row in rows]

    @_missing_on_malformed_id(0)
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
        clauses = ["family_id = %s", "is_used = FALSE", "is_revoked = FALSE"]
        params: list[Any] = [revoked_at or utcnow(), revoked_by_ip, reason, family_id]
        if exclude_token_id is not None:
            clauses.append("id <> %s")
            params.append(exclude_token_id)
        if created_before is not None:
            clauses.append("created_at < %s")
            params.append(created_before)
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE refresh_token SET is_revoked = TRUE, revoked_at = %s, revoked_by_ip = %s, "
                "reason_revoked = %s WHERE " + " AND ".join(clauses),
                tuple(params),
            )
            return result.rowcount

    @_missing_on_malformed_id(0)
    def revoke_user_refresh_tokens(
        self,
        user_id: str,
        *,
        revoked_at: Optional[datetime] = None,
        revoked_by_ip: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_token
                SET is_revoked = TRUE, revoked_at = %s, revoked_by_ip = %s, reason_revoked = %s
                WHERE user_id = %s AND is_used = FALSE AND is_revoked = FALSE
                """,
                (revoked_at or utcnow(), revoked_by_ip, reason, user_id),
            )
            return result.rowcount
