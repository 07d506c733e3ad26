from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tessera.logging import get_logger

logger = get_logger(__name__)


class SecretProviderKind(str, Enum):
    """Where signing material comes from."""

    SETTINGS = "settings"
    FILE = "file"


class ContextMismatchPolicy(str, Enum):
    """What to do when a refresh token is presented from a different client.

    - LOG: record the anomaly and continue with the rotation
    - REJECT: treat the mismatch as token reuse and revoke the family
    """

    LOG = "log"
    REJECT = "reject"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session engine and its collaborators."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tessera", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/tessera", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (sync Redis client, in-memory fallbacks).",
    )

    # Signing material
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("tessera", "JWT_ISSUER")
    jwt_audience: str = env_field("tessera-clients", "JWT_AUDIENCE")
    jwt_key_id: str = env_field("default", "JWT_KEY_ID")
    secret_provider: SecretProviderKind = env_field(
        SecretProviderKind.SETTINGS,
        "SECRET_PROVIDER",
        description="settings: use JWT_* values; file: read SECRET_FILE_PATH on every refresh",
    )
    secret_file_path: str | None = env_field(None, "SECRET_FILE_PATH")
    signing_key_refresh_seconds: int = env_field(300, "SIGNING_KEY_REFRESH_SECONDS")
    signing_key_max_stale_seconds: int = env_field(3600, "SIGNING_KEY_MAX_STALE_SECONDS")

    # Token lifetimes and limits
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(14, "REFRESH_TOKEN_TTL_DAYS")
    max_active_refresh_tokens: int = env_field(
        5,
        "MAX_ACTIVE_REFRESH_TOKENS",
        description="Concurrent active refresh tokens per user; oldest are revoked first",
    )
    claims_cache_ttl_minutes: int = env_field(30, "CLAIMS_CACHE_TTL_MINUTES")
    block_status_cache_ttl_minutes: int = env_field(10, "BLOCK_STATUS_CACHE_TTL_MINUTES")
    clock_skew_seconds: int = env_field(120, "CLOCK_SKEW_SECONDS")

    # Rotation policy
    check_ip_address: bool = env_field(True, "CHECK_IP_ADDRESS")
    check_user_agent: bool = env_field(True, "CHECK_USER_AGENT")
    context_mismatch_policy: ContextMismatchPolicy = env_field(
        ContextMismatchPolicy.LOG, "CONTEXT_MISMATCH_POLICY"
    )
    reuse_grace_seconds: int = env_field(
        0,
        "REUSE_GRACE_SECONDS",
        description="Replays within this window after consumption spare the winning descendant; 0 disables",
    )

    # Collaborator timeouts
    store_timeout_seconds: float = env_field(3.0, "STORE_TIMEOUT_SECONDS")
    cache_timeout_seconds: float = env_field(1.0, "CACHE_TIMEOUT_SECONDS")
    read_retry_attempts: int = env_field(3, "READ_RETRY_ATTEMPTS")
    read_retry_backoff_ms: int = env_field(50, "READ_RETRY_BACKOFF_MS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("secret_provider")
    @classmethod
    def _validate_secret_provider(cls, value: SecretProviderKind) -> SecretProviderKind:
        return SecretProviderKind(value)

    @field_validator("context_mismatch_policy")
    @classmethod
    def _validate_mismatch_policy(cls, value: ContextMismatchPolicy) -> ContextMismatchPolicy:
        return ContextMismatchPolicy(value)

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_days",
        "max_active_refresh_tokens",
        "claims_cache_ttl_minutes",
        "block_status_cache_ttl_minutes",
        "signing_key_refresh_seconds",
        "read_retry_attempts",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("store_timeout_seconds", "cache_timeout_seconds")
    @classmethod
    def _require_positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeouts must be greater than zero")
        return value

    @field_validator("clock_skew_seconds", "reuse_grace_seconds", "read_retry_backoff_ms")
    @classmethod
    def _require_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/tessera"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
                message="Could not set directory permissions",
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
        try:
            # Atomic write: temp file then rename
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
