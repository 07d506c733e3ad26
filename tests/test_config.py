import pytest
from pydantic import ValidationError

from tessera.config import (
    ContextMismatchPolicy,
    SecretProviderKind,
    Settings,
    get_settings,
    reset_settings_cache,
)


def test_from_env_reads_named_variables(monkeypatch):
    monkeypatch.setenv("MAX_ACTIVE_REFRESH_TOKENS", "7")
    monkeypatch.setenv("REUSE_GRACE_SECONDS", "15")
    monkeypatch.setenv("CONTEXT_MISMATCH_POLICY", "reject")
    monkeypatch.setenv("SECRET_PROVIDER", "file")
    monkeypatch.setenv("CHECK_USER_AGENT", "false")
    monkeypatch.setenv("STORE_TIMEOUT_SECONDS", "0.5")

    settings = Settings.from_env()

    assert settings.max_active_refresh_tokens == 7
    assert settings.reuse_grace_seconds == 15
    assert settings.context_mismatch_policy is ContextMismatchPolicy.REJECT
    assert settings.secret_provider is SecretProviderKind.FILE
    assert settings.check_user_agent is False
    assert settings.store_timeout_seconds == 0.5


def test_defaults_match_documented_lifetimes():
    settings = Settings(jwt_secret="x" * 40)

    assert settings.access_token_ttl_minutes == 15
    assert settings.refresh_token_ttl_days == 14
    assert settings.max_active_refresh_tokens == 5
    assert settings.claims_cache_ttl_minutes == 30
    assert settings.block_status_cache_ttl_minutes == 10
    assert settings.clock_skew_seconds == 120
    assert settings.context_mismatch_policy is ContextMismatchPolicy.LOG
    assert settings.reuse_grace_seconds == 0


@pytest.mark.parametrize(
    "field,value",
    [
        ("max_active_refresh_tokens", 0),
        ("access_token_ttl_minutes", 0),
        ("refresh_token_ttl_days", -1),
        ("store_timeout_seconds", 0),
        ("clock_skew_seconds", -5),
    ],
)
def test_out_of_range_values_rejected(field, value):
    with pytest.raises(ValidationError):
        Settings(jwt_secret="x" * 40, **{field: value})


def test_unknown_policy_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="x" * 40, context_mismatch_policy="shrug")


def test_missing_jwt_secret_is_generated_and_persisted(monkeypatch, tmp_path):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

    first = Settings(jwt_secret=None)
    second = Settings(jwt_secret=None)

    assert len(first.jwt_secret) >= 32
    assert first.jwt_secret == second.jwt_secret
    assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret


def test_settings_cache_resets(monkeypatch):
    reset_settings_cache()
    monkeypatch.setenv("JWT_ISSUER", "issuer-a")
    assert get_settings().jwt_issuer == "issuer-a"

    monkeypatch.setenv("JWT_ISSUER", "issuer-b")
    assert get_settings().jwt_issuer == "issuer-a"
    reset_settings_cache()
    assert get_settings().jwt_issuer == "issuer-b"
    reset_settings_cache()
