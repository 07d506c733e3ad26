"""Session issuance: token contents, persistence and preconditions."""

import base64
import json

from tessera.service.errors import TokenErrorKind
from tessera.service.secrets import SecretUnavailable
from tessera.service.tokens import hash_refresh_token
from tessera.storage.models import RequestContext


def _decode_unverified(token):
    header_b64, payload_b64, _ = token.split(".")
    pad = lambda s: s + "=" * (-len(s) % 4)  # noqa: E731
    return (
        json.loads(base64.urlsafe_b64decode(pad(header_b64))),
        json.loads(base64.urlsafe_b64decode(pad(payload_b64))),
    )


async def test_issue_session_returns_pair(engine, store, user):
    result = await engine.issue_session(user, RequestContext("10.0.0.1", "pytest/1.0"))

    assert result.ok and result.error is None
    tokens = result.tokens
    assert tokens.user_id == user.id
    assert tokens.refresh_token_expires_at > tokens.access_token_expires_at
    assert set(tokens.as_response()) == {
        "access_token",
        "refresh_token",
        "token_type",
        "expires_at",
        "refresh_expires_at",
    }


async def test_access_token_carries_identity_claims(engine, user):
    tokens = (await engine.issue_session(user)).tokens
    header, payload = _decode_unverified(tokens.access_token)

    assert header["kid"] == "default"
    assert payload["sub"] == user.id
    assert payload["email"] == "alice@example.com"
    assert payload["name"] == "Alice"
    assert payload["roles"] == ["user"]
    assert payload["tenant_id"] == "public"
    assert payload["iss"] == "tessera-test"
    assert payload["aud"] == "tessera-test-clients"
    assert payload["jti"] == tokens.access_token_id
    assert payload["exp"] - payload["iat"] == 15 * 60
    assert payload["iat_us"] // 1_000_000 == payload["iat"]


async def test_only_the_hash_is_persisted(engine, store, user):
    tokens = (await engine.issue_session(user, RequestContext("10.0.0.1", "pytest/1.0"))).tokens
    record = store.get_refresh_token(tokens.refresh_token_id)

    assert record.token_hash == hash_refresh_token(tokens.refresh_token)
    assert record.token_hash != tokens.refresh_token
    assert record.access_token_id == tokens.access_token_id
    assert record.created_by_ip == "10.0.0.1"
    assert record.user_agent == "pytest/1.0"
    assert not record.is_used and not record.is_revoked


async def test_each_login_starts_a_new_family(engine, user):
    first = (await engine.issue_session(user)).tokens
    second = (await engine.issue_session(user.id)).tokens
    assert first.family_id != second.family_id


async def test_blocked_user_cannot_log_in(engine, store, user):
    store.set_user_blocked(user.id, True)

    result = await engine.issue_session(user)

    assert not result.ok
    assert result.error is TokenErrorKind.USER_BLOCKED
    assert store.list_active_refresh_tokens(user.id) == []


async def test_signing_key_outage_keeps_existing_sessions(settings, make_engine, store, user):
    engine = make_engine(settings.model_copy(update={"max_active_refresh_tokens": 1}))
    existing = (await engine.issue_session(user)).tokens

    class DownProvider:
        async def get_signing_material(self):
            raise SecretUnavailable("vault sealed")

    engine.issuer.keys.provider = DownProvider()
    engine.issuer.keys.invalidate()
    engine.issuer.keys.max_stale_seconds = 0

    result = await engine.issue_session(user)

    assert result.error is TokenErrorKind.SIGNING_KEY_UNAVAILABLE
    assert [t.id for t in store.list_active_refresh_tokens(user.id)] == [existing.refresh_token_id]
