"""Access and refresh token validation."""

from datetime import timedelta

from tessera.service.engine import SessionEngine
from tessera.service.errors import TokenErrorKind
from tessera.service.secrets import SettingsSecretProvider, SigningKeyHolder
from tessera.service.tokens import JWTCodec
from tessera.storage.errors import StoreError
from tessera.storage.memory import MemoryStore
from tessera.storage.models import KeyRing, SigningMaterial, utcnow


class DownCache:
    async def get_json(self, key):
        raise ConnectionError("redis down")

    async def set_json(self, key, value, ttl_seconds):
        raise ConnectionError("redis down")

    async def delete(self, key):
        raise ConnectionError("redis down")


class BlockLookupDownStore(MemoryStore):
    fail_block_lookup = False

    def is_user_blocked(self, user_id):
        if self.fail_block_lookup:
            raise StoreError("too many connections")
        return super().is_user_blocked(user_id)


async def test_fresh_access_token_is_valid(engine, user):
    tokens = (await engine.issue_session(user)).tokens

    result = await engine.validate_access(tokens.access_token)

    assert result.valid and result.error is None
    assert result.user_id == user.id
    assert result.claims["jti"] == tokens.access_token_id


async def test_expired_access_token(engine, user):
    old = await engine.issuer.issue(user.id, now=utcnow() - timedelta(hours=1))

    result = await engine.validate_access(old.access_token)

    assert result.error is TokenErrorKind.TOKEN_EXPIRED


async def test_expiry_tolerates_clock_skew(engine, user):
    # 15 minute lifetime, expired one minute ago, 2 minutes of skew allowed
    recent = await engine.issuer.issue(user.id, now=utcnow() - timedelta(minutes=16))

    assert (await engine.validate_access(recent.access_token)).valid


async def test_foreign_signature_rejected(engine, user):
    forged_ring = KeyRing(
        SigningMaterial("another-signing-key-that-is-long-enough-0000", "tessera-test", "tessera-test-clients")
    )
    forged = JWTCodec().encode({"sub": user.id, "token_type": "access"}, forged_ring.current)

    result = await engine.validate_access(forged)

    assert result.error is TokenErrorKind.BAD_SIGNATURE


async def test_garbage_and_empty_tokens_are_invalid(engine):
    assert (await engine.validate_access("not.a.jwt")).error is TokenErrorKind.INVALID_TOKEN
    assert (await engine.validate_access("garbage")).error is TokenErrorKind.INVALID_TOKEN
    assert (await engine.validate_access("")).error is TokenErrorKind.INVALID_TOKEN


async def test_blocked_user_rejected_after_cache_invalidation(engine, store, user):
    tokens = (await engine.issue_session(user)).tokens
    assert (await engine.validate_access(tokens.access_token)).valid

    store.set_user_blocked(user.id, True)
    # Cached status is served until it expires or is invalidated
    assert (await engine.validate_access(tokens.access_token)).valid
    await engine.invalidate_block_status(user.id)

    assert (await engine.validate_access(tokens.access_token)).error is TokenErrorKind.USER_BLOCKED


async def test_block_status_fails_open_when_store_and_cache_are_down(settings):
    store = BlockLookupDownStore()
    user = store.create_user("grace@example.com", roles=["user"])
    keys = SigningKeyHolder(SettingsSecretProvider(settings), refresh_seconds=300, max_stale_seconds=3600)
    engine = SessionEngine.from_settings(settings, store=store, cache=DownCache(), keys=keys)
    tokens = (await engine.issue_session(user)).tokens
    store.set_user_blocked(user.id, True)
    store.fail_block_lookup = True

    result = await engine.validate_access(tokens.access_token)

    assert result.valid


async def test_validate_refresh_accepts_active_token(engine, user):
    tokens = (await engine.issue_session(user)).tokens

    result = await engine.validate_refresh(tokens.refresh_token)

    assert result.valid
    assert result.user.id == user.id
    assert result.token.id == tokens.refresh_token_id


async def test_validate_refresh_reports_used_token(engine, user):
    tokens = (await engine.issue_session(user)).tokens
    await engine.rotate(tokens.refresh_token)

    result = await engine.validate_refresh(tokens.refresh_token)

    assert result.error is TokenErrorKind.TOKEN_USED


async def test_validate_refresh_does_not_consume_expired_token(engine, store, user):
    tokens = (await engine.issue_session(user)).tokens
    store.refresh_tokens[tokens.refresh_token_id].expires_at = utcnow() - timedelta(seconds=5)

    result = await engine.validate_refresh(tokens.refresh_token)

    assert result.error is TokenErrorKind.TOKEN_EXPIRED
    assert not store.get_refresh_token(tokens.refresh_token_id).is_used


async def test_validate_refresh_reports_revoked_token(engine, user):
    tokens = (await engine.issue_session(user)).tokens
    await engine.revoke_token(tokens.refresh_token)

    result = await engine.validate_refresh(tokens.refresh_token)

    assert result.error is TokenErrorKind.TOKEN_REVOKED


async def test_unblocking_takes_effect_after_invalidation(engine, store, user):
    store.set_user_blocked(user.id, True)
    await engine.invalidate_block_status(user.id)
    assert (await engine.issue_session(user)).error is TokenErrorKind.USER_BLOCKED

    store.set_user_blocked(user.id, False)
    await engine.invalidate_block_status(user.id)

    assert (await engine.issue_session(user)).ok
