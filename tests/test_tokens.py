"""Unit tests for the access-token codec and refresh-token helpers."""

import base64
import json
import time

import pytest

from tessera.service.errors import TokenError, TokenErrorKind
from tessera.service.tokens import JWTCodec, generate_refresh_token, hash_refresh_token
from tessera.storage.models import KeyRing, SigningMaterial

KEY_A = SigningMaterial(key="a" * 40, issuer="tessera-test", audience="clients", key_id="k1")
KEY_B = SigningMaterial(key="b" * 40, issuer="tessera-test", audience="clients", key_id="k2")


def _payload(**overrides):
    now = int(time.time())
    payload = {
        "iss": "tessera-test",
        "aud": "clients",
        "sub": "user-1",
        "token_type": "access",
        "jti": "jti-1",
        "iat": now,
        "nbf": now,
        "exp": now + 900,
    }
    payload.update(overrides)
    return payload


def _segment(obj) -> str:
    return base64.urlsafe_b64encode(json.dumps(obj).encode()).decode().rstrip("=")


@pytest.fixture
def codec():
    return JWTCodec()


def test_encode_decode_returns_payload(codec):
    token = codec.encode(_payload(), KEY_A)
    decoded = codec.decode(token, KeyRing(current=KEY_A))
    assert decoded["sub"] == "user-1"
    assert decoded["jti"] == "jti-1"


def test_header_carries_key_id(codec):
    token = codec.encode(_payload(), KEY_A)
    header = json.loads(base64.urlsafe_b64decode(token.split(".")[0] + "=="))
    assert header == {"alg": "HS256", "typ": "JWT", "kid": "k1"}


def test_wrong_key_is_bad_signature(codec):
    token = codec.encode(_payload(), KEY_B)
    forged = KeyRing(current=SigningMaterial(key="c" * 40, issuer="tessera-test", audience="clients", key_id="k2"))
    with pytest.raises(TokenError) as exc:
        codec.decode(token, forged)
    assert exc.value.kind is TokenErrorKind.BAD_SIGNATURE


def test_tampered_payload_is_bad_signature(codec):
    header, _, signature = codec.encode(_payload(), KEY_A).split(".")
    tampered = f"{header}.{_segment(_payload(sub='someone-else'))}.{signature}"
    with pytest.raises(TokenError) as exc:
        codec.decode(tampered, KeyRing(current=KEY_A))
    assert exc.value.kind is TokenErrorKind.BAD_SIGNATURE


def test_alg_none_is_rejected(codec):
    token = f"{_segment({'alg': 'none', 'typ': 'JWT'})}.{_segment(_payload())}."
    with pytest.raises(TokenError) as exc:
        codec.decode(token, KeyRing(current=KEY_A))
    assert exc.value.kind is TokenErrorKind.INVALID_TOKEN


@pytest.mark.parametrize("garbage", ["", "not-a-token", "a.b", "a.b.c.d"])
def test_malformed_tokens_are_invalid(codec, garbage):
    with pytest.raises(TokenError) as exc:
        codec.decode(garbage, KeyRing(current=KEY_A))
    assert exc.value.kind is TokenErrorKind.INVALID_TOKEN


def test_issuer_and_audience_must_match(codec):
    ring = KeyRing(current=KEY_A)
    for bad in (_payload(iss="elsewhere"), _payload(aud="other-clients")):
        with pytest.raises(TokenError) as exc:
            codec.decode(codec.encode(bad, KEY_A), ring)
        assert exc.value.kind is TokenErrorKind.INVALID_TOKEN


def test_audience_list_is_accepted(codec):
    token = codec.encode(_payload(aud=["other", "clients"]), KEY_A)
    assert codec.decode(token, KeyRing(current=KEY_A))["sub"] == "user-1"


def test_expiry_honours_leeway(codec):
    now = time.time()
    token = codec.encode(_payload(exp=int(now) - 60), KEY_A)
    ring = KeyRing(current=KEY_A)

    with pytest.raises(TokenError) as exc:
        codec.decode(token, ring, leeway_seconds=0, now=now)
    assert exc.value.kind is TokenErrorKind.TOKEN_EXPIRED

    assert codec.decode(token, ring, leeway_seconds=120, now=now)["sub"] == "user-1"


def test_previous_key_still_verifies(codec):
    token = codec.encode(_payload(), KEY_A)
    ring = KeyRing(current=KEY_B, previous=(KEY_A,))
    assert codec.decode(token, ring)["sub"] == "user-1"


def test_refresh_token_tokens_are_unique_and_long():
    tokens = {generate_refresh_token() for _ in range(50)}
    assert len(tokens) == 50
    # 64 random bytes encode to at least 85 URL-safe characters
    assert all(len(t) >= 85 for t in tokens)


def test_refresh_token_hash_is_stable_sha256():
    digest = hash_refresh_token("raw-value")
    assert digest == hash_refresh_token("raw-value")
    assert digest != hash_refresh_token("raw-value2")
    assert len(digest) == 64
    assert "raw-value" not in digest
