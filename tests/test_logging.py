from structlog.testing import capture_logs

from tessera.logging import _redact_pii, get_correlation_id, log_security_event, set_correlation_id


def test_raw_credentials_are_masked():
    event = _redact_pii(
        None,
        "info",
        {
            "event": "debug",
            "refresh_token": "abcdefghijklmnop",
            "access_token": "eyJhbGciOi.payload.sig",
            "signing_key": "k",
            "email": "alice@example.com",
        },
    )

    assert event["refresh_token"] == "ab***op"
    assert event["access_token"].startswith("ey***")
    assert event["signing_key"] == "***"
    assert event["email"] == "al***om"


def test_identifiers_survive_redaction():
    event = _redact_pii(
        None,
        "info",
        {"event": "rotated", "token_id": "1234-5678", "family_id": "fam-1", "jti": "jti-1", "user_id": "u-1"},
    )

    assert event == {"event": "rotated", "token_id": "1234-5678", "family_id": "fam-1", "jti": "jti-1", "user_id": "u-1"}


def test_security_events_are_tagged_warnings():
    with capture_logs() as logs:
        log_security_event("refresh_token_reuse_detected", family_id="fam-1", kind="token_used")

    assert logs == [
        {
            "event": "refresh_token_reuse_detected",
            "log_level": "warning",
            "security_event": True,
            "family_id": "fam-1",
            "kind": "token_used",
        }
    ]


def test_correlation_id_generated_when_missing():
    cid = set_correlation_id()

    assert cid and get_correlation_id() == cid
    assert set_correlation_id("req-42") == "req-42"
