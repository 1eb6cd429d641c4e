from passage.logging import _redact_pii, get_correlation_id, set_correlation_id


def test_redacts_credential_and_contact_fields():
    event = {
        "event": "login_failed",
        "email": "person@example.com",
        "refresh_token": "abcdef0123",
        "code": "1234",
        "account_id": "acct-1",
    }

    redacted = _redact_pii(None, "info", event)

    assert redacted["email"] == "pe***om"
    assert redacted["refresh_token"] == "ab***23"
    assert redacted["code"] == "***"
    assert redacted["account_id"] == "acct-1"
    assert redacted["event"] == "login_failed"


def test_correlation_id_round_trip():
    cid = set_correlation_id("req-123")

    assert cid == "req-123"
    assert get_correlation_id() == "req-123"
    assert set_correlation_id() != "req-123"
