"""Tests for correlation ids and sensitive-field masking in log entries."""

from authcore.logging import (
    _add_correlation_id,
    _mask_sensitive_fields,
    get_correlation_id,
    mask_value,
    set_correlation_id,
)


class TestMasking:
    def test_credential_and_email_fields_masked(self):
        entry = _mask_sensitive_fields(
            None,
            "info",
            {
                "event": "login_failed",
                "email": "alice@example.com",
                "refresh_token": "eyJhbGciOiJIUzI1NiJ9.payload.sig",
                "account_id": "acct-1",
            },
        )

        assert entry["email"] == "al***om"
        assert entry["refresh_token"].startswith("ey***")
        assert "payload" not in entry["refresh_token"]
        assert entry["account_id"] == "acct-1"
        assert entry["event"] == "login_failed"

    def test_short_and_non_string_values(self):
        assert mask_value("abc") == "***"
        entry = _mask_sensitive_fields(None, "info", {"event": "x", "token_count": 3})
        assert entry["token_count"] == 3


class TestCorrelationId:
    def test_generated_when_missing(self):
        cid = set_correlation_id()

        assert cid
        assert get_correlation_id() == cid

    def test_attached_to_entries(self):
        set_correlation_id("req-logging")

        entry = _add_correlation_id(None, "info", {"event": "x"})

        assert entry["correlation_id"] == "req-logging"
