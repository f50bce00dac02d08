"""Tests for log redaction and error message sanitizing."""

from authflow.logging import (
    _redact_pii,
    get_correlation_id,
    sanitize_error_message,
    set_correlation_id,
)


def _redact(**fields):
    return _redact_pii(None, "info", dict(fields))


class TestRedaction:
    def test_secrets_are_fully_masked(self):
        event = _redact(event="login", password="hunter22", refresh_token="abcdef123456", otp="4821")

        assert event["password"] == "***"
        assert event["refresh_token"] == "***"
        assert event["otp"] == "***"
        assert event["event"] == "login"

    def test_email_keeps_domain(self):
        assert _redact(email="mia@example.com")["email"] == "m***@example.com"
        assert _redact(email="not-an-address")["email"] == "***"

    def test_client_address_is_truncated(self):
        assert _redact(client_ip="203.0.113.77")["client_ip"] == "203.0.*.*"
        assert _redact(client_ip="2001:db8:85a3::8a2e:370:7334")["client_ip"] == "2001:db8:85a3:***"

    def test_non_string_values_pass_through(self):
        event = _redact(status_code=429, user_id="u-1", error_code="rate_limited")

        assert event == {"status_code": 429, "user_id": "u-1", "error_code": "rate_limited"}


class TestSanitizeErrorMessage:
    def test_connection_strings_are_removed(self):
        message = sanitize_error_message("cannot reach redis://cache:6379/0 right now")

        assert "redis://" not in message
        assert "[redacted]" in message

    def test_empty_message_gets_generic_text(self):
        assert sanitize_error_message("") == "An error occurred"

    def test_long_messages_are_truncated(self):
        assert len(sanitize_error_message("x" * 2000)) == 500


def test_correlation_id_is_generated_when_absent():
    cid = set_correlation_id()

    assert cid
    assert get_correlation_id() == cid
    assert set_correlation_id("req-1") == "req-1"
