"""Tests for log context redaction and correlation ids."""

from micropost.logging import (
    _add_correlation_id,
    _redact_credentials,
    get_correlation_id,
    mask_email,
    set_correlation_id,
)


def _redact(**context):
    return _redact_credentials(None, "info", {"event": "test_event", **context})


class TestRedaction:
    def test_secrets_are_removed_entirely(self):
        event = _redact(password="Password1", client_secret="shh", authorization="Bearer abc")

        assert event["password"] == "[REDACTED]"
        assert event["client_secret"] == "[REDACTED]"
        assert event["authorization"] == "[REDACTED]"

    def test_tokens_keep_a_short_prefix(self):
        event = _redact(token="abcdef0123456789", refresh_token="xyz")

        assert event["token"] == "abcdef***"
        assert event["refresh_token"] == "***"

    def test_addresses_are_masked(self):
        event = _redact(to="annabel@example.com", email="bob@example.com")

        assert event["to"] == "an***@example.com"
        assert event["email"] == "bo***@example.com"

    def test_nested_detail_is_walked(self):
        event = _redact(detail={"errors": [{"field": "password", "password": "hunter22"}], "operation": "login"})

        assert event["detail"]["errors"][0] == {"field": "password", "password": "[REDACTED]"}
        assert event["detail"]["operation"] == "login"

    def test_ordinary_context_is_untouched(self):
        event = _redact(user_id=7, operation="users.create", total=3, refresh_tokens=2)

        assert event == {
            "event": "test_event",
            "user_id": 7,
            "operation": "users.create",
            "total": 3,
            "refresh_tokens": 2,
        }


def test_mask_email():
    assert mask_email("annabel@example.com") == "an***@example.com"
    assert mask_email("nope") == "[REDACTED]"


def test_correlation_id_is_attached():
    cid = set_correlation_id("req-42")

    assert get_correlation_id() == "req-42"
    assert _add_correlation_id(None, "info", {"event": "x"})["correlation_id"] == cid
