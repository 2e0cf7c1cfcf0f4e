"""Tests for log redaction and request context binding."""

import structlog

from loginsentry.logging import _redact_credentials, bind_request_context, get_correlation_id


class TestRedaction:
    def test_credentials_fully_masked(self):
        event = _redact_credentials(
            None,
            "info",
            {
                "event": "login_stopped",
                "password": "TestPassword123!",
                "refresh_token": "eyJhbGciOiJIUzI1NiJ9.payload.sig",
                "mfa_code": "123456",
                "smtp_password": "hunter2",
            },
        )

        assert event["password"] == "***"
        assert event["refresh_token"] == "***"
        assert event["mfa_code"] == "***"
        assert event["smtp_password"] == "***"

    def test_email_keeps_hint(self):
        event = _redact_credentials(None, "info", {"event": "x", "email": "owner@example.com"})

        assert event["email"] == "ow***@example.com"

    def test_operational_fields_untouched(self):
        event = _redact_credentials(
            None,
            "info",
            {"event": "service_error", "status_code": 423, "error_code": "locked", "user_id": "u-1", "ip": "81.2.69.160"},
        )

        assert event == {
            "event": "service_error",
            "status_code": 423,
            "error_code": "locked",
            "user_id": "u-1",
            "ip": "81.2.69.160",
        }

    def test_non_string_values_kept(self):
        event = _redact_credentials(None, "info", {"event": "x", "email_configured": False})

        assert event["email_configured"] is False


class TestRequestContext:
    def test_client_request_id_is_used(self):
        assert bind_request_context("req-1", client_ip="81.2.69.160") == "req-1"
        assert get_correlation_id() == "req-1"
        assert structlog.contextvars.get_contextvars() == {"client_ip": "81.2.69.160"}

    def test_generated_id_and_fresh_context(self):
        bind_request_context("req-1", client_ip="81.2.69.160")

        cid = bind_request_context()

        assert len(cid) == 36
        assert structlog.contextvars.get_contextvars() == {}
