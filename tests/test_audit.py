"""Tests for the login attempt journal and security alert dispatch."""

from urllib.parse import parse_qs, urlparse

import pytest

from loginsentry.service.audit import (
    ACTION_REPORT_FRAUD,
    ACTION_TRUST_DEVICE,
    AuditLogger,
    SecurityAlerter,
)
from loginsentry.storage.errors import StoreUnavailable
from loginsentry.storage.models import AttemptStatus, DeviceInfo, GeoLocation

LONDON = GeoLocation(country="GB", city="London", latitude=51.5, longitude=-0.12)


class RecordingNotifier:
    def __init__(self, *, fail: bool = False):
        self.alerts = []
        self.resets = []
        self.fail = fail

    def send_security_alert(self, alert):
        if self.fail:
            raise ConnectionError("smtp down")
        self.alerts.append(alert)
        return True

    def send_password_reset(self, to_email, reset_url):
        self.resets.append((to_email, reset_url))
        return True


@pytest.fixture
def user(store, clock):
    return store.create_user(
        "alerted@example.com",
        "alerted",
        "unused-hash",
        password_expires_at=clock(),
        now=clock(),
    )


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def alerter(notifier, settings, clock):
    alerter = SecurityAlerter(notifier, settings, clock=clock)
    yield alerter
    alerter.shutdown(wait=True)


class TestAuditLogger:
    """Tests for AuditLogger.record."""

    def test_record_persists_attempt(self, store, user, clock):
        audit = AuditLogger(store, clock=clock)

        record = audit.record(
            email=user.email,
            ip_addr="81.2.69.160",
            status=AttemptStatus.SUCCESS,
            user_id=user.id,
            location=LONDON,
            device=DeviceInfo(browser="Firefox", os="Linux"),
            reasons=["Login from new IP address"],
            mfa_verified=True,
        )

        stored = store.list_login_attempts(user_id=user.id)
        assert stored == [record]
        assert record.suspicious
        assert record.created_at == clock()
        assert record.to_public()["location"] == "London, GB"

    def test_record_failure_is_swallowed(self, clock):
        """A broken journal never turns into a failed login."""

        class BrokenStore:
            def append_login_attempt(self, record):
                raise StoreUnavailable("disk full")

        audit = AuditLogger(BrokenStore(), clock=clock)

        result = audit.record(email="x@example.com", ip_addr="81.2.69.160", status=AttemptStatus.FAILED)

        assert result is None


class TestSecurityAlerter:
    """Tests for alert construction, action links and dispatch."""

    def test_build_alert_links(self, alerter, user):
        alert = alerter.build_alert(
            user,
            ip_addr="81.2.69.160",
            device=DeviceInfo(browser="Chrome", os="Windows"),
            location=LONDON,
            reasons=["Login from new IP address"],
        )

        confirm = urlparse(alert.confirm_url)
        report = urlparse(alert.report_url)
        assert confirm.path == "/security/trust-device"
        assert report.path == "/security/report-fraud"
        query = parse_qs(confirm.query)
        assert query["email"] == [user.email]
        assert query["ip"] == ["81.2.69.160"]
        assert alert.location_label == "London, GB"
        assert alert.device_label == "Chrome on Windows (desktop)"
        assert not alert.escalate_sms

    def test_action_tokens_are_bound_to_their_action(self, alerter, user):
        alert = alerter.build_alert(user, ip_addr="81.2.69.160", device=None, location=None, reasons=["x"])
        confirm_token = parse_qs(urlparse(alert.confirm_url).query)["token"][0]
        report_token = parse_qs(urlparse(alert.report_url).query)["token"][0]

        payload = alerter.decode_action(confirm_token, ACTION_TRUST_DEVICE)
        assert payload["sub"] == user.id
        assert payload["ip"] == "81.2.69.160"
        assert alerter.decode_action(confirm_token, ACTION_REPORT_FRAUD) is None
        assert alerter.decode_action(report_token, ACTION_REPORT_FRAUD)["sub"] == user.id

    def test_action_tokens_expire(self, alerter, user, clock):
        alert = alerter.build_alert(user, ip_addr="81.2.69.160", device=None, location=None, reasons=["x"])
        token = parse_qs(urlparse(alert.confirm_url).query)["token"][0]
        clock.advance(hours=73)

        assert alerter.decode_action(token, ACTION_TRUST_DEVICE) is None

    def test_many_reasons_escalate(self, alerter, user):
        alert = alerter.build_alert(
            user, ip_addr="81.2.69.160", device=None, location=None, reasons=["a", "b", "c"]
        )

        assert alert.escalate_sms

    def test_schedule_dispatches_in_background(self, alerter, notifier, user):
        alert = alerter.build_alert(user, ip_addr="81.2.69.160", device=None, location=None, reasons=["a"])

        future = alerter.schedule(alert)

        assert future.result(timeout=5) is True
        assert notifier.alerts == [alert]

    def test_dispatch_failure_is_logged_not_raised(self, settings, user, clock):
        alerter = SecurityAlerter(RecordingNotifier(fail=True), settings, clock=clock)
        try:
            alert = alerter.build_alert(user, ip_addr="81.2.69.160", device=None, location=None, reasons=["a"])
            assert alerter.dispatch(alert) is False
        finally:
            alerter.shutdown(wait=True)

    def test_schedule_after_shutdown_returns_none(self, settings, user, clock):
        alerter = SecurityAlerter(RecordingNotifier(), settings, clock=clock)
        alert = alerter.build_alert(user, ip_addr="81.2.69.160", device=None, location=None, reasons=["a"])
        alerter.shutdown(wait=True)

        assert alerter.schedule(alert) is None

    def test_password_reset_link_sent(self, alerter, notifier, user):
        future = alerter.schedule_password_reset(user)

        assert future.result(timeout=5) is True
        to_email, reset_url = notifier.resets[0]
        assert to_email == user.email
        assert urlparse(reset_url).path == "/security/reset-password"

    def test_reset_token_carries_password_stamp(self, alerter, user):
        url = alerter.password_reset_url(user)
        token = parse_qs(urlparse(url).query)["token"][0]

        payload = alerter.decode_action(token, "reset_password")

        assert payload["pwd"] == user.password_changed_at.isoformat()
