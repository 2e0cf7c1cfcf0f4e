"""Tests for access/rotation token issuance, rotation and revocation.

Covers:
- Session creation stores only a digest of the rotation token
- Bearer authentication and session touch
- Rotation failures (missing, forged, expired and idle sessions)
- Logout and bulk revocation
"""

from datetime import timedelta

import pytest

from loginsentry.service.errors import AuthenticationError, ForbiddenError
from loginsentry.service.sessions import SessionManager
from loginsentry.storage.models import DeviceInfo


@pytest.fixture
def sessions(store, hasher, settings, clock):
    return SessionManager(store, hasher, settings, clock=clock)


@pytest.fixture
def user(store, clock):
    return store.create_user(
        "session@example.com",
        "session_user",
        "unused-hash",
        password_expires_at=clock() + timedelta(days=90),
        now=clock(),
    )


class TestIssue:
    def test_issue_creates_session(self, sessions, store, user, clock):
        issued = sessions.issue(user, device=DeviceInfo(browser="Firefox", os="Linux"), ip_addr="81.2.69.160")

        stored = store.get_session(issued.session.id)
        assert stored is not None
        assert stored.user_id == user.id
        assert stored.ip_addr == "81.2.69.160"
        assert stored.expires_at == clock() + timedelta(days=7)
        assert issued.access_expires_at == clock() + timedelta(minutes=15)

    def test_rotation_token_not_stored_in_clear(self, sessions, store, user):
        issued = sessions.issue(user)

        stored = store.get_session(issued.session.id)
        assert stored.token_hash != issued.refresh_token
        assert sessions.hasher.digest_matches(stored.token_hash, issued.refresh_token)

    def test_each_login_gets_distinct_tokens(self, sessions, user):
        first = sessions.issue(user)
        second = sessions.issue(user)

        assert first.refresh_token != second.refresh_token
        assert first.session.id != second.session.id


class TestAuthenticate:
    """Tests for bearer access-token authentication."""

    def test_valid_access_token(self, sessions, user):
        issued = sessions.issue(user)

        ctx = sessions.authenticate(f"Bearer {issued.access_token}")

        assert ctx.user_id == user.id
        assert ctx.email == user.email
        assert ctx.session_id == issued.session.id

    def test_authenticate_touches_session(self, sessions, store, user, clock):
        issued = sessions.issue(user)
        clock.advance(minutes=10)

        sessions.authenticate(f"Bearer {issued.access_token}")

        assert store.get_session(issued.session.id).last_used_at == clock()

    def test_missing_header(self, sessions):
        with pytest.raises(AuthenticationError) as excinfo:
            sessions.authenticate(None)

        assert excinfo.value.reason == "access_token_required"

    def test_malformed_token(self, sessions):
        with pytest.raises(AuthenticationError) as excinfo:
            sessions.authenticate("Bearer not-a-token")

        assert excinfo.value.reason == "invalid_access_token"

    def test_non_ascii_signature(self, sessions, user):
        head, payload, _ = sessions.issue(user).access_token.split(".")

        with pytest.raises(AuthenticationError) as excinfo:
            sessions.authenticate(f"Bearer {head}.{payload}.é")

        assert excinfo.value.reason == "invalid_access_token"

    def test_rotation_token_is_not_an_access_token(self, sessions, user):
        issued = sessions.issue(user)

        with pytest.raises(AuthenticationError):
            sessions.authenticate(f"Bearer {issued.refresh_token}")

    def test_access_token_expires(self, sessions, user, clock):
        issued = sessions.issue(user)
        clock.advance(minutes=15, seconds=1)

        with pytest.raises(AuthenticationError):
            sessions.authenticate(f"Bearer {issued.access_token}")


class TestRotate:
    """Tests for exchanging a rotation token for a new access token."""

    def test_rotate_returns_new_access_token(self, sessions, store, user, clock):
        issued = sessions.issue(user)
        clock.advance(minutes=5)

        rotated = sessions.rotate(issued.refresh_token)

        assert rotated.session.id == issued.session.id
        assert rotated.access_expires_at == clock() + timedelta(minutes=15)
        assert sessions.authenticate(f"Bearer {rotated.access_token}").user_id == user.id
        assert store.get_session(issued.session.id).last_used_at == clock()

    def test_missing_rotation_token(self, sessions):
        with pytest.raises(AuthenticationError) as excinfo:
            sessions.rotate(None)

        assert excinfo.value.status_code == 401
        assert excinfo.value.reason == "refresh_token_required"

    def test_forged_rotation_token(self, sessions):
        with pytest.raises(ForbiddenError) as excinfo:
            sessions.rotate("aaa.bbb.ccc")

        assert excinfo.value.reason == "invalid_refresh_token"

    def test_non_ascii_signature(self, sessions, user):
        head, payload, _ = sessions.issue(user).refresh_token.split(".")

        with pytest.raises(ForbiddenError) as excinfo:
            sessions.rotate(f"{head}.{payload}.ééé")

        assert excinfo.value.reason == "invalid_refresh_token"

    def test_access_token_cannot_rotate(self, sessions, user):
        issued = sessions.issue(user)

        with pytest.raises(ForbiddenError) as excinfo:
            sessions.rotate(issued.access_token)

        assert excinfo.value.reason == "invalid_refresh_token"

    def test_revoked_sessions_report_expired(self, sessions, user):
        issued = sessions.issue(user)
        sessions.revoke_all(user.id)

        with pytest.raises(ForbiddenError) as excinfo:
            sessions.rotate(issued.refresh_token)

        assert excinfo.value.reason == "session_expired"

    def test_token_of_deleted_session_with_others_alive(self, sessions, user):
        """A valid-looking token that matches no live session is rejected."""
        stale = sessions.issue(user)
        sessions.issue(user)
        sessions.revoke(stale.refresh_token)

        with pytest.raises(ForbiddenError) as excinfo:
            sessions.rotate(stale.refresh_token)

        assert excinfo.value.reason == "invalid_refresh_token"

    def test_idle_session_is_deleted(self, sessions, store, user, clock):
        issued = sessions.issue(user)
        clock.advance(minutes=31)

        with pytest.raises(ForbiddenError) as excinfo:
            sessions.rotate(issued.refresh_token)

        assert excinfo.value.reason == "session_inactive"
        assert store.get_session(issued.session.id) is None

    def test_exactly_inactivity_limit_is_still_active(self, sessions, user, clock):
        issued = sessions.issue(user)
        clock.advance(minutes=30)

        assert sessions.rotate(issued.refresh_token).session.id == issued.session.id


class TestRevocation:
    def test_logout_deletes_session(self, sessions, store, user):
        issued = sessions.issue(user)

        assert sessions.revoke(issued.refresh_token) is True
        assert store.get_session(issued.session.id) is None
        assert sessions.revoke(issued.refresh_token) is False

    def test_logout_ignores_unknown_tokens(self, sessions):
        assert sessions.revoke(None) is False
        assert sessions.revoke("garbage") is False

    def test_revoke_all(self, sessions, store, user):
        sessions.issue(user)
        sessions.issue(user)

        assert sessions.revoke_all(user.id) == 2
        assert store.list_user_sessions(user.id) == []

    def test_sweep_removes_idle_sessions(self, sessions, store, user, clock):
        idle = sessions.issue(user)
        clock.advance(minutes=25)
        active = sessions.issue(user)
        clock.advance(minutes=10)

        assert sessions.sweep_expired() == 1
        assert store.get_session(idle.session.id) is None
        assert store.get_session(active.session.id) is not None
