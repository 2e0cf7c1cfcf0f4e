"""Tests for the in-memory credential store and its JSON persistence."""

import uuid
from datetime import timedelta

import pytest

from loginsentry.storage.errors import ConstraintViolation, StoreUnavailable
from loginsentry.storage.memory import MemoryStore
from loginsentry.storage.models import (
    AttemptStatus,
    DeviceInfo,
    GeoLocation,
    LoginAttemptRecord,
    PasswordHistoryEntry,
    Session,
    TrustedDevice,
)


def _create(store, clock, email="persist@example.com", username="persist"):
    return store.create_user(
        email,
        username,
        "hash-value",
        password_expires_at=clock() + timedelta(days=90),
        trusted_devices=[
            TrustedDevice.from_login("81.2.69.160", DeviceInfo(browser="Firefox", os="Linux"), None, seen_at=clock())
        ],
        now=clock(),
    )


class TestUsers:
    def test_email_and_username_are_case_insensitive(self, store, clock):
        user = _create(store, clock, email="Mixed@Example.COM", username="MixedCase")

        assert user.email == "mixed@example.com"
        assert store.get_user_by_email("MIXED@example.com").id == user.id
        assert store.get_user_by_username("mixedcase").id == user.id

    def test_duplicate_email_rejected(self, store, clock):
        _create(store, clock)

        with pytest.raises(ConstraintViolation) as excinfo:
            _create(store, clock, username="other")

        assert excinfo.value.detail == {"field": "email"}

    def test_duplicate_username_rejected(self, store, clock):
        _create(store, clock)

        with pytest.raises(ConstraintViolation) as excinfo:
            _create(store, clock, email="other@example.com")

        assert excinfo.value.detail == {"field": "username"}

    def test_reads_are_copies(self, store, clock):
        user = _create(store, clock)

        fetched = store.get_user(user.id)
        fetched.trusted_devices.clear()

        assert len(store.get_user(user.id).trusted_devices) == 1

    def test_update_user_applies_mutation(self, store, clock):
        user = _create(store, clock)

        def _apply(u):
            u.role = "admin"

        updated = store.update_user(user.id, _apply)

        assert updated.role == "admin"
        assert store.get_user(user.id).role == "admin"

    def test_failed_mutation_leaves_user_untouched(self, store, clock):
        """A mutation that raises halfway must not leave partial changes behind."""
        user = _create(store, clock)

        def _apply(u):
            u.role = "admin"
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            store.update_user(user.id, _apply)

        assert store.get_user(user.id).role == "user"

    def test_update_missing_user(self, store):
        assert store.update_user("missing", lambda u: None) is None


class TestSessionsAndAttempts:
    def test_session_requires_existing_user(self, store):
        with pytest.raises(ConstraintViolation):
            store.create_session(Session.new("missing", "digest", ttl_minutes=10))

    def test_list_user_sessions_skips_expired(self, store, clock):
        user = _create(store, clock)
        store.create_session(Session.new(user.id, "old", ttl_minutes=5, now=clock()))
        fresh = store.create_session(Session.new(user.id, "new", ttl_minutes=60, now=clock()))

        live = store.list_user_sessions(user.id, now=clock() + timedelta(minutes=10))

        assert [s.id for s in live] == [fresh.id]

    def test_login_attempt_filters(self, store, clock):
        user = _create(store, clock)
        for minutes, status, ip in (
            (30, AttemptStatus.FAILED, "81.2.69.160"),
            (20, AttemptStatus.FAILED, "81.2.69.161"),
            (10, AttemptStatus.SUCCESS, "81.2.69.160"),
        ):
            store.append_login_attempt(
                LoginAttemptRecord(
                    id=str(uuid.uuid4()),
                    user_id=user.id,
                    email=user.email,
                    ip_addr=ip,
                    status=status,
                    created_at=clock() - timedelta(minutes=minutes),
                )
            )

        failures = store.list_login_attempts(email=user.email, status=AttemptStatus.FAILED)
        recent = store.list_login_attempts(user_id=user.id, since=clock() - timedelta(minutes=25))
        latest = store.list_login_attempts(user_id=user.id, limit=1)

        assert [a.ip_addr for a in failures] == ["81.2.69.161", "81.2.69.160"]
        assert len(recent) == 2
        assert latest[0].status == AttemptStatus.SUCCESS


class TestPersistence:
    """State survives a restart from the same directory."""

    def test_round_trip(self, tmp_path, clock):
        root = str(tmp_path / "persist")
        first = MemoryStore(fs_root=root, mfa_encryption_key="key-one")
        user = _create(first, clock)

        def _apply(u):
            u.password_history = [PasswordHistoryEntry("older-hash", clock() - timedelta(days=100))]
            u.security = u.security.lock_indefinitely()

        first.update_user(user.id, _apply)
        first.set_mfa_secret(user.id, "JBSWY3DPEHPK3PXP", backup_code_hashes=["digest-1"])
        session = first.create_session(
            Session.new(
                user.id,
                "digest",
                ttl_minutes=60,
                device=DeviceInfo(browser="Chrome", os="macOS"),
                ip_addr="81.2.69.160",
                location=GeoLocation(country="GB", city="London", latitude=51.5, longitude=-0.12),
                now=clock(),
            )
        )
        first.append_login_attempt(
            LoginAttemptRecord(
                id="attempt-1",
                user_id=user.id,
                email=user.email,
                ip_addr="81.2.69.160",
                status=AttemptStatus.SUCCESS,
                created_at=clock(),
                reasons=("Login from new IP address",),
            )
        )

        second = MemoryStore(fs_root=root, mfa_encryption_key="key-one")

        reloaded = second.get_user(user.id)
        assert reloaded.email == user.email
        assert reloaded.security.locked and reloaded.security.locked_until is None
        assert reloaded.password_history[0].password_hash == "older-hash"
        assert reloaded.trusted_devices[0].browser == "Firefox"
        assert reloaded.backup_codes[0].code_hash == "digest-1"
        assert second.get_mfa_secret(user.id) == "JBSWY3DPEHPK3PXP"
        restored_session = second.get_session(session.id)
        assert restored_session.location.city == "London"
        assert restored_session.device.os == "macOS"
        attempts = second.list_login_attempts(user_id=user.id)
        assert attempts[0].reasons == ("Login from new IP address",)

    def test_wrong_key_cannot_read_mfa_secret(self, tmp_path, clock):
        root = str(tmp_path / "persist")
        first = MemoryStore(fs_root=root, mfa_encryption_key="key-one")
        user = _create(first, clock)
        first.set_mfa_secret(user.id, "JBSWY3DPEHPK3PXP", backup_code_hashes=[])

        second = MemoryStore(fs_root=root, mfa_encryption_key="key-two")

        assert second.get_mfa_secret(user.id) is None


def _attempt(user, created_at, attempt_id=None):
    return LoginAttemptRecord(
        id=attempt_id or str(uuid.uuid4()),
        user_id=user.id,
        email=user.email,
        ip_addr="81.2.69.160",
        status=AttemptStatus.FAILED,
        created_at=created_at,
    )


class TestJournalRetention:
    def test_oldest_attempts_pruned(self, tmp_path, clock):
        root = str(tmp_path / "capped")
        store = MemoryStore(fs_root=root, mfa_encryption_key="key-one", max_login_attempts=3)
        user = _create(store, clock)
        for minute in range(5):
            store.append_login_attempt(_attempt(user, clock() + timedelta(minutes=minute), f"a-{minute}"))

        kept = [a.id for a in store.list_login_attempts(user_id=user.id)]
        reloaded = MemoryStore(fs_root=root, mfa_encryption_key="key-one", max_login_attempts=3)

        assert kept == ["a-4", "a-3", "a-2"]
        assert [a.id for a in reloaded.list_login_attempts(user_id=user.id)] == kept

    def test_smaller_cap_applies_on_reload(self, tmp_path, clock):
        root = str(tmp_path / "capped")
        store = MemoryStore(fs_root=root, mfa_encryption_key="key-one")
        user = _create(store, clock)
        for minute in range(4):
            store.append_login_attempt(_attempt(user, clock() + timedelta(minutes=minute), f"a-{minute}"))

        reloaded = MemoryStore(fs_root=root, mfa_encryption_key="key-one", max_login_attempts=2)

        assert [a.id for a in reloaded.list_login_attempts()] == ["a-3", "a-2"]


class TestWriteFailures:
    """A mutation whose write fails leaves the in-memory state as it was."""

    @pytest.fixture
    def broken_disk(self, store, monkeypatch):
        def _fail():
            raise StoreUnavailable("disk full")

        def _break():
            monkeypatch.setattr(store, "_persist_state", _fail)

        return _break

    def test_update_user_rolled_back(self, store, clock, broken_disk):
        user = _create(store, clock)
        broken_disk()

        def _apply(u):
            u.security = u.security.record_failure(clock(), 5, timedelta(minutes=15))

        with pytest.raises(StoreUnavailable):
            store.update_user(user.id, _apply)

        assert store.get_user(user.id).security.failed_attempts == 0

    def test_create_user_rolled_back(self, store, clock, broken_disk):
        broken_disk()

        with pytest.raises(StoreUnavailable):
            _create(store, clock)

        assert store.get_user_by_email("persist@example.com") is None

    def test_touch_session_rolled_back(self, store, clock, broken_disk):
        user = _create(store, clock)
        session = store.create_session(Session.new(user.id, "digest", ttl_minutes=60, now=clock()))
        broken_disk()

        with pytest.raises(StoreUnavailable):
            store.touch_session(session.id, clock() + timedelta(minutes=5))

        assert store.get_session(session.id).last_used_at == session.last_used_at

    def test_revoke_sessions_rolled_back(self, store, clock, broken_disk):
        user = _create(store, clock)
        session = store.create_session(Session.new(user.id, "digest", ttl_minutes=60, now=clock()))
        broken_disk()

        with pytest.raises(StoreUnavailable):
            store.revoke_user_sessions(user.id)

        assert store.get_session(session.id) is not None

    def test_append_attempt_rolled_back(self, tmp_path, clock, monkeypatch):
        store = MemoryStore(fs_root=str(tmp_path / "capped"), mfa_encryption_key="key-one", max_login_attempts=2)
        user = _create(store, clock)
        store.append_login_attempt(_attempt(user, clock(), "a-0"))
        store.append_login_attempt(_attempt(user, clock() + timedelta(minutes=1), "a-1"))

        def _fail():
            raise StoreUnavailable("disk full")

        monkeypatch.setattr(store, "_persist_state", _fail)

        with pytest.raises(StoreUnavailable):
            store.append_login_attempt(_attempt(user, clock() + timedelta(minutes=2), "a-2"))

        assert [a.id for a in store.list_login_attempts()] == ["a-1", "a-0"]
