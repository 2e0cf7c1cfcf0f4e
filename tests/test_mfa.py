"""Tests for TOTP enrollment, login verification and backup codes."""

from datetime import timedelta

import pytest

from loginsentry.service.errors import AuthenticationError, ConflictError, ValidationError
from loginsentry.service.mfa import MFAOutcome, MFAVerifier, generate_totp
from loginsentry.storage.models import MFAState

# RFC 6238 test key ("12345678901234567890")
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


@pytest.fixture
def mfa(store, hasher, settings, clock):
    return MFAVerifier(store, hasher, settings, clock=clock)


@pytest.fixture
def user(store, clock):
    return store.create_user(
        "mfa@example.com",
        "mfa_user",
        "unused-hash",
        password_expires_at=clock() + timedelta(days=90),
        now=clock(),
    )


def _current_code(secret, clock, *, offset_seconds=0):
    return generate_totp(secret, clock().timestamp() + offset_seconds)


class TestGenerateTotp:
    def test_rfc6238_vectors(self):
        assert generate_totp(RFC_SECRET, 59) == "287082"
        assert generate_totp(RFC_SECRET, 1111111109) == "081804"

    def test_invalid_secret_yields_empty_code(self):
        assert generate_totp("not base32!", 59) == ""


class TestEnrollment:
    """Tests for setup and confirm."""

    def test_setup_leaves_mfa_pending(self, mfa, store, user):
        enrollment = mfa.setup(user)

        stored = store.get_user(user.id)
        assert stored.mfa_state == MFAState.PENDING
        assert not stored.mfa_enabled
        assert enrollment.otpauth_uri.startswith("otpauth://totp/LoginSentry")
        assert enrollment.qr_code_data_url.startswith("data:image/png;base64,")
        assert len(enrollment.backup_codes) == 10
        assert all(len(code) == 8 for code in enrollment.backup_codes)

    def test_secret_encrypted_at_rest(self, mfa, store, user):
        enrollment = mfa.setup(user)

        assert store.users[user.id].mfa_secret != enrollment.secret
        assert store.get_mfa_secret(user.id) == enrollment.secret

    def test_confirm_with_valid_code_enables(self, mfa, store, user, clock):
        enrollment = mfa.setup(user)

        updated = mfa.confirm(user.id, _current_code(enrollment.secret, clock))

        assert updated.mfa_enabled
        assert updated.mfa_method == "totp"
        assert store.get_user(user.id).mfa_state == MFAState.TOTP

    def test_confirm_with_wrong_code_fails(self, mfa, store, user):
        mfa.setup(user)

        with pytest.raises(AuthenticationError) as excinfo:
            mfa.confirm(user.id, "000000")

        assert excinfo.value.reason == "invalid_mfa_code"
        assert store.get_user(user.id).mfa_state == MFAState.PENDING

    def test_confirm_without_setup(self, mfa, user):
        with pytest.raises(ValidationError) as excinfo:
            mfa.confirm(user.id, "123456")

        assert excinfo.value.reason == "mfa_not_pending"

    def test_setup_when_enabled_conflicts(self, mfa, user, clock):
        enrollment = mfa.setup(user)
        enabled = mfa.confirm(user.id, _current_code(enrollment.secret, clock))

        with pytest.raises(ConflictError):
            mfa.setup(enabled)


class TestVerifyLogin:
    """Tests for the login-time second factor check."""

    @pytest.fixture
    def enrolled(self, mfa, user, clock):
        enrollment = mfa.setup(user)
        enabled = mfa.confirm(user.id, _current_code(enrollment.secret, clock))
        return enabled, enrollment

    def test_not_required_without_enrollment(self, mfa, user):
        assert mfa.verify_login(user, None) == MFAOutcome.NOT_REQUIRED

    def test_pending_enrollment_not_required(self, mfa, store, user):
        mfa.setup(user)

        assert mfa.verify_login(store.get_user(user.id), None) == MFAOutcome.NOT_REQUIRED

    def test_code_required_when_enrolled(self, mfa, enrolled):
        user, _ = enrolled

        assert mfa.verify_login(user, None) == MFAOutcome.REQUIRED
        assert mfa.verify_login(user, "   ") == MFAOutcome.REQUIRED

    def test_current_code_verifies(self, mfa, enrolled, clock):
        user, enrollment = enrolled

        outcome = mfa.verify_login(user, _current_code(enrollment.secret, clock))

        assert outcome == MFAOutcome.VERIFIED_TOTP
        assert outcome.verified

    def test_window_tolerates_clock_drift(self, mfa, enrolled, clock):
        """Codes up to two steps away are accepted, three steps are not."""
        user, enrollment = enrolled

        assert mfa.verify_login(user, _current_code(enrollment.secret, clock, offset_seconds=-60)).verified
        assert mfa.verify_login(user, _current_code(enrollment.secret, clock, offset_seconds=60)).verified
        assert mfa.verify_login(
            user, _current_code(enrollment.secret, clock, offset_seconds=-90)
        ) == MFAOutcome.INVALID

    def test_wrong_code_is_invalid(self, mfa, enrolled, clock):
        user, enrollment = enrolled
        code = _current_code(enrollment.secret, clock)
        wrong = "".join(str((int(ch) + 1) % 10) for ch in code)

        assert mfa.verify_login(user, wrong) == MFAOutcome.INVALID

    def test_backup_code_is_single_use(self, mfa, store, enrolled):
        user, enrollment = enrolled
        code = enrollment.backup_codes[0]

        assert mfa.verify_login(user, code.lower()) == MFAOutcome.VERIFIED_BACKUP
        assert mfa.verify_login(user, code) == MFAOutcome.INVALID
        used = [b for b in store.get_user(user.id).backup_codes if b.used]
        assert len(used) == 1
        assert used[0].used_at is not None
