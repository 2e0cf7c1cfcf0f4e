from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from loginsentry.config import Settings
from loginsentry.logging import get_logger
from loginsentry.service.passwords import PasswordHasher
from loginsentry.storage.memory import MemoryStore
from loginsentry.storage.models import User, utcnow

logger = get_logger(__name__)


class VerificationStatus(str, Enum):
    OK = "ok"
    INVALID_CREDENTIALS = "invalid_credentials"
    LOCKED = "locked"
    PASSWORD_EXPIRED = "password_expired"


@dataclass(frozen=True)
class VerificationResult:
    status: VerificationStatus
    user: Optional[User] = None
    unlocks_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == VerificationStatus.OK


def normalize_email(email: str) -> str:
    return email.strip().lower()


class CredentialVerifier:
    """Checks an email/password pair and maintains the lockout counter.

    The lock is consulted before any password comparison, so a locked account
    never leaks whether a guess was right. Mismatches increment the counter
    through :meth:`MemoryStore.update_user`, and so do rejected MFA codes via
    :meth:`record_failure`. The counter is only reset by the session stage of
    a fully successful login.
    """

    def __init__(
        self,
        store: MemoryStore,
        hasher: PasswordHasher,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.threshold = settings.lockout_threshold
        self.lock_duration = timedelta(minutes=settings.lockout_duration_minutes)
        self._clock = clock

    async def verify(self, email: str, password: str) -> VerificationResult:
        normalized = normalize_email(email)
        user = self.store.get_user_by_email(normalized)
        if user is None:
            # Keep timing close to the wrong-password path
            await self.hasher.verify_async(None, password)
            return VerificationResult(
                VerificationStatus.INVALID_CREDENTIALS, failure_reason="User not found"
            )

        now = self._clock()
        if user.security.is_locked(now):
            logger.warning("login_rejected_locked", user_id=user.id, unlocks_at=user.security.locked_until)
            return VerificationResult(
                VerificationStatus.LOCKED,
                user=user,
                unlocks_at=user.security.locked_until,
                failure_reason="Account locked",
            )

        if not await self.hasher.verify_async(user.password_hash, password):
            updated = self.record_failure(user.id, now)
            return VerificationResult(
                VerificationStatus.INVALID_CREDENTIALS,
                user=updated or user,
                failure_reason="Invalid password",
            )

        if user.password_expired(now):
            return VerificationResult(
                VerificationStatus.PASSWORD_EXPIRED, user=user, failure_reason="Password expired"
            )
        return VerificationResult(VerificationStatus.OK, user=user)

    def record_failure(self, user_id: str, now: Optional[datetime] = None) -> Optional[User]:
        """Count one failed factor (password or MFA code) toward the lockout threshold."""
        now = now or self._clock()

        def _apply(user: User) -> None:
            user.security = user.security.record_failure(now, self.threshold, self.lock_duration)

        updated = self.store.update_user(user_id, _apply)
        if updated and updated.security.locked:
            logger.warning(
                "account_locked",
                user_id=user_id,
                failed_attempts=updated.security.failed_attempts,
                unlocks_at=updated.security.locked_until,
            )
        return updated
