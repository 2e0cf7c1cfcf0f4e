from __future__ import annotations

import asyncio
import hashlib
import hmac
import re

from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from loginsentry.logging import get_logger

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{3,20}$")
# At least 8 characters with a lowercase, an uppercase, a digit and one of @$!%*?&
PASSWORD_PATTERN = re.compile(
    r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&])[A-Za-z\d@$!%*?&]{8,}$"
)
COMMON_PASSWORDS = frozenset(
    {
        "password",
        "123456",
        "12345678",
        "qwerty",
        "abc123",
        "password123",
        "admin",
        "letmein",
        "welcome",
        "monkey",
    }
)


def password_policy_violation(password: str) -> str | None:
    """Return a human readable policy violation, or ``None`` when acceptable."""
    if password.lower() in COMMON_PASSWORDS:
        return "Password is too common. Please choose a stronger password"
    if not PASSWORD_PATTERN.match(password):
        return (
            "Password must be at least 8 characters with uppercase, lowercase, "
            "number, and special character"
        )
    return None


class PasswordHasher:
    """Argon2id password hashing plus keyed digests for high-entropy secrets.

    Passwords use a slow salted hash; rotation tokens and MFA backup codes are
    random values, so a keyed SHA-256 digest is enough and keeps lookups cheap.
    """

    def __init__(self, digest_key: str, *, argon2_hasher: Argon2Hasher | None = None):
        self._pwd_hasher = argon2_hasher or Argon2Hasher(type=Type.ID)
        self._digest_key = digest_key.encode()
        self._dummy_hash = self._pwd_hasher.hash("loginsentry-timing-equalizer")

    def hash(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify(self, password_hash: str | None, password: str) -> bool:
        """Compare ``password`` to ``password_hash``.

        A missing hash still runs a full verification against a dummy value so
        unknown accounts take as long to reject as wrong passwords.
        """
        target = password_hash or self._dummy_hash
        try:
            matched = self._pwd_hasher.verify(target, password)
        except VerifyMismatchError:
            return False
        except InvalidHash:
            logger.warning("password_hash_invalid")
            return False
        return matched and password_hash is not None

    async def hash_async(self, password: str) -> str:
        return await asyncio.to_thread(self.hash, password)

    async def verify_async(self, password_hash: str | None, password: str) -> bool:
        return await asyncio.to_thread(self.verify, password_hash, password)

    def digest(self, value: str) -> str:
        return hmac.new(self._digest_key, value.encode(), hashlib.sha256).hexdigest()

    def digest_matches(self, digest: str, value: str) -> bool:
        return hmac.compare_digest(digest, self.digest(value))
