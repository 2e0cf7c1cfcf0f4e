from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
import string
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from io import BytesIO
from typing import Callable, List, Optional
from urllib.parse import quote, urlencode

import qrcode
from qrcode.image.pil import PilImage

from loginsentry.config import Settings
from loginsentry.logging import get_logger
from loginsentry.service.errors import AuthenticationError, ConflictError, NotFoundError, ValidationError
from loginsentry.service.passwords import PasswordHasher
from loginsentry.storage.memory import MemoryStore
from loginsentry.storage.models import MFAState, User, utcnow

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
BACKUP_CODE_LENGTH = 8
_BACKUP_CODE_ALPHABET = string.ascii_uppercase + string.digits


class MFAOutcome(str, Enum):
    NOT_REQUIRED = "not_required"
    REQUIRED = "required"
    VERIFIED_TOTP = "verified_totp"
    VERIFIED_BACKUP = "verified_backup"
    INVALID = "invalid"

    @property
    def verified(self) -> bool:
        return self in (MFAOutcome.VERIFIED_TOTP, MFAOutcome.VERIFIED_BACKUP)


@dataclass(frozen=True)
class MFAEnrollment:
    secret: str
    otpauth_uri: str
    qr_code_data_url: str
    # Plaintext, returned once; only hashes are stored
    backup_codes: List[str]


def generate_totp(secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL, digits: int = TOTP_DIGITS) -> str:
    """RFC 6238 code for ``timestamp`` (HMAC-SHA1, authenticator compatible)."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except binascii.Error:
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (10**digits)
    return str(code_int).zfill(digits)


class MFAVerifier:
    """TOTP enrollment and second-factor checks.

    An account moves from *disabled* to *pending* at setup (secret and backup
    code hashes stored) and to *totp* once a code from the authenticator app
    confirms the secret. Backup codes are consumed inside the store's atomic
    update, so the same code can never be accepted twice.
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
        self.issuer = settings.mfa_issuer
        self.window = settings.totp_window
        self.backup_code_count = settings.mfa_backup_code_count
        self._clock = clock

    @staticmethod
    def generate_secret() -> str:
        return base64.b32encode(secrets.token_bytes(20)).decode().rstrip("=")

    def generate_backup_codes(self) -> List[str]:
        return [
            "".join(secrets.choice(_BACKUP_CODE_ALPHABET) for _ in range(BACKUP_CODE_LENGTH))
            for _ in range(self.backup_code_count)
        ]

    def provisioning_uri(self, secret: str, account_name: str) -> str:
        label = quote(f"{self.issuer}:{account_name}")
        query = urlencode(
            {
                "secret": secret,
                "issuer": self.issuer,
                "algorithm": "SHA1",
                "digits": TOTP_DIGITS,
                "period": TOTP_INTERVAL,
            }
        )
        return f"otpauth://totp/{label}?{query}"

    @staticmethod
    def qr_code_data_url(uri: str) -> str:
        qr = qrcode.QRCode(version=1, box_size=10, border=4)
        qr.add_data(uri)
        qr.make(fit=True)
        img = qr.make_image(image_factory=PilImage, fill_color="black", back_color="white")
        buffer = BytesIO()
        img.save(buffer, format="PNG")
        return f"data:image/png;base64,{base64.b64encode(buffer.getvalue()).decode()}"

    def verify_totp(self, secret: str, code: str, *, at: Optional[datetime] = None) -> bool:
        candidate = "".join(code.split())
        if len(candidate) != TOTP_DIGITS or not candidate.isdigit():
            return False
        timestamp = (at or self._clock()).timestamp()
        for step in range(-self.window, self.window + 1):
            generated = generate_totp(secret, timestamp + step * TOTP_INTERVAL)
            if generated and hmac.compare_digest(generated, candidate):
                return True
        return False

    def setup(self, user: User) -> MFAEnrollment:
        if user.mfa_state == MFAState.TOTP:
            raise ConflictError("MFA is already enabled", reason="mfa_already_enabled")
        secret = self.generate_secret()
        codes = self.generate_backup_codes()
        updated = self.store.set_mfa_secret(
            user.id, secret, backup_code_hashes=[self.hasher.digest(code) for code in codes]
        )
        if updated is None:
            raise NotFoundError("user not found")
        uri = self.provisioning_uri(secret, user.email)
        logger.info("mfa_setup_started", user_id=user.id)
        return MFAEnrollment(
            secret=secret,
            otpauth_uri=uri,
            qr_code_data_url=self.qr_code_data_url(uri),
            backup_codes=codes,
        )

    def confirm(self, user_id: str, code: str) -> User:
        secret = self.store.get_mfa_secret(user_id)
        if not secret:
            raise ValidationError("No pending MFA setup", reason="mfa_not_pending")
        if not self.verify_totp(secret, code):
            logger.warning("mfa_confirm_failed", user_id=user_id)
            raise AuthenticationError("Invalid MFA code", reason="invalid_mfa_code")

        def _apply(user: User) -> None:
            user.mfa_enabled = True
            user.mfa_method = "totp"

        updated = self.store.update_user(user_id, _apply)
        if updated is None:
            raise NotFoundError("user not found")
        logger.info("mfa_enabled", user_id=user_id)
        return updated

    def verify_login(self, user: User, code: Optional[str]) -> MFAOutcome:
        if user.mfa_state != MFAState.TOTP:
            return MFAOutcome.NOT_REQUIRED
        if not code or not code.strip():
            return MFAOutcome.REQUIRED
        secret = self.store.get_mfa_secret(user.id)
        if secret and self.verify_totp(secret, code):
            return MFAOutcome.VERIFIED_TOTP
        if self._consume_backup_code(user.id, code):
            logger.info("mfa_backup_code_used", user_id=user.id)
            return MFAOutcome.VERIFIED_BACKUP
        return MFAOutcome.INVALID

    def _consume_backup_code(self, user_id: str, code: str) -> bool:
        normalized = "".join(code.split()).upper()
        if len(normalized) != BACKUP_CODE_LENGTH:
            return False
        consumed: List[bool] = []
        now = self._clock()

        def _apply(user: User) -> None:
            for backup in user.backup_codes:
                if not backup.used and self.hasher.digest_matches(backup.code_hash, normalized):
                    backup.used = True
                    backup.used_at = now
                    consumed.append(True)
                    return

        self.store.update_user(user_id, _apply)
        return bool(consumed)
