from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class GeoLocation:
    country: Optional[str] = None
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def describe(self) -> str:
        parts = [p for p in (self.city, self.country) if p]
        return ", ".join(parts) if parts else "Unknown location"


@dataclass(frozen=True)
class DeviceInfo:
    browser: str = "Unknown"
    os: str = "Unknown"
    device_type: str = "desktop"
    user_agent: Optional[str] = None

    def describe(self) -> str:
        return f"{self.browser} on {self.os} ({self.device_type})"


def device_fingerprint(ip: str, device: DeviceInfo) -> str:
    return hashlib.sha256(f"{ip}|{device.browser}|{device.os}".encode()).hexdigest()


@dataclass
class TrustedDevice:
    fingerprint: str
    ip: str
    browser: str = "Unknown"
    os: str = "Unknown"
    device_type: str = "desktop"
    country: Optional[str] = None
    city: Optional[str] = None
    last_seen: datetime = field(default_factory=utcnow)

    @classmethod
    def from_login(
        cls,
        ip: str,
        device: DeviceInfo,
        location: Optional[GeoLocation],
        seen_at: Optional[datetime] = None,
    ) -> "TrustedDevice":
        return cls(
            fingerprint=device_fingerprint(ip, device),
            ip=ip,
            browser=device.browser,
            os=device.os,
            device_type=device.device_type,
            country=location.country if location else None,
            city=location.city if location else None,
            last_seen=seen_at or utcnow(),
        )


@dataclass
class BackupCode:
    code_hash: str
    used: bool = False
    used_at: Optional[datetime] = None


@dataclass(frozen=True)
class PasswordHistoryEntry:
    password_hash: str
    changed_at: datetime


@dataclass(frozen=True)
class SecurityState:
    """Lockout counter for one account.

    Transitions return new instances; callers persist the result through the
    store's atomic update so concurrent failures cannot lose an increment.
    """

    failed_attempts: int = 0
    locked: bool = False
    locked_until: Optional[datetime] = None

    def is_locked(self, now: datetime) -> bool:
        if not self.locked:
            return False
        # A lock without an expiry is only lifted explicitly (fraud report)
        return self.locked_until is None or now < self.locked_until

    def record_failure(
        self, now: datetime, threshold: int, lock_duration: timedelta
    ) -> "SecurityState":
        base = self if self.is_locked(now) or not self.locked else SecurityState()
        attempts = base.failed_attempts + 1
        if attempts >= threshold:
            return SecurityState(
                failed_attempts=attempts, locked=True, locked_until=now + lock_duration
            )
        return replace(base, failed_attempts=attempts)

    def cleared(self) -> "SecurityState":
        return SecurityState()

    def lock_indefinitely(self) -> "SecurityState":
        return SecurityState(failed_attempts=self.failed_attempts, locked=True, locked_until=None)


class MFAState(str, Enum):
    DISABLED = "disabled"
    PENDING = "pending"
    TOTP = "totp"


@dataclass
class User:
    id: str
    email: str
    username: str
    password_hash: str
    password_changed_at: datetime
    password_expires_at: datetime
    password_history: List[PasswordHistoryEntry] = field(default_factory=list)
    mfa_enabled: bool = False
    mfa_method: Optional[str] = None
    # Fernet ciphertext; use the store accessors for the plaintext secret
    mfa_secret: Optional[str] = None
    backup_codes: List[BackupCode] = field(default_factory=list)
    security: SecurityState = field(default_factory=SecurityState)
    trusted_devices: List[TrustedDevice] = field(default_factory=list)
    role: str = "user"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def mfa_state(self) -> MFAState:
        if self.mfa_enabled and self.mfa_method == "totp":
            return MFAState.TOTP
        if self.mfa_secret:
            return MFAState.PENDING
        return MFAState.DISABLED

    def password_expired(self, now: datetime) -> bool:
        return now >= self.password_expires_at

    def trusts_ip(self, ip: str) -> bool:
        return any(device.ip == ip for device in self.trusted_devices)

    def known_countries(self) -> set[str]:
        return {device.country or "Unknown" for device in self.trusted_devices}

    def summary(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "role": self.role,
            "mfa_enabled": self.mfa_enabled,
            "mfa_method": self.mfa_method,
            "password_expires_at": self.password_expires_at.isoformat(),
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class Session:
    id: str
    user_id: str
    token_hash: str
    created_at: datetime
    last_used_at: datetime
    expires_at: datetime
    device: DeviceInfo = field(default_factory=DeviceInfo)
    ip_addr: Optional[str] = None
    location: Optional[GeoLocation] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        *,
        ttl_minutes: int,
        device: DeviceInfo | None = None,
        ip_addr: str | None = None,
        location: GeoLocation | None = None,
        now: datetime | None = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            created_at=now,
            last_used_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            device=device or DeviceInfo(),
            ip_addr=ip_addr,
            location=location,
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_idle(self, now: datetime, inactivity: timedelta) -> bool:
        return now - self.last_used_at > inactivity


class AttemptStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class LoginAttemptRecord:
    id: str
    email: str
    ip_addr: str
    status: AttemptStatus
    created_at: datetime
    user_id: Optional[str] = None
    location: Optional[GeoLocation] = None
    device: Optional[DeviceInfo] = None
    suspicious: bool = False
    reasons: Tuple[str, ...] = ()
    failure_reason: Optional[str] = None
    mfa_verified: bool = False

    def to_public(self) -> dict:
        return {
            "id": self.id,
            "ip_addr": self.ip_addr,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "location": self.location.describe() if self.location else None,
            "device": self.device.describe() if self.device else None,
            "suspicious": self.suspicious,
            "reasons": list(self.reasons),
            "failure_reason": self.failure_reason,
            "mfa_verified": self.mfa_verified,
        }
