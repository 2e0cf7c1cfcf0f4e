from __future__ import annotations

import base64
import copy
import hashlib
import json
import os
import threading
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from loginsentry.logging import get_logger
from loginsentry.storage.errors import ConstraintViolation, StoreUnavailable
from loginsentry.storage.models import (
    AttemptStatus,
    BackupCode,
    DeviceInfo,
    GeoLocation,
    LoginAttemptRecord,
    PasswordHistoryEntry,
    SecurityState,
    Session,
    TrustedDevice,
    User,
    utcnow,
)


class MemoryStore:
    """Credential store keeping users, sessions and login attempts in memory.

    State is mirrored to ``{fs_root}/state/credential_store.json`` after every
    mutation so a restart keeps accounts and sessions; a mutation whose write
    fails is undone before the error propagates. The attempt journal keeps the
    newest ``max_login_attempts`` entries. All reads return copies;
    changes to a user go through :meth:`update_user`, which applies a mutation
    under the store lock so concurrent read-modify-write cycles serialize.
    """

    def __init__(
        self,
        fs_root: str = "/tmp/loginsentry",
        *,
        mfa_encryption_key: str | None = None,
        max_login_attempts: int = 10000,
    ) -> None:
        self.logger = get_logger(__name__)
        self.max_login_attempts = max_login_attempts
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.login_attempts: List[LoginAttemptRecord] = []
        # Re-entrant so a mutation callback may call back into read helpers
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._mfa_cipher = self._build_mfa_cipher(mfa_encryption_key)
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "credential_store.json"

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_mfa_cipher(self, key_material: str | None) -> Fernet:
        material = key_material or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
        if not material:
            raise RuntimeError("MFA encryption key unavailable; set MFA_SECRET_KEY or JWT_SECRET")
        return Fernet(self._derive_cipher_key(material))

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # users
    def create_user(
        self,
        email: str,
        username: str,
        password_hash: str,
        *,
        password_expires_at: datetime,
        trusted_devices: Optional[List[TrustedDevice]] = None,
        role: str = "user",
        now: Optional[datetime] = None,
    ) -> User:
        email = email.strip().lower()
        username = username.strip().lower()
        now = now or utcnow()
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if any(existing.username == username for existing in self.users.values()):
                raise ConstraintViolation("username already exists", {"field": "username"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                username=username,
                password_hash=password_hash,
                password_changed_at=now,
                password_expires_at=password_expires_at,
                trusted_devices=list(trusted_devices or []),
                role=role,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            self._commit(lambda: self.users.pop(user.id, None))
            return copy.deepcopy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.deepcopy(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return copy.deepcopy(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        normalized = username.strip().lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.username == normalized), None)
            return copy.deepcopy(user) if user else None

    def update_user(
        self, user_id: str, mutate: Callable[[User], Optional[User]]
    ) -> Optional[User]:
        """Atomically apply ``mutate`` to a user and persist the result.

        ``mutate`` receives a private copy and may either modify it in place or
        return a replacement. If it raises, the stored user is left untouched.
        Returns the updated user, or ``None`` when the user does not exist.
        """
        with self._data_lock:
            current = self.users.get(user_id)
            if current is None:
                return None
            working = copy.deepcopy(current)
            result = mutate(working)
            updated = result if result is not None else working
            updated.id = current.id
            updated.updated_at = utcnow()
            self.users[user_id] = updated
            self._commit(lambda: self.users.update({user_id: current}))
            return copy.deepcopy(updated)

    def _encrypt_mfa_secret(self, secret: str) -> str:
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_mfa_secret(self, secret: str) -> Optional[str]:
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.warning("mfa_secret_decrypt_failed")
            return None

    def set_mfa_secret(
        self,
        user_id: str,
        secret: Optional[str],
        *,
        backup_code_hashes: Optional[List[str]] = None,
    ) -> Optional[User]:
        """Store (or clear) a pending TOTP secret together with fresh backup codes."""
        encrypted = self._encrypt_mfa_secret(secret) if secret else None

        def _apply(user: User) -> None:
            user.mfa_secret = encrypted
            user.mfa_enabled = False
            user.mfa_method = None
            user.backup_codes = [BackupCode(code_hash=h) for h in backup_code_hashes or []]

        return self.update_user(user_id, _apply)

    def get_mfa_secret(self, user_id: str) -> Optional[str]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or not user.mfa_secret:
                return None
            return self._decrypt_mfa_secret(user.mfa_secret)

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            previous = self.sessions.get(session.id)
            self.sessions[session.id] = copy.deepcopy(session)
            self._commit(lambda: self._restore_sessions({session.id: previous}))
            return copy.deepcopy(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return copy.deepcopy(sess) if sess else None

    def list_user_sessions(self, user_id: str, *, now: Optional[datetime] = None) -> List[Session]:
        """Sessions of ``user_id``, newest first; only unexpired ones when ``now`` is given."""
        with self._data_lock:
            found = [
                copy.deepcopy(s)
                for s in self.sessions.values()
                if s.user_id == user_id and (now is None or not s.is_expired(now))
            ]
        return sorted(found, key=lambda s: s.created_at, reverse=True)

    def touch_session(self, session_id: str, at: datetime) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return False
            previous = sess.last_used_at
            sess.last_used_at = at
            self._commit(lambda: setattr(sess, "last_used_at", previous))
            return True

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            removed = self.sessions.pop(session_id, None)
            if removed:
                self._commit(lambda: self._restore_sessions({session_id: removed}))
            return removed is not None

    def revoke_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.user_id == user_id]
            removed = {sid: self.sessions.pop(sid) for sid in stale}
            if removed:
                self._commit(lambda: self._restore_sessions(removed))
            return len(stale)

    def delete_expired_sessions(self, now: datetime, inactivity: timedelta) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if sess.is_expired(now) or sess.is_idle(now, inactivity)
            ]
            removed = {sid: self.sessions.pop(sid) for sid in stale}
            if removed:
                self._commit(lambda: self._restore_sessions(removed))
            return len(stale)

    # login attempts
    def append_login_attempt(self, record: LoginAttemptRecord) -> LoginAttemptRecord:
        with self._data_lock:
            self.login_attempts.append(record)
            overflow = max(len(self.login_attempts) - self.max_login_attempts, 0)
            pruned = self.login_attempts[:overflow]
            del self.login_attempts[:overflow]

            def _undo() -> None:
                self.login_attempts.pop()
                self.login_attempts[:0] = pruned

            self._commit(_undo)
            return record

    def list_login_attempts(
        self,
        *,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
        ip_addr: Optional[str] = None,
        status: Optional[AttemptStatus] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[LoginAttemptRecord]:
        """Matching attempts, newest first."""
        normalized_email = email.strip().lower() if email else None
        with self._data_lock:
            matches = [
                rec
                for rec in reversed(self.login_attempts)
                if (user_id is None or rec.user_id == user_id)
                and (normalized_email is None or rec.email == normalized_email)
                and (ip_addr is None or rec.ip_addr == ip_addr)
                and (status is None or rec.status == status)
                and (since is None or rec.created_at >= since)
            ]
        matches.sort(key=lambda rec: rec.created_at, reverse=True)
        return matches[:limit] if limit is not None else matches

    # persistence
    def _commit(self, undo: Callable[[], object]) -> None:
        """Persist pending changes, reverting them with ``undo`` if the write fails."""
        try:
            self._persist_state()
        except StoreUnavailable:
            undo()
            raise

    def _restore_sessions(self, snapshot: Dict[str, Optional[Session]]) -> None:
        for sid, sess in snapshot.items():
            if sess is None:
                self.sessions.pop(sid, None)
            else:
                self.sessions[sid] = sess

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "login_attempts": [self._serialize_attempt(a) for a in self.login_attempts],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".json.tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            os.replace(tmp_path, path)
        except OSError as exc:
            raise StoreUnavailable(f"failed to persist credential store state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.login_attempts = [
            self._deserialize_attempt(a) for a in data.get("login_attempts", [])
        ][-self.max_login_attempts :]
        return True

    @staticmethod
    def _serialize_geo(location: Optional[GeoLocation]) -> Optional[dict]:
        if location is None:
            return None
        return {
            "country": location.country,
            "city": location.city,
            "latitude": location.latitude,
            "longitude": location.longitude,
        }

    @staticmethod
    def _deserialize_geo(data: Optional[dict]) -> Optional[GeoLocation]:
        return GeoLocation(**data) if data else None

    @staticmethod
    def _serialize_device(device: Optional[DeviceInfo]) -> Optional[dict]:
        if device is None:
            return None
        return {
            "browser": device.browser,
            "os": device.os,
            "device_type": device.device_type,
            "user_agent": device.user_agent,
        }

    @staticmethod
    def _deserialize_device(data: Optional[dict]) -> Optional[DeviceInfo]:
        return DeviceInfo(**data) if data else None

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "username": user.username,
            "password_hash": user.password_hash,
            "password_changed_at": self._serialize_datetime(user.password_changed_at),
            "password_expires_at": self._serialize_datetime(user.password_expires_at),
            "password_history": [
                {
                    "password_hash": entry.password_hash,
                    "changed_at": self._serialize_datetime(entry.changed_at),
                }
                for entry in user.password_history
            ],
            "mfa_enabled": user.mfa_enabled,
            "mfa_method": user.mfa_method,
            "mfa_secret": user.mfa_secret,
            "backup_codes": [
                {
                    "code_hash": code.code_hash,
                    "used": code.used,
                    "used_at": self._serialize_datetime(code.used_at),
                }
                for code in user.backup_codes
            ],
            "security": {
                "failed_attempts": user.security.failed_attempts,
                "locked": user.security.locked,
                "locked_until": self._serialize_datetime(user.security.locked_until),
            },
            "trusted_devices": [
                {
                    "fingerprint": device.fingerprint,
                    "ip": device.ip,
                    "browser": device.browser,
                    "os": device.os,
                    "device_type": device.device_type,
                    "country": device.country,
                    "city": device.city,
                    "last_seen": self._serialize_datetime(device.last_seen),
                }
                for device in user.trusted_devices
            ],
            "role": user.role,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        security = data.get("security") or {}
        return User(
            id=str(data["id"]),
            email=data["email"],
            username=data["username"],
            password_hash=data["password_hash"],
            password_changed_at=self._deserialize_datetime(data["password_changed_at"]),
            password_expires_at=self._deserialize_datetime(data["password_expires_at"]),
            password_history=[
                PasswordHistoryEntry(
                    password_hash=entry["password_hash"],
                    changed_at=self._deserialize_datetime(entry["changed_at"]),
                )
                for entry in data.get("password_history", [])
            ],
            mfa_enabled=data.get("mfa_enabled", False),
            mfa_method=data.get("mfa_method"),
            mfa_secret=data.get("mfa_secret"),
            backup_codes=[
                BackupCode(
                    code_hash=code["code_hash"],
                    used=code.get("used", False),
                    used_at=self._deserialize_datetime(code.get("used_at")),
                )
                for code in data.get("backup_codes", [])
            ],
            security=SecurityState(
                failed_attempts=security.get("failed_attempts", 0),
                locked=security.get("locked", False),
                locked_until=self._deserialize_datetime(security.get("locked_until")),
            ),
            trusted_devices=[
                TrustedDevice(
                    fingerprint=device["fingerprint"],
                    ip=device["ip"],
                    browser=device.get("browser", "Unknown"),
                    os=device.get("os", "Unknown"),
                    device_type=device.get("device_type", "desktop"),
                    country=device.get("country"),
                    city=device.get("city"),
                    last_seen=self._deserialize_datetime(device["last_seen"]),
                )
                for device in data.get("trusted_devices", [])
            ],
            role=data.get("role", "user"),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at") or data["created_at"]),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "token_hash": session.token_hash,
            "created_at": self._serialize_datetime(session.created_at),
            "last_used_at": self._serialize_datetime(session.last_used_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "device": self._serialize_device(session.device),
            "ip_addr": session.ip_addr,
            "location": self._serialize_geo(session.location),
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            token_hash=data["token_hash"],
            created_at=self._deserialize_datetime(data["created_at"]),
            last_used_at=self._deserialize_datetime(data["last_used_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            device=self._deserialize_device(data.get("device")) or DeviceInfo(),
            ip_addr=data.get("ip_addr"),
            location=self._deserialize_geo(data.get("location")),
        )

    def _serialize_attempt(self, record: LoginAttemptRecord) -> dict:
        return {
            "id": record.id,
            "user_id": record.user_id,
            "email": record.email,
            "ip_addr": record.ip_addr,
            "status": record.status.value,
            "created_at": self._serialize_datetime(record.created_at),
            "location": self._serialize_geo(record.location),
            "device": self._serialize_device(record.device),
            "suspicious": record.suspicious,
            "reasons": list(record.reasons),
            "failure_reason": record.failure_reason,
            "mfa_verified": record.mfa_verified,
        }

    def _deserialize_attempt(self, data: dict) -> LoginAttemptRecord:
        return LoginAttemptRecord(
            id=data["id"],
            user_id=data.get("user_id"),
            email=data["email"],
            ip_addr=data["ip_addr"],
            status=AttemptStatus(data["status"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            location=self._deserialize_geo(data.get("location")),
            device=self._deserialize_device(data.get("device")),
            suspicious=data.get("suspicious", False),
            reasons=tuple(data.get("reasons", [])),
            failure_reason=data.get("failure_reason"),
            mfa_verified=data.get("mfa_verified", False),
        )
