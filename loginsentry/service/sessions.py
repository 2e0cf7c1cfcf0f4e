from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from loginsentry.config import Settings
from loginsentry.logging import get_logger
from loginsentry.service.errors import AuthenticationError, ForbiddenError
from loginsentry.service.passwords import PasswordHasher
from loginsentry.service.tokens import JWTCodec, extract_bearer
from loginsentry.storage.memory import MemoryStore
from loginsentry.storage.models import DeviceInfo, GeoLocation, Session, User, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class IssuedCredentials:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    session: Session


@dataclass(frozen=True)
class RotatedAccess:
    access_token: str
    access_expires_at: datetime
    session: Session


@dataclass
class AuthContext:
    user_id: str
    email: str
    role: str
    session_id: Optional[str]


class SessionManager:
    """Issues and redeems credentials.

    Access tokens are stateless JWTs. Rotation (refresh) tokens are JWTs signed
    with a separate secret; the server keeps only their keyed digest on the
    session, so a leaked store does not leak usable tokens.
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
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.refresh_ttl_minutes = settings.refresh_token_ttl_minutes
        self.inactivity = timedelta(minutes=settings.session_inactivity_minutes)
        self._clock = clock
        self.access_codec = JWTCodec(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            clock=clock,
        )
        self.refresh_codec = JWTCodec(
            settings.refresh_token_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            clock=clock,
        )

    def _issue_access(self, user_id: str, email: str, role: str, session_id: str) -> tuple[str, datetime]:
        expires_at = self._clock() + self.access_ttl
        token = self.access_codec.encode(
            {"sub": user_id, "email": email, "role": role, "sid": session_id},
            token_type="access",
            ttl=self.access_ttl,
        )
        return token, expires_at

    def issue(
        self,
        user: User,
        *,
        device: Optional[DeviceInfo] = None,
        ip_addr: Optional[str] = None,
        location: Optional[GeoLocation] = None,
    ) -> IssuedCredentials:
        now = self._clock()
        refresh_token = self.refresh_codec.encode(
            {"sub": user.id},
            token_type="refresh",
            ttl=timedelta(minutes=self.refresh_ttl_minutes),
        )
        session = self.store.create_session(
            Session.new(
                user.id,
                self.hasher.digest(refresh_token),
                ttl_minutes=self.refresh_ttl_minutes,
                device=device,
                ip_addr=ip_addr,
                location=location,
                now=now,
            )
        )
        access_token, access_expires_at = self._issue_access(user.id, user.email, user.role, session.id)
        logger.info("session_issued", user_id=user.id, session_id=session.id)
        return IssuedCredentials(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_expires_at,
            session=session,
        )

    def _find_session(self, refresh_token: Optional[str]) -> Session:
        if not refresh_token:
            raise AuthenticationError("Refresh token required", reason="refresh_token_required")
        payload = self.refresh_codec.decode(refresh_token, token_type="refresh")
        if not payload or not payload.get("sub"):
            raise ForbiddenError("Invalid refresh token", reason="invalid_refresh_token")
        now = self._clock()
        sessions = self.store.list_user_sessions(payload["sub"], now=now)
        if not sessions:
            raise ForbiddenError("Session expired", reason="session_expired")
        for session in sessions:
            if self.hasher.digest_matches(session.token_hash, refresh_token):
                return session
        raise ForbiddenError("Invalid refresh token", reason="invalid_refresh_token")

    def rotate(self, refresh_token: Optional[str]) -> RotatedAccess:
        """Redeem a rotation token for a fresh access token."""
        session = self._find_session(refresh_token)
        now = self._clock()
        if session.is_idle(now, self.inactivity):
            self.store.delete_session(session.id)
            logger.info("session_inactive_deleted", session_id=session.id, user_id=session.user_id)
            raise ForbiddenError("Session timeout due to inactivity", reason="session_inactive")
        user = self.store.get_user(session.user_id)
        if user is None:
            self.store.delete_session(session.id)
            raise ForbiddenError("Session expired", reason="session_expired")
        self.store.touch_session(session.id, now)
        session.last_used_at = now
        access_token, access_expires_at = self._issue_access(user.id, user.email, user.role, session.id)
        return RotatedAccess(access_token=access_token, access_expires_at=access_expires_at, session=session)

    def revoke(self, refresh_token: Optional[str]) -> bool:
        """Delete the session a rotation token belongs to; unknown tokens are ignored."""
        try:
            session = self._find_session(refresh_token)
        except (AuthenticationError, ForbiddenError):
            return False
        return self.store.delete_session(session.id)

    def revoke_all(self, user_id: str) -> int:
        count = self.store.revoke_user_sessions(user_id)
        logger.info("sessions_revoked", user_id=user_id, count=count)
        return count

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = extract_bearer(authorization)
        if not token:
            raise AuthenticationError("Access token required", reason="access_token_required")
        payload = self.access_codec.decode(token, token_type="access")
        if not payload or not payload.get("sub"):
            raise AuthenticationError("Invalid or expired access token", reason="invalid_access_token")
        session_id = payload.get("sid")
        if session_id:
            try:
                self.store.touch_session(session_id, self._clock())
            except Exception as exc:
                logger.warning("session_touch_failed", session_id=session_id, error=str(exc))
        return AuthContext(
            user_id=payload["sub"],
            email=payload.get("email", ""),
            role=payload.get("role", "user"),
            session_id=session_id,
        )

    def sweep_expired(self) -> int:
        removed = self.store.delete_expired_sessions(self._clock(), self.inactivity)
        if removed:
            logger.info("sessions_swept", count=removed)
        return removed
