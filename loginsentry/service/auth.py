from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from loginsentry.config import Settings, SuspiciousLoginPolicy
from loginsentry.logging import get_logger
from loginsentry.service.audit import (
    ACTION_REPORT_FRAUD,
    ACTION_RESET_PASSWORD,
    ACTION_TRUST_DEVICE,
    AuditLogger,
    SecurityAlerter,
)
from loginsentry.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ServiceError,
    ValidationError,
)
from loginsentry.service.geo import GeoResolver
from loginsentry.service.lockout import (
    CredentialVerifier,
    VerificationResult,
    VerificationStatus,
    normalize_email,
)
from loginsentry.service.mfa import MFAEnrollment, MFAOutcome, MFAVerifier
from loginsentry.service.passwords import (
    EMAIL_PATTERN,
    USERNAME_PATTERN,
    PasswordHasher,
    password_policy_violation,
)
from loginsentry.service.sessions import IssuedCredentials, RotatedAccess, SessionManager
from loginsentry.service.suspicion import SuspiciousLoginEvaluator
from loginsentry.storage.errors import ConstraintViolation
from loginsentry.storage.memory import MemoryStore
from loginsentry.storage.models import (
    AttemptStatus,
    DeviceInfo,
    GeoLocation,
    LoginAttemptRecord,
    PasswordHistoryEntry,
    TrustedDevice,
    User,
    device_fingerprint,
    utcnow,
)

logger = get_logger(__name__)


class StageKind(str, Enum):
    CONTINUE = "continue"
    BLOCK = "block"
    CHALLENGE = "challenge"


@dataclass(frozen=True)
class StageOutcome:
    """Result of one login stage: keep going, stop with an error, or ask for more."""

    kind: StageKind
    error: Optional[ServiceError] = None

    @classmethod
    def proceed(cls) -> "StageOutcome":
        return cls(StageKind.CONTINUE)

    @classmethod
    def block(cls, error: ServiceError) -> "StageOutcome":
        return cls(StageKind.BLOCK, error)

    @classmethod
    def challenge(cls, error: ServiceError) -> "StageOutcome":
        return cls(StageKind.CHALLENGE, error)


@dataclass
class LoginContext:
    email: str
    password: str
    mfa_code: Optional[str]
    ip_addr: str
    device: DeviceInfo
    location: Optional[GeoLocation] = None
    verification: Optional[VerificationResult] = None
    reasons: List[str] = field(default_factory=list)
    mfa_outcome: Optional[MFAOutcome] = None
    credentials: Optional[IssuedCredentials] = None
    failure_reason: Optional[str] = None
    alert: bool = False

    @property
    def user(self) -> Optional[User]:
        return self.verification.user if self.verification else None


@dataclass(frozen=True)
class LoginResult:
    user: User
    credentials: IssuedCredentials
    reasons: List[str]
    mfa_verified: bool


Stage = Callable[[LoginContext], Awaitable[StageOutcome]]


class AuthService:
    """Account lifecycle and the login pipeline.

    A login runs credential, lockout, expiry, suspicion, MFA and session
    stages in that order and stops at the first stage that blocks or asks for
    a challenge. Whatever happened, exactly one login attempt is recorded
    afterwards, and a security alert is scheduled when the attempt was flagged
    and either reached session issuance or was blocked for being suspicious.
    """

    def __init__(
        self,
        store: MemoryStore,
        settings: Settings,
        *,
        hasher: PasswordHasher,
        verifier: CredentialVerifier,
        evaluator: SuspiciousLoginEvaluator,
        mfa: MFAVerifier,
        sessions: SessionManager,
        audit: AuditLogger,
        alerter: SecurityAlerter,
        geo: GeoResolver,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.hasher = hasher
        self.verifier = verifier
        self.evaluator = evaluator
        self.mfa = mfa
        self.sessions = sessions
        self.audit = audit
        self.alerter = alerter
        self.geo = geo
        self._clock = clock
        self.password_max_age = timedelta(days=settings.password_max_age_days)
        self._stages: List[tuple[str, Stage]] = [
            ("credential", self._credential_stage),
            ("lockout", self._lockout_stage),
            ("expiry", self._expiry_stage),
            ("suspicion", self._suspicion_stage),
            ("mfa", self._mfa_stage),
            ("session", self._session_stage),
        ]

    async def locate(self, ip_addr: str) -> Optional[GeoLocation]:
        try:
            return await self.geo.resolve(ip_addr)
        except Exception as exc:
            logger.warning("geo_resolve_failed", ip=ip_addr, error_type=type(exc).__name__, error=str(exc))
            return None

    # registration
    def _validate_registration(
        self, email: str, username: str, password: str, confirm_password: str
    ) -> None:
        if not email or not username or not password or not confirm_password:
            raise ValidationError("All fields are required", reason="missing_fields")
        if password != confirm_password:
            raise ValidationError("Passwords do not match", reason="password_mismatch")
        if not EMAIL_PATTERN.match(email):
            raise ValidationError("Invalid email format", reason="invalid_email")
        if not USERNAME_PATTERN.match(username):
            raise ValidationError(
                "Username must be 3-20 characters and contain only letters, numbers, "
                "underscores, and hyphens",
                reason="invalid_username",
            )
        violation = password_policy_violation(password)
        if violation:
            raise ValidationError(violation, reason="weak_password")

    async def register(
        self,
        email: str,
        username: str,
        password: str,
        confirm_password: str,
        *,
        ip_addr: str,
        device: Optional[DeviceInfo] = None,
    ) -> User:
        if not self.settings.allow_signup:
            raise ForbiddenError("Signups are disabled", reason="signup_disabled")
        email = normalize_email(email or "")
        username = (username or "").strip()
        self._validate_registration(email, username, password or "", confirm_password or "")
        if self.store.get_user_by_email(email):
            raise ConflictError("Email already registered", reason="email_taken")
        if self.store.get_user_by_username(username):
            raise ConflictError("Username already taken", reason="username_taken")

        password_hash = await self.hasher.hash_async(password)
        location = await self.locate(ip_addr)
        now = self._clock()
        first_device = TrustedDevice.from_login(ip_addr, device or DeviceInfo(), location, seen_at=now)
        try:
            user = self.store.create_user(
                email,
                username,
                password_hash,
                password_expires_at=now + self.password_max_age,
                trusted_devices=[first_device],
                now=now,
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration
            field_name = exc.detail.get("field")
            if field_name == "username":
                raise ConflictError("Username already taken", reason="username_taken") from exc
            raise ConflictError("Email already registered", reason="email_taken") from exc
        logger.info("user_registered", user_id=user.id)
        return user

    # login pipeline
    async def login(
        self,
        email: str,
        password: str,
        *,
        ip_addr: str,
        device: Optional[DeviceInfo] = None,
        mfa_code: Optional[str] = None,
    ) -> LoginResult:
        ctx = LoginContext(
            email=normalize_email(email or ""),
            password=password or "",
            mfa_code=mfa_code,
            ip_addr=ip_addr,
            device=device or DeviceInfo(),
        )
        ctx.location = await self.locate(ip_addr)

        outcome = StageOutcome.proceed()
        for name, stage in self._stages:
            outcome = await stage(ctx)
            if outcome.kind != StageKind.CONTINUE:
                logger.info(
                    "login_stopped",
                    stage=name,
                    outcome=outcome.kind.value,
                    reason=outcome.error.reason if outcome.error else None,
                    user_id=ctx.user.id if ctx.user else None,
                )
                break

        self._record_attempt(ctx)
        if ctx.alert and ctx.user is not None:
            self._schedule_alert(ctx)

        if outcome.kind != StageKind.CONTINUE and outcome.error is not None:
            raise outcome.error
        assert ctx.user is not None and ctx.credentials is not None
        return LoginResult(
            user=ctx.user,
            credentials=ctx.credentials,
            reasons=list(ctx.reasons),
            mfa_verified=bool(ctx.mfa_outcome and ctx.mfa_outcome.verified),
        )

    async def _credential_stage(self, ctx: LoginContext) -> StageOutcome:
        ctx.verification = await self.verifier.verify(ctx.email, ctx.password)
        if ctx.verification.status == VerificationStatus.INVALID_CREDENTIALS:
            ctx.failure_reason = ctx.verification.failure_reason
            if ctx.user is not None:
                # Journal only; a wrong password never triggers an alert
                ctx.reasons = self.evaluator.evaluate(ctx.user, ctx.ip_addr, ctx.location, email=ctx.email)
            return StageOutcome.block(
                AuthenticationError("Invalid credentials", reason="invalid_credentials")
            )
        return StageOutcome.proceed()

    async def _lockout_stage(self, ctx: LoginContext) -> StageOutcome:
        result = ctx.verification
        if result is None or result.status != VerificationStatus.LOCKED:
            return StageOutcome.proceed()
        ctx.failure_reason = result.failure_reason
        detail = {"unlocks_at": result.unlocks_at.isoformat() if result.unlocks_at else None}
        return StageOutcome.block(
            AccountLockedError(
                "Account temporarily locked due to multiple failed login attempts",
                reason="account_locked",
                detail=detail,
            )
        )

    async def _expiry_stage(self, ctx: LoginContext) -> StageOutcome:
        result = ctx.verification
        if result is None or result.status != VerificationStatus.PASSWORD_EXPIRED:
            return StageOutcome.proceed()
        ctx.failure_reason = result.failure_reason
        return StageOutcome.block(
            ForbiddenError(
                "Password expired. Please reset your password",
                reason="password_expired",
                detail={"requires_reset": True},
            )
        )

    async def _suspicion_stage(self, ctx: LoginContext) -> StageOutcome:
        assert ctx.user is not None
        ctx.reasons = self.evaluator.evaluate(ctx.user, ctx.ip_addr, ctx.location, email=ctx.email)
        if not ctx.reasons:
            return StageOutcome.proceed()
        if self.settings.suspicious_login_policy == SuspiciousLoginPolicy.BLOCK:
            ctx.alert = True
            ctx.failure_reason = "Suspicious login blocked"
            return StageOutcome.block(
                ForbiddenError(
                    "Suspicious login detected. Please verify your identity",
                    reason="suspicious_login",
                    detail={
                        "reasons": list(ctx.reasons),
                        "requires_additional_verification": True,
                    },
                )
            )
        return StageOutcome.proceed()

    async def _mfa_stage(self, ctx: LoginContext) -> StageOutcome:
        assert ctx.user is not None
        ctx.mfa_outcome = self.mfa.verify_login(ctx.user, ctx.mfa_code)
        if ctx.mfa_outcome == MFAOutcome.REQUIRED:
            ctx.failure_reason = "MFA code required"
            return StageOutcome.challenge(
                ForbiddenError(
                    "MFA code required",
                    reason="mfa_required",
                    detail={"requires_mfa": True, "mfa_method": ctx.user.mfa_method},
                )
            )
        if ctx.mfa_outcome == MFAOutcome.INVALID:
            ctx.failure_reason = "Invalid MFA code"
            updated = self.verifier.record_failure(ctx.user.id, self._clock())
            if updated is not None:
                ctx.user = updated
            return StageOutcome.block(
                AuthenticationError("Invalid MFA code", reason="invalid_mfa_code")
            )
        return StageOutcome.proceed()

    async def _session_stage(self, ctx: LoginContext) -> StageOutcome:
        assert ctx.user is not None
        now = self._clock()
        fingerprint = device_fingerprint(ctx.ip_addr, ctx.device)

        def _apply(user: User) -> None:
            user.security = user.security.cleared()
            for trusted in user.trusted_devices:
                if trusted.fingerprint == fingerprint:
                    trusted.last_seen = now

        updated = self.store.update_user(ctx.user.id, _apply)
        user = updated or ctx.user
        ctx.verification = VerificationResult(VerificationStatus.OK, user=user)
        ctx.credentials = self.sessions.issue(
            user, device=ctx.device, ip_addr=ctx.ip_addr, location=ctx.location
        )
        ctx.alert = bool(ctx.reasons)
        return StageOutcome.proceed()

    def _record_attempt(self, ctx: LoginContext) -> Optional[LoginAttemptRecord]:
        success = ctx.credentials is not None
        return self.audit.record(
            email=ctx.email,
            ip_addr=ctx.ip_addr,
            status=AttemptStatus.SUCCESS if success else AttemptStatus.FAILED,
            user_id=ctx.user.id if ctx.user else None,
            location=ctx.location,
            device=ctx.device,
            reasons=ctx.reasons,
            failure_reason=None if success else ctx.failure_reason,
            mfa_verified=bool(ctx.mfa_outcome and ctx.mfa_outcome.verified),
        )

    def _schedule_alert(self, ctx: LoginContext) -> None:
        assert ctx.user is not None
        try:
            alert = self.alerter.build_alert(
                ctx.user,
                ip_addr=ctx.ip_addr,
                device=ctx.device,
                location=ctx.location,
                reasons=ctx.reasons,
            )
        except Exception as exc:
            logger.error("security_alert_build_failed", user_id=ctx.user.id, error=str(exc))
            return
        self.alerter.schedule(alert)

    # MFA enrollment
    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found")
        return user

    def setup_mfa(self, user_id: str) -> MFAEnrollment:
        return self.mfa.setup(self._require_user(user_id))

    def confirm_mfa(self, user_id: str, code: str) -> User:
        return self.mfa.confirm(user_id, code)

    # session endpoints
    def refresh(self, refresh_token: Optional[str]) -> RotatedAccess:
        return self.sessions.rotate(refresh_token)

    def logout(self, refresh_token: Optional[str]) -> bool:
        return self.sessions.revoke(refresh_token)

    # passwords
    def _apply_new_password(self, user: User, new_hash: str, now: datetime) -> None:
        limit = self.settings.password_history_limit
        history = [PasswordHistoryEntry(user.password_hash, user.password_changed_at)]
        history.extend(user.password_history)
        user.password_history = history[:limit] if limit else []
        user.password_hash = new_hash
        user.password_changed_at = now
        user.password_expires_at = now + self.password_max_age
        user.security = user.security.cleared()

    async def _set_password(self, user: User, new_password: str) -> User:
        violation = password_policy_violation(new_password or "")
        if violation:
            raise ValidationError(violation, reason="weak_password")
        recent = [user.password_hash] + [
            entry.password_hash
            for entry in user.password_history[: self.settings.password_history_limit]
        ]
        for previous in recent:
            if await self.hasher.verify_async(previous, new_password):
                raise ValidationError(
                    "Password was used recently. Please choose a different password",
                    reason="password_reused",
                )
        new_hash = await self.hasher.hash_async(new_password)
        now = self._clock()
        updated = self.store.update_user(user.id, lambda u: self._apply_new_password(u, new_hash, now))
        if updated is None:
            raise NotFoundError("user not found")
        self.sessions.revoke_all(user.id)
        logger.info("password_changed", user_id=user.id)
        return updated

    async def change_password(self, email: str, current_password: str, new_password: str) -> User:
        """Change a password with the current one; works for expired passwords."""
        result = await self.verifier.verify(email, current_password)
        if result.status == VerificationStatus.INVALID_CREDENTIALS:
            raise AuthenticationError("Invalid credentials", reason="invalid_credentials")
        if result.status == VerificationStatus.LOCKED:
            raise AccountLockedError(
                "Account temporarily locked due to multiple failed login attempts",
                reason="account_locked",
                detail={"unlocks_at": result.unlocks_at.isoformat() if result.unlocks_at else None},
            )
        assert result.user is not None
        return await self._set_password(result.user, new_password)

    async def reset_password(self, token: str, new_password: str) -> User:
        payload = self.alerter.decode_action(token, ACTION_RESET_PASSWORD)
        user = self.store.get_user(payload["sub"]) if payload else None
        if user is None or payload.get("pwd") != user.password_changed_at.isoformat():
            raise ValidationError("Invalid or expired reset link", reason="invalid_security_token")
        return await self._set_password(user, new_password)

    # alert follow-ups
    def report_fraud(self, token: str) -> User:
        """Owner says a flagged login was not them: lock, sign out everywhere, send a reset link."""
        payload = self.alerter.decode_action(token, ACTION_REPORT_FRAUD)
        if not payload:
            raise ValidationError("Invalid or expired security link", reason="invalid_security_token")

        def _apply(user: User) -> None:
            user.security = user.security.lock_indefinitely()
            ip = payload.get("ip")
            user.trusted_devices = [d for d in user.trusted_devices if d.ip != ip]

        user = self.store.update_user(payload["sub"], _apply)
        if user is None:
            raise ValidationError("Invalid or expired security link", reason="invalid_security_token")
        self.sessions.revoke_all(user.id)
        self.alerter.schedule_password_reset(user)
        logger.warning("fraud_reported", user_id=user.id, ip=payload.get("ip"))
        return user

    def confirm_device(self, token: str) -> User:
        """Owner confirms a flagged login; its device joins the trusted set."""
        payload = self.alerter.decode_action(token, ACTION_TRUST_DEVICE)
        if not payload:
            raise ValidationError("Invalid or expired security link", reason="invalid_security_token")
        device = DeviceInfo(
            browser=payload.get("browser") or "Unknown",
            os=payload.get("os") or "Unknown",
            device_type=payload.get("device_type") or "desktop",
        )
        location = GeoLocation(country=payload.get("country"), city=payload.get("city"))
        trusted = TrustedDevice.from_login(payload.get("ip") or "Unknown", device, location, seen_at=self._clock())

        def _apply(user: User) -> None:
            if all(d.fingerprint != trusted.fingerprint for d in user.trusted_devices):
                user.trusted_devices.append(trusted)

        user = self.store.update_user(payload["sub"], _apply)
        if user is None:
            raise ValidationError("Invalid or expired security link", reason="invalid_security_token")
        logger.info("device_trusted", user_id=user.id, ip=trusted.ip)
        return user

    def login_history(self, user_id: str, *, limit: int = 20) -> List[LoginAttemptRecord]:
        return self.store.list_login_attempts(user_id=user_id, limit=limit)

    def get_user(self, user_id: str) -> User:
        return self._require_user(user_id)
