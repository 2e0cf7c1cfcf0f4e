from __future__ import annotations

import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Protocol, Sequence
from urllib.parse import urlencode

from loginsentry.config import Settings
from loginsentry.logging import get_logger
from loginsentry.service.tokens import JWTCodec
from loginsentry.storage.memory import MemoryStore
from loginsentry.storage.models import (
    AttemptStatus,
    DeviceInfo,
    GeoLocation,
    LoginAttemptRecord,
    User,
    utcnow,
)

logger = get_logger(__name__)

ACTION_TRUST_DEVICE = "trust_device"
ACTION_REPORT_FRAUD = "report_fraud"
ACTION_RESET_PASSWORD = "reset_password"
# Above this many reasons the alert also asks for an SMS escalation
SMS_ESCALATION_REASON_COUNT = 2


class AuditLogger:
    """Append-only login attempt journal."""

    def __init__(self, store: MemoryStore, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self._clock = clock

    def record(
        self,
        *,
        email: str,
        ip_addr: str,
        status: AttemptStatus,
        user_id: Optional[str] = None,
        location: Optional[GeoLocation] = None,
        device: Optional[DeviceInfo] = None,
        reasons: Sequence[str] = (),
        failure_reason: Optional[str] = None,
        mfa_verified: bool = False,
    ) -> Optional[LoginAttemptRecord]:
        record = LoginAttemptRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            email=email,
            ip_addr=ip_addr,
            status=status,
            created_at=self._clock(),
            location=location,
            device=device,
            suspicious=bool(reasons),
            reasons=tuple(reasons),
            failure_reason=failure_reason,
            mfa_verified=mfa_verified,
        )
        try:
            self.store.append_login_attempt(record)
        except Exception as exc:
            # Losing an audit row must not turn into a failed login
            logger.error(
                "login_attempt_record_failed",
                user_id=user_id,
                status=status.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        return record


@dataclass(frozen=True)
class SecurityAlert:
    user_id: str
    email: str
    reasons: tuple[str, ...]
    ip_addr: str
    location_label: str
    device_label: str
    occurred_at: datetime
    confirm_url: str
    report_url: str
    escalate_sms: bool = False


class Notifier(Protocol):
    def send_security_alert(self, alert: SecurityAlert) -> bool: ...

    def send_password_reset(self, to_email: str, reset_url: str) -> bool: ...


class SecurityAlerter:
    """Builds and dispatches suspicious-login notifications.

    Dispatch happens on a small thread pool owned by the alerter, so the login
    response never waits on SMTP. Failures are logged and dropped.
    """

    def __init__(
        self,
        notifier: Notifier,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
        max_workers: int = 2,
    ) -> None:
        self.notifier = notifier
        self.frontend_url = settings.frontend_url.rstrip("/")
        self.action_ttl = timedelta(hours=settings.security_action_ttl_hours)
        self._clock = clock
        self.action_codec = JWTCodec(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=f"{settings.jwt_audience}:security-actions",
            clock=clock,
        )
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="security-alert")

    def _action_token(
        self,
        action: str,
        user: User,
        ip_addr: str,
        device: Optional[DeviceInfo],
        location: Optional[GeoLocation],
    ) -> str:
        device = device or DeviceInfo()
        claims = {
            "sub": user.id,
            "act": action,
            "ip": ip_addr,
            "browser": device.browser,
            "os": device.os,
            "device_type": device.device_type,
            "country": location.country if location else None,
            "city": location.city if location else None,
        }
        return self.action_codec.encode(claims, token_type="security_action", ttl=self.action_ttl)

    def _action_url(self, path: str, token: str, user: User, ip_addr: str) -> str:
        query = urlencode({"token": token, "email": user.email, "ip": ip_addr})
        return f"{self.frontend_url}/security/{path}?{query}"

    def build_alert(
        self,
        user: User,
        *,
        ip_addr: str,
        device: Optional[DeviceInfo],
        location: Optional[GeoLocation],
        reasons: Sequence[str],
    ) -> SecurityAlert:
        confirm_token = self._action_token(ACTION_TRUST_DEVICE, user, ip_addr, device, location)
        report_token = self._action_token(ACTION_REPORT_FRAUD, user, ip_addr, device, location)
        return SecurityAlert(
            user_id=user.id,
            email=user.email,
            reasons=tuple(reasons),
            ip_addr=ip_addr,
            location_label=location.describe() if location else "Unknown location",
            device_label=(device or DeviceInfo()).describe(),
            occurred_at=self._clock(),
            confirm_url=self._action_url("trust-device", confirm_token, user, ip_addr),
            report_url=self._action_url("report-fraud", report_token, user, ip_addr),
            escalate_sms=len(reasons) > SMS_ESCALATION_REASON_COUNT,
        )

    def password_reset_url(self, user: User) -> str:
        # Bound to the current password so the link stops working once used
        claims = {
            "sub": user.id,
            "act": ACTION_RESET_PASSWORD,
            "pwd": user.password_changed_at.isoformat(),
        }
        token = self.action_codec.encode(claims, token_type="security_action", ttl=self.action_ttl)
        return f"{self.frontend_url}/security/reset-password?{urlencode({'token': token})}"

    def schedule_password_reset(self, user: User) -> Optional[Future]:
        reset_url = self.password_reset_url(user)

        def _send() -> bool:
            try:
                return bool(self.notifier.send_password_reset(user.email, reset_url))
            except Exception as exc:
                logger.error("password_reset_email_failed", user_id=user.id, error=str(exc))
                return False

        try:
            return self._executor.submit(_send)
        except RuntimeError as exc:
            logger.error("password_reset_schedule_failed", user_id=user.id, error=str(exc))
            return None

    def decode_action(self, token: str, action: str) -> Optional[dict[str, Any]]:
        payload = self.action_codec.decode(token, token_type="security_action")
        if not payload or payload.get("act") != action or not payload.get("sub"):
            return None
        return payload

    def schedule(self, alert: SecurityAlert) -> Optional[Future]:
        try:
            return self._executor.submit(self.dispatch, alert)
        except RuntimeError as exc:
            # Executor already shut down
            logger.error("security_alert_schedule_failed", user_id=alert.user_id, error=str(exc))
            return None

    def dispatch(self, alert: SecurityAlert) -> bool:
        try:
            sent = self.notifier.send_security_alert(alert)
        except Exception as exc:
            logger.error(
                "security_alert_failed",
                user_id=alert.user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        if not sent:
            logger.warning("security_alert_not_delivered", user_id=alert.user_id)
        else:
            logger.info("security_alert_sent", user_id=alert.user_id, reasons=list(alert.reasons))
        if alert.escalate_sms:
            # No SMS gateway is wired in; keep the escalation visible in the logs
            logger.warning("security_alert_sms_escalation", user_id=alert.user_id, reason_count=len(alert.reasons))
        return bool(sent)

    def shutdown(self, *, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait)
