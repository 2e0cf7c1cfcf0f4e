from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol

from loginsentry.config import Settings
from loginsentry.logging import get_logger
from loginsentry.storage.models import (
    AttemptStatus,
    GeoLocation,
    LoginAttemptRecord,
    User,
    utcnow,
)

logger = get_logger(__name__)

EARTH_RADIUS_KM = 6371.0


class AttemptHistory(Protocol):
    def list_login_attempts(
        self,
        *,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
        ip_addr: Optional[str] = None,
        status: Optional[AttemptStatus] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[LoginAttemptRecord]: ...


def haversine_km(a: Optional[GeoLocation], b: Optional[GeoLocation]) -> float:
    """Great-circle distance between two locations; 0 when a coordinate is missing."""
    if a is None or b is None or not a.has_coordinates or not b.has_coordinates:
        return 0.0
    lat1, lon1 = math.radians(a.latitude), math.radians(a.longitude)
    lat2, lon2 = math.radians(b.latitude), math.radians(b.longitude)
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.atan2(math.sqrt(h), math.sqrt(1 - h))


class SuspiciousLoginEvaluator:
    """Scores a login against the account's history.

    Each heuristic is independent and contributes at most one reason; the
    result is the ordered list of reasons (empty means nothing stood out).
    A heuristic that cannot run, for instance because the history lookup
    failed, is skipped rather than failing the login.
    """

    def __init__(
        self,
        history: AttemptHistory,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.history = history
        self.speed_limit_kmh = settings.travel_speed_limit_kmh
        self.travel_lookback = timedelta(hours=settings.travel_lookback_hours)
        self.velocity_window = timedelta(minutes=settings.velocity_window_minutes)
        self.velocity_threshold = settings.velocity_threshold
        self.vpn_prefixes = tuple(settings.vpn_ip_prefixes)
        self.malicious_ips = frozenset(settings.malicious_ips)
        self._clock = clock

    def evaluate(
        self,
        user: User,
        ip: str,
        location: Optional[GeoLocation],
        *,
        email: Optional[str] = None,
    ) -> List[str]:
        now = self._clock()
        reasons: List[str] = []
        checks = (
            ("new_ip", lambda: self._check_new_ip(user, ip)),
            ("impossible_travel", lambda: self._check_travel(user, location, now)),
            ("new_country", lambda: self._check_country(user, location)),
            ("vpn", lambda: self._check_vpn(ip)),
            ("malicious_ip", lambda: self._check_malicious(ip)),
            ("velocity", lambda: self._check_velocity(email or user.email, ip, now)),
        )
        for name, check in checks:
            try:
                reason = check()
            except Exception as exc:
                logger.warning(
                    "suspicion_check_skipped",
                    check=name,
                    user_id=user.id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                continue
            if reason:
                reasons.append(reason)
        if reasons:
            logger.info("login_flagged", user_id=user.id, ip=ip, reasons=reasons)
        return reasons

    def _check_new_ip(self, user: User, ip: str) -> Optional[str]:
        if user.trusts_ip(ip):
            return None
        return "Login from new IP address"

    def _check_travel(
        self, user: User, location: Optional[GeoLocation], now: datetime
    ) -> Optional[str]:
        if location is None or not location.has_coordinates:
            return None
        recent = self.history.list_login_attempts(
            user_id=user.id,
            status=AttemptStatus.SUCCESS,
            since=now - self.travel_lookback,
            limit=1,
        )
        if not recent:
            return None
        previous = recent[0]
        distance = haversine_km(previous.location, location)
        elapsed_hours = max((now - previous.created_at).total_seconds() / 3600, 0.0)
        if distance <= 0:
            return None
        speed = distance / elapsed_hours if elapsed_hours > 0 else math.inf
        if speed > self.speed_limit_kmh:
            return f"Impossible travel detected: {distance:.0f} km in {elapsed_hours:.1f} hours"
        return None

    def _check_country(self, user: User, location: Optional[GeoLocation]) -> Optional[str]:
        if location is None or not location.country or not user.trusted_devices:
            return None
        if location.country in user.known_countries():
            return None
        return f"Login from new country: {location.country}"

    def _check_vpn(self, ip: str) -> Optional[str]:
        if any(ip.startswith(prefix) for prefix in self.vpn_prefixes):
            return "VPN or proxy detected"
        return None

    def _check_malicious(self, ip: str) -> Optional[str]:
        if ip in self.malicious_ips:
            return "Login from known malicious IP"
        return None

    def _check_velocity(self, email: str, ip: str, now: datetime) -> Optional[str]:
        failures = self.history.list_login_attempts(
            email=email,
            ip_addr=ip,
            status=AttemptStatus.FAILED,
            since=now - self.velocity_window,
        )
        if len(failures) >= self.velocity_threshold:
            return f"Multiple failed login attempts ({len(failures)}) from this IP"
        return None
