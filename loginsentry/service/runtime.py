from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from loginsentry.config import Settings, get_settings, reset_settings_cache
from loginsentry.logging import get_logger
from loginsentry.service.audit import AuditLogger, SecurityAlerter
from loginsentry.service.auth import AuthService
from loginsentry.service.email import EmailService
from loginsentry.service.geo import IpApiGeoResolver
from loginsentry.service.lockout import CredentialVerifier
from loginsentry.service.mfa import MFAVerifier
from loginsentry.service.passwords import PasswordHasher
from loginsentry.service.sessions import SessionManager
from loginsentry.service.suspicion import SuspiciousLoginEvaluator
from loginsentry.storage.memory import MemoryStore
from loginsentry.storage.redis_cache import LocalGeoCache, RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info("runtime_init_started", test_mode=self.settings.test_mode)

        try:
            self.store = MemoryStore(
                fs_root=self.settings.shared_fs_root,
                mfa_encryption_key=self.settings.mfa_secret_key or self.settings.jwt_secret,
                max_login_attempts=self.settings.login_attempt_retention,
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a per-test event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for the geolocation cache; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=f"Running without Redis under {fallback_mode}; geolocation results are cached in-process.",
                mode=fallback_mode,
            )

        self.geo_cache = self.cache or LocalGeoCache()
        self.geo = IpApiGeoResolver(self.settings, self.geo_cache)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.hasher = PasswordHasher(self.settings.refresh_token_secret)
        self.verifier = CredentialVerifier(self.store, self.hasher, self.settings)
        self.evaluator = SuspiciousLoginEvaluator(self.store, self.settings)
        self.mfa = MFAVerifier(self.store, self.hasher, self.settings)
        self.sessions = SessionManager(self.store, self.hasher, self.settings)
        self.audit = AuditLogger(self.store)
        self.alerter = SecurityAlerter(self.email, self.settings)
        self.auth = AuthService(
            self.store,
            self.settings,
            hasher=self.hasher,
            verifier=self.verifier,
            evaluator=self.evaluator,
            mfa=self.mfa,
            sessions=self.sessions,
            audit=self.audit,
            alerter=self.alerter,
            geo=self.geo,
        )
        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            suspicious_login_policy=self.settings.suspicious_login_policy.value,
        )

    async def close(self) -> None:
        """Release the alert worker pool and the Redis connection."""
        self.alerter.shutdown(wait=False)
        if self.cache is not None:
            try:
                await self.cache.close()
            except Exception as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.alerter.shutdown(wait=True)
            if isinstance(runtime.cache, SyncRedisCache):
                runtime.cache.close_sync()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
