from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from loginsentry.logging import get_logger

logger = get_logger(__name__)


class SuspiciousLoginPolicy(str, Enum):
    """What the login pipeline does once a login has been flagged."""

    ALERT = "alert"
    BLOCK = "block"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> Any:
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


def _load_or_create_secret(fs_root: Path, filename: str) -> str:
    """Read a persisted signing secret, generating and storing one if missing."""
    secret_path = fs_root / filename
    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different ownership (e.g., in container)
        pass
    except OSError as exc:
        logger.warning("secret_dir_setup_failed", error=str(exc), path=str(fs_root))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set the secret env var or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Runtime settings for the authentication service.

    Every component receives this object at construction time; it is frozen so
    a running engine never observes a configuration change mid-request.
    """

    app_env: str = env_field("development", "APP_ENV")
    shared_fs_root: str = env_field("/srv/loginsentry", "SHARED_FS_ROOT")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors (sync Redis client, runtime reset hooks)",
    )

    # Token signing
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    refresh_token_secret: str = env_field(None, "REFRESH_TOKEN_SECRET", validate_default=True)
    jwt_issuer: str = env_field("loginsentry", "JWT_ISSUER")
    jwt_audience: str = env_field("loginsentry-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", gt=0)
    session_inactivity_minutes: int = env_field(30, "SESSION_INACTIVITY_MINUTES", gt=0)
    session_sweep_interval_seconds: int = env_field(
        300,
        "SESSION_SWEEP_INTERVAL_SECONDS",
        description="Interval for the background sweep of expired sessions; 0 disables it",
    )
    security_action_ttl_hours: int = env_field(
        72,
        "SECURITY_ACTION_TTL_HOURS",
        description="Lifetime of the confirm/report links embedded in security alerts",
    )

    # Lockout and password policy
    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD", gt=0)
    lockout_duration_minutes: int = env_field(15, "LOCKOUT_DURATION_MINUTES", gt=0)
    password_max_age_days: int = env_field(90, "PASSWORD_MAX_AGE_DAYS", gt=0)
    password_history_limit: int = env_field(5, "PASSWORD_HISTORY_LIMIT", ge=0)
    login_attempt_retention: int = env_field(
        10000,
        "LOGIN_ATTEMPT_RETENTION",
        gt=0,
        description="Newest login attempts kept in the persisted journal",
    )

    # MFA
    mfa_issuer: str = env_field("LoginSentry", "MFA_ISSUER")
    mfa_secret_key: str | None = env_field(
        None,
        "MFA_SECRET_KEY",
        description="Key material for encrypting TOTP secrets at rest; defaults to JWT_SECRET",
    )
    mfa_backup_code_count: int = env_field(10, "MFA_BACKUP_CODE_COUNT", gt=0)
    totp_window: int = env_field(2, "TOTP_WINDOW", ge=0)

    # Suspicious login heuristics
    suspicious_login_policy: SuspiciousLoginPolicy = env_field(
        SuspiciousLoginPolicy.ALERT, "SUSPICIOUS_LOGIN_POLICY"
    )
    travel_speed_limit_kmh: float = env_field(900.0, "TRAVEL_SPEED_LIMIT_KMH", gt=0)
    travel_lookback_hours: int = env_field(24, "TRAVEL_LOOKBACK_HOURS", gt=0)
    velocity_window_minutes: int = env_field(30, "VELOCITY_WINDOW_MINUTES", gt=0)
    velocity_threshold: int = env_field(3, "VELOCITY_THRESHOLD", gt=0)
    vpn_ip_prefixes: list[str] = env_field(
        ["103.145", "185.241", "37.1.208"], "VPN_IP_PREFIXES"
    )
    malicious_ips: list[str] = env_field([], "MALICIOUS_IPS")

    # Geolocation
    geo_lookup_enabled: bool = env_field(True, "GEO_LOOKUP_ENABLED")
    geo_lookup_url: str = env_field("http://ip-api.com/json/{ip}", "GEO_LOOKUP_URL")
    geo_lookup_timeout_seconds: float = env_field(5.0, "GEO_LOOKUP_TIMEOUT_SECONDS", gt=0)
    geo_cache_ttl_seconds: int = env_field(24 * 3600, "GEO_CACHE_TTL_SECONDS", gt=0)
    trust_proxy_headers: bool = env_field(
        True,
        "TRUST_PROXY_HEADERS",
        description="Honor X-Forwarded-For and friends when resolving the client IP",
    )

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("LoginSentry Security", "EMAIL_FROM_NAME")
    frontend_url: str = env_field("http://localhost:5173", "FRONTEND_URL")

    # HTTP surface
    cors_allow_origins: list[str] = env_field(["http://localhost:5173"], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")

    model_config = ConfigDict(extra="ignore", frozen=True)

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() in {"production", "prod"}

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("vpn_ip_prefixes", "malicious_ips", "cors_allow_origins", mode="before")
    @classmethod
    def _parse_csv(cls, value: Any) -> Any:
        return _split_csv(value)

    @field_validator("suspicious_login_policy", mode="before")
    @classmethod
    def _normalize_policy(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        # Persisted so access tokens stay valid across restarts
        fs_root = Path(info.data.get("shared_fs_root") or "/srv/loginsentry")
        return _load_or_create_secret(fs_root, ".jwt_secret")

    @field_validator("refresh_token_secret")
    @classmethod
    def _ensure_refresh_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        fs_root = Path(info.data.get("shared_fs_root") or "/srv/loginsentry")
        return _load_or_create_secret(fs_root, ".refresh_token_secret")


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
