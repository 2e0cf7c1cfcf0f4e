from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "locked",
    "server_error",
})


def _normalize_unicode(value: Optional[str]) -> Optional[str]:
    """NFKC-normalize user supplied identifiers so look-alike forms collide."""
    if value is None:
        return None
    return unicodedata.normalize("NFKC", value)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(
        ...,
        description="Stable error code",
    )
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class _RequestModel(BaseModel):
    # Browser clients send camelCase, scripts tend to send snake_case
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RegisterRequest(_RequestModel):
    # Field presence and format are checked by the service so every
    # registration failure carries a specific reason
    email: Optional[str] = Field(default=None, max_length=254)
    username: Optional[str] = Field(default=None, max_length=64)
    password: Optional[str] = Field(default=None, max_length=128)
    confirm_password: Optional[str] = Field(default=None, max_length=128)

    @field_validator("email", "username")
    @classmethod
    def _normalize(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_unicode(value)


class LoginRequest(_RequestModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=128)
    mfa_code: Optional[str] = Field(default=None, max_length=16)

    @field_validator("email")
    @classmethod
    def _normalize_login_email(cls, value: str) -> str:
        return _normalize_unicode(value.strip().lower())

    @field_validator("mfa_code")
    @classmethod
    def _strip_mfa_code(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None


class MFAVerifyRequest(_RequestModel):
    code: str = Field(..., min_length=1, max_length=16)


class PasswordChangeRequest(_RequestModel):
    email: str = Field(..., max_length=254)
    current_password: str = Field(..., max_length=128)
    new_password: str = Field(..., max_length=128)


class PasswordResetRequest(_RequestModel):
    token: str = Field(..., max_length=4096)
    new_password: str = Field(..., max_length=128)


class SecurityActionRequest(_RequestModel):
    """Token from a confirm/report link in a security alert email."""

    token: str = Field(..., min_length=1, max_length=4096)


class UserResponse(BaseModel):
    id: str
    email: str
    username: str
    role: str = "user"
    mfa_enabled: bool = False
    mfa_method: Optional[str] = None
    password_expires_at: datetime
    created_at: datetime


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    session_id: str
    user: UserResponse
    suspicious: bool = False
    reasons: List[str] = Field(default_factory=list)
    mfa_verified: bool = False


class TokenRefreshResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime


class MFASetupResponse(BaseModel):
    secret: str
    otpauth_uri: str
    qr_code: str
    backup_codes: List[str]


class LoginAttemptResponse(BaseModel):
    id: str
    ip_addr: str
    status: str
    created_at: datetime
    location: Optional[str] = None
    device: Optional[str] = None
    suspicious: bool = False
    reasons: List[str] = Field(default_factory=list)
    failure_reason: Optional[str] = None
    mfa_verified: bool = False
