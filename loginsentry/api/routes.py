from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, Query, Request, Response

from loginsentry.api.schemas import (
    Envelope,
    LoginAttemptResponse,
    LoginRequest,
    LoginResponse,
    MFASetupResponse,
    MFAVerifyRequest,
    PasswordChangeRequest,
    PasswordResetRequest,
    RegisterRequest,
    SecurityActionRequest,
    TokenRefreshResponse,
    UserResponse,
)
from loginsentry.logging import get_logger
from loginsentry.service.geo import extract_client_ip, parse_user_agent
from loginsentry.service.runtime import get_runtime
from loginsentry.service.sessions import AuthContext
from loginsentry.storage.models import DeviceInfo, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/auth")

REFRESH_COOKIE = "refresh_token"
REFRESH_COOKIE_PATH = "/v1/auth"


def _client_ip(request: Request) -> str:
    runtime = get_runtime()
    return extract_client_ip(
        request.headers,
        request.client.host if request.client else None,
        trust_proxy_headers=runtime.settings.trust_proxy_headers,
    )


def _client_device(request: Request) -> DeviceInfo:
    return parse_user_agent(request.headers.get("user-agent"))


def _user_response(user: User) -> UserResponse:
    return UserResponse(**user.summary())


def _apply_refresh_cookie(response: Response, refresh_token: str) -> None:
    runtime = get_runtime()
    response.set_cookie(
        REFRESH_COOKIE,
        refresh_token,
        httponly=True,
        secure=runtime.settings.is_production,
        samesite="strict",
        max_age=runtime.settings.refresh_token_ttl_minutes * 60,
        path=REFRESH_COOKIE_PATH,
    )


def _clear_refresh_cookie(response: Response) -> None:
    runtime = get_runtime()
    response.delete_cookie(
        REFRESH_COOKIE,
        path=REFRESH_COOKIE_PATH,
        secure=runtime.settings.is_production,
        httponly=True,
        samesite="strict",
    )


async def get_auth_context(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return runtime.sessions.authenticate(authorization)


@router.post("/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create an account.

    The device used to register becomes the account's first trusted device.

    Raises:
        400: Missing fields, mismatched passwords, bad email/username, weak password
        403: If signup is disabled in settings
        409: Email or username already registered
    """
    runtime = get_runtime()
    user = await runtime.auth.register(
        body.email,
        body.username,
        body.password,
        body.confirm_password,
        ip_addr=_client_ip(request),
        device=_client_device(request),
    )
    return Envelope(status="ok", data={"message": "User registered successfully", "user": _user_response(user)})


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password (and an MFA code when enrolled).

    On success the access token is returned in the body and the rotation
    token is set as an HttpOnly cookie scoped to the auth routes.

    Raises:
        401: Invalid credentials or MFA code
        403: MFA required, password expired, or suspicious login under the block policy
        423: Account locked
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email,
        body.password,
        ip_addr=_client_ip(request),
        device=_client_device(request),
        mfa_code=body.mfa_code,
    )
    _apply_refresh_cookie(response, result.credentials.refresh_token)
    return Envelope(
        status="ok",
        data=LoginResponse(
            access_token=result.credentials.access_token,
            expires_at=result.credentials.access_expires_at,
            session_id=result.credentials.session.id,
            user=_user_response(result.user),
            suspicious=bool(result.reasons),
            reasons=result.reasons,
            mfa_verified=result.mfa_verified,
        ),
    )


@router.post("/mfa/setup", response_model=Envelope, tags=["mfa"])
async def mfa_setup(principal: AuthContext = Depends(get_auth_context)):
    """Start TOTP enrollment; the secret stays pending until verified."""
    runtime = get_runtime()
    enrollment = runtime.auth.setup_mfa(principal.user_id)
    return Envelope(
        status="ok",
        data=MFASetupResponse(
            secret=enrollment.secret,
            otpauth_uri=enrollment.otpauth_uri,
            qr_code=enrollment.qr_code_data_url,
            backup_codes=enrollment.backup_codes,
        ),
    )


@router.post("/mfa/verify", response_model=Envelope, tags=["mfa"])
async def mfa_verify(body: MFAVerifyRequest, principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    user = runtime.auth.confirm_mfa(principal.user_id, body.code)
    sent = await asyncio.to_thread(runtime.email.send_mfa_enabled, user.email)
    if not sent:
        logger.warning("mfa_enabled_email_not_sent", user_id=user.id)
    return Envelope(status="ok", data={"message": "MFA enabled successfully", "user": _user_response(user)})


@router.post("/token/refresh", response_model=Envelope, tags=["auth"])
async def refresh_access_token(refresh_token: Optional[str] = Cookie(None)):
    """Exchange the rotation cookie for a new access token.

    Raises:
        401: No rotation token presented
        403: Token invalid, session expired, or session idle too long
    """
    runtime = get_runtime()
    rotated = runtime.auth.refresh(refresh_token)
    return Envelope(
        status="ok",
        data=TokenRefreshResponse(access_token=rotated.access_token, expires_at=rotated.access_expires_at),
    )


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response, refresh_token: Optional[str] = Cookie(None)):
    runtime = get_runtime()
    runtime.auth.logout(refresh_token)
    _clear_refresh_cookie(response)
    return Envelope(status="ok", data={"message": "Logged out successfully"})


@router.post("/password/change", response_model=Envelope, tags=["auth"])
async def change_password(body: PasswordChangeRequest, response: Response):
    """Change a password using the current one. Works for expired passwords.

    Every session of the account is revoked afterwards.
    """
    runtime = get_runtime()
    await runtime.auth.change_password(body.email, body.current_password, body.new_password)
    _clear_refresh_cookie(response)
    return Envelope(status="ok", data={"message": "Password changed successfully"})


@router.post("/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetRequest):
    runtime = get_runtime()
    await runtime.auth.reset_password(body.token, body.new_password)
    return Envelope(status="ok", data={"message": "Password reset successfully"})


@router.post("/security/report-fraud", response_model=Envelope, tags=["security"])
async def report_fraud(body: SecurityActionRequest):
    """Handle the "this wasn't me" link from a security alert."""
    runtime = get_runtime()
    runtime.auth.report_fraud(body.token)
    return Envelope(
        status="ok",
        data={
            "message": "Account locked. Check your email for password reset instructions.",
            "locked": True,
        },
    )


@router.post("/security/trust-device", response_model=Envelope, tags=["security"])
async def trust_device(body: SecurityActionRequest):
    runtime = get_runtime()
    user = runtime.auth.confirm_device(body.token)
    return Envelope(
        status="ok",
        data={"message": "Device trusted", "trusted_devices": len(user.trusted_devices)},
    )


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    user = runtime.auth.get_user(principal.user_id)
    return Envelope(status="ok", data=_user_response(user))


@router.get("/security/login-history", response_model=Envelope, tags=["security"])
async def login_history(
    limit: int = Query(20, ge=1, le=100),
    principal: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime()
    attempts = runtime.auth.login_history(principal.user_id, limit=limit)
    return Envelope(
        status="ok",
        data={"attempts": [LoginAttemptResponse(**attempt.to_public()) for attempt in attempts]},
    )
