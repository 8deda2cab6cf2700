from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Request, Response

from shopauth.api.schemas import (
    AccountResponse,
    AccountSummary,
    ActiveTokenResponse,
    ActiveTokensResponse,
    EmailRequest,
    EmailVerificationRequest,
    Envelope,
    LoginRequest,
    LoginResponse,
    LogoutAllResponse,
    LogoutDeviceRequest,
    LogoutDeviceResponse,
    LogoutRequest,
    LogoutResponse,
    MessageResponse,
    PasswordResetConfirm,
    RefreshResponse,
    RegisterRequest,
    RegisterResponse,
    RevokeResponse,
    RevokeTokenRequest,
    SessionStatusResponse,
    TokenRefreshRequest,
)
from shopauth.logging import get_logger
from shopauth.service.authenticator import device_fingerprint
from shopauth.service.errors import RateLimitedError, UnauthenticatedError
from shopauth.service.runtime import Runtime, check_rate_limit
from shopauth.service.verifier import AuthContext, TokenVerifier, extract_bearer
from shopauth.storage.models import Account

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


async def get_principal(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> AuthContext:
    token = extract_bearer(authorization)
    if not token:
        raise UnauthenticatedError()
    return await runtime.auth.verify(token)


async def get_optional_principal(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> Optional[AuthContext]:
    return await runtime.auth.verify_optional(extract_bearer(authorization))


async def get_admin_principal(
    principal: AuthContext = Depends(get_principal),
) -> AuthContext:
    return TokenVerifier.require_role(principal, "admin")


async def _enforce_rate_limit(runtime: Runtime, key: str, limit: int, window_seconds: int) -> None:
    allowed, _, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds
    )
    if not allowed:
        raise RateLimitedError(reset_seconds)


def _client_fingerprint(request: Request, supplied: Optional[str] = None) -> str:
    if supplied:
        return supplied
    return device_fingerprint(
        request.headers.get("user-agent"),
        request.headers.get("accept-language"),
        request.client.host if request.client else None,
    )


def _session_cookie(request: Request, runtime: Runtime) -> Optional[str]:
    return request.cookies.get(runtime.settings.session_cookie_name)


def _apply_session_cookie(response: Response, runtime: Runtime, cookie_value: str) -> None:
    response.set_cookie(
        runtime.settings.session_cookie_name,
        cookie_value,
        httponly=True,
        secure=runtime.settings.session_cookie_secure,
        samesite="lax",
        max_age=runtime.settings.session_ttl_hours * 3600,
        path="/",
    )


def _clear_session_cookie(response: Response, runtime: Runtime) -> None:
    response.delete_cookie(
        runtime.settings.session_cookie_name,
        path="/",
        secure=runtime.settings.session_cookie_secure,
        samesite="lax",
    )


def _summary(account: Account) -> AccountSummary:
    return AccountSummary(
        id=account.id,
        email=account.email,
        name=account.name,
        role=account.role,
        is_email_verified=account.is_email_verified,
    )


def _account_response(account: Account) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        email=account.email,
        name=account.name,
        role=account.role,
        is_email_verified=account.is_email_verified,
        is_active=account.is_active,
        failed_attempts=account.failed_attempts,
        lock_until=account.lock_until,
        created_at=account.created_at,
    )


def _echo_token(runtime: Runtime, token: Optional[str]) -> Optional[str]:
    # Email delivery is external; tests read the token from the response
    return token if runtime.settings.test_mode else None


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    """Authenticate with email and password.

    Returns an access/refresh token pair and sets the session cookie. Rate
    limited per email address.

    Raises:
        401: Unknown email or wrong password
        403: Email not verified or account disabled
        423: Account locked
        429: Rate limit exceeded for this email
    """
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    outcome = await runtime.auth.login(
        body.email,
        body.password,
        device_fingerprint=_client_fingerprint(request, body.device_fingerprint),
    )
    if outcome.session_cookie:
        _apply_session_cookie(response, runtime, outcome.session_cookie)
    tokens = outcome.tokens
    return Envelope(
        status="ok",
        data=LoginResponse(
            account=_summary(outcome.account),
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_type=tokens.token_type,
            expires_at=tokens.access_expires_at,
            refresh_expires_at=tokens.refresh_expires_at,
        ),
    )


@router.post("/auth/token/refresh", response_model=Envelope, tags=["auth"])
async def refresh_token(body: TokenRefreshRequest, runtime: Runtime = Depends(get_runtime)):
    outcome = await runtime.auth.refresh(body.refresh_token)
    return Envelope(
        status="ok",
        data=RefreshResponse(
            access_token=outcome.access_token,
            expires_at=outcome.access_expires_at,
            refresh_token=outcome.refresh_token,
            refresh_expires_at=outcome.refresh_expires_at,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    body: Optional[LogoutRequest] = None,
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    """Log out this client.

    Blacklists the presented access token, removes the refresh token from the
    body (if any) and destroys the cookie session before responding.
    """
    logout_time = await runtime.auth.logout(
        principal,
        refresh_token=body.refresh_token if body else None,
        session_cookie=_session_cookie(request, runtime),
    )
    _clear_session_cookie(response, runtime)
    return Envelope(
        status="ok",
        data=LogoutResponse(logout_time=logout_time, redirect_to="/login"),
    )


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(
    response: Response,
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    counts = await runtime.auth.logout_all(principal)
    _clear_session_cookie(response, runtime)
    return Envelope(
        status="ok",
        data=LogoutAllResponse(
            logout_time=runtime.clock(),
            redirect_to="/login",
            refresh_tokens_revoked=counts["refresh_tokens_revoked"],
            sessions_destroyed=counts["sessions_destroyed"],
        ),
    )


@router.post("/auth/logout-device", response_model=Envelope, tags=["auth"])
async def logout_device(
    body: LogoutDeviceRequest,
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    result = await runtime.auth.logout_device(
        principal,
        body.refresh_token,
        body.device_fingerprint,
        session_cookie=_session_cookie(request, runtime),
    )
    if result["session_destroyed"]:
        _clear_session_cookie(response, runtime)
    return Envelope(
        status="ok",
        data=LogoutDeviceResponse(
            logout_time=runtime.clock(),
            device_fingerprint=body.device_fingerprint,
            refresh_token_revoked=result["refresh_token_revoked"],
            session_destroyed=result["session_destroyed"],
        ),
    )


@router.get("/auth/sessions/status", response_model=Envelope, tags=["auth"])
async def session_status(
    principal: Optional[AuthContext] = Depends(get_optional_principal),
    runtime: Runtime = Depends(get_runtime),
):
    status = await runtime.auth.session_status(principal)
    account = status["account"]
    return Envelope(
        status="ok",
        data=SessionStatusResponse(
            is_logged_out=status["is_logged_out"],
            active_tokens_count=status["active_tokens_count"],
            account=_summary(account) if account else None,
        ),
    )


@router.get("/auth/tokens/active", response_model=Envelope, tags=["auth"])
async def active_tokens(
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    records = await runtime.auth.active_tokens(principal.account_id)
    return Envelope(
        status="ok",
        data=ActiveTokensResponse(
            items=[
                ActiveTokenResponse(
                    device_fingerprint=record.device_fingerprint,
                    created_at=record.created_at,
                    expires_at=record.expires_at,
                )
                for record in records
            ]
        ),
    )


@router.post("/auth/token/revoke", response_model=Envelope, tags=["auth"])
async def revoke_token(
    body: RevokeTokenRequest,
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    revoked = await runtime.auth.revoke_token(principal, body.refresh_token)
    return Envelope(status="ok", data=RevokeResponse(revoked=1 if revoked else 0))


@router.post("/auth/token/revoke-all", response_model=Envelope, tags=["auth"])
async def revoke_all_tokens(
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    revoked = await runtime.auth.revoke_all(principal)
    return Envelope(status="ok", data=RevokeResponse(revoked=revoked))


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, runtime: Runtime = Depends(get_runtime)):
    """Create an unverified account and start email verification.

    Raises:
        409: Email already registered
    """
    account, token = await runtime.auth.register(body.email, body.password, name=body.name)
    return Envelope(
        status="ok",
        data=RegisterResponse(
            account=_summary(account),
            verification_token=_echo_token(runtime, token),
        ),
    )


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerificationRequest, runtime: Runtime = Depends(get_runtime)):
    account = await runtime.auth.verify_email(body.token)
    return Envelope(status="ok", data=_summary(account))


@router.post("/auth/verify-email/resend", response_model=Envelope, tags=["auth"])
async def resend_verification(body: EmailRequest, runtime: Runtime = Depends(get_runtime)):
    await _enforce_rate_limit(
        runtime,
        f"verify:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    token = await runtime.auth.resend_verification(body.email)
    return Envelope(
        status="ok",
        data=MessageResponse(
            message="If the account exists and is unverified, a verification email has been sent",
            token=_echo_token(runtime, token),
        ),
    )


@router.post("/auth/password/forgot", response_model=Envelope, tags=["auth"])
async def forgot_password(body: EmailRequest, runtime: Runtime = Depends(get_runtime)):
    await _enforce_rate_limit(
        runtime,
        f"reset:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    token = await runtime.auth.request_password_reset(body.email)
    return Envelope(
        status="ok",
        data=MessageResponse(
            message="If the account exists, a password reset email has been sent",
            token=_echo_token(runtime, token),
        ),
    )


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm, runtime: Runtime = Depends(get_runtime)):
    await runtime.auth.reset_password(body.token, body.new_password)
    return Envelope(status="ok", data=MessageResponse(message="password updated"))


@router.get("/me", response_model=Envelope, tags=["accounts"])
async def get_me(principal: AuthContext = Depends(get_principal)):
    return Envelope(status="ok", data=_account_response(principal.account))


@router.post("/admin/accounts/{account_id}/unlock", response_model=Envelope, tags=["admin"])
async def unlock_account(
    account_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_principal),
    runtime: Runtime = Depends(get_runtime),
):
    account = await runtime.auth.unlock_account(account_id)
    logger.info("admin_unlocked_account", admin_id=principal.account_id, account_id=account_id)
    return Envelope(status="ok", data=_account_response(account))
