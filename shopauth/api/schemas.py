from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

PASSWORD_MIN_LENGTH = 6
PASSWORD_MAX_LENGTH = 100

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "service_unavailable",
    "invalid_credentials",
    "email_not_verified",
    "account_locked",
    "account_disabled",
    "invalid_token",
    "token_expired",
    "wrong_token_type",
    "token_revoked",
    "invalid_refresh_token",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code clients can branch on")
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
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then apply NFKC."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_length(value: str) -> str:
    if len(value) < PASSWORD_MIN_LENGTH:
        raise ValueError(f"password must be at least {PASSWORD_MIN_LENGTH} characters")
    if len(value) > PASSWORD_MAX_LENGTH:
        raise ValueError(f"password must be at most {PASSWORD_MAX_LENGTH} characters")
    return value


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=PASSWORD_MAX_LENGTH)
    device_fingerprint: Optional[str] = Field(default=None, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RegisterRequest(BaseModel):
    email: str
    password: str
    name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_length(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class LogoutDeviceRequest(BaseModel):
    # Presence is enforced by the service so a missing token is a 400 with a field hint
    refresh_token: Optional[str] = Field(default=None, max_length=2048)
    device_fingerprint: Optional[str] = Field(default=None, max_length=128)


class RevokeTokenRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)


class EmailRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_request_email(cls, value: str) -> str:
        return _validate_email(value)


class EmailVerificationRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_length(value)


class AccountSummary(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    role: str = "user"
    is_email_verified: bool = False


class AccountResponse(AccountSummary):
    is_active: bool = True
    failed_attempts: int = 0
    lock_until: Optional[datetime] = None
    created_at: Optional[datetime] = None


class LoginResponse(BaseModel):
    account: AccountSummary
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_at: datetime
    refresh_expires_at: datetime


class RefreshResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_at: datetime
    refresh_token: Optional[str] = None
    refresh_expires_at: Optional[datetime] = None


class LogoutResponse(BaseModel):
    logout_time: datetime
    redirect_to: Optional[str] = None


class LogoutAllResponse(LogoutResponse):
    refresh_tokens_revoked: int = 0
    sessions_destroyed: int = 0


class LogoutDeviceResponse(BaseModel):
    logout_time: datetime
    device_fingerprint: Optional[str] = None
    refresh_token_revoked: bool = False
    session_destroyed: bool = False


class SessionStatusResponse(BaseModel):
    is_logged_out: bool
    active_tokens_count: int = 0
    account: Optional[AccountSummary] = None


class ActiveTokenResponse(BaseModel):
    device_fingerprint: Optional[str] = None
    created_at: datetime
    expires_at: datetime


class ActiveTokensResponse(BaseModel):
    items: List[ActiveTokenResponse]


class RevokeResponse(BaseModel):
    revoked: int


class RegisterResponse(BaseModel):
    account: AccountSummary
    verification_token: Optional[str] = None


class MessageResponse(BaseModel):
    message: str
    token: Optional[str] = None
