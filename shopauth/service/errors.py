from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code`` that
    clients can branch on. Authentication and authorization failures are raised
    as these typed errors and propagate unchanged to the HTTP boundary; they are
    never retried, since a retry would re-attempt a credential check.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Base for every 401 outcome."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password. The message never says which."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class UnauthenticatedError(AuthenticationError):
    """No usable identity was presented."""

    def __init__(self, message: str = "authentication required", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTokenError(AuthenticationError):
    error_code = "invalid_token"

    def __init__(self, message: str = "invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenExpiredError(AuthenticationError):
    error_code = "token_expired"

    def __init__(self, message: str = "token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class WrongTokenTypeError(AuthenticationError):
    error_code = "wrong_token_type"

    def __init__(self, message: str = "wrong token type", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenRevokedError(AuthenticationError):
    error_code = "token_revoked"

    def __init__(self, message: str = "token has been revoked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidRefreshTokenError(AuthenticationError):
    error_code = "invalid_refresh_token"

    def __init__(self, message: str = "invalid refresh token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class InsufficientPermissionsError(ForbiddenError):
    def __init__(self, message: str = "insufficient permissions", **kwargs) -> None:
        super().__init__(message, **kwargs)


class EmailNotVerifiedError(ForbiddenError):
    error_code = "email_not_verified"

    def __init__(self, message: str = "email address has not been verified", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountDisabledError(ForbiddenError):
    error_code = "account_disabled"

    def __init__(self, message: str = "account is disabled", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLockedError(ServiceError):
    """Account is inside its lockout window (423).

    Only the remaining wait is disclosed, never the failure count.
    """
    status_code = 423
    error_code = "account_locked"

    def __init__(self, retry_after_minutes: int) -> None:
        super().__init__(
            f"Account locked. Try again in {retry_after_minutes} minutes",
            detail={"retry_after_minutes": retry_after_minutes},
        )
        self.retry_after_minutes = retry_after_minutes


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, retry_after_seconds: int) -> None:
        super().__init__(
            "rate limit exceeded",
            detail={"retry_after_seconds": max(1, int(retry_after_seconds))},
        )


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ServiceUnavailableError(ServiceError):
    """A backing service could not answer in time (503)."""
    status_code = 503
    error_code = "service_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "UnauthenticatedError",
    "InvalidTokenError",
    "TokenExpiredError",
    "WrongTokenTypeError",
    "TokenRevokedError",
    "InvalidRefreshTokenError",
    "ForbiddenError",
    "InsufficientPermissionsError",
    "EmailNotVerifiedError",
    "AccountDisabledError",
    "AccountLockedError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "ServiceUnavailableError",
]
