from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from redis.exceptions import RedisError

from shopauth.logging import get_logger
from shopauth.service.errors import (
    AccountDisabledError,
    AccountLockedError,
    EmailNotVerifiedError,
    InsufficientPermissionsError,
    InvalidTokenError,
    ServiceError,
    ServiceUnavailableError,
    TokenRevokedError,
    UnauthenticatedError,
    WrongTokenTypeError,
)
from shopauth.service.lockout import remaining_lock_minutes
from shopauth.service.tokens import ACCESS, TokenCodec
from shopauth.storage.errors import StoreUnavailable
from shopauth.storage.models import Account, utcnow

if TYPE_CHECKING:
    from shopauth.service.auth import AccountRepository

logger = get_logger(__name__)

CACHE_ERRORS = (RedisError, OSError, asyncio.TimeoutError)


@dataclass
class AuthContext:
    account_id: str
    role: str
    jti: Optional[str]
    issued_at: float
    expires_at: float
    account: Optional[Account] = None


def role_allows(role: str, required: str) -> bool:
    if role == required:
        return True
    return role == "admin" and required in {"admin", "user"}


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


class TokenVerifier:
    """Request-path gate for access tokens.

    Checks run in a fixed order and the first failure wins: signature and
    expiry, token type, per-token blacklist, account-wide blacklist, then the
    current account state.
    """

    def __init__(
        self,
        codec: TokenCodec,
        repository: "AccountRepository",
        cache: Any,
        *,
        cache_timeout: float = 2.0,
        fail_open: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.codec = codec
        self.repository = repository
        self.cache = cache
        self.cache_timeout = cache_timeout
        self.fail_open = fail_open
        self._clock = clock

    async def _cache_lookup(self, check: str, call: Awaitable[Any], **fields: Any) -> Any:
        try:
            return await asyncio.wait_for(call, timeout=self.cache_timeout)
        except CACHE_ERRORS as exc:
            if self.fail_open:
                logger.warning(
                    "revocation_check_failed",
                    check=check,
                    policy="fail_open",
                    error=str(exc) or type(exc).__name__,
                    **fields,
                )
                return None
            logger.error(
                "revocation_check_failed",
                check=check,
                policy="fail_closed",
                error=str(exc) or type(exc).__name__,
                **fields,
            )
            raise ServiceUnavailableError("revocation service unavailable") from exc

    async def verify(self, token: Optional[str]) -> AuthContext:
        if not token:
            raise UnauthenticatedError()
        claims = self.codec.decode(token)
        if claims.token_type != ACCESS:
            raise WrongTokenTypeError()

        if claims.jti:
            blacklisted = await self._cache_lookup(
                "token", self.cache.is_token_blacklisted(claims.jti), jti=claims.jti
            )
            if blacklisted:
                logger.info("access_token_blacklisted", jti=claims.jti)
                raise TokenRevokedError()

        revoked_at = await self._cache_lookup(
            "account",
            self.cache.get_user_tokens_revoked_at(claims.account_id),
            account_id=claims.account_id,
        )
        if revoked_at is not None and claims.iat < revoked_at:
            logger.info("access_token_predates_revocation", account_id=claims.account_id)
            raise TokenRevokedError()

        account = await self.repository.get_account(claims.account_id)
        if account is None:
            raise UnauthenticatedError("account no longer exists")
        if not account.is_active:
            raise AccountDisabledError()
        if not account.is_email_verified:
            raise EmailNotVerifiedError()
        now = self._clock()
        if account.is_locked(now):
            raise AccountLockedError(remaining_lock_minutes(account.lock_until, now))
        if claims.role != account.role:
            # Role changes take effect on the next token
            raise InvalidTokenError("token role is stale")

        return AuthContext(
            account_id=account.id,
            role=account.role,
            jti=claims.jti,
            issued_at=claims.iat,
            expires_at=claims.exp,
            account=account,
        )

    async def verify_optional(self, token: Optional[str]) -> Optional[AuthContext]:
        if not token:
            return None
        try:
            return await self.verify(token)
        except (ServiceError, StoreUnavailable) as exc:
            logger.debug("optional_auth_skipped", reason=getattr(exc, "error_code", "store_unavailable"))
            return None

    @staticmethod
    def require_role(ctx: AuthContext, role: str) -> AuthContext:
        if not role_allows(ctx.role, role):
            raise InsufficientPermissionsError()
        return ctx
