from __future__ import annotations

import asyncio
import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol

from shopauth.config import Settings
from shopauth.logging import get_logger
from shopauth.service.authenticator import CredentialAuthenticator, LoginResult
from shopauth.service.errors import (
    AccountDisabledError,
    ConflictError,
    InvalidRefreshTokenError,
    NotFoundError,
    ServiceUnavailableError,
    ValidationError,
    WrongTokenTypeError,
)
from shopauth.service.lockout import LockoutGuard, LockoutPolicy
from shopauth.service.passwords import PasswordHasher
from shopauth.service.revocation import RevocationService
from shopauth.service.sessions import SessionOverlay
from shopauth.service.tokens import REFRESH, IssuedTokens, TokenCodec, TokenIssuer
from shopauth.service.verifier import CACHE_ERRORS, AuthContext, TokenVerifier
from shopauth.storage.errors import ConstraintViolation
from shopauth.storage.models import Account, RefreshTokenRecord, Session, utcnow

logger = get_logger(__name__)

VERIFY_KIND = "verify"
RESET_KIND = "reset"


class AccountRepository(Protocol):
    async def create_account(
        self,
        email: str,
        password_hash: str,
        *,
        role: str = "user",
        name: Optional[str] = None,
        is_email_verified: bool = False,
        is_active: bool = True,
    ) -> Account: ...

    async def get_account(self, account_id: str) -> Optional[Account]: ...

    async def get_account_by_email(self, email: str) -> Optional[Account]: ...

    async def save_password(self, account_id: str, password_hash: str) -> bool: ...

    async def mark_email_verified(self, account_id: str) -> Optional[Account]: ...

    async def set_role(self, account_id: str, role: str) -> Optional[Account]: ...

    async def increment_failed_attempts(
        self,
        account_id: str,
        *,
        now: datetime,
        threshold: int,
        lock_duration: timedelta,
    ) -> Optional[Account]: ...

    async def clear_failed_attempts(self, account_id: str) -> None: ...

    async def append_refresh_token(
        self, account_id: str, record: RefreshTokenRecord, *, now: datetime
    ) -> bool: ...

    async def set_refresh_token_inactive(self, account_id: str, token_value: str) -> bool: ...

    async def remove_refresh_token(self, account_id: str, token_value: str) -> bool: ...

    async def deactivate_refresh_tokens(self, account_id: str) -> int: ...


@dataclass
class LoginOutcome:
    account: Account
    tokens: IssuedTokens
    session: Optional[Session] = None
    session_cookie: Optional[str] = None


@dataclass
class RefreshOutcome:
    access_token: str
    access_expires_at: datetime
    refresh_token: Optional[str] = None
    refresh_expires_at: Optional[datetime] = None


class AuthService:
    """Composition root for login, token lifecycle and account recovery.

    HTTP handlers take this one capability instead of reaching for the
    individual collaborators.
    """

    def __init__(
        self,
        repository: AccountRepository,
        cache: Any,
        settings: Settings,
        *,
        hasher: Optional[PasswordHasher] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.cache = cache
        self.settings = settings
        self._clock = clock
        self.hasher = hasher or PasswordHasher()
        self.access_codec = TokenCodec(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            leeway_seconds=settings.jwt_leeway_seconds,
            clock=clock,
        )
        self.refresh_codec = TokenCodec(
            settings.jwt_refresh_secret,
            issuer=settings.jwt_issuer,
            leeway_seconds=settings.jwt_leeway_seconds,
            clock=clock,
        )
        self.issuer = TokenIssuer(
            self.access_codec,
            self.refresh_codec,
            repository,
            access_ttl=timedelta(seconds=settings.access_token_ttl_seconds),
            refresh_ttl=timedelta(seconds=settings.refresh_token_ttl_seconds),
            clock=clock,
        )
        self.lockout = LockoutGuard(
            repository,
            LockoutPolicy(
                threshold=settings.lockout_threshold,
                duration=timedelta(minutes=settings.lockout_duration_minutes),
            ),
            clock=clock,
        )
        self.authenticator = CredentialAuthenticator(
            repository, self.hasher, self.lockout, self.issuer
        )
        self.verifier = TokenVerifier(
            self.access_codec,
            repository,
            cache,
            cache_timeout=settings.cache_operation_timeout_seconds,
            fail_open=settings.revocation_fail_open,
            clock=clock,
        )
        self.revocation = RevocationService(
            cache,
            repository,
            self.access_codec,
            access_ttl_seconds=settings.access_token_ttl_seconds,
            cache_timeout=settings.cache_operation_timeout_seconds,
            clock=clock,
        )
        self.sessions = SessionOverlay(
            cache,
            settings.session_secret,
            ttl_hours=settings.session_ttl_hours,
            cache_timeout=settings.cache_operation_timeout_seconds,
            clock=clock,
        )

    def _now(self) -> datetime:
        return self._clock()

    # -- login and token lifecycle -------------------------------------------

    async def authenticate(
        self, email: str, password: str, *, device_fingerprint: Optional[str] = None
    ) -> LoginResult:
        return await self.authenticator.authenticate(
            email, password, device_fingerprint=device_fingerprint
        )

    async def login(
        self, email: str, password: str, *, device_fingerprint: Optional[str] = None
    ) -> LoginOutcome:
        result = await self.authenticate(email, password, device_fingerprint=device_fingerprint)
        outcome = LoginOutcome(account=result.account, tokens=result.tokens)
        try:
            outcome.session, outcome.session_cookie = await self.sessions.create(
                result.account.id, device_fingerprint
            )
        except ServiceUnavailableError:
            # Bearer tokens are already valid; the cookie session is optional
            logger.warning("login_session_skipped", account_id=result.account.id)
        return outcome

    async def issue(
        self, account: Account, *, device_fingerprint: Optional[str] = None
    ) -> IssuedTokens:
        return await self.issuer.issue(account, device_fingerprint=device_fingerprint)

    async def refresh(self, refresh_token: str) -> RefreshOutcome:
        claims = self.refresh_codec.decode(refresh_token)
        if claims.token_type != REFRESH:
            raise WrongTokenTypeError()
        account = await self.repository.get_account(claims.account_id)
        if account is None:
            raise InvalidRefreshTokenError()
        record = account.find_refresh_token(refresh_token)
        if record is None or not record.usable(self._now()):
            logger.info("refresh_rejected", account_id=account.id, known=record is not None)
            raise InvalidRefreshTokenError()
        if not account.is_active:
            raise AccountDisabledError()

        if self.settings.rotate_refresh_tokens:
            # Removal succeeds for exactly one concurrent caller
            if not await self.repository.remove_refresh_token(account.id, refresh_token):
                raise InvalidRefreshTokenError()
            tokens = await self.issuer.issue(
                account, device_fingerprint=record.device_fingerprint
            )
            logger.info("refresh_token_rotated", account_id=account.id)
            return RefreshOutcome(
                access_token=tokens.access_token,
                access_expires_at=tokens.access_expires_at,
                refresh_token=tokens.refresh_token,
                refresh_expires_at=tokens.refresh_expires_at,
            )

        access_token, expires_at = self.issuer.mint_access(account)
        logger.info("access_token_refreshed", account_id=account.id)
        return RefreshOutcome(access_token=access_token, access_expires_at=expires_at)

    async def verify(self, token: Optional[str]) -> AuthContext:
        return await self.verifier.verify(token)

    async def verify_optional(self, token: Optional[str]) -> Optional[AuthContext]:
        return await self.verifier.verify_optional(token)

    # -- revocation ----------------------------------------------------------

    async def logout(
        self,
        ctx: AuthContext,
        *,
        refresh_token: Optional[str] = None,
        session_cookie: Optional[str] = None,
    ) -> datetime:
        if ctx.jti:
            await self.revocation.blacklist_token(
                ctx.jti, self.revocation.remaining_ttl(ctx.expires_at)
            )
        if refresh_token:
            await self.revocation.revoke_refresh_token(
                ctx.account_id, refresh_token, remove=True
            )
        if session_cookie:
            await self.sessions.destroy(session_cookie, account_id=ctx.account_id)
        logout_time = self._now()
        logger.info("logout_succeeded", account_id=ctx.account_id)
        return logout_time

    async def logout_all(self, ctx: AuthContext) -> Dict[str, int]:
        await self.revocation.blacklist_all_user_tokens(ctx.account_id)
        if ctx.jti:
            # Covers a token minted in the same millisecond as the cut-off
            await self.revocation.blacklist_token(
                ctx.jti, self.revocation.remaining_ttl(ctx.expires_at)
            )
        revoked = await self.revocation.revoke_all_refresh_tokens(ctx.account_id)
        destroyed = await self.sessions.destroy_all(ctx.account_id)
        logger.info(
            "logout_all_succeeded",
            account_id=ctx.account_id,
            refresh_tokens_revoked=revoked,
            sessions_destroyed=destroyed,
        )
        return {"refresh_tokens_revoked": revoked, "sessions_destroyed": destroyed}

    async def logout_device(
        self,
        ctx: AuthContext,
        refresh_token: Optional[str],
        device_fingerprint: Optional[str] = None,
        *,
        session_cookie: Optional[str] = None,
    ) -> Dict[str, bool]:
        if not refresh_token:
            raise ValidationError(
                "refresh_token is required", detail={"field": "refresh_token"}
            )
        revoked = await self.revocation.revoke_refresh_token(
            ctx.account_id, refresh_token, remove=True
        )
        session_destroyed = False
        session = await self.sessions.resolve(session_cookie)
        if (
            session is not None
            and session.account_id == ctx.account_id
            and device_fingerprint
            and session.device_fingerprint == device_fingerprint
        ):
            session_destroyed = await self.sessions.destroy(
                session_cookie, account_id=ctx.account_id
            )
        logger.info(
            "logout_device_succeeded",
            account_id=ctx.account_id,
            device_fingerprint=device_fingerprint,
            session_destroyed=session_destroyed,
        )
        return {"refresh_token_revoked": revoked, "session_destroyed": session_destroyed}

    async def active_tokens(self, account_id: str) -> List[RefreshTokenRecord]:
        account = await self.repository.get_account(account_id)
        if account is None:
            raise NotFoundError("account not found")
        return account.active_refresh_tokens(self._now())

    async def session_status(self, ctx: Optional[AuthContext]) -> Dict[str, Any]:
        if ctx is None:
            return {"is_logged_out": True, "active_tokens_count": 0, "account": None}
        account = await self.repository.get_account(ctx.account_id)
        if account is None:
            return {"is_logged_out": True, "active_tokens_count": 0, "account": None}
        count = len(account.active_refresh_tokens(self._now()))
        return {
            "is_logged_out": count == 0,
            "active_tokens_count": count,
            "account": account,
        }

    async def revoke_token(self, ctx: AuthContext, refresh_token: str) -> bool:
        return await self.revocation.revoke_refresh_token(ctx.account_id, refresh_token)

    async def revoke_all(self, ctx: AuthContext) -> int:
        return await self.revocation.revoke_all_refresh_tokens(ctx.account_id)

    # -- account lifecycle ---------------------------------------------------

    async def _store_one_time_token(self, kind: str, account_id: str, ttl: timedelta) -> str:
        token = secrets.token_urlsafe(32)
        try:
            await asyncio.wait_for(
                self.cache.set_one_time_token(kind, token, account_id, int(ttl.total_seconds())),
                timeout=self.settings.cache_operation_timeout_seconds,
            )
        except CACHE_ERRORS as exc:
            logger.error("one_time_token_store_failed", kind=kind, error=str(exc) or type(exc).__name__)
            raise ServiceUnavailableError("token store unavailable") from exc
        return token

    async def _consume_one_time_token(self, kind: str, token: str) -> Optional[str]:
        if not token:
            return None
        try:
            return await asyncio.wait_for(
                self.cache.pop_one_time_token(kind, token),
                timeout=self.settings.cache_operation_timeout_seconds,
            )
        except CACHE_ERRORS as exc:
            logger.error("one_time_token_read_failed", kind=kind, error=str(exc) or type(exc).__name__)
            raise ServiceUnavailableError("token store unavailable") from exc

    async def register(
        self, email: str, password: str, *, name: Optional[str] = None
    ) -> tuple[Account, Optional[str]]:
        password_hash = self.hasher.hash(password)
        try:
            account = await self.repository.create_account(email, password_hash, name=name)
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail) from exc
        try:
            token = await self._store_one_time_token(
                VERIFY_KIND,
                account.id,
                timedelta(hours=self.settings.email_verification_ttl_hours),
            )
        except ServiceUnavailableError:
            # Account exists; a resend can issue a fresh token later
            token = None
        logger.info("account_registered", account_id=account.id)
        return account, token

    async def verify_email(self, token: str) -> Account:
        account_id = await self._consume_one_time_token(VERIFY_KIND, token)
        if not account_id:
            logger.warning("email_verification_invalid_token", token_prefix=token[:8])
            raise ValidationError("invalid or expired verification token")
        account = await self.repository.mark_email_verified(account_id)
        if account is None:
            logger.warning("email_verification_missing_account", account_id=account_id)
            raise ValidationError("invalid or expired verification token")
        logger.info("email_verified", account_id=account.id)
        return account

    async def resend_verification(self, email: str) -> Optional[str]:
        account = await self.repository.get_account_by_email(email)
        if account is None or account.is_email_verified:
            return None
        token = await self._store_one_time_token(
            VERIFY_KIND,
            account.id,
            timedelta(hours=self.settings.email_verification_ttl_hours),
        )
        logger.info("email_verification_requested", account_id=account.id)
        return token

    async def request_password_reset(self, email: str) -> Optional[str]:
        account = await self.repository.get_account_by_email(email)
        if account is None:
            logger.info(
                "password_reset_unknown_email",
                email_hash=hashlib.sha256(email.strip().lower().encode()).hexdigest(),
            )
            return None
        token = await self._store_one_time_token(
            RESET_KIND,
            account.id,
            timedelta(minutes=self.settings.password_reset_ttl_minutes),
        )
        logger.info("password_reset_requested", account_id=account.id)
        return token

    async def reset_password(self, token: str, new_password: str) -> Account:
        account_id = await self._consume_one_time_token(RESET_KIND, token)
        if not account_id:
            logger.warning("password_reset_invalid_token", token_prefix=token[:8])
            raise ValidationError("invalid or expired reset token")
        if not await self.repository.save_password(account_id, self.hasher.hash(new_password)):
            raise ValidationError("invalid or expired reset token")
        await self.repository.clear_failed_attempts(account_id)
        await self.revocation.revoke_all_refresh_tokens(account_id)
        await self.revocation.blacklist_all_user_tokens(account_id)
        try:
            await self.sessions.destroy_all(account_id)
        except ServiceUnavailableError:
            logger.warning("password_reset_sessions_kept", account_id=account_id)
        account = await self.repository.get_account(account_id)
        if account is None:
            raise NotFoundError("account not found")
        logger.info("password_reset_completed", account_id=account_id)
        return account

    async def unlock_account(self, account_id: str) -> Account:
        account = await self.repository.get_account(account_id)
        if account is None:
            raise NotFoundError("account not found")
        await self.lockout.record_success(account)
        logger.info("account_unlocked", account_id=account_id)
        account.failed_attempts = 0
        account.lock_until = None
        return account
