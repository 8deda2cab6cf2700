from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from shopauth.logging import get_logger
from shopauth.service.errors import (
    AccountDisabledError,
    EmailNotVerifiedError,
    InvalidCredentialsError,
    ServerError,
)
from shopauth.service.lockout import LockoutGuard
from shopauth.service.passwords import PasswordHasher
from shopauth.service.tokens import IssuedTokens, TokenIssuer
from shopauth.storage.errors import StoreUnavailable
from shopauth.storage.models import Account

if TYPE_CHECKING:
    from shopauth.service.auth import AccountRepository

logger = get_logger(__name__)


def device_fingerprint(
    user_agent: Optional[str],
    accept_language: Optional[str],
    ip_addr: Optional[str],
) -> str:
    """Stable per-device identifier derived from request metadata."""
    raw = "|".join(part or "" for part in (user_agent, accept_language, ip_addr))
    return hashlib.sha256(raw.encode()).hexdigest()


def _email_hash(email: str) -> str:
    return hashlib.sha256(email.strip().lower().encode()).hexdigest()


@dataclass
class LoginResult:
    account: Account
    tokens: IssuedTokens


class CredentialAuthenticator:
    """Email/password login with lockout and verification preconditions."""

    def __init__(
        self,
        repository: "AccountRepository",
        hasher: PasswordHasher,
        lockout: LockoutGuard,
        issuer: TokenIssuer,
    ) -> None:
        self.repository = repository
        self.hasher = hasher
        self.lockout = lockout
        self.issuer = issuer
        self._dummy_hash: Optional[str] = None

    def _burn_hash(self, password: str) -> None:
        # Unknown emails still pay for one hash verification
        if self._dummy_hash is None:
            self._dummy_hash = self.hasher.hash(secrets.token_urlsafe(16))
        self.hasher.verify(self._dummy_hash, password)

    async def authenticate(
        self,
        email: str,
        password: str,
        *,
        device_fingerprint: Optional[str] = None,
    ) -> LoginResult:
        """Verify credentials and issue a token pair.

        Raises ``InvalidCredentialsError``, ``EmailNotVerifiedError``,
        ``AccountLockedError`` or ``AccountDisabledError``. Store outages are
        reported as a generic ``ServerError`` so no partial login leaks out.
        """
        try:
            return await self._authenticate(
                email, password, device_fingerprint=device_fingerprint
            )
        except StoreUnavailable as exc:
            logger.error("login_store_unavailable", error=str(exc))
            raise ServerError("login is temporarily unavailable") from exc

    async def _authenticate(
        self,
        email: str,
        password: str,
        *,
        device_fingerprint: Optional[str],
    ) -> LoginResult:
        account = await self.repository.get_account_by_email(email)
        if account is None:
            self._burn_hash(password)
            logger.info("login_failed", reason="unknown_email", email_hash=_email_hash(email))
            raise InvalidCredentialsError()

        if not account.is_email_verified:
            logger.info("login_failed", reason="email_not_verified", account_id=account.id)
            raise EmailNotVerifiedError()

        self.lockout.ensure_unlocked(account)

        if not self.hasher.verify(account.password_hash, password):
            await self.lockout.record_failure(account)
            logger.info("login_failed", reason="bad_password", account_id=account.id)
            raise InvalidCredentialsError()

        if not account.is_active:
            logger.info("login_failed", reason="account_disabled", account_id=account.id)
            raise AccountDisabledError()

        await self.lockout.record_success(account)
        account.failed_attempts = 0
        account.lock_until = None

        if self.hasher.needs_rehash(account.password_hash):
            new_hash = self.hasher.hash(password)
            if await self.repository.save_password(account.id, new_hash):
                account.password_hash = new_hash

        tokens = await self.issuer.issue(account, device_fingerprint=device_fingerprint)
        logger.info("login_succeeded", account_id=account.id, role=account.role)
        return LoginResult(account=account, tokens=tokens)
