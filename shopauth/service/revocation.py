from __future__ import annotations

import asyncio
import math
from datetime import datetime
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from shopauth.logging import get_logger
from shopauth.service.tokens import TokenCodec
from shopauth.service.verifier import CACHE_ERRORS
from shopauth.storage.models import utcnow

if TYPE_CHECKING:
    from shopauth.service.auth import AccountRepository

logger = get_logger(__name__)


class RevocationService:
    """Blacklists access tokens and revokes stored refresh tokens.

    Every operation is idempotent. Cache writes are best effort: a failure is
    logged and reported as ``False`` so that logout keeps working during a
    cache outage. Credential store failures propagate to the caller.
    """

    def __init__(
        self,
        cache: Any,
        repository: "AccountRepository",
        access_codec: TokenCodec,
        *,
        access_ttl_seconds: int,
        cache_timeout: float = 2.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.cache = cache
        self.repository = repository
        self.access_codec = access_codec
        self.access_ttl_seconds = access_ttl_seconds
        self.cache_timeout = cache_timeout
        self._clock = clock

    async def _cache_write(self, event: str, call: Awaitable[Any], **fields: Any) -> bool:
        try:
            await asyncio.wait_for(call, timeout=self.cache_timeout)
            return True
        except CACHE_ERRORS as exc:
            logger.warning(event, error=str(exc) or type(exc).__name__, **fields)
            return False

    def remaining_ttl(self, exp: float) -> int:
        """Seconds until a token stops verifying, including leeway."""
        remaining = exp + self.access_codec.leeway.total_seconds() - self._clock().timestamp()
        return max(0, math.ceil(remaining))

    async def blacklist_token(self, jti: str, ttl_seconds: int) -> bool:
        if ttl_seconds <= 0:
            # Already past expiry; the codec rejects it on its own
            return True
        stored = await self._cache_write(
            "blacklist_token_failed",
            self.cache.blacklist_token(jti, ttl_seconds),
            jti=jti,
        )
        if stored:
            logger.info("access_token_blacklisted", jti=jti, ttl_seconds=ttl_seconds)
        return stored

    async def blacklist_access_token(self, token: str) -> bool:
        """Blacklist a raw access token for the rest of its lifetime.

        Raises ``InvalidTokenError`` when the token was not issued by us.
        """
        claims = self.access_codec.decode(token, verify_exp=False)
        if not claims.jti:
            return False
        return await self.blacklist_token(claims.jti, self.remaining_ttl(claims.exp))

    async def blacklist_all_user_tokens(self, account_id: str, ttl_seconds: int | None = None) -> bool:
        # Rounded up so that no token issued before this instant survives
        revoked_at = math.ceil(self._clock().timestamp() * 1000) / 1000
        ttl = ttl_seconds or (
            self.access_ttl_seconds + math.ceil(self.access_codec.leeway.total_seconds())
        )
        stored = await self._cache_write(
            "blacklist_user_tokens_failed",
            self.cache.blacklist_user_tokens(account_id, revoked_at, ttl),
            account_id=account_id,
        )
        if stored:
            logger.info("account_tokens_blacklisted", account_id=account_id, revoked_at=revoked_at)
        return stored

    async def revoke_refresh_token(
        self, account_id: str, token_value: str, *, remove: bool = False
    ) -> bool:
        if remove:
            changed = await self.repository.remove_refresh_token(account_id, token_value)
        else:
            changed = await self.repository.set_refresh_token_inactive(account_id, token_value)
        logger.info(
            "refresh_token_revoked",
            account_id=account_id,
            removed=remove,
            matched=changed,
        )
        return changed

    async def revoke_all_refresh_tokens(self, account_id: str) -> int:
        count = await self.repository.deactivate_refresh_tokens(account_id)
        logger.info("refresh_tokens_revoked", account_id=account_id, count=count)
        return count
