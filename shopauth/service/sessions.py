from __future__ import annotations

import asyncio
import hashlib
import hmac
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional, Tuple

from shopauth.logging import get_logger
from shopauth.service.errors import ServiceUnavailableError
from shopauth.service.verifier import CACHE_ERRORS
from shopauth.storage.models import Session, utcnow

logger = get_logger(__name__)


class SessionOverlay:
    """Cookie-addressed sessions kept in the cache, alongside bearer tokens.

    The cookie value is ``<session id>.<hmac>`` so a client cannot probe for
    other session ids. Store failures surface as ``ServiceUnavailableError``.
    """

    def __init__(
        self,
        cache: Any,
        secret: str,
        *,
        ttl_hours: int = 24,
        cache_timeout: float = 2.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.cache = cache
        self._secret = secret.encode()
        self.ttl = timedelta(hours=ttl_hours)
        self.cache_timeout = cache_timeout
        self._clock = clock

    async def _call(self, action: str, call: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(call, timeout=self.cache_timeout)
        except CACHE_ERRORS as exc:
            logger.error("session_store_failed", action=action, error=str(exc) or type(exc).__name__)
            raise ServiceUnavailableError("session store unavailable") from exc

    def _sign(self, session_id: str) -> str:
        return hmac.new(self._secret, session_id.encode(), hashlib.sha256).hexdigest()

    def cookie_value(self, session: Session) -> str:
        return f"{session.id}.{self._sign(session.id)}"

    def session_id_from_cookie(self, cookie: Optional[str]) -> Optional[str]:
        if not cookie or "." not in cookie:
            return None
        session_id, signature = cookie.rsplit(".", 1)
        if not session_id or not hmac.compare_digest(self._sign(session_id), signature):
            return None
        return session_id

    def _ttl_seconds(self, session: Session, now: datetime) -> int:
        if session.expires_at is None:
            return int(self.ttl.total_seconds())
        return int((session.expires_at - now).total_seconds())

    async def create(
        self, account_id: str, device_fingerprint: Optional[str] = None
    ) -> Tuple[Session, str]:
        now = self._clock()
        session = Session.new(
            account_id,
            ttl_hours=int(self.ttl.total_seconds() // 3600),
            device_fingerprint=device_fingerprint,
            now=now,
        )
        await self._call("create", self.cache.save_session(session, self._ttl_seconds(session, now)))
        logger.info("session_created", session_id=session.id, account_id=account_id)
        return session, self.cookie_value(session)

    async def resolve(self, cookie: Optional[str]) -> Optional[Session]:
        session_id = self.session_id_from_cookie(cookie)
        if session_id is None:
            return None
        session = await self._call("get", self.cache.get_session(session_id))
        if session is None:
            return None
        now = self._clock()
        ttl = self._ttl_seconds(session, now)
        if ttl <= 0:
            return None
        session.last_activity = now
        await self._call("touch", self.cache.save_session(session, ttl))
        return session

    async def destroy(self, cookie: Optional[str], *, account_id: Optional[str] = None) -> bool:
        """Delete the session behind ``cookie``.

        With ``account_id`` given, a session owned by another account is left
        alone.
        """
        session_id = self.session_id_from_cookie(cookie)
        if session_id is None:
            return False
        session = await self._call("get", self.cache.get_session(session_id))
        if session is None:
            return False
        if account_id is not None and session.account_id != account_id:
            logger.warning("session_destroy_owner_mismatch", session_id=session_id)
            return False
        destroyed = await self._call(
            "destroy", self.cache.delete_session(session_id, session.account_id)
        )
        logger.info("session_destroyed", session_id=session_id, account_id=session.account_id)
        return bool(destroyed)

    async def destroy_all(self, account_id: str) -> int:
        count = await self._call("destroy_all", self.cache.delete_user_sessions(account_id))
        logger.info("sessions_destroyed", account_id=account_id, count=count)
        return int(count)
