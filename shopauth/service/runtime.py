from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Callable, Optional, Tuple
from urllib.parse import urlparse, urlunparse

from shopauth.config import Settings, get_settings
from shopauth.logging import get_logger
from shopauth.service.auth import AuthService
from shopauth.service.passwords import PasswordHasher
from shopauth.service.verifier import CACHE_ERRORS
from shopauth.storage.memory import MemoryStore
from shopauth.storage.memory_cache import MemoryCache
from shopauth.storage.models import utcnow
from shopauth.storage.postgres import PostgresStore
from shopauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the store, cache and services for one process.

    The application lifespan calls :meth:`open` and :meth:`close`; nothing
    else connects or disconnects the backing services.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Any = None,
        cache: Any = None,
        clock: Callable[[], datetime] = utcnow,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock
        self._hasher = hasher
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        if store is not None:
            self.store = store
        elif self.settings.use_memory_store:
            self.store = MemoryStore(fs_root=self.settings.shared_fs_root)
        else:
            self.store = PostgresStore(self.settings.database_url)

        self._cache_injected = cache is not None
        if cache is not None:
            self.cache = cache
        elif self.settings.redis_url:
            self.cache = RedisCache(
                self.settings.redis_url,
                socket_timeout=self.settings.cache_socket_timeout_seconds,
            )
        else:
            self.cache = self._fallback_cache(None)

        self.auth = self._build_auth()

    def _build_auth(self) -> AuthService:
        return AuthService(
            self.store,
            self.cache,
            self.settings,
            hasher=self._hasher,
            clock=self.clock,
        )

    def _fallback_cache(self, redis_error: Optional[BaseException]) -> MemoryCache:
        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for token revocation, sessions and rate limits; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error
        mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {mode}; revocation, sessions and rate limits "
                "are process-local only."
            ),
            mode=mode,
        )
        return MemoryCache(clock=self.clock)

    async def open(self) -> None:
        try:
            await self.store.open()
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=type(self.store).__name__,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        if isinstance(self.cache, RedisCache) and not self._cache_injected:
            try:
                await self.cache.verify_connection()
            except CACHE_ERRORS as exc:
                await self.cache.close()
                self.cache = self._fallback_cache(exc)
                self.auth = self._build_auth()
        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            cache_type=type(self.cache).__name__,
            revocation_fail_open=self.settings.revocation_fail_open,
            rotate_refresh_tokens=self.settings.rotate_refresh_tokens,
        )

    async def close(self) -> None:
        try:
            await self.cache.close()
        finally:
            await self.store.close()
        logger.info("runtime_closed")


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    cost: int = 1,
) -> Tuple[bool, int, int]:
    """Token-bucket rate limit; returns ``(allowed, remaining, reset_seconds)``.

    Cache failures allow the request so an outage never blocks logins.
    """
    if limit <= 0:
        return True, limit, 0
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    try:
        return await asyncio.wait_for(
            runtime.cache.check_rate_limit(key, limit, window_seconds, cost=cost),
            timeout=runtime.settings.cache_operation_timeout_seconds,
        )
    except CACHE_ERRORS as exc:
        logger.warning("rate_limit_check_failed", key=key, error=str(exc) or type(exc).__name__)
        return True, limit, 0
