from __future__ import annotations

import threading
from datetime import datetime
from typing import Callable, Dict, Optional, Set, Tuple

from shopauth.storage.models import Session, utcnow


class MemoryCache:
    """In-process stand-in for :class:`RedisCache`.

    Used when running under TEST_MODE or ALLOW_REDIS_FALLBACK_DEV. Entries
    carry an absolute expiry measured on the injected clock and are dropped
    lazily on read. State is not shared between processes.
    """

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._values: Dict[str, Tuple[object, float]] = {}
        self._user_sessions: Dict[str, Set[str]] = {}
        self._rate_limits: Dict[str, Tuple[float, float]] = {}

    def _now(self) -> float:
        return self._clock().timestamp()

    def _get(self, key: str) -> Optional[object]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._now():
            self._values.pop(key, None)
            return None
        return value

    def _set(self, key: str, value: object, ttl_seconds: float) -> None:
        self._values[key] = (value, self._now() + ttl_seconds)

    async def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def blacklist_token(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            with self._lock:
                self._set(f"blacklist:{jti}", "revoked", ttl_seconds)

    async def is_token_blacklisted(self, jti: str) -> bool:
        with self._lock:
            return self._get(f"blacklist:{jti}") is not None

    async def blacklist_user_tokens(
        self, account_id: str, revoked_at: float, ttl_seconds: int
    ) -> None:
        key = f"user_blacklist:{account_id}"
        with self._lock:
            current = self._get(key)
            cutoff = max(revoked_at, current) if current is not None else revoked_at
            self._set(key, cutoff, max(1, ttl_seconds))

    async def get_user_tokens_revoked_at(self, account_id: str) -> Optional[float]:
        with self._lock:
            value = self._get(f"user_blacklist:{account_id}")
            return float(value) if value is not None else None

    async def save_session(self, session: Session, ttl_seconds: int) -> None:
        with self._lock:
            self._set(f"auth:session:{session.id}", session.to_dict(), max(1, ttl_seconds))
            index = self._user_sessions.setdefault(session.account_id, set())
            index.add(session.id)
            # Drop ids whose sessions already expired
            index.difference_update(
                [sid for sid in index if self._get(f"auth:session:{sid}") is None]
            )

    async def get_session(self, session_id: str) -> Optional[Session]:
        with self._lock:
            data = self._get(f"auth:session:{session_id}")
        return Session.from_dict(data) if data else None

    async def delete_session(self, session_id: str, account_id: Optional[str] = None) -> bool:
        with self._lock:
            existed = self._get(f"auth:session:{session_id}") is not None
            self._values.pop(f"auth:session:{session_id}", None)
            if account_id:
                self._user_sessions.get(account_id, set()).discard(session_id)
            return existed

    async def delete_user_sessions(self, account_id: str) -> int:
        with self._lock:
            removed = 0
            for session_id in self._user_sessions.pop(account_id, set()):
                if self._get(f"auth:session:{session_id}") is not None:
                    removed += 1
                self._values.pop(f"auth:session:{session_id}", None)
            return removed

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        refill_rate = float(limit) / float(window_seconds)
        now = self._now()
        with self._lock:
            tokens, last_ts = self._rate_limits.get(key, (float(limit), now))
            elapsed = max(0.0, now - last_ts)
            tokens = min(float(limit), tokens + elapsed * refill_rate)
            allowed = tokens >= cost
            if allowed:
                tokens -= cost
            self._rate_limits[key] = (tokens, now)
        reset_seconds = int((cost - tokens) / refill_rate) + 1 if not allowed else 0
        return allowed, int(tokens), reset_seconds

    async def set_one_time_token(
        self, kind: str, token: str, value: str, ttl_seconds: int
    ) -> None:
        with self._lock:
            self._set(f"{kind}:{token}", value, max(1, ttl_seconds))

    async def pop_one_time_token(self, kind: str, token: str) -> Optional[str]:
        with self._lock:
            value = self._get(f"{kind}:{token}")
            self._values.pop(f"{kind}:{token}", None)
            return value
