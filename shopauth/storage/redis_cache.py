from __future__ import annotations

import hashlib
import json
import time
from typing import Optional, Tuple

import redis.asyncio as aioredis

from shopauth.storage.models import Session


class RedisCache:
    """Thin Redis wrapper for the revocation blacklist, sessions and rate limits.

    Every entry is written with a TTL so nothing here needs manual cleanup.
    """

    # Lua token bucket script: atomic refill + consume
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    # Keep the latest cut-off when two account-wide revocations race
    _USER_BLACKLIST_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if (not current) or tonumber(current) < tonumber(ARGV[1]) then
  redis.call('SET', KEYS[1], ARGV[1], 'EX', ARGV[2])
  return 1
end
redis.call('EXPIRE', KEYS[1], ARGV[2])
return 0
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)
        self._user_blacklist = self.client.register_script(self._USER_BLACKLIST_SCRIPT)

    async def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        await self.client.ping()

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self.client.aclose()

    async def blacklist_token(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            await self.client.set(f"blacklist:{jti}", "revoked", ex=ttl_seconds)

    async def is_token_blacklisted(self, jti: str) -> bool:
        return bool(await self.client.exists(f"blacklist:{jti}"))

    async def blacklist_user_tokens(
        self, account_id: str, revoked_at: float, ttl_seconds: int
    ) -> None:
        await self._user_blacklist(
            keys=[f"user_blacklist:{account_id}"],
            args=[repr(revoked_at), max(1, ttl_seconds)],
        )

    async def get_user_tokens_revoked_at(self, account_id: str) -> Optional[float]:
        raw = await self.client.get(f"user_blacklist:{account_id}")
        return float(raw) if raw is not None else None

    async def save_session(self, session: Session, ttl_seconds: int) -> None:
        ttl = max(1, ttl_seconds)
        user_sessions_key = f"auth:user_sessions:{session.account_id}"
        pipe = self.client.pipeline()
        pipe.set(f"auth:session:{session.id}", json.dumps(session.to_dict()), ex=ttl)
        pipe.sadd(user_sessions_key, session.id)
        # The index must outlive every session it lists; only ever extend it
        pipe.expire(user_sessions_key, ttl, nx=True)
        pipe.expire(user_sessions_key, ttl, gt=True)
        await pipe.execute()

    async def get_session(self, session_id: str) -> Optional[Session]:
        raw = await self.client.get(f"auth:session:{session_id}")
        if not raw:
            return None
        return Session.from_dict(json.loads(raw))

    async def delete_session(self, session_id: str, account_id: Optional[str] = None) -> bool:
        pipe = self.client.pipeline()
        pipe.delete(f"auth:session:{session_id}")
        if account_id:
            pipe.srem(f"auth:user_sessions:{account_id}", session_id)
        results = await pipe.execute()
        return bool(results[0])

    async def delete_user_sessions(self, account_id: str) -> int:
        user_sessions_key = f"auth:user_sessions:{account_id}"
        session_ids = await self.client.smembers(user_sessions_key)
        if not session_ids:
            return 0
        pipe = self.client.pipeline()
        for session_id in session_ids:
            pipe.delete(f"auth:session:{session_id}")
        pipe.delete(user_sessions_key)
        results = await pipe.execute()
        return sum(int(r) for r in results[:-1])

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate keys so user-supplied parts cannot collide on delimiters."""
        return f"rate:{hashlib.sha256(key.encode()).hexdigest()}"

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        """Token-bucket check; returns ``(allowed, remaining, reset_seconds)``."""
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[self._normalize_rate_key(key)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        return bool(int(allowed)), max(0, int(float(tokens))), int(reset_after or 0)

    async def set_one_time_token(
        self, kind: str, token: str, value: str, ttl_seconds: int
    ) -> None:
        await self.client.set(f"{kind}:{token}", value, ex=max(1, ttl_seconds))

    async def pop_one_time_token(self, kind: str, token: str) -> Optional[str]:
        return await self.client.getdel(f"{kind}:{token}")
