from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from shopauth.logging import get_logger
from shopauth.storage.common import account_from_dict, normalize_email, record_to_dict
from shopauth.storage.errors import ConstraintViolation, StoreUnavailable
from shopauth.storage.models import Account, RefreshTokenRecord

_ACCOUNT_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS account (
    id UUID PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    password_hash TEXT NOT NULL,
    role TEXT NOT NULL DEFAULT 'user',
    name TEXT,
    is_email_verified BOOLEAN NOT NULL DEFAULT FALSE,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    failed_attempts INTEGER NOT NULL DEFAULT 0 CHECK (failed_attempts >= 0),
    lock_until TIMESTAMPTZ,
    refresh_tokens JSONB NOT NULL DEFAULT '[]'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""

# One statement so concurrent failures cannot under-count. Postgres evaluates
# every SET expression against the pre-update row.
_INCREMENT_FAILED_ATTEMPTS_SQL = """
UPDATE account SET
    failed_attempts = CASE
        WHEN lock_until IS NOT NULL AND lock_until > %(now)s THEN failed_attempts
        WHEN lock_until IS NOT NULL THEN 1
        ELSE failed_attempts + 1
    END,
    lock_until = CASE
        WHEN lock_until IS NOT NULL AND lock_until > %(now)s THEN lock_until
        WHEN (CASE WHEN lock_until IS NOT NULL THEN 1 ELSE failed_attempts + 1 END)
             >= %(threshold)s THEN %(locked_until)s
        ELSE NULL
    END,
    updated_at = %(now)s
WHERE id = %(id)s
RETURNING *
"""

_CLEAR_FAILED_ATTEMPTS_SQL = """
UPDATE account SET failed_attempts = 0, lock_until = NULL, updated_at = now()
WHERE id = %(id)s
"""

_APPEND_REFRESH_TOKEN_SQL = """
UPDATE account SET
    refresh_tokens = COALESCE(
        (
            SELECT jsonb_agg(elem ORDER BY ord)
            FROM jsonb_array_elements(refresh_tokens) WITH ORDINALITY AS t(elem, ord)
            WHERE (elem->>'expires_at')::timestamptz > %(now)s
        ),
        '[]'::jsonb
    ) || %(record)s,
    updated_at = now()
WHERE id = %(id)s
"""

_SET_REFRESH_TOKEN_INACTIVE_SQL = """
UPDATE account SET
    refresh_tokens = (
        SELECT jsonb_agg(
            CASE WHEN elem->>'token_value' = %(token)s
                 THEN jsonb_set(elem, '{is_active}', 'false'::jsonb)
                 ELSE elem END
            ORDER BY ord
        )
        FROM jsonb_array_elements(refresh_tokens) WITH ORDINALITY AS t(elem, ord)
    ),
    updated_at = now()
WHERE id = %(id)s AND refresh_tokens @> %(match)s
"""

_REMOVE_REFRESH_TOKEN_SQL = """
UPDATE account SET
    refresh_tokens = COALESCE(
        (
            SELECT jsonb_agg(elem ORDER BY ord)
            FROM jsonb_array_elements(refresh_tokens) WITH ORDINALITY AS t(elem, ord)
            WHERE elem->>'token_value' <> %(token)s
        ),
        '[]'::jsonb
    ),
    updated_at = now()
WHERE id = %(id)s AND refresh_tokens @> %(match)s
"""

_DEACTIVATE_REFRESH_TOKENS_SQL = """
WITH target AS (
    SELECT id, (
        SELECT count(*) FROM jsonb_array_elements(refresh_tokens) AS e
        WHERE (e->>'is_active')::boolean
    ) AS active
    FROM account WHERE id = %(id)s
    FOR UPDATE
)
UPDATE account a SET
    refresh_tokens = COALESCE(
        (
            SELECT jsonb_agg(jsonb_set(elem, '{is_active}', 'false'::jsonb) ORDER BY ord)
            FROM jsonb_array_elements(a.refresh_tokens) WITH ORDINALITY AS t(elem, ord)
        ),
        '[]'::jsonb
    ),
    updated_at = now()
FROM target
WHERE a.id = target.id
RETURNING target.active
"""


class PostgresStore:
    """Postgres-backed account store.

    Lock state and the refresh-token registry live on the ``account`` row;
    every security-relevant mutation is a single conditional UPDATE.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = AsyncConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": True},
            open=False,
        )

    async def open(self) -> None:
        await self.pool.open()
        await self._ensure_schema()

    async def close(self) -> None:
        await self.pool.close()

    @asynccontextmanager
    async def _connect(self):
        try:
            async with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("credential store unavailable") from exc

    async def _ensure_schema(self) -> None:
        """Create the ``account`` table if it is missing."""

        async with self._connect() as conn:
            await conn.execute(_ACCOUNT_TABLE_DDL)

    async def _fetch_account(self, sql: str, params: dict) -> Optional[Account]:
        async with self._connect() as conn:
            cur = await conn.execute(sql, params)
            row = await cur.fetchone()
        if not row:
            return None
        return account_from_dict(row)

    async def create_account(
        self,
        email: str,
        password_hash: str,
        *,
        role: str = "user",
        name: Optional[str] = None,
        is_email_verified: bool = False,
        is_active: bool = True,
    ) -> Account:
        account_id = str(uuid.uuid4())
        try:
            return await self._fetch_account(
                """
                INSERT INTO account (id, email, password_hash, role, name, is_email_verified, is_active)
                VALUES (%(id)s, %(email)s, %(password_hash)s, %(role)s, %(name)s, %(verified)s, %(active)s)
                RETURNING *
                """,
                {
                    "id": account_id,
                    "email": normalize_email(email),
                    "password_hash": password_hash,
                    "role": role,
                    "name": name,
                    "verified": is_email_verified,
                    "active": is_active,
                },
            )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})

    async def get_account(self, account_id: str) -> Optional[Account]:
        try:
            uuid.UUID(str(account_id))
        except ValueError:
            return None
        return await self._fetch_account(
            "SELECT * FROM account WHERE id = %(id)s", {"id": account_id}
        )

    async def get_account_by_email(self, email: str) -> Optional[Account]:
        return await self._fetch_account(
            "SELECT * FROM account WHERE email = %(email)s",
            {"email": normalize_email(email)},
        )

    async def delete_account(self, account_id: str) -> bool:
        async with self._connect() as conn:
            cur = await conn.execute(
                "DELETE FROM account WHERE id = %(id)s", {"id": account_id}
            )
            return cur.rowcount > 0

    async def save_password(self, account_id: str, password_hash: str) -> bool:
        async with self._connect() as conn:
            cur = await conn.execute(
                "UPDATE account SET password_hash = %(hash)s, updated_at = now() WHERE id = %(id)s",
                {"id": account_id, "hash": password_hash},
            )
            return cur.rowcount > 0

    async def mark_email_verified(self, account_id: str) -> Optional[Account]:
        return await self._fetch_account(
            "UPDATE account SET is_email_verified = TRUE, updated_at = now() WHERE id = %(id)s RETURNING *",
            {"id": account_id},
        )

    async def set_role(self, account_id: str, role: str) -> Optional[Account]:
        return await self._fetch_account(
            "UPDATE account SET role = %(role)s, updated_at = now() WHERE id = %(id)s RETURNING *",
            {"id": account_id, "role": role},
        )

    async def set_active(self, account_id: str, is_active: bool) -> Optional[Account]:
        return await self._fetch_account(
            "UPDATE account SET is_active = %(active)s, updated_at = now() WHERE id = %(id)s RETURNING *",
            {"id": account_id, "active": is_active},
        )

    async def increment_failed_attempts(
        self,
        account_id: str,
        *,
        now: datetime,
        threshold: int,
        lock_duration: timedelta,
    ) -> Optional[Account]:
        return await self._fetch_account(
            _INCREMENT_FAILED_ATTEMPTS_SQL,
            {
                "id": account_id,
                "now": now,
                "threshold": threshold,
                "locked_until": now + lock_duration,
            },
        )

    async def clear_failed_attempts(self, account_id: str) -> None:
        async with self._connect() as conn:
            await conn.execute(_CLEAR_FAILED_ATTEMPTS_SQL, {"id": account_id})

    async def append_refresh_token(
        self, account_id: str, record: RefreshTokenRecord, *, now: datetime
    ) -> bool:
        async with self._connect() as conn:
            cur = await conn.execute(
                _APPEND_REFRESH_TOKEN_SQL,
                {"id": account_id, "now": now, "record": Jsonb([record_to_dict(record)])},
            )
            return cur.rowcount > 0

    async def set_refresh_token_inactive(self, account_id: str, token_value: str) -> bool:
        async with self._connect() as conn:
            cur = await conn.execute(
                _SET_REFRESH_TOKEN_INACTIVE_SQL,
                {
                    "id": account_id,
                    "token": token_value,
                    "match": Jsonb([{"token_value": token_value}]),
                },
            )
            return cur.rowcount > 0

    async def remove_refresh_token(self, account_id: str, token_value: str) -> bool:
        async with self._connect() as conn:
            cur = await conn.execute(
                _REMOVE_REFRESH_TOKEN_SQL,
                {
                    "id": account_id,
                    "token": token_value,
                    "match": Jsonb([{"token_value": token_value}]),
                },
            )
            return cur.rowcount > 0

    async def deactivate_refresh_tokens(self, account_id: str) -> int:
        async with self._connect() as conn:
            cur = await conn.execute(_DEACTIVATE_REFRESH_TOKENS_SQL, {"id": account_id})
            row = await cur.fetchone()
        return int(row["active"]) if row else 0
