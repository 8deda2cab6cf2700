import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import psycopg
import pytest
from psycopg import errors

from shopauth.logging import get_logger
from shopauth.storage.errors import ConstraintViolation, StoreUnavailable
from shopauth.storage.models import RefreshTokenRecord
from shopauth.storage.postgres import PostgresStore

NOW = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


class StubCursor:
    def __init__(self, row=None, rowcount=0):
        self.row = row
        self.rowcount = rowcount

    async def fetchone(self):
        return self.row


class StubConnection:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    async def execute(self, sql, params=None):
        self.calls.append((sql, params))
        response = self.responses.pop(0) if self.responses else StubCursor()
        if isinstance(response, Exception):
            raise response
        return response


class StubPool:
    def __init__(self, conn=None, error=None):
        self.conn = conn
        self.error = error

    @asynccontextmanager
    async def connection(self):
        if self.error is not None:
            raise self.error
        yield self.conn


def _store(*responses, error=None):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    conn = StubConnection(responses)
    store.pool = StubPool(conn, error)
    store.logger = get_logger("tests.postgres")
    return store, conn


def _row(**overrides):
    row = {
        "id": uuid.uuid4(),
        "email": "a@x.com",
        "password_hash": "hash",
        "role": "user",
        "name": None,
        "is_email_verified": True,
        "is_active": True,
        "failed_attempts": 0,
        "lock_until": None,
        "refresh_tokens": [],
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


async def test_create_account_normalizes_email_and_maps_row():
    row = _row(email="new@shop.com", is_email_verified=False)
    store, conn = _store(StubCursor(row=row, rowcount=1))
    account = await store.create_account(" New@Shop.com ", "hash", name="New")

    sql, params = conn.calls[0]
    assert "INSERT INTO account" in sql
    assert params["email"] == "new@shop.com"
    assert params["verified"] is False
    assert account.id == str(row["id"])
    assert account.email == "new@shop.com"


async def test_create_account_unique_violation_becomes_constraint_violation():
    store, _ = _store(errors.UniqueViolation("duplicate key"))
    with pytest.raises(ConstraintViolation) as excinfo:
        await store.create_account("a@x.com", "hash")
    assert excinfo.value.detail == {"field": "email"}


async def test_get_account_skips_query_for_non_uuid():
    store, conn = _store()
    assert await store.get_account("not-a-uuid") is None
    assert conn.calls == []


async def test_get_account_parses_refresh_tokens():
    record = {
        "token_value": "tok",
        "created_at": NOW.isoformat(),
        "expires_at": (NOW + timedelta(days=7)).isoformat(),
        "device_fingerprint": "phone",
        "is_active": True,
    }
    row = _row(refresh_tokens=[record], lock_until=NOW + timedelta(minutes=30), failed_attempts=5)
    store, _ = _store(StubCursor(row=row))
    account = await store.get_account(str(row["id"]))
    assert account.failed_attempts == 5
    assert account.lock_until == NOW + timedelta(minutes=30)
    [parsed] = account.refresh_tokens
    assert parsed.device_fingerprint == "phone"
    assert parsed.usable(NOW)


async def test_increment_failed_attempts_is_one_statement():
    row = _row(failed_attempts=1)
    store, conn = _store(StubCursor(row=row))
    account_id = str(row["id"])
    account = await store.increment_failed_attempts(
        account_id, now=NOW, threshold=5, lock_duration=timedelta(minutes=30)
    )
    assert account.failed_attempts == 1
    [(sql, params)] = conn.calls
    assert sql.strip().startswith("UPDATE account SET")
    assert "RETURNING *" in sql
    assert params == {
        "id": account_id,
        "now": NOW,
        "threshold": 5,
        "locked_until": NOW + timedelta(minutes=30),
    }


async def test_append_refresh_token_sends_jsonb_record():
    store, conn = _store(StubCursor(rowcount=1))
    record = RefreshTokenRecord(
        token_value="tok",
        created_at=NOW,
        expires_at=NOW + timedelta(days=7),
        device_fingerprint="phone",
    )
    assert await store.append_refresh_token("acct", record, now=NOW) is True
    sql, params = conn.calls[0]
    assert "jsonb_array_elements" in sql
    assert params["now"] == NOW
    assert params["record"].obj == [
        {
            "token_value": "tok",
            "created_at": NOW.isoformat(),
            "expires_at": (NOW + timedelta(days=7)).isoformat(),
            "device_fingerprint": "phone",
            "is_active": True,
        }
    ]


async def test_refresh_token_updates_report_matches():
    store, conn = _store(StubCursor(rowcount=1), StubCursor(rowcount=0))
    assert await store.set_refresh_token_inactive("acct", "tok") is True
    assert await store.remove_refresh_token("acct", "tok") is False
    inactive_sql, inactive_params = conn.calls[0]
    remove_sql, remove_params = conn.calls[1]
    assert "'{is_active}'" in inactive_sql
    assert "<> %(token)s" in remove_sql
    assert inactive_params["match"].obj == [{"token_value": "tok"}]
    assert remove_params["token"] == "tok"


async def test_deactivate_returns_previous_active_count():
    store, _ = _store(StubCursor(row={"active": 3}))
    assert await store.deactivate_refresh_tokens("acct") == 3
    store, _ = _store(StubCursor(row=None))
    assert await store.deactivate_refresh_tokens("acct") == 0


async def test_connection_failure_is_store_unavailable():
    store, _ = _store(error=psycopg.OperationalError("connection refused"))
    with pytest.raises(StoreUnavailable):
        await store.get_account_by_email("a@x.com")
