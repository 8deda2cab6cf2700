"""Serialization helpers shared between the memory and postgres stores.

Refresh-token records live inside the account (a JSON list in the memory
store's state file, a JSONB column in Postgres), so both backends need the
same record <-> dict mapping.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from shopauth.storage.models import Account, RefreshTokenRecord


def normalize_email(email: str) -> str:
    return email.strip().lower()


def parse_datetime(raw: Any) -> Optional[datetime]:
    if raw is None:
        return None
    if isinstance(raw, datetime):
        value = raw
    else:
        value = datetime.fromisoformat(str(raw))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def record_to_dict(record: RefreshTokenRecord) -> Dict[str, Any]:
    return {
        "token_value": record.token_value,
        "created_at": record.created_at.isoformat(),
        "expires_at": record.expires_at.isoformat(),
        "device_fingerprint": record.device_fingerprint,
        "is_active": record.is_active,
    }


def record_from_dict(data: Dict[str, Any]) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        token_value=data["token_value"],
        created_at=parse_datetime(data["created_at"]),
        expires_at=parse_datetime(data["expires_at"]),
        device_fingerprint=data.get("device_fingerprint"),
        is_active=bool(data.get("is_active", True)),
    )


def records_from_json(items: Optional[Iterable[Dict[str, Any]]]) -> List[RefreshTokenRecord]:
    return [record_from_dict(item) for item in items or []]


def account_to_dict(account: Account) -> Dict[str, Any]:
    return {
        "id": account.id,
        "email": account.email,
        "password_hash": account.password_hash,
        "role": account.role,
        "name": account.name,
        "is_email_verified": account.is_email_verified,
        "is_active": account.is_active,
        "failed_attempts": account.failed_attempts,
        "lock_until": account.lock_until.isoformat() if account.lock_until else None,
        "refresh_tokens": [record_to_dict(r) for r in account.refresh_tokens],
        "created_at": account.created_at.isoformat(),
    }


def account_from_dict(data: Dict[str, Any]) -> Account:
    """Build an Account from a state-file entry or a ``dict_row`` result."""
    return Account(
        id=str(data["id"]),
        email=data["email"],
        password_hash=data["password_hash"],
        role=data.get("role") or "user",
        name=data.get("name"),
        is_email_verified=bool(data.get("is_email_verified", False)),
        is_active=bool(data.get("is_active", True)),
        failed_attempts=int(data.get("failed_attempts") or 0),
        lock_until=parse_datetime(data.get("lock_until")),
        refresh_tokens=records_from_json(data.get("refresh_tokens")),
        created_at=parse_datetime(data.get("created_at")) or datetime.now(timezone.utc),
    )
