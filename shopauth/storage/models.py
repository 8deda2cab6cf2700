from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RefreshTokenRecord:
    """One issued refresh token, stored on the owning account."""

    token_value: str
    created_at: datetime
    expires_at: datetime
    device_fingerprint: Optional[str] = None
    is_active: bool = True

    def usable(self, now: datetime) -> bool:
        return self.is_active and now < self.expires_at


@dataclass
class Account:
    id: str
    email: str
    password_hash: str
    role: str = "user"
    name: Optional[str] = None
    is_email_verified: bool = False
    is_active: bool = True
    failed_attempts: int = 0
    lock_until: Optional[datetime] = None
    refresh_tokens: List[RefreshTokenRecord] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)

    def is_locked(self, now: datetime) -> bool:
        return self.lock_until is not None and self.lock_until > now

    def find_refresh_token(self, token_value: str) -> Optional[RefreshTokenRecord]:
        for record in self.refresh_tokens:
            if record.token_value == token_value:
                return record
        return None

    def active_refresh_tokens(self, now: datetime) -> List[RefreshTokenRecord]:
        return [record for record in self.refresh_tokens if record.usable(now)]


@dataclass
class Session:
    """Cookie-addressable server-side session record."""

    id: str
    account_id: str
    login_time: datetime
    last_activity: datetime
    device_fingerprint: Optional[str] = None
    expires_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        account_id: str,
        ttl_hours: int = 24,
        device_fingerprint: str | None = None,
        *,
        now: datetime | None = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=uuid.uuid4().hex,
            account_id=account_id,
            login_time=now,
            last_activity=now,
            device_fingerprint=device_fingerprint,
            expires_at=now + timedelta(hours=ttl_hours),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "login_time": self.login_time.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "device_fingerprint": self.device_fingerprint,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Session":
        expires_raw = data.get("expires_at")
        return cls(
            id=data["id"],
            account_id=data["account_id"],
            login_time=datetime.fromisoformat(data["login_time"]),
            last_activity=datetime.fromisoformat(data["last_activity"]),
            device_fingerprint=data.get("device_fingerprint"),
            expires_at=datetime.fromisoformat(expires_raw) if expires_raw else None,
        )
