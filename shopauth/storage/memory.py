from __future__ import annotations

import copy
import json
import threading
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Optional

from shopauth.logging import get_logger
from shopauth.service.lockout import LockoutPolicy, next_on_failure, next_on_success
from shopauth.storage.common import account_from_dict, account_to_dict, normalize_email
from shopauth.storage.errors import ConstraintViolation
from shopauth.storage.models import Account, RefreshTokenRecord


class MemoryStore:
    """In-process account store for tests and local development.

    Every mutation runs under one re-entrant lock and never awaits while
    holding it, so the read-modify-write in ``increment_failed_attempts`` is a
    single atomic step with respect to other requests.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    async def open(self) -> None:
        return None

    async def close(self) -> None:
        return None

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "accounts.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {"accounts": [account_to_dict(a) for a in self.accounts.values()]}
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: account_from_dict(a) for a in data.get("accounts", [])
        }
        return True

    def _find_by_email(self, email: str) -> Optional[Account]:
        normalized = normalize_email(email)
        for account in self.accounts.values():
            if account.email == normalized:
                return account
        return None

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
        with self._data_lock:
            if self._find_by_email(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account(
                id=str(uuid.uuid4()),
                email=normalize_email(email),
                password_hash=password_hash,
                role=role,
                name=name,
                is_email_verified=is_email_verified,
                is_active=is_active,
            )
            self.accounts[account.id] = account
            self._persist_state()
            return copy.deepcopy(account)

    async def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return copy.deepcopy(account) if account else None

    async def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            account = self._find_by_email(email)
            return copy.deepcopy(account) if account else None

    async def delete_account(self, account_id: str) -> bool:
        with self._data_lock:
            removed = self.accounts.pop(account_id, None)
            if removed:
                self._persist_state()
            return removed is not None

    async def save_password(self, account_id: str, password_hash: str) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            account.password_hash = password_hash
            self._persist_state()
            return True

    async def mark_email_verified(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.is_email_verified = True
            self._persist_state()
            return copy.deepcopy(account)

    async def set_role(self, account_id: str, role: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.role = role
            self._persist_state()
            return copy.deepcopy(account)

    async def set_active(self, account_id: str, is_active: bool) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.is_active = is_active
            self._persist_state()
            return copy.deepcopy(account)

    async def increment_failed_attempts(
        self,
        account_id: str,
        *,
        now: datetime,
        threshold: int,
        lock_duration: timedelta,
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.failed_attempts, account.lock_until = next_on_failure(
                account.failed_attempts,
                account.lock_until,
                now,
                LockoutPolicy(threshold=threshold, duration=lock_duration),
            )
            self._persist_state()
            return copy.deepcopy(account)

    async def clear_failed_attempts(self, account_id: str) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return
            account.failed_attempts, account.lock_until = next_on_success()
            self._persist_state()

    async def append_refresh_token(
        self, account_id: str, record: RefreshTokenRecord, *, now: datetime
    ) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            # Expired records can never be used again; drop them on write
            account.refresh_tokens = [
                r for r in account.refresh_tokens if r.expires_at > now
            ]
            account.refresh_tokens.append(copy.deepcopy(record))
            self._persist_state()
            return True

    async def set_refresh_token_inactive(self, account_id: str, token_value: str) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            record = account.find_refresh_token(token_value)
            if not record:
                return False
            record.is_active = False
            self._persist_state()
            return True

    async def remove_refresh_token(self, account_id: str, token_value: str) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            before = len(account.refresh_tokens)
            account.refresh_tokens = [
                r for r in account.refresh_tokens if r.token_value != token_value
            ]
            removed = len(account.refresh_tokens) != before
            if removed:
                self._persist_state()
            return removed

    async def deactivate_refresh_tokens(self, account_id: str) -> int:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return 0
            changed = 0
            for record in account.refresh_tokens:
                if record.is_active:
                    record.is_active = False
                    changed += 1
            if changed:
                self._persist_state()
            return changed
