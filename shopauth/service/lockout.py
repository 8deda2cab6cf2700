from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Callable, Optional, Tuple

from shopauth.logging import get_logger
from shopauth.service.errors import AccountLockedError
from shopauth.storage.models import Account, utcnow

if TYPE_CHECKING:
    from shopauth.service.auth import AccountRepository

logger = get_logger(__name__)


class LockState(str, Enum):
    UNLOCKED = "unlocked"
    LOCKED = "locked"


@dataclass(frozen=True)
class LockoutPolicy:
    threshold: int = 5
    duration: timedelta = timedelta(minutes=30)


def next_on_failure(
    failed_attempts: int,
    lock_until: Optional[datetime],
    now: datetime,
    policy: LockoutPolicy,
) -> Tuple[int, Optional[datetime]]:
    """Return ``(failed_attempts, lock_until)`` after one failed attempt.

    Every (state, event) pair has a defined result:

    * Locked and not yet expired: unchanged.
    * Lock expired: the count restarts at 1.
    * Unlocked: the count increments.

    Reaching ``policy.threshold`` sets ``lock_until = now + policy.duration``
    in the same transition.
    """
    if lock_until is not None and lock_until > now:
        return failed_attempts, lock_until
    count = 1 if lock_until is not None else failed_attempts + 1
    if count >= policy.threshold:
        return count, now + policy.duration
    return count, None


def next_on_success() -> Tuple[int, Optional[datetime]]:
    return 0, None


def remaining_lock_minutes(lock_until: datetime, now: datetime) -> int:
    return max(1, math.ceil((lock_until - now).total_seconds() / 60))


class LockoutGuard:
    """Applies the lockout state machine through the repository's atomic ops."""

    def __init__(
        self,
        repository: "AccountRepository",
        policy: LockoutPolicy,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.policy = policy
        self._clock = clock

    def state(self, account: Account, now: Optional[datetime] = None) -> LockState:
        now = now or self._clock()
        return LockState.LOCKED if account.is_locked(now) else LockState.UNLOCKED

    def ensure_unlocked(self, account: Account) -> None:
        now = self._clock()
        if account.is_locked(now):
            raise AccountLockedError(remaining_lock_minutes(account.lock_until, now))

    async def record_failure(self, account: Account) -> Account:
        now = self._clock()
        updated = await self.repository.increment_failed_attempts(
            account.id,
            now=now,
            threshold=self.policy.threshold,
            lock_duration=self.policy.duration,
        )
        if updated is None:
            return account
        if updated.is_locked(now) and not account.is_locked(now):
            logger.warning(
                "account_locked",
                account_id=account.id,
                lock_until=updated.lock_until.isoformat(),
            )
        return updated

    async def record_success(self, account: Account) -> None:
        await self.repository.clear_failed_attempts(account.id)
