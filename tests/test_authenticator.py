import asyncio
from datetime import timedelta

import pytest
from argon2 import PasswordHasher as Argon2Hasher

from shopauth.service.auth import AuthService
from shopauth.service.authenticator import CredentialAuthenticator, device_fingerprint
from shopauth.service.errors import (
    AccountDisabledError,
    AccountLockedError,
    EmailNotVerifiedError,
    InvalidCredentialsError,
    ServerError,
)
from shopauth.service.passwords import PasswordHasher
from shopauth.service.tokens import ACCESS
from shopauth.storage.errors import StoreUnavailable
from shopauth.storage.memory_cache import MemoryCache


class TestLogin:
    async def test_login_issues_tokens_and_records_refresh(self, auth, store, create_account):
        account = await create_account()
        result = await auth.authenticate("a@x.com", "correct-horse", device_fingerprint="fp-1")

        assert result.account.id == account.id
        claims = auth.access_codec.decode(result.tokens.access_token)
        assert claims.token_type == ACCESS
        assert claims.account_id == account.id

        stored = await store.get_account(account.id)
        [record] = stored.refresh_tokens
        assert record.token_value == result.tokens.refresh_token
        assert record.device_fingerprint == "fp-1"

    async def test_email_is_case_insensitive(self, auth, create_account):
        await create_account(email="Shopper@Example.com")
        result = await auth.authenticate("  SHOPPER@example.COM ", "correct-horse")
        assert result.account.email == "shopper@example.com"

    async def test_unknown_email_and_wrong_password_look_the_same(self, auth, create_account):
        await create_account()
        with pytest.raises(InvalidCredentialsError) as unknown:
            await auth.authenticate("nobody@x.com", "correct-horse")
        with pytest.raises(InvalidCredentialsError) as wrong:
            await auth.authenticate("a@x.com", "wrong-horse")
        assert unknown.value.message == wrong.value.message
        assert unknown.value.status_code == wrong.value.status_code == 401

    async def test_unverified_account_rejected_before_password_check(self, auth, store, create_account):
        account = await create_account(is_email_verified=False)
        with pytest.raises(EmailNotVerifiedError):
            await auth.authenticate("a@x.com", "wrong-horse")
        stored = await store.get_account(account.id)
        assert stored.failed_attempts == 0

    async def test_disabled_account_rejected_after_password(self, auth, store, create_account):
        account = await create_account(is_active=False)
        with pytest.raises(InvalidCredentialsError):
            await auth.authenticate("a@x.com", "wrong-horse")
        with pytest.raises(AccountDisabledError):
            await auth.authenticate("a@x.com", "correct-horse")
        stored = await store.get_account(account.id)
        assert stored.refresh_tokens == []

    async def test_store_outage_is_a_generic_server_error(self, settings, hasher, clock):
        class DownStore:
            async def get_account_by_email(self, email):
                raise StoreUnavailable("connection refused")

        service = AuthService(DownStore(), MemoryCache(clock=clock), settings, hasher=hasher, clock=clock)
        with pytest.raises(ServerError) as excinfo:
            await service.authenticate("a@x.com", "correct-horse")
        assert excinfo.value.status_code == 500
        assert "connection refused" not in excinfo.value.message


class TestLoginLockout:
    """Five failed attempts lock the account for thirty minutes."""

    async def test_fifth_failure_locks_and_correct_password_is_refused(self, auth, store, create_account, clock):
        account = await create_account()
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await auth.authenticate("a@x.com", "wrong-horse")

        stored = await store.get_account(account.id)
        assert stored.failed_attempts == 5
        assert stored.lock_until == clock() + timedelta(minutes=30)

        with pytest.raises(AccountLockedError) as excinfo:
            await auth.authenticate("a@x.com", "correct-horse")
        assert excinfo.value.retry_after_minutes > 0
        assert excinfo.value.status_code == 423
        assert "attempt" not in excinfo.value.message.lower()

    async def test_attempts_while_locked_do_not_count(self, auth, store, create_account):
        account = await create_account()
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await auth.authenticate("a@x.com", "wrong-horse")
        for _ in range(3):
            with pytest.raises(AccountLockedError):
                await auth.authenticate("a@x.com", "wrong-horse")
        stored = await store.get_account(account.id)
        assert stored.failed_attempts == 5

    async def test_failure_after_lock_expiry_restarts_count(self, auth, store, create_account, clock):
        account = await create_account()
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await auth.authenticate("a@x.com", "wrong-horse")

        clock.advance(minutes=31)
        with pytest.raises(InvalidCredentialsError):
            await auth.authenticate("a@x.com", "wrong-horse")
        stored = await store.get_account(account.id)
        assert stored.failed_attempts == 1
        assert stored.lock_until is None

        result = await auth.authenticate("a@x.com", "correct-horse")
        assert result.account.failed_attempts == 0
        stored = await store.get_account(account.id)
        assert (stored.failed_attempts, stored.lock_until) == (0, None)

    async def test_success_resets_partial_failures(self, auth, store, create_account):
        account = await create_account()
        for _ in range(3):
            with pytest.raises(InvalidCredentialsError):
                await auth.authenticate("a@x.com", "wrong-horse")
        await auth.authenticate("a@x.com", "correct-horse")
        stored = await store.get_account(account.id)
        assert stored.failed_attempts == 0

    async def test_concurrent_failures_never_lose_a_count(self, auth, store, create_account):
        account = await create_account()
        results = await asyncio.gather(
            *(auth.authenticate("a@x.com", "wrong-horse") for _ in range(8)),
            return_exceptions=True,
        )
        assert all(isinstance(r, (InvalidCredentialsError, AccountLockedError)) for r in results)
        assert sum(isinstance(r, InvalidCredentialsError) for r in results) >= 5
        stored = await store.get_account(account.id)
        assert stored.failed_attempts == 5
        assert stored.lock_until is not None


class TestDeviceFingerprint:
    def test_stable_for_same_inputs(self):
        first = device_fingerprint("Mozilla/5.0", "en-US", "10.0.0.1")
        assert first == device_fingerprint("Mozilla/5.0", "en-US", "10.0.0.1")
        assert len(first) == 64

    def test_differs_per_device(self):
        assert device_fingerprint("Mozilla/5.0", "en-US", "10.0.0.1") != device_fingerprint(
            "Mozilla/5.0", "en-US", "10.0.0.2"
        )

    def test_missing_parts_allowed(self):
        assert device_fingerprint(None, None, None) == device_fingerprint("", "", "")


class TestPasswordRehash:
    async def test_outdated_hash_upgraded_on_login(self, auth, store, hasher, create_account):
        weak = PasswordHasher(Argon2Hasher(time_cost=1, memory_cost=8, parallelism=1, hash_len=16))
        account = await store.create_account("old@x.com", weak.hash("correct-horse"), is_email_verified=True)
        assert hasher.needs_rehash(account.password_hash)

        await auth.authenticate("old@x.com", "correct-horse")
        stored = await store.get_account(account.id)
        assert stored.password_hash != account.password_hash
        assert not hasher.needs_rehash(stored.password_hash)
        assert hasher.verify(stored.password_hash, "correct-horse")


def test_authenticator_is_exposed_on_service(auth):
    assert isinstance(auth.authenticator, CredentialAuthenticator)
