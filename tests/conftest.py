import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment defaults must be in place before shopauth reads settings
_test_tmp_dir = tempfile.mkdtemp(prefix="shopauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("SESSION_COOKIE_SECURE", "false")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-testing-only-0123456789")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-0123456789")
os.environ.setdefault("SESSION_SECRET", "test-session-secret-for-testing-only-0123456789")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402
from argon2 import PasswordHasher as Argon2Hasher  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from shopauth.config import Settings, reset_settings_cache  # noqa: E402
from shopauth.service.auth import AuthService  # noqa: E402
from shopauth.service.passwords import PasswordHasher  # noqa: E402
from shopauth.storage.memory import MemoryStore  # noqa: E402
from shopauth.storage.memory_cache import MemoryCache  # noqa: E402


class MutableClock:
    """Injectable clock that only moves when a test tells it to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_settings():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def settings():
    return Settings.from_env()


@pytest.fixture
def hasher():
    # Minimal argon2 cost keeps the suite fast
    return PasswordHasher(Argon2Hasher(time_cost=1, memory_cost=8, parallelism=1))


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def auth(store, cache, settings, hasher, clock):
    return AuthService(store, cache, settings, hasher=hasher, clock=clock)


@pytest.fixture
def create_account(store, hasher):
    async def _create(email="a@x.com", password="correct-horse", **kwargs):
        kwargs.setdefault("is_email_verified", True)
        return await store.create_account(email, hasher.hash(password), **kwargs)

    return _create


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
