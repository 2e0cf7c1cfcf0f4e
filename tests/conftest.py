import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="loginsentry_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("REFRESH_TOKEN_SECRET", "test-refresh-secret-for-testing-only-not-for-production")
os.environ.setdefault("GEO_LOOKUP_ENABLED", "false")
# Use Redis in tests via SyncRedisCache to avoid async event loop issues
# Falls back to in-process caching if Redis is not available (via ALLOW_REDIS_FALLBACK_DEV)
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/1")

import pytest  # noqa: E402
from argon2 import PasswordHasher as Argon2Hasher  # noqa: E402
from argon2 import Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from loginsentry.config import Settings  # noqa: E402
from loginsentry.service.passwords import PasswordHasher  # noqa: E402
from loginsentry.service.runtime import reset_runtime_for_tests  # noqa: E402
from loginsentry.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Controllable replacement for ``utcnow`` in time-dependent tests."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_runtime_state(monkeypatch, tmp_path):
    # Each test gets its own persisted store directory
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "runtime"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        shared_fs_root=str(tmp_path),
        jwt_secret="unit-test-jwt-secret-0123456789abcdef0123456789",
        refresh_token_secret="unit-test-refresh-secret-0123456789abcdef01234",
        test_mode=True,
        geo_lookup_enabled=False,
        malicious_ips=["198.51.100.66"],
    )


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "store"), mfa_encryption_key="unit-test-mfa-key")


@pytest.fixture
def hasher():
    # Minimal argon2 cost keeps the suite fast
    fast = Argon2Hasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
    return PasswordHasher("unit-test-digest-key", argon2_hasher=fast)


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
