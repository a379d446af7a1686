import os
import tempfile
from datetime import datetime, timedelta, timezone

# Environment must be prepared before guardian modules read it
_test_tmp_dir = tempfile.mkdtemp(prefix="guardian_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

from guardian.config import Settings, reset_settings_cache  # noqa: E402
from guardian.service.audit import AuditDispatcher, MemoryAuditSink  # noqa: E402
from guardian.service.auth import AuthCoordinator  # noqa: E402
from guardian.service.rate_limit import RateLimiter, RateLimitPolicy  # noqa: E402
from guardian.service.sessions import SessionCache, SessionManager  # noqa: E402
from guardian.service.tenants import TenantRegistry  # noqa: E402
from guardian.service.tokens import TokenCodec  # noqa: E402
from guardian.storage.memory import MemoryStore  # noqa: E402
from guardian.storage.models import Tenant  # noqa: E402

TEST_SECRET = "unit-test-signing-key-0123456789abcdef"


class FakeClock:
    """Manually advanced clock shared by every component under test."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def audit_sink():
    return MemoryAuditSink()


@pytest.fixture
def audit(audit_sink, clock):
    dispatcher = AuditDispatcher(audit_sink, workers=2, queue_capacity=10, clock=clock)
    yield dispatcher
    dispatcher.shutdown(wait=True)


@pytest.fixture
def tenants(store, audit, clock):
    return TenantRegistry(store, audit=audit, clock=clock)


@pytest.fixture
def tenant(store, tenants, clock):
    created = Tenant(
        id="ABC123",
        secret="abc123-client-key",
        name="Acme",
        idle_timeout_minutes=30,
        created_at=clock(),
    )
    store.create_tenant(created)
    return created


@pytest.fixture
def rate_limiter(store, clock):
    return RateLimiter(store, RateLimitPolicy(), clock=clock)


@pytest.fixture
def session_cache(clock):
    return SessionCache(max_entries=100, sweep_interval_seconds=60, clock=clock)


@pytest.fixture
def sessions(store, session_cache, tenants, clock):
    return SessionManager(store, session_cache, tenants, ttl_minutes=60, clock=clock)


@pytest.fixture
def tokens(clock):
    return TokenCodec(TEST_SECRET, 60, clock=clock)


@pytest.fixture
def coordinator(tenants, rate_limiter, sessions, tokens, store, audit, clock):
    return AuthCoordinator(
        tenants=tenants,
        rate_limiter=rate_limiter,
        sessions=sessions,
        tokens=tokens,
        users=store,
        audit=audit,
        password_hasher=PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1, type=Type.ID),
        clock=clock,
    )


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jwt_secret=TEST_SECRET,
        shared_fs_root=str(tmp_path),
        use_memory_store=True,
        test_mode=True,
        redis_url=None,
    )
