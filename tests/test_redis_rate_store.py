"""Tests for the Redis-backed rate limit window store.

Serialization tests run everywhere; the round trip through a live server is
skipped when Redis is not reachable at REDIS_TEST_URL.
"""

import os
import threading
from datetime import timedelta

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from guardian.service.errors import ErrorKind
from guardian.service.rate_limit import RateLimiter
from guardian.storage.errors import StoreUnavailable
from guardian.storage.models import Operation, RateLimitKey, RateLimitWindow, utcnow
from guardian.storage.redis_cache import RedisRateLimitStore

REDIS_TEST_URL = os.getenv("REDIS_TEST_URL", "redis://localhost:6379/15")


class RefusingClient:
    def hgetall(self, key):
        raise RedisConnectionError("connection refused")

    def pipeline(self):
        raise RedisConnectionError("connection refused")

    def scan_iter(self, **kwargs):
        raise RedisConnectionError("connection refused")


def _key(ip="10.0.0.1", tenant="ABC123"):
    return RateLimitKey(ip_addr=ip, tenant_id=tenant, operation=Operation.LOGIN)


def test_key_is_hashed_and_scoped_by_tenant():
    redis_key = RedisRateLimitStore._normalize_rate_key(_key())
    assert redis_key.startswith("rate:ABC123:")
    assert "10.0.0.1" not in redis_key
    assert redis_key != RedisRateLimitStore._normalize_rate_key(_key(ip="10.0.0.2"))


def test_window_serialization_preserves_fields(clock):
    window = RateLimitWindow.fresh(_key(), clock(), timedelta(minutes=5), "agent").incremented(clock())
    window = window.blocked(clock(), timedelta(minutes=15))

    restored = RedisRateLimitStore._deserialize(RedisRateLimitStore._serialize(window))

    assert restored == window
    assert RedisRateLimitStore._deserialize({}) is None


def test_ttl_outlives_active_block(clock):
    store = RedisRateLimitStore(REDIS_TEST_URL, retention=timedelta(hours=1), client=RefusingClient())
    window = RateLimitWindow.fresh(_key(), clock(), timedelta(minutes=5)).blocked(
        clock(), timedelta(hours=3)
    )
    assert store._ttl_seconds(window, clock()) > 3 * 3600


def test_redis_errors_become_store_unavailable():
    store = RedisRateLimitStore(REDIS_TEST_URL, client=RefusingClient())
    with pytest.raises(StoreUnavailable):
        store.get_rate_window(_key())
    with pytest.raises(StoreUnavailable):
        store.update_rate_window(_key(), lambda current: current)


def test_limiter_fails_open_on_redis_outage(clock):
    store = RedisRateLimitStore(REDIS_TEST_URL, client=RefusingClient())
    limiter = RateLimiter(store, clock=clock)
    assert limiter.check(_key())


@pytest.fixture
def live_store():
    store = RedisRateLimitStore(REDIS_TEST_URL, socket_timeout=0.5)
    try:
        store.verify_connection()
    except Exception:
        pytest.skip("Redis not reachable")
    for key in store.client.scan_iter(match="rate:*"):
        store.client.delete(key)
    yield store
    for key in store.client.scan_iter(match="rate:*"):
        store.client.delete(key)
    store.close()


def test_live_blocking_round_trip(live_store, clock):
    # Key TTLs are computed against wall-clock time
    clock.now = utcnow().replace(microsecond=0)
    limiter = RateLimiter(live_store, clock=clock)
    key = _key()
    for _ in range(5):
        limiter.record_failure(key)

    decision = limiter.check(key)

    assert decision.kind == ErrorKind.BLOCKED
    assert decision.retry_after_seconds == 900
    assert live_store.get_rate_window(key).is_blocked


def test_live_concurrent_failures_are_all_counted(live_store, clock):
    clock.now = utcnow().replace(microsecond=0)
    limiter = RateLimiter(live_store, clock=clock)
    key = _key(ip="10.0.0.77")
    workers = 8
    barrier = threading.Barrier(workers)

    def _record():
        barrier.wait()
        limiter.record_failure(key)

    threads = [threading.Thread(target=_record) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert live_store.get_rate_window(key).attempt_count == workers
    assert limiter.check(key).kind == ErrorKind.BLOCKED
