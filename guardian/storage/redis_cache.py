from __future__ import annotations

import hashlib
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from redis import Redis
from redis.exceptions import RedisError, WatchError

from guardian.logging import get_logger
from guardian.storage.errors import StoreUnavailable
from guardian.storage.models import Operation, RateLimitKey, RateLimitWindow, utcnow

logger = get_logger(__name__)


class RedisRateLimitStore:
    """Rate limit windows shared across workers through Redis.

    Each window lives in one hash. Updates run inside WATCH/MULTI so a
    read-modify-write on a key is atomic across processes; the mutation is
    re-applied when another writer wins the race.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0
    MAX_WATCH_RETRIES = 16

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        retention: timedelta = timedelta(hours=24),
        client: Optional[Redis] = None,
    ) -> None:
        self.redis_url = redis_url
        self.retention = retention
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self.client.ping()

    def close(self) -> None:
        self.client.close()

    @staticmethod
    def _normalize_rate_key(key: RateLimitKey) -> str:
        # Hash the composite so addresses or tenant ids cannot inject delimiters
        digest = hashlib.sha256(key.as_string().encode()).hexdigest()
        return f"rate:{key.tenant_id}:{digest}"

    @staticmethod
    def _serialize(window: RateLimitWindow) -> Dict[str, str]:
        return {
            "ip_addr": window.key.ip_addr,
            "tenant_id": window.key.tenant_id,
            "operation": window.key.operation.value,
            "attempt_count": str(window.attempt_count),
            "window_start": window.window_start.isoformat(),
            "last_attempt": window.last_attempt.isoformat(),
            "reset_time": window.reset_time.isoformat(),
            "is_blocked": "1" if window.is_blocked else "0",
            "user_agent": window.user_agent or "",
        }

    @staticmethod
    def _deserialize(raw: Dict[str, str]) -> Optional[RateLimitWindow]:
        if not raw:
            return None
        key = RateLimitKey(
            ip_addr=raw["ip_addr"],
            tenant_id=raw["tenant_id"],
            operation=Operation(raw["operation"]),
        )
        return RateLimitWindow(
            key=key,
            attempt_count=int(raw["attempt_count"]),
            window_start=datetime.fromisoformat(raw["window_start"]),
            last_attempt=datetime.fromisoformat(raw["last_attempt"]),
            reset_time=datetime.fromisoformat(raw["reset_time"]),
            is_blocked=raw.get("is_blocked") == "1",
            user_agent=raw.get("user_agent") or None,
        )

    def _ttl_seconds(self, window: RateLimitWindow, now: datetime) -> int:
        # Active blocks must outlive the retention horizon
        horizon = max(window.last_attempt + self.retention, window.reset_time)
        return max(1, int((horizon - now).total_seconds()) + 1)

    def get_rate_window(self, key: RateLimitKey) -> Optional[RateLimitWindow]:
        try:
            raw = self.client.hgetall(self._normalize_rate_key(key))
        except RedisError as exc:
            raise StoreUnavailable(str(exc), backend="redis") from exc
        return self._deserialize(raw)

    def update_rate_window(
        self,
        key: RateLimitKey,
        mutate: Callable[[Optional[RateLimitWindow]], RateLimitWindow],
    ) -> RateLimitWindow:
        redis_key = self._normalize_rate_key(key)
        try:
            with self.client.pipeline() as pipe:
                for _ in range(self.MAX_WATCH_RETRIES):
                    try:
                        pipe.watch(redis_key)
                        current = self._deserialize(pipe.hgetall(redis_key))
                        updated = mutate(current)
                        pipe.multi()
                        pipe.hset(redis_key, mapping=self._serialize(updated))
                        pipe.expire(redis_key, self._ttl_seconds(updated, utcnow()))
                        pipe.execute()
                        return updated
                    except WatchError:
                        logger.debug("rate_window_watch_retry", key=redis_key)
                        continue
        except RedisError as exc:
            raise StoreUnavailable(str(exc), backend="redis") from exc
        raise StoreUnavailable(
            f"rate window {redis_key} kept changing during update", backend="redis"
        )

    def delete_stale_rate_windows(self, now: datetime, last_attempt_before: datetime) -> int:
        """Remove stale windows that have not yet reached their TTL.

        Keys normally expire on their own; this pass catches windows written
        with a longer retention than the current deployment uses.
        """
        removed = 0
        try:
            for redis_key in self.client.scan_iter(match="rate:*", count=500):
                window = self._deserialize(self.client.hgetall(redis_key))
                if window is None:
                    continue
                if window.last_attempt >= last_attempt_before:
                    continue
                if window.is_blocked and window.reset_time > now:
                    continue
                removed += self.client.delete(redis_key)
        except RedisError as exc:
            raise StoreUnavailable(str(exc), backend="redis") from exc
        return removed
