from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from guardian.logging import get_logger
from guardian.service.errors import Denied, ErrorKind
from guardian.storage.models import Operation, RateLimitKey, RateLimitWindow, utcnow

logger = get_logger(__name__)


class RateLimitStore(Protocol):
    def update_rate_window(
        self,
        key: RateLimitKey,
        mutate: Callable[[Optional[RateLimitWindow]], RateLimitWindow],
    ) -> RateLimitWindow:
        ...

    def delete_stale_rate_windows(self, now: datetime, last_attempt_before: datetime) -> int:
        ...


@dataclass(frozen=True)
class RateLimitPolicy:
    max_attempts: int = 5
    window: timedelta = timedelta(minutes=5)
    block_duration: timedelta = timedelta(minutes=15)
    retention: timedelta = timedelta(hours=24)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    attempts: int = 0
    retry_after_seconds: int = 0
    kind: Optional[ErrorKind] = None

    def __bool__(self) -> bool:
        return self.allowed

    def as_denied(self) -> Denied:
        return Denied(
            self.kind or ErrorKind.BLOCKED,
            "too many requests",
            retry_after_seconds=self.retry_after_seconds,
        )


class RateLimiter:
    """Sliding-window attempt limiter keyed by address, tenant and operation.

    ``check`` never counts an attempt; callers report failures through
    ``record_failure``. When the counter reaches ``max_attempts`` the next
    ``check`` blocks the key for ``block_duration``.

    Store errors never reject traffic: both operations log and fail open.
    """

    def __init__(
        self,
        store: RateLimitStore,
        policy: Optional[RateLimitPolicy] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.policy = policy or RateLimitPolicy()
        self._clock = clock

    @staticmethod
    def key_for(ip_addr: Optional[str], tenant_id: Optional[str], operation: Operation) -> RateLimitKey:
        return RateLimitKey(
            ip_addr=ip_addr or "unknown",
            tenant_id=tenant_id or "unknown",
            operation=operation,
        )

    def check(
        self,
        key: RateLimitKey,
        now: Optional[datetime] = None,
        user_agent: Optional[str] = None,
    ) -> RateLimitDecision:
        now = now or self._clock()
        policy = self.policy
        transitioned = False

        def _evaluate(current: Optional[RateLimitWindow]) -> RateLimitWindow:
            nonlocal transitioned
            transitioned = False
            window = current or RateLimitWindow.fresh(key, now, policy.window, user_agent)
            if window.is_blocked and not window.is_reset_time_reached(now):
                return window
            if window.is_window_expired(now, policy.window) or window.is_reset_time_reached(now):
                window = window.reset(now, policy.window)
            if window.attempt_count >= policy.max_attempts:
                transitioned = True
                return window.blocked(now, policy.block_duration)
            return window

        try:
            window = self.store.update_rate_window(key, _evaluate)
        except Exception as exc:
            logger.warning(
                "rate_limit_check_failed",
                operation=key.operation.value,
                tenant_id=key.tenant_id,
                error=str(exc),
            )
            return RateLimitDecision(allowed=True)

        if window.is_blocked and not window.is_reset_time_reached(now):
            retry_after = max(1, window.retry_after_seconds(now))
            logger.info(
                "rate_limit_block_started" if transitioned else "rate_limit_denied",
                operation=key.operation.value,
                tenant_id=key.tenant_id,
                ip_addr=key.ip_addr,
                attempts=window.attempt_count,
                retry_after=retry_after,
            )
            return RateLimitDecision(
                allowed=False,
                attempts=window.attempt_count,
                retry_after_seconds=retry_after,
                kind=ErrorKind.BLOCKED,
            )
        return RateLimitDecision(allowed=True, attempts=window.attempt_count)

    def record_failure(
        self,
        key: RateLimitKey,
        now: Optional[datetime] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        now = now or self._clock()
        policy = self.policy

        def _record(current: Optional[RateLimitWindow]) -> RateLimitWindow:
            window = current or RateLimitWindow.fresh(key, now, policy.window, user_agent)
            if window.is_blocked:
                # An active block is never cleared or extended by further failures
                if window.is_reset_time_reached(now):
                    window = window.reset(now, policy.window)
            elif window.is_window_expired(now, policy.window):
                window = window.reset(now, policy.window)
            return window.incremented(now, user_agent)

        try:
            self.store.update_rate_window(key, _record)
        except Exception as exc:
            logger.warning(
                "rate_limit_record_failed",
                operation=key.operation.value,
                tenant_id=key.tenant_id,
                error=str(exc),
            )

    def cleanup(self, now: Optional[datetime] = None) -> int:
        now = now or self._clock()
        removed = self.store.delete_stale_rate_windows(now, now - self.policy.retention)
        if removed:
            logger.info("rate_limit_windows_cleaned", removed=removed)
        return removed


__all__ = [
    "Operation",
    "RateLimitDecision",
    "RateLimitKey",
    "RateLimitPolicy",
    "RateLimitStore",
    "RateLimiter",
]
