from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Operation(str, Enum):
    """Request kinds that are rate limited independently."""

    LOGIN = "LOGIN"
    SIGNUP = "SIGNUP"
    API_CALL = "API_CALL"
    TOKEN_VALIDATION = "TOKEN_VALIDATION"


@dataclass(frozen=True)
class Tenant:
    id: str
    secret: str
    name: str
    description: Optional[str] = None
    idle_timeout_minutes: int = 30
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class UserAccount:
    id: str
    email: str
    tenant_id: str
    password_hash: str
    password_algo: str = "argon2id"
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class RequestMeta:
    """Caller context attached to rate limiting, sessions and audit events."""

    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    method: Optional[str] = None
    endpoint: Optional[str] = None
    request_id: Optional[str] = None
    session_id: Optional[str] = None


@dataclass(frozen=True)
class Session:
    id: str
    user_id: str
    tenant_id: str
    created_at: datetime
    expires_at: datetime
    last_activity_at: datetime
    is_active: bool = True
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None

    def __post_init__(self) -> None:
        if self.expires_at <= self.created_at:
            raise ValueError("session must expire after it is created")

    @classmethod
    def new(
        cls,
        user_id: str,
        tenant_id: str,
        ttl_minutes: int,
        *,
        now: Optional[datetime] = None,
        meta: Optional[RequestMeta] = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            tenant_id=tenant_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            last_activity_at=now,
            ip_addr=meta.ip_addr if meta else None,
            user_agent=meta.user_agent if meta else None,
        )

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def is_idle(self, now: datetime, idle_timeout_minutes: int) -> bool:
        return now > self.last_activity_at + timedelta(minutes=idle_timeout_minutes)

    def touched(self, at: datetime) -> "Session":
        if at <= self.last_activity_at:
            return self
        return replace(self, last_activity_at=at)

    def deactivated(self) -> "Session":
        if not self.is_active:
            return self
        return replace(self, is_active=False)


@dataclass(frozen=True)
class RateLimitKey:
    ip_addr: str
    tenant_id: str
    operation: Operation

    def as_string(self) -> str:
        return f"{self.operation.value}|{self.tenant_id}|{self.ip_addr}"


@dataclass(frozen=True)
class RateLimitWindow:
    """Attempt counter for one rate limit key.

    ``reset_time`` is the end of the current window while open and the end of
    the block while ``is_blocked`` is set.
    """

    key: RateLimitKey
    attempt_count: int
    window_start: datetime
    last_attempt: datetime
    reset_time: datetime
    is_blocked: bool = False
    user_agent: Optional[str] = None

    @classmethod
    def fresh(
        cls,
        key: RateLimitKey,
        now: datetime,
        window: timedelta,
        user_agent: Optional[str] = None,
    ) -> "RateLimitWindow":
        return cls(
            key=key,
            attempt_count=0,
            window_start=now,
            last_attempt=now,
            reset_time=now + window,
            user_agent=user_agent,
        )

    def is_window_expired(self, now: datetime, window: timedelta) -> bool:
        return now > self.window_start + window

    def is_reset_time_reached(self, now: datetime) -> bool:
        return now > self.reset_time

    def reset(self, now: datetime, window: timedelta) -> "RateLimitWindow":
        return replace(
            self,
            attempt_count=0,
            window_start=now,
            last_attempt=now,
            reset_time=now + window,
            is_blocked=False,
        )

    def incremented(self, now: datetime, user_agent: Optional[str] = None) -> "RateLimitWindow":
        return replace(
            self,
            attempt_count=self.attempt_count + 1,
            last_attempt=now,
            user_agent=user_agent or self.user_agent,
        )

    def blocked(self, now: datetime, block: timedelta) -> "RateLimitWindow":
        return replace(self, is_blocked=True, reset_time=now + block)

    def retry_after_seconds(self, now: datetime) -> int:
        remaining = (self.reset_time - now).total_seconds()
        if remaining <= 0:
            return 0
        whole = int(remaining)
        return whole if whole == remaining else whole + 1
