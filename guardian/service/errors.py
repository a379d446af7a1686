from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict


class ErrorCategory(str, Enum):
    CREDENTIAL = "credential"
    RATE_LIMIT = "rate_limit"
    TOKEN = "token"
    SESSION = "session"
    INFRASTRUCTURE = "infrastructure"


class ErrorKind(str, Enum):
    """Stable reasons an auth operation can be refused."""

    INVALID_TENANT_CREDENTIALS = "invalid_tenant_credentials"
    USER_NOT_FOUND = "user_not_found"
    INVALID_PASSWORD = "invalid_password"
    EMAIL_ALREADY_EXISTS = "email_already_exists"
    THROTTLED = "throttled"
    BLOCKED = "blocked"
    TOKEN_MALFORMED = "token_malformed"
    TOKEN_SIGNATURE_INVALID = "token_signature_invalid"
    TOKEN_EXPIRED = "token_expired"
    SESSION_NOT_FOUND = "session_not_found"
    SESSION_INACTIVE = "session_inactive"
    SESSION_TENANT_MISMATCH = "session_tenant_mismatch"
    SESSION_EXPIRED = "session_expired"
    SESSION_IDLE_TIMEOUT = "session_idle_timeout"
    STORE_UNAVAILABLE = "store_unavailable"

    @property
    def category(self) -> ErrorCategory:
        return _CATEGORIES[self]


_CATEGORIES: Dict[ErrorKind, ErrorCategory] = {
    ErrorKind.INVALID_TENANT_CREDENTIALS: ErrorCategory.CREDENTIAL,
    ErrorKind.USER_NOT_FOUND: ErrorCategory.CREDENTIAL,
    ErrorKind.INVALID_PASSWORD: ErrorCategory.CREDENTIAL,
    ErrorKind.EMAIL_ALREADY_EXISTS: ErrorCategory.CREDENTIAL,
    ErrorKind.THROTTLED: ErrorCategory.RATE_LIMIT,
    ErrorKind.BLOCKED: ErrorCategory.RATE_LIMIT,
    ErrorKind.TOKEN_MALFORMED: ErrorCategory.TOKEN,
    ErrorKind.TOKEN_SIGNATURE_INVALID: ErrorCategory.TOKEN,
    ErrorKind.TOKEN_EXPIRED: ErrorCategory.TOKEN,
    ErrorKind.SESSION_NOT_FOUND: ErrorCategory.SESSION,
    ErrorKind.SESSION_INACTIVE: ErrorCategory.SESSION,
    ErrorKind.SESSION_TENANT_MISMATCH: ErrorCategory.SESSION,
    ErrorKind.SESSION_EXPIRED: ErrorCategory.SESSION,
    ErrorKind.SESSION_IDLE_TIMEOUT: ErrorCategory.SESSION,
    ErrorKind.STORE_UNAVAILABLE: ErrorCategory.INFRASTRUCTURE,
}

# Status hints recorded on audit events and used by the HTTP layer
_STATUS_HINTS: Dict[ErrorKind, int] = {
    ErrorKind.INVALID_TENANT_CREDENTIALS: 401,
    ErrorKind.USER_NOT_FOUND: 401,
    ErrorKind.INVALID_PASSWORD: 401,
    ErrorKind.EMAIL_ALREADY_EXISTS: 409,
    ErrorKind.THROTTLED: 429,
    ErrorKind.BLOCKED: 429,
    ErrorKind.STORE_UNAVAILABLE: 503,
}


def status_hint(kind: ErrorKind) -> int:
    """Return the HTTP status conventionally paired with ``kind``."""
    return _STATUS_HINTS.get(kind, 401)


_DEFAULT_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.INVALID_TENANT_CREDENTIALS: "invalid client credentials",
    ErrorKind.USER_NOT_FOUND: "invalid credentials",
    ErrorKind.INVALID_PASSWORD: "invalid credentials",
    ErrorKind.EMAIL_ALREADY_EXISTS: "signup failed",
    ErrorKind.THROTTLED: "too many requests",
    ErrorKind.BLOCKED: "too many requests",
    ErrorKind.STORE_UNAVAILABLE: "service temporarily unavailable",
}


@dataclass(frozen=True)
class Denied:
    """Refusal returned by core auth operations.

    Instances are falsy so callers can write ``if not result:``.
    """

    kind: ErrorKind
    message: str = ""
    retry_after_seconds: int = 0

    def __bool__(self) -> bool:
        return False

    @property
    def category(self) -> ErrorCategory:
        return self.kind.category

    @property
    def public_message(self) -> str:
        return _DEFAULT_MESSAGES.get(self.kind, "invalid or expired token")


class AuthDeniedError(Exception):
    """Raised by the HTTP layer to turn a ``Denied`` into an error response."""

    def __init__(self, denied: Denied) -> None:
        super().__init__(denied.message or denied.kind.value)
        self.denied = denied


__all__ = [
    "AuthDeniedError",
    "Denied",
    "ErrorCategory",
    "ErrorKind",
    "status_hint",
]
