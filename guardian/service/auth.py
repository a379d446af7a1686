from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Protocol, Union

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from guardian.logging import get_logger
from guardian.service.audit import AuditDispatcher, AuditEventType
from guardian.service.errors import Denied, ErrorCategory, ErrorKind, status_hint
from guardian.service.rate_limit import RateLimiter
from guardian.service.sessions import SessionManager
from guardian.service.tenants import TenantRegistry
from guardian.service.tokens import TokenClaims, TokenCodec
from guardian.storage.errors import ConstraintViolation, StoreUnavailable
from guardian.storage.models import (
    Operation,
    RateLimitKey,
    RequestMeta,
    UserAccount,
    utcnow,
)

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"

# Token failures that suggest forgery rather than an ordinary stale token
_TAMPERING_KINDS = frozenset({ErrorKind.TOKEN_MALFORMED, ErrorKind.TOKEN_SIGNATURE_INVALID})


class UserStore(Protocol):
    def create_user(
        self,
        email: str,
        tenant_id: str,
        password_hash: str,
        *,
        password_algo: str = PASSWORD_ALGO,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> UserAccount:
        ...

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        ...

    def get_user_by_email(self, email: str, tenant_id: str) -> Optional[UserAccount]:
        ...


@dataclass(frozen=True)
class IssuedToken:
    token: str
    user_id: str
    tenant_id: str
    session_id: str
    expires_at: datetime


@dataclass(frozen=True)
class ValidatedToken:
    user_id: str
    tenant_id: str
    session_id: str


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class AuthCoordinator:
    """Runs signup, login, token validation and logout end to end.

    Every entry point checks the rate limiter first. Credential and rate
    limit failures on signup and login count against the caller's window and
    produce a failure audit event. Outcomes are returned as values; only
    programming errors propagate.
    """

    def __init__(
        self,
        *,
        tenants: TenantRegistry,
        rate_limiter: RateLimiter,
        sessions: SessionManager,
        tokens: TokenCodec,
        users: UserStore,
        audit: AuditDispatcher,
        password_hasher: Optional[PasswordHasher] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.tenants = tenants
        self.rate_limiter = rate_limiter
        self.sessions = sessions
        self.tokens = tokens
        self.users = users
        self.audit = audit
        self._pwd_hasher = password_hasher or PasswordHasher(type=Type.ID)
        self._clock = clock

    # password helpers
    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, user: UserAccount, password: str) -> bool:
        if user.password_algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user.id, algo=user.password_algo)
            return False
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    # entry points
    def signup(
        self,
        email: str,
        password: str,
        tenant_id: str,
        tenant_secret: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        meta: Optional[RequestMeta] = None,
    ) -> Union[IssuedToken, Denied]:
        """Register a user and open their first session.

        Outcomes a caller can cause come back as ``Denied``. An empty email or
        password is a programming error instead: request schemas reject it
        first, so it raises ``ValueError`` without touching the rate limiter.
        """
        meta = meta or RequestMeta()
        email = normalize_email(email)
        if not email or not password:
            raise ValueError("email and password are required")
        now = self._clock()
        key = RateLimiter.key_for(meta.ip_addr, tenant_id, Operation.SIGNUP)

        decision = self.rate_limiter.check(key, now, meta.user_agent)
        if not decision:
            return self._fail(AuditEventType.SIGNUP_FAILURE, key, decision.as_denied(), email, meta, now)

        try:
            result = self._signup(email, password, tenant_id, tenant_secret, first_name, last_name, meta, now)
        except StoreUnavailable as exc:
            result = Denied(ErrorKind.STORE_UNAVAILABLE, str(exc))
        if isinstance(result, Denied):
            return self._fail(AuditEventType.SIGNUP_FAILURE, key, result, email, meta, now)

        self._emit(AuditEventType.SIGNUP_SUCCESS, email, tenant_id, meta, session_id=result.session_id)
        logger.info("signup_success", user_id=result.user_id, tenant_id=tenant_id)
        return result

    def _signup(
        self,
        email: str,
        password: str,
        tenant_id: str,
        tenant_secret: str,
        first_name: Optional[str],
        last_name: Optional[str],
        meta: RequestMeta,
        now: datetime,
    ) -> Union[IssuedToken, Denied]:
        if not self.tenants.validate(tenant_id, tenant_secret):
            return Denied(ErrorKind.INVALID_TENANT_CREDENTIALS, "invalid client credentials")
        if self.users.get_user_by_email(email, tenant_id):
            return Denied(ErrorKind.EMAIL_ALREADY_EXISTS, "email already registered")
        try:
            user = self.users.create_user(
                email,
                tenant_id,
                self.hash_password(password),
                password_algo=PASSWORD_ALGO,
                first_name=first_name,
                last_name=last_name,
            )
        except ConstraintViolation:
            # Lost a race with a concurrent signup for the same address
            return Denied(ErrorKind.EMAIL_ALREADY_EXISTS, "email already registered")
        return self._issue(user, meta, now)

    def login(
        self,
        email: str,
        password: str,
        tenant_id: str,
        tenant_secret: str,
        *,
        meta: Optional[RequestMeta] = None,
    ) -> Union[IssuedToken, Denied]:
        meta = meta or RequestMeta()
        email = normalize_email(email)
        now = self._clock()
        key = RateLimiter.key_for(meta.ip_addr, tenant_id, Operation.LOGIN)

        decision = self.rate_limiter.check(key, now, meta.user_agent)
        if not decision:
            return self._fail(AuditEventType.LOGIN_FAILURE, key, decision.as_denied(), email, meta, now)

        try:
            result = self._login(email, password, tenant_id, tenant_secret, meta, now)
        except StoreUnavailable as exc:
            result = Denied(ErrorKind.STORE_UNAVAILABLE, str(exc))
        if isinstance(result, Denied):
            return self._fail(AuditEventType.LOGIN_FAILURE, key, result, email, meta, now)

        self._emit(AuditEventType.LOGIN_SUCCESS, email, tenant_id, meta, session_id=result.session_id)
        logger.info("login_success", user_id=result.user_id, tenant_id=tenant_id)
        return result

    def _login(
        self,
        email: str,
        password: str,
        tenant_id: str,
        tenant_secret: str,
        meta: RequestMeta,
        now: datetime,
    ) -> Union[IssuedToken, Denied]:
        if not self.tenants.validate(tenant_id, tenant_secret):
            return Denied(ErrorKind.INVALID_TENANT_CREDENTIALS, "invalid client credentials")
        user = self.users.get_user_by_email(email, tenant_id) if email else None
        if not user:
            return Denied(ErrorKind.USER_NOT_FOUND, "user not found")
        if not password or not self.verify_password(user, password):
            return Denied(ErrorKind.INVALID_PASSWORD, "invalid password")
        return self._issue(user, meta, now)

    def validate_token(
        self,
        token: str,
        tenant_id: str,
        *,
        tenant_secret: Optional[str] = None,
        meta: Optional[RequestMeta] = None,
    ) -> Union[ValidatedToken, Denied]:
        """Check a bearer token and the session behind it.

        When ``tenant_secret`` is given the tenant credentials are verified
        too. Only rate limit denials and forged-looking tokens count as
        failed attempts: backends validating on behalf of many users must
        not be blocked because some of those users went idle.
        """
        meta = meta or RequestMeta()
        now = self._clock()
        key = RateLimiter.key_for(meta.ip_addr, tenant_id, Operation.TOKEN_VALIDATION)

        decision = self.rate_limiter.check(key, now, meta.user_agent)
        if not decision:
            self.rate_limiter.record_failure(key, now, meta.user_agent)
            return decision.as_denied()

        if tenant_secret is not None and not self.tenants.validate(tenant_id, tenant_secret):
            self.rate_limiter.record_failure(key, now, meta.user_agent)
            return Denied(ErrorKind.INVALID_TENANT_CREDENTIALS, "invalid client credentials")

        claims = self.tokens.verify(token, now)
        if isinstance(claims, Denied):
            if claims.kind in _TAMPERING_KINDS:
                self.rate_limiter.record_failure(key, now, meta.user_agent)
            return claims

        checked = self._check_session(claims, tenant_id, now)
        if isinstance(checked, Denied):
            logger.info(
                "token_session_rejected",
                session_id=claims.session_id,
                kind=checked.kind.value,
            )
        return checked

    def _check_session(
        self, claims: TokenClaims, tenant_id: str, now: datetime
    ) -> Union[ValidatedToken, Denied]:
        if claims.tenant_id != tenant_id:
            return Denied(ErrorKind.SESSION_TENANT_MISMATCH, "token issued for another tenant")
        try:
            session = self.sessions.validate(claims.session_id, tenant_id, now)
        except StoreUnavailable as exc:
            return Denied(ErrorKind.STORE_UNAVAILABLE, str(exc))
        if isinstance(session, Denied):
            return session
        if session.user_id != claims.user_id:
            return Denied(ErrorKind.SESSION_NOT_FOUND, "session does not belong to token subject")
        return ValidatedToken(
            user_id=session.user_id,
            tenant_id=session.tenant_id,
            session_id=session.id,
        )

    def logout(
        self,
        token: str,
        tenant_id: str,
        *,
        meta: Optional[RequestMeta] = None,
    ) -> Union[ValidatedToken, Denied]:
        meta = meta or RequestMeta()
        now = self._clock()
        claims = self.tokens.verify(token, now)
        if isinstance(claims, Denied):
            return claims
        if claims.tenant_id != tenant_id:
            return Denied(ErrorKind.SESSION_TENANT_MISMATCH, "token issued for another tenant")
        try:
            self.sessions.deactivate(claims.session_id)
        except StoreUnavailable as exc:
            return Denied(ErrorKind.STORE_UNAVAILABLE, str(exc))
        self._emit(AuditEventType.LOGOUT, None, tenant_id, meta, session_id=claims.session_id)
        return ValidatedToken(
            user_id=claims.user_id,
            tenant_id=claims.tenant_id,
            session_id=claims.session_id,
        )

    def logout_all(
        self,
        token: str,
        tenant_id: str,
        *,
        meta: Optional[RequestMeta] = None,
    ) -> Union[int, Denied]:
        """Deactivate every session of the token's user; the token must still be valid."""
        validated = self.validate_token(token, tenant_id, meta=meta)
        if isinstance(validated, Denied):
            return validated
        try:
            count = self.sessions.deactivate_all_for_user(validated.user_id)
        except StoreUnavailable as exc:
            return Denied(ErrorKind.STORE_UNAVAILABLE, str(exc))
        self._emit(
            AuditEventType.LOGOUT_ALL, None, tenant_id, meta or RequestMeta(), session_id=validated.session_id
        )
        return count

    # helpers
    def _issue(self, user: UserAccount, meta: RequestMeta, now: datetime) -> IssuedToken:
        session = self.sessions.create(user.id, user.tenant_id, meta, now)
        token = self.tokens.issue(user.id, user.tenant_id, session.id, now)
        return IssuedToken(
            token=token,
            user_id=user.id,
            tenant_id=user.tenant_id,
            session_id=session.id,
            expires_at=self.tokens.expires_at(now),
        )

    def _fail(
        self,
        event_type: AuditEventType,
        key: RateLimitKey,
        denied: Denied,
        email: str,
        meta: RequestMeta,
        now: datetime,
    ) -> Denied:
        if denied.category in (ErrorCategory.CREDENTIAL, ErrorCategory.RATE_LIMIT):
            self.rate_limiter.record_failure(key, now, meta.user_agent)
        logger.info(
            "auth_attempt_failed",
            operation=key.operation.value,
            tenant_id=key.tenant_id,
            kind=denied.kind.value,
        )
        self._emit(
            event_type,
            email,
            key.tenant_id,
            meta,
            status_code=status_hint(denied.kind),
            error_code=denied.kind.value,
        )
        return denied

    def _emit(
        self,
        event_type: AuditEventType,
        email: Optional[str],
        tenant_id: Optional[str],
        meta: RequestMeta,
        *,
        status_code: int = 200,
        error_code: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> None:
        self.audit.emit(
            event_type,
            tenant_id=tenant_id,
            status_code=status_code,
            user_email=email,
            error_code=error_code,
            meta=meta,
            session_id=session_id,
        )


__all__ = [
    "AuthCoordinator",
    "IssuedToken",
    "UserStore",
    "ValidatedToken",
    "normalize_email",
]
