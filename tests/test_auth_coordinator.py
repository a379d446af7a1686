"""End-to-end tests of signup, login, token validation and logout."""

import pytest

from guardian.service.audit import AuditEventType
from guardian.service.auth import AuthCoordinator, IssuedToken, ValidatedToken
from guardian.service.errors import Denied, ErrorCategory, ErrorKind
from guardian.storage.errors import StoreUnavailable
from guardian.storage.models import Operation, RequestMeta

META = RequestMeta(ip_addr="203.0.113.7", user_agent="pytest", method="POST", endpoint="/api/auth/login")


@pytest.fixture
def registered(coordinator, tenant):
    issued = coordinator.signup("a@x.com", "pw", tenant.id, tenant.secret, meta=META)
    assert isinstance(issued, IssuedToken)
    return issued


class UnavailableUsers:
    def get_user_by_email(self, email, tenant_id):
        raise StoreUnavailable("connection refused", backend="postgres")

    def create_user(self, *args, **kwargs):
        raise StoreUnavailable("connection refused", backend="postgres")

    def get_user(self, user_id):
        raise StoreUnavailable("connection refused", backend="postgres")


class TestScenario:
    def test_login_then_validate_returns_same_session(self, coordinator, tenant, registered):
        issued = coordinator.login("a@x.com", "pw", tenant.id, tenant.secret, meta=META)
        assert isinstance(issued, IssuedToken)

        validated = coordinator.validate_token(issued.token, tenant.id, meta=META)

        assert isinstance(validated, ValidatedToken)
        assert validated.session_id == issued.session_id
        assert validated.user_id == issued.user_id
        assert validated.tenant_id == tenant.id

    def test_sixth_failed_login_is_blocked_for_fifteen_minutes(self, coordinator, tenant, registered):
        for _ in range(5):
            result = coordinator.login("a@x.com", "wrong", tenant.id, tenant.secret, meta=META)
            assert result.kind == ErrorKind.INVALID_PASSWORD

        sixth = coordinator.login("a@x.com", "wrong", tenant.id, tenant.secret, meta=META)

        assert isinstance(sixth, Denied)
        assert sixth.kind == ErrorKind.BLOCKED
        assert sixth.category == ErrorCategory.RATE_LIMIT
        assert sixth.retry_after_seconds == 900

        # Correct credentials do not get through while the block holds
        blocked = coordinator.login("a@x.com", "pw", tenant.id, tenant.secret, meta=META)
        assert blocked.kind == ErrorKind.BLOCKED

    def test_block_lifts_after_block_duration(self, coordinator, tenant, registered, clock):
        for _ in range(6):
            coordinator.login("a@x.com", "wrong", tenant.id, tenant.secret, meta=META)

        clock.advance(minutes=15, seconds=1)
        result = coordinator.login("a@x.com", "pw", tenant.id, tenant.secret, meta=META)

        assert isinstance(result, IssuedToken)

    def test_block_is_per_address(self, coordinator, tenant, registered):
        for _ in range(6):
            coordinator.login("a@x.com", "wrong", tenant.id, tenant.secret, meta=META)

        other = RequestMeta(ip_addr="198.51.100.9")
        assert isinstance(coordinator.login("a@x.com", "pw", tenant.id, tenant.secret, meta=other), IssuedToken)


class TestSignup:
    def test_duplicate_email_is_rejected(self, coordinator, tenant, registered):
        result = coordinator.signup("A@X.com", "other-pw", tenant.id, tenant.secret, meta=META)
        assert result.kind == ErrorKind.EMAIL_ALREADY_EXISTS

    def test_same_email_in_another_tenant(self, coordinator, tenants, tenant, registered):
        other = tenants.register("Other")
        result = coordinator.signup("a@x.com", "pw", other.id, other.secret, meta=META)
        assert isinstance(result, IssuedToken)
        assert result.user_id != registered.user_id

    def test_invalid_tenant_credentials(self, coordinator, tenant):
        result = coordinator.signup("b@x.com", "pw", tenant.id, "bad-key", meta=META)
        assert result.kind == ErrorKind.INVALID_TENANT_CREDENTIALS

    def test_email_is_normalised(self, coordinator, tenant, store):
        coordinator.signup("  Mixed@Example.COM ", "pw", tenant.id, tenant.secret, meta=META)
        assert store.get_user_by_email("mixed@example.com", tenant.id) is not None

    def test_empty_credentials_raise_without_counting_an_attempt(self, coordinator, tenant, store):
        with pytest.raises(ValueError):
            coordinator.signup("", "pw", tenant.id, tenant.secret, meta=META)
        with pytest.raises(ValueError):
            coordinator.signup("a@x.com", "", tenant.id, tenant.secret, meta=META)

        key = coordinator.rate_limiter.key_for(META.ip_addr, tenant.id, Operation.SIGNUP)
        assert store.get_rate_window(key) is None

    def test_password_is_stored_hashed(self, coordinator, tenant, store, registered):
        user = store.get_user(registered.user_id)
        assert user.password_hash != "pw"
        assert user.password_hash.startswith("$argon2id$")
        assert coordinator.verify_password(user, "pw")
        assert not coordinator.verify_password(user, "nope")


class TestLogin:
    def test_unknown_user(self, coordinator, tenant):
        result = coordinator.login("ghost@x.com", "pw", tenant.id, tenant.secret, meta=META)
        assert result.kind == ErrorKind.USER_NOT_FOUND

    def test_wrong_tenant_secret(self, coordinator, tenant, registered):
        result = coordinator.login("a@x.com", "pw", tenant.id, "bad-key", meta=META)
        assert result.kind == ErrorKind.INVALID_TENANT_CREDENTIALS

    def test_each_login_opens_a_new_session(self, coordinator, tenant, registered):
        first = coordinator.login("a@x.com", "pw", tenant.id, tenant.secret, meta=META)
        second = coordinator.login("A@x.com", "pw", tenant.id, tenant.secret, meta=META)
        assert first.session_id != second.session_id

    def test_store_outage_is_not_counted_as_failure(self, tenants, rate_limiter, sessions, tokens, audit, clock, tenant, store):
        coordinator = AuthCoordinator(
            tenants=tenants,
            rate_limiter=rate_limiter,
            sessions=sessions,
            tokens=tokens,
            users=UnavailableUsers(),
            audit=audit,
            clock=clock,
        )

        result = coordinator.login("a@x.com", "pw", tenant.id, tenant.secret, meta=META)

        assert result.kind == ErrorKind.STORE_UNAVAILABLE
        key = rate_limiter.key_for(META.ip_addr, tenant.id, Operation.LOGIN)
        assert store.get_rate_window(key).attempt_count == 0


class TestValidateToken:
    def test_tenant_mismatch(self, coordinator, tenants, tenant, registered):
        other = tenants.register("Other")
        result = coordinator.validate_token(registered.token, other.id, meta=META)
        assert result.kind == ErrorKind.SESSION_TENANT_MISMATCH

    def test_tenant_secret_is_checked_when_given(self, coordinator, tenant, registered):
        result = coordinator.validate_token(
            registered.token, tenant.id, tenant_secret="bad-key", meta=META
        )
        assert result.kind == ErrorKind.INVALID_TENANT_CREDENTIALS

        ok = coordinator.validate_token(
            registered.token, tenant.id, tenant_secret=tenant.secret, meta=META
        )
        assert isinstance(ok, ValidatedToken)

    def test_tampered_token_counts_as_failure(self, coordinator, tenant, registered, store):
        tampered = registered.token[:-2] + ("AA" if not registered.token.endswith("AA") else "BB")

        result = coordinator.validate_token(tampered, tenant.id, meta=META)

        assert result.kind == ErrorKind.TOKEN_SIGNATURE_INVALID
        key = coordinator.rate_limiter.key_for(META.ip_addr, tenant.id, Operation.TOKEN_VALIDATION)
        assert store.get_rate_window(key).attempt_count == 1

    def test_idle_session_is_not_counted_as_failure(self, coordinator, tenant, registered, store, clock):
        clock.advance(minutes=31)

        result = coordinator.validate_token(registered.token, tenant.id, meta=META)

        assert result.kind == ErrorKind.SESSION_IDLE_TIMEOUT
        key = coordinator.rate_limiter.key_for(META.ip_addr, tenant.id, Operation.TOKEN_VALIDATION)
        assert store.get_rate_window(key).attempt_count == 0

    def test_expired_token(self, coordinator, tenant, registered, clock):
        for _ in range(2):
            clock.advance(minutes=20)
            assert coordinator.validate_token(registered.token, tenant.id, meta=META)
        clock.advance(minutes=19, seconds=59)
        assert coordinator.validate_token(registered.token, tenant.id, meta=META)

        clock.advance(seconds=1)
        result = coordinator.validate_token(registered.token, tenant.id, meta=META)

        assert result.kind == ErrorKind.TOKEN_EXPIRED

    def test_validation_is_rate_limited(self, coordinator, tenant, registered):
        for _ in range(5):
            coordinator.validate_token("garbage", tenant.id, meta=META)

        result = coordinator.validate_token(registered.token, tenant.id, meta=META)

        assert result.category == ErrorCategory.RATE_LIMIT
        assert result.retry_after_seconds == 900


class TestLogout:
    def test_logout_deactivates_session(self, coordinator, tenant, registered):
        result = coordinator.logout(registered.token, tenant.id, meta=META)
        assert result.session_id == registered.session_id

        after = coordinator.validate_token(registered.token, tenant.id, meta=META)
        assert after.kind == ErrorKind.SESSION_INACTIVE

    def test_logout_with_foreign_tenant(self, coordinator, tenants, tenant, registered):
        other = tenants.register("Other")
        result = coordinator.logout(registered.token, other.id, meta=META)
        assert result.kind == ErrorKind.SESSION_TENANT_MISMATCH

    def test_logout_all_closes_every_session(self, coordinator, tenant, registered):
        second = coordinator.login("a@x.com", "pw", tenant.id, tenant.secret, meta=META)

        closed = coordinator.logout_all(second.token, tenant.id, meta=META)

        assert closed == 2
        for token in (registered.token, second.token):
            assert coordinator.validate_token(token, tenant.id, meta=META).kind == ErrorKind.SESSION_INACTIVE


class TestAuditTrail:
    def test_outcomes_are_audited(self, coordinator, tenant, registered, audit, audit_sink):
        coordinator.login("a@x.com", "wrong", tenant.id, tenant.secret, meta=META)
        coordinator.login("a@x.com", "pw", tenant.id, tenant.secret, meta=META)
        coordinator.logout(registered.token, tenant.id, meta=META)
        audit.shutdown(wait=True)

        signup = audit_sink.of_type(AuditEventType.SIGNUP_SUCCESS)
        assert len(signup) == 1
        assert signup[0].user_email == "a@x.com"
        assert signup[0].session_id == registered.session_id
        assert signup[0].ip_addr == META.ip_addr

        failure = audit_sink.of_type(AuditEventType.LOGIN_FAILURE)
        assert failure[0].status_code == 401
        assert failure[0].error_code == "invalid_password"

        assert len(audit_sink.of_type(AuditEventType.LOGIN_SUCCESS)) == 1
        assert len(audit_sink.of_type(AuditEventType.LOGOUT)) == 1

    def test_rate_limited_attempt_is_audited_with_429(self, coordinator, tenant, registered, audit, audit_sink):
        for _ in range(6):
            coordinator.login("a@x.com", "wrong", tenant.id, tenant.secret, meta=META)
        audit.shutdown(wait=True)

        statuses = [e.status_code for e in audit_sink.of_type(AuditEventType.LOGIN_FAILURE)]
        assert sorted(statuses) == [401] * 5 + [429]
