from __future__ import annotations

import hmac
import secrets
import string
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol

from guardian.logging import get_logger
from guardian.service.audit import AuditDispatcher, AuditEventType
from guardian.storage.errors import ConstraintViolation
from guardian.storage.models import RequestMeta, Tenant, utcnow

logger = get_logger(__name__)

TENANT_ID_LENGTH = 6
_TENANT_ID_ALPHABET = string.ascii_uppercase + string.digits
_MAX_ID_ATTEMPTS = 10
MIN_IDLE_TIMEOUT_MINUTES = 1


class TenantStore(Protocol):
    def create_tenant(self, tenant: Tenant) -> Tenant:
        ...

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        ...

    def list_tenants(self) -> List[Tenant]:
        ...

    def update_tenant_secret(
        self, tenant_id: str, secret: str, *, updated_at: Optional[datetime] = None
    ) -> Optional[Tenant]:
        ...


def generate_tenant_id() -> str:
    return "".join(secrets.choice(_TENANT_ID_ALPHABET) for _ in range(TENANT_ID_LENGTH))


def generate_tenant_secret() -> str:
    """Return 32 random bytes as unpadded URL-safe base64."""
    return secrets.token_urlsafe(32)


class TenantRegistry:
    """Authoritative view of tenant credentials with a write-through cache.

    ``validate`` is on every request path so tenants are cached after the
    first lookup. Secret rotation updates the store and replaces the cache
    entry while holding the cache lock.
    """

    def __init__(
        self,
        store: TenantStore,
        *,
        default_idle_timeout_minutes: int = 30,
        audit: Optional[AuditDispatcher] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.default_idle_timeout_minutes = default_idle_timeout_minutes
        self.audit = audit
        self._clock = clock
        self._cache: Dict[str, Tenant] = {}
        self._lock = threading.Lock()

    def _lookup(self, tenant_id: str) -> Optional[Tenant]:
        with self._lock:
            cached = self._cache.get(tenant_id)
        if cached:
            return cached
        tenant = self.store.get_tenant(tenant_id)
        if not tenant:
            return None
        with self._lock:
            # A rotation may have landed while the store read was in flight
            return self._cache.setdefault(tenant_id, tenant)

    def validate(self, tenant_id: Optional[str], secret: Optional[str]) -> bool:
        if not tenant_id or not secret:
            return False
        try:
            tenant = self._lookup(tenant_id)
        except Exception as exc:
            logger.error("tenant_lookup_failed", tenant_id=tenant_id, error=str(exc))
            return False
        if not tenant:
            return False
        return hmac.compare_digest(tenant.secret.encode(), secret.encode())

    def get(self, tenant_id: str) -> Optional[Tenant]:
        return self._lookup(tenant_id)

    def idle_timeout_minutes(self, tenant_id: str) -> int:
        try:
            tenant = self._lookup(tenant_id)
        except Exception as exc:
            logger.warning("tenant_idle_timeout_lookup_failed", tenant_id=tenant_id, error=str(exc))
            tenant = None
        if tenant and tenant.idle_timeout_minutes:
            return tenant.idle_timeout_minutes
        return self.default_idle_timeout_minutes

    def invalidate(self, tenant_id: str) -> None:
        with self._lock:
            self._cache.pop(tenant_id, None)

    def list_tenants(self) -> List[Tenant]:
        return self.store.list_tenants()

    def register(
        self,
        name: str,
        *,
        description: Optional[str] = None,
        idle_timeout_minutes: Optional[int] = None,
        meta: Optional[RequestMeta] = None,
    ) -> Tenant:
        if not name or not name.strip():
            raise ValueError("tenant name is required")
        idle = idle_timeout_minutes or self.default_idle_timeout_minutes
        if idle < MIN_IDLE_TIMEOUT_MINUTES:
            raise ValueError(f"idle timeout must be at least {MIN_IDLE_TIMEOUT_MINUTES} minute")
        for _ in range(_MAX_ID_ATTEMPTS):
            tenant = Tenant(
                id=generate_tenant_id(),
                secret=generate_tenant_secret(),
                name=name.strip(),
                description=description,
                idle_timeout_minutes=idle,
                created_at=self._clock(),
            )
            try:
                created = self.store.create_tenant(tenant)
            except ConstraintViolation:
                logger.info("tenant_id_collision", tenant_id=tenant.id)
                continue
            with self._lock:
                self._cache[created.id] = created
            logger.info("tenant_registered", tenant_id=created.id, name=created.name)
            self._emit(AuditEventType.CLIENT_REGISTRATION, created.id, 200, meta=meta)
            return created
        raise RuntimeError("could not allocate a unique tenant id")

    def rotate_secret(
        self, tenant_id: str, *, meta: Optional[RequestMeta] = None
    ) -> Optional[str]:
        """Replace a tenant's secret; the previous one stops validating at once.

        Returns the new secret, or ``None`` when the tenant does not exist.
        """
        new_secret = generate_tenant_secret()
        with self._lock:
            updated = self.store.update_tenant_secret(
                tenant_id, new_secret, updated_at=self._clock()
            )
            if updated:
                self._cache[tenant_id] = updated
            else:
                self._cache.pop(tenant_id, None)
        if not updated:
            logger.warning("tenant_rotation_unknown_tenant", tenant_id=tenant_id)
            self._emit(
                AuditEventType.CLIENT_KEY_ROTATION_FAILED,
                tenant_id,
                404,
                error_code="tenant_not_found",
                meta=meta,
            )
            return None
        logger.info("tenant_secret_rotated", tenant_id=tenant_id)
        self._emit(AuditEventType.CLIENT_KEY_ROTATION_SUCCESS, tenant_id, 200, meta=meta)
        return new_secret

    def _emit(
        self,
        event_type: AuditEventType,
        tenant_id: str,
        status_code: int,
        *,
        error_code: Optional[str] = None,
        meta: Optional[RequestMeta] = None,
    ) -> None:
        if self.audit is None:
            return
        self.audit.emit(
            event_type,
            tenant_id=tenant_id,
            status_code=status_code,
            error_code=error_code,
            meta=meta,
        )


__all__ = [
    "MIN_IDLE_TIMEOUT_MINUTES",
    "TENANT_ID_LENGTH",
    "TenantRegistry",
    "TenantStore",
    "generate_tenant_id",
    "generate_tenant_secret",
]
