from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from guardian.logging import get_logger
from guardian.storage.errors import ConstraintViolation
from guardian.storage.models import (
    RateLimitKey,
    RateLimitWindow,
    Session,
    Tenant,
    UserAccount,
    utcnow,
)


class MemoryStore:
    """In-process store for tenants, users, sessions and rate limit windows.

    Used for tests and single-node development. Every public method takes
    ``_data_lock`` so compound read-modify-write operations are atomic.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.tenants: Dict[str, Tenant] = {}
        self.users: Dict[str, UserAccount] = {}
        self.sessions: Dict[str, Session] = {}
        self.rate_windows: Dict[str, RateLimitWindow] = {}
        self._user_index: Dict[Tuple[str, str], str] = {}
        self._data_lock = threading.RLock()

    # tenants
    def create_tenant(self, tenant: Tenant) -> Tenant:
        with self._data_lock:
            if tenant.id in self.tenants:
                raise ConstraintViolation("tenant already exists", {"tenant_id": tenant.id})
            self.tenants[tenant.id] = tenant
            return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            return self.tenants.get(tenant_id)

    def list_tenants(self) -> List[Tenant]:
        with self._data_lock:
            return sorted(self.tenants.values(), key=lambda t: t.created_at)

    def update_tenant_secret(
        self, tenant_id: str, secret: str, *, updated_at: Optional[datetime] = None
    ) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            if not tenant:
                return None
            updated = replace(tenant, secret=secret, updated_at=updated_at or utcnow())
            self.tenants[tenant_id] = updated
            return updated

    # users
    def create_user(
        self,
        email: str,
        tenant_id: str,
        password_hash: str,
        *,
        password_algo: str = "argon2id",
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> UserAccount:
        with self._data_lock:
            index_key = (tenant_id, email)
            if index_key in self._user_index:
                raise ConstraintViolation(
                    "email already exists", {"field": "email", "tenant_id": tenant_id}
                )
            user = UserAccount(
                id=str(uuid.uuid4()),
                email=email,
                tenant_id=tenant_id,
                password_hash=password_hash,
                password_algo=password_algo,
                first_name=first_name,
                last_name=last_name,
            )
            self.users[user.id] = user
            self._user_index[index_key] = user.id
            return user

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str, tenant_id: str) -> Optional[UserAccount]:
        with self._data_lock:
            user_id = self._user_index.get((tenant_id, email))
            return self.users.get(user_id) if user_id else None

    # sessions
    def insert_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            self.sessions[session.id] = session
            return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def touch_session(self, session_id: str, at: datetime) -> Optional[Session]:
        """Advance ``last_activity_at`` for an active session.

        Returns the stored record after the update, or ``None`` when the
        session does not exist. Inactive sessions are returned unchanged.
        """
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return None
            if sess.is_active and at > sess.last_activity_at:
                sess = sess.touched(at)
                self.sessions[session_id] = sess
            return sess

    def deactivate_session(self, session_id: str) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active:
                return False
            self.sessions[session_id] = sess.deactivated()
            return True

    def deactivate_user_sessions(self, user_id: str) -> List[str]:
        with self._data_lock:
            affected = [
                sid
                for sid, sess in self.sessions.items()
                if sess.user_id == user_id and sess.is_active
            ]
            for sid in affected:
                self.sessions[sid] = self.sessions[sid].deactivated()
            return affected

    def find_expired_sessions(self, now: datetime) -> List[Session]:
        with self._data_lock:
            return [s for s in self.sessions.values() if s.is_active and s.expires_at < now]

    def find_idle_sessions(self, now: datetime, default_idle_minutes: int) -> List[Session]:
        with self._data_lock:
            results = []
            for s in self.sessions.values():
                tenant = self.tenants.get(s.tenant_id)
                idle_minutes = tenant.idle_timeout_minutes if tenant else default_idle_minutes
                if s.is_active and s.is_idle(now, idle_minutes):
                    results.append(s)
            return results

    def purge_sessions(self, now: datetime, created_before: datetime) -> List[str]:
        with self._data_lock:
            stale = [
                sid
                for sid, s in self.sessions.items()
                if (not s.is_active or s.expires_at < now) and s.created_at < created_before
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            return stale

    # rate limit windows
    def get_rate_window(self, key: RateLimitKey) -> Optional[RateLimitWindow]:
        with self._data_lock:
            return self.rate_windows.get(key.as_string())

    def update_rate_window(
        self,
        key: RateLimitKey,
        mutate: Callable[[Optional[RateLimitWindow]], RateLimitWindow],
    ) -> RateLimitWindow:
        with self._data_lock:
            updated = mutate(self.rate_windows.get(key.as_string()))
            self.rate_windows[key.as_string()] = updated
            return updated

    def delete_stale_rate_windows(self, now: datetime, last_attempt_before: datetime) -> int:
        with self._data_lock:
            stale = [
                name
                for name, window in self.rate_windows.items()
                if window.last_attempt < last_attempt_before
                and not (window.is_blocked and window.reset_time > now)
            ]
            for name in stale:
                self.rate_windows.pop(name, None)
            return len(stale)
