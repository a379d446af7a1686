from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Protocol, Union

from guardian.logging import get_logger
from guardian.service.errors import Denied, ErrorKind
from guardian.service.maintenance import PeriodicTask
from guardian.service.tenants import TenantRegistry
from guardian.storage.models import RequestMeta, Session, utcnow

logger = get_logger(__name__)

DEFAULT_CACHE_MAX_ENTRIES = 10000


class SessionStore(Protocol):
    def insert_session(self, session: Session) -> Session:
        ...

    def get_session(self, session_id: str) -> Optional[Session]:
        ...

    def touch_session(self, session_id: str, at: datetime) -> Optional[Session]:
        ...

    def deactivate_session(self, session_id: str) -> bool:
        ...

    def deactivate_user_sessions(self, user_id: str) -> List[str]:
        ...

    def find_expired_sessions(self, now: datetime) -> List[Session]:
        ...

    def find_idle_sessions(self, now: datetime, default_idle_minutes: int) -> List[Session]:
        """Active sessions idle past their tenant's timeout, or the default."""
        ...

    def purge_sessions(self, now: datetime, created_before: datetime) -> List[str]:
        ...


class SessionCache:
    """Lock-guarded map of session id to the last known session record.

    The cache only accelerates reads; the store decides. The background
    sweep removes expired or inactive entries and never rewrites live ones.
    """

    def __init__(
        self,
        *,
        max_entries: int = DEFAULT_CACHE_MAX_ENTRIES,
        sweep_interval_seconds: float = 300,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.max_entries = max_entries
        self._clock = clock
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()
        self._sweeper = PeriodicTask("session-cache-sweep", self.sweep, sweep_interval_seconds)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(session_id)

    def put(self, session: Session) -> Session:
        with self._lock:
            if session.id not in self._sessions and len(self._sessions) >= self.max_entries:
                # Drop roughly a tenth of the entries, soonest to expire first
                ordered = sorted(self._sessions.values(), key=lambda s: s.expires_at)
                for stale in ordered[: max(1, self.max_entries // 10)]:
                    self._sessions.pop(stale.id, None)
            self._sessions[session.id] = session
            return session

    def evict(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def sweep(self, now: Optional[datetime] = None) -> int:
        now = now or self._clock()
        with self._lock:
            stale = [
                sid
                for sid, sess in self._sessions.items()
                if not sess.is_active or sess.is_expired(now)
            ]
            for sid in stale:
                del self._sessions[sid]
        if stale:
            logger.debug("session_cache_swept", removed=len(stale))
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()

    def start(self) -> None:
        self._sweeper.start()

    def stop(self) -> None:
        self._sweeper.stop()


class SessionManager:
    """Creates, validates and retires sessions.

    Validation reads through the cache but every activity update goes to the
    store as a conditional write, so a session deactivated elsewhere cannot be
    revived by a stale cache entry.
    """

    def __init__(
        self,
        store: SessionStore,
        cache: SessionCache,
        tenants: TenantRegistry,
        *,
        ttl_minutes: int = 60,
        retention: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.cache = cache
        self.tenants = tenants
        self.ttl_minutes = ttl_minutes
        self.retention = retention
        self._clock = clock

    def create(
        self,
        user_id: str,
        tenant_id: str,
        meta: Optional[RequestMeta] = None,
        now: Optional[datetime] = None,
    ) -> Session:
        session = Session.new(
            user_id,
            tenant_id,
            self.ttl_minutes,
            now=now or self._clock(),
            meta=meta,
        )
        self.store.insert_session(session)
        self.cache.put(session)
        logger.info("session_created", session_id=session.id, tenant_id=tenant_id)
        return session

    def get(self, session_id: str) -> Optional[Session]:
        cached = self.cache.get(session_id)
        if cached:
            return cached
        session = self.store.get_session(session_id)
        if session:
            self.cache.put(session)
        return session

    def validate(
        self, session_id: str, tenant_id: str, now: Optional[datetime] = None
    ) -> Union[Session, Denied]:
        now = now or self._clock()
        session = self.get(session_id)
        if session is None:
            return Denied(ErrorKind.SESSION_NOT_FOUND, "session not found")
        if not session.is_active:
            self.cache.evict(session_id)
            return Denied(ErrorKind.SESSION_INACTIVE, "session inactive")
        if session.tenant_id != tenant_id:
            logger.warning(
                "session_tenant_mismatch",
                session_id=session_id,
                expected=tenant_id,
                actual=session.tenant_id,
            )
            return Denied(ErrorKind.SESSION_TENANT_MISMATCH, "session belongs to another tenant")
        if session.is_expired(now):
            self.deactivate(session_id)
            return Denied(ErrorKind.SESSION_EXPIRED, "session expired")
        idle_minutes = self.tenants.idle_timeout_minutes(session.tenant_id)
        if session.is_idle(now, idle_minutes):
            # Another worker may have recorded activity the local cache has not seen
            stored = self.store.get_session(session_id)
            if stored is None:
                self.cache.evict(session_id)
                return Denied(ErrorKind.SESSION_NOT_FOUND, "session not found")
            if not stored.is_active:
                self.cache.evict(session_id)
                return Denied(ErrorKind.SESSION_INACTIVE, "session inactive")
            if stored.is_idle(now, idle_minutes):
                self.deactivate(session_id)
                logger.info("session_idle_timeout", session_id=session_id, idle_minutes=idle_minutes)
                return Denied(ErrorKind.SESSION_IDLE_TIMEOUT, "session idle timeout exceeded")

        current = self.store.touch_session(session_id, now)
        if current is None:
            self.cache.evict(session_id)
            return Denied(ErrorKind.SESSION_NOT_FOUND, "session not found")
        if not current.is_active:
            self.cache.evict(session_id)
            return Denied(ErrorKind.SESSION_INACTIVE, "session inactive")
        self.cache.put(current)
        return current

    def deactivate(self, session_id: str) -> bool:
        changed = self.store.deactivate_session(session_id)
        self.cache.evict(session_id)
        if changed:
            logger.info("session_deactivated", session_id=session_id)
        return changed

    def deactivate_all_for_user(self, user_id: str) -> int:
        affected = self.store.deactivate_user_sessions(user_id)
        for session_id in affected:
            self.cache.evict(session_id)
        if affected:
            logger.info("user_sessions_deactivated", user_id=user_id, count=len(affected))
        return len(affected)

    def cleanup(self, now: Optional[datetime] = None) -> int:
        """Retire expired and idle sessions, then purge old inactive records.

        Returns the number of records deactivated or deleted.
        """
        now = now or self._clock()
        changed = 0
        for session in self.store.find_expired_sessions(now):
            if self.store.deactivate_session(session.id):
                changed += 1
            self.cache.evict(session.id)

        default_idle = self.tenants.default_idle_timeout_minutes
        for session in self.store.find_idle_sessions(now, default_idle):
            if self.store.deactivate_session(session.id):
                changed += 1
            self.cache.evict(session.id)

        purged = self.store.purge_sessions(now, now - self.retention)
        for session_id in purged:
            self.cache.evict(session_id)
        changed += len(purged)
        if changed:
            logger.info("session_cleanup", changed=changed, purged=len(purged))
        return changed


__all__ = ["SessionCache", "SessionManager", "SessionStore"]
