from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Protocol

from guardian.logging import get_logger
from guardian.service.geo import GeoResolver
from guardian.storage.models import RequestMeta, utcnow

logger = get_logger(__name__)


class AuditEventType(str, Enum):
    SIGNUP_SUCCESS = "SIGNUP_SUCCESS"
    SIGNUP_FAILURE = "SIGNUP_FAILURE"
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILURE = "LOGIN_FAILURE"
    LOGOUT = "LOGOUT"
    LOGOUT_ALL = "LOGOUT_ALL"
    CLIENT_REGISTRATION = "CLIENT_REGISTRATION"
    CLIENT_KEY_ROTATION_SUCCESS = "CLIENT_KEY_ROTATION_SUCCESS"
    CLIENT_KEY_ROTATION_FAILED = "CLIENT_KEY_ROTATION_FAILED"


@dataclass(frozen=True)
class AuditEvent:
    event_type: AuditEventType
    tenant_id: Optional[str]
    status_code: int
    user_email: Optional[str] = None
    error_code: Optional[str] = None
    request_id: Optional[str] = None
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    method: Optional[str] = None
    endpoint: Optional[str] = None
    session_id: Optional[str] = None
    geo_country: Optional[str] = None
    geo_city: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


class AuditSink(Protocol):
    def record(self, event: AuditEvent) -> None:
        ...


class LoggingAuditSink:
    """Writes audit events to the structured log stream."""

    def __init__(self) -> None:
        self.logger = get_logger("guardian.audit")

    def record(self, event: AuditEvent) -> None:
        self.logger.info(
            "audit_event",
            event_type=event.event_type.value,
            tenant_id=event.tenant_id,
            status_code=event.status_code,
            error_code=event.error_code,
            user_email=event.user_email,
            request_id=event.request_id,
            ip_addr=event.ip_addr,
            user_agent=event.user_agent,
            method=event.method,
            endpoint=event.endpoint,
            session_id=event.session_id,
            geo_country=event.geo_country,
            geo_city=event.geo_city,
            created_at=event.created_at.isoformat(),
        )


class MemoryAuditSink:
    def __init__(self) -> None:
        self.events: List[AuditEvent] = []
        self._lock = threading.Lock()

    def record(self, event: AuditEvent) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        with self._lock:
            return [e for e in self.events if e.event_type == event_type]


class AuditDispatcher:
    """Writes audit events off the request path.

    Up to ``workers`` events are written concurrently and ``queue_capacity``
    more may wait. When both are exhausted the submitting thread writes the
    event itself, slowing that caller instead of dropping the event. Sink
    errors are logged and never reach the caller.
    """

    def __init__(
        self,
        sink: AuditSink,
        geo: Optional[GeoResolver] = None,
        *,
        workers: int = 5,
        queue_capacity: int = 100,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.sink = sink
        self.geo = geo
        self._clock = clock
        self._executor = ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="audit-log"
        )
        self._slots = threading.BoundedSemaphore(workers + queue_capacity)
        self._executor_shutdown = False

    def emit(
        self,
        event_type: AuditEventType,
        *,
        tenant_id: Optional[str],
        status_code: int,
        user_email: Optional[str] = None,
        error_code: Optional[str] = None,
        meta: Optional[RequestMeta] = None,
        session_id: Optional[str] = None,
    ) -> None:
        meta = meta or RequestMeta()
        event = AuditEvent(
            event_type=event_type,
            tenant_id=tenant_id,
            status_code=status_code,
            user_email=user_email,
            error_code=error_code,
            request_id=meta.request_id,
            ip_addr=meta.ip_addr,
            user_agent=meta.user_agent,
            method=meta.method,
            endpoint=meta.endpoint,
            session_id=session_id or meta.session_id,
            created_at=self._clock(),
        )
        if self._executor_shutdown or not self._slots.acquire(blocking=False):
            logger.debug("audit_caller_runs", event_type=event_type.value)
            self._write(event)
            return
        try:
            self._executor.submit(self._write_and_release, event)
        except RuntimeError:
            # Executor closed between the check and the submit
            self._slots.release()
            self._write(event)

    def _write_and_release(self, event: AuditEvent) -> None:
        try:
            self._write(event)
        finally:
            self._slots.release()

    def _write(self, event: AuditEvent) -> None:
        try:
            if self.geo is not None and event.ip_addr:
                location = self.geo.locate(event.ip_addr)
                event = replace(
                    event, geo_country=location.country, geo_city=location.city
                )
            self.sink.record(event)
        except Exception as exc:
            logger.warning(
                "audit_write_failed", event_type=event.event_type.value, error=str(exc)
            )

    def shutdown(self, wait: bool = True) -> None:
        if self._executor_shutdown:
            return
        self._executor_shutdown = True
        self._executor.shutdown(wait=wait, cancel_futures=not wait)
        logger.info("audit_dispatcher_shutdown", wait=wait)


__all__ = [
    "AuditDispatcher",
    "AuditEvent",
    "AuditEventType",
    "AuditSink",
    "LoggingAuditSink",
    "MemoryAuditSink",
]
