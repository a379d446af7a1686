from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, List, Optional, Union
from urllib.parse import urlparse, urlunparse

from guardian.config import Settings
from guardian.logging import get_logger
from guardian.service.audit import AuditDispatcher, AuditSink, LoggingAuditSink
from guardian.service.auth import AuthCoordinator
from guardian.service.geo import GeoResolver
from guardian.service.maintenance import PeriodicTask
from guardian.service.rate_limit import RateLimiter, RateLimitPolicy, RateLimitStore
from guardian.service.sessions import SessionCache, SessionManager
from guardian.service.tenants import TenantRegistry
from guardian.service.tokens import TokenCodec
from guardian.storage.memory import MemoryStore
from guardian.storage.postgres import PostgresStore
from guardian.storage.redis_cache import RedisRateLimitStore
from guardian.storage.models import utcnow

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Owns every component of one auth service instance.

    Components are wired through their constructors; nothing is looked up
    from a global registry. ``start`` launches the periodic maintenance
    threads and ``close`` stops them and releases connections.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store: Union[MemoryStore, PostgresStore, None] = None,
        rate_store: Optional[RateLimitStore] = None,
        audit_sink: Optional[AuditSink] = None,
        geo: Optional[GeoResolver] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        logger.info(
            "runtime_init_started",
            use_memory_store=settings.use_memory_store,
            test_mode=settings.test_mode,
        )
        self.store = store if store is not None else self._build_store(settings)
        self.rate_store = rate_store if rate_store is not None else self._build_rate_store(settings)

        self.geo = geo or GeoResolver(settings.geo_lookup_url, timeout=settings.geo_lookup_timeout)
        self.audit = AuditDispatcher(
            audit_sink or LoggingAuditSink(),
            self.geo,
            workers=settings.audit_workers,
            queue_capacity=settings.audit_queue_capacity,
            clock=clock,
        )
        self.tenants = TenantRegistry(
            self.store,
            default_idle_timeout_minutes=settings.default_idle_timeout_minutes,
            audit=self.audit,
            clock=clock,
        )
        self.rate_limiter = RateLimiter(
            self.rate_store,
            RateLimitPolicy(
                max_attempts=settings.rate_limit_max_attempts,
                window=timedelta(minutes=settings.rate_limit_window_minutes),
                block_duration=timedelta(minutes=settings.rate_limit_block_minutes),
                retention=timedelta(hours=settings.rate_limit_retention_hours),
            ),
            clock=clock,
        )
        self.session_cache = SessionCache(
            max_entries=settings.session_cache_max_entries,
            sweep_interval_seconds=settings.session_cache_sweep_seconds,
            clock=clock,
        )
        self.sessions = SessionManager(
            self.store,
            self.session_cache,
            self.tenants,
            ttl_minutes=settings.token_ttl_minutes,
            retention=timedelta(hours=settings.session_retention_hours),
            clock=clock,
        )
        self.tokens = TokenCodec(settings.jwt_secret, settings.token_ttl_minutes, clock=clock)
        self.auth = AuthCoordinator(
            tenants=self.tenants,
            rate_limiter=self.rate_limiter,
            sessions=self.sessions,
            tokens=self.tokens,
            users=self.store,
            audit=self.audit,
            clock=clock,
        )
        self.tasks: List[PeriodicTask] = [
            PeriodicTask("session-cleanup", self.sessions.cleanup, settings.session_cleanup_seconds),
            PeriodicTask(
                "rate-limit-cleanup", self.rate_limiter.cleanup, settings.rate_limit_cleanup_seconds
            ),
        ]
        self._started = False
        logger.info("runtime_init_completed", rate_store=type(self.rate_store).__name__)

    @staticmethod
    def _build_store(settings: Settings) -> Union[MemoryStore, PostgresStore]:
        store_type = "memory" if settings.use_memory_store else "postgres"
        try:
            store = MemoryStore() if settings.use_memory_store else PostgresStore(settings.database_url)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)
        return store

    def _build_rate_store(self, settings: Settings) -> RateLimitStore:
        redis_error: Optional[Exception] = None
        if settings.redis_url:
            try:
                redis_store = RedisRateLimitStore(
                    settings.redis_url,
                    retention=timedelta(hours=settings.rate_limit_retention_hours),
                )
                redis_store.verify_connection()
                return redis_store
            except Exception as exc:
                redis_error = exc

        if not settings.test_mode and not settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for shared rate limit windows; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for in-process windows."
            ) from redis_error

        fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            mode=fallback_mode,
        )
        if isinstance(self.store, MemoryStore):
            return self.store
        return MemoryStore()

    def start(self) -> None:
        if self._started:
            return
        self.session_cache.start()
        for task in self.tasks:
            task.start()
        self._started = True

    def close(self) -> None:
        for task in self.tasks:
            task.stop()
        self.session_cache.stop()
        self.session_cache.clear()
        self.audit.shutdown(wait=True)
        self.geo.close()
        for resource in (self.rate_store, self.store):
            close = getattr(resource, "close", None)
            if callable(close):
                try:
                    close()
                except Exception as exc:
                    logger.warning(
                        "runtime_resource_close_failed",
                        resource=type(resource).__name__,
                        error=str(exc),
                    )
        self._started = False
        logger.info("runtime_closed")


def build_runtime(settings: Optional[Settings] = None, **overrides) -> Runtime:
    return Runtime(settings or Settings.from_env(), **overrides)


__all__ = ["Runtime", "build_runtime"]
