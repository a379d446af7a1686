from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from guardian.logging import get_logger
from guardian.storage.errors import ConstraintViolation, StoreUnavailable
from guardian.storage.models import Session, Tenant, UserAccount, utcnow

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS tenant (
        id TEXT PRIMARY KEY,
        secret TEXT NOT NULL,
        name TEXT NOT NULL,
        description TEXT,
        idle_timeout_minutes INTEGER NOT NULL DEFAULT 30 CHECK (idle_timeout_minutes > 0),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        tenant_id TEXT NOT NULL REFERENCES tenant(id),
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL DEFAULT 'argon2id',
        first_name TEXT,
        last_name TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (tenant_id, email)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        tenant_id TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        last_activity_at TIMESTAMPTZ NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        ip_addr TEXT,
        user_agent TEXT,
        CHECK (expires_at > created_at)
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id)",
    "CREATE INDEX IF NOT EXISTS auth_session_active_idx ON auth_session (is_active, expires_at)",
    "CREATE INDEX IF NOT EXISTS auth_session_activity_idx ON auth_session (is_active, last_activity_at)",
)


class PostgresStore:
    """Postgres-backed tenant, user and session store.

    Session updates are expressed as conditional UPDATE statements so that
    concurrent validators on different workers cannot move activity time
    backwards or resurrect a deactivated session.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable(str(exc), backend="postgres") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # tenants
    @staticmethod
    def _tenant_from_row(row: Dict[str, Any]) -> Tenant:
        return Tenant(
            id=row["id"],
            secret=row["secret"],
            name=row["name"],
            description=row.get("description"),
            idle_timeout_minutes=row.get("idle_timeout_minutes") or 30,
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at"),
        )

    def create_tenant(self, tenant: Tenant) -> Tenant:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO tenant (id, secret, name, description, idle_timeout_minutes, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        tenant.id,
                        tenant.secret,
                        tenant.name,
                        tenant.description,
                        tenant.idle_timeout_minutes,
                        tenant.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("tenant already exists", {"tenant_id": tenant.id})
        return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tenant WHERE id = %s", (tenant_id,)).fetchone()
        return self._tenant_from_row(row) if row else None

    def list_tenants(self) -> List[Tenant]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM tenant ORDER BY created_at").fetchall()
        return [self._tenant_from_row(row) for row in rows]

    def update_tenant_secret(
        self, tenant_id: str, secret: str, *, updated_at: Optional[datetime] = None
    ) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE tenant SET secret = %s, updated_at = %s WHERE id = %s RETURNING *",
                (secret, updated_at or utcnow(), tenant_id),
            ).fetchone()
        return self._tenant_from_row(row) if row else None

    # users
    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> UserAccount:
        return UserAccount(
            id=str(row["id"]),
            email=row["email"],
            tenant_id=row["tenant_id"],
            password_hash=row["password_hash"],
            password_algo=row.get("password_algo") or "argon2id",
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            created_at=row.get("created_at") or utcnow(),
        )

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
        user = UserAccount(
            id=str(uuid.uuid4()),
            email=email,
            tenant_id=tenant_id,
            password_hash=password_hash,
            password_algo=password_algo,
            first_name=first_name,
            last_name=last_name,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, tenant_id, password_hash, password_algo, first_name, last_name, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.tenant_id,
                        user.password_hash,
                        user.password_algo,
                        user.first_name,
                        user.last_name,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "email already exists", {"field": "email", "tenant_id": tenant_id}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("tenant does not exist", {"tenant_id": tenant_id})
        return user

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str, tenant_id: str) -> Optional[UserAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s AND tenant_id = %s",
                (email, tenant_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    # sessions
    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            tenant_id=row["tenant_id"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            last_activity_at=row["last_activity_at"],
            is_active=bool(row.get("is_active", True)),
            ip_addr=row.get("ip_addr"),
            user_agent=row.get("user_agent"),
        )

    def insert_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, tenant_id, created_at, expires_at, last_activity_at, is_active, ip_addr, user_agent)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.tenant_id,
                        session.created_at,
                        session.expires_at,
                        session.last_activity_at,
                        session.is_active,
                        session.ip_addr,
                        session.user_agent,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def touch_session(self, session_id: str, at: datetime) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session SET last_activity_at = %s
                WHERE id = %s AND is_active AND last_activity_at < %s
                RETURNING *
                """,
                (at, session_id, at),
            ).fetchone()
            if row is None:
                # No update: missing, inactive, or a newer activity already recorded
                row = conn.execute(
                    "SELECT * FROM auth_session WHERE id = %s", (session_id,)
                ).fetchone()
        return self._session_from_row(row) if row else None

    def deactivate_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth_session SET is_active = FALSE WHERE id = %s AND is_active",
                (session_id,),
            )
            return cur.rowcount > 0

    def deactivate_user_sessions(self, user_id: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "UPDATE auth_session SET is_active = FALSE WHERE user_id = %s AND is_active RETURNING id",
                (user_id,),
            ).fetchall()
        return [str(row["id"]) for row in rows]

    def find_expired_sessions(self, now: datetime) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_session WHERE is_active AND expires_at < %s",
                (now,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def find_idle_sessions(self, now: datetime, default_idle_minutes: int) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT s.* FROM auth_session s
                LEFT JOIN tenant t ON t.id = s.tenant_id
                WHERE s.is_active
                  AND s.last_activity_at
                      < %s - make_interval(mins => COALESCE(t.idle_timeout_minutes, %s::int))
                """,
                (now, default_idle_minutes),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def purge_sessions(self, now: datetime, created_before: datetime) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                DELETE FROM auth_session
                WHERE (NOT is_active OR expires_at < %s) AND created_at < %s
                RETURNING id
                """,
                (now, created_before),
            ).fetchall()
        return [str(row["id"]) for row in rows]
