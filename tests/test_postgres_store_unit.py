"""Unit tests for PostgresStore with the connection pool stubbed out."""

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

import psycopg
import pytest
from psycopg import errors

from guardian.logging import get_logger
from guardian.storage.errors import ConstraintViolation, StoreUnavailable
from guardian.storage.models import Session, Tenant
from guardian.storage.postgres import PostgresStore

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rows: Optional[List[dict]] = None, rowcount: int = 0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, results: List[Any]):
        self.results = results
        self.statements: List[tuple] = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        result = self.results.pop(0) if self.results else FakeCursor()
        if isinstance(result, Exception):
            raise result
        return result


class FakePool:
    def __init__(self, *results):
        self.conn = FakeConnection(list(results))

    @contextmanager
    def connection(self):
        yield self.conn


class DownPool:
    @contextmanager
    def connection(self):
        raise psycopg.OperationalError("connection refused")
        yield  # pragma: no cover


def create_store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://test"
    store.pool = pool
    store.logger = get_logger("test")
    return store


def _session_row(**overrides):
    row = {
        "id": "6b1f0a4e-0000-4000-8000-000000000001",
        "user_id": "6b1f0a4e-0000-4000-8000-0000000000aa",
        "tenant_id": "ABC123",
        "created_at": NOW,
        "expires_at": NOW + timedelta(hours=1),
        "last_activity_at": NOW,
        "is_active": True,
        "ip_addr": "10.0.0.1",
        "user_agent": "pytest",
    }
    row.update(overrides)
    return row


def test_get_tenant_maps_row():
    pool = FakePool(
        FakeCursor(
            [
                {
                    "id": "ABC123",
                    "secret": "s3cret",
                    "name": "Acme",
                    "description": None,
                    "idle_timeout_minutes": 10,
                    "created_at": NOW,
                    "updated_at": None,
                }
            ]
        )
    )
    store = create_store(pool)

    tenant = store.get_tenant("ABC123")

    assert tenant == Tenant(id="ABC123", secret="s3cret", name="Acme", idle_timeout_minutes=10, created_at=NOW)
    assert pool.conn.statements[0] == ("SELECT * FROM tenant WHERE id = %s", ("ABC123",))


def test_duplicate_tenant_raises_constraint_violation():
    store = create_store(FakePool(errors.UniqueViolation("duplicate key")))
    with pytest.raises(ConstraintViolation):
        store.create_tenant(Tenant(id="ABC123", secret="s", name="Acme"))


def test_duplicate_user_raises_constraint_violation():
    store = create_store(FakePool(errors.UniqueViolation("duplicate key")))
    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_user("a@x.com", "ABC123", "hash")
    assert excinfo.value.detail["field"] == "email"


def test_session_for_missing_user_raises_constraint_violation():
    store = create_store(FakePool(errors.ForeignKeyViolation("fk")))
    session = Session.new("user", "ABC123", 60, now=NOW)
    with pytest.raises(ConstraintViolation):
        store.insert_session(session)


def test_touch_session_uses_conditional_update():
    pool = FakePool(FakeCursor([_session_row(last_activity_at=NOW + timedelta(minutes=5))]))
    store = create_store(pool)

    session = store.touch_session("sid", NOW + timedelta(minutes=5))

    sql, params = pool.conn.statements[0]
    assert sql.startswith("UPDATE auth_session SET last_activity_at = %s")
    assert "is_active AND last_activity_at < %s" in sql
    assert params == (NOW + timedelta(minutes=5), "sid", NOW + timedelta(minutes=5))
    assert session.last_activity_at == NOW + timedelta(minutes=5)
    assert len(pool.conn.statements) == 1


def test_touch_session_falls_back_to_current_record():
    pool = FakePool(FakeCursor([]), FakeCursor([_session_row(is_active=False)]))
    store = create_store(pool)

    session = store.touch_session("sid", NOW)

    assert not session.is_active
    assert pool.conn.statements[1][0] == "SELECT * FROM auth_session WHERE id = %s"


def test_touch_missing_session_returns_none():
    store = create_store(FakePool(FakeCursor([]), FakeCursor([])))
    assert store.touch_session("sid", NOW) is None


def test_deactivate_reports_whether_a_row_changed():
    store = create_store(FakePool(FakeCursor(rowcount=1), FakeCursor(rowcount=0)))
    assert store.deactivate_session("sid") is True
    assert store.deactivate_session("sid") is False


def test_idle_sessions_are_filtered_by_tenant_timeout_in_sql():
    pool = FakePool(FakeCursor([_session_row()]))
    store = create_store(pool)

    idle = store.find_idle_sessions(NOW, 30)

    sql, params = pool.conn.statements[0]
    assert "LEFT JOIN tenant t ON t.id = s.tenant_id" in sql
    assert "COALESCE(t.idle_timeout_minutes, %s::int)" in sql
    assert params == (NOW, 30)
    assert [s.id for s in idle] == [_session_row()["id"]]


def test_purge_returns_deleted_ids():
    pool = FakePool(FakeCursor([{"id": "a"}, {"id": "b"}]))
    store = create_store(pool)

    purged = store.purge_sessions(NOW, NOW - timedelta(hours=24))

    assert purged == ["a", "b"]
    assert pool.conn.statements[0][0].startswith("DELETE FROM auth_session")


def test_connection_failure_raises_store_unavailable():
    store = create_store(DownPool())
    with pytest.raises(StoreUnavailable) as excinfo:
        store.get_session("sid")
    assert excinfo.value.backend == "postgres"
