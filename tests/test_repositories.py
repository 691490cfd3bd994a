"""Unit tests for the Postgres adapter's SQL and guarded execution."""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from decisionos.database import Base
from decisionos.models import DecisionEventRow  # noqa: F401
from decisionos.schemas.event import DecisionEvent
from decisionos.storage.guard import (
    TABLE_ALIASES,
    TENANT_COLUMN,
    TENANT_TABLES,
    ReadonlyModeError,
    TenantSafetyError,
    assert_tenant_safe,
    check_sql_style_contract,
    is_read_only_sql,
)
from decisionos.storage.port import DuplicateEventError
from decisionos.storage.repositories import (
    INSERT_DECISION_EVENT_SQL,
    PING_SQL,
    RUNTIME_SQL,
    SELECT_COPIES_SQL,
    SELECT_EVENT_BY_ID_SQL,
    SELECT_MEAL_SCORE_SQL,
    UPSERT_MEAL_SCORE_SQL,
    PostgresLedgerStore,
    execute_guarded,
)

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class StubResult:
    def __init__(self, rows=None, scalar=None):
        self.rows = rows or []
        self._scalar = scalar

    def mappings(self):
        return self

    def first(self):
        return self.rows[0] if self.rows else None

    def all(self):
        return self.rows

    def scalar(self):
        return self._scalar


class StubConnection:
    """Records what reaches the driver."""

    def __init__(self, result=None, error=None):
        self.calls = []
        self.result = result or StubResult()
        self.error = error

    async def exec_driver_sql(self, sql, params=()):
        self.calls.append((sql, params))
        if self.error is not None:
            raise self.error
        return self.result


class StubSession:
    def __init__(self, conn):
        self.conn = conn

    async def connection(self):
        return self.conn

    @asynccontextmanager
    async def begin_nested(self):
        yield


class UniqueViolation(Exception):
    sqlstate = "23505"


def _event(**kwargs):
    fields = dict(
        id="copy-1",
        household_key="hh-1",
        decided_at=T0,
        actioned_at=T0,
        action="approved",
        original_event_id="orig-1",
        idempotency_key="orig-1:approved:-:1",
        payload={"b": 1, "a": 2},
    )
    fields.update(kwargs)
    return DecisionEvent(**fields)


def test_runtime_sql_passes_guard():
    """Every statement the adapter issues clears the guard and the style contract."""
    for sql in RUNTIME_SQL:
        assert_tenant_safe(sql)
        assert check_sql_style_contract(sql) == []


def test_runtime_reads_are_read_only():
    for sql in (SELECT_EVENT_BY_ID_SQL, SELECT_COPIES_SQL, SELECT_MEAL_SCORE_SQL, PING_SQL):
        assert is_read_only_sql(sql)
    for sql in (INSERT_DECISION_EVENT_SQL, UPSERT_MEAL_SCORE_SQL):
        assert not is_read_only_sql(sql)


def test_tenant_tables_cover_schema():
    """Every table with a household_key column except households is guarded."""
    scoped = {
        table.name
        for table in Base.metadata.sorted_tables
        if TENANT_COLUMN in table.c.keys() and table.name != "households"
    }
    assert scoped
    assert scoped <= TENANT_TABLES


def test_execute_guarded_runs_safe_sql():
    conn = StubConnection()
    asyncio.run(execute_guarded(conn, SELECT_EVENT_BY_ID_SQL, ("hh-1", "e1"), readonly=False))
    assert conn.calls == [(SELECT_EVENT_BY_ID_SQL, ("hh-1", "e1"))]


def test_execute_guarded_aborts_before_driver():
    """An unsafe statement never reaches the connection."""
    conn = StubConnection()
    with pytest.raises(TenantSafetyError) as exc_info:
        asyncio.run(execute_guarded(conn, "SELECT * FROM decision_events de", readonly=False))
    assert exc_info.value.code == "household_key_missing"
    assert conn.calls == []


def test_execute_guarded_readonly_blocks_writes():
    conn = StubConnection()
    with pytest.raises(ReadonlyModeError):
        asyncio.run(
            execute_guarded(conn, INSERT_DECISION_EVENT_SQL, ("hh-1",), readonly=True)
        )
    assert conn.calls == []
    asyncio.run(execute_guarded(conn, PING_SQL, readonly=True))
    assert len(conn.calls) == 1


def test_readonly_checked_before_tenant_safety():
    """In read-only mode a write is refused as readonly_mode even when also unsafe."""
    conn = StubConnection()
    with pytest.raises(ReadonlyModeError):
        asyncio.run(execute_guarded(conn, "DELETE FROM decision_events", readonly=True))


def test_insert_copy_binds_household_key_first():
    conn = StubConnection()
    store = PostgresLedgerStore(StubSession(conn), readonly=False)
    asyncio.run(store.insert_copy(_event()))
    sql, params = conn.calls[0]
    assert sql == INSERT_DECISION_EVENT_SQL
    assert params[0] == "hh-1"
    assert params[1] == "copy-1"
    assert params[7] == '{"a":2,"b":1}'


def test_insert_copy_unique_violation_is_duplicate():
    """A unique-index collision surfaces as DuplicateEventError."""
    error = IntegrityError(INSERT_DECISION_EVENT_SQL, (), UniqueViolation("duplicate key"))
    store = PostgresLedgerStore(StubSession(StubConnection(error=error)), readonly=False)
    with pytest.raises(DuplicateEventError) as exc_info:
        asyncio.run(store.insert_copy(_event()))
    assert exc_info.value.idempotency_key == "orig-1:approved:-:1"


def test_insert_copy_other_integrity_error_propagates():
    class ForeignKeyViolation(Exception):
        sqlstate = "23503"

    error = IntegrityError(INSERT_DECISION_EVENT_SQL, (), ForeignKeyViolation("fk"))
    store = PostgresLedgerStore(StubSession(StubConnection(error=error)), readonly=False)
    with pytest.raises(IntegrityError):
        asyncio.run(store.insert_copy(_event()))


def test_load_original_maps_row():
    row = {
        "id": "orig-1",
        "household_key": "hh-1",
        "user_profile_id": None,
        "decided_at": T0,
        "actioned_at": None,
        "user_action": None,
        "notes": None,
        "decision_payload": '{"title": "Tacos"}',
        "decision_type": "cook",
        "meal_id": "meal-tacos",
        "context_hash": "ctx",
        "original_event_id": None,
        "idempotency_key": None,
    }
    conn = StubConnection(result=StubResult(rows=[row]))
    store = PostgresLedgerStore(StubSession(conn), readonly=False)
    event = asyncio.run(store.load_original("hh-1", "orig-1"))
    assert event.payload == {"title": "Tacos"}
    assert event.action is None
    assert conn.calls[0][1] == ("hh-1", "orig-1")


def test_ping():
    conn = StubConnection(result=StubResult(scalar=1))
    store = PostgresLedgerStore(StubSession(conn), readonly=False)
    assert asyncio.run(store.ping()) is True


def test_runtime_sql_uses_standard_aliases():
    """Tenant tables are always read through their standard alias."""
    assert f"FROM decision_events {TABLE_ALIASES['decision_events']}" in SELECT_COPIES_SQL
    assert f"FROM decision_events {TABLE_ALIASES['decision_events']}" in SELECT_EVENT_BY_ID_SQL
    assert f"FROM taste_meal_scores {TABLE_ALIASES['taste_meal_scores']}" in SELECT_MEAL_SCORE_SQL
    assert f"taste_meal_scores AS {TABLE_ALIASES['taste_meal_scores']}" in UPSERT_MEAL_SCORE_SQL
