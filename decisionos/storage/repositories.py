"""Postgres LedgerStore - literal $n SQL, every statement gated by the tenant-safety guard."""

import json
import logging
from collections.abc import Sequence
from typing import Annotated, Any

from fastapi import Depends
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncSession

from decisionos.config import settings
from decisionos.database import get_db
from decisionos.schemas.decision import MealScore, TasteSignal
from decisionos.schemas.event import DecisionEvent
from decisionos.schemas.household import HouseholdInfo
from decisionos.storage.guard import (
    assert_tenant_safe,
    assert_writable,
    tenant_conflict,
    tenant_where,
)
from decisionos.storage.port import DuplicateEventError
from decisionos.utils.canonical import canonical_json

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"

_EVENT_COLUMNS = (
    "de.id, de.household_key, de.user_profile_id, de.decided_at, de.actioned_at, "
    "de.user_action, de.notes, de.decision_payload, de.decision_type, de.meal_id, "
    "de.context_hash, de.original_event_id, de.idempotency_key"
)

# $1 is always household_key.
INSERT_DECISION_EVENT_SQL = """
    INSERT INTO decision_events
    (household_key, id, user_profile_id, decided_at, actioned_at, user_action, notes,
     decision_payload, decision_type, meal_id, context_hash, original_event_id, idempotency_key)
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9, $10, $11, $12, $13)
"""

SELECT_EVENT_BY_ID_SQL = f"""
    SELECT {_EVENT_COLUMNS}
    FROM decision_events de
    WHERE {tenant_where("de")} AND de.id = $2
    LIMIT 1
"""

SELECT_COPIES_SQL = f"""
    SELECT {_EVENT_COLUMNS}
    FROM decision_events de
    WHERE {tenant_where("de")} AND de.original_event_id = $2
    ORDER BY de.actioned_at ASC NULLS FIRST
"""

INSERT_TASTE_SIGNAL_SQL = """
    INSERT INTO taste_signals
    (household_key, id, decision_event_id, meal_id, user_action, weight, created_at)
    VALUES ($1, $2, $3, $4, $5, $6, $7)
"""

UPSERT_MEAL_SCORE_SQL = f"""
    INSERT INTO taste_meal_scores AS tms
    (household_key, meal_id, score, approvals, rejections, last_seen_at, updated_at)
    VALUES ($1, $2, $3, $4, $5, $6, NOW())
    {tenant_conflict("meal_id")} DO UPDATE SET
      score = tms.score + EXCLUDED.score,
      approvals = tms.approvals + EXCLUDED.approvals,
      rejections = tms.rejections + EXCLUDED.rejections,
      last_seen_at = EXCLUDED.last_seen_at,
      updated_at = NOW()
"""

SELECT_MEAL_SCORE_SQL = f"""
    SELECT tms.household_key, tms.meal_id, tms.score, tms.approvals, tms.rejections,
           tms.last_seen_at
    FROM taste_meal_scores tms
    WHERE {tenant_where("tms")} AND tms.meal_id = $2
    LIMIT 1
"""

# households is not a tenant table: it is how the tenant gets resolved.
SELECT_HOUSEHOLD_BY_KEY_HASH_SQL = """
    SELECT h.household_key, h.name
    FROM households h
    WHERE h.api_key_hash = $1
    LIMIT 1
"""

PING_SQL = "SELECT 1"

RUNTIME_SQL = (
    INSERT_DECISION_EVENT_SQL,
    SELECT_EVENT_BY_ID_SQL,
    SELECT_COPIES_SQL,
    INSERT_TASTE_SIGNAL_SQL,
    UPSERT_MEAL_SCORE_SQL,
    SELECT_MEAL_SCORE_SQL,
    SELECT_HOUSEHOLD_BY_KEY_HASH_SQL,
    PING_SQL,
)


async def execute_guarded(
    conn: AsyncConnection,
    sql: str,
    params: Sequence[Any] = (),
    readonly: bool | None = None,
):
    """
    Run sql on conn only after it clears the read-only gate and the tenant guard.

    Violations raise before anything reaches the driver.
    """
    assert_writable(sql, settings.readonly_mode if readonly is None else readonly)
    assert_tenant_safe(sql)
    return await conn.exec_driver_sql(sql, tuple(params))


def _is_unique_violation(exc: IntegrityError) -> bool:
    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code == UNIQUE_VIOLATION:
        return True
    return "unique" in str(orig).lower()


def _row_to_event(row: dict) -> DecisionEvent:
    payload = row["decision_payload"]
    if isinstance(payload, str):
        payload = json.loads(payload)
    return DecisionEvent(
        id=str(row["id"]),
        household_key=row["household_key"],
        user_profile_id=row["user_profile_id"],
        decided_at=row["decided_at"],
        actioned_at=row["actioned_at"],
        action=row["user_action"],
        marker=row["notes"],
        payload=payload or {},
        decision_type=row["decision_type"],
        meal_id=row["meal_id"],
        context_hash=row["context_hash"],
        original_event_id=row["original_event_id"],
        idempotency_key=row["idempotency_key"],
    )


def _event_params(event: DecisionEvent) -> tuple:
    return (
        event.household_key,
        event.id,
        event.user_profile_id,
        event.decided_at,
        event.actioned_at,
        event.action,
        event.marker,
        canonical_json(event.payload),
        event.decision_type,
        event.meal_id,
        event.context_hash,
        event.original_event_id,
        event.idempotency_key,
    )


class PostgresLedgerStore:
    """LedgerStore over an AsyncSession; participates in the request's transaction."""

    def __init__(self, session: AsyncSession, readonly: bool | None = None):
        self.session = session
        self.readonly = readonly

    async def _execute(self, sql: str, params: Sequence[Any] = ()):
        conn = await self.session.connection()
        return await execute_guarded(conn, sql, params, readonly=self.readonly)

    async def load_original(self, household_key: str, event_id: str) -> DecisionEvent | None:
        result = await self._execute(SELECT_EVENT_BY_ID_SQL, (household_key, event_id))
        row = result.mappings().first()
        return _row_to_event(dict(row)) if row else None

    async def load_copies(self, household_key: str, original_id: str) -> list[DecisionEvent]:
        result = await self._execute(SELECT_COPIES_SQL, (household_key, original_id))
        return [_row_to_event(dict(row)) for row in result.mappings().all()]

    async def insert_copy(self, event: DecisionEvent) -> None:
        """Insert inside a savepoint so a duplicate does not poison the outer transaction."""
        try:
            async with self.session.begin_nested():
                await self._execute(INSERT_DECISION_EVENT_SQL, _event_params(event))
        except IntegrityError as exc:
            if _is_unique_violation(exc):
                logger.info("Feedback copy collided on %s", event.idempotency_key)
                raise DuplicateEventError(event.idempotency_key) from exc
            raise

    async def insert_decision(self, event: DecisionEvent) -> None:
        await self._execute(INSERT_DECISION_EVENT_SQL, _event_params(event))

    async def insert_taste_signal(self, signal: TasteSignal) -> None:
        await self._execute(
            INSERT_TASTE_SIGNAL_SQL,
            (
                signal.household_key,
                signal.id,
                signal.decision_event_id,
                signal.meal_id,
                signal.user_action,
                signal.weight,
                signal.created_at,
            ),
        )

    async def upsert_meal_score(
        self,
        household_key: str,
        meal_id: str,
        weight_delta: float,
        approvals_delta: int,
        rejections_delta: int,
        last_seen_at,
    ) -> None:
        await self._execute(
            UPSERT_MEAL_SCORE_SQL,
            (household_key, meal_id, weight_delta, approvals_delta, rejections_delta, last_seen_at),
        )

    async def get_meal_score(self, household_key: str, meal_id: str) -> MealScore | None:
        result = await self._execute(SELECT_MEAL_SCORE_SQL, (household_key, meal_id))
        row = result.mappings().first()
        return MealScore(**dict(row)) if row else None

    async def find_household_by_api_key_hash(self, api_key_hash: str) -> HouseholdInfo | None:
        result = await self._execute(SELECT_HOUSEHOLD_BY_KEY_HASH_SQL, (api_key_hash,))
        row = result.mappings().first()
        return HouseholdInfo(**dict(row)) if row else None

    async def ping(self) -> bool:
        result = await self._execute(PING_SQL)
        return result.scalar() == 1


async def get_store(db: Annotated[AsyncSession, Depends(get_db)]) -> PostgresLedgerStore:
    """Dependency for the request-scoped ledger store."""
    return PostgresLedgerStore(db)
