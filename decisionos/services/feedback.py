"""Feedback service - loads a ledger snapshot, reconciles, persists, derives taste signals."""

import logging
from datetime import datetime
from uuid import uuid4

from pydantic import BaseModel

from decisionos.engine.ledger import (
    process_autopilot_approval,
    process_feedback,
    should_reverse_consumption,
    should_run_consumption,
    should_update_meal_score_cache,
    should_update_taste_signal,
)
from decisionos.engine.weights import compute_taste_weight
from decisionos.schemas.decision import RecordDecisionRequest, TasteSignal
from decisionos.schemas.event import ACTION_APPROVED, ACTION_REJECTED, DecisionEvent
from decisionos.schemas.feedback import FeedbackRequest, FeedbackResult
from decisionos.storage.port import DuplicateEventError, LedgerStore
from decisionos.utils.canonical import content_hash
from decisionos.utils.primitives import now_local

logger = logging.getLogger(__name__)


class FeedbackOutcome(BaseModel):
    """What happened for one request, including side-effect decisions for collaborators."""

    event_found: bool = True
    result: FeedbackResult | None = None
    weight: float | None = None
    taste_signal_inserted: bool = False
    meal_score_updated: bool = False
    run_consumption: bool = False
    reverse_consumption: bool = False

    @property
    def inserted(self) -> bool:
        return self.result is not None and self.result.reason == "success"


async def _load_root(store: LedgerStore, household_key: str, event_id: str) -> DecisionEvent | None:
    """
    Resolve event_id to the original event, following a copy back to its root.

    A copy whose root is missing resolves to None; copies are never
    treated as originals.
    """
    event = await store.load_original(household_key, event_id)
    if event is not None and event.is_feedback_copy:
        return await store.load_original(household_key, event.original_event_id)
    return event


async def _persist(store: LedgerStore, result: FeedbackResult) -> FeedbackOutcome:
    """Insert the new copy (if any) and run taste side effects for it."""
    if result.feedback_copy is None:
        return FeedbackOutcome(result=result)

    event = result.feedback_copy
    try:
        await store.insert_copy(event)
    except DuplicateEventError:
        # A racing identical request won the unique index.
        logger.info("Feedback copy for %s already recorded", event.original_event_id)
        return FeedbackOutcome(result=FeedbackResult(is_duplicate=True, reason="duplicate"))

    outcome = FeedbackOutcome(
        result=result,
        run_consumption=should_run_consumption(event),
        reverse_consumption=should_reverse_consumption(event),
    )

    if should_update_taste_signal(event):
        outcome.weight = compute_taste_weight(event)
        await store.insert_taste_signal(
            TasteSignal(
                id=str(uuid4()),
                household_key=event.household_key,
                decision_event_id=event.id,
                meal_id=event.meal_id,
                user_action=event.action,
                weight=outcome.weight,
                created_at=event.actioned_at,
            )
        )
        outcome.taste_signal_inserted = True

    if should_update_meal_score_cache(event) and event.meal_id:
        await store.upsert_meal_score(
            household_key=event.household_key,
            meal_id=event.meal_id,
            weight_delta=outcome.weight or 0.0,
            approvals_delta=1 if event.action == ACTION_APPROVED else 0,
            rejections_delta=1 if event.action == ACTION_REJECTED else 0,
            last_seen_at=event.decided_at,
        )
        outcome.meal_score_updated = True

    return outcome


async def submit_feedback(
    store: LedgerStore,
    household_key: str,
    request: FeedbackRequest,
    now: datetime | None = None,
) -> FeedbackOutcome:
    """
    Process one feedback request for a household.

    Unknown events are a no-op. Policy outcomes (duplicate, stale undo,
    undo without an autopilot approval) come back as results, never as
    errors. Storage failures propagate.
    """
    original = await _load_root(store, household_key, request.event_id)
    if original is None:
        logger.info("Feedback for unknown event %s ignored", request.event_id)
        return FeedbackOutcome(event_found=False)

    copies = await store.load_copies(household_key, original.id)
    result = process_feedback(original, copies, request, now=now)
    outcome = await _persist(store, result)
    logger.info(
        "Feedback %s on %s: %s", request.action, original.id, outcome.result.reason
    )
    return outcome


async def apply_autopilot_approval(
    store: LedgerStore,
    household_key: str,
    event_id: str,
    now: datetime | None = None,
) -> FeedbackOutcome:
    """Record an automation approval for event_id; idempotent per original."""
    original = await _load_root(store, household_key, event_id)
    if original is None:
        return FeedbackOutcome(event_found=False)

    copies = await store.load_copies(household_key, original.id)
    result = process_autopilot_approval(original, copies, now=now)
    outcome = await _persist(store, result)
    logger.info("Autopilot approval on %s: %s", original.id, outcome.result.reason)
    return outcome


async def record_decision(
    store: LedgerStore,
    household_key: str,
    request: RecordDecisionRequest,
    now: datetime | None = None,
) -> DecisionEvent:
    """Persist the original event for a decision presented to the household."""
    event = DecisionEvent(
        id=str(uuid4()),
        household_key=household_key,
        user_profile_id=request.user_profile_id,
        decided_at=now or now_local(),
        payload=request.payload,
        decision_type=request.decision_type,
        meal_id=request.meal_id,
        context_hash=request.context_hash or content_hash(request.payload),
    )
    await store.insert_decision(event)
    logger.info("Recorded decision %s for household", event.id)
    return event
