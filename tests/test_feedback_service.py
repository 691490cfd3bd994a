"""End-to-end tests for the feedback service over the in-memory store."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from decisionos.engine.ledger import create_autopilot_approval
from decisionos.schemas.decision import RecordDecisionRequest
from decisionos.schemas.event import DecisionEvent
from decisionos.schemas.feedback import FeedbackRequest
from decisionos.services.feedback import apply_autopilot_approval, record_decision, submit_feedback
from decisionos.storage.memory import InMemoryLedgerStore
from decisionos.utils.canonical import content_hash

NOON = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
NINE_PM = datetime(2026, 3, 1, 21, 0, tzinfo=timezone.utc)


def _store_with_original(decided_at=NOON, household_key="hh-1"):
    store = InMemoryLedgerStore()
    original = DecisionEvent(
        id="orig-1",
        household_key=household_key,
        user_profile_id="user-1",
        decided_at=decided_at,
        payload={"title": "Tacos"},
        decision_type="cook",
        meal_id="meal-tacos",
        context_hash="ctx-1",
    )
    asyncio.run(store.insert_decision(original))
    return store, original


def _feedback(store, action, now, event_id="orig-1", household_key="hh-1"):
    request = FeedbackRequest(event_id=event_id, action=action)
    return asyncio.run(submit_feedback(store, household_key, request, now=now))


def _copies(store):
    return [e for e in store.events.values() if e.original_event_id == "orig-1"]


@pytest.mark.parametrize("now,expected_weight", [(NOON, -0.5), (NINE_PM, -0.55)])
def test_undo_after_autopilot(now, expected_weight):
    """Autopilot approves, the household undoes 5 minutes later, a repeat undo is a no-op."""
    store, original = _store_with_original(decided_at=now - timedelta(hours=1))
    autopilot = create_autopilot_approval(original, now=now - timedelta(minutes=5))
    asyncio.run(store.insert_copy(autopilot))

    outcome = _feedback(store, "undo", now)
    assert outcome.result.recorded is True
    assert outcome.result.reason == "success"
    assert outcome.inserted

    undo_rows = [c for c in _copies(store) if c.id != autopilot.id]
    assert len(undo_rows) == 1
    assert (undo_rows[0].action, undo_rows[0].marker) == ("rejected", "undo_autopilot")

    assert outcome.weight == pytest.approx(expected_weight)
    assert len(store.taste_signals) == 1
    assert store.taste_signals[0].weight == pytest.approx(expected_weight)
    assert outcome.meal_score_updated is False
    assert store.meal_scores == {}
    assert outcome.run_consumption is False
    assert outcome.reverse_consumption is False

    again = _feedback(store, "undo", now + timedelta(minutes=1))
    assert again.result.recorded is True
    assert again.result.is_duplicate is True
    assert again.result.reason == "duplicate"
    assert len(_copies(store)) == 2
    assert len(store.taste_signals) == 1


def test_undo_outside_window_writes_nothing():
    store, original = _store_with_original()
    asyncio.run(store.insert_copy(create_autopilot_approval(original, now=NOON)))
    outcome = _feedback(store, "undo", NOON + timedelta(minutes=10, milliseconds=1))
    assert outcome.result.reason == "outside_window"
    assert len(_copies(store)) == 1


def test_approved_updates_taste_and_meal_score():
    store, _ = _store_with_original()
    outcome = _feedback(store, "approved", NOON + timedelta(minutes=1))
    assert outcome.result.reason == "success"
    assert outcome.weight == 1.0
    assert outcome.run_consumption is True

    score = asyncio.run(store.get_meal_score("hh-1", "meal-tacos"))
    assert score.score == 1.0
    assert score.approvals == 1
    assert score.rejections == 0


def test_rejected_counts_rejection():
    store, _ = _store_with_original()
    _feedback(store, "rejected", NOON + timedelta(minutes=1))
    score = asyncio.run(store.get_meal_score("hh-1", "meal-tacos"))
    assert score.score == -1.0
    assert score.rejections == 1
    assert score.approvals == 0


def test_identical_feedback_twice_yields_one_copy():
    store, _ = _store_with_original()
    first = _feedback(store, "approved", NOON + timedelta(minutes=1))
    second = _feedback(store, "approved", NOON + timedelta(minutes=3))
    assert first.result.reason == "success"
    assert second.result.is_duplicate is True
    assert len(_copies(store)) == 1
    assert store.meal_scores[("hh-1", "meal-tacos")].approvals == 1


def test_client_approval_after_autopilot_is_duplicate():
    store, original = _store_with_original()
    asyncio.run(apply_autopilot_approval(store, "hh-1", "orig-1", now=NOON))
    outcome = _feedback(store, "approved", NOON + timedelta(days=2))
    assert outcome.result.reason == "duplicate"
    rejected = _feedback(store, "rejected", NOON + timedelta(days=2))
    assert rejected.result.reason == "success"


def test_apply_autopilot_approval_once():
    store, _ = _store_with_original()
    first = asyncio.run(apply_autopilot_approval(store, "hh-1", "orig-1", now=NOON))
    second = asyncio.run(apply_autopilot_approval(store, "hh-1", "orig-1", now=NOON))
    assert first.inserted
    assert first.result.feedback_copy.marker == "autopilot"
    assert second.result.reason == "duplicate"
    assert store.meal_scores[("hh-1", "meal-tacos")].approvals == 1


def test_feedback_on_copy_id_resolves_to_original():
    """Undo sent against the autopilot copy's id finds the same ledger."""
    store, original = _store_with_original()
    autopilot = create_autopilot_approval(original, now=NOON)
    asyncio.run(store.insert_copy(autopilot))
    outcome = _feedback(store, "undo", NOON + timedelta(minutes=2), event_id=autopilot.id)
    assert outcome.result.reason == "success"
    assert outcome.result.feedback_copy.original_event_id == "orig-1"


def test_unknown_event_is_noop():
    store, _ = _store_with_original()
    outcome = _feedback(store, "approved", NOON, event_id="missing")
    assert outcome.event_found is False
    assert outcome.result is None
    assert len(store.events) == 1


def test_other_household_cannot_see_event():
    """A household never reaches another household's events."""
    store, _ = _store_with_original(household_key="hh-1")
    outcome = _feedback(store, "approved", NOON, household_key="hh-2")
    assert outcome.event_found is False
    assert _copies(store) == []


def test_racing_duplicate_becomes_duplicate_result():
    """The unique idempotency key catches a duplicate the snapshot missed."""

    class StaleSnapshotStore(InMemoryLedgerStore):
        async def load_copies(self, household_key, original_id):
            return []

    store = StaleSnapshotStore()
    asyncio.run(
        store.insert_decision(
            DecisionEvent(id="orig-1", household_key="hh-1", decided_at=NOON, meal_id="meal-tacos")
        )
    )
    first = _feedback(store, "approved", NOON + timedelta(minutes=1))
    second = _feedback(store, "approved", NOON + timedelta(minutes=2))
    assert first.result.reason == "success"
    assert second.result.reason == "duplicate"
    assert second.result.is_duplicate is True
    assert second.taste_signal_inserted is False
    assert len(store.taste_signals) == 1


def test_storage_failure_propagates():
    class BrokenStore(InMemoryLedgerStore):
        async def insert_taste_signal(self, signal):
            raise ConnectionError("db down")

    store = BrokenStore()
    asyncio.run(store.insert_decision(DecisionEvent(id="orig-1", household_key="hh-1", decided_at=NOON)))
    with pytest.raises(ConnectionError):
        _feedback(store, "approved", NOON)


def test_record_decision_defaults_context_hash():
    store = InMemoryLedgerStore()
    request = RecordDecisionRequest(meal_id="meal-tacos", payload={"title": "Tacos"})
    event = asyncio.run(record_decision(store, "hh-1", request, now=NOON))
    assert event.context_hash == content_hash({"title": "Tacos"})
    assert event.action is None
    assert event.decided_at == NOON
    assert store.events[event.id] == event


def test_copy_with_missing_root_is_noop():
    """A copy whose original is gone is not treated as an original."""
    store = InMemoryLedgerStore()
    orphan = DecisionEvent(
        id="copy-1",
        household_key="hh-1",
        decided_at=NOON,
        actioned_at=NOON,
        action="approved",
        original_event_id="gone",
    )
    asyncio.run(store.insert_copy(orphan))
    outcome = _feedback(store, "rejected", NOON + timedelta(minutes=1), event_id="copy-1")
    assert outcome.event_found is False
    assert list(store.events) == ["copy-1"]
    assert store.taste_signals == []
