"""Unit tests for the taste weight engine."""

from datetime import datetime, timezone

import pytest

from decisionos.engine.weights import (
    BASE_WEIGHTS,
    STRESS_MULTIPLIER,
    compute_taste_weight,
    get_base_weight,
    should_skip_meal_score_cache,
    stress_applies,
)
from decisionos.schemas.event import DecisionEvent

NOON = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
EIGHT_PM = datetime(2026, 3, 1, 20, 0, tzinfo=timezone.utc)
JUST_BEFORE_EIGHT = datetime(2026, 3, 1, 19, 59, 59, 999000, tzinfo=timezone.utc)


def _event(action=None, marker=None, actioned_at=NOON, decided_at=NOON, **kwargs):
    return DecisionEvent(
        id="e1",
        household_key="hh-1",
        decided_at=decided_at,
        actioned_at=actioned_at,
        action=action,
        marker=marker,
        **kwargs,
    )


def test_base_weights():
    """Each persisted action maps to its base weight."""
    assert get_base_weight(_event("approved")) == 1.0
    assert get_base_weight(_event("rejected")) == -1.0
    assert get_base_weight(_event("drm_triggered")) == -0.5
    assert get_base_weight(_event("approved", marker="autopilot")) == 1.0


def test_undo_marker_wins_over_action():
    """Undo weighs -0.5, not the rejected -1.0."""
    undo = _event("rejected", marker="undo_autopilot")
    assert get_base_weight(undo) == BASE_WEIGHTS["undo"] == -0.5
    assert get_base_weight(undo) != get_base_weight(_event("rejected"))


def test_expired_only_without_action():
    """Expired runtime status counts only for events with no action."""
    assert get_base_weight(_event(actioned_at=None, runtime_status="expired")) == -0.2
    assert get_base_weight(_event("approved", runtime_status="expired")) == 1.0
    assert get_base_weight(_event(actioned_at=None)) == 0.0


def test_stress_multiplier_at_eight_pm():
    """Multiplier applies at 20:00 exactly, not at 19:59."""
    assert compute_taste_weight(_event("approved", actioned_at=EIGHT_PM)) == pytest.approx(1.1)
    assert compute_taste_weight(_event("approved", actioned_at=JUST_BEFORE_EIGHT)) == 1.0


def test_stress_multiplier_keeps_sign():
    """Negative weights grow in magnitude."""
    assert compute_taste_weight(_event("rejected", actioned_at=EIGHT_PM)) == pytest.approx(-1.1)
    undo = _event("rejected", marker="undo_autopilot", actioned_at=EIGHT_PM)
    assert compute_taste_weight(undo) == pytest.approx(-0.5 * STRESS_MULTIPLIER)


def test_stress_falls_back_to_decided_at():
    """Without actioned_at the decision time decides."""
    event = _event(actioned_at=None, decided_at=EIGHT_PM, runtime_status="expired")
    assert stress_applies(event) is True
    assert compute_taste_weight(event) == pytest.approx(-0.22)


def test_zero_weight_skips_multiplier():
    """Events without a base weight return exactly 0."""
    assert compute_taste_weight(_event(actioned_at=EIGHT_PM, decided_at=EIGHT_PM)) == 0.0


def test_weight_always_in_bounds():
    """Every combination stays within [-2, 2]."""
    for action in (None, "approved", "rejected", "drm_triggered"):
        for marker in (None, "autopilot", "undo_autopilot"):
            for at in (NOON, EIGHT_PM):
                weight = compute_taste_weight(_event(action, marker=marker, actioned_at=at))
                assert -2.0 <= weight <= 2.0


def test_clamp_applies(monkeypatch):
    """An oversized base weight is clamped."""
    monkeypatch.setitem(BASE_WEIGHTS, "approved", 5.0)
    assert compute_taste_weight(_event("approved")) == 2.0
    monkeypatch.setitem(BASE_WEIGHTS, "rejected", -5.0)
    assert compute_taste_weight(_event("rejected", actioned_at=EIGHT_PM)) == -2.0


def test_should_skip_meal_score_cache():
    """Only undo skips the cache."""
    assert should_skip_meal_score_cache(_event("rejected", marker="undo_autopilot")) is True
    assert should_skip_meal_score_cache(_event("rejected")) is False
    assert should_skip_meal_score_cache(_event("approved", marker="autopilot")) is False
