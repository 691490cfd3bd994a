"""
Taste weight engine - derives a signed, bounded signal from a decision event.

Base weights:
- approved:      +1.0
- rejected:      -1.0
- drm_triggered: -0.5  (plans changed)
- expired:       -0.2  (timed out with no action)
- undo:          -0.5  (autonomy penalty, not a taste rejection)

Undo and drm_triggered share magnitude on purpose: both say "don't decide
for me like that", not "I dislike this meal".

At or after 20:00 (hour as encoded on actioned_at, falling back to
decided_at) the magnitude is multiplied by 1.10. The result is clamped to
[-2, 2].
"""

from decisionos.schemas.event import (
    ACTION_APPROVED,
    ACTION_DRM_TRIGGERED,
    ACTION_REJECTED,
    MARKER_UNDO_AUTOPILOT,
    DecisionEvent,
)
from decisionos.utils.primitives import clamp, is_late_hour

BASE_WEIGHTS = {
    "approved": 1.0,
    "rejected": -1.0,
    "drm_triggered": -0.5,
    "expired": -0.2,
    "undo": -0.5,
}

STRESS_MULTIPLIER = 1.10

WEIGHT_MIN = -2.0
WEIGHT_MAX = 2.0


def get_base_weight(event: DecisionEvent) -> float:
    """Base weight before the stress multiplier. Undo marker wins over action."""
    if event.marker == MARKER_UNDO_AUTOPILOT:
        return BASE_WEIGHTS["undo"]

    if event.action == ACTION_APPROVED:
        return BASE_WEIGHTS["approved"]
    if event.action == ACTION_REJECTED:
        return BASE_WEIGHTS["rejected"]
    if event.action == ACTION_DRM_TRIGGERED:
        return BASE_WEIGHTS["drm_triggered"]

    if event.action is None and event.runtime_status == "expired":
        return BASE_WEIGHTS["expired"]
    return 0.0


def stress_applies(event: DecisionEvent) -> bool:
    """True when the acting timestamp falls at or after 8pm."""
    timestamp = event.actioned_at or event.decided_at
    return is_late_hour(timestamp)


def compute_taste_weight(event: DecisionEvent) -> float:
    """Signed taste weight in [-2, 2]. Events without a base weight return 0."""
    base = get_base_weight(event)
    if base == 0:
        return 0.0

    weight = base
    if stress_applies(event):
        # magnitude scales, sign is kept
        weight = base * STRESS_MULTIPLIER

    return clamp(weight, WEIGHT_MIN, WEIGHT_MAX)


def should_skip_meal_score_cache(event: DecisionEvent) -> bool:
    """Undo emits a taste signal but never moves approval/rejection counters."""
    return event.marker == MARKER_UNDO_AUTOPILOT
