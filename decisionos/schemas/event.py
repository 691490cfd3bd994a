"""Decision event - the ledger's immutable row."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

# Persisted outcomes. "undo" is a client verb only and never stored.
ACTION_APPROVED = "approved"
ACTION_REJECTED = "rejected"
ACTION_DRM_TRIGGERED = "drm_triggered"
CLIENT_ACTION_UNDO = "undo"

MARKER_AUTOPILOT = "autopilot"
MARKER_UNDO_AUTOPILOT = "undo_autopilot"

PERSISTED_ACTIONS = (ACTION_APPROVED, ACTION_REJECTED, ACTION_DRM_TRIGGERED)

PersistedAction = Literal["approved", "rejected", "drm_triggered"]
ClientAction = Literal["approved", "rejected", "drm_triggered", "undo"]
Marker = Literal["autopilot", "undo_autopilot"]
RuntimeStatus = Literal["pending", "expired"]


class DecisionEvent(BaseModel):
    """
    One decision occasion, or a feedback copy of one.

    Rows are never updated after insert. An original carries no action;
    each feedback copy owns its action, marker and actioned_at and points
    back through original_event_id.
    """

    model_config = {"frozen": True}

    id: str
    household_key: str
    user_profile_id: str | None = None
    decided_at: datetime
    actioned_at: datetime | None = None
    action: PersistedAction | None = None
    marker: Marker | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    decision_type: str | None = None
    meal_id: str | None = None
    context_hash: str | None = None
    original_event_id: str | None = None
    idempotency_key: str | None = None
    # Derived at read time (e.g. a decision that timed out); never persisted
    runtime_status: RuntimeStatus | None = Field(default=None, exclude=True)

    @property
    def is_feedback_copy(self) -> bool:
        return self.original_event_id is not None
