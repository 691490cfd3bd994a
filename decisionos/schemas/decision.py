"""Decision recording and meal score schemas."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class RecordDecisionRequest(BaseModel):
    """POST /v1/decisions request - a decision presented to the household."""

    user_profile_id: str | None = None
    decision_type: str = "cook"
    meal_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    context_hash: str | None = None


class RecordDecisionResponse(BaseModel):
    """POST /v1/decisions response."""

    event_id: str
    decided_at: datetime
    context_hash: str


class AutopilotResponse(BaseModel):
    """POST /v1/decisions/{event_id}/autopilot response."""

    applied: bool
    inserted: bool
    reason: str


class MealScore(BaseModel):
    """Tenant-scoped running taste score for one meal."""

    household_key: str
    meal_id: str
    score: float = 0.0
    approvals: int = 0
    rejections: int = 0
    last_seen_at: datetime | None = None


class TasteSignal(BaseModel):
    """Append-only taste signal derived from one feedback copy."""

    id: str
    household_key: str
    decision_event_id: str
    meal_id: str | None = None
    user_action: str
    weight: float
    created_at: datetime
