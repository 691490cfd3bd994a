"""Feedback request/response schemas."""

from typing import Literal

from pydantic import BaseModel, Field

from decisionos.schemas.event import ClientAction, DecisionEvent

FeedbackReason = Literal["success", "duplicate", "outside_window", "not_autopilot"]


class FeedbackRequest(BaseModel):
    """POST /v1/feedback request."""

    event_id: str = Field(min_length=1)
    action: ClientAction


class FeedbackResult(BaseModel):
    """Outcome of reconciling one feedback request against the ledger."""

    recorded: Literal[True] = True
    is_duplicate: bool = False
    reason: FeedbackReason
    feedback_copy: DecisionEvent | None = None


class FeedbackResponse(BaseModel):
    """POST /v1/feedback response. Same shape for every policy outcome."""

    recorded: bool = True
