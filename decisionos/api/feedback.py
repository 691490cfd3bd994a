"""Feedback endpoint."""

from fastapi import APIRouter, HTTPException, status

from decisionos.auth.middleware import HouseholdDep, StoreDep
from decisionos.config import settings
from decisionos.schemas.feedback import FeedbackRequest, FeedbackResponse
from decisionos.services.feedback import submit_feedback

router = APIRouter()


@router.post("/feedback", response_model=FeedbackResponse)
async def post_feedback(body: FeedbackRequest, household: HouseholdDep, store: StoreDep):
    """
    Record client feedback (approved, rejected, drm_triggered, undo) on a decision.

    Duplicates, stale undos and unknown events all answer {"recorded": true};
    the client never retries on a policy outcome.
    """
    if not settings.decision_os_enabled:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthorized")
    await submit_feedback(store, household.household_key, body)
    return FeedbackResponse()
