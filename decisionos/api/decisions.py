"""Decision recording, automation approval and meal score endpoints."""

from fastapi import APIRouter, HTTPException, status

from decisionos.auth.middleware import HouseholdDep, StoreDep
from decisionos.schemas.decision import (
    AutopilotResponse,
    MealScore,
    RecordDecisionRequest,
    RecordDecisionResponse,
)
from decisionos.services.feedback import apply_autopilot_approval, record_decision

router = APIRouter()


@router.post(
    "/decisions",
    response_model=RecordDecisionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def post_decision(body: RecordDecisionRequest, household: HouseholdDep, store: StoreDep):
    """Record a decision shown to the household; feedback refers to the returned event_id."""
    event = await record_decision(store, household.household_key, body)
    return RecordDecisionResponse(
        event_id=event.id,
        decided_at=event.decided_at,
        context_hash=event.context_hash,
    )


@router.post("/decisions/{event_id}/autopilot", response_model=AutopilotResponse)
async def post_autopilot(event_id: str, household: HouseholdDep, store: StoreDep):
    """Automation-only: approve a decision on the household's behalf."""
    outcome = await apply_autopilot_approval(store, household.household_key, event_id)
    if not outcome.event_found:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Decision not found",
        )
    return AutopilotResponse(
        applied=True,
        inserted=outcome.inserted,
        reason=outcome.result.reason,
    )


@router.get("/meal-scores/{meal_id}", response_model=MealScore)
async def get_meal_score(meal_id: str, household: HouseholdDep, store: StoreDep):
    """Running taste score for one meal (tenant-scoped)."""
    score = await store.get_meal_score(household.household_key, meal_id)
    if not score:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Meal score not found",
        )
    return score
