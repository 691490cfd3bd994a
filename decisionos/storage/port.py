"""Storage port the feedback service is written against."""

from typing import Protocol

from decisionos.schemas.decision import MealScore, TasteSignal
from decisionos.schemas.event import DecisionEvent
from decisionos.schemas.household import HouseholdInfo


class DuplicateEventError(Exception):
    """The ledger's uniqueness constraint rejected an insert."""

    def __init__(self, idempotency_key: str | None):
        self.idempotency_key = idempotency_key
        super().__init__(f"duplicate feedback copy: {idempotency_key}")


class LedgerStore(Protocol):
    """
    Everything the ledger needs from persistence.

    Implementations scope every read and write to the household key they
    are given; none of them keeps ledger state of its own.
    """

    async def load_original(self, household_key: str, event_id: str) -> DecisionEvent | None: ...

    async def load_copies(self, household_key: str, original_id: str) -> list[DecisionEvent]: ...

    async def insert_copy(self, event: DecisionEvent) -> None:
        """Append a feedback copy. Raises DuplicateEventError on idempotency_key collision."""
        ...

    async def insert_decision(self, event: DecisionEvent) -> None: ...

    async def insert_taste_signal(self, signal: TasteSignal) -> None: ...

    async def upsert_meal_score(
        self,
        household_key: str,
        meal_id: str,
        weight_delta: float,
        approvals_delta: int,
        rejections_delta: int,
        last_seen_at,
    ) -> None: ...

    async def get_meal_score(self, household_key: str, meal_id: str) -> MealScore | None: ...

    async def find_household_by_api_key_hash(self, api_key_hash: str) -> HouseholdInfo | None: ...

    async def ping(self) -> bool: ...
