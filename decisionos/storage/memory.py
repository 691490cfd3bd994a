"""In-memory LedgerStore for tests and local runs without Postgres."""

from decisionos.schemas.decision import MealScore, TasteSignal
from decisionos.schemas.event import DecisionEvent
from decisionos.schemas.household import HouseholdInfo
from decisionos.storage.port import DuplicateEventError


class InMemoryLedgerStore:
    """Dict-backed store mirroring the Postgres adapter's tenant scoping and constraints."""

    def __init__(self):
        self.events: dict[str, DecisionEvent] = {}
        self.taste_signals: list[TasteSignal] = []
        self.meal_scores: dict[tuple[str, str], MealScore] = {}
        self.households: dict[str, HouseholdInfo] = {}
        self._idempotency_keys: set[tuple[str, str]] = set()

    def add_household(self, household_key: str, api_key_hash: str, name: str = "") -> None:
        self.households[api_key_hash] = HouseholdInfo(
            household_key=household_key, name=name or household_key
        )

    async def load_original(self, household_key: str, event_id: str) -> DecisionEvent | None:
        event = self.events.get(event_id)
        if event is None or event.household_key != household_key:
            return None
        return event

    async def load_copies(self, household_key: str, original_id: str) -> list[DecisionEvent]:
        copies = [
            e
            for e in self.events.values()
            if e.household_key == household_key and e.original_event_id == original_id
        ]
        return sorted(copies, key=lambda e: e.actioned_at.timestamp() if e.actioned_at else 0.0)

    async def insert_copy(self, event: DecisionEvent) -> None:
        if event.idempotency_key is not None:
            key = (event.household_key, event.idempotency_key)
            if key in self._idempotency_keys:
                raise DuplicateEventError(event.idempotency_key)
            self._idempotency_keys.add(key)
        self.events[event.id] = event

    async def insert_decision(self, event: DecisionEvent) -> None:
        self.events[event.id] = event

    async def insert_taste_signal(self, signal: TasteSignal) -> None:
        self.taste_signals.append(signal)

    async def upsert_meal_score(
        self,
        household_key: str,
        meal_id: str,
        weight_delta: float,
        approvals_delta: int,
        rejections_delta: int,
        last_seen_at,
    ) -> None:
        current = self.meal_scores.get((household_key, meal_id)) or MealScore(
            household_key=household_key, meal_id=meal_id
        )
        self.meal_scores[(household_key, meal_id)] = MealScore(
            household_key=household_key,
            meal_id=meal_id,
            score=current.score + weight_delta,
            approvals=current.approvals + approvals_delta,
            rejections=current.rejections + rejections_delta,
            last_seen_at=last_seen_at,
        )

    async def get_meal_score(self, household_key: str, meal_id: str) -> MealScore | None:
        return self.meal_scores.get((household_key, meal_id))

    async def find_household_by_api_key_hash(self, api_key_hash: str) -> HouseholdInfo | None:
        return self.households.get(api_key_hash)

    async def ping(self) -> bool:
        return True
