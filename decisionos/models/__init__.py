"""Database models."""

from decisionos.models.household import Household
from decisionos.models.decision_event import DecisionEventRow
from decisionos.models.taste import TasteMealScoreRow, TasteSignalRow

__all__ = ["Household", "DecisionEventRow", "TasteSignalRow", "TasteMealScoreRow"]
