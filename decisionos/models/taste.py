"""Taste signal and meal score models."""

from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, Float, ForeignKey, Integer, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from decisionos.database import Base


class TasteSignalRow(Base):
    """Append-only taste signals, one per feedback copy that carries a weight."""

    __tablename__ = "taste_signals"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    household_key: Mapped[str] = mapped_column(
        Text, ForeignKey("households.household_key"), nullable=False
    )
    decision_event_id: Mapped[str] = mapped_column(
        Text, ForeignKey("decision_events.id"), nullable=False
    )
    meal_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    user_action: Mapped[str] = mapped_column(Text, nullable=False)
    weight: Mapped[float] = mapped_column(Float, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint("weight >= -2 AND weight <= 2", name="taste_signals_weight_check"),
    )


class TasteMealScoreRow(Base):
    """Mutable per-household meal score cache. Undo copies never touch it."""

    __tablename__ = "taste_meal_scores"

    household_key: Mapped[str] = mapped_column(
        Text, ForeignKey("households.household_key"), primary_key=True
    )
    meal_id: Mapped[str] = mapped_column(Text, primary_key=True)
    score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    approvals: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rejections: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
