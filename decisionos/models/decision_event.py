"""Decision event model - append-only ledger."""

from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Text, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from decisionos.database import Base


class DecisionEventRow(Base):
    """Decision events and their feedback copies. Never updated after insert."""

    __tablename__ = "decision_events"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    household_key: Mapped[str] = mapped_column(
        Text, ForeignKey("households.household_key"), nullable=False
    )
    user_profile_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    decided_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    actioned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    user_action: Mapped[str | None] = mapped_column(Text, nullable=True)  # approved|rejected|drm_triggered
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)  # autopilot|undo_autopilot
    decision_payload: Mapped[dict] = mapped_column(JSONB, nullable=False, server_default=text("'{}'::jsonb"))
    decision_type: Mapped[str | None] = mapped_column(Text, nullable=True)
    meal_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    context_hash: Mapped[str | None] = mapped_column(Text, nullable=True)
    original_event_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("household_key <> ''", name="decision_events_household_key_check"),
        CheckConstraint(
            "user_action IS NULL OR user_action IN ('approved', 'rejected', 'drm_triggered')",
            name="decision_events_user_action_check",
        ),
        Index(
            "uq_decision_events_household_idempotency",
            "household_key",
            "idempotency_key",
            unique=True,
            postgresql_where=text("idempotency_key IS NOT NULL"),
        ),
        Index("idx_decision_events_household_original", "household_key", "original_event_id"),
    )
