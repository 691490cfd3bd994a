"""Initial schema - households, decision_events, taste_signals, taste_meal_scores.

Revision ID: 001
Revises:
Create Date: 2026-10-17

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "households",
        sa.Column("household_key", sa.Text(), primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("api_key_hash", sa.String(255), unique=True, nullable=False),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False),
    )

    op.create_table(
        "decision_events",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column(
            "household_key",
            sa.Text(),
            sa.ForeignKey("households.household_key"),
            nullable=False,
        ),
        sa.Column("user_profile_id", sa.Text(), nullable=True),
        sa.Column("decided_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("actioned_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("user_action", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column(
            "decision_payload",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("decision_type", sa.Text(), nullable=True),
        sa.Column("meal_id", sa.Text(), nullable=True),
        sa.Column("context_hash", sa.Text(), nullable=True),
        sa.Column("original_event_id", sa.Text(), nullable=True),
        sa.Column("idempotency_key", sa.Text(), nullable=True),
        sa.CheckConstraint("household_key <> ''", name="decision_events_household_key_check"),
        sa.CheckConstraint(
            "user_action IS NULL OR user_action IN ('approved', 'rejected', 'drm_triggered')",
            name="decision_events_user_action_check",
        ),
    )
    # Backs the idempotency window: two racing identical copies cannot both land.
    op.create_index(
        "uq_decision_events_household_idempotency",
        "decision_events",
        ["household_key", "idempotency_key"],
        unique=True,
        postgresql_where=sa.text("idempotency_key IS NOT NULL"),
    )
    op.create_index(
        "idx_decision_events_household_original",
        "decision_events",
        ["household_key", "original_event_id"],
    )

    op.create_table(
        "taste_signals",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column(
            "household_key",
            sa.Text(),
            sa.ForeignKey("households.household_key"),
            nullable=False,
        ),
        sa.Column(
            "decision_event_id",
            sa.Text(),
            sa.ForeignKey("decision_events.id"),
            nullable=False,
        ),
        sa.Column("meal_id", sa.Text(), nullable=True),
        sa.Column("user_action", sa.Text(), nullable=False),
        sa.Column("weight", sa.Float(), nullable=False),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.CheckConstraint("weight >= -2 AND weight <= 2", name="taste_signals_weight_check"),
    )

    op.create_table(
        "taste_meal_scores",
        sa.Column(
            "household_key",
            sa.Text(),
            sa.ForeignKey("households.household_key"),
            primary_key=True,
        ),
        sa.Column("meal_id", sa.Text(), primary_key=True),
        sa.Column("score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("approvals", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rejections", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_seen_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )


def downgrade() -> None:
    op.drop_table("taste_meal_scores")
    op.drop_table("taste_signals")
    op.drop_index("idx_decision_events_household_original", table_name="decision_events")
    op.drop_index("uq_decision_events_household_idempotency", table_name="decision_events")
    op.drop_table("decision_events")
    op.drop_table("households")
