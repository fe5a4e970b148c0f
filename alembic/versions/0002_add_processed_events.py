"""
alembic/versions/0002_add_processed_events.py
───────────────────────────────────────────────
Stripe webhook idempotency ledger.

The unique index on event_id is what serialises concurrent deliveries of
the same event across instances.

Revision chain: 0001_init → 0002
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0002"
down_revision = "0001_init"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "processed_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("event_id", sa.String(255), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column(
            "outcome",
            sa.Enum("applied", "ignored", "failed", name="eventoutcome"),
            server_default="applied",
            nullable=False,
        ),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column(
            "processed_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    )
    op.create_index("ix_processed_events_event_id", "processed_events", ["event_id"], unique=True)


def downgrade() -> None:
    op.drop_index("ix_processed_events_event_id", table_name="processed_events")
    op.drop_table("processed_events")
    sa.Enum(name="eventoutcome").drop(op.get_bind(), checkfirst=True)
