"""
app/models/billing.py
──────────────────────
Idempotency ledger for Stripe webhook events.

One row per distinct Stripe event id. The unique index on event_id is the
only concurrency control for webhook processing: the row is inserted first,
a duplicate insert means the event was already handled (or is being handled
by another instance right now).

The row commits in the same transaction as the event's effects and is never
updated afterwards.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, Enum, String, Text, UUID
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from app.core.database import Base


class EventOutcome(str, enum.Enum):
    applied = "applied"
    ignored = "ignored"   # out-of-order or unhandled event type
    failed  = "failed"    # data inconsistency, logged and acknowledged


class ProcessedEvent(Base):
    __tablename__ = "processed_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    event_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    outcome: Mapped[EventOutcome] = mapped_column(
        Enum(EventOutcome), default=EventOutcome.applied, nullable=False
    )
    detail: Mapped[str] = mapped_column(Text, nullable=True)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
