"""
app/repositories/event_repository.py
──────────────────────────────────────
Insert-only access to the processed_events idempotency ledger.
"""

from __future__ import annotations

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.billing import EventOutcome, ProcessedEvent


class ProcessedEventRepository:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def insert(self, event_id: str, event_type: str) -> ProcessedEvent:
        """
        Stage and flush a ledger row. Raises sqlalchemy.exc.IntegrityError
        when a row with the same event_id already exists.
        """
        row = ProcessedEvent(event_id=event_id, event_type=event_type)
        self.db.add(row)
        await self.db.flush()
        return row

    async def count_by_outcome(self) -> dict[str, int]:
        result = await self.db.execute(
            select(ProcessedEvent.outcome, func.count(ProcessedEvent.id))
            .group_by(ProcessedEvent.outcome)
        )
        counts = {o.value: 0 for o in EventOutcome}
        for outcome, n in result.all():
            key = outcome.value if isinstance(outcome, EventOutcome) else str(outcome)
            counts[key] = n
        return counts
