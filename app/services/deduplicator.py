"""
app/services/deduplicator.py
─────────────────────────────
At-most-once claim of a Stripe event id.

try_claim() inserts into processed_events *before* anything else is written
in the transaction. The unique index decides the race: with two instances
delivering the same event concurrently, the second INSERT blocks on the
first transaction and then fails with IntegrityError, which we report as
already_processed. No read-then-write, no process-local locks.
"""

from __future__ import annotations

import enum
import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.billing import EventOutcome, ProcessedEvent
from app.repositories.event_repository import ProcessedEventRepository
from app.services.events import BillingEvent

log = logging.getLogger(__name__)


class ClaimResult(str, enum.Enum):
    first_seen = "first_seen"
    already_processed = "already_processed"


class EventDeduplicator:

    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = ProcessedEventRepository(db)
        self._claimed: Optional[ProcessedEvent] = None

    async def try_claim(self, event: BillingEvent) -> ClaimResult:
        """
        Must be the first write of the transaction: on a duplicate the whole
        session is rolled back.
        """
        try:
            self._claimed = await self.repo.insert(event.id, event.provider_type)
        except IntegrityError:
            await self.db.rollback()
            self._claimed = None
            log.info(f"[Dedup] Event {event.id} already processed")
            return ClaimResult.already_processed
        return ClaimResult.first_seen

    def record_outcome(self, outcome: EventOutcome, detail: Optional[str] = None) -> None:
        """Set the outcome on the claimed row. Only valid before the transaction commits."""
        if self._claimed is None:
            raise RuntimeError("record_outcome() called without a successful claim")
        self._claimed.outcome = outcome
        self._claimed.detail = detail
