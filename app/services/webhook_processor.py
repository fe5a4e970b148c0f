"""
app/services/webhook_processor.py
──────────────────────────────────
One transaction per Stripe event:

  1. claim the event id in processed_events (first write)
  2. reconcile subscription + member rows
  3. record the outcome on the claimed row (and a webhook.failed audit
     entry when the event could not be applied)
  4. commit

A duplicate claim short-circuits with no writes. Any failure after the claim
rolls back everything, claim included, so Stripe's retry is processed from
scratch. The whole unit is bounded by PERSISTENCE_TIMEOUT_SECONDS.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import PersistenceTimeout, PersistenceUnavailable, ReconciliationFailed
from app.models.audit import AuditEventType
from app.models.billing import EventOutcome
from app.repositories.audit_repository import AuditRepository
from app.services.deduplicator import ClaimResult, EventDeduplicator
from app.services.events import BillingEvent
from app.services.reconciler import ReconcileResult, SubscriptionReconciler

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookResult:
    event_id: str
    outcome: Optional[EventOutcome]
    duplicate: bool = False
    reconcile: Optional[ReconcileResult] = None


class WebhookProcessor:

    def __init__(
        self,
        db: AsyncSession,
        *,
        grace_failures: int = 3,
        timeout_seconds: float = 10.0,
    ):
        self.db = db
        self.timeout_seconds = timeout_seconds
        self.deduplicator = EventDeduplicator(db)
        self.reconciler = SubscriptionReconciler(db, grace_failures=grace_failures)
        self.audit = AuditRepository(db)

    async def process(self, event: BillingEvent) -> WebhookResult:
        try:
            return await asyncio.wait_for(self._process(event), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            await self._rollback()
            log.error(f"[Webhook] Timed out processing {event.id} after {self.timeout_seconds}s")
            raise PersistenceTimeout() from None
        except SQLAlchemyError as e:
            await self._rollback()
            log.error(f"[Webhook] Database error processing {event.id}: {e}")
            raise PersistenceUnavailable() from e
        except Exception as e:
            await self._rollback()
            log.error(f"[Webhook] Handler error for {event.provider_type} {event.id}: {e}", exc_info=True)
            raise ReconciliationFailed() from e

    async def _process(self, event: BillingEvent) -> WebhookResult:
        claim = await self.deduplicator.try_claim(event)
        if claim == ClaimResult.already_processed:
            return WebhookResult(event_id=event.id, outcome=None, duplicate=True)

        result = await self.reconciler.apply(event)
        self.deduplicator.record_outcome(result.outcome, result.reason)
        if result.outcome == EventOutcome.failed:
            await self.audit.log(
                AuditEventType.WEBHOOK_FAILED,
                company_id=result.company_id,
                subject_id=event.id,
                metadata={"type": event.provider_type, "reason": result.reason},
                commit=False,
            )
        await self.db.commit()

        log.info(
            f"[Webhook] {event.provider_type} {event.id} → {result.outcome.value}"
            + (f" ({result.reason})" if result.reason else "")
        )
        return WebhookResult(event_id=event.id, outcome=result.outcome, reconcile=result)

    async def _rollback(self) -> None:
        try:
            await self.db.rollback()
        except SQLAlchemyError as e:
            log.error(f"[Webhook] Rollback failed: {e}")
