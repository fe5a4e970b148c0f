"""
app/services/billing_notifier.py
─────────────────────────────────
Emails the company author after a webhook transaction has committed.

Runs on its own session: the webhook response never waits for Resend, and a
failed send is recorded as an audit row instead of touching billing state.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.database import AsyncSessionLocal
from app.models.audit import AuditEventType
from app.repositories.audit_repository import AuditRepository
from app.repositories.repositories import CompanyRepository, SubscriptionRepository, UserRepository
from app.services.email_service import EmailService, format_amount
from app.services.events import BillingEvent
from app.services.reconciler import ReconcileResult

log = logging.getLogger(__name__)

# Keeps fire-and-forget tasks referenced until they finish
_pending: set[asyncio.Task] = set()


class BillingNotifier:

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
        email: Optional[EmailService] = None,
        grace_failures: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.email = email or EmailService()
        self.grace_failures = grace_failures or settings.GRACE_PERIOD_FAILURE_COUNT

    async def notify(self, event: BillingEvent, result: ReconcileResult) -> Optional[dict]:
        if not result.notify or result.company_id is None:
            return None

        async with self.session_factory() as db:
            company = await CompanyRepository(db).get(result.company_id)
            if company is None:
                return None
            author = await UserRepository(db).get_by_id(company.author_id)
            if author is None:
                log.warning(f"[Notifier] Company {company.id} has no author, skipping {result.notify}")
                return None

            if result.notify == "payment_failed":
                subscription = await SubscriptionRepository(db).get_for_company(company.id)
                failed = subscription.failed_payment_count if subscription else 1
                sent = await self.email.send_payment_failed(
                    to_email=author.email,
                    company_name=company.name,
                    amount=format_amount(event.payload.get("amount_due"), event.payload.get("currency")),
                    failed_attempts=failed,
                    grace_attempts=self.grace_failures,
                )
            elif result.notify == "subscription_canceled":
                sent = await self.email.send_subscription_canceled(author.email, company.name)
            else:
                log.warning(f"[Notifier] Unknown notification {result.notify!r}")
                return None

            await AuditRepository(db).log(
                AuditEventType.EMAIL_SENT if sent.get("ok") else AuditEventType.EMAIL_FAILED,
                company_id=company.id,
                subject_id=event.id,
                metadata={"to": author.email, "template": result.notify, "error": sent.get("error")},
            )
            return sent

    async def _notify_logged(self, event: BillingEvent, result: ReconcileResult) -> None:
        try:
            await self.notify(event, result)
        except Exception as e:
            log.error(f"[Notifier] {result.notify} for {event.id} failed: {e}", exc_info=True)

    def schedule(self, event: BillingEvent, result: Optional[ReconcileResult]) -> Optional[asyncio.Task]:
        """Fire-and-forget; call only after the webhook transaction committed."""
        if result is None or not result.notify:
            return None
        task = asyncio.create_task(self._notify_logged(event, result))
        _pending.add(task)
        task.add_done_callback(_pending.discard)
        return task
