"""
app/services/reconciler.py
───────────────────────────
Applies a verified, deduplicated Stripe event to local Subscription and
Member rows.

Event handling:
  subscription_created   → create Subscription (one per company), entitle members;
                           a repeat for the same Stripe subscription refreshes it,
                           a new one replaces the company's canceled subscription
  subscription_updated   → mirror Stripe status + period end
  subscription_canceled  → status canceled, demote members
  payment_failed         → past_due, count consecutive failures; demote only
                           once GRACE_PERIOD_FAILURE_COUNT is reached
  payment_succeeded      → active, extend period, restore members

Ordering: Stripe does not guarantee delivery order. Every Subscription keeps
`last_event_at`; an event older than that is acknowledged as `ignored`.

Transactions: nothing here commits. The subscription write, the member
entitlement bulk update and the audit rows are staged in the caller's
session, and the webhook processor commits them together with the
processed_events row.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import CompanyNotFound, DuplicateSubscription, SubscriptionNotFound
from app.models.audit import AuditEventType
from app.models.billing import EventOutcome
from app.models.models import Plan, Subscription, SubscriptionStatus
from app.repositories.audit_repository import AuditRepository
from app.repositories.repositories import (
    CompanyRepository, MemberRepository, PlanRepository, SubscriptionRepository
)
from app.services.events import BillingEvent, BillingEventType

log = logging.getLogger(__name__)


STRIPE_STATUSES: dict[str, SubscriptionStatus] = {
    "trialing":           SubscriptionStatus.trialing,
    "active":             SubscriptionStatus.active,
    "past_due":           SubscriptionStatus.past_due,
    "unpaid":             SubscriptionStatus.past_due,
    "paused":             SubscriptionStatus.past_due,
    "canceled":           SubscriptionStatus.canceled,
    "incomplete":         SubscriptionStatus.incomplete,
    "incomplete_expired": SubscriptionStatus.canceled,
}

OUT_OF_ORDER = "out_of_order"

# A company row in one of these states may be taken over by a new Stripe subscription
REPLACEABLE_STATUSES = frozenset({SubscriptionStatus.canceled})


@dataclass(frozen=True)
class CreatedState:
    provider_subscription_id: Optional[str]
    status: SubscriptionStatus
    period_end: Optional[datetime]
    trial_end: Optional[datetime]
    # True when derived from a checkout session's payment_status rather than Stripe's subscription
    estimated: bool = False


@dataclass(frozen=True)
class ReconcileResult:
    outcome: EventOutcome
    reason: Optional[str] = None
    subscription_id: Optional[uuid.UUID] = None
    company_id: Optional[uuid.UUID] = None
    # Post-commit notification to send, if any ("payment_failed", "subscription_canceled")
    notify: Optional[str] = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _from_unix(value: Any) -> Optional[datetime]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return None


def _parse_uuid(value: Any) -> Optional[uuid.UUID]:
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _ref_id(value: Any) -> Optional[str]:
    """Stripe references are either an id string or an expanded object."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, Mapping):
        return value.get("id")
    return None


def _meta(obj: Mapping[str, Any], *keys: str) -> Optional[str]:
    metadata = obj.get("metadata") or {}
    for key in keys:
        if metadata.get(key):
            return metadata[key]
    return None


def next_period_end(now: Optional[datetime] = None) -> datetime:
    """One calendar month from now, at midnight UTC."""
    now = now or datetime.now(timezone.utc)
    year, month = (now.year + 1, 1) if now.month == 12 else (now.year, now.month + 1)
    day = now.day
    while True:
        try:
            return datetime(year, month, day, tzinfo=timezone.utc)
        except ValueError:
            day -= 1


def subscription_period_end(obj: Mapping[str, Any]) -> Optional[datetime]:
    end = _from_unix(obj.get("current_period_end"))
    if end:
        return end
    # Newer API versions carry the period on subscription items
    items = (obj.get("items") or {}).get("data") or []
    ends = [_from_unix(item.get("current_period_end")) for item in items]
    ends = [e for e in ends if e]
    return max(ends) if ends else None


def invoice_subscription_id(invoice: Mapping[str, Any]) -> Optional[str]:
    sub_id = _ref_id(invoice.get("subscription"))
    if sub_id:
        return sub_id
    details = ((invoice.get("parent") or {}).get("subscription_details")) or {}
    return _ref_id(details.get("subscription"))


def invoice_period_end(invoice: Mapping[str, Any]) -> Optional[datetime]:
    lines = (invoice.get("lines") or {}).get("data") or []
    ends = [_from_unix((line.get("period") or {}).get("end")) for line in lines]
    ends = [e for e in ends if e]
    return max(ends) if ends else None


def derive_entitlement(subscription: Subscription, grace_failures: int) -> bool:
    """
    Member entitlement for a subscription state.
    past_due keeps members entitled until the grace failure count is reached.
    """
    if subscription.status in (SubscriptionStatus.active, SubscriptionStatus.trialing):
        return True
    if subscription.status == SubscriptionStatus.past_due:
        return (subscription.failed_payment_count or 0) < grace_failures
    return False


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------

class SubscriptionReconciler:

    def __init__(self, db: AsyncSession, grace_failures: int = 3):
        self.db = db
        self.grace_failures = grace_failures
        self.companies = CompanyRepository(db)
        self.plans = PlanRepository(db)
        self.subscriptions = SubscriptionRepository(db)
        self.members = MemberRepository(db)
        self.audit = AuditRepository(db)

        self._handlers = {
            BillingEventType.subscription_created:  self._handle_created,
            BillingEventType.subscription_updated:  self._handle_updated,
            BillingEventType.subscription_canceled: self._handle_updated,
            BillingEventType.payment_failed:        self._handle_payment_failed,
            BillingEventType.payment_succeeded:     self._handle_payment_succeeded,
        }

    async def apply(self, event: BillingEvent) -> ReconcileResult:
        handler = self._handlers.get(event.type)
        if handler is None:
            log.info(f"[Reconciler] Unhandled event type: {event.provider_type}")
            return ReconcileResult(EventOutcome.ignored, reason="unhandled_event_type")
        return await handler(event)

    # ── Shared steps ──────────────────────────────────────────────────────

    def _failed(self, event: BillingEvent, error: Exception, **kwargs) -> ReconcileResult:
        log.error(f"[Reconciler] {event.provider_type} {event.id}: {error}")
        return ReconcileResult(EventOutcome.failed, reason=getattr(error, "code", str(error)), **kwargs)

    async def _locate(self, event: BillingEvent, provider_subscription_id: Optional[str]):
        subscription = None
        if provider_subscription_id:
            subscription = await self.subscriptions.get_by_provider_id(provider_subscription_id)
        if subscription is None:
            return None, self._failed(
                event, SubscriptionNotFound(f"No subscription for {provider_subscription_id!r}")
            )
        return subscription, None

    def _is_stale(self, event: BillingEvent, subscription: Subscription) -> bool:
        if as_utc(event.occurred_at) < as_utc(subscription.last_event_at):
            log.info(
                f"[Reconciler] Ignoring {event.provider_type} {event.id}: "
                f"occurred {event.occurred_at.isoformat()} before last applied "
                f"{as_utc(subscription.last_event_at).isoformat()}"
            )
            return True
        return False

    def _ignored_stale(self, subscription: Subscription) -> ReconcileResult:
        return ReconcileResult(
            EventOutcome.ignored,
            reason=OUT_OF_ORDER,
            subscription_id=subscription.id,
            company_id=subscription.company_id,
        )

    async def _propagate(self, subscription: Subscription, was_entitled: Optional[bool], event: BillingEvent) -> bool:
        """Set member entitlement from subscription state, in the same transaction."""
        entitled = derive_entitlement(subscription, self.grace_failures)
        count = await self.members.set_entitlement(subscription.company_id, entitled)

        if was_entitled is not None and was_entitled != entitled:
            await self.audit.log(
                AuditEventType.MEMBERS_RESTORED if entitled else AuditEventType.MEMBERS_DEMOTED,
                company_id=subscription.company_id,
                subject_id=event.id,
                metadata={"members": count, "status": subscription.status.value},
                commit=False,
            )
            log.info(
                f"[Reconciler] Company {subscription.company_id} members "
                f"{'restored' if entitled else 'demoted'} ({count})"
            )
        return entitled

    # ── Handlers ──────────────────────────────────────────────────────────

    async def _handle_created(self, event: BillingEvent) -> ReconcileResult:
        obj = event.payload
        company_id = _parse_uuid(_meta(obj, "company_id", "companyId"))
        if company_id is None:
            return self._failed(event, CompanyNotFound("Event metadata has no company_id"))

        company = await self.companies.get(company_id)
        if company is None:
            return self._failed(event, CompanyNotFound(f"Company {company_id} not found"))

        plan = None
        plan_id = _parse_uuid(_meta(obj, "plan_id", "planId"))
        if plan_id is not None:
            plan = await self.plans.get(plan_id)
            if plan is None:
                log.warning(f"[Reconciler] Unknown plan {plan_id} in {event.id}; storing without plan")
                plan_id = None

        created = self._created_state(event, plan)
        if not created.provider_subscription_id:
            return self._failed(
                event, SubscriptionNotFound("Event carries no subscription id"), company_id=company_id
            )

        existing = await self.subscriptions.get_for_company(company_id)
        owner = await self.subscriptions.get_by_provider_id(created.provider_subscription_id)
        if owner is not None and (existing is None or owner.id != existing.id):
            return self._failed(
                event,
                DuplicateSubscription(
                    f"{created.provider_subscription_id} already belongs to subscription {owner.id}"
                ),
                subscription_id=owner.id,
                company_id=company_id,
            )

        if existing is None:
            return await self._insert(event, company_id, plan_id, created)
        if existing.provider_subscription_id == created.provider_subscription_id:
            return await self._refresh(event, existing, plan_id, created)
        if existing.status in REPLACEABLE_STATUSES:
            return await self._resubscribe(event, existing, plan_id, created)
        return self._failed(
            event,
            DuplicateSubscription(f"Company {company_id} already owns subscription {existing.id}"),
            subscription_id=existing.id,
            company_id=company_id,
        )

    def _created_state(self, event: BillingEvent, plan: Optional[Plan]) -> CreatedState:
        obj = event.payload
        if event.provider_type != "checkout.session.completed":
            return CreatedState(
                provider_subscription_id=_ref_id(obj.get("id")),
                status=STRIPE_STATUSES.get(obj.get("status"), SubscriptionStatus.incomplete),
                period_end=subscription_period_end(obj),
                trial_end=_from_unix(obj.get("trial_end")),
            )

        # An expanded session subscription carries the real status
        expanded = obj.get("subscription")
        if isinstance(expanded, Mapping) and expanded.get("status"):
            return CreatedState(
                provider_subscription_id=_ref_id(expanded),
                status=STRIPE_STATUSES.get(expanded.get("status"), SubscriptionStatus.incomplete),
                period_end=subscription_period_end(expanded),
                trial_end=_from_unix(expanded.get("trial_end")),
            )

        provider_subscription_id = _ref_id(expanded)
        payment_status = obj.get("payment_status")
        if payment_status == "paid":
            return CreatedState(
                provider_subscription_id, SubscriptionStatus.active, next_period_end(), None, estimated=True
            )
        if payment_status == "no_payment_required":
            # Trial checkout: nothing charged until the trial ends
            trial_end = None
            if plan is not None and plan.trial_days:
                trial_end = as_utc(event.occurred_at) + timedelta(days=plan.trial_days)
            return CreatedState(
                provider_subscription_id,
                SubscriptionStatus.trialing,
                trial_end or next_period_end(),
                trial_end,
                estimated=True,
            )
        return CreatedState(provider_subscription_id, SubscriptionStatus.incomplete, None, None, estimated=True)

    async def _insert(
        self, event: BillingEvent, company_id: uuid.UUID, plan_id: Optional[uuid.UUID], created: CreatedState
    ) -> ReconcileResult:
        subscription = await self.subscriptions.add(
            Subscription(
                company_id=company_id,
                plan_id=plan_id,
                status=created.status,
                provider_subscription_id=created.provider_subscription_id,
                current_period_end=created.period_end,
                trial_ends_at=created.trial_end,
                last_event_at=event.occurred_at,
                failed_payment_count=0,
            )
        )
        entitled = await self._propagate(subscription, None, event)

        await self.audit.log(
            AuditEventType.SUBSCRIPTION_CREATED,
            company_id=company_id,
            subject_id=event.id,
            metadata={
                "provider_subscription_id": created.provider_subscription_id,
                "status": created.status.value,
                "plan_id": str(plan_id) if plan_id else None,
                "entitled": entitled,
            },
            commit=False,
        )
        log.info(f"[Reconciler] Company {company_id} subscription created ({created.status.value})")
        return ReconcileResult(
            EventOutcome.applied, subscription_id=subscription.id, company_id=company_id
        )

    async def _refresh(
        self, event: BillingEvent, subscription: Subscription, plan_id: Optional[uuid.UUID], created: CreatedState
    ) -> ReconcileResult:
        """Second creation event for the same Stripe subscription (checkout + subscription.created)."""
        if self._is_stale(event, subscription):
            return self._ignored_stale(subscription)

        was_entitled = derive_entitlement(subscription, self.grace_failures)
        old_status = subscription.status

        subscription.status = created.status
        # Estimated periods never overwrite the ones Stripe reported
        if created.period_end and not (created.estimated and subscription.current_period_end):
            subscription.current_period_end = created.period_end
        if created.trial_end and not (created.estimated and subscription.trial_ends_at):
            subscription.trial_ends_at = created.trial_end
        if plan_id is not None:
            subscription.plan_id = plan_id
        if created.status == SubscriptionStatus.active:
            subscription.failed_payment_count = 0
        subscription.last_event_at = event.occurred_at

        await self._propagate(subscription, was_entitled, event)

        await self.audit.log(
            AuditEventType.SUBSCRIPTION_UPDATED,
            company_id=subscription.company_id,
            subject_id=event.id,
            metadata={"from": old_status.value, "to": created.status.value},
            commit=False,
        )
        log.info(
            f"[Reconciler] Subscription {subscription.id} refreshed by {event.provider_type} "
            f"({old_status.value} → {created.status.value})"
        )
        return ReconcileResult(
            EventOutcome.applied, subscription_id=subscription.id, company_id=subscription.company_id
        )

    async def _resubscribe(
        self, event: BillingEvent, subscription: Subscription, plan_id: Optional[uuid.UUID], created: CreatedState
    ) -> ReconcileResult:
        """A new Stripe subscription replaces the company's canceled one on the same row."""
        if self._is_stale(event, subscription):
            return self._ignored_stale(subscription)

        was_entitled = derive_entitlement(subscription, self.grace_failures)
        previous = subscription.provider_subscription_id

        subscription.provider_subscription_id = created.provider_subscription_id
        subscription.status = created.status
        subscription.current_period_end = created.period_end
        subscription.trial_ends_at = created.trial_end
        subscription.plan_id = plan_id
        subscription.failed_payment_count = 0
        subscription.last_event_at = event.occurred_at

        entitled = await self._propagate(subscription, was_entitled, event)

        await self.audit.log(
            AuditEventType.SUBSCRIPTION_CREATED,
            company_id=subscription.company_id,
            subject_id=event.id,
            metadata={
                "provider_subscription_id": created.provider_subscription_id,
                "previous_provider_subscription_id": previous,
                "status": created.status.value,
                "plan_id": str(plan_id) if plan_id else None,
                "entitled": entitled,
                "resubscribed": True,
            },
            commit=False,
        )
        log.info(
            f"[Reconciler] Company {subscription.company_id} resubscribed: "
            f"{previous} → {created.provider_subscription_id} ({created.status.value})"
        )
        return ReconcileResult(
            EventOutcome.applied, subscription_id=subscription.id, company_id=subscription.company_id
        )

    async def _handle_updated(self, event: BillingEvent) -> ReconcileResult:
        obj = event.payload
        subscription, failure = await self._locate(event, _ref_id(obj.get("id")))
        if failure:
            return failure
        if self._is_stale(event, subscription):
            return self._ignored_stale(subscription)

        was_entitled = derive_entitlement(subscription, self.grace_failures)
        old_status = subscription.status

        if event.type == BillingEventType.subscription_canceled:
            new_status = SubscriptionStatus.canceled
        else:
            new_status = STRIPE_STATUSES.get(obj.get("status"), subscription.status)

        subscription.status = new_status
        period_end = subscription_period_end(obj)
        if period_end:
            subscription.current_period_end = period_end
        trial_end = _from_unix(obj.get("trial_end"))
        if trial_end:
            subscription.trial_ends_at = trial_end
        if new_status == SubscriptionStatus.active:
            subscription.failed_payment_count = 0
        subscription.last_event_at = event.occurred_at

        await self._propagate(subscription, was_entitled, event)

        cancelled = new_status == SubscriptionStatus.canceled
        await self.audit.log(
            AuditEventType.SUBSCRIPTION_CANCELLED if cancelled else AuditEventType.SUBSCRIPTION_UPDATED,
            company_id=subscription.company_id,
            subject_id=event.id,
            metadata={"from": old_status.value, "to": new_status.value},
            commit=False,
        )
        log.info(
            f"[Reconciler] Subscription {subscription.id} {old_status.value} → {new_status.value}"
        )
        return ReconcileResult(
            EventOutcome.applied,
            subscription_id=subscription.id,
            company_id=subscription.company_id,
            notify="subscription_canceled" if cancelled and old_status != new_status else None,
        )

    async def _handle_payment_failed(self, event: BillingEvent) -> ReconcileResult:
        invoice = event.payload
        provider_subscription_id = invoice_subscription_id(invoice)
        if not provider_subscription_id:
            log.info(f"[Reconciler] Invoice {invoice.get('id')} has no subscription, ignoring")
            return ReconcileResult(EventOutcome.ignored, reason="invoice_without_subscription")

        subscription, failure = await self._locate(event, provider_subscription_id)
        if failure:
            return failure
        if self._is_stale(event, subscription):
            return self._ignored_stale(subscription)

        was_entitled = derive_entitlement(subscription, self.grace_failures)
        subscription.status = SubscriptionStatus.past_due
        subscription.failed_payment_count = (subscription.failed_payment_count or 0) + 1
        subscription.last_event_at = event.occurred_at

        await self._propagate(subscription, was_entitled, event)

        await self.audit.log(
            AuditEventType.PAYMENT_FAILED,
            company_id=subscription.company_id,
            subject_id=event.id,
            metadata={
                "invoice_id": invoice.get("id"),
                "amount_due": invoice.get("amount_due"),
                "currency": invoice.get("currency"),
                "failed_payment_count": subscription.failed_payment_count,
            },
            commit=False,
        )
        log.warning(
            f"[Reconciler] Payment failed for subscription {subscription.id} "
            f"({subscription.failed_payment_count}/{self.grace_failures})"
        )
        return ReconcileResult(
            EventOutcome.applied,
            subscription_id=subscription.id,
            company_id=subscription.company_id,
            notify="payment_failed",
        )

    async def _handle_payment_succeeded(self, event: BillingEvent) -> ReconcileResult:
        invoice = event.payload
        provider_subscription_id = invoice_subscription_id(invoice)
        if not provider_subscription_id:
            log.info(f"[Reconciler] Invoice {invoice.get('id')} has no subscription, ignoring")
            return ReconcileResult(EventOutcome.ignored, reason="invoice_without_subscription")

        subscription, failure = await self._locate(event, provider_subscription_id)
        if failure:
            return failure
        if self._is_stale(event, subscription):
            return self._ignored_stale(subscription)

        was_entitled = derive_entitlement(subscription, self.grace_failures)
        subscription.status = SubscriptionStatus.active
        subscription.failed_payment_count = 0
        subscription.current_period_end = invoice_period_end(invoice) or next_period_end()
        subscription.last_event_at = event.occurred_at

        await self._propagate(subscription, was_entitled, event)

        await self.audit.log(
            AuditEventType.PAYMENT_SUCCESS,
            company_id=subscription.company_id,
            subject_id=event.id,
            metadata={
                "invoice_id": invoice.get("id"),
                "amount_paid": invoice.get("amount_paid"),
                "currency": invoice.get("currency"),
                "current_period_end": subscription.current_period_end.isoformat(),
            },
            commit=False,
        )
        log.info(f"[Reconciler] Payment succeeded for subscription {subscription.id}")
        return ReconcileResult(
            EventOutcome.applied, subscription_id=subscription.id, company_id=subscription.company_id
        )
