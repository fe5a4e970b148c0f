"""
app/services/events.py
───────────────────────
Typed view of a verified Stripe event.

Only the fields the reconciler needs are lifted out of the Stripe envelope:

    {"id": "evt_...", "type": "customer.subscription.updated",
     "created": 1730000000, "data": {"object": {...}}}
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Mapping

from app.core.errors import MalformedEvent


class BillingEventType(str, enum.Enum):
    subscription_created  = "subscription_created"
    subscription_updated  = "subscription_updated"
    subscription_canceled = "subscription_canceled"
    payment_failed        = "payment_failed"
    payment_succeeded     = "payment_succeeded"
    unhandled             = "unhandled"


STRIPE_EVENT_TYPES: dict[str, BillingEventType] = {
    "checkout.session.completed":    BillingEventType.subscription_created,
    "customer.subscription.created": BillingEventType.subscription_created,
    "customer.subscription.updated": BillingEventType.subscription_updated,
    "customer.subscription.deleted": BillingEventType.subscription_canceled,
    "invoice.payment_failed":        BillingEventType.payment_failed,
    "invoice.payment_succeeded":     BillingEventType.payment_succeeded,
    "invoice.paid":                  BillingEventType.payment_succeeded,
}


@dataclass(frozen=True)
class BillingEvent:
    id: str
    type: BillingEventType
    provider_type: str
    occurred_at: datetime
    payload: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_stripe(cls, data: Any) -> "BillingEvent":
        if not isinstance(data, dict):
            raise MalformedEvent("Event body must be a JSON object")

        event_id = data.get("id")
        provider_type = data.get("type")
        created = data.get("created")
        if not event_id or not isinstance(event_id, str) or not provider_type:
            raise MalformedEvent("Event is missing id or type")
        if not isinstance(created, (int, float)) or isinstance(created, bool):
            raise MalformedEvent("Event is missing a numeric 'created' timestamp")

        envelope = data.get("data")
        obj = envelope.get("object") if isinstance(envelope, dict) else None
        if not isinstance(obj, dict):
            raise MalformedEvent("Event data.object must be a JSON object")

        return cls(
            id=event_id,
            type=STRIPE_EVENT_TYPES.get(provider_type, BillingEventType.unhandled),
            provider_type=provider_type,
            occurred_at=datetime.fromtimestamp(created, tz=timezone.utc),
            payload=MappingProxyType(obj),
        )
