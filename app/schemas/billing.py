"""
app/schemas/billing.py
───────────────────────
Pydantic schemas for payment, subscription and audit endpoints.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional, Any

from pydantic import BaseModel

from app.models.billing import EventOutcome
from app.models.models import SubscriptionStatus


# ── Stripe Checkout ───────────────────────────────────────────────────────

class CheckoutRequest(BaseModel):
    plan_id: uuid.UUID


class CheckoutResponse(BaseModel):
    checkout_url: str
    session_id: str


class PortalResponse(BaseModel):
    portal_url: str


# ── Webhook ───────────────────────────────────────────────────────────────

class WebhookAck(BaseModel):
    received: bool = True
    event_id: str
    outcome: Optional[EventOutcome]
    duplicate: bool = False


# ── Subscription ──────────────────────────────────────────────────────────

class PlanOut(BaseModel):
    id: uuid.UUID
    name: str
    price: int
    currency: str
    trial_days: int
    max_workspaces: int
    max_sheets: int
    max_members: int
    max_viewers: int
    max_tasks: int

    model_config = {"from_attributes": True}


class SubscriptionSummary(BaseModel):
    company_id: uuid.UUID
    status: Optional[SubscriptionStatus] = None
    entitled: bool
    member_entitled: bool
    current_period_end: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    failed_payment_count: int = 0
    plan: Optional[PlanOut] = None


class ResourceUsageOut(BaseModel):
    used: int
    limit: Optional[int] = None        # None → unlimited
    remaining: Optional[int] = None


class UsageReport(BaseModel):
    company_id: uuid.UUID
    members: ResourceUsageOut
    viewers: ResourceUsageOut


class CancelResponse(BaseModel):
    status: str = "cancel_requested"
    immediate: bool
    provider_subscription_id: str
    cancel_at_period_end: bool


# ── Health / metrics ──────────────────────────────────────────────────────

class ComponentHealth(BaseModel):
    status: str
    message: Optional[str] = None


class PaymentHealthOut(BaseModel):
    status: str
    database: ComponentHealth
    stripe: ComponentHealth
    webhook_secret_configured: bool
    api_version: str
    timestamp: datetime


class PaymentMetricsOut(BaseModel):
    subscriptions: dict[str, int]
    events: dict[str, int]
    generated_at: datetime


# ── Audit Log ─────────────────────────────────────────────────────────────

class AuditLogOut(BaseModel):
    id: uuid.UUID
    event_type: str
    actor_user_id: Optional[uuid.UUID]
    subject_id: Optional[str]
    metadata: Optional[dict[str, Any]]
    created_at: datetime

    model_config = {"from_attributes": True}


class AuditLogPage(BaseModel):
    items: list[AuditLogOut]
    total: int
    limit: int
    offset: int
