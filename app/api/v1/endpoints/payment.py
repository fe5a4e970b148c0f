"""
app/api/v1/endpoints/payment.py
────────────────────────────────
Stripe webhook, checkout/portal sessions and payment observability.

Routes:
  POST /payment/webhook    — Stripe webhook receiver (no auth — signature verification)
  POST /payment/checkout   — Create Stripe Checkout session (author only)
  POST /payment/portal     — Create Stripe billing portal session (author only)
  GET  /payment/health     — Database + Stripe connectivity
  GET  /payment/metrics    — Subscription / processed-event counts (admin, cached)
  GET  /payment/audit      — Paginated payment log for the company (author only)

Webhook status codes tell Stripe whether to redeliver:
  200  processed, duplicate, ignored or failed-and-logged (no retry)
  401  signature rejected
  400  verified body is not an event
  5xx  transient persistence failure (retry, Retry-After set)
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.cache import CachePolicy, TTLCache
from app.core.config import settings
from app.core.database import get_db
from app.core.deps import (
    get_billing_notifier, get_current_user, get_stripe_service, get_webhook_verifier, require_admin
)
from app.core.roles import require_author
from app.models.audit import AuditEventType
from app.models.models import Member, User
from app.repositories.audit_repository import AuditRepository
from app.repositories.event_repository import ProcessedEventRepository
from app.repositories.repositories import CompanyRepository, PlanRepository, SubscriptionRepository
from app.schemas.billing import (
    AuditLogOut,
    AuditLogPage,
    CheckoutRequest,
    CheckoutResponse,
    PaymentHealthOut,
    PaymentMetricsOut,
    PortalResponse,
    WebhookAck,
)
from app.services.billing_notifier import BillingNotifier
from app.services.reconciler import REPLACEABLE_STATUSES
from app.services.stripe_service import StripeService
from app.services.webhook_processor import WebhookProcessor
from app.services.webhook_verifier import WebhookVerifier

log = logging.getLogger(__name__)

router = APIRouter(prefix="/payment", tags=["Payment"])

metrics_cache = TTLCache()


# ─────────────────────────────────────────────────────────────────────────
# Stripe Webhook
# ─────────────────────────────────────────────────────────────────────────

@router.post("/webhook", response_model=WebhookAck, status_code=200)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="stripe-signature"),
    verifier: WebhookVerifier = Depends(get_webhook_verifier),
    notifier: BillingNotifier = Depends(get_billing_notifier),
    db: AsyncSession = Depends(get_db),
):
    """
    Stripe webhook receiver. Must be unauthenticated — Stripe calls this directly.
    The signature is checked against the raw body before anything is parsed.

    Register this URL in your Stripe dashboard:
      https://your-domain.com/api/v1/payment/webhook

    Enable events:
      checkout.session.completed
      customer.subscription.created / updated / deleted
      invoice.payment_failed
      invoice.payment_succeeded
    """
    body = await request.body()
    event = verifier.verify(body, stripe_signature)

    log.info(f"[Webhook] Received {event.provider_type} {event.id}")

    processor = WebhookProcessor(
        db,
        grace_failures=settings.GRACE_PERIOD_FAILURE_COUNT,
        timeout_seconds=settings.PERSISTENCE_TIMEOUT_SECONDS,
    )
    result = await processor.process(event)

    if result.duplicate:
        log.info(f"[Webhook] Duplicate delivery of {event.id}, acknowledged")
    else:
        # Committed; emails never hold up the acknowledgement
        notifier.schedule(event, result.reconcile)

    return WebhookAck(event_id=event.id, outcome=result.outcome, duplicate=result.duplicate)


# ─────────────────────────────────────────────────────────────────────────
# Checkout / Portal
# ─────────────────────────────────────────────────────────────────────────

@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    payload: CheckoutRequest,
    db: AsyncSession = Depends(get_db),
    member: Member = Depends(require_author),
    current_user: User = Depends(get_current_user),
    stripe: StripeService = Depends(get_stripe_service),
):
    """
    Creates a Stripe Checkout session for a plan.

    Returns a `checkout_url` — the frontend redirects the user here.
    The subscription row itself is created by the webhook once Stripe
    confirms the checkout.
    """
    plan = await PlanRepository(db).get(payload.plan_id)
    if not plan:
        raise HTTPException(status_code=404, detail="Plan not found")

    company_repo = CompanyRepository(db)
    company = await company_repo.get(member.company_id)
    if not company:
        raise HTTPException(status_code=404, detail="Company not found")

    existing = await SubscriptionRepository(db).get_for_company(company.id)
    # Only a canceled subscription may be replaced by a new checkout
    if existing and existing.status not in REPLACEABLE_STATUSES:
        raise HTTPException(
            status_code=409,
            detail="Company already has a subscription. Use the billing portal to change plans.",
        )

    if not company.stripe_customer_id:
        customer_id = await stripe.get_or_create_customer(current_user.email, str(company.id), company.name)
        if customer_id:
            await company_repo.set_stripe_customer(company, customer_id)

    result = await stripe.create_checkout_session(
        company_id=str(company.id),
        company_name=company.name,
        user_id=str(current_user.id),
        plan=plan,
        customer_id=company.stripe_customer_id,
        customer_email=current_user.email,
    )
    if not result["ok"]:
        raise HTTPException(status_code=502, detail=f"Stripe error: {result.get('error')}")

    await AuditRepository(db).log(
        AuditEventType.CHECKOUT_CREATED,
        actor_user_id=current_user.id,
        company_id=company.id,
        subject_id=result["session_id"],
        metadata={"plan_id": str(plan.id), "price": plan.price, "currency": plan.currency},
    )

    return CheckoutResponse(checkout_url=result["checkout_url"], session_id=result["session_id"])


@router.post("/portal", response_model=PortalResponse)
async def create_portal(
    db: AsyncSession = Depends(get_db),
    member: Member = Depends(require_author),
    stripe: StripeService = Depends(get_stripe_service),
):
    company = await CompanyRepository(db).get(member.company_id)
    if not company or not company.stripe_customer_id:
        raise HTTPException(status_code=404, detail="Company has no Stripe customer yet")

    result = await stripe.create_portal_session(company.stripe_customer_id)
    if not result["ok"]:
        raise HTTPException(status_code=502, detail=f"Stripe error: {result.get('error')}")

    await AuditRepository(db).log(
        AuditEventType.PORTAL_CREATED,
        actor_user_id=member.user_id,
        company_id=company.id,
    )
    return PortalResponse(portal_url=result["portal_url"])


# ─────────────────────────────────────────────────────────────────────────
# Health / Metrics
# ─────────────────────────────────────────────────────────────────────────

@router.get("/health", response_model=PaymentHealthOut)
async def payment_health(
    db: AsyncSession = Depends(get_db),
    stripe: StripeService = Depends(get_stripe_service),
):
    """
    No auth required — useful for infrastructure health checks.
    """
    try:
        await db.execute(text("SELECT 1"))
        database = {"status": "healthy"}
    except SQLAlchemyError as e:
        log.error(f"[Health] Database check failed: {e}")
        database = {"status": "unhealthy", "message": "Database connection failed"}

    stripe_health = await stripe.ping()
    webhook_ready = bool(settings.STRIPE_WEBHOOK_SECRET)

    healthy = (
        database["status"] == "healthy"
        and stripe_health["status"] != "unhealthy"
        and webhook_ready
    )
    return PaymentHealthOut(
        status="healthy" if healthy else "degraded",
        database=database,
        stripe=stripe_health,
        webhook_secret_configured=webhook_ready,
        api_version=settings.STRIPE_API_VERSION,
        timestamp=datetime.now(timezone.utc),
    )


async def _build_metrics(db: AsyncSession) -> PaymentMetricsOut:
    return PaymentMetricsOut(
        subscriptions=await SubscriptionRepository(db).count_by_status(),
        events=await ProcessedEventRepository(db).count_by_outcome(),
        generated_at=datetime.now(timezone.utc),
    )


@router.get("/metrics", response_model=PaymentMetricsOut, dependencies=[Depends(require_admin)])
async def payment_metrics(
    fresh: bool = False,
    db: AsyncSession = Depends(get_db),
):
    """Counts across all tenants. Pass ?fresh=true to bypass the cache."""
    policy = CachePolicy(
        ttl_millis=settings.METRICS_CACHE_TTL_MS,
        key="payment:metrics",
        skip=fresh,
    )
    return await metrics_cache.fetch(policy, lambda: _build_metrics(db))


# ─────────────────────────────────────────────────────────────────────────
# Audit Log — Read
# ─────────────────────────────────────────────────────────────────────────

@router.get("/audit", response_model=AuditLogPage)
async def get_audit_log(
    limit: int = 50,
    offset: int = 0,
    event_type: Optional[str] = None,
    subject_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    member: Member = Depends(require_author),
):
    """
    Paginated payment log for the company. Author only.

    `event_type` ending in "." filters by prefix (e.g. "payment.");
    `subject_id` narrows to one Stripe event, session or subscription.
    """
    limit = min(limit, 100)
    rows, total = await AuditRepository(db).page_for_company(
        member.company_id,
        event_type=event_type,
        subject_id=subject_id,
        limit=limit,
        offset=offset,
    )

    return AuditLogPage(
        items=[
            AuditLogOut(
                id=r.id,
                event_type=r.event_type,
                actor_user_id=r.actor_user_id,
                subject_id=r.subject_id,
                metadata=r.metadata_,
                created_at=r.created_at,
            )
            for r in rows
        ],
        total=total,
        limit=limit,
        offset=offset,
    )
