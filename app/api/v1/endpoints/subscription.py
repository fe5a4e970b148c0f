"""
Subscription endpoints: current company's subscription, entitlement and usage.

Routes:
  GET    /subscription/me      — subscription summary for any member
  GET    /subscription/usage   — member / viewer counts against the plan
  DELETE /subscription/cancel  — ask Stripe to cancel (author only)
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.deps import get_current_member, get_stripe_service
from app.core.roles import require_author
from app.models.audit import AuditEventType
from app.models.models import Member, SubscriptionStatus
from app.repositories.audit_repository import AuditRepository
from app.repositories.repositories import PlanRepository, SubscriptionRepository
from app.schemas.billing import CancelResponse, PlanOut, ResourceUsageOut, SubscriptionSummary, UsageReport
from app.services.stripe_service import StripeService
from app.services.subscription_validation import (
    LimitedResource,
    SubscriptionValidationService,
    subscription_grants_access,
)

log = logging.getLogger(__name__)

router = APIRouter(prefix="/subscription", tags=["Subscription"])


@router.get("/me", response_model=SubscriptionSummary)
async def get_my_subscription(
    db: AsyncSession = Depends(get_db),
    member: Member = Depends(get_current_member),
):
    subscription = await SubscriptionRepository(db).get_for_company(member.company_id)
    if subscription is None:
        return SubscriptionSummary(
            company_id=member.company_id,
            entitled=False,
            member_entitled=member.is_entitled,
        )

    plan = await PlanRepository(db).get(subscription.plan_id) if subscription.plan_id else None
    return SubscriptionSummary(
        company_id=member.company_id,
        status=subscription.status,
        entitled=subscription_grants_access(subscription),
        member_entitled=member.is_entitled,
        current_period_end=subscription.current_period_end,
        trial_ends_at=subscription.trial_ends_at,
        failed_payment_count=subscription.failed_payment_count,
        plan=PlanOut.model_validate(plan) if plan else None,
    )


@router.get("/usage", response_model=UsageReport)
async def get_usage(
    db: AsyncSession = Depends(get_db),
    member: Member = Depends(get_current_member),
):
    """Seats used against the plan. 403 without an entitled subscription."""
    report = await SubscriptionValidationService(db).usage(member.company_id)
    return UsageReport(
        company_id=member.company_id,
        members=ResourceUsageOut.model_validate(report[LimitedResource.members], from_attributes=True),
        viewers=ResourceUsageOut.model_validate(report[LimitedResource.viewers], from_attributes=True),
    )


@router.delete("/cancel", response_model=CancelResponse, status_code=status.HTTP_202_ACCEPTED)
async def cancel_subscription(
    immediate: bool = Query(False, description="Cancel now instead of at period end"),
    db: AsyncSession = Depends(get_db),
    member: Member = Depends(require_author),
    stripe: StripeService = Depends(get_stripe_service),
):
    """
    Forwards the cancellation to Stripe. The local subscription keeps its
    state until customer.subscription.updated / .deleted is reconciled.
    """
    subscription = await SubscriptionRepository(db).get_for_company(member.company_id)
    if subscription is None:
        raise HTTPException(status_code=404, detail="Company has no subscription")
    if subscription.status in (SubscriptionStatus.canceled, SubscriptionStatus.incomplete):
        raise HTTPException(
            status_code=409,
            detail=f"Subscription is {subscription.status.value} and cannot be cancelled",
        )

    provider_subscription_id = subscription.provider_subscription_id
    result = await stripe.cancel_subscription(provider_subscription_id, immediate=immediate)
    if not result["ok"]:
        raise HTTPException(status_code=502, detail=f"Stripe error: {result.get('error')}")

    await AuditRepository(db).log(
        AuditEventType.CANCEL_REQUESTED,
        actor_user_id=member.user_id,
        company_id=member.company_id,
        subject_id=provider_subscription_id,
        metadata={"immediate": immediate},
    )
    log.info(
        f"[Subscription] Company {member.company_id} requested cancellation of "
        f"{provider_subscription_id} (immediate={immediate})"
    )
    return CancelResponse(
        immediate=immediate,
        provider_subscription_id=provider_subscription_id,
        cancel_at_period_end=result["cancel_at_period_end"],
    )
