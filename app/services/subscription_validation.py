"""
app/services/subscription_validation.py
────────────────────────────────────────
Request-time subscription checks for business operations.

Pure reads: nothing here writes Subscription or Member rows. A company whose
subscription is past_due is simply denied; reconciliation stays the job of
the Stripe webhook.

Usage:
    validation = SubscriptionValidationService(db)
    if not await validation.is_entitled(company_id, Capability.create_sheet):
        ...

    await validation.check_limit(company_id, LimitedResource.sheets, current_count=12)
    report = await validation.usage(company_id)   # members / viewers vs plan

    @router.post("/sheets", dependencies=[Depends(require_capability(Capability.create_sheet))])
"""

from __future__ import annotations

import enum
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.deps import get_current_member
from app.core.errors import LimitReached, NoActiveSubscription, PlanNotFound
from app.models.models import Member, MemberRole, Plan, Subscription, SubscriptionStatus
from app.repositories.repositories import MemberRepository, PlanRepository, SubscriptionRepository
from app.services.reconciler import as_utc

log = logging.getLogger(__name__)


class Capability(str, enum.Enum):
    create_workspace = "workspace.create"
    create_sheet     = "sheet.create"
    create_column    = "column.create"
    create_task      = "task.create"
    invite_member    = "member.invite"
    invite_viewer    = "viewer.invite"
    upload_file      = "file.upload"


class LimitedResource(str, enum.Enum):
    workspaces = "workspaces"
    sheets     = "sheets"
    members    = "members"
    viewers    = "viewers"
    tasks      = "tasks"


_PLAN_LIMIT_FIELD = {
    LimitedResource.workspaces: "max_workspaces",
    LimitedResource.sheets:     "max_sheets",
    LimitedResource.members:    "max_members",
    LimitedResource.viewers:    "max_viewers",
    LimitedResource.tasks:      "max_tasks",
}

UNLIMITED = -1

# Resources whose counts live in this service (members table)
COUNTED_RESOURCES = (LimitedResource.members, LimitedResource.viewers)


@dataclass(frozen=True)
class ResourceUsage:
    used: int
    limit: Optional[int]
    remaining: Optional[int]


def is_trial_window_open(subscription: Subscription, now: Optional[datetime] = None) -> bool:
    end = subscription.trial_ends_at or subscription.current_period_end
    if end is None:
        return False
    now = now or datetime.now(timezone.utc)
    return now < as_utc(end)


def subscription_grants_access(subscription: Optional[Subscription], now: Optional[datetime] = None) -> bool:
    if subscription is None:
        return False
    if subscription.status == SubscriptionStatus.active:
        return True
    if subscription.status == SubscriptionStatus.trialing:
        return is_trial_window_open(subscription, now)
    return False


class SubscriptionValidationService:

    def __init__(self, db: AsyncSession):
        self.db = db
        self.subscriptions = SubscriptionRepository(db)
        self.plans = PlanRepository(db)
        self.members = MemberRepository(db)

    async def is_entitled(self, company_id: uuid.UUID, capability: Capability | str) -> bool:
        subscription = await self.subscriptions.get_for_company(company_id)
        entitled = subscription_grants_access(subscription)
        if not entitled:
            state = subscription.status.value if subscription else "none"
            log.debug(f"[Entitlement] Company {company_id} denied {capability} (subscription={state})")
        return entitled

    async def _active_plan(self, company_id: uuid.UUID) -> Plan:
        subscription = await self.subscriptions.get_for_company(company_id)
        if not subscription_grants_access(subscription):
            raise NoActiveSubscription()
        if subscription.plan_id is None:
            raise PlanNotFound()
        plan = await self.plans.get(subscription.plan_id)
        if plan is None:
            raise PlanNotFound()
        return plan

    async def _count(self, company_id: uuid.UUID, resource: LimitedResource) -> int:
        if resource == LimitedResource.members:
            return await self.members.count(company_id, role=MemberRole.member)
        if resource == LimitedResource.viewers:
            return await self.members.count(company_id, role=MemberRole.viewer)
        raise ValueError(f"current_count is required for {resource.value}")

    async def check_limit(
        self,
        company_id: uuid.UUID,
        resource: LimitedResource,
        current_count: Optional[int] = None,
    ) -> None:
        """
        Raises when creating one more `resource` would exceed the plan.
        Workspace, sheet and task counts belong to other modules and must be
        passed in; member and viewer counts are read here when omitted.
        """
        plan = await self._active_plan(company_id)

        limit = getattr(plan, _PLAN_LIMIT_FIELD[resource])
        if limit is None or limit == UNLIMITED:
            return

        if current_count is None:
            current_count = await self._count(company_id, resource)

        if current_count >= limit:
            label = resource.value[:-1].capitalize()
            raise LimitReached(
                f"{label} limit reached ({current_count}/{limit})",
                code=f"{resource.value[:-1].upper()}_LIMIT_REACHED",
            )

    async def usage(self, company_id: uuid.UUID) -> dict[LimitedResource, ResourceUsage]:
        """Member and viewer counts against the plan. Raises like check_limit."""
        plan = await self._active_plan(company_id)
        report = {}
        for resource in COUNTED_RESOURCES:
            limit = getattr(plan, _PLAN_LIMIT_FIELD[resource])
            if limit == UNLIMITED:
                limit = None
            used = await self._count(company_id, resource)
            report[resource] = ResourceUsage(
                used=used,
                limit=limit,
                remaining=None if limit is None else max(0, limit - used),
            )
        return report


# ---------------------------------------------------------------------------
# FastAPI dependency
# ---------------------------------------------------------------------------

def require_capability(capability: Capability):
    """
    Returns a FastAPI dependency that denies the request when the current
    member's company is not entitled.

    Example:
        dependencies=[Depends(require_capability(Capability.create_task))]
    """
    async def _check(
        db: AsyncSession = Depends(get_db),
        member: Member = Depends(get_current_member),
    ) -> Member:
        service = SubscriptionValidationService(db)
        if not await service.is_entitled(member.company_id, capability):
            raise HTTPException(
                status_code=status.HTTP_402_PAYMENT_REQUIRED,
                detail={
                    "error": "subscription_required",
                    "message": "Your company's subscription does not allow this action.",
                    "capability": capability.value,
                    "upgrade_url": "/settings/billing",
                },
            )
        return member

    return _check
