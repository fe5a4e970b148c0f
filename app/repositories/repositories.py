"""
Repository layer — data access objects for all entities.
All repos accept an AsyncSession and return ORM models.

Subscription and member writes only add/flush: the webhook processor owns
the transaction and commits once per event.
"""
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import select, func, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.models import (
    User, Company, Member, MemberRole, Plan, Subscription, SubscriptionStatus
)


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------

class BaseRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def _commit_refresh(self, obj):
        await self.db.commit()
        await self.db.refresh(obj)
        return obj


# ---------------------------------------------------------------------------
# User
# ---------------------------------------------------------------------------

class UserRepository(BaseRepository):
    async def get_by_email(self, email: str) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.email == email))
        return result.scalar_one_or_none()

    async def get_by_id(self, user_id: uuid.UUID) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def create(
        self, email: str, hashed_password: str, first_name: str,
        last_name: Optional[str] = None, is_admin: bool = False,
    ) -> User:
        user = User(
            email=email, hashed_password=hashed_password,
            first_name=first_name, last_name=last_name, is_admin=is_admin,
        )
        self.db.add(user)
        return await self._commit_refresh(user)

    async def select_company(self, user: User, company_id: uuid.UUID) -> User:
        user.selected_company_id = company_id
        return await self._commit_refresh(user)


# ---------------------------------------------------------------------------
# Company
# ---------------------------------------------------------------------------

class CompanyRepository(BaseRepository):
    async def create(self, name: str, author_id: uuid.UUID) -> Company:
        company = Company(name=name, author_id=author_id)
        self.db.add(company)
        return await self._commit_refresh(company)

    async def get(self, company_id: uuid.UUID) -> Optional[Company]:
        result = await self.db.execute(select(Company).where(Company.id == company_id))
        return result.scalar_one_or_none()

    async def set_stripe_customer(self, company: Company, customer_id: str) -> Company:
        company.stripe_customer_id = customer_id
        return await self._commit_refresh(company)


# ---------------------------------------------------------------------------
# Member
# ---------------------------------------------------------------------------

class MemberRepository(BaseRepository):
    async def create(
        self,
        company_id: uuid.UUID,
        user_id: uuid.UUID,
        role: MemberRole = MemberRole.member,
        permissions: Optional[list[str]] = None,
    ) -> Member:
        member = Member(
            company_id=company_id,
            user_id=user_id,
            role=role,
            permissions=permissions or ["READ"],
        )
        self.db.add(member)
        return await self._commit_refresh(member)

    async def get_for_user(self, user_id: uuid.UUID, company_id: uuid.UUID) -> Optional[Member]:
        result = await self.db.execute(
            select(Member).where(Member.user_id == user_id, Member.company_id == company_id)
        )
        return result.scalar_one_or_none()

    async def count(self, company_id: uuid.UUID, role: Optional[MemberRole] = None) -> int:
        q = select(func.count(Member.id)).where(Member.company_id == company_id)
        if role is not None:
            q = q.where(Member.role == role)
        result = await self.db.execute(q)
        return result.scalar() or 0

    async def set_entitlement(self, company_id: uuid.UUID, entitled: bool) -> int:
        """
        Bulk-sets is_entitled for every member of the company.
        Runs inside the caller's transaction; does not commit.
        """
        result = await self.db.execute(
            update(Member)
            .where(Member.company_id == company_id)
            .values(is_entitled=entitled)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------

class PlanRepository(BaseRepository):
    async def create(self, name: str, price: int, **limits) -> Plan:
        plan = Plan(name=name, price=price, **limits)
        self.db.add(plan)
        return await self._commit_refresh(plan)

    async def get(self, plan_id: uuid.UUID) -> Optional[Plan]:
        result = await self.db.execute(select(Plan).where(Plan.id == plan_id))
        return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Subscription
# ---------------------------------------------------------------------------

class SubscriptionRepository(BaseRepository):
    async def get_for_company(self, company_id: uuid.UUID) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription).where(Subscription.company_id == company_id)
        )
        return result.scalar_one_or_none()

    async def get_by_provider_id(self, provider_subscription_id: str) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription).where(
                Subscription.provider_subscription_id == provider_subscription_id
            )
        )
        return result.scalar_one_or_none()

    async def add(self, subscription: Subscription) -> Subscription:
        """Stage a new subscription in the current transaction (flush, no commit)."""
        self.db.add(subscription)
        await self.db.flush()
        return subscription

    async def count_by_status(self) -> dict[str, int]:
        result = await self.db.execute(
            select(Subscription.status, func.count(Subscription.id)).group_by(Subscription.status)
        )
        counts = {s.value: 0 for s in SubscriptionStatus}
        for status, n in result.all():
            key = status.value if isinstance(status, SubscriptionStatus) else str(status)
            counts[key] = n
        return counts

    async def get_trials_ending_within(self, now: datetime, until: datetime) -> list[Subscription]:
        result = await self.db.execute(
            select(Subscription).where(
                Subscription.status == SubscriptionStatus.trialing,
                Subscription.trial_ends_at.is_not(None),
                Subscription.trial_ends_at >= now,
                Subscription.trial_ends_at <= until,
            )
        )
        return list(result.scalars().all())

    async def get_lapsed_active(self, now: datetime) -> list[Subscription]:
        """Active subscriptions whose paid period ended without a renewal event."""
        result = await self.db.execute(
            select(Subscription).where(
                Subscription.status == SubscriptionStatus.active,
                Subscription.current_period_end.is_not(None),
                Subscription.current_period_end < now,
            )
        )
        return list(result.scalars().all())
