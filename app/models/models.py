"""
SQLAlchemy ORM models for the workspace backend.

Multi-tenant: every member, plan subscription and audit entry belongs to a Company (tenant).
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON, Boolean, DateTime, Enum, ForeignKey, Index, Integer, String, Text, UUID
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from app.core.database import Base

import enum


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class SubscriptionStatus(str, enum.Enum):
    trialing = "trialing"
    active = "active"
    past_due = "past_due"
    canceled = "canceled"
    incomplete = "incomplete"


class MemberRole(str, enum.Enum):
    author = "author"   # company owner: billing, members, everything
    member = "member"
    viewer = "viewer"


class MemberStatus(str, enum.Enum):
    active = "active"
    blocked = "blocked"


class MemberPermission(str, enum.Enum):
    CREATE = "CREATE"
    READ = "READ"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    ALL = "ALL"


# ---------------------------------------------------------------------------
# User / Auth
# ---------------------------------------------------------------------------

class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    hashed_password: Mapped[str] = mapped_column(String(255), nullable=False)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=True)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    # Company the user currently acts in (a user may belong to several)
    selected_company_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    memberships: Mapped[list["Member"]] = relationship(back_populates="user")


# ---------------------------------------------------------------------------
# Company (Tenant)
# ---------------------------------------------------------------------------

class Company(Base):
    __tablename__ = "companies"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    author_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    stripe_customer_id: Mapped[str] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    members: Mapped[list["Member"]] = relationship(back_populates="company", cascade="all, delete-orphan")
    subscription: Mapped["Subscription"] = relationship(
        back_populates="company", uselist=False, cascade="all, delete-orphan"
    )


# ---------------------------------------------------------------------------
# Member
# ---------------------------------------------------------------------------

class Member(Base):
    __tablename__ = "members"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("companies.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    role: Mapped[MemberRole] = mapped_column(Enum(MemberRole), default=MemberRole.member)
    permissions: Mapped[list] = mapped_column(JSON, default=lambda: [MemberPermission.READ.value])
    status: Mapped[MemberStatus] = mapped_column(Enum(MemberStatus), default=MemberStatus.active)

    # Derived from the company's subscription by the reconciler, never set by users
    is_entitled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_members_company_id", "company_id"),
        Index("uq_members_company_user", "company_id", "user_id", unique=True),
    )

    company: Mapped["Company"] = relationship(back_populates="members")
    user: Mapped["User"] = relationship(back_populates="memberships")


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------

class Plan(Base):
    __tablename__ = "plans"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=True)
    price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # cents
    currency: Mapped[str] = mapped_column(String(3), default="usd")
    stripe_price_id: Mapped[str] = mapped_column(String(255), nullable=True)
    trial_days: Mapped[int] = mapped_column(Integer, default=0)

    # -1 means unlimited
    max_workspaces: Mapped[int] = mapped_column(Integer, default=-1)
    max_sheets: Mapped[int] = mapped_column(Integer, default=-1)
    max_members: Mapped[int] = mapped_column(Integer, default=-1)
    max_viewers: Mapped[int] = mapped_column(Integer, default=-1)
    max_tasks: Mapped[int] = mapped_column(Integer, default=-1)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


# ---------------------------------------------------------------------------
# Subscription
# ---------------------------------------------------------------------------

class Subscription(Base):
    """
    One per company. Written only by the subscription reconciler.
    """
    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("companies.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    plan_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("plans.id"), nullable=True)
    status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus), default=SubscriptionStatus.incomplete, nullable=False
    )
    provider_subscription_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)
    trial_ends_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)

    # Ordering guard: provider time of the last event applied to this row
    last_event_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    failed_payment_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __mapper_args__ = {"eager_defaults": True}

    company: Mapped["Company"] = relationship(back_populates="subscription")
    plan: Mapped["Plan"] = relationship()
