"""
app/models/audit.py
────────────────────
Immutable payment/audit log.

Captures checkout, webhook, subscription and entitlement events.
Design: append-only, no FK constraints (rows survive user/company deletion).
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, Index, String, JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from app.core.database import Base


class AuditEventType(str, enum.Enum):
    # Checkout / self-service
    CHECKOUT_CREATED              = "payment.checkout_created"
    PORTAL_CREATED                = "payment.portal_created"
    CANCEL_REQUESTED              = "subscription.cancel_requested"

    # Webhook reconciliation
    SUBSCRIPTION_CREATED          = "subscription.created"
    SUBSCRIPTION_UPDATED          = "subscription.updated"
    SUBSCRIPTION_CANCELLED        = "subscription.cancelled"
    PAYMENT_SUCCESS               = "payment.success"
    PAYMENT_FAILED                = "payment.failed"
    WEBHOOK_FAILED                = "webhook.failed"

    # Entitlement
    MEMBERS_DEMOTED               = "entitlement.members_demoted"
    MEMBERS_RESTORED              = "entitlement.members_restored"

    # Scheduler
    TRIAL_WARNING_SENT            = "trial.warning_sent"
    PERIOD_LAPSED                 = "subscription.period_lapsed"

    # Email
    EMAIL_SENT                    = "email.sent"
    EMAIL_FAILED                  = "email.failed"


class AuditLog(Base):
    """
    Immutable audit trail. Never UPDATE or DELETE rows here.
    Use INSERT only.
    """
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    event_type: Mapped[str] = mapped_column(String(80), nullable=False)

    # No FK constraints — rows must survive user/company deletion
    actor_user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=True)
    company_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=True)
    subject_id: Mapped[str] = mapped_column(String(255), nullable=True)

    metadata_: Mapped[dict] = mapped_column("metadata", JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_audit_logs_company_id", "company_id"),
        Index("ix_audit_logs_actor",      "actor_user_id"),
        Index("ix_audit_logs_event_type", "event_type"),
        Index("ix_audit_logs_created_at", "created_at"),
    )
