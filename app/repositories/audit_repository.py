"""
app/repositories/audit_repository.py
──────────────────────────────────────
Append-only writes + filtered reads for the payment log.

Rule: Never call update() or delete() on AuditLog rows.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Select, desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.audit import AuditEventType, AuditLog


def _event_value(event_type: AuditEventType | str) -> str:
    return event_type.value if isinstance(event_type, AuditEventType) else event_type


class AuditRepository:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def log(
        self,
        event_type: AuditEventType | str,
        *,
        actor_user_id: Optional[uuid.UUID] = None,
        company_id: Optional[uuid.UUID] = None,
        subject_id: Optional[str] = None,
        metadata: Optional[dict] = None,
        commit: bool = True,
    ) -> AuditLog:
        """
        Insert a single audit event.

        Pass commit=False to stage the row in the caller's transaction, e.g.
        from the subscription reconciler where the entry must land atomically
        with the subscription change it describes.

        Example:
            await audit.log(
                AuditEventType.PAYMENT_FAILED,
                company_id=subscription.company_id,
                subject_id=event.id,
                metadata={"failed_payment_count": 2},
                commit=False,
            )
        """
        row = AuditLog(
            id=uuid.uuid4(),
            event_type=_event_value(event_type),
            actor_user_id=actor_user_id,
            company_id=company_id,
            subject_id=str(subject_id) if subject_id else None,
            metadata_=metadata,
        )
        self.db.add(row)
        if commit:
            await self.db.commit()
        return row

    @staticmethod
    def _filtered(
        query: Select,
        company_id: uuid.UUID,
        event_type: Optional[str],
        subject_id: Optional[str],
        since: Optional[datetime],
    ) -> Select:
        query = query.where(AuditLog.company_id == company_id)
        if event_type:
            # "payment." matches every payment.* event
            if event_type.endswith("."):
                query = query.where(AuditLog.event_type.startswith(event_type))
            else:
                query = query.where(AuditLog.event_type == event_type)
        if subject_id:
            query = query.where(AuditLog.subject_id == subject_id)
        if since:
            query = query.where(AuditLog.created_at >= since)
        return query

    async def page_for_company(
        self,
        company_id: uuid.UUID,
        *,
        event_type: Optional[str] = None,
        subject_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[AuditLog], int]:
        """Most-recent-first rows plus the total matching the same filters."""
        rows_q = self._filtered(select(AuditLog), company_id, event_type, subject_id, since)
        rows_q = rows_q.order_by(desc(AuditLog.created_at)).limit(limit).offset(offset)
        count_q = self._filtered(select(func.count(AuditLog.id)), company_id, event_type, subject_id, since)

        rows = list((await self.db.execute(rows_q)).scalars().all())
        total = (await self.db.execute(count_q)).scalar() or 0
        return rows, total

    async def has_event_since(
        self,
        company_id: uuid.UUID,
        event_type: AuditEventType | str,
        since: datetime,
    ) -> bool:
        """Used by scheduled jobs to send at most one notice per company per day."""
        result = await self.db.execute(
            select(func.count(AuditLog.id)).where(
                AuditLog.company_id == company_id,
                AuditLog.event_type == _event_value(event_type),
                AuditLog.created_at >= since,
            )
        )
        return (result.scalar() or 0) > 0
