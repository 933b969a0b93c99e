from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.db.base import utc_now
from settlement.db.enums import AuditAction
from settlement.db.models import AuditLogEntry


async def log_audit_action(
    session: AsyncSession,
    *,
    auction_id: uuid.UUID,
    action: AuditAction,
    performed_by: uuid.UUID | None,
    previous_status: str | None = None,
    new_status: str | None = None,
    reason: str | None = None,
    notes: str | None = None,
    payload: dict | None = None,
    now: datetime | None = None,
) -> AuditLogEntry:
    entry = AuditLogEntry(
        auction_id=auction_id,
        performed_by=performed_by,
        action=action,
        previous_status=previous_status,
        new_status=new_status,
        reason=reason,
        notes=notes,
        payload=payload,
        created_at=now or utc_now(),
    )
    session.add(entry)
    return entry


async def list_audit_entries(
    session: AsyncSession,
    auction_id: uuid.UUID,
    *,
    action: AuditAction | None = None,
) -> list[AuditLogEntry]:
    stmt = select(AuditLogEntry).where(AuditLogEntry.auction_id == auction_id)
    if action is not None:
        stmt = stmt.where(AuditLogEntry.action == action)
    rows = await session.execute(stmt.order_by(AuditLogEntry.created_at.desc(), AuditLogEntry.id.desc()))
    return list(rows.scalars().all())
