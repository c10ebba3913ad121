from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from accessvault.domain.models import AuditLog


async def list_events(
    session: AsyncSession,
    *,
    organization_id: str,
    event: str | None = None,
    user_id: str | None = None,
    created_from: datetime | None = None,
    created_to: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[AuditLog]:
    # Scope all audit queries to one organization to prevent cross-tenant leakage.
    stmt = select(AuditLog).where(AuditLog.organization_id == organization_id)
    if event:
        stmt = stmt.where(AuditLog.event == event)
    if user_id:
        stmt = stmt.where(AuditLog.user_id == user_id)
    if created_from:
        stmt = stmt.where(AuditLog.created_at >= created_from)
    if created_to:
        stmt = stmt.where(AuditLog.created_at <= created_to)

    stmt = stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_events(session: AsyncSession, *, organization_id: str | None, event: str) -> int:
    result = await session.execute(
        select(AuditLog.id).where(AuditLog.organization_id == organization_id, AuditLog.event == event)
    )
    return len(result.scalars().all())
