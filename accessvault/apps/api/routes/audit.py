from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from accessvault.apps.api.deps import get_db, require_role
from accessvault.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from accessvault.apps.api.response import success_response
from accessvault.domain.roles import Principal, Role
from accessvault.persistence.repos import audit as audit_repo


router = APIRouter(prefix="/admin/audit", tags=["audit"], responses=DEFAULT_ERROR_RESPONSES)


class AuditEventResponse(BaseModel):
    id: str
    organization_id: str | None
    user_id: str | None
    event: str
    details: dict[str, Any] | None
    created_at: str


class AuditEventsPage(BaseModel):
    items: list[AuditEventResponse]
    next_offset: int | None


def _to_response(row) -> AuditEventResponse:
    return AuditEventResponse(
        id=row.id,
        organization_id=row.organization_id,
        user_id=row.user_id,
        event=row.event,
        details=row.details,
        created_at=row.created_at.isoformat(),
    )


@router.get("")
async def list_audit_events(
    request: Request,
    organization_id: str | None = None,
    event: str | None = None,
    user_id: str | None = None,
    created_from: datetime | None = Query(default=None, alias="from"),
    created_to: datetime | None = Query(default=None, alias="to"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(require_role(Role.ORG_ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Organization admins only ever see their own organization; global admins may pick one.
    scoped_org = organization_id or principal.organization_id
    if scoped_org is None or not principal.can_act_in(scoped_org):
        raise HTTPException(
            status_code=403,
            detail={"code": "AUTH_FORBIDDEN", "message": "Organization scope does not match caller"},
        )

    try:
        rows = await audit_repo.list_events(
            db,
            organization_id=scoped_org,
            event=event,
            user_id=user_id,
            created_from=created_from,
            created_to=created_to,
            offset=offset,
            limit=limit + 1,
        )
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching audit events") from exc

    next_offset = None
    if len(rows) > limit:
        rows = rows[:limit]
        next_offset = offset + limit
    page = AuditEventsPage(items=[_to_response(row) for row in rows], next_offset=next_offset)
    return success_response(request=request, data=page.model_dump())
