from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from accessvault.apps.api.deps import get_current_principal, get_services
from accessvault.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from accessvault.apps.api.response import success_response
from accessvault.domain.roles import Principal
from accessvault.services.container import PortalServices


router = APIRouter(prefix="/sessions", tags=["sessions"], responses=DEFAULT_ERROR_RESPONSES)


class LaunchRequest(BaseModel):
    resource_id: str = Field(min_length=1)
    connection_type: Literal["guacamole", "tsplus", "rdp", "ssh"]


@router.post("/launch")
async def launch_session(
    payload: LaunchRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    services: PortalServices = Depends(get_services),
) -> dict:
    result = await services.sessions.launch(principal, payload.resource_id, payload.connection_type)
    return success_response(
        request=request,
        data={
            "session_url": result.session_url,
            "connection_id": result.connection_id,
            "expires_at": result.expires_at.isoformat(),
        },
    )


class VerifyRequest(BaseModel):
    token: str = Field(min_length=1)


# Called by the gateway before it opens the connection named in the token.
@router.post("/verify")
async def verify_session(
    payload: VerifyRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    services: PortalServices = Depends(get_services),
) -> dict:
    claims = services.sessions.verify(payload.token)
    return success_response(
        request=request,
        data={
            "user_id": claims["sub"],
            "resource_id": claims.get("rid"),
            "connection_id": claims.get("cid"),
            "expires_at": claims["exp"],
        },
    )
