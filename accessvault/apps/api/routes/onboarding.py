from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from accessvault.apps.api.deps import get_services, require_role
from accessvault.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from accessvault.apps.api.response import success_response
from accessvault.domain.roles import Principal, Role, can_access_admin, require_capability
from accessvault.services.container import PortalServices
from accessvault.services.onboarding import OnboardingRequest


router = APIRouter(prefix="/admin/onboarding", tags=["onboarding"], responses=DEFAULT_ERROR_RESPONSES)


class OnboardingPayload(BaseModel):
    organization_name: str = Field(min_length=1, max_length=200)
    organization_logo: str | None = None
    organization_tag: str | None = Field(default=None, pattern=r"^[a-z0-9-]+$")
    support_email: str
    support_first_name: str = Field(min_length=1)
    support_last_name: str = Field(min_length=1)
    tailnet: str = Field(min_length=1)
    tailscale_api_key: str = Field(min_length=1)
    app_url: str | None = None
    enable_mfa: bool = False
    custom_acls: dict[str, Any] | None = None


@router.post("")
async def onboard_client(
    payload: OnboardingPayload,
    request: Request,
    principal: Principal = Depends(require_role(Role.GLOBAL_ADMIN)),
    services: PortalServices = Depends(get_services),
) -> dict:
    onboarding_request = OnboardingRequest(
        organization_name=payload.organization_name,
        organization_logo=payload.organization_logo,
        organization_tag=payload.organization_tag,
        support_email=payload.support_email,
        support_first_name=payload.support_first_name,
        support_last_name=payload.support_last_name,
        tailnet=payload.tailnet,
        tailscale_api_key=payload.tailscale_api_key,
        app_url=payload.app_url or services.settings.app_url,
        enable_mfa=payload.enable_mfa,
        custom_acls=payload.custom_acls,
    )
    result = await services.onboarding.onboard_new_client(onboarding_request, actor=principal)
    # Partial failures are reported in the body; the invitation token is delivered by email only.
    data = result.to_dict()
    data.pop("invitation_token", None)
    return success_response(request=request, data=data)


@router.get("/{organization_id}/status")
async def onboarding_status(
    organization_id: str,
    request: Request,
    principal: Principal = Depends(require_role(Role.ORG_ADMIN)),
    services: PortalServices = Depends(get_services),
) -> dict:
    require_capability(principal, can_access_admin(principal.role), organization_id=organization_id)
    status = await services.onboarding.get_onboarding_status(organization_id)
    return success_response(
        request=request,
        data={
            "has_zitadel_integration": status.has_zitadel_integration,
            "has_tailscale_integration": status.has_tailscale_integration,
            "has_support_user": status.has_support_user,
            "is_complete": status.is_complete,
        },
    )
