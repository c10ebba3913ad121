from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from accessvault.apps.api.deps import get_current_principal, get_services
from accessvault.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from accessvault.apps.api.response import success_response
from accessvault.domain.roles import Principal, can_issue_enrollment_tokens, require_capability
from accessvault.services.container import PortalServices
from accessvault.services.enrollment_tokens import TokenValidation


router = APIRouter(prefix="/rpc", tags=["rpc"], responses=DEFAULT_ERROR_RESPONSES)


class StoreSecretRequest(BaseModel):
    organization_id: str
    key_name: str = Field(min_length=1)
    secret_value: str = Field(min_length=1)
    secret_type: str
    metadata: dict[str, Any] | None = None
    expires_at: datetime | None = None


class GetSecretRequest(BaseModel):
    secret_id: str


class GenerateTokenRequest(BaseModel):
    organization_id: str
    user_id: str
    token_type: str
    device_type: str | None = None
    expires_hours: int = Field(default=24, ge=1, le=24 * 30)
    metadata: dict[str, Any] | None = None


class ValidateTokenRequest(BaseModel):
    token: str
    token_type: str


class MarkTokenUsedRequest(BaseModel):
    token_id: str


class RevokeTokenRequest(BaseModel):
    token_id: str


class AcceptInvitationRequest(BaseModel):
    token: str


def _validation_payload(validation: TokenValidation) -> dict[str, Any]:
    return {
        "is_valid": validation.is_valid,
        "token_id": validation.token_id,
        "user_id": validation.user_id,
        "organization_id": validation.organization_id,
        "metadata": validation.metadata,
    }


@router.post("/store_encrypted_secret")
async def store_encrypted_secret(
    payload: StoreSecretRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    services: PortalServices = Depends(get_services),
) -> dict:
    secret_id = await services.secrets.store(
        organization_id=payload.organization_id,
        key_name=payload.key_name,
        secret_value=payload.secret_value,
        secret_type=payload.secret_type,
        actor=principal,
        metadata=payload.metadata,
        expires_at=payload.expires_at,
    )
    return success_response(request=request, data={"secret_id": secret_id})


@router.post("/get_decrypted_secret")
async def get_decrypted_secret(
    payload: GetSecretRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    services: PortalServices = Depends(get_services),
) -> dict:
    value = await services.secrets.retrieve(payload.secret_id, actor=principal)
    return success_response(request=request, data={"value": value})


@router.post("/generate_enrollment_token")
async def generate_enrollment_token(
    payload: GenerateTokenRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    services: PortalServices = Depends(get_services),
) -> dict:
    issued = await services.tokens.generate(
        organization_id=payload.organization_id,
        user_id=payload.user_id,
        token_type=payload.token_type,
        actor=principal,
        device_type=payload.device_type,
        expires_hours=payload.expires_hours,
        metadata=payload.metadata,
    )
    return success_response(request=request, data={"token_id": issued.token_id, "token": issued.token})


@router.post("/validate_enrollment_token")
async def validate_enrollment_token(
    payload: ValidateTokenRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    services: PortalServices = Depends(get_services),
) -> dict:
    validation = await services.tokens.validate(payload.token, payload.token_type)
    return success_response(request=request, data=_validation_payload(validation))


@router.post("/mark_token_used")
async def mark_token_used(
    payload: MarkTokenUsedRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    services: PortalServices = Depends(get_services),
) -> dict:
    require_capability(
        principal,
        can_issue_enrollment_tokens(principal.role),
        organization_id=principal.organization_id,
    )
    used = await services.tokens.mark_used(payload.token_id)
    return success_response(request=request, data={"used": used})


@router.post("/revoke_enrollment_token")
async def revoke_enrollment_token(
    payload: RevokeTokenRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    services: PortalServices = Depends(get_services),
) -> dict:
    revoked = await services.tokens.revoke(payload.token_id, actor=principal)
    return success_response(request=request, data={"revoked": revoked})


# Invitees have no credentials yet; possession of the token is the proof.
@router.post("/accept_invitation")
async def accept_invitation(
    payload: AcceptInvitationRequest,
    request: Request,
    services: PortalServices = Depends(get_services),
) -> dict:
    validation = await services.tokens.accept_invitation(payload.token)
    return success_response(request=request, data=_validation_payload(validation))
