from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from accessvault.apps.api.deps import client_ip, get_current_principal, get_services, require_role
from accessvault.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from accessvault.apps.api.response import items_response, success_response
from accessvault.core.errors import InputValidationError
from accessvault.domain.roles import Principal, Role
from accessvault.services.container import PortalServices
from accessvault.services.devices import PendingEnrollment


router = APIRouter(tags=["devices"], responses=DEFAULT_ERROR_RESPONSES)


class EnrollmentActionRequest(BaseModel):
    action: Literal["generate_token", "enroll", "verify", "create_pending_device", "check_network_status"]
    device_name: str | None = None
    device_type: str | None = None
    os: str | None = None
    fingerprint: str | None = None
    enrollment_token: str | None = None
    device_id: str | None = None
    user_id: str | None = None


def _pending_payload(pending: PendingEnrollment) -> dict:
    return {
        "device_id": pending.device_id,
        "enrollment_token": pending.enrollment_token,
        "expires_at": pending.expires_at.isoformat(),
        "has_network_integration": pending.has_network_integration,
    }


@router.post("/device-enrollment")
async def device_enrollment(
    payload: EnrollmentActionRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    services: PortalServices = Depends(get_services),
) -> dict:
    devices = services.devices
    ip_address = client_ip(request)

    if payload.action == "generate_token":
        pending = await devices.generate_token(
            principal,
            name=payload.device_name,
            device_type=payload.device_type,
            os=payload.os,
            ip_address=ip_address,
        )
        return success_response(request=request, data=_pending_payload(pending))

    if payload.action == "create_pending_device":
        pending = await devices.create_pending_device(
            principal,
            target_user_id=payload.user_id or principal.user_id,
            name=payload.device_name,
            device_type=payload.device_type,
            os=payload.os,
            ip_address=ip_address,
        )
        return success_response(request=request, data=_pending_payload(pending))

    if payload.action == "enroll":
        enrolled = await devices.enroll(
            principal,
            payload.fingerprint or "",
            name=payload.device_name,
            device_type=payload.device_type,
            os=payload.os,
            ip_address=ip_address,
        )
        message = "Device enrolled successfully" if enrolled.created else "Device already enrolled"
        return success_response(
            request=request,
            data={"device_id": enrolled.device_id, "status": enrolled.status, "message": message},
        )

    if payload.action == "verify":
        if not payload.enrollment_token:
            raise InputValidationError("Enrollment token required")
        verified = await devices.verify(
            payload.enrollment_token,
            payload.fingerprint or "",
            device_type=payload.device_type,
            ip_address=ip_address,
        )
        return success_response(
            request=request,
            data={
                "device_id": verified.device_id,
                "device_name": verified.device_name,
                "status": verified.status,
                "trust_level": verified.trust_level,
                "network_auth_key": verified.network_auth_key,
                "network_tags": list(verified.network_tags),
            },
        )

    if not payload.device_id:
        raise InputValidationError("Device ID required")
    status = await devices.check_network_status(principal, payload.device_id, ip_address=ip_address)
    return success_response(
        request=request,
        data={
            "device_id": status.device_id,
            "status": status.status,
            "network_connected": status.connected,
            "network_hostname": status.hostname,
            "network_ip": status.ip,
        },
    )


@router.get("/devices")
async def list_devices(
    request: Request,
    status: str | None = None,
    principal: Principal = Depends(get_current_principal),
    services: PortalServices = Depends(get_services),
) -> dict:
    items = await services.devices.list_devices(principal, status=status)
    return items_response(request=request, items=items)


@router.get("/devices/{device_id}/status")
async def device_status(
    device_id: str,
    request: Request,
    wait_attempts: int = Query(default=0, ge=0, le=60),
    principal: Principal = Depends(get_current_principal),
    services: PortalServices = Depends(get_services),
) -> dict:
    if wait_attempts:
        # Long-poll until the device activates; PollTimeoutError maps to 504.
        summary = await services.devices.wait_until_active(principal, device_id, max_attempts=wait_attempts)
    else:
        summary = await services.devices.get_status(principal, device_id)
    return success_response(request=request, data=summary)


@router.post("/admin/devices/{device_id}/re-enroll")
async def re_enroll_device(
    device_id: str,
    request: Request,
    principal: Principal = Depends(require_role(Role.SUPPORT)),
    services: PortalServices = Depends(get_services),
) -> dict:
    pending = await services.devices.re_enroll(principal, device_id)
    return success_response(request=request, data=_pending_payload(pending))


@router.delete("/admin/devices/{device_id}")
async def revoke_device(
    device_id: str,
    request: Request,
    principal: Principal = Depends(require_role(Role.SUPPORT)),
    services: PortalServices = Depends(get_services),
) -> dict:
    deleted = await services.devices.revoke(principal, device_id)
    return success_response(request=request, data={"device_id": device_id, "deleted": deleted})
