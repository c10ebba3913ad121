from __future__ import annotations

from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from accessvault.apps.api.deps import get_services, require_role
from accessvault.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from accessvault.apps.api.response import items_response, success_response
from accessvault.core.errors import InputValidationError, NotFoundError, PermissionDeniedError
from accessvault.domain.models import Organization, Profile
from accessvault.domain.roles import Principal, Role, can_access_admin, require_capability
from accessvault.persistence.repos.integrations import get_tailscale_org
from accessvault.providers.gcp import GcpInstanceConfig, startup_script
from accessvault.providers.lxd import LxdInstanceConfig, cloud_init, default_profiles
from accessvault.providers.tailscale import enrollment_instructions
from accessvault.services.container import PortalServices


router = APIRouter(prefix="/integrations", tags=["integrations"], responses=DEFAULT_ERROR_RESPONSES)

# Hosts joining the tailnet at boot get a short-lived single-use key.
_INSTANCE_AUTH_KEY_EXPIRY_S = 3600


def _scoped_org(principal: Principal, organization_id: str | None) -> str:
    scoped = organization_id or principal.organization_id
    if scoped is None:
        raise PermissionDeniedError("Caller is not a member of an organization")
    require_capability(principal, can_access_admin(principal.role), organization_id=scoped)
    return scoped


async def _instance_auth_key(services: PortalServices, organization_id: str) -> str:
    async with services.session_factory() as session:
        network = await get_tailscale_org(session, organization_id=organization_id)
    tags = [f"tag:{network.organization_tag}"] if network is not None else None
    key = await services.tailscale.create_auth_key(
        organization_id,
        reusable=False,
        preauthorized=True,
        tags=tags,
        expiry_seconds=_INSTANCE_AUTH_KEY_EXPIRY_S,
    )
    return key.key


class TailscaleSetupRequest(BaseModel):
    tailnet: str = Field(min_length=1)
    api_key: str = Field(min_length=1)
    organization_tag: str = Field(min_length=1, pattern=r"^[a-z0-9-]+$")
    acl: dict[str, Any] | None = None


class AuthKeyRequest(BaseModel):
    reusable: bool = True
    ephemeral: bool = False
    preauthorized: bool = True
    tags: list[str] | None = None
    expiry_seconds: int = Field(default=86400, ge=60)


class EnrollmentEmailRequest(BaseModel):
    user_id: str = Field(min_length=1)
    device_type: str = Field(pattern=r"^(windows|linux|macos|mobile)$")


class ZitadelSetupRequest(BaseModel):
    organization_name: str = Field(min_length=1)
    support_email: str
    support_first_name: str = Field(min_length=1)
    support_last_name: str = Field(min_length=1)
    app_url: str | None = None


class GcpSetupRequest(BaseModel):
    project_id: str = Field(min_length=1)
    service_account_key: str = Field(min_length=1)


class GcpInstanceRequest(BaseModel):
    name: str = Field(min_length=1, max_length=63, pattern=r"^[a-z]([-a-z0-9]*[a-z0-9])?$")
    zone: str
    machine_type: str = "e2-medium"
    disk_size_gb: int = Field(default=20, ge=10)
    image_family: str = "ubuntu-2204-lts"
    image_project: str = "ubuntu-os-cloud"
    network: str | None = None
    subnetwork: str | None = None
    tags: list[str] = Field(default_factory=list)
    labels: dict[str, str] = Field(default_factory=dict)
    join_network: bool = True


class LxdSetupRequest(BaseModel):
    endpoint: str
    client_cert: str
    client_key: str


class LxdInstanceRequest(BaseModel):
    name: str = Field(min_length=1, max_length=63)
    image_alias: str = "ubuntu/22.04"
    type: str = "container"
    profiles: list[str] = Field(default_factory=lambda: ["default"])
    config: dict[str, str] = Field(default_factory=dict)
    ephemeral: bool = False
    description: str = ""
    join_network: bool = True


class ExecRequest(BaseModel):
    command: list[str] = Field(min_length=1)


# Tailscale


@router.post("/tailscale")
async def setup_tailscale(
    payload: TailscaleSetupRequest,
    request: Request,
    organization_id: str | None = None,
    principal: Principal = Depends(require_role(Role.ORG_ADMIN)),
    services: PortalServices = Depends(get_services),
) -> dict:
    org = _scoped_org(principal, organization_id)
    integration_id = await services.tailscale.setup_integration(
        org,
        tailnet=payload.tailnet,
        api_key=payload.api_key,
        organization_tag=payload.organization_tag,
        actor=principal,
        acl=payload.acl,
    )
    return success_response(request=request, data={"integration_id": integration_id})


@router.get("/tailscale/devices")
async def list_tailscale_devices(
    request: Request,
    organization_id: str | None = None,
    principal: Principal = Depends(require_role(Role.ORG_ADMIN)),
    services: PortalServices = Depends(get_services),
) -> dict:
    org = _scoped_org(principal, organization_id)
    devices = await services.tailscale.list_devices(org)
    items = [{**asdict(device), "ipv4": device.ipv4} for device in devices]
    return items_response(request=request, items=items)


@router.delete("/tailscale/devices/{network_device_id}")
async def delete_tailscale_device(
    network_device_id: str,
    request: Request,
    organization_id: str | None = None,
    principal: Principal = Depends(require_role(Role.ORG_ADMIN)),
    services: PortalServices = Depends(get_services),
) -> dict:
    org = _scoped_org(principal, organization_id)
    deleted = await services.tailscale.delete_device(org, network_device_id)
    return success_response(request=request, data={"deleted": deleted})


@router.get("/tailscale/acl")
async def get_tailscale_acl(
    request: Request,
    organization_id: str | None = None,
    principal: Principal = Depends(require_role(Role.ORG_ADMIN)),
    services: PortalServices = Depends(get_services),
) -> dict:
    org = _scoped_org(principal, organization_id)
    acl = await services.tailscale.get_acl(org)
    return success_response(request=request, data=acl)


@router.put("/tailscale/acl")
async def update_tailscale_acl(
    payload: dict[str, Any],
    request: Request,
    organization_id: str | None = None,
    principal: Principal = Depends(require_role(Role.ORG_ADMIN)),
    services: PortalServices = Depends(get_services),
) -> dict:
    org = _scoped_org(principal, organization_id)
    acl = await services.tailscale.update_acl(org, payload)
    return success_response(request=request, data=acl)


@router.post("/tailscale/auth-keys")
async def create_tailscale_auth_key(
    payload: AuthKeyRequest,
    request: Request,
    organization_id: str | None = None,
    principal: Principal = Depends(require_role(Role.ORG_ADMIN)),
    services: PortalServices = Depends(get_services),
) -> dict:
    org = _scoped_org(principal, organization_id)
    key = await services.tailscale.create_auth_key(
        org,
        reusable=payload.reusable,
        ephemeral=payload.ephemeral,
        preauthorized=payload.preauthorized,
        tags=payload.tags,
        expiry_seconds=payload.expiry_seconds,
    )
    return success_response(request=request, data=asdict(key))


@router.post("/tailscale/enrollment-email")
async def send_enrollment_email(
    payload: EnrollmentEmailRequest,
    request: Request,
    organization_id: str | None = None,
    principal: Principal = Depends(require_role(Role.ORG_ADMIN)),
    services: PortalServices = Depends(get_services),
) -> dict:
    org = _scoped_org(principal, organization_id)
    async with services.session_factory() as session:
        profile = await session.get(Profile, payload.user_id)
        organization = await session.get(Organization, org)
    if profile is None or profile.organization_id != org or not profile.email:
        raise NotFoundError("User not found or has no email address")
    auth_key = await _instance_auth_key(services, org)
    instructions = enrollment_instructions(auth_key, payload.device_type)
    sent = await services.notifier.send_enrollment(
        to=profile.email,
        user_name=profile.full_name or profile.email,
        organization_name=organization.name if organization is not None else org,
        device_type=payload.device_type,
        instructions=instructions,
    )
    return success_response(request=request, data={"sent": sent, "title": instructions.title})


# Zitadel


@router.post("/zitadel")
async def setup_zitadel(
    payload: ZitadelSetupRequest,
    request: Request,
    organization_id: str | None = None,
    principal: Principal = Depends(require_role(Role.ORG_ADMIN)),
    services: PortalServices = Depends(get_services),
) -> dict:
    org = _scoped_org(principal, organization_id)
    result = await services.zitadel.setup_for_organization(
        org,
        organization_name=payload.organization_name,
        support_email=payload.support_email,
        support_first_name=payload.support_first_name,
        support_last_name=payload.support_last_name,
        app_url=payload.app_url or services.settings.app_url,
        actor=principal,
    )
    return success_response(request=request, data=asdict(result))


# GCP


@router.post("/gcp")
async def setup_gcp(
    payload: GcpSetupRequest,
    request: Request,
    organization_id: str | None = None,
    principal: Principal = Depends(require_role(Role.ORG_ADMIN)),
    services: PortalServices = Depends(get_services),
) -> dict:
    org = _scoped_org(principal, organization_id)
    integration_id = await services.gcp.setup_integration(
        org,
        project_id=payload.project_id,
        service_account_key=payload.service_account_key,
        actor=principal,
    )
    return success_response(request=request, data={"integration_id": integration_id})


@router.get("/gcp/instances")
async def list_gcp_instances(
    request: Request,
    zone: str | None = None,
    organization_id: str | None = None,
    principal: Principal = Depends(require_role(Role.ORG_ADMIN)),
    services: PortalServices = Depends(get_services),
) -> dict:
    org = _scoped_org(principal, organization_id)
    instances = await services.gcp.list_instances(org, zone=zone)
    return items_response(request=request, items=instances)


@router.post("/gcp/instances")
async def create_gcp_instance(
    payload: GcpInstanceRequest,
    request: Request,
    organization_id: str | None = None,
    principal: Principal = Depends(require_role(Role.ORG_ADMIN)),
    services: PortalServices = Depends(get_services),
) -> dict:
    org = _scoped_org(principal, organization_id)
    metadata: list[dict[str, str]] = []
    if payload.join_network:
        auth_key = await _instance_auth_key(services, org)
        metadata.append({"key": "startup-script", "value": startup_script(auth_key)})
    config = GcpInstanceConfig(
        name=payload.name,
        machine_type=payload.machine_type,
        zone=payload.zone,
        disk_size_gb=payload.disk_size_gb,
        image_family=payload.image_family,
        image_project=payload.image_project,
        network=payload.network,
        subnetwork=payload.subnetwork,
        tags=payload.tags,
        labels=payload.labels,
        metadata=metadata,
    )
    instance = await services.gcp.create_instance(org, config)
    return success_response(request=request, data=instance)


@router.post("/gcp/instances/{zone}/{name}/{action}")
async def gcp_instance_action(
    zone: str,
    name: str,
    action: str,
    request: Request,
    organization_id: str | None = None,
    principal: Principal = Depends(require_role(Role.ORG_ADMIN)),
    services: PortalServices = Depends(get_services),
) -> dict:
    org = _scoped_org(principal, organization_id)
    if action == "start":
        result = await services.gcp.start_instance(org, zone, name)
    elif action == "stop":
        result = await services.gcp.stop_instance(org, zone, name)
    else:
        raise InputValidationError("action must be start or stop")
    return success_response(request=request, data=result)


@router.delete("/gcp/instances/{zone}/{name}")
async def delete_gcp_instance(
    zone: str,
    name: str,
    request: Request,
    organization_id: str | None = None,
    principal: Principal = Depends(require_role(Role.ORG_ADMIN)),
    services: PortalServices = Depends(get_services),
) -> dict:
    org = _scoped_org(principal, organization_id)
    result = await services.gcp.delete_instance(org, zone, name)
    return success_response(request=request, data=result)


# LXD


@router.post("/lxd")
async def setup_lxd(
    payload: LxdSetupRequest,
    request: Request,
    organization_id: str | None = None,
    principal: Principal = Depends(require_role(Role.ORG_ADMIN)),
    services: PortalServices = Depends(get_services),
) -> dict:
    org = _scoped_org(principal, organization_id)
    integration_id = await services.lxd.setup_integration(
        org,
        endpoint=payload.endpoint,
        client_cert=payload.client_cert,
        client_key=payload.client_key,
        actor=principal,
    )
    return success_response(request=request, data={"integration_id": integration_id})


@router.get("/lxd/profiles")
async def list_lxd_profiles(
    request: Request,
    principal: Principal = Depends(require_role(Role.ORG_ADMIN)),
) -> dict:
    return success_response(request=request, data=default_profiles())


@router.get("/lxd/instances")
async def list_lxd_instances(
    request: Request,
    project: str = "default",
    organization_id: str | None = None,
    principal: Principal = Depends(require_role(Role.ORG_ADMIN)),
    services: PortalServices = Depends(get_services),
) -> dict:
    org = _scoped_org(principal, organization_id)
    instances = await services.lxd.list_instances(org, project=project)
    return items_response(request=request, items=instances)


@router.post("/lxd/instances")
async def create_lxd_instance(
    payload: LxdInstanceRequest,
    request: Request,
    project: str = "default",
    organization_id: str | None = None,
    principal: Principal = Depends(require_role(Role.ORG_ADMIN)),
    services: PortalServices = Depends(get_services),
) -> dict:
    org = _scoped_org(principal, organization_id)
    config = dict(payload.config)
    devices: dict[str, Any] = {}
    if payload.join_network:
        auth_key = await _instance_auth_key(services, org)
        config["user.user-data"] = cloud_init(auth_key)
        # The network agent needs the tun device exposed inside the instance.
        devices["tun"] = dict(default_profiles()["tailscale"]["devices"]["tun"])
    instance_config = LxdInstanceConfig(
        name=payload.name,
        image_alias=payload.image_alias,
        type=payload.type,
        profiles=payload.profiles,
        config=config,
        devices=devices,
        ephemeral=payload.ephemeral,
        description=payload.description,
    )
    instance = await services.lxd.create_instance(org, instance_config, project=project)
    return success_response(request=request, data=instance)


@router.post("/lxd/instances/{name}/exec")
async def exec_lxd_command(
    name: str,
    payload: ExecRequest,
    request: Request,
    project: str = "default",
    organization_id: str | None = None,
    principal: Principal = Depends(require_role(Role.ORG_ADMIN)),
    services: PortalServices = Depends(get_services),
) -> dict:
    org = _scoped_org(principal, organization_id)
    result = await services.lxd.exec_command(org, name, payload.command, project=project)
    return success_response(request=request, data=asdict(result))


@router.post("/lxd/instances/{name}/{action}")
async def lxd_instance_action(
    name: str,
    action: str,
    request: Request,
    project: str = "default",
    force: bool = False,
    organization_id: str | None = None,
    principal: Principal = Depends(require_role(Role.ORG_ADMIN)),
    services: PortalServices = Depends(get_services),
) -> dict:
    org = _scoped_org(principal, organization_id)
    if action == "start":
        done = await services.lxd.start_instance(org, name, project=project)
    elif action == "stop":
        done = await services.lxd.stop_instance(org, name, project=project, force=force)
    else:
        raise InputValidationError("action must be start or stop")
    return success_response(request=request, data={"name": name, "action": action, "done": done})


@router.delete("/lxd/instances/{name}")
async def delete_lxd_instance(
    name: str,
    request: Request,
    project: str = "default",
    organization_id: str | None = None,
    principal: Principal = Depends(require_role(Role.ORG_ADMIN)),
    services: PortalServices = Depends(get_services),
) -> dict:
    org = _scoped_org(principal, organization_id)
    deleted = await services.lxd.delete_instance(org, name, project=project)
    return success_response(request=request, data={"name": name, "deleted": deleted})
