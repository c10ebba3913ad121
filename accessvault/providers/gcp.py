from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import json
import logging
from typing import Any, Awaitable, Callable

import httpx
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2 import service_account
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from accessvault.core.config import Settings
from accessvault.core.errors import (
    InputValidationError,
    IntegrationNotFoundError,
    ProviderAPIError,
    ProviderConfigError,
)
from accessvault.domain.roles import Principal, can_manage_secrets, require_capability
from accessvault.persistence.repos.integrations import get_cloud_provider, upsert_cloud_provider
from accessvault.providers.base import ProviderClient, bearer, parse_json
from accessvault.services.audit import add_event
from accessvault.services.polling import poll_until
from accessvault.services.secrets.store import SecretStore


logger = logging.getLogger(__name__)

TokenProvider = Callable[[dict[str, Any]], Awaitable[str]]


@dataclass
class GcpInstanceConfig:
    name: str
    machine_type: str
    zone: str
    disk_size_gb: int
    image_family: str
    image_project: str
    network: str | None = None
    subnetwork: str | None = None
    tags: list[str] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)
    metadata: list[dict[str, str]] = field(default_factory=list)

    def to_body(self) -> dict[str, Any]:
        interface: dict[str, Any] = {
            "network": self.network or "global/networks/default",
            "accessConfigs": [{"type": "ONE_TO_ONE_NAT", "name": "External NAT"}],
        }
        if self.subnetwork:
            interface["subnetwork"] = self.subnetwork
        return {
            "name": self.name,
            "machineType": f"zones/{self.zone}/machineTypes/{self.machine_type}",
            "disks": [
                {
                    "boot": True,
                    "autoDelete": True,
                    "initializeParams": {
                        "sourceImage": f"projects/{self.image_project}/global/images/family/{self.image_family}",
                        "diskSizeGb": self.disk_size_gb,
                    },
                }
            ],
            "networkInterfaces": [interface],
            "tags": {"items": list(self.tags)},
            "labels": dict(self.labels),
            "metadata": {"items": list(self.metadata)},
        }


@dataclass(frozen=True)
class _Credentials:
    project_id: str
    service_account_info: dict[str, Any]


def startup_script(tailscale_auth_key: str) -> str:
    return "\n".join(
        [
            "#!/bin/bash",
            "# Install Tailscale",
            "curl -fsSL https://tailscale.com/install.sh | sh",
            "",
            "# Start Tailscale",
            f"tailscale up --authkey={tailscale_auth_key} --accept-routes",
            "",
            "# Enable IP forwarding",
            "echo 'net.ipv4.ip_forward = 1' | tee -a /etc/sysctl.conf",
            "echo 'net.ipv6.conf.all.forwarding = 1' | tee -a /etc/sysctl.conf",
            "sysctl -p /etc/sysctl.conf",
            "",
        ]
    )


def service_account_token_provider(scope: str) -> TokenProvider:
    async def _provide(info: dict[str, Any]) -> str:
        credentials = service_account.Credentials.from_service_account_info(info, scopes=[scope])
        # google-auth refreshes synchronously over requests; keep it off the event loop.
        await asyncio.to_thread(credentials.refresh, GoogleAuthRequest())
        return credentials.token

    return _provide


class GcpProvider(ProviderClient):
    provider = "gcp"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        secrets: SecretStore,
        settings: Settings,
        *,
        client: httpx.AsyncClient | None = None,
        token_provider: TokenProvider | None = None,
        operation_poll_interval_s: float = 2.0,
        operation_poll_max_attempts: int = 60,
    ) -> None:
        super().__init__(timeout_s=settings.ext_call_timeout_ms / 1000.0, client=client)
        self._session_factory = session_factory
        self._secrets = secrets
        self._base = settings.gcp_compute_base.rstrip("/")
        self._token_provider = token_provider or service_account_token_provider(settings.gcp_scope)
        self._poll_interval_s = operation_poll_interval_s
        self._poll_max_attempts = operation_poll_max_attempts

    async def _credentials(self, organization_id: str) -> _Credentials:
        async with self._session_factory() as session:
            row = await get_cloud_provider(session, organization_id=organization_id, provider_type="gcp")
        if row is None:
            raise IntegrationNotFoundError("GCP integration not found for organization")
        raw = await self._secrets.retrieve(row.credentials_ref, actor=Principal.system(organization_id))
        try:
            info = json.loads(raw)
        except ValueError as exc:
            raise ProviderConfigError("Stored GCP service account key is not valid JSON") from exc
        project_id = (row.config or {}).get("project_id")
        if not project_id:
            raise ProviderConfigError("GCP integration is missing project_id")
        return _Credentials(project_id=project_id, service_account_info=info)

    async def _auth(self, organization_id: str) -> tuple[str, dict[str, str]]:
        creds = await self._credentials(organization_id)
        token = await self._token_provider(creds.service_account_info)
        return creds.project_id, bearer(token)

    async def list_instances(self, organization_id: str, *, zone: str | None = None) -> list[dict[str, Any]]:
        project_id, headers = await self._auth(organization_id)
        endpoint = f"zones/{zone}/instances" if zone else "aggregated/instances"
        response = await self._request(
            "GET",
            f"{self._base}/projects/{project_id}/{endpoint}",
            operation="list_instances",
            headers=headers,
        )
        data = parse_json(response)
        items = data.get("items") or ([] if zone else {})
        if zone:
            return list(items)
        # Aggregated responses group instances under "zones/<zone>" keys.
        instances: list[dict[str, Any]] = []
        for zone_data in items.values():
            instances.extend(zone_data.get("instances") or [])
        return instances

    async def get_instance(self, organization_id: str, zone: str, name: str) -> dict[str, Any]:
        project_id, headers = await self._auth(organization_id)
        response = await self._request(
            "GET",
            f"{self._base}/projects/{project_id}/zones/{zone}/instances/{name}",
            operation="get_instance",
            headers=headers,
        )
        return parse_json(response)

    async def create_instance(self, organization_id: str, config: GcpInstanceConfig) -> dict[str, Any]:
        project_id, headers = await self._auth(organization_id)
        response = await self._request(
            "POST",
            f"{self._base}/projects/{project_id}/zones/{config.zone}/instances",
            operation="create_instance",
            headers=headers,
            json=config.to_body(),
        )
        operation = parse_json(response)
        if operation.get("name"):
            await self._wait_for_zone_operation(project_id, config.zone, operation["name"], headers)
        return await self.get_instance(organization_id, config.zone, config.name)

    async def _wait_for_zone_operation(
        self,
        project_id: str,
        zone: str,
        operation_name: str,
        headers: dict[str, str],
    ) -> dict[str, Any]:
        url = f"{self._base}/projects/{project_id}/zones/{zone}/operations/{operation_name}"

        async def _fetch() -> dict[str, Any]:
            response = await self._request("GET", url, operation="get_operation", headers=headers)
            return parse_json(response)

        result = await poll_until(
            _fetch,
            lambda op: op.get("status") == "DONE",
            interval_s=self._poll_interval_s,
            max_attempts=self._poll_max_attempts,
            label="gcp_zone_operation",
        )
        if result.get("error"):
            raise ProviderAPIError(self.provider, None, json.dumps(result["error"]))
        return result

    async def _instance_action(self, organization_id: str, zone: str, name: str, action: str) -> dict[str, Any]:
        project_id, headers = await self._auth(organization_id)
        response = await self._request(
            "POST",
            f"{self._base}/projects/{project_id}/zones/{zone}/instances/{name}/{action}",
            operation=f"{action}_instance",
            headers=headers,
        )
        return parse_json(response)

    async def start_instance(self, organization_id: str, zone: str, name: str) -> dict[str, Any]:
        return await self._instance_action(organization_id, zone, name, "start")

    async def stop_instance(self, organization_id: str, zone: str, name: str) -> dict[str, Any]:
        return await self._instance_action(organization_id, zone, name, "stop")

    async def delete_instance(self, organization_id: str, zone: str, name: str) -> dict[str, Any]:
        project_id, headers = await self._auth(organization_id)
        response = await self._request(
            "DELETE",
            f"{self._base}/projects/{project_id}/zones/{zone}/instances/{name}",
            operation="delete_instance",
            headers=headers,
        )
        return parse_json(response)

    async def setup_integration(
        self,
        organization_id: str,
        *,
        project_id: str,
        service_account_key: str,
        actor: Principal,
    ) -> str:
        require_capability(actor, can_manage_secrets(actor.role), organization_id=organization_id)
        if not project_id.strip():
            raise InputValidationError("project_id is required")
        try:
            json.loads(service_account_key)
        except ValueError as exc:
            raise InputValidationError("service_account_key must be a JSON document") from exc

        secret_id = await self._secrets.store(
            organization_id=organization_id,
            key_name="gcp_service_account",
            secret_value=service_account_key,
            secret_type="certificate",
            actor=actor,
            metadata={"service": "gcp", "project_id": project_id},
        )
        async with self._session_factory() as session:
            row = await upsert_cloud_provider(
                session,
                organization_id=organization_id,
                provider_type="gcp",
                provider_name="Google Cloud Platform",
                credentials_ref=secret_id,
                config={"project_id": project_id},
            )
            add_event(
                session,
                organization_id=organization_id,
                user_id=actor.user_id,
                event="cloud_provider_created",
                details={"provider_type": "gcp", "integration_id": row.id, "project_id": project_id},
            )
            await session.commit()
            integration_id = row.id
        logger.info("gcp_integration_created organization_id=%s project_id=%s", organization_id, project_id)
        return integration_id
