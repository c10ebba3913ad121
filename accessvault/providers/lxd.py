from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
import json
import logging
import os
import ssl
import tempfile
from typing import Any, AsyncIterator

import httpx
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
from accessvault.providers.base import ProviderClient, parse_json
from accessvault.services.audit import add_event
from accessvault.services.secrets.store import SecretStore


logger = logging.getLogger(__name__)

_OPERATION_WAIT_S = 60


@dataclass
class LxdInstanceConfig:
    name: str
    image_alias: str
    image_server: str = "https://cloud-images.ubuntu.com/releases"
    type: str = "container"
    profiles: list[str] = field(default_factory=lambda: ["default"])
    config: dict[str, str] = field(default_factory=dict)
    devices: dict[str, Any] = field(default_factory=dict)
    ephemeral: bool = False
    description: str = ""

    def to_body(self) -> dict[str, Any]:
        if self.type not in {"container", "virtual-machine"}:
            raise InputValidationError("type must be container or virtual-machine")
        return {
            "name": self.name,
            "type": self.type,
            "source": {
                "type": "image",
                "mode": "pull",
                "protocol": "simplestreams",
                "server": self.image_server,
                "alias": self.image_alias,
            },
            "profiles": list(self.profiles),
            "config": dict(self.config),
            "devices": dict(self.devices),
            "ephemeral": self.ephemeral,
            "description": self.description,
        }


@dataclass(frozen=True)
class ExecResult:
    stdout: str
    stderr: str
    exit_code: int


@dataclass(frozen=True)
class _Connection:
    endpoint: str
    client_cert: str
    client_key: str


def cloud_init(tailscale_auth_key: str) -> str:
    return "\n".join(
        [
            "#cloud-config",
            "package_update: true",
            "package_upgrade: true",
            "",
            "packages:",
            "  - curl",
            "  - ca-certificates",
            "",
            "runcmd:",
            "  - curl -fsSL https://tailscale.com/install.sh | sh",
            f"  - tailscale up --authkey={tailscale_auth_key} --accept-routes",
            "  - echo 'net.ipv4.ip_forward = 1' >> /etc/sysctl.conf",
            "  - echo 'net.ipv6.conf.all.forwarding = 1' >> /etc/sysctl.conf",
            "  - sysctl -p",
            "",
            'final_message: "LXD instance is ready after $UPTIME seconds"',
            "",
        ]
    )


def default_profiles() -> dict[str, dict[str, Any]]:
    nic = {"name": "eth0", "nictype": "bridged", "parent": "lxdbr0", "type": "nic"}
    return {
        "default": {
            "name": "default",
            "description": "Default LXD profile",
            "config": {},
            "devices": {"eth0": dict(nic), "root": {"path": "/", "pool": "default", "type": "disk"}},
        },
        "tailscale": {
            "name": "tailscale",
            "description": "Profile with Tailscale support",
            "config": {"security.nesting": "true", "security.privileged": "false"},
            "devices": {
                "eth0": dict(nic),
                "root": {"path": "/", "pool": "default", "type": "disk", "size": "20GB"},
                "tun": {"path": "/dev/net/tun", "type": "unix-char"},
            },
        },
    }


def build_client_ssl_context(client_cert: str, client_key: str, *, verify: bool) -> ssl.SSLContext:
    context = ssl.create_default_context()
    if not verify:
        # LXD hosts typically present self-signed certificates.
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    # ssl only loads chains from files; the temp directory is removed once loaded.
    with tempfile.TemporaryDirectory(prefix="lxd_client_") as tmpdir:
        cert_path = os.path.join(tmpdir, "client.crt")
        key_path = os.path.join(tmpdir, "client.key")
        with open(cert_path, "w", encoding="utf-8") as handle:
            handle.write(client_cert)
        with open(key_path, "w", encoding="utf-8") as handle:
            handle.write(client_key)
        context.load_cert_chain(cert_path, key_path)
    return context


class LxdProvider(ProviderClient):
    # Browsers cannot present client certificates, so every LXD call goes through here over mutual TLS.
    provider = "lxd"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        secrets: SecretStore,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(timeout_s=settings.ext_call_timeout_ms / 1000.0)
        self._session_factory = session_factory
        self._secrets = secrets
        self._verify_tls = settings.lxd_verify_tls
        self._transport = transport

    async def _connection(self, organization_id: str) -> _Connection:
        async with self._session_factory() as session:
            row = await get_cloud_provider(session, organization_id=organization_id, provider_type="lxd")
        if row is None:
            raise IntegrationNotFoundError("LXD integration not found for organization")
        raw = await self._secrets.retrieve(row.credentials_ref, actor=Principal.system(organization_id))
        try:
            creds = json.loads(raw)
        except ValueError as exc:
            raise ProviderConfigError("Stored LXD credentials are not valid JSON") from exc
        endpoint = (row.config or {}).get("endpoint")
        if not endpoint:
            raise ProviderConfigError("LXD integration is missing endpoint")
        return _Connection(
            endpoint=str(endpoint).rstrip("/"),
            client_cert=creds.get("client_cert", ""),
            client_key=creds.get("client_key", ""),
        )

    @asynccontextmanager
    async def _open(self, organization_id: str) -> AsyncIterator[tuple[httpx.AsyncClient, str]]:
        conn = await self._connection(organization_id)
        if self._transport is not None:
            client = httpx.AsyncClient(transport=self._transport, timeout=self._timeout_s)
        else:
            context = build_client_ssl_context(conn.client_cert, conn.client_key, verify=self._verify_tls)
            client = httpx.AsyncClient(verify=context, timeout=self._timeout_s)
        async with client:
            yield client, conn.endpoint

    async def _call(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        *,
        operation: str,
        project: str,
        body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request(
            method,
            url,
            operation=operation,
            json=body,
            params={"project": project, **(params or {})},
            client=client,
        )
        return parse_json(response)

    async def _wait(self, client: httpx.AsyncClient, endpoint: str, payload: dict[str, Any]) -> dict[str, Any]:
        # Async LXD responses point at an operation; the /wait endpoint blocks server-side.
        operation = payload.get("operation")
        if payload.get("type") != "async" or not operation:
            return payload.get("metadata") or {}
        response = await self._request(
            "GET",
            f"{endpoint}{operation}/wait",
            operation="wait_operation",
            params={"timeout": _OPERATION_WAIT_S},
            client=client,
        )
        metadata = parse_json(response).get("metadata") or {}
        if int(metadata.get("status_code") or 0) >= 400:
            raise ProviderAPIError(self.provider, int(metadata["status_code"]), str(metadata.get("err") or ""))
        return metadata

    async def list_instances(self, organization_id: str, *, project: str = "default") -> list[dict[str, Any]]:
        async with self._open(organization_id) as (client, endpoint):
            data = await self._call(
                client,
                "GET",
                f"{endpoint}/1.0/instances",
                operation="list_instances",
                project=project,
                params={"recursion": 1},
            )
        return list(data.get("metadata") or [])

    async def get_instance(self, organization_id: str, name: str, *, project: str = "default") -> dict[str, Any]:
        async with self._open(organization_id) as (client, endpoint):
            return await self._get_instance(client, endpoint, name, project)

    async def _get_instance(
        self, client: httpx.AsyncClient, endpoint: str, name: str, project: str
    ) -> dict[str, Any]:
        data = await self._call(
            client,
            "GET",
            f"{endpoint}/1.0/instances/{name}",
            operation="get_instance",
            project=project,
            params={"recursion": 1},
        )
        return data.get("metadata") or {}

    async def _change_state(
        self,
        client: httpx.AsyncClient,
        endpoint: str,
        name: str,
        project: str,
        *,
        action: str,
        force: bool = False,
    ) -> None:
        payload = await self._call(
            client,
            "PUT",
            f"{endpoint}/1.0/instances/{name}/state",
            operation=f"{action}_instance",
            project=project,
            body={"action": action, "timeout": 30, "force": force},
        )
        await self._wait(client, endpoint, payload)

    async def create_instance(
        self,
        organization_id: str,
        config: LxdInstanceConfig,
        *,
        project: str = "default",
    ) -> dict[str, Any]:
        body = config.to_body()
        async with self._open(organization_id) as (client, endpoint):
            payload = await self._call(
                client,
                "POST",
                f"{endpoint}/1.0/instances",
                operation="create_instance",
                project=project,
                body=body,
            )
            await self._wait(client, endpoint, payload)
            await self._change_state(client, endpoint, config.name, project, action="start")
            return await self._get_instance(client, endpoint, config.name, project)

    async def start_instance(self, organization_id: str, name: str, *, project: str = "default") -> bool:
        async with self._open(organization_id) as (client, endpoint):
            await self._change_state(client, endpoint, name, project, action="start")
        return True

    async def stop_instance(
        self,
        organization_id: str,
        name: str,
        *,
        project: str = "default",
        force: bool = False,
    ) -> bool:
        async with self._open(organization_id) as (client, endpoint):
            await self._change_state(client, endpoint, name, project, action="stop", force=force)
        return True

    async def delete_instance(self, organization_id: str, name: str, *, project: str = "default") -> bool:
        async with self._open(organization_id) as (client, endpoint):
            instance = await self._get_instance(client, endpoint, name, project)
            # LXD refuses to delete running instances.
            if str(instance.get("status", "")).lower() == "running":
                await self._change_state(client, endpoint, name, project, action="stop", force=True)
            payload = await self._call(
                client,
                "DELETE",
                f"{endpoint}/1.0/instances/{name}",
                operation="delete_instance",
                project=project,
            )
            await self._wait(client, endpoint, payload)
        return True

    async def exec_command(
        self,
        organization_id: str,
        name: str,
        command: list[str],
        *,
        project: str = "default",
    ) -> ExecResult:
        if not command:
            raise InputValidationError("command must not be empty")
        async with self._open(organization_id) as (client, endpoint):
            payload = await self._call(
                client,
                "POST",
                f"{endpoint}/1.0/instances/{name}/exec",
                operation="exec_command",
                project=project,
                body={
                    "command": command,
                    "wait-for-websocket": False,
                    "record-output": True,
                    "interactive": False,
                },
            )
            metadata = await self._wait(client, endpoint, payload)
            result = metadata.get("metadata") or {}
            output = result.get("output") or {}
            stdout = await self._read_log(client, endpoint, output.get("1"), project)
            stderr = await self._read_log(client, endpoint, output.get("2"), project)
        return ExecResult(stdout=stdout, stderr=stderr, exit_code=int(result.get("return") or 0))

    async def _read_log(
        self, client: httpx.AsyncClient, endpoint: str, path: str | None, project: str
    ) -> str:
        if not path:
            return ""
        response = await self._request(
            "GET",
            f"{endpoint}{path}",
            operation="read_exec_output",
            params={"project": project},
            client=client,
        )
        return response.text

    async def setup_integration(
        self,
        organization_id: str,
        *,
        endpoint: str,
        client_cert: str,
        client_key: str,
        actor: Principal,
    ) -> str:
        require_capability(actor, can_manage_secrets(actor.role), organization_id=organization_id)
        if not endpoint.startswith("https://"):
            raise InputValidationError("LXD endpoint must be an https:// URL")
        if "BEGIN CERTIFICATE" not in client_cert or "PRIVATE KEY" not in client_key:
            raise InputValidationError("client certificate and key must be PEM encoded")

        secret_id = await self._secrets.store(
            organization_id=organization_id,
            key_name="lxd_certificates",
            secret_value=json.dumps({"client_cert": client_cert, "client_key": client_key}),
            secret_type="certificate",
            actor=actor,
            metadata={"service": "lxd", "endpoint": endpoint},
        )
        async with self._session_factory() as session:
            row = await upsert_cloud_provider(
                session,
                organization_id=organization_id,
                provider_type="lxd",
                provider_name="LXD/LXC",
                credentials_ref=secret_id,
                config={"endpoint": endpoint.rstrip("/")},
            )
            add_event(
                session,
                organization_id=organization_id,
                user_id=actor.user_id,
                event="cloud_provider_created",
                details={"provider_type": "lxd", "integration_id": row.id, "endpoint": endpoint},
            )
            await session.commit()
            integration_id = row.id
        logger.info("lxd_integration_created organization_id=%s", organization_id)
        return integration_id
