from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from accessvault.core.config import Settings
from accessvault.core.errors import InputValidationError, IntegrationNotFoundError
from accessvault.domain.roles import Principal, can_manage_secrets, require_capability
from accessvault.persistence.repos.integrations import get_tailscale_org, upsert_tailscale_org
from accessvault.providers.base import ProviderClient, bearer, parse_json
from accessvault.services.audit import add_event
from accessvault.services.secrets.store import SecretStore


logger = logging.getLogger(__name__)

DEVICE_TYPES = ("windows", "linux", "macos", "mobile")


@dataclass(frozen=True)
class TailscaleAuthKey:
    id: str
    key: str
    created: str | None
    expires: str | None
    capabilities: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TailscaleDevice:
    id: str
    hostname: str
    name: str
    addresses: list[str]
    tags: list[str]
    os: str | None
    last_seen: str | None
    online: bool | None

    @property
    def ipv4(self) -> str | None:
        return next((addr for addr in self.addresses if "." in addr), None)


@dataclass(frozen=True)
class EnrollmentInstructions:
    device_type: str
    title: str
    steps: list[str]
    download_url: str | None = None
    command: str | None = None


@dataclass(frozen=True)
class _Credentials:
    api_key: str
    tailnet: str
    organization_tag: str


def default_acl(organization_tag: str) -> dict[str, Any]:
    # Isolate each organization to its own tag: members reach only peers with the same tag.
    tag = f"tag:{organization_tag}"
    return {
        "acls": [{"action": "accept", "src": [tag], "dst": [f"{tag}:*"]}],
        "tagOwners": {tag: []},
    }


def enrollment_instructions(auth_key: str, device_type: str) -> EnrollmentInstructions:
    if device_type == "windows":
        return EnrollmentInstructions(
            device_type=device_type,
            title="Windows Installation",
            download_url="https://tailscale.com/download/windows",
            steps=[
                "Download Tailscale from https://tailscale.com/download/windows",
                "Run the installer",
                'Open Tailscale and click "Log in"',
                f"Use this auth key when prompted: {auth_key}",
                "Your device will be automatically enrolled",
            ],
        )
    if device_type == "linux":
        command = f"curl -fsSL https://tailscale.com/install.sh | sh && sudo tailscale up --authkey={auth_key}"
        return EnrollmentInstructions(
            device_type=device_type,
            title="Linux Installation",
            command=command,
            steps=[
                "Run: curl -fsSL https://tailscale.com/install.sh | sh",
                f"Run: sudo tailscale up --authkey={auth_key}",
                "Your device will be automatically enrolled",
            ],
        )
    if device_type == "macos":
        return EnrollmentInstructions(
            device_type=device_type,
            title="macOS Installation",
            download_url="https://tailscale.com/download/mac",
            steps=[
                "Download Tailscale from https://tailscale.com/download/mac",
                "Open the downloaded .pkg file and install",
                "Open Tailscale from Applications",
                f"Use this auth key when prompted: {auth_key}",
                "Your device will be automatically enrolled",
            ],
        )
    if device_type == "mobile":
        return EnrollmentInstructions(
            device_type=device_type,
            title="Mobile Installation (iOS/Android)",
            steps=[
                "Download Tailscale from App Store or Google Play",
                'Open the app and tap "Get Started"',
                f"Use this auth key when prompted: {auth_key}",
                "Your device will be automatically enrolled",
            ],
        )
    raise InputValidationError(f"Unsupported device type: {device_type}")


def _parse_device(payload: dict[str, Any]) -> TailscaleDevice:
    return TailscaleDevice(
        id=str(payload.get("id") or payload.get("nodeId") or ""),
        hostname=str(payload.get("hostname") or ""),
        name=str(payload.get("name") or ""),
        addresses=list(payload.get("addresses") or []),
        tags=list(payload.get("tags") or []),
        os=payload.get("os"),
        last_seen=payload.get("lastSeen"),
        online=payload.get("online"),
    )


class TailscaleProvider(ProviderClient):
    provider = "tailscale"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        secrets: SecretStore,
        settings: Settings,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(timeout_s=settings.ext_call_timeout_ms / 1000.0, client=client)
        self._session_factory = session_factory
        self._secrets = secrets
        self._base = settings.tailscale_api_base.rstrip("/")

    async def _credentials(self, organization_id: str) -> _Credentials:
        # Resolve integration row -> secret id -> plaintext key for this call only.
        async with self._session_factory() as session:
            row = await get_tailscale_org(session, organization_id=organization_id)
        if row is None:
            raise IntegrationNotFoundError("Tailscale integration not found for organization")
        api_key = await self._secrets.retrieve(row.api_key_ref, actor=Principal.system(organization_id))
        return _Credentials(api_key=api_key, tailnet=row.tailnet, organization_tag=row.organization_tag)

    async def create_auth_key(
        self,
        organization_id: str,
        *,
        reusable: bool = True,
        ephemeral: bool = False,
        preauthorized: bool = True,
        tags: list[str] | None = None,
        expiry_seconds: int = 86400,
    ) -> TailscaleAuthKey:
        creds = await self._credentials(organization_id)
        body = {
            "capabilities": {
                "devices": {
                    "create": {
                        "reusable": reusable,
                        "ephemeral": ephemeral,
                        "preauthorized": preauthorized,
                        "tags": list(tags or []),
                    }
                }
            },
            "expirySeconds": expiry_seconds,
        }
        response = await self._request(
            "POST",
            f"{self._base}/tailnet/{creds.tailnet}/keys",
            operation="create_auth_key",
            headers=bearer(creds.api_key),
            json=body,
        )
        data = parse_json(response)
        logger.info("tailscale_auth_key_created organization_id=%s key_id=%s", organization_id, data.get("id"))
        return TailscaleAuthKey(
            id=str(data.get("id") or ""),
            key=str(data.get("key") or ""),
            created=data.get("created"),
            expires=data.get("expires"),
            capabilities=data.get("capabilities") or {},
        )

    async def revoke_auth_key(self, organization_id: str, key_id: str) -> None:
        creds = await self._credentials(organization_id)
        await self._request(
            "DELETE",
            f"{self._base}/tailnet/{creds.tailnet}/keys/{key_id}",
            operation="revoke_auth_key",
            headers=bearer(creds.api_key),
        )
        logger.info("tailscale_auth_key_revoked organization_id=%s key_id=%s", organization_id, key_id)

    async def list_devices(self, organization_id: str) -> list[TailscaleDevice]:
        creds = await self._credentials(organization_id)
        return await self._list_devices(creds.tailnet, creds.api_key)

    async def _list_devices(self, tailnet: str, api_key: str) -> list[TailscaleDevice]:
        response = await self._request(
            "GET",
            f"{self._base}/tailnet/{tailnet}/devices",
            operation="list_devices",
            headers=bearer(api_key),
        )
        return [_parse_device(item) for item in parse_json(response).get("devices") or []]

    async def delete_device(self, organization_id: str, device_id: str) -> bool:
        creds = await self._credentials(organization_id)
        await self._request(
            "DELETE",
            f"{self._base}/device/{device_id}",
            operation="delete_device",
            headers=bearer(creds.api_key),
        )
        return True

    async def get_acl(self, organization_id: str) -> dict[str, Any]:
        creds = await self._credentials(organization_id)
        response = await self._request(
            "GET",
            f"{self._base}/tailnet/{creds.tailnet}/acl",
            operation="get_acl",
            headers={**bearer(creds.api_key), "Accept": "application/json"},
        )
        return parse_json(response)

    async def update_acl(self, organization_id: str, acl: dict[str, Any]) -> dict[str, Any]:
        creds = await self._credentials(organization_id)
        await self._push_acl(creds.tailnet, creds.api_key, acl)
        async with self._session_factory() as session:
            row = await get_tailscale_org(session, organization_id=organization_id)
            if row is not None:
                row.acl_config = acl
                await session.commit()
        return acl

    async def _push_acl(self, tailnet: str, api_key: str, acl: dict[str, Any]) -> None:
        await self._request(
            "POST",
            f"{self._base}/tailnet/{tailnet}/acl",
            operation="update_acl",
            headers=bearer(api_key),
            json=acl,
        )

    async def setup_integration(
        self,
        organization_id: str,
        *,
        tailnet: str,
        api_key: str,
        organization_tag: str,
        actor: Principal,
        acl: dict[str, Any] | None = None,
    ) -> str:
        # The key is checked against the tailnet before anything is persisted.
        require_capability(actor, can_manage_secrets(actor.role), organization_id=organization_id)
        if not tailnet.strip() or not api_key.strip():
            raise InputValidationError("tailnet and api key are required")

        await self._list_devices(tailnet, api_key)
        if acl is not None:
            await self._push_acl(tailnet, api_key, acl)
        acl_config = acl if acl is not None else default_acl(organization_tag)

        secret_id = await self._secrets.store(
            organization_id=organization_id,
            key_name="tailscale_api_key",
            secret_value=api_key,
            secret_type="api_key",
            actor=actor,
            metadata={"tailnet": tailnet},
        )
        async with self._session_factory() as session:
            row = await upsert_tailscale_org(
                session,
                organization_id=organization_id,
                tailnet=tailnet,
                api_key_ref=secret_id,
                organization_tag=organization_tag,
                acl_config=acl_config,
            )
            add_event(
                session,
                organization_id=organization_id,
                user_id=actor.user_id,
                event="tailscale_integration_created",
                details={"integration_id": row.id, "tailnet": tailnet, "organization_tag": organization_tag},
            )
            await session.commit()
            integration_id = row.id
        logger.info("tailscale_integration_created organization_id=%s tailnet=%s", organization_id, tailnet)
        return integration_id
