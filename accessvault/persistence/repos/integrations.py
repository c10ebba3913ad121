from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from accessvault.domain.models import CloudProvider, TailscaleOrganization, ZitadelProject


async def get_tailscale_org(session: AsyncSession, *, organization_id: str) -> TailscaleOrganization | None:
    result = await session.execute(
        select(TailscaleOrganization).where(TailscaleOrganization.organization_id == organization_id)
    )
    return result.scalar_one_or_none()


async def get_zitadel_project(session: AsyncSession, *, organization_id: str) -> ZitadelProject | None:
    result = await session.execute(
        select(ZitadelProject).where(ZitadelProject.organization_id == organization_id)
    )
    return result.scalar_one_or_none()


async def get_cloud_provider(
    session: AsyncSession,
    *,
    organization_id: str,
    provider_type: str,
) -> CloudProvider | None:
    # Disabled providers are treated as absent so their credentials are never resolved.
    result = await session.execute(
        select(CloudProvider).where(
            CloudProvider.organization_id == organization_id,
            CloudProvider.provider_type == provider_type,
            CloudProvider.enabled.is_(True),
        )
    )
    return result.scalar_one_or_none()


async def upsert_tailscale_org(
    session: AsyncSession,
    *,
    organization_id: str,
    tailnet: str,
    api_key_ref: str,
    organization_tag: str,
    acl_config: dict[str, Any],
) -> TailscaleOrganization:
    # One row per organization; re-running setup replaces the tailnet binding.
    row = await get_tailscale_org(session, organization_id=organization_id)
    if row is None:
        row = TailscaleOrganization(organization_id=organization_id)
        session.add(row)
    row.tailnet = tailnet
    row.api_key_ref = api_key_ref
    row.organization_tag = organization_tag
    row.acl_config = acl_config
    await session.flush()
    return row


async def upsert_zitadel_project(
    session: AsyncSession,
    *,
    organization_id: str,
    project_id: str,
    project_name: str,
    client_id: str,
    client_secret_ref: str | None,
    oidc_config: dict[str, Any],
) -> ZitadelProject:
    row = await get_zitadel_project(session, organization_id=organization_id)
    if row is None:
        row = ZitadelProject(organization_id=organization_id)
        session.add(row)
    row.project_id = project_id
    row.project_name = project_name
    row.client_id = client_id
    row.client_secret_ref = client_secret_ref
    row.oidc_config = oidc_config
    await session.flush()
    return row


async def upsert_cloud_provider(
    session: AsyncSession,
    *,
    organization_id: str,
    provider_type: str,
    provider_name: str,
    credentials_ref: str,
    config: dict[str, Any],
) -> CloudProvider:
    result = await session.execute(
        select(CloudProvider).where(
            CloudProvider.organization_id == organization_id,
            CloudProvider.provider_type == provider_type,
        )
    )
    row = result.scalar_one_or_none()
    if row is None:
        row = CloudProvider(organization_id=organization_id, provider_type=provider_type)
        session.add(row)
    row.provider_name = provider_name
    row.credentials_ref = credentials_ref
    row.config = config
    row.enabled = True
    await session.flush()
    return row
