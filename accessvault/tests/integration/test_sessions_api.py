from __future__ import annotations

import pytest

from accessvault.domain.models import Resource, UserResourceAccess
from accessvault.domain.roles import Role
from accessvault.tests.utils.auth import create_organization, create_test_api_key


async def _grant(services, *, organization_id: str, user_id: str) -> str:
    async with services.session_factory() as session:
        resource = Resource(
            organization_id=organization_id,
            name="Build server",
            resource_type="server",
            ip_address="100.64.0.20",
        )
        session.add(resource)
        await session.flush()
        session.add(UserResourceAccess(user_id=user_id, resource_id=resource.id, status="active"))
        await session.commit()
        return resource.id


@pytest.mark.asyncio
async def test_launch_then_gateway_verifies_token(api_client, services) -> None:
    org_id = await create_organization(services.session_factory)
    _, headers, user_id, _ = await create_test_api_key(services.session_factory, organization_id=org_id, role=Role.USER)
    resource_id = await _grant(services, organization_id=org_id, user_id=user_id)

    launched = await api_client.post(
        "/v1/sessions/launch", json={"resource_id": resource_id, "connection_type": "ssh"}, headers=headers
    )
    assert launched.status_code == 200
    data = launched.json()["data"]
    assert data["session_url"].startswith("https://access.localhost/guacamole/#/client/")
    token = data["session_url"].split("token=", 1)[1]

    verified = await api_client.post("/v1/sessions/verify", json={"token": token}, headers=headers)
    assert verified.status_code == 200
    assert verified.json()["data"]["user_id"] == user_id
    assert verified.json()["data"]["resource_id"] == resource_id
    assert verified.json()["data"]["connection_id"] == data["connection_id"]

    tampered = await api_client.post("/v1/sessions/verify", json={"token": token[:-2] + "xx"}, headers=headers)
    assert tampered.status_code == 401
    assert tampered.json()["error"]["code"] == "SESSION_TOKEN_INVALID"


@pytest.mark.asyncio
async def test_launch_without_grant_is_forbidden(api_client, services) -> None:
    org_id = await create_organization(services.session_factory)
    _, headers, _, _ = await create_test_api_key(services.session_factory, organization_id=org_id, role=Role.USER)
    _, _, other_user, _ = await create_test_api_key(services.session_factory, organization_id=org_id, role=Role.USER)
    resource_id = await _grant(services, organization_id=org_id, user_id=other_user)

    response = await api_client.post(
        "/v1/sessions/launch", json={"resource_id": resource_id, "connection_type": "rdp"}, headers=headers
    )

    assert response.status_code == 403
    assert response.json()["error"] == {"code": "AUTH_FORBIDDEN", "message": "Access denied to this resource"}
