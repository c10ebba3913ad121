from __future__ import annotations

import pytest

from accessvault.domain.roles import Role
from accessvault.tests.utils.auth import create_organization, create_profile, create_test_api_key


@pytest.mark.asyncio
async def test_secret_rpc_round_trip_is_scoped_to_admins(api_client, services) -> None:
    org_id = await create_organization(services.session_factory, name="Acme")
    other_org = await create_organization(services.session_factory, name="Globex")
    _, admin_headers, _, _ = await create_test_api_key(
        services.session_factory, organization_id=org_id, role=Role.ORG_ADMIN
    )
    _, user_headers, _, _ = await create_test_api_key(services.session_factory, organization_id=org_id, role=Role.USER)
    _, outsider_headers, _, _ = await create_test_api_key(
        services.session_factory, organization_id=other_org, role=Role.ORG_ADMIN
    )

    stored = await api_client.post(
        "/v1/rpc/store_encrypted_secret",
        json={
            "organization_id": org_id,
            "key_name": "rdp_gateway_password",
            "secret_value": "correct horse battery staple",
            "secret_type": "password",
        },
        headers=admin_headers,
    )
    assert stored.status_code == 200
    secret_id = stored.json()["data"]["secret_id"]

    fetched = await api_client.post(
        "/v1/rpc/get_decrypted_secret", json={"secret_id": secret_id}, headers=admin_headers
    )
    assert fetched.json()["data"] == {"value": "correct horse battery staple"}

    as_user = await api_client.post("/v1/rpc/get_decrypted_secret", json={"secret_id": secret_id}, headers=user_headers)
    as_outsider = await api_client.post(
        "/v1/rpc/get_decrypted_secret", json={"secret_id": secret_id}, headers=outsider_headers
    )
    missing = await api_client.post("/v1/rpc/get_decrypted_secret", json={"secret_id": "nope"}, headers=admin_headers)
    bad_type = await api_client.post(
        "/v1/rpc/store_encrypted_secret",
        json={"organization_id": org_id, "key_name": "k", "secret_value": "v", "secret_type": "ssh_key"},
        headers=admin_headers,
    )

    assert as_user.status_code == 403
    assert as_user.json()["error"]["code"] == "AUTH_FORBIDDEN"
    assert as_outsider.status_code == 403
    assert missing.status_code == 404
    assert bad_type.status_code == 400
    assert bad_type.json()["error"]["code"] == "VALIDATION_FAILED"


@pytest.mark.asyncio
async def test_enrollment_token_rpc_lifecycle(api_client, services) -> None:
    org_id = await create_organization(services.session_factory)
    _, support_headers, support_id, _ = await create_test_api_key(
        services.session_factory, organization_id=org_id, role=Role.SUPPORT
    )

    generated = await api_client.post(
        "/v1/rpc/generate_enrollment_token",
        json={"organization_id": org_id, "user_id": support_id, "token_type": "device", "device_type": "laptop"},
        headers=support_headers,
    )
    assert generated.status_code == 200
    token = generated.json()["data"]["token"]
    token_id = generated.json()["data"]["token_id"]

    valid = await api_client.post(
        "/v1/rpc/validate_enrollment_token", json={"token": token, "token_type": "device"}, headers=support_headers
    )
    assert valid.json()["data"]["is_valid"] is True
    assert valid.json()["data"]["organization_id"] == org_id

    first = await api_client.post("/v1/rpc/mark_token_used", json={"token_id": token_id}, headers=support_headers)
    second = await api_client.post("/v1/rpc/mark_token_used", json={"token_id": token_id}, headers=support_headers)
    assert first.json()["data"] == {"used": True}
    assert second.json()["data"] == {"used": False}

    after = await api_client.post(
        "/v1/rpc/validate_enrollment_token", json={"token": token, "token_type": "device"}, headers=support_headers
    )
    assert after.json()["data"]["is_valid"] is False


@pytest.mark.asyncio
async def test_revoked_invitation_cannot_be_accepted(api_client, services) -> None:
    org_id = await create_organization(services.session_factory)
    _, admin_headers, _, _ = await create_test_api_key(
        services.session_factory, organization_id=org_id, role=Role.ORG_ADMIN
    )
    invitee = await create_profile(services.session_factory, organization_id=org_id, email="new@acme.test")

    generated = await api_client.post(
        "/v1/rpc/generate_enrollment_token",
        json={"organization_id": org_id, "user_id": invitee, "token_type": "invitation"},
        headers=admin_headers,
    )
    data = generated.json()["data"]
    revoked = await api_client.post(
        "/v1/rpc/revoke_enrollment_token", json={"token_id": data["token_id"]}, headers=admin_headers
    )
    assert revoked.json()["data"] == {"revoked": True}

    # Accepting needs no credentials; the token itself is the proof.
    accepted = await api_client.post("/v1/rpc/accept_invitation", json={"token": data["token"]})
    assert accepted.status_code == 400
    assert accepted.json()["error"]["code"] == "TOKEN_INVALID"


@pytest.mark.asyncio
async def test_invitation_is_accepted_without_credentials(api_client, services) -> None:
    org_id = await create_organization(services.session_factory)
    _, admin_headers, _, _ = await create_test_api_key(
        services.session_factory, organization_id=org_id, role=Role.ORG_ADMIN
    )
    invitee = await create_profile(services.session_factory, organization_id=org_id, email="new@acme.test")
    generated = await api_client.post(
        "/v1/rpc/generate_enrollment_token",
        json={"organization_id": org_id, "user_id": invitee, "token_type": "invitation"},
        headers=admin_headers,
    )

    accepted = await api_client.post("/v1/rpc/accept_invitation", json={"token": generated.json()["data"]["token"]})

    assert accepted.status_code == 200
    assert accepted.json()["data"]["user_id"] == invitee
    assert accepted.json()["data"]["is_valid"] is True


@pytest.mark.asyncio
async def test_user_role_cannot_mint_tokens(api_client, services) -> None:
    org_id = await create_organization(services.session_factory)
    _, user_headers, user_id, _ = await create_test_api_key(
        services.session_factory, organization_id=org_id, role=Role.USER
    )

    response = await api_client.post(
        "/v1/rpc/generate_enrollment_token",
        json={"organization_id": org_id, "user_id": user_id, "token_type": "device"},
        headers=user_headers,
    )

    assert response.status_code == 403
