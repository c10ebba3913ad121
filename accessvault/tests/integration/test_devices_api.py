from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import update

from accessvault.core.clock import utc_now
from accessvault.domain.models import Device
from accessvault.domain.roles import Role
from accessvault.tests.utils.auth import create_organization, create_test_api_key


async def _user_headers(services, org_id: str, role: Role = Role.USER) -> dict[str, str]:
    _, headers, _, _ = await create_test_api_key(services.session_factory, organization_id=org_id, role=role)
    return headers


@pytest.mark.asyncio
async def test_generate_then_verify_through_dispatch_endpoint(api_client, services) -> None:
    org_id = await create_organization(services.session_factory)
    headers = await _user_headers(services, org_id)

    generated = await api_client.post(
        "/v1/device-enrollment",
        json={"action": "generate_token", "device_name": "Work Laptop", "device_type": "laptop", "os": "macOS"},
        headers=headers,
    )
    assert generated.status_code == 200
    pending = generated.json()["data"]
    assert pending["has_network_integration"] is False

    verified = await api_client.post(
        "/v1/device-enrollment",
        json={"action": "verify", "enrollment_token": pending["enrollment_token"], "fingerprint": "fp-1"},
        headers=headers,
    )
    assert verified.status_code == 200
    assert verified.json()["data"]["status"] == "active"
    assert verified.json()["data"]["trust_level"] == "high"
    assert verified.json()["data"]["network_auth_key"] is None

    replay = await api_client.post(
        "/v1/device-enrollment",
        json={"action": "verify", "enrollment_token": pending["enrollment_token"], "fingerprint": "fp-1"},
        headers=headers,
    )
    assert replay.status_code == 400
    assert replay.json()["error"]["code"] == "TOKEN_INVALID"

    status = await api_client.get(f"/v1/devices/{pending['device_id']}/status", headers=headers)
    assert status.json()["data"]["status"] == "active"
    # Already active, so the long-poll returns on the first check.
    waited = await api_client.get(f"/v1/devices/{pending['device_id']}/status?wait_attempts=1", headers=headers)
    assert waited.json()["data"]["status"] == "active"

    listed = await api_client.get("/v1/devices?status=active", headers=headers)
    assert [item["id"] for item in listed.json()["data"]["items"]] == [pending["device_id"]]


@pytest.mark.asyncio
async def test_dispatch_error_codes(api_client, services) -> None:
    org_id = await create_organization(services.session_factory)
    headers = await _user_headers(services, org_id)
    generated = await api_client.post("/v1/device-enrollment", json={"action": "generate_token"}, headers=headers)
    pending = generated.json()["data"]
    async with services.session_factory() as session:
        await session.execute(
            update(Device)
            .where(Device.id == pending["device_id"])
            .values(enrollment_expires_at=utc_now() - timedelta(seconds=1))
        )
        await session.commit()

    expired = await api_client.post(
        "/v1/device-enrollment",
        json={"action": "verify", "enrollment_token": pending["enrollment_token"], "fingerprint": "fp-1"},
        headers=headers,
    )
    no_token = await api_client.post(
        "/v1/device-enrollment", json={"action": "verify", "fingerprint": "fp-1"}, headers=headers
    )
    no_device = await api_client.post("/v1/device-enrollment", json={"action": "check_network_status"}, headers=headers)
    unknown_action = await api_client.post("/v1/device-enrollment", json={"action": "teleport"}, headers=headers)
    unknown_device = await api_client.get("/v1/devices/does-not-exist/status", headers=headers)

    assert expired.status_code == 400
    assert expired.json()["error"]["code"] == "TOKEN_EXPIRED"
    assert no_token.json()["error"] == {"code": "VALIDATION_FAILED", "message": "Enrollment token required"}
    assert no_device.json()["error"] == {"code": "VALIDATION_FAILED", "message": "Device ID required"}
    assert unknown_action.status_code == 422
    assert unknown_device.status_code == 404


@pytest.mark.asyncio
async def test_silent_enroll_and_support_revoke(api_client, services) -> None:
    org_id = await create_organization(services.session_factory)
    user_headers = await _user_headers(services, org_id)
    support_headers = await _user_headers(services, org_id, Role.SUPPORT)

    first = await api_client.post(
        "/v1/device-enrollment",
        json={"action": "enroll", "fingerprint": "fp-silent", "device_name": "Desktop"},
        headers=user_headers,
    )
    again = await api_client.post(
        "/v1/device-enrollment",
        json={"action": "enroll", "fingerprint": "fp-silent", "device_name": "Desktop"},
        headers=user_headers,
    )
    assert first.json()["data"]["message"] == "Device enrolled successfully"
    assert again.json()["data"]["message"] == "Device already enrolled"
    device_id = first.json()["data"]["device_id"]
    assert again.json()["data"]["device_id"] == device_id

    forbidden = await api_client.delete(f"/v1/admin/devices/{device_id}", headers=user_headers)
    assert forbidden.status_code == 403

    re_enrolled = await api_client.post(f"/v1/admin/devices/{device_id}/re-enroll", headers=support_headers)
    assert re_enrolled.status_code == 200
    assert re_enrolled.json()["data"]["device_id"] == device_id
    assert re_enrolled.json()["data"]["enrollment_token"]

    revoked = await api_client.delete(f"/v1/admin/devices/{device_id}", headers=support_headers)
    assert revoked.json()["data"] == {"device_id": device_id, "deleted": True}
    gone = await api_client.get(f"/v1/devices/{device_id}/status", headers=user_headers)
    assert gone.status_code == 404
