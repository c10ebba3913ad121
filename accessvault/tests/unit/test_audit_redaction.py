from __future__ import annotations

import pytest
from sqlalchemy import select

from accessvault.domain.models import AuditLog
from accessvault.services.audit import record_event, sanitize_details


def test_audit_redacts_credentials_but_keeps_references() -> None:
    payload = {
        "tailscale_api_key": "tskey-api-1",
        "client_secret": "oidc-secret",
        "auth_key": "tskey-auth-1",
        "nested": [{"authorization": "Bearer abc"}, {"password": "hunter2"}],
        "secret_id": "sec-1",
        "api_key_ref": "sec-2",
        "token_type": "device",
        "key_name": "tailscale_api_key",
        "safe": "value",
    }

    sanitized = sanitize_details(payload)

    assert sanitized["tailscale_api_key"] == "[REDACTED]"
    assert sanitized["client_secret"] == "[REDACTED]"
    assert sanitized["auth_key"] == "[REDACTED]"
    assert sanitized["nested"] == [{"authorization": "[REDACTED]"}, {"password": "[REDACTED]"}]
    assert sanitized["secret_id"] == "sec-1"
    assert sanitized["api_key_ref"] == "sec-2"
    assert sanitized["token_type"] == "device"
    assert sanitized["key_name"] == "tailscale_api_key"
    assert sanitized["safe"] == "value"


@pytest.mark.asyncio
async def test_record_event_writes_sanitized_row(session_factory) -> None:
    await record_event(
        session_factory,
        organization_id="org-1",
        user_id="u1",
        event="tailscale_integration_created",
        details={"tailnet": "acme-tailnet", "api_key": "tskey-api-1"},
    )

    async with session_factory() as session:
        row = (await session.execute(select(AuditLog))).scalar_one()
    assert row.event == "tailscale_integration_created"
    assert row.details == {"tailnet": "acme-tailnet", "api_key": "[REDACTED]"}


def _unreachable_database():
    raise ConnectionRefusedError("database unreachable")


@pytest.mark.asyncio
async def test_best_effort_write_logs_connect_failures() -> None:
    # Session creation itself fails, as asyncpg does when the server is down.
    await record_event(_unreachable_database, organization_id="org-1", user_id="u1", event="device_revoked")

    with pytest.raises(ConnectionRefusedError):
        await record_event(
            _unreachable_database,
            organization_id="org-1",
            user_id="u1",
            event="device_revoked",
            best_effort=False,
        )
