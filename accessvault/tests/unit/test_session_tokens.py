from __future__ import annotations

import base64
from datetime import timedelta
from urllib.parse import parse_qs, urlsplit

import pytest

from accessvault.core.clock import utc_now
from accessvault.core.errors import (
    InputValidationError,
    NotFoundError,
    PermissionDeniedError,
    ProviderConfigError,
    SessionTokenError,
)
from accessvault.domain.models import Resource, UserResourceAccess
from accessvault.domain.roles import Principal, Role
from accessvault.persistence.repos.audit import count_events
from accessvault.services.sessions import (
    SessionLauncher,
    gateway_client_path,
    sign_session_token,
    verify_session_token,
)
from accessvault.tests.utils.auth import create_organization, create_principal

SECRET = "unit-test-secret"


async def _resource_with_access(
    session_factory,
    *,
    organization_id: str,
    user_id: str,
    status: str = "active",
    metadata: dict | None = None,
) -> str:
    async with session_factory() as session:
        resource = Resource(
            organization_id=organization_id,
            name="Finance desktop",
            resource_type="desktop",
            ip_address="100.64.0.10",
            connection_method="rdp",
            metadata_json=metadata or {},
        )
        session.add(resource)
        await session.flush()
        session.add(UserResourceAccess(user_id=user_id, resource_id=resource.id, status=status))
        await session.commit()
        return resource.id


def _token_from(url: str) -> str:
    fragment_query = url.split("?", 1)[1]
    return parse_qs(fragment_query)["token"][0]


def test_signed_token_round_trips_claims() -> None:
    exp = int((utc_now() + timedelta(minutes=5)).timestamp())
    token = sign_session_token({"sub": "u1", "rid": "r1", "exp": exp}, SECRET)

    claims = verify_session_token(token, SECRET)
    assert claims["sub"] == "u1"
    assert claims["rid"] == "r1"


def test_tampered_expired_and_malformed_tokens_are_rejected() -> None:
    issued = utc_now()
    token = sign_session_token({"sub": "u1", "exp": int((issued + timedelta(minutes=5)).timestamp())}, SECRET)

    with pytest.raises(SessionTokenError, match="signature"):
        verify_session_token(token, "another-secret")
    payload, signature = token.split(".")
    forged = base64.urlsafe_b64encode(b'{"exp":9999999999,"sub":"admin"}').decode().rstrip("=")
    with pytest.raises(SessionTokenError):
        verify_session_token(f"{forged}.{signature}", SECRET)
    with pytest.raises(SessionTokenError, match="expired"):
        verify_session_token(token, SECRET, now=issued + timedelta(minutes=10))
    with pytest.raises(SessionTokenError):
        verify_session_token("no-dot-here", SECRET)
    with pytest.raises(SessionTokenError, match="payload"):
        verify_session_token(sign_session_token({"sub": "u1", "exp": "soon"}, SECRET), SECRET)


def test_gateway_client_path_encodes_connection_identifier() -> None:
    encoded = gateway_client_path("rdp-123")
    assert "=" not in encoded
    decoded = base64.b64decode(encoded + "=" * (-len(encoded) % 4))
    assert decoded == b"rdp-123\x00c\x00default"


@pytest.mark.asyncio
async def test_launch_requires_active_access_grant(services) -> None:
    org_id = await create_organization(services.session_factory)
    user = await create_principal(services.session_factory, organization_id=org_id)
    pending_id = await _resource_with_access(
        services.session_factory, organization_id=org_id, user_id=user.user_id, status="pending"
    )

    with pytest.raises(PermissionDeniedError, match="Access denied to this resource"):
        await services.sessions.launch(user, pending_id, "rdp")

    stranger = Principal(user_id="nobody", organization_id=org_id, role=Role.USER)
    with pytest.raises(PermissionDeniedError):
        await services.sessions.launch(stranger, pending_id, "rdp")


@pytest.mark.asyncio
async def test_launch_builds_gateway_url_and_audits(services, settings) -> None:
    org_id = await create_organization(services.session_factory)
    user = await create_principal(services.session_factory, organization_id=org_id)
    resource_id = await _resource_with_access(services.session_factory, organization_id=org_id, user_id=user.user_id)

    result = await services.sessions.launch(user, resource_id, "rdp")

    expected_prefix = f"https://access.localhost/guacamole/#/client/{gateway_client_path(f'rdp-{resource_id}')}?token="
    assert result.session_url.startswith(expected_prefix)
    claims = services.sessions.verify(_token_from(result.session_url))
    assert claims["sub"] == user.user_id
    assert claims["rid"] == resource_id
    assert claims["cid"] == result.connection_id
    assert claims["exp"] - claims["iat"] == settings.session_ttl_s
    async with services.session_factory() as session:
        assert await count_events(session, organization_id=org_id, event="session_launched") == 1


@pytest.mark.asyncio
async def test_launch_honours_resource_overrides_and_tsplus(services) -> None:
    org_id = await create_organization(services.session_factory)
    user = await create_principal(services.session_factory, organization_id=org_id, email="ada@acme.test")
    resource_id = await _resource_with_access(
        services.session_factory,
        organization_id=org_id,
        user_id=user.user_id,
        metadata={
            "pomerium_url": "https://gw.acme.test/",
            "ssh_connection_id": "conn-ssh-7",
            "tsplus_url": "https://rds.acme.test",
        },
    )

    ssh = await services.sessions.launch(user, resource_id, "ssh")
    assert ssh.session_url.startswith(f"https://gw.acme.test/guacamole/#/client/{gateway_client_path('conn-ssh-7')}")

    tsplus = await services.sessions.launch(user, resource_id, "tsplus")
    parts = urlsplit(tsplus.session_url)
    assert f"{parts.scheme}://{parts.netloc}{parts.path}" == "https://rds.acme.test/html5/"
    query = parse_qs(parts.query)
    assert query["user"] == ["ada@acme.test"]
    assert query["host"] == ["100.64.0.10"]


@pytest.mark.asyncio
async def test_launch_rejects_invalid_input_and_missing_resources(services) -> None:
    org_id = await create_organization(services.session_factory)
    user = await create_principal(services.session_factory, organization_id=org_id)

    with pytest.raises(InputValidationError, match="Invalid resource ID"):
        await services.sessions.launch(user, "", "rdp")
    with pytest.raises(InputValidationError, match="Invalid connection type"):
        await services.sessions.launch(user, "r1", "vnc")

    async with services.session_factory() as session:
        # SQLite does not enforce foreign keys here, so a dangling grant can be inserted.
        session.add(UserResourceAccess(user_id=user.user_id, resource_id="gone", status="active"))
        await session.commit()

    with pytest.raises(NotFoundError):
        await services.sessions.launch(user, "gone", "rdp")


@pytest.mark.asyncio
async def test_launch_without_signing_secret_is_a_config_error(session_factory, settings) -> None:
    launcher = SessionLauncher(session_factory, settings.model_copy(update={"session_signing_secret": None}))
    user = Principal(user_id="u1", organization_id="org-1", role=Role.USER)

    with pytest.raises(ProviderConfigError):
        await launcher.launch(user, "r1", "rdp")
