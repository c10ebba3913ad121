from __future__ import annotations

import pytest
from sqlalchemy import select

from accessvault.core.errors import (
    EnrollmentTokenInvalidError,
    InputValidationError,
    PermissionDeniedError,
    ProviderAPIError,
)
from accessvault.domain.models import InvitationEmail, Organization, Profile, TailscaleOrganization
from accessvault.domain.roles import Principal, Role
from accessvault.persistence.repos.audit import count_events
from accessvault.services import audit as audit_module
from accessvault.services.onboarding import OnboardingRequest, StepStatus
from accessvault.services.telemetry import counters_snapshot
from accessvault.tests.utils.auth import global_admin
from accessvault.tests.utils.providers import add_tailscale_success, add_zitadel_success


def _acme_request(**overrides) -> OnboardingRequest:
    fields = {
        "organization_name": "Acme",
        "support_email": "a@acme.com",
        "support_first_name": "Ada",
        "support_last_name": "Lovelace",
        "tailnet": "acme-tailnet",
        "tailscale_api_key": "tskey-x",
        "app_url": "https://portal.acme.com",
    }
    fields.update(overrides)
    return OnboardingRequest(**fields)


def _statuses(result) -> dict[str, StepStatus]:
    return {outcome.step: outcome.status for outcome in result.steps}


@pytest.mark.asyncio
async def test_onboarding_succeeds_when_all_providers_answer(services, fake_api, email_transport) -> None:
    add_zitadel_success(fake_api)
    add_tailscale_success(fake_api)

    result = await services.onboarding.onboard_new_client(_acme_request(), actor=global_admin())

    assert result.success is True
    assert result.errors == []
    assert result.organization_id
    assert result.zitadel_project_id == "proj-1"
    assert result.zitadel_client_id == "client-1"
    assert result.zitadel_user_id == "zuser-1"
    assert result.tailscale_integration_id
    assert result.support_user_id
    assert result.invitation_token
    assert result.network_auth_key_secret_id
    assert all(outcome.status == StepStatus.SUCCEEDED for outcome in result.steps)
    assert [outcome.step for outcome in result.steps] == [
        "create_organization",
        "identity_provider",
        "network_provider",
        "support_profile",
        "invitation_token",
        "invitation_email",
        "network_auth_key",
        "audit_log",
    ]

    async with services.session_factory() as session:
        assert await count_events(session, organization_id=result.organization_id, event="client_onboarded") == 1
        support = await session.get(Profile, result.support_user_id)
        assert support.role == "support"
        network = (await session.execute(select(TailscaleOrganization))).scalar_one()
        assert network.organization_tag == "acme"
        assert network.acl_config["tagOwners"] == {"tag:acme": []}

    # The onboarding key is reusable, preauthorized and tagged for the organization.
    key_requests = fake_api.json_sent("POST", "/api/v2/tailnet/acme-tailnet/keys")
    assert len(key_requests) == 1
    create = key_requests[0]["capabilities"]["devices"]["create"]
    assert create["reusable"] is True
    assert create["preauthorized"] is True
    assert create["tags"] == ["tag:acme"]
    assert key_requests[0]["expirySeconds"] == 2592000

    assert len(email_transport.sent) == 1
    assert email_transport.sent[0].to == "a@acme.com"
    assert result.invitation_token in email_transport.sent[0].text


@pytest.mark.asyncio
async def test_network_provider_failure_is_recorded_once_and_run_continues(services, fake_api) -> None:
    add_zitadel_success(fake_api)
    fake_api.add("GET", "/api/v2/tailnet/acme-tailnet/devices", status_code=500, text="internal error")

    result = await services.onboarding.onboard_new_client(_acme_request(), actor=global_admin())

    assert result.success is False
    assert result.organization_id
    assert result.zitadel_project_id == "proj-1"
    assert result.tailscale_integration_id is None
    assert len([error for error in result.errors if "Tailscale setup failed" in error]) == 1
    assert "internal error" in next(error for error in result.errors if "Tailscale setup failed" in error)
    statuses = _statuses(result)
    assert statuses["network_provider"] == StepStatus.FAILED
    # Steps after the failure still ran.
    assert statuses["support_profile"] == StepStatus.SUCCEEDED
    assert statuses["invitation_email"] == StepStatus.SUCCEEDED
    assert statuses["audit_log"] == StepStatus.SUCCEEDED
    assert counters_snapshot()["onboarding.network_provider.failed"] == 1


@pytest.mark.asyncio
async def test_support_profile_failure_skips_dependent_steps_without_extra_errors(
    services, fake_api, email_transport, monkeypatch
) -> None:
    add_zitadel_success(fake_api)
    add_tailscale_success(fake_api)

    async def _fail_profile(organization_id, request):
        raise RuntimeError("profiles table locked")

    monkeypatch.setattr(services.onboarding, "_create_support_profile", _fail_profile)

    result = await services.onboarding.onboard_new_client(_acme_request(), actor=global_admin())

    assert result.success is False
    assert result.errors == ["Failed to create support user profile: profiles table locked"]
    statuses = _statuses(result)
    assert statuses["support_profile"] == StepStatus.FAILED
    assert statuses["invitation_token"] == StepStatus.SKIPPED
    assert statuses["invitation_email"] == StepStatus.SKIPPED
    # Auth-key issuance needs only the organization and still runs.
    assert statuses["network_auth_key"] == StepStatus.SUCCEEDED
    assert result.network_auth_key_secret_id
    assert email_transport.sent == []


@pytest.mark.asyncio
async def test_email_false_and_email_exception_report_different_messages(services, fake_api, monkeypatch) -> None:
    add_zitadel_success(fake_api)
    add_tailscale_success(fake_api)

    async def _rejecting_send(message, *, sender):
        raise ProviderAPIError("email", 502, "relay unavailable")

    monkeypatch.setattr(services.notifier._transport, "send", _rejecting_send)
    rejected = await services.onboarding.onboard_new_client(_acme_request(), actor=global_admin())
    assert rejected.errors == ["Failed to send invitation email"]

    async def _exploding_send(**kwargs):
        raise RuntimeError("template missing")

    monkeypatch.setattr(services.notifier, "send_invitation", _exploding_send)
    exploded = await services.onboarding.onboard_new_client(
        _acme_request(organization_name="Globex", organization_tag="globex"),
        actor=global_admin(),
    )
    assert exploded.errors == ["Email sending failed: template missing"]


@pytest.mark.asyncio
async def test_organization_creation_failure_is_fatal(services, fake_api, monkeypatch) -> None:
    async def _fail_org(request):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(services.onboarding, "_create_organization", _fail_org)

    result = await services.onboarding.onboard_new_client(_acme_request(), actor=global_admin())

    assert result.success is False
    assert result.organization_id is None
    assert result.errors == ["Failed to create organization: database unavailable"]
    assert len(result.steps) == 1
    assert fake_api.calls == []


@pytest.mark.asyncio
async def test_critical_error_returns_failure_and_audits(services, fake_api, monkeypatch) -> None:
    add_zitadel_success(fake_api)

    def _broken_tag(self):
        raise RuntimeError("tag derivation crashed")

    monkeypatch.setattr(OnboardingRequest, "resolved_tag", _broken_tag)

    result = await services.onboarding.onboard_new_client(_acme_request(), actor=global_admin())

    assert result.success is False
    assert result.organization_id
    assert result.errors[-1] == "Critical error: tag derivation crashed"
    async with services.session_factory() as session:
        assert (
            await count_events(session, organization_id=result.organization_id, event="client_onboarding_failed")
            == 1
        )


@pytest.mark.asyncio
async def test_every_step_failing_still_returns_organization_id(services, settings) -> None:
    # No provider routes are registered, so every remote call answers 404.
    result = await services.onboarding.onboard_new_client(_acme_request(), actor=global_admin())

    assert result.success is False
    assert result.organization_id is not None
    statuses = _statuses(result)
    assert statuses["identity_provider"] == StepStatus.FAILED
    assert statuses["network_provider"] == StepStatus.FAILED
    assert statuses["network_auth_key"] == StepStatus.FAILED
    async with services.session_factory() as session:
        assert await session.get(Organization, result.organization_id) is not None


@pytest.mark.asyncio
async def test_invitation_token_is_accepted_once(services, fake_api) -> None:
    add_zitadel_success(fake_api)
    add_tailscale_success(fake_api)
    result = await services.onboarding.onboard_new_client(_acme_request(), actor=global_admin())

    accepted = await services.tokens.accept_invitation(result.invitation_token)
    assert accepted.is_valid is True
    assert accepted.user_id == result.support_user_id

    with pytest.raises(EnrollmentTokenInvalidError):
        await services.tokens.accept_invitation(result.invitation_token)

    async with services.session_factory() as session:
        invitation = (await session.execute(select(InvitationEmail))).scalar_one()
        assert invitation.accepted_at is not None


@pytest.mark.asyncio
async def test_onboarding_status_reflects_integrations(services, fake_api) -> None:
    add_zitadel_success(fake_api)
    add_tailscale_success(fake_api)
    result = await services.onboarding.onboard_new_client(_acme_request(), actor=global_admin())

    status = await services.onboarding.get_onboarding_status(result.organization_id)
    assert status.has_zitadel_integration is True
    assert status.has_tailscale_integration is True
    assert status.has_support_user is True
    assert status.is_complete is True

    empty = await services.onboarding.get_onboarding_status("missing-org")
    assert empty.is_complete is False


@pytest.mark.asyncio
async def test_onboarding_rejects_bad_input_and_non_global_admins(services) -> None:
    with pytest.raises(InputValidationError):
        await services.onboarding.onboard_new_client(_acme_request(support_email="not-an-email"), actor=global_admin())
    with pytest.raises(InputValidationError):
        await services.onboarding.onboard_new_client(_acme_request(app_url="portal.acme.com"), actor=global_admin())

    org_admin = Principal(user_id="u1", organization_id="org-1", role=Role.ORG_ADMIN)
    with pytest.raises(PermissionDeniedError):
        await services.onboarding.onboard_new_client(_acme_request(), actor=org_admin)


def test_organization_tag_defaults_to_slug_of_name() -> None:
    assert _acme_request(organization_name="Acme Corp. EU").resolved_tag() == "acme-corp--eu"
    assert _acme_request(organization_tag="custom").resolved_tag() == "custom"


@pytest.mark.asyncio
async def test_critical_error_is_reported_even_when_failure_audit_breaks(services, fake_api, monkeypatch) -> None:
    add_zitadel_success(fake_api)
    add_tailscale_success(fake_api)
    original_add_event = audit_module.add_event

    def _broken_tag(self) -> str:
        raise RuntimeError("tag derivation exploded")

    def _add_event(session, **kwargs):
        if kwargs["event"] == "client_onboarding_failed":
            raise RuntimeError("audit backend down")
        return original_add_event(session, **kwargs)

    monkeypatch.setattr(OnboardingRequest, "resolved_tag", _broken_tag)
    monkeypatch.setattr(audit_module, "add_event", _add_event)

    result = await services.onboarding.onboard_new_client(_acme_request(), actor=global_admin())

    assert result.success is False
    assert result.organization_id
    assert _statuses(result)["critical"] == StepStatus.FAILED
    assert any("tag derivation exploded" in error for error in result.errors)
