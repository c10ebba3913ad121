from __future__ import annotations

import pytest

from accessvault.core.errors import PermissionDeniedError
from accessvault.domain.roles import (
    Principal,
    Role,
    can_issue_enrollment_tokens,
    can_manage_secrets,
    can_onboard_clients,
    normalize_role,
    require_capability,
    role_allows,
)


def test_roles_are_ordered() -> None:
    assert role_allows(role=Role.GLOBAL_ADMIN, minimum_role=Role.ORG_ADMIN)
    assert role_allows(role=Role.SUPPORT, minimum_role=Role.SUPPORT)
    assert not role_allows(role=Role.USER, minimum_role=Role.SUPPORT)


def test_normalize_role_rejects_unknown_values() -> None:
    assert normalize_role(" Org_Admin ") == Role.ORG_ADMIN
    with pytest.raises(ValueError):
        normalize_role("superuser")


def test_capabilities_per_role() -> None:
    assert can_manage_secrets(Role.ORG_ADMIN)
    assert not can_manage_secrets(Role.SUPPORT)
    assert can_issue_enrollment_tokens(Role.SUPPORT)
    assert not can_issue_enrollment_tokens(Role.USER)
    assert can_onboard_clients(Role.GLOBAL_ADMIN)
    assert not can_onboard_clients(Role.ORG_ADMIN)


def test_capability_checks_are_organization_bound() -> None:
    admin = Principal(user_id="u1", organization_id="org-1", role=Role.ORG_ADMIN)
    require_capability(admin, True, organization_id="org-1")
    with pytest.raises(PermissionDeniedError):
        require_capability(admin, True, organization_id="org-2")
    with pytest.raises(PermissionDeniedError):
        require_capability(admin, False, organization_id="org-1")

    system = Principal.system("org-1")
    assert system.is_system
    require_capability(system, True, organization_id="org-2")
