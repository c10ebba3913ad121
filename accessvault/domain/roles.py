from __future__ import annotations

from enum import Enum

from pydantic import BaseModel

from accessvault.core.errors import PermissionDeniedError


class Role(str, Enum):
    USER = "user"
    SUPPORT = "support"
    ORG_ADMIN = "org_admin"
    GLOBAL_ADMIN = "global_admin"


ROLE_ORDER: dict[Role, int] = {
    Role.USER: 1,
    Role.SUPPORT: 2,
    Role.ORG_ADMIN: 3,
    Role.GLOBAL_ADMIN: 4,
}

SYSTEM_SUBJECT = "system"


def normalize_role(role: str | Role) -> Role:
    # Enforce the closed role vocabulary before any capability check.
    if isinstance(role, Role):
        return role
    normalized = str(role).strip().lower()
    try:
        return Role(normalized)
    except ValueError as exc:
        raise ValueError(f"Unsupported role: {role}") from exc


def role_allows(*, role: Role, minimum_role: Role) -> bool:
    return ROLE_ORDER.get(role, 0) >= ROLE_ORDER.get(minimum_role, 0)


def can_access_admin(role: Role) -> bool:
    return role in {Role.ORG_ADMIN, Role.GLOBAL_ADMIN}


def can_manage_secrets(role: Role) -> bool:
    return role in {Role.ORG_ADMIN, Role.GLOBAL_ADMIN}


def can_issue_enrollment_tokens(role: Role) -> bool:
    return role in {Role.SUPPORT, Role.ORG_ADMIN, Role.GLOBAL_ADMIN}


def can_manage_devices(role: Role) -> bool:
    return role in {Role.SUPPORT, Role.ORG_ADMIN, Role.GLOBAL_ADMIN}


def can_onboard_clients(role: Role) -> bool:
    return role == Role.GLOBAL_ADMIN


class Principal(BaseModel):
    # Authenticated identity used for organization scoping and capability checks.
    user_id: str
    organization_id: str | None
    role: Role
    auth_method: str = "api_key"

    @classmethod
    def system(cls, organization_id: str | None = None) -> "Principal":
        # Service-role identity for server-side flows that act on behalf of the platform.
        return cls(
            user_id=SYSTEM_SUBJECT,
            organization_id=organization_id,
            role=Role.GLOBAL_ADMIN,
            auth_method="system",
        )

    @property
    def is_system(self) -> bool:
        return self.auth_method == "system"

    def can_act_in(self, organization_id: str | None) -> bool:
        # Global admins span organizations; everyone else is bound to their own.
        if self.role == Role.GLOBAL_ADMIN:
            return True
        return organization_id is not None and organization_id == self.organization_id


def require_capability(principal: Principal, allowed: bool, *, organization_id: str | None) -> None:
    """Raise PermissionDeniedError unless the capability holds inside the organization."""
    if not allowed or not principal.can_act_in(organization_id):
        raise PermissionDeniedError("Unauthorized")
