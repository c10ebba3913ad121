from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from accessvault.core.config import Settings
from accessvault.core.errors import ProviderAPIError, ProviderConfigError
from accessvault.domain.roles import Principal
from accessvault.persistence.repos.integrations import upsert_zitadel_project
from accessvault.providers.base import ProviderClient, bearer, parse_json
from accessvault.services.audit import add_event
from accessvault.services.secrets.store import SecretStore


logger = logging.getLogger(__name__)

PROJECT_ROLES: tuple[tuple[str, str], ...] = (
    ("admin", "Administrator"),
    ("support", "Support User"),
    ("user", "Standard User"),
)
SUPPORT_USER_ROLES = ["admin", "support"]


@dataclass(frozen=True)
class OidcApplication:
    id: str
    client_id: str
    client_secret: str | None


@dataclass(frozen=True)
class ZitadelSetupResult:
    project_id: str
    application_id: str
    client_id: str
    user_id: str


def _first(payload: dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = payload.get(key)
        if value:
            return str(value)
    return ""


class ZitadelProvider(ProviderClient):
    provider = "zitadel"

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
        self._domain = settings.zitadel_domain
        self._token = settings.zitadel_api_token

    def _base_url(self) -> str:
        # Configuration is optional at startup; the first call that needs it fails loudly.
        if not self._domain:
            raise ProviderConfigError("ZITADEL_DOMAIN is required for identity provider calls")
        domain = self._domain.rstrip("/")
        if domain.startswith(("http://", "https://")):
            return domain
        return f"https://{domain}"

    def _headers(self) -> dict[str, str]:
        if not self._token:
            raise ProviderConfigError("ZITADEL_API_TOKEN is required for identity provider calls")
        return bearer(self._token)

    async def _post(self, path: str, *, operation: str, body: dict[str, Any] | None = None) -> dict[str, Any]:
        response = await self._request(
            "POST",
            f"{self._base_url()}{path}",
            operation=operation,
            headers=self._headers(),
            json=body if body is not None else {},
        )
        return parse_json(response)

    async def create_project(self, project_name: str) -> str:
        data = await self._post(
            "/management/v1/projects",
            operation="create_project",
            body={"name": project_name, "projectRoleAssertion": True, "projectRoleCheck": True},
        )
        return _first(data, "id", "projectId")

    async def create_project_role(self, project_id: str, role_key: str, display_name: str) -> None:
        await self._post(
            f"/management/v1/projects/{project_id}/roles",
            operation="create_project_role",
            body={"roleKey": role_key, "displayName": display_name},
        )

    async def create_oidc_application(
        self,
        project_id: str,
        app_name: str,
        redirect_uris: list[str],
        post_logout_redirect_uris: list[str],
    ) -> OidcApplication:
        data = await self._post(
            f"/management/v1/projects/{project_id}/apps/oidc",
            operation="create_oidc_application",
            body={
                "name": app_name,
                "redirectUris": redirect_uris,
                "postLogoutRedirectUris": post_logout_redirect_uris,
                "responseTypes": ["OIDC_RESPONSE_TYPE_CODE"],
                "grantTypes": ["OIDC_GRANT_TYPE_AUTHORIZATION_CODE", "OIDC_GRANT_TYPE_REFRESH_TOKEN"],
                "appType": "OIDC_APP_TYPE_WEB",
                "authMethodType": "OIDC_AUTH_METHOD_TYPE_BASIC",
                "version": "OIDC_VERSION_1_0",
                "devMode": False,
                "accessTokenType": "OIDC_TOKEN_TYPE_JWT",
                "idTokenRoleAssertion": True,
                "idTokenUserinfoAssertion": True,
            },
        )
        return OidcApplication(
            id=_first(data, "appId", "id"),
            client_id=_first(data, "clientId"),
            client_secret=data.get("clientSecret") or None,
        )

    async def create_human_user(self, email: str, first_name: str, last_name: str) -> str:
        data = await self._post(
            "/management/v1/users/human/_import",
            operation="create_human_user",
            body={
                "userName": email,
                "profile": {
                    "firstName": first_name,
                    "lastName": last_name,
                    "displayName": f"{first_name} {last_name}",
                },
                "email": {"email": email, "isEmailVerified": False},
                "phone": {},
                "passwordChangeRequired": True,
            },
        )
        return _first(data, "userId", "id")

    async def grant_user_roles(self, user_id: str, project_id: str, role_keys: list[str]) -> None:
        await self._post(
            f"/management/v1/users/{user_id}/grants",
            operation="grant_user_roles",
            body={"projectId": project_id, "roleKeys": role_keys},
        )

    async def resend_email_verification(self, user_id: str) -> bool:
        # A rejected resend is reported, not raised; the user can request another code.
        try:
            await self._post(
                f"/management/v1/users/{user_id}/email/_resend_code",
                operation="resend_email_verification",
            )
        except ProviderAPIError as exc:
            if exc.status_code is None:
                raise
            logger.warning("zitadel_resend_rejected user_id=%s status=%s", user_id, exc.status_code)
            return False
        return True

    async def setup_for_organization(
        self,
        organization_id: str,
        *,
        organization_name: str,
        support_email: str,
        support_first_name: str,
        support_last_name: str,
        app_url: str,
        actor: Principal,
    ) -> ZitadelSetupResult:
        # No rollback: a failure part-way leaves earlier remote objects in place.
        app_url = app_url.rstrip("/")
        project_id = await self.create_project(organization_name)
        for role_key, display_name in PROJECT_ROLES:
            await self.create_project_role(project_id, role_key, display_name)

        redirect_uris = [f"{app_url}/auth/callback", f"{app_url}/dashboard"]
        post_logout_uris = [f"{app_url}/auth"]
        application = await self.create_oidc_application(
            project_id,
            f"{organization_name} Portal",
            redirect_uris,
            post_logout_uris,
        )

        if application.client_secret:
            secret_id = await self._secrets.store(
                organization_id=organization_id,
                key_name="zitadel_client_secret",
                secret_value=application.client_secret,
                secret_type="password",
                actor=actor,
                metadata={"service": "zitadel", "project_id": project_id, "application_id": application.id},
            )
            async with self._session_factory() as session:
                await upsert_zitadel_project(
                    session,
                    organization_id=organization_id,
                    project_id=project_id,
                    project_name=organization_name,
                    client_id=application.client_id,
                    client_secret_ref=secret_id,
                    oidc_config={
                        "redirect_uris": redirect_uris,
                        "post_logout_uris": post_logout_uris,
                        "application_id": application.id,
                    },
                )
                add_event(
                    session,
                    organization_id=organization_id,
                    user_id=actor.user_id,
                    event="zitadel_project_created",
                    details={"project_id": project_id, "application_id": application.id},
                )
                await session.commit()

        user_id = await self.create_human_user(support_email, support_first_name, support_last_name)
        await self.grant_user_roles(user_id, project_id, SUPPORT_USER_ROLES)
        await self.resend_email_verification(user_id)

        logger.info(
            "zitadel_setup_complete organization_id=%s project_id=%s",
            organization_id,
            project_id,
        )
        return ZitadelSetupResult(
            project_id=project_id,
            application_id=application.id,
            client_id=application.client_id,
            user_id=user_id,
        )
