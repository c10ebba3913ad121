from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import timedelta
from enum import Enum
import logging
import re
from typing import Any, Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from accessvault.core.clock import utc_now
from accessvault.core.config import Settings
from accessvault.core.errors import InputValidationError
from accessvault.domain.models import Organization, Profile
from accessvault.domain.roles import Principal, Role, can_onboard_clients, require_capability
from accessvault.persistence.repos.integrations import get_tailscale_org, get_zitadel_project
from accessvault.providers.tailscale import TailscaleProvider
from accessvault.providers.zitadel import ZitadelProvider
from accessvault.services.audit import record_event
from accessvault.services.enrollment_tokens import EnrollmentTokenService
from accessvault.services.notifications.email import EmailNotifier, record_email_sent
from accessvault.services.secrets.store import SecretStore
from accessvault.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class StepOutcome:
    step: str
    status: StepStatus
    reason: str | None = None


@dataclass
class OnboardingRequest:
    organization_name: str
    support_email: str
    support_first_name: str
    support_last_name: str
    tailnet: str
    tailscale_api_key: str
    app_url: str
    organization_logo: str | None = None
    organization_tag: str | None = None
    enable_mfa: bool = False
    custom_acls: dict[str, Any] | None = None

    def validate(self) -> None:
        if not self.organization_name.strip():
            raise InputValidationError("organization_name is required")
        if not _EMAIL_RE.match(self.support_email or ""):
            raise InputValidationError("support_email must be a valid email address")
        if not self.support_first_name.strip() or not self.support_last_name.strip():
            raise InputValidationError("support user first and last name are required")
        if not self.tailnet.strip() or not self.tailscale_api_key.strip():
            raise InputValidationError("tailnet and tailscale_api_key are required")
        if not self.app_url.startswith(("http://", "https://")):
            raise InputValidationError("app_url must be an http(s) URL")

    def resolved_tag(self) -> str:
        if self.organization_tag:
            return self.organization_tag
        return re.sub(r"[^a-z0-9]", "-", self.organization_name.lower())


@dataclass
class OnboardingResult:
    success: bool
    organization_id: str | None = None
    zitadel_project_id: str | None = None
    zitadel_client_id: str | None = None
    zitadel_user_id: str | None = None
    tailscale_integration_id: str | None = None
    support_user_id: str | None = None
    invitation_token: str | None = None
    network_auth_key_secret_id: str | None = None
    steps: list[StepOutcome] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["steps"] = [
            {"step": outcome.step, "status": outcome.status.value, "reason": outcome.reason}
            for outcome in self.steps
        ]
        return payload


@dataclass(frozen=True)
class OnboardingStatus:
    has_zitadel_integration: bool
    has_tailscale_integration: bool
    has_support_user: bool
    is_complete: bool


class _Ledger:
    # Failed outcomes double as the flat error list.
    def __init__(self) -> None:
        self.steps: list[StepOutcome] = []

    def record(self, step: str, status: StepStatus, reason: str | None = None) -> None:
        self.steps.append(StepOutcome(step=step, status=status, reason=reason))

    @property
    def errors(self) -> list[str]:
        return [outcome.reason or outcome.step for outcome in self.steps if outcome.status == StepStatus.FAILED]


class OnboardingOrchestrator:
    # Only organization creation is fatal; later steps record failures and the run continues.
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        *,
        secrets: SecretStore,
        tokens: EnrollmentTokenService,
        zitadel: ZitadelProvider,
        tailscale: TailscaleProvider,
        notifier: EmailNotifier,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._secrets = secrets
        self._tokens = tokens
        self._zitadel = zitadel
        self._tailscale = tailscale
        self._notifier = notifier

    async def onboard_new_client(self, request: OnboardingRequest, *, actor: Principal) -> OnboardingResult:
        require_capability(actor, can_onboard_clients(actor.role), organization_id=None)
        request.validate()

        ledger = _Ledger()
        result = OnboardingResult(success=False, steps=ledger.steps)
        logger.info("onboarding_started organization_name=%s", request.organization_name)
        try:
            try:
                result.organization_id = await self._create_organization(request)
            except Exception as exc:  # noqa: BLE001 - no organization exists to continue with
                reason = f"Failed to create organization: {exc}"
                ledger.record("create_organization", StepStatus.FAILED, reason)
                logger.error("onboarding_step_failed step=create_organization", exc_info=exc)
                result.errors = ledger.errors
                return result
            ledger.record("create_organization", StepStatus.SUCCEEDED)
            organization_id = result.organization_id
            logger.info("onboarding_step_succeeded step=create_organization organization_id=%s", organization_id)

            zitadel = await self._run_step(
                ledger,
                "identity_provider",
                "Zitadel setup failed",
                organization_id,
                lambda: self._zitadel.setup_for_organization(
                    organization_id,
                    organization_name=request.organization_name,
                    support_email=request.support_email,
                    support_first_name=request.support_first_name,
                    support_last_name=request.support_last_name,
                    app_url=request.app_url,
                    actor=actor,
                ),
            )
            if zitadel is not None:
                result.zitadel_project_id = zitadel.project_id
                result.zitadel_client_id = zitadel.client_id
                result.zitadel_user_id = zitadel.user_id

            org_tag = request.resolved_tag()
            result.tailscale_integration_id = await self._run_step(
                ledger,
                "network_provider",
                "Tailscale setup failed",
                organization_id,
                lambda: self._tailscale.setup_integration(
                    organization_id,
                    tailnet=request.tailnet,
                    api_key=request.tailscale_api_key,
                    organization_tag=org_tag,
                    actor=actor,
                    acl=request.custom_acls,
                ),
            )

            result.support_user_id = await self._run_step(
                ledger,
                "support_profile",
                "Failed to create support user profile",
                organization_id,
                lambda: self._create_support_profile(organization_id, request),
            )

            if result.support_user_id is None:
                self._skip(ledger, "invitation_token", "support profile unavailable", organization_id)
            else:
                support_user_id = result.support_user_id
                result.invitation_token = await self._run_step(
                    ledger,
                    "invitation_token",
                    "Failed to generate invitation token",
                    organization_id,
                    lambda: self._issue_invitation(organization_id, support_user_id, request, actor),
                )

            if result.invitation_token is None:
                self._skip(ledger, "invitation_email", "invitation token unavailable", organization_id)
            else:
                await self._send_invitation(ledger, organization_id, request, result.invitation_token)

            result.network_auth_key_secret_id = await self._run_step(
                ledger,
                "network_auth_key",
                "Failed to generate Tailscale auth key",
                organization_id,
                lambda: self._issue_network_auth_key(organization_id, org_tag, actor),
            )

            await self._run_step(
                ledger,
                "audit_log",
                "Failed to record audit log",
                organization_id,
                lambda: record_event(
                    self._session_factory,
                    organization_id=organization_id,
                    user_id=actor.user_id,
                    event="client_onboarded",
                    details={
                        "organization_name": request.organization_name,
                        "support_email": request.support_email,
                        "zitadel_project_id": result.zitadel_project_id,
                        "tailscale_integration_id": result.tailscale_integration_id,
                        "enable_mfa": request.enable_mfa,
                        "errors": ledger.errors or None,
                    },
                    best_effort=False,
                ),
            )
        except Exception as exc:  # noqa: BLE001 - surface as a failed result, never raise
            ledger.record("critical", StepStatus.FAILED, f"Critical error: {exc}")
            logger.error("onboarding_critical_error organization_id=%s", result.organization_id, exc_info=exc)
            if result.organization_id:
                await record_event(
                    self._session_factory,
                    organization_id=result.organization_id,
                    user_id=actor.user_id,
                    event="client_onboarding_failed",
                    details={"error": str(exc), "errors": ledger.errors},
                    best_effort=True,
                )
            result.errors = ledger.errors
            result.success = False
            return result

        result.errors = ledger.errors
        result.success = not result.errors
        logger.info(
            "onboarding_finished organization_id=%s success=%s error_count=%s",
            result.organization_id,
            result.success,
            len(result.errors),
        )
        return result

    async def _run_step(
        self,
        ledger: _Ledger,
        step: str,
        error_prefix: str,
        organization_id: str,
        action: Callable[[], Awaitable[Any]],
    ) -> Any:
        logger.info("onboarding_step_started step=%s organization_id=%s", step, organization_id)
        try:
            value = await action()
        except Exception as exc:  # noqa: BLE001 - step failures are recorded, not raised
            ledger.record(step, StepStatus.FAILED, f"{error_prefix}: {exc}")
            increment_counter(f"onboarding.{step}.failed")
            logger.warning(
                "onboarding_step_failed step=%s organization_id=%s",
                step,
                organization_id,
                exc_info=exc,
            )
            return None
        ledger.record(step, StepStatus.SUCCEEDED)
        logger.info("onboarding_step_succeeded step=%s organization_id=%s", step, organization_id)
        return value

    def _skip(self, ledger: _Ledger, step: str, reason: str, organization_id: str) -> None:
        ledger.record(step, StepStatus.SKIPPED, reason)
        logger.info("onboarding_step_skipped step=%s organization_id=%s reason=%s", step, organization_id, reason)

    async def _create_organization(self, request: OnboardingRequest) -> str:
        async with self._session_factory() as session:
            org = Organization(name=request.organization_name, logo_url=request.organization_logo)
            session.add(org)
            await session.commit()
            return org.id

    async def _create_support_profile(self, organization_id: str, request: OnboardingRequest) -> str:
        async with self._session_factory() as session:
            profile = Profile(
                organization_id=organization_id,
                full_name=f"{request.support_first_name} {request.support_last_name}",
                email=request.support_email,
                role=Role.SUPPORT.value,
            )
            session.add(profile)
            await session.commit()
            return profile.id

    async def _issue_invitation(
        self,
        organization_id: str,
        support_user_id: str,
        request: OnboardingRequest,
        actor: Principal,
    ) -> str:
        expires_hours = self._settings.invitation_token_ttl_hours
        issued = await self._tokens.generate(
            organization_id=organization_id,
            user_id=support_user_id,
            token_type="invitation",
            actor=actor,
            expires_hours=expires_hours,
            metadata={
                "email": request.support_email,
                "first_name": request.support_first_name,
                "last_name": request.support_last_name,
            },
        )
        await record_email_sent(
            self._session_factory,
            organization_id=organization_id,
            email=request.support_email,
            invitation_token_id=issued.token_id,
            expires_at=utc_now() + timedelta(hours=expires_hours),
        )
        return issued.token

    async def _send_invitation(
        self,
        ledger: _Ledger,
        organization_id: str,
        request: OnboardingRequest,
        token: str,
    ) -> None:
        # A False return and a raised exception are reported with different messages.
        logger.info("onboarding_step_started step=invitation_email organization_id=%s", organization_id)
        try:
            sent = await self._notifier.send_invitation(
                to=request.support_email,
                first_name=request.support_first_name,
                organization_name=request.organization_name,
                token=token,
                app_url=request.app_url,
            )
        except Exception as exc:  # noqa: BLE001 - step failures are recorded, not raised
            ledger.record("invitation_email", StepStatus.FAILED, f"Email sending failed: {exc}")
            logger.warning("onboarding_step_failed step=invitation_email", exc_info=exc)
            return
        if not sent:
            ledger.record("invitation_email", StepStatus.FAILED, "Failed to send invitation email")
            logger.warning("onboarding_step_failed step=invitation_email organization_id=%s", organization_id)
            return
        ledger.record("invitation_email", StepStatus.SUCCEEDED)
        logger.info("onboarding_step_succeeded step=invitation_email organization_id=%s", organization_id)

    async def _issue_network_auth_key(self, organization_id: str, org_tag: str, actor: Principal) -> str:
        expiry_s = self._settings.tailscale_onboarding_key_expiry_s
        auth_key = await self._tailscale.create_auth_key(
            organization_id,
            reusable=True,
            preauthorized=True,
            tags=[f"tag:{org_tag}"],
            expiry_seconds=expiry_s,
        )
        # The key is only ever handed out through the secret store.
        return await self._secrets.store(
            organization_id=organization_id,
            key_name="tailscale_onboarding_auth_key",
            secret_value=auth_key.key,
            secret_type="token",
            actor=actor,
            metadata={"tailscale_key_id": auth_key.id, "reusable": True},
            expires_at=utc_now() + timedelta(seconds=expiry_s),
        )

    async def get_onboarding_status(self, organization_id: str) -> OnboardingStatus:
        async with self._session_factory() as session:
            zitadel = await get_zitadel_project(session, organization_id=organization_id)
            tailscale = await get_tailscale_org(session, organization_id=organization_id)
            support = (
                await session.execute(
                    select(Profile.id)
                    .where(Profile.organization_id == organization_id, Profile.role == Role.SUPPORT.value)
                    .limit(1)
                )
            ).first()
        has_zitadel = zitadel is not None
        has_tailscale = tailscale is not None
        has_support = support is not None
        return OnboardingStatus(
            has_zitadel_integration=has_zitadel,
            has_tailscale_integration=has_tailscale,
            has_support_user=has_support,
            is_complete=has_zitadel and has_tailscale and has_support,
        )
