from __future__ import annotations

from dataclasses import dataclass

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine

from accessvault.core.config import Settings
from accessvault.persistence.db import SessionFactory, create_engine_for, create_session_factory
from accessvault.providers.gcp import GcpProvider, TokenProvider
from accessvault.providers.lxd import LxdProvider
from accessvault.providers.tailscale import TailscaleProvider
from accessvault.providers.zitadel import ZitadelProvider
from accessvault.services.devices import DeviceEnrollmentService
from accessvault.services.enrollment_tokens import EnrollmentTokenService
from accessvault.services.notifications.email import EmailNotifier, EmailTransport, build_transport
from accessvault.services.onboarding import OnboardingOrchestrator
from accessvault.services.secrets.kms import KmsProvider, LocalKmsProvider
from accessvault.services.secrets.store import SecretStore
from accessvault.services.sessions import SessionLauncher


@dataclass
class PortalServices:
    settings: Settings
    session_factory: SessionFactory
    secrets: SecretStore
    tokens: EnrollmentTokenService
    tailscale: TailscaleProvider
    zitadel: ZitadelProvider
    gcp: GcpProvider
    lxd: LxdProvider
    notifier: EmailNotifier
    onboarding: OnboardingOrchestrator
    devices: DeviceEnrollmentService
    sessions: SessionLauncher
    engine: AsyncEngine | None = None

    async def aclose(self) -> None:
        for provider in (self.tailscale, self.zitadel, self.gcp, self.lxd):
            await provider.aclose()
        if self.engine is not None:
            await self.engine.dispose()


def build_services(
    settings: Settings,
    session_factory: SessionFactory | None = None,
    *,
    http_client: httpx.AsyncClient | None = None,
    lxd_transport: httpx.AsyncBaseTransport | None = None,
    gcp_token_provider: TokenProvider | None = None,
    email_transport: EmailTransport | None = None,
    kms: KmsProvider | None = None,
) -> PortalServices:
    """Wire the service graph once per process; tests inject clients and transports."""
    engine: AsyncEngine | None = None
    if session_factory is None:
        engine = create_engine_for(settings)
        session_factory = create_session_factory(engine)

    secrets = SecretStore(session_factory, kms or LocalKmsProvider(settings), key_alias=settings.crypto_key_alias)
    tokens = EnrollmentTokenService(session_factory)
    tailscale = TailscaleProvider(session_factory, secrets, settings, client=http_client)
    zitadel = ZitadelProvider(session_factory, secrets, settings, client=http_client)
    gcp = GcpProvider(session_factory, secrets, settings, client=http_client, token_provider=gcp_token_provider)
    lxd = LxdProvider(session_factory, secrets, settings, transport=lxd_transport)
    notifier = EmailNotifier(settings, email_transport or build_transport(settings))
    onboarding = OnboardingOrchestrator(
        session_factory,
        settings,
        secrets=secrets,
        tokens=tokens,
        zitadel=zitadel,
        tailscale=tailscale,
        notifier=notifier,
    )
    return PortalServices(
        settings=settings,
        session_factory=session_factory,
        secrets=secrets,
        tokens=tokens,
        tailscale=tailscale,
        zitadel=zitadel,
        gcp=gcp,
        lxd=lxd,
        notifier=notifier,
        onboarding=onboarding,
        devices=DeviceEnrollmentService(session_factory, settings, tailscale),
        sessions=SessionLauncher(session_factory, settings),
        engine=engine,
    )
