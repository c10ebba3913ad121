from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from pathlib import Path
import time
from typing import Any, Protocol
from urllib.parse import urlencode

import httpx
from jinja2 import Environment, FileSystemLoader, select_autoescape
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from accessvault.core.config import Settings
from accessvault.core.errors import ProviderAPIError, ProviderConfigError
from accessvault.domain.models import InvitationEmail
from accessvault.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

_TEMPLATES = Environment(
    loader=FileSystemLoader(str(Path(__file__).parent / "templates")),
    autoescape=select_autoescape(["html"]),
    trim_blocks=True,
    lstrip_blocks=True,
)


@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    html: str
    text: str


class EmailTransport(Protocol):
    async def send(self, message: EmailMessage, *, sender: str) -> None:
        ...


class LoggingEmailTransport:
    # Bodies carry invitation links and auth keys; only the envelope is logged and nothing is kept.
    async def send(self, message: EmailMessage, *, sender: str) -> None:
        logger.info("email_logged to=%s subject=%s sender=%s", message.to, message.subject, sender)


class WebhookEmailTransport:
    # The relay endpoint owns SMTP delivery.
    def __init__(self, url: str, *, timeout_s: float, client: httpx.AsyncClient | None = None) -> None:
        self._url = url
        self._timeout_s = timeout_s
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout_s)
        return self._client

    async def send(self, message: EmailMessage, *, sender: str) -> None:
        payload = {
            "from": sender,
            "to": message.to,
            "subject": message.subject,
            "html": message.html,
            "text": message.text,
        }
        start = time.monotonic()
        try:
            response = await self._get_client().post(self._url, json=payload)
        except httpx.HTTPError as exc:
            record_external_call(
                provider="email.webhook",
                operation="send",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise ProviderAPIError("email", None, str(exc)) from exc
        success = response.status_code < 400
        record_external_call(
            provider="email.webhook",
            operation="send",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=success,
        )
        if not success:
            raise ProviderAPIError("email", response.status_code, response.text)


def build_transport(settings: Settings) -> EmailTransport:
    if settings.email_transport == "log":
        return LoggingEmailTransport()
    if settings.email_transport == "webhook":
        if not settings.email_webhook_url:
            raise ProviderConfigError("EMAIL_WEBHOOK_URL is required for the webhook email transport")
        return WebhookEmailTransport(
            settings.email_webhook_url,
            timeout_s=settings.ext_call_timeout_ms / 1000.0,
        )
    raise ProviderConfigError(f"Unsupported email transport: {settings.email_transport}")


def build_invitation_url(app_url: str, token: str) -> str:
    return f"{app_url.rstrip('/')}/auth?{urlencode({'token': token})}"


def render_invitation(
    *,
    to: str,
    first_name: str,
    organization_name: str,
    invitation_url: str,
    expires_hours: int = 24,
) -> EmailMessage:
    context = {
        "first_name": first_name,
        "organization_name": organization_name,
        "invitation_url": invitation_url,
        "expires_hours": expires_hours,
    }
    return EmailMessage(
        to=to,
        subject=f"Welcome to {organization_name} - Complete Your Registration",
        html=_TEMPLATES.get_template("invitation.html").render(**context),
        text=_TEMPLATES.get_template("invitation.txt").render(**context),
    )


def render_enrollment(
    *,
    to: str,
    user_name: str,
    organization_name: str,
    device_type: str,
    instructions: Any,
) -> EmailMessage:
    context = {
        "user_name": user_name,
        "organization_name": organization_name,
        "device_type": device_type,
        "instructions": instructions,
    }
    return EmailMessage(
        to=to,
        subject=f"Device Enrollment Instructions - {device_type}",
        html=_TEMPLATES.get_template("enrollment.html").render(**context),
        text=_TEMPLATES.get_template("enrollment.txt").render(**context),
    )


class EmailNotifier:
    def __init__(self, settings: Settings, transport: EmailTransport) -> None:
        self._settings = settings
        self._transport = transport

    async def send_invitation(
        self,
        *,
        to: str,
        first_name: str,
        organization_name: str,
        token: str,
        app_url: str | None = None,
        expires_hours: int | None = None,
    ) -> bool:
        message = render_invitation(
            to=to,
            first_name=first_name,
            organization_name=organization_name,
            invitation_url=build_invitation_url(app_url or self._settings.app_url, token),
            expires_hours=expires_hours or self._settings.invitation_token_ttl_hours,
        )
        return await self._deliver(message, kind="invitation")

    async def send_enrollment(
        self,
        *,
        to: str,
        user_name: str,
        organization_name: str,
        device_type: str,
        instructions: Any,
    ) -> bool:
        message = render_enrollment(
            to=to,
            user_name=user_name,
            organization_name=organization_name,
            device_type=device_type,
            instructions=instructions,
        )
        return await self._deliver(message, kind="enrollment")

    async def _deliver(self, message: EmailMessage, *, kind: str) -> bool:
        # Delivery failures are reported as False so callers decide whether to surface them.
        try:
            await self._transport.send(message, sender=self._settings.email_from)
        except (ProviderAPIError, httpx.HTTPError) as exc:
            logger.warning("email_send_failed kind=%s to=%s", kind, message.to, exc_info=exc)
            return False
        logger.info("email_sent kind=%s to=%s", kind, message.to)
        return True


async def record_email_sent(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    organization_id: str,
    email: str,
    invitation_token_id: str,
    expires_at: datetime,
) -> str:
    async with session_factory() as session:
        row = InvitationEmail(
            organization_id=organization_id,
            email=email,
            invitation_token_id=invitation_token_id,
            expires_at=expires_at,
        )
        session.add(row)
        await session.commit()
        return row.id
