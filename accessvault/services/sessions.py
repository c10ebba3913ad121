from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from datetime import datetime, timedelta
import hashlib
import hmac
import json
import logging
from typing import Any
from urllib.parse import quote
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from accessvault.core.clock import utc_now
from accessvault.core.config import Settings
from accessvault.core.errors import (
    InputValidationError,
    NotFoundError,
    PermissionDeniedError,
    ProviderConfigError,
    SessionTokenError,
)
from accessvault.domain.models import Profile, Resource, UserResourceAccess
from accessvault.domain.roles import Principal
from accessvault.services.audit import add_event


logger = logging.getLogger(__name__)

CONNECTION_TYPES = ("guacamole", "rdp", "ssh", "tsplus")
# Connection id prefix used when a resource carries no explicit gateway connection id.
_GATEWAY_PREFIXES = {"guacamole": "", "rdp": "rdp-", "ssh": "ssh-"}


@dataclass(frozen=True)
class LaunchResult:
    session_url: str
    connection_id: str
    expires_at: datetime


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")


def sign_session_token(payload: dict[str, Any], secret: str) -> str:
    raw = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).digest()
    return f"{_b64url(raw)}.{_b64url(signature)}"


def verify_session_token(token: str, secret: str, *, now: datetime | None = None) -> dict[str, Any]:
    # Signature first, then expiry; returns the decoded claims.
    try:
        encoded, signature = token.split(".", 1)
        raw = base64.urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4))
        provided = base64.urlsafe_b64decode(signature + "=" * (-len(signature) % 4))
    except (ValueError, binascii.Error) as exc:
        raise SessionTokenError("Malformed session token") from exc
    expected = hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).digest()
    if not hmac.compare_digest(expected, provided):
        raise SessionTokenError("Invalid session token signature")
    try:
        claims = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise SessionTokenError("Malformed session token payload") from exc
    if not isinstance(claims, dict) or not isinstance(claims.get("exp"), int):
        raise SessionTokenError("Malformed session token payload")
    current = int((now or utc_now()).timestamp())
    if claims["exp"] <= current:
        raise SessionTokenError("Session token expired")
    return claims


def gateway_client_path(connection_id: str) -> str:
    # The web gateway addresses connections as base64("<id>\0c\0default") with padding stripped.
    return base64.b64encode(f"{connection_id}\0c\0default".encode("utf-8")).decode("ascii").rstrip("=")


class SessionLauncher:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], settings: Settings) -> None:
        self._session_factory = session_factory
        self._settings = settings

    def _secret(self) -> str:
        if not self._settings.session_signing_secret:
            raise ProviderConfigError("SESSION_SIGNING_SECRET is required to launch sessions")
        return self._settings.session_signing_secret

    async def launch(self, principal: Principal, resource_id: str, connection_type: str) -> LaunchResult:
        if not resource_id:
            raise InputValidationError("Invalid resource ID")
        if connection_type not in CONNECTION_TYPES:
            raise InputValidationError("Invalid connection type")
        secret = self._secret()

        async with self._session_factory() as session:
            access = await session.execute(
                select(UserResourceAccess.id).where(
                    UserResourceAccess.user_id == principal.user_id,
                    UserResourceAccess.resource_id == resource_id,
                    UserResourceAccess.status == "active",
                )
            )
            if access.scalar_one_or_none() is None:
                raise PermissionDeniedError("Access denied to this resource")
            resource = await session.get(Resource, resource_id)
            if resource is None:
                raise NotFoundError("Resource not found")
            profile = await session.get(Profile, principal.user_id)

            issued = utc_now()
            expires_at = issued + timedelta(seconds=self._settings.session_ttl_s)
            connection_id = str(uuid.uuid4())
            token = sign_session_token(
                {
                    "sub": principal.user_id,
                    "rid": resource_id,
                    "cid": connection_id,
                    "iat": int(issued.timestamp()),
                    "exp": int(expires_at.timestamp()),
                },
                secret,
            )
            session_url = self._build_url(
                resource,
                connection_type,
                token,
                user_email=profile.email if profile is not None else None,
            )
            add_event(
                session,
                organization_id=resource.organization_id,
                user_id=principal.user_id,
                event="session_launched",
                details={
                    "resource_id": resource_id,
                    "resource_name": resource.name,
                    "connection_type": connection_type,
                    "connection_id": connection_id,
                    "ip_address": resource.ip_address,
                },
            )
            await session.commit()

        logger.info(
            "session_launched user_id=%s resource_id=%s connection_type=%s",
            principal.user_id,
            resource_id,
            connection_type,
        )
        return LaunchResult(session_url=session_url, connection_id=connection_id, expires_at=expires_at)

    def verify(self, token: str) -> dict[str, Any]:
        return verify_session_token(token, self._secret())

    def _build_url(self, resource: Resource, connection_type: str, token: str, *, user_email: str | None) -> str:
        metadata = resource.metadata_json or {}
        if connection_type == "tsplus":
            base = str(metadata.get("tsplus_url") or self._settings.tsplus_base_url).rstrip("/")
            user = str(metadata.get("tsplus_user") or user_email or "")
            host = str(resource.ip_address or metadata.get("target_host") or "")
            return f"{base}/html5/?user={quote(user, safe='')}&host={quote(host, safe='')}&token={token}"

        base = str(metadata.get("pomerium_url") or self._settings.pomerium_base_url).rstrip("/")
        override = metadata.get(f"{connection_type}_connection_id")
        gateway_id = str(override or f"{_GATEWAY_PREFIXES[connection_type]}{resource.id}")
        return f"{base}/guacamole/#/client/{gateway_client_path(gateway_id)}?token={token}"
