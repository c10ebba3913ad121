from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from accessvault.core.clock import is_expired, utc_now
from accessvault.domain.models import ApiKey, Profile
from accessvault.domain.roles import Principal, Role, normalize_role, role_allows
from accessvault.services.audit import record_event
from accessvault.services.auth.api_keys import hash_api_key, is_portal_api_key
from accessvault.services.container import PortalServices


def get_services(request: Request) -> PortalServices:
    return request.app.state.services


async def get_db(services: PortalServices = Depends(get_services)) -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with services.session_factory() as session:
        yield session


def client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _forbidden_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


def _principal_from_dev_headers(request: Request) -> Principal:
    # Header identities are honoured only when the dev bypass is switched on.
    organization_id = request.headers.get("X-Organization-Id")
    if not organization_id:
        raise _auth_error("X-Organization-Id header is required in dev bypass mode")
    try:
        role = normalize_role(request.headers.get("X-Role", Role.ORG_ADMIN.value))
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "AUTH_INVALID_ROLE", "message": str(exc)},
        ) from exc
    return Principal(
        user_id=request.headers.get("X-User-Id") or f"dev-{organization_id}",
        organization_id=organization_id,
        role=role,
        auth_method="dev_bypass",
    )


async def _record_auth_failure(services: PortalServices, request: Request, reason: str) -> None:
    await record_event(
        services.session_factory,
        organization_id=None,
        user_id=None,
        event="auth_access_denied",
        details={"path": request.url.path, "method": request.method, "reason": reason},
    )


async def get_current_principal(
    request: Request,
    services: PortalServices = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Principal:
    settings = services.settings
    bearer_token = _parse_bearer_token(request.headers.get(settings.auth_api_key_header))

    if not settings.auth_enabled or not bearer_token:
        if settings.auth_dev_bypass:
            return _principal_from_dev_headers(request)
        await _record_auth_failure(services, request, "missing_api_key")
        raise _auth_error("Missing API key")

    if not is_portal_api_key(bearer_token):
        # Foreign token formats never reach the key table.
        await _record_auth_failure(services, request, "invalid_api_key")
        raise _auth_error("Invalid API key")

    try:
        result = await db.execute(
            select(ApiKey, Profile)
            .join(Profile, ApiKey.profile_id == Profile.id)
            .where(ApiKey.key_hash == hash_api_key(bearer_token))
        )
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "AUTH_UNAVAILABLE", "message": "Authentication unavailable"},
        ) from exc

    row = result.first()
    if row is None:
        await _record_auth_failure(services, request, "invalid_api_key")
        raise _auth_error("Invalid API key")
    api_key, profile = row
    if api_key.revoked_at is not None or (api_key.expires_at is not None and is_expired(api_key.expires_at)):
        await _record_auth_failure(services, request, "revoked_or_expired")
        raise _auth_error("API key is revoked or expired")
    try:
        role = normalize_role(profile.role)
    except ValueError as exc:
        raise _forbidden_error("Profile role is not recognised") from exc

    await db.execute(update(ApiKey).where(ApiKey.id == api_key.id).values(last_used_at=utc_now()))
    await db.commit()
    return Principal(
        user_id=profile.id,
        organization_id=profile.organization_id or api_key.organization_id,
        role=role,
        auth_method="api_key",
    )


def require_role(minimum_role: Role):
    # Enforce a minimum role before the handler runs; services re-check capabilities.
    async def _dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if not role_allows(role=principal.role, minimum_role=minimum_role):
            raise _forbidden_error("Insufficient role for this operation")
        return principal

    return _dependency
