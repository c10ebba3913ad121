from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
import re
import secrets
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from accessvault.core.clock import is_expired, utc_now
from accessvault.core.config import Settings
from accessvault.core.errors import (
    EnrollmentTokenExpiredError,
    EnrollmentTokenInvalidError,
    InputValidationError,
    NotFoundError,
    PermissionDeniedError,
    ProviderAPIError,
)
from accessvault.domain.models import Device, DeviceEvent, Profile
from accessvault.domain.roles import Principal, can_manage_devices, require_capability
from accessvault.persistence.repos.integrations import get_tailscale_org
from accessvault.providers.tailscale import TailscaleProvider
from accessvault.services.audit import add_event
from accessvault.services.polling import poll_until
from accessvault.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

DEVICE_TYPES = frozenset({"laptop", "desktop", "mobile", "tablet", "windows", "macos", "linux"})
MAX_NAME_LENGTH = 100
MAX_OS_LENGTH = 50
_FINGERPRINT_RE = re.compile(r"^[A-Za-z0-9-]{1,100}$")
# Keys minted at verification only need to survive until the client runs `tailscale up`.
_DEVICE_AUTH_KEY_EXPIRY_S = 3600


@dataclass(frozen=True)
class PendingEnrollment:
    device_id: str
    enrollment_token: str
    expires_at: datetime
    has_network_integration: bool


@dataclass(frozen=True)
class VerifiedEnrollment:
    device_id: str
    device_name: str
    organization_id: str
    status: str
    trust_level: str
    network_auth_key: str | None = None
    network_tags: tuple[str, ...] = ()


@dataclass(frozen=True)
class EnrolledDevice:
    device_id: str
    status: str
    created: bool


@dataclass(frozen=True)
class NetworkStatus:
    device_id: str
    status: str
    connected: bool
    hostname: str | None = None
    ip: str | None = None


def validate_device_fields(
    *,
    name: str | None = None,
    device_type: str | None = None,
    os: str | None = None,
    fingerprint: str | None = None,
) -> None:
    if name is not None and not (0 < len(name) <= MAX_NAME_LENGTH):
        raise InputValidationError("Invalid device name: must be 1-100 characters")
    if device_type is not None and device_type not in DEVICE_TYPES:
        allowed = ", ".join(sorted(DEVICE_TYPES))
        raise InputValidationError(f"Invalid device type: must be one of {allowed}")
    if os is not None and not (0 < len(os) <= MAX_OS_LENGTH):
        raise InputValidationError("Invalid OS: must be 1-50 characters")
    if fingerprint is not None and not _FINGERPRINT_RE.match(fingerprint):
        raise InputValidationError("Invalid fingerprint: must be alphanumeric with hyphens, max 100 characters")


def _device_event(
    session: AsyncSession,
    device_id: str,
    event_type: str,
    details: dict[str, Any],
    ip_address: str | None = None,
) -> None:
    session.add(DeviceEvent(device_id=device_id, event_type=event_type, details=details, ip_address=ip_address))


def _require_org(principal: Principal) -> str:
    if not principal.organization_id:
        raise PermissionDeniedError("Caller is not a member of an organization")
    return principal.organization_id


class DeviceEnrollmentService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        tailscale: TailscaleProvider | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._tailscale = tailscale

    async def generate_token(
        self,
        principal: Principal,
        *,
        name: str | None = None,
        device_type: str | None = None,
        os: str | None = None,
        ip_address: str | None = None,
    ) -> PendingEnrollment:
        # Pending device plus one-time token for the caller.
        organization_id = _require_org(principal)
        validate_device_fields(name=name, device_type=device_type, os=os)
        return await self._create_pending(
            organization_id=organization_id,
            user_id=principal.user_id,
            created_by=principal.user_id,
            name=name or "New Device",
            device_type=device_type or "laptop",
            os=os,
            event_type="enrollment_initiated",
            ip_address=ip_address,
        )

    async def create_pending_device(
        self,
        principal: Principal,
        *,
        target_user_id: str,
        name: str | None = None,
        device_type: str | None = None,
        os: str | None = None,
        ip_address: str | None = None,
    ) -> PendingEnrollment:
        async with self._session_factory() as session:
            profile = await session.get(Profile, target_user_id)
        if profile is None or not profile.organization_id:
            raise NotFoundError("Target user not found")
        require_capability(principal, can_manage_devices(principal.role), organization_id=profile.organization_id)
        validate_device_fields(name=name, device_type=device_type, os=os)
        return await self._create_pending(
            organization_id=profile.organization_id,
            user_id=target_user_id,
            created_by=principal.user_id,
            name=name or "Pending Device",
            device_type=device_type or "laptop",
            os=os,
            event_type="pending_device_created",
            ip_address=ip_address,
        )

    async def _create_pending(
        self,
        *,
        organization_id: str,
        user_id: str,
        created_by: str,
        name: str,
        device_type: str,
        os: str | None,
        event_type: str,
        ip_address: str | None,
    ) -> PendingEnrollment:
        token = secrets.token_urlsafe(32)
        expires_at = utc_now() + timedelta(seconds=self._settings.device_enrollment_ttl_s)
        async with self._session_factory() as session:
            has_network = await get_tailscale_org(session, organization_id=organization_id) is not None
            device = Device(
                user_id=user_id,
                organization_id=organization_id,
                name=name,
                device_type=device_type,
                os=os,
                status="pending",
                trust_level="low",
                enrollment_token=token,
                enrollment_expires_at=expires_at,
                metadata_json={"created_by": created_by, "enrollment_expires_at": expires_at.isoformat()},
            )
            session.add(device)
            await session.flush()
            _device_event(session, device.id, event_type, {"created_by": created_by}, ip_address)
            if event_type == "pending_device_created":
                add_event(
                    session,
                    organization_id=organization_id,
                    user_id=created_by,
                    event=event_type,
                    details={"device_id": device.id, "target_user_id": user_id},
                )
            await session.commit()
            device_id = device.id
        logger.info("device_enrollment_pending organization_id=%s device_id=%s", organization_id, device_id)
        return PendingEnrollment(
            device_id=device_id,
            enrollment_token=token,
            expires_at=expires_at,
            has_network_integration=has_network,
        )

    async def verify(
        self,
        token: str,
        fingerprint: str,
        *,
        device_type: str | None = None,
        ip_address: str | None = None,
    ) -> VerifiedEnrollment:
        # Single use: activation is one conditional UPDATE on the pending row.
        if not token:
            raise EnrollmentTokenInvalidError()
        validate_device_fields(fingerprint=fingerprint, device_type=device_type)

        async with self._session_factory() as session:
            result = await session.execute(
                select(Device).where(Device.enrollment_token == token, Device.status == "pending")
            )
            device = result.scalar_one_or_none()
            if device is None:
                raise EnrollmentTokenInvalidError()
            if device.enrollment_expires_at is None or is_expired(device.enrollment_expires_at):
                await session.execute(delete(Device).where(Device.id == device.id))
                await session.commit()
                logger.info("device_enrollment_expired device_id=%s", device.id)
                raise EnrollmentTokenExpiredError()
            network = await get_tailscale_org(session, organization_id=device.organization_id)
            device_id = device.id
            organization_id = device.organization_id
            user_id = device.user_id
            device_name = device.name
            resolved_type = device_type or device.device_type
            metadata = dict(device.metadata_json or {})

        auth_key: str | None = None
        minted_key_id: str | None = None
        tags: tuple[str, ...] = ()
        if network is not None and self._tailscale is not None:
            tags = (f"tag:{network.organization_tag}",)
            minted = await self._tailscale.create_auth_key(
                organization_id,
                reusable=False,
                ephemeral=False,
                preauthorized=True,
                tags=list(tags),
                expiry_seconds=_DEVICE_AUTH_KEY_EXPIRY_S,
            )
            auth_key = minted.key
            minted_key_id = minted.id
            metadata["network_auth_key_id"] = minted.id

        now = utc_now()
        metadata["token_validated_at"] = now.isoformat()
        async with self._session_factory() as session:
            try:
                result = await session.execute(
                    update(Device)
                    .where(
                        Device.id == device_id,
                        Device.status == "pending",
                        Device.enrollment_token == token,
                        Device.enrollment_expires_at > now,
                    )
                    .values(
                        fingerprint=fingerprint,
                        device_type=resolved_type,
                        status="active",
                        trust_level="high",
                        enrollment_token=None,
                        enrolled_at=now,
                        last_seen=now,
                        metadata_json=metadata,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise EnrollmentTokenInvalidError()
            except (IntegrityError, EnrollmentTokenInvalidError) as exc:
                # Lost the activation; the minted key must not outlive this call.
                await session.rollback()
                await self._discard_auth_key(organization_id, minted_key_id)
                if isinstance(exc, IntegrityError):
                    raise InputValidationError("Device fingerprint is already enrolled for this user") from exc
                raise
            _device_event(
                session,
                device_id,
                "token_validated",
                {"device_type": resolved_type, "has_network_auth_key": auth_key is not None},
                ip_address,
            )
            add_event(
                session,
                organization_id=organization_id,
                user_id=user_id,
                event="device_enrolled",
                details={"device_id": device_id, "device_name": device_name, "method": "token"},
            )
            await session.commit()

        increment_counter("devices.enrolled.token")
        logger.info("device_enrolled method=token device_id=%s organization_id=%s", device_id, organization_id)
        return VerifiedEnrollment(
            device_id=device_id,
            device_name=device_name,
            organization_id=organization_id,
            status="active",
            trust_level="high",
            network_auth_key=auth_key,
            network_tags=tags,
        )

    async def _discard_auth_key(self, organization_id: str, key_id: str | None) -> None:
        if key_id is None or self._tailscale is None:
            return
        try:
            await self._tailscale.revoke_auth_key(organization_id, key_id)
        except ProviderAPIError as exc:
            # The caller's own error wins; an unrevoked key still expires on its own.
            logger.warning(
                "device_auth_key_revoke_failed organization_id=%s key_id=%s",
                organization_id,
                key_id,
                exc_info=exc,
            )

    async def _find_by_fingerprint(self, session: AsyncSession, user_id: str, fingerprint: str) -> Device | None:
        result = await session.execute(
            select(Device).where(Device.user_id == user_id, Device.fingerprint == fingerprint)
        )
        return result.scalar_one_or_none()

    async def _touch_existing(self, session: AsyncSession, device: Device, now: datetime) -> EnrolledDevice:
        device.last_seen = now
        await session.commit()
        return EnrolledDevice(device_id=device.id, status=device.status, created=False)

    async def enroll(
        self,
        principal: Principal,
        fingerprint: str,
        *,
        name: str | None = None,
        device_type: str | None = None,
        os: str | None = None,
        ip_address: str | None = None,
    ) -> EnrolledDevice:
        organization_id = _require_org(principal)
        if not fingerprint:
            raise InputValidationError("Device fingerprint required")
        validate_device_fields(name=name, device_type=device_type, os=os, fingerprint=fingerprint)

        now = utc_now()
        async with self._session_factory() as session:
            existing = await self._find_by_fingerprint(session, principal.user_id, fingerprint)
            if existing is not None:
                return await self._touch_existing(session, existing, now)

            # Silent enrollment proves only possession of the caller's session, hence medium trust.
            device = Device(
                user_id=principal.user_id,
                organization_id=organization_id,
                name=name or "Auto-enrolled Device",
                device_type=device_type or "laptop",
                os=os,
                fingerprint=fingerprint,
                status="active",
                trust_level="medium",
                enrolled_at=now,
                last_seen=now,
            )
            session.add(device)
            try:
                await session.flush()
            except IntegrityError:
                # A concurrent enroll for the same fingerprint inserted first.
                await session.rollback()
                existing = await self._find_by_fingerprint(session, principal.user_id, fingerprint)
                if existing is None:
                    raise
                return await self._touch_existing(session, existing, now)
            _device_event(session, device.id, "enrolled", {"method": "silent", "os": os}, ip_address)
            add_event(
                session,
                organization_id=organization_id,
                user_id=principal.user_id,
                event="device_enrolled",
                details={"device_id": device.id, "device_name": device.name, "method": "silent"},
            )
            await session.commit()
            device_id = device.id
        increment_counter("devices.enrolled.silent")
        logger.info("device_enrolled method=silent device_id=%s organization_id=%s", device_id, organization_id)
        return EnrolledDevice(device_id=device_id, status="active", created=True)

    async def _load_visible(self, session: AsyncSession, principal: Principal, device_id: str) -> Device:
        device = await session.get(Device, device_id)
        if device is None:
            raise NotFoundError("Device not found")
        if device.user_id == principal.user_id:
            return device
        if can_manage_devices(principal.role) and principal.can_act_in(device.organization_id):
            return device
        # Devices outside the caller's scope are reported as missing.
        raise NotFoundError("Device not found")

    async def get_status(self, principal: Principal, device_id: str) -> dict[str, Any]:
        async with self._session_factory() as session:
            device = await self._load_visible(session, principal, device_id)
            device.last_seen = utc_now()
            await session.commit()
            return _device_summary(device)

    async def list_devices(self, principal: Principal, *, status: str | None = None) -> list[dict[str, Any]]:
        organization_id = _require_org(principal)
        stmt = select(Device).where(Device.organization_id == organization_id)
        if not can_manage_devices(principal.role):
            stmt = stmt.where(Device.user_id == principal.user_id)
        if status:
            stmt = stmt.where(Device.status == status)
        async with self._session_factory() as session:
            result = await session.execute(stmt.order_by(Device.created_at.desc()))
            return [_device_summary(device) for device in result.scalars().all()]

    async def wait_until_active(
        self,
        principal: Principal,
        device_id: str,
        *,
        interval_s: float | None = None,
        max_attempts: int | None = None,
    ) -> dict[str, Any]:
        return await poll_until(
            lambda: self.get_status(principal, device_id),
            lambda summary: summary["status"] == "active",
            interval_s=interval_s if interval_s is not None else self._settings.device_poll_interval_s,
            max_attempts=max_attempts if max_attempts is not None else self._settings.device_poll_max_attempts,
            label="device_activation",
        )

    async def check_network_status(
        self,
        principal: Principal,
        device_id: str,
        *,
        ip_address: str | None = None,
    ) -> NetworkStatus:
        # Match the device against the tailnet and persist what was found.
        async with self._session_factory() as session:
            device = await self._load_visible(session, principal, device_id)
            network = await get_tailscale_org(session, organization_id=device.organization_id)
            organization_id = device.organization_id
            known_id = device.network_device_id
            name = device.name.lower()
            status = device.status
        if network is None or self._tailscale is None:
            return NetworkStatus(device_id=device_id, status=status, connected=False)

        try:
            peers = await self._tailscale.list_devices(organization_id)
        except ProviderAPIError as exc:
            logger.warning("device_network_check_failed device_id=%s error=%s", device_id, exc)
            return NetworkStatus(device_id=device_id, status=status, connected=False)

        match = next(
            (
                peer
                for peer in peers
                if (known_id and peer.id == known_id)
                or peer.hostname.lower() == name
                or peer.name.split(".")[0].lower() == name
            ),
            None,
        )
        if match is None:
            return NetworkStatus(device_id=device_id, status=status, connected=False)

        async with self._session_factory() as session:
            device = await session.get(Device, device_id)
            if device is None:
                raise NotFoundError("Device not found")
            device.network_device_id = match.id
            device.network_hostname = match.hostname
            device.network_ip = match.ipv4
            device.last_seen = utc_now()
            _device_event(
                session,
                device_id,
                "network_connected",
                {"network_device_id": match.id, "hostname": match.hostname, "ip": match.ipv4},
                ip_address,
            )
            await session.commit()
            status = device.status
        return NetworkStatus(
            device_id=device_id,
            status=status,
            connected=True,
            hostname=match.hostname,
            ip=match.ipv4,
        )

    async def re_enroll(self, principal: Principal, device_id: str) -> PendingEnrollment:
        token = secrets.token_urlsafe(32)
        expires_at = utc_now() + timedelta(seconds=self._settings.device_enrollment_ttl_s)
        async with self._session_factory() as session:
            device = await session.get(Device, device_id)
            if device is None:
                raise NotFoundError("Device not found")
            require_capability(principal, can_manage_devices(principal.role), organization_id=device.organization_id)
            device.status = "pending"
            device.trust_level = "low"
            device.enrollment_token = token
            device.enrollment_expires_at = expires_at
            # Reassign so the JSON column is flagged dirty.
            device.metadata_json = {**(device.metadata_json or {}), "enrollment_expires_at": expires_at.isoformat()}
            _device_event(session, device_id, "re_enrollment_requested", {"requested_by": principal.user_id})
            add_event(
                session,
                organization_id=device.organization_id,
                user_id=principal.user_id,
                event="device_re_enrollment_requested",
                details={"device_id": device_id},
            )
            await session.commit()
            has_network = await get_tailscale_org(session, organization_id=device.organization_id) is not None
        return PendingEnrollment(
            device_id=device_id,
            enrollment_token=token,
            expires_at=expires_at,
            has_network_integration=has_network,
        )

    async def revoke(self, principal: Principal, device_id: str) -> bool:
        async with self._session_factory() as session:
            device = await session.get(Device, device_id)
            if device is None:
                return False
            require_capability(principal, can_manage_devices(principal.role), organization_id=device.organization_id)
            add_event(
                session,
                organization_id=device.organization_id,
                user_id=principal.user_id,
                event="device_revoked",
                details={"device_id": device_id, "device_name": device.name},
            )
            await session.delete(device)
            await session.commit()
        logger.info("device_revoked device_id=%s", device_id)
        return True


def _device_summary(device: Device) -> dict[str, Any]:
    return {
        "id": device.id,
        "user_id": device.user_id,
        "organization_id": device.organization_id,
        "name": device.name,
        "device_type": device.device_type,
        "os": device.os,
        "status": device.status,
        "trust_level": device.trust_level,
        "enrolled_at": device.enrolled_at.isoformat() if device.enrolled_at else None,
        "last_seen": device.last_seen.isoformat() if device.last_seen else None,
        "network_hostname": device.network_hostname,
        "network_ip": device.network_ip,
    }
