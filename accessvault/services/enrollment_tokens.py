from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
import hashlib
import logging
import secrets
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from accessvault.core.clock import as_utc, utc_now
from accessvault.core.errors import EnrollmentTokenInvalidError, InputValidationError
from accessvault.domain.models import EnrollmentToken, InvitationEmail
from accessvault.domain.roles import Principal, can_issue_enrollment_tokens, require_capability
from accessvault.services.audit import add_event


logger = logging.getLogger(__name__)

TOKEN_TYPES = frozenset({"tailscale", "device", "invitation"})


@dataclass(frozen=True)
class IssuedToken:
    token_id: str
    token: str


@dataclass(frozen=True)
class TokenValidation:
    is_valid: bool
    token_id: str | None = None
    user_id: str | None = None
    organization_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


INVALID = TokenValidation(is_valid=False)


def hash_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def _is_live(row: EnrollmentToken) -> bool:
    # Validity is recomputed at every check; nothing about it is cached.
    return row.used_at is None and row.revoked_at is None and utc_now() < as_utc(row.expires_at)


class EnrollmentTokenService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def generate(
        self,
        *,
        organization_id: str,
        user_id: str,
        token_type: str,
        actor: Principal,
        device_type: str | None = None,
        expires_hours: int = 24,
        metadata: dict[str, Any] | None = None,
    ) -> IssuedToken:
        require_capability(actor, can_issue_enrollment_tokens(actor.role), organization_id=organization_id)
        if token_type not in TOKEN_TYPES:
            raise InputValidationError(f"Unsupported token type: {token_type}")
        if expires_hours <= 0:
            raise InputValidationError("expires_hours must be positive")

        raw_token = secrets.token_urlsafe(32)
        async with self._session_factory() as session:
            row = EnrollmentToken(
                organization_id=organization_id,
                user_id=user_id,
                token_type=token_type,
                device_type=device_type,
                token_hash=hash_token(raw_token),
                expires_at=utc_now() + timedelta(hours=expires_hours),
                metadata_json=dict(metadata or {}),
            )
            session.add(row)
            await session.flush()
            add_event(
                session,
                organization_id=organization_id,
                user_id=actor.user_id,
                event="enrollment_token_generated",
                details={
                    "token_id": row.id,
                    "target_user_id": user_id,
                    "token_type": token_type,
                    "device_type": device_type,
                    "expires_hours": expires_hours,
                },
            )
            await session.commit()
            token_id = row.id
        logger.info(
            "enrollment_token_generated organization_id=%s token_type=%s token_id=%s",
            organization_id,
            token_type,
            token_id,
        )
        return IssuedToken(token_id=token_id, token=raw_token)

    async def validate(self, token: str, token_type: str) -> TokenValidation:
        async with self._session_factory() as session:
            row = await self._find(session, token, token_type)
            if row is None or not _is_live(row):
                return INVALID
            return TokenValidation(
                is_valid=True,
                token_id=row.id,
                user_id=row.user_id,
                organization_id=row.organization_id,
                metadata=dict(row.metadata_json or {}),
            )

    async def mark_used(self, token_id: str) -> bool:
        # Single conditional UPDATE so two concurrent consumers cannot both succeed.
        now = utc_now()
        async with self._session_factory() as session:
            result = await session.execute(
                update(EnrollmentToken)
                .where(
                    EnrollmentToken.id == token_id,
                    EnrollmentToken.used_at.is_(None),
                    EnrollmentToken.revoked_at.is_(None),
                    EnrollmentToken.expires_at > now,
                )
                .values(used_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount == 1

    async def revoke(self, token_id: str, *, actor: Principal) -> bool:
        async with self._session_factory() as session:
            row = await session.get(EnrollmentToken, token_id)
            if row is None:
                return False
            require_capability(actor, can_issue_enrollment_tokens(actor.role), organization_id=row.organization_id)
            if row.revoked_at is not None or row.used_at is not None:
                return False
            row.revoked_at = utc_now()
            add_event(
                session,
                organization_id=row.organization_id,
                user_id=actor.user_id,
                event="enrollment_token_revoked",
                details={"token_id": token_id},
            )
            await session.commit()
        return True

    async def accept_invitation(self, token: str) -> TokenValidation:
        # Also stamps the matching invitation email row.
        validation = await self.validate(token, "invitation")
        if not validation.is_valid or validation.token_id is None:
            raise EnrollmentTokenInvalidError("Invalid or expired invitation token")
        if not await self.mark_used(validation.token_id):
            raise EnrollmentTokenInvalidError("Invalid or expired invitation token")
        async with self._session_factory() as session:
            await session.execute(
                update(InvitationEmail)
                .where(
                    InvitationEmail.invitation_token_id == validation.token_id,
                    InvitationEmail.accepted_at.is_(None),
                )
                .values(accepted_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            add_event(
                session,
                organization_id=validation.organization_id,
                user_id=validation.user_id,
                event="invitation_accepted",
                details={"token_id": validation.token_id},
            )
            await session.commit()
        return validation

    async def _find(self, session: AsyncSession, token: str, token_type: str) -> EnrollmentToken | None:
        result = await session.execute(
            select(EnrollmentToken).where(
                EnrollmentToken.token_hash == hash_token(token),
                EnrollmentToken.token_type == token_type,
            )
        )
        return result.scalar_one_or_none()
