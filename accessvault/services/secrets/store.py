from __future__ import annotations

from datetime import datetime
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from accessvault.core.clock import is_expired
from accessvault.core.errors import InputValidationError, SecretExpiredError, SecretNotFoundError
from accessvault.domain.models import EncryptedSecret
from accessvault.domain.roles import Principal, can_manage_secrets, require_capability
from accessvault.services.audit import add_event
from accessvault.services.secrets.envelope import SealedSecret, open_sealed, seal
from accessvault.services.secrets.kms import KmsProvider


logger = logging.getLogger(__name__)

SECRET_TYPES = frozenset({"api_key", "token", "password", "certificate"})


class SecretStore:
    # Plaintext is never logged or cached; every call is permission checked and audited.
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        kms: KmsProvider,
        *,
        key_alias: str = "secrets",
    ) -> None:
        self._session_factory = session_factory
        self._kms = kms
        self._key_alias = key_alias

    async def store(
        self,
        *,
        organization_id: str,
        key_name: str,
        secret_value: str,
        secret_type: str,
        actor: Principal,
        metadata: dict[str, Any] | None = None,
        expires_at: datetime | None = None,
    ) -> str:
        require_capability(actor, can_manage_secrets(actor.role), organization_id=organization_id)
        if secret_type not in SECRET_TYPES:
            raise InputValidationError(f"Unsupported secret type: {secret_type}")
        if not key_name.strip():
            raise InputValidationError("key_name is required")
        if not secret_value:
            raise InputValidationError("secret_value is required")

        sealed = seal(
            self._kms,
            organization_id=organization_id,
            key_name=key_name,
            secret_type=secret_type,
            plaintext=secret_value,
            key_alias=self._key_alias,
        )
        async with self._session_factory() as session:
            # Storing again under the same (org, name, type) rotates the value in place.
            row = (
                await session.execute(
                    select(EncryptedSecret).where(
                        EncryptedSecret.organization_id == organization_id,
                        EncryptedSecret.key_name == key_name,
                        EncryptedSecret.secret_type == secret_type,
                    )
                )
            ).scalar_one_or_none()
            if row is None:
                row = EncryptedSecret(
                    organization_id=organization_id,
                    key_name=key_name,
                    secret_type=secret_type,
                    created_by=actor.user_id,
                )
                session.add(row)
            row.encrypted_value = sealed.ciphertext
            row.nonce = sealed.nonce
            row.wrapped_dek = sealed.wrapped_dek
            row.key_ref = sealed.key_ref
            row.metadata_json = dict(metadata or {})
            row.expires_at = expires_at
            await session.flush()
            add_event(
                session,
                organization_id=organization_id,
                user_id=actor.user_id,
                event="secret_stored",
                details={"secret_id": row.id, "key_name": key_name, "secret_type": secret_type},
            )
            await session.commit()
            secret_id = row.id
        logger.info(
            "secret_stored organization_id=%s key_name=%s secret_type=%s",
            organization_id,
            key_name,
            secret_type,
        )
        return secret_id

    async def retrieve(self, secret_id: str, *, actor: Principal) -> str:
        async with self._session_factory() as session:
            row = await session.get(EncryptedSecret, secret_id)
            if row is None:
                raise SecretNotFoundError("Secret not found")
            require_capability(actor, can_manage_secrets(actor.role), organization_id=row.organization_id)
            if is_expired(row.expires_at):
                raise SecretExpiredError("Secret has expired")
            plaintext = open_sealed(
                self._kms,
                SealedSecret(
                    ciphertext=row.encrypted_value,
                    nonce=row.nonce,
                    wrapped_dek=row.wrapped_dek,
                    key_ref=row.key_ref,
                ),
                organization_id=row.organization_id,
                key_name=row.key_name,
                secret_type=row.secret_type,
            )
            add_event(
                session,
                organization_id=row.organization_id,
                user_id=actor.user_id,
                event="secret_accessed",
                details={"secret_id": row.id, "key_name": row.key_name},
            )
            await session.commit()
        return plaintext
