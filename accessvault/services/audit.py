from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from accessvault.domain.models import AuditLog


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = [
    "api_key",
    "apikey",
    "authorization",
    "token",
    "secret",
    "password",
    "private_key",
    "client_key",
    "auth_key",
]
# Identifiers that merely reference a credential row are safe to keep.
_SAFE_KEY_SUFFIXES = ("_id", "_ref", "_type", "_at", "_count")
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    if lowered.endswith(_SAFE_KEY_SUFFIXES):
        return False
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_details(value: Any) -> Any:
    # Recursively scrub credential-bearing fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_details(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_details(item) for item in value]
    return value


def add_event(
    session: AsyncSession,
    *,
    organization_id: str | None,
    user_id: str | None,
    event: str,
    details: dict[str, Any] | None = None,
) -> AuditLog:
    # Staged inside the caller's transaction.
    row = AuditLog(
        organization_id=organization_id,
        user_id=user_id,
        event=event,
        details=sanitize_details(details or {}),
    )
    session.add(row)
    return row


async def record_event(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    organization_id: str | None,
    user_id: str | None,
    event: str,
    details: dict[str, Any] | None = None,
    best_effort: bool = True,
) -> None:
    # Own session per write; best-effort callers get a log line for any failure, connect errors included.
    try:
        async with session_factory() as session:
            add_event(
                session,
                organization_id=organization_id,
                user_id=user_id,
                event=event,
                details=details,
            )
            await session.commit()
    except Exception as exc:  # noqa: BLE001
        if not best_effort:
            raise
        logger.warning(
            "audit_event_write_failed event=%s organization_id=%s",
            event,
            organization_id,
            exc_info=exc,
        )
