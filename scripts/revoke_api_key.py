from __future__ import annotations

import argparse
import asyncio
import sys

from accessvault.core.clock import utc_now
from accessvault.core.config import get_settings
from accessvault.domain.models import ApiKey
from accessvault.persistence.db import SessionFactory, create_engine_for, create_session_factory
from accessvault.services.audit import add_event


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Revoke an API key by id")
    parser.add_argument("key_id", help="API key id to revoke")
    return parser


async def _revoke_key(key_id: str, session_factory: SessionFactory | None = None) -> int:
    # Mark the key revoked without deleting history for audits.
    engine = None
    if session_factory is None:
        engine = create_engine_for(get_settings())
        session_factory = create_session_factory(engine)
    try:
        async with session_factory() as session:
            api_key = await session.get(ApiKey, key_id)
            if api_key is None:
                raise ValueError("API key not found")
            api_key.revoked_at = utc_now()
            add_event(
                session,
                organization_id=api_key.organization_id,
                user_id="revoke_api_key",
                event="api_key_revoked",
                details={"key_id": api_key.id, "profile_id": api_key.profile_id, "key_prefix": api_key.key_prefix},
            )
            await session.commit()
    finally:
        if engine is not None:
            await engine.dispose()
    print(f"Revoked API key {key_id}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_revoke_key(args.key_id))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"revoke_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
