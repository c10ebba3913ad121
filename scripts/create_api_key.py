from __future__ import annotations

import argparse
import asyncio
import sys

from accessvault.core.config import get_settings
from accessvault.domain.models import ApiKey, Profile
from accessvault.domain.roles import normalize_role
from accessvault.persistence.db import SessionFactory, create_engine_for, create_session_factory
from accessvault.services.audit import add_event
from accessvault.services.auth.api_keys import generate_api_key


def _build_parser() -> argparse.ArgumentParser:
    # Keep CLI arguments explicit to avoid accidental key misuse.
    parser = argparse.ArgumentParser(description="Create an API key for a portal profile")
    parser.add_argument("--organization", default=None, help="Organization id (omit for global admins)")
    parser.add_argument("--role", required=True, help="Role: user|support|org_admin|global_admin")
    parser.add_argument("--name", required=True, help="Key label for auditing")
    parser.add_argument("--profile-id", default=None, help="Existing profile id to attach")
    parser.add_argument("--email", default=None, help="Optional profile email")
    return parser


async def _create_key(args: argparse.Namespace, session_factory: SessionFactory | None = None) -> int:
    role = normalize_role(args.role).value
    engine = None
    if session_factory is None:
        engine = create_engine_for(get_settings())
        session_factory = create_session_factory(engine)
    key_id, raw_key, key_prefix, key_hash = generate_api_key()

    try:
        async with session_factory() as session:
            profile = await session.get(Profile, args.profile_id) if args.profile_id else None
            if profile is None:
                profile = Profile(organization_id=args.organization, email=args.email, role=role)
                session.add(profile)
            else:
                # Existing profiles stay bound to their organization when issuing new keys.
                if profile.organization_id != args.organization:
                    raise ValueError("Profile organization does not match requested organization")
                profile.role = role
                if args.email:
                    profile.email = args.email
            await session.flush()

            session.add(
                ApiKey(
                    id=key_id,
                    profile_id=profile.id,
                    organization_id=profile.organization_id,
                    key_prefix=key_prefix,
                    key_hash=key_hash,
                    name=args.name,
                )
            )
            add_event(
                session,
                organization_id=profile.organization_id,
                user_id="create_api_key",
                event="api_key_created",
                details={"key_id": key_id, "profile_id": profile.id, "key_prefix": key_prefix, "role": role},
            )
            await session.commit()
    finally:
        if engine is not None:
            await engine.dispose()

    print("API key created:")
    print(f"  key_id: {key_id}")
    print(f"  key_prefix: {key_prefix}")
    print("  api_key: ")
    print(f"    {raw_key}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_create_key(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
