from __future__ import annotations

import argparse
import asyncio
import json
import sys

from accessvault.core.config import get_settings
from accessvault.core.logging import configure_logging
from accessvault.domain.roles import Principal
from accessvault.services.container import build_services
from accessvault.services.onboarding import OnboardingRequest


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Onboard a new client organization end to end")
    parser.add_argument("--organization-name", required=True)
    parser.add_argument("--support-email", required=True)
    parser.add_argument("--support-first-name", required=True)
    parser.add_argument("--support-last-name", required=True)
    parser.add_argument("--tailnet", required=True)
    parser.add_argument("--tailscale-api-key", required=True, help="Admin API key for the client's tailnet")
    parser.add_argument("--organization-tag", default=None)
    parser.add_argument("--logo-url", default=None)
    parser.add_argument("--app-url", default=None, help="Portal URL used in invitation links")
    parser.add_argument("--enable-mfa", action="store_true")
    return parser


async def _onboard(args: argparse.Namespace) -> int:
    settings = get_settings()
    # Step progress markers go to stdout alongside the JSON ledger.
    configure_logging(settings.log_level)
    services = build_services(settings)
    request = OnboardingRequest(
        organization_name=args.organization_name,
        support_email=args.support_email,
        support_first_name=args.support_first_name,
        support_last_name=args.support_last_name,
        tailnet=args.tailnet,
        tailscale_api_key=args.tailscale_api_key,
        app_url=args.app_url or settings.app_url,
        organization_logo=args.logo_url,
        organization_tag=args.organization_tag,
        enable_mfa=args.enable_mfa,
    )
    try:
        result = await services.onboarding.onboard_new_client(request, actor=Principal.system())
    finally:
        await services.aclose()

    payload = result.to_dict()
    # The invitation token was already emailed; never echo it to the terminal.
    payload.pop("invitation_token", None)
    print(json.dumps(payload, indent=2))
    return 0 if result.success else 1


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_onboard(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"onboard_client failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
