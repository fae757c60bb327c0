"""
Access check job.

Resolves the access tier for one organization the same way the app does:
fetches the backend account record, binds the purchase-provider identity,
refreshes the entitlement and evaluates the derived access state once.

Usage:
    python -m src.jobs.check_access --token TOKEN [--organization-id ORG] [--platform ios]

Prints the derived access state as JSON. Exit code 0 on success, 1 on error.
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import List, Optional

from src.config.purchase_config import PurchaseConfig, get_purchase_config
from src.entitlements.models import AuthSession, DerivedAccessState, Platform
from src.entitlements.service import EntitlementService
from src.integrations.library_api.account_client import LibraryAPIClient, get_library_api_client
from src.integrations.revenuecat.provider import PurchaseProvider
from src.integrations.revenuecat.client import get_revenuecat_client

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def run_access_check(
    token: str,
    organization_id: Optional[str] = None,
    platform: Platform = Platform.IOS,
    config: Optional[PurchaseConfig] = None,
    provider: Optional[PurchaseProvider] = None,
    account_client: Optional[LibraryAPIClient] = None,
) -> DerivedAccessState:
    """
    Run the engine once for a signed-in session.

    Args:
        token: Backend session token
        organization_id: Organization to check (defaults to the profile's)
        platform: Platform whose provider key is used
        config: Purchase config (defaults to the loaded config)
        provider: Purchase provider (defaults to the RevenueCat REST client)
        account_client: Backend client (defaults to LibraryAPIClient)

    Returns:
        DerivedAccessState after bind and refresh

    Raises:
        AccountFetchError: If the profile cannot be fetched
        ValueError: If organization_id differs from the profile's organization
    """
    config = config or get_purchase_config()
    platform = Platform(platform)
    account_client = account_client or get_library_api_client(token, config=config)
    provider = provider or get_revenuecat_client(platform, config=config)

    try:
        account = await account_client.fetch_account()
        if organization_id and account.organization_id and organization_id != account.organization_id:
            raise ValueError(
                f"Organization {organization_id} does not match the profile's "
                f"organization {account.organization_id}"
            )
        organization_id = organization_id or account.organization_id

        service = EntitlementService(provider, config=config, platform=platform)
        await service.on_auth_changed(AuthSession(token=token, organization_id=organization_id))
        await service.set_account(account)

        state = service.access_state
        logger.info("Access check completed", extra={
            "organization_id": organization_id,
            "platform": platform.value,
            "is_pro": state.is_pro,
            "is_blocked": state.is_blocked,
        })
        return state
    finally:
        await account_client.close()
        close = getattr(provider, "close", None)
        if close is not None:
            await close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Resolve the access tier for an organization",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m src.jobs.check_access --token $TOKEN
  python -m src.jobs.check_access --token $TOKEN --organization-id 64f0c2 --platform android
        """
    )
    parser.add_argument(
        "--token",
        type=str,
        default=os.getenv("LIBRARY_API_TOKEN"),
        help="Backend session token (defaults to LIBRARY_API_TOKEN env var)"
    )
    parser.add_argument(
        "--organization-id",
        type=str,
        help="Organization id (defaults to, and must match, the profile's organization)"
    )
    parser.add_argument(
        "--platform",
        type=str,
        choices=[p.value for p in Platform],
        default=Platform.IOS.value,
        help="Platform whose purchase API key is used"
    )
    return parser


def main(argv: Optional[List[str]] = None):
    """Entry point for running the access check from command line."""
    args = build_parser().parse_args(argv)
    if not args.token:
        print("Access check failed: --token or LIBRARY_API_TOKEN is required")
        sys.exit(1)

    try:
        state = asyncio.run(run_access_check(
            token=args.token,
            organization_id=args.organization_id,
            platform=Platform(args.platform),
        ))
        print(json.dumps(state.to_dict(), indent=2))
        sys.exit(0)
    except Exception as e:
        print(f"Access check failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
