"""
Identity binder.

Keeps the purchase-provider identity in step with the signed-in account.
Purchases are organization-scoped, so the provider identity is the
organization id, never the user id.

Signed in with organization X:
    configure once → log_in(X) → refresh entitlement
Signed in without organization id (profile still loading):
    defer, never bind a null identity
Signed out:
    reset snapshot to unknown first, then log_out()
"""

import logging
from typing import TYPE_CHECKING, Optional

from src.entitlements.fetcher import EntitlementSnapshotFetcher
from src.entitlements.models import AuthSession

if TYPE_CHECKING:
    from src.integrations.revenuecat.provider import PurchaseProvider

logger = logging.getLogger(__name__)


class IdentityBinder:
    """Binds/unbinds the provider identity on auth state changes."""

    def __init__(
        self,
        provider: "PurchaseProvider",
        fetcher: EntitlementSnapshotFetcher,
        api_key: Optional[str],
    ):
        self._provider = provider
        self._fetcher = fetcher
        self._api_key = api_key
        self._configure_requested = False
        self._bound_organization_id: Optional[str] = None
        self._deferred = False

    @property
    def bound_organization_id(self) -> Optional[str]:
        return self._bound_organization_id

    @property
    def is_deferred(self) -> bool:
        return self._deferred

    @property
    def purchases_available(self) -> bool:
        """False on platforms without an API key (e.g. web)."""
        return bool(self._api_key)

    async def ensure_configured(self) -> bool:
        """
        Configure the provider once per process lifetime.

        Returns whether the provider reports itself configured afterwards.
        """
        if not self._api_key:
            return False
        try:
            if await self._provider.is_configured():
                return True
            if not self._configure_requested:
                self._configure_requested = True
                self._provider.configure(self._api_key)
                logger.info("Purchase provider configured")
            return await self._provider.is_configured()
        except Exception as exc:
            logger.warning("Purchase provider configuration failed", extra={"error": str(exc)})
            return False

    async def on_auth_change(self, session: AuthSession) -> None:
        """Handle an auth session transition."""
        if not session.is_signed_in:
            await self.unbind()
            return

        organization_id = session.organization_id
        if not organization_id:
            self._deferred = True
            logger.debug("Identity bind deferred, organization id not loaded yet")
            return

        self._deferred = False
        await self.bind(organization_id)

    async def bind(self, organization_id: str) -> None:
        """Bind to `organization_id` and refresh its entitlement."""
        if not self.purchases_available:
            logger.debug("Purchases unavailable on this platform, skipping bind")
            return

        if (
            organization_id == self._bound_organization_id
            and self._fetcher.organization_id == organization_id
            and self._fetcher.identity_ready
        ):
            await self._fetcher.refresh()
            return

        generation = self._fetcher.begin_identity(organization_id)
        self._bound_organization_id = None

        if not await self.ensure_configured():
            # Refresh still polls for a late configuration.
            logger.warning("Purchase provider not configured at bind time", extra={
                "organization_id": organization_id,
            })

        try:
            await self._provider.log_in(organization_id)
        except Exception as exc:
            logger.warning("Purchase identity bind failed", extra={
                "organization_id": organization_id,
                "bind_generation": generation,
                "error": str(exc),
            })
            self._fetcher.abandon_identity(generation)
            return

        if not self._fetcher.mark_identity_ready(generation):
            return

        self._bound_organization_id = organization_id
        logger.info("Purchase identity bound", extra={
            "organization_id": organization_id,
            "bind_generation": generation,
        })
        await self._fetcher.refresh()

    async def unbind(self) -> None:
        """Sign-out: reset the snapshot before the provider logout resolves."""
        previous = self._bound_organization_id
        self._bound_organization_id = None
        self._deferred = False
        self._fetcher.reset()

        if not self.purchases_available:
            return
        try:
            if await self._provider.is_configured():
                await self._provider.log_out()
        except Exception as exc:
            # Logging out an anonymous identity fails on some SDKs.
            logger.debug("Purchase identity logout failed", extra={
                "organization_id": previous,
                "error": str(exc),
            })
            return
        logger.info("Purchase identity unbound", extra={"organization_id": previous})
