"""
Purchase provider surface consumed by the entitlement engine.

The purchase SDK is a process-wide singleton on device. The engine only
ever talks to it through this interface so tests can inject a fake and
any concrete SDK (RevenueCat REST, a store bridge) can implement it.
"""

from abc import ABC, abstractmethod
from typing import Optional

from src.entitlements.models import CustomerInfo, Offerings, PackageInfo


class PurchaseProvider(ABC):
    """
    Abstract purchase provider.

    All network-facing operations are coroutines and may suspend.
    Failures raise PurchaseProviderError (or PurchaseCancelledError).
    """

    @abstractmethod
    def configure(self, api_key: str) -> None:
        """Configure with a platform API key. Configuring twice is a no-op."""

    @abstractmethod
    async def is_configured(self) -> bool:
        """True once configure() has taken effect."""

    @abstractmethod
    async def log_in(self, app_user_id: str) -> CustomerInfo:
        """Bind the purchase identity to `app_user_id`."""

    @abstractmethod
    async def log_out(self) -> None:
        """Unbind the purchase identity (back to an anonymous identity)."""

    @abstractmethod
    async def get_customer_info(self) -> CustomerInfo:
        """Fetch entitlement info for the bound identity."""

    @abstractmethod
    async def purchase_package(self, package: PackageInfo) -> CustomerInfo:
        """Purchase a package and return the resulting customer info."""

    @abstractmethod
    async def restore_purchases(self) -> CustomerInfo:
        """Restore previous store purchases for the bound identity."""

    @abstractmethod
    async def get_offerings(self) -> Offerings:
        """Fetch purchasable offerings."""

    async def get_management_url(self) -> Optional[str]:
        """Subscription management URL, when the provider exposes one."""
        info = await self.get_customer_info()
        return info.management_url
