"""
RevenueCat REST API client implementing the purchase provider surface.

Uses RevenueCat REST API v1 for subscriber lookup, receipt posting and
offerings. Store purchase tokens come from an injected StoreBridge, since
the store sheet itself lives on the device.

Documentation: https://www.revenuecat.com/docs/api-v1
"""

import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

import httpx
from pydantic import BaseModel, Field

from src.entitlements.errors import (
    PurchaseCancelledError,
    PurchaseProviderError,
    ProviderNotConfiguredError,
)
from src.entitlements.models import (
    CustomerInfo,
    EntitlementGrant,
    Offering,
    Offerings,
    PackageInfo,
    Platform,
    parse_timestamp,
    utcnow,
)
from src.integrations.revenuecat.provider import PurchaseProvider

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.revenuecat.com/v1"
ANONYMOUS_ID_PREFIX = "$RCAnonymousID:"

# RevenueCat's well-known package identifiers
_PACKAGE_TYPES = {
    "$rc_lifetime": "LIFETIME",
    "$rc_annual": "ANNUAL",
    "$rc_six_month": "SIX_MONTH",
    "$rc_three_month": "THREE_MONTH",
    "$rc_two_month": "TWO_MONTH",
    "$rc_monthly": "MONTHLY",
    "$rc_weekly": "WEEKLY",
}


def package_type_for(identifier: str) -> str:
    return _PACKAGE_TYPES.get(identifier, "CUSTOM")


# =============================================================================
# Response payloads
# =============================================================================

class SubscriberEntitlementPayload(BaseModel):
    expires_date: Optional[datetime] = None
    product_identifier: Optional[str] = None
    purchase_date: Optional[datetime] = None


class SubscriberPayload(BaseModel):
    original_app_user_id: Optional[str] = None
    management_url: Optional[str] = None
    entitlements: Dict[str, SubscriberEntitlementPayload] = Field(default_factory=dict)


class SubscriberResponse(BaseModel):
    request_date: Optional[datetime] = None
    subscriber: SubscriberPayload


class PackagePayload(BaseModel):
    identifier: str
    platform_product_identifier: str


class OfferingPayload(BaseModel):
    identifier: str
    description: Optional[str] = None
    packages: List[PackagePayload] = Field(default_factory=list)


class OfferingsResponse(BaseModel):
    current_offering_id: Optional[str] = None
    offerings: List[OfferingPayload] = Field(default_factory=list)


# =============================================================================
# Store bridge
# =============================================================================

class StoreBridge(ABC):
    """
    Device-side store purchase sheet.

    purchase() returns the store's purchase token (App Store receipt or
    Play purchase token) and raises PurchaseCancelledError when the user
    backs out.
    """

    @abstractmethod
    async def purchase(self, product_identifier: str) -> str:
        ...

    @abstractmethod
    async def restorable_tokens(self) -> List[str]:
        ...


# =============================================================================
# Client
# =============================================================================

class RevenueCatClient(PurchaseProvider):
    """
    RevenueCat REST client.

    Handles:
    - Idempotent configuration with a platform API key
    - Identity binding (organization id as app user id)
    - Customer info, receipt posting (purchase/restore) and offerings
    """

    def __init__(
        self,
        platform: Platform,
        store: Optional[StoreBridge] = None,
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: float = 30.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.platform = Platform(platform)
        self.base_url = base_url.rstrip("/")
        self._store = store
        self._timeout = timeout_seconds
        self._clock = clock
        self._client: Optional[httpx.AsyncClient] = None
        self._app_user_id = self._anonymous_id()

    @staticmethod
    def _anonymous_id() -> str:
        return f"{ANONYMOUS_ID_PREFIX}{uuid.uuid4().hex}"

    @property
    def app_user_id(self) -> str:
        return self._app_user_id

    @property
    def is_anonymous(self) -> bool:
        return self._app_user_id.startswith(ANONYMOUS_ID_PREFIX)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def configure(self, api_key: str) -> None:
        if not api_key:
            raise ValueError("api_key is required")
        if self._client is not None:
            logger.debug("RevenueCat already configured, ignoring configure()")
            return

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self._timeout, connect=10.0),
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
                "X-Platform": self.platform.value,
            },
        )
        logger.info("RevenueCat client configured", extra={"platform": self.platform.value})

    async def is_configured(self) -> bool:
        return self._client is not None

    async def close(self):
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    async def _request(self, method: str, path: str, json: Optional[dict] = None) -> Dict[str, Any]:
        """
        Execute a REST call.

        Raises:
            ProviderNotConfiguredError: configure() not called yet
            PurchaseProviderError: Any HTTP or transport failure
        """
        if self._client is None:
            raise ProviderNotConfiguredError()

        try:
            response = await self._client.request(method, path, json=json)
        except httpx.TimeoutException as e:
            logger.error("RevenueCat API timeout", extra={"path": path, "error": str(e)})
            raise PurchaseProviderError(f"Request timeout: {e}", code="timeout")
        except httpx.RequestError as e:
            logger.error("RevenueCat API request error", extra={"path": path, "error": str(e)})
            raise PurchaseProviderError(f"Request error: {e}", code="network_error")

        if response.status_code == 401:
            raise PurchaseProviderError(
                "Authentication failed - API key may be invalid",
                code="unauthorized",
                status_code=401,
            )
        if response.status_code == 429:
            logger.warning("RevenueCat API rate limited", extra={"path": path})
            raise PurchaseProviderError(
                "Rate limited - please retry after a delay",
                code="rate_limited",
                status_code=429,
            )
        if response.status_code >= 400:
            logger.error("RevenueCat API error", extra={
                "path": path,
                "status_code": response.status_code,
                "response_text": response.text[:500],
            })
            raise PurchaseProviderError(
                f"RevenueCat API error: {response.status_code}",
                code="api_error",
                status_code=response.status_code,
            )

        return response.json()

    def _subscriber_path(self) -> str:
        return f"/subscribers/{quote(self._app_user_id, safe='')}"

    def _to_customer_info(self, data: Dict[str, Any]) -> CustomerInfo:
        parsed = SubscriberResponse.model_validate(data)
        now = self._clock()
        active: Dict[str, EntitlementGrant] = {}
        for name, payload in parsed.subscriber.entitlements.items():
            grant = EntitlementGrant(
                identifier=name,
                product_identifier=payload.product_identifier,
                expires_at=parse_timestamp(payload.expires_date),
                purchased_at=parse_timestamp(payload.purchase_date),
            )
            if grant.is_active(now):
                active[name] = grant

        return CustomerInfo(
            app_user_id=parsed.subscriber.original_app_user_id or self._app_user_id,
            active_entitlements=active,
            management_url=parsed.subscriber.management_url,
            request_date=parse_timestamp(parsed.request_date),
            raw=data,
        )

    # ------------------------------------------------------------------
    # Provider surface
    # ------------------------------------------------------------------

    async def log_in(self, app_user_id: str) -> CustomerInfo:
        if not app_user_id:
            raise ValueError("app_user_id is required")
        if self._client is None:
            raise ProviderNotConfiguredError()
        self._app_user_id = app_user_id
        logger.info("RevenueCat identity set", extra={"app_user_id": app_user_id})
        return await self.get_customer_info()

    async def log_out(self) -> None:
        if self.is_anonymous:
            raise PurchaseProviderError("Current user is already anonymous", code="already_anonymous")
        self._app_user_id = self._anonymous_id()

    async def get_customer_info(self) -> CustomerInfo:
        data = await self._request("GET", self._subscriber_path())
        return self._to_customer_info(data)

    async def purchase_package(self, package: PackageInfo) -> CustomerInfo:
        if self._store is None:
            raise PurchaseProviderError("No store bridge available for purchases", code="store_unavailable")

        try:
            fetch_token = await self._store.purchase(package.product_identifier)
        except PurchaseCancelledError:
            raise
        except PurchaseProviderError:
            raise
        except Exception as e:
            raise PurchaseProviderError(f"Store purchase failed: {e}", code="store_error")

        logger.info("Posting purchase receipt", extra={
            "app_user_id": self._app_user_id,
            "product_id": package.product_identifier,
        })
        data = await self._request("POST", "/receipts", json={
            "app_user_id": self._app_user_id,
            "fetch_token": fetch_token,
            "product_id": package.product_identifier,
            "price": package.price,
        })
        return self._to_customer_info(data)

    async def restore_purchases(self) -> CustomerInfo:
        if self._store is None:
            raise PurchaseProviderError("No store bridge available for restore", code="store_unavailable")

        tokens = await self._store.restorable_tokens()
        data: Optional[Dict[str, Any]] = None
        for token in tokens:
            data = await self._request("POST", "/receipts", json={
                "app_user_id": self._app_user_id,
                "fetch_token": token,
                "is_restore": True,
            })
        if data is None:
            return await self.get_customer_info()
        return self._to_customer_info(data)

    async def get_offerings(self) -> Offerings:
        data = await self._request("GET", f"{self._subscriber_path()}/offerings")
        parsed = OfferingsResponse.model_validate(data)

        offerings: Dict[str, Offering] = {}
        for payload in parsed.offerings:
            offerings[payload.identifier] = Offering(
                identifier=payload.identifier,
                description=payload.description,
                packages=[
                    PackageInfo(
                        identifier=p.identifier,
                        product_identifier=p.platform_product_identifier,
                        package_type=package_type_for(p.identifier),
                        raw=p,
                    )
                    for p in payload.packages
                ],
            )
        return Offerings(all=offerings, current_offering_id=parsed.current_offering_id)


def get_revenuecat_client(
    platform: Platform,
    store: Optional[StoreBridge] = None,
    config=None,
) -> RevenueCatClient:
    """
    Factory function to create a RevenueCatClient from PurchaseConfig.

    The client is returned unconfigured; IdentityBinder configures it once
    with the platform key.
    """
    if config is None:
        from src.config.purchase_config import get_purchase_config
        config = get_purchase_config()
    return RevenueCatClient(
        platform=platform,
        store=store,
        base_url=config.revenuecat_base_url,
        timeout_seconds=config.request_timeout_seconds,
    )
