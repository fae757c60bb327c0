"""
Purchase and restore flows.

Side-effecting operations that replace the entitlement snapshot and report
an outcome. Provider errors are caught here; nothing propagates into the
paywall controller.

purchase(package):
- success: snapshot replaced straight from the returned customer info
  (no separate refresh); SUCCESS if the target entitlement is active
- user cancelled: CANCELLED, no state change, no error surfaced
- other failure: FAILED with a message for the caller, no state change

restore():
- sets a transient "restoring" flag while the provider call is pending
- success: snapshot replaced from the result
- failure: flag cleared, snapshot untouched
"""

import logging
from typing import TYPE_CHECKING, Callable, List, Optional

from src.entitlements import audit
from src.entitlements.audit import EntitlementAuditLogger, get_audit_logger
from src.entitlements.errors import is_user_cancelled
from src.entitlements.fetcher import EntitlementSnapshotFetcher
from src.entitlements.models import (
    FlowStatus,
    Offering,
    OfferingSelection,
    PackageInfo,
    PurchaseResult,
    RestoreResult,
)

if TYPE_CHECKING:
    from src.integrations.revenuecat.provider import PurchaseProvider

logger = logging.getLogger(__name__)

PURCHASE_FAILED_MESSAGE = "Failed to process purchase. Please try again."
RESTORE_FAILED_MESSAGE = "Failed to restore purchases. Please try again."


class PurchaseFlow:
    """Purchase/restore operations against the provider."""

    def __init__(
        self,
        provider: "PurchaseProvider",
        fetcher: EntitlementSnapshotFetcher,
        audit_logger: Optional[EntitlementAuditLogger] = None,
        default_offering_id: str = "default",
        preferred_package_type: str = "ANNUAL",
    ):
        self._provider = provider
        self._fetcher = fetcher
        self._audit = audit_logger or get_audit_logger()
        self._default_offering_id = default_offering_id
        self._preferred_package_type = preferred_package_type
        self._purchasing = False
        self._restoring = False
        self._listeners: List[Callable[[], None]] = []

    @property
    def is_purchasing(self) -> bool:
        return self._purchasing

    @property
    def is_restoring(self) -> bool:
        return self._restoring

    def add_listener(self, listener: Callable[[], None]) -> None:
        """Called when the restoring flag flips."""
        self._listeners.append(listener)

    def _set_restoring(self, value: bool) -> None:
        if self._restoring == value:
            return
        self._restoring = value
        for listener in list(self._listeners):
            listener()

    # ------------------------------------------------------------------
    # Purchase
    # ------------------------------------------------------------------

    async def purchase(self, package: PackageInfo) -> PurchaseResult:
        """Purchase `package` and update the snapshot from the result."""
        if self._purchasing:
            return PurchaseResult(FlowStatus.IN_PROGRESS, package_id=package.identifier)

        organization_id = self._fetcher.organization_id
        generation = self._fetcher.generation
        event_fields = {
            "organization_id": organization_id,
            "package_id": package.identifier,
            "package_type": package.package_type,
            "price": package.price,
        }

        self._purchasing = True
        self._audit.record(audit.PURCHASE_BUTTON_CLICKED, **event_fields)
        try:
            info = await self._provider.purchase_package(package)
        except Exception as exc:
            if is_user_cancelled(exc):
                self._audit.record(audit.PURCHASE_CANCELLED, **event_fields)
                return PurchaseResult(FlowStatus.CANCELLED, package_id=package.identifier)
            logger.error("Purchase failed", extra={
                "organization_id": organization_id,
                "package_id": package.identifier,
                "product_id": package.product_identifier,
                "error": str(exc),
            })
            self._audit.record(audit.PURCHASE_FAILED, error=str(exc), **event_fields)
            return PurchaseResult(
                FlowStatus.FAILED,
                package_id=package.identifier,
                error=PURCHASE_FAILED_MESSAGE,
            )
        finally:
            self._purchasing = False

        snapshot = self._fetcher.apply_customer_info(info, generation, source="purchase")
        if snapshot is None or not snapshot.has_active_entitlement:
            logger.info("Purchase completed without target entitlement", extra={
                "organization_id": organization_id,
                "package_id": package.identifier,
            })
            return PurchaseResult(FlowStatus.NOT_ENTITLED, package_id=package.identifier)

        self._audit.record(audit.SUBSCRIPTION_PURCHASED, **event_fields)
        logger.info("Purchase succeeded", extra={
            "organization_id": organization_id,
            "package_id": package.identifier,
        })
        return PurchaseResult(FlowStatus.SUCCESS, package_id=package.identifier)

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    async def restore(self) -> RestoreResult:
        """Restore purchases and replace the snapshot from the result."""
        if self._restoring:
            return RestoreResult(FlowStatus.IN_PROGRESS)

        organization_id = self._fetcher.organization_id
        generation = self._fetcher.generation

        self._set_restoring(True)
        try:
            info = await self._provider.restore_purchases()
        except Exception as exc:
            logger.error("Restore purchases failed", extra={
                "organization_id": organization_id,
                "error": str(exc),
            })
            self._audit.record(audit.RESTORE_FAILED, organization_id=organization_id, error=str(exc))
            self._set_restoring(False)
            return RestoreResult(FlowStatus.FAILED, error=RESTORE_FAILED_MESSAGE)

        snapshot = self._fetcher.apply_customer_info(info, generation, source="restore")
        self._set_restoring(False)

        entitled = bool(snapshot and snapshot.has_active_entitlement)
        self._audit.record(
            audit.RESTORE_COMPLETED,
            organization_id=organization_id,
            properties={"entitled": entitled},
        )
        return RestoreResult(FlowStatus.SUCCESS if entitled else FlowStatus.NOT_ENTITLED)

    # ------------------------------------------------------------------
    # Offerings
    # ------------------------------------------------------------------

    async def load_offerings(self) -> OfferingSelection:
        """
        Offering for the paywall with a preselected package.

        Prefers the configured offering id, then the provider's current
        offering; preselects the preferred package type, then the first
        package. Failures yield an empty selection.
        """
        try:
            offerings = await self._provider.get_offerings()
        except Exception as exc:
            logger.warning("Failed to load offerings", extra={"error": str(exc)})
            return OfferingSelection()

        offering: Optional[Offering] = offerings.all.get(self._default_offering_id) or offerings.current
        if offering is None or not offering.packages:
            return OfferingSelection(offering=offering)

        selected = next(
            (p for p in offering.packages if p.package_type == self._preferred_package_type),
            offering.packages[0],
        )
        return OfferingSelection(offering=offering, selected_package=selected)
