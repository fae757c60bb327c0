"""
Entitlement models: canonical types for access-tier resolution.

Provides:
- SubscriptionStatus / AuthState / PaywallState: canonical enums
- AccountRecord: backend account fields consumed (read-only) by the engine
- CustomerInfo / EntitlementGrant: typed view of the provider's customer info
- PackageInfo / Offering: typed view of the provider's purchasable packages
- EntitlementSnapshot: in-memory entitlement state from the purchase provider
- ExpiryFacts / DerivedAccessState: computed projections, never persisted
- PurchaseResult / RestoreResult: outcomes of side-effecting flows

Provider payloads are opaque at the boundary. Only the fields listed here
are extracted; the raw object rides along untouched in `raw`.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Accepts datetime, ISO-8601 string (with or without 'Z'), or None.

    Naive values are assumed to be UTC. Unparseable values return None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            logger.debug("Unparseable timestamp ignored", extra={"value": str(value)})
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# ---------------------------------------------------------------------------
# Canonical enums
# ---------------------------------------------------------------------------

class SubscriptionStatus(str, Enum):
    """Subscription status as recorded by the backend."""
    ACTIVE = "Active"
    INACTIVE = "Inactive"
    CANCELLED = "Cancelled"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["SubscriptionStatus"]:
        """
        Normalize a backend status value.

        Older backends also emit 'Expired', 'Trialing' and 'None'.
        Expired maps to INACTIVE; anything else unknown maps to None
        (trial access is judged from trialEndDate, not from the status).
        """
        if value is None:
            return None
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower()
        for member in cls:
            if member.value.lower() == normalized:
                return member
        if normalized in ("canceled",):
            return cls.CANCELLED
        if normalized == "expired":
            return cls.INACTIVE
        return None


class AuthState(str, Enum):
    """Auth session state as seen by the engine."""
    SIGNED_OUT = "signed_out"
    SIGNED_IN = "signed_in"


class PaywallState(str, Enum):
    """Paywall presentation state."""
    HIDDEN = "hidden"
    VOLUNTARY_SHOWN = "voluntary_shown"
    BLOCKING_SHOWN = "blocking_shown"


class Platform(str, Enum):
    IOS = "ios"
    ANDROID = "android"
    WEB = "web"


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AuthSession:
    """
    Auth session snapshot.

    A token without an organization id means the profile is still loading;
    identity binding is deferred until the id arrives.
    """
    token: Optional[str] = None
    organization_id: Optional[str] = None

    @property
    def state(self) -> AuthState:
        return AuthState.SIGNED_IN if self.token else AuthState.SIGNED_OUT

    @property
    def is_signed_in(self) -> bool:
        return self.state == AuthState.SIGNED_IN

    @classmethod
    def signed_out(cls) -> "AuthSession":
        return cls()


@dataclass(frozen=True)
class AccountRecord:
    """
    Backend account record (read-only here).

    These fields may be stale relative to the purchase provider; neither
    source is authoritative alone.
    """
    organization_id: Optional[str] = None
    subscription_status: Optional[SubscriptionStatus] = None
    subscription_end_date: Optional[datetime] = None
    trial_end_date: Optional[datetime] = None

    @classmethod
    def empty(cls) -> "AccountRecord":
        return cls()


@dataclass(frozen=True)
class EntitlementGrant:
    """A single entitlement reported by the purchase provider."""
    identifier: str
    product_identifier: Optional[str] = None
    expires_at: Optional[datetime] = None
    purchased_at: Optional[datetime] = None

    def is_active(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return True
        return self.expires_at > (now or utcnow())


@dataclass(frozen=True)
class CustomerInfo:
    """Typed view of the provider's customer info payload."""
    app_user_id: Optional[str]
    active_entitlements: Dict[str, EntitlementGrant] = field(default_factory=dict)
    management_url: Optional[str] = None
    request_date: Optional[datetime] = None
    raw: Any = field(default=None, compare=False, repr=False)

    def has_entitlement(self, entitlement_id: str) -> bool:
        return entitlement_id in self.active_entitlements


@dataclass(frozen=True)
class PackageInfo:
    """Purchasable package extracted from the provider's offering."""
    identifier: str
    product_identifier: str
    package_type: Optional[str] = None
    price: Optional[float] = None
    price_string: Optional[str] = None
    raw: Any = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class Offering:
    identifier: str
    packages: List[PackageInfo] = field(default_factory=list)
    description: Optional[str] = None


@dataclass(frozen=True)
class Offerings:
    """All offerings known to the provider, keyed by identifier."""
    all: Dict[str, Offering] = field(default_factory=dict)
    current_offering_id: Optional[str] = None

    @property
    def current(self) -> Optional[Offering]:
        if self.current_offering_id is None:
            return None
        return self.all.get(self.current_offering_id)


@dataclass(frozen=True)
class OfferingSelection:
    """Offering shown on the paywall plus the preselected package."""
    offering: Optional[Offering] = None
    selected_package: Optional[PackageInfo] = None

    @property
    def packages(self) -> List[PackageInfo]:
        return list(self.offering.packages) if self.offering else []


# ---------------------------------------------------------------------------
# Entitlement snapshot
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EntitlementSnapshot:
    """
    Entitlement state from the purchase provider, cached in memory only.

    Replaced wholesale on every refresh, purchase or restore; reset to
    unknown on identity unbind. `fetched_at` is None while unknown.
    """
    has_active_entitlement: bool = False
    fetched_at: Optional[datetime] = None
    organization_id: Optional[str] = None
    raw: Any = field(default=None, compare=False, repr=False)

    @property
    def is_known(self) -> bool:
        return self.fetched_at is not None

    @classmethod
    def unknown(cls) -> "EntitlementSnapshot":
        return cls()

    @classmethod
    def from_customer_info(
        cls,
        info: CustomerInfo,
        entitlement_id: str,
        organization_id: Optional[str],
        fetched_at: Optional[datetime] = None,
    ) -> "EntitlementSnapshot":
        return cls(
            has_active_entitlement=info.has_entitlement(entitlement_id),
            fetched_at=fetched_at or utcnow(),
            organization_id=organization_id,
            raw=info,
        )


# ---------------------------------------------------------------------------
# Derived projections
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ExpiryFacts:
    """Trial/expiry facts derived from an AccountRecord at a point in time."""
    is_trial_active: bool = False
    is_expiring_soon: bool = False
    days_remaining_text: Optional[str] = None
    expires_at: Optional[datetime] = None
    subscription_elapsed: bool = False

    @property
    def expires_at_iso(self) -> Optional[str]:
        return self.expires_at.isoformat() if self.expires_at else None


@dataclass(frozen=True)
class DerivedAccessState:
    """
    Normalized access decision. Always a pure projection of the inputs.
    """
    is_pro: bool = False
    is_trial_active: bool = False
    is_expiring_soon: bool = False
    days_remaining_text: Optional[str] = None
    expires_at_iso: Optional[str] = None
    is_blocked: bool = False
    is_loading: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isPro": self.is_pro,
            "isLoading": self.is_loading,
            "isBlocked": self.is_blocked,
            "isTrialActive": self.is_trial_active,
            "isExpiringSoon": self.is_expiring_soon,
            "daysRemainingText": self.days_remaining_text,
            "expiresAtIso": self.expires_at_iso,
        }


# ---------------------------------------------------------------------------
# Flow results
# ---------------------------------------------------------------------------

class FlowStatus(str, Enum):
    SUCCESS = "success"
    NOT_ENTITLED = "not_entitled"
    CANCELLED = "cancelled"
    FAILED = "failed"
    IN_PROGRESS = "in_progress"


@dataclass(frozen=True)
class PurchaseResult:
    """Outcome of a purchase. `error` is set only for user-visible failures."""
    status: FlowStatus
    package_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == FlowStatus.SUCCESS


@dataclass(frozen=True)
class RestoreResult:
    status: FlowStatus
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status in (FlowStatus.SUCCESS, FlowStatus.NOT_ENTITLED)

    @property
    def entitled(self) -> bool:
        return self.status == FlowStatus.SUCCESS
