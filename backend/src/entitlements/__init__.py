"""
Entitlement / access-tier engine for the library app.

This module provides:
- EntitlementService: Single entry point; owns derived access state
- EntitlementSnapshotFetcher: Single-flight, generation-guarded entitlement refresh
- IdentityBinder: Binds the purchase-provider identity to the organization
- AccessPolicyEvaluator: Pure isPro / isBlocked / expiry derivation
- PaywallController: Hidden / voluntary / blocking paywall state machine
- PurchaseFlow: Purchase, restore and offering selection
- EntitlementAuditLogger: Paywall analytics events

Access rule: isPro = entitlement OR backend-active OR trial
Blocking rule: signed in AND NOT isPro AND NOT loading
"""

from src.entitlements.models import (
    AccountRecord,
    AuthSession,
    AuthState,
    CustomerInfo,
    DerivedAccessState,
    EntitlementSnapshot,
    ExpiryFacts,
    FlowStatus,
    OfferingSelection,
    PackageInfo,
    PaywallState,
    Platform,
    PurchaseResult,
    RestoreResult,
    SubscriptionStatus,
)
from src.entitlements.errors import (
    AccountFetchError,
    EntitlementError,
    ProviderNotConfiguredError,
    PurchaseCancelledError,
    PurchaseProviderError,
)
from src.entitlements.expiry import compute_expiry, format_trial_countdown
from src.entitlements.policy import AccessPolicyEvaluator, evaluate_access, is_db_active
from src.entitlements.fetcher import EntitlementSnapshotFetcher
from src.entitlements.identity import IdentityBinder
from src.entitlements.paywall import PaywallController
from src.entitlements.purchase import PurchaseFlow
from src.entitlements.audit import EntitlementAuditLogger, PaywallEvent
from src.entitlements.service import EntitlementService

__all__ = [
    "EntitlementService",
    "EntitlementSnapshotFetcher",
    "IdentityBinder",
    "AccessPolicyEvaluator",
    "evaluate_access",
    "is_db_active",
    "compute_expiry",
    "format_trial_countdown",
    "PaywallController",
    "PurchaseFlow",
    "EntitlementAuditLogger",
    "PaywallEvent",
    # Models
    "AccountRecord",
    "AuthSession",
    "AuthState",
    "CustomerInfo",
    "DerivedAccessState",
    "EntitlementSnapshot",
    "ExpiryFacts",
    "FlowStatus",
    "OfferingSelection",
    "PackageInfo",
    "PaywallState",
    "Platform",
    "PurchaseResult",
    "RestoreResult",
    "SubscriptionStatus",
    # Errors
    "EntitlementError",
    "PurchaseProviderError",
    "PurchaseCancelledError",
    "ProviderNotConfiguredError",
    "AccountFetchError",
]
