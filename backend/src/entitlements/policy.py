"""
Access policy evaluation.

Combines the provider entitlement snapshot and the backend account record
into one normalized DerivedAccessState.

Resolution (logical OR, permissive on purpose):
    isPro = entitlement active OR backend subscription active OR trial active

Blocking:
    isBlocked = signed in AND NOT isPro AND NOT isLoading

While anything is still loading the account is never blocked.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from src.entitlements.expiry import DEFAULT_EXPIRING_SOON_DAYS, compute_expiry
from src.entitlements.models import (
    AccountRecord,
    AuthState,
    DerivedAccessState,
    EntitlementSnapshot,
    SubscriptionStatus,
    utcnow,
)

logger = logging.getLogger(__name__)


def is_db_active(account: Optional[AccountRecord], now: datetime) -> bool:
    """
    Backend subscription check.

    An end date at or before `now` always wins over an "Active" status.
    """
    if account is None or account.subscription_status != SubscriptionStatus.ACTIVE:
        return False
    end = account.subscription_end_date
    return not (end is not None and end <= now)


class AccessPolicyEvaluator:
    """
    Evaluates the access decision for the signed-in account.

    Stateless apart from the injected clock and thresholds.
    """

    def __init__(
        self,
        clock: Callable[[], datetime] = utcnow,
        expiring_soon_days: int = DEFAULT_EXPIRING_SOON_DAYS,
    ):
        self._clock = clock
        self._expiring_soon_days = expiring_soon_days

    def evaluate(
        self,
        account: Optional[AccountRecord],
        entitlement: Optional[EntitlementSnapshot],
        auth_state: AuthState,
        profile_loading: bool = False,
        entitlement_loading: bool = False,
        now: Optional[datetime] = None,
    ) -> DerivedAccessState:
        """
        Compute the access decision.

        Args:
            account: Backend account record (None while not loaded)
            entitlement: Current entitlement snapshot (None means unknown)
            auth_state: Current auth state
            profile_loading: Account/profile fetch in flight
            entitlement_loading: Entitlement refresh or restore in flight
            now: Override for the injected clock

        Returns:
            DerivedAccessState
        """
        now = now or self._clock()
        expiry = compute_expiry(account, now, self._expiring_soon_days)

        has_entitlement = bool(entitlement and entitlement.has_active_entitlement)
        db_active = is_db_active(account, now)
        is_pro = has_entitlement or db_active or expiry.is_trial_active

        is_loading = bool(entitlement_loading or profile_loading)
        is_blocked = auth_state == AuthState.SIGNED_IN and not is_pro and not is_loading

        return DerivedAccessState(
            is_pro=is_pro,
            is_trial_active=expiry.is_trial_active,
            is_expiring_soon=expiry.is_expiring_soon,
            days_remaining_text=expiry.days_remaining_text,
            expires_at_iso=expiry.expires_at_iso,
            is_blocked=is_blocked,
            is_loading=is_loading,
        )


def evaluate_access(
    account: Optional[AccountRecord],
    entitlement: Optional[EntitlementSnapshot],
    auth_state: AuthState,
    profile_loading: bool = False,
    entitlement_loading: bool = False,
    now: Optional[datetime] = None,
) -> DerivedAccessState:
    """Module-level convenience using the default clock and thresholds."""
    return AccessPolicyEvaluator().evaluate(
        account,
        entitlement,
        auth_state,
        profile_loading=profile_loading,
        entitlement_loading=entitlement_loading,
        now=now,
    )
