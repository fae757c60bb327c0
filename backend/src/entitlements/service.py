"""
Entitlement Service: single entry point for the access-tier engine.

Provides:
- on_auth_changed / set_account / set_profile_loading: named input triggers
- access_state: the one DerivedAccessState every reader observes
- present_paywall / close_paywall / switch_account: paywall actions
- purchase / restore_purchases / refresh_entitlement / load_offerings
- present_account_management: management URL for Pro accounts

Architecture:
- Explicit recompute: every input change (auth, account record, snapshot,
  loading flags) calls recompute() synchronously; the result is computed once
  and broadcast to subscribers only when it changed.
- Explicit construction: the UI layer receives this instance; nothing is
  looked up from ambient globals.
- The purchase provider is injected (see PurchaseProvider).
"""

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Awaitable, Callable, List, Optional

from src.entitlements import audit
from src.entitlements.audit import EntitlementAuditLogger, get_audit_logger
from src.entitlements.fetcher import EntitlementSnapshotFetcher
from src.entitlements.identity import IdentityBinder
from src.entitlements.models import (
    AccountRecord,
    AuthSession,
    DerivedAccessState,
    EntitlementSnapshot,
    OfferingSelection,
    PackageInfo,
    PaywallState,
    Platform,
    PurchaseResult,
    RestoreResult,
    utcnow,
)
from src.entitlements.paywall import PaywallController
from src.entitlements.policy import AccessPolicyEvaluator
from src.entitlements.purchase import PurchaseFlow

if TYPE_CHECKING:
    from src.config.purchase_config import PurchaseConfig
    from src.integrations.revenuecat.provider import PurchaseProvider

logger = logging.getLogger(__name__)

AccessListener = Callable[[DerivedAccessState], None]


class EntitlementService:
    """
    Access-tier engine.

    One instance per app process, constructed at startup and passed to the
    UI layer.
    """

    def __init__(
        self,
        provider: "PurchaseProvider",
        config: Optional["PurchaseConfig"] = None,
        platform: Platform = Platform.IOS,
        audit_logger: Optional[EntitlementAuditLogger] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        sign_out: Optional[Callable[[], None]] = None,
    ):
        """
        Args:
            provider: Purchase provider implementation
            config: PurchaseConfig (defaults to the loaded config)
            platform: Platform used to select the provider API key
            audit_logger: Paywall event logger
            clock: Current-time source (injectable for tests)
            sleep: Awaitable sleep used by the configuration poll
            sign_out: Auth-layer hook invoked by switch_account()
        """
        if config is None:
            from src.config.purchase_config import get_purchase_config
            config = get_purchase_config()

        self._config = config
        self._provider = provider
        self._audit = audit_logger or get_audit_logger()
        self._clock = clock
        self._sign_out = sign_out

        fetcher_kwargs = {}
        if sleep is not None:
            fetcher_kwargs["sleep"] = sleep
        self._fetcher = EntitlementSnapshotFetcher(
            provider,
            entitlement_id=config.entitlement_id,
            poll_interval_seconds=config.configure_poll_interval_seconds,
            max_configure_attempts=config.configure_max_attempts,
            clock=clock,
            **fetcher_kwargs,
        )
        self._binder = IdentityBinder(
            provider,
            self._fetcher,
            api_key=config.api_key_for_platform(platform),
        )
        self._evaluator = AccessPolicyEvaluator(
            clock=clock,
            expiring_soon_days=config.expiring_soon_days,
        )
        self._paywall = PaywallController()
        self._flow = PurchaseFlow(
            provider,
            self._fetcher,
            audit_logger=self._audit,
            default_offering_id=config.default_offering_id,
            preferred_package_type=config.preferred_package_type,
        )

        self._session = AuthSession.signed_out()
        self._account: Optional[AccountRecord] = None
        self._profile_loading = False
        self._listeners: List[AccessListener] = []

        self._fetcher.add_listener(self.recompute)
        self._flow.add_listener(self.recompute)
        self._paywall.add_listener(self._on_paywall_transition)

        self._state = self._evaluate()
        self._paywall.sync(self._state)

    # ------------------------------------------------------------------
    # Collaborators (read-only access for the UI layer and tests)
    # ------------------------------------------------------------------

    @property
    def fetcher(self) -> EntitlementSnapshotFetcher:
        return self._fetcher

    @property
    def binder(self) -> IdentityBinder:
        return self._binder

    @property
    def paywall(self) -> PaywallController:
        return self._paywall

    @property
    def purchases(self) -> PurchaseFlow:
        return self._flow

    # ------------------------------------------------------------------
    # Derived state
    # ------------------------------------------------------------------

    @property
    def access_state(self) -> DerivedAccessState:
        return self._state

    @property
    def snapshot(self) -> EntitlementSnapshot:
        return self._fetcher.snapshot

    @property
    def paywall_state(self) -> PaywallState:
        return self._paywall.state

    @property
    def is_pro(self) -> bool:
        return self._state.is_pro

    @property
    def is_loading(self) -> bool:
        return self._state.is_loading

    @property
    def is_blocked(self) -> bool:
        return self._state.is_blocked

    @property
    def is_trial_active(self) -> bool:
        return self._state.is_trial_active

    @property
    def is_expiring_soon(self) -> bool:
        return self._state.is_expiring_soon

    @property
    def days_remaining_text(self) -> Optional[str]:
        return self._state.days_remaining_text

    @property
    def expires_at_iso(self) -> Optional[str]:
        return self._state.expires_at_iso

    def subscribe(self, listener: AccessListener) -> Callable[[], None]:
        """
        Register a reader. Called with the current state immediately and
        then once per change. Returns an unsubscribe callable.
        """
        self._listeners.append(listener)
        listener(self._state)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _evaluate(self) -> DerivedAccessState:
        return self._evaluator.evaluate(
            self._account,
            self._fetcher.snapshot,
            self._session.state,
            profile_loading=self._profile_loading,
            entitlement_loading=self._fetcher.is_loading or self._flow.is_restoring,
        )

    def recompute(self) -> DerivedAccessState:
        """Recompute once, broadcast on change, then drive the paywall."""
        new_state = self._evaluate()
        changed = new_state != self._state
        self._state = new_state
        if changed:
            for listener in list(self._listeners):
                listener(new_state)
        self._paywall.sync(new_state)
        return new_state

    # ------------------------------------------------------------------
    # Input triggers
    # ------------------------------------------------------------------

    async def on_auth_changed(self, session: AuthSession) -> DerivedAccessState:
        """Auth state change: rebind identity, refresh, recompute."""
        self._session = session
        if not session.is_signed_in:
            self._account = None
            self._profile_loading = False
            if self._paywall.state == PaywallState.BLOCKING_SHOWN:
                self._paywall.switch_account()
            self.recompute()
        else:
            if (
                self._account is not None
                and self._account.organization_id
                and self._account.organization_id != session.organization_id
            ):
                self._account = None
            if not session.organization_id or self._account is None:
                # Profile not loaded yet for this session.
                self._profile_loading = True
        # The bind notifies the fetcher before its first await, so the
        # signed-in recompute already sees the entitlement as loading.
        await self._binder.on_auth_change(session)
        return self.recompute()

    async def set_account(self, account: Optional[AccountRecord]) -> DerivedAccessState:
        """
        Account record change (profile fetch completed).

        A signed-in session still waiting for its organization id takes it
        from the record and completes the deferred identity bind.
        """
        self._account = account
        self._profile_loading = False
        organization_id = account.organization_id if account is not None else None
        if (
            self._session.is_signed_in
            and not self._session.organization_id
            and organization_id
        ):
            self._session = AuthSession(token=self._session.token, organization_id=organization_id)
            logger.info("Organization id loaded, resuming identity bind", extra={
                "organization_id": organization_id,
            })
            # The bind notifies the fetcher before its first await, so no
            # recompute sees the profile loaded with the entitlement idle.
            await self._binder.on_auth_change(self._session)
        return self.recompute()

    def set_profile_loading(self, loading: bool) -> DerivedAccessState:
        self._profile_loading = loading
        return self.recompute()

    async def refresh_entitlement(self) -> DerivedAccessState:
        """Natural refresh trigger (app resume, pull-to-refresh)."""
        await self._fetcher.refresh()
        return self.recompute()

    # ------------------------------------------------------------------
    # Paywall actions
    # ------------------------------------------------------------------

    def present_paywall(self) -> bool:
        return self._paywall.open()

    def close_paywall(self) -> bool:
        return self._paywall.close()

    async def switch_account(self) -> DerivedAccessState:
        """Escape hatch for a blocked user: sign out without purchasing."""
        self._paywall.switch_account()
        if self._sign_out is not None:
            self._sign_out()
        return await self.on_auth_changed(AuthSession.signed_out())

    async def present_account_management(self) -> Optional[str]:
        """
        Pro accounts get the provider's management URL; everyone else is
        shown the paywall.
        """
        if not self._state.is_pro:
            self.present_paywall()
            return None
        try:
            return await self._provider.get_management_url()
        except Exception as exc:
            logger.warning("Failed to load management URL", extra={"error": str(exc)})
            return None

    # ------------------------------------------------------------------
    # Purchase / restore
    # ------------------------------------------------------------------

    async def purchase(self, package: PackageInfo) -> PurchaseResult:
        result = await self._flow.purchase(package)
        state = self.recompute()
        if result.success:
            self._paywall.purchase_succeeded(state)
        return result

    async def restore_purchases(self) -> RestoreResult:
        result = await self._flow.restore()
        state = self.recompute()
        if result.entitled:
            self._paywall.purchase_succeeded(state)
        return result

    async def load_offerings(self) -> OfferingSelection:
        return await self._flow.load_offerings()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _on_paywall_transition(self, previous: PaywallState, new_state: PaywallState) -> None:
        if new_state == PaywallState.HIDDEN:
            return
        self._audit.record(
            audit.PAYWALL_VIEWED,
            organization_id=self._session.organization_id,
            properties={"is_blocked": new_state == PaywallState.BLOCKING_SHOWN},
        )
