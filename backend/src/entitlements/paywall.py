"""
Paywall presentation controller.

Small Moore machine over (isBlocked, last explicit open/close action):

    Hidden          → VoluntaryShown   open() while not blocked
    Hidden/Voluntary → BlockingShown   sync() reports isBlocked
    VoluntaryShown  → Hidden           close() while not blocked
    BlockingShown   → Hidden           purchase/restore makes isPro true
    BlockingShown   → Hidden           switch_account() (always allowed)

isBlocked always wins over a prior close. A blocking paywall is held while
a purchase/restore is loading, so it cannot flicker away and back.
"""

import logging
from typing import Callable, List, Optional

from src.entitlements.models import DerivedAccessState, PaywallState

logger = logging.getLogger(__name__)

PaywallListener = Callable[[PaywallState, PaywallState], None]


class PaywallController:
    """Owns PaywallState. Created at app start as HIDDEN."""

    def __init__(self):
        self._state = PaywallState.HIDDEN
        self._is_blocked = False
        self._listeners: List[PaywallListener] = []

    @property
    def state(self) -> PaywallState:
        return self._state

    @property
    def visible(self) -> bool:
        return self._state != PaywallState.HIDDEN

    @property
    def is_blocked(self) -> bool:
        return self._is_blocked

    @property
    def can_close(self) -> bool:
        """The close affordance renders only when not blocked."""
        return self._state == PaywallState.VOLUNTARY_SHOWN and not self._is_blocked

    @property
    def can_switch_account(self) -> bool:
        return self._state == PaywallState.BLOCKING_SHOWN

    def add_listener(self, listener: PaywallListener) -> None:
        """Listener receives (previous_state, new_state) on every transition."""
        self._listeners.append(listener)

    def _transition(self, new_state: PaywallState, trigger: str) -> None:
        previous = self._state
        if previous == new_state:
            return
        self._state = new_state
        logger.info("Paywall transition", extra={
            "from_state": previous.value,
            "to_state": new_state.value,
            "trigger": trigger,
        })
        for listener in list(self._listeners):
            listener(previous, new_state)

    # ------------------------------------------------------------------
    # Automatic input
    # ------------------------------------------------------------------

    def sync(self, access: DerivedAccessState) -> PaywallState:
        """Apply the latest access decision."""
        self._is_blocked = access.is_blocked

        if access.is_blocked:
            self._transition(PaywallState.BLOCKING_SHOWN, "blocked")
        elif self._state == PaywallState.BLOCKING_SHOWN:
            if access.is_loading and not access.is_pro:
                return self._state
            self._transition(PaywallState.HIDDEN, "unblocked")
        return self._state

    # ------------------------------------------------------------------
    # Explicit actions
    # ------------------------------------------------------------------

    def open(self) -> bool:
        """User asked for the paywall (e.g. tapped Upgrade)."""
        if self._is_blocked or self._state == PaywallState.BLOCKING_SHOWN:
            return False
        self._transition(PaywallState.VOLUNTARY_SHOWN, "open")
        return True

    def close(self) -> bool:
        """User closed the paywall. Rejected while blocked."""
        if self._is_blocked or self._state == PaywallState.BLOCKING_SHOWN:
            logger.warning("Paywall close rejected while blocked")
            return False
        self._transition(PaywallState.HIDDEN, "close")
        return True

    def purchase_succeeded(self, access: Optional[DerivedAccessState] = None) -> PaywallState:
        """
        Purchase/restore granted access.

        If an access decision is passed it must no longer be blocking.
        """
        if access is not None:
            self._is_blocked = access.is_blocked
        if self._is_blocked:
            return self._state
        self._transition(PaywallState.HIDDEN, "purchase_success")
        return self._state

    def switch_account(self) -> PaywallState:
        """Blocked users may always sign out to escape the paywall."""
        self._is_blocked = False
        self._transition(PaywallState.HIDDEN, "switch_account")
        return self._state
