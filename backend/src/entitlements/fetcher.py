"""
Entitlement snapshot fetcher.

Owns the process-wide EntitlementSnapshot and is the only writer of it.

Guarantees:
- Refreshes wait for the provider to report itself configured, polling at a
  fixed interval for a bounded number of attempts; on exhaustion the
  entitlement stays unknown (inactive) and nothing is raised.
- Single-flight: a refresh requested while one is pending awaits the pending
  one instead of issuing a second provider call.
- Bind generation: every identity rebind/unbind bumps a monotonic counter.
  Results carrying an older generation are discarded on arrival.
- Failures never propagate; the previous snapshot is kept and the next
  natural trigger (login, resume, restore) retries.
"""

import asyncio
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Awaitable, Callable, List, Optional

from src.entitlements.models import CustomerInfo, EntitlementSnapshot, utcnow

if TYPE_CHECKING:
    from src.integrations.revenuecat.provider import PurchaseProvider

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 0.5
DEFAULT_MAX_CONFIGURE_ATTEMPTS = 10


class EntitlementSnapshotFetcher:
    """
    Fetches and caches the entitlement snapshot for the bound identity.

    Listeners are called synchronously whenever the snapshot is replaced or
    the in-flight state changes, so derived state can be recomputed once per
    input change.
    """

    def __init__(
        self,
        provider: "PurchaseProvider",
        entitlement_id: str,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_configure_attempts: int = DEFAULT_MAX_CONFIGURE_ATTEMPTS,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if not entitlement_id:
            raise ValueError("entitlement_id is required")
        if max_configure_attempts < 1:
            raise ValueError("max_configure_attempts must be >= 1")

        self._provider = provider
        self._entitlement_id = entitlement_id
        self._poll_interval = poll_interval_seconds
        self._max_attempts = max_configure_attempts
        self._clock = clock
        self._sleep = sleep

        self._snapshot = EntitlementSnapshot.unknown()
        self._generation = 0
        self._organization_id: Optional[str] = None
        self._identity_ready = False
        self._binding = False
        self._inflight: Optional["asyncio.Task[EntitlementSnapshot]"] = None
        self._listeners: List[Callable[[], None]] = []

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> EntitlementSnapshot:
        return self._snapshot

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def organization_id(self) -> Optional[str]:
        return self._organization_id

    @property
    def identity_ready(self) -> bool:
        return self._identity_ready

    @property
    def is_refreshing(self) -> bool:
        return self._inflight is not None

    @property
    def is_loading(self) -> bool:
        """A bind or a refresh is pending; the entitlement is not settled."""
        return self._binding or self._inflight is not None

    @property
    def entitlement_id(self) -> str:
        return self._entitlement_id

    def add_listener(self, listener: Callable[[], None]) -> None:
        self._listeners.append(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener()

    # ------------------------------------------------------------------
    # Identity generations
    # ------------------------------------------------------------------

    def begin_identity(self, organization_id: str) -> int:
        """
        Start binding to `organization_id`.

        Bumps the generation so in-flight results for the previous identity
        are discarded. A snapshot belonging to another organization is reset.
        Refreshes are deferred until mark_identity_ready().
        """
        self._generation += 1
        self._organization_id = organization_id
        self._identity_ready = False
        self._binding = True
        self._inflight = None
        if self._snapshot.organization_id != organization_id:
            self._snapshot = EntitlementSnapshot.unknown()
        logger.debug("Identity bind started", extra={
            "organization_id": organization_id,
            "bind_generation": self._generation,
        })
        self._notify()
        return self._generation

    def mark_identity_ready(self, generation: int) -> bool:
        """Mark the bind for `generation` complete. Stale generations are ignored."""
        if generation != self._generation:
            logger.debug("Ignoring stale bind completion", extra={
                "bind_generation": generation,
                "current_generation": self._generation,
            })
            return False
        self._identity_ready = True
        self._binding = False
        return True

    def abandon_identity(self, generation: int) -> None:
        """The bind for `generation` failed; stop reporting it as loading."""
        if generation != self._generation:
            return
        self._binding = False
        self._notify()

    def reset(self) -> int:
        """
        Sign-out: drop the identity and reset the snapshot to unknown.

        Any in-flight refresh resolves into a discarded result.
        """
        self._generation += 1
        self._organization_id = None
        self._identity_ready = False
        self._binding = False
        self._inflight = None
        self._snapshot = EntitlementSnapshot.unknown()
        logger.info("Entitlement snapshot reset", extra={
            "bind_generation": self._generation,
        })
        self._notify()
        return self._generation

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh(self) -> EntitlementSnapshot:
        """
        Refresh the snapshot from the provider.

        Never raises for provider failures. Returns the current snapshot
        (replaced on success, untouched otherwise).
        """
        if not self._identity_ready:
            logger.debug("Entitlement refresh deferred until identity is bound", extra={
                "organization_id": self._organization_id,
                "bind_generation": self._generation,
            })
            return self._snapshot

        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._refresh(self._generation))
            self._notify()

        return await asyncio.shield(self._inflight)

    async def _refresh(self, generation: int) -> EntitlementSnapshot:
        try:
            return await self._fetch(generation)
        finally:
            if self._inflight is asyncio.current_task():
                self._inflight = None
                self._notify()

    async def _fetch(self, generation: int) -> EntitlementSnapshot:
        if not await self.wait_until_configured():
            logger.warning("Purchase provider not configured; entitlement treated as inactive", extra={
                "organization_id": self._organization_id,
                "attempts": self._max_attempts,
            })
            return self._snapshot

        if generation != self._generation:
            return self._snapshot

        try:
            info = await self._provider.get_customer_info()
        except Exception as exc:
            logger.warning("Entitlement refresh failed, keeping previous snapshot", extra={
                "organization_id": self._organization_id,
                "bind_generation": generation,
                "error": str(exc),
            })
            return self._snapshot

        self.apply_customer_info(info, generation, source="refresh")
        return self._snapshot

    async def wait_until_configured(self) -> bool:
        """Poll provider.is_configured() up to the configured attempt count."""
        for attempt in range(1, self._max_attempts + 1):
            try:
                if await self._provider.is_configured():
                    return True
            except Exception as exc:
                logger.debug("is_configured check failed", extra={
                    "attempt": attempt, "error": str(exc),
                })
            if attempt < self._max_attempts:
                await self._sleep(self._poll_interval)
        return False

    # ------------------------------------------------------------------
    # Snapshot replacement
    # ------------------------------------------------------------------

    def apply_customer_info(
        self,
        info: CustomerInfo,
        generation: int,
        source: str = "refresh",
    ) -> Optional[EntitlementSnapshot]:
        """
        Replace the snapshot wholesale from provider customer info.

        Returns the new snapshot, or None when `generation` is stale and the
        result was discarded.
        """
        if generation != self._generation:
            logger.debug("Discarding stale entitlement result", extra={
                "source": source,
                "bind_generation": generation,
                "current_generation": self._generation,
            })
            return None

        self._snapshot = EntitlementSnapshot.from_customer_info(
            info,
            self._entitlement_id,
            organization_id=self._organization_id,
            fetched_at=self._clock(),
        )
        logger.info("Entitlement snapshot replaced", extra={
            "source": source,
            "organization_id": self._organization_id,
            "has_active_entitlement": self._snapshot.has_active_entitlement,
            "bind_generation": generation,
        })
        self._notify()
        return self._snapshot
