"""
Paywall audit/analytics events.

Provides:
- PaywallEvent: Structured event for paywall and purchase activity
- EntitlementAuditLogger: Writes events as JSON lines to the
  "entitlements.audit" logger and keeps a bounded in-memory history

Event names:
- paywall_viewed (is_blocked)
- purchase_button_clicked / subscription_purchased
- purchase_cancelled / purchase_failed
- restore_completed / restore_failed
"""

import json
import logging
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)

audit_logger = logging.getLogger("entitlements.audit")

PAYWALL_VIEWED = "paywall_viewed"
PURCHASE_BUTTON_CLICKED = "purchase_button_clicked"
SUBSCRIPTION_PURCHASED = "subscription_purchased"
PURCHASE_CANCELLED = "purchase_cancelled"
PURCHASE_FAILED = "purchase_failed"
RESTORE_COMPLETED = "restore_completed"
RESTORE_FAILED = "restore_failed"

DEFAULT_HISTORY_SIZE = 500


@dataclass
class PaywallEvent:
    """Structured paywall/purchase event."""

    event_name: str
    organization_id: Optional[str] = None
    package_id: Optional[str] = None
    package_type: Optional[str] = None
    price: Optional[float] = None
    error: Optional[str] = None
    properties: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class EntitlementAuditLogger:
    """
    Records paywall events.

    Logging failures are swallowed after a warning; analytics must never
    break a purchase flow.
    """

    def __init__(self, history_size: int = DEFAULT_HISTORY_SIZE):
        self._history: Deque[PaywallEvent] = deque(maxlen=history_size)
        self._lock = Lock()

    def log_event(self, event: PaywallEvent) -> None:
        with self._lock:
            self._history.append(event)
        try:
            audit_logger.info(event.to_json())
        except Exception as exc:
            logger.warning("Failed to write paywall event", extra={
                "event_name": event.event_name, "error": str(exc),
            })

    def record(self, event_name: str, **kwargs: Any) -> PaywallEvent:
        """Build and log an event in one call."""
        event = PaywallEvent(event_name=event_name, **kwargs)
        self.log_event(event)
        return event

    def recent_events(self, event_name: Optional[str] = None) -> List[PaywallEvent]:
        with self._lock:
            events = list(self._history)
        if event_name is None:
            return events
        return [e for e in events if e.event_name == event_name]

    def clear(self) -> None:
        with self._lock:
            self._history.clear()


_audit_logger: Optional[EntitlementAuditLogger] = None
_audit_logger_lock = Lock()


def get_audit_logger() -> EntitlementAuditLogger:
    """Process-wide default audit logger."""
    global _audit_logger
    if _audit_logger is None:
        with _audit_logger_lock:
            if _audit_logger is None:
                _audit_logger = EntitlementAuditLogger()
    return _audit_logger
