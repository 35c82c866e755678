"""Billing event bus - decouples denials and payment outcomes from presentation.

The engine never opens dialogs or shows toasts. It emits events; the UI layer
(or the routes, which queue them for the next poll) decides how to present
them.
"""
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List
import logging

logger = logging.getLogger(__name__)


class BillingEvent(str, Enum):
    UPGRADE_REQUIRED = "upgrade_required"
    PAYMENT_CONFIRMED = "payment_confirmed"
    PAYMENT_EXPIRED = "payment_expired"
    SUBSCRIPTION_REFRESHED = "subscription_refreshed"


EventHandler = Callable[[BillingEvent, Dict[str, Any]], None]


class BillingEventBus:
    """Synchronous observer registry with a bounded backlog for polling clients."""

    def __init__(self, backlog_size: int = 50):
        self._handlers: Dict[BillingEvent, List[EventHandler]] = {}
        self._backlog: Deque[Dict[str, Any]] = deque(maxlen=backlog_size)

    def subscribe(self, event: BillingEvent, handler: EventHandler) -> Callable[[], None]:
        """Register a handler; returns a function that removes it."""
        self._handlers.setdefault(event, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(event, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def emit(self, event: BillingEvent, payload: Dict[str, Any]) -> None:
        self._backlog.append({
            "event": event.value,
            "payload": payload,
            "emitted_at": datetime.now(timezone.utc).isoformat(),
        })
        for handler in list(self._handlers.get(event, [])):
            try:
                handler(event, payload)
            except Exception as e:
                # One broken observer must not stop the others
                logger.exception(f"Billing event handler failed for {event.value}: {e}")

    def drain(self) -> List[Dict[str, Any]]:
        """Return and clear queued events (UI polling)."""
        events = list(self._backlog)
        self._backlog.clear()
        return events

    def clear(self) -> None:
        self._handlers.clear()
        self._backlog.clear()
