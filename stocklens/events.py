"""
StockLens - Change Notification Bus

PURPOSE: In-process publish/subscribe so other screens can refresh after data changes
SCOPE: Topic subscriptions with per-listener error isolation
DEPENDENCIES: logging
"""

import logging
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

RECEIPTS_CHANGED = 'receipts-changed'
HISTORICAL_UPDATED = 'historical-updated'

Listener = Callable[[Any], None]


class EventBus:
    """Best-effort, fire-and-forget event delivery."""

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = {}

    def subscribe(self, topic: str, listener: Listener) -> Callable[[], None]:
        """Register a listener and return a function that removes it."""
        self._listeners.setdefault(topic, []).append(listener)

        def unsubscribe() -> None:
            listeners = self._listeners.get(topic)
            if listeners and listener in listeners:
                listeners.remove(listener)
                if not listeners:
                    del self._listeners[topic]

        return unsubscribe

    def publish(self, topic: str, payload: Any = None) -> int:
        """Deliver payload to every listener of topic. Returns how many succeeded."""
        delivered = 0
        for listener in list(self._listeners.get(topic, [])):
            try:
                listener(payload)
                delivered += 1
            except Exception as e:
                logger.error(f"Event listener error on '{topic}': {e}")
        return delivered

    def listener_count(self, topic: str) -> int:
        return len(self._listeners.get(topic, []))
