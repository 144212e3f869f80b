"""In-process publish/subscribe for order events.

Handlers run synchronously in the publisher's thread. A failing handler is
logged and does not stop the others or the publisher.
"""
import logging
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

ORDER_CREATED = "order.created"
ORDER_STATUS_CHANGED = "order.status_changed"
ORDER_PAYMENT_RECORDED = "order.payment_recorded"

Handler = Callable[[str, Dict[str, Any]], None]


class EventBus:
    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event: str, handler: Handler) -> Callable[[], None]:
        """Register ``handler`` for ``event``; returns a function that unsubscribes it."""
        with self._lock:
            self._handlers[event].append(handler)

        def unsubscribe():
            with self._lock:
                if handler in self._handlers[event]:
                    self._handlers[event].remove(handler)

        return unsubscribe

    def publish(self, event: str, payload: Dict[str, Any]) -> int:
        with self._lock:
            handlers = list(self._handlers.get(event, ()))
        delivered = 0
        for handler in handlers:
            try:
                handler(event, payload)
                delivered += 1
            except Exception:
                logger.exception("Event handler %r failed for %s", handler, event)
        return delivered


bus = EventBus()
