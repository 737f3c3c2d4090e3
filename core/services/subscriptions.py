import logging
from collections import defaultdict
from typing import Callable

logger = logging.getLogger(__name__)

Listener = Callable[..., object]


class SubscriptionRegistry:
    """
    Event listeners owned by one reconciliation session.

    Subscribing the same listener twice to an event is a no-op. Notification
    is best-effort: a failing listener is logged and the remaining listeners
    still run.
    """

    def __init__(self):
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    def subscribe(self, event: str, listener: Listener) -> Callable[[], None]:
        listeners = self._listeners[event]
        if listener not in listeners:
            listeners.append(listener)

        def unsubscribe():
            self.unsubscribe(event, listener)

        return unsubscribe

    def unsubscribe(self, event: str, listener: Listener) -> None:
        listeners = self._listeners.get(event)
        if listeners and listener in listeners:
            listeners.remove(listener)

    def listeners(self, event: str) -> list[Listener]:
        return list(self._listeners.get(event, ()))

    def notify(self, event: str, **payload) -> int:
        delivered = 0
        for listener in self.listeners(event):
            try:
                listener(**payload)
            except Exception:
                logger.exception("reconciliation.listener_failed event=%s", event)
                continue
            delivered += 1
        return delivered

    def clear(self) -> None:
        self._listeners.clear()
