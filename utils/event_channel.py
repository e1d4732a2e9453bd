import logging
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List

log = logging.getLogger(__name__)

Subscriber = Callable[[str, Dict[str, Any]], None]

# Subscribing to "*" receives every event.
ALL_EVENTS = "*"


class EventChannel:
    """Thread-safe publish/subscribe channel for session state changes."""

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: Dict[str, List[Subscriber]] = defaultdict(list)

    def subscribe(self, event: str, callback: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers[event].append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers.get(event, []):
                    self._subscribers[event].remove(callback)

        return unsubscribe

    def publish(self, event: str, **payload: Any) -> int:
        with self._lock:
            targets = list(self._subscribers.get(event, [])) + list(self._subscribers.get(ALL_EVENTS, []))

        delivered = 0
        for callback in targets:
            try:
                callback(event, payload)
                delivered += 1
            except Exception as e:
                # One broken subscriber must not starve the others.
                log.error(f"Subscriber failed for event {event}: {e}", exc_info=True)
        return delivered

    def clear(self) -> None:
        with self._lock:
            self._subscribers.clear()
