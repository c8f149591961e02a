"""Host event bus and the event names markerpath emits on it.

Events:
    workerReady: Worker finished its init handshake. Payload: {}.
    markerFound / markerUpdated: MarkerEvent with pose, confidence, corners.
    markerLost: MarkerEvent with id and timestamp only.
    workerError: {"message": str} describing a worker-side failure.
    getMarker: Filtered raw engine event, in its wire shape.

Example:
    >>> bus = EventBus()
    >>> bus.on(MARKER_FOUND, lambda event: print("found", event.id))
    >>> bus.emit(MARKER_FOUND, event)
"""

import logging
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

WORKER_READY = "workerReady"
MARKER_FOUND = "markerFound"
MARKER_UPDATED = "markerUpdated"
MARKER_LOST = "markerLost"
WORKER_ERROR = "workerError"
GET_MARKER = "getMarker"

Handler = Callable[[Any], None]


class EventBus:
    """Minimal publish/subscribe bus.

    Handlers run synchronously on the emitting thread. A failing handler is
    logged and does not stop delivery to the remaining handlers.
    """

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._lock = threading.Lock()

    def on(self, event: str, handler: Handler) -> None:
        with self._lock:
            self._handlers[event].append(handler)

    def off(self, event: str, handler: Handler) -> None:
        with self._lock:
            handlers = self._handlers.get(event)
            if handlers and handler in handlers:
                handlers.remove(handler)

    def emit(self, event: str, payload: Any = None) -> None:
        with self._lock:
            handlers = list(self._handlers.get(event, ()))

        for handler in handlers:
            try:
                handler(payload)
            except Exception as e:
                logger.error(f"Handler for '{event}' failed: {e}")

    def handler_count(self, event: str) -> int:
        with self._lock:
            return len(self._handlers.get(event, ()))


__all__ = [
    "WORKER_READY",
    "MARKER_FOUND",
    "MARKER_UPDATED",
    "MARKER_LOST",
    "WORKER_ERROR",
    "GET_MARKER",
    "EventBus",
]
