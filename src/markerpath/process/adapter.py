"""Worker-side detection engine adapter.

Owns engine initialization with single-flight semantics and exponential
backoff, and collects the engine's per-marker events into a bounded queue
that the frame pipeline drains once per frame.

Backoff schedule after consecutive failures: 1, 2, 4, 8, 16, 30, 30, ...
seconds (``min(max_sec, base_sec * 2 ** (failures - 1))`` with the failure
count capped). While a backoff window is open, ``ensure_initialized()``
returns False without touching the engine and without reporting anything.
"""

import logging
import threading
import time
from collections import deque
from concurrent.futures import Future
from typing import Callable, Deque, List, Optional

from markerpath.core.engine import DetectionEngine, check_engine
from markerpath.core.types import RawMarkerEvent
from markerpath.observability import ObservabilityHub
from markerpath.observability.records import InitAttemptRecord

logger = logging.getLogger(__name__)

DEFAULT_BACKOFF_BASE_SEC = 1.0
DEFAULT_BACKOFF_MAX_SEC = 30.0
DEFAULT_MAX_FAILURE_COUNT = 6
DEFAULT_EVENT_QUEUE_SIZE = 64


def backoff_delay(
    failure_count: int,
    base_sec: float = DEFAULT_BACKOFF_BASE_SEC,
    max_sec: float = DEFAULT_BACKOFF_MAX_SEC,
) -> float:
    """Delay before the next attempt after ``failure_count`` failures."""
    if failure_count <= 0:
        return 0.0
    return min(max_sec, base_sec * (2 ** (failure_count - 1)))


class EngineAdapter:
    """Initializes a DetectionEngine on demand and buffers its events.

    Args:
        engine: The detection engine. Checked against the contract.
        notify_error: Called with a message once per failed attempt.
        camera_parameters: Opaque camera parameter reference for the engine.
        backoff_base_sec: Delay after the first failure.
        backoff_max_sec: Upper bound of the delay.
        max_failure_count: Cap of the failure counter.
        event_queue_size: Capacity of the raw event queue; the oldest
            events are dropped when it is full.
        clock: Monotonic time source in seconds.
        observability_hub: Optional hub for InitAttemptRecords.

    Raises:
        EngineCapabilityError: If ``engine`` does not satisfy the contract.
    """

    def __init__(
        self,
        engine: DetectionEngine,
        notify_error: Optional[Callable[[str], None]] = None,
        camera_parameters: Optional[str] = None,
        backoff_base_sec: float = DEFAULT_BACKOFF_BASE_SEC,
        backoff_max_sec: float = DEFAULT_BACKOFF_MAX_SEC,
        max_failure_count: int = DEFAULT_MAX_FAILURE_COUNT,
        event_queue_size: int = DEFAULT_EVENT_QUEUE_SIZE,
        clock: Callable[[], float] = time.monotonic,
        observability_hub: Optional[ObservabilityHub] = None,
    ):
        check_engine(engine)

        self._engine = engine
        self._notify_error = notify_error
        self._camera_parameters = camera_parameters
        self._backoff_base_sec = backoff_base_sec
        self._backoff_max_sec = backoff_max_sec
        self._max_failure_count = max_failure_count
        self._clock = clock
        self._hub = observability_hub or ObservabilityHub.get_instance()

        self._lock = threading.Lock()
        self._initialized = False
        self._failure_count = 0
        self._retry_not_before = 0.0
        self._in_flight: Optional[Future] = None
        self._listener_attached = False

        self._events: Deque[RawMarkerEvent] = deque(maxlen=event_queue_size)
        self._events_lock = threading.Lock()
        self._events_dropped = 0

    @property
    def engine(self) -> DetectionEngine:
        return self._engine

    @property
    def initialized(self) -> bool:
        with self._lock:
            return self._initialized

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    @property
    def retry_not_before(self) -> float:
        with self._lock:
            return self._retry_not_before

    @property
    def events_dropped(self) -> int:
        return self._events_dropped

    def set_camera_parameters(self, camera_parameters: Optional[str]) -> None:
        """Set the camera parameters used by the next initialization."""
        with self._lock:
            self._camera_parameters = camera_parameters

    def ensure_initialized(self, width: int, height: int) -> bool:
        """Make sure the engine is initialized.

        Returns immediately when already initialized or inside a backoff
        window. Concurrent callers share one attempt and its outcome.

        Args:
            width: Frame width for the engine.
            height: Frame height for the engine.

        Returns:
            True if the engine is initialized.
        """
        with self._lock:
            if self._initialized:
                return True
            if self._in_flight is not None:
                waiter = self._in_flight
            elif self._clock() < self._retry_not_before:
                return False
            else:
                waiter = None
                self._in_flight = Future()
                attempt = self._in_flight
                camera_parameters = self._camera_parameters

        if waiter is not None:
            return waiter.result()

        try:
            self._engine.initialize(width, height, camera_parameters)
        except Exception as e:
            self._on_failure(attempt, width, height, e)
            return False

        with self._lock:
            self._initialized = True
            self._failure_count = 0
            self._retry_not_before = 0.0
            self._attach_listener()
            self._in_flight = None

        logger.info(f"Engine '{self._engine.name}' initialized at {width}x{height}")
        self._trace(width, height, success=True, failure_count=0)
        attempt.set_result(True)
        return True

    def _on_failure(
        self,
        attempt: Future,
        width: int,
        height: int,
        error: Exception,
    ) -> None:
        with self._lock:
            self._failure_count = min(self._failure_count + 1, self._max_failure_count)
            failure_count = self._failure_count
            delay = backoff_delay(
                failure_count, self._backoff_base_sec, self._backoff_max_sec
            )
            self._retry_not_before = self._clock() + delay
            self._in_flight = None

        message = (
            f"Engine '{self._engine.name}' initialization failed "
            f"(attempt {failure_count}): {error}; retrying in {delay:g}s"
        )
        logger.error(message)
        self._trace(
            width, height,
            success=False,
            failure_count=failure_count,
            retry_in_sec=delay,
            error=str(error),
        )
        if self._notify_error is not None:
            try:
                self._notify_error(message)
            except Exception as e:
                logger.warning(f"Failed to report init failure: {e}")
        attempt.set_result(False)

    def _attach_listener(self) -> None:
        # Caller holds self._lock
        if self._listener_attached:
            return
        self._engine.add_marker_listener(self._on_marker)
        self._listener_attached = True

    def _on_marker(self, event: RawMarkerEvent) -> None:
        with self._events_lock:
            if len(self._events) == self._events.maxlen:
                self._events_dropped += 1
                logger.debug("Raw marker event queue full, dropping oldest event")
            self._events.append(event)

    def drain_events(self) -> List[RawMarkerEvent]:
        """Remove and return all queued marker events, oldest first."""
        with self._events_lock:
            events = list(self._events)
            self._events.clear()
        return events

    def dispose(self) -> None:
        """Detach from the engine and release it."""
        with self._lock:
            if self._listener_attached:
                self._engine.remove_marker_listener(self._on_marker)
                self._listener_attached = False
            self._initialized = False
        try:
            self._engine.dispose()
        except Exception as e:
            logger.warning(f"Engine '{self._engine.name}' dispose failed: {e}")

    def _trace(
        self,
        width: int,
        height: int,
        success: bool,
        failure_count: int,
        retry_in_sec: Optional[float] = None,
        error: Optional[str] = None,
    ) -> None:
        if not self._hub.enabled:
            return
        self._hub.emit(InitAttemptRecord(
            engine=self._engine.name,
            width=width,
            height=height,
            success=success,
            failure_count=failure_count,
            retry_in_sec=retry_in_sec,
            error=error,
        ))


__all__ = [
    "DEFAULT_BACKOFF_BASE_SEC",
    "DEFAULT_BACKOFF_MAX_SEC",
    "DEFAULT_MAX_FAILURE_COUNT",
    "DEFAULT_EVENT_QUEUE_SIZE",
    "backoff_delay",
    "EngineAdapter",
]
