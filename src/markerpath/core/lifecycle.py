"""Marker lifecycle state machine.

Turns sparse per-frame detection batches into debounced found / updated /
lost transitions. Two speeds:

- ``update()`` runs on every detection batch and emits ``found`` for markers
  without a record and ``updated`` for markers that already have one.
  Markers missing from a batch are left alone; detections are partial, so
  absence from one batch does not mean the marker is gone.
- ``sweep()`` runs on a fixed timer and removes markers not seen for longer
  than ``lost_threshold * frame_duration_ms``, emitting ``lost``.

States per marker id::

    unseen -> VISIBLE -> (VISIBLE | STALE) -> removed

STALE records are still visible: re-detecting one emits ``updated``. A
second ``found`` for an id is only possible after its ``lost``.

Example:
    >>> lifecycle = MarkerLifecycle(lost_threshold=5, frame_duration_ms=200)
    >>> events = lifecycle.update([Detection(id=1, pose_matrix=(0.0,) * 16)])
    >>> events[0].transition
    <Transition.FOUND: 'found'>
    >>> lifecycle.sweep()   # later, from the sweep timer
    []
"""

import logging
import threading
import time
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Optional

from markerpath.core.types import (
    Detection,
    MarkerEvent,
    MarkerRecord,
    MarkerState,
    Transition,
)
from markerpath.observability import ObservabilityHub

logger = logging.getLogger(__name__)

DEFAULT_LOST_THRESHOLD = 5
DEFAULT_FRAME_DURATION_MS = 200.0


class MarkerLifecycle:
    """Per-marker lifecycle records and their transitions.

    Args:
        lost_threshold: Number of frame durations without a detection after
            which a marker is lost.
        frame_duration_ms: Nominal frame duration in milliseconds.
        clock: Time source in seconds (default: time.time). Event
            timestamps come from the same clock.
        observability_hub: Optional hub for transition records.

    Thread Safety:
        ``update()`` runs on the channel delivery thread and ``sweep()`` on
        the sweep thread; both take the same lock.
    """

    def __init__(
        self,
        lost_threshold: int = DEFAULT_LOST_THRESHOLD,
        frame_duration_ms: float = DEFAULT_FRAME_DURATION_MS,
        clock: Callable[[], float] = time.time,
        observability_hub: Optional[ObservabilityHub] = None,
    ):
        if lost_threshold < 1:
            raise ValueError("lost_threshold must be >= 1")
        if frame_duration_ms <= 0:
            raise ValueError("frame_duration_ms must be > 0")

        self._lost_threshold = lost_threshold
        self._frame_duration_ms = frame_duration_ms
        self._clock = clock
        self._hub = observability_hub or ObservabilityHub.get_instance()

        self._records: Dict[int, MarkerRecord] = {}
        self._lock = threading.Lock()

    @property
    def lost_after_ms(self) -> float:
        """Age in milliseconds after which a marker is considered lost."""
        return self._lost_threshold * self._frame_duration_ms

    def update(
        self,
        detections: Iterable[Detection],
        now: Optional[float] = None,
    ) -> List[MarkerEvent]:
        """Apply one detection batch.

        Args:
            detections: Detections of one batch, in any order.
            now: Override for the current time (seconds).

        Returns:
            One ``found`` or ``updated`` event per applied detection.
        """
        now = self._clock() if now is None else now
        events: List[MarkerEvent] = []

        with self._lock:
            for det in detections:
                record = self._records.get(det.id)

                if record is None:
                    self._records[det.id] = MarkerRecord(
                        id=det.id,
                        last_seen_at=now,
                        last_frame_id=det.frame_id,
                    )
                    events.append(self._event(Transition.FOUND, det, now))
                    continue

                record.last_seen_at = now
                record.consecutive_misses = 0
                record.state = MarkerState.VISIBLE
                if det.frame_id is not None:
                    record.last_frame_id = det.frame_id
                events.append(self._event(Transition.UPDATED, det, now))

        self._trace(events)
        return events

    def sweep(self, now: Optional[float] = None) -> List[MarkerEvent]:
        """Remove markers that have not been seen for too long.

        Args:
            now: Override for the current time (seconds).

        Returns:
            One ``lost`` event per removed marker.
        """
        now = self._clock() if now is None else now
        lost_after_ms = self.lost_after_ms
        events: List[MarkerEvent] = []

        with self._lock:
            for marker_id, record in list(self._records.items()):
                elapsed_ms = (now - record.last_seen_at) * 1000.0
                if elapsed_ms > lost_after_ms:
                    del self._records[marker_id]
                    events.append(MarkerEvent(
                        transition=Transition.LOST,
                        id=marker_id,
                        timestamp=now,
                    ))
                    continue

                misses = int(elapsed_ms // self._frame_duration_ms)
                record.consecutive_misses = misses
                record.state = MarkerState.STALE if misses > 0 else MarkerState.VISIBLE

        self._trace(events)
        return events

    def get_state(self, marker_id: int) -> Optional[MarkerRecord]:
        """Copy of the record for a marker id, or None if not tracked."""
        with self._lock:
            record = self._records.get(marker_id)
            return replace(record) if record is not None else None

    def records(self) -> List[MarkerRecord]:
        """Copies of all current records."""
        with self._lock:
            return [replace(r) for r in self._records.values()]

    def reset(self) -> None:
        """Forget all markers without emitting events."""
        with self._lock:
            self._records.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    @staticmethod
    def _event(transition: Transition, det: Detection, now: float) -> MarkerEvent:
        return MarkerEvent(
            transition=transition,
            id=det.id,
            timestamp=now,
            pose_matrix=det.pose_matrix,
            confidence=det.confidence,
            corners=det.corners,
            frame_id=det.frame_id,
        )

    def _trace(self, events: List[MarkerEvent]) -> None:
        if not self._hub.enabled or not events:
            return
        from markerpath.observability.records import MarkerTransitionRecord
        for event in events:
            self._hub.emit(MarkerTransitionRecord(
                marker_id=event.id,
                transition=event.transition.value,
                frame_id=event.frame_id,
                confidence=event.confidence,
            ))


__all__ = [
    "DEFAULT_LOST_THRESHOLD",
    "DEFAULT_FRAME_DURATION_MS",
    "MarkerLifecycle",
]
