"""Filter for raw ``getMarker`` events forwarded to the host.

A raw event passes when:
- its ``type`` equals the configured pattern-marker type,
- its confidence (``cfPatt``, else ``cfMatrix``) is at least the minimum,
- its ``matrix`` has at least 16 entries,
- and, when the tracked id set is non-empty, its ``idPatt`` is tracked.

The payload is inspected, never modified.
"""

import threading
from typing import Any, Dict, Iterable, Optional, Set

from markerpath.core.engine import PATTERN_MARKER
from markerpath.core.types import POSE_MATRIX_SIZE

DEFAULT_MIN_CONFIDENCE = 0.6


class RawEventFilter:
    """Decides which raw engine events reach the host event bus.

    Args:
        pattern_marker_type: Marker type code to accept.
        min_confidence: Minimum confidence to accept.
        tracked_ids: Initial set of tracked pattern ids (empty = all).
    """

    def __init__(
        self,
        pattern_marker_type: int = PATTERN_MARKER,
        min_confidence: float = DEFAULT_MIN_CONFIDENCE,
        tracked_ids: Optional[Iterable[int]] = None,
    ):
        self.pattern_marker_type = pattern_marker_type
        self.min_confidence = min_confidence
        self._tracked: Set[int] = set(tracked_ids or ())
        self._lock = threading.Lock()

    @property
    def tracked_ids(self) -> Set[int]:
        with self._lock:
            return set(self._tracked)

    def track(self, marker_id: int) -> None:
        """Add a pattern id to the tracked set."""
        with self._lock:
            self._tracked.add(marker_id)

    def accepts(self, payload: Dict[str, Any]) -> bool:
        if not isinstance(payload, dict):
            return False
        if payload.get("type") != self.pattern_marker_type:
            return False

        matrix = payload.get("matrix")
        if matrix is None or len(matrix) < POSE_MATRIX_SIZE:
            return False

        marker = payload.get("marker") or {}
        confidence = marker.get("cfPatt")
        if confidence is None:
            confidence = marker.get("cfMatrix")
        if confidence is None or confidence < self.min_confidence:
            return False

        with self._lock:
            if self._tracked and marker.get("idPatt") not in self._tracked:
                return False

        return True


__all__ = ["DEFAULT_MIN_CONFIDENCE", "RawEventFilter"]
