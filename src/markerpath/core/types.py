"""Core data types for marker tracking.

Detections flow from the worker's frame pipeline to the control side,
where the lifecycle state machine turns them into MarkerEvents.

Wire dictionaries use the camelCase keys of the message protocol
(``poseMatrix``, ``frameId``); attributes are snake_case.

Example:
    >>> det = Detection.from_dict({
    ...     "id": 3, "confidence": 0.9, "poseMatrix": [0.0] * 16,
    ...     "corners": [[0, 0], [1, 0], [1, 1], [0, 1]], "frameId": 12,
    ... })
    >>> det.pose_matrix[:2]
    (0.0, 0.0)
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple


Point = Tuple[float, float]

POSE_MATRIX_SIZE = 16


def _as_floats(values: Optional[Sequence[Any]]) -> Tuple[float, ...]:
    if values is None:
        return ()
    return tuple(float(v) for v in values)


def normalize_corners(vertex: Optional[Sequence[Any]]) -> Tuple[Point, ...]:
    """Normalize a corner list to a tuple of (x, y) points.

    Accepts either a sequence of pairs (``[[x, y], ...]``), a sequence of
    ``{"x": .., "y": ..}`` dicts, or a flat ``[x0, y0, x1, y1, ...]`` list.
    """
    if not vertex:
        return ()

    first = vertex[0]
    if isinstance(first, dict):
        return tuple((float(p["x"]), float(p["y"])) for p in vertex)
    if isinstance(first, (list, tuple)):
        return tuple((float(p[0]), float(p[1])) for p in vertex)

    flat = [float(v) for v in vertex]
    return tuple((flat[i], flat[i + 1]) for i in range(0, len(flat) - 1, 2))


@dataclass(frozen=True)
class Detection:
    """One marker detected in one frame.

    Attributes:
        id: Engine-assigned marker id.
        confidence: Detection confidence, usually in [0, 1].
        pose_matrix: 16-element transform in the engine's convention,
            passed through unmodified.
        corners: Ordered image-space corners (normally 4).
        frame_id: Id of the frame this detection came from.
    """

    id: int
    confidence: float = 0.0
    pose_matrix: Tuple[float, ...] = ()
    corners: Tuple[Point, ...] = ()
    frame_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "confidence": self.confidence,
            "poseMatrix": list(self.pose_matrix),
            "corners": [list(c) for c in self.corners],
            "frameId": self.frame_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], frame_id: Optional[int] = None) -> "Detection":
        """Build a Detection from its wire form.

        Args:
            data: Wire dict (``id``, ``confidence``, ``poseMatrix``, ...).
            frame_id: Frame id to use when the dict carries none.
        """
        confidence = data.get("confidence")
        own_frame_id = data.get("frameId")
        return cls(
            id=data["id"],
            confidence=float(confidence) if confidence is not None else 0.0,
            pose_matrix=_as_floats(data.get("poseMatrix")),
            corners=normalize_corners(data.get("corners")),
            frame_id=own_frame_id if own_frame_id is not None else frame_id,
        )

    @classmethod
    def from_raw_event(cls, event: "RawMarkerEvent", frame_id: Optional[int] = None) -> "Detection":
        """Build a Detection from a raw engine marker event."""
        marker_id = event.id_patt if event.id_patt is not None else event.id_matrix
        return cls(
            id=marker_id,
            confidence=event.confidence,
            pose_matrix=tuple(event.matrix[:POSE_MATRIX_SIZE]),
            corners=normalize_corners(event.vertex),
            frame_id=frame_id,
        )


@dataclass(frozen=True)
class RawMarkerEvent:
    """A native per-marker event as reported by the detection engine.

    Mirrors the ``getMarker`` wire payload:
    ``{type, matrix[16], marker: {idPatt, cfPatt, idMatrix, cfMatrix, vertex}}``.
    """

    marker_type: int
    matrix: Tuple[float, ...]
    id_patt: Optional[int] = None
    cf_patt: Optional[float] = None
    id_matrix: Optional[int] = None
    cf_matrix: Optional[float] = None
    vertex: Optional[Tuple[Point, ...]] = None

    @property
    def confidence(self) -> float:
        if self.cf_patt is not None:
            return float(self.cf_patt)
        if self.cf_matrix is not None:
            return float(self.cf_matrix)
        return 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.marker_type,
            "matrix": list(self.matrix[:POSE_MATRIX_SIZE]),
            "marker": {
                "idPatt": self.id_patt,
                "cfPatt": self.cf_patt,
                "idMatrix": self.id_matrix,
                "cfMatrix": self.cf_matrix,
                "vertex": [list(p) for p in self.vertex] if self.vertex else None,
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RawMarkerEvent":
        marker = data.get("marker") or {}
        vertex = marker.get("vertex")
        return cls(
            marker_type=data.get("type"),
            matrix=_as_floats(data.get("matrix")),
            id_patt=marker.get("idPatt"),
            cf_patt=marker.get("cfPatt"),
            id_matrix=marker.get("idMatrix"),
            cf_matrix=marker.get("cfMatrix"),
            vertex=normalize_corners(vertex) if vertex else None,
        )


class MarkerState(Enum):
    """Lifecycle state of a tracked marker.

    ``unseen`` and ``removed`` have no record; they are the absence of one.
    """

    VISIBLE = "visible"
    STALE = "stale"


@dataclass
class MarkerRecord:
    """Lifecycle record for one marker id.

    Owned by MarkerLifecycle; callers receive copies.

    Attributes:
        visible: True for as long as the record exists, STALE included. A
            lost marker has its record removed rather than hidden, so the
            next detection of it starts a new record.
        last_frame_id: Frame id of the latest applied detection. Frame ids
            are host-assigned and need not increase.
    """

    id: int
    last_seen_at: float
    visible: bool = True
    consecutive_misses: int = 0
    state: MarkerState = MarkerState.VISIBLE
    last_frame_id: Optional[int] = None


class Transition(Enum):
    """Lifecycle transition kinds."""

    FOUND = "found"
    UPDATED = "updated"
    LOST = "lost"


@dataclass(frozen=True)
class MarkerEvent:
    """A lifecycle transition for one marker.

    ``lost`` events carry only ``id`` and ``timestamp``.
    """

    transition: Transition
    id: int
    timestamp: float
    pose_matrix: Tuple[float, ...] = ()
    confidence: float = 0.0
    corners: Tuple[Point, ...] = ()
    frame_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        if self.transition is Transition.LOST:
            return {"id": self.id, "timestamp": self.timestamp}
        return {
            "id": self.id,
            "poseMatrix": list(self.pose_matrix),
            "confidence": self.confidence,
            "corners": [list(c) for c in self.corners],
            "timestamp": self.timestamp,
            "frameId": self.frame_id,
        }


@dataclass(frozen=True)
class LoadedMarker:
    """Result of a successful pattern load."""

    marker_id: int
    size: float = 1.0


@dataclass
class FrameInput:
    """A frame submitted by the host for detection.

    Attributes:
        frame_id: Host-assigned frame id.
        width: Frame width in pixels.
        height: Frame height in pixels.
        bitmap: Optional transferable bitmap. Ownership moves to the worker
            on submission.
        timestamp: Optional host timestamp.
    """

    frame_id: int
    width: int
    height: int
    bitmap: Optional[Any] = None
    timestamp: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


__all__ = [
    "Point",
    "POSE_MATRIX_SIZE",
    "normalize_corners",
    "Detection",
    "RawMarkerEvent",
    "MarkerState",
    "MarkerRecord",
    "Transition",
    "MarkerEvent",
    "LoadedMarker",
    "FrameInput",
]
