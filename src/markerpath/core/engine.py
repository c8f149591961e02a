"""Detection engine contract.

The worker talks to the marker-recognition engine only through this
fixed, versioned interface. Engines are external collaborators; markerpath
ships one (``markerpath.engines.aruco``) and discovers others through the
``markerpath.engines`` entry point group.

Pose convention: ``get_pose()`` returns a 4x4 model-view transform as 16
floats in column-major order (OpenGL layout). The core passes it through
without interpreting it.

Example:
    >>> class MyEngine(DetectionEngine):
    ...     @property
    ...     def name(self) -> str:
    ...         return "mine"
    ...
    ...     def initialize(self, width, height, camera_parameters=None):
    ...         self._native = native.open(width, height)
    ...     ...
    >>> check_engine(MyEngine())
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence, Tuple

from markerpath.core.errors import EngineCapabilityError
from markerpath.core.types import Point, RawMarkerEvent

# Current adapter contract version.
ENGINE_API_VERSION = 1

# Marker type codes reported in raw events.
PATTERN_MARKER = 0
BARCODE_MARKER = 1

MarkerListener = Callable[[RawMarkerEvent], None]

REQUIRED_METHODS = (
    "initialize",
    "load_marker",
    "track_pattern_marker",
    "process",
    "get_marker_count",
    "get_marker",
    "get_pose",
    "dispose",
    "add_marker_listener",
    "detect",
)


@dataclass(frozen=True)
class MarkerInfo:
    """Per-marker information reported by an engine after ``process()``.

    Attributes:
        marker_type: PATTERN_MARKER or BARCODE_MARKER.
        id_patt: Pattern id, if matched as a pattern marker.
        cf_patt: Pattern match confidence.
        id_matrix: Matrix (barcode) id, if matched as a barcode marker.
        cf_matrix: Matrix match confidence.
        vertex: Image-space corners.
    """

    marker_type: int = PATTERN_MARKER
    id_patt: Optional[int] = None
    cf_patt: Optional[float] = None
    id_matrix: Optional[int] = None
    cf_matrix: Optional[float] = None
    vertex: Tuple[Point, ...] = ()


class DetectionEngine(ABC):
    """Abstract marker-recognition engine.

    Lifecycle: ``initialize()`` once, then any number of ``load_marker()`` /
    ``track_pattern_marker()`` / ``detect()`` calls, then ``dispose()``.

    ``detect()`` runs ``process()`` and reports each found marker to the
    registered listeners as a RawMarkerEvent. Engines with native callbacks
    may override it, but must still deliver events through
    ``_emit_marker()``.
    """

    API_VERSION = ENGINE_API_VERSION

    @property
    @abstractmethod
    def name(self) -> str:
        """Engine name used in logs and discovery."""
        ...

    @abstractmethod
    def initialize(
        self,
        width: int,
        height: int,
        camera_parameters: Optional[str] = None,
    ) -> None:
        """Start the native engine for the given frame size.

        Raises:
            Exception: Any failure; the adapter treats it as an
                initialization failure and backs off.
        """
        ...

    @abstractmethod
    def load_marker(self, pattern_key: str) -> int:
        """Load a marker pattern and return the engine-assigned id."""
        ...

    @abstractmethod
    def track_pattern_marker(self, marker_id: int, size: float) -> None:
        """Start tracking a loaded pattern with the given physical size."""
        ...

    @abstractmethod
    def process(self, source: Any) -> None:
        """Run detection on a RasterBuffer or ImageData."""
        ...

    @abstractmethod
    def get_marker_count(self) -> int:
        """Number of markers found by the last ``process()`` call."""
        ...

    @abstractmethod
    def get_marker(self, index: int) -> MarkerInfo:
        """Marker info for the index-th marker of the last ``process()``."""
        ...

    @abstractmethod
    def get_pose(self, index: int) -> Sequence[float]:
        """16-element pose of the index-th marker of the last ``process()``."""
        ...

    def dispose(self) -> None:
        """Release native resources. Default: no-op."""
        pass

    # Listener plumbing -----------------------------------------------------

    @property
    def _listeners(self) -> List[MarkerListener]:
        return self.__dict__.setdefault("_marker_listeners", [])

    def add_marker_listener(self, listener: MarkerListener) -> None:
        self._listeners.append(listener)

    def remove_marker_listener(self, listener: MarkerListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit_marker(self, event: RawMarkerEvent) -> None:
        for listener in list(self._listeners):
            listener(event)

    def detect(self, source: Any) -> int:
        """Process a frame and emit one event per found marker.

        Returns:
            Number of markers found.
        """
        self.process(source)
        count = self.get_marker_count()
        for index in range(count):
            info = self.get_marker(index)
            pose = self.get_pose(index)
            self._emit_marker(RawMarkerEvent(
                marker_type=info.marker_type,
                matrix=tuple(float(v) for v in pose),
                id_patt=info.id_patt,
                cf_patt=info.cf_patt,
                id_matrix=info.id_matrix,
                cf_matrix=info.cf_matrix,
                vertex=tuple(info.vertex) or None,
            ))
        return count


def check_engine(engine: Any) -> None:
    """Fail fast if an object does not implement the engine contract.

    Raises:
        EngineCapabilityError: On missing methods or an API version mismatch.
    """
    missing = [
        name for name in REQUIRED_METHODS
        if not callable(getattr(engine, name, None))
    ]
    if missing:
        raise EngineCapabilityError(
            f"{type(engine).__name__} does not implement the detection engine "
            f"contract v{ENGINE_API_VERSION}; missing: {', '.join(missing)}"
        )

    version = getattr(engine, "API_VERSION", None)
    if version != ENGINE_API_VERSION:
        raise EngineCapabilityError(
            f"{type(engine).__name__} implements engine API v{version}, "
            f"expected v{ENGINE_API_VERSION}"
        )


__all__ = [
    "ENGINE_API_VERSION",
    "PATTERN_MARKER",
    "BARCODE_MARKER",
    "MarkerListener",
    "MarkerInfo",
    "DetectionEngine",
    "check_engine",
]
