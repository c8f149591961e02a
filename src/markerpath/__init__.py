"""markerpath - Asynchronous visual marker tracking.

markerpath runs a marker detection engine in an isolated worker (a thread
or a subprocess) and turns its per-frame detections into a debounced
found / updated / lost event stream.

Quick Start:
    >>> import markerpath as mp
    >>>
    >>> bus = mp.EventBus()
    >>> bus.on(mp.MARKER_FOUND, lambda e: print("found", e.id, e.pose_matrix))
    >>> bus.on(mp.MARKER_LOST, lambda e: print("lost", e.id))
    >>>
    >>> with mp.MarkerOrchestrator(event_bus=bus) as tracker:
    ...     tracker.load_marker("markers/hiro.png", size=0.08).result()
    ...     for frame_id, image in enumerate(camera):
    ...         tracker.submit_frame(mp.FrameInput(
    ...             frame_id=frame_id,
    ...             width=image.shape[1],
    ...             height=image.shape[0],
    ...             bitmap=mp.Bitmap(image),
    ...         ))

For advanced usage, see:
- markerpath.core: Detection, MarkerLifecycle, DetectionEngine, Bitmap
- markerpath.process: Channels, WorkerSession, worker hosts
- markerpath.config: YAML configuration
- markerpath.observability: Trace records and sinks
"""

try:
    from markerpath._version import __version__
except ImportError:
    __version__ = "0.0.0.dev0"

from markerpath.core import (
    MarkerPathError,
    InitializationError,
    LoadMarkerError,
    FrameProcessingError,
    TransferError,
    RequestTimeoutError,
    WorkerTerminatedError,
    WorkerNotRunningError,
    EngineCapabilityError,
    ChannelClosedError,
    Detection,
    MarkerEvent,
    MarkerRecord,
    MarkerState,
    Transition,
    LoadedMarker,
    FrameInput,
    Bitmap,
    DetectionEngine,
    MarkerLifecycle,
    IsolationLevel,
)
from markerpath.events import (
    EventBus,
    WORKER_READY,
    MARKER_FOUND,
    MARKER_UPDATED,
    MARKER_LOST,
    WORKER_ERROR,
    GET_MARKER,
)
from markerpath.config import TrackerConfig, load_yaml_config
from markerpath.process import MarkerOrchestrator, WorkerLauncher

__all__ = [
    "__version__",
    # Errors
    "MarkerPathError",
    "InitializationError",
    "LoadMarkerError",
    "FrameProcessingError",
    "TransferError",
    "RequestTimeoutError",
    "WorkerTerminatedError",
    "WorkerNotRunningError",
    "EngineCapabilityError",
    "ChannelClosedError",
    # Types
    "Detection",
    "MarkerEvent",
    "MarkerRecord",
    "MarkerState",
    "Transition",
    "LoadedMarker",
    "FrameInput",
    "Bitmap",
    "DetectionEngine",
    "MarkerLifecycle",
    "IsolationLevel",
    # Events
    "EventBus",
    "WORKER_READY",
    "MARKER_FOUND",
    "MARKER_UPDATED",
    "MARKER_LOST",
    "WORKER_ERROR",
    "GET_MARKER",
    # Config
    "TrackerConfig",
    "load_yaml_config",
    # Orchestration
    "MarkerOrchestrator",
    "WorkerLauncher",
]
