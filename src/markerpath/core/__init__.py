"""Core types and components shared by the control and worker sides.

- types: Detection, MarkerRecord, MarkerEvent and friends
- bitmap: Transferable Bitmap, RasterBuffer, ImageData
- engine: DetectionEngine contract
- lifecycle: MarkerLifecycle state machine
- filters: RawEventFilter
- errors: Exception hierarchy
- isolation: IsolationLevel
"""

from markerpath.core.errors import (
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
)
from markerpath.core.types import (
    Detection,
    RawMarkerEvent,
    MarkerState,
    MarkerRecord,
    Transition,
    MarkerEvent,
    LoadedMarker,
    FrameInput,
)
from markerpath.core.bitmap import Bitmap, ImageData, RasterBuffer
from markerpath.core.engine import (
    ENGINE_API_VERSION,
    PATTERN_MARKER,
    BARCODE_MARKER,
    MarkerInfo,
    DetectionEngine,
    check_engine,
)
from markerpath.core.lifecycle import MarkerLifecycle
from markerpath.core.filters import RawEventFilter
from markerpath.core.isolation import IsolationLevel

__all__ = [
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
    "RawMarkerEvent",
    "MarkerState",
    "MarkerRecord",
    "Transition",
    "MarkerEvent",
    "LoadedMarker",
    "FrameInput",
    # Bitmaps
    "Bitmap",
    "ImageData",
    "RasterBuffer",
    # Engine
    "ENGINE_API_VERSION",
    "PATTERN_MARKER",
    "BARCODE_MARKER",
    "MarkerInfo",
    "DetectionEngine",
    "check_engine",
    # Components
    "MarkerLifecycle",
    "RawEventFilter",
    "IsolationLevel",
]
