"""Trace record data classes.

Record Categories:
- Base: TraceRecord
- Frame: TimingRecord, FrameDropRecord (worker side)
- Engine: InitAttemptRecord (worker side)
- Lifecycle: MarkerTransitionRecord (control side)
"""

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional
import json
import time

from markerpath.observability import TraceLevel


@dataclass
class TraceRecord:
    """Base class for all trace records.

    All trace records have:
    - record_type: String identifying the record type
    - timestamp_ns: When the record was created (monotonic)
    - min_level: Minimum trace level required to emit this record
    """
    record_type: str = field(default="base", init=False)
    timestamp_ns: int = field(default_factory=lambda: time.perf_counter_ns())
    min_level: TraceLevel = field(default=TraceLevel.NORMAL, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        # min_level is internal
        d.pop("min_level", None)
        return d

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


@dataclass
class TimingRecord(TraceRecord):
    """Worker processing time for one frame."""
    record_type: str = field(default="timing", init=False)
    min_level: TraceLevel = field(default=TraceLevel.VERBOSE, repr=False)

    frame_id: int = 0
    component: str = ""  # "frame_pipeline", ...

    processing_ms: float = 0.0
    detections: int = 0

    threshold_ms: float = 50.0
    is_slow: bool = False


@dataclass
class FrameDropRecord(TraceRecord):
    """Frames that produced no detection batch."""
    record_type: str = field(default="frame_drop", init=False)

    dropped_frame_ids: List[int] = field(default_factory=list)
    reason: str = ""  # "superseded", "init_backoff", "processing_error"


@dataclass
class InitAttemptRecord(TraceRecord):
    """Outcome of one engine initialization attempt."""
    record_type: str = field(default="init_attempt", init=False)
    min_level: TraceLevel = field(default=TraceLevel.MINIMAL, repr=False)

    engine: str = ""
    width: int = 0
    height: int = 0
    success: bool = False
    failure_count: int = 0
    retry_in_sec: Optional[float] = None
    error: Optional[str] = None


@dataclass
class MarkerTransitionRecord(TraceRecord):
    """A lifecycle transition emitted by the state machine."""
    record_type: str = field(default="marker_transition", init=False)

    marker_id: int = 0
    transition: str = ""  # "found", "updated", "lost"
    frame_id: Optional[int] = None
    confidence: float = 0.0


__all__ = [
    "TraceRecord",
    "TimingRecord",
    "FrameDropRecord",
    "InitAttemptRecord",
    "MarkerTransitionRecord",
]
