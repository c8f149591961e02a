"""Observability system for markerpath.

Provides tracing infrastructure to track:
- Per-frame worker processing time
- Frames dropped by backpressure, init backoff or processing failures
- Engine initialization attempts and their retry schedule
- Marker lifecycle transitions (found / updated / lost)

Trace Levels:
- OFF: No tracing (production default)
- MINIMAL: Init attempts and worker-level events only
- NORMAL: Lifecycle transitions, frame drops
- VERBOSE: Per-frame timing

Example:
    >>> from markerpath.observability import ObservabilityHub, TraceLevel, MemorySink
    >>> hub = ObservabilityHub.get_instance()
    >>> hub.configure(level=TraceLevel.NORMAL, sinks=[MemorySink()])
    >>>
    >>> # In component code:
    >>> if hub.enabled:
    ...     hub.emit(FrameDropRecord(dropped_frame_ids=[7], reason="backoff"))
"""

from enum import IntEnum
from typing import List, Optional
import threading


class TraceLevel(IntEnum):
    """Observability trace levels.

    Higher levels include all lower level information.
    """
    OFF = 0       # No tracing
    MINIMAL = 1   # Init attempts, worker events
    NORMAL = 2    # Lifecycle transitions + frame drops
    VERBOSE = 3   # Per-frame timing

    @classmethod
    def from_string(cls, s: str) -> "TraceLevel":
        """Parse a trace level from its lower-case name.

        Raises:
            ValueError: If the name is unknown.
        """
        try:
            return cls[s.upper()]
        except KeyError:
            valid = ", ".join(level.name.lower() for level in cls)
            raise ValueError(f"Unknown trace level: {s}. Valid levels: {valid}") from None


class Sink:
    """Base class for trace sinks.

    Sinks receive trace records and handle their output
    (file, console, memory buffer, etc.).
    """

    def write(self, record: "TraceRecord") -> None:
        """Write a trace record.

        Args:
            record: The trace record to write.
        """
        raise NotImplementedError

    def flush(self) -> None:
        """Flush any buffered records."""
        pass

    def close(self) -> None:
        """Close the sink and release resources."""
        pass


class ObservabilityHub:
    """Central hub for trace configuration and record emission.

    Singleton pattern - use get_instance() to access. Components also accept
    an explicit hub so tests can use a private one.

    Thread Safety:
        Records can be emitted from any thread (channel delivery, sweep,
        frame and RPC threads).
    """

    _instance: Optional["ObservabilityHub"] = None
    _lock = threading.Lock()

    def __init__(self):
        """Initialize the hub. Use get_instance() for the shared one."""
        self._level = TraceLevel.OFF
        self._sinks: List[Sink] = []
        self._emit_lock = threading.Lock()

        # Cached state for fast checks
        self._enabled = False

    @classmethod
    def get_instance(cls) -> "ObservabilityHub":
        """Get the singleton hub instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton instance. For testing only."""
        with cls._lock:
            if cls._instance is not None:
                cls._instance.shutdown()
            cls._instance = None

    def configure(
        self,
        level: TraceLevel = TraceLevel.OFF,
        sinks: Optional[List[Sink]] = None,
    ) -> None:
        """Set the trace level and optionally add sinks."""
        self._level = level
        self._enabled = level > TraceLevel.OFF

        if sinks:
            for sink in sinks:
                self.add_sink(sink)

    def add_sink(self, sink: Sink) -> None:
        with self._emit_lock:
            self._sinks.append(sink)

    def remove_sink(self, sink: Sink) -> None:
        with self._emit_lock:
            if sink in self._sinks:
                self._sinks.remove(sink)

    def emit(self, record: "TraceRecord") -> None:
        """Emit a trace record to all sinks.

        Records below the configured level are dropped.
        """
        if not self._enabled:
            return

        if record.min_level > self._level:
            return

        with self._emit_lock:
            for sink in self._sinks:
                try:
                    sink.write(record)
                except Exception:
                    # Sink failures never affect processing
                    pass

    def flush(self) -> None:
        """Flush all sinks."""
        with self._emit_lock:
            for sink in self._sinks:
                try:
                    sink.flush()
                except Exception:
                    pass

    def shutdown(self) -> None:
        """Flush and close all sinks, then disable tracing."""
        with self._emit_lock:
            for sink in self._sinks:
                try:
                    sink.flush()
                    sink.close()
                except Exception:
                    pass
            self._sinks.clear()

        self._level = TraceLevel.OFF
        self._enabled = False

    @property
    def enabled(self) -> bool:
        """Fast check if tracing is enabled.

        Use this before building records to keep the disabled path cheap.
        """
        return self._enabled

    @property
    def level(self) -> TraceLevel:
        return self._level

    def is_level_enabled(self, level: TraceLevel) -> bool:
        return self._level >= level


# Import records and sinks after defining TraceLevel
from markerpath.observability.records import (  # noqa: E402
    TraceRecord,
    TimingRecord,
    FrameDropRecord,
    InitAttemptRecord,
    MarkerTransitionRecord,
)
from markerpath.observability.sinks import (  # noqa: E402
    FileSink,
    ConsoleSink,
    MemorySink,
    NullSink,
    configure_from_schema,
)

__all__ = [
    # Core
    "TraceLevel",
    "Sink",
    "ObservabilityHub",
    # Records
    "TraceRecord",
    "TimingRecord",
    "FrameDropRecord",
    "InitAttemptRecord",
    "MarkerTransitionRecord",
    # Sinks
    "FileSink",
    "ConsoleSink",
    "MemorySink",
    "NullSink",
    "configure_from_schema",
]
