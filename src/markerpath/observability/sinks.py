"""Trace output sinks.

- FileSink: JSONL file output
- ConsoleSink: Formatted console output
- MemorySink: In-memory buffer for tests and in-session analysis
- NullSink: Discards everything
"""

import sys
import threading
from collections import deque
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Deque, List, Optional, TextIO

from markerpath.observability import ObservabilityHub, Sink, TraceLevel
from markerpath.observability.records import (
    TraceRecord,
    TimingRecord,
    FrameDropRecord,
    InitAttemptRecord,
    MarkerTransitionRecord,
)

if TYPE_CHECKING:
    from markerpath.config.schema import ObservabilitySchema


class FileSink(Sink):
    """Sink that writes trace records to a JSONL file.

    Args:
        path: Path to the output file.
        buffer_size: Number of records to buffer before flushing (default: 100).
        append: Whether to append to an existing file (default: False).
    """

    def __init__(
        self,
        path: str,
        buffer_size: int = 100,
        append: bool = False,
    ):
        self._path = Path(path)
        self._buffer_size = buffer_size
        self._append = append

        self._buffer: List[str] = []
        self._file: Optional[TextIO] = None
        self._lock = threading.Lock()

        mode = "a" if self._append else "w"
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self._path, mode, encoding="utf-8")

    def write(self, record: TraceRecord) -> None:
        line = record.to_json()

        with self._lock:
            self._buffer.append(line)
            if len(self._buffer) >= self._buffer_size:
                self._flush_buffer()

    def _flush_buffer(self) -> None:
        """Flush the buffer to disk. Must be called with lock held."""
        if not self._buffer or self._file is None:
            return

        for line in self._buffer:
            self._file.write(line + "\n")
        self._file.flush()
        self._buffer.clear()

    def flush(self) -> None:
        with self._lock:
            self._flush_buffer()

    def close(self) -> None:
        with self._lock:
            self._flush_buffer()
            if self._file is not None:
                self._file.close()
                self._file = None


class ConsoleSink(Sink):
    """Sink that writes human-readable trace lines to a stream.

    Args:
        stream: Output stream (default: sys.stderr).
        color: Enable ANSI color codes when the stream is a TTY.
        timing_threshold_ms: Only timing records slower than this are shown.
        format_fn: Optional custom format function; return None to skip.
    """

    COLORS = {
        "reset": "\033[0m",
        "red": "\033[91m",
        "green": "\033[92m",
        "yellow": "\033[93m",
        "cyan": "\033[96m",
        "gray": "\033[90m",
    }

    def __init__(
        self,
        stream: Optional[TextIO] = None,
        color: bool = True,
        timing_threshold_ms: float = 50.0,
        format_fn: Optional[Callable[[TraceRecord], Optional[str]]] = None,
    ):
        self._stream = stream or sys.stderr
        self._color = color and hasattr(self._stream, "isatty") and self._stream.isatty()
        self._timing_threshold_ms = timing_threshold_ms
        self._format_fn = format_fn
        self._lock = threading.Lock()

    def _colorize(self, text: str, color: str) -> str:
        if not self._color:
            return text
        return f"{self.COLORS.get(color, '')}{text}{self.COLORS['reset']}"

    def write(self, record: TraceRecord) -> None:
        if self._format_fn:
            line = self._format_fn(record)
        else:
            line = self._format_record(record)

        if line:
            with self._lock:
                self._stream.write(line + "\n")
                self._stream.flush()

    def _format_record(self, record: TraceRecord) -> Optional[str]:
        if isinstance(record, TimingRecord):
            if record.processing_ms <= self._timing_threshold_ms:
                return None
            tag = self._colorize("[TIMING]", "yellow")
            return (
                f"{tag} Frame {record.frame_id}: {record.component} took "
                f"{record.processing_ms:.0f}ms"
            )
        if isinstance(record, FrameDropRecord):
            tag = self._colorize("[DROP]", "red")
            frames = ", ".join(str(f) for f in record.dropped_frame_ids[:5])
            if len(record.dropped_frame_ids) > 5:
                frames += f" +{len(record.dropped_frame_ids) - 5} more"
            return f"{tag} Frames {frames} dropped ({record.reason})"
        if isinstance(record, InitAttemptRecord):
            if record.success:
                tag = self._colorize("[INIT]", "green")
                return f"{tag} {record.engine} initialized at {record.width}x{record.height}"
            tag = self._colorize("[INIT]", "red")
            return (
                f"{tag} {record.engine} failed ({record.error}); "
                f"retry in {record.retry_in_sec:g}s"
            )
        if isinstance(record, MarkerTransitionRecord):
            if record.transition == "updated":
                return None
            tag = self._colorize("[MARKER]", "cyan")
            return f"{tag} {record.marker_id} {record.transition}"
        return None

    def flush(self) -> None:
        with self._lock:
            self._stream.flush()


class MemorySink(Sink):
    """Sink that stores trace records in memory.

    Args:
        max_records: Maximum number of records to keep (default: 10000).
    """

    def __init__(self, max_records: int = 10000):
        self._records: Deque[TraceRecord] = deque(maxlen=max_records)
        self._lock = threading.Lock()

    def write(self, record: TraceRecord) -> None:
        with self._lock:
            self._records.append(record)

    def get_records(self, record_type: Optional[str] = None) -> List[TraceRecord]:
        """Get stored records, optionally filtered by record type."""
        with self._lock:
            records = list(self._records)

        if record_type:
            records = [r for r in records if r.record_type == record_type]

        return records

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def __len__(self) -> int:
        return len(self._records)


class NullSink(Sink):
    """Sink that discards all records."""

    def write(self, record: TraceRecord) -> None:
        pass


def configure_from_schema(
    schema: "ObservabilitySchema",
    hub: Optional[ObservabilityHub] = None,
) -> ObservabilityHub:
    """Apply an observability config section to a hub.

    Args:
        schema: Validated observability configuration.
        hub: Hub to configure (default: the global one).

    Returns:
        The configured hub.
    """
    hub = hub or ObservabilityHub.get_instance()
    sinks: List[Sink] = []
    for sink_schema in schema.sinks:
        if sink_schema.type == "file":
            sinks.append(FileSink(sink_schema.path, **sink_schema.options))
        elif sink_schema.type == "console":
            sinks.append(ConsoleSink(**sink_schema.options))
        elif sink_schema.type == "memory":
            sinks.append(MemorySink(**sink_schema.options))
        else:
            sinks.append(NullSink())

    hub.configure(level=TraceLevel.from_string(schema.level), sinks=sinks)
    return hub


__all__ = [
    "FileSink",
    "ConsoleSink",
    "MemorySink",
    "NullSink",
    "configure_from_schema",
]
