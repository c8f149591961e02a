"""Tests for markerpath observability system."""

import io
import json
import tempfile
from pathlib import Path

import pytest

from markerpath.config.schema import ObservabilitySchema, SinkSchema
from markerpath.observability import (
    TraceLevel,
    ObservabilityHub,
    TraceRecord,
    FileSink,
    ConsoleSink,
    MemorySink,
    NullSink,
    configure_from_schema,
)
from markerpath.observability.records import (
    TimingRecord,
    FrameDropRecord,
    InitAttemptRecord,
    MarkerTransitionRecord,
)


# =============================================================================
# TraceLevel Tests
# =============================================================================


class TestTraceLevel:
    """Tests for TraceLevel enum."""

    def test_level_ordering(self):
        """Test levels are ordered correctly."""
        assert TraceLevel.OFF < TraceLevel.MINIMAL < TraceLevel.NORMAL < TraceLevel.VERBOSE

    def test_from_string(self):
        """Test parsing level names."""
        assert TraceLevel.from_string("verbose") is TraceLevel.VERBOSE
        assert TraceLevel.from_string("OFF") is TraceLevel.OFF

    def test_from_string_unknown(self):
        """Test unknown names are rejected."""
        with pytest.raises(ValueError, match="Unknown trace level"):
            TraceLevel.from_string("loud")


# =============================================================================
# TraceRecord Tests
# =============================================================================


class TestTraceRecords:
    """Tests for trace record data classes."""

    def test_to_dict_hides_min_level(self):
        """Test min_level is not serialized."""
        data = TraceRecord().to_dict()

        assert data["record_type"] == "base"
        assert "min_level" not in data
        assert "timestamp_ns" in data

    def test_to_json(self):
        """Test records serialize to JSON."""
        record = FrameDropRecord(dropped_frame_ids=[3, 4], reason="superseded")

        data = json.loads(record.to_json())

        assert data["record_type"] == "frame_drop"
        assert data["dropped_frame_ids"] == [3, 4]

    def test_default_levels(self):
        """Test each record type has the expected minimum level."""
        assert InitAttemptRecord().min_level == TraceLevel.MINIMAL
        assert FrameDropRecord().min_level == TraceLevel.NORMAL
        assert MarkerTransitionRecord().min_level == TraceLevel.NORMAL
        assert TimingRecord().min_level == TraceLevel.VERBOSE


# =============================================================================
# ObservabilityHub Tests
# =============================================================================


class TestObservabilityHub:
    """Tests for ObservabilityHub singleton."""

    def setup_method(self):
        """Reset hub before each test."""
        ObservabilityHub.reset_instance()

    def teardown_method(self):
        """Reset hub after each test."""
        ObservabilityHub.reset_instance()

    def test_singleton(self):
        """Test hub is a singleton."""
        assert ObservabilityHub.get_instance() is ObservabilityHub.get_instance()

    def test_default_disabled(self):
        """Test hub is disabled by default."""
        hub = ObservabilityHub.get_instance()

        assert not hub.enabled
        assert hub.level == TraceLevel.OFF

    def test_emit_when_disabled(self):
        """Test emit does nothing when disabled."""
        hub = ObservabilityHub.get_instance()
        sink = MemorySink()
        hub.add_sink(sink)

        hub.emit(TraceRecord())

        assert len(sink) == 0

    def test_emit_respects_min_level(self):
        """Test records above the configured level are dropped."""
        hub = ObservabilityHub.get_instance()
        sink = MemorySink()
        hub.configure(level=TraceLevel.NORMAL, sinks=[sink])

        hub.emit(TimingRecord(frame_id=1))
        hub.emit(FrameDropRecord(dropped_frame_ids=[1]))
        hub.emit(InitAttemptRecord(engine="aruco"))

        assert [r.record_type for r in sink.get_records()] == ["frame_drop", "init_attempt"]

    def test_failing_sink_isolated(self):
        """Test a failing sink does not stop other sinks."""
        class BrokenSink(NullSink):
            def write(self, record):
                raise IOError("disk full")

        hub = ObservabilityHub.get_instance()
        sink = MemorySink()
        hub.configure(level=TraceLevel.NORMAL, sinks=[BrokenSink(), sink])

        hub.emit(FrameDropRecord())

        assert len(sink) == 1

    def test_shutdown_disables(self):
        """Test shutdown clears sinks and disables tracing."""
        hub = ObservabilityHub.get_instance()
        hub.configure(level=TraceLevel.VERBOSE, sinks=[MemorySink()])

        hub.shutdown()

        assert not hub.enabled
        assert hub._sinks == []

    def test_configure_from_schema(self):
        """Test a config section builds sinks and sets the level."""
        with tempfile.TemporaryDirectory() as tmpdir:
            schema = ObservabilitySchema(
                level="minimal",
                sinks=[
                    SinkSchema(type="memory"),
                    SinkSchema(type="file", path=str(Path(tmpdir) / "trace.jsonl")),
                ],
            )

            hub = configure_from_schema(schema)

            assert hub is ObservabilityHub.get_instance()
            assert hub.level == TraceLevel.MINIMAL
            assert [type(s) for s in hub._sinks] == [MemorySink, FileSink]
            hub.shutdown()


# =============================================================================
# Sink Tests
# =============================================================================


class TestFileSink:
    """Tests for FileSink."""

    def test_jsonl_format(self):
        """Test output is valid JSONL."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "nested" / "trace.jsonl"
            sink = FileSink(str(path), buffer_size=1)

            sink.write(TimingRecord(frame_id=1, component="frame_pipeline"))
            sink.write(MarkerTransitionRecord(marker_id=3, transition="found"))
            sink.close()

            lines = path.read_text().strip().split("\n")
            assert [json.loads(line)["record_type"] for line in lines] == ["timing", "marker_transition"]

    def test_buffered_writes(self):
        """Test records are buffered until flush."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "trace.jsonl"
            sink = FileSink(str(path), buffer_size=5)

            for _ in range(3):
                sink.write(TraceRecord())
            assert path.read_text() == ""

            sink.flush()
            assert path.read_text().count("\n") == 3
            sink.close()


class TestMemorySink:
    """Tests for MemorySink."""

    def test_max_records_limit(self):
        """Test only the newest records are kept."""
        sink = MemorySink(max_records=3)

        for i in range(5):
            sink.write(TimingRecord(frame_id=i))

        assert [r.frame_id for r in sink.get_records()] == [2, 3, 4]

    def test_get_records_by_type(self):
        """Test filtering records by type."""
        sink = MemorySink()
        sink.write(TimingRecord())
        sink.write(FrameDropRecord())

        assert len(sink.get_records("frame_drop")) == 1

    def test_clear(self):
        """Test clearing records."""
        sink = MemorySink()
        sink.write(TraceRecord())

        sink.clear()

        assert len(sink) == 0


class TestConsoleSink:
    """Tests for ConsoleSink."""

    def test_formats_frame_drop(self):
        """Test frame drops are printed with their reason."""
        stream = io.StringIO()
        sink = ConsoleSink(stream=stream)

        sink.write(FrameDropRecord(dropped_frame_ids=[7], reason="init_backoff"))

        assert "[DROP]" in stream.getvalue()
        assert "init_backoff" in stream.getvalue()

    def test_formats_init_failure(self):
        """Test failed init attempts show the retry delay."""
        stream = io.StringIO()
        sink = ConsoleSink(stream=stream)

        sink.write(InitAttemptRecord(engine="aruco", success=False, retry_in_sec=4.0, error="boom"))

        assert "retry in 4s" in stream.getvalue()

    def test_skips_fast_timing(self):
        """Test fast frames are not printed."""
        stream = io.StringIO()
        sink = ConsoleSink(stream=stream, timing_threshold_ms=50)

        sink.write(TimingRecord(processing_ms=10))
        sink.write(MarkerTransitionRecord(marker_id=1, transition="updated"))

        assert stream.getvalue() == ""

    def test_custom_format(self):
        """Test a custom format function replaces the default."""
        stream = io.StringIO()
        sink = ConsoleSink(stream=stream, format_fn=lambda r: f"<{r.record_type}>")

        sink.write(MarkerTransitionRecord(marker_id=1, transition="lost"))

        assert stream.getvalue() == "<marker_transition>\n"
