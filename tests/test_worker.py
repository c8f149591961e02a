"""Tests for WorkerSession driven over an in-process channel."""

import threading
import time

import numpy as np
import pytest

from markerpath.core.bitmap import Bitmap
from markerpath.core.engine import DetectionEngine, MarkerInfo
from markerpath.engines.aruco import ArucoEngine
from markerpath.process.channel import QueueChannel
from markerpath.process.messages import (
    InitRequest,
    LoadMarkerRequest,
    MessageType,
    ProcessFrameRequest,
    make_message,
)
from markerpath.process.worker import WorkerSession


# =============================================================================
# Test Fixtures
# =============================================================================


class MockEngine(DetectionEngine):
    """Engine reporting configured markers on every frame.

    Pattern keys ``"bad:*"`` fail to load. ``process_gate`` lets a test hold
    the frame thread inside ``process()``.
    """

    def __init__(self, markers=(), fail_init=False, load_delay=0.0):
        self.markers = list(markers)
        self.fail_init = fail_init
        self.load_delay = load_delay
        self.init_args = []
        self.load_calls = []
        self.tracked = {}
        self.processed = 0
        self.process_gate = None
        self.in_process = threading.Event()
        self.disposed = False
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return "mock"

    def initialize(self, width, height, camera_parameters=None):
        self.init_args.append((width, height, camera_parameters))
        if self.fail_init:
            raise RuntimeError("module failed to load")

    def load_marker(self, pattern_key):
        with self._lock:
            self.load_calls.append(pattern_key)
        if self.load_delay:
            time.sleep(self.load_delay)
        if pattern_key.startswith("bad:"):
            raise ValueError(f"Cannot load {pattern_key}")
        return 10 + len(pattern_key)

    def track_pattern_marker(self, marker_id, size):
        self.tracked[marker_id] = size

    def process(self, source):
        self.in_process.set()
        if self.process_gate is not None:
            self.process_gate.wait(timeout=5.0)
        self.processed += 1

    def get_marker_count(self):
        return len(self.markers)

    def get_marker(self, index):
        return MarkerInfo(
            marker_type=0,
            id_patt=self.markers[index],
            cf_patt=0.9,
            vertex=((0, 0), (1, 0), (1, 1), (0, 1)),
        )

    def get_pose(self, index):
        return [1.0] * 16

    def dispose(self):
        self.disposed = True


class Collector:
    def __init__(self):
        self.messages = []
        self._cond = threading.Condition()

    def __call__(self, message):
        with self._cond:
            self.messages.append(message)
            self._cond.notify_all()

    def wait_for(self, predicate, timeout=5.0):
        deadline = time.monotonic() + timeout
        with self._cond:
            while not predicate(self.messages):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)
        return True

    def of_type(self, msg_type):
        return [m for m in self.messages if m["type"] == msg_type]


def has(msg_type, count=1):
    return lambda messages: sum(m["type"] == msg_type for m in messages) >= count


@pytest.fixture
def harness():
    """Started session with its control end and a message collector."""
    created = []

    def make(engine, **kwargs):
        control, worker = QueueChannel.pair()
        received = Collector()
        control.on_message(received)
        control.start()
        session = WorkerSession(engine, worker, **kwargs)
        session.start()
        created.append((session, control))
        return session, control, received

    yield make

    for session, control in created:
        session.close()
        control.close()


def frame(frame_id, width=32, height=24):
    return Bitmap(np.zeros((height, width, 3), dtype=np.uint8))


# =============================================================================
# Init Tests
# =============================================================================


class TestInit:
    """Tests for the init handshake."""

    def test_init_answers_ready(self, harness):
        """Test init is answered with ready."""
        _, control, received = harness(MockEngine())

        control.send(InitRequest().to_message())

        assert received.wait_for(has(MessageType.READY))

    def test_camera_parameters_reach_engine(self, harness):
        """Test cameraParametersUrl is used for engine initialization."""
        engine = MockEngine()
        _, control, received = harness(engine)

        control.send(InitRequest(camera_parameters_url="data/camera.npz").to_message())
        received.wait_for(has(MessageType.READY))
        control.send(LoadMarkerRequest(pattern_key="hiro", request_id=1).to_message())
        received.wait_for(has(MessageType.LOAD_MARKER_RESULT))

        assert engine.init_args == [(640, 480, "data/camera.npz")]

    def test_unknown_message_ignored(self, harness):
        """Test unknown message types do not stop the session."""
        _, control, received = harness(MockEngine())

        control.send(make_message("bogus"))
        control.send(InitRequest().to_message())

        assert received.wait_for(has(MessageType.READY))

    def test_shutdown_stops_session(self, harness):
        """Test shutdown ends wait()."""
        session, control, _ = harness(MockEngine())

        control.send(make_message(MessageType.SHUTDOWN))

        assert session.wait(timeout=5.0)
        assert not session.is_running


# =============================================================================
# Load Marker Tests
# =============================================================================


class TestLoadMarker:
    """Tests for loadMarker handling."""

    def test_load_success(self, harness):
        """Test a load answers with the engine id and tracks the marker."""
        engine = MockEngine()
        _, control, received = harness(engine)

        control.send(LoadMarkerRequest(pattern_key="hiro", request_id=3, size=0.08).to_message())

        assert received.wait_for(has(MessageType.LOAD_MARKER_RESULT))
        payload = received.of_type(MessageType.LOAD_MARKER_RESULT)[0]["payload"]
        assert payload == {"ok": True, "requestId": 3, "markerId": 14, "size": 0.08}
        assert engine.tracked == {14: 0.08}

    def test_missing_pattern_key(self, harness):
        """Test a load without patternKey fails without touching the engine."""
        engine = MockEngine()
        _, control, received = harness(engine)

        control.send(make_message(MessageType.LOAD_MARKER, {"requestId": 5}))

        assert received.wait_for(has(MessageType.LOAD_MARKER_RESULT))
        payload = received.of_type(MessageType.LOAD_MARKER_RESULT)[0]["payload"]
        assert payload["ok"] is False
        assert payload["requestId"] == 5
        assert payload["error"] == "Missing patternKey parameter"
        assert engine.load_calls == []

    def test_load_failure(self, harness):
        """Test an engine load failure is answered with ok=False."""
        _, control, received = harness(MockEngine())

        control.send(LoadMarkerRequest(pattern_key="bad:x", request_id=1).to_message())

        assert received.wait_for(has(MessageType.LOAD_MARKER_RESULT))
        payload = received.of_type(MessageType.LOAD_MARKER_RESULT)[0]["payload"]
        assert payload["ok"] is False
        assert "Cannot load bad:x" in payload["error"]

    def test_load_with_failing_init(self, harness):
        """Test a load fails while the engine cannot initialize."""
        _, control, received = harness(MockEngine(fail_init=True))

        control.send(LoadMarkerRequest(pattern_key="hiro", request_id=1).to_message())

        assert received.wait_for(has(MessageType.LOAD_MARKER_RESULT))
        payload = received.of_type(MessageType.LOAD_MARKER_RESULT)[0]["payload"]
        assert payload["ok"] is False
        assert "not initialized" in payload["error"]
        assert received.wait_for(has(MessageType.ERROR))

    def test_concurrent_loads_deduplicated(self, harness):
        """Test concurrent loads of one key reach the engine once."""
        engine = MockEngine(load_delay=0.1)
        _, control, received = harness(engine, rpc_workers=4)

        for request_id in range(4):
            control.send(LoadMarkerRequest(pattern_key="hiro", request_id=request_id).to_message())

        assert received.wait_for(has(MessageType.LOAD_MARKER_RESULT, 4))
        results = received.of_type(MessageType.LOAD_MARKER_RESULT)
        assert sorted(r["payload"]["requestId"] for r in results) == [0, 1, 2, 3]
        assert {r["payload"]["markerId"] for r in results} == {14}
        assert engine.load_calls == ["hiro"]


# =============================================================================
# Frame Tests
# =============================================================================


class TestFrames:
    """Tests for frame processing."""

    def test_detection_batch(self, harness):
        """Test a frame with markers yields getMarker events and a batch."""
        _, control, received = harness(MockEngine(markers=[3, 4]))

        control.send(ProcessFrameRequest(
            frame_id=7, width=32, height=24, bitmap=control.transfer(frame(7)),
        ).to_message())

        assert received.wait_for(has(MessageType.DETECTION_RESULT))
        raw = received.of_type(MessageType.GET_MARKER)
        assert [m["payload"]["marker"]["idPatt"] for m in raw] == [3, 4]
        batch = received.of_type(MessageType.DETECTION_RESULT)[0]["payload"]
        assert batch["frameId"] == 7
        assert [d["id"] for d in batch["detections"]] == [3, 4]

    def test_frame_without_markers_sends_nothing(self, harness):
        """Test empty frames produce no batch."""
        session, control, received = harness(MockEngine())

        control.send(ProcessFrameRequest(
            frame_id=1, width=32, height=24, bitmap=control.transfer(frame(1)),
        ).to_message())

        deadline = time.monotonic() + 5.0
        while session.pipeline.frames_processed < 1 and time.monotonic() < deadline:
            time.sleep(0.01)
        time.sleep(0.05)
        assert session.pipeline.frames_processed == 1
        assert received.of_type(MessageType.DETECTION_RESULT) == []

    def test_latest_frame_wins(self, harness):
        """Test frames queued behind a busy engine are coalesced to the newest."""
        engine = MockEngine(markers=[1])
        engine.process_gate = threading.Event()
        session, control, received = harness(engine)

        first = frame(1)
        control.send(ProcessFrameRequest(
            frame_id=1, width=32, height=24, bitmap=control.transfer(first),
        ).to_message())
        assert engine.in_process.wait(5.0)

        queued = [frame(i) for i in range(2, 6)]
        wires = [control.transfer(b) for b in queued]
        for frame_id, wire in zip(range(2, 6), wires):
            control.send(ProcessFrameRequest(
                frame_id=frame_id, width=32, height=24, bitmap=wire,
            ).to_message())

        deadline = time.monotonic() + 5.0
        while session.get_stats()["frames_received"] < 5 and time.monotonic() < deadline:
            time.sleep(0.01)
        engine.process_gate.set()

        assert received.wait_for(has(MessageType.DETECTION_RESULT, 2))
        time.sleep(0.1)
        frame_ids = [m["payload"]["frameId"] for m in received.of_type(MessageType.DETECTION_RESULT)]
        assert frame_ids == [1, 5]
        assert session.get_stats()["frames_superseded"] == 3
        assert all(w.closed for w in wires[:3])

    def test_metadata_only_frame(self, harness):
        """Test a frame without bitmap yields no batch and no error."""
        engine = MockEngine(markers=[1])
        session, control, received = harness(engine)

        control.send(ProcessFrameRequest(frame_id=1, width=32, height=24).to_message())
        control.send(InitRequest().to_message())

        assert received.wait_for(has(MessageType.READY))
        time.sleep(0.1)
        assert received.of_type(MessageType.DETECTION_RESULT) == []
        assert received.of_type(MessageType.ERROR) == []
        assert engine.processed == 0

    def test_dimensionless_metadata_frame_leaves_init_unblocked(self, harness):
        """Test a frame with only an id does not attempt or block engine init."""
        session, control, received = harness(ArucoEngine())

        control.send(make_message(MessageType.PROCESS_FRAME, {"frameId": 1}))
        control.send(ProcessFrameRequest(
            frame_id=2, width=64, height=48, bitmap=control.transfer(frame(2, 64, 48)),
        ).to_message())

        deadline = time.monotonic() + 5.0
        while session.get_stats()["frames_processed"] < 1 and time.monotonic() < deadline:
            time.sleep(0.01)

        assert session.get_stats()["frames_processed"] == 1
        assert session.adapter.initialized
        assert received.of_type(MessageType.ERROR) == []

    def test_init_failure_reported_once_per_attempt(self, harness):
        """Test frames during backoff produce no further error messages."""
        _, control, received = harness(MockEngine(fail_init=True))

        for frame_id in range(5):
            control.send(ProcessFrameRequest(
                frame_id=frame_id, width=32, height=24, bitmap=control.transfer(frame(frame_id)),
            ).to_message())
            time.sleep(0.02)

        assert received.wait_for(has(MessageType.ERROR))
        time.sleep(0.1)
        errors = received.of_type(MessageType.ERROR)
        assert len(errors) == 1
        assert "initialization failed" in errors[0]["payload"]["message"]


# =============================================================================
# Close Tests
# =============================================================================


class TestClose:
    """Tests for session shutdown."""

    def test_close_disposes_engine(self):
        """Test close releases the engine and the channel."""
        engine = MockEngine()
        control, worker = QueueChannel.pair()
        session = WorkerSession(engine, worker)
        session.start()

        session.close()
        session.close()

        assert engine.disposed
        assert not worker.is_open
        control.close()

    def test_close_releases_pending_frame(self):
        """Test a frame still waiting in the slot is released on close."""
        engine = MockEngine()
        engine.process_gate = threading.Event()
        control, worker = QueueChannel.pair()
        session = WorkerSession(engine, worker)
        session.start()

        session.handle_message(ProcessFrameRequest(
            frame_id=1, width=32, height=24, bitmap=frame(1),
        ).to_message())
        assert engine.in_process.wait(5.0)
        waiting = frame(2)
        session.handle_message(ProcessFrameRequest(
            frame_id=2, width=32, height=24, bitmap=waiting,
        ).to_message())

        engine.process_gate.set()
        session.close()

        assert waiting.closed
        control.close()
