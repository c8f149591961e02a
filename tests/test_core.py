"""Tests for core types: bitmaps, detections, the engine contract and filters."""

import numpy as np
import pytest

from markerpath.core import (
    Bitmap,
    Detection,
    EngineCapabilityError,
    ImageData,
    IsolationLevel,
    MarkerEvent,
    RasterBuffer,
    RawEventFilter,
    RawMarkerEvent,
    TransferError,
    Transition,
    check_engine,
)
from markerpath.core.engine import DetectionEngine, MarkerInfo
from markerpath.core.types import normalize_corners


# =============================================================================
# Bitmap Tests
# =============================================================================


class TestBitmap:
    """Tests for transferable bitmaps."""

    def test_dimensions(self):
        """Test width and height come from the pixel array."""
        bitmap = Bitmap(np.zeros((48, 64, 3), dtype=np.uint8))
        assert (bitmap.width, bitmap.height) == (64, 48)

    def test_rejects_bad_shape(self):
        """Test 1-D arrays are rejected."""
        with pytest.raises(ValueError):
            Bitmap(np.zeros(10, dtype=np.uint8))

    def test_transfer_moves_ownership(self):
        """Test transfer detaches the original and keeps the pixels."""
        pixels = np.ones((2, 2), dtype=np.uint8)
        original = Bitmap(pixels)

        moved = original.transfer()

        assert original.detached
        assert moved.data is pixels
        with pytest.raises(TransferError):
            original.data

    def test_transfer_twice(self):
        """Test a bitmap can only be transferred once."""
        original = Bitmap(np.ones((2, 2), dtype=np.uint8))
        original.transfer()

        with pytest.raises(TransferError):
            original.transfer()

    def test_close_idempotent(self):
        """Test close releases the pixels and can be repeated."""
        bitmap = Bitmap(np.ones((2, 2), dtype=np.uint8))

        with bitmap:
            pass
        bitmap.close()

        assert bitmap.closed
        with pytest.raises(ValueError):
            bitmap.data

    def test_closed_cannot_transfer(self):
        """Test closed bitmaps cannot be transferred."""
        bitmap = Bitmap(np.ones((2, 2), dtype=np.uint8))
        bitmap.close()

        with pytest.raises(TransferError):
            bitmap.transfer()


class TestRasterBuffer:
    """Tests for the reusable raster."""

    def test_draw_same_size(self):
        """Test a same-size bitmap is copied unchanged."""
        raster = RasterBuffer(4, 3)
        pixels = np.arange(36, dtype=np.uint8).reshape(3, 4, 3)

        raster.draw(Bitmap(pixels))

        np.testing.assert_array_equal(raster.pixels, pixels)

    def test_draw_scales(self):
        """Test a bitmap of another size is scaled to the raster."""
        raster = RasterBuffer(8, 6)

        raster.draw(Bitmap(np.full((3, 4, 3), 200, dtype=np.uint8)))

        assert raster.pixels.shape == (6, 8, 3)
        assert raster.pixels.min() == 200

    def test_image_data(self):
        """Test the RGBA fallback form."""
        raster = RasterBuffer(4, 3)
        raster.pixels[:] = (255, 0, 0)  # BGR blue

        image = raster.image_data()

        assert isinstance(image, ImageData)
        assert image.data.shape == (3, 4, 4)
        assert tuple(image.data[0, 0]) == (0, 0, 255, 255)

    def test_invalid_size(self):
        """Test non-positive sizes are rejected."""
        with pytest.raises(ValueError):
            RasterBuffer(0, 10)


# =============================================================================
# Type Tests
# =============================================================================


class TestTypes:
    """Tests for detection and event types."""

    @pytest.mark.parametrize("vertex", [
        [[0, 0], [1, 0], [1, 1], [0, 1]],
        [{"x": 0, "y": 0}, {"x": 1, "y": 0}, {"x": 1, "y": 1}, {"x": 0, "y": 1}],
        [0, 0, 1, 0, 1, 1, 0, 1],
    ])
    def test_normalize_corners(self, vertex):
        """Test all corner encodings normalize to point tuples."""
        assert normalize_corners(vertex) == ((0.0, 0.0), (1.0, 0.0), (1.0, 1.0), (0.0, 1.0))

    def test_detection_from_dict(self):
        """Test wire dicts parse with camelCase keys."""
        det = Detection.from_dict({"id": 3, "confidence": 0.9, "poseMatrix": [0] * 16, "frameId": 12})

        assert det.frame_id == 12
        assert det.pose_matrix == (0.0,) * 16

    def test_detection_from_raw_event(self):
        """Test pattern id wins over matrix id and the pose is truncated to 16."""
        event = RawMarkerEvent(marker_type=0, matrix=(1.0,) * 20, id_patt=4, cf_patt=0.8, id_matrix=9)

        det = Detection.from_raw_event(event, frame_id=5)

        assert det.id == 4
        assert det.confidence == 0.8
        assert len(det.pose_matrix) == 16
        assert det.frame_id == 5

    def test_event_to_dict(self):
        """Test found events carry pose, confidence and corners."""
        event = MarkerEvent(
            transition=Transition.FOUND,
            id=1,
            timestamp=5.0,
            pose_matrix=(0.0,) * 16,
            confidence=0.9,
            corners=((0.0, 0.0),),
            frame_id=2,
        )

        data = event.to_dict()

        assert data["poseMatrix"] == [0.0] * 16
        assert data["corners"] == [[0.0, 0.0]]
        assert data["frameId"] == 2


# =============================================================================
# Engine Contract Tests
# =============================================================================


class MinimalEngine(DetectionEngine):
    """Engine reporting one marker per frame."""

    @property
    def name(self) -> str:
        return "minimal"

    def initialize(self, width, height, camera_parameters=None):
        pass

    def load_marker(self, pattern_key):
        return 1

    def track_pattern_marker(self, marker_id, size):
        pass

    def process(self, source):
        pass

    def get_marker_count(self):
        return 1

    def get_marker(self, index):
        return MarkerInfo(id_patt=1, cf_patt=0.7, vertex=((0, 0), (1, 0), (1, 1), (0, 1)))

    def get_pose(self, index):
        return np.eye(4).flatten()


class TestEngineContract:
    """Tests for DetectionEngine and check_engine()."""

    def test_detect_emits_events(self):
        """Test detect() reports markers to listeners."""
        engine = MinimalEngine()
        events = []
        engine.add_marker_listener(events.append)

        assert engine.detect(None) == 1

        assert events[0].id_patt == 1
        assert events[0].matrix == tuple(np.eye(4).flatten())

    def test_remove_listener(self):
        """Test removed listeners receive nothing."""
        engine = MinimalEngine()
        events = []
        engine.add_marker_listener(events.append)
        engine.remove_marker_listener(events.append)

        engine.detect(None)

        assert events == []

    def test_check_engine_accepts(self):
        """Test a complete engine passes the check."""
        check_engine(MinimalEngine())

    def test_check_engine_version(self):
        """Test a mismatched API version is rejected."""
        engine = MinimalEngine()
        engine.API_VERSION = 99

        with pytest.raises(EngineCapabilityError, match="v99"):
            check_engine(engine)


# =============================================================================
# Filter Tests
# =============================================================================


def payload(marker_type=0, id_patt=1, cf_patt=0.9, cf_matrix=None, matrix_len=16):
    return {
        "type": marker_type,
        "matrix": [0.0] * matrix_len,
        "marker": {"idPatt": id_patt, "cfPatt": cf_patt, "cfMatrix": cf_matrix},
    }


class TestRawEventFilter:
    """Tests for RawEventFilter."""

    def test_accepts_good_event(self):
        """Test a confident pattern event passes."""
        assert RawEventFilter().accepts(payload())

    def test_confidence_threshold(self):
        """Test events below the minimum confidence are rejected."""
        event_filter = RawEventFilter(min_confidence=0.6)

        assert not event_filter.accepts(payload(cf_patt=0.5))
        assert event_filter.accepts(payload(cf_patt=0.6))

    def test_matrix_confidence_fallback(self):
        """Test cfMatrix is used when cfPatt is missing."""
        assert RawEventFilter().accepts(payload(cf_patt=None, cf_matrix=0.9))
        assert not RawEventFilter().accepts(payload(cf_patt=None))

    def test_wrong_type(self):
        """Test other marker types are rejected."""
        assert not RawEventFilter().accepts(payload(marker_type=1))

    def test_short_matrix(self):
        """Test matrices shorter than 16 entries are rejected."""
        assert not RawEventFilter().accepts(payload(matrix_len=12))

    def test_tracked_ids(self):
        """Test a non-empty tracked set restricts pattern ids."""
        event_filter = RawEventFilter()
        event_filter.track(3)

        assert event_filter.accepts(payload(id_patt=3))
        assert not event_filter.accepts(payload(id_patt=4))

    def test_payload_not_modified(self):
        """Test the filter only inspects the payload."""
        event = payload()
        snapshot = {**event, "marker": dict(event["marker"])}

        RawEventFilter().accepts(event)

        assert event == snapshot

    def test_not_a_dict(self):
        """Test malformed payloads are rejected."""
        assert not RawEventFilter().accepts(None)


class TestIsolationLevel:
    """Tests for IsolationLevel."""

    def test_from_string(self):
        """Test parsing level names."""
        assert IsolationLevel.from_string("Process") is IsolationLevel.PROCESS

    def test_unknown(self):
        """Test unknown names are rejected."""
        with pytest.raises(ValueError, match="Unknown isolation level"):
            IsolationLevel.from_string("container")
