"""Tests for the OpenCV ArUco engine."""

import cv2
import numpy as np
import pytest

from markerpath.core import Bitmap, ImageData, LoadMarkerError, RasterBuffer, check_engine
from markerpath.engines.aruco import ArucoEngine, pose_from_vectors


# =============================================================================
# Fixtures
# =============================================================================


def marker_image(marker_id: int, side: int = 200) -> np.ndarray:
    dictionary = cv2.aruco.getPredefinedDictionary(cv2.aruco.DICT_4X4_50)
    return cv2.aruco.generateImageMarker(dictionary, marker_id, side)


def scene(*placements, width: int = 640, height: int = 480) -> np.ndarray:
    """White BGR frame with markers pasted at (marker_id, x, y)."""
    frame = np.full((height, width, 3), 255, dtype=np.uint8)
    for marker_id, x, y in placements:
        tile = cv2.cvtColor(marker_image(marker_id, 160), cv2.COLOR_GRAY2BGR)
        frame[y:y + 160, x:x + 160] = tile
    return frame


@pytest.fixture
def engine():
    engine = ArucoEngine()
    engine.initialize(640, 480)
    yield engine
    engine.dispose()


# =============================================================================
# Construction and Initialization
# =============================================================================


class TestInitialize:
    """Tests for engine construction and initialize()."""

    def test_satisfies_contract(self):
        """Test the engine passes the contract check."""
        check_engine(ArucoEngine())

    def test_unknown_dictionary(self):
        """Test unknown dictionary names are rejected."""
        with pytest.raises(ValueError, match="Unknown ArUco dictionary"):
            ArucoEngine(dictionary="DICT_NOPE")

    def test_initialize(self):
        """Test initialize() prepares the detector."""
        engine = ArucoEngine()
        assert not engine.initialized

        engine.initialize(320, 240)

        assert engine.initialized

    def test_invalid_size(self):
        """Test non-positive frame sizes fail initialization."""
        with pytest.raises(ValueError):
            ArucoEngine().initialize(0, 480)

    def test_missing_calibration(self, tmp_path):
        """Test a missing calibration file fails initialization."""
        with pytest.raises(FileNotFoundError):
            ArucoEngine().initialize(640, 480, str(tmp_path / "missing.npz"))

    def test_calibration_file(self, tmp_path):
        """Test intrinsics are read from an npz file."""
        path = tmp_path / "camera.npz"
        camera_matrix = np.array([[500.0, 0, 320], [0, 500.0, 240], [0, 0, 1]])
        np.savez(path, camera_matrix=camera_matrix, dist_coeffs=np.zeros(5))

        engine = ArucoEngine()
        engine.initialize(640, 480, str(path))

        np.testing.assert_array_equal(engine._camera_matrix, camera_matrix)

    def test_bad_calibration_shape(self, tmp_path):
        """Test a malformed camera matrix is rejected."""
        path = tmp_path / "camera.npz"
        np.savez(path, camera_matrix=np.eye(2), dist_coeffs=np.zeros(5))

        with pytest.raises(ValueError, match="3x3"):
            ArucoEngine().initialize(640, 480, str(path))

    def test_process_before_initialize(self):
        """Test processing without initialization fails."""
        with pytest.raises(RuntimeError, match="not initialized"):
            ArucoEngine().process(scene())


# =============================================================================
# Pattern Loading
# =============================================================================


class TestLoadMarker:
    """Tests for load_marker()."""

    def test_literal_reference(self, engine):
        """Test aruco:<id> references resolve without reading files."""
        assert engine.load_marker("aruco:7") == 7

    def test_bad_literal(self, engine):
        """Test non-numeric literal references fail."""
        with pytest.raises(LoadMarkerError, match="Invalid marker reference"):
            engine.load_marker("aruco:seven")

    def test_image_pattern(self, engine, tmp_path):
        """Test the marker id is decoded from a pattern image."""
        path = tmp_path / "marker.png"
        cv2.imwrite(str(path), marker_image(23))

        assert engine.load_marker(str(path)) == 23

    def test_load_before_initialize(self, tmp_path):
        """Test pattern images can be decoded before initialize()."""
        path = tmp_path / "marker.png"
        cv2.imwrite(str(path), marker_image(5))

        assert ArucoEngine().load_marker(str(path)) == 5

    def test_unreadable_image(self, engine, tmp_path):
        """Test missing files raise LoadMarkerError."""
        with pytest.raises(LoadMarkerError, match="Cannot read"):
            engine.load_marker(str(tmp_path / "missing.png"))

    def test_blank_image(self, engine, tmp_path):
        """Test images without a marker raise LoadMarkerError."""
        path = tmp_path / "blank.png"
        cv2.imwrite(str(path), np.full((200, 200), 255, dtype=np.uint8))

        with pytest.raises(LoadMarkerError, match="No DICT_4X4_50 marker"):
            engine.load_marker(str(path))

    def test_several_markers(self, engine, tmp_path):
        """Test images with more than one marker are rejected."""
        path = tmp_path / "pair.png"
        cv2.imwrite(str(path), scene((1, 40, 40), (2, 400, 40)))

        with pytest.raises(LoadMarkerError, match="contains 2 markers"):
            engine.load_marker(str(path))


# =============================================================================
# Detection
# =============================================================================


class TestDetection:
    """Tests for process() and detect()."""

    def test_detects_tracked_marker(self, engine):
        """Test a tracked marker is reported with corners and pose."""
        engine.track_pattern_marker(3, 0.08)

        engine.process(scene((3, 240, 160)))

        assert engine.get_marker_count() == 1
        info = engine.get_marker(0)
        assert info.id_patt == 3
        assert info.cf_patt == 1.0
        assert len(info.vertex) == 4
        assert len(engine.get_pose(0)) == 16

    def test_pose_translation(self, engine):
        """Test the pose places the marker in front of the camera."""
        engine.track_pattern_marker(3, 0.08)

        engine.process(scene((3, 240, 160)))

        pose = engine.get_pose(0)
        # Column-major: translation is elements 12..14.
        assert pose[14] > 0
        assert pose[15] == 1.0

    def test_untracked_skipped(self, engine):
        """Test markers never tracked are not reported by default."""
        engine.track_pattern_marker(3, 0.08)

        engine.process(scene((3, 40, 40), (9, 400, 40)))

        assert [engine.get_marker(i).id_patt for i in range(engine.get_marker_count())] == [3]

    def test_report_untracked(self):
        """Test report_untracked reports every decoded marker."""
        engine = ArucoEngine(report_untracked=True)
        engine.initialize(640, 480)

        engine.process(scene((3, 40, 40), (9, 400, 40)))

        ids = sorted(engine.get_marker(i).id_patt for i in range(engine.get_marker_count()))
        assert ids == [3, 9]

    def test_empty_frame(self, engine):
        """Test frames without markers clear previous results."""
        engine.track_pattern_marker(3, 0.08)
        engine.process(scene((3, 240, 160)))

        engine.process(scene())

        assert engine.get_marker_count() == 0

    @pytest.mark.parametrize("form", ["raster", "image_data", "gray"])
    def test_source_forms(self, engine, form):
        """Test every supported frame source is accepted."""
        engine.track_pattern_marker(4, 0.05)
        frame = scene((4, 240, 160))
        raster = RasterBuffer(640, 480)
        raster.draw(Bitmap(frame))
        source = {
            "raster": raster,
            "image_data": raster.image_data(),
            "gray": cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY),
        }[form]

        engine.process(source)

        assert engine.get_marker_count() == 1

    def test_unsupported_source(self, engine):
        """Test unknown source types are rejected."""
        with pytest.raises(TypeError):
            engine.process("not a frame")

    def test_detect_emits_raw_events(self, engine):
        """Test detect() reports raw events to listeners."""
        events = []
        engine.add_marker_listener(events.append)
        engine.track_pattern_marker(3, 0.08)

        count = engine.detect(scene((3, 240, 160)))

        assert count == 1
        assert events[0].id_patt == 3
        assert len(events[0].matrix) == 16

    def test_dispose(self, engine):
        """Test dispose() releases the detector."""
        engine.dispose()

        assert not engine.initialized


class TestPoseFromVectors:
    """Tests for pose_from_vectors()."""

    def test_identity_rotation(self):
        """Test zero rotation yields identity with the translation column."""
        pose = pose_from_vectors(np.zeros(3), np.array([0.1, 0.2, 0.3]))

        assert pose[:12] == (1.0, 0.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 0.0, 1.0, 0.0)
        assert pose[12:] == pytest.approx((0.1, 0.2, 0.3, 1.0))
