"""ArUco detection engine built on OpenCV.

Patterns are ArUco markers. A pattern key is either an image file
containing one marker (its decoded id becomes the marker id) or a literal
``"aruco:<id>"`` reference.

Poses come from ``cv2.solvePnP`` on the marker's four corners. Camera
intrinsics are read from an ``.npz`` calibration file holding
``camera_matrix`` and ``dist_coeffs``; without one, a pinhole camera with
focal length ``max(width, height)`` centred on the frame is assumed.

Example:
    >>> engine = ArucoEngine(dictionary="DICT_4X4_50")
    >>> engine.initialize(640, 480)
    >>> marker_id = engine.load_marker("markers/hiro.png")
    >>> engine.track_pattern_marker(marker_id, size=0.08)
    >>> engine.detect(raster)
    1
"""

import logging
import os
from typing import Any, Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from markerpath.core.bitmap import ImageData, RasterBuffer
from markerpath.core.engine import PATTERN_MARKER, DetectionEngine, MarkerInfo
from markerpath.core.errors import LoadMarkerError

logger = logging.getLogger(__name__)

LITERAL_PREFIX = "aruco:"

_IDENTITY_POSE = tuple(float(v) for v in np.eye(4).flatten(order="F"))


def _to_gray(source: Any) -> np.ndarray:
    if isinstance(source, RasterBuffer):
        return source.gray()
    if isinstance(source, ImageData):
        return cv2.cvtColor(source.data, cv2.COLOR_RGBA2GRAY)
    if isinstance(source, np.ndarray):
        if source.ndim == 2:
            return source
        if source.shape[2] == 4:
            return cv2.cvtColor(source, cv2.COLOR_BGRA2GRAY)
        return cv2.cvtColor(source, cv2.COLOR_BGR2GRAY)
    raise TypeError(f"Unsupported frame source: {type(source).__name__}")


def pose_from_vectors(rvec: np.ndarray, tvec: np.ndarray) -> Tuple[float, ...]:
    """4x4 model-view transform as 16 column-major floats."""
    rotation, _ = cv2.Rodrigues(rvec)
    transform = np.eye(4, dtype=np.float64)
    transform[:3, :3] = rotation
    transform[:3, 3] = np.asarray(tvec, dtype=np.float64).reshape(3)
    return tuple(float(v) for v in transform.flatten(order="F"))


class ArucoEngine(DetectionEngine):
    """OpenCV ArUco marker engine.

    Args:
        dictionary: Name of a predefined ArUco dictionary.
        report_untracked: Also report markers that were never passed to
            ``track_pattern_marker()`` (pose computed with size 1.0).
        quiet_zone: Border added around pattern images before decoding,
            as a fraction of the image size.
    """

    def __init__(
        self,
        dictionary: str = "DICT_4X4_50",
        report_untracked: bool = False,
        quiet_zone: float = 0.25,
    ):
        if not hasattr(cv2.aruco, dictionary):
            raise ValueError(f"Unknown ArUco dictionary: {dictionary}")
        self._dictionary_name = dictionary
        self._report_untracked = report_untracked
        self._quiet_zone = quiet_zone

        self._detector: Optional[Any] = None  # cv2.aruco.ArucoDetector
        self._camera_matrix: Optional[np.ndarray] = None
        self._dist_coeffs: Optional[np.ndarray] = None
        self._tracked: Dict[int, float] = {}

        self._markers: List[MarkerInfo] = []
        self._poses: List[Tuple[float, ...]] = []

    @property
    def name(self) -> str:
        return "aruco"

    @property
    def initialized(self) -> bool:
        return self._detector is not None

    @property
    def tracked_markers(self) -> Dict[int, float]:
        return dict(self._tracked)

    def _build_detector(self) -> Any:
        dictionary = cv2.aruco.getPredefinedDictionary(
            getattr(cv2.aruco, self._dictionary_name)
        )
        return cv2.aruco.ArucoDetector(dictionary, cv2.aruco.DetectorParameters())

    def initialize(
        self,
        width: int,
        height: int,
        camera_parameters: Optional[str] = None,
    ) -> None:
        if width <= 0 or height <= 0:
            raise ValueError(f"Invalid frame size {width}x{height}")

        if camera_parameters:
            camera_matrix, dist_coeffs = self._load_calibration(camera_parameters)
        else:
            focal = float(max(width, height))
            camera_matrix = np.array([
                [focal, 0.0, width / 2.0],
                [0.0, focal, height / 2.0],
                [0.0, 0.0, 1.0],
            ])
            dist_coeffs = np.zeros((5, 1))

        self._camera_matrix = camera_matrix
        self._dist_coeffs = dist_coeffs
        self._detector = self._build_detector()
        logger.debug(f"ArUco engine ready ({self._dictionary_name}, {width}x{height})")

    @staticmethod
    def _load_calibration(path: str) -> Tuple[np.ndarray, np.ndarray]:
        if not os.path.isfile(path):
            raise FileNotFoundError(f"Camera parameters not found: {path}")
        with np.load(path) as calibration:
            camera_matrix = np.asarray(calibration["camera_matrix"], dtype=np.float64)
            dist_coeffs = np.asarray(calibration["dist_coeffs"], dtype=np.float64)
        if camera_matrix.shape != (3, 3):
            raise ValueError(f"camera_matrix must be 3x3, got {camera_matrix.shape}")
        return camera_matrix, dist_coeffs

    def load_marker(self, pattern_key: str) -> int:
        """Resolve a pattern key to an ArUco id.

        Raises:
            LoadMarkerError: If the key is malformed, the image cannot be
                read, or it does not contain exactly one marker.
        """
        if pattern_key.startswith(LITERAL_PREFIX):
            try:
                return int(pattern_key[len(LITERAL_PREFIX):])
            except ValueError as e:
                raise LoadMarkerError(f"Invalid marker reference '{pattern_key}'") from e

        image = cv2.imread(pattern_key, cv2.IMREAD_GRAYSCALE)
        if image is None:
            raise LoadMarkerError(f"Cannot read pattern image '{pattern_key}'")

        border = int(max(image.shape) * self._quiet_zone)
        if border > 0:
            image = cv2.copyMakeBorder(
                image, border, border, border, border,
                cv2.BORDER_CONSTANT, value=255,
            )

        detector = self._detector or self._build_detector()
        _, ids, _ = detector.detectMarkers(image)
        if ids is None or len(ids) == 0:
            raise LoadMarkerError(f"No {self._dictionary_name} marker found in '{pattern_key}'")
        if len(ids) > 1:
            raise LoadMarkerError(f"Pattern image '{pattern_key}' contains {len(ids)} markers")
        return int(ids.flatten()[0])

    def track_pattern_marker(self, marker_id: int, size: float) -> None:
        self._tracked[int(marker_id)] = float(size)

    def process(self, source: Any) -> None:
        if self._detector is None:
            raise RuntimeError("ArUco engine is not initialized")

        gray = _to_gray(source)
        corners, ids, _ = self._detector.detectMarkers(gray)

        self._markers = []
        self._poses = []
        if ids is None:
            return

        for marker_corners, marker_id in zip(corners, ids.flatten()):
            marker_id = int(marker_id)
            size = self._tracked.get(marker_id)
            if size is None:
                if not self._report_untracked:
                    continue
                size = 1.0

            image_points = np.asarray(marker_corners, dtype=np.float64).reshape(4, 2)
            self._markers.append(MarkerInfo(
                marker_type=PATTERN_MARKER,
                id_patt=marker_id,
                cf_patt=1.0,
                vertex=tuple((float(x), float(y)) for x, y in image_points),
            ))
            self._poses.append(self._estimate_pose(image_points, size))

    def _estimate_pose(self, image_points: np.ndarray, size: float) -> Tuple[float, ...]:
        half = size / 2.0
        object_points = np.array([
            [-half, half, 0.0],
            [half, half, 0.0],
            [half, -half, 0.0],
            [-half, -half, 0.0],
        ])
        ok, rvec, tvec = cv2.solvePnP(
            object_points,
            image_points,
            self._camera_matrix,
            self._dist_coeffs,
            flags=cv2.SOLVEPNP_IPPE_SQUARE,
        )
        if not ok:
            logger.debug("solvePnP failed, reporting identity pose")
            return _IDENTITY_POSE
        return pose_from_vectors(rvec, tvec)

    def get_marker_count(self) -> int:
        return len(self._markers)

    def get_marker(self, index: int) -> MarkerInfo:
        return self._markers[index]

    def get_pose(self, index: int) -> Sequence[float]:
        return self._poses[index]

    def dispose(self) -> None:
        self._detector = None
        self._markers = []
        self._poses = []


__all__ = ["ArucoEngine", "pose_from_vectors", "LITERAL_PREFIX"]
