"""Detection engines shipped with markerpath.

- aruco: OpenCV ArUco markers (``markerpath.engines.aruco.ArucoEngine``)
"""

from markerpath.engines.aruco import ArucoEngine

__all__ = ["ArucoEngine"]
