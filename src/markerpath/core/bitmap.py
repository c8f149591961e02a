"""Transferable bitmaps and the reusable raster buffer.

A Bitmap has single ownership. ``transfer()`` moves the pixels into a new
Bitmap and detaches the original, so the sender cannot touch them again.
The receiver releases the bitmap exactly once, normally with ``with``.

Pixels use OpenCV's layout: ``uint8`` arrays shaped (H, W) for grayscale,
(H, W, 3) for BGR or (H, W, 4) for BGRA.

Example:
    >>> frame = Bitmap(np.zeros((480, 640, 3), dtype=np.uint8))
    >>> moved = frame.transfer()       # frame is now detached
    >>> raster = RasterBuffer(640, 480)
    >>> with moved:
    ...     raster.draw(moved)
    >>> moved.closed
    True
"""

from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np

from markerpath.core.errors import FrameProcessingError, TransferError


class Bitmap:
    """An image whose ownership can move between execution contexts."""

    def __init__(self, data: np.ndarray):
        if data.ndim not in (2, 3):
            raise ValueError(f"Bitmap data must be 2-D or 3-D, got shape {data.shape}")
        self._data: Optional[np.ndarray] = data
        self._closed = False
        self._detached = False

    @property
    def data(self) -> np.ndarray:
        if self._detached:
            raise TransferError("Bitmap has been transferred")
        if self._closed or self._data is None:
            raise ValueError("Bitmap is closed")
        return self._data

    @property
    def width(self) -> int:
        return int(self.data.shape[1])

    @property
    def height(self) -> int:
        return int(self.data.shape[0])

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def detached(self) -> bool:
        return self._detached

    def transfer(self) -> "Bitmap":
        """Move ownership of the pixels into a new Bitmap.

        Returns:
            A new Bitmap owning the pixels.

        Raises:
            TransferError: If this bitmap was already transferred or closed.
        """
        if self._detached:
            raise TransferError("Bitmap has already been transferred")
        if self._closed or self._data is None:
            raise TransferError("Cannot transfer a closed bitmap")
        moved = type(self)(self._data)
        self._data = None
        self._detached = True
        return moved

    def close(self) -> None:
        """Release the pixels. Further calls are no-ops."""
        if self._closed:
            return
        self._closed = True
        self._data = None

    def __enter__(self) -> "Bitmap":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __repr__(self) -> str:
        if self._detached:
            return "Bitmap(detached)"
        if self._closed:
            return "Bitmap(closed)"
        return f"Bitmap({self.width}x{self.height})"


@dataclass
class ImageData:
    """Raw RGBA pixels, the fallback submission form for engines.

    Attributes:
        width: Width in pixels.
        height: Height in pixels.
        data: ``uint8`` array shaped (height, width, 4), RGBA order.
    """

    width: int
    height: int
    data: np.ndarray


class RasterBuffer:
    """Reusable BGR canvas sized to the current frame.

    The frame pipeline keeps one instance and only reallocates when the
    requested dimensions change.
    """

    def __init__(self, width: int, height: int):
        if width <= 0 or height <= 0:
            raise ValueError(f"Invalid raster size {width}x{height}")
        self.width = width
        self.height = height
        self.pixels = np.zeros((height, width, 3), dtype=np.uint8)

    def matches(self, width: int, height: int) -> bool:
        return self.width == width and self.height == height

    def clear(self) -> None:
        self.pixels.fill(0)

    def draw(self, bitmap: Bitmap) -> None:
        """Composite a bitmap into the buffer, scaling to fit.

        Raises:
            FrameProcessingError: If the bitmap's pixel format is unsupported.
        """
        src = bitmap.data
        if src.dtype != np.uint8:
            raise FrameProcessingError(f"Unsupported bitmap dtype: {src.dtype}")

        if src.ndim == 2:
            src = cv2.cvtColor(src, cv2.COLOR_GRAY2BGR)
        elif src.shape[2] == 4:
            src = cv2.cvtColor(src, cv2.COLOR_BGRA2BGR)
        elif src.shape[2] != 3:
            raise FrameProcessingError(f"Unsupported channel count: {src.shape[2]}")

        if src.shape[0] == self.height and src.shape[1] == self.width:
            np.copyto(self.pixels, src)
        else:
            resized = cv2.resize(
                src, (self.width, self.height), interpolation=cv2.INTER_LINEAR
            )
            np.copyto(self.pixels, resized)

    def image_data(self) -> ImageData:
        """Return a copy of the buffer as RGBA pixels."""
        rgba = cv2.cvtColor(self.pixels, cv2.COLOR_BGR2RGBA)
        return ImageData(width=self.width, height=self.height, data=rgba)

    def gray(self) -> np.ndarray:
        """Return a grayscale copy of the buffer."""
        return cv2.cvtColor(self.pixels, cv2.COLOR_BGR2GRAY)


__all__ = ["Bitmap", "ImageData", "RasterBuffer"]
