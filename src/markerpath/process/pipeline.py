"""Worker-side per-frame processing.

For every accepted frame carrying a bitmap (metadata-only frames are
acknowledged without touching the engine):

1. make sure the engine is initialized (never waits out a backoff window),
2. composite the bitmap into a reusable RasterBuffer, reallocated only when
   the frame size changes,
3. release the bitmap exactly once,
4. run detection on the raster, retrying once with raw RGBA pixels,
5. drain the engine's marker events into a FrameResult.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional

from markerpath.core.bitmap import Bitmap, RasterBuffer
from markerpath.core.types import Detection, RawMarkerEvent
from markerpath.observability import ObservabilityHub
from markerpath.observability.records import FrameDropRecord, TimingRecord
from markerpath.process.adapter import EngineAdapter

logger = logging.getLogger(__name__)


@dataclass
class FrameResult:
    """Outcome of one processed frame.

    Attributes:
        frame_id: Id of the processed frame.
        detections: Detections tagged with ``frame_id``.
        raw_events: Engine marker events, in emission order.
        processing_ms: Worker processing time.
    """
    frame_id: int
    detections: List[Detection] = field(default_factory=list)
    raw_events: List[RawMarkerEvent] = field(default_factory=list)
    processing_ms: float = 0.0


class FramePipeline:
    """Turns frames into detections using one EngineAdapter.

    Not thread-safe: the worker session drives it from its frame thread only.

    Args:
        adapter: Engine adapter owning initialization and marker events.
        slow_threshold_ms: Frames slower than this are flagged in
            TimingRecords.
        observability_hub: Optional hub for timing and drop records.
    """

    def __init__(
        self,
        adapter: EngineAdapter,
        slow_threshold_ms: float = 50.0,
        observability_hub: Optional[ObservabilityHub] = None,
    ):
        self._adapter = adapter
        self._slow_threshold_ms = slow_threshold_ms
        self._hub = observability_hub or ObservabilityHub.get_instance()
        self._raster: Optional[RasterBuffer] = None
        self._frames_processed = 0

    @property
    def raster(self) -> Optional[RasterBuffer]:
        return self._raster

    @property
    def frames_processed(self) -> int:
        return self._frames_processed

    def process_frame(
        self,
        frame_id: int,
        bitmap: Optional[Bitmap],
        width: int,
        height: int,
    ) -> Optional[FrameResult]:
        """Process one frame.

        Args:
            frame_id: Id of the frame, copied onto every detection.
            bitmap: Frame pixels, or None for a metadata-only frame. Always
                released before this method returns.
            width: Frame width.
            height: Frame height.

        Returns:
            FrameResult, or None if the frame yielded nothing because the
            engine is unavailable or processing failed.
        """
        start = time.perf_counter()

        if bitmap is not None and (width <= 0 or height <= 0):
            try:
                width, height = bitmap.width, bitmap.height
            except Exception as e:
                logger.warning(f"Frame {frame_id}: unusable bitmap: {e}")
                bitmap.close()
                self._trace_drop(frame_id, "processing_error")
                return None

        if bitmap is None:
            # Metadata-only frame: nothing to detect, no engine init
            return FrameResult(frame_id=frame_id)

        if not self._adapter.ensure_initialized(width, height):
            bitmap.close()
            self._trace_drop(frame_id, "init_backoff")
            return None

        with bitmap:
            try:
                if self._raster is None or not self._raster.matches(width, height):
                    self._raster = RasterBuffer(width, height)
                self._raster.draw(bitmap)
            except Exception as e:
                logger.warning(f"Frame {frame_id}: compositing failed: {e}")
                self._trace_drop(frame_id, "processing_error")
                return None

        if not self._detect(frame_id):
            # Discard events of a half-processed frame
            self._adapter.drain_events()
            self._trace_drop(frame_id, "processing_error")
            return None

        raw_events = self._adapter.drain_events()
        detections = [
            Detection.from_raw_event(event, frame_id)
            for event in raw_events
            if event.id_patt is not None or event.id_matrix is not None
        ]

        elapsed_ms = (time.perf_counter() - start) * 1000
        self._frames_processed += 1
        self._trace_timing(frame_id, elapsed_ms, len(detections))

        return FrameResult(
            frame_id=frame_id,
            detections=detections,
            raw_events=raw_events,
            processing_ms=elapsed_ms,
        )

    def _detect(self, frame_id: int) -> bool:
        engine = self._adapter.engine
        raster = self._raster
        try:
            engine.detect(raster)
            return True
        except Exception as e:
            logger.debug(f"Frame {frame_id}: raster detection failed ({e}), retrying with image data")
        self._adapter.drain_events()

        try:
            engine.detect(raster.image_data())
            return True
        except Exception as e:
            logger.warning(f"Frame {frame_id}: detection failed: {e}")
            return False

    def _trace_drop(self, frame_id: int, reason: str) -> None:
        if not self._hub.enabled:
            return
        self._hub.emit(FrameDropRecord(
            dropped_frame_ids=[frame_id],
            reason=reason,
        ))

    def _trace_timing(self, frame_id: int, elapsed_ms: float, detections: int) -> None:
        if not self._hub.enabled:
            return
        self._hub.emit(TimingRecord(
            frame_id=frame_id,
            component="frame_pipeline",
            processing_ms=elapsed_ms,
            detections=detections,
            threshold_ms=self._slow_threshold_ms,
            is_slow=elapsed_ms > self._slow_threshold_ms,
        ))


__all__ = ["FrameResult", "FramePipeline"]
