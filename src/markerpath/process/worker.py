"""Worker side: session object and subprocess entry point.

A WorkerSession owns everything that lives in the worker: the engine
adapter, the pattern registry, the frame pipeline and the latest-frame slot.
It is driven entirely by messages arriving on its channel:

- ``init`` stores engine bootstrap options and answers ``ready``.
- ``loadMarker`` runs on the RPC thread pool and answers
  ``loadMarkerResult``.
- ``processFrame`` goes into the latest-frame slot; the frame thread picks
  it up and answers with ``getMarker`` events and a ``detectionResult``
  batch when markers were found.
- ``shutdown`` stops the session.

Usage:
    python -m markerpath.process.worker --engine aruco --ipc-address ipc:///tmp/xxx.sock

Or via the entry point:
    markerpath-worker --engine aruco --ipc-address ipc:///tmp/xxx.sock
"""

import argparse
import json
import logging
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, Optional

from markerpath.core.bitmap import Bitmap
from markerpath.core.engine import DetectionEngine
from markerpath.core.errors import InitializationError
from markerpath.observability import ObservabilityHub
from markerpath.observability.records import FrameDropRecord
from markerpath.process.adapter import (
    DEFAULT_BACKOFF_BASE_SEC,
    DEFAULT_BACKOFF_MAX_SEC,
    DEFAULT_MAX_FAILURE_COUNT,
    EngineAdapter,
)
from markerpath.process.channel import MessageChannel
from markerpath.process.messages import (
    DetectionBatch,
    ErrorNotice,
    InitRequest,
    LoadMarkerRequest,
    LoadMarkerResult,
    Message,
    MessageType,
    ProcessFrameRequest,
    make_message,
    parse_message,
)
from markerpath.process.pipeline import FramePipeline
from markerpath.process.registry import PatternRegistry

logger = logging.getLogger(__name__)

# Frame size used when a pattern load has to initialize the engine.
DEFAULT_INIT_WIDTH = 640
DEFAULT_INIT_HEIGHT = 480


@dataclass
class _PendingFrame:
    frame_id: int
    width: int
    height: int
    bitmap: Optional[Bitmap]


class WorkerSession:
    """All worker-side state, driven by one message channel.

    Args:
        engine: Detection engine to drive.
        channel: Worker end of the message channel.
        rpc_workers: Threads for init/loadMarker handling.
        backoff_base_sec: Engine init backoff after the first failure.
        backoff_max_sec: Upper bound of the init backoff.
        max_failure_count: Cap of the init failure counter.
        event_queue_size: Capacity of the raw marker event queue.
        observability_hub: Optional hub for worker trace records.

    Thread Safety:
        Messages are dispatched on the channel thread. Pattern loads run on
        the RPC pool and frames on a dedicated frame thread, so a slow frame
        never delays an RPC.
    """

    def __init__(
        self,
        engine: DetectionEngine,
        channel: MessageChannel,
        rpc_workers: int = 2,
        backoff_base_sec: float = DEFAULT_BACKOFF_BASE_SEC,
        backoff_max_sec: float = DEFAULT_BACKOFF_MAX_SEC,
        max_failure_count: int = DEFAULT_MAX_FAILURE_COUNT,
        event_queue_size: int = 64,
        observability_hub: Optional[ObservabilityHub] = None,
    ):
        self._channel = channel
        self._hub = observability_hub or ObservabilityHub.get_instance()

        self._adapter = EngineAdapter(
            engine,
            notify_error=self._send_error,
            backoff_base_sec=backoff_base_sec,
            backoff_max_sec=backoff_max_sec,
            max_failure_count=max_failure_count,
            event_queue_size=event_queue_size,
            observability_hub=self._hub,
        )
        self._registry = PatternRegistry(engine.load_marker)
        self._pipeline = FramePipeline(self._adapter, observability_hub=self._hub)

        self._rpc_workers = rpc_workers
        self._executor: Optional[ThreadPoolExecutor] = None

        self._frame_cond = threading.Condition()
        self._pending_frame: Optional[_PendingFrame] = None
        self._frame_thread: Optional[threading.Thread] = None

        self._init_width = DEFAULT_INIT_WIDTH
        self._init_height = DEFAULT_INIT_HEIGHT

        self._stopped = threading.Event()
        self._started = False
        self._closed = False
        self._close_lock = threading.Lock()

        # Stats
        self._frames_received = 0
        self._frames_superseded = 0

    @property
    def adapter(self) -> EngineAdapter:
        return self._adapter

    @property
    def registry(self) -> PatternRegistry:
        return self._registry

    @property
    def pipeline(self) -> FramePipeline:
        return self._pipeline

    @property
    def is_running(self) -> bool:
        return self._started and not self._stopped.is_set()

    def start(self) -> None:
        """Start the RPC pool, the frame thread and the channel."""
        if self._started:
            return

        self._executor = ThreadPoolExecutor(
            max_workers=self._rpc_workers,
            thread_name_prefix="markerpath-rpc",
        )
        self._frame_thread = threading.Thread(
            target=self._frame_loop,
            name="markerpath-frame",
            daemon=True,
        )
        self._frame_thread.start()

        self._channel.on_message(self.handle_message)
        self._channel.start()
        self._started = True
        logger.debug(f"Worker session started with engine '{self._adapter.engine.name}'")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the session is stopped. Returns True if stopped."""
        return self._stopped.wait(timeout)

    def close(self) -> None:
        """Stop processing, release pending resources and the engine."""
        with self._close_lock:
            if not self._started or self._closed:
                return
            self._closed = True

        self._stopped.set()
        with self._frame_cond:
            pending = self._pending_frame
            self._pending_frame = None
            self._frame_cond.notify_all()
        if pending is not None and pending.bitmap is not None:
            pending.bitmap.close()

        if self._frame_thread is not None and self._frame_thread is not threading.current_thread():
            self._frame_thread.join(timeout=5.0)
        self._frame_thread = None

        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

        self._adapter.dispose()
        self._channel.close()
        logger.debug("Worker session closed")

    # Dispatch --------------------------------------------------------------

    def handle_message(self, message: Message) -> None:
        """Dispatch one incoming message. Never raises."""
        msg_type, payload = parse_message(message)

        if self._stopped.is_set():
            logger.debug(f"Session stopped, ignoring '{msg_type}'")
            return

        try:
            if msg_type == MessageType.PROCESS_FRAME:
                self._handle_process_frame(payload)
            elif msg_type == MessageType.LOAD_MARKER:
                self._executor.submit(self._handle_load_marker, payload)
            elif msg_type == MessageType.INIT:
                self._handle_init(payload)
            elif msg_type == MessageType.SHUTDOWN:
                logger.info("Received shutdown signal")
                self._stopped.set()
                with self._frame_cond:
                    self._frame_cond.notify_all()
            elif msg_type == MessageType.ERROR:
                # Our own channel reporting that the control side is gone
                logger.warning(f"Channel error: {payload.get('message')}")
            else:
                logger.warning(f"Unknown message type: {msg_type}")
        except Exception as e:
            logger.error(f"Failed to handle '{msg_type}': {e}")
            self._send_error(f"Worker failed to handle '{msg_type}': {e}")

    def _handle_init(self, payload: Dict[str, Any]) -> None:
        request = InitRequest.from_payload(payload)
        if request.camera_parameters_url is not None:
            self._adapter.set_camera_parameters(request.camera_parameters_url)
        if request.width and request.height:
            self._init_width = int(request.width)
            self._init_height = int(request.height)
        if request.module_url or request.wasm_base_url:
            logger.debug(
                f"Engine bootstrap: module={request.module_url} wasm={request.wasm_base_url}"
            )
        self._channel.send(make_message(MessageType.READY))

    def _handle_load_marker(self, payload: Dict[str, Any]) -> None:
        request = LoadMarkerRequest.from_payload(payload)

        if not request.pattern_key:
            self._channel.send(LoadMarkerResult(
                request_id=request.request_id,
                ok=False,
                error="Missing patternKey parameter",
            ).to_message())
            return

        try:
            if not self._adapter.ensure_initialized(self._init_width, self._init_height):
                raise InitializationError("Detection engine is not initialized")

            marker_id = self._registry.load_once(request.pattern_key).result()
            self._adapter.engine.track_pattern_marker(marker_id, request.size)
        except Exception as e:
            logger.error(f"loadMarker '{request.pattern_key}' failed: {e}")
            self._channel.send(LoadMarkerResult(
                request_id=request.request_id,
                ok=False,
                error=str(e),
            ).to_message())
            return

        self._channel.send(LoadMarkerResult(
            request_id=request.request_id,
            ok=True,
            marker_id=marker_id,
            size=request.size,
        ).to_message())

    def _handle_process_frame(self, payload: Dict[str, Any]) -> None:
        request = ProcessFrameRequest.from_payload(payload)
        self._frames_received += 1

        bitmap: Optional[Bitmap] = None
        if request.bitmap is not None:
            try:
                bitmap = self._channel.receive_bitmap(request.bitmap)
            except Exception as e:
                logger.warning(f"Frame {request.frame_id}: bad bitmap, treating as metadata-only: {e}")

        frame = _PendingFrame(
            frame_id=request.frame_id,
            width=int(request.width or 0),
            height=int(request.height or 0),
            bitmap=bitmap,
        )

        with self._frame_cond:
            superseded = self._pending_frame
            self._pending_frame = frame
            self._frame_cond.notify()

        if superseded is not None:
            self._frames_superseded += 1
            if superseded.bitmap is not None:
                superseded.bitmap.close()
            logger.debug(f"Frame {superseded.frame_id} superseded by {frame.frame_id}")
            if self._hub.enabled:
                self._hub.emit(FrameDropRecord(
                    dropped_frame_ids=[superseded.frame_id],
                    reason="superseded",
                ))

    # Frame thread ----------------------------------------------------------

    def _frame_loop(self) -> None:
        while True:
            with self._frame_cond:
                while self._pending_frame is None and not self._stopped.is_set():
                    self._frame_cond.wait()
                if self._stopped.is_set():
                    return
                frame = self._pending_frame
                self._pending_frame = None

            try:
                self._process(frame)
            except Exception as e:
                logger.error(f"Frame {frame.frame_id}: unexpected error: {e}")

    def _process(self, frame: _PendingFrame) -> None:
        result = self._pipeline.process_frame(
            frame.frame_id, frame.bitmap, frame.width, frame.height
        )
        if result is None:
            return

        for event in result.raw_events:
            self._channel.send(make_message(MessageType.GET_MARKER, event.to_dict()))

        if result.detections:
            self._channel.send(DetectionBatch(
                frame_id=result.frame_id,
                detections=result.detections,
            ).to_message())

    def _send_error(self, message: str) -> None:
        self._channel.send(ErrorNotice(message).to_message())

    def get_stats(self) -> Dict[str, Any]:
        return {
            "frames_received": self._frames_received,
            "frames_superseded": self._frames_superseded,
            "frames_processed": self._pipeline.frames_processed,
            "patterns_loaded": len(self._registry),
            "engine_initialized": self._adapter.initialized,
            "init_failures": self._adapter.failure_count,
            "events_dropped": self._adapter.events_dropped,
        }


def run_worker(
    engine_name: str,
    ipc_address: str,
    engine_options: Optional[Dict[str, Any]] = None,
    session_options: Optional[Dict[str, Any]] = None,
) -> int:
    """Run the worker process main loop.

    Args:
        engine_name: Name of the engine to load via entry points, or a
            ``module:attr`` reference.
        ipc_address: ZMQ address of the control side to connect to.
        engine_options: Keyword arguments for the engine constructor.
        session_options: Keyword arguments for WorkerSession.

    Returns:
        Exit code (0 for success, non-zero for error).
    """
    from markerpath.plugin import create_engine
    from markerpath.process.channel import ZmqChannel

    try:
        engine = create_engine(engine_name, **(engine_options or {}))
        logger.info(f"Loaded engine: {engine_name}")
    except Exception as e:
        logger.error(f"Failed to load engine '{engine_name}': {e}")
        return 1

    channel = ZmqChannel(ipc_address, bind=False, name="worker")
    try:
        session = WorkerSession(engine, channel, **(session_options or {}))
    except Exception as e:
        logger.error(f"Failed to create worker session: {e}")
        return 1

    try:
        session.start()
        logger.info(f"Worker connected to {ipc_address}")
    except Exception as e:
        logger.error(f"Failed to connect to {ipc_address}: {e}")
        return 1

    try:
        session.wait()
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        session.close()
        logger.info("Worker shutdown complete")

    return 0


def main() -> int:
    """Main entry point for the worker subprocess."""
    parser = argparse.ArgumentParser(
        description="markerpath worker subprocess",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--engine",
        required=True,
        help="Name of the detection engine to load (via entry points)",
    )
    parser.add_argument(
        "--ipc-address",
        required=True,
        help="ZMQ address to connect to (e.g., ipc:///tmp/worker.sock)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--trace-level",
        default="off",
        choices=["off", "minimal", "normal", "verbose"],
        help="Trace level for worker records printed to stderr (default: off)",
    )
    parser.add_argument(
        "--engine-options",
        default="{}",
        help="JSON object of engine constructor arguments",
    )
    parser.add_argument(
        "--session-options",
        default="{}",
        help="JSON object of worker session arguments (backoff, queue sizes)",
    )

    args = parser.parse_args()

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="[%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )

    if args.trace_level != "off":
        from markerpath.observability import TraceLevel
        from markerpath.observability.sinks import ConsoleSink

        ObservabilityHub.get_instance().configure(
            level=TraceLevel.from_string(args.trace_level),
            sinks=[ConsoleSink(stream=sys.stderr)],
        )

    try:
        engine_options = json.loads(args.engine_options)
        session_options = json.loads(args.session_options)
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON options: {e}")
        return 2

    return run_worker(args.engine, args.ipc_address, engine_options, session_options)


if __name__ == "__main__":
    sys.exit(main())
