"""MarkerOrchestrator - control side of marker tracking.

Owns the worker (through a worker host), the lifecycle state machine, the
pending RPC map and the sweep thread, and publishes events on the host
event bus.

Architecture:
    host frames ──→ submit_frame ──→ [channel] ──→ worker
                                                     │
    EventBus ←── lifecycle ←── detectionResult ←─────┤
    EventBus ←── RawEventFilter ←── getMarker ←──────┤
    Futures  ←── PendingRequests ←── loadMarkerResult┘
                     ↑
    sweep thread ──→ lifecycle.sweep() ──→ markerLost

Example:
    >>> from markerpath import MarkerOrchestrator, EventBus, MARKER_FOUND
    >>>
    >>> bus = EventBus()
    >>> bus.on(MARKER_FOUND, lambda e: print("found", e.id))
    >>> with MarkerOrchestrator(event_bus=bus) as orchestrator:
    ...     marker = orchestrator.load_marker("aruco:7", size=0.08).result()
    ...     for frame in frames:
    ...         orchestrator.submit_frame(frame)
"""

import logging
import threading
import time
from concurrent.futures import Future
from typing import Any, Callable, Dict, List, Optional

from markerpath.config.schema import TrackerConfig
from markerpath.core.bitmap import Bitmap
from markerpath.core.errors import LoadMarkerError, WorkerNotRunningError, WorkerTerminatedError
from markerpath.core.filters import RawEventFilter
from markerpath.core.isolation import IsolationLevel
from markerpath.core.lifecycle import MarkerLifecycle
from markerpath.core.types import FrameInput, LoadedMarker, MarkerEvent, MarkerRecord, Transition
from markerpath.events import (
    GET_MARKER,
    MARKER_FOUND,
    MARKER_LOST,
    MARKER_UPDATED,
    WORKER_ERROR,
    WORKER_READY,
    EventBus,
)
from markerpath.observability import ObservabilityHub
from markerpath.process.channel import MessageChannel
from markerpath.process.launcher import BaseWorkerHost, WorkerLauncher
from markerpath.process.messages import (
    DetectionBatch,
    ErrorNotice,
    InitRequest,
    LoadMarkerRequest,
    LoadMarkerResult,
    Message,
    MessageType,
    ProcessFrameRequest,
    parse_message,
)
from markerpath.process.requests import PendingRequests

logger = logging.getLogger(__name__)

_TRANSITION_EVENTS = {
    Transition.FOUND: MARKER_FOUND,
    Transition.UPDATED: MARKER_UPDATED,
    Transition.LOST: MARKER_LOST,
}


def host_from_config(config: TrackerConfig) -> BaseWorkerHost:
    """Create the worker host described by a configuration."""
    session_options = {
        "rpc_workers": config.worker.rpc_workers,
        "event_queue_size": config.worker.event_queue_size,
        "backoff_base_sec": config.backoff.base_sec,
        "backoff_max_sec": config.backoff.max_sec,
        "max_failure_count": config.backoff.max_failures,
    }
    level = IsolationLevel.from_string(config.worker.isolation)
    kwargs: Dict[str, Any] = {}
    if level != IsolationLevel.THREAD:
        kwargs["log_level"] = config.worker.log_level
        kwargs["stop_timeout_sec"] = config.worker.stop_timeout_sec
    return WorkerLauncher.create(
        level=level,
        engine_name=config.engine.name,
        venv_path=config.worker.venv_path,
        engine_options=config.engine.options,
        session_options=session_options,
        **kwargs,
    )


class MarkerOrchestrator:
    """Coordinates a detection worker and the marker lifecycle.

    Args:
        config: Tracker configuration (default: all defaults).
        event_bus: Bus receiving host events (default: a new EventBus).
        host: Worker host (default: built from ``config.worker``).
        clock: Time source in seconds for lifecycle timestamps.
        observability_hub: Optional custom observability hub (uses global if None).

    Thread Safety:
        Public methods may be called from any thread. Worker messages are
        handled on the channel delivery thread, loss detection on the sweep
        thread, RPC timeouts on timer threads.
    """

    def __init__(
        self,
        config: Optional[TrackerConfig] = None,
        event_bus: Optional[EventBus] = None,
        host: Optional[BaseWorkerHost] = None,
        clock: Callable[[], float] = time.time,
        observability_hub: Optional[ObservabilityHub] = None,
    ):
        self._config = config or TrackerConfig()
        self._bus = event_bus or EventBus()
        self._host = host
        self._hub = observability_hub or ObservabilityHub.get_instance()

        self._lifecycle = MarkerLifecycle(
            lost_threshold=self._config.lost_threshold,
            frame_duration_ms=self._config.frame_duration_ms,
            clock=clock,
            observability_hub=self._hub,
        )
        self._filter = RawEventFilter(
            pattern_marker_type=self._config.pattern_marker_type,
            min_confidence=self._config.min_confidence,
            tracked_ids=self._config.tracked_pattern_ids,
        )
        self._pending = PendingRequests()

        self._state_lock = threading.RLock()
        # Serializes enable/disable; message and sweep handlers only take _state_lock
        self._toggle_lock = threading.RLock()
        self._channel: Optional[MessageChannel] = None
        self._enabled = False
        self._generation = 0

        self._sweep_thread: Optional[threading.Thread] = None
        self._sweep_stop = threading.Event()

        # Stats
        self._frames_submitted = 0
        self._frames_metadata_only = 0
        self._batches_received = 0
        self._events_emitted = 0
        self._raw_events_forwarded = 0
        self._raw_events_filtered = 0
        self._worker_errors = 0

    @classmethod
    def from_yaml(cls, path: str, **kwargs: Any) -> "MarkerOrchestrator":
        """Build an orchestrator from a YAML file.

        The file's observability section is applied to the hub.

        Raises:
            ConfigLoadError: If the file cannot be loaded or validated.
        """
        from markerpath.config.loader import load_yaml_config
        from markerpath.observability import configure_from_schema

        config = load_yaml_config(path)
        hub = kwargs.get("observability_hub")
        if config.observability.level != "off":
            hub = configure_from_schema(config.observability, hub)
            kwargs["observability_hub"] = hub
        return cls(config=config, **kwargs)

    # Properties ------------------------------------------------------------

    @property
    def config(self) -> TrackerConfig:
        return self._config

    @property
    def event_bus(self) -> EventBus:
        return self._bus

    @property
    def lifecycle(self) -> MarkerLifecycle:
        return self._lifecycle

    @property
    def raw_event_filter(self) -> RawEventFilter:
        return self._filter

    @property
    def is_enabled(self) -> bool:
        return self._enabled

    @property
    def pending_requests(self) -> int:
        """Number of RPCs awaiting a response."""
        return len(self._pending)

    # Lifecycle -------------------------------------------------------------

    def enable(self) -> None:
        """Start the worker and the sweep thread. Idempotent."""
        with self._toggle_lock, self._state_lock:
            if self._enabled:
                return

            if self._host is None:
                self._host = host_from_config(self._config)

            self._generation += 1
            generation = self._generation
            channel = self._host.start(
                lambda message: self._on_worker_message(generation, message)
            )
            self._channel = channel
            self._enabled = True
            self._start_sweep()

        engine = self._config.engine
        channel.send(InitRequest(
            module_url=engine.module_url,
            camera_parameters_url=engine.camera_parameters_url,
            wasm_base_url=engine.wasm_base_url,
        ).to_message())
        logger.info("Marker orchestrator enabled")

    def disable(self) -> None:
        """Terminate the worker and stop the sweep thread. Idempotent.

        Pending RPCs are rejected with WorkerTerminatedError. No worker
        message is handled after this returns.
        """
        with self._toggle_lock:
            with self._state_lock:
                if not self._enabled:
                    return
                self._enabled = False
                self._generation += 1
                self._channel = None
                self._sweep_stop.set()

                rejected = self._pending.reject_all(WorkerTerminatedError("Worker terminated"))
                if rejected:
                    logger.debug(f"Rejected {rejected} pending request(s) on disable")

            # Joined without the state lock: handlers may call load_marker()
            self._stop_sweep()
            try:
                self._host.stop()
            except Exception as e:
                logger.error(f"Error stopping worker: {e}")

        logger.info("Marker orchestrator disabled")

    def dispose(self) -> None:
        """Disable and forget all marker state."""
        self.disable()
        self._lifecycle.reset()

    def __enter__(self) -> "MarkerOrchestrator":
        self.enable()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.dispose()

    # Host API --------------------------------------------------------------

    def submit_frame(self, frame: FrameInput) -> None:
        """Send a frame to the worker. Fire-and-forget, never raises.

        The frame's bitmap is transferred: the caller must not use it
        afterwards. When the transfer fails, a metadata-only frame is sent
        instead.
        """
        channel = self._channel
        if not self._enabled or channel is None:
            logger.debug(f"Frame {frame.frame_id} dropped: orchestrator disabled")
            return

        self._frames_submitted += 1
        bitmap = frame.bitmap
        if bitmap is not None:
            try:
                if not isinstance(bitmap, Bitmap):
                    raise TypeError(f"Expected Bitmap, got {type(bitmap).__name__}")
                wire = channel.transfer(bitmap)
                channel.send(ProcessFrameRequest(
                    frame_id=frame.frame_id,
                    width=frame.width,
                    height=frame.height,
                    bitmap=wire,
                ).to_message())
                return
            except Exception as e:
                logger.warning(
                    f"Frame {frame.frame_id}: bitmap transfer failed ({e}), "
                    f"sending metadata only"
                )

        self._frames_metadata_only += 1
        try:
            channel.send(ProcessFrameRequest(
                frame_id=frame.frame_id,
                width=frame.width,
                height=frame.height,
            ).to_message())
        except Exception as e:
            logger.warning(f"Frame {frame.frame_id}: send failed: {e}")

    def load_marker(self, pattern_key: str, size: float = 1.0) -> Future:
        """Ask the worker to load and track a marker pattern.

        Args:
            pattern_key: Engine-specific pattern reference.
            size: Physical marker size passed to the engine.

        Returns:
            Future resolving to a LoadedMarker. It fails with
            LoadMarkerError, RequestTimeoutError, WorkerTerminatedError or
            WorkerNotRunningError.
        """
        with self._state_lock:
            channel = self._channel
            if not self._enabled or channel is None:
                future: Future = Future()
                future.set_exception(WorkerNotRunningError("Orchestrator is not enabled"))
                return future

            request_id, future = self._pending.create(
                timeout_sec=self._config.request_timeout_sec,
                operation="loadMarker",
            )

        channel.send(LoadMarkerRequest(
            pattern_key=pattern_key,
            request_id=request_id,
            size=size,
        ).to_message())
        return future

    def get_marker_state(self, marker_id: int) -> Optional[MarkerRecord]:
        """Copy of the lifecycle record for a marker id, or None."""
        return self._lifecycle.get_state(marker_id)

    # Worker messages -------------------------------------------------------

    def _on_worker_message(self, generation: int, message: Message) -> None:
        if generation != self._generation or not self._enabled:
            return

        msg_type, payload = parse_message(message)

        if msg_type == MessageType.DETECTION_RESULT:
            self._handle_detections(payload)
        elif msg_type == MessageType.GET_MARKER:
            self._handle_raw_event(payload)
        elif msg_type == MessageType.LOAD_MARKER_RESULT:
            self._handle_load_result(payload)
        elif msg_type == MessageType.READY:
            logger.info("Worker ready")
            self._bus.emit(WORKER_READY, {})
        elif msg_type == MessageType.ERROR:
            notice = ErrorNotice.from_payload(payload)
            self._worker_errors += 1
            logger.error(f"Worker error: {notice.message}")
            self._bus.emit(WORKER_ERROR, {"message": notice.message})
        else:
            logger.warning(f"Unknown worker message type: {msg_type}")

    def _handle_detections(self, payload: Dict[str, Any]) -> None:
        batch = DetectionBatch.from_payload(payload)
        self._batches_received += 1
        events = self._lifecycle.update(batch.detections)
        self._publish(events)

    def _handle_raw_event(self, payload: Dict[str, Any]) -> None:
        if not self._filter.accepts(payload):
            self._raw_events_filtered += 1
            return
        self._raw_events_forwarded += 1
        self._bus.emit(GET_MARKER, payload)

    def _handle_load_result(self, payload: Dict[str, Any]) -> None:
        result = LoadMarkerResult.from_payload(payload)
        if result.ok and result.marker_id is not None:
            size = result.size if result.size is not None else 1.0
            resolved = self._pending.resolve(
                result.request_id,
                LoadedMarker(marker_id=result.marker_id, size=size),
            )
            # Late results of timed-out loads do not widen the filter
            if resolved:
                self._filter.track(result.marker_id)
        else:
            self._pending.reject(
                result.request_id,
                LoadMarkerError(result.error or "Marker load failed"),
            )

    def _publish(self, events: List[MarkerEvent]) -> None:
        for event in events:
            self._events_emitted += 1
            self._bus.emit(_TRANSITION_EVENTS[event.transition], event)

    # Sweep -----------------------------------------------------------------

    def _start_sweep(self) -> None:
        self._sweep_stop.clear()
        self._sweep_thread = threading.Thread(
            target=self._sweep_loop,
            args=(self._generation,),
            name="markerpath-sweep",
            daemon=True,
        )
        self._sweep_thread.start()

    def _stop_sweep(self) -> None:
        self._sweep_stop.set()
        thread = self._sweep_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=2.0)
        self._sweep_thread = None

    def _sweep_loop(self, generation: int) -> None:
        interval = self._config.sweep_interval_ms / 1000.0
        while not self._sweep_stop.wait(interval):
            if generation != self._generation:
                return
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Sweep failed: {e}")

    def sweep(self) -> None:
        """Run one loss sweep now and publish the resulting events."""
        self._publish(self._lifecycle.sweep())

    # Stats -----------------------------------------------------------------

    def get_stats(self) -> Dict[str, Any]:
        """Get orchestrator statistics."""
        return {
            "enabled": self._enabled,
            "frames_submitted": self._frames_submitted,
            "frames_metadata_only": self._frames_metadata_only,
            "batches_received": self._batches_received,
            "events_emitted": self._events_emitted,
            "raw_events_forwarded": self._raw_events_forwarded,
            "raw_events_filtered": self._raw_events_filtered,
            "worker_errors": self._worker_errors,
            "tracked_markers": len(self._lifecycle),
            "pending_requests": len(self._pending),
        }


__all__ = ["MarkerOrchestrator", "host_from_config"]
