"""Exception hierarchy for markerpath.

Every failure that crosses a component boundary is one of these. Callers
of RPC-style operations receive them through rejected futures; worker-side
failures reach the control side as ``error`` messages instead.

Taxonomy:
    InitializationError: Engine failed to start. Retried with backoff.
    LoadMarkerError: Pattern load rejected by the engine or the worker.
    FrameProcessingError: Per-frame compositing/detection failure.
    TransferError: Bitmap hand-off to the worker failed.
    RequestTimeoutError: An RPC received no response within its bound.
    WorkerTerminatedError: Worker stopped while an RPC was in flight.
    WorkerNotRunningError: RPC issued while no worker is running.
    EngineCapabilityError: Engine does not implement the adapter contract.
    ChannelClosedError: Message channel peer is gone.
"""


class MarkerPathError(Exception):
    """Base class for all markerpath errors."""

    pass


class InitializationError(MarkerPathError):
    """Detection engine initialization failed."""

    pass


class LoadMarkerError(MarkerPathError):
    """A marker pattern could not be loaded."""

    pass


class FrameProcessingError(MarkerPathError):
    """A single frame could not be composited or processed."""

    pass


class TransferError(MarkerPathError):
    """A transferable resource could not be handed off."""

    pass


class RequestTimeoutError(MarkerPathError, TimeoutError):
    """An RPC received no response within its timeout window.

    Attributes:
        request_id: Id of the request that timed out.
        timeout_sec: The timeout that elapsed.
    """

    def __init__(self, request_id: int, timeout_sec: float, operation: str = "request"):
        self.request_id = request_id
        self.timeout_sec = timeout_sec
        self.operation = operation
        super().__init__(
            f"{operation} #{request_id} timed out after {timeout_sec:g}s"
        )


class WorkerTerminatedError(MarkerPathError):
    """The worker was terminated while a request was pending."""

    pass


class WorkerNotRunningError(MarkerPathError):
    """An operation required a running worker."""

    pass


class EngineCapabilityError(MarkerPathError):
    """The detection engine does not satisfy the adapter contract."""

    pass


class ChannelClosedError(MarkerPathError):
    """The message channel (or its peer) has been closed."""

    pass


__all__ = [
    "MarkerPathError",
    "InitializationError",
    "LoadMarkerError",
    "FrameProcessingError",
    "TransferError",
    "RequestTimeoutError",
    "WorkerTerminatedError",
    "WorkerNotRunningError",
    "EngineCapabilityError",
    "ChannelClosedError",
]
