"""Control/worker process machinery.

Components:
- Channels: In-process (QueueChannel) and ZeroMQ (ZmqChannel) transports
- Messages: Wire protocol between control side and worker
- Worker: WorkerSession with engine adapter, pattern registry, frame pipeline
- Hosts: Thread and subprocess worker hosts (WorkerLauncher)
- Orchestrator: Control side, lifecycle events and RPC correlation
"""

from markerpath.process.channel import (
    MessageChannel,
    QueueChannel,
    ZmqChannel,
)
from markerpath.process.messages import (
    MessageType,
    make_message,
    parse_message,
    InitRequest,
    LoadMarkerRequest,
    LoadMarkerResult,
    ProcessFrameRequest,
    DetectionBatch,
    ErrorNotice,
)
from markerpath.process.requests import PendingRequests
from markerpath.process.adapter import EngineAdapter, backoff_delay
from markerpath.process.registry import PatternRegistry
from markerpath.process.pipeline import FramePipeline, FrameResult
from markerpath.process.worker import WorkerSession
from markerpath.process.launcher import (
    WorkerLauncher,
    BaseWorkerHost,
    ThreadWorkerHost,
    ProcessWorkerHost,
)
from markerpath.process.orchestrator import MarkerOrchestrator, host_from_config

__all__ = [
    # Channels
    "MessageChannel",
    "QueueChannel",
    "ZmqChannel",
    # Messages
    "MessageType",
    "make_message",
    "parse_message",
    "InitRequest",
    "LoadMarkerRequest",
    "LoadMarkerResult",
    "ProcessFrameRequest",
    "DetectionBatch",
    "ErrorNotice",
    # Worker side
    "PendingRequests",
    "EngineAdapter",
    "backoff_delay",
    "PatternRegistry",
    "FramePipeline",
    "FrameResult",
    "WorkerSession",
    # Hosts
    "WorkerLauncher",
    "BaseWorkerHost",
    "ThreadWorkerHost",
    "ProcessWorkerHost",
    # Orchestrator
    "MarkerOrchestrator",
    "host_from_config",
]
