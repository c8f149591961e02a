"""Control <-> worker message protocol.

Every message is a dict ``{"type": str, "payload": dict}``. Payload keys use
camelCase on the wire. The dataclasses below are the typed view of each
payload; ``to_message()`` builds the wire dict and ``from_payload()`` parses
one, tolerating missing optional keys.

    C->W  init          InitRequest          -> ready
    C->W  loadMarker    LoadMarkerRequest    -> loadMarkerResult
    C->W  processFrame  ProcessFrameRequest  -> detectionResult (or nothing)
    C->W  shutdown      {}
    W->C  ready         {}
    W->C  error         ErrorNotice
    W->C  getMarker     raw engine event (see RawMarkerEvent)
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from markerpath.core.types import Detection


class MessageType:
    """Message type names."""
    INIT = "init"
    READY = "ready"
    LOAD_MARKER = "loadMarker"
    LOAD_MARKER_RESULT = "loadMarkerResult"
    PROCESS_FRAME = "processFrame"
    DETECTION_RESULT = "detectionResult"
    ERROR = "error"
    GET_MARKER = "getMarker"
    SHUTDOWN = "shutdown"


Message = Dict[str, Any]


def make_message(msg_type: str, payload: Optional[Dict[str, Any]] = None) -> Message:
    return {"type": msg_type, "payload": payload if payload is not None else {}}


def parse_message(message: Any) -> Tuple[Optional[str], Dict[str, Any]]:
    """Split a wire message into (type, payload).

    Malformed messages yield ``(None, {})``.
    """
    if not isinstance(message, dict):
        return None, {}
    payload = message.get("payload")
    if not isinstance(payload, dict):
        payload = {}
    return message.get("type"), payload


@dataclass
class InitRequest:
    """Engine bootstrap options. Strings are passed through unvalidated."""
    module_url: Optional[str] = None
    camera_parameters_url: Optional[str] = None
    wasm_base_url: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None

    def to_message(self) -> Message:
        payload = {
            "moduleUrl": self.module_url,
            "cameraParametersUrl": self.camera_parameters_url,
            "wasmBaseUrl": self.wasm_base_url,
            "width": self.width,
            "height": self.height,
        }
        return make_message(
            MessageType.INIT,
            {k: v for k, v in payload.items() if v is not None},
        )

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "InitRequest":
        return cls(
            module_url=payload.get("moduleUrl"),
            camera_parameters_url=payload.get("cameraParametersUrl"),
            wasm_base_url=payload.get("wasmBaseUrl"),
            width=payload.get("width"),
            height=payload.get("height"),
        )


@dataclass
class LoadMarkerRequest:
    pattern_key: Optional[str]
    request_id: Optional[int]
    size: float = 1.0

    def to_message(self) -> Message:
        return make_message(MessageType.LOAD_MARKER, {
            "patternKey": self.pattern_key,
            "size": self.size,
            "requestId": self.request_id,
        })

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "LoadMarkerRequest":
        size = payload.get("size")
        return cls(
            pattern_key=payload.get("patternKey"),
            request_id=payload.get("requestId"),
            size=size if size is not None else 1.0,
        )


@dataclass
class LoadMarkerResult:
    request_id: Optional[int]
    ok: bool
    marker_id: Optional[int] = None
    size: Optional[float] = None
    error: Optional[str] = None

    def to_message(self) -> Message:
        payload: Dict[str, Any] = {"ok": self.ok, "requestId": self.request_id}
        if self.ok:
            payload["markerId"] = self.marker_id
            payload["size"] = self.size
        else:
            payload["error"] = self.error
        return make_message(MessageType.LOAD_MARKER_RESULT, payload)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "LoadMarkerResult":
        return cls(
            request_id=payload.get("requestId"),
            ok=bool(payload.get("ok")),
            marker_id=payload.get("markerId"),
            size=payload.get("size"),
            error=payload.get("error"),
        )


@dataclass
class ProcessFrameRequest:
    """One frame for the worker.

    ``bitmap`` is in the channel's wire form (a Bitmap for in-process
    channels, an encoded dict for ZeroMQ) or None for metadata-only frames.
    """
    frame_id: int
    width: int
    height: int
    bitmap: Any = None

    def to_message(self) -> Message:
        payload: Dict[str, Any] = {
            "frameId": self.frame_id,
            "width": self.width,
            "height": self.height,
        }
        if self.bitmap is not None:
            payload["bitmap"] = self.bitmap
        return make_message(MessageType.PROCESS_FRAME, payload)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ProcessFrameRequest":
        return cls(
            frame_id=payload.get("frameId"),
            width=payload.get("width") or 0,
            height=payload.get("height") or 0,
            bitmap=payload.get("bitmap"),
        )


@dataclass
class DetectionBatch:
    frame_id: Optional[int]
    detections: List[Detection] = field(default_factory=list)

    def to_message(self) -> Message:
        return make_message(MessageType.DETECTION_RESULT, {
            "frameId": self.frame_id,
            "detections": [d.to_dict() for d in self.detections],
        })

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "DetectionBatch":
        frame_id = payload.get("frameId")
        raw = payload.get("detections")
        if not isinstance(raw, list):
            raw = []
        return cls(
            frame_id=frame_id,
            detections=[
                Detection.from_dict(d, frame_id=frame_id)
                for d in raw
                if isinstance(d, dict) and d.get("id") is not None
            ],
        )


@dataclass
class ErrorNotice:
    message: str

    def to_message(self) -> Message:
        return make_message(MessageType.ERROR, {"message": self.message})

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ErrorNotice":
        return cls(message=str(payload.get("message", "")))


__all__ = [
    "MessageType",
    "Message",
    "make_message",
    "parse_message",
    "InitRequest",
    "LoadMarkerRequest",
    "LoadMarkerResult",
    "ProcessFrameRequest",
    "DetectionBatch",
    "ErrorNotice",
]
