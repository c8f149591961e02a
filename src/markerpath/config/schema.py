"""Pydantic validation models for markerpath configuration.

Defines the schema for YAML configuration files with validation
rules and sensible defaults. Keys may be written in snake_case or
camelCase (``lostThreshold`` and ``lost_threshold`` are equivalent).
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class _Schema(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )


class SinkSchema(_Schema):
    """Configuration for an observability sink.

    Attributes:
        type: Sink type (file, console, memory, null).
        path: File path for file sinks.
        options: Additional sink-specific options.
    """

    type: Literal["file", "console", "memory", "null"] = "file"
    path: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_file_sink_has_path(self) -> "SinkSchema":
        """Validate that file sinks have a path."""
        if self.type == "file" and not self.path:
            raise ValueError("File sink requires 'path' to be set")
        return self


class ObservabilitySchema(_Schema):
    """Configuration for observability/tracing.

    Attributes:
        level: Trace level (off, minimal, normal, verbose).
        sinks: List of sink configurations.
    """

    level: Literal["off", "minimal", "normal", "verbose"] = "off"
    sinks: List[SinkSchema] = Field(default_factory=list)


class EngineSchema(_Schema):
    """Detection engine selection and bootstrap options.

    The URL fields are opaque to markerpath and forwarded to the worker's
    ``init`` message unvalidated.

    Attributes:
        name: Engine entry point name or ``module:attr`` reference.
        module_url: Engine module location.
        camera_parameters_url: Camera calibration reference.
        wasm_base_url: Base location of engine binaries.
        options: Keyword arguments for the engine constructor.
    """

    name: str = "aruco"
    module_url: Optional[str] = None
    camera_parameters_url: Optional[str] = None
    wasm_base_url: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)


class BackoffSchema(_Schema):
    """Engine initialization retry policy.

    Attributes:
        base_sec: Delay after the first failure.
        max_sec: Upper bound of the delay.
        max_failures: Cap of the failure counter.
    """

    base_sec: float = Field(default=1.0, gt=0)
    max_sec: float = Field(default=30.0, gt=0)
    max_failures: int = Field(default=6, ge=1)

    @model_validator(mode="after")
    def validate_bounds(self) -> "BackoffSchema":
        if self.max_sec < self.base_sec:
            raise ValueError("Backoff 'max_sec' must be >= 'base_sec'")
        return self


class WorkerSchema(_Schema):
    """Worker hosting configuration.

    Attributes:
        isolation: Where the worker runs (thread, process, venv).
        venv_path: Path to venv (required for venv isolation).
        log_level: Logging level of subprocess workers.
        stop_timeout_sec: Grace period before a subprocess is killed.
        rpc_workers: Worker threads for init/loadMarker handling.
        event_queue_size: Capacity of the raw marker event queue.
    """

    isolation: Literal["thread", "process", "venv"] = "thread"
    venv_path: Optional[str] = None
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    stop_timeout_sec: float = Field(default=5.0, gt=0)
    rpc_workers: int = Field(default=2, ge=1)
    event_queue_size: int = Field(default=64, ge=1)

    @model_validator(mode="after")
    def validate_isolation_requirements(self) -> "WorkerSchema":
        """Validate isolation-specific requirements."""
        if self.isolation == "venv" and not self.venv_path:
            raise ValueError("VENV isolation requires 'venv_path' to be set")
        return self


class TrackerConfig(_Schema):
    """Root configuration schema.

    Attributes:
        version: Configuration file version (currently "1.0").
        lost_threshold: Frame durations without detection before a marker
            is lost.
        frame_duration_ms: Nominal frame duration.
        sweep_interval_ms: Period of the loss sweep.
        min_confidence: Minimum confidence of forwarded raw events.
        request_timeout_sec: Timeout of RPCs such as loadMarker.
        pattern_marker_type: Marker type code of forwarded raw events.
        tracked_pattern_ids: Initial tracked id set for raw events
            (empty = forward all ids).
        engine: Engine selection and bootstrap options.
        worker: Worker hosting.
        backoff: Engine init retry policy.
        observability: Tracing settings.
    """

    version: str = "1.0"
    lost_threshold: int = Field(default=5, ge=1)
    frame_duration_ms: float = Field(default=200.0, gt=0)
    sweep_interval_ms: float = Field(default=100.0, gt=0)
    min_confidence: float = Field(default=0.6, ge=0.0, le=1.0)
    request_timeout_sec: float = Field(default=10.0, gt=0)
    pattern_marker_type: int = 0
    tracked_pattern_ids: List[int] = Field(default_factory=list)

    engine: EngineSchema = Field(default_factory=EngineSchema)
    worker: WorkerSchema = Field(default_factory=WorkerSchema)
    backoff: BackoffSchema = Field(default_factory=BackoffSchema)
    observability: ObservabilitySchema = Field(default_factory=ObservabilitySchema)

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        """Validate configuration version."""
        supported = {"1.0"}
        if v not in supported:
            raise ValueError(
                f"Unsupported config version: {v}. Supported: {supported}"
            )
        return v


__all__ = [
    "SinkSchema",
    "ObservabilitySchema",
    "EngineSchema",
    "BackoffSchema",
    "WorkerSchema",
    "TrackerConfig",
]
