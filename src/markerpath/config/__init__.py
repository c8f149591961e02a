"""Configuration system for markerpath.

Provides YAML-based tracker configuration with:
- Pydantic schema validation
- Environment variable substitution (${VAR} and ${VAR:-default})
- snake_case or camelCase keys

Example YAML config:
    version: "1.0"
    lostThreshold: 5
    frameDurationMs: 200
    minConfidence: 0.6
    trackedPatternIds: [0, 3]
    engine:
      name: aruco
      cameraParametersUrl: "${CAMERA_CALIB:-./calib.npz}"
    worker:
      isolation: process
    observability:
      level: normal
      sinks:
        - type: file
          path: "${LOG_DIR:-./logs}/trace.jsonl"

Example usage:
    >>> from markerpath.config import load_yaml_config
    >>> config = load_yaml_config("tracker.yaml")
    >>> orchestrator = MarkerOrchestrator(config)
"""

from markerpath.config.schema import (
    TrackerConfig,
    EngineSchema,
    WorkerSchema,
    BackoffSchema,
    ObservabilitySchema,
    SinkSchema,
)
from markerpath.config.loader import (
    load_yaml_config,
    load_yaml_string,
    config_from_dict,
    substitute_env_vars,
    ConfigLoadError,
)

__all__ = [
    # Schema models
    "TrackerConfig",
    "EngineSchema",
    "WorkerSchema",
    "BackoffSchema",
    "ObservabilitySchema",
    "SinkSchema",
    # Loader
    "load_yaml_config",
    "load_yaml_string",
    "config_from_dict",
    "substitute_env_vars",
    "ConfigLoadError",
]
