"""Detection engine discovery and loading via Python entry points."""

from markerpath.plugin.discovery import (
    ENGINES_GROUP,
    BUILTIN_ENGINES,
    discover_engines,
    load_engine,
    create_engine,
    list_engines,
)

__all__ = [
    "ENGINES_GROUP",
    "BUILTIN_ENGINES",
    "discover_engines",
    "load_engine",
    "create_engine",
    "list_engines",
]
