"""Detection engine discovery for markerpath.

Engines register themselves using the `markerpath.engines` entry point
group in their pyproject.toml:

```toml
[project.entry-points."markerpath.engines"]
artoolkit = "myplugin.engines:ArtoolkitEngine"
```

An engine can also be referenced directly as ``"package.module:ClassName"``.

Example:
    >>> from markerpath.plugin import discover_engines, create_engine
    >>>
    >>> for name in discover_engines():
    ...     print(f"Found engine: {name}")
    >>>
    >>> engine = create_engine("aruco", dictionary="DICT_4X4_50")
"""

import importlib
import logging
from importlib.metadata import entry_points
from typing import Any, Dict, List, Type

from markerpath.core.engine import DetectionEngine, check_engine

logger = logging.getLogger(__name__)

# Entry point group name
ENGINES_GROUP = "markerpath.engines"

# Engines shipped with markerpath, usable without installed metadata
BUILTIN_ENGINES = {
    "aruco": "markerpath.engines.aruco:ArucoEngine",
}


def _get_entry_points(group: str) -> Dict[str, Any]:
    """Get entry points for a group.

    Args:
        group: The entry point group name.

    Returns:
        Dict mapping entry point names to entry point objects.
    """
    eps = entry_points(group=group)
    return {ep.name: ep for ep in eps}


def discover_engines() -> Dict[str, Any]:
    """Discover all available engine plugins.

    Returns:
        Dict mapping engine names to their entry points.
    """
    return _get_entry_points(ENGINES_GROUP)


def _import_reference(reference: str) -> Any:
    module_name, _, attr = reference.partition(":")
    if not module_name or not attr:
        raise ImportError(f"Invalid engine reference '{reference}', expected 'module:attr'")
    module = importlib.import_module(module_name)
    try:
        return getattr(module, attr)
    except AttributeError as e:
        raise ImportError(f"Module '{module_name}' has no attribute '{attr}'") from e


def load_engine(name: str) -> Type[DetectionEngine]:
    """Load an engine class by name.

    Args:
        name: Registered entry point name, built-in name, or a
            ``module:attr`` reference.

    Returns:
        The engine class.

    Raises:
        KeyError: If no engine with the given name is registered.
        ImportError: If the engine cannot be loaded.
    """
    if ":" in name:
        return _import_reference(name)

    engines = discover_engines()
    if name in engines:
        return engines[name].load()

    if name in BUILTIN_ENGINES:
        return _import_reference(BUILTIN_ENGINES[name])

    raise KeyError(
        f"No engine registered with name '{name}'. "
        f"Available: {list_engines()}"
    )


def create_engine(name: str, **kwargs: Any) -> DetectionEngine:
    """Create an engine instance by name.

    Args:
        name: Engine name or ``module:attr`` reference.
        **kwargs: Arguments passed to the engine constructor.

    Returns:
        An engine instance, checked against the adapter contract.

    Raises:
        EngineCapabilityError: If the object is not a usable engine.

    Example:
        >>> engine = create_engine("aruco", dictionary="DICT_5X5_100")
    """
    EngineClass = load_engine(name)
    engine = EngineClass(**kwargs)
    check_engine(engine)
    logger.debug(f"Created engine '{name}' ({type(engine).__name__})")
    return engine


def list_engines() -> List[str]:
    """List all available engine names (discovered + built-in)."""
    return sorted(set(discover_engines().keys()) | set(BUILTIN_ENGINES))


__all__ = [
    "ENGINES_GROUP",
    "BUILTIN_ENGINES",
    "discover_engines",
    "load_engine",
    "create_engine",
    "list_engines",
]
