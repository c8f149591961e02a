"""Worker-side pattern load deduplication.

Every pattern key reaches the engine at most once while a load is in flight,
and never again once it has loaded. Failed loads are not cached, so a later
call retries.
"""

import logging
import threading
from concurrent.futures import Future
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


class PatternRegistry:
    """Cache of pattern key -> engine marker id.

    Args:
        loader: Function performing the actual engine load, usually
            ``engine.load_marker``. Called on the thread of the first
            caller for a key.
    """

    def __init__(self, loader: Callable[[str], int]):
        self._loader = loader
        self._resolved: Dict[str, int] = {}
        self._in_flight: Dict[str, Future] = {}
        self._lock = threading.Lock()

    def load_once(self, pattern_key: str) -> Future:
        """Load a pattern, sharing the outcome with concurrent callers.

        Returns:
            Future resolving to the marker id. Already-loaded keys return a
            completed Future; keys being loaded return the same pending
            Future to every caller.
        """
        with self._lock:
            if pattern_key in self._resolved:
                done: Future = Future()
                done.set_result(self._resolved[pattern_key])
                return done
            pending = self._in_flight.get(pattern_key)
            if pending is not None:
                return pending
            future: Future = Future()
            self._in_flight[pattern_key] = future

        try:
            marker_id = self._loader(pattern_key)
        except Exception as e:
            with self._lock:
                self._in_flight.pop(pattern_key, None)
            logger.warning(f"Failed to load pattern '{pattern_key}': {e}")
            future.set_exception(e)
            return future

        with self._lock:
            self._resolved[pattern_key] = marker_id
            self._in_flight.pop(pattern_key, None)
        logger.debug(f"Loaded pattern '{pattern_key}' as marker {marker_id}")
        future.set_result(marker_id)
        return future

    def get(self, pattern_key: str) -> Optional[int]:
        with self._lock:
            return self._resolved.get(pattern_key)

    def is_loading(self, pattern_key: str) -> bool:
        with self._lock:
            return pattern_key in self._in_flight

    def __len__(self) -> int:
        with self._lock:
            return len(self._resolved)


__all__ = ["PatternRegistry"]
