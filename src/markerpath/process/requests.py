"""Request/response correlation for RPCs sent to the worker.

Each RPC gets a strictly increasing integer id and a Future. The entry is
removed when the matching response arrives, when its timeout fires, or when
the worker terminates, whichever happens first; a Future is settled at most
once.
"""

import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from markerpath.core.errors import RequestTimeoutError

logger = logging.getLogger(__name__)


@dataclass
class PendingRequest:
    request_id: int
    future: Future
    created_at: float
    operation: str
    timer: Optional[threading.Timer] = None


class PendingRequests:
    """Map of in-flight RPCs keyed by request id.

    Args:
        first_id: Id of the first request.
    """

    def __init__(self, first_id: int = 0):
        self._next_id = first_id
        self._entries: Dict[int, PendingRequest] = {}
        self._lock = threading.Lock()

    def create(
        self,
        timeout_sec: Optional[float] = None,
        operation: str = "request",
    ) -> Tuple[int, Future]:
        """Allocate a request id and its Future.

        Args:
            timeout_sec: Reject with RequestTimeoutError after this many
                seconds. None or <= 0 disables the timeout.
            operation: Name used in the timeout message.

        Returns:
            (request_id, future)
        """
        future: Future = Future()
        with self._lock:
            request_id = self._next_id
            self._next_id += 1
            entry = PendingRequest(
                request_id=request_id,
                future=future,
                created_at=time.monotonic(),
                operation=operation,
            )
            self._entries[request_id] = entry

            if timeout_sec is not None and timeout_sec > 0:
                timer = threading.Timer(
                    timeout_sec, self._expire, args=(request_id, timeout_sec)
                )
                timer.daemon = True
                entry.timer = timer
                timer.start()

        return request_id, future

    def resolve(self, request_id: Any, result: Any) -> bool:
        """Complete a pending request. Returns False for unknown ids."""
        entry = self._pop(request_id)
        if entry is None:
            logger.debug(f"No pending request #{request_id} to resolve")
            return False
        if not entry.future.done():
            entry.future.set_result(result)
        return True

    def reject(self, request_id: Any, error: BaseException) -> bool:
        """Fail a pending request. Returns False for unknown ids."""
        entry = self._pop(request_id)
        if entry is None:
            logger.debug(f"No pending request #{request_id} to reject")
            return False
        if not entry.future.done():
            entry.future.set_exception(error)
        return True

    def reject_all(self, error: BaseException) -> int:
        """Fail every pending request with the same error.

        Returns:
            Number of requests rejected.
        """
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()

        for entry in entries:
            if entry.timer is not None:
                entry.timer.cancel()
            if not entry.future.done():
                entry.future.set_exception(error)
        return len(entries)

    def __contains__(self, request_id: Any) -> bool:
        with self._lock:
            return request_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _pop(self, request_id: Any) -> Optional[PendingRequest]:
        with self._lock:
            entry = self._entries.pop(request_id, None)
        if entry is not None and entry.timer is not None:
            entry.timer.cancel()
        return entry

    def _expire(self, request_id: int, timeout_sec: float) -> None:
        with self._lock:
            entry = self._entries.pop(request_id, None)
        if entry is None:
            return
        logger.warning(f"{entry.operation} #{request_id} timed out after {timeout_sec:g}s")
        if not entry.future.done():
            entry.future.set_exception(
                RequestTimeoutError(request_id, timeout_sec, entry.operation)
            )


__all__ = ["PendingRequest", "PendingRequests"]
