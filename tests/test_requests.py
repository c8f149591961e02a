"""Tests for RPC request correlation."""

import time

import pytest

from markerpath.core.errors import RequestTimeoutError, WorkerTerminatedError
from markerpath.process.requests import PendingRequests


class TestPendingRequests:
    """Tests for PendingRequests."""

    def test_ids_strictly_increasing(self):
        """Test each request gets a larger id than the previous one."""
        pending = PendingRequests()

        ids = [pending.create()[0] for _ in range(5)]

        assert ids == sorted(ids)
        assert len(set(ids)) == 5
        assert ids[0] == 0

    def test_first_id(self):
        """Test the first id is configurable."""
        pending = PendingRequests(first_id=100)
        assert pending.create()[0] == 100

    def test_resolve(self):
        """Test resolving completes the future and removes the entry."""
        pending = PendingRequests()
        request_id, future = pending.create()

        assert pending.resolve(request_id, "ok") is True

        assert future.result(timeout=0) == "ok"
        assert request_id not in pending
        assert len(pending) == 0

    def test_reject(self):
        """Test rejecting fails the future with the given error."""
        pending = PendingRequests()
        request_id, future = pending.create()

        assert pending.reject(request_id, ValueError("bad")) is True

        with pytest.raises(ValueError, match="bad"):
            future.result(timeout=0)

    def test_unknown_id(self):
        """Test responses for unknown ids are ignored."""
        pending = PendingRequests()

        assert pending.resolve(42, "x") is False
        assert pending.reject(42, ValueError()) is False

    def test_settled_once(self):
        """Test a second response for the same id is ignored."""
        pending = PendingRequests()
        request_id, future = pending.create()

        pending.resolve(request_id, 1)

        assert pending.resolve(request_id, 2) is False
        assert future.result(timeout=0) == 1

    def test_timeout(self):
        """Test a request without response fails with RequestTimeoutError."""
        pending = PendingRequests()
        request_id, future = pending.create(timeout_sec=0.05, operation="loadMarker")

        with pytest.raises(RequestTimeoutError) as exc_info:
            future.result(timeout=2.0)

        assert exc_info.value.request_id == request_id
        assert exc_info.value.timeout_sec == 0.05
        assert "loadMarker" in str(exc_info.value)
        assert request_id not in pending

    def test_late_response_after_timeout(self):
        """Test a response arriving after the timeout is ignored."""
        pending = PendingRequests()
        request_id, future = pending.create(timeout_sec=0.02)
        with pytest.raises(RequestTimeoutError):
            future.result(timeout=2.0)

        assert pending.resolve(request_id, "late") is False

    def test_resolve_cancels_timeout(self):
        """Test a resolved request never times out."""
        pending = PendingRequests()
        request_id, future = pending.create(timeout_sec=0.05)

        pending.resolve(request_id, "done")
        time.sleep(0.1)

        assert future.result(timeout=0) == "done"

    def test_reject_all(self):
        """Test reject_all fails every pending request and clears the map."""
        pending = PendingRequests()
        futures = [pending.create(timeout_sec=5.0)[1] for _ in range(3)]

        count = pending.reject_all(WorkerTerminatedError("Worker terminated"))

        assert count == 3
        assert len(pending) == 0
        for future in futures:
            with pytest.raises(WorkerTerminatedError, match="Worker terminated"):
                future.result(timeout=0)

    def test_no_timeout(self):
        """Test timeout_sec=None keeps the request pending."""
        pending = PendingRequests()
        request_id, future = pending.create(timeout_sec=None)

        time.sleep(0.05)

        assert not future.done()
        assert request_id in pending
