"""Bidirectional message channels between the control side and a worker.

Both implementations offer the same contract:

- ``send(message)`` enqueues and returns immediately. It never raises
  because the peer is gone; instead, the first failed delivery is reported
  back to this end's own handler as an ``error`` message.
- ``on_message(handler)`` registers the single delivery callback. Messages
  are delivered on the channel's own thread, one at a time, in the order
  the peer sent them. There is no ordering between the two directions.
- ``transfer(bitmap)`` turns a Bitmap into this channel's wire form and
  moves ownership away from the caller.

Implementations:
    QueueChannel: in-process pair backed by queue.Queue (thread workers).
    ZmqChannel: ZeroMQ PAIR socket over IPC/TCP (subprocess workers).

Example:
    >>> control, worker = QueueChannel.pair()
    >>> worker.on_message(lambda msg: print("worker got", msg["type"]))
    >>> control.start(); worker.start()
    >>> control.send(make_message(MessageType.INIT))
"""

import json
import logging
import queue
import threading
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Callable, Deque, Optional, Tuple

from markerpath.core.bitmap import Bitmap
from markerpath.process.messages import Message, MessageType, ErrorNotice
from markerpath.process.serialization import (
    decode_bitmap,
    encode_bitmap,
    serialize_value,
)

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Message], None]

_STOP = object()


class MessageChannel(ABC):
    """One end of a bidirectional, per-direction ordered channel."""

    def __init__(self, name: str = "channel"):
        self.name = name
        self._handler: Optional[MessageHandler] = None
        self._handler_lock = threading.Lock()
        self._peer_closed = False
        self._failure_reported = False

    def on_message(self, handler: MessageHandler) -> None:
        """Register the delivery callback, replacing any previous one."""
        with self._handler_lock:
            self._handler = handler

    @abstractmethod
    def send(self, message: Message) -> None:
        """Enqueue a message for the peer. Never blocks."""
        ...

    @abstractmethod
    def start(self) -> None:
        """Start delivering messages."""
        ...

    @abstractmethod
    def close(self) -> None:
        """Stop delivery and release resources. Idempotent."""
        ...

    @property
    @abstractmethod
    def is_open(self) -> bool:
        ...

    @abstractmethod
    def transfer(self, bitmap: Bitmap) -> Any:
        """Convert a bitmap to wire form, moving ownership."""
        ...

    def receive_bitmap(self, wire: Any) -> Optional[Bitmap]:
        """Rebuild a Bitmap from its wire form (receiving side)."""
        if wire is None:
            return None
        if isinstance(wire, Bitmap):
            return wire
        return decode_bitmap(wire)

    def notify_peer_closed(self, reason: str = "peer closed") -> None:
        """Mark the peer as gone; later sends are dropped and reported once."""
        self._peer_closed = True
        self._report_failure(reason)

    @property
    def peer_closed(self) -> bool:
        return self._peer_closed

    def _deliver(self, message: Message) -> None:
        with self._handler_lock:
            handler = self._handler
        if handler is None:
            logger.warning(
                f"{self.name}: no handler registered, dropping "
                f"'{message.get('type') if isinstance(message, dict) else message}'"
            )
            return
        try:
            handler(message)
        except Exception as e:
            logger.error(f"{self.name}: message handler failed: {e}")

    def _report_failure(self, reason: str) -> None:
        """Report a delivery failure to our own handler, once."""
        if self._failure_reported:
            return
        self._failure_reported = True
        logger.warning(f"{self.name}: delivery failed ({reason})")
        self._enqueue_local(ErrorNotice(f"Message delivery failed: {reason}").to_message())

    @abstractmethod
    def _enqueue_local(self, message: Message) -> None:
        """Queue a message for delivery to this end's own handler."""
        ...


class QueueChannel(MessageChannel):
    """In-process channel end. Create connected ends with ``pair()``."""

    def __init__(self, name: str = "queue-channel"):
        super().__init__(name)
        self._inbox: "queue.Queue[Any]" = queue.Queue()
        self._peer: Optional["QueueChannel"] = None
        self._thread: Optional[threading.Thread] = None
        self._closed = False

    @classmethod
    def pair(
        cls,
        control_name: str = "control",
        worker_name: str = "worker",
    ) -> Tuple["QueueChannel", "QueueChannel"]:
        """Create two connected channel ends."""
        control = cls(control_name)
        worker = cls(worker_name)
        control._peer = worker
        worker._peer = control
        return control, worker

    def start(self) -> None:
        if self._thread is not None or self._closed:
            return
        self._thread = threading.Thread(
            target=self._run,
            name=f"markerpath-{self.name}",
            daemon=True,
        )
        self._thread.start()

    def _run(self) -> None:
        while True:
            item = self._inbox.get()
            if item is _STOP:
                break
            self._deliver(item)

    def send(self, message: Message) -> None:
        if self._closed:
            logger.debug(f"{self.name}: send on closed channel ignored")
            return
        peer = self._peer
        if peer is None or peer._closed or self._peer_closed:
            self._peer_closed = True
            if message.get("type") != MessageType.ERROR:
                self._report_failure(f"peer of {self.name} is closed")
            return
        peer._inbox.put(message)

    def _enqueue_local(self, message: Message) -> None:
        if not self._closed:
            self._inbox.put(message)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._inbox.put(_STOP)
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5.0)
        self._thread = None

    @property
    def is_open(self) -> bool:
        return not self._closed

    def transfer(self, bitmap: Bitmap) -> Bitmap:
        return bitmap.transfer()


class ZmqChannel(MessageChannel):
    """ZeroMQ PAIR channel end.

    A single I/O thread owns the socket: it sends queued messages in order
    and polls for incoming ones. Messages are JSON strings.

    Args:
        address: ZeroMQ endpoint, e.g. ``ipc:///tmp/markerpath.sock``.
        bind: Bind (control side) or connect (worker side).
        poll_interval_ms: Poll timeout for the I/O loop.
        name: Name used in logs and the thread name.
    """

    def __init__(
        self,
        address: str,
        bind: bool,
        poll_interval_ms: int = 20,
        name: str = "zmq-channel",
    ):
        super().__init__(name)
        self._address = address
        self._bind = bind
        self._poll_interval_ms = poll_interval_ms

        self._outbox: "queue.Queue[Message]" = queue.Queue()
        self._local: "queue.Queue[Message]" = queue.Queue()
        self._context: Optional[Any] = None  # zmq.Context
        self._socket: Optional[Any] = None  # zmq.Socket
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._closed = False
        self._started = threading.Event()
        self._start_error: Optional[BaseException] = None

    @property
    def address(self) -> str:
        return self._address

    def start(self) -> None:
        """Open the socket and start the I/O thread.

        Raises:
            RuntimeError: If the socket cannot be bound or connected.
        """
        if self._thread is not None or self._closed:
            return
        self._thread = threading.Thread(
            target=self._run,
            name=f"markerpath-{self.name}",
            daemon=True,
        )
        self._thread.start()
        self._started.wait(timeout=10.0)
        if self._start_error is not None:
            self._thread.join(timeout=1.0)
            self._thread = None
            self._closed = True
            raise RuntimeError(
                f"Failed to open channel at {self._address}: {self._start_error}"
            ) from self._start_error

    def _open_socket(self) -> None:
        import zmq

        self._context = zmq.Context()
        self._socket = self._context.socket(zmq.PAIR)
        self._socket.setsockopt(zmq.LINGER, 0)
        if self._bind:
            self._socket.bind(self._address)
        else:
            self._socket.connect(self._address)

    def _run(self) -> None:
        import zmq

        try:
            self._open_socket()
        except Exception as e:
            self._start_error = e
            self._started.set()
            self._close_socket()
            return
        self._started.set()

        poller = zmq.Poller()
        poller.register(self._socket, zmq.POLLIN)
        pending: Deque[str] = deque()

        try:
            while not self._stop.is_set():
                self._drain_local()
                self._send_pending(pending)

                events = dict(poller.poll(self._poll_interval_ms))
                if events.get(self._socket) == zmq.POLLIN:
                    self._receive_available()
        except Exception as e:
            # zmq.ContextTerminated and friends end the loop
            logger.error(f"{self.name}: I/O loop stopped: {e}")
        finally:
            self._close_socket()

    def _drain_local(self) -> None:
        while True:
            try:
                message = self._local.get_nowait()
            except queue.Empty:
                return
            self._deliver(message)

    def _send_pending(self, pending: Deque[str]) -> None:
        import zmq

        while True:
            try:
                message = self._outbox.get_nowait()
            except queue.Empty:
                break
            try:
                pending.append(json.dumps(serialize_value(message)))
            except (TypeError, ValueError) as e:
                logger.error(f"{self.name}: cannot serialize '{message.get('type')}': {e}")

        while pending:
            try:
                self._socket.send_string(pending[0], flags=zmq.NOBLOCK)
            except zmq.Again:
                # No peer connected yet or high-water mark; retry next tick
                return
            pending.popleft()

    def _receive_available(self) -> None:
        import zmq

        while True:
            try:
                raw = self._socket.recv_string(flags=zmq.NOBLOCK)
            except zmq.Again:
                return
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning(f"{self.name}: dropping malformed message: {raw[:100]}")
                continue
            self._deliver(message)

    def _close_socket(self) -> None:
        if self._socket is not None:
            try:
                self._socket.close(linger=0)
            except Exception as e:
                logger.debug(f"{self.name}: socket close failed: {e}")
            self._socket = None
        if self._context is not None:
            try:
                self._context.term()
            except Exception as e:
                logger.debug(f"{self.name}: context term failed: {e}")
            self._context = None

    def send(self, message: Message) -> None:
        if self._closed:
            logger.debug(f"{self.name}: send on closed channel ignored")
            return
        if self._peer_closed:
            if message.get("type") != MessageType.ERROR:
                self._report_failure("peer process is gone")
            return
        self._outbox.put(message)

    def _enqueue_local(self, message: Message) -> None:
        if not self._closed:
            self._local.put(message)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5.0)
        self._thread = None

    @property
    def is_open(self) -> bool:
        return not self._closed

    def transfer(self, bitmap: Bitmap) -> dict:
        return encode_bitmap(bitmap)


__all__ = [
    "MessageHandler",
    "MessageChannel",
    "QueueChannel",
    "ZmqChannel",
]
