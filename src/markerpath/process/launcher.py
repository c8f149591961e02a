"""Worker hosts for different isolation levels.

A host starts a worker and hands back the control end of the channel
connected to it:

- ThreadWorkerHost: Same process, worker threads (IsolationLevel.THREAD)
- ProcessWorkerHost: Subprocess over ZeroMQ (IsolationLevel.PROCESS, or
  IsolationLevel.VENV with another virtualenv's interpreter)

Example:
    >>> from markerpath.process.launcher import WorkerLauncher
    >>> from markerpath.core import IsolationLevel
    >>>
    >>> host = WorkerLauncher.create(
    ...     level=IsolationLevel.THREAD,
    ...     engine_factory=ArucoEngine,
    ... )
    >>> channel = host.start(on_message)
    >>> channel.send(InitRequest().to_message())
    >>> host.stop()

For subprocess workers:
    >>> host = WorkerLauncher.create(
    ...     level=IsolationLevel.VENV,
    ...     venv_path="/path/to/venv",
    ...     engine_name="aruco",  # Entry point name
    ... )
"""

import json
import logging
import os
import subprocess
import sys
import tempfile
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from markerpath.core.engine import DetectionEngine
from markerpath.core.isolation import IsolationLevel
from markerpath.process.channel import MessageChannel, MessageHandler, QueueChannel, ZmqChannel
from markerpath.process.messages import MessageType, make_message
from markerpath.process.worker import WorkerSession

logger = logging.getLogger(__name__)

EngineFactory = Callable[[], DetectionEngine]


class BaseWorkerHost(ABC):
    """Abstract base class for worker hosts."""

    @abstractmethod
    def start(self, on_message: MessageHandler) -> MessageChannel:
        """Start the worker.

        Args:
            on_message: Handler for messages from the worker. Registered
                before the worker can send anything.

        Returns:
            The started control end of the channel.
        """
        ...

    @abstractmethod
    def stop(self) -> None:
        """Stop the worker unconditionally and release resources."""
        ...

    @property
    @abstractmethod
    def is_running(self) -> bool:
        ...


class ThreadWorkerHost(BaseWorkerHost):
    """Runs a WorkerSession in this process, connected by a QueueChannel.

    Args:
        engine_factory: Creates a fresh engine for each start.
        **session_kwargs: Passed to WorkerSession.
    """

    def __init__(self, engine_factory: EngineFactory, **session_kwargs: Any):
        self._engine_factory = engine_factory
        self._session_kwargs = session_kwargs
        self._session: Optional[WorkerSession] = None
        self._channel: Optional[QueueChannel] = None

    @property
    def session(self) -> Optional[WorkerSession]:
        return self._session

    def start(self, on_message: MessageHandler) -> MessageChannel:
        if self._channel is not None:
            return self._channel

        control, worker = QueueChannel.pair()
        control.on_message(on_message)
        control.start()

        try:
            engine = self._engine_factory()
            session = WorkerSession(engine, worker, **self._session_kwargs)
            session.start()
        except Exception:
            control.close()
            worker.close()
            raise

        self._session = session
        self._channel = control
        return control

    def stop(self) -> None:
        if self._session is not None:
            self._session.close()
            self._session = None
        if self._channel is not None:
            self._channel.close()
            self._channel = None

    @property
    def is_running(self) -> bool:
        return self._session is not None and self._session.is_running


class ProcessWorkerHost(BaseWorkerHost):
    """Runs the worker as ``python -m markerpath.process.worker``.

    The control side binds a ZeroMQ PAIR socket on a private IPC address
    and the subprocess connects to it. A watcher thread reports an
    unexpected worker exit through the channel as an ``error`` message.

    Args:
        engine_name: Entry point name (or ``module:attr``) of the engine to
            load in the subprocess.
        venv_path: Virtualenv whose interpreter runs the worker. Default:
            the current interpreter.
        log_level: Worker logging level.
        stop_timeout_sec: Grace period for shutdown and SIGTERM before kill.
        watch_interval_sec: How often to check that the worker is alive.
        engine_options: JSON-serializable engine constructor arguments.
        session_options: JSON-serializable WorkerSession arguments.
    """

    def __init__(
        self,
        engine_name: str,
        venv_path: Optional[str] = None,
        log_level: str = "INFO",
        stop_timeout_sec: float = 5.0,
        watch_interval_sec: float = 0.5,
        engine_options: Optional[Dict[str, Any]] = None,
        session_options: Optional[Dict[str, Any]] = None,
    ):
        self._engine_name = engine_name
        self._engine_options = engine_options or {}
        self._session_options = session_options or {}
        self._venv_path = venv_path
        self._log_level = log_level
        self._stop_timeout_sec = stop_timeout_sec
        self._watch_interval_sec = watch_interval_sec

        self._process: Optional[subprocess.Popen] = None
        self._channel: Optional[ZmqChannel] = None
        self._ipc_file: Optional[str] = None
        self._watcher: Optional[threading.Thread] = None
        self._stopping = threading.Event()

    def _python_executable(self) -> str:
        if self._venv_path is None:
            return sys.executable
        venv_python = os.path.join(self._venv_path, "bin", "python")
        if not os.path.isfile(venv_python):
            raise RuntimeError(f"Venv Python not found at {venv_python}")
        return venv_python

    def _command(self, ipc_address: str) -> List[str]:
        return [
            self._python_executable(),
            "-m", "markerpath.process.worker",
            "--engine", self._engine_name,
            "--ipc-address", ipc_address,
            "--log-level", self._log_level,
            "--engine-options", json.dumps(self._engine_options),
            "--session-options", json.dumps(self._session_options),
        ]

    def start(self, on_message: MessageHandler) -> MessageChannel:
        if self._channel is not None:
            return self._channel

        # Generate unique IPC address
        self._ipc_file = tempfile.mktemp(
            prefix=f"markerpath-worker-{os.getpid()}-",
            suffix=".sock",
        )
        ipc_address = f"ipc://{self._ipc_file}"

        cmd = self._command(ipc_address)

        channel = ZmqChannel(ipc_address, bind=True, name="control")
        channel.on_message(on_message)
        try:
            channel.start()
        except RuntimeError:
            self._remove_ipc_file()
            raise

        logger.info(f"Starting worker subprocess: {' '.join(cmd)}")

        try:
            self._process = subprocess.Popen(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=None,
            )
        except Exception as e:
            channel.close()
            self._remove_ipc_file()
            raise RuntimeError(f"Failed to start worker subprocess: {e}") from e

        self._channel = channel
        self._stopping.clear()
        self._watcher = threading.Thread(
            target=self._watch,
            args=(self._process, channel),
            name="markerpath-worker-watch",
            daemon=True,
        )
        self._watcher.start()
        return channel

    def _watch(self, process: subprocess.Popen, channel: ZmqChannel) -> None:
        while not self._stopping.wait(self._watch_interval_sec):
            returncode = process.poll()
            if returncode is not None:
                logger.error(f"Worker process exited unexpectedly with code {returncode}")
                channel.notify_peer_closed(f"worker process exited with code {returncode}")
                return

    def stop(self) -> None:
        if self._channel is None:
            return

        self._stopping.set()
        if self._watcher is not None:
            self._watcher.join(timeout=self._watch_interval_sec + 1.0)
            self._watcher = None

        channel = self._channel
        if self._process is not None and self._process.poll() is None:
            channel.send(make_message(MessageType.SHUTDOWN))
            try:
                self._process.wait(timeout=self._stop_timeout_sec)
            except subprocess.TimeoutExpired:
                logger.warning("Worker did not exit after shutdown signal")

        self._terminate_process()
        channel.close()
        self._channel = None
        self._remove_ipc_file()

    def _terminate_process(self) -> None:
        """Terminate the subprocess."""
        if self._process is not None:
            try:
                if self._process.poll() is None:
                    self._process.terminate()
                    self._process.wait(timeout=self._stop_timeout_sec)
            except subprocess.TimeoutExpired:
                logger.warning("Worker process did not terminate, killing")
                self._process.kill()
                self._process.wait()
            except OSError as e:
                logger.warning(f"Error terminating worker process: {e}")
            finally:
                self._process = None

    def _remove_ipc_file(self) -> None:
        if self._ipc_file and os.path.exists(self._ipc_file):
            try:
                os.unlink(self._ipc_file)
            except OSError as e:
                logger.debug(f"Failed to remove IPC file {self._ipc_file}: {e}")
        self._ipc_file = None

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None


class WorkerLauncher:
    """Factory for creating worker hosts based on isolation level.

    Example:
        >>> host = WorkerLauncher.create(
        ...     level=IsolationLevel.PROCESS,
        ...     engine_name="aruco",
        ... )
    """

    @staticmethod
    def create(
        level: IsolationLevel,
        engine_factory: Optional[EngineFactory] = None,
        engine_name: Optional[str] = None,
        venv_path: Optional[str] = None,
        engine_options: Optional[Dict[str, Any]] = None,
        session_options: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> BaseWorkerHost:
        """Create a worker host for the specified isolation level.

        Args:
            level: The isolation level to use.
            engine_factory: Engine constructor for THREAD level. When None,
                the engine is created from ``engine_name``.
            engine_name: Entry point name of the engine. Required for
                PROCESS/VENV levels.
            venv_path: Path to venv (required for VENV level).
            engine_options: Engine constructor arguments, used with
                ``engine_name``.
            session_options: WorkerSession arguments.
            **kwargs: Additional arguments passed to ProcessWorkerHost.

        Returns:
            A worker host for the specified isolation level.

        Raises:
            ValueError: If required parameters are missing.
        """
        engine_options = engine_options or {}
        session_options = session_options or {}

        if level == IsolationLevel.THREAD:
            if engine_factory is None:
                if engine_name is None:
                    raise ValueError("engine_factory or engine_name is required for THREAD isolation level")
                from markerpath.plugin import create_engine

                def engine_factory() -> DetectionEngine:
                    return create_engine(engine_name, **engine_options)

            return ThreadWorkerHost(engine_factory, **session_options)

        elif level == IsolationLevel.PROCESS:
            if engine_name is None:
                raise ValueError("engine_name is required for PROCESS isolation level")
            return ProcessWorkerHost(
                engine_name,
                engine_options=engine_options,
                session_options=session_options,
                **kwargs,
            )

        elif level == IsolationLevel.VENV:
            if venv_path is None:
                raise ValueError("venv_path is required for VENV isolation level")
            if engine_name is None:
                raise ValueError("engine_name is required for VENV isolation level")
            return ProcessWorkerHost(
                engine_name,
                venv_path=venv_path,
                engine_options=engine_options,
                session_options=session_options,
                **kwargs,
            )

        else:
            raise ValueError(f"Unknown isolation level: {level}")


__all__ = [
    "EngineFactory",
    "IsolationLevel",
    "BaseWorkerHost",
    "ThreadWorkerHost",
    "ProcessWorkerHost",
    "WorkerLauncher",
]
